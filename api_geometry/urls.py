from django.urls import path

from .views import (
    GeometryOverlayView,
    GeometryPredicateView,
    GeometryRelateView,
    GeometryMeasureView,
    GeometrySimplifyView,
    GeometrySplitView,
    GeometryMergeView,
    GeometryValidateView,
    GeometryCalculateView,
    GeometryBufferView,
    GeometryOffsetView,
    GeometryDuplicatesView,
)

urlpatterns = [
    path('overlay/', GeometryOverlayView.as_view(), name='geometry-overlay'),
    path('predicate/', GeometryPredicateView.as_view(), name='geometry-predicate'),
    path('relate/', GeometryRelateView.as_view(), name='geometry-relate'),
    path('measure/', GeometryMeasureView.as_view(), name='geometry-measure'),
    path('simplify/', GeometrySimplifyView.as_view(), name='geometry-simplify'),
    path('split/', GeometrySplitView.as_view(), name='geometry-split'),
    path('merge/', GeometryMergeView.as_view(), name='geometry-merge'),
    path('validate/', GeometryValidateView.as_view(), name='geometry-validate'),
    path('metrics/', GeometryCalculateView.as_view(), name='geometry-metrics'),
    path('buffer/', GeometryBufferView.as_view(), name='geometry-buffer'),
    path('offset/', GeometryOffsetView.as_view(), name='geometry-offset'),
    path('duplicates/', GeometryDuplicatesView.as_view(), name='geometry-duplicates'),
]
