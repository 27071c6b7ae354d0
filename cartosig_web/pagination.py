"""
Custom pagination classes for CartoSIG API.
"""
from rest_framework.pagination import PageNumberPagination


class CustomPageNumberPagination(PageNumberPagination):
    """
    Pagination permettant au client de choisir la taille de page.

    - page_size par défaut: 50
    - page_size maximum: 1000
    - Paramètre query: page_size (ex: ?page_size=100)
    """
    page_size = 50
    page_size_query_param = 'page_size'
    max_page_size = 1000
