"""
Celery configuration for cartosig_web project.

This module configures Celery for asynchronous task processing:
- Background print rendering (GetPrint PDF, SVG, PNG)
"""

import os
from celery import Celery

# Set the default Django settings module for Celery
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'cartosig_web.settings')

app = Celery('cartosig_web')

# Load config from Django settings, using CELERY_ namespace
app.config_from_object('django.conf:settings', namespace='CELERY')

# Auto-discover tasks in all registered Django apps
app.autodiscover_tasks()
