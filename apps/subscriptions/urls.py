# subscriptions/urls.py

from django.urls import path
from . import views

urlpatterns = [
    path('<uuid:pk>/downgrade', views.downgrade_subscription, name='downgrade'),
    path('<uuid:pk>/upgrade', views.upgrade_subscription, name='upgrade'),
    path('<uuid:pk>/cancel', views.cancel_subscription, name='cancel'),
]
