# fees/urls.py

from django.urls import path
from . import views

urlpatterns = [
    path('monthly', views.monthly_payments, name='monthly_payments'),
    path('deposit', views.deposits, name='deposits'),
]
