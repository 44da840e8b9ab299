"""
URL configuration for the tuition ledger project.

Payments (ledger rows, deposits, gateway webhooks) live under /payments/,
plan changes under /subscriptions/.
"""
from django.contrib import admin
from django.urls import path, include

from subscriptions import views as subscription_views

urlpatterns = [
    # Django admin
    path('admin/', admin.site.urls),

    # Billing-provider webhooks
    path('payments/webhooks/stripe/', subscription_views.stripe_webhook, name='stripe_webhook'),
    path('payments/webhooks/chapa/', subscription_views.chapa_webhook, name='chapa_webhook'),

    # Fees app - monthly ledger rows and deposits
    path('payments/', include(('fees.urls', 'fees'), namespace='fees')),

    # Subscriptions app - plan transitions
    path('subscriptions/', include(('subscriptions.urls', 'subscriptions'), namespace='subscriptions')),
]
