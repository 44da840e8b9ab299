# subscriptions/admin.py

from django.contrib import admin

from .models import StudentSubscription, SubscriptionPackage


@admin.register(SubscriptionPackage)
class SubscriptionPackageAdmin(admin.ModelAdmin):
    list_display = ['name', 'price', 'currency', 'duration_months', 'is_active']
    list_filter = ['is_active', 'currency']
    search_fields = ['name']


@admin.register(StudentSubscription)
class StudentSubscriptionAdmin(admin.ModelAdmin):
    list_display = ['student', 'package', 'status', 'start_date', 'end_date', 'next_billing_date']
    list_filter = ['status', 'package']
    search_fields = ['student__full_name', 'external_subscription_id', 'external_customer_id']
    raw_id_fields = ['student']
