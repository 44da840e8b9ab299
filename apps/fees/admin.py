# fees/admin.py

from django.contrib import admin

from .models import ControllerEarning, Deposit, MonthlyPayment, PaymentCheckout


@admin.register(MonthlyPayment)
class MonthlyPaymentAdmin(admin.ModelAdmin):
    list_display = ['student', 'month', 'paid_amount', 'payment_type', 'status', 'source', 'created_at']
    list_filter = ['status', 'payment_type', 'source']
    search_fields = ['student__full_name', 'month']
    raw_id_fields = ['student', 'deposit']


@admin.register(Deposit)
class DepositAdmin(admin.ModelAdmin):
    list_display = ['transaction_id', 'student', 'amount', 'currency', 'status', 'source', 'payment_date']
    list_filter = ['status', 'source']
    search_fields = ['transaction_id', 'student__full_name', 'provider_reference']
    raw_id_fields = ['student', 'subscription']


@admin.register(ControllerEarning)
class ControllerEarningAdmin(admin.ModelAdmin):
    list_display = ['controller_code', 'student', 'amount', 'rate', 'created_at']
    search_fields = ['controller_code', 'student__full_name']
    raw_id_fields = ['student', 'monthly_payment']


@admin.register(PaymentCheckout)
class PaymentCheckoutAdmin(admin.ModelAdmin):
    list_display = ['tx_ref', 'student', 'amount', 'currency', 'provider', 'intent', 'status']
    list_filter = ['provider', 'status', 'intent']
    search_fields = ['tx_ref', 'student__full_name']
    raw_id_fields = ['student', 'deposit']
