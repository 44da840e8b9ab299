# utils/admin.py

from django.contrib import admin
from .models import FinancialAuditLog


@admin.register(FinancialAuditLog)
class FinancialAuditLogAdmin(admin.ModelAdmin):
    list_display = [
        'timestamp', 'action', 'object_type', 'object_id',
        'student_name', 'amount_involved', 'currency', 'user_name', 'risk_level'
    ]
    list_filter = ['action', 'risk_level', 'is_automated', 'timestamp']
    search_fields = ['object_id', 'student_id', 'student_name', 'user_name']
    readonly_fields = [f.name for f in FinancialAuditLog._meta.fields]

    fieldsets = (
        ('What Changed', {
            'fields': ('action', 'object_type', 'object_id', 'object_description',
                       'amount_involved', 'currency', 'old_values', 'new_values')
        }),
        ('Who Changed It', {
            'fields': ('user_id', 'user_name', 'is_automated')
        }),
        ('When & Where', {
            'fields': ('timestamp', 'ip_address', 'request_path')
        }),
        ('Additional Info', {
            'fields': ('student_id', 'student_name', 'risk_level', 'notes', 'additional_data'),
            'classes': ('collapse',)
        }),
    )

    def has_add_permission(self, request):
        # Audit logs should not be created manually
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return request.user.is_superuser
