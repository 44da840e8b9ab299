# students/admin.py

from django.contrib import admin
from .models import Student


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ['full_name', 'base_monthly_fee', 'currency', 'enrollment_start_date', 'controller_code', 'is_active']
    list_filter = ['is_active', 'currency']
    search_fields = ['full_name', 'controller_code']
