from django.contrib import admin

from classraum.academies.models import Academy
from classraum.academies.models import AcademyUsage
from classraum.academies.models import Manager


class ManagerInline(admin.TabularInline):
    model = Manager
    extra = 0
    raw_id_fields = ["user"]


class AcademyUsageInline(admin.StackedInline):
    model = AcademyUsage
    can_delete = False
    readonly_fields = ["updated_at"]


@admin.register(Academy)
class AcademyAdmin(admin.ModelAdmin):
    list_display = ["name", "slug", "billing_email", "created"]
    search_fields = ["name", "slug", "billing_email"]
    prepopulated_fields = {"slug": ["name"]}
    inlines = [AcademyUsageInline, ManagerInline]
