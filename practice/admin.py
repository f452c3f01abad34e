from django import forms
from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as DjangoUserAdmin

from .models import (
    AutomationRun,
    AutomationSettings,
    Client,
    CommunicationLog,
    Invoice,
    Notification,
    Task,
    TaskSubtask,
    TaskTemplate,
    TemplateSubtask,
    User,
    WhatsAppConfig,
)


@admin.register(User)
class UserAdmin(DjangoUserAdmin):
    fieldsets = DjangoUserAdmin.fieldsets + (('Role Info', {'fields': ('role', 'phone')}),)
    list_display = ('username', 'email', 'role', 'is_staff')
    list_filter = ('role', 'is_staff')


@admin.register(Client)
class ClientAdmin(admin.ModelAdmin):
    list_display = ('name', 'phone', 'email', 'gst_number')
    search_fields = ('name', 'phone', 'email', 'gst_number')


class TemplateSubtaskInline(admin.TabularInline):
    model = TemplateSubtask
    extra = 0


@admin.register(TaskTemplate)
class TaskTemplateAdmin(admin.ModelAdmin):
    list_display = ('title', 'category', 'recurrence_pattern', 'recurrence_anchor', 'is_payable', 'price', 'is_active')
    list_filter = ('category', 'recurrence_pattern', 'is_payable', 'is_active', 'is_deleted')
    search_fields = ('title',)
    filter_horizontal = ('assignees',)
    inlines = [TemplateSubtaskInline]


class TaskSubtaskInline(admin.TabularInline):
    model = TaskSubtask
    extra = 0


@admin.register(Task)
class TaskAdmin(admin.ModelAdmin):
    list_display = ('title', 'client', 'category', 'status', 'due_date', 'is_payable', 'invoice', 'is_deleted')
    list_filter = ('status', 'category', 'is_payable', 'is_deleted')
    search_fields = ('title', 'client__name')
    # Status moves only through the lifecycle; the back-reference only through invoicing.
    readonly_fields = ('status', 'completed_at', 'invoice', 'template')
    inlines = [TaskSubtaskInline]


class InvoiceAdminForm(forms.ModelForm):
    class Meta:
        model = Invoice
        fields = (
            'task',
            'client',
            'amount',
            'tax_percent',
            'status',
            'issue_date',
            'due_date',
            'description',
            'created_by',
        )

    def clean(self):
        cleaned = super().clean()
        task = cleaned['task'] if 'task' in cleaned else self.instance.task
        status = cleaned.get('status') or self.instance.status
        if task and status != Invoice.Status.CANCELLED:
            active = Invoice.objects.filter(task=task).exclude(status=Invoice.Status.CANCELLED)
            if self.instance.pk:
                active = active.exclude(pk=self.instance.pk)
            if active.exists():
                raise forms.ValidationError('This task already has an active invoice.')
        return cleaned


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    form = InvoiceAdminForm
    list_display = ('invoice_number', 'client', 'task', 'total', 'status', 'issue_date', 'due_date')
    list_filter = ('status',)
    search_fields = ('invoice_number', 'client__name', 'task__title')
    readonly_fields = ('invoice_number', 'tax_amount', 'total')

    def get_readonly_fields(self, request, obj=None):
        if obj is not None:
            return self.readonly_fields + ('task',)
        return self.readonly_fields


@admin.register(AutomationSettings)
class AutomationSettingsAdmin(admin.ModelAdmin):
    list_display = ('reminder_lead_days', 'lookahead_days', 'client_notifications_enabled', 'tax_percent')
    exclude = ('singleton',)

    def has_add_permission(self, request):
        return not AutomationSettings.objects.exists()

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(CommunicationLog)
class CommunicationLogAdmin(admin.ModelAdmin):
    list_display = ('created_at', 'communication_type', 'subject', 'client', 'recipient_user', 'status')
    list_filter = ('communication_type', 'status', 'is_internal')
    search_fields = ('subject', 'client__name')

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AutomationRun)
class AutomationRunAdmin(admin.ModelAdmin):
    list_display = ('as_of', 'trigger', 'started_at', 'tasks_created', 'reminders_sent', 'invoices_created')
    list_filter = ('trigger',)


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ('user', 'category', 'message', 'is_read', 'created_at')
    list_filter = ('is_read', 'category')


@admin.register(WhatsAppConfig)
class WhatsAppConfigAdmin(admin.ModelAdmin):
    list_display = ('from_number', 'phone_number_id', 'enabled', 'updated_at')
