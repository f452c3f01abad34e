import django_filters
from django.contrib.auth import get_user_model

from .models import Category, CommunicationLog, Invoice, Task, TaskTemplate

User = get_user_model()


class TaskFilter(django_filters.FilterSet):
    status = django_filters.ChoiceFilter(choices=Task.Status.choices)
    category = django_filters.ChoiceFilter(choices=Category.choices)
    due_date = django_filters.DateFromToRangeFilter()
    assignee = django_filters.ModelChoiceFilter(field_name='assignees', queryset=User.objects.all())
    is_invoiced = django_filters.BooleanFilter(field_name='invoice', lookup_expr='isnull', exclude=True)

    class Meta:
        model = Task
        fields = ['client', 'template', 'status', 'priority', 'category', 'is_payable']


class TaskTemplateFilter(django_filters.FilterSet):
    recurrence_pattern = django_filters.ChoiceFilter(choices=TaskTemplate.Recurrence.choices)
    category = django_filters.ChoiceFilter(choices=Category.choices)

    class Meta:
        model = TaskTemplate
        fields = ['client', 'recurrence_pattern', 'category', 'is_active', 'is_payable']


class InvoiceFilter(django_filters.FilterSet):
    status = django_filters.ChoiceFilter(choices=Invoice.Status.choices)
    issue_date = django_filters.DateFromToRangeFilter()
    due_date = django_filters.DateFromToRangeFilter()

    class Meta:
        model = Invoice
        fields = ['client', 'task', 'status']


class CommunicationLogFilter(django_filters.FilterSet):
    created_at = django_filters.DateFromToRangeFilter()

    class Meta:
        model = CommunicationLog
        fields = ['client', 'task', 'recipient_user', 'communication_type', 'status', 'is_internal']
