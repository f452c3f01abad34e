from __future__ import annotations

import datetime as dt

from django.core.exceptions import ValidationError
from django.utils import timezone
from rest_framework import serializers

from practice.api.exceptions import Conflict
from practice.models import (
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
)


class CleanModelSerializer(serializers.ModelSerializer):
    """ModelSerializer that runs full_clean before saving.

    Many-to-many values are held back and applied once the row exists.
    """

    def _perform_full_clean(self, instance):
        try:
            instance.full_clean()
        except ValidationError as exc:
            if hasattr(exc, 'message_dict'):
                raise serializers.ValidationError(exc.message_dict) from exc
            raise serializers.ValidationError({'detail': exc.messages}) from exc

    def _pop_many_to_many(self, validated_data):
        m2m_names = {field.name for field in self.Meta.model._meta.many_to_many}
        return {name: validated_data.pop(name) for name in list(validated_data) if name in m2m_names}

    def create(self, validated_data, **kwargs):
        validated_data.update(kwargs)
        m2m = self._pop_many_to_many(validated_data)
        instance = self.Meta.model(**validated_data)
        self._perform_full_clean(instance)
        instance.save()
        for name, value in m2m.items():
            getattr(instance, name).set(value)
        return instance

    def update(self, instance, validated_data, **kwargs):
        validated_data.update(kwargs)
        m2m = self._pop_many_to_many(validated_data)
        for attr, value in validated_data.items():
            setattr(instance, attr, value)
        self._perform_full_clean(instance)
        instance.save()
        for name, value in m2m.items():
            getattr(instance, name).set(value)
        return instance


class UserSummarySerializer(serializers.ModelSerializer):
    full_name = serializers.SerializerMethodField()

    class Meta:
        model = User
        fields = ('id', 'username', 'full_name', 'email', 'role')

    def get_full_name(self, obj):
        return obj.get_full_name() or obj.username


class ClientSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Client
        fields = ('id', 'name', 'phone', 'email')


class ClientSerializer(CleanModelSerializer):
    class Meta:
        model = Client
        fields = (
            'id',
            'name',
            'email',
            'phone',
            'address',
            'gst_number',
            'pan_number',
            'notes',
            'created_at',
            'updated_at',
        )


class TemplateSubtaskSerializer(serializers.ModelSerializer):
    class Meta:
        model = TemplateSubtask
        fields = ('id', 'title', 'description', 'order', 'estimated_hours')


class TaskTemplateSerializer(CleanModelSerializer):
    client_detail = ClientSummarySerializer(source='client', read_only=True)
    assignees_detail = UserSummarySerializer(source='assignees', many=True, read_only=True)
    subtasks = TemplateSubtaskSerializer(many=True, required=False)
    next_due_date = serializers.SerializerMethodField()

    class Meta:
        model = TaskTemplate
        fields = (
            'id',
            'title',
            'description',
            'category',
            'priority',
            'recurrence_pattern',
            'recurrence_anchor',
            'is_payable',
            'price',
            'client',
            'client_detail',
            'assignees',
            'assignees_detail',
            'subtasks',
            'next_due_date',
            'is_active',
            'usage_count',
            'last_used_at',
            'created_at',
            'updated_at',
        )
        read_only_fields = ('usage_count', 'last_used_at')

    def get_next_due_date(self, obj) -> dt.date | None:
        """First occurrence due today or later."""
        if not obj.is_recurring or not obj.recurrence_anchor:
            return None
        yesterday = timezone.localdate() - dt.timedelta(days=1)
        return obj.recurrence_rule.next_after(yesterday)

    def create(self, validated_data, **kwargs):
        subtasks = validated_data.pop('subtasks', [])
        template = super().create(validated_data, **kwargs)
        for subtask in subtasks:
            TemplateSubtask.objects.create(template=template, **subtask)
        return template

    def update(self, instance, validated_data, **kwargs):
        subtasks = validated_data.pop('subtasks', None)
        template = super().update(instance, validated_data, **kwargs)
        if subtasks is not None:
            template.subtasks.all().delete()
            for subtask in subtasks:
                TemplateSubtask.objects.create(template=template, **subtask)
        return template


class TemplateExpandSerializer(serializers.Serializer):
    as_of = serializers.DateField(required=False)
    lookahead_days = serializers.IntegerField(required=False, min_value=0, max_value=366)


class TemplateInstantiateSerializer(serializers.Serializer):
    due_date = serializers.DateField()
    client = serializers.PrimaryKeyRelatedField(queryset=Client.objects.all(), required=False, allow_null=True)
    assignees = serializers.PrimaryKeyRelatedField(queryset=User.objects.all(), many=True, required=False)


class TaskSubtaskSerializer(serializers.ModelSerializer):
    class Meta:
        model = TaskSubtask
        fields = ('id', 'title', 'description', 'order', 'is_done')


class TaskSerializer(CleanModelSerializer):
    client_detail = ClientSummarySerializer(source='client', read_only=True)
    assignees_detail = UserSummarySerializer(source='assignees', many=True, read_only=True)
    subtasks = TaskSubtaskSerializer(many=True, read_only=True)
    invoice_number = serializers.CharField(source='invoice.invoice_number', read_only=True, default=None)

    class Meta:
        model = Task
        fields = (
            'id',
            'title',
            'description',
            'category',
            'priority',
            'client',
            'client_detail',
            'assignees',
            'assignees_detail',
            'due_date',
            'status',
            'completed_at',
            'is_payable',
            'price',
            'template',
            'invoice',
            'invoice_number',
            'subtasks',
            'created_by',
            'created_at',
            'updated_at',
        )
        # Status changes go through the transition action, billing through the invoice action.
        read_only_fields = ('status', 'completed_at', 'template', 'invoice', 'created_by')

    def validate(self, attrs):
        is_payable = attrs.get('is_payable', getattr(self.instance, 'is_payable', False))
        price = attrs.get('price', getattr(self.instance, 'price', 0))
        if is_payable and not price:
            raise serializers.ValidationError({'price': 'Payable tasks need a price.'})
        return attrs


class TaskTransitionSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Task.Status.choices)


class InvoiceSerializer(CleanModelSerializer):
    client_detail = ClientSummarySerializer(source='client', read_only=True)

    class Meta:
        model = Invoice
        fields = (
            'id',
            'invoice_number',
            'task',
            'client',
            'client_detail',
            'amount',
            'tax_percent',
            'tax_amount',
            'total',
            'status',
            'issue_date',
            'due_date',
            'description',
            'created_by',
            'created_at',
            'updated_at',
        )
        read_only_fields = ('invoice_number', 'tax_amount', 'total', 'created_by')
        # The active-invoice constraint is checked in validate() and answered with 409.
        validators = []

    def validate_task(self, value):
        if self.instance is not None and value != self.instance.task:
            raise serializers.ValidationError('An invoice cannot be moved to another task.')
        if value is not None and value.is_deleted:
            raise serializers.ValidationError('Task was deleted.')
        return value

    def validate_status(self, value):
        if value == Invoice.Status.CANCELLED and (self.instance is None or self.instance.status != value):
            raise serializers.ValidationError('Use the cancel action to cancel an invoice.')
        return value

    def validate(self, attrs):
        task = attrs.get('task', getattr(self.instance, 'task', None))
        status = attrs.get('status', getattr(self.instance, 'status', Invoice.Status.DRAFT))
        if task is not None and status != Invoice.Status.CANCELLED:
            active = Invoice.objects.filter(task=task).exclude(status=Invoice.Status.CANCELLED)
            if self.instance is not None:
                active = active.exclude(pk=self.instance.pk)
            if active.exists():
                raise Conflict('This task already has an active invoice.')
        if 'task' in attrs and task is not None and not attrs.get('client'):
            attrs['client'] = task.client
        return attrs


class AutomationSettingsSerializer(CleanModelSerializer):
    class Meta:
        model = AutomationSettings
        fields = (
            'reminder_lead_days',
            'client_notifications_enabled',
            'lookahead_days',
            'tax_percent',
            'payment_terms_days',
            'client_reminder_channel',
            'updated_at',
        )


class CommunicationLogSerializer(serializers.ModelSerializer):
    recipient_user_detail = UserSummarySerializer(source='recipient_user', read_only=True)

    class Meta:
        model = CommunicationLog
        fields = (
            'id',
            'client',
            'recipient_user',
            'recipient_user_detail',
            'task',
            'communication_type',
            'subject',
            'message',
            'recipient_email',
            'recipient_phone',
            'status',
            'error',
            'is_internal',
            'created_at',
        )


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = ('id', 'user', 'message', 'is_read', 'category', 'related_url', 'created_at')


class AutomationRunSerializer(serializers.ModelSerializer):
    ok = serializers.BooleanField(read_only=True)

    class Meta:
        model = AutomationRun
        fields = (
            'id',
            'as_of',
            'trigger',
            'started_at',
            'finished_at',
            'tasks_created',
            'reminders_sent',
            'reminders_failed',
            'invoices_created',
            'invoices_marked_overdue',
            'errors',
            'ok',
        )


class AutomationRunRequestSerializer(serializers.Serializer):
    date = serializers.DateField(required=False)
