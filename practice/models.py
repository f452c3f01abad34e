from decimal import Decimal
import uuid

from django.conf import settings
from django.contrib.auth.models import AbstractUser
from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone

from .recurrence import RecurrenceRule


class User(AbstractUser):
    class Roles(models.TextChoices):
        ADMIN = 'admin', 'Admin'
        PARTNER = 'partner', 'Partner'
        MANAGER = 'manager', 'Manager'
        ACCOUNTANT = 'accountant', 'Accountant'
        STAFF = 'staff', 'Staff'
        VIEWER = 'viewer', 'Viewer (read-only)'

    phone = models.CharField(max_length=50, blank=True)
    role = models.CharField(max_length=32, choices=Roles.choices, default=Roles.STAFF)

    def __str__(self) -> str:
        return f"{self.get_full_name() or self.username} ({self.get_role_display()})"

    def has_any_role(self, *roles: str) -> bool:
        """Role check where partners inherit admin rights."""
        role_groups = {
            self.Roles.ADMIN: {self.Roles.ADMIN, self.Roles.PARTNER},
            self.Roles.MANAGER: {self.Roles.MANAGER},
            self.Roles.ACCOUNTANT: {self.Roles.ACCOUNTANT},
        }
        for requested in roles:
            if self.role in role_groups.get(requested, {requested}):
                return True
        return False


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Category(models.TextChoices):
    GST_FILING = 'gst_filing', 'GST Filing'
    INCOME_TAX_RETURN = 'income_tax_return', 'Income Tax Return'
    TDS_RETURN = 'tds_return', 'TDS Return'
    ROC_FILING = 'roc_filing', 'ROC Filing'
    AUDIT = 'audit', 'Audit'
    COMPLIANCE = 'compliance', 'Compliance'
    CONSULTATION = 'consultation', 'Consultation'
    DOCUMENTATION = 'documentation', 'Documentation'
    OTHER = 'other', 'Other'


class Priority(models.TextChoices):
    LOW = 'low', 'Low'
    MEDIUM = 'medium', 'Medium'
    HIGH = 'high', 'High'
    URGENT = 'urgent', 'Urgent'


class Client(TimeStampedModel):
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=50, blank=True)
    address = models.TextField(blank=True)
    gst_number = models.CharField(max_length=20, blank=True)
    pan_number = models.CharField(max_length=10, blank=True)
    notes = models.TextField(blank=True)

    class Meta:
        ordering = ['name']

    def __str__(self) -> str:
        return self.name

    @property
    def has_contact_channel(self) -> bool:
        return bool(self.email or self.phone)


class TaskTemplate(TimeStampedModel):
    class Recurrence(models.TextChoices):
        NONE = 'none', 'Does not repeat'
        DAILY = 'daily', 'Daily'
        WEEKLY = 'weekly', 'Weekly'
        MONTHLY = 'monthly', 'Monthly'
        YEARLY = 'yearly', 'Yearly'

    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=32, choices=Category.choices, default=Category.OTHER)
    priority = models.CharField(max_length=16, choices=Priority.choices, default=Priority.MEDIUM)
    recurrence_pattern = models.CharField(max_length=16, choices=Recurrence.choices, default=Recurrence.NONE)
    recurrence_anchor = models.DateField(
        null=True, blank=True, help_text='First due date; later occurrences are counted from this date.'
    )
    is_payable = models.BooleanField(default=False)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    client = models.ForeignKey(
        Client, on_delete=models.SET_NULL, null=True, blank=True, related_name='task_templates'
    )
    assignees = models.ManyToManyField(settings.AUTH_USER_MODEL, blank=True, related_name='task_templates')
    is_active = models.BooleanField(default=True)
    is_deleted = models.BooleanField(default=False)
    usage_count = models.PositiveIntegerField(default=0)
    last_used_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='created_templates'
    )

    class Meta:
        ordering = ['title']
        indexes = [
            models.Index(fields=['is_active', 'is_deleted', 'recurrence_pattern'], name='tasktemplate_active_idx'),
            models.Index(fields=['category'], name='tasktemplate_category_idx'),
        ]

    def __str__(self) -> str:
        return self.title

    def clean(self):
        super().clean()
        if self.recurrence_pattern != self.Recurrence.NONE and not self.recurrence_anchor:
            raise ValidationError({'recurrence_anchor': 'Recurring templates need an anchor date.'})
        if self.is_payable and not self.price:
            raise ValidationError({'price': 'Payable templates need a price.'})

    @property
    def recurrence_rule(self) -> RecurrenceRule:
        return RecurrenceRule(self.recurrence_pattern, self.recurrence_anchor)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_pattern != self.Recurrence.NONE


class TemplateSubtask(models.Model):
    template = models.ForeignKey(TaskTemplate, on_delete=models.CASCADE, related_name='subtasks')
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    order = models.PositiveIntegerField(default=1)
    estimated_hours = models.DecimalField(max_digits=6, decimal_places=2, default=0)

    class Meta:
        ordering = ['order', 'id']

    def __str__(self) -> str:
        return f"{self.order}. {self.title}"


class Task(TimeStampedModel):
    class Status(models.TextChoices):
        PENDING = 'pending', 'Pending'
        IN_PROGRESS = 'in_progress', 'In Progress'
        COMPLETED = 'completed', 'Completed'
        CANCELLED = 'cancelled', 'Cancelled'

    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    category = models.CharField(max_length=32, choices=Category.choices, default=Category.OTHER)
    priority = models.CharField(max_length=16, choices=Priority.choices, default=Priority.MEDIUM)
    client = models.ForeignKey(Client, on_delete=models.SET_NULL, null=True, blank=True, related_name='tasks')
    assignees = models.ManyToManyField(settings.AUTH_USER_MODEL, blank=True, related_name='assigned_tasks')
    due_date = models.DateField()
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.PENDING)
    completed_at = models.DateTimeField(null=True, blank=True)
    is_payable = models.BooleanField(default=False)
    price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    template = models.ForeignKey(
        TaskTemplate, on_delete=models.SET_NULL, null=True, blank=True, related_name='generated_tasks'
    )
    invoice = models.OneToOneField(
        'Invoice', on_delete=models.SET_NULL, null=True, blank=True, related_name='billed_task'
    )
    is_deleted = models.BooleanField(default=False)
    deleted_at = models.DateTimeField(null=True, blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='created_tasks'
    )

    class Meta:
        ordering = ['due_date', 'id']
        constraints = [
            models.UniqueConstraint(fields=['template', 'due_date'], name='uniq_task_template_due_date'),
        ]
        indexes = [
            models.Index(fields=['is_deleted', 'status', 'due_date'], name='task_open_due_idx'),
            models.Index(fields=['is_payable', 'status'], name='task_payable_status_idx'),
        ]

    def __str__(self) -> str:
        return self.title

    @property
    def is_terminal(self) -> bool:
        return self.status in (self.Status.COMPLETED, self.Status.CANCELLED)

    def soft_delete(self) -> None:
        if self.is_deleted:
            return
        self.is_deleted = True
        self.deleted_at = timezone.now()
        self.save(update_fields=['is_deleted', 'deleted_at', 'updated_at'])


class TaskSubtask(models.Model):
    task = models.ForeignKey(Task, on_delete=models.CASCADE, related_name='subtasks')
    title = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    order = models.PositiveIntegerField(default=1)
    is_done = models.BooleanField(default=False)

    class Meta:
        ordering = ['order', 'id']

    def __str__(self) -> str:
        return f"{self.task}: {self.title}"


class Invoice(TimeStampedModel):
    class Status(models.TextChoices):
        DRAFT = 'draft', 'Draft'
        SENT = 'sent', 'Sent'
        PAID = 'paid', 'Paid'
        OVERDUE = 'overdue', 'Overdue'
        CANCELLED = 'cancelled', 'Cancelled'

    invoice_number = models.CharField(max_length=50, unique=True, blank=True)
    task = models.ForeignKey(Task, on_delete=models.PROTECT, null=True, blank=True, related_name='invoices')
    client = models.ForeignKey(Client, on_delete=models.PROTECT, null=True, blank=True, related_name='invoices')
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    tax_percent = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.DRAFT)
    issue_date = models.DateField()
    due_date = models.DateField()
    description = models.TextField(blank=True)
    created_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='created_invoices'
    )

    class Meta:
        ordering = ['-issue_date', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['task'],
                condition=~models.Q(status='cancelled'),
                name='uniq_active_invoice_per_task',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'due_date'], name='invoice_status_due_idx'),
            models.Index(fields=['issue_date'], name='invoice_issue_date_idx'),
        ]

    def __str__(self) -> str:
        return f"Invoice {self.invoice_number}"

    def clean(self):
        super().clean()
        if self.issue_date and self.due_date and self.due_date < self.issue_date:
            raise ValidationError({'due_date': 'Due date cannot be earlier than the issue date.'})

    def save(self, *args, **kwargs):
        if not self.invoice_number:
            self.invoice_number = self._generate_invoice_number()
        if self.amount is not None:
            self.compute_totals()
        super().save(*args, **kwargs)

    def _generate_invoice_number(self) -> str:
        prefix = getattr(settings, 'INVOICE_PREFIX', 'INV')
        year = (self.issue_date or timezone.localdate()).year
        return f"{prefix}-{year}-{uuid.uuid4().hex[:8].upper()}"

    def compute_totals(self) -> None:
        self.tax_amount = (self.amount * (self.tax_percent or 0) / Decimal('100')).quantize(Decimal('0.01'))
        self.total = self.amount + self.tax_amount

    def refresh_status(self, *, save: bool = True, today=None) -> str:
        """Flag sent invoices whose due date has passed as overdue."""
        today = today or timezone.localdate()
        if self.status == self.Status.SENT and self.due_date < today:
            self.status = self.Status.OVERDUE
            if save:
                self.save(update_fields=['status', 'updated_at'])
        return self.status

    def cancel(self) -> None:
        if self.status == self.Status.PAID:
            raise ValidationError('Paid invoices cannot be cancelled.')
        self.status = self.Status.CANCELLED
        self.save(update_fields=['status', 'updated_at'])


class AutomationSettings(TimeStampedModel):
    class ClientChannel(models.TextChoices):
        EMAIL = 'email', 'Email'
        WHATSAPP = 'whatsapp', 'WhatsApp'

    reminder_lead_days = models.PositiveIntegerField(default=2)
    client_notifications_enabled = models.BooleanField(default=False)
    lookahead_days = models.PositiveIntegerField(
        default=7, help_text='Recurring tasks are created this many days before they fall due.'
    )
    tax_percent = models.DecimalField(max_digits=5, decimal_places=2, default=Decimal('18.00'))
    payment_terms_days = models.PositiveIntegerField(default=30)
    client_reminder_channel = models.CharField(
        max_length=16, choices=ClientChannel.choices, default=ClientChannel.EMAIL
    )
    singleton = models.BooleanField(default=True, unique=True)

    class Meta:
        verbose_name = 'Automation Settings'
        verbose_name_plural = 'Automation Settings'

    def __str__(self) -> str:
        return "Automation Settings"

    @classmethod
    def load(cls) -> 'AutomationSettings':
        obj, _ = cls.objects.get_or_create(singleton=True)
        return obj


class CommunicationLog(models.Model):
    """Append-only record of every outbound notification attempt."""

    class Type(models.TextChoices):
        IN_APP = 'in_app', 'In-app'
        EMAIL = 'email', 'Email'
        WHATSAPP = 'whatsapp', 'WhatsApp'

    class Status(models.TextChoices):
        SENT = 'sent', 'Sent'
        FAILED = 'failed', 'Failed'

    client = models.ForeignKey(
        Client, on_delete=models.SET_NULL, null=True, blank=True, related_name='communications'
    )
    recipient_user = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='communications'
    )
    task = models.ForeignKey(Task, on_delete=models.SET_NULL, null=True, blank=True, related_name='communications')
    communication_type = models.CharField(max_length=16, choices=Type.choices)
    subject = models.CharField(max_length=200)
    message = models.TextField()
    recipient_email = models.EmailField(blank=True)
    recipient_phone = models.CharField(max_length=50, blank=True)
    status = models.CharField(max_length=16, choices=Status.choices)
    error = models.TextField(blank=True)
    is_internal = models.BooleanField(default=False)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at', '-id']
        indexes = [
            models.Index(fields=['client', 'created_at'], name='commlog_client_created_idx'),
            models.Index(fields=['task', 'created_at'], name='commlog_task_created_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.get_communication_type_display()} · {self.subject} ({self.status})"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValueError('Communication log entries are append-only.')
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValueError('Communication log entries are append-only.')


class Notification(TimeStampedModel):
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='notifications')
    message = models.CharField(max_length=500)
    is_read = models.BooleanField(default=False)
    category = models.CharField(max_length=50, blank=True)
    related_url = models.CharField(max_length=255, blank=True)

    class Meta:
        ordering = ['is_read', '-created_at']
        indexes = [
            models.Index(fields=['user', 'is_read', 'created_at'], name='notification_user_read_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.user}: {self.message}"


class WhatsAppConfig(TimeStampedModel):
    enabled = models.BooleanField(default=False)
    phone_number_id = models.CharField(max_length=64, blank=True)
    from_number = models.CharField(max_length=32, blank=True)
    api_token = models.TextField(blank=True)
    default_language = models.CharField(max_length=10, default='en', blank=True)

    class Meta:
        verbose_name = 'WhatsApp Configuration'

    def __str__(self) -> str:
        return self.from_number or self.phone_number_id or "WhatsApp Config"


class AutomationRun(models.Model):
    class Trigger(models.TextChoices):
        SCHEDULE = 'schedule', 'Scheduled'
        MANUAL = 'manual', 'Manual'

    as_of = models.DateField()
    trigger = models.CharField(max_length=16, choices=Trigger.choices, default=Trigger.SCHEDULE)
    started_at = models.DateTimeField()
    finished_at = models.DateTimeField(null=True, blank=True)
    tasks_created = models.PositiveIntegerField(default=0)
    reminders_sent = models.PositiveIntegerField(default=0)
    reminders_failed = models.PositiveIntegerField(default=0)
    invoices_created = models.PositiveIntegerField(default=0)
    invoices_marked_overdue = models.PositiveIntegerField(default=0)
    errors = models.JSONField(default=list, blank=True)

    class Meta:
        ordering = ['-started_at', '-id']

    def __str__(self) -> str:
        return f"Automation run {self.as_of} ({len(self.errors)} errors)"

    @property
    def ok(self) -> bool:
        return not self.errors
