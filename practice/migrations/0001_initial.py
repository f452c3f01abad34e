from decimal import Decimal

import django.contrib.auth.models
import django.contrib.auth.validators
import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models

CATEGORY_CHOICES = [
    ('gst_filing', 'GST Filing'),
    ('income_tax_return', 'Income Tax Return'),
    ('tds_return', 'TDS Return'),
    ('roc_filing', 'ROC Filing'),
    ('audit', 'Audit'),
    ('compliance', 'Compliance'),
    ('consultation', 'Consultation'),
    ('documentation', 'Documentation'),
    ('other', 'Other'),
]

PRIORITY_CHOICES = [('low', 'Low'), ('medium', 'Medium'), ('high', 'High'), ('urgent', 'Urgent')]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('auth', '0012_alter_user_first_name_max_length'),
    ]

    operations = [
        migrations.CreateModel(
            name='User',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('password', models.CharField(max_length=128, verbose_name='password')),
                ('last_login', models.DateTimeField(blank=True, null=True, verbose_name='last login')),
                (
                    'is_superuser',
                    models.BooleanField(
                        default=False,
                        help_text='Designates that this user has all permissions without explicitly assigning them.',
                        verbose_name='superuser status',
                    ),
                ),
                (
                    'username',
                    models.CharField(
                        error_messages={'unique': 'A user with that username already exists.'},
                        help_text='Required. 150 characters or fewer. Letters, digits and @/./+/-/_ only.',
                        max_length=150,
                        unique=True,
                        validators=[django.contrib.auth.validators.UnicodeUsernameValidator()],
                        verbose_name='username',
                    ),
                ),
                ('first_name', models.CharField(blank=True, max_length=150, verbose_name='first name')),
                ('last_name', models.CharField(blank=True, max_length=150, verbose_name='last name')),
                ('email', models.EmailField(blank=True, max_length=254, verbose_name='email address')),
                (
                    'is_staff',
                    models.BooleanField(
                        default=False,
                        help_text='Designates whether the user can log into this admin site.',
                        verbose_name='staff status',
                    ),
                ),
                (
                    'is_active',
                    models.BooleanField(
                        default=True,
                        help_text=(
                            'Designates whether this user should be treated as active. '
                            'Unselect this instead of deleting accounts.'
                        ),
                        verbose_name='active',
                    ),
                ),
                ('date_joined', models.DateTimeField(default=django.utils.timezone.now, verbose_name='date joined')),
                ('phone', models.CharField(blank=True, max_length=50)),
                (
                    'role',
                    models.CharField(
                        choices=[
                            ('admin', 'Admin'),
                            ('partner', 'Partner'),
                            ('manager', 'Manager'),
                            ('accountant', 'Accountant'),
                            ('staff', 'Staff'),
                            ('viewer', 'Viewer (read-only)'),
                        ],
                        default='staff',
                        max_length=32,
                    ),
                ),
                (
                    'groups',
                    models.ManyToManyField(
                        blank=True,
                        help_text=(
                            'The groups this user belongs to. A user will get all permissions '
                            'granted to each of their groups.'
                        ),
                        related_name='user_set',
                        related_query_name='user',
                        to='auth.group',
                        verbose_name='groups',
                    ),
                ),
                (
                    'user_permissions',
                    models.ManyToManyField(
                        blank=True,
                        help_text='Specific permissions for this user.',
                        related_name='user_set',
                        related_query_name='user',
                        to='auth.permission',
                        verbose_name='user permissions',
                    ),
                ),
            ],
            options={
                'verbose_name': 'user',
                'verbose_name_plural': 'users',
                'abstract': False,
            },
            managers=[
                ('objects', django.contrib.auth.models.UserManager()),
            ],
        ),
        migrations.CreateModel(
            name='Client',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('name', models.CharField(max_length=255)),
                ('email', models.EmailField(blank=True, max_length=254)),
                ('phone', models.CharField(blank=True, max_length=50)),
                ('address', models.TextField(blank=True)),
                ('gst_number', models.CharField(blank=True, max_length=20)),
                ('pan_number', models.CharField(blank=True, max_length=10)),
                ('notes', models.TextField(blank=True)),
            ],
            options={
                'ordering': ['name'],
            },
        ),
        migrations.CreateModel(
            name='AutomationSettings',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('reminder_lead_days', models.PositiveIntegerField(default=2)),
                ('client_notifications_enabled', models.BooleanField(default=False)),
                (
                    'lookahead_days',
                    models.PositiveIntegerField(
                        default=7, help_text='Recurring tasks are created this many days before they fall due.'
                    ),
                ),
                ('tax_percent', models.DecimalField(decimal_places=2, default=Decimal('18.00'), max_digits=5)),
                ('payment_terms_days', models.PositiveIntegerField(default=30)),
                (
                    'client_reminder_channel',
                    models.CharField(
                        choices=[('email', 'Email'), ('whatsapp', 'WhatsApp')], default='email', max_length=16
                    ),
                ),
                ('singleton', models.BooleanField(default=True, unique=True)),
            ],
            options={
                'verbose_name': 'Automation Settings',
                'verbose_name_plural': 'Automation Settings',
            },
        ),
        migrations.CreateModel(
            name='AutomationRun',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('as_of', models.DateField()),
                (
                    'trigger',
                    models.CharField(
                        choices=[('schedule', 'Scheduled'), ('manual', 'Manual')], default='schedule', max_length=16
                    ),
                ),
                ('started_at', models.DateTimeField()),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('tasks_created', models.PositiveIntegerField(default=0)),
                ('reminders_sent', models.PositiveIntegerField(default=0)),
                ('reminders_failed', models.PositiveIntegerField(default=0)),
                ('invoices_created', models.PositiveIntegerField(default=0)),
                ('invoices_marked_overdue', models.PositiveIntegerField(default=0)),
                ('errors', models.JSONField(blank=True, default=list)),
            ],
            options={
                'ordering': ['-started_at', '-id'],
            },
        ),
        migrations.CreateModel(
            name='WhatsAppConfig',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('enabled', models.BooleanField(default=False)),
                ('phone_number_id', models.CharField(blank=True, max_length=64)),
                ('from_number', models.CharField(blank=True, max_length=32)),
                ('api_token', models.TextField(blank=True)),
                ('default_language', models.CharField(blank=True, default='en', max_length=10)),
            ],
            options={
                'verbose_name': 'WhatsApp Configuration',
            },
        ),
        migrations.CreateModel(
            name='Notification',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('message', models.CharField(max_length=500)),
                ('is_read', models.BooleanField(default=False)),
                ('category', models.CharField(blank=True, max_length=50)),
                ('related_url', models.CharField(blank=True, max_length=255)),
                (
                    'user',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='notifications',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                'ordering': ['is_read', '-created_at'],
                'indexes': [
                    models.Index(fields=['user', 'is_read', 'created_at'], name='notification_user_read_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TaskTemplate',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('title', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('category', models.CharField(choices=CATEGORY_CHOICES, default='other', max_length=32)),
                ('priority', models.CharField(choices=PRIORITY_CHOICES, default='medium', max_length=16)),
                (
                    'recurrence_pattern',
                    models.CharField(
                        choices=[
                            ('none', 'Does not repeat'),
                            ('daily', 'Daily'),
                            ('weekly', 'Weekly'),
                            ('monthly', 'Monthly'),
                            ('yearly', 'Yearly'),
                        ],
                        default='none',
                        max_length=16,
                    ),
                ),
                (
                    'recurrence_anchor',
                    models.DateField(
                        blank=True,
                        help_text='First due date; later occurrences are counted from this date.',
                        null=True,
                    ),
                ),
                ('is_payable', models.BooleanField(default=False)),
                ('price', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('is_active', models.BooleanField(default=True)),
                ('is_deleted', models.BooleanField(default=False)),
                ('usage_count', models.PositiveIntegerField(default=0)),
                ('last_used_at', models.DateTimeField(blank=True, null=True)),
                (
                    'assignees',
                    models.ManyToManyField(blank=True, related_name='task_templates', to=settings.AUTH_USER_MODEL),
                ),
                (
                    'client',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='task_templates',
                        to='practice.client',
                    ),
                ),
                (
                    'created_by',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='created_templates',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                'ordering': ['title'],
                'indexes': [
                    models.Index(
                        fields=['is_active', 'is_deleted', 'recurrence_pattern'], name='tasktemplate_active_idx'
                    ),
                    models.Index(fields=['category'], name='tasktemplate_category_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TemplateSubtask',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('order', models.PositiveIntegerField(default=1)),
                ('estimated_hours', models.DecimalField(decimal_places=2, default=0, max_digits=6)),
                (
                    'template',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name='subtasks',
                        to='practice.tasktemplate',
                    ),
                ),
            ],
            options={
                'ordering': ['order', 'id'],
            },
        ),
        migrations.CreateModel(
            name='Task',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('title', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('category', models.CharField(choices=CATEGORY_CHOICES, default='other', max_length=32)),
                ('priority', models.CharField(choices=PRIORITY_CHOICES, default='medium', max_length=16)),
                ('due_date', models.DateField()),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('pending', 'Pending'),
                            ('in_progress', 'In Progress'),
                            ('completed', 'Completed'),
                            ('cancelled', 'Cancelled'),
                        ],
                        default='pending',
                        max_length=32,
                    ),
                ),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('is_payable', models.BooleanField(default=False)),
                ('price', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('is_deleted', models.BooleanField(default=False)),
                ('deleted_at', models.DateTimeField(blank=True, null=True)),
                (
                    'assignees',
                    models.ManyToManyField(blank=True, related_name='assigned_tasks', to=settings.AUTH_USER_MODEL),
                ),
                (
                    'client',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='tasks',
                        to='practice.client',
                    ),
                ),
                (
                    'created_by',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='created_tasks',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'template',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='generated_tasks',
                        to='practice.tasktemplate',
                    ),
                ),
            ],
            options={
                'ordering': ['due_date', 'id'],
                'indexes': [
                    models.Index(fields=['is_deleted', 'status', 'due_date'], name='task_open_due_idx'),
                    models.Index(fields=['is_payable', 'status'], name='task_payable_status_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(fields=('template', 'due_date'), name='uniq_task_template_due_date'),
                ],
            },
        ),
        migrations.CreateModel(
            name='TaskSubtask',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('title', models.CharField(max_length=200)),
                ('description', models.TextField(blank=True)),
                ('order', models.PositiveIntegerField(default=1)),
                ('is_done', models.BooleanField(default=False)),
                (
                    'task',
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE, related_name='subtasks', to='practice.task'
                    ),
                ),
            ],
            options={
                'ordering': ['order', 'id'],
            },
        ),
        migrations.CreateModel(
            name='Invoice',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('invoice_number', models.CharField(blank=True, max_length=50, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('tax_percent', models.DecimalField(decimal_places=2, default=0, max_digits=5)),
                ('tax_amount', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ('total', models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                (
                    'status',
                    models.CharField(
                        choices=[
                            ('draft', 'Draft'),
                            ('sent', 'Sent'),
                            ('paid', 'Paid'),
                            ('overdue', 'Overdue'),
                            ('cancelled', 'Cancelled'),
                        ],
                        default='draft',
                        max_length=32,
                    ),
                ),
                ('issue_date', models.DateField()),
                ('due_date', models.DateField()),
                ('description', models.TextField(blank=True)),
                (
                    'client',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='invoices',
                        to='practice.client',
                    ),
                ),
                (
                    'created_by',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='created_invoices',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'task',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name='invoices',
                        to='practice.task',
                    ),
                ),
            ],
            options={
                'ordering': ['-issue_date', '-id'],
                'indexes': [
                    models.Index(fields=['status', 'due_date'], name='invoice_status_due_idx'),
                    models.Index(fields=['issue_date'], name='invoice_issue_date_idx'),
                ],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(('status', 'cancelled'), _negated=True),
                        fields=('task',),
                        name='uniq_active_invoice_per_task',
                    ),
                ],
            },
        ),
        migrations.AddField(
            model_name='task',
            name='invoice',
            field=models.OneToOneField(
                blank=True,
                null=True,
                on_delete=django.db.models.deletion.SET_NULL,
                related_name='billed_task',
                to='practice.invoice',
            ),
        ),
        migrations.CreateModel(
            name='CommunicationLog',
            fields=[
                ('id', models.AutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                (
                    'communication_type',
                    models.CharField(
                        choices=[('in_app', 'In-app'), ('email', 'Email'), ('whatsapp', 'WhatsApp')], max_length=16
                    ),
                ),
                ('subject', models.CharField(max_length=200)),
                ('message', models.TextField()),
                ('recipient_email', models.EmailField(blank=True, max_length=254)),
                ('recipient_phone', models.CharField(blank=True, max_length=50)),
                ('status', models.CharField(choices=[('sent', 'Sent'), ('failed', 'Failed')], max_length=16)),
                ('error', models.TextField(blank=True)),
                ('is_internal', models.BooleanField(default=False)),
                ('created_at', models.DateTimeField(default=django.utils.timezone.now)),
                (
                    'client',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='communications',
                        to='practice.client',
                    ),
                ),
                (
                    'recipient_user',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='communications',
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    'task',
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name='communications',
                        to='practice.task',
                    ),
                ),
            ],
            options={
                'ordering': ['-created_at', '-id'],
                'indexes': [
                    models.Index(fields=['client', 'created_at'], name='commlog_client_created_idx'),
                    models.Index(fields=['task', 'created_at'], name='commlog_task_created_idx'),
                ],
            },
        ),
    ]
