from __future__ import annotations

import datetime as dt

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction as db_transaction
from django.utils import timezone
from rest_framework import generics, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import SAFE_METHODS, AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.serializers import TokenObtainPairSerializer
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from practice.api.access import can_manage_task, visible_tasks_for_user
from practice.api.exceptions import Conflict
from practice.api.permissions import ReadOnlyForViewers, RolePermission
from practice.api.serializers import (
    AutomationRunRequestSerializer,
    AutomationRunSerializer,
    AutomationSettingsSerializer,
    ClientSerializer,
    CommunicationLogSerializer,
    InvoiceSerializer,
    NotificationSerializer,
    TaskSerializer,
    TaskTemplateSerializer,
    TaskTransitionSerializer,
    TemplateExpandSerializer,
    TemplateInstantiateSerializer,
)
from practice.automation import run_tick
from practice.exceptions import AlreadyInvoiced, AutomationError, InvalidTransition, NotEligible, NotFound
from practice.expander import expand_due, instantiate_template
from practice.filters import CommunicationLogFilter, InvoiceFilter, TaskFilter, TaskTemplateFilter
from practice.invoicing import generate_for_task
from practice.lifecycle import transition
from practice.models import (
    AutomationRun,
    AutomationSettings,
    Client,
    CommunicationLog,
    Invoice,
    Notification,
    Task,
    TaskTemplate,
    User,
)
from practice.notifications.tasks import notify_task_change

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    NotEligible: status.HTTP_400_BAD_REQUEST,
    InvalidTransition: status.HTTP_409_CONFLICT,
    AlreadyInvoiced: status.HTTP_409_CONFLICT,
}


def automation_error_response(exc: AutomationError) -> Response:
    code = next(
        (value for cls, value in ERROR_STATUS.items() if isinstance(exc, cls)),
        status.HTTP_400_BAD_REQUEST,
    )
    return Response({'detail': str(exc)}, status=code)


class CustomTokenObtainPairSerializer(TokenObtainPairSerializer):
    def validate(self, attrs):
        username = attrs.get(self.username_field)
        if username and '@' in username:
            user = User.objects.filter(email__iexact=username).first()
            if user:
                attrs[self.username_field] = user.get_username()
        return super().validate(attrs)


class CustomTokenObtainPairView(TokenObtainPairView):
    permission_classes = (AllowAny,)
    serializer_class = CustomTokenObtainPairSerializer


class CustomTokenRefreshView(TokenRefreshView):
    permission_classes = (AllowAny,)


class RoleMapMixin:
    permission_classes = (IsAuthenticated, ReadOnlyForViewers, RolePermission)
    role_map: dict[str, tuple[str, ...] | None] | None = None

    def get_permissions(self):
        if self.role_map:
            self.allowed_roles = self.role_map.get(self.action)
        return super().get_permissions()


class BaseModelViewSet(RoleMapMixin, viewsets.ModelViewSet):
    pass


class BaseReadOnlyViewSet(RoleMapMixin, viewsets.ReadOnlyModelViewSet):
    pass


MANAGERS = (User.Roles.ADMIN, User.Roles.MANAGER)
BILLING = (User.Roles.ADMIN, User.Roles.MANAGER, User.Roles.ACCOUNTANT)


class ClientViewSet(BaseModelViewSet):
    queryset = Client.objects.all().order_by('name')
    serializer_class = ClientSerializer
    search_fields = ('name', 'phone', 'email', 'gst_number', 'pan_number')
    ordering_fields = ('name', 'created_at', 'updated_at')
    role_map = {
        'create': MANAGERS,
        'update': MANAGERS,
        'partial_update': MANAGERS,
        'destroy': MANAGERS,
    }


class TaskTemplateViewSet(BaseModelViewSet):
    serializer_class = TaskTemplateSerializer
    filterset_class = TaskTemplateFilter
    search_fields = ('title', 'description')
    ordering_fields = ('title', 'category', 'usage_count', 'created_at')
    role_map = {
        'create': MANAGERS,
        'update': MANAGERS,
        'partial_update': MANAGERS,
        'destroy': MANAGERS,
        'expand': MANAGERS,
        'instantiate': MANAGERS,
    }

    def get_queryset(self):
        return (
            TaskTemplate.objects.filter(is_deleted=False)
            .select_related('client')
            .prefetch_related('assignees', 'subtasks')
            .order_by('title')
        )

    def perform_create(self, serializer):
        serializer.save(created_by=self.request.user)

    def perform_destroy(self, instance):
        # Generated tasks keep their link; the template just stops producing new ones.
        instance.is_deleted = True
        instance.is_active = False
        instance.save(update_fields=['is_deleted', 'is_active', 'updated_at'])

    @action(detail=True, methods=['post'])
    def expand(self, request, pk=None):
        template = self.get_object()
        params = TemplateExpandSerializer(data=request.data)
        params.is_valid(raise_exception=True)
        as_of = params.validated_data.get('as_of') or timezone.localdate()
        lookahead = params.validated_data.get('lookahead_days')
        if lookahead is None:
            lookahead = AutomationSettings.load().lookahead_days
        with db_transaction.atomic():
            created = expand_due(template, as_of, lookahead)
        return Response(
            {'created': TaskSerializer(created, many=True).data},
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
        )

    @action(detail=True, methods=['post'])
    def instantiate(self, request, pk=None):
        template = self.get_object()
        params = TemplateInstantiateSerializer(data=request.data)
        params.is_valid(raise_exception=True)
        try:
            task = instantiate_template(
                template,
                due_date=params.validated_data['due_date'],
                client=params.validated_data.get('client'),
                assignees=params.validated_data.get('assignees'),
                actor=request.user,
            )
        except IntegrityError as exc:
            raise Conflict('This template already has a task due on that date.') from exc
        return Response(TaskSerializer(task).data, status=status.HTTP_201_CREATED)


class TaskViewSet(BaseModelViewSet):
    serializer_class = TaskSerializer
    filterset_class = TaskFilter
    search_fields = ('title', 'client__name')
    ordering_fields = ('due_date', 'priority', 'status', 'created_at')
    role_map = {
        'create': MANAGERS,
        'update': MANAGERS,
        'partial_update': MANAGERS,
        'destroy': MANAGERS,
        'invoice': BILLING,
    }

    def get_queryset(self):
        qs = (
            Task.objects.filter(is_deleted=False)
            .select_related('client', 'invoice', 'template')
            .prefetch_related('assignees', 'subtasks')
        )
        return visible_tasks_for_user(self.request.user, qs)

    def perform_create(self, serializer):
        task = serializer.save(created_by=self.request.user)
        notify_task_change(
            task,
            actor=self.request.user,
            message=f"{self.request.user} assigned you task \"{task.title}\".",
            category='task_created',
        )

    def perform_destroy(self, instance):
        instance.soft_delete()

    @action(detail=True, methods=['post'])
    def transition(self, request, pk=None):
        task = self.get_object()
        if not can_manage_task(request.user, task):
            raise PermissionDenied('You do not have permission to update this task.')
        params = TaskTransitionSerializer(data=request.data)
        params.is_valid(raise_exception=True)
        try:
            transition(task, params.validated_data['status'], actor=request.user)
        except AutomationError as exc:
            return automation_error_response(exc)
        return Response(TaskSerializer(self.get_queryset().get(pk=task.pk)).data)

    @action(detail=True, methods=['post'])
    def invoice(self, request, pk=None):
        task = self.get_object()
        try:
            invoice = generate_for_task(task.pk, actor=request.user)
        except AlreadyInvoiced as exc:
            return Response(InvoiceSerializer(exc.invoice).data, status=status.HTTP_200_OK)
        except AutomationError as exc:
            return automation_error_response(exc)
        return Response(InvoiceSerializer(invoice).data, status=status.HTTP_201_CREATED)


class InvoiceViewSet(BaseModelViewSet):
    serializer_class = InvoiceSerializer
    filterset_class = InvoiceFilter
    search_fields = ('invoice_number', 'client__name', 'task__title')
    ordering_fields = ('issue_date', 'due_date', 'status', 'total')
    # Invoices are cancelled, never deleted.
    http_method_names = ['get', 'post', 'put', 'patch', 'head', 'options']
    role_map = {
        'create': BILLING,
        'update': BILLING,
        'partial_update': BILLING,
        'cancel': BILLING,
    }

    def get_queryset(self):
        return Invoice.objects.select_related('client', 'task')

    def perform_create(self, serializer):
        try:
            with db_transaction.atomic():
                serializer.save(created_by=self.request.user)
        except IntegrityError as exc:
            raise Conflict('This task already has an active invoice.') from exc

    def perform_update(self, serializer):
        try:
            with db_transaction.atomic():
                serializer.save()
        except IntegrityError as exc:
            raise Conflict('This task already has an active invoice.') from exc

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        invoice = self.get_object()
        try:
            invoice.cancel()
        except DjangoValidationError as exc:
            return Response({'detail': exc.messages}, status=status.HTTP_400_BAD_REQUEST)
        return Response(InvoiceSerializer(invoice).data)


class CommunicationLogViewSet(BaseReadOnlyViewSet):
    queryset = CommunicationLog.objects.select_related('client', 'recipient_user', 'task')
    serializer_class = CommunicationLogSerializer
    filterset_class = CommunicationLogFilter
    search_fields = ('subject', 'message', 'recipient_email', 'recipient_phone')
    ordering_fields = ('created_at', 'status')
    allowed_roles = BILLING


class NotificationViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = NotificationSerializer
    filterset_fields = ('is_read', 'category')

    def get_queryset(self):
        return Notification.objects.filter(user=self.request.user).order_by('is_read', '-created_at')

    @action(detail=True, methods=['post'])
    def mark_read(self, request, pk=None):
        notification = self.get_object()
        notification.is_read = True
        notification.save(update_fields=['is_read', 'updated_at'])
        return Response(NotificationSerializer(notification).data)


class AutomationSettingsView(generics.RetrieveUpdateAPIView):
    serializer_class = AutomationSettingsSerializer
    permission_classes = (IsAuthenticated, RolePermission)

    def get_permissions(self):
        self.allowed_roles = None if self.request.method in SAFE_METHODS else (User.Roles.ADMIN,)
        return super().get_permissions()

    def get_object(self):
        return AutomationSettings.load()


class AutomationRunViewSet(BaseReadOnlyViewSet):
    queryset = AutomationRun.objects.all()
    serializer_class = AutomationRunSerializer
    filterset_fields = ('trigger', 'as_of')
    ordering_fields = ('started_at', 'as_of')
    role_map = {'run': MANAGERS}

    @action(detail=False, methods=['post'])
    def run(self, request):
        params = AutomationRunRequestSerializer(data=request.data)
        params.is_valid(raise_exception=True)
        day = params.validated_data.get('date')
        now = timezone.make_aware(dt.datetime.combine(day, dt.time(hour=9))) if day else None
        report = run_tick(now, trigger=AutomationRun.Trigger.MANUAL)
        run = AutomationRun.objects.get(pk=report.run_id)
        return Response(AutomationRunSerializer(run).data, status=status.HTTP_201_CREATED)
