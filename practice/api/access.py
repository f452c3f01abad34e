from __future__ import annotations

from practice.models import User

# Roles that see every task; everyone else sees the tasks assigned to them.
FIRM_WIDE_ROLES = (User.Roles.ADMIN, User.Roles.MANAGER, User.Roles.ACCOUNTANT, User.Roles.VIEWER)


def can_view_all_tasks(user: User | None) -> bool:
    if not user or not user.is_authenticated:
        return False
    return bool(user.is_superuser or user.has_any_role(*FIRM_WIDE_ROLES))


def can_manage_task(user: User | None, task) -> bool:
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser or user.has_any_role(User.Roles.ADMIN, User.Roles.MANAGER):
        return True
    return user.role != User.Roles.VIEWER and task.assignees.filter(pk=user.pk).exists()


def visible_tasks_for_user(user: User | None, queryset):
    if can_view_all_tasks(user):
        return queryset
    if not user or not user.is_authenticated:
        return queryset.none()
    return queryset.filter(assignees=user).distinct()
