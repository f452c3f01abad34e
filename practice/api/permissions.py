from __future__ import annotations

from typing import Iterable

from rest_framework.permissions import SAFE_METHODS, BasePermission

from practice.models import User


class RolePermission(BasePermission):
    allowed_roles: Iterable[str] | None = None

    def has_permission(self, request, view) -> bool:
        roles = getattr(view, 'allowed_roles', None) or self.allowed_roles
        if not roles:
            return True
        user = getattr(request, 'user', None)
        if not user or not user.is_authenticated:
            return False
        if user.is_superuser:
            return True
        has_any = getattr(user, 'has_any_role', None)
        if callable(has_any):
            return has_any(*roles)
        return getattr(user, 'role', None) in roles


class ReadOnlyForViewers(BasePermission):
    """Viewers may browse everything but never write."""

    def has_permission(self, request, view) -> bool:
        if request.method in SAFE_METHODS:
            return True
        user = getattr(request, 'user', None)
        return bool(user and user.is_authenticated and getattr(user, 'role', None) != User.Roles.VIEWER)
