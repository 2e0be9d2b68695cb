from rest_framework.permissions import BasePermission

from .constants import UserRole


class IsAdminRole(BasePermission):
    """管理端接口：role == admin。和 Django 的 is_staff 无关。"""

    message = 'Administrator role required'

    def has_permission(self, request, view):
        user = request.user
        return bool(user and user.is_authenticated and getattr(user, 'role', None) == UserRole.ADMIN)
