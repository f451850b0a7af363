from rest_framework import permissions


class IsAdminRole(permissions.BasePermission):
    """Only admins (role or superuser)."""
    message = 'Admin access required'

    def has_permission(self, request, view):
        user = getattr(request, 'user', None)
        return bool(user and user.is_authenticated and user.is_admin_role)


class IsDeliveryRole(permissions.BasePermission):
    """Only delivery drivers."""
    message = 'Delivery access required'

    def has_permission(self, request, view):
        user = getattr(request, 'user', None)
        return bool(user and user.is_authenticated and user.is_delivery)
