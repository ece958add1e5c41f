"""
DRF Permission classes for billing RBAC.

- Reception: create billing records, record payments, read
- Finance: everything Reception can, plus corrections, cancel/dispute/refund
  and physician payouts
- Accounting: read only (reports, dashboard, payouts)
- Superuser: Full access
"""
from rest_framework import permissions

RECEPTION = 'Reception'
FINANCE = 'Finance'
ACCOUNTING = 'Accounting'

BILLING_GROUPS = (RECEPTION, FINANCE, ACCOUNTING)


def _in_groups(user, groups):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    return user.groups.filter(name__in=groups).exists()


class IsBillingStaff(permissions.BasePermission):
    """
    Any billing role may read; writes are limited to Reception and Finance.
    """

    message = 'Billing access requires the Reception, Finance or Accounting role.'

    def has_permission(self, request, view):
        if request.method in permissions.SAFE_METHODS:
            return _in_groups(request.user, BILLING_GROUPS)
        return _in_groups(request.user, (RECEPTION, FINANCE))


class IsFinanceOrAdmin(permissions.BasePermission):
    """
    Money reversals and payouts are Finance-only.

    Accounting may still read payouts.
    """

    message = 'This operation requires the Finance role or admin privileges.'

    def has_permission(self, request, view):
        if request.method in permissions.SAFE_METHODS:
            return _in_groups(request.user, (FINANCE, ACCOUNTING))
        return _in_groups(request.user, (FINANCE,))
