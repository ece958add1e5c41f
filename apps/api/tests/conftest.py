"""
Global test fixtures for pytest.

Provides reusable fixtures for ledger testing:
- Users and authenticated API clients by billing role
- A billing record factory going through the service layer
"""
from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.contrib.auth.models import Group
from django.utils import timezone
from rest_framework.test import APIClient

from apps.billing import services
from apps.billing.permissions import ACCOUNTING, FINANCE, RECEPTION

User = get_user_model()


def _create_user(username, group_name=None, **kwargs):
    user = User.objects.create_user(
        username=username,
        email=f'{username}@clinic.test',
        password='testpass123',
        **kwargs
    )
    if group_name:
        group, _ = Group.objects.get_or_create(name=group_name)
        user.groups.add(group)
    return user


def _client_for(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client


# ============================================================================
# Users
# ============================================================================

@pytest.fixture
def finance_user(db):
    return _create_user('finance', FINANCE)


@pytest.fixture
def reception_user(db):
    return _create_user('reception', RECEPTION)


@pytest.fixture
def accounting_user(db):
    return _create_user('accounting', ACCOUNTING)


@pytest.fixture
def outsider_user(db):
    """Authenticated user without any billing role."""
    return _create_user('outsider')


@pytest.fixture
def superuser(db):
    return _create_user('admin', is_staff=True, is_superuser=True)


# ============================================================================
# API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def finance_client(finance_user):
    """
    Authenticated API client with the Finance role.
    Finance may record payments, corrections, status commands and payouts.
    """
    return _client_for(finance_user)


@pytest.fixture
def reception_client(reception_user):
    """
    Authenticated API client with the Reception role.
    Reception creates billing records and records payments.
    """
    return _client_for(reception_user)


@pytest.fixture
def accounting_client(accounting_user):
    """Authenticated API client with the read-only Accounting role."""
    return _client_for(accounting_user)


@pytest.fixture
def outsider_client(outsider_user):
    return _client_for(outsider_user)


@pytest.fixture
def admin_client(superuser):
    """Authenticated API client for a superuser (full access)."""
    return _client_for(superuser)


# ============================================================================
# Ledger data
# ============================================================================

@pytest.fixture
def today():
    return timezone.localdate()


def line(unit_price, item_type='consultation', quantity=1, item_name=None):
    """One billing line item as accepted by services.create_billing."""
    return {
        'item_type': item_type,
        'item_name': item_name or f'{item_type.title()} line',
        'quantity': quantity,
        'unit_price': unit_price,
    }


@pytest.fixture
def billing_line():
    return line


@pytest.fixture
def make_billing(db, finance_user, today):
    """
    Factory for billing records created through the service layer.

    Usage:
        billing = make_billing(15000)                       # one consultation line
        billing = make_billing(20000, due_date=today - timedelta(days=45))

    Without an explicit billing_date the record is dated today, or on its due
    date when that lies in the past.
    """
    def _make(
        total=15000,
        doctor_ref='DOC-1',
        patient_ref='PAT-1',
        billing_type='private',
        billing_date=None,
        due_date=None,
        items=None,
        **kwargs
    ):
        if billing_date is None:
            billing_date = min(today, due_date) if due_date else today
        if due_date is None:
            due_date = billing_date + timedelta(days=30)
        if billing_type in services.INSURED_BILLING_TYPES:
            kwargs.setdefault('insurance_company', 'Unimed')

        return services.create_billing(
            patient_ref=patient_ref,
            doctor_ref=doctor_ref,
            billing_type=billing_type,
            items=items if items is not None else [line(total)],
            due_date=due_date,
            billing_date=billing_date,
            created_by=finance_user,
            **kwargs
        )

    return _make
