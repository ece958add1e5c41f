"""Human-readable document numbers (BIL-2026-000001, PAY-2026-000001) and per-doctor payout locks."""
from django.db import transaction
from django.utils import timezone

from .models import DoctorPayoutLock, DocumentSequence

BILLING_PREFIX = 'BIL'
PAYOUT_PREFIX = 'PAY'


@transaction.atomic
def next_number(prefix: str, year: int = None) -> str:
    """
    Allocate the next number for `prefix` in `year`.

    The sequence row is locked until the caller's transaction commits, so two
    concurrent writers never receive the same number. Numbers are never reused.
    """
    year = year or timezone.localdate().year
    DocumentSequence.objects.get_or_create(prefix=prefix, year=year)
    sequence = DocumentSequence.objects.select_for_update().get(prefix=prefix, year=year)
    sequence.last_value += 1
    sequence.save(update_fields=['last_value'])
    return f'{prefix}-{year}-{sequence.last_value:06d}'


@transaction.atomic
def lock_doctor_payouts(doctor_ref: str) -> DoctorPayoutLock:
    """
    Lock the doctor's payout row until the caller's transaction commits.

    Overlap checks against payouts that do not exist yet have nothing to lock,
    so writers that depend on a doctor's payout periods take this row first.
    """
    DoctorPayoutLock.objects.get_or_create(doctor_ref=doctor_ref)
    return DoctorPayoutLock.objects.select_for_update().get(doctor_ref=doctor_ref)
