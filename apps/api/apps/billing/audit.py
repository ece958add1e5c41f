"""Ledger audit trail writer."""
from apps.core.observability.logging import sanitize_dict

from .models import AuditEntityTypeChoices, LedgerAuditEntry


def acting_user(user):
    """The user to attribute a write to; anonymous and system callers map to None."""
    if user is not None and getattr(user, 'is_authenticated', False):
        return user
    return None


def record_audit(action, entity, user=None, billing=None, payout=None, **metadata):
    """
    Append an audit entry for a ledger write.

    Called inside the write's transaction so the entry commits (or rolls back)
    together with the change it describes.
    """
    entity_type = {
        'BillingRecord': AuditEntityTypeChoices.BILLING_RECORD,
        'Payment': AuditEntityTypeChoices.PAYMENT,
        'PhysicianPayout': AuditEntityTypeChoices.PHYSICIAN_PAYOUT,
    }[entity.__class__.__name__]

    return LedgerAuditEntry.objects.create(
        actor=acting_user(user),
        action=action,
        entity_type=entity_type,
        entity_id=entity.id,
        billing=billing,
        payout=payout,
        metadata=sanitize_dict(metadata),
    )
