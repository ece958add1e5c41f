"""
Domain events logging helpers.

Provides structured event logging for ledger operations.
"""
from typing import Dict, Optional

from .logging import get_sanitized_logger, sanitize_dict

logger = get_sanitized_logger(__name__)


def log_domain_event(
    event_name: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_ids: Optional[Dict[str, str]] = None,
    result: str = 'success',
    **extra_fields
):
    """
    Log a domain event with structured data.

    Args:
        event_name: Name of the event (e.g., 'payment.recorded')
        entity_type: Type of entity (e.g., 'BillingRecord', 'PhysicianPayout')
        entity_id: ID of primary entity
        entity_ids: Dictionary of related entity IDs
        result: Result of operation (success, warning, blocked, failure)
        **extra_fields: Additional fields to log (will be sanitized)

    Example:
        log_domain_event(
            'payment.recorded',
            entity_type='Payment',
            entity_id=str(payment.id),
            entity_ids={'billing_id': str(billing.id)},
            amount=payment.amount,
        )
    """
    event_data = {
        'event': event_name,
        'result': result,
    }

    if entity_type:
        event_data['entity_type'] = entity_type

    if entity_id:
        event_data['entity_id'] = entity_id

    if entity_ids:
        event_data.update(entity_ids)

    event_data.update(sanitize_dict(extra_fields))

    if result in ['failure', 'error']:
        logger.error(f'Domain event: {event_name}', extra=event_data)
    elif result in ['warning', 'blocked']:
        logger.warning(f'Domain event: {event_name}', extra=event_data)
    else:
        logger.info(f'Domain event: {event_name}', extra=event_data)


def log_consistency_checkpoint(
    checkpoint_name: str,
    entity_ids: Dict[str, str],
    checks_passed: Dict[str, bool],
    **extra_fields
):
    """
    Log a consistency checkpoint event.

    Used to verify ledger integrity at critical points (after every payment
    write, after payout calculation).
    """
    all_passed = all(checks_passed.values())

    event_data = {
        'event': 'consistency_checkpoint',
        'checkpoint': checkpoint_name,
        'status': 'passed' if all_passed else 'failed',
        'checks': checks_passed,
    }
    event_data.update(entity_ids)
    event_data.update(sanitize_dict(extra_fields))

    if all_passed:
        logger.info(f'Checkpoint passed: {checkpoint_name}', extra=event_data)
    else:
        logger.error(f'Checkpoint FAILED: {checkpoint_name}', extra=event_data)
    return all_passed


def log_billing_created(billing, duration_ms=None):
    extra = {
        'billing_type': billing.billing_type,
        'total_amount': billing.total_amount,
        'currency': billing.currency,
        'item_count': billing.items.count(),
    }
    if duration_ms is not None:
        extra['duration_ms'] = duration_ms

    log_domain_event(
        'billing.created',
        entity_type='BillingRecord',
        entity_id=str(billing.id),
        entity_ids={'billing_number': billing.billing_number},
        **extra
    )


def log_payment_recorded(payment, billing, duration_ms=None):
    extra = {
        'kind': payment.kind,
        'method': payment.method,
        'amount': payment.amount,
        'sequence': payment.sequence,
    }
    if duration_ms is not None:
        extra['duration_ms'] = duration_ms

    log_domain_event(
        f'{payment.kind}.recorded',
        entity_type='Payment',
        entity_id=str(payment.id),
        entity_ids={'billing_id': str(billing.id), 'billing_number': billing.billing_number},
        **extra
    )


def log_overpayment(billing, payment, overpayment_amount):
    """Overpayment requires a human refund/credit decision."""
    log_domain_event(
        'payment.overpayment',
        entity_type='BillingRecord',
        entity_id=str(billing.id),
        entity_ids={'billing_number': billing.billing_number, 'payment_id': str(payment.id)},
        result='warning',
        overpayment_amount=overpayment_amount.amount,
        currency=overpayment_amount.currency,
    )


def log_billing_transition(billing, from_status, to_status, result='success', **extra):
    log_domain_event(
        'billing.transition',
        entity_type='BillingRecord',
        entity_id=str(billing.id),
        entity_ids={'billing_number': billing.billing_number},
        result=result,
        from_status=from_status,
        to_status=to_status,
        **extra
    )


def log_payout_event(event_name, payout, result='success', **extra):
    log_domain_event(
        event_name,
        entity_type='PhysicianPayout',
        entity_id=str(payout.id),
        entity_ids={'payout_number': payout.payout_number, 'doctor_ref': payout.doctor_ref},
        result=result,
        **extra
    )
