"""
Ledger error taxonomy.

Every ledger failure is a typed error: nothing is partially applied when one
is raised. `OverpaymentError` is the exception to the rule: it is a soft
warning returned alongside a successfully recorded payment, never raised.
"""


class LedgerError(Exception):
    """Base class for all billing ledger errors."""

    error_type = 'ledger_error'
    status_code = 400

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        data = {'error': self.message, 'error_type': self.error_type}
        data.update(self.context)
        return data


class ValidationError(LedgerError):
    """Malformed input. Caller's fault, never retried."""
    error_type = 'validation_error'
    status_code = 400


class InvalidAmountError(ValidationError):
    """Payment amount has the wrong sign for the requested operation."""
    error_type = 'invalid_amount'


class RangeError(ValidationError):
    """date_from is after date_to."""
    error_type = 'range_error'

    def __init__(self, date_from, date_to):
        super().__init__(
            f'Invalid date range: {date_from} is after {date_to}',
            date_from=str(date_from),
            date_to=str(date_to),
        )


class NotFoundError(LedgerError):
    error_type = 'not_found'
    status_code = 404


class ConflictError(LedgerError):
    """State transition not permitted from the current state."""
    error_type = 'conflict'
    status_code = 409


class ClosedBillingError(ConflictError):
    """Billing record is cancelled or refunded; no money may be applied."""
    error_type = 'closed_billing'


class AlreadyPaidError(ConflictError):
    """A payout for the period was already paid."""
    error_type = 'already_paid'

    def __init__(self, payout_number, message=None):
        super().__init__(
            message or f'Payout {payout_number} is already paid',
            payout_number=payout_number,
        )
        self.payout_number = payout_number


class PayoutError(LedgerError):
    """Payout cannot be produced; requires a human decision."""
    error_type = 'payout_error'
    status_code = 422

    def __init__(self, reason, message=None, **context):
        super().__init__(message or f'Payout calculation failed: {reason}', reason=reason, **context)
        self.reason = reason


class DependencyError(LedgerError):
    """External collaborator unreachable, timed out or answered garbage."""
    error_type = 'dependency_error'
    status_code = 503

    def __init__(self, dependency, message):
        super().__init__(message, dependency=dependency)
        self.dependency = dependency


class OverpaymentError(LedgerError):
    """
    Soft warning: the billing record's payments now exceed its total.

    Returned with the recorded payment so a human can decide on a refund or
    credit. Never raised by the ledger.
    """
    error_type = 'overpayment'
    status_code = 200

    def __init__(self, billing_number, overpayment_amount):
        super().__init__(
            f'Billing {billing_number} is overpaid by {overpayment_amount}',
            billing_number=billing_number,
            overpayment_amount=overpayment_amount.to_dict(),
        )
        self.overpayment_amount = overpayment_amount
