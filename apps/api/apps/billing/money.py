"""
Fixed-point money value type.

Amounts are integer minor units (cents) tagged with an ISO 4217 currency code.
No float ever represents a monetary amount.
"""
from decimal import Decimal, ROUND_HALF_UP
from functools import total_ordering

from django.conf import settings


def default_currency():
    """Ledger currency configured in settings (single-currency ledger)."""
    return getattr(settings, 'BILLING_CURRENCY', 'BRL')


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of minor units to an int, halves away from zero."""
    return int(value.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


@total_ordering
class Money:
    """
    Immutable amount of money in minor units.

    Usage:
        fee = Money(15000, 'BRL').percentage(Decimal('20'))  # Money(3000, 'BRL')
    """

    __slots__ = ('_amount', '_currency')

    def __init__(self, amount, currency=None):
        if isinstance(amount, bool) or isinstance(amount, float):
            raise TypeError('Money amount must be an integer number of minor units, not float')
        if isinstance(amount, Decimal):
            if amount != amount.to_integral_value():
                raise TypeError(f'Money amount must be whole minor units, got {amount}')
            amount = int(amount)
        if not isinstance(amount, int):
            raise TypeError(f'Money amount must be int, got {type(amount).__name__}')

        currency = (currency or default_currency()).upper()
        if len(currency) != 3:
            raise ValueError(f'Invalid currency code: {currency!r}')

        object.__setattr__(self, '_amount', amount)
        object.__setattr__(self, '_currency', currency)

    def __setattr__(self, name, value):
        raise AttributeError('Money is immutable')

    @property
    def amount(self) -> int:
        return self._amount

    @property
    def currency(self) -> str:
        return self._currency

    @classmethod
    def zero(cls, currency=None):
        return cls(0, currency)

    @classmethod
    def sum(cls, values, currency=None):
        """Sum an iterable of Money; an empty iterable gives zero in `currency`."""
        total = cls.zero(currency)
        for value in values:
            total = total + value
        return total

    def _check_currency(self, other):
        if not isinstance(other, Money):
            raise TypeError(f'Cannot combine Money with {type(other).__name__}')
        if other.currency != self.currency:
            raise ValueError(
                f'Currency mismatch: {self.currency} vs {other.currency}. '
                f'The ledger does not convert currencies.'
            )

    def __add__(self, other):
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other):
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def __neg__(self):
        return Money(-self.amount, self.currency)

    def __mul__(self, quantity):
        if not isinstance(quantity, int) or isinstance(quantity, bool):
            raise TypeError('Money can only be multiplied by an integer quantity')
        return Money(self.amount * quantity, self.currency)

    __rmul__ = __mul__

    def __eq__(self, other):
        if not isinstance(other, Money):
            return NotImplemented
        return self.amount == other.amount and self.currency == other.currency

    def __lt__(self, other):
        self._check_currency(other)
        return self.amount < other.amount

    def __hash__(self):
        return hash((self.amount, self.currency))

    def is_zero(self):
        return self.amount == 0

    def is_positive(self):
        return self.amount > 0

    def is_negative(self):
        return self.amount < 0

    def floor_zero(self):
        """Clamp negative amounts to zero (display only)."""
        return self if self.amount >= 0 else Money.zero(self.currency)

    def percentage(self, rate) -> 'Money':
        """
        Apply a percentage rate (e.g. Decimal('12.5') for 12.5%).

        Rounds half-up at the minor unit.
        """
        if isinstance(rate, float):
            raise TypeError('Percentage rate must be Decimal, int or str, not float')
        rate = Decimal(str(rate))
        return Money(round_half_up(Decimal(self.amount) * rate / Decimal('100')), self.currency)

    def to_dict(self):
        return {'amount': self.amount, 'currency': self.currency}

    def __repr__(self):
        return f'Money({self.amount}, {self.currency!r})'

    def __str__(self):
        sign = '-' if self.amount < 0 else ''
        units, cents = divmod(abs(self.amount), 100)
        return f'{self.currency} {sign}{units}.{cents:02d}'
