"""Input coercion shared by the services.

Request bodies arrive loosely typed; everything is checked here and turned
into floats, strings or enum members before any record is touched.
"""

import math

from errors import ValidationError


def parse_enum(enum_cls, value, field: str, default=None):
    if value is None or value == '':
        if default is not None:
            return default
        raise ValidationError(f'{field} is required')
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ', '.join(member.value for member in enum_cls)
        raise ValidationError(f'Invalid {field} {value!r}. Must be one of: {allowed}') from None


def parse_amount(value, field: str, allow_zero: bool = False, allow_negative: bool = False) -> float:
    if value is None or value == '' or isinstance(value, bool):
        raise ValidationError(f'{field} must be a number')
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number') from None
    if math.isnan(amount) or math.isinf(amount):
        raise ValidationError(f'{field} must be a finite number')
    if allow_negative:
        if amount == 0:
            raise ValidationError(f'{field} must not be zero')
        return amount
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = 'zero or positive' if allow_zero else 'positive'
        raise ValidationError(f'{field} must be a {qualifier} number')
    return amount


def require_text(value, field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f'{field} is required')
    return str(value).strip()
