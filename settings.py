"""Configuration defaults and the config objects handed to the services.

The Flask app loads ``DEFAULTS`` first, then any ``FLASK_*`` environment
variables (``FLASK_SQLALCHEMY_DATABASE_URI``, ``FLASK_RENT_COVER_POLICY`` and
so on), then whatever mapping is passed to ``create_app``.  Services never
read ``current_app.config`` directly; they receive a ``RentConfig`` or
``GatewayConfig`` built from the final mapping.
"""

from dataclasses import dataclass
from typing import Mapping, Optional

from accrual import CoverPolicy
from errors import ValidationError


DEFAULTS = {
    'SECRET_KEY': 'change-me',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///fleet_rent.db',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'RENT_COVER_POLICY': CoverPolicy.FLAT.value,
    'RENT_CONFLICT_RETRIES': 3,
    'PAYMENT_GATEWAY': 'ZWITCH',
    'PAYMENT_WEBHOOK_SECRET': None,
    'RENT_LOG_LEVEL': 'INFO',
}


@dataclass(frozen=True)
class RentConfig:
    cover_policy: CoverPolicy = CoverPolicy.FLAT
    conflict_retries: int = 3
    default_gateway: str = 'ZWITCH'

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> 'RentConfig':
        policy = mapping.get('RENT_COVER_POLICY', DEFAULTS['RENT_COVER_POLICY'])
        try:
            cover_policy = CoverPolicy(policy)
        except ValueError:
            raise ValidationError(f'Unknown RENT_COVER_POLICY {policy!r}') from None
        retries = int(mapping.get('RENT_CONFLICT_RETRIES', DEFAULTS['RENT_CONFLICT_RETRIES']))
        if retries < 0:
            raise ValidationError('RENT_CONFLICT_RETRIES must not be negative')
        return cls(cover_policy=cover_policy,
                   conflict_retries=retries,
                   default_gateway=mapping.get('PAYMENT_GATEWAY') or DEFAULTS['PAYMENT_GATEWAY'])


@dataclass(frozen=True)
class GatewayConfig:
    name: str = 'ZWITCH'
    webhook_secret: Optional[str] = None

    @classmethod
    def from_mapping(cls, mapping: Mapping) -> 'GatewayConfig':
        return cls(name=mapping.get('PAYMENT_GATEWAY') or DEFAULTS['PAYMENT_GATEWAY'],
                   webhook_secret=mapping.get('PAYMENT_WEBHOOK_SECRET') or None)
