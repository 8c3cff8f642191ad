"""Payment gateway callback handling.

The gateway itself (token creation, checkout pages, payouts) lives outside
this service.  What arrives here is its webhook: a JSON body signed with an
HMAC-SHA256 of the raw payload.  ``GatewayAdapter`` checks the signature and
normalises the body into a ``PaymentOutcome`` that the reconciler applies.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from errors import ValidationError
from models import CaptureStatus, PaymentType
from settings import GatewayConfig
from validators import parse_amount, parse_enum, require_text


logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ('X-Zwitch-Signature', 'Zwitch-Signature')

# Gateways disagree on spelling; map the variants we have seen.
STATUS_ALIASES = {
    'success': CaptureStatus.CAPTURED.value,
    'successful': CaptureStatus.CAPTURED.value,
    'paid': CaptureStatus.CAPTURED.value,
    'canceled': CaptureStatus.CANCELLED.value,
    'failure': CaptureStatus.FAILED.value,
}


@dataclass(frozen=True)
class PaymentOutcome:
    transaction_id: str
    amount: float
    status: CaptureStatus = CaptureStatus.CAPTURED
    payment_type: PaymentType = PaymentType.RENT
    merchant_order_id: Optional[str] = None
    payment_token: Optional[str] = None
    gateway: Optional[str] = None
    selection_id: Optional[int] = None

    @property
    def is_captured(self) -> bool:
        return self.status is CaptureStatus.CAPTURED

    @classmethod
    def from_mapping(cls, data: dict, gateway: Optional[str] = None) -> 'PaymentOutcome':
        """Build an outcome from the client-facing camelCase shape."""
        status = str(data.get('status') or CaptureStatus.CAPTURED.value).lower()
        status = STATUS_ALIASES.get(status, status)
        selection_id = data.get('selectionId')
        return cls(
            transaction_id=require_text(data.get('transactionId') or data.get('paymentId'), 'transactionId'),
            amount=parse_amount(data.get('amount'), 'amount'),
            status=parse_enum(CaptureStatus, status, 'status'),
            payment_type=parse_enum(PaymentType, data.get('paymentType') or data.get('type'),
                                    'paymentType', default=PaymentType.RENT),
            merchant_order_id=data.get('merchantOrderId'),
            payment_token=data.get('paymentToken'),
            gateway=data.get('gateway') or gateway,
            selection_id=_selection_id(selection_id),
        )


def _selection_id(value) -> Optional[int]:
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Invalid plan selection ID {value!r}') from None


class GatewayAdapter:

    def __init__(self, config: GatewayConfig):
        self.config = config

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> bool:
        """Return True when the body was signed with the webhook secret.

        Without a configured secret every callback is accepted.
        """
        if not self.config.webhook_secret:
            return True
        if not signature:
            logger.warning('%s callback without a signature header', self.config.name)
            return False
        expected = hmac.new(self.config.webhook_secret.encode('utf-8'), raw_body,
                            hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature.strip()):
            logger.warning('Invalid %s webhook signature', self.config.name)
            return False
        return True

    def parse_callback(self, payload: dict) -> PaymentOutcome:
        """Normalise a webhook body.

        ``udf2`` carries the plan selection id and ``udf3`` the payment type,
        as set when the payment token was created.  The camelCase shape used
        by the client confirmation call is accepted too.
        """
        if not isinstance(payload, dict):
            raise ValidationError('Callback body must be a JSON object')
        if 'payment_id' not in payload and 'merchant_order_id' not in payload:
            return PaymentOutcome.from_mapping(payload, gateway=self.config.name)
        return PaymentOutcome.from_mapping({
            # failed attempts may arrive without a payment id
            'transactionId': payload.get('payment_id') or payload.get('merchant_order_id'),
            'merchantOrderId': payload.get('merchant_order_id'),
            'paymentToken': payload.get('payment_token'),
            'amount': payload.get('amount'),
            'status': payload.get('status'),
            'selectionId': payload.get('udf2'),
            'paymentType': payload.get('udf3'),
        }, gateway=self.config.name)
