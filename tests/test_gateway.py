import hashlib
import hmac

import pytest

from errors import ValidationError
from gateway import GatewayAdapter, PaymentOutcome
from models import CaptureStatus, PaymentType
from settings import GatewayConfig


SECRET = 'whsec_test'


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode('utf-8'), body, hashlib.sha256).hexdigest()


class TestSignature:

    def test_valid(self):
        adapter = GatewayAdapter(GatewayConfig(webhook_secret=SECRET))
        body = b'{"payment_id": "pay_1"}'
        assert adapter.verify_signature(body, sign(body)) is True

    def test_tampered_body(self):
        adapter = GatewayAdapter(GatewayConfig(webhook_secret=SECRET))
        assert adapter.verify_signature(b'{"amount": 1}', sign(b'{"amount": 100}')) is False

    def test_missing_signature(self):
        adapter = GatewayAdapter(GatewayConfig(webhook_secret=SECRET))
        assert adapter.verify_signature(b'{}', None) is False

    def test_no_secret_configured(self):
        assert GatewayAdapter(GatewayConfig()).verify_signature(b'{}', None) is True


class TestParseCallback:

    @pytest.fixture
    def adapter(self):
        return GatewayAdapter(GatewayConfig(name='ZWITCH'))

    def test_webhook_fields(self, adapter):
        outcome = adapter.parse_callback({
            'payment_id': 'pay_1',
            'merchant_order_id': 'order_1',
            'payment_token': 'tok_1',
            'amount': '1500.50',
            'status': 'captured',
            'udf2': '12',
            'udf3': 'security',
        })
        assert outcome == PaymentOutcome(transaction_id='pay_1', amount=1500.5,
                                         status=CaptureStatus.CAPTURED,
                                         payment_type=PaymentType.SECURITY,
                                         merchant_order_id='order_1', payment_token='tok_1',
                                         gateway='ZWITCH', selection_id=12)

    def test_failed_attempt_without_payment_id(self, adapter):
        outcome = adapter.parse_callback({'merchant_order_id': 'order_2', 'amount': 100,
                                          'status': 'failed', 'udf2': 3})
        assert outcome.transaction_id == 'order_2'
        assert outcome.status is CaptureStatus.FAILED
        assert outcome.payment_type is PaymentType.RENT
        assert not outcome.is_captured

    @pytest.mark.parametrize('raw, expected', [
        ('success', CaptureStatus.CAPTURED),
        ('PAID', CaptureStatus.CAPTURED),
        ('canceled', CaptureStatus.CANCELLED),
        ('pending', CaptureStatus.PENDING),
    ])
    def test_status_spellings(self, adapter, raw, expected):
        outcome = adapter.parse_callback({'payment_id': 'p', 'amount': 1, 'status': raw})
        assert outcome.status is expected

    def test_client_shape(self, adapter):
        outcome = adapter.parse_callback({'transactionId': 'tx9', 'amount': 250,
                                          'paymentType': 'rent', 'selectionId': 4})
        assert (outcome.transaction_id, outcome.amount, outcome.selection_id) == ('tx9', 250.0, 4)
        assert outcome.gateway == 'ZWITCH'

    @pytest.mark.parametrize('payload', [
        {'payment_id': 'p', 'amount': 'lots', 'status': 'captured'},
        {'payment_id': 'p', 'amount': 10, 'status': 'refunded'},
        {'payment_id': 'p', 'amount': 10, 'udf3': 'tip'},
        {'payment_id': 'p', 'amount': 10, 'udf2': 'abc'},
        {'amount': 10},
    ])
    def test_rejects_bad_payloads(self, adapter, payload):
        with pytest.raises(ValidationError):
            adapter.parse_callback(payload)

    def test_rejects_non_object(self, adapter):
        with pytest.raises(ValidationError):
            adapter.parse_callback(['not', 'a', 'dict'])
