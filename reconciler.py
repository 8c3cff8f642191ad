"""Apply payments, adjustments and extra charges to plan selections.

Three entry paths feed the same buckets:

* gateway callbacks (``confirm_gateway_payment``), one ``driver_payments``
  row per event, idempotent per transaction id;
* manual confirmation by an operator (``confirm_manual_payment``), split
  across buckets by ``ALLOCATION_ORDER`` and recorded as one
  ``admin_payments`` row;
* admin bulk entry (``record_admin_payment``), either aimed at one bucket or
  split like a manual confirmation.

Each bucket on the selection always equals the sum of what both ledgers
attribute to it.  Every call runs in ``persistence.atomic`` so the
read-check-append sequence cannot interleave with another writer.
"""

import logging
from datetime import datetime
from typing import Optional

from accrual import compute_payment_details
from errors import ValidationError
from gateway import PaymentOutcome
from models import (AdminPayment, AdminPaymentType, CaptureStatus, DriverPayment,
                    PaymentMode, PaymentStatus, PaymentType, PlanSelection,
                    SelectionAdjustment, SelectionExtraAmount)
from persistence import atomic
from selections import load_selection, refresh_calculated
from settings import RentConfig
from validators import parse_amount, parse_enum


logger = logging.getLogger(__name__)

# Buckets in the order a lump-sum payment fills them.
ALLOCATION_ORDER = (
    ('deposit_paid', 'deposit_due'),
    ('rent_paid', 'rent_due'),
    ('accidental_cover_paid', 'accidental_cover_due'),
    ('extra_amount_paid', 'extra_amount_due'),
)
OVERFLOW_BUCKET = 'extra_amount_paid'
OVERPAYMENT_REASON = 'overpayment'

DEPOSIT_TYPES = (PaymentType.SECURITY, PaymentType.DEPOSIT)


def allocate(amount: float, steps) -> tuple:
    """Fill ``steps`` (``(bucket, capacity)`` pairs) in order.

    Returns the per-bucket split and whatever did not fit.
    """
    split = {bucket: 0.0 for bucket, _ in steps}
    remaining = amount
    for bucket, capacity in steps:
        portion = min(remaining, max(0.0, capacity))
        if portion > 0:
            split[bucket] = round(split[bucket] + portion, 2)
            remaining = round(remaining - portion, 2)
    return split, max(0.0, remaining)


class PaymentReconciler:

    def __init__(self, config: RentConfig):
        self.config = config

    # -- helpers ----------------------------------------------------------

    def _start_clock(self, selection: PlanSelection, now: datetime) -> None:
        """The first successful payment starts rent billing and locks the daily rate."""
        if selection.rent_start_date is not None:
            return
        selection.rent_start_date = now
        if selection.rent_per_day is None:
            selection.rent_per_day = selection.slab_rent_day or 0.0
        logger.info('Rent clock started for selection %s at %s (%.2f/day)',
                    selection.id, now, selection.rent_per_day)

    def _allocation_steps(self, selection: PlanSelection, now: datetime) -> list:
        details = compute_payment_details(selection, now, self.config.cover_policy)
        return [(bucket, getattr(details, due)) for bucket, due in ALLOCATION_ORDER]

    def _split_by_priority(self, selection: PlanSelection, amount: float, now: datetime) -> dict:
        split, overflow = allocate(amount, self._allocation_steps(selection, now))
        if overflow > 0:
            split[OVERFLOW_BUCKET] = round(split[OVERFLOW_BUCKET] + overflow, 2)
            selection.extra_reason = OVERPAYMENT_REASON
            logger.info('Selection %s overpaid by %.2f', selection.id, overflow)
        return split

    def _apply_admin_payment(self, selection: PlanSelection, amount: float, payment_type: str,
                             mode: PaymentMode, split: dict, now: datetime) -> AdminPayment:
        for bucket, portion in split.items():
            setattr(selection, bucket, round((getattr(selection, bucket) or 0.0) + portion, 2))
        selection.admin_paid_amount = round((selection.admin_paid_amount or 0.0) + amount, 2)
        entry = AdminPayment(date=now,
                             amount=amount,
                             type=payment_type,
                             mode=mode.value,
                             deposit_paid=split.get('deposit_paid', 0.0),
                             rent_paid=split.get('rent_paid', 0.0),
                             extra_amount_paid=split.get('extra_amount_paid', 0.0),
                             accidental_cover_paid=split.get('accidental_cover_paid', 0.0))
        selection.admin_payments.append(entry)
        logger.info('Admin payment of %.2f (%s) on selection %s: %s',
                    amount, payment_type, selection.id, split)
        return entry

    @staticmethod
    def _is_replay(selection: PlanSelection, outcome: PaymentOutcome) -> bool:
        for entry in selection.driver_payments:
            same_tx = entry.transaction_id == outcome.transaction_id
            same_order = (outcome.merchant_order_id is not None
                          and entry.merchant_order_id == outcome.merchant_order_id)
            if not (same_tx or same_order):
                continue
            if entry.status == CaptureStatus.CAPTURED.value:
                return True
            if same_tx and entry.status == outcome.status.value:
                return True
        return False

    # -- operations -------------------------------------------------------

    def confirm_gateway_payment(self, selection_id, outcome: PaymentOutcome,
                                now: Optional[datetime] = None) -> PlanSelection:
        """Apply one normalised gateway event.

        Replays of an already captured transaction (and exact repeats of a
        non-captured one) return the selection unchanged.  Only captured
        events touch the buckets or the rent clock; failed, cancelled and
        pending events are kept for audit.
        """
        if outcome.amount is None or outcome.amount <= 0:
            raise ValidationError('amount must be a positive number')
        if not outcome.transaction_id:
            raise ValidationError('transactionId is required')
        now = now or datetime.now()

        def operation():
            selection = load_selection(selection_id)
            if self._is_replay(selection, outcome):
                logger.warning('Ignoring replayed %s event for transaction %s on selection %s',
                               outcome.status.value, outcome.transaction_id, selection.id)
                return selection

            selection.driver_payments.append(DriverPayment(
                date=now,
                amount=outcome.amount,
                mode=PaymentMode.ONLINE.value,
                type=outcome.payment_type.value,
                transaction_id=outcome.transaction_id,
                merchant_order_id=outcome.merchant_order_id,
                payment_token=outcome.payment_token,
                gateway=outcome.gateway or self.config.default_gateway,
                status=outcome.status.value,
            ))

            if outcome.is_captured:
                self._start_clock(selection, now)
                if outcome.payment_type in DEPOSIT_TYPES:
                    selection.deposit_paid = round((selection.deposit_paid or 0.0) + outcome.amount, 2)
                else:
                    selection.rent_paid = round((selection.rent_paid or 0.0) + outcome.amount, 2)
                selection.payment_status = PaymentStatus.COMPLETED.value
                selection.payment_mode = PaymentMode.ONLINE.value
                selection.payment_date = now
                logger.info('Captured %.2f (%s) for selection %s, transaction %s',
                            outcome.amount, outcome.payment_type.value, selection.id,
                            outcome.transaction_id)
            else:
                if (outcome.status is CaptureStatus.FAILED
                        and selection.payment_status == PaymentStatus.PENDING.value):
                    selection.payment_status = PaymentStatus.FAILED.value
                logger.info('Recorded %s gateway event for selection %s, transaction %s',
                            outcome.status.value, selection.id, outcome.transaction_id)

            refresh_calculated(selection, now, self.config)
            selection.touch(now)
            return selection

        return atomic(operation, self.config.conflict_retries)

    def confirm_manual_payment(self, selection_id, payment_mode, paid_amount=None,
                               payment_type=None, now: Optional[datetime] = None) -> PlanSelection:
        """Record an operator-confirmed payment.

        Without ``paid_amount`` the whole freshly computed outstanding total
        is taken as paid.  The amount is split by ``ALLOCATION_ORDER``; any
        surplus lands in ``extra_amount_paid`` with reason ``overpayment``.
        """
        mode = parse_enum(PaymentMode, payment_mode, 'paymentMode')
        kind = parse_enum(PaymentType, payment_type, 'paymentType', default=PaymentType.RENT)
        if kind not in (PaymentType.RENT, PaymentType.SECURITY):
            raise ValidationError('Invalid paymentType. Must be rent or security')
        amount = None if paid_amount is None else parse_amount(paid_amount, 'paidAmount')
        now = now or datetime.now()

        def operation():
            selection = load_selection(selection_id)
            self._start_clock(selection, now)
            refresh_calculated(selection, now, self.config)
            paying = amount if amount is not None else selection.calculated_total
            if not paying or paying <= 0:
                raise ValidationError('Nothing is due on this plan selection')

            split = self._split_by_priority(selection, paying, now)
            self._apply_admin_payment(selection, paying, kind.value, mode, split, now)
            selection.payment_status = PaymentStatus.COMPLETED.value
            selection.payment_mode = mode.value
            selection.payment_date = now
            refresh_calculated(selection, now, self.config)
            selection.touch(now)
            return selection

        return atomic(operation, self.config.conflict_retries)

    def _add_admin_payment(self, selection: PlanSelection, amount: float,
                           kind: AdminPaymentType, now: datetime) -> None:
        if kind is AdminPaymentType.SECURITY:
            split = {'deposit_paid': amount}
        elif kind is AdminPaymentType.RENT:
            split = {'rent_paid': amount}
        else:
            split = self._split_by_priority(selection, amount, now)
        self._apply_admin_payment(selection, amount, kind.value, PaymentMode.CASH, split, now)

    @staticmethod
    def _add_adjustment(selection: PlanSelection, amount: float, reason: str, now: datetime) -> None:
        selection.adjustments.append(SelectionAdjustment(amount=amount, reason=reason or '', date=now))
        selection.adjustment_amount = round((selection.adjustment_amount or 0.0) + amount, 2)
        if reason:
            selection.adjustment_reason = reason
        logger.info('Adjustment of %.2f on selection %s (%s)', amount, selection.id, reason)

    @staticmethod
    def _add_extra_charge(selection: PlanSelection, amount: float, reason: str, now: datetime) -> None:
        selection.extra_amounts.append(SelectionExtraAmount(amount=amount, reason=reason or '', date=now))
        selection.extra_amount = round((selection.extra_amount or 0.0) + amount, 2)
        if reason:
            selection.extra_reason = reason
        logger.info('Extra charge of %.2f on selection %s (%s)', amount, selection.id, reason)

    def _mutate(self, selection_id, now: datetime, *changes) -> PlanSelection:
        """Apply ``changes`` (callables taking the selection) in one commit."""
        def operation():
            selection = load_selection(selection_id)
            for change in changes:
                change(selection)
            refresh_calculated(selection, now, self.config)
            selection.touch(now)
            return selection

        return atomic(operation, self.config.conflict_retries)

    def record_admin_payment(self, selection_id, amount, payment_type=None,
                             now: Optional[datetime] = None) -> PlanSelection:
        """Admin bulk entry: ``security`` and ``rent`` fill one bucket, ``total`` is split."""
        amount = parse_amount(amount, 'adminPaidAmount')
        kind = parse_enum(AdminPaymentType, payment_type, 'adminPaymentType',
                          default=AdminPaymentType.RENT)
        now = now or datetime.now()
        return self._mutate(selection_id, now,
                            lambda selection: self._add_admin_payment(selection, amount, kind, now))

    def record_adjustment(self, selection_id, amount, reason='',
                          now: Optional[datetime] = None) -> PlanSelection:
        """Append a signed correction.  Positive amounts reduce the rent owed."""
        amount = parse_amount(amount, 'adjustmentAmount', allow_negative=True)
        now = now or datetime.now()
        return self._mutate(selection_id, now,
                            lambda selection: self._add_adjustment(selection, amount, reason, now))

    def record_extra_charge(self, selection_id, amount, reason='',
                            now: Optional[datetime] = None) -> PlanSelection:
        amount = parse_amount(amount, 'extraAmount')
        now = now or datetime.now()
        return self._mutate(selection_id, now,
                            lambda selection: self._add_extra_charge(selection, amount, reason, now))

    def update_selection(self, selection_id, extra_amount=None, extra_reason='',
                         adjustment_amount=None, adjustment_reason='',
                         admin_paid_amount=None, admin_payment_type=None,
                         now: Optional[datetime] = None) -> PlanSelection:
        """Admin edit combining an extra charge, an adjustment and a bulk payment.

        Every supplied value is validated before anything is written, and the
        edits are committed together: either all of them apply or none do.
        """
        now = now or datetime.now()
        changes = []
        if extra_amount is not None:
            extra = parse_amount(extra_amount, 'extraAmount')
            changes.append(lambda selection: self._add_extra_charge(selection, extra, extra_reason, now))
        if adjustment_amount is not None:
            adjustment = parse_amount(adjustment_amount, 'adjustmentAmount', allow_negative=True)
            changes.append(lambda selection: self._add_adjustment(selection, adjustment,
                                                                  adjustment_reason, now))
        if admin_paid_amount is not None:
            paid = parse_amount(admin_paid_amount, 'adminPaidAmount')
            kind = parse_enum(AdminPaymentType, admin_payment_type, 'adminPaymentType',
                              default=AdminPaymentType.RENT)
            changes.append(lambda selection: self._add_admin_payment(selection, paid, kind, now))
        if not changes:
            raise ValidationError('Nothing to update: send extraAmount, adjustmentAmount '
                                  'or adminPaidAmount')
        return self._mutate(selection_id, now, *changes)

    def refresh_calculated(self, selection_id, now: Optional[datetime] = None) -> PlanSelection:
        now = now or datetime.now()
        return self._mutate(selection_id, now)
