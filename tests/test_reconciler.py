import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from errors import ConcurrentModificationConflict, NotFoundError, ValidationError
from gateway import PaymentOutcome
from models import CaptureStatus, DriverPayment, PaymentType, db
from reconciler import PaymentReconciler, allocate
from conftest import START, days


def captured(transaction_id='tx1', amount=1000.0, payment_type=PaymentType.RENT, **kwargs):
    return PaymentOutcome(transaction_id=transaction_id, amount=amount,
                          payment_type=payment_type, **kwargs)


def assert_buckets_conserved(selection):
    """Every bucket equals what the two ledgers attribute to it."""
    online = [p for p in selection.driver_payments if p.status == CaptureStatus.CAPTURED.value]
    deposit_online = sum(p.amount for p in online if p.type in ('security', 'deposit'))
    rent_online = sum(p.amount for p in online if p.type == 'rent')
    admin = selection.admin_payments
    assert selection.deposit_paid == pytest.approx(deposit_online + sum(a.deposit_paid for a in admin))
    assert selection.rent_paid == pytest.approx(rent_online + sum(a.rent_paid for a in admin))
    assert selection.accidental_cover_paid == pytest.approx(sum(a.accidental_cover_paid for a in admin))
    assert selection.extra_amount_paid == pytest.approx(sum(a.extra_amount_paid for a in admin))
    assert selection.admin_paid_amount == pytest.approx(sum(a.amount for a in admin))


class TestAllocate:

    def test_fills_in_order(self):
        split, overflow = allocate(700.0, [('a', 500.0), ('b', 100.0), ('c', 300.0)])
        assert split == {'a': 500.0, 'b': 100.0, 'c': 100.0}
        assert overflow == 0.0

    def test_overflow(self):
        split, overflow = allocate(1000.0, [('a', 500.0), ('b', 0.0)])
        assert split == {'a': 500.0, 'b': 0.0}
        assert overflow == 500.0


class TestScenarios:

    def test_new_selection_has_no_rent(self, services, make_selection):
        """A fresh selection has not started its clock."""
        selection = make_selection()
        assert selection.rent_start_date is None
        summary = services['selections'].compute_rent_summary(selection.id, days(2))
        assert (summary.rent_per_day, summary.total_days, summary.total_due) == (500.0, 0, 0.0)

    def test_first_manual_payment_covers_deposit_then_rent(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].confirm_manual_payment(selection.id, 'cash', 5500, now=START)
        assert selection.deposit_paid == 5000.0
        assert selection.rent_paid == 500.0
        assert selection.accidental_cover_paid == 0.0
        assert selection.rent_start_date == START
        assert selection.rent_per_day == 500.0
        assert len(selection.admin_payments) == 1
        entry = selection.admin_payments[0]
        assert (entry.amount, entry.deposit_paid, entry.rent_paid) == (5500.0, 5000.0, 500.0)
        assert entry.mode == 'cash'

    def test_rent_accrues_after_start(self, services, make_selection):
        selection = make_selection()
        services['reconciler'].confirm_manual_payment(selection.id, 'cash', 5500, now=START)
        summary = services['selections'].compute_rent_summary(selection.id, days(3))
        assert (summary.total_days, summary.total_due) == (3, 1500.0)

    def test_pause_freezes_accrual(self, services, make_selection):
        selection = make_selection()
        services['reconciler'].confirm_manual_payment(selection.id, 'cash', 5500, now=START)
        services['selections'].pause_accrual(selection.id, days(3), now=days(3))
        summary = services['selections'].compute_rent_summary(selection.id, days(10))
        assert summary.total_days == 3

    def test_replayed_capture_applies_once(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured(), now=START)
        selection = reconciler.confirm_gateway_payment(selection.id, captured(), now=days(1))
        assert selection.rent_paid == 1000.0
        assert [p.transaction_id for p in selection.driver_payments] == ['tx1']


class TestGatewayPayments:

    def test_first_capture_starts_clock(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].confirm_gateway_payment(
            selection.id, captured(payment_type=PaymentType.SECURITY, amount=5000), now=START)
        assert selection.rent_start_date == START
        assert selection.deposit_paid == 5000.0
        assert selection.rent_paid == 0.0
        assert selection.payment_status == 'completed'
        assert selection.payment_mode == 'online'

    def test_later_capture_keeps_start_date(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured('tx1'), now=START)
        selection = reconciler.confirm_gateway_payment(selection.id, captured('tx2'), now=days(4))
        assert selection.rent_start_date == START
        assert selection.rent_paid == 2000.0

    def test_failed_capture_is_audit_only(self, services, make_selection):
        selection = make_selection()
        failed = captured(status=CaptureStatus.FAILED)
        selection = services['reconciler'].confirm_gateway_payment(selection.id, failed, now=START)
        assert selection.payment_status == 'failed'
        assert selection.rent_paid == 0.0
        assert selection.rent_start_date is None
        assert [p.status for p in selection.driver_payments] == ['failed']

    def test_retry_after_failure_is_applied(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured(status=CaptureStatus.FAILED), now=START)
        selection = reconciler.confirm_gateway_payment(selection.id, captured(), now=START)
        assert selection.rent_paid == 1000.0
        assert selection.payment_status == 'completed'
        assert len(selection.driver_payments) == 2

    def test_failure_after_capture_is_ignored(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured(), now=START)
        selection = reconciler.confirm_gateway_payment(selection.id, captured(status=CaptureStatus.FAILED),
                                                       now=START)
        assert selection.payment_status == 'completed'
        assert len(selection.driver_payments) == 1

    def test_failure_does_not_undo_completed_status(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured('tx1'), now=START)
        selection = reconciler.confirm_gateway_payment(selection.id, captured('tx2', status=CaptureStatus.FAILED),
                                                       now=START)
        assert selection.payment_status == 'completed'
        assert len(selection.driver_payments) == 2

    def test_same_merchant_order_is_a_replay(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured('tx1', merchant_order_id='order-1'), now=START)
        selection = reconciler.confirm_gateway_payment(
            selection.id, captured('tx2', merchant_order_id='order-1'), now=START)
        assert selection.rent_paid == 1000.0
        assert len(selection.driver_payments) == 1

    def test_rejects_non_positive_amount(self, services, make_selection):
        selection = make_selection()
        with pytest.raises(ValidationError):
            services['reconciler'].confirm_gateway_payment(selection.id, captured(amount=0))

    def test_unknown_selection(self, services):
        with pytest.raises(NotFoundError):
            services['reconciler'].confirm_gateway_payment(404, captured())


class TestManualPayments:

    def test_default_amount_settles_everything(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].confirm_manual_payment(selection.id, 'online', now=START)
        assert selection.deposit_paid == 5000.0
        assert selection.rent_paid == 500.0
        assert selection.accidental_cover_paid == 105.0
        assert selection.calculated_total == 0.0
        assert selection.admin_paid_amount == 5605.0

    def test_overpayment_goes_to_extra(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].confirm_manual_payment(selection.id, 'cash', 6000, now=START)
        assert selection.accidental_cover_paid == 105.0
        assert selection.extra_amount_paid == 395.0
        assert selection.extra_reason == 'overpayment'
        assert selection.admin_payments[0].extra_amount_paid == 395.0

    def test_extra_charges_are_paid_last(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.record_extra_charge(selection.id, 300, 'traffic fine', now=START)
        selection = reconciler.confirm_manual_payment(selection.id, 'cash', 5700, now=START)
        assert selection.deposit_paid == 5000.0
        assert selection.rent_paid == 500.0
        assert selection.accidental_cover_paid == 105.0
        assert selection.extra_amount_paid == 95.0
        assert selection.calculated_total == 205.0

    def test_nothing_due(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_manual_payment(selection.id, 'cash', now=START)
        with pytest.raises(ValidationError):
            reconciler.confirm_manual_payment(selection.id, 'cash', now=START)

    @pytest.mark.parametrize('mode, payment_type', [(None, 'rent'), ('cheque', 'rent'), ('cash', 'deposit')])
    def test_invalid_input(self, services, make_selection, mode, payment_type):
        selection = make_selection()
        with pytest.raises(ValidationError):
            services['reconciler'].confirm_manual_payment(selection.id, mode, 100, payment_type)

    def test_buckets_conserved_across_paths(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured('tx1', 2000, PaymentType.SECURITY), now=START)
        reconciler.confirm_manual_payment(selection.id, 'cash', 4000, now=days(1))
        reconciler.record_admin_payment(selection.id, 750, 'rent', now=days(2))
        reconciler.confirm_gateway_payment(selection.id, captured('tx2', 300), now=days(3))
        reconciler.record_extra_charge(selection.id, 250, 'cleaning', now=days(3))
        selection = reconciler.record_admin_payment(selection.id, 900, 'total', now=days(4))
        assert_buckets_conserved(selection)


class TestAdminEntries:

    def test_security_payment_fills_deposit_only(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].record_admin_payment(selection.id, 1000, 'security', now=START)
        assert selection.deposit_paid == 1000.0
        assert selection.rent_start_date is None
        assert selection.admin_payments[0].mode == 'cash'

    def test_total_payment_is_split(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].record_admin_payment(selection.id, 5105, 'total', now=START)
        assert selection.deposit_paid == 5000.0
        assert selection.accidental_cover_paid == 105.0
        assert selection.rent_paid == 0.0

    def test_adjustment_reduces_rent(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_manual_payment(selection.id, 'cash', 5500, now=START)
        selection = reconciler.record_adjustment(selection.id, 200, 'breakdown waiver', now=days(2))
        assert selection.calculated_rent == 800.0
        assert selection.adjustment_amount == 200.0
        selection = reconciler.record_adjustment(selection.id, -50, 'late return', now=days(2))
        assert selection.adjustment_amount == 150.0
        assert selection.calculated_rent == 850.0
        assert [a.reason for a in selection.adjustments] == ['breakdown waiver', 'late return']

    def test_zero_adjustment_rejected(self, services, make_selection):
        selection = make_selection()
        with pytest.raises(ValidationError):
            services['reconciler'].record_adjustment(selection.id, 0, 'noop')

    def test_extra_charge(self, services, make_selection):
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.record_extra_charge(selection.id, 300, 'fine', now=START)
        selection = reconciler.record_extra_charge(selection.id, 200, 'toll', now=START)
        assert selection.extra_amount == 500.0
        assert selection.extra_reason == 'toll'
        assert len(selection.extra_amounts) == 2
        assert selection.calculated_total == 5000.0 + 105.0 + 500.0

    def test_negative_extra_charge_rejected(self, services, make_selection):
        selection = make_selection()
        with pytest.raises(ValidationError):
            services['reconciler'].record_extra_charge(selection.id, -10, 'refund')


class TestConflicts:

    def test_stale_write_is_retried(self, services, make_selection, monkeypatch):
        selection = make_selection()
        real_commit = db.session.commit
        calls = {'n': 0}

        def flaky_commit():
            calls['n'] += 1
            if calls['n'] == 1:
                db.session.flush()
                raise StaleDataError('row changed underneath')
            real_commit()

        monkeypatch.setattr(db.session, 'commit', flaky_commit)
        selection = services['reconciler'].confirm_gateway_payment(selection.id, captured(), now=START)
        assert calls['n'] == 2
        assert selection.rent_paid == 1000.0
        assert len(selection.driver_payments) == 1

    def test_gives_up_after_retries(self, services, make_selection, monkeypatch):
        selection = make_selection()
        calls = {'n': 0}

        def stale_commit():
            calls['n'] += 1
            raise StaleDataError('row changed underneath')

        monkeypatch.setattr(db.session, 'commit', stale_commit)
        with pytest.raises(ConcurrentModificationConflict):
            services['reconciler'].confirm_gateway_payment(selection.id, captured(), now=START)
        assert calls['n'] == services['reconciler'].config.conflict_retries + 1
        monkeypatch.undo()
        assert db.session.get(type(selection), selection.id).rent_paid == 0.0


class TestRefresh:

    def test_snapshot_follows_the_clock(self, services, make_selection):
        """Stored dues catch up with accrual when refreshed."""
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_manual_payment(selection.id, 'cash', 5500, now=START)
        selection = reconciler.refresh_calculated(selection.id, now=days(3))
        assert selection.calculated_rent == 1500.0
        assert selection.calculated_cover == 105.0
        assert selection.calculated_total == 1605.0


class TestCombinedUpdate:

    def test_all_edits_commit_together(self, services, make_selection):
        selection = make_selection()
        selection = services['reconciler'].update_selection(
            selection.id, extra_amount=300, extra_reason='late fee',
            adjustment_amount=-100, adjustment_reason='late return',
            admin_paid_amount=1000, admin_payment_type='security', now=START)
        assert selection.extra_amount == 300.0
        assert selection.adjustment_amount == -100.0
        assert selection.deposit_paid == 1000.0
        assert selection.version == 2

    @pytest.mark.parametrize('edits', [
        {'extra_amount': 300, 'adjustment_amount': 0},
        {'extra_amount': 300, 'admin_paid_amount': 500, 'admin_payment_type': 'bonus'},
        {'adjustment_amount': 50, 'admin_paid_amount': -5},
    ])
    def test_invalid_field_writes_nothing(self, services, make_selection, edits):
        """A rejected edit leaves every bucket and ledger untouched."""
        selection = make_selection()
        with pytest.raises(ValidationError):
            services['reconciler'].update_selection(selection.id, now=START, **edits)
        selection = services['selections'].get_selection(selection.id)
        assert selection.extra_amount == 0.0
        assert selection.adjustment_amount == 0.0
        assert selection.deposit_paid == 0.0
        assert selection.extra_amounts == []
        assert selection.adjustments == []
        assert selection.admin_payments == []

    def test_empty_update_rejected(self, services, make_selection):
        with pytest.raises(ValidationError):
            services['reconciler'].update_selection(make_selection().id)


class TestCapturedTransactionIndex:

    def test_duplicate_capture_rejected_by_database(self, services, make_selection):
        selection = make_selection()
        services['reconciler'].confirm_gateway_payment(selection.id, captured(), now=START)
        db.session.add(DriverPayment(selection_id=selection.id, date=START, amount=1000.0,
                                     transaction_id='tx1', status='captured'))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_failed_and_captured_rows_may_share_a_transaction(self, services, make_selection):
        selection = make_selection()
        db.session.add_all([
            DriverPayment(selection_id=selection.id, date=START, amount=10.0,
                          transaction_id='tx7', status='failed'),
            DriverPayment(selection_id=selection.id, date=START, amount=10.0,
                          transaction_id='tx7', status='captured'),
        ])
        db.session.commit()
        assert len(services['selections'].get_selection(selection.id).driver_payments) == 2

    def test_concurrent_delivery_credits_once(self, services, make_selection, monkeypatch):
        """A capture committed by another writer after our read is detected on retry."""
        selection = make_selection()
        reconciler = services['reconciler']
        reconciler.confirm_gateway_payment(selection.id, captured(), now=START)

        real_is_replay = PaymentReconciler._is_replay
        checks = {'n': 0}

        def stale_then_real(selection, outcome):
            checks['n'] += 1
            if checks['n'] == 1:
                return False
            return real_is_replay(selection, outcome)

        monkeypatch.setattr(PaymentReconciler, '_is_replay', staticmethod(stale_then_real))
        selection = reconciler.confirm_gateway_payment(selection.id, captured(), now=days(1))
        assert checks['n'] == 2
        assert selection.rent_paid == 1000.0
        assert [p.transaction_id for p in selection.driver_payments] == ['tx1']
