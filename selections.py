"""Plan selection lifecycle.

A selection is created when a driver (or investor) picks a plan and slab.
It starts ``active`` with the rent clock stopped; the clock is started by
the first successful payment (see ``reconciler``).  Selections are never
deleted, only moved to a terminal status.
"""

import logging
from datetime import datetime, date, time
from typing import Optional

from accrual import compute_payment_details, compute_rent_summary, RentSummary, DEFAULT_ACCIDENTAL_COVER
from errors import NotFoundError, ValidationError
from models import (PlanSelection, PlanType, SelectionStatus, PaymentStatus,
                    SubjectType, db)
from persistence import atomic
from settings import RentConfig
from validators import parse_amount, parse_enum, require_text


logger = logging.getLogger(__name__)

DEFAULT_ACCEPTANCE_RATE = 60

# Allowed status moves.  completed and cancelled are terminal.
STATUS_TRANSITIONS = {
    SelectionStatus.ACTIVE: {SelectionStatus.INACTIVE, SelectionStatus.COMPLETED, SelectionStatus.CANCELLED},
    SelectionStatus.INACTIVE: {SelectionStatus.ACTIVE, SelectionStatus.COMPLETED, SelectionStatus.CANCELLED},
    SelectionStatus.COMPLETED: set(),
    SelectionStatus.CANCELLED: set(),
}


def as_datetime(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f'Invalid date {value!r}') from None


def slab_copy(plan_type: PlanType, slab) -> dict:
    """Validate a client-supplied slab and return the fields a selection keeps."""
    if slab is None:
        slab = {}
    if not isinstance(slab, dict):
        raise ValidationError('selectedRentSlab must be an object')
    copy = {
        'trips': slab.get('trips'),
        'rentDay': parse_amount(slab.get('rentDay', 0), 'selectedRentSlab.rentDay', allow_zero=True),
        'weeklyRent': parse_amount(slab.get('weeklyRent', 0), 'selectedRentSlab.weeklyRent', allow_zero=True),
    }
    if plan_type is PlanType.WEEKLY:
        cover = slab.get('accidentalCover')
        copy['accidentalCover'] = (DEFAULT_ACCIDENTAL_COVER if cover is None
                                   else parse_amount(cover, 'selectedRentSlab.accidentalCover', allow_zero=True))
        rate = slab.get('acceptanceRate')
        copy['acceptanceRate'] = DEFAULT_ACCEPTANCE_RATE if rate is None else int(
            parse_amount(rate, 'selectedRentSlab.acceptanceRate', allow_zero=True))
    return copy


def refresh_calculated(selection: PlanSelection, as_of: datetime, config: RentConfig) -> None:
    """Recompute the amounts due and store them on the selection."""
    details = compute_payment_details(selection, as_of, config.cover_policy)
    selection.calculated_deposit = details.deposit_due
    selection.calculated_rent = details.rent_due
    selection.calculated_cover = details.accidental_cover_due
    selection.calculated_total = details.total_payable


def load_selection(selection_id) -> PlanSelection:
    selection = db.session.get(PlanSelection, selection_id)
    if selection is None:
        raise NotFoundError('Plan selection not found')
    return selection


class SelectionService:

    def __init__(self, config: RentConfig):
        self.config = config

    def create_selection(self, subject_mobile, plan_name, plan_type, security_deposit=0,
                         slab=None, subject_id=None, subject_username=None,
                         subject_type=None, rent_slabs=None, vehicle_id=None,
                         now: Optional[datetime] = None) -> PlanSelection:
        mobile = require_text(subject_mobile, 'subjectMobile')
        name = require_text(plan_name, 'planName')
        kind = parse_enum(PlanType, plan_type, 'planType')
        subject = parse_enum(SubjectType, subject_type, 'subjectType', default=SubjectType.DRIVER)
        deposit = parse_amount(security_deposit or 0, 'securityDeposit', allow_zero=True)
        chosen = slab_copy(kind, slab)
        if rent_slabs is not None and not isinstance(rent_slabs, list):
            raise ValidationError('rentSlabs must be a list')
        now = now or datetime.now()

        def operation():
            existing = PlanSelection.query.filter_by(subject_mobile=mobile,
                                                     subject_type=subject.value,
                                                     status=SelectionStatus.ACTIVE.value).first()
            if existing is not None:
                raise ValidationError('Subject already has an active plan. Please complete or '
                                      'deactivate the current plan before selecting a new one.')
            selection = PlanSelection(
                vehicle_id=vehicle_id,
                subject_type=subject.value,
                subject_id=str(subject_id) if subject_id else None,
                subject_username=subject_username,
                subject_mobile=mobile,
                plan_name=name,
                plan_type=kind.value,
                security_deposit=deposit,
                rent_slabs=rent_slabs or [],
                slab_trips=chosen['trips'],
                slab_rent_day=chosen['rentDay'],
                slab_weekly_rent=chosen['weeklyRent'],
                slab_accidental_cover=chosen.get('accidentalCover'),
                slab_acceptance_rate=chosen.get('acceptanceRate'),
                selected_date=now,
                status=SelectionStatus.ACTIVE.value,
                payment_status=PaymentStatus.PENDING.value,
                rent_start_date=None,
                rent_paused_date=None,
                rent_per_day=None,
                extra_amount=0.0,
                extra_reason='',
                adjustment_amount=0.0,
                adjustment_reason='',
                admin_paid_amount=0.0,
                deposit_paid=0.0,
                rent_paid=0.0,
                extra_amount_paid=0.0,
                accidental_cover_paid=0.0,
                created_at=now,
                updated_at=now,
            )
            refresh_calculated(selection, now, self.config)
            db.session.add(selection)
            return selection

        selection = atomic(operation, self.config.conflict_retries)
        logger.info('Created %s selection %s for %s (%s)', selection.plan_type, selection.id,
                    selection.subject_mobile, selection.plan_name)
        return selection

    def get_selection(self, selection_id) -> PlanSelection:
        return load_selection(selection_id)

    def list_selections(self, subject_id=None, subject_mobile=None) -> list:
        if not subject_id and not subject_mobile:
            raise ValidationError('subjectId or subjectMobile is required')
        query = PlanSelection.query
        if subject_id:
            query = query.filter_by(subject_id=str(subject_id))
        else:
            query = query.filter_by(subject_mobile=str(subject_mobile))
        return query.order_by(PlanSelection.selected_date.desc(), PlanSelection.id.desc()).all()

    def compute_rent_summary(self, selection_id, as_of: Optional[datetime] = None) -> RentSummary:
        selection = load_selection(selection_id)
        return compute_rent_summary(selection, as_datetime(as_of) or datetime.now(),
                                    self.config.cover_policy)

    def pause_accrual(self, selection_id, paused_at=None, now: Optional[datetime] = None) -> PlanSelection:
        """Stop accrual at ``paused_at``.  The earliest pause wins; later calls are no-ops."""
        now = now or datetime.now()
        paused_at = as_datetime(paused_at) or now

        def operation():
            selection = load_selection(selection_id)
            if selection.rent_paused_date is not None or selection.rent_start_date is None:
                return selection
            if paused_at < selection.rent_start_date:
                raise ValidationError('Pause date cannot be before the rent start date')
            selection.rent_paused_date = paused_at
            selection.touch(now)
            logger.info('Paused accrual of selection %s at %s', selection.id, paused_at.date())
            return selection

        return atomic(operation, self.config.conflict_retries)

    def resume_accrual(self, selection_id, now: Optional[datetime] = None) -> PlanSelection:
        """Clear the pause date.

        Only one pause window is tracked, so once resumed the paused span is
        accrued again from ``rent_start_date``.
        """
        now = now or datetime.now()

        def operation():
            selection = load_selection(selection_id)
            if selection.rent_paused_date is None:
                return selection
            selection.rent_paused_date = None
            selection.touch(now)
            logger.info('Resumed accrual of selection %s', selection.id)
            return selection

        return atomic(operation, self.config.conflict_retries)

    def change_status(self, selection_id, status, now: Optional[datetime] = None) -> PlanSelection:
        target = parse_enum(SelectionStatus, status, 'status')
        now = now or datetime.now()

        def operation():
            selection = load_selection(selection_id)
            current = SelectionStatus(selection.status)
            if current is target:
                return selection
            if target not in STATUS_TRANSITIONS[current]:
                raise ValidationError(f'Cannot change status from {current.value} to {target.value}')
            selection.status = target.value
            selection.touch(now)
            logger.info('Selection %s status %s -> %s', selection.id, current.value, target.value)
            return selection

        return atomic(operation, self.config.conflict_retries)

    def assign_vehicle(self, selection_id, vehicle_id: int, now: Optional[datetime] = None) -> PlanSelection:
        now = now or datetime.now()

        def operation():
            selection = load_selection(selection_id)
            if selection.is_terminal:
                raise ValidationError(f'Selection is {selection.status}')
            selection.vehicle_id = vehicle_id
            selection.touch(now)
            return selection

        return atomic(operation, self.config.conflict_retries)

    def sync_vehicle_status(self, vehicle_id: int, vehicle_status: str,
                            at: Optional[datetime] = None) -> list:
        """Follow a vehicle going in or out of service.

        A vehicle leaving service pauses accrual and marks its active
        selections inactive.  A vehicle returning to service reactivates its
        inactive selections and resumes accrual on every selection it
        carries, including active ones paused by hand.
        """
        at = as_datetime(at) or datetime.now()
        going_active = require_text(vehicle_status, 'status').lower() == 'active'

        def operation():
            changed = []
            if going_active:
                wanted = [SelectionStatus.INACTIVE.value, SelectionStatus.ACTIVE.value]
            else:
                wanted = [SelectionStatus.ACTIVE.value]
            selections = (PlanSelection.query
                          .filter(PlanSelection.vehicle_id == vehicle_id,
                                  PlanSelection.status.in_(wanted))
                          .order_by(PlanSelection.id.asc())
                          .all())
            for selection in selections:
                if going_active:
                    if (selection.status == SelectionStatus.ACTIVE.value
                            and selection.rent_paused_date is None):
                        continue
                    selection.status = SelectionStatus.ACTIVE.value
                    selection.rent_paused_date = None
                else:
                    selection.status = SelectionStatus.INACTIVE.value
                    started = selection.rent_start_date
                    if started is not None and selection.rent_paused_date is None:
                        selection.rent_paused_date = max(at, started)
                selection.touch(at)
                changed.append(selection)
            return changed

        changed = atomic(operation, self.config.conflict_retries)
        logger.info('Vehicle %s is %s: %d selection(s) updated', vehicle_id,
                    'active' if going_active else vehicle_status, len(changed))
        return changed
