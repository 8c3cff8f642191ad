"""Database models for the fleet rent accounting service.

Plans and their slabs form the catalog.  A ``PlanSelection`` is one driver's
(or investor's) enrollment in a plan; it carries its own copy of the chosen
slab, the accrual dates, the paid-amount buckets and two append-only payment
ledgers.  Wallets are a separate, simpler credit/debit ledger keyed by phone.

Selections and wallets use SQLAlchemy's ``version_id_col`` so that two
concurrent writers cannot both commit a read-modify-write of the same row.
"""

import enum
from datetime import datetime, date

from flask_sqlalchemy import SQLAlchemy


db = SQLAlchemy()


class PlanType(str, enum.Enum):
    WEEKLY = 'weekly'
    DAILY = 'daily'


class SubjectType(str, enum.Enum):
    DRIVER = 'driver'
    INVESTOR = 'investor'


class SelectionStatus(str, enum.Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    COMPLETED = 'completed'
    FAILED = 'failed'


class PaymentMode(str, enum.Enum):
    ONLINE = 'online'
    CASH = 'cash'


class PaymentType(str, enum.Enum):
    RENT = 'rent'
    SECURITY = 'security'
    DEPOSIT = 'deposit'


class AdminPaymentType(str, enum.Enum):
    RENT = 'rent'
    SECURITY = 'security'
    TOTAL = 'total'


class CaptureStatus(str, enum.Enum):
    CAPTURED = 'captured'
    FAILED = 'failed'
    CANCELLED = 'cancelled'
    PENDING = 'pending'


class TransactionType(str, enum.Enum):
    CREDIT = 'credit'
    DEBIT = 'debit'


def _iso(value):
    return value.isoformat() if value is not None else None


# ---------------------------------------------------------------------------
# Plan catalog

class RentPlan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    vehicle_type = db.Column(db.String(60))
    security_deposit = db.Column(db.Float, default=0.0)
    status = db.Column(db.String(20), default='active')
    category = db.Column(db.String(40), default='standard')
    created_date = db.Column(db.Date, default=date.today)

    slabs = db.relationship('RentSlab', back_populates='plan',
                            order_by='RentSlab.position',
                            cascade='all, delete-orphan')

    def slabs_of(self, plan_type: PlanType) -> list:
        return [s for s in self.slabs if s.plan_type == plan_type.value]

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.name,
            'vehicleType': self.vehicle_type,
            'securityDeposit': self.security_deposit or 0.0,
            'status': self.status,
            'category': self.category,
            'createdDate': _iso(self.created_date),
            'weeklyRentSlabs': [s.to_dict() for s in self.slabs_of(PlanType.WEEKLY)],
            'dailyRentSlabs': [s.to_dict() for s in self.slabs_of(PlanType.DAILY)],
        }

    def __repr__(self) -> str:
        return f"<RentPlan {self.name}>"


class RentSlab(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    plan_id = db.Column(db.Integer, db.ForeignKey('rent_plan.id'), nullable=False)
    plan_type = db.Column(db.String(10), nullable=False)  # weekly or daily
    position = db.Column(db.Integer, default=0)
    trips = db.Column(db.String(60))
    rent_day = db.Column(db.Float, default=0.0)
    weekly_rent = db.Column(db.Float, default=0.0)
    # Weekly slabs only
    accidental_cover = db.Column(db.Float, nullable=True)
    acceptance_rate = db.Column(db.Integer, nullable=True)

    plan = db.relationship('RentPlan', back_populates='slabs')

    def to_dict(self) -> dict:
        data = {
            'trips': self.trips,
            'rentDay': self.rent_day or 0.0,
            'weeklyRent': self.weekly_rent or 0.0,
        }
        if self.plan_type == PlanType.WEEKLY.value:
            data['accidentalCover'] = 105.0 if self.accidental_cover is None else self.accidental_cover
            data['acceptanceRate'] = 60 if self.acceptance_rate is None else self.acceptance_rate
        return data

    def __repr__(self) -> str:
        return f"<RentSlab {self.plan_type} {self.trips}>"


# ---------------------------------------------------------------------------
# Plan selections and their ledgers

class PlanSelection(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    vehicle_id = db.Column(db.Integer, nullable=True, index=True)
    subject_type = db.Column(db.String(20), nullable=False, default=SubjectType.DRIVER.value)
    subject_id = db.Column(db.String(64), nullable=True, index=True)
    subject_username = db.Column(db.String(120))
    subject_mobile = db.Column(db.String(30), nullable=False, index=True)

    plan_name = db.Column(db.String(120), nullable=False)
    plan_type = db.Column(db.String(10), nullable=False)
    security_deposit = db.Column(db.Float, default=0.0)
    rent_slabs = db.Column(db.JSON, default=list)

    # Denormalised copy of the chosen slab; never follows catalog edits.
    slab_trips = db.Column(db.String(60))
    slab_rent_day = db.Column(db.Float, default=0.0)
    slab_weekly_rent = db.Column(db.Float, default=0.0)
    slab_accidental_cover = db.Column(db.Float, nullable=True)
    slab_acceptance_rate = db.Column(db.Integer, nullable=True)

    selected_date = db.Column(db.DateTime, default=datetime.now)
    status = db.Column(db.String(20), nullable=False, default=SelectionStatus.ACTIVE.value)
    payment_status = db.Column(db.String(20), nullable=False, default=PaymentStatus.PENDING.value)
    payment_mode = db.Column(db.String(20), nullable=True)
    payment_date = db.Column(db.DateTime, nullable=True)

    # Rent only accrues once the first payment confirmation starts the clock.
    rent_start_date = db.Column(db.DateTime, nullable=True)
    rent_paused_date = db.Column(db.DateTime, nullable=True)
    rent_per_day = db.Column(db.Float, nullable=True)

    calculated_deposit = db.Column(db.Float, default=0.0)
    calculated_rent = db.Column(db.Float, default=0.0)
    calculated_cover = db.Column(db.Float, default=0.0)
    calculated_total = db.Column(db.Float, default=0.0)
    extra_amount = db.Column(db.Float, default=0.0)
    extra_reason = db.Column(db.String(255), default='')
    adjustment_amount = db.Column(db.Float, default=0.0)
    adjustment_reason = db.Column(db.String(255), default='')

    admin_paid_amount = db.Column(db.Float, default=0.0)
    deposit_paid = db.Column(db.Float, default=0.0)
    rent_paid = db.Column(db.Float, default=0.0)
    extra_amount_paid = db.Column(db.Float, default=0.0)
    accidental_cover_paid = db.Column(db.Float, default=0.0)

    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now)
    version = db.Column(db.Integer, nullable=False)

    driver_payments = db.relationship('DriverPayment', back_populates='selection',
                                      order_by='[DriverPayment.date, DriverPayment.id]',
                                      cascade='all, delete-orphan')
    admin_payments = db.relationship('AdminPayment', back_populates='selection',
                                     order_by='[AdminPayment.date, AdminPayment.id]',
                                     cascade='all, delete-orphan')
    adjustments = db.relationship('SelectionAdjustment', back_populates='selection',
                                  order_by='[SelectionAdjustment.date, SelectionAdjustment.id]',
                                  cascade='all, delete-orphan')
    extra_amounts = db.relationship('SelectionExtraAmount', back_populates='selection',
                                    order_by='[SelectionExtraAmount.date, SelectionExtraAmount.id]',
                                    cascade='all, delete-orphan')

    __mapper_args__ = {'version_id_col': version}

    @property
    def is_weekly(self) -> bool:
        return self.plan_type == PlanType.WEEKLY.value

    @property
    def is_terminal(self) -> bool:
        return self.status in (SelectionStatus.COMPLETED.value, SelectionStatus.CANCELLED.value)

    @property
    def selected_slab(self) -> dict:
        slab = {
            'trips': self.slab_trips,
            'rentDay': self.slab_rent_day or 0.0,
            'weeklyRent': self.slab_weekly_rent or 0.0,
        }
        if self.is_weekly:
            slab['accidentalCover'] = self.slab_accidental_cover
            slab['acceptanceRate'] = self.slab_acceptance_rate
        return slab

    def touch(self, now: datetime) -> None:
        """Mark the row dirty so the version check runs on every mutation."""
        self.updated_at = now

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'vehicleId': self.vehicle_id,
            'subjectType': self.subject_type,
            'subjectId': self.subject_id,
            'subjectUsername': self.subject_username,
            'subjectMobile': self.subject_mobile,
            'planName': self.plan_name,
            'planType': self.plan_type,
            'securityDeposit': self.security_deposit or 0.0,
            'rentSlabs': self.rent_slabs or [],
            'selectedRentSlab': self.selected_slab,
            'selectedDate': _iso(self.selected_date),
            'status': self.status,
            'paymentStatus': self.payment_status,
            'paymentMode': self.payment_mode,
            'paymentDate': _iso(self.payment_date),
            'rentStartDate': _iso(self.rent_start_date),
            'rentPausedDate': _iso(self.rent_paused_date),
            'rentPerDay': self.rent_per_day if self.rent_per_day is not None else (self.slab_rent_day or 0.0),
            'calculatedDeposit': self.calculated_deposit or 0.0,
            'calculatedRent': self.calculated_rent or 0.0,
            'calculatedCover': self.calculated_cover or 0.0,
            'calculatedTotal': self.calculated_total or 0.0,
            'extraAmount': self.extra_amount or 0.0,
            'extraReason': self.extra_reason or '',
            'adjustmentAmount': self.adjustment_amount or 0.0,
            'adjustmentReason': self.adjustment_reason or '',
            'adjustments': [a.to_dict() for a in self.adjustments],
            'extraAmounts': [e.to_dict() for e in self.extra_amounts],
            'adminPaidAmount': self.admin_paid_amount or 0.0,
            'depositPaid': self.deposit_paid or 0.0,
            'rentPaid': self.rent_paid or 0.0,
            'extraAmountPaid': self.extra_amount_paid or 0.0,
            'accidentalCoverPaid': self.accidental_cover_paid or 0.0,
            'driverPayments': [p.to_dict() for p in self.driver_payments],
            'adminPayments': [p.to_dict() for p in self.admin_payments],
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<PlanSelection {self.id} {self.subject_mobile} {self.plan_name}>"


class DriverPayment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    selection_id = db.Column(db.Integer, db.ForeignKey('plan_selection.id'), nullable=False)
    date = db.Column(db.DateTime, default=datetime.now)
    amount = db.Column(db.Float, nullable=False)
    mode = db.Column(db.String(20), default=PaymentMode.ONLINE.value)
    type = db.Column(db.String(20), default=PaymentType.RENT.value)
    transaction_id = db.Column(db.String(120), index=True)
    merchant_order_id = db.Column(db.String(120))
    payment_token = db.Column(db.String(255))
    gateway = db.Column(db.String(40), default='ZWITCH')
    status = db.Column(db.String(20), default=CaptureStatus.CAPTURED.value)

    selection = db.relationship('PlanSelection', back_populates='driver_payments')

    # A captured transaction id may appear at most once per selection.
    __table_args__ = (
        db.Index('uq_driver_payment_captured_tx', 'selection_id', 'transaction_id',
                 unique=True,
                 sqlite_where=db.text("status = 'captured'"),
                 postgresql_where=db.text("status = 'captured'")),
    )

    def to_dict(self) -> dict:
        return {
            'date': _iso(self.date),
            'amount': self.amount,
            'mode': self.mode,
            'type': self.type,
            'transactionId': self.transaction_id,
            'merchantOrderId': self.merchant_order_id,
            'paymentToken': self.payment_token,
            'gateway': self.gateway,
            'status': self.status,
        }

    def __repr__(self) -> str:
        return f"<DriverPayment {self.transaction_id} {self.amount} {self.status}>"


class AdminPayment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    selection_id = db.Column(db.Integer, db.ForeignKey('plan_selection.id'), nullable=False)
    date = db.Column(db.DateTime, default=datetime.now)
    amount = db.Column(db.Float, nullable=False)
    type = db.Column(db.String(20), default=AdminPaymentType.RENT.value)
    mode = db.Column(db.String(20), default=PaymentMode.CASH.value)
    deposit_paid = db.Column(db.Float, default=0.0)
    rent_paid = db.Column(db.Float, default=0.0)
    extra_amount_paid = db.Column(db.Float, default=0.0)
    accidental_cover_paid = db.Column(db.Float, default=0.0)

    selection = db.relationship('PlanSelection', back_populates='admin_payments')

    def to_dict(self) -> dict:
        return {
            'date': _iso(self.date),
            'amount': self.amount,
            'type': self.type,
            'mode': self.mode,
            'depositPaid': self.deposit_paid or 0.0,
            'rentPaid': self.rent_paid or 0.0,
            'extraAmountPaid': self.extra_amount_paid or 0.0,
            'accidentalCoverPaid': self.accidental_cover_paid or 0.0,
        }

    def __repr__(self) -> str:
        return f"<AdminPayment {self.amount} {self.type}>"


class SelectionAdjustment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    selection_id = db.Column(db.Integer, db.ForeignKey('plan_selection.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    reason = db.Column(db.String(255), default='')
    date = db.Column(db.DateTime, default=datetime.now)

    selection = db.relationship('PlanSelection', back_populates='adjustments')

    def to_dict(self) -> dict:
        return {'amount': self.amount, 'reason': self.reason or '', 'date': _iso(self.date)}


class SelectionExtraAmount(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    selection_id = db.Column(db.Integer, db.ForeignKey('plan_selection.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    reason = db.Column(db.String(255), default='')
    date = db.Column(db.DateTime, default=datetime.now)

    selection = db.relationship('PlanSelection', back_populates='extra_amounts')

    def to_dict(self) -> dict:
        return {'amount': self.amount, 'reason': self.reason or '', 'date': _iso(self.date)}


# ---------------------------------------------------------------------------
# Wallets

class Wallet(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_type = db.Column(db.String(20), nullable=False, default=SubjectType.DRIVER.value)
    phone = db.Column(db.String(30), nullable=False)
    balance = db.Column(db.Float, nullable=False, default=0.0)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now)
    version = db.Column(db.Integer, nullable=False)

    transactions = db.relationship('WalletTransaction', back_populates='wallet',
                                   order_by='[WalletTransaction.date, WalletTransaction.id]',
                                   cascade='all, delete-orphan')

    __table_args__ = (db.UniqueConstraint('owner_type', 'phone', name='uq_wallet_owner_phone'),)
    __mapper_args__ = {'version_id_col': version}

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'ownerType': self.owner_type,
            'phone': self.phone,
            'balance': self.balance,
            'transactions': [t.to_dict() for t in self.transactions],
            'createdAt': _iso(self.created_at),
            'updatedAt': _iso(self.updated_at),
        }

    def __repr__(self) -> str:
        return f"<Wallet {self.owner_type} {self.phone} {self.balance}>"


class WalletTransaction(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    wallet_id = db.Column(db.Integer, db.ForeignKey('wallet.id'), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    description = db.Column(db.String(255), default='')
    type = db.Column(db.String(10), nullable=False, default=TransactionType.CREDIT.value)
    date = db.Column(db.DateTime, default=datetime.now)

    wallet = db.relationship('Wallet', back_populates='transactions')

    def to_dict(self) -> dict:
        return {
            'amount': self.amount,
            'description': self.description or '',
            'type': self.type,
            'date': _iso(self.date),
        }

    def __repr__(self) -> str:
        return f"<WalletTransaction {self.type} {self.amount}>"
