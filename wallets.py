"""Driver and investor wallets.

A wallet is created on first use and keyed by (owner type, phone).  Balances
may go negative; every credit or debit appends exactly one transaction.
"""

import logging
from datetime import datetime
from typing import Optional

from errors import NotFoundError
from models import SubjectType, TransactionType, Wallet, WalletTransaction, db
from persistence import atomic
from settings import RentConfig
from validators import parse_amount, parse_enum, require_text


logger = logging.getLogger(__name__)


def find_wallet(owner_type: SubjectType, phone: str) -> Optional[Wallet]:
    return Wallet.query.filter_by(owner_type=owner_type.value, phone=phone).first()


class WalletService:

    def __init__(self, config: RentConfig):
        self.config = config

    def get_wallet(self, phone, owner_type=None) -> Wallet:
        owner = parse_enum(SubjectType, owner_type, 'ownerType', default=SubjectType.DRIVER)
        wallet = find_wallet(owner, require_text(phone, 'phone'))
        if wallet is None:
            raise NotFoundError('Wallet not found')
        return wallet

    def apply(self, phone, amount, description='', type=None, owner_type=None,
              now: Optional[datetime] = None) -> Wallet:
        """Credit or debit ``amount``, creating the wallet if needed."""
        owner = parse_enum(SubjectType, owner_type, 'ownerType', default=SubjectType.DRIVER)
        kind = parse_enum(TransactionType, type, 'type')
        phone = require_text(phone, 'phone')
        amount = parse_amount(amount, 'amount')
        now = now or datetime.now()
        delta = amount if kind is TransactionType.CREDIT else -amount

        def operation():
            wallet = find_wallet(owner, phone)
            if wallet is None:
                wallet = Wallet(owner_type=owner.value, phone=phone, balance=0.0,
                                created_at=now, updated_at=now)
                db.session.add(wallet)
            wallet.balance = round((wallet.balance or 0.0) + delta, 2)
            wallet.updated_at = now
            wallet.transactions.append(WalletTransaction(amount=amount,
                                                         description=description or '',
                                                         type=kind.value,
                                                         date=now))
            return wallet

        wallet = atomic(operation, self.config.conflict_retries)
        logger.info('%s %.2f on %s wallet %s, balance %.2f', kind.value.capitalize(), amount,
                    owner.value, phone, wallet.balance)
        return wallet

    def credit(self, phone, amount, description='', owner_type=None,
               now: Optional[datetime] = None) -> Wallet:
        return self.apply(phone, amount, description, TransactionType.CREDIT.value, owner_type, now)

    def debit(self, phone, amount, description='', owner_type=None,
              now: Optional[datetime] = None) -> Wallet:
        return self.apply(phone, amount, description, TransactionType.DEBIT.value, owner_type, now)
