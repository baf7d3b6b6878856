"""
Percoin Ledger - paid/promo balances, expiring free batches and the transaction log.

Every balance change goes through ``apply_transaction``, which updates the
cached ``user_credits`` row, the free batches it touches and writes exactly
one ``credit_transactions`` row in the same database transaction.

Buckets:
    paid   - purchased coins, never expire
    promo  - granted coins, held in ``free_percoin_batches`` with an expiry
Spending drains promo batches first (earliest expiry first), then paid.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from app import db
from models import (
    UserCredits, CreditTransaction, FreePercoinBatch, AccountForfeitureLedger, Notification
)
from utils.jst import end_of_jst_month

logger = logging.getLogger(__name__)

PROMO_TYPES = (
    'signup_bonus',
    'daily_post',
    'streak',
    'referral',
    'admin_bonus',
    'tour_bonus',
)

TRANSACTION_TYPES = (
    'purchase',
    'consumption',
    'refund',
    'admin_deduction',
    'expiration',
    'forfeiture',
) + PROMO_TYPES

# Free batches expire at the end of the JST month this many months after the grant
PROMO_EXPIRY_MONTHS = 6

TRANSACTIONS_PAGE_SIZE = 30
TRANSACTION_FILTERS = ('all', 'regular', 'period_limited', 'usage')


class PercoinError(Exception):
    """Base error for ledger operations"""


class InvalidAmountError(PercoinError):
    pass


class InsufficientPercoinsError(PercoinError):
    def __init__(self, required: int, available: int):
        super().__init__(f"Insufficient percoins: required {required}, available {available}")
        self.required = required
        self.available = available


class DuplicateOperationError(PercoinError):
    def __init__(self, message: str, existing: Optional[CreditTransaction] = None):
        super().__init__(message)
        self.existing = existing


@dataclass
class LedgerResult:
    transaction: CreditTransaction
    balance: int
    duplicate: bool = False


def promo_expiry_for(granted_at: Optional[datetime] = None) -> datetime:
    return end_of_jst_month(granted_at, months_ahead=PROMO_EXPIRY_MONTHS)


def get_or_create_account(user_id: str, lock: bool = False) -> UserCredits:
    """Get the user's credits row, creating an empty one if needed."""
    query = UserCredits.query.filter_by(user_id=user_id)
    if lock:
        query = query.with_for_update()
    account = query.first()
    if account is None:
        account = UserCredits(user_id=user_id, balance=0, paid_balance=0, promo_balance=0)
        db.session.add(account)
        db.session.flush()
    return account


def _active_batches(user_id: str, now: datetime):
    return FreePercoinBatch.query.filter(
        FreePercoinBatch.user_id == user_id,
        FreePercoinBatch.remaining_amount > 0,
        FreePercoinBatch.expire_at > now,
    )


def get_breakdown(user_id: str, now: Optional[datetime] = None) -> Dict[str, int]:
    """Balance split into regular (paid) and period-limited (unexpired promo) coins."""
    now = now or datetime.utcnow()
    account = UserCredits.query.filter_by(user_id=user_id).first()
    paid = account.paid_balance if account else 0
    period_limited = db.session.query(
        func.coalesce(func.sum(FreePercoinBatch.remaining_amount), 0)
    ).filter(
        FreePercoinBatch.user_id == user_id,
        FreePercoinBatch.remaining_amount > 0,
        FreePercoinBatch.expire_at > now,
    ).scalar()
    period_limited = int(period_limited or 0)
    return {
        'total': paid + period_limited,
        'regular': paid,
        'period_limited': period_limited,
    }


def get_balance(user_id: str, now: Optional[datetime] = None) -> int:
    return get_breakdown(user_id, now)['total']


def _sweep_expired(account: UserCredits, now: datetime) -> int:
    """Zero out expired batches for one account and record the loss."""
    expired = FreePercoinBatch.query.filter(
        FreePercoinBatch.user_id == account.user_id,
        FreePercoinBatch.remaining_amount > 0,
        FreePercoinBatch.expire_at <= now,
    ).all()
    if not expired:
        return 0

    total = sum(batch.remaining_amount for batch in expired)
    for batch in expired:
        batch.remaining_amount = 0

    account.promo_balance = max(account.promo_balance - total, 0)
    account.balance = account.paid_balance + account.promo_balance
    db.session.add(CreditTransaction(
        user_id=account.user_id,
        amount=-total,
        transaction_type='expiration',
        meta={'batch_ids': [batch.id for batch in expired]},
    ))
    logger.info(f"Expired {total} percoins for user {account.user_id}")
    return total


def _find_existing(idempotency_key: Optional[str], stripe_payment_intent_id: Optional[str]):
    if idempotency_key:
        existing = CreditTransaction.query.filter_by(idempotency_key=idempotency_key).first()
        if existing:
            return existing
    if stripe_payment_intent_id:
        existing = CreditTransaction.query.filter_by(
            stripe_payment_intent_id=stripe_payment_intent_id
        ).first()
        if existing:
            return existing
    return None


def _spend(account: UserCredits, amount: int, now: datetime) -> Tuple[int, int]:
    """Take ``amount`` coins from promo batches first, then paid. Returns (from_promo, from_paid)."""
    available = account.paid_balance + account.promo_balance
    if amount > available:
        raise InsufficientPercoinsError(amount, available)

    remaining = amount
    from_promo = 0
    for batch in _active_batches(account.user_id, now).order_by(
        FreePercoinBatch.expire_at.asc(), FreePercoinBatch.id.asc()
    ).all():
        if remaining == 0:
            break
        take = min(batch.remaining_amount, remaining)
        batch.remaining_amount -= take
        remaining -= take
        from_promo += take

    from_paid = remaining
    if from_paid > account.paid_balance:
        raise InsufficientPercoinsError(amount, from_promo + account.paid_balance)

    account.promo_balance = max(account.promo_balance - from_promo, 0)
    account.paid_balance -= from_paid
    return from_promo, from_paid


def apply_transaction(
    user_id: str,
    amount: int,
    transaction_type: str,
    metadata: Optional[Dict[str, Any]] = None,
    stripe_payment_intent_id: Optional[str] = None,
    related_generation_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    paid_portion: int = 0,
    expire_at: Optional[datetime] = None,
    commit: bool = True,
    now: Optional[datetime] = None,
) -> LedgerResult:
    """
    Apply a single signed percoin change atomically.

    Positive amounts:
        purchase          -> paid bucket
        promo types       -> new free batch with expiry
        refund            -> ``paid_portion`` to paid, rest to a 'refund' free batch
    Negative amounts spend promo first, then paid, and record the split as
    ``from_promo`` / ``from_paid`` in the transaction metadata.

    Raises InvalidAmountError, InsufficientPercoinsError or DuplicateOperationError.
    Nothing is written when an error is raised.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise InvalidAmountError(f"Unknown transaction type: {transaction_type}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise InvalidAmountError("Amount must be a non-zero integer")
    if amount > 0 and transaction_type not in PROMO_TYPES + ('purchase', 'refund'):
        raise InvalidAmountError(f"{transaction_type} cannot credit percoins")
    if amount < 0 and transaction_type in PROMO_TYPES + ('purchase', 'refund'):
        raise InvalidAmountError(f"{transaction_type} cannot debit percoins")

    existing = _find_existing(idempotency_key, stripe_payment_intent_id)
    if existing is not None:
        raise DuplicateOperationError("Operation already applied", existing)

    now = now or datetime.utcnow()
    meta = dict(metadata or {})

    try:
        account = get_or_create_account(user_id, lock=True)
        _sweep_expired(account, now)

        batch = None
        tx_expire_at = None
        if amount > 0:
            if transaction_type == 'purchase':
                account.paid_balance += amount
            else:
                to_paid = min(max(paid_portion, 0), amount) if transaction_type == 'refund' else 0
                to_promo = amount - to_paid
                account.paid_balance += to_paid
                if transaction_type == 'refund':
                    meta['to_paid'] = to_paid
                    meta['to_promo'] = to_promo
                if to_promo > 0:
                    tx_expire_at = expire_at or promo_expiry_for(now)
                    batch = FreePercoinBatch(
                        user_id=user_id,
                        source=transaction_type,
                        amount=to_promo,
                        remaining_amount=to_promo,
                        granted_at=now,
                        expire_at=tx_expire_at,
                    )
                    db.session.add(batch)
                    account.promo_balance += to_promo
        else:
            from_promo, from_paid = _spend(account, -amount, now)
            meta['from_promo'] = from_promo
            meta['from_paid'] = from_paid

        account.balance = account.paid_balance + account.promo_balance

        transaction = CreditTransaction(
            user_id=user_id,
            amount=amount,
            transaction_type=transaction_type,
            stripe_payment_intent_id=stripe_payment_intent_id,
            related_generation_id=related_generation_id,
            idempotency_key=idempotency_key,
            expire_at=tx_expire_at,
            meta=meta,
            created_at=now,
        )
        db.session.add(transaction)
        db.session.flush()
        if batch is not None:
            batch.transaction_id = transaction.id

        if commit:
            db.session.commit()
    except IntegrityError:
        # Lost a race on a unique key
        db.session.rollback()
        raise DuplicateOperationError(
            "Operation already applied",
            _find_existing(idempotency_key, stripe_payment_intent_id),
        )
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        f"Percoin {transaction_type} {amount:+d} for user {user_id}, balance {account.balance}"
    )
    return LedgerResult(transaction=transaction, balance=account.balance)


def record_purchase(
    user_id: str,
    percoin_amount: int,
    stripe_payment_intent_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> LedgerResult:
    """Credit purchased coins; replays of the same payment intent are no-ops."""
    try:
        return apply_transaction(
            user_id,
            percoin_amount,
            'purchase',
            metadata=metadata,
            stripe_payment_intent_id=stripe_payment_intent_id,
        )
    except DuplicateOperationError as e:
        logger.info(f"Duplicate purchase ignored for payment intent {stripe_payment_intent_id}")
        return LedgerResult(transaction=e.existing, balance=get_balance(user_id), duplicate=True)


def record_mock_purchase(user_id: str, package: Dict[str, Any]) -> LedgerResult:
    return record_purchase(
        user_id,
        package['credits'],
        metadata={
            'mode': 'mock',
            'packageId': package['id'],
            'priceYen': package['price_yen'],
        },
    )


def deduct_percoins(
    user_id: str,
    percoin_amount: int,
    related_generation_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> LedgerResult:
    if isinstance(percoin_amount, bool) or not isinstance(percoin_amount, int) or percoin_amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")
    return apply_transaction(
        user_id,
        -percoin_amount,
        'consumption',
        metadata=metadata,
        related_generation_id=related_generation_id,
        commit=commit,
    )


def refund_percoins(consumption: CreditTransaction, reason: str = 'generation_failed') -> LedgerResult:
    """Give back a consumption to the buckets it came from. At most once per consumption."""
    if consumption.transaction_type != 'consumption' or consumption.amount >= 0:
        raise InvalidAmountError("Only consumptions can be refunded")

    meta = consumption.meta or {}
    amount = -consumption.amount
    from_paid = int(meta.get('from_paid', 0))
    try:
        return apply_transaction(
            consumption.user_id,
            amount,
            'refund',
            metadata={'reason': reason, 'consumption_id': consumption.id},
            related_generation_id=consumption.related_generation_id,
            idempotency_key=f"refund:{consumption.id}",
            paid_portion=from_paid,
        )
    except DuplicateOperationError as e:
        return LedgerResult(transaction=e.existing, balance=get_balance(consumption.user_id), duplicate=True)


def grant_promo(
    user_id: str,
    amount: int,
    source: str,
    metadata: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
    commit: bool = True,
) -> LedgerResult:
    if source not in PROMO_TYPES:
        raise InvalidAmountError(f"Unknown bonus source: {source}")
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")
    return apply_transaction(
        user_id,
        amount,
        source,
        metadata=metadata,
        idempotency_key=idempotency_key,
        commit=commit,
    )


def grant_admin_bonus(
    user_id: str,
    amount: int,
    reason: str,
    admin_id: str,
    send_notification: bool = True,
) -> LedgerResult:
    """Grant an admin bonus as a free batch, optionally notifying the user."""
    if send_notification:
        db.session.add(Notification(
            user_id=user_id,
            actor_id=None,
            type='bonus',
            entity_type='percoin',
            title=f"{amount} percoins granted",
            body=reason,
        ))
    return grant_promo(
        user_id,
        amount,
        'admin_bonus',
        metadata={'reason': reason, 'admin_id': admin_id},
    )


def deduct_percoins_admin(
    user_id: str,
    amount: int,
    reason: str,
    admin_id: str,
    idempotency_key: str,
) -> LedgerResult:
    """Admin deduction, applied once per idempotency key."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")
    key = f"admin_deduction:{user_id}:{idempotency_key}"
    try:
        return apply_transaction(
            user_id,
            -amount,
            'admin_deduction',
            metadata={'reason': reason, 'admin_id': admin_id},
            idempotency_key=key,
        )
    except DuplicateOperationError as e:
        logger.info(f"Admin deduction replay ignored for key {idempotency_key}")
        return LedgerResult(transaction=e.existing, balance=get_balance(user_id), duplicate=True)


def expire_batches(now: Optional[datetime] = None) -> int:
    """Sweep every account holding expired batches. Returns coins expired."""
    now = now or datetime.utcnow()
    user_ids = [
        row[0] for row in db.session.query(FreePercoinBatch.user_id).filter(
            FreePercoinBatch.remaining_amount > 0,
            FreePercoinBatch.expire_at <= now,
        ).distinct().all()
    ]

    total = 0
    for user_id in user_ids:
        try:
            account = get_or_create_account(user_id, lock=True)
            total += _sweep_expired(account, now)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to expire batches for user {user_id}: {e}")
    return total


def hash_email(email: str, salt: str) -> str:
    normalized = (email or '').strip().lower()
    return hashlib.sha256(f"{normalized}|{salt}".encode('utf-8')).hexdigest()


def forfeit_account(
    user,
    salt: str,
    now: Optional[datetime] = None,
    record_transaction: bool = True,
) -> AccountForfeitureLedger:
    """Record the remaining balance of an account being purged. Does not commit.

    With ``record_transaction`` the balance is also zeroed by a 'forfeiture'
    transaction. The purge passes False: it deletes the user's transactions
    right afterwards, so only the ``account_forfeiture_ledger`` row survives.
    """
    now = now or datetime.utcnow()
    account = get_or_create_account(user.id, lock=True)
    _sweep_expired(account, now)

    entry = AccountForfeitureLedger(
        user_id=user.id,
        email_hash=hash_email(user.email, salt),
        paid_balance=account.paid_balance,
        promo_balance=account.promo_balance,
        forfeited_at=now,
    )
    db.session.add(entry)

    if record_transaction and account.balance > 0:
        apply_transaction(
            user.id,
            -account.balance,
            'forfeiture',
            metadata={'reason': 'account_deleted'},
            commit=False,
            now=now,
        )
    return entry


def list_transactions(
    user_id: str,
    filter_type: str = 'all',
    offset: int = 0,
    limit: int = TRANSACTIONS_PAGE_SIZE,
) -> Tuple[List[CreditTransaction], bool]:
    query = CreditTransaction.query.filter_by(user_id=user_id)
    if filter_type == 'regular':
        query = query.filter(CreditTransaction.expire_at.is_(None), CreditTransaction.amount > 0)
    elif filter_type == 'period_limited':
        query = query.filter(CreditTransaction.expire_at.isnot(None))
    elif filter_type == 'usage':
        query = query.filter(CreditTransaction.amount < 0)

    items = query.order_by(
        CreditTransaction.created_at.desc(), CreditTransaction.id.desc()
    ).offset(offset).limit(limit + 1).all()
    has_more = len(items) > limit
    return items[:limit], has_more


def list_expiring_batches(user_id: str, now: Optional[datetime] = None) -> Tuple[List[FreePercoinBatch], int]:
    """Unexpired batches by expiry, plus the amount that lapses before this JST month ends."""
    now = now or datetime.utcnow()
    batches = _active_batches(user_id, now).order_by(
        FreePercoinBatch.expire_at.asc(), FreePercoinBatch.id.asc()
    ).all()
    month_end = end_of_jst_month(now)
    expiring_this_month = sum(b.remaining_amount for b in batches if b.expire_at <= month_end)
    return batches, expiring_this_month


def expiration_notification_targets(days: int = 7, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Users holding coins that expire within ``days``."""
    now = now or datetime.utcnow()
    cutoff = now + timedelta(days=days)
    rows = db.session.query(
        FreePercoinBatch.user_id,
        func.sum(FreePercoinBatch.remaining_amount),
        func.min(FreePercoinBatch.expire_at),
    ).filter(
        FreePercoinBatch.remaining_amount > 0,
        FreePercoinBatch.expire_at > now,
        FreePercoinBatch.expire_at <= cutoff,
    ).group_by(FreePercoinBatch.user_id).all()

    return [
        {
            'user_id': user_id,
            'expiring_amount': int(amount or 0),
            'earliest_expire_at': earliest.isoformat() if earliest else None,
        }
        for user_id, amount, earliest in rows
    ]
