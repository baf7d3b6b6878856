"""
Referral System - referral codes and the referrer bonus granted on the invitee's first login.
"""
import secrets
import logging
from datetime import datetime
from typing import Optional

from app import db
from models import User, Referral
from utils.gamification import BonusService
from utils.percoin_ledger import grant_promo, DuplicateOperationError

logger = logging.getLogger(__name__)

REFERRAL_CODE_PREFIX = "PA"


def generate_referral_code(prefix: str = REFERRAL_CODE_PREFIX) -> str:
    """Generate a unique referral code."""
    return f"{prefix}{secrets.token_hex(4).upper()}"


def get_or_create_referral_code(user: User) -> str:
    """Get or generate the user's referral code."""
    if user.referral_code:
        return user.referral_code

    for _ in range(5):
        code = generate_referral_code()
        if not User.query.filter_by(referral_code=code).first():
            user.referral_code = code
            db.session.commit()
            return code
    raise RuntimeError("Could not allocate a unique referral code")


def record_referral(new_user: User, referral_code: Optional[str]) -> Optional[Referral]:
    """Link a freshly signed-up user to the owner of ``referral_code``. Does not commit."""
    if not referral_code:
        return None

    referrer = User.query.filter_by(referral_code=referral_code.strip().upper()).first()
    if not referrer or referrer.id == new_user.id:
        logger.info(f"Ignoring unknown referral code {referral_code}")
        return None

    new_user.referred_by_id = referrer.id
    referral = Referral(
        referrer_id=referrer.id,
        referred_id=new_user.id,
        referral_code=referrer.referral_code,
    )
    db.session.add(referral)
    return referral


def check_first_login(user: User) -> bool:
    """
    Grant the referrer bonus the first time a referred user logs in.

    Returns True only on the call that granted the bonus.
    """
    if user.first_login_at is None:
        user.first_login_at = datetime.utcnow()
        db.session.commit()

    referral = Referral.query.filter_by(referred_id=user.id).first()
    if referral is None or referral.bonus_granted_at is not None:
        return False

    amount = BonusService.get_bonus_amount('referral')
    referral.bonus_granted_at = datetime.utcnow()
    try:
        grant_promo(
            referral.referrer_id,
            amount,
            'referral',
            metadata={'referred_user_id': user.id},
            idempotency_key=f"referral:{user.id}",
        )
    except DuplicateOperationError:
        db.session.rollback()
        return False

    logger.info(f"Referral bonus {amount} granted to {referral.referrer_id} for {user.id}")
    return True
