"""
Gamification Service - Percoin bonuses for signup, tutorial, daily posts and login streaks
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from app import db
from models import PercoinBonusDefault, PercoinStreakDefault
from utils.jst import jst_date
from utils.percoin_ledger import grant_promo, DuplicateOperationError

logger = logging.getLogger(__name__)

DEFAULT_BONUS_AMOUNTS = {
    'signup_bonus': 50,
    'tour_bonus': 20,
    'referral': 100,
    'daily_post': 30,
}

EDITABLE_BONUS_SOURCES = ('signup_bonus', 'tour_bonus', 'referral', 'daily_post')

DEFAULT_STREAK_AMOUNTS = [10, 10, 20, 10, 10, 10, 50, 10, 10, 10, 10, 10, 10, 100]
STREAK_CYCLE_DAYS = len(DEFAULT_STREAK_AMOUNTS)

MIN_BONUS_AMOUNT = 1
MAX_BONUS_AMOUNT = 1000


def _valid_amount(value) -> bool:
    return (
        isinstance(value, int)
        and not isinstance(value, bool)
        and MIN_BONUS_AMOUNT <= value <= MAX_BONUS_AMOUNT
    )


class BonusService:
    """Bonus amounts and idempotent bonus grants"""

    @staticmethod
    def get_bonus_amount(source: str) -> int:
        row = PercoinBonusDefault.query.filter_by(source=source).first()
        if row:
            return row.amount
        return DEFAULT_BONUS_AMOUNTS.get(source, 0)

    @staticmethod
    def get_bonus_defaults() -> List[Dict[str, Any]]:
        stored = {row.source: row for row in PercoinBonusDefault.query.all()}
        result = []
        for source in EDITABLE_BONUS_SOURCES:
            row = stored.get(source)
            result.append({
                'source': source,
                'amount': row.amount if row else DEFAULT_BONUS_AMOUNTS[source],
                'updated_at': row.updated_at.isoformat() if row and row.updated_at else None,
            })
        return result

    @staticmethod
    def get_streak_schedule() -> List[int]:
        schedule = list(DEFAULT_STREAK_AMOUNTS)
        for row in PercoinStreakDefault.query.all():
            if 1 <= row.streak_day <= STREAK_CYCLE_DAYS:
                schedule[row.streak_day - 1] = row.amount
        return schedule

    @staticmethod
    def update_bonus_defaults(entries: Any) -> Tuple[bool, Optional[str]]:
        """Upsert bonus amounts. Returns (success, error)."""
        if not isinstance(entries, list) or not entries:
            return False, 'defaults must be a non-empty list'

        for entry in entries:
            if not isinstance(entry, dict):
                return False, 'each default must be an object'
            if entry.get('source') not in EDITABLE_BONUS_SOURCES:
                return False, f"invalid source: {entry.get('source')}"
            if not _valid_amount(entry.get('amount')):
                return False, f"amount must be an integer between {MIN_BONUS_AMOUNT} and {MAX_BONUS_AMOUNT}"

        try:
            for entry in entries:
                row = PercoinBonusDefault.query.filter_by(source=entry['source']).first()
                if row is None:
                    row = PercoinBonusDefault(source=entry['source'], amount=entry['amount'])
                    db.session.add(row)
                else:
                    row.amount = entry['amount']
                    row.updated_at = datetime.utcnow()
            db.session.commit()
        except Exception as e:
            logger.error(f"Failed to update bonus defaults: {e}")
            db.session.rollback()
            return False, 'failed to update bonus defaults'
        return True, None

    @staticmethod
    def update_streak_defaults(entries: Any) -> Tuple[bool, Optional[str]]:
        """Replace the 14-day schedule. Every day 1..14 must be present exactly once."""
        if not isinstance(entries, list) or len(entries) != STREAK_CYCLE_DAYS:
            return False, f'streak defaults must cover days 1-{STREAK_CYCLE_DAYS}'

        days = set()
        for entry in entries:
            if not isinstance(entry, dict):
                return False, 'each default must be an object'
            day = entry.get('streak_day')
            if not isinstance(day, int) or isinstance(day, bool) or not 1 <= day <= STREAK_CYCLE_DAYS:
                return False, f'invalid streak_day: {day}'
            if not _valid_amount(entry.get('amount')):
                return False, f"amount must be an integer between {MIN_BONUS_AMOUNT} and {MAX_BONUS_AMOUNT}"
            days.add(day)

        if days != set(range(1, STREAK_CYCLE_DAYS + 1)):
            return False, f'streak defaults must cover days 1-{STREAK_CYCLE_DAYS}'

        try:
            for entry in entries:
                row = PercoinStreakDefault.query.filter_by(streak_day=entry['streak_day']).first()
                if row is None:
                    db.session.add(PercoinStreakDefault(streak_day=entry['streak_day'], amount=entry['amount']))
                else:
                    row.amount = entry['amount']
                    row.updated_at = datetime.utcnow()
            db.session.commit()
        except Exception as e:
            logger.error(f"Failed to update streak defaults: {e}")
            db.session.rollback()
            return False, 'failed to update streak defaults'
        return True, None

    @staticmethod
    def grant_signup_bonus(user) -> int:
        amount = BonusService.get_bonus_amount('signup_bonus')
        if amount <= 0:
            return 0
        try:
            grant_promo(user.id, amount, 'signup_bonus', idempotency_key=f"signup_bonus:{user.id}")
        except DuplicateOperationError:
            return 0
        return amount

    @staticmethod
    def grant_streak_bonus(user, now: Optional[datetime] = None) -> Tuple[int, int]:
        """
        Daily login check-in on the JST calendar.

        Returns (bonus_granted, streak_days). A second check-in on the same
        day grants nothing. Missing a day restarts the streak at 1; after day
        14 the schedule starts over.
        """
        now = now or datetime.utcnow()
        today = jst_date(now)

        if user.last_streak_login_at is not None:
            last_day = jst_date(user.last_streak_login_at)
            if last_day == today:
                return 0, user.streak_days or 0
            streak = (user.streak_days or 0) + 1 if last_day == today - timedelta(days=1) else 1
        else:
            streak = 1

        day_index = (streak - 1) % STREAK_CYCLE_DAYS + 1
        amount = BonusService.get_streak_schedule()[day_index - 1]

        user.streak_days = streak
        user.last_streak_login_at = now
        try:
            grant_promo(
                user.id,
                amount,
                'streak',
                metadata={'streak_day': day_index, 'streak_days': streak},
                idempotency_key=f"streak:{user.id}:{today.isoformat()}",
            )
        except DuplicateOperationError:
            db.session.rollback()
            return 0, user.streak_days or 0

        logger.info(f"Streak bonus {amount} for user {user.id} (day {streak})")
        return amount, streak

    @staticmethod
    def grant_daily_post_bonus(user, generation_id: str, now: Optional[datetime] = None) -> int:
        """Once per JST day and once per image. Returns the amount granted."""
        now = now or datetime.utcnow()
        if user.last_daily_post_bonus_at is not None and jst_date(user.last_daily_post_bonus_at) == jst_date(now):
            return 0

        amount = BonusService.get_bonus_amount('daily_post')
        if amount <= 0:
            return 0

        user.last_daily_post_bonus_at = now
        try:
            grant_promo(
                user.id,
                amount,
                'daily_post',
                metadata={'generation_id': generation_id},
                idempotency_key=f"daily_post:{generation_id}",
            )
        except DuplicateOperationError:
            db.session.rollback()
            return 0
        return amount

    @staticmethod
    def grant_tour_bonus(user, now: Optional[datetime] = None) -> Dict[str, Any]:
        if user.tutorial_completed_at is not None:
            return {'success': True, 'amount_granted': 0, 'already_completed': True}

        amount = BonusService.get_bonus_amount('tour_bonus')
        user.tutorial_completed_at = now or datetime.utcnow()
        try:
            grant_promo(user.id, amount, 'tour_bonus', idempotency_key=f"tour_bonus:{user.id}")
        except DuplicateOperationError:
            db.session.rollback()
            return {'success': True, 'amount_granted': 0, 'already_completed': True}
        return {'success': True, 'amount_granted': amount, 'already_completed': False}
