"""Operational background jobs: account purge, percoin expiry and the generation worker."""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy import or_

from app import db
from models import (
    User, AccountDeletionRequest, GeneratedImage, Like, Comment, Follow, UserBlock,
    PostReport, Notification, ImageJob, FreePercoinBatch, CreditTransaction, UserCredits, Referral,
    SourceImageStock,
)
from object_storage_utils import remove_files
from utils.percoin_ledger import forfeit_account, expire_batches

logger = logging.getLogger(__name__)

DEFAULT_PURGE_LIMIT = 100
MAX_PURGE_LIMIT = 500


def _delete_user_rows(user: User) -> None:
    """Remove everything owned by ``user``. Forfeiture and audit rows are kept."""
    db.session.flush()
    image_ids = [row[0] for row in db.session.query(GeneratedImage.id).filter_by(user_id=user.id).all()]

    if image_ids:
        Like.query.filter(Like.image_id.in_(image_ids)).delete(synchronize_session=False)
        Comment.query.filter(Comment.image_id.in_(image_ids)).delete(synchronize_session=False)
        PostReport.query.filter(PostReport.post_id.in_(image_ids)).delete(synchronize_session=False)

    Like.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    Comment.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    PostReport.query.filter_by(reporter_id=user.id).delete(synchronize_session=False)
    Follow.query.filter(or_(Follow.follower_id == user.id, Follow.followee_id == user.id)).delete(synchronize_session=False)
    UserBlock.query.filter(or_(UserBlock.blocker_id == user.id, UserBlock.blocked_id == user.id)).delete(synchronize_session=False)
    Notification.query.filter(or_(Notification.user_id == user.id, Notification.actor_id == user.id)).delete(synchronize_session=False)
    Referral.query.filter(or_(Referral.referrer_id == user.id, Referral.referred_id == user.id)).delete(synchronize_session=False)
    User.query.filter_by(referred_by_id=user.id).update({'referred_by_id': None}, synchronize_session=False)
    ImageJob.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    SourceImageStock.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    GeneratedImage.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    FreePercoinBatch.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    CreditTransaction.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    UserCredits.query.filter_by(user_id=user.id).delete(synchronize_session=False)
    User.query.filter_by(id=user.id).delete(synchronize_session=False)


def purge_due_accounts(limit: int = DEFAULT_PURGE_LIMIT, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Delete accounts whose scheduled deletion date has passed."""
    now = now or datetime.utcnow()
    limit = max(1, min(MAX_PURGE_LIMIT, limit))
    salt = current_app.config.get('ACCOUNT_FORFEITURE_HASH_SALT', '')

    candidates = AccountDeletionRequest.query.filter(
        AccountDeletionRequest.status == 'scheduled',
        AccountDeletionRequest.scheduled_for <= now,
    ).order_by(AccountDeletionRequest.scheduled_for.asc()).limit(limit).all()

    processed = 0
    deleted = 0
    failures = []

    for request_row in candidates:
        processed += 1
        user_id = request_row.user_id
        try:
            user = db.session.get(User, user_id)
            if user is not None:
                paths = [
                    row[0] for row in db.session.query(GeneratedImage.storage_path).filter(
                        GeneratedImage.user_id == user_id,
                        GeneratedImage.storage_path.isnot(None),
                    ).all()
                ]
                paths += [
                    row[0] for row in db.session.query(SourceImageStock.storage_path).filter_by(user_id=user_id).all()
                ]
                _, failed_paths = remove_files(paths)
                if failed_paths:
                    raise RuntimeError(f"failed to remove {len(failed_paths)} stored images")

                forfeit_account(user, salt, now=now, record_transaction=False)
                _delete_user_rows(user)

            request_row.status = 'completed'
            db.session.commit()
            deleted += 1
            logger.info(f"Purged account {user_id}")
        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to purge account {user_id}: {e}")
            failures.append({'user_id': user_id, 'error': str(e)})

    return {
        'success': True,
        'processed_count': processed,
        'deleted_count': deleted,
        'failed_count': len(failures),
        'failures': failures,
    }


def expire_free_percoins() -> int:
    total = expire_batches()
    logger.info(f"Expired {total} free percoins")
    return total


def run_generation_worker(limit: int = 20) -> Dict[str, int]:
    from image_jobs import process_queue
    return process_queue(limit=limit)
