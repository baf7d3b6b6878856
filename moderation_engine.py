"""Report aggregation and moderation engine.

Reports are weighted by reporter trust. A visible post is moved to the
``pending`` queue once recent or weighted report volume crosses a threshold
that scales with the number of active posters. Only reports made after the
last admin approval count.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, func, or_

from app import db
from models import GeneratedImage, PostReport, ModerationAuditLog, User
from activity_logger import log_admin_action

logger = logging.getLogger(__name__)

REPORT_TAXONOMY = [
    {'id': 'rights', 'label': 'Rights infringement', 'subcategories': [
        {'id': 'copyright', 'label': 'Copyright'},
        {'id': 'trademark', 'label': 'Trademark'},
        {'id': 'publicity', 'label': 'Right of publicity / portrait rights'},
    ]},
    {'id': 'sexual', 'label': 'Sexual content', 'subcategories': [
        {'id': 'adult_sexual', 'label': 'Adult sexual content'},
        {'id': 'minor_sexual', 'label': 'Sexual content involving minors'},
        {'id': 'sexual_exploitation', 'label': 'Sexual exploitation'},
    ]},
    {'id': 'violence', 'label': 'Violence', 'subcategories': [
        {'id': 'gore', 'label': 'Gore'},
        {'id': 'cruelty', 'label': 'Cruelty'},
        {'id': 'animal_abuse', 'label': 'Animal abuse'},
    ]},
    {'id': 'harassment', 'label': 'Harassment', 'subcategories': [
        {'id': 'hate', 'label': 'Hate speech'},
        {'id': 'threat', 'label': 'Threats'},
        {'id': 'bullying', 'label': 'Bullying'},
    ]},
    {'id': 'danger', 'label': 'Dangerous content', 'subcategories': [
        {'id': 'self_harm', 'label': 'Self-harm'},
        {'id': 'illegal_goods', 'label': 'Illegal goods'},
        {'id': 'crime', 'label': 'Criminal activity'},
    ]},
    {'id': 'spam_fraud', 'label': 'Spam / fraud', 'subcategories': [
        {'id': 'fraud', 'label': 'Fraud'},
        {'id': 'spam', 'label': 'Spam'},
        {'id': 'scam_link', 'label': 'Scam link'},
    ]},
    {'id': 'other', 'label': 'Other', 'subcategories': [
        {'id': 'other', 'label': 'Other'},
    ]},
]

REPORT_DETAILS_MAX_LENGTH = 300
DECISION_REASON_MAX_LENGTH = 300

# Reporter rate limits
SHORT_WINDOW = timedelta(minutes=10)
SHORT_WINDOW_LIMIT = 10
DAILY_WINDOW = timedelta(hours=24)
DAILY_WINDOW_LIMIT = 50

# Thresholds
RECENT_WINDOW = timedelta(minutes=10)
RECENT_REPORT_THRESHOLD = 3
MIN_WEIGHTED_THRESHOLD = 3
ACTIVE_USER_RATIO = 0.005
ACTIVE_USER_WINDOW = timedelta(days=7)

# Reporter weights
MIN_WEIGHT = 0.5
MAX_WEIGHT = 1.5
NEW_ACCOUNT_DAYS = 3
TRUSTED_ACCOUNT_DAYS = 30
ACTIVE_POSTER_MIN_POSTS = 10

MAX_PAGE_SIZE = 100


class ReportError(Exception):
    """Raised when a report is rejected; carries the HTTP status and error code."""

    def __init__(self, message: str, status: int = 400, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    def to_dict(self) -> Dict[str, Any]:
        data = {'error': self.message}
        if self.code:
            data['errorCode'] = self.code
        return data


def _find_category(category_id: str) -> Optional[Dict[str, Any]]:
    for category in REPORT_TAXONOMY:
        if category['id'] == category_id:
            return category
    return None


def is_valid_category(category_id: str, subcategory_id: str) -> bool:
    category = _find_category(category_id)
    if not category:
        return False
    return any(sub['id'] == subcategory_id for sub in category['subcategories'])


def get_category_labels(category_id: str, subcategory_id: str) -> Tuple[str, str]:
    category = _find_category(category_id)
    if not category:
        return category_id, subcategory_id
    sub_label = next(
        (sub['label'] for sub in category['subcategories'] if sub['id'] == subcategory_id),
        subcategory_id,
    )
    return category['label'], sub_label


def check_report_rate_limit(reporter_id: str, now: Optional[datetime] = None) -> None:
    now = now or datetime.utcnow()
    short_count = PostReport.query.filter(
        PostReport.reporter_id == reporter_id,
        PostReport.created_at >= now - SHORT_WINDOW,
    ).count()
    if short_count >= SHORT_WINDOW_LIMIT:
        raise ReportError('Too many reports. Please wait a few minutes.', 429, 'REPORT_RATE_LIMIT_SHORT')

    daily_count = PostReport.query.filter(
        PostReport.reporter_id == reporter_id,
        PostReport.created_at >= now - DAILY_WINDOW,
    ).count()
    if daily_count >= DAILY_WINDOW_LIMIT:
        raise ReportError('Daily report limit reached.', 429, 'REPORT_RATE_LIMIT_DAILY')


def compute_reporter_weight(reporter: User, now: Optional[datetime] = None) -> float:
    """Trust weight of a reporter: newer accounts count less, active posters more."""
    now = now or datetime.utcnow()
    weight = 1.0

    created_at = reporter.created_at or now
    age_days = (now - created_at).total_seconds() / 86400
    if age_days < NEW_ACCOUNT_DAYS:
        weight = 0.5
    elif age_days >= TRUSTED_ACCOUNT_DAYS:
        weight = 1.25

    posted_count = GeneratedImage.query.filter_by(user_id=reporter.id, is_posted=True).count()
    if posted_count >= ACTIVE_POSTER_MIN_POSTS:
        weight += 0.25

    return max(MIN_WEIGHT, min(MAX_WEIGHT, weight))


def count_active_users(now: Optional[datetime] = None) -> int:
    """Distinct users with a visible post in the last week."""
    now = now or datetime.utcnow()
    return db.session.query(func.count(func.distinct(GeneratedImage.user_id))).filter(
        GeneratedImage.is_posted.is_(True),
        GeneratedImage.moderation_status == 'visible',
        GeneratedImage.posted_at >= now - ACTIVE_USER_WINDOW,
    ).scalar() or 0


def get_report_threshold(now: Optional[datetime] = None) -> int:
    return max(MIN_WEIGHTED_THRESHOLD, math.ceil(count_active_users(now) * ACTIVE_USER_RATIO))


def _counted_reports_filter():
    """Reports made after the post's last approval."""
    return or_(
        GeneratedImage.moderation_approved_at.is_(None),
        PostReport.created_at > GeneratedImage.moderation_approved_at,
    )


def _aggregate_query(now: datetime):
    recent_cutoff = now - RECENT_WINDOW
    return db.session.query(
        PostReport.post_id.label('post_id'),
        func.count(PostReport.id).label('report_count'),
        func.coalesce(func.sum(PostReport.weight), 0.0).label('weighted_score'),
        func.sum(case((PostReport.created_at >= recent_cutoff, 1), else_=0)).label('recent_count'),
        func.max(PostReport.created_at).label('latest_report_at'),
    ).join(
        GeneratedImage, GeneratedImage.id == PostReport.post_id
    ).filter(
        _counted_reports_filter()
    ).group_by(PostReport.post_id)


def get_post_report_metrics(post_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    row = _aggregate_query(now).filter(PostReport.post_id == post_id).first()
    if row is None:
        return {'reportCount': 0, 'weightedScore': 0.0, 'recentCount': 0, 'latestReportAt': None}
    return {
        'reportCount': int(row.report_count or 0),
        'weightedScore': float(row.weighted_score or 0.0),
        'recentCount': int(row.recent_count or 0),
        'latestReportAt': row.latest_report_at.isoformat() if row.latest_report_at else None,
    }


def is_over_threshold(recent_count: int, weighted_score: float, threshold: int) -> bool:
    return recent_count >= RECENT_REPORT_THRESHOLD or weighted_score >= threshold


def submit_report(
    reporter: User,
    post_id: Optional[str],
    category_id: Optional[str],
    subcategory_id: Optional[str],
    details: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Record a user report and flag the post for review if thresholds are crossed.

    Raises ReportError for invalid payloads, rate limits, missing posts and duplicates.
    """
    now = now or datetime.utcnow()

    if not post_id or not isinstance(post_id, str):
        raise ReportError('postId is required')
    if not category_id or not subcategory_id or not is_valid_category(category_id, subcategory_id):
        raise ReportError('Invalid report category')
    if details is not None and not isinstance(details, str):
        raise ReportError('details must be a string')
    details = (details or '').strip() or None
    if details and len(details) > REPORT_DETAILS_MAX_LENGTH:
        raise ReportError(f'details must be at most {REPORT_DETAILS_MAX_LENGTH} characters')

    check_report_rate_limit(reporter.id, now)

    post = db.session.get(GeneratedImage, post_id)
    if post is None or not post.is_posted:
        raise ReportError('Post not found', 404)
    if post.user_id == reporter.id:
        raise ReportError('You cannot report your own post')

    existing = PostReport.query.filter_by(reporter_id=reporter.id, post_id=post_id).first()
    if existing:
        raise ReportError('You have already reported this post')

    report = PostReport(
        reporter_id=reporter.id,
        post_id=post_id,
        category_id=category_id,
        subcategory_id=subcategory_id,
        details=details,
        weight=compute_reporter_weight(reporter, now),
        created_at=now,
    )
    db.session.add(report)
    try:
        db.session.flush()
    except Exception as e:
        db.session.rollback()
        logger.warning(f"Duplicate report for post {post_id} by {reporter.id}: {e}")
        raise ReportError('You have already reported this post')

    metrics = get_post_report_metrics(post_id, now)
    threshold = get_report_threshold(now)
    if post.moderation_status == 'visible' and is_over_threshold(
        metrics['recentCount'], metrics['weightedScore'], threshold
    ):
        post.moderation_status = 'pending'
        post.moderation_reason = 'report_threshold'
        post.moderation_updated_at = now
        db.session.add(ModerationAuditLog(
            post_id=post_id,
            actor_id=None,
            action='pending',
            reason='report_threshold',
            meta={
                'weightedScore': metrics['weightedScore'],
                'recentCount': metrics['recentCount'],
                'threshold': threshold,
            },
            created_at=now,
        ))
        logger.info(
            f"Post {post_id} moved to moderation queue "
            f"(score {metrics['weightedScore']}, recent {metrics['recentCount']}, threshold {threshold})"
        )

    db.session.commit()
    return {
        'reportId': report.id,
        'postModerationStatus': post.moderation_status,
        'isHiddenForReporter': True,
    }


def withdraw_report(reporter_id: str, post_id: str) -> bool:
    deleted = PostReport.query.filter_by(reporter_id=reporter_id, post_id=post_id).delete()
    db.session.commit()
    return deleted > 0


def apply_moderation_decision(
    post_id: str,
    admin_id: str,
    action: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[bool, Optional[str], Optional[GeneratedImage]]:
    """Approve or reject a post.

    Returns:
        (success, error, post)
    """
    if action not in ('approve', 'reject'):
        return False, 'action must be approve or reject', None
    if reason is not None and (not isinstance(reason, str) or len(reason) > DECISION_REASON_MAX_LENGTH):
        return False, f'reason must be at most {DECISION_REASON_MAX_LENGTH} characters', None

    post = db.session.get(GeneratedImage, post_id)
    if post is None:
        return False, 'Post not found', None

    now = now or datetime.utcnow()
    reason = (reason or '').strip() or None
    if action == 'approve':
        post.moderation_status = 'visible'
        post.moderation_reason = None
        post.moderation_approved_at = now
    else:
        post.moderation_status = 'removed'
        post.moderation_reason = reason or 'admin_reject'
    post.moderation_updated_at = now

    db.session.add(ModerationAuditLog(
        post_id=post_id,
        actor_id=admin_id,
        action=action,
        reason=reason if action == 'approve' else post.moderation_reason,
        created_at=now,
    ))
    try:
        db.session.commit()
    except Exception as e:
        logger.error(f"Failed to apply moderation decision on {post_id}: {e}")
        db.session.rollback()
        return False, 'Failed to apply decision', None

    log_admin_action(
        admin_id,
        'moderation_approve' if action == 'approve' else 'moderation_reject',
        'post',
        post_id,
        {'reason': reason} if reason else None,
    )
    logger.info(f"Moderation {action} on post {post_id} by {admin_id}")
    return True, None, post


def get_moderation_queue(limit: int = 50, offset: int = 0, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or datetime.utcnow()
    posts = GeneratedImage.query.filter_by(moderation_status='pending').order_by(
        GeneratedImage.moderation_updated_at.desc()
    ).offset(offset).limit(min(limit, MAX_PAGE_SIZE)).all()
    if not posts:
        return []

    rows = _aggregate_query(now).filter(PostReport.post_id.in_([p.id for p in posts])).all()
    by_post = {row.post_id: row for row in rows}

    items = []
    for post in posts:
        row = by_post.get(post.id)
        item = post.to_dict()
        item['moderation_reason'] = post.moderation_reason
        item['moderation_updated_at'] = post.moderation_updated_at.isoformat() if post.moderation_updated_at else None
        item['report_count'] = int(row.report_count) if row else 0
        item['weighted_report_score'] = float(row.weighted_score) if row else 0.0
        item['latest_reported_at'] = row.latest_report_at.isoformat() if row and row.latest_report_at else None
        items.append(item)
    return items


def get_aggregated_reports(limit: int = 50, offset: int = 0, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    limit = min(limit, MAX_PAGE_SIZE)
    threshold = get_report_threshold(now)

    aggregate = _aggregate_query(now).subquery()
    total = db.session.query(func.count()).select_from(aggregate).scalar() or 0

    rows = db.session.query(aggregate, GeneratedImage).join(
        GeneratedImage, GeneratedImage.id == aggregate.c.post_id
    ).order_by(aggregate.c.latest_report_at.desc()).offset(offset).limit(limit).all()

    items = []
    for row in rows:
        post = row.GeneratedImage
        weighted = float(row.weighted_score or 0.0)
        recent = int(row.recent_count or 0)
        items.append({
            'postId': row.post_id,
            'reportCount': int(row.report_count or 0),
            'weightedScore': weighted,
            'recentCount': recent,
            'latestReportAt': row.latest_report_at.isoformat() if row.latest_report_at else None,
            'overThreshold': is_over_threshold(recent, weighted, threshold),
            'moderationStatus': post.moderation_status,
            'imageUrl': post.image_url,
            'caption': post.caption,
            'ownerId': post.user_id,
        })

    return {'items': items, 'total': total, 'limit': limit, 'offset': offset, 'threshold': threshold}


def list_reports(limit: int = 50, offset: int = 0, reporter_id: Optional[str] = None) -> Tuple[List[Dict[str, Any]], int]:
    query = PostReport.query
    if reporter_id:
        query = query.filter_by(reporter_id=reporter_id)
    total = query.count()
    reports = query.order_by(PostReport.created_at.desc(), PostReport.id.desc()).offset(offset).limit(
        min(limit, MAX_PAGE_SIZE)
    ).all()

    items = []
    for report in reports:
        category_label, subcategory_label = get_category_labels(report.category_id, report.subcategory_id)
        items.append({
            'id': report.id,
            'postId': report.post_id,
            'reporterId': report.reporter_id,
            'categoryId': report.category_id,
            'categoryLabel': category_label,
            'subcategoryId': report.subcategory_id,
            'subcategoryLabel': subcategory_label,
            'details': report.details,
            'weight': report.weight,
            'createdAt': report.created_at.isoformat() if report.created_at else None,
        })
    return items, total


def reported_post_ids(user_id: str) -> List[str]:
    """Posts the user reported; these stay hidden from the reporter."""
    return [row[0] for row in db.session.query(PostReport.post_id).filter_by(reporter_id=user_id).all()]
