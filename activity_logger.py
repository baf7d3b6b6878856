"""Admin audit logging.

Usage:
    from activity_logger import log_admin_action
    log_admin_action(admin.id, 'user_suspend', 'user', user.id)
"""
from __future__ import annotations
import csv
import io
import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from app import db
from models import AdminAuditLog

logger = logging.getLogger(__name__)

ADMIN_ACTION_TYPES = (
    'user_suspend',
    'user_reactivate',
    'bonus_grant',
    'deduction',
    'moderation_approve',
    'moderation_reject',
    'bonus_defaults_update',
)


def log_admin_action(
    admin_user_id: str,
    action_type: str,
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Record an admin action. Failures are logged but never raise."""
    try:
        entry = AdminAuditLog(
            admin_user_id=admin_user_id,
            action_type=action_type,
            target_type=target_type,
            target_id=str(target_id) if target_id is not None else None,
            meta=metadata or {},
        )
        db.session.add(entry)
        db.session.commit()
    except Exception as e:
        logger.error(f"Failed to log admin action {action_type}: {e}")
        try:
            db.session.rollback()
        except Exception:
            logger.exception("Rollback after audit failure also failed")


def query_audit_log(
    action_type: Optional[str] = None,
    target_type: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
):
    query = AdminAuditLog.query
    if action_type:
        query = query.filter(AdminAuditLog.action_type == action_type)
    if target_type:
        query = query.filter(AdminAuditLog.target_type == target_type)
    if date_from:
        query = query.filter(AdminAuditLog.created_at >= date_from)
    if date_to:
        query = query.filter(AdminAuditLog.created_at <= date_to)
    return query.order_by(AdminAuditLog.created_at.desc(), AdminAuditLog.id.desc())


def export_audit_csv(entries: Iterable[AdminAuditLog]) -> str:
    """CSV export; the csv module quotes commas, quotes and newlines."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator='\n')
    writer.writerow(['id', 'created_at', 'admin_user_id', 'action_type', 'target_type', 'target_id', 'metadata'])
    for entry in entries:
        writer.writerow([
            entry.id,
            entry.created_at.isoformat() if entry.created_at else '',
            entry.admin_user_id,
            entry.action_type,
            entry.target_type or '',
            entry.target_id or '',
            json.dumps(entry.meta or {}, ensure_ascii=False),
        ])
    return buffer.getvalue()
