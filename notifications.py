"""Notification and audit-trail helpers.

Nothing here commits: rows are added to the current session and become
part of the caller's unit of work.
"""
import json
import logging
from datetime import timedelta

from flask import current_app

from extensions import db
from models import NOTIFICATION_TYPES, STAFF_ROLES, BookHistory, Notification, User, UserHistory
from utils import utcnow

logger = logging.getLogger(__name__)


def notify(user_id, title, message, type='INFO'):
    if type not in NOTIFICATION_TYPES:
        raise ValueError(f"Unknown notification type: {type}")
    window = timedelta(minutes=current_app.config.get('NOTIFICATION_DEDUP_MINUTES', 5))
    duplicate = Notification.query.filter(
        Notification.user_id == user_id,
        Notification.title == title,
        Notification.message == message,
        Notification.created_at >= utcnow() - window,
    ).first()
    if duplicate:
        logger.debug(f"Skipped duplicate notification for user_id={user_id}: {title}")
        return None
    notification = Notification(user_id=user_id, title=title, message=message, type=type)
    db.session.add(notification)
    logger.debug(f"Created notification for user_id={user_id}: {title}")
    return notification


def notify_staff(title, message, type='BORROW_REQUEST'):
    staff = User.query.filter(User.role.in_(STAFF_ROLES), User.is_active.is_(True)).all()
    for member in staff:
        notify(member.user_id, title, message, type)
    return len(staff)


def record_user_history(user_id, action, description, metadata=None):
    entry = UserHistory(
        user_id=user_id,
        action=action,
        description=description,
        details=json.dumps(metadata, default=str) if metadata is not None else None,
    )
    db.session.add(entry)
    return entry


def record_book_history(book, action, user_id=None, old_data=None, new_data=None):
    entry = BookHistory(
        book=book,
        action=action,
        user_id=user_id,
        old_data=json.dumps(old_data, default=str) if old_data is not None else None,
        new_data=json.dumps(new_data, default=str) if new_data is not None else None,
    )
    db.session.add(entry)
    return entry
