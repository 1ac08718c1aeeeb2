"""Borrow-request workflow, circulation ledger and overdue fines.

A borrow request only moves forward:

    PENDING -> APPROVED -> RETURNED
    PENDING -> REJECTED

Every function here works on the current session; route handlers own the
commit. ``assess_overdue_fines`` and the ``send_*`` notification runs are the
exceptions because they also run from the scheduler, outside any request.
"""
import logging
import math
from datetime import timedelta

from flask import current_app

from extensions import db
from models import (ACTIVE_REQUEST_STATUSES, STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED,
                    STATUS_RETURNED, TRANSACTION_ISSUE, TRANSACTION_RENEWAL, TRANSACTION_RETURN,
                    BorrowRequest, Fine, Transaction)
from notifications import notify, notify_staff, record_user_history
from utils import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    STATUS_PENDING: (STATUS_APPROVED, STATUS_REJECTED),
    STATUS_APPROVED: (STATUS_RETURNED,),
    STATUS_REJECTED: (),
    STATUS_RETURNED: (),
}
# Reminders go out this many days before the due date
REMINDER_DAYS = (1, 3, 7)


class CirculationError(Exception):
    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def can_transition(current, new):
    return new in ALLOWED_TRANSITIONS.get(current, ())


def _transition(borrow_request, new_status):
    if not can_transition(borrow_request.status, new_status):
        logger.error(f"Rejected transition {borrow_request.status} -> {new_status} "
                     f"for request_id={borrow_request.request_id}")
        raise CirculationError(f"Request is {borrow_request.status.lower()}, cannot mark as {new_status.lower()}")
    borrow_request.status = new_status


def _record(borrow_request, transaction_type, actor=None, notes=None, when=None):
    transaction = Transaction(
        user_id=borrow_request.user_id,
        book_id=borrow_request.book_id,
        borrow_request=borrow_request,
        transaction_type=transaction_type,
        transaction_date=when or utcnow(),
        due_date=borrow_request.due_date,
        processed_by=actor.user_id if actor else None,
        notes=notes,
    )
    db.session.add(transaction)
    return transaction


def days_overdue(due_date, now=None):
    if due_date is None:
        return 0
    now = now or utcnow()
    if now <= due_date:
        return 0
    return math.ceil((now - due_date).total_seconds() / 86400)


def create_request(user, book, requested_days=None):
    config = current_app.config
    if requested_days is None:
        requested_days = config['LOAN_PERIOD_DAYS']
    if book is None or not book.is_active:
        raise CirculationError('Book not found', 404)
    if not isinstance(requested_days, int) or isinstance(requested_days, bool) \
            or not 1 <= requested_days <= config['MAX_LOAN_PERIOD_DAYS']:
        raise CirculationError(f"requested_days must be between 1 and {config['MAX_LOAN_PERIOD_DAYS']}")
    if book.available_copies <= 0:
        raise CirculationError('Book is not available for borrowing')
    existing = BorrowRequest.query.filter(
        BorrowRequest.user_id == user.user_id,
        BorrowRequest.book_id == book.book_id,
        BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
    ).first()
    if existing:
        if existing.status == STATUS_PENDING:
            raise CirculationError('You already have a pending request for this book')
        raise CirculationError('You already have this book borrowed')

    borrow_request = BorrowRequest(
        user=user,
        book=book,
        requested_days=requested_days,
        status=STATUS_PENDING,
        request_date=utcnow(),
    )
    db.session.add(borrow_request)
    notify(user.user_id, 'Borrow Request Submitted',
           f'Your request to borrow "{book.title}" has been submitted and is pending approval.',
           'BORROW_REQUEST')
    notify_staff('New Borrow Request',
                 f'{user.name} ({user.membership_id}) has requested to borrow "{book.title}".')
    logger.debug(f"Borrow request created: book_id={book.book_id} by user_id={user.user_id}")
    return borrow_request


def approve(borrow_request, staff, response=None):
    book = borrow_request.book
    if borrow_request.status == STATUS_PENDING and book.available_copies <= 0:
        raise CirculationError('Book is no longer available')
    _transition(borrow_request, STATUS_APPROVED)
    now = utcnow()
    book.available_copies -= 1
    borrow_request.approved_date = now
    borrow_request.approved_by = staff.user_id
    borrow_request.due_date = now + timedelta(days=borrow_request.requested_days)
    borrow_request.admin_response = response
    _record(borrow_request, TRANSACTION_ISSUE, staff, response, now)
    notify(borrow_request.user_id, 'Borrow Request Approved',
           f'Your borrow request for "{book.title}" has been approved. '
           f'Due date: {borrow_request.due_date.date().isoformat()}')
    record_user_history(borrow_request.user_id, 'BORROW_APPROVED',
                        f'Borrow request approved for "{book.title}"',
                        {'book_id': book.book_id, 'request_id': borrow_request.request_id,
                         'due_date': borrow_request.due_date})
    logger.debug(f"Borrow request approved: request_id={borrow_request.request_id}")
    return borrow_request


def reject(borrow_request, staff, response=None):
    _transition(borrow_request, STATUS_REJECTED)
    borrow_request.approved_by = staff.user_id
    borrow_request.admin_response = response
    book = borrow_request.book
    reason = f' Reason: {response}' if response else ''
    notify(borrow_request.user_id, 'Borrow Request Rejected',
           f'Your borrow request for "{book.title}" has been rejected.{reason}', 'WARNING')
    record_user_history(borrow_request.user_id, 'BORROW_REJECTED',
                        f'Borrow request rejected for "{book.title}"',
                        {'book_id': book.book_id, 'request_id': borrow_request.request_id,
                         'reason': response})
    logger.debug(f"Borrow request rejected: request_id={borrow_request.request_id}")
    return borrow_request


def mark_returned(borrow_request, actor, notes=None):
    """Close an approved loan. Returns True when the book came back late."""
    _transition(borrow_request, STATUS_RETURNED)
    now = utcnow()
    book = borrow_request.book
    borrow_request.return_date = now
    if notes:
        borrow_request.notes = f"{borrow_request.notes} | {notes}" if borrow_request.notes else notes
    book.available_copies = min(book.available_copies + 1, book.total_copies)
    _record(borrow_request, TRANSACTION_RETURN, actor, notes, now)

    is_overdue = days_overdue(borrow_request.due_date, now) > 0
    if is_overdue:
        assess_fine(borrow_request, now)
    notify(borrow_request.user_id, 'Book Returned',
           f'"{book.title}" has been returned successfully.'
           f'{" A fine has been issued for the overdue return." if is_overdue else ""}',
           'WARNING' if is_overdue else 'INFO')
    record_user_history(borrow_request.user_id, 'BOOK_RETURNED',
                        f'Returned "{book.title}"{" (overdue)" if is_overdue else ""}',
                        {'book_id': book.book_id, 'request_id': borrow_request.request_id,
                         'return_date': now, 'is_overdue': is_overdue})
    logger.debug(f"Book returned: request_id={borrow_request.request_id}, overdue={is_overdue}")
    return is_overdue


def renew(borrow_request, actor):
    max_renewals = current_app.config['MAX_RENEWALS']
    if borrow_request.status != STATUS_APPROVED:
        raise CirculationError('Only borrowed books can be renewed')
    if borrow_request.is_overdue:
        raise CirculationError('Overdue books cannot be renewed')
    if borrow_request.renewal_count >= max_renewals:
        raise CirculationError(f'Renewal limit of {max_renewals} reached')
    borrow_request.due_date = borrow_request.due_date + timedelta(days=current_app.config['LOAN_PERIOD_DAYS'])
    borrow_request.renewal_count += 1
    _record(borrow_request, TRANSACTION_RENEWAL, actor)
    notify(borrow_request.user_id, 'Loan Renewed',
           f'"{borrow_request.book.title}" has been renewed. '
           f'New due date: {borrow_request.due_date.date().isoformat()}')
    logger.debug(f"Loan renewed: request_id={borrow_request.request_id} "
                 f"({borrow_request.renewal_count}/{max_renewals})")
    return borrow_request


def assess_fine(borrow_request, now=None):
    """Create or refresh the unpaid fine of a late request.

    Returns 'created', 'updated' or None when nothing changed.
    """
    days = days_overdue(borrow_request.due_date, now)
    if days <= 0:
        return None
    amount = round(days * current_app.config['FINE_PER_DAY'], 2)
    fine = Fine.query.filter_by(request_id=borrow_request.request_id, is_paid=False).first()
    if fine:
        if fine.amount == amount and fine.days_overdue == days:
            return None
        fine.amount = amount
        fine.days_overdue = days
        return 'updated'
    db.session.add(Fine(user_id=borrow_request.user_id, borrow_request=borrow_request,
                        amount=amount, days_overdue=days))
    notify(borrow_request.user_id, 'Overdue Fine Issued',
           f'A fine of {amount:.2f} has been issued for "{borrow_request.book.title}", '
           f'{days} day{"s" if days > 1 else ""} overdue.', 'ALERT')
    record_user_history(borrow_request.user_id, 'FINE_ISSUED',
                        f'Fine of {amount:.2f} issued for "{borrow_request.book.title}"',
                        {'request_id': borrow_request.request_id, 'amount': amount,
                         'days_overdue': days})
    return 'created'


def assess_overdue_fines():
    now = utcnow()
    overdue = BorrowRequest.query.filter(
        BorrowRequest.status == STATUS_APPROVED,
        BorrowRequest.due_date.isnot(None),
        BorrowRequest.due_date < now,
        BorrowRequest.return_date.is_(None),
    ).all()
    fines_created = 0
    fines_updated = 0
    total_fine_amount = 0.0
    users = {}
    for borrow_request in overdue:
        outcome = assess_fine(borrow_request, now)
        if outcome == 'created':
            fines_created += 1
        elif outcome == 'updated':
            fines_updated += 1
        days = days_overdue(borrow_request.due_date, now)
        amount = round(days * current_app.config['FINE_PER_DAY'], 2)
        total_fine_amount += amount
        summary = users.setdefault(borrow_request.user_id, {
            'user_id': borrow_request.user_id,
            'name': borrow_request.user.name,
            'email': borrow_request.user.email,
            'books': 0,
            'total_fine': 0.0,
            'total_days_overdue': 0,
        })
        summary['books'] += 1
        summary['total_fine'] += amount
        summary['total_days_overdue'] += days
    db.session.commit()
    logger.info(f"Fine calculation completed: {len(overdue)} overdue, "
                f"{fines_created} created, {fines_updated} updated")
    return {
        'summary': {
            'overdue_books': len(overdue),
            'fines_created': fines_created,
            'fines_updated': fines_updated,
            'total_fine_amount': total_fine_amount,
            'users_affected': len(users),
            'average_fine_per_book': total_fine_amount / len(overdue) if overdue else 0,
        },
        'user_summaries': list(users.values()),
    }


def days_until_due(due_date, now=None):
    now = now or utcnow()
    return math.ceil((due_date - now).total_seconds() / 86400)


def send_due_date_reminders(now=None):
    """Remind borrowers whose loans fall due in one of ``REMINDER_DAYS``.

    Commits, like ``assess_overdue_fines``. Returns ``{'sent', 'skipped'}``;
    skipped counts reminders already sent within the duplicate window.
    """
    now = now or utcnow()
    upcoming = BorrowRequest.query.filter(
        BorrowRequest.status == STATUS_APPROVED,
        BorrowRequest.due_date >= now,
        BorrowRequest.due_date <= now + timedelta(days=max(REMINDER_DAYS)),
        BorrowRequest.return_date.is_(None),
    ).all()
    sent = skipped = 0
    for borrow_request in upcoming:
        days = days_until_due(borrow_request.due_date, now)
        if days not in REMINDER_DAYS:
            continue
        if days <= 1:
            kind, advice = 'ALERT', 'Please return it today to avoid fines!'
        else:
            kind, advice = ('WARNING' if days <= 3 else 'INFO'), 'Please plan to return it soon.'
        notification = notify(borrow_request.user_id, 'Due Date Reminder',
                              f'"{borrow_request.book.title}" is due in {days} day{"s" if days > 1 else ""}. '
                              f'{advice}', kind)
        if notification:
            sent += 1
        else:
            skipped += 1
    db.session.commit()
    logger.info(f"Due date reminders: {sent} sent, {skipped} skipped")
    return {'sent': sent, 'skipped': skipped}


def send_overdue_notifications(now=None):
    now = now or utcnow()
    overdue = BorrowRequest.query.filter(
        BorrowRequest.status == STATUS_APPROVED,
        BorrowRequest.due_date < now,
        BorrowRequest.return_date.is_(None),
    ).all()
    sent = skipped = 0
    for borrow_request in overdue:
        days = days_overdue(borrow_request.due_date, now)
        notification = notify(borrow_request.user_id, 'Book Overdue',
                              f'"{borrow_request.book.title}" is {days} day{"s" if days > 1 else ""} overdue. '
                              f'Please return it as soon as possible to avoid additional fines.', 'ALERT')
        if notification:
            sent += 1
        else:
            skipped += 1
    db.session.commit()
    logger.info(f"Overdue notifications: {sent} sent, {skipped} skipped")
    return {'sent': sent, 'skipped': skipped}


def send_daily_notifications():
    reminders = send_due_date_reminders()
    overdue = send_overdue_notifications()
    return {key: reminders[key] + overdue[key] for key in ('sent', 'skipped')}
