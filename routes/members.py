import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import current_user
from sqlalchemy import func

from extensions import db
from models import Book, Favorite, Fine, Notification
from notifications import notify, record_user_history
from security import login_required
from utils import get_json_body, paginate, parse_bool, parse_int, retry_db_operation, utcnow

logger = logging.getLogger(__name__)

members_bp = Blueprint('members', __name__)


def _no_store(response, status=200):
    response.status_code = status
    response.headers['Cache-Control'] = 'no-store'
    return response


@members_bp.route('/favorites', methods=['GET'])
@login_required()
@retry_db_operation()
def get_favorites():
    favorites = Favorite.query.filter_by(user_id=current_user.user_id) \
        .order_by(Favorite.created_at.desc(), Favorite.favorite_id.desc()).all()
    return _no_store(jsonify({'favorites': [f.to_dict() for f in favorites]}))


@members_bp.route('/favorites', methods=['POST'])
@login_required()
@retry_db_operation()
def add_favorite():
    book_id = parse_int(get_json_body().get('book_id'))
    if book_id is None:
        return _no_store(jsonify({'error': 'book_id is required'}), 400)
    book = db.session.get(Book, book_id)
    if not book or not book.is_active:
        return _no_store(jsonify({'error': 'Book not found'}), 404)
    existing = Favorite.query.filter_by(user_id=current_user.user_id, book_id=book_id).first()
    if existing:
        return _no_store(jsonify({'message': 'Already in favorites', 'favorite': existing.to_dict()}))
    favorite = Favorite(user_id=current_user.user_id, book=book)
    db.session.add(favorite)
    db.session.commit()
    logger.debug(f"Favorite added: book_id={book_id} by user_id={current_user.user_id}")
    return _no_store(jsonify({'message': 'Added to favorites', 'favorite': favorite.to_dict()}), 201)


@members_bp.route('/favorites', methods=['DELETE'])
@login_required()
@retry_db_operation()
def remove_favorite():
    book_id = parse_int(request.args.get('book_id') or request.args.get('bookId'))
    if book_id is None:
        return _no_store(jsonify({'error': 'book_id is required'}), 400)
    existing = Favorite.query.filter_by(user_id=current_user.user_id, book_id=book_id).first()
    if not existing:
        return _no_store(jsonify({'message': 'Not in favorites'}))
    db.session.delete(existing)
    db.session.commit()
    logger.debug(f"Favorite removed: book_id={book_id} by user_id={current_user.user_id}")
    return _no_store(jsonify({'message': 'Removed from favorites'}))


@members_bp.route('/fines', methods=['GET'])
@login_required()
@retry_db_operation()
def get_fines():
    fines = Fine.query.filter_by(user_id=current_user.user_id) \
        .order_by(Fine.created_at.desc(), Fine.fine_id.desc()).all()
    total_unpaid = sum(f.amount for f in fines if not f.is_paid)
    return jsonify({'fines': [f.to_dict() for f in fines], 'total_unpaid': total_unpaid}), 200


@members_bp.route('/fines/<int:fine_id>/pay', methods=['POST'])
@login_required()
@retry_db_operation()
def pay_fine(fine_id):
    fine = Fine.query.filter_by(fine_id=fine_id, user_id=current_user.user_id).first()
    if not fine:
        return jsonify({'error': 'Fine not found'}), 404
    if fine.is_paid:
        return jsonify({'error': 'Fine already paid'}), 400
    fine.is_paid = True
    fine.paid_date = utcnow()
    book = fine.borrow_request.book
    notify(current_user.user_id, 'Fine Payment Successful',
           f'Your fine of {fine.amount:.2f} for "{book.title}" has been paid successfully.')
    record_user_history(current_user.user_id, 'FINE_PAID',
                        f'Paid fine of {fine.amount:.2f} for "{book.title}"',
                        {'fine_id': fine.fine_id, 'amount': fine.amount, 'book_id': book.book_id})
    db.session.commit()
    logger.debug(f"Fine paid: fine_id={fine_id} by user_id={current_user.user_id}")
    return jsonify({'message': 'Fine paid successfully', 'fine': fine.to_dict()}), 200


@members_bp.route('/notifications', methods=['GET'])
@login_required()
@retry_db_operation()
def get_notifications():
    query = Notification.query.filter_by(user_id=current_user.user_id)
    if parse_bool(request.args.get('unreadOnly') or request.args.get('unread_only')):
        query = query.filter_by(is_read=False)
    query = query.order_by(Notification.created_at.desc(), Notification.notification_id.desc())
    result = paginate(query, 'notifications', Notification.to_dict, default_limit=20)
    result['unread_count'] = db.session.query(func.count(Notification.notification_id)) \
        .filter_by(user_id=current_user.user_id, is_read=False).scalar()
    return jsonify(result), 200


@members_bp.route('/notifications', methods=['PATCH'])
@login_required()
@retry_db_operation()
def update_notifications():
    data = get_json_body()
    action = data.get('action')
    if action == 'markAllAsRead':
        updated = Notification.query.filter_by(user_id=current_user.user_id, is_read=False) \
            .update({'is_read': True}, synchronize_session=False)
        db.session.commit()
        return jsonify({'message': 'All notifications marked as read', 'updated': updated}), 200
    ids = data.get('notification_ids')
    if action == 'markAsRead' and isinstance(ids, list) and ids:
        ids = [i for i in (parse_int(x) for x in ids) if i is not None]
        updated = Notification.query.filter(
            Notification.notification_id.in_(ids),
            Notification.user_id == current_user.user_id,
        ).update({'is_read': True}, synchronize_session=False)
        db.session.commit()
        return jsonify({'message': 'Notifications marked as read', 'updated': updated}), 200
    return jsonify({'error': 'Invalid action or missing notification_ids'}), 400
