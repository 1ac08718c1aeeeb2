import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import current_user
from sqlalchemy import or_

from circulation import CirculationError, approve, create_request, mark_returned, reject, renew
from extensions import db
from models import (REQUEST_STATUSES, STAFF_ROLES, STATUS_RETURNED, TRANSACTION_TYPES, Book,
                    BorrowRequest, Transaction, User)
from security import login_required
from utils import apply_sort, get_json_body, paginate, parse_date, parse_int, retry_db_operation

logger = logging.getLogger(__name__)

borrowing_bp = Blueprint('borrowing', __name__)

REQUEST_ACTIONS = ('APPROVE', 'REJECT', 'RETURN')
REQUEST_SORT_FIELDS = {
    'request_date': BorrowRequest.request_date,
    'due_date': BorrowRequest.due_date,
    'status': BorrowRequest.status,
}
TRANSACTION_SORT_FIELDS = {
    'transaction_date': Transaction.transaction_date,
    'due_date': Transaction.due_date,
    'transaction_type': Transaction.transaction_type,
}


def _error(e):
    return jsonify({'error': e.message}), e.status_code


def _visible_request(request_id):
    """Load a request the current user may see. Returns (request, error_response)."""
    borrow_request = db.session.get(BorrowRequest, request_id)
    if not borrow_request:
        return None, (jsonify({'error': 'Borrow request not found'}), 404)
    if not current_user.is_staff and borrow_request.user_id != current_user.user_id:
        logger.error(f"user_id={current_user.user_id} tried to access request_id={request_id}")
        return None, (jsonify({'error': 'You do not have access to this borrow request'}), 403)
    return borrow_request, None


@borrowing_bp.route('/borrow-requests', methods=['POST'])
@login_required()
@retry_db_operation()
def create_borrow_request():
    data = get_json_body()
    book_id = parse_int(data.get('book_id'))
    if book_id is None:
        logger.error("Missing book_id")
        return jsonify({'error': 'Book ID is required'}), 400
    requested_days = data.get('requested_days')
    if requested_days is not None:
        requested_days = parse_int(requested_days, -1)
    try:
        borrow_request = create_request(current_user, db.session.get(Book, book_id), requested_days)
        db.session.commit()
    except CirculationError as e:
        db.session.rollback()
        return _error(e)
    return jsonify({
        'message': 'Borrow request submitted successfully',
        'request': borrow_request.to_dict(),
    }), 201


@borrowing_bp.route('/borrow-requests', methods=['GET'])
@login_required()
@retry_db_operation()
def get_borrow_requests():
    query = BorrowRequest.query.join(Book, BorrowRequest.book_id == Book.book_id) \
        .join(User, BorrowRequest.user_id == User.user_id)
    if current_user.is_staff:
        user_id = parse_int(request.args.get('user_id'))
        if user_id is not None:
            query = query.filter(BorrowRequest.user_id == user_id)
    else:
        query = query.filter(BorrowRequest.user_id == current_user.user_id)

    status = (request.args.get('status') or '').upper()
    if status in REQUEST_STATUSES:
        query = query.filter(BorrowRequest.status == status)
    book_id = parse_int(request.args.get('book_id'))
    if book_id is not None:
        query = query.filter(BorrowRequest.book_id == book_id)
    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(
            Book.title.ilike(pattern),
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
            User.email.ilike(pattern),
        ))

    query = apply_sort(query, REQUEST_SORT_FIELDS, 'request_date', default_order='desc')
    result = paginate(query, 'requests', BorrowRequest.to_dict, default_limit=10)
    logger.debug(f"Fetched {len(result['requests'])} borrow requests for user_id={current_user.user_id}")
    return jsonify(result), 200


@borrowing_bp.route('/borrow-requests/<int:request_id>', methods=['GET'])
@login_required()
@retry_db_operation()
def get_borrow_request(request_id):
    borrow_request, error = _visible_request(request_id)
    if error:
        return error
    return jsonify({'request': borrow_request.to_dict()}), 200


@borrowing_bp.route('/borrow-requests/<int:request_id>', methods=['PATCH'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def update_borrow_request(request_id):
    data = get_json_body()
    action = str(data.get('action') or '').upper()
    notes = data.get('notes')
    if action not in REQUEST_ACTIONS:
        return jsonify({'error': 'Invalid action. Must be APPROVE, REJECT, or RETURN'}), 400
    borrow_request = db.session.get(BorrowRequest, request_id)
    if not borrow_request:
        return jsonify({'error': 'Borrow request not found'}), 404

    try:
        if action == 'APPROVE':
            approve(borrow_request, current_user, notes)
            message = 'Borrow request approved successfully'
        elif action == 'REJECT':
            reject(borrow_request, current_user, notes)
            message = 'Borrow request rejected'
        else:
            is_overdue = mark_returned(borrow_request, current_user, notes)
            message = f"Book returned successfully{' with overdue fine' if is_overdue else ''}"
        db.session.commit()
    except CirculationError as e:
        db.session.rollback()
        return _error(e)
    return jsonify({'message': message, 'request': borrow_request.to_dict()}), 200


@borrowing_bp.route('/borrow-requests/<int:request_id>/renew', methods=['POST'])
@login_required()
@retry_db_operation()
def renew_borrow_request(request_id):
    borrow_request, error = _visible_request(request_id)
    if error:
        return error
    try:
        renew(borrow_request, current_user)
        db.session.commit()
    except CirculationError as e:
        db.session.rollback()
        return _error(e)
    return jsonify({'message': 'Loan renewed successfully', 'request': borrow_request.to_dict()}), 200


@borrowing_bp.route('/books/return', methods=['POST'])
@login_required()
@retry_db_operation()
def return_book():
    data = get_json_body()
    request_id = parse_int(data.get('request_id'))
    if request_id is None:
        logger.error("Missing request_id")
        return jsonify({'error': 'Request ID is required'}), 400
    borrow_request = db.session.get(BorrowRequest, request_id)
    if not borrow_request:
        return jsonify({'error': 'Borrow request not found'}), 404
    if borrow_request.user_id != current_user.user_id:
        logger.error(f"user_id={current_user.user_id} tried to return request_id={request_id}")
        return jsonify({'error': 'Unauthorized to return this book'}), 403
    if borrow_request.status == STATUS_RETURNED:
        return jsonify({'error': 'Book is already returned'}), 400

    notes = None
    if data.get('condition'):
        notes = f"Return condition: {data['condition']}"
    if data.get('notes'):
        notes = f"{notes}. {data['notes']}" if notes else data['notes']
    try:
        is_overdue = mark_returned(borrow_request, current_user, notes)
        db.session.commit()
    except CirculationError:
        db.session.rollback()
        return jsonify({'error': 'Book is not currently borrowed'}), 400
    return jsonify({
        'message': 'Book returned successfully',
        'request': borrow_request.to_dict(),
        'is_overdue': is_overdue,
    }), 200


@borrowing_bp.route('/transactions', methods=['GET'])
@login_required()
@retry_db_operation()
def get_transactions():
    query = Transaction.query
    if current_user.is_staff:
        user_id = parse_int(request.args.get('user_id'))
        if user_id is not None:
            query = query.filter(Transaction.user_id == user_id)
    else:
        query = query.filter(Transaction.user_id == current_user.user_id)

    transaction_type = (request.args.get('type') or '').upper()
    if transaction_type in TRANSACTION_TYPES:
        query = query.filter(Transaction.transaction_type == transaction_type)
    book_id = parse_int(request.args.get('book_id'))
    if book_id is not None:
        query = query.filter(Transaction.book_id == book_id)
    date_from = parse_date(request.args.get('from'))
    if date_from:
        query = query.filter(Transaction.transaction_date >= date_from)
    date_to = parse_date(request.args.get('to'), end_of_day=True)
    if date_to:
        query = query.filter(Transaction.transaction_date <= date_to)

    query = apply_sort(query, TRANSACTION_SORT_FIELDS, 'transaction_date', default_order='desc')
    result = paginate(query, 'transactions', Transaction.to_dict, default_limit=20)
    logger.debug(f"Fetched {len(result['transactions'])} transactions for user_id={current_user.user_id}")
    return jsonify(result), 200
