import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import current_user
from sqlalchemy import func, or_

from circulation import (assess_overdue_fines, send_daily_notifications, send_due_date_reminders,
                         send_overdue_notifications)
from extensions import db
from models import (ACTIVE_REQUEST_STATUSES, ROLE_ADMIN, ROLE_MEMBER, ROLES, STAFF_ROLES,
                    STATUS_APPROVED, STATUS_PENDING, Book, BookHistory, BorrowRequest, Fine,
                    Transaction, User)
from routes.account import build_user, validate_new_user
from security import login_required
from utils import apply_sort, get_json_body, paginate, parse_bool, retry_db_operation, utcnow

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__)

USER_SORT_FIELDS = {
    'created_at': User.created_at,
    'name': User.first_name,
    'email': User.email,
    'username': User.username,
}
EDITABLE_USER_FIELDS = ('username', 'first_name', 'last_name', 'email', 'phone', 'address')


def _member_row(user):
    data = user.to_dict()
    data['status'] = 'Active' if user.is_active else 'Suspended'
    data['books_issued'] = BorrowRequest.query.filter(
        BorrowRequest.user_id == user.user_id,
        BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
    ).count()
    data['fine_amount'] = float(
        db.session.query(func.coalesce(func.sum(Fine.amount), 0.0))
        .filter(Fine.user_id == user.user_id, Fine.is_paid.is_(False))
        .scalar()
    )
    return data


@admin_bp.route('/users', methods=['GET'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def get_users():
    query = User.query
    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(
            User.username.ilike(pattern),
            User.email.ilike(pattern),
            User.first_name.ilike(pattern),
            User.last_name.ilike(pattern),
        ))
    role = (request.args.get('role') or '').upper()
    if role in ROLES:
        query = query.filter(User.role == role)
    status = (request.args.get('status') or '').lower()
    if status == 'active':
        query = query.filter(User.is_active.is_(True))
    elif status == 'suspended':
        query = query.filter(User.is_active.is_(False))
    query = apply_sort(query, USER_SORT_FIELDS, 'created_at', default_order='desc')
    result = paginate(query, 'users', _member_row, default_limit=20)
    logger.debug(f"Fetched {len(result['users'])} users")
    return jsonify(result), 200


@admin_bp.route('/users', methods=['POST'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def create_user():
    data = get_json_body()
    role = str(data.get('role') or ROLE_MEMBER).upper()
    if role not in ROLES:
        return jsonify({'error': 'Invalid role'}), 400
    if role != ROLE_MEMBER and current_user.role != ROLE_ADMIN:
        return jsonify({'error': 'Only administrators can create staff accounts'}), 403
    error = validate_new_user(data)
    if error:
        return jsonify({'error': error}), 400
    user = build_user(data, role=role)
    db.session.add(user)
    db.session.commit()
    logger.debug(f"User created by user_id={current_user.user_id}: {user.email} ({role})")
    return jsonify({'message': 'User created successfully', 'user': _member_row(user)}), 201


@admin_bp.route('/users/<int:user_id>', methods=['PUT'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def update_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404
    if user.role != ROLE_MEMBER and current_user.role != ROLE_ADMIN:
        logger.error(f"user_id={current_user.user_id} tried to edit staff account user_id={user_id}")
        return jsonify({'error': 'Only administrators can edit staff accounts'}), 403
    data = get_json_body()

    updates = {field: data[field] for field in EDITABLE_USER_FIELDS if field in data}
    if 'role' in data:
        role = str(data['role'] or '').upper()
        if role not in ROLES:
            return jsonify({'error': 'Invalid role'}), 400
        if role != user.role and current_user.role != ROLE_ADMIN:
            logger.error(f"user_id={current_user.user_id} tried to change role of user_id={user_id}")
            return jsonify({'error': 'Only administrators can change roles'}), 403
        updates['role'] = role
    if 'email' in updates:
        email = str(updates['email'] or '').strip().lower()
        if '@' not in email:
            return jsonify({'error': 'Invalid email address'}), 400
        if User.query.filter(func.lower(User.email) == email, User.user_id != user_id).first():
            return jsonify({'error': 'User with this email already exists'}), 400
        updates['email'] = email
    if 'username' in updates:
        username = str(updates['username'] or '').strip()
        if not username:
            return jsonify({'error': 'username cannot be empty'}), 400
        if User.query.filter(User.username == username, User.user_id != user_id).first():
            return jsonify({'error': 'User with this username already exists'}), 400
        updates['username'] = username
    for field in ('first_name', 'last_name'):
        if field in updates and not str(updates[field] or '').strip():
            return jsonify({'error': f'{field} cannot be empty'}), 400
    if 'is_active' in data:
        is_active = bool(parse_bool(data['is_active']))
        if user.user_id == current_user.user_id and not is_active:
            return jsonify({'error': 'You cannot suspend your own account'}), 400
        updates['is_active'] = is_active

    for field, value in updates.items():
        setattr(user, field, value)
    db.session.commit()
    logger.debug(f"User updated: user_id={user_id} fields={list(updates)}")
    return jsonify({'message': 'User updated successfully', 'user': _member_row(user)}), 200


@admin_bp.route('/users/<int:user_id>', methods=['DELETE'])
@login_required(role=ROLE_ADMIN)
@retry_db_operation()
def delete_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return jsonify({'error': 'User not found'}), 404
    if user.user_id == current_user.user_id:
        return jsonify({'error': 'You cannot delete your own account'}), 400
    active = BorrowRequest.query.filter(
        BorrowRequest.user_id == user_id,
        BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
    ).count()
    if active:
        return jsonify({'error': 'Cannot delete a user with pending or borrowed books'}), 400
    if Fine.query.filter_by(user_id=user_id, is_paid=False).count():
        return jsonify({'error': 'Cannot delete a user with unpaid fines'}), 400

    # Detach references the user holds as a staff member
    BorrowRequest.query.filter_by(approved_by=user_id).update({'approved_by': None}, synchronize_session=False)
    Transaction.query.filter_by(processed_by=user_id).update({'processed_by': None}, synchronize_session=False)
    BookHistory.query.filter_by(user_id=user_id).update({'user_id': None}, synchronize_session=False)
    db.session.delete(user)
    db.session.commit()
    logger.debug(f"User deleted: user_id={user_id}")
    return jsonify({'message': 'User deleted successfully'}), 200


@admin_bp.route('/dashboard', methods=['GET'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def get_dashboard():
    now = utcnow()
    start_of_today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    stats = {
        'total_books': Book.query.filter_by(is_active=True).count(),
        'total_members': User.query.filter_by(is_active=True, role=ROLE_MEMBER).count(),
        'borrowed_books': BorrowRequest.query.filter_by(status=STATUS_APPROVED).count(),
        'overdue_books': BorrowRequest.query.filter(
            BorrowRequest.status == STATUS_APPROVED,
            BorrowRequest.due_date < now,
        ).count(),
        'new_members': User.query.filter(User.role == ROLE_MEMBER, User.created_at >= start_of_today).count(),
        'pending_requests': BorrowRequest.query.filter_by(status=STATUS_PENDING).count(),
        'unpaid_fines_total': float(
            db.session.query(func.coalesce(func.sum(Fine.amount), 0.0)).filter(Fine.is_paid.is_(False)).scalar()
        ),
    }

    activities = []
    for br in BorrowRequest.query.order_by(BorrowRequest.request_date.desc()).limit(8).all():
        if br.status == STATUS_PENDING:
            kind, action = 'request', 'Borrow Request'
        elif br.is_overdue:
            kind, action = 'overdue', 'Overdue Book'
        else:
            kind, action = 'borrow', 'Borrow Activity'
        activities.append({
            'id': f'br-{br.request_id}',
            'type': kind,
            'action': action,
            'details': br.book.title,
            'member': br.user.name,
            'time': br.request_date,
            'status': br.status,
        })
    creations = BookHistory.query.filter_by(action='CREATED') \
        .order_by(BookHistory.timestamp.desc()).limit(5).all()
    for entry in creations:
        activities.append({
            'id': f'bh-{entry.history_id}',
            'type': 'book',
            'action': 'New Book Added',
            'details': f'{entry.book.title} by {entry.book.author}',
            'member': 'System',
            'time': entry.timestamp,
            'status': 'CREATED',
        })
    activities.sort(key=lambda a: a['time'], reverse=True)
    for activity in activities:
        activity['time'] = activity['time'].isoformat()

    return jsonify({'stats': stats, 'recent_activities': activities[:10]}), 200


@admin_bp.route('/generate-overdue-fines', methods=['POST'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def generate_overdue_fines():
    result = assess_overdue_fines()
    if not result['summary']['overdue_books']:
        message = 'No overdue books found'
    else:
        message = 'Overdue fines processed successfully'
    logger.debug(f"Overdue fines generated by user_id={current_user.user_id}: {result['summary']}")
    return jsonify({'message': message, **result}), 200


NOTIFICATION_ACTIONS = {
    'due-date-reminders': send_due_date_reminders,
    'overdue-notifications': send_overdue_notifications,
    'daily-notifications': send_daily_notifications,
}


@admin_bp.route('/send-notifications', methods=['POST'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def send_notifications():
    action = get_json_body().get('action') or 'daily-notifications'
    job = NOTIFICATION_ACTIONS.get(action)
    if not job:
        return jsonify({'error': f"Invalid action. Use one of: {', '.join(NOTIFICATION_ACTIONS)}"}), 400
    results = job()
    logger.debug(f"Notifications '{action}' sent by user_id={current_user.user_id}: {results}")
    return jsonify({'message': 'Notifications processed', 'action': action, 'results': results}), 200
