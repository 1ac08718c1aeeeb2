import logging

from flask import Blueprint, jsonify
from flask_jwt_extended import current_user
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from extensions import db
from models import ROLE_MEMBER, BorrowRequest, Fine, Notification, User
from security import hash_password, issue_token, login_required, verify_password
from utils import get_json_body, retry_db_operation

logger = logging.getLogger(__name__)

account_bp = Blueprint('account', __name__)

REQUIRED_USER_FIELDS = ('username', 'email', 'password', 'first_name', 'last_name')
PROFILE_FIELDS = ('first_name', 'last_name', 'email', 'phone', 'address', 'profile_image')
MIN_PASSWORD_LENGTH = 6


def validate_new_user(data):
    """Return an error message for an invalid registration payload, else None."""
    missing = [key for key in REQUIRED_USER_FIELDS
               if not isinstance(data.get(key), str) or not data[key].strip()]
    if missing:
        return f"Missing required fields: {', '.join(missing)}"
    if '@' not in data['email']:
        return 'Invalid email address'
    if len(data['password']) < MIN_PASSWORD_LENGTH:
        return f'Password must be at least {MIN_PASSWORD_LENGTH} characters long'
    if User.query.filter(func.lower(User.email) == data['email'].strip().lower()).first():
        return 'User with this email already exists'
    if User.query.filter_by(username=data['username'].strip()).first():
        return 'User with this username already exists'
    return None


def build_user(data, role=ROLE_MEMBER):
    return User(
        username=data['username'].strip(),
        email=data['email'].strip().lower(),
        password=hash_password(data['password']),
        first_name=data['first_name'].strip(),
        last_name=data['last_name'].strip(),
        phone=data.get('phone'),
        address=data.get('address'),
        role=role,
    )


@account_bp.route('/auth/register', methods=['POST'])
@retry_db_operation()
def register():
    data = get_json_body()
    error = validate_new_user(data)
    if error:
        logger.debug(f"Registration rejected: {error}")
        return jsonify({'error': error}), 400
    user = build_user(data)
    try:
        db.session.add(user)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.error(f"Registration conflict for {data['email']}")
        return jsonify({'error': 'User with this email or username already exists'}), 400
    logger.debug(f"User registered: {user.email}")
    return jsonify({
        'message': 'User registered successfully',
        'user': user.to_dict(),
        'token': issue_token(user),
    }), 201


@account_bp.route('/auth/login', methods=['POST'])
@retry_db_operation()
def login():
    data = get_json_body()
    identifier = (data.get('email') or data.get('username') or '').strip()
    password = data.get('password')
    if not identifier or not password:
        logger.error("Invalid login payload")
        return jsonify({'error': 'Missing email or password'}), 400
    user = User.query.filter(
        (func.lower(User.email) == identifier.lower()) | (User.username == identifier)
    ).first()
    if not user or not verify_password(password, user.password):
        logger.debug(f"Invalid credentials for {identifier}")
        return jsonify({'error': 'Invalid credentials'}), 401
    if not user.is_active:
        logger.debug(f"Login refused for suspended account {user.email}")
        return jsonify({'error': 'Account is suspended'}), 403
    logger.debug(f"Token issued for user: {user.email}")
    return jsonify({
        'message': 'Login successful',
        'user': user.to_dict(),
        'token': issue_token(user),
    }), 200


@account_bp.route('/profile', methods=['GET'])
@login_required()
@retry_db_operation()
def get_profile():
    user = current_user
    recent = BorrowRequest.query.filter_by(user_id=user.user_id) \
        .order_by(BorrowRequest.request_date.desc()).limit(5).all()
    return jsonify({
        'user': user.to_dict(),
        'stats': {
            'total_borrow_requests': BorrowRequest.query.filter_by(user_id=user.user_id).count(),
            'unread_notifications': Notification.query.filter_by(user_id=user.user_id, is_read=False).count(),
            'unpaid_fines': Fine.query.filter_by(user_id=user.user_id, is_paid=False).count(),
        },
        'recent_borrow_requests': [r.to_dict(include_user=False) for r in recent],
    }), 200


@account_bp.route('/profile', methods=['PUT'])
@login_required()
@retry_db_operation()
def update_profile():
    user = current_user
    data = get_json_body()
    updates = {field: data[field] for field in PROFILE_FIELDS if field in data}
    if 'email' in updates:
        email = str(updates['email'] or '').strip().lower()
        if '@' not in email:
            return jsonify({'error': 'Invalid email address'}), 400
        taken = User.query.filter(func.lower(User.email) == email, User.user_id != user.user_id).first()
        if taken:
            return jsonify({'error': 'User with this email already exists'}), 400
        updates['email'] = email
    for field in ('first_name', 'last_name'):
        if field in updates and not str(updates[field] or '').strip():
            return jsonify({'error': f'{field} cannot be empty'}), 400
    for field, value in updates.items():
        setattr(user, field, value)
    db.session.commit()
    logger.debug(f"Profile updated: user_id={user.user_id} fields={list(updates)}")
    return jsonify({'message': 'Profile updated successfully', 'user': user.to_dict()}), 200


@account_bp.route('/profile/change-password', methods=['PUT'])
@login_required()
@retry_db_operation()
def change_password():
    user = current_user
    data = get_json_body()
    current_password = data.get('current_password')
    new_password = data.get('new_password')
    if not current_password or not new_password:
        return jsonify({'error': 'Current password and new password are required'}), 400
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return jsonify({'error': f'New password must be at least {MIN_PASSWORD_LENGTH} characters long'}), 400
    if not verify_password(current_password, user.password):
        logger.debug(f"Password change refused for user_id={user.user_id}: wrong current password")
        return jsonify({'error': 'Invalid current password'}), 400
    if verify_password(new_password, user.password):
        return jsonify({'error': 'New password must be different from current password'}), 400
    user.password = hash_password(new_password)
    db.session.commit()
    logger.debug(f"Password changed for user_id={user.user_id}")
    return jsonify({'message': 'Password changed successfully'}), 200
