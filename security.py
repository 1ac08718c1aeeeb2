import functools
import logging

import bcrypt
from flask import current_app, jsonify
from flask_jwt_extended import create_access_token, current_user, verify_jwt_in_request

from extensions import db, jwt
from models import User

logger = logging.getLogger(__name__)


def hash_password(password):
    rounds = current_app.config.get('BCRYPT_ROUNDS', 12)
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds)).decode('utf-8')


def verify_password(password, hashed):
    if not password or not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        logger.error("Stored password hash is malformed")
        return False


def issue_token(user):
    return create_access_token(
        identity=str(user.user_id),
        additional_claims={'role': user.role, 'email': user.email},
    )


@jwt.user_lookup_loader
def load_user(_jwt_header, jwt_data):
    try:
        user_id = int(jwt_data['sub'])
    except (KeyError, TypeError, ValueError):
        return None
    user = db.session.get(User, user_id)
    if user is None or not user.is_active:
        return None
    return user


@jwt.user_lookup_error_loader
def user_lookup_error(_jwt_header, jwt_data):
    logger.error(f"Unauthorized access: no active user for token subject {jwt_data.get('sub')}")
    return jsonify({'error': 'Invalid token'}), 401


@jwt.unauthorized_loader
def missing_token(reason):
    logger.error(f"Unauthorized access: {reason}")
    return jsonify({'error': 'Authentication required'}), 401


@jwt.invalid_token_loader
def invalid_token(reason):
    logger.error(f"Invalid token: {reason}")
    return jsonify({'error': 'Invalid token'}), 401


@jwt.expired_token_loader
def expired_token(_jwt_header, _jwt_payload):
    return jsonify({'error': 'Token has expired'}), 401


# Authentication decorator
def login_required(role=None):
    if isinstance(role, str):
        roles = (role,)
    else:
        roles = tuple(role or ())

    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            verify_jwt_in_request()
            if roles and current_user.role not in roles:
                logger.error(f"Access denied: Required role {'/'.join(roles)}, got {current_user.role}")
                return jsonify({'error': f"{' or '.join(r.capitalize() for r in roles)} access required"}), 403
            return f(*args, **kwargs)
        return wrapped
    return decorator
