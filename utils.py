import functools
import logging
import math
import time
from datetime import datetime, timezone

from flask import current_app, request
from sqlalchemy.exc import OperationalError

from extensions import db

logger = logging.getLogger(__name__)


def utcnow():
    # Naive UTC, matching what the DateTime columns store
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def parse_int(value, default=None):
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_float(value, default=None):
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_bool(value):
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    return str(value).lower() in ('true', '1', 'yes')


def parse_date(value, end_of_day=False):
    """Parse an ISO date or datetime.

    A bare date means midnight, or the last instant of that day when
    ``end_of_day`` is set.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if end_of_day and 'T' not in value and ' ' not in value.strip():
        parsed = datetime.combine(parsed.date(), datetime.max.time())
    return parsed


def get_pagination_args(default_limit=None):
    if default_limit is None:
        default_limit = current_app.config['DEFAULT_PAGE_SIZE']
    max_limit = current_app.config['MAX_PAGE_SIZE']
    page = request.args.get('page', 1, type=int)
    limit = request.args.get('limit', default_limit, type=int)
    if page < 1:
        page = 1
    if limit < 1:
        limit = default_limit
    return page, min(limit, max_limit)


def paginate(query, key, serializer, default_limit=None):
    """Run a query page and wrap it in the ``pagination`` envelope."""
    page, limit = get_pagination_args(default_limit)
    result = query.paginate(page=page, per_page=limit, error_out=False)
    total_pages = math.ceil(result.total / limit) if result.total else 0
    return {
        key: [serializer(item) for item in result.items],
        'pagination': {
            'current_page': page,
            'total_pages': total_pages,
            'total_items': result.total,
            'per_page': limit,
            'has_next_page': page < total_pages,
            'has_prev_page': page > 1,
        },
    }


def apply_sort(query, allowed, default, default_order='asc'):
    """Order ``query`` by the ``sortBy``/``sortOrder`` query parameters.

    ``allowed`` maps public field names to columns. Unknown fields fall back
    to ``default``.
    """
    sort_by = request.args.get('sortBy') or request.args.get('sort_by') or default
    sort_order = (request.args.get('sortOrder') or request.args.get('sort_order') or default_order).lower()
    column = allowed.get(sort_by, allowed[default])
    return query.order_by(column.desc() if sort_order == 'desc' else column.asc())


def retry_db_operation(max_attempts=3, delay=None):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            wait = current_app.config.get('DB_RETRY_DELAY', 1) if delay is None else delay
            attempts = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    logger.error(f"Database operation failed: {str(e)}")
                    db.session.rollback()
                    attempts += 1
                    if attempts >= max_attempts:
                        raise
                    time.sleep(wait)
                    logger.debug(f"Retrying database operation ({attempts}/{max_attempts})")
        return wrapper
    return decorator
