import logging

from flask import Blueprint, jsonify, request
from flask_jwt_extended import current_user
from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.sql import text

from extensions import db
from models import (ACTIVE_REQUEST_STATUSES, ROLE_ADMIN, ROLE_MEMBER, STAFF_ROLES, STATUS_PENDING,
                    BOOK_AVAILABLE, BOOK_CHECKED_OUT, Book, BorrowRequest, Category, User)
from notifications import record_book_history
from security import login_required
from utils import (apply_sort, get_json_body, paginate, parse_bool, parse_float, parse_int, retry_db_operation,
                   utcnow)

logger = logging.getLogger(__name__)

catalog_bp = Blueprint('catalog', __name__)

BOOK_SORT_FIELDS = {
    'title': Book.title,
    'author': Book.author,
    'created_at': Book.created_at,
    'published_year': Book.published_year,
    'rating': Book.rating,
    'available_copies': Book.available_copies,
}
REQUIRED_BOOK_FIELDS = ('title', 'author', 'isbn', 'total_copies')
TEXT_BOOK_FIELDS = ('description', 'image', 'publisher', 'language')
MAX_RATING = 5.0


def _active_book(book_id):
    book = db.session.get(Book, book_id)
    if book is None or not book.is_active:
        return None
    return book


def _check_category(category_id):
    """Return (category, error_response)."""
    if category_id is None:
        return None, None
    category = db.session.get(Category, parse_int(category_id, -1))
    if category is None or not category.is_active:
        logger.debug(f"Category not found: category_id={category_id}")
        return None, (jsonify({'error': 'Category not found'}), 404)
    return category, None


def _isbn_taken(isbn, exclude_id=None):
    query = Book.query.filter(Book.isbn == isbn)
    if exclude_id is not None:
        query = query.filter(Book.book_id != exclude_id)
    return query.first() is not None


def _book_details(data):
    """Validate the optional book fields present in ``data``. Returns (values, error)."""
    values = {field: data[field] for field in TEXT_BOOK_FIELDS if field in data}
    for field in ('published_year', 'pages'):
        if field not in data:
            continue
        value = None if data[field] is None else parse_int(data[field])
        if data[field] is not None and (value is None or value < 0):
            return None, f'{field} must be a non-negative integer'
        values[field] = value
    if 'rating' in data:
        rating = None if data['rating'] is None else parse_float(data['rating'])
        if data['rating'] is not None and (rating is None or not 0 <= rating <= MAX_RATING):
            return None, f'rating must be a number between 0 and {MAX_RATING:g}'
        values['rating'] = rating
    return values, None


@catalog_bp.route('/health', methods=['GET'])
@retry_db_operation()
def health():
    db.session.execute(text('SELECT 1'))
    return jsonify({'status': 'healthy', 'database': 'connected', 'time': utcnow().isoformat()}), 200


@catalog_bp.route('/stats', methods=['GET'])
@retry_db_operation()
def get_stats():
    return jsonify({
        'total_books': Book.query.filter_by(is_active=True).count(),
        'active_members': User.query.filter_by(is_active=True, role=ROLE_MEMBER).count(),
    }), 200


@catalog_bp.route('/books', methods=['GET'])
@retry_db_operation()
def get_books():
    query = Book.query.filter(Book.is_active.is_(True))

    category = request.args.get('category')
    if category and category != 'all':
        if category.isdigit():
            query = query.filter(Book.category_id == int(category))
        else:
            query = query.join(Category).filter(func.lower(Category.name) == category.lower())

    search = (request.args.get('search') or '').strip()
    if search:
        pattern = f'%{search}%'
        query = query.filter(or_(
            Book.title.ilike(pattern),
            Book.author.ilike(pattern),
            Book.description.ilike(pattern),
            Book.isbn.ilike(pattern),
        ))

    status = request.args.get('status')
    if status == BOOK_AVAILABLE:
        query = query.filter(Book.available_copies > 0)
    elif status == BOOK_CHECKED_OUT:
        query = query.filter(Book.available_copies == 0)

    if parse_bool(request.args.get('featured')):
        query = query.filter(Book.is_featured.is_(True))

    query = apply_sort(query, BOOK_SORT_FIELDS, 'title')
    result = paginate(query, 'books', Book.to_dict)
    logger.debug(f"Fetched {len(result['books'])} books (total {result['pagination']['total_items']})")
    return jsonify(result), 200


@catalog_bp.route('/books/<int:book_id>', methods=['GET'])
@retry_db_operation()
def get_book(book_id):
    book = _active_book(book_id)
    if not book:
        logger.debug(f"Book not found: book_id={book_id}")
        return jsonify({'error': 'Book not found'}), 404
    data = book.to_dict()
    data['category_details'] = book.category.to_dict() if book.category else None
    data['pending_requests'] = BorrowRequest.query.filter_by(book_id=book_id, status=STATUS_PENDING).count()
    return jsonify({'book': data}), 200


@catalog_bp.route('/books', methods=['POST'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def add_book():
    data = get_json_body()
    missing = [key for key in REQUIRED_BOOK_FIELDS if data.get(key) in (None, '')]
    if missing:
        logger.error(f"Missing required fields: {missing}")
        return jsonify({'error': f"Missing required fields: {', '.join(missing)}"}), 400
    total_copies = parse_int(data['total_copies'])
    if total_copies is None or total_copies < 0:
        return jsonify({'error': 'total_copies must be a non-negative integer'}), 400
    category, error = _check_category(data.get('category_id'))
    if error:
        return error
    details, error = _book_details(data)
    if error:
        logger.error(f"Invalid book details: {error}")
        return jsonify({'error': error}), 400
    isbn = str(data['isbn']).strip()
    if _isbn_taken(isbn):
        logger.debug(f"Duplicate ISBN: {isbn}")
        return jsonify({'error': 'A book with this ISBN already exists'}), 400

    book = Book(
        title=str(data['title']).strip(),
        author=str(data['author']).strip(),
        isbn=isbn,
        category=category,
        total_copies=total_copies,
        available_copies=total_copies,
        is_featured=bool(parse_bool(data.get('is_featured'))),
    )
    for field, value in details.items():
        setattr(book, field, value)
    try:
        db.session.add(book)
        db.session.flush()
        record_book_history(book, 'CREATED', current_user.user_id, new_data=book.snapshot())
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        logger.error(f"Error adding book: {str(e)}")
        return jsonify({'error': 'A book with this ISBN already exists'}), 400
    logger.debug(f"Book added: {book.title} (ISBN: {book.isbn})")
    return jsonify({'message': 'Book added successfully', 'book': book.to_dict()}), 201


@catalog_bp.route('/books/<int:book_id>', methods=['PUT'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def edit_book(book_id):
    data = get_json_body()
    logger.debug(f"Edit book data: {data} for book_id={book_id}")
    book = _active_book(book_id)
    if not book:
        logger.debug(f"Book not found: book_id={book_id}")
        return jsonify({'error': 'Book not found'}), 404

    # Validate everything before touching the row
    updates = {}
    for field in ('title', 'author', 'isbn'):
        if field in data:
            value = str(data[field] or '').strip()
            if not value:
                return jsonify({'error': f'{field} cannot be empty'}), 400
            updates[field] = value
    if 'isbn' in updates and _isbn_taken(updates['isbn'], exclude_id=book_id):
        logger.debug(f"Duplicate ISBN: {updates['isbn']}")
        return jsonify({'error': 'A book with this ISBN already exists'}), 400
    if 'category_id' in data:
        category, error = _check_category(data['category_id'])
        if error:
            return error
        updates['category'] = category
    if 'total_copies' in data:
        new_total_copies = parse_int(data['total_copies'])
        if new_total_copies is None or new_total_copies < 0:
            return jsonify({'error': 'total_copies must be a non-negative integer'}), 400
        current_borrowed = book.total_copies - book.available_copies
        if new_total_copies < current_borrowed:
            logger.error(f"Cannot reduce total copies below borrowed copies: {current_borrowed}")
            return jsonify({'error': 'Cannot reduce total copies below currently borrowed amount'}), 400
        updates['total_copies'] = new_total_copies
        updates['available_copies'] = new_total_copies - current_borrowed
    details, error = _book_details(data)
    if error:
        logger.error(f"Invalid book details: {error}")
        return jsonify({'error': error}), 400
    updates.update(details)
    if 'is_featured' in data:
        updates['is_featured'] = bool(parse_bool(data['is_featured']))

    old_data = book.snapshot()
    for field, value in updates.items():
        setattr(book, field, value)
    record_book_history(book, 'UPDATED', current_user.user_id, old_data=old_data, new_data=book.snapshot())
    db.session.commit()
    logger.debug(f"Book updated: book_id={book_id}")
    return jsonify({'message': 'Book updated successfully', 'book': book.to_dict()}), 200


@catalog_bp.route('/books/<int:book_id>', methods=['DELETE'])
@login_required(role=ROLE_ADMIN)
@retry_db_operation()
def delete_book(book_id):
    book = _active_book(book_id)
    if not book:
        logger.debug(f"Book not found: book_id={book_id}")
        return jsonify({'error': 'Book not found'}), 404
    active = BorrowRequest.query.filter(
        BorrowRequest.book_id == book_id,
        BorrowRequest.status.in_(ACTIVE_REQUEST_STATUSES),
    ).count()
    if active:
        logger.debug(f"Book has {active} active borrow requests: book_id={book_id}")
        return jsonify({'error': 'Cannot delete book with active borrow requests'}), 400
    old_data = book.snapshot()
    book.is_active = False
    record_book_history(book, 'DELETED', current_user.user_id, old_data=old_data)
    db.session.commit()
    logger.debug(f"Book deleted: book_id={book_id}")
    return jsonify({'message': 'Book deleted successfully'}), 200


@catalog_bp.route('/categories', methods=['GET'])
@retry_db_operation()
def get_categories():
    counts = dict(
        db.session.query(Book.category_id, func.count(Book.book_id))
        .filter(Book.is_active.is_(True))
        .group_by(Book.category_id)
        .all()
    )
    categories = Category.query.filter_by(is_active=True).order_by(Category.name.asc()).all()
    return jsonify({
        'categories': [c.to_dict(book_count=counts.get(c.category_id, 0)) for c in categories]
    }), 200


@catalog_bp.route('/categories', methods=['POST'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def add_category():
    data = get_json_body()
    name = str(data.get('name') or '').strip()
    if not name:
        return jsonify({'error': 'Category name is required'}), 400
    if Category.query.filter(func.lower(Category.name) == name.lower()).first():
        return jsonify({'error': 'Category with this name already exists'}), 400
    category = Category(name=name, description=data.get('description'), image=data.get('image'))
    db.session.add(category)
    db.session.commit()
    logger.debug(f"Category created: {name}")
    return jsonify({'message': 'Category created successfully', 'category': category.to_dict()}), 201


@catalog_bp.route('/categories/<int:category_id>', methods=['PUT'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def edit_category(category_id):
    category = db.session.get(Category, category_id)
    if not category or not category.is_active:
        return jsonify({'error': 'Category not found'}), 404
    data = get_json_body()
    if 'name' in data:
        name = str(data['name'] or '').strip()
        if not name:
            return jsonify({'error': 'Category name is required'}), 400
        taken = Category.query.filter(func.lower(Category.name) == name.lower(),
                                      Category.category_id != category_id).first()
        if taken:
            return jsonify({'error': 'Category with this name already exists'}), 400
        category.name = name
    for field in ('description', 'image'):
        if field in data:
            setattr(category, field, data[field])
    db.session.commit()
    return jsonify({'message': 'Category updated successfully', 'category': category.to_dict()}), 200


@catalog_bp.route('/categories/<int:category_id>', methods=['DELETE'])
@login_required(role=STAFF_ROLES)
@retry_db_operation()
def delete_category(category_id):
    category = db.session.get(Category, category_id)
    if not category or not category.is_active:
        return jsonify({'error': 'Category not found'}), 404
    in_use = Book.query.filter_by(category_id=category_id, is_active=True).count()
    if in_use:
        return jsonify({'error': f'Category is used by {in_use} active books'}), 400
    category.is_active = False
    db.session.commit()
    logger.debug(f"Category deleted: category_id={category_id}")
    return jsonify({'message': 'Category deleted successfully'}), 200
