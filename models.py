import json

from extensions import db
from utils import utcnow

# Roles
ROLE_ADMIN = 'ADMIN'
ROLE_LIBRARIAN = 'LIBRARIAN'
ROLE_MEMBER = 'MEMBER'
ROLES = (ROLE_ADMIN, ROLE_LIBRARIAN, ROLE_MEMBER)
STAFF_ROLES = (ROLE_ADMIN, ROLE_LIBRARIAN)

# Borrow request statuses
STATUS_PENDING = 'PENDING'
STATUS_APPROVED = 'APPROVED'
STATUS_REJECTED = 'REJECTED'
STATUS_RETURNED = 'RETURNED'
REQUEST_STATUSES = (STATUS_PENDING, STATUS_APPROVED, STATUS_REJECTED, STATUS_RETURNED)
ACTIVE_REQUEST_STATUSES = (STATUS_PENDING, STATUS_APPROVED)

# Transaction types
TRANSACTION_ISSUE = 'ISSUE'
TRANSACTION_RETURN = 'RETURN'
TRANSACTION_RENEWAL = 'RENEWAL'
TRANSACTION_TYPES = (TRANSACTION_ISSUE, TRANSACTION_RETURN, TRANSACTION_RENEWAL)

# Notification types
NOTIFICATION_TYPES = ('INFO', 'WARNING', 'ALERT', 'BORROW_REQUEST')

BOOK_AVAILABLE = 'Available'
BOOK_CHECKED_OUT = 'Checked Out'


def _iso(value):
    return value.isoformat() if value else None


class User(db.Model):
    __tablename__ = 'user'
    user_id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(30))
    address = db.Column(db.String(255))
    profile_image = db.Column(db.String(255))
    role = db.Column(db.String(20), nullable=False, default=ROLE_MEMBER)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def membership_id(self):
        return f"LIB{self.user_id:05d}" if self.user_id else None

    @property
    def is_staff(self):
        return self.role in STAFF_ROLES

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'username': self.username,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'name': self.name,
            'membership_id': self.membership_id,
            'phone': self.phone,
            'address': self.address,
            'profile_image': self.profile_image,
            'role': self.role,
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


class Category(db.Model):
    __tablename__ = 'category'
    category_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.Text)
    image = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self, book_count=None):
        data = {
            'category_id': self.category_id,
            'name': self.name,
            'description': self.description,
            'image': self.image,
            'is_active': self.is_active,
        }
        if book_count is not None:
            data['book_count'] = book_count
        return data


class Book(db.Model):
    __tablename__ = 'book'
    __table_args__ = (
        db.CheckConstraint('available_copies >= 0', name='ck_book_available_non_negative'),
        db.CheckConstraint('available_copies <= total_copies', name='ck_book_available_within_total'),
    )
    book_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    author = db.Column(db.String(100), nullable=False)
    isbn = db.Column(db.String(20), unique=True, nullable=False)
    description = db.Column(db.Text)
    category_id = db.Column(db.Integer, db.ForeignKey('category.category_id'))
    image = db.Column(db.String(255))
    publisher = db.Column(db.String(100))
    published_year = db.Column(db.Integer)
    language = db.Column(db.String(30))
    pages = db.Column(db.Integer)
    total_copies = db.Column(db.Integer, nullable=False, default=1)
    available_copies = db.Column(db.Integer, nullable=False, default=1)
    rating = db.Column(db.Float, default=0.0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_featured = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    category = db.relationship('Category', backref='books')

    @property
    def borrowed_copies(self):
        return self.total_copies - self.available_copies

    @property
    def status(self):
        return BOOK_AVAILABLE if self.available_copies > 0 else BOOK_CHECKED_OUT

    def to_dict(self):
        return {
            'book_id': self.book_id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'description': self.description,
            'category_id': self.category_id,
            'category': self.category.name if self.category else None,
            'image': self.image,
            'publisher': self.publisher,
            'published_year': self.published_year,
            'language': self.language,
            'pages': self.pages,
            'rating': self.rating,
            'status': self.status,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'borrowed_copies': self.borrowed_copies,
            'is_active': self.is_active,
            'is_featured': self.is_featured,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }

    def snapshot(self):
        """Plain dict used for book history entries."""
        data = self.to_dict()
        data.pop('status')
        data.pop('borrowed_copies')
        return data


class BorrowRequest(db.Model):
    __tablename__ = 'borrow_request'
    request_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)
    requested_days = db.Column(db.Integer, nullable=False, default=14)
    request_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    approved_date = db.Column(db.DateTime)
    due_date = db.Column(db.DateTime)
    return_date = db.Column(db.DateTime)
    approved_by = db.Column(db.Integer, db.ForeignKey('user.user_id'))
    admin_response = db.Column(db.Text)
    notes = db.Column(db.Text)
    renewal_count = db.Column(db.Integer, nullable=False, default=0)
    user = db.relationship('User', foreign_keys=[user_id],
                           backref=db.backref('borrow_requests', cascade='all, delete-orphan'))
    book = db.relationship('Book', backref='borrow_requests')

    @property
    def is_overdue(self):
        return (self.status == STATUS_APPROVED and self.due_date is not None
                and self.due_date < utcnow())

    def to_dict(self, include_user=True):
        data = {
            'request_id': self.request_id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'status': self.status,
            'requested_days': self.requested_days,
            'request_date': _iso(self.request_date),
            'approved_date': _iso(self.approved_date),
            'due_date': _iso(self.due_date),
            'return_date': _iso(self.return_date),
            'approved_by': self.approved_by,
            'admin_response': self.admin_response,
            'notes': self.notes,
            'renewal_count': self.renewal_count,
            'is_overdue': self.is_overdue,
            'book': {
                'book_id': self.book.book_id,
                'title': self.book.title,
                'author': self.book.author,
                'isbn': self.book.isbn,
                'image': self.book.image,
            },
        }
        if include_user:
            data['user'] = {
                'user_id': self.user.user_id,
                'name': self.user.name,
                'email': self.user.email,
                'membership_id': self.user.membership_id,
            }
        return data


class Transaction(db.Model):
    __tablename__ = 'transaction'
    transaction_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False)
    request_id = db.Column(db.Integer, db.ForeignKey('borrow_request.request_id'))
    transaction_type = db.Column(db.String(20), nullable=False)
    transaction_date = db.Column(db.DateTime, nullable=False, default=utcnow)
    due_date = db.Column(db.DateTime)
    processed_by = db.Column(db.Integer, db.ForeignKey('user.user_id'))
    notes = db.Column(db.Text)
    user = db.relationship('User', foreign_keys=[user_id],
                           backref=db.backref('transactions', cascade='all, delete-orphan'))
    book = db.relationship('Book', backref='transactions')
    borrow_request = db.relationship('BorrowRequest',
                                     backref=db.backref('transactions', cascade='all, delete-orphan'))

    def to_dict(self):
        return {
            'transaction_id': self.transaction_id,
            'transaction_type': self.transaction_type,
            'user_id': self.user_id,
            'user_name': self.user.name,
            'book_id': self.book_id,
            'book_title': self.book.title,
            'request_id': self.request_id,
            'transaction_date': _iso(self.transaction_date),
            'due_date': _iso(self.due_date),
            'processed_by': self.processed_by,
            'notes': self.notes,
        }


class Fine(db.Model):
    __tablename__ = 'fine'
    fine_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    request_id = db.Column(db.Integer, db.ForeignKey('borrow_request.request_id'), nullable=False)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    days_overdue = db.Column(db.Integer, nullable=False, default=0)
    is_paid = db.Column(db.Boolean, nullable=False, default=False)
    paid_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    user = db.relationship('User', backref=db.backref('fines', cascade='all, delete-orphan'))
    borrow_request = db.relationship('BorrowRequest',
                                     backref=db.backref('fines', cascade='all, delete-orphan'))

    def to_dict(self):
        request = self.borrow_request
        return {
            'fine_id': self.fine_id,
            'amount': float(self.amount),
            'days_overdue': self.days_overdue,
            'is_paid': self.is_paid,
            'paid_date': _iso(self.paid_date),
            'created_at': _iso(self.created_at),
            'borrow_request': {
                'request_id': request.request_id,
                'due_date': _iso(request.due_date),
                'return_date': _iso(request.return_date),
                'book': {
                    'book_id': request.book.book_id,
                    'title': request.book.title,
                    'author': request.book.author,
                    'image': request.book.image,
                },
            },
        }


class Favorite(db.Model):
    __tablename__ = 'favorite'
    __table_args__ = (db.UniqueConstraint('user_id', 'book_id', name='uq_favorite_user_book'),)
    favorite_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    user = db.relationship('User', backref=db.backref('favorites', cascade='all, delete-orphan'))
    book = db.relationship('Book')

    def to_dict(self):
        return {
            'favorite_id': self.favorite_id,
            'created_at': _iso(self.created_at),
            'book': self.book.to_dict(),
        }


class Notification(db.Model):
    __tablename__ = 'notification'
    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.String(20), nullable=False, default='INFO')
    is_read = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    user = db.relationship('User', backref=db.backref('notifications', cascade='all, delete-orphan'))

    def to_dict(self):
        return {
            'notification_id': self.notification_id,
            'title': self.title,
            'message': self.message,
            'type': self.type,
            'is_read': self.is_read,
            'created_at': _iso(self.created_at),
        }


class BookHistory(db.Model):
    __tablename__ = 'book_history'
    history_id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('book.book_id'), nullable=False)
    action = db.Column(db.String(20), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'))
    old_data = db.Column(db.Text)
    new_data = db.Column(db.Text)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)
    book = db.relationship('Book', backref='history')


class UserHistory(db.Model):
    __tablename__ = 'user_history'
    history_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.user_id'), nullable=False)
    action = db.Column(db.String(50), nullable=False)
    description = db.Column(db.Text)
    # "metadata" is reserved on declarative classes
    details = db.Column('metadata', db.Text)
    timestamp = db.Column(db.DateTime, nullable=False, default=utcnow)
    user = db.relationship('User', backref=db.backref('history', cascade='all, delete-orphan'))

    @property
    def details_dict(self):
        return json.loads(self.details) if self.details else {}
