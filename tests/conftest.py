from datetime import timedelta

import pytest

from app import create_app
from circulation import approve, create_request
from extensions import db
from models import ROLE_ADMIN, ROLE_LIBRARIAN, ROLE_MEMBER, Book, Category, User
from security import hash_password, issue_token
from utils import utcnow

PASSWORD = 'password123'


@pytest.fixture
def app():
    # Every test gets a fresh in-memory database
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username, role=ROLE_MEMBER, password=PASSWORD, is_active=True):
    user = User(
        username=username,
        email=f'{username}@example.com',
        password=hash_password(password),
        first_name=username.capitalize(),
        last_name='Tester',
        role=role,
        is_active=is_active,
    )
    db.session.add(user)
    db.session.commit()
    return user


def auth_header(user):
    return {'Authorization': f'Bearer {issue_token(user)}'}


def make_book(title='Clean Code', isbn='9780132350884', copies=2, category=None, **extra):
    book = Book(title=title, author=extra.pop('author', 'Robert C. Martin'), isbn=isbn,
                category=category, total_copies=copies, available_copies=copies, **extra)
    db.session.add(book)
    db.session.commit()
    return book


def make_loan(member, book, staff, overdue_by=None):
    """Create an approved loan; ``overdue_by`` moves its due date into the past."""
    borrow_request = create_request(member, book)
    db.session.flush()
    approve(borrow_request, staff)
    if overdue_by is not None:
        borrow_request.due_date = utcnow() - overdue_by
    db.session.commit()
    return borrow_request


@pytest.fixture
def admin(app):
    return make_user('admin', ROLE_ADMIN)


@pytest.fixture
def librarian(app):
    return make_user('librarian', ROLE_LIBRARIAN)


@pytest.fixture
def member(app):
    return make_user('member')


@pytest.fixture
def other_member(app):
    return make_user('other')


@pytest.fixture
def admin_headers(admin):
    return auth_header(admin)


@pytest.fixture
def librarian_headers(librarian):
    return auth_header(librarian)


@pytest.fixture
def member_headers(member):
    return auth_header(member)


@pytest.fixture
def other_headers(other_member):
    return auth_header(other_member)


@pytest.fixture
def category(app):
    category = Category(name='Software', description='Software engineering')
    db.session.add(category)
    db.session.commit()
    return category


@pytest.fixture
def book(category):
    return make_book(category=category)


@pytest.fixture
def overdue_loan(member, book, admin):
    return make_loan(member, book, admin, overdue_by=timedelta(days=2, hours=12))
