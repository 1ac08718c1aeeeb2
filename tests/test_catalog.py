import json

from conftest import make_book, make_loan
from extensions import db
from models import BOOK_CHECKED_OUT, Book, BookHistory, Category


def new_book_payload(**overrides):
    payload = {
        'title': 'Refactoring',
        'author': 'Martin Fowler',
        'isbn': '9780134757599',
        'total_copies': 3,
    }
    payload.update(overrides)
    return payload


def test_health(client):
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.json['status'] == 'healthy'


def test_public_stats(client, book, member):
    response = client.get('/api/stats')
    assert response.json == {'total_books': 1, 'active_members': 1}


def test_unknown_route_returns_json_error(client):
    response = client.get('/api/nowhere')
    assert response.status_code == 404
    assert 'error' in response.json


def test_list_books_is_public_and_paginated(client, category):
    for i in range(15):
        make_book(title=f'Book {i:02d}', isbn=f'isbn-{i:02d}', category=category)

    response = client.get('/api/books')
    assert response.status_code == 200
    assert len(response.json['books']) == 12
    assert response.json['pagination'] == {
        'current_page': 1,
        'total_pages': 2,
        'total_items': 15,
        'per_page': 12,
        'has_next_page': True,
        'has_prev_page': False,
    }

    response = client.get('/api/books?page=2&limit=12')
    assert len(response.json['books']) == 3
    assert response.json['pagination']['has_prev_page'] is True


def test_list_books_page_past_the_end_is_empty(client, book):
    response = client.get('/api/books?page=5')
    assert response.status_code == 200
    assert response.json['books'] == []
    assert response.json['pagination']['total_items'] == 1


def test_list_books_filters(client, category):
    other = Category(name='History')
    db.session.add(other)
    db.session.commit()
    make_book(title='Design Patterns', isbn='111', category=category, author='Gamma')
    make_book(title='SPQR', isbn='222', category=other, author='Mary Beard')
    make_book(title='Out of stock', isbn='333', category=other, copies=0)

    by_name = client.get('/api/books?category=history').json['books']
    assert {b['title'] for b in by_name} == {'SPQR', 'Out of stock'}

    by_id = client.get(f'/api/books?category={category.category_id}').json['books']
    assert [b['title'] for b in by_id] == ['Design Patterns']

    search = client.get('/api/books?search=beard').json['books']
    assert [b['title'] for b in search] == ['SPQR']

    checked_out = client.get('/api/books', query_string={'status': 'Checked Out'}).json['books']
    assert [b['title'] for b in checked_out] == ['Out of stock']
    assert checked_out[0]['status'] == BOOK_CHECKED_OUT

    available = client.get('/api/books?status=Available').json['books']
    assert len(available) == 2


def test_list_books_sorting(client, category):
    make_book(title='Alpha', isbn='1', category=category, published_year=2001)
    make_book(title='Bravo', isbn='2', category=category, published_year=1999)

    titles = [b['title'] for b in client.get('/api/books?sortBy=title&sortOrder=desc').json['books']]
    assert titles == ['Bravo', 'Alpha']

    titles = [b['title'] for b in client.get('/api/books?sortBy=published_year').json['books']]
    assert titles == ['Bravo', 'Alpha']


def test_get_book(client, book):
    response = client.get(f'/api/books/{book.book_id}')
    assert response.status_code == 200
    data = response.json['book']
    assert data['title'] == 'Clean Code'
    assert data['category_details']['name'] == 'Software'
    assert data['pending_requests'] == 0


def test_get_missing_book(client):
    response = client.get('/api/books/999')
    assert response.status_code == 404
    assert response.json == {'error': 'Book not found'}


def test_add_book_requires_staff(client, member_headers):
    response = client.post('/api/books', headers=member_headers, json=new_book_payload())
    assert response.status_code == 403


def test_add_book(client, librarian_headers, category):
    response = client.post('/api/books', headers=librarian_headers,
                           json=new_book_payload(category_id=category.category_id, publisher='Addison-Wesley'))
    assert response.status_code == 201
    book = response.json['book']
    assert book['available_copies'] == book['total_copies'] == 3
    assert book['category'] == 'Software'
    assert book['publisher'] == 'Addison-Wesley'

    history = BookHistory.query.filter_by(book_id=book['book_id']).all()
    assert [h.action for h in history] == ['CREATED']


def test_add_book_validation(client, admin_headers, book):
    response = client.post('/api/books', headers=admin_headers, json={'title': 'Only a title'})
    assert response.status_code == 400
    assert 'author' in response.json['error']

    response = client.post('/api/books', headers=admin_headers, json=new_book_payload(total_copies=-1))
    assert response.status_code == 400

    response = client.post('/api/books', headers=admin_headers, json=new_book_payload(isbn=book.isbn))
    assert response.status_code == 400
    assert response.json['error'] == 'A book with this ISBN already exists'

    response = client.post('/api/books', headers=admin_headers, json=new_book_payload(category_id=404))
    assert response.status_code == 404


def test_add_book_rejects_bad_numbers(client, admin_headers):
    for field, value in (('rating', 'great'), ('rating', 7), ('pages', -5), ('published_year', 'abc')):
        response = client.post('/api/books', headers=admin_headers, json=new_book_payload(**{field: value}))
        assert response.status_code == 400
        assert field in response.json['error']
    assert Book.query.filter_by(isbn='9780134757599').count() == 0

    response = client.post('/api/books', headers=admin_headers,
                           json=new_book_payload(pages='320', published_year=2018, rating='4.5'))
    assert response.status_code == 201
    data = response.json['book']
    assert data['pages'] == 320
    assert data['rating'] == 4.5


def test_edit_book_rejects_bad_rating(client, admin_headers, book):
    response = client.put(f'/api/books/{book.book_id}', headers=admin_headers,
                          json={'title': 'Renamed', 'rating': 'great'})
    assert response.status_code == 400
    db.session.expire_all()
    assert db.session.get(Book, book.book_id).title == 'Clean Code'


def test_edit_book_keeps_borrowed_copies(client, admin, admin_headers, member, book):
    make_loan(member, book, admin)
    response = client.put(f'/api/books/{book.book_id}', headers=admin_headers,
                          json={'total_copies': 5, 'title': 'Clean Code (2nd)'})
    assert response.status_code == 200
    data = response.json['book']
    assert data['total_copies'] == 5
    assert data['available_copies'] == 4
    assert data['title'] == 'Clean Code (2nd)'
    update = BookHistory.query.filter_by(book_id=book.book_id, action='UPDATED').one()
    assert json.loads(update.old_data)['title'] == 'Clean Code'


def test_edit_book_cannot_drop_below_borrowed(client, admin, admin_headers, member, other_member, book):
    make_loan(member, book, admin)
    make_loan(other_member, book, admin)
    response = client.put(f'/api/books/{book.book_id}', headers=admin_headers,
                          json={'total_copies': 1, 'title': 'Should not stick'})
    assert response.status_code == 400
    assert response.json['error'] == 'Cannot reduce total copies below currently borrowed amount'
    db.session.refresh(book)
    assert book.title == 'Clean Code'
    assert book.total_copies == 2


def test_edit_book_rejects_duplicate_isbn(client, admin_headers, book):
    other = make_book(title='Other', isbn='555')
    response = client.put(f'/api/books/{other.book_id}', headers=admin_headers, json={'isbn': book.isbn})
    assert response.status_code == 400


def test_delete_book_is_admin_only_and_soft(client, librarian_headers, admin_headers, book):
    response = client.delete(f'/api/books/{book.book_id}', headers=librarian_headers)
    assert response.status_code == 403

    response = client.delete(f'/api/books/{book.book_id}', headers=admin_headers)
    assert response.status_code == 200
    assert db.session.get(Book, book.book_id).is_active is False
    assert client.get(f'/api/books/{book.book_id}').status_code == 404
    assert client.get('/api/books').json['pagination']['total_items'] == 0


def test_delete_book_with_active_request_is_refused(client, admin_headers, book):
    client.post('/api/borrow-requests', headers=admin_headers, json={'book_id': book.book_id})
    response = client.delete(f'/api/books/{book.book_id}', headers=admin_headers)
    assert response.status_code == 400
    assert response.json['error'] == 'Cannot delete book with active borrow requests'


def test_categories_crud(client, admin_headers, member_headers, book):
    response = client.get('/api/categories')
    assert response.json['categories'] == [{
        'category_id': book.category_id,
        'name': 'Software',
        'description': 'Software engineering',
        'image': None,
        'is_active': True,
        'book_count': 1,
    }]

    assert client.post('/api/categories', headers=member_headers, json={'name': 'Poetry'}).status_code == 403

    response = client.post('/api/categories', headers=admin_headers, json={'name': 'Poetry'})
    assert response.status_code == 201
    poetry_id = response.json['category']['category_id']

    response = client.post('/api/categories', headers=admin_headers, json={'name': 'poetry'})
    assert response.status_code == 400

    response = client.put(f'/api/categories/{poetry_id}', headers=admin_headers,
                          json={'name': 'Verse', 'description': 'Poems'})
    assert response.status_code == 200
    assert response.json['category']['name'] == 'Verse'

    response = client.delete(f'/api/categories/{book.category_id}', headers=admin_headers)
    assert response.status_code == 400

    response = client.delete(f'/api/categories/{poetry_id}', headers=admin_headers)
    assert response.status_code == 200
    names = [c['name'] for c in client.get('/api/categories').json['categories']]
    assert names == ['Software']
