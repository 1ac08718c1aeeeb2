from datetime import timedelta

from conftest import make_book, make_loan
from extensions import db
from models import (STATUS_APPROVED, STATUS_PENDING, STATUS_REJECTED, STATUS_RETURNED,
                    TRANSACTION_ISSUE, TRANSACTION_RENEWAL, TRANSACTION_RETURN, Book,
                    Notification, Transaction)
from utils import utcnow


def request_book(client, headers, book, **extra):
    return client.post('/api/borrow-requests', headers=headers, json={'book_id': book.book_id, **extra})


def review(client, headers, request_id, action, **extra):
    return client.patch(f'/api/borrow-requests/{request_id}', headers=headers, json={'action': action, **extra})


def test_create_request(client, member, member_headers, librarian, book):
    response = request_book(client, member_headers, book)
    assert response.status_code == 201
    created = response.json['request']
    assert created['status'] == STATUS_PENDING
    assert created['requested_days'] == 14
    assert created['due_date'] is None
    assert created['user']['membership_id'] == f'LIB{member.user_id:05d}'

    # Pending requests do not take a copy yet
    assert db.session.get(Book, book.book_id).available_copies == 2
    titles = {n.title for n in Notification.query.all()}
    assert titles == {'Borrow Request Submitted', 'New Borrow Request'}
    assert Notification.query.filter_by(user_id=librarian.user_id).count() == 1


def test_create_request_validation(client, member_headers, book):
    assert client.post('/api/borrow-requests', headers=member_headers, json={}).status_code == 400
    assert request_book(client, member_headers, book, requested_days=0).status_code == 400
    assert request_book(client, member_headers, book, requested_days=31).status_code == 400

    response = client.post('/api/borrow-requests', headers=member_headers, json={'book_id': 999})
    assert response.status_code == 404


def test_duplicate_active_request_is_refused(client, member_headers, book):
    assert request_book(client, member_headers, book).status_code == 201
    response = request_book(client, member_headers, book)
    assert response.status_code == 400
    assert response.json['error'] == 'You already have a pending request for this book'


def test_cannot_request_unavailable_book(client, member_headers, category):
    book = make_book(title='Gone', isbn='000', copies=0, category=category)
    response = request_book(client, member_headers, book)
    assert response.status_code == 400
    assert response.json['error'] == 'Book is not available for borrowing'


def test_requires_authentication(client, book):
    response = client.post('/api/borrow-requests', json={'book_id': book.book_id})
    assert response.status_code == 401


def test_approve_issues_copy_and_records_transaction(client, member_headers, librarian, librarian_headers, book):
    request_id = request_book(client, member_headers, book, requested_days=7).json['request']['request_id']

    response = review(client, librarian_headers, request_id, 'approve', notes='Enjoy')
    assert response.status_code == 200
    approved = response.json['request']
    assert approved['status'] == STATUS_APPROVED
    assert approved['approved_by'] == librarian.user_id
    assert approved['admin_response'] == 'Enjoy'
    assert approved['due_date'] is not None
    assert approved['is_overdue'] is False

    assert db.session.get(Book, book.book_id).available_copies == 1
    issue = Transaction.query.filter_by(request_id=request_id).one()
    assert issue.transaction_type == TRANSACTION_ISSUE
    assert issue.processed_by == librarian.user_id
    assert timedelta(days=6) < issue.due_date - issue.transaction_date <= timedelta(days=7)


def test_member_cannot_review_requests(client, member_headers, book):
    request_id = request_book(client, member_headers, book).json['request']['request_id']
    response = review(client, member_headers, request_id, 'APPROVE')
    assert response.status_code == 403


def test_invalid_action(client, member_headers, admin_headers, book):
    request_id = request_book(client, member_headers, book).json['request']['request_id']
    response = review(client, admin_headers, request_id, 'CANCEL')
    assert response.status_code == 400
    assert response.json['error'] == 'Invalid action. Must be APPROVE, REJECT, or RETURN'


def test_review_missing_request(client, admin_headers):
    assert review(client, admin_headers, 999, 'APPROVE').status_code == 404


def test_reject_keeps_copies(client, member_headers, admin_headers, book):
    request_id = request_book(client, member_headers, book).json['request']['request_id']
    response = review(client, admin_headers, request_id, 'REJECT', notes='Reserved for class')
    assert response.status_code == 200
    assert response.json['request']['status'] == STATUS_REJECTED
    assert db.session.get(Book, book.book_id).available_copies == 2
    assert Transaction.query.count() == 0


def test_status_only_moves_forward(client, member_headers, admin_headers, book):
    request_id = request_book(client, member_headers, book).json['request']['request_id']
    assert review(client, admin_headers, request_id, 'RETURN').status_code == 400
    assert review(client, admin_headers, request_id, 'REJECT').status_code == 200
    assert review(client, admin_headers, request_id, 'APPROVE').status_code == 400
    assert review(client, admin_headers, request_id, 'RETURN').status_code == 400
    assert db.session.get(Book, book.book_id).available_copies == 2


def test_approve_fails_when_last_copy_was_taken(client, member_headers, other_headers, admin_headers, category):
    book = make_book(title='Single', isbn='1111', copies=1, category=category)
    first = request_book(client, member_headers, book).json['request']['request_id']
    second = request_book(client, other_headers, book).json['request']['request_id']
    assert review(client, admin_headers, first, 'APPROVE').status_code == 200

    response = review(client, admin_headers, second, 'APPROVE')
    assert response.status_code == 400
    assert response.json['error'] == 'Book is no longer available'
    assert db.session.get(Book, book.book_id).available_copies == 0


def test_staff_return_restores_copy(client, member, admin, admin_headers, book):
    loan = make_loan(member, book, admin)
    response = review(client, admin_headers, loan.request_id, 'RETURN')
    assert response.status_code == 200
    assert response.json['message'] == 'Book returned successfully'
    assert response.json['request']['status'] == STATUS_RETURNED
    assert response.json['request']['return_date'] is not None
    assert db.session.get(Book, book.book_id).available_copies == 2
    types = [t.transaction_type for t in Transaction.query.order_by(Transaction.transaction_id)]
    assert types == [TRANSACTION_ISSUE, TRANSACTION_RETURN]


def test_member_return_flow(client, member, admin, member_headers, other_headers, book):
    loan = make_loan(member, book, admin)

    response = client.post('/api/books/return', headers=other_headers, json={'request_id': loan.request_id})
    assert response.status_code == 403

    response = client.post('/api/books/return', headers=member_headers,
                           json={'request_id': loan.request_id, 'condition': 'Good'})
    assert response.status_code == 200
    assert response.json['is_overdue'] is False
    assert response.json['request']['notes'] == 'Return condition: Good'

    response = client.post('/api/books/return', headers=member_headers, json={'request_id': loan.request_id})
    assert response.status_code == 400
    assert response.json['error'] == 'Book is already returned'


def test_member_cannot_return_pending_request(client, member_headers, book):
    request_id = request_book(client, member_headers, book).json['request']['request_id']
    response = client.post('/api/books/return', headers=member_headers, json={'request_id': request_id})
    assert response.status_code == 400
    assert response.json['error'] == 'Book is not currently borrowed'


def test_return_requires_request_id(client, member_headers):
    assert client.post('/api/books/return', headers=member_headers, json={}).status_code == 400
    assert client.post('/api/books/return', headers=member_headers, json={'request_id': 42}).status_code == 404


def test_list_requests_visibility(client, member, other_member, admin, member_headers, admin_headers, category):
    first = make_book(title='First', isbn='a1', category=category)
    second = make_book(title='Second', isbn='a2', category=category)
    make_loan(member, first, admin)
    make_loan(other_member, second, admin)

    mine = client.get('/api/borrow-requests', headers=member_headers).json
    assert [r['user_id'] for r in mine['requests']] == [member.user_id]
    assert mine['pagination']['per_page'] == 10

    everyone = client.get('/api/borrow-requests', headers=admin_headers).json
    assert everyone['pagination']['total_items'] == 2

    # Members cannot widen the filter to other users
    response = client.get(f'/api/borrow-requests?user_id={other_member.user_id}', headers=member_headers)
    assert response.json['pagination']['total_items'] == 1

    filtered = client.get('/api/borrow-requests?search=second', headers=admin_headers).json['requests']
    assert [r['book']['title'] for r in filtered] == ['Second']

    pending = client.get('/api/borrow-requests?status=pending', headers=admin_headers).json
    assert pending['requests'] == []


def test_get_single_request_access(client, member, admin, member_headers, other_headers, admin_headers, book):
    loan = make_loan(member, book, admin)
    assert client.get(f'/api/borrow-requests/{loan.request_id}', headers=member_headers).status_code == 200
    assert client.get(f'/api/borrow-requests/{loan.request_id}', headers=admin_headers).status_code == 200
    assert client.get(f'/api/borrow-requests/{loan.request_id}', headers=other_headers).status_code == 403
    assert client.get('/api/borrow-requests/999', headers=admin_headers).status_code == 404


def test_renew_extends_due_date(client, member, admin, member_headers, book):
    loan = make_loan(member, book, admin)
    due = loan.due_date

    response = client.post(f'/api/borrow-requests/{loan.request_id}/renew', headers=member_headers)
    assert response.status_code == 200
    assert response.json['request']['renewal_count'] == 1
    assert loan.due_date == due + timedelta(days=14)
    assert Transaction.query.filter_by(transaction_type=TRANSACTION_RENEWAL).count() == 1

    assert client.post(f'/api/borrow-requests/{loan.request_id}/renew', headers=member_headers).status_code == 200
    response = client.post(f'/api/borrow-requests/{loan.request_id}/renew', headers=member_headers)
    assert response.status_code == 400
    assert response.json['error'] == 'Renewal limit of 2 reached'


def test_overdue_loan_cannot_be_renewed(client, overdue_loan, member_headers):
    response = client.post(f'/api/borrow-requests/{overdue_loan.request_id}/renew', headers=member_headers)
    assert response.status_code == 400
    assert response.json['error'] == 'Overdue books cannot be renewed'


def test_transactions_listing(client, member, other_member, admin, member_headers, admin_headers, category):
    first = make_book(title='First', isbn='b1', category=category)
    second = make_book(title='Second', isbn='b2', category=category)
    loan = make_loan(member, first, admin)
    make_loan(other_member, second, admin)
    review(client, admin_headers, loan.request_id, 'RETURN')

    mine = client.get('/api/transactions', headers=member_headers).json
    assert mine['pagination']['total_items'] == 2
    assert {t['transaction_type'] for t in mine['transactions']} == {TRANSACTION_ISSUE, TRANSACTION_RETURN}

    everyone = client.get('/api/transactions', headers=admin_headers).json
    assert everyone['pagination']['total_items'] == 3

    returns = client.get('/api/transactions?type=return', headers=admin_headers).json['transactions']
    assert [t['book_title'] for t in returns] == ['First']

    tomorrow = (utcnow() + timedelta(days=1)).isoformat()
    later = client.get('/api/transactions', headers=admin_headers, query_string={'from': tomorrow}).json
    assert later['transactions'] == []


def test_transactions_date_only_upper_bound(client, member, admin, admin_headers, book):
    make_loan(member, book, admin)
    today = utcnow().date()
    listing = client.get('/api/transactions', headers=admin_headers, query_string={'to': today.isoformat()}).json
    assert listing['pagination']['total_items'] == 1

    yesterday = (today - timedelta(days=1)).isoformat()
    listing = client.get('/api/transactions', headers=admin_headers, query_string={'to': yesterday}).json
    assert listing['transactions'] == []
