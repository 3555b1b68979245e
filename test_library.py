from datetime import datetime
from decimal import Decimal

from conftest import auth_header, make_user
from library_service import compute_fine, make_barcode
from models import Book, BookCopy, Borrowing, Fine, LibraryUser, db


def available(client, book_id):
    return client.get(f'/library/books/{book_id}').get_json()['data']['available_copies']


def borrow(client, header, book_id):
    return client.post('/library/borrow', json={'bookId': book_id}, headers=header)


def test_add_book_creates_copies(book_1984):
    copies = BookCopy.query.filter_by(book_id=book_1984.id).order_by(BookCopy.copy_number).all()
    assert [c.barcode for c in copies] == [f'9780451524935-00{n}' for n in range(1, 5)]
    assert all(c.status == 'available' for c in copies)
    assert db.session.get(Book, book_1984.id).available_copies == 4


def test_books_without_isbn_get_distinct_barcodes(library):
    first = library.add_book({'title': 'Zine A', 'author': 'Anon'})
    second = library.add_book({'title': 'Zine B', 'author': 'Anon'})
    assert first.copies[0].barcode == f'LIB{first.id}-001'
    assert first.copies[0].barcode != second.copies[0].barcode


def test_borrow_and_return_on_time(client, clock, patron, book_1984):
    _, header = patron
    assert available(client, book_1984.id) == 4

    resp = borrow(client, header, book_1984.id)
    assert resp.status_code == 201
    borrowing = resp.get_json()['data']
    assert borrowing['status'] == 'borrowed'
    assert borrowing['due_date'] == '2024-03-18T09:00:00'
    assert available(client, book_1984.id) == 3

    clock.advance(days=10)
    returned = client.post('/library/return', json={'borrowingId': borrowing['id']}, headers=header)
    assert returned.status_code == 200
    assert returned.get_json()['data']['fine_amount'] == 0
    assert available(client, book_1984.id) == 4
    assert Fine.query.count() == 0


def test_late_return_charges_per_started_day(client, clock, patron, book_1984):
    _, header = patron
    borrowing_id = borrow(client, header, book_1984.id).get_json()['data']['id']

    clock.advance(days=17)
    returned = client.post('/library/return', json={'borrowingId': borrowing_id}, headers=header)
    assert returned.get_json()['data']['fine_amount'] == 1.5

    fine = Fine.query.one()
    assert fine.amount == Decimal('1.50')
    assert fine.reason == 'Late return'
    assert fine.paid is False


def test_compute_fine_rounds_partial_days_up():
    due = datetime(2024, 3, 18, 9, 0)
    assert compute_fine(due, due) == Decimal('0.00')
    assert compute_fine(due, datetime(2024, 3, 18, 9, 1)) == Decimal('0.50')
    assert compute_fine(due, datetime(2024, 3, 20, 10, 0)) == Decimal('1.50')


def test_borrow_limit(client, book_1984):
    user = make_user('limited', 'viewer')
    db.session.add(LibraryUser(user_id=user.id, library_card_number='CARD-0099', max_borrow_limit=1))
    db.session.commit()
    header = auth_header(user)

    assert borrow(client, header, book_1984.id).status_code == 201
    refused = borrow(client, header, book_1984.id)
    assert refused.status_code == 400
    assert 'limit' in refused.get_json()['error'].lower()
    assert Borrowing.query.count() == 1
    assert available(client, book_1984.id) == 3


def test_last_copy_goes_to_one_borrower(client, library, patron, other_patron):
    book = library.add_book({'title': 'Rare Book', 'author': 'Someone', 'total_copies': 1})
    assert borrow(client, patron[1], book.id).status_code == 201

    second = borrow(client, other_patron[1], book.id)
    assert second.status_code == 400
    assert second.get_json()['error'] == 'No available copies of this book'
    assert BookCopy.query.filter_by(book_id=book.id, status='borrowed').count() == 1


def test_borrow_requires_library_account(client, headers, book_1984):
    resp = borrow(client, headers['teacher'], book_1984.id)
    assert resp.status_code == 404
    assert resp.get_json()['error'] == 'User not found in library system'


def test_borrow_unknown_book(client, patron):
    assert borrow(client, patron[1], 999).status_code == 404
    assert client.post('/library/borrow', json={}, headers=patron[1]).status_code == 400


def test_cannot_return_someone_elses_book(client, patron, other_patron, book_1984):
    borrowing_id = borrow(client, patron[1], book_1984.id).get_json()['data']['id']
    resp = client.post('/library/return', json={'borrowingId': borrowing_id}, headers=other_patron[1])
    assert resp.status_code == 404
    assert db.session.get(Borrowing, borrowing_id).status == 'borrowed'


def test_double_return_is_conflict(client, headers, patron, book_1984):
    borrowing_id = borrow(client, patron[1], book_1984.id).get_json()['data']['id']
    assert client.post('/library/admin/return', json={'borrowingId': borrowing_id},
                       headers=headers['librarian']).status_code == 200
    again = client.post('/library/return', json={'borrowingId': borrowing_id}, headers=patron[1])
    assert again.status_code == 409
    assert again.get_json()['error'] == 'This book has already been returned'


def test_renew_extends_due_date(client, headers, patron, book_1984):
    borrowing_id = borrow(client, patron[1], book_1984.id).get_json()['data']['id']
    resp = client.post(f'/library/admin/borrowings/{borrowing_id}/renew', headers=headers['librarian'])
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['due_date'] == '2024-04-01T09:00:00'
    assert data['renewal_count'] == 1

    client.post('/library/return', json={'borrowingId': borrowing_id}, headers=patron[1])
    assert client.post(f'/library/admin/borrowings/{borrowing_id}/renew',
                       headers=headers['librarian']).status_code == 409


def test_my_borrowings_marks_overdue(client, clock, patron, book_1984):
    borrow(client, patron[1], book_1984.id)
    clock.advance(days=15)
    mine = client.get('/library/borrowings', headers=patron[1]).get_json()['data']
    assert len(mine) == 1
    assert mine[0]['title'] == '1984'
    assert mine[0]['overdue'] is True


def test_catalog_search_filters_and_pagination(client, library, book_1984):
    library.add_book({'title': 'Animal Farm', 'author': 'George Orwell', 'genre': 'Fiction'})
    cosmos = library.add_book({'title': 'Cosmos', 'author': 'Carl Sagan', 'genre': 'Science', 'total_copies': 2})
    cosmos_id = cosmos.id

    by_author = client.get('/library/books?search=orwell').get_json()
    assert [b['title'] for b in by_author['data']] == ['1984', 'Animal Farm']

    science = client.get('/library/books?genre=Science').get_json()['data']
    assert [b['title'] for b in science] == ['Cosmos']

    paged = client.get('/library/books?page=2&limit=2').get_json()
    assert [b['title'] for b in paged['data']] == ['Cosmos']
    assert paged['pagination'] == {'page': 2, 'limit': 2, 'total': 3, 'totalPages': 2}

    first, second = [c.id for c in BookCopy.query.filter_by(book_id=cosmos_id).all()]
    library.set_copy_status(first, 'lost')
    library.set_copy_status(second, 'maintenance')

    unavailable = client.get('/library/books?available=false').get_json()['data']
    assert [b['title'] for b in unavailable] == ['Cosmos']
    in_stock = client.get('/library/books?available=true').get_json()['data']
    assert [b['title'] for b in in_stock] == ['1984', 'Animal Farm']


def test_book_management_requires_librarian(client, headers):
    payload = {'title': 'Dune', 'author': 'Frank Herbert', 'total_copies': 2}
    assert client.post('/library/books', json=payload, headers=headers['teacher']).status_code == 403

    created = client.post('/library/books', json=payload, headers=headers['librarian'])
    assert created.status_code == 201
    data = created.get_json()['data']
    assert data['total_copies'] == 2
    assert len(data['copies']) == 2


def test_add_book_validation(client, headers, book_1984):
    missing = client.post('/library/books', json={'title': 'No Author'}, headers=headers['librarian'])
    assert missing.status_code == 400
    assert missing.get_json()['error'] == 'Title and author are required'

    duplicate = client.post('/library/books', headers=headers['librarian'], json={
        'title': '1984 again', 'author': 'George Orwell', 'isbn': '9780451524935'
    })
    assert duplicate.status_code == 409


def test_update_book_whitelist(client, headers, book_1984):
    ok = client.put(f'/library/books/{book_1984.id}', json={'location': 'Shelf B2'}, headers=headers['librarian'])
    assert ok.status_code == 200
    assert ok.get_json()['data']['location'] == 'Shelf B2'

    unknown = client.put(f'/library/books/{book_1984.id}', json={'id': 42, 'title': 'x'},
                         headers=headers['librarian'])
    assert unknown.status_code == 400
    assert db.session.get(Book, book_1984.id).title == '1984'

    empty = client.put(f'/library/books/{book_1984.id}', json={}, headers=headers['librarian'])
    assert empty.status_code == 400


def test_delete_book_with_borrowed_copy(client, headers, patron, library, book_1984):
    borrowing_id = borrow(client, patron[1], book_1984.id).get_json()['data']['id']
    blocked = client.delete(f'/library/books/{book_1984.id}', headers=headers['librarian'])
    assert blocked.status_code == 409
    assert blocked.get_json()['error'] == 'Cannot delete book with active borrowings'

    spare_id = library.add_book({'title': 'Spare', 'author': 'Nobody'}).id
    assert client.delete(f'/library/books/{spare_id}', headers=headers['librarian']).status_code == 200
    assert db.session.get(Book, spare_id) is None
    assert db.session.get(Borrowing, borrowing_id) is not None


def test_copy_status_changes(client, headers, patron, book_1984):
    borrowing = borrow(client, patron[1], book_1984.id).get_json()['data']
    borrowed_copy = borrowing['book_copy_id']

    busy = client.put(f'/library/copies/{borrowed_copy}/status', json={'status': 'lost'},
                      headers=headers['librarian'])
    assert busy.status_code == 409

    free_copy = BookCopy.query.filter_by(book_id=book_1984.id, status='available').first().id
    bad = client.put(f'/library/copies/{free_copy}/status', json={'status': 'borrowed'},
                     headers=headers['librarian'])
    assert bad.status_code == 400

    ok = client.put(f'/library/copies/{free_copy}/status', json={'status': 'maintenance'},
                    headers=headers['librarian'])
    assert ok.get_json()['data']['status'] == 'maintenance'
    assert available(client, book_1984.id) == 2


def test_issue_and_admin_listings(client, clock, headers, patron, book_1984):
    user, _ = patron
    issued = client.post('/library/admin/issue', json={'userId': user.id, 'bookId': book_1984.id},
                         headers=headers['librarian'])
    assert issued.status_code == 201

    missing = client.post('/library/admin/issue', json={'userId': 999, 'bookId': book_1984.id},
                          headers=headers['librarian'])
    assert missing.status_code == 404
    assert missing.get_json()['error'] == 'Library user not found'

    listing = client.get('/library/admin/borrowings?status=borrowed', headers=headers['librarian']).get_json()
    assert listing['pagination']['total'] == 1
    assert listing['data'][0]['username'] == 'reader'

    history = client.get(f'/library/admin/borrowings/{user.id}', headers=headers['librarian']).get_json()['data']
    assert [b['title'] for b in history] == ['1984']

    found = client.get('/library/admin/borrowings/search?q=reader', headers=headers['librarian']).get_json()['data']
    assert found[0]['title'] == '1984'
    assert client.get('/library/admin/borrowings/search?q=', headers=headers['librarian']).get_json()['data'] == []

    clock.advance(days=20)
    stats = client.get('/library/admin/stats', headers=headers['librarian']).get_json()['data']
    assert stats['total_books'] == 1
    assert stats['total_copies'] == 4
    assert stats['available_copies'] == 3
    assert stats['active_borrowings'] == 1
    assert stats['overdue_books'] == 1
    assert stats['unpaid_fines'] == 0


def test_library_accounts(client, users, headers):
    teacher_id = users['teacher'].id
    created = client.post('/library/admin/users', json={'userId': teacher_id}, headers=headers['admin'])
    assert created.status_code == 201
    account = created.get_json()['data']
    assert account['library_card_number'] == f'LIB{teacher_id:06d}'
    assert account['max_borrow_limit'] == 5

    again = client.post('/library/admin/users', json={'userId': teacher_id}, headers=headers['admin'])
    assert again.status_code == 409

    listed = client.get('/library/admin/users', headers=headers['librarian']).get_json()['data']
    assert [a['username'] for a in listed] == ['teacher']


def test_barcode_helper():
    book = Book(id=7, title='t', author='a')
    assert make_barcode(book, 12) == 'LIB7-012'


def test_borrow_that_loses_the_copy_claim_is_refused(monkeypatch, client, library, patron, other_patron):
    book = library.add_book({'title': 'Rare Book', 'author': 'Someone', 'total_copies': 1})
    assert borrow(client, patron[1], book.id).status_code == 201

    # a competing checkout picked the copy before the winner committed
    def stale_pick(self, session, book_id):
        return session.query(BookCopy).filter_by(book_id=book_id).first()

    monkeypatch.setattr(type(library), '_pick_copy', stale_pick)
    lost = borrow(client, other_patron[1], book.id)
    assert lost.status_code == 400
    assert lost.get_json()['error'] == 'No available copies of this book'
    assert Borrowing.query.count() == 1
    assert BookCopy.query.filter_by(book_id=book.id).one().status == 'borrowed'


def test_update_book_rejects_bad_values(client, headers, library, book_1984):
    blank = client.put(f'/library/books/{book_1984.id}', json={'title': None}, headers=headers['librarian'])
    assert blank.status_code == 400
    assert blank.get_json()['error'] == 'Title and author are required'
    assert db.session.get(Book, book_1984.id).title == '1984'

    other_id = library.add_book({'title': 'Animal Farm', 'author': 'George Orwell', 'isbn': '9780451526342'}).id
    for book_id in (book_1984.id, other_id):
        cleared = client.put(f'/library/books/{book_id}', json={'isbn': ''}, headers=headers['librarian'])
        assert cleared.status_code == 200
        assert cleared.get_json()['data']['isbn'] is None

    client.put(f'/library/books/{book_1984.id}', json={'isbn': '9780451524935'}, headers=headers['librarian'])
    clash = client.put(f'/library/books/{other_id}', json={'isbn': '9780451524935'}, headers=headers['librarian'])
    assert clash.status_code == 409


def test_delete_book_keeps_borrowing_history(client, headers, library, patron):
    book_id = library.add_book({'title': 'Read Once', 'author': 'Anon'}).id
    borrowing_id = borrow(client, patron[1], book_id).get_json()['data']['id']
    client.post('/library/return', json={'borrowingId': borrowing_id}, headers=patron[1])

    resp = client.delete(f'/library/books/{book_id}', headers=headers['librarian'])
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'Cannot delete book with borrowing history'
    assert db.session.get(Borrowing, borrowing_id).status == 'returned'


def test_library_account_with_string_user_id(client, users, headers):
    librarian_id = users['librarian'].id
    created = client.post('/library/admin/users', json={'userId': str(librarian_id)}, headers=headers['admin'])
    assert created.status_code == 201
    assert created.get_json()['data']['library_card_number'] == f'LIB{librarian_id:06d}'

    bad = client.post('/library/admin/users', json={'userId': 'abc'}, headers=headers['admin'])
    assert bad.status_code == 400
