import pytest

import email_service
from models import EmailHistory, Reservation, db


@pytest.fixture
def checked_out(client, library, other_patron):
    """A one-copy book currently borrowed by `other_patron`."""
    book = library.add_book({'title': 'The Hobbit', 'author': 'J.R.R. Tolkien', 'total_copies': 1})
    resp = client.post('/library/borrow', json={'bookId': book.id}, headers=other_patron[1])
    assert resp.status_code == 201
    return book


def reserve(client, header, book_id):
    return client.post('/library/reservations', json={'bookId': book_id}, headers=header)


def test_reserve_refused_while_copies_available(client, patron, book_1984):
    resp = reserve(client, patron[1], book_1984.id)
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'Book is available for borrowing, no need to reserve'
    assert Reservation.query.count() == 0


def test_reserve_when_all_copies_out(client, patron, checked_out):
    resp = reserve(client, patron[1], checked_out.id)
    assert resp.status_code == 201
    data = resp.get_json()['data']
    assert data['status'] == 'active'
    assert data['reserved_at'] == '2024-03-04T09:00:00'
    assert data['expires_at'] == '2024-03-11T09:00:00'

    duplicate = reserve(client, patron[1], checked_out.id)
    assert duplicate.status_code == 409
    assert duplicate.get_json()['error'] == 'You already have an active reservation for this book'

    mine = client.get('/library/reservations', headers=patron[1]).get_json()['data']
    assert [r['title'] for r in mine] == ['The Hobbit']


def test_reserve_unknown_book(client, patron):
    assert reserve(client, patron[1], 999).status_code == 404


def test_cancel_reservation(client, patron, other_patron, checked_out):
    reservation_id = reserve(client, patron[1], checked_out.id).get_json()['data']['id']

    # Someone else's reservation is invisible
    assert client.post(f'/library/reservations/{reservation_id}/cancel',
                       headers=other_patron[1]).status_code == 404

    resp = client.post(f'/library/reservations/{reservation_id}/cancel', headers=patron[1])
    assert resp.status_code == 200
    assert resp.get_json()['data']['status'] == 'cancelled'

    assert client.post(f'/library/reservations/{reservation_id}/cancel',
                       headers=patron[1]).status_code == 409
    # A cancelled reservation no longer blocks a new one
    assert reserve(client, patron[1], checked_out.id).status_code == 201


def test_fulfill_notifies_patron(client, clock, users, headers, patron, checked_out):
    reservation_id = reserve(client, patron[1], checked_out.id).get_json()['data']['id']

    queue = client.get('/library/admin/reservations', headers=headers['librarian']).get_json()['data']
    assert [(r['id'], r['username']) for r in queue] == [(reservation_id, 'reader')]

    clock.advance(days=2)
    with email_service.mail.record_messages() as outbox:
        resp = client.post(f'/library/admin/reservations/{reservation_id}/fulfill', headers=headers['librarian'])
    assert resp.status_code == 200
    data = resp.get_json()['data']
    assert data['status'] == 'fulfilled'
    assert data['expires_at'] == '2024-03-09T09:00:00'

    assert len(outbox) == 1
    assert outbox[0].recipients == ['reader@school.test']
    assert 'The Hobbit' in outbox[0].html
    entry = EmailHistory.query.filter_by(email_type='reservation_notification').one()
    assert entry.sent_by == users['librarian'].id

    again = client.post(f'/library/admin/reservations/{reservation_id}/fulfill', headers=headers['librarian'])
    assert again.status_code == 404
    assert again.get_json()['error'] == 'Active reservation not found'
    assert client.get('/library/admin/reservations', headers=headers['librarian']).get_json()['data'] == []


def test_fulfill_then_issue_on_return(client, headers, patron, other_patron, checked_out):
    reservation_id = reserve(client, patron[1], checked_out.id).get_json()['data']['id']
    client.post(f'/library/admin/reservations/{reservation_id}/fulfill', headers=headers['librarian'])

    # Fulfilling does not check a copy out
    blocked = client.post('/library/admin/issue', json={'userId': patron[0].id, 'bookId': checked_out.id},
                          headers=headers['librarian'])
    assert blocked.status_code == 400

    mine = client.get('/library/borrowings', headers=other_patron[1]).get_json()['data']
    client.post('/library/return', json={'borrowingId': mine[0]['id']}, headers=other_patron[1])

    issued = client.post('/library/admin/issue', json={'userId': patron[0].id, 'bookId': checked_out.id},
                         headers=headers['librarian'])
    assert issued.status_code == 201
    assert issued.get_json()['data']['title'] == 'The Hobbit'


def test_expire_reservations(app, clock, patron, checked_out):
    library = app.extensions['library']
    held = library.reserve(patron[0].id, checked_out.id)
    held_id = held.id

    clock.advance(days=6)
    assert library.expire_reservations() == 0

    clock.advance(days=2)
    assert library.expire_reservations() == 1
    db.session.expire_all()
    assert db.session.get(Reservation, held_id).status == 'expired'


def test_fulfilled_pickup_window_expires(app, clock, patron, checked_out):
    library = app.extensions['library']
    reservation_id = library.reserve(patron[0].id, checked_out.id).id
    library.fulfill(reservation_id)

    clock.advance(days=3, minutes=1)
    assert library.expire_reservations() == 1
    db.session.expire_all()
    assert db.session.get(Reservation, reservation_id).status == 'expired'


def test_collected_hold_is_not_expired(app, client, clock, headers, patron, other_patron, checked_out):
    library = app.extensions['library']
    reservation_id = library.reserve(patron[0].id, checked_out.id).id
    mine = client.get('/library/borrowings', headers=other_patron[1]).get_json()['data']
    client.post('/library/return', json={'borrowingId': mine[0]['id']}, headers=other_patron[1])
    library.fulfill(reservation_id)

    issued = client.post('/library/admin/issue', json={'userId': patron[0].id, 'bookId': checked_out.id},
                         headers=headers['librarian'])
    assert issued.status_code == 201

    clock.advance(days=4)
    assert library.expire_reservations() == 0
    db.session.expire_all()
    assert db.session.get(Reservation, reservation_id).status == 'collected'
