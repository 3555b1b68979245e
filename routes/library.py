"""routes/library.py

Library API.

Public catalog:
 - GET /books (search, genre, status, available, page, limit), GET /books/<id>, GET /genres

Patron (any authenticated user with a library account):
 - borrowings, borrow, return, reservations (create / list / cancel)

Librarian back office (/admin/..., book and copy management):
 - book CRUD, copy status, borrowings listing/search/history, stats,
   reservations + fulfill, issue, return, renew, library accounts
"""

from flask import Blueprint, current_app, g, request

from decorators import requires
from errors import ValidationError, page_meta, success_response
from library_service import BookFilter

library = Blueprint('library', __name__)

MAX_PAGE_SIZE = 100


def _service():
    return current_app.extensions['library']


def _body():
    return request.get_json(silent=True) or {}


def _paging(default_limit=20):
    page = request.args.get('page', 1, type=int) or 1
    limit = request.args.get('limit', default_limit, type=int) or default_limit
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


def _pick(data, *names):
    for name in names:
        if data.get(name) is not None:
            return data[name]
    return None


# ------------------------------------------------------------------ catalog

@library.route('/books', methods=['GET'])
def list_books():
    page, limit = _paging()
    result = _service().list_books(BookFilter.from_args(request.args), page, limit)
    return success_response([b.to_dict() for b in result.items], pagination=page_meta(result))


@library.route('/books/<int:book_id>', methods=['GET'])
def get_book(book_id):
    return success_response(_service().get_book(book_id))


@library.route('/genres', methods=['GET'])
def genres():
    return success_response(_service().genres())


# ------------------------------------------------------------------- patron

@library.route('/borrowings', methods=['GET'])
@requires()
def my_borrowings():
    return success_response(_service().user_borrowings(g.current_user.id))


@library.route('/borrow', methods=['POST'])
@requires()
def borrow():
    book_id = _pick(_body(), 'bookId', 'book_id')
    borrowing = _service().borrow(g.current_user.id, book_id)
    return success_response(borrowing.to_dict(), message='Book borrowed successfully', status_code=201)


@library.route('/return', methods=['POST'])
@requires()
def return_book():
    borrowing_id = _pick(_body(), 'borrowingId', 'borrowing_id')
    borrowing = _service().return_borrowing(borrowing_id, acting_user_id=g.current_user.id)
    return success_response(borrowing.to_dict(), message='Book returned successfully')


@library.route('/reservations', methods=['POST'])
@requires()
def reserve():
    book_id = _pick(_body(), 'bookId', 'book_id')
    reservation = _service().reserve(g.current_user.id, book_id)
    return success_response(reservation.to_dict(), message='Book reserved successfully', status_code=201)


@library.route('/reservations', methods=['GET'])
@requires()
def my_reservations():
    return success_response(_service().user_reservations(g.current_user.id))


@library.route('/reservations/<int:reservation_id>/cancel', methods=['POST'])
@requires()
def cancel_reservation(reservation_id):
    reservation = _service().cancel_reservation(reservation_id, g.current_user.id)
    return success_response(reservation.to_dict(), message='Reservation cancelled')


# ---------------------------------------------------------------- librarian

@library.route('/books', methods=['POST'])
@requires('library.manage')
def add_book():
    book = _service().add_book(_body())
    return success_response(_service().get_book(book.id), message='Book added successfully', status_code=201)


@library.route('/books/<int:book_id>', methods=['PUT'])
@requires('library.manage')
def update_book(book_id):
    book = _service().update_book(book_id, _body())
    return success_response(book.to_dict(), message='Book updated successfully')


@library.route('/books/<int:book_id>', methods=['DELETE'])
@requires('library.manage')
def delete_book(book_id):
    _service().delete_book(book_id)
    return success_response(message='Book deleted successfully')


@library.route('/copies/<int:copy_id>/status', methods=['PUT'])
@requires('library.manage')
def set_copy_status(copy_id):
    copy = _service().set_copy_status(copy_id, _body().get('status'))
    return success_response(copy.to_dict(), message='Copy status updated')


@library.route('/admin/borrowings', methods=['GET'])
@requires('library.manage')
def admin_borrowings():
    page, limit = _paging()
    result, items = _service().admin_borrowings(
        status=request.args.get('status'),
        user_id=request.args.get('user_id', type=int),
        page=page,
        limit=limit
    )
    return success_response(items, pagination=page_meta(result))


@library.route('/admin/stats', methods=['GET'])
@requires('library.manage')
def stats():
    return success_response(_service().stats())


@library.route('/admin/borrowings/search', methods=['GET'])
@requires('library.manage')
def search_borrowings():
    return success_response(_service().search_active_borrowings(request.args.get('q', '').strip()))


@library.route('/admin/reservations', methods=['GET'])
@requires('library.manage')
def active_reservations():
    return success_response(_service().active_reservations())


@library.route('/admin/reservations/<int:reservation_id>/fulfill', methods=['POST'])
@requires('library.manage')
def fulfill_reservation(reservation_id):
    reservation = _service().fulfill(reservation_id, actor_id=g.current_user.id)
    return success_response(reservation.to_dict(), message='Reservation fulfilled and notification sent.')


@library.route('/admin/issue', methods=['POST'])
@requires('library.manage')
def issue():
    data = _body()
    borrowing = _service().issue(_pick(data, 'userId', 'user_id'), _pick(data, 'bookId', 'book_id'))
    return success_response(borrowing.to_dict(), message='Book issued successfully', status_code=201)


@library.route('/admin/borrowings/<int:user_id>', methods=['GET'])
@requires('library.manage')
def user_history(user_id):
    return success_response(_service().user_history(user_id))


@library.route('/admin/return', methods=['POST'])
@requires('library.manage')
def admin_return():
    borrowing = _service().return_borrowing(_pick(_body(), 'borrowingId', 'borrowing_id'))
    return success_response(borrowing.to_dict(), message='Book returned successfully.')


@library.route('/admin/borrowings/<int:borrowing_id>/renew', methods=['POST'])
@requires('library.manage')
def renew(borrowing_id):
    borrowing = _service().renew(borrowing_id)
    return success_response(borrowing.to_dict(), message='Book renewed successfully.')


@library.route('/admin/users', methods=['GET'])
@requires('library.manage')
def library_users():
    return success_response(_service().library_users())


@library.route('/admin/users', methods=['POST'])
@requires('library.manage')
def create_library_user():
    data = _body()
    user_id = _pick(data, 'userId', 'user_id')
    if not user_id:
        raise ValidationError('User ID is required')
    library_user = _service().create_library_user(
        user_id,
        card_number=_pick(data, 'libraryCardNumber', 'library_card_number'),
        max_borrow_limit=_pick(data, 'maxBorrowLimit', 'max_borrow_limit')
    )
    return success_response(library_user.to_dict(), message='Library account created', status_code=201)
