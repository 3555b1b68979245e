"""library_service.py

Library management: catalog, copies, borrowing, returns, renewals and reservations.

Notes:
 - Availability is per copy (BookCopy.status); Book.available_copies is derived.
 - `user_id` arguments are User ids; they are resolved to the LibraryUser row.
 - Borrow/issue/return/renew/fulfill each run in one transaction with the
   contested row locked. A copy is claimed with a conditional UPDATE so two
   concurrent borrowers of the last copy cannot both succeed.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError

from config import (
    DEFAULT_MAX_BORROW_LIMIT, FINE_PER_DAY, LOAN_PERIOD_DAYS, RENEWAL_DAYS,
    RESERVATION_HOLD_DAYS, RESERVATION_PICKUP_DAYS,
)
from errors import ConflictError, LimitExceededError, NotFoundError, UnavailableError, ValidationError
from models import Book, BookCopy, Borrowing, Fine, Genre, LibraryUser, Reservation, User, transaction

logger = logging.getLogger(__name__)

# Columns a librarian may change through update_book
BOOK_UPDATABLE_FIELDS = (
    'title', 'author', 'isbn', 'publisher', 'published_year', 'genre',
    'description', 'cover_image_url', 'location', 'call_number', 'status',
)
BOOK_CREATE_FIELDS = BOOK_UPDATABLE_FIELDS + ('total_copies',)

SETTABLE_COPY_STATUSES = ('available', 'maintenance', 'lost')

NO_COPIES_AVAILABLE = 'No available copies of this book'


def _to_bool(value):
    if value is None or isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes')


@dataclass
class BookFilter:
    """Catalog filter; every field maps to one fixed predicate."""
    search: Optional[str] = None
    genre: Optional[str] = None
    status: Optional[str] = None
    available: Optional[bool] = None

    @classmethod
    def from_args(cls, args):
        return cls(
            search=(args.get('search') or '').strip() or None,
            genre=args.get('genre') or None,
            status=args.get('status') or None,
            available=_to_bool(args.get('available')),
        )

    def apply(self, query):
        if self.search:
            pattern = f'%{self.search}%'
            query = query.filter(or_(
                Book.title.ilike(pattern),
                Book.author.ilike(pattern),
                Book.isbn.ilike(pattern),
            ))
        if self.genre:
            query = query.filter(Book.genre == self.genre)
        if self.status:
            query = query.filter(Book.status == self.status)
        if self.available is True:
            query = query.filter(Book.available_copies > 0)
        elif self.available is False:
            query = query.filter(Book.available_copies == 0)
        return query


def compute_fine(due_date, returned_at):
    """FINE_PER_DAY for every started day past `due_date`."""
    if returned_at <= due_date:
        return Decimal('0.00')
    overdue_days = math.ceil((returned_at - due_date).total_seconds() / 86400)
    return (FINE_PER_DAY * overdue_days).quantize(Decimal('0.01'))


def make_barcode(book, copy_number):
    prefix = book.isbn or f'LIB{book.id}'
    return f'{prefix}-{copy_number:03d}'


def _positive_int(value, field):
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if number < 1:
        raise ValidationError(f'{field} must be at least 1')
    return number


class LibraryService:

    def __init__(self, db, notifier, clock=datetime.now):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    @property
    def session(self):
        return self.db.session

    # -------------------------------------------------------------- catalog

    def list_books(self, book_filter=None, page=1, limit=20):
        query = (book_filter or BookFilter()).apply(Book.query)
        return query.order_by(Book.title, Book.id).paginate(page=page, per_page=limit, error_out=False)

    def get_book(self, book_id, with_copies=True):
        book = self.session.get(Book, book_id)
        if book is None:
            raise NotFoundError('Book not found')
        data = book.to_dict()
        if with_copies:
            data['copies'] = [c.to_dict() for c in book.copies]
        return data

    def genres(self):
        return [g.to_dict() for g in Genre.query.order_by(Genre.name).all()]

    def add_book(self, fields):
        unknown = set(fields) - set(BOOK_CREATE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        if not fields.get('title') or not fields.get('author'):
            raise ValidationError('Title and author are required')
        total_copies = _positive_int(fields.get('total_copies', 1), 'total_copies')

        isbn = fields.get('isbn') or None
        if isbn and Book.query.filter_by(isbn=isbn).first():
            raise ConflictError('A book with this ISBN already exists')

        with transaction(self.session) as session:
            values = {k: v for k, v in fields.items() if k in BOOK_UPDATABLE_FIELDS}
            values['isbn'] = isbn
            book = Book(total_copies=total_copies, **values)
            session.add(book)
            session.flush()
            for number in range(1, total_copies + 1):
                session.add(BookCopy(
                    book_id=book.id,
                    copy_number=number,
                    barcode=make_barcode(book, number),
                    status='available'
                ))

        logger.info('Added book #%s "%s" with %s copies', book.id, book.title, total_copies)
        return book

    def update_book(self, book_id, fields):
        unknown = set(fields) - set(BOOK_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")
        if not fields:
            raise ValidationError('No fields to update')
        for required in ('title', 'author'):
            if required in fields and not fields[required]:
                raise ValidationError('Title and author are required')

        book = self.session.get(Book, book_id)
        if book is None:
            raise NotFoundError('Book not found')

        fields = dict(fields)
        if 'isbn' in fields:
            fields['isbn'] = fields['isbn'] or None
        if fields.get('isbn'):
            clash = Book.query.filter(Book.isbn == fields['isbn'], Book.id != book_id).first()
            if clash:
                raise ConflictError('A book with this ISBN already exists')

        for name in BOOK_UPDATABLE_FIELDS:
            if name in fields:
                setattr(book, name, fields[name])
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError('A book with this ISBN already exists')
        return book

    def delete_book(self, book_id):
        with transaction(self.session) as session:
            book = session.query(Book).filter_by(id=book_id).with_for_update().first()
            if book is None:
                raise NotFoundError('Book not found')
            borrowed = (
                session.query(func.count(BookCopy.id))
                .filter(BookCopy.book_id == book_id, BookCopy.status == 'borrowed')
                .scalar()
            )
            if borrowed:
                raise ConflictError('Cannot delete book with active borrowings')
            history = (
                session.query(func.count(Borrowing.id))
                .join(BookCopy, Borrowing.book_copy_id == BookCopy.id)
                .filter(BookCopy.book_id == book_id)
                .scalar()
            )
            if history:
                raise ConflictError('Cannot delete book with borrowing history')
            session.delete(book)
        logger.info('Deleted book #%s', book_id)

    def set_copy_status(self, copy_id, status):
        if status not in SETTABLE_COPY_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(SETTABLE_COPY_STATUSES)}")
        with transaction(self.session) as session:
            copy = session.query(BookCopy).filter_by(id=copy_id).with_for_update().first()
            if copy is None:
                raise NotFoundError('Book copy not found')
            if copy.status == 'borrowed':
                raise ConflictError('Copy is currently borrowed')
            copy.status = status
        return copy

    # --------------------------------------------------------- library users

    def _library_user(self, session, user_id, lock=False, message='User not found in library system'):
        query = session.query(LibraryUser).filter_by(user_id=user_id)
        if lock:
            query = query.with_for_update()
        library_user = query.first()
        if library_user is None:
            raise NotFoundError(message)
        return library_user

    def create_library_user(self, user_id, card_number=None, max_borrow_limit=None):
        user_id = _positive_int(user_id, 'user_id')
        user = self.session.get(User, user_id)
        if user is None:
            raise NotFoundError('User not found')
        if LibraryUser.query.filter_by(user_id=user_id).first():
            raise ConflictError('User already has a library account')

        card_number = card_number or f'LIB{user_id:06d}'
        if LibraryUser.query.filter_by(library_card_number=card_number).first():
            raise ConflictError('Library card number already in use')
        limit = DEFAULT_MAX_BORROW_LIMIT if max_borrow_limit is None else _positive_int(
            max_borrow_limit, 'max_borrow_limit')

        library_user = LibraryUser(user_id=user_id, library_card_number=card_number, max_borrow_limit=limit)
        self.session.add(library_user)
        self.session.commit()
        return library_user

    def library_users(self):
        return [lu.to_dict() for lu in LibraryUser.query.order_by(LibraryUser.id).all()]

    # ------------------------------------------------------------ borrowing

    def _checkout(self, session, library_user, book_id, now):
        active = (
            session.query(func.count(Borrowing.id))
            .filter(Borrowing.user_id == library_user.id, Borrowing.status == 'borrowed')
            .scalar()
        )
        if active >= library_user.max_borrow_limit:
            raise LimitExceededError(f'Borrowing limit of {library_user.max_borrow_limit} books reached')

        if session.get(Book, book_id) is None:
            raise NotFoundError('Book not found')

        copy = self._pick_copy(session, book_id)
        if copy is None:
            raise UnavailableError(NO_COPIES_AVAILABLE)

        claimed = (
            session.query(BookCopy)
            .filter(BookCopy.id == copy.id, BookCopy.status == 'available')
            .update({BookCopy.status: 'borrowed'}, synchronize_session='evaluate')
        )
        if claimed != 1:
            raise UnavailableError(NO_COPIES_AVAILABLE)

        borrowing = Borrowing(
            user_id=library_user.id,
            book_copy_id=copy.id,
            borrowed_at=now,
            due_date=now + timedelta(days=LOAN_PERIOD_DAYS),
            status='borrowed',
            fine_amount=Decimal('0.00'),
            renewal_count=0
        )
        session.add(borrowing)

        # a patron picking up a held book closes the hold
        (
            session.query(Reservation)
            .filter_by(user_id=library_user.id, book_id=book_id, status='fulfilled')
            .update({Reservation.status: 'collected'}, synchronize_session='evaluate')
        )
        return borrowing

    def _pick_copy(self, session, book_id):
        """Lock the first available copy, skipping rows another checkout holds."""
        return (
            session.query(BookCopy)
            .filter_by(book_id=book_id, status='available')
            .order_by(BookCopy.copy_number)
            .with_for_update(skip_locked=True)
            .first()
        )

    def borrow(self, user_id, book_id):
        """Self-service checkout of any available copy of `book_id`."""
        if not book_id:
            raise ValidationError('Book ID is required')
        now = self.clock()
        with transaction(self.session) as session:
            library_user = self._library_user(session, user_id, lock=True)
            borrowing = self._checkout(session, library_user, book_id, now)
        logger.info('Borrowing #%s: library user %s borrowed book %s', borrowing.id, library_user.id, book_id)
        return borrowing

    def issue(self, user_id, book_id):
        """Librarian checkout on behalf of `user_id`; same rules as borrow."""
        if not user_id or not book_id:
            raise ValidationError('User ID and book ID are required')
        now = self.clock()
        with transaction(self.session) as session:
            library_user = self._library_user(session, user_id, lock=True, message='Library user not found')
            borrowing = self._checkout(session, library_user, book_id, now)
        logger.info('Borrowing #%s: book %s issued to library user %s', borrowing.id, book_id, library_user.id)
        return borrowing

    def return_borrowing(self, borrowing_id, acting_user_id=None):
        """Close a borrowing, free the copy and charge the late fine.

        With `acting_user_id` the borrowing must belong to that user
        (self-service); without it any borrowing may be returned (librarian).
        """
        if not borrowing_id:
            raise ValidationError('Borrowing ID is required')
        now = self.clock()
        with transaction(self.session) as session:
            borrowing = session.query(Borrowing).filter_by(id=borrowing_id).with_for_update().first()
            if borrowing is None:
                raise NotFoundError('Borrowing record not found')
            if acting_user_id is not None:
                library_user = self._library_user(session, acting_user_id)
                if borrowing.user_id != library_user.id:
                    raise NotFoundError('Borrowing record not found')
            if borrowing.status != 'borrowed':
                raise ConflictError('This book has already been returned')

            fine = compute_fine(borrowing.due_date, now)
            borrowing.status = 'returned'
            borrowing.returned_at = now
            borrowing.fine_amount = fine
            borrowing.copy.status = 'available'
            if fine > 0:
                session.add(Fine(borrowing_id=borrowing.id, amount=fine, reason='Late return', created_at=now))

        logger.info('Borrowing #%s returned, fine %s', borrowing_id, fine)
        return borrowing

    def renew(self, borrowing_id):
        with transaction(self.session) as session:
            borrowing = session.query(Borrowing).filter_by(id=borrowing_id).with_for_update().first()
            if borrowing is None:
                raise NotFoundError('Borrowing record not found')
            if borrowing.status != 'borrowed':
                raise ConflictError('This book is not currently borrowed')
            borrowing.due_date = borrowing.due_date + timedelta(days=RENEWAL_DAYS)
            borrowing.renewal_count = (borrowing.renewal_count or 0) + 1
        return borrowing

    def _borrowing_dict(self, borrowing):
        data = borrowing.to_dict()
        book = borrowing.copy.book
        user = borrowing.library_user.user
        data.update({
            'author': book.author,
            'isbn': book.isbn,
            'cover_image_url': book.cover_image_url,
            'username': user.username if user else None,
            'overdue': borrowing.status == 'borrowed' and borrowing.due_date < self.clock(),
        })
        return data

    def user_borrowings(self, user_id):
        library_user = self._library_user(self.session, user_id)
        borrowings = (
            Borrowing.query.filter_by(user_id=library_user.id)
            .order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc())
            .all()
        )
        return [self._borrowing_dict(b) for b in borrowings]

    def user_history(self, user_id):
        library_user = self._library_user(self.session, user_id, message='Library user not found')
        borrowings = (
            Borrowing.query.filter_by(user_id=library_user.id)
            .order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc())
            .all()
        )
        return [self._borrowing_dict(b) for b in borrowings]

    def admin_borrowings(self, status=None, user_id=None, page=1, limit=20):
        query = Borrowing.query
        if status:
            query = query.filter(Borrowing.status == status)
        if user_id:
            query = query.join(LibraryUser, Borrowing.user_id == LibraryUser.id).filter(LibraryUser.user_id == user_id)
        page_obj = query.order_by(Borrowing.borrowed_at.desc(), Borrowing.id.desc()).paginate(
            page=page, per_page=limit, error_out=False
        )
        return page_obj, [self._borrowing_dict(b) for b in page_obj.items]

    def search_active_borrowings(self, q):
        if not q:
            return []
        pattern = f'%{q}%'
        rows = (
            self.session.query(Borrowing, Book, User)
            .join(BookCopy, Borrowing.book_copy_id == BookCopy.id)
            .join(Book, BookCopy.book_id == Book.id)
            .join(LibraryUser, Borrowing.user_id == LibraryUser.id)
            .join(User, LibraryUser.user_id == User.id)
            .filter(
                Borrowing.status == 'borrowed',
                or_(Book.title.ilike(pattern), Book.isbn == q, User.username.ilike(pattern))
            )
            .order_by(Borrowing.due_date)
            .limit(10)
            .all()
        )
        return [
            {
                'borrowing_id': borrowing.id,
                'title': book.title,
                'username': user.username,
                'due_date': borrowing.due_date.isoformat(),
            }
            for borrowing, book, user in rows
        ]

    def stats(self):
        now = self.clock()
        return {
            'total_books': Book.query.count(),
            'total_copies': BookCopy.query.count(),
            'available_copies': BookCopy.query.filter_by(status='available').count(),
            'active_borrowings': Borrowing.query.filter_by(status='borrowed').count(),
            'overdue_books': Borrowing.query.filter(
                Borrowing.status == 'borrowed', Borrowing.due_date < now
            ).count(),
            'total_users': LibraryUser.query.count(),
            'active_reservations': Reservation.query.filter_by(status='active').count(),
            'unpaid_fines': float(
                self.session.query(func.coalesce(func.sum(Fine.amount), 0)).filter(Fine.paid.is_(False)).scalar()
            ),
        }

    def send_return_reminders(self):
        """Queue reminders for borrowings due tomorrow and for overdue ones."""
        now = self.clock()
        tomorrow = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        day_after = tomorrow + timedelta(days=1)

        due_soon = Borrowing.query.filter(
            Borrowing.status == 'borrowed',
            Borrowing.due_date >= tomorrow,
            Borrowing.due_date < day_after
        ).all()
        overdue = Borrowing.query.filter(
            Borrowing.status == 'borrowed',
            Borrowing.due_date < now
        ).all()

        queued = 0
        for borrowing, is_overdue in [(b, False) for b in due_soon] + [(b, True) for b in overdue]:
            user = borrowing.library_user.user
            entry = self.notifier.notify('return_reminder', user.email, {
                'username': user.username,
                'book_title': borrowing.copy.book.title,
                'due_date': borrowing.due_date.strftime('%Y-%m-%d'),
                'overdue': is_overdue,
            })
            if entry is not None:
                queued += 1
        logger.info('Queued %s return reminders', queued)
        return queued

    # --------------------------------------------------------- reservations

    def reserve(self, user_id, book_id):
        if not book_id:
            raise ValidationError('Book ID is required')
        now = self.clock()
        with transaction(self.session) as session:
            library_user = self._library_user(session, user_id, lock=True)
            if session.get(Book, book_id) is None:
                raise NotFoundError('Book not found')

            available = (
                session.query(func.count(BookCopy.id))
                .filter(BookCopy.book_id == book_id, BookCopy.status == 'available')
                .scalar()
            )
            if available:
                raise ConflictError('Book is available for borrowing, no need to reserve')

            existing = session.query(Reservation).filter_by(
                user_id=library_user.id, book_id=book_id, status='active'
            ).first()
            if existing is not None:
                raise ConflictError('You already have an active reservation for this book')

            reservation = Reservation(
                user_id=library_user.id,
                book_id=book_id,
                reserved_at=now,
                expires_at=now + timedelta(days=RESERVATION_HOLD_DAYS),
                status='active'
            )
            session.add(reservation)
        return reservation

    def user_reservations(self, user_id):
        library_user = self._library_user(self.session, user_id)
        reservations = (
            Reservation.query.filter_by(user_id=library_user.id)
            .order_by(Reservation.reserved_at.desc(), Reservation.id.desc())
            .all()
        )
        return [r.to_dict() for r in reservations]

    def cancel_reservation(self, reservation_id, user_id):
        with transaction(self.session) as session:
            library_user = self._library_user(session, user_id)
            reservation = session.query(Reservation).filter_by(
                id=reservation_id, user_id=library_user.id
            ).with_for_update().first()
            if reservation is None:
                raise NotFoundError('Reservation not found')
            if reservation.status != 'active':
                raise ConflictError('Only active reservations can be cancelled')
            reservation.status = 'cancelled'
        return reservation

    def active_reservations(self):
        reservations = (
            Reservation.query.filter_by(status='active')
            .order_by(Reservation.reserved_at, Reservation.id)
            .all()
        )
        result = []
        for reservation in reservations:
            data = reservation.to_dict()
            user = reservation.library_user.user
            data['username'] = user.username
            data['email'] = user.email
            result.append(data)
        return result

    def fulfill(self, reservation_id, actor_id=None):
        """Mark an active reservation ready for pickup and notify the patron.

        No copy is checked out here; the pickup goes through `issue`.
        """
        now = self.clock()
        with transaction(self.session) as session:
            reservation = session.query(Reservation).filter_by(
                id=reservation_id, status='active'
            ).with_for_update().first()
            if reservation is None:
                raise NotFoundError('Active reservation not found')
            reservation.status = 'fulfilled'
            reservation.expires_at = now + timedelta(days=RESERVATION_PICKUP_DAYS)

        user = reservation.library_user.user
        book = reservation.book
        self.notifier.notify('reservation_notification', user.email, {
            'username': user.username,
            'book_title': book.title,
            'book_author': book.author,
            'reservation_id': reservation.id,
            'expires_at': reservation.expires_at.strftime('%Y-%m-%d %H:%M'),
        }, sent_by=actor_id)
        logger.info('Reservation #%s fulfilled', reservation_id)
        return reservation

    def expire_reservations(self):
        """Active or fulfilled reservations past expires_at become expired."""
        now = self.clock()
        with transaction(self.session) as session:
            expired = (
                session.query(Reservation)
                .filter(Reservation.status.in_(('active', 'fulfilled')), Reservation.expires_at < now)
                .update({Reservation.status: 'expired'}, synchronize_session=False)
            )
        if expired:
            logger.info('Expired %s reservations', expired)
        return expired
