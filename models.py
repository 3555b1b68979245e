"""models.py

SQLAlchemy models shared by the attendance and library services:
 - User / LoginAttempt: credentialed principals and the login audit used for rate limiting.
 - Student, Subject, Enrollment, ScanSession, AttendanceRecord: attendance tracking.
 - Genre, Book, BookCopy, LibraryUser, Borrowing, Fine, Reservation: library management.
 - EmailHistory, EmailPreference: notification audit trail and opt-in settings.

Helpers:
 - transaction(): commit on success, roll back on any exception.

Copy availability is derived from BookCopy.status; Book.available_copies is a
column_property counting available copies, never a stored counter.
"""

from contextlib import contextmanager
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import func, select
from sqlalchemy.orm import column_property

db = SQLAlchemy()


@contextmanager
def transaction(session):
    """Scoped unit of work: commit when the block exits, rollback if it raises."""
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def _iso(value):
    return value.isoformat() if value is not None else None


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(50), unique=True, nullable=False)
    email = db.Column(db.String(100), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default='teacher')  # admin/teacher/viewer/librarian
    created_at = db.Column(db.DateTime, default=datetime.now)

    library_user = db.relationship('LibraryUser', backref='user', uselist=False, cascade='all')
    email_preferences = db.relationship('EmailPreference', backref='user', lazy=True, cascade='all')

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'created_at': _iso(self.created_at),
        }


class LoginAttempt(db.Model):
    """One row per login request; counted per IP inside the rate limit window."""
    __tablename__ = 'login_attempts'

    id = db.Column(db.Integer, primary_key=True)
    ip_address = db.Column(db.String(64), nullable=False, index=True)
    identifier = db.Column(db.String(100))
    succeeded = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.now, index=True)


# ----------------------------------------------------------------- attendance

class Student(db.Model):
    __tablename__ = 'students'

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.String(20), unique=True, nullable=False)
    first_name = db.Column(db.String(50), nullable=False)
    middle_name = db.Column(db.String(50), nullable=True)
    last_name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(100), unique=True, nullable=False)
    qr_code = db.Column(db.String(255), unique=True, nullable=False)
    section = db.Column(db.String(20), default='A')
    created_at = db.Column(db.DateTime, default=datetime.now)

    enrollments = db.relationship('Enrollment', backref='student', lazy=True, cascade='all')
    attendance_records = db.relationship('AttendanceRecord', backref='student', lazy=True, cascade='all')

    @property
    def full_name(self):
        middle = f"{self.middle_name} " if self.middle_name else ''
        return f"{self.first_name} {middle}{self.last_name}"

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'first_name': self.first_name,
            'middle_name': self.middle_name,
            'last_name': self.last_name,
            'full_name': self.full_name,
            'email': self.email,
            'qr_code': self.qr_code,
            'section': self.section,
            'created_at': _iso(self.created_at),
        }


class Subject(db.Model):
    __tablename__ = 'subjects'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now)

    enrollments = db.relationship('Enrollment', backref='subject', lazy=True, cascade='all')
    sessions = db.relationship('ScanSession', backref='subject', lazy=True, cascade='all')
    attendance_records = db.relationship('AttendanceRecord', backref='subject', lazy=True, cascade='all')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'description': self.description,
            'created_at': _iso(self.created_at),
        }


class Enrollment(db.Model):
    __tablename__ = 'student_subjects'
    __table_args__ = (db.UniqueConstraint('student_id', 'subject_id', name='uq_student_subject'),)

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id', ondelete='CASCADE'), nullable=False)
    enrollment_date = db.Column(db.Date, default=lambda: datetime.now().date())
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'subject_id': self.subject_id,
            'enrollment_date': _iso(self.enrollment_date),
            'is_active': self.is_active,
            'created_at': _iso(self.created_at),
        }


class ScanSession(db.Model):
    """A scanning window for one subject. At most one active per subject."""
    __tablename__ = 'sessions'

    id = db.Column(db.Integer, primary_key=True)
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id', ondelete='CASCADE'), nullable=False, index=True)
    start_time = db.Column(db.DateTime, default=datetime.now)
    end_time = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'subject_id': self.subject_id,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'is_active': self.is_active,
        }


class AttendanceRecord(db.Model):
    __tablename__ = 'attendance_records'
    __table_args__ = (db.UniqueConstraint('student_id', 'subject_id', 'date', name='uq_attendance_per_day'),)

    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    subject_id = db.Column(db.Integer, db.ForeignKey('subjects.id', ondelete='CASCADE'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    time_in = db.Column(db.DateTime, default=datetime.now)
    status = db.Column(db.String(20), default='present', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'subject_id': self.subject_id,
            'date': _iso(self.date),
            'time_in': _iso(self.time_in),
            'status': self.status,
        }


# -------------------------------------------------------------------- library

class Genre(db.Model):
    __tablename__ = 'genres'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'description': self.description}


class Book(db.Model):
    """Catalog title. `total_copies` mirrors the number of BookCopy rows."""
    __tablename__ = 'books'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(250), nullable=False)
    author = db.Column(db.String(200), nullable=False)
    isbn = db.Column(db.String(20), unique=True, nullable=True)
    publisher = db.Column(db.String(200), nullable=True)
    published_year = db.Column(db.Integer, nullable=True)
    genre = db.Column(db.String(80), nullable=True)
    description = db.Column(db.Text, nullable=True)
    total_copies = db.Column(db.Integer, default=1, nullable=False)
    cover_image_url = db.Column(db.String(255), nullable=True)
    location = db.Column(db.String(100), nullable=True)
    call_number = db.Column(db.String(50), nullable=True)
    status = db.Column(db.String(20), default='active', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    copies = db.relationship('BookCopy', backref='book', lazy=True, cascade='all',
                             order_by='BookCopy.copy_number')
    reservations = db.relationship('Reservation', backref='book', lazy=True, cascade='all')

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'author': self.author,
            'isbn': self.isbn,
            'publisher': self.publisher,
            'published_year': self.published_year,
            'genre': self.genre,
            'description': self.description,
            'total_copies': self.total_copies,
            'available_copies': self.available_copies,
            'cover_image_url': self.cover_image_url,
            'location': self.location,
            'call_number': self.call_number,
            'status': self.status,
        }


class BookCopy(db.Model):
    __tablename__ = 'book_copies'
    __table_args__ = (db.UniqueConstraint('book_id', 'copy_number', name='uq_book_copy_number'),)

    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id', ondelete='CASCADE'), nullable=False, index=True)
    copy_number = db.Column(db.Integer, nullable=False)
    barcode = db.Column(db.String(50), unique=True, nullable=False)
    status = db.Column(db.String(20), default='available', nullable=False, index=True)

    borrowings = db.relationship('Borrowing', backref='copy', lazy=True, cascade='all')

    def to_dict(self):
        return {
            'id': self.id,
            'book_id': self.book_id,
            'copy_number': self.copy_number,
            'barcode': self.barcode,
            'status': self.status,
        }


Book.available_copies = column_property(
    select(func.count(BookCopy.id))
    .where(BookCopy.book_id == Book.id, BookCopy.status == 'available')
    .correlate_except(BookCopy)
    .scalar_subquery()
)


class LibraryUser(db.Model):
    """Library identity of a User (1:1) holding card number and borrow limit."""
    __tablename__ = 'library_users'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), unique=True, nullable=False)
    library_card_number = db.Column(db.String(50), unique=True, nullable=False)
    max_borrow_limit = db.Column(db.Integer, default=5, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)

    borrowings = db.relationship('Borrowing', backref='library_user', lazy=True, cascade='all')
    reservations = db.relationship('Reservation', backref='library_user', lazy=True, cascade='all')

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'library_card_number': self.library_card_number,
            'max_borrow_limit': self.max_borrow_limit,
            'username': self.user.username if self.user else None,
            'email': self.user.email if self.user else None,
        }


class Borrowing(db.Model):
    __tablename__ = 'borrowings'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('library_users.id', ondelete='CASCADE'), nullable=False, index=True)
    book_copy_id = db.Column(db.Integer, db.ForeignKey('book_copies.id', ondelete='CASCADE'), nullable=False)
    borrowed_at = db.Column(db.DateTime, default=datetime.now)
    due_date = db.Column(db.DateTime, nullable=False)
    returned_at = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), default='borrowed', nullable=False, index=True)  # borrowed/returned
    fine_amount = db.Column(db.Numeric(10, 2), default=0, nullable=False)
    renewal_count = db.Column(db.Integer, default=0, nullable=False)

    fines = db.relationship('Fine', backref='borrowing', lazy=True, cascade='all')

    def to_dict(self):
        book = self.copy.book if self.copy else None
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_copy_id': self.book_copy_id,
            'copy_number': self.copy.copy_number if self.copy else None,
            'book_id': book.id if book else None,
            'title': book.title if book else None,
            'borrowed_at': _iso(self.borrowed_at),
            'due_date': _iso(self.due_date),
            'returned_at': _iso(self.returned_at),
            'status': self.status,
            'fine_amount': float(self.fine_amount or 0),
            'renewal_count': self.renewal_count,
        }


class Fine(db.Model):
    __tablename__ = 'fines'

    id = db.Column(db.Integer, primary_key=True)
    borrowing_id = db.Column(db.Integer, db.ForeignKey('borrowings.id', ondelete='CASCADE'), nullable=False)
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    reason = db.Column(db.String(100), default='Late return')
    paid = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'borrowing_id': self.borrowing_id,
            'amount': float(self.amount),
            'reason': self.reason,
            'paid': self.paid,
        }


class Reservation(db.Model):
    __tablename__ = 'reservations'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('library_users.id', ondelete='CASCADE'), nullable=False, index=True)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id', ondelete='CASCADE'), nullable=False, index=True)
    reserved_at = db.Column(db.DateTime, default=datetime.now)
    expires_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(db.String(20), default='active', nullable=False)  # active/fulfilled/collected/expired/cancelled

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'book_id': self.book_id,
            'title': self.book.title if self.book else None,
            'reserved_at': _iso(self.reserved_at),
            'expires_at': _iso(self.expires_at),
            'status': self.status,
        }


# --------------------------------------------------------------- notification

class EmailHistory(db.Model):
    """Audit row for every notification; doubles as the dispatch queue."""
    __tablename__ = 'email_history'

    id = db.Column(db.Integer, primary_key=True)
    recipient_email = db.Column(db.String(100), nullable=False)
    email_type = db.Column(db.String(50), nullable=False, index=True)
    subject = db.Column(db.String(200), nullable=False)
    message_id = db.Column(db.String(255), nullable=True)
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)  # pending/sent/failed
    sent_by = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    # `metadata` is reserved on declarative classes
    payload = db.Column('metadata', db.JSON, nullable=True)
    attempts = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.now, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'id': self.id,
            'recipient_email': self.recipient_email,
            'email_type': self.email_type,
            'subject': self.subject,
            'message_id': self.message_id,
            'status': self.status,
            'sent_by': self.sent_by,
            'metadata': self.payload,
            'attempts': self.attempts,
            'last_error': self.last_error,
            'created_at': _iso(self.created_at),
            'sent_at': _iso(self.sent_at),
        }


class EmailPreference(db.Model):
    __tablename__ = 'email_preferences'
    __table_args__ = (db.UniqueConstraint('user_id', 'email_type', name='uq_user_email_type'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    email_type = db.Column(db.String(50), nullable=False)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    frequency = db.Column(db.String(20), default='daily', nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.now)
    updated_at = db.Column(db.DateTime, default=datetime.now, onupdate=datetime.now)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'email_type': self.email_type,
            'enabled': self.enabled,
            'frequency': self.frequency,
            'updated_at': _iso(self.updated_at),
        }
