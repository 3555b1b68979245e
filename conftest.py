from datetime import datetime, timedelta

import pytest

from app import create_app
from auth_service import hash_password, issue_token
from models import Enrollment, LibraryUser, Student, Subject, User, db

PASSWORD = 'password123'

TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test-secret-key',
    'SQLALCHEMY_DATABASE_URI': 'sqlite://',
    'SCHEDULER_ENABLED': False,
    'NOTIFICATION_INLINE': True,
    'NOTIFICATION_MAX_ATTEMPTS': 3,
    'LOGIN_RATE_LIMIT_ENABLED': False,
    'MAIL_SUPPRESS_SEND': True,
    'MAIL_DEFAULT_SENDER': 'noreply@school.test',
}


class FakeClock:
    """Callable clock handed to the services; tests move it forward explicitly."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 9, 0, 0))


@pytest.fixture
def config_overrides():
    return {}


@pytest.fixture
def app(clock, config_overrides):
    app = create_app(dict(TEST_CONFIG, **config_overrides), clock=clock)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(username, role, password=PASSWORD):
    user = User(
        username=username,
        email=f'{username}@school.test',
        password_hash=hash_password(password),
        role=role
    )
    db.session.add(user)
    db.session.commit()
    return user


def auth_header(user):
    return {'Authorization': f'Bearer {issue_token(user)}'}


@pytest.fixture
def users(app):
    return {role: make_user(role, role) for role in ('admin', 'teacher', 'viewer', 'librarian')}


@pytest.fixture
def headers(users):
    return {role: auth_header(user) for role, user in users.items()}


@pytest.fixture
def patron(app):
    """A user with a library account (limit 5) and its auth header."""
    user = make_user('reader', 'viewer')
    db.session.add(LibraryUser(user_id=user.id, library_card_number='CARD-0001', max_borrow_limit=5))
    db.session.commit()
    return user, auth_header(user)


@pytest.fixture
def other_patron(app):
    user = make_user('reader2', 'viewer')
    db.session.add(LibraryUser(user_id=user.id, library_card_number='CARD-0002', max_borrow_limit=5))
    db.session.commit()
    return user, auth_header(user)


@pytest.fixture
def library(app):
    return app.extensions['library']


@pytest.fixture
def book_1984(library):
    return library.add_book({
        'title': '1984',
        'author': 'George Orwell',
        'isbn': '9780451524935',
        'genre': 'Fiction',
        'total_copies': 4,
    })


@pytest.fixture
def math101(app):
    subject = Subject(name='Mathematics 101', code='MATH101', description='Algebra basics')
    db.session.add(subject)
    db.session.commit()
    return subject


@pytest.fixture
def john(app):
    student = Student(
        student_id='2024-0001',
        first_name='John',
        last_name='Doe',
        email='john.doe@students.test',
        qr_code='qr-john-doe-001',
        section='A'
    )
    db.session.add(student)
    db.session.commit()
    return student


@pytest.fixture
def jane(app):
    student = Student(
        student_id='2024-0002',
        first_name='Jane',
        middle_name='Q',
        last_name='Smith',
        email='jane.smith@students.test',
        qr_code='qr-jane-smith-002',
        section='B'
    )
    db.session.add(student)
    db.session.commit()
    return student


@pytest.fixture
def enrolled(math101, john, jane):
    db.session.add_all([
        Enrollment(student_id=john.id, subject_id=math101.id, is_active=True),
        Enrollment(student_id=jane.id, subject_id=math101.id, is_active=True),
    ])
    db.session.commit()
    return math101
