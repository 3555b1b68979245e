"""decorators.py

Shared route decorators.

requires(action): the single authorization gate for protected routes.
 - no/invalid/expired bearer token -> 401
 - role not allowed for `action` in PERMISSIONS -> 403
 - otherwise the Principal is stored in `g.current_user` and the view runs.

`requires()` without an action only demands an authenticated caller.
"""

from functools import wraps

from flask import g, request

from auth_service import authenticate
from errors import AuthorizationError

ADMIN = 'admin'
TEACHER = 'teacher'
VIEWER = 'viewer'
LIBRARIAN = 'librarian'

STAFF = frozenset({ADMIN, TEACHER})
READERS = frozenset({ADMIN, TEACHER, VIEWER})
LIBRARY_STAFF = frozenset({LIBRARIAN, ADMIN})

# action -> roles allowed to perform it
PERMISSIONS = {
    # accounts
    'users.register': frozenset({ADMIN}),
    'users.manage': frozenset({ADMIN}),
    # scanning sessions and attendance
    'sessions.manage': STAFF,
    'sessions.view': READERS,
    'attendance.scan': STAFF,
    'attendance.view': READERS,
    'attendance.edit': STAFF,
    'attendance.delete': frozenset({ADMIN}),
    # directory
    'students.view': READERS,
    'students.edit': STAFF,
    'students.lookup': STAFF,
    'students.delete': frozenset({ADMIN}),
    'subjects.view': READERS,
    'subjects.edit': STAFF,
    'subjects.delete': frozenset({ADMIN}),
    'enrollments.view': STAFF,
    'enrollments.manage': STAFF,
    'enrollments.delete': frozenset({ADMIN}),
    # library back office
    'library.manage': LIBRARY_STAFF,
    # email
    'email.admin': frozenset({ADMIN}),
    'email.report': STAFF,
}


def is_allowed(role, action):
    return role in PERMISSIONS[action]


def authorize(principal, action):
    if not is_allowed(principal.role, action):
        raise AuthorizationError('Insufficient permissions')


def requires(action=None):
    if action is not None and action not in PERMISSIONS:
        raise KeyError(f'Unknown permission: {action}')

    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            principal = authenticate(request.headers.get('Authorization'))
            if action is not None:
                authorize(principal, action)
            g.current_user = principal
            return f(*args, **kwargs)
        return decorated_function
    return decorator
