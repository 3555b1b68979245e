"""errors.py

Application error taxonomy and the JSON response envelope.

Services raise one of the AppError subclasses; `register_error_handlers` turns
them into `{"success": false, "error": <message>}` responses. Anything else is
logged with its traceback and answered with an opaque 500.
"""

import logging

from flask import jsonify
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AppError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None, data=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.data = data


class ValidationError(AppError):
    status_code = 400
    default_message = 'Invalid request'


class AuthenticationError(AppError):
    status_code = 401
    default_message = 'Authentication required'


class AuthorizationError(AppError):
    status_code = 403
    default_message = 'Insufficient permissions'


class NotFoundError(AppError):
    status_code = 404
    default_message = 'Not found'


class ConflictError(AppError):
    status_code = 409
    default_message = 'Conflict'


class UnavailableError(AppError):
    status_code = 400
    default_message = 'Not available'


class LimitExceededError(UnavailableError):
    default_message = 'Borrowing limit reached'


class RateLimitError(AppError):
    status_code = 429
    default_message = 'Too many login attempts, please try again later'


class InternalError(AppError):
    pass


def error_response(message, status_code, data=None):
    body = {'success': False, 'error': message}
    if data is not None:
        body['data'] = data
    return jsonify(body), status_code


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(e):
        if e.status_code >= 500:
            logger.error('Internal error: %s', e.message)
        return error_response(e.message, e.status_code, e.data)

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        message = 'Route not found' if e.code == 404 else e.description
        return error_response(message, e.code)

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception('Unhandled exception: %s', e)
        return error_response('Internal server error', 500)


def success_response(data=None, message=None, status_code=200, pagination=None):
    body = {'success': True}
    if data is not None:
        body['data'] = data
    if message:
        body['message'] = message
    if pagination is not None:
        body['pagination'] = pagination
    return jsonify(body), status_code


def page_meta(page):
    """Pagination block for a Flask-SQLAlchemy Pagination object."""
    return {
        'page': page.page,
        'limit': page.per_page,
        'total': page.total,
        'totalPages': page.pages,
    }
