"""routes/main.py

Public endpoints: service banner and health check (database ping).
"""

from flask import Blueprint, jsonify
from sqlalchemy import text

from models import db

main = Blueprint('main', __name__)


@main.route('/')
def index():
    return jsonify({
        'success': True,
        'message': 'Attendance & Library API',
        'endpoints': ['/auth', '/scan', '/students', '/subjects', '/enrollments',
                      '/library', '/email', '/email-management', '/health'],
    })


@main.route('/health')
def health():
    try:
        db.session.execute(text('SELECT 1'))
        database = 'ok'
    except Exception as e:
        db.session.rollback()
        database = f'error: {e}'
    status_code = 200 if database == 'ok' else 503
    return jsonify({'success': database == 'ok', 'status': 'ok' if status_code == 200 else 'degraded',
                    'database': database}), status_code
