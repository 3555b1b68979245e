"""routes/email_management.py

Email audit and opt-in settings:
 - history (admin): filter by type / status / recipient, paginated
 - stats (admin): per-type sent/failed counts over the last N days
 - preferences: the caller's own settings (get, upsert one, upsert many)
"""

from flask import Blueprint, current_app, g, request

import email_service
from decorators import requires
from errors import ValidationError, page_meta, success_response
from models import db, transaction

email_management = Blueprint('email_management', __name__)


@email_management.route('/history', methods=['GET'])
@requires('email.admin')
def history():
    page = max(request.args.get('page', 1, type=int) or 1, 1)
    limit = min(max(request.args.get('limit', 20, type=int) or 20, 1), 100)
    result = email_service.email_history(
        email_type=request.args.get('email_type'),
        status=request.args.get('status'),
        recipient=request.args.get('recipient_email'),
        page=page,
        limit=limit
    )
    return success_response([e.to_dict() for e in result.items], pagination=page_meta(result))


@email_management.route('/stats', methods=['GET'])
@requires('email.admin')
def stats():
    days = request.args.get('days', 30, type=int) or 30
    now = current_app.extensions['notifier'].clock()
    return success_response({'days': days, 'total_by_type': email_service.email_stats(days, now=now)})


@email_management.route('/preferences', methods=['GET'])
@requires()
def get_preferences():
    return success_response([p.to_dict() for p in email_service.get_preferences(g.current_user.id)])


@email_management.route('/preferences', methods=['PUT'])
@requires()
def update_preference():
    data = request.get_json(silent=True) or {}
    with transaction(db.session):
        pref = email_service.upsert_preference(
            g.current_user.id, data.get('email_type'), data.get('enabled'), data.get('frequency')
        )
    return success_response(pref.to_dict())


@email_management.route('/preferences/bulk', methods=['PUT'])
@requires()
def update_preferences_bulk():
    preferences = (request.get_json(silent=True) or {}).get('preferences')
    if not isinstance(preferences, list):
        raise ValidationError('Preferences must be an array')

    saved = []
    with transaction(db.session):
        for item in preferences:
            if not isinstance(item, dict) or not item.get('email_type'):
                continue
            saved.append(email_service.upsert_preference(
                g.current_user.id, item['email_type'], item.get('enabled'), item.get('frequency')
            ))
    return success_response([p.to_dict() for p in saved])
