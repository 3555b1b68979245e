"""routes/email.py

Manual email triggers. Each call goes through the notification queue and is
delivered synchronously, so the response carries the delivery outcome and the
EmailHistory row id.
"""

from flask import Blueprint, current_app, g, request

from decorators import requires
from email_service import check_email_config
from errors import InternalError, NotFoundError, ValidationError, success_response
from models import Student, Subject, db
from scan_service import parse_date

email = Blueprint('email', __name__)


def _body():
    return request.get_json(silent=True) or {}


def _reports():
    return current_app.extensions['reports']


def _notifier():
    return current_app.extensions['notifier']


def _delivered(entry, message):
    if entry.status != 'sent':
        raise InternalError(entry.last_error or 'Failed to send email')
    return success_response({'message_id': entry.message_id, 'email_id': entry.id}, message=message)


@email.route('/test', methods=['POST'])
@requires('email.admin')
def test_config():
    ok, message = check_email_config()
    if not ok:
        raise InternalError(message)
    return success_response(message=message)


@email.route('/attendance-report', methods=['POST'])
@requires('email.report')
def attendance_report():
    data = _body()
    entry = _reports().send_subject_report(
        data.get('subject_id') or data.get('subjectId'),
        data.get('date'),
        data.get('recipient_email') or data.get('recipientEmail'),
        sent_by=g.current_user.id
    )
    return _delivered(entry, 'Attendance report sent successfully')


@email.route('/daily-summary', methods=['POST'])
@requires('email.report')
def daily_summary():
    data = _body()
    entry = _reports().send_daily_summary(
        data.get('date'),
        data.get('recipient_email') or data.get('recipientEmail'),
        sent_by=g.current_user.id
    )
    return _delivered(entry, 'Daily summary sent successfully')


@email.route('/notification', methods=['POST'])
@requires('email.admin')
def notification():
    data = _body()
    recipient = data.get('recipient_email') or data.get('recipientEmail')
    if not recipient or not data.get('subject') or not data.get('message'):
        raise ValidationError('Recipient email, subject, and message are required')
    entry = _notifier().send_now('notification', recipient, {
        'subject': data['subject'],
        'message': data['message'],
    }, sent_by=g.current_user.id)
    return _delivered(entry, 'Notification sent successfully')


@email.route('/send-daily-summary', methods=['POST'])
@requires('email.admin')
def send_daily_summary():
    results = _reports().broadcast_daily_summary(_body().get('date'), immediate=True)
    return success_response(results, message='Daily summary sent to all users')


@email.route('/send-weekly-summary', methods=['POST'])
@requires('email.admin')
def send_weekly_summary():
    data = _body()
    results = _reports().broadcast_weekly_summary(data.get('end_date') or data.get('endDate'), immediate=True)
    return success_response(results, message='Weekly summary sent to all users')


@email.route('/send-subject-report', methods=['POST'])
@requires('email.report')
def send_subject_report():
    data = _body()
    results = _reports().broadcast_subject_report(
        data.get('subject_id') or data.get('subjectId'), data.get('date'), immediate=True
    )
    return success_response(results, message='Subject attendance report sent to all users')


@email.route('/trigger-daily', methods=['POST'])
@requires('email.admin')
def trigger_daily():
    results = _reports().broadcast_daily_summary(immediate=True)
    return success_response(results, message='Daily summary triggered manually')


@email.route('/trigger-weekly', methods=['POST'])
@requires('email.admin')
def trigger_weekly():
    results = _reports().broadcast_weekly_summary(immediate=True)
    return success_response(results, message='Weekly summary triggered manually')


@email.route('/test-student-attendance', methods=['POST'])
@requires('email.admin')
def test_student_attendance():
    data = _body()
    student_id = data.get('student_id') or data.get('studentId')
    subject_id = data.get('subject_id') or data.get('subjectId')
    if not student_id or not subject_id or not data.get('date'):
        raise ValidationError('Student ID, subject ID, and date are required')
    day = parse_date(data['date'])
    student = db.session.get(Student, student_id)
    if student is None:
        raise NotFoundError('Student not found')
    subject = db.session.get(Subject, subject_id)
    if subject is None:
        raise NotFoundError('Subject not found')

    now = current_app.extensions['scan'].clock()
    payload = {
        'student_name': student.full_name,
        'student_number': student.student_id,
        'section': student.section,
        'subject_name': subject.name,
        'subject_code': subject.code,
        'date': day.isoformat(),
        'time_in': now.strftime('%H:%M:%S'),
        'status': 'present',
    }
    entry = _notifier().send_now('student_attendance', student.email, payload, sent_by=g.current_user.id)
    return _delivered(entry, 'Student attendance email sent successfully')


@email.route('/dispatch-pending', methods=['POST'])
@requires('email.admin')
def dispatch_pending():
    return success_response(_notifier().dispatch_pending(), message='Queued emails dispatched')
