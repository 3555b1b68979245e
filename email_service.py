"""email_service.py

Email rendering and delivery through Flask-Mail, plus the preference and
history queries behind /email-management.

Functions:
 - render_email(email_type, payload): (subject, html) for every notification type
 - send_email(recipient, subject, html): deliver one message, returns its Message-ID
 - get/upsert preferences, users_for_email_type: opt-in selection for broadcasts
 - email_history / email_stats: audit queries over EmailHistory
 - check_email_config: open an SMTP connection to validate MAIL_* settings

Payload dates are plain strings (ISO or already formatted) because payloads
are persisted in the EmailHistory JSON column before delivery.
"""

import logging
from datetime import datetime, timedelta

from flask_mail import Mail, Message
from sqlalchemy import case, func

from config import EMAIL_FREQUENCIES
from errors import ValidationError
from models import EmailHistory, EmailPreference, User, db

logger = logging.getLogger(__name__)

mail = Mail()

SYSTEM_NAME = 'School Attendance & Library System'

_FOOTER = """
                <hr style="border: none; border-top: 1px solid #ddd; margin: 20px 0;">
                <p style="color: #666; font-size: 12px;">This email was sent automatically, please do not reply.</p>
"""


def _wrap(body):
    return f"""
            <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
                {body}
                {_FOOTER}
            </div>
            """


def _rate_color(rate):
    if rate >= 80:
        return '#28a745'
    if rate >= 60:
        return '#ffc107'
    return '#dc3545'


def render_student_attendance(payload):
    subject = f"Attendance Confirmation - {payload['subject_name']} - {payload['date']}"
    html = _wrap(f"""
                <h2 style="color: #28a745;">Attendance recorded</h2>
                <p>Hello <strong>{payload['student_name']}</strong>,</p>
                <p>Your attendance has been recorded for:</p>
                <div style="background-color: #d4edda; padding: 15px; border-left: 4px solid #28a745; margin: 20px 0;">
                    <p><strong>Subject:</strong> {payload['subject_name']} ({payload.get('subject_code', '')})</p>
                    <p><strong>Date:</strong> {payload['date']}</p>
                    <p><strong>Time:</strong> {payload.get('time_in', '')}</p>
                    <p><strong>Status:</strong> {payload.get('status', 'present')}</p>
                </div>
                <p>Student ID: {payload.get('student_number', '')}</p>
    """)
    return subject, html


def render_attendance_report(payload):
    rows = ''.join(
        f"<tr><td>{r['student_id']}</td><td>{r['student_name']}</td>"
        f"<td>{r['status']}</td><td>{r.get('time_in') or '-'}</td></tr>"
        for r in payload.get('records', [])
    )
    subject = f"Attendance Report - {payload['subject_name']} - {payload['date']}"
    html = _wrap(f"""
                <h2 style="color: #333;">Attendance Report</h2>
                <h3 style="color: #333;">{payload['subject_name']} - {payload['date']}</h3>
                <div style="background-color: #f4f4f4; padding: 15px; margin: 20px 0;">
                    <p><strong>Total students:</strong> {payload['total_students']}</p>
                    <p><strong>Present:</strong> {payload['present_count']}</p>
                    <p><strong>Absent:</strong> {payload['absent_count']}</p>
                    <p><strong>Attendance:</strong> {payload['attendance_percentage']}%</p>
                </div>
                <table style="width: 100%; border-collapse: collapse;">
                    <tr><th>Student ID</th><th>Name</th><th>Status</th><th>Time in</th></tr>
                    {rows}
                </table>
    """)
    return subject, html


def render_daily_summary(payload):
    rows = ''.join(
        f"<tr><td>{s['name']} ({s['code']})</td><td>{s['present_count']}/{s['total_students']}</td>"
        f"<td style=\"color: {_rate_color(s['attendance_rate'])};\">{s['attendance_rate']}%</td></tr>"
        for s in payload.get('subjects', [])
    )
    subject = f"Daily Attendance Summary - {payload['date']}"
    html = _wrap(f"""
                <h2 style="color: #333;">Daily Attendance Summary</h2>
                <p><strong>Date:</strong> {payload['date']}</p>
                <div style="background-color: #f4f4f4; padding: 15px; margin: 20px 0;">
                    <p><strong>Subjects:</strong> {payload['total_subjects']}</p>
                    <p><strong>Enrolled students:</strong> {payload['total_students']}</p>
                    <p><strong>Overall attendance:</strong> {payload['overall_attendance']}%</p>
                </div>
                <table style="width: 100%; border-collapse: collapse;">
                    <tr><th>Subject</th><th>Present</th><th>Rate</th></tr>
                    {rows}
                </table>
    """)
    return subject, html


def render_weekly_summary(payload):
    rows = ''.join(
        f"<tr><td>{s['name']} ({s['code']})</td><td>{s['present_count']}</td><td>{s['late_count']}</td>"
        f"<td>{s['absent_count']}</td><td>{s['attendance_rate']}%</td></tr>"
        for s in payload.get('subjects', [])
    )
    subject = f"Weekly Attendance Summary - {payload['start_date']} to {payload['end_date']}"
    html = _wrap(f"""
                <h2 style="color: #333;">Weekly Attendance Summary</h2>
                <p><strong>Period:</strong> {payload['start_date']} - {payload['end_date']}</p>
                <p><strong>Overall attendance:</strong> {payload['overall_attendance']}%</p>
                <table style="width: 100%; border-collapse: collapse;">
                    <tr><th>Subject</th><th>Present</th><th>Late</th><th>Absent</th><th>Rate</th></tr>
                    {rows}
                </table>
    """)
    return subject, html


def render_notification(payload):
    html = _wrap(f"""
                <h2 style="color: #333;">{payload['subject']}</h2>
                <div style="background-color: #f4f4f4; padding: 20px; margin: 20px 0;">
                    <p>{payload['message']}</p>
                </div>
    """)
    return payload['subject'], html


def render_welcome(payload):
    html = _wrap(f"""
                <h2 style="color: #007bff;">Welcome!</h2>
                <p>Hello <strong>{payload['username']}</strong>,</p>
                <p>An account has been created for you in the {SYSTEM_NAME}.</p>
                <div style="background-color: #f4f4f4; padding: 15px; margin: 20px 0;">
                    <p><strong>Username:</strong> {payload['username']}</p>
                    <p><strong>Role:</strong> {payload.get('role', '')}</p>
                </div>
                <p>Please change your password after your first login.</p>
    """)
    return f'Welcome to the {SYSTEM_NAME}', html


def render_reservation_notification(payload):
    subject = f"Your Reserved Book is Available: {payload['book_title']}"
    html = _wrap(f"""
                <h2 style="color: #28a745;">Your reserved book is ready</h2>
                <p>Hello <strong>{payload['username']}</strong>,</p>
                <p>The book you reserved is now available for pickup:</p>
                <h3 style="color: #333;">{payload['book_title']}</h3>
                <p style="color: #666; font-style: italic;">Author: {payload.get('book_author', '')}</p>
                <div style="background-color: #fff3cd; padding: 15px; border-left: 4px solid #ffc107; margin: 20px 0;">
                    <p style="margin: 0;"><strong>Please pick it up before:</strong> {payload['expires_at']}</p>
                </div>
    """)
    return subject, html


def render_return_reminder(payload):
    if payload.get('overdue'):
        heading = 'Your book is overdue'
        note = 'Late returns are fined for every started day past the due date.'
    else:
        heading = 'Book due tomorrow'
        note = 'Please return it on time to avoid a fine.'
    html = _wrap(f"""
                <h2 style="color: #333;">{heading}</h2>
                <p>Hello <strong>{payload['username']}</strong>,</p>
                <p>You have the book <strong>"{payload['book_title']}"</strong> which is due on:</p>
                <div style="background-color: #fff3cd; padding: 20px; text-align: center; margin: 20px 0; border: 1px solid #ffeeba;">
                    <h2 style="color: #856404; margin: 0;">{payload['due_date']}</h2>
                </div>
                <p>{note}</p>
                <p>If you have already returned the book, please ignore this email.</p>
    """)
    return f'Return reminder - {payload["book_title"]}', html


RENDERERS = {
    'student_attendance': render_student_attendance,
    'attendance_report': render_attendance_report,
    'daily_summary': render_daily_summary,
    'weekly_summary': render_weekly_summary,
    'notification': render_notification,
    'welcome': render_welcome,
    'reservation_notification': render_reservation_notification,
    'return_reminder': render_return_reminder,
}

EMAIL_TYPES = tuple(RENDERERS)


def render_email(email_type, payload):
    renderer = RENDERERS.get(email_type)
    if renderer is None:
        raise ValidationError(f'Unknown email type: {email_type}')
    try:
        return renderer(payload)
    except KeyError as e:
        raise ValidationError(f'Missing field for {email_type} email: {e.args[0]}')


def send_email(recipient, subject, html):
    """Send one HTML email. Exceptions from the transport propagate.

    Returns:
        str: the generated Message-ID
    """
    msg = Message(subject=subject, recipients=[recipient], html=html)
    mail.send(msg)
    return msg.msgId


def check_email_config():
    """Open (and close) an SMTP connection with the configured MAIL_* settings.

    Returns:
        tuple: (success, message)
    """
    try:
        with mail.connect():
            pass
        return True, 'Email configuration is valid'
    except Exception as e:
        logger.warning('Email configuration check failed: %s', e)
        return False, f'Email configuration error: {e}'


# --------------------------------------------------------------- preferences

def get_preferences(user_id):
    return EmailPreference.query.filter_by(user_id=user_id).order_by(EmailPreference.email_type).all()


def upsert_preference(user_id, email_type, enabled=None, frequency=None):
    """Insert or update the (user, email_type) preference. Caller commits."""
    if not email_type:
        raise ValidationError('Email type is required')
    if email_type not in EMAIL_TYPES:
        raise ValidationError(f'Unknown email type: {email_type}')
    frequency = frequency or 'daily'
    if frequency not in EMAIL_FREQUENCIES:
        raise ValidationError(f"Frequency must be one of: {', '.join(EMAIL_FREQUENCIES)}")

    pref = EmailPreference.query.filter_by(user_id=user_id, email_type=email_type).first()
    if pref is None:
        pref = EmailPreference(user_id=user_id, email_type=email_type)
        db.session.add(pref)
    pref.enabled = True if enabled is None else bool(enabled)
    pref.frequency = frequency
    return pref


def users_for_email_type(email_type, frequency='daily'):
    """Users with an enabled preference for `email_type` at `frequency`."""
    return (
        db.session.query(User)
        .join(EmailPreference, EmailPreference.user_id == User.id)
        .filter(
            EmailPreference.email_type == email_type,
            EmailPreference.enabled.is_(True),
            EmailPreference.frequency == frequency
        )
        .order_by(User.id)
        .all()
    )


# ------------------------------------------------------------------- history

def email_history(email_type=None, status=None, recipient=None, page=1, limit=20):
    query = EmailHistory.query
    if email_type:
        query = query.filter(EmailHistory.email_type == email_type)
    if status:
        query = query.filter(EmailHistory.status == status)
    if recipient:
        query = query.filter(EmailHistory.recipient_email.ilike(f'%{recipient}%'))
    return query.order_by(EmailHistory.created_at.desc(), EmailHistory.id.desc()).paginate(
        page=page, per_page=limit, error_out=False
    )


def email_stats(days=30, now=None):
    """Per-type totals with sent/failed split over the last `days` days."""
    since = (now or datetime.now()) - timedelta(days=days)
    rows = (
        db.session.query(
            EmailHistory.email_type,
            func.count(EmailHistory.id),
            func.sum(case((EmailHistory.status == 'sent', 1), else_=0)),
            func.sum(case((EmailHistory.status == 'failed', 1), else_=0)),
        )
        .filter(EmailHistory.created_at >= since)
        .group_by(EmailHistory.email_type)
        .order_by(EmailHistory.email_type)
        .all()
    )
    return [
        {'email_type': email_type, 'total': total, 'sent': int(sent or 0), 'failed': int(failed or 0)}
        for email_type, total, sent, failed in rows
    ]
