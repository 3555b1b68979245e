"""report_service.py

Attendance summaries and the emails built from them.

 - daily_summary_data(date): per-subject present/enrolled counts for one day
 - weekly_summary_data(end_date): per-subject counts over the 7 days ending at end_date
 - subject_report_data(subject_id, date): roster for one subject, unrecorded enrolled students listed absent
 - broadcast_*: send a summary to every user who opted in (EmailPreference)

"Present" in rates counts both `present` and `late` records.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy import func

from email_service import users_for_email_type
from errors import NotFoundError, ValidationError
from models import AttendanceRecord, Enrollment, Student, Subject
from scan_service import parse_date

logger = logging.getLogger(__name__)

ATTENDED = ('present', 'late')


def _rate(part, whole):
    return round(part / whole * 100) if whole else 0


class ReportService:

    def __init__(self, db, notifier, clock=datetime.now):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    def _day(self, value, field='date'):
        return parse_date(value, field) if value else self.clock().date()

    def _enrolled_counts(self):
        return dict(
            self.db.session.query(Enrollment.subject_id, func.count(Enrollment.id))
            .filter(Enrollment.is_active.is_(True))
            .group_by(Enrollment.subject_id)
            .all()
        )

    def daily_summary_data(self, date=None):
        day = self._day(date)
        enrolled = self._enrolled_counts()
        attended = dict(
            self.db.session.query(AttendanceRecord.subject_id, func.count(AttendanceRecord.id))
            .filter(AttendanceRecord.date == day, AttendanceRecord.status.in_(ATTENDED))
            .group_by(AttendanceRecord.subject_id)
            .all()
        )

        subjects = []
        for subject in Subject.query.order_by(Subject.name).all():
            total = enrolled.get(subject.id, 0)
            present = attended.get(subject.id, 0)
            subjects.append({
                'name': subject.name,
                'code': subject.code,
                'total_students': total,
                'present_count': present,
                'absent_count': max(total - present, 0),
                'attendance_rate': _rate(present, total),
            })

        total_students = sum(s['total_students'] for s in subjects)
        total_present = sum(s['present_count'] for s in subjects)
        return {
            'date': day.isoformat(),
            'total_subjects': len(subjects),
            'total_students': total_students,
            'overall_attendance': _rate(total_present, total_students),
            'subjects': subjects,
            'generated_at': self.clock().isoformat(timespec='seconds'),
        }

    def weekly_summary_data(self, end_date=None):
        end = self._day(end_date, 'end_date')
        start = end - timedelta(days=6)
        enrolled = self._enrolled_counts()

        counts = {}
        rows = (
            self.db.session.query(AttendanceRecord.subject_id, AttendanceRecord.status, func.count(AttendanceRecord.id))
            .filter(AttendanceRecord.date.between(start, end))
            .group_by(AttendanceRecord.subject_id, AttendanceRecord.status)
            .all()
        )
        for subject_id, status, count in rows:
            counts.setdefault(subject_id, {})[status] = count

        unique_present = dict(
            self.db.session.query(AttendanceRecord.subject_id, func.count(func.distinct(AttendanceRecord.student_id)))
            .filter(AttendanceRecord.date.between(start, end), AttendanceRecord.status.in_(ATTENDED))
            .group_by(AttendanceRecord.subject_id)
            .all()
        )

        subjects = []
        for subject in Subject.query.order_by(Subject.name).all():
            by_status = counts.get(subject.id, {})
            total = enrolled.get(subject.id, 0)
            subjects.append({
                'name': subject.name,
                'code': subject.code,
                'total_students': total,
                'total_records': sum(by_status.values()),
                'present_count': by_status.get('present', 0),
                'late_count': by_status.get('late', 0),
                'absent_count': by_status.get('absent', 0),
                'unique_students_present': unique_present.get(subject.id, 0),
                'attendance_rate': _rate(unique_present.get(subject.id, 0), total),
            })

        total_students = sum(s['total_students'] for s in subjects)
        total_unique = sum(s['unique_students_present'] for s in subjects)
        return {
            'start_date': start.isoformat(),
            'end_date': end.isoformat(),
            'total_subjects': len(subjects),
            'overall_attendance': _rate(total_unique, total_students),
            'subjects': subjects,
            'generated_at': self.clock().isoformat(timespec='seconds'),
        }

    def subject_report_data(self, subject_id, date=None):
        subject = self.db.session.get(Subject, subject_id)
        if subject is None:
            raise NotFoundError('Subject not found')
        day = self._day(date)

        recorded = (
            self.db.session.query(AttendanceRecord, Student)
            .join(Student, AttendanceRecord.student_id == Student.id)
            .filter(AttendanceRecord.subject_id == subject_id, AttendanceRecord.date == day)
            .order_by(Student.last_name, Student.first_name)
            .all()
        )
        records = [
            {
                'student_id': student.student_id,
                'student_name': student.full_name,
                'status': record.status,
                'time_in': record.time_in.strftime('%H:%M:%S') if record.time_in else None,
            }
            for record, student in recorded
        ]
        recorded_ids = {student.id for _, student in recorded}

        unrecorded = (
            self.db.session.query(Student)
            .join(Enrollment, Enrollment.student_id == Student.id)
            .filter(Enrollment.subject_id == subject_id, Enrollment.is_active.is_(True))
            .order_by(Student.last_name, Student.first_name)
            .all()
        )
        for student in unrecorded:
            if student.id not in recorded_ids:
                records.append({
                    'student_id': student.student_id,
                    'student_name': student.full_name,
                    'status': 'absent',
                    'time_in': None,
                })

        total = len(records)
        present = sum(1 for r in records if r['status'] in ATTENDED)
        return {
            'subject_id': subject.id,
            'subject_name': subject.name,
            'subject_code': subject.code,
            'date': day.isoformat(),
            'total_students': total,
            'present_count': present,
            'absent_count': total - present,
            'attendance_percentage': _rate(present, total),
            'records': records,
            'generated_at': self.clock().isoformat(timespec='seconds'),
        }

    # ------------------------------------------------------------ delivery

    def _deliver(self, email_type, recipient, payload, sent_by, immediate):
        if immediate:
            return self.notifier.send_now(email_type, recipient, payload, sent_by)
        return self.notifier.notify(email_type, recipient, payload, sent_by)

    def _broadcast(self, email_type, frequency, payload, immediate):
        results = []
        for user in users_for_email_type(email_type, frequency):
            entry = self._deliver(email_type, user.email, payload, user.id, immediate)
            results.append({
                'user': user.username,
                'email': user.email,
                'status': entry.status if entry else 'failed',
                'success': bool(entry) and entry.status != 'failed',
                'message_id': entry.message_id if entry else None,
                'error': entry.last_error if entry else 'Could not queue email',
            })
        logger.info('%s broadcast to %s users', email_type, len(results))
        return results

    def broadcast_daily_summary(self, date=None, immediate=False):
        return self._broadcast('daily_summary', 'daily', self.daily_summary_data(date), immediate)

    def broadcast_weekly_summary(self, end_date=None, immediate=False):
        return self._broadcast('weekly_summary', 'weekly', self.weekly_summary_data(end_date), immediate)

    def broadcast_subject_report(self, subject_id, date=None, immediate=False):
        if not subject_id:
            raise ValidationError('Subject ID is required')
        return self._broadcast('attendance_report', 'daily', self.subject_report_data(subject_id, date), immediate)

    def send_subject_report(self, subject_id, date, recipient, sent_by=None):
        if not subject_id or not date or not recipient:
            raise ValidationError('Subject ID, date, and recipient email are required')
        return self.notifier.send_now('attendance_report', recipient,
                                      self.subject_report_data(subject_id, date), sent_by)

    def send_daily_summary(self, date, recipient, sent_by=None):
        if not date or not recipient:
            raise ValidationError('Date and recipient email are required')
        return self.notifier.send_now('daily_summary', recipient, self.daily_summary_data(date), sent_by)
