"""scan_service.py

Attendance scanning: per-subject scan sessions and attendance records.

State machine per subject:
    no active session --start_session--> active session --end_session--> no active session

Scans are only accepted while the subject has an active session. A student
gets at most one AttendanceRecord per (subject, date); the database unique
constraint backs the check done inside the transaction.
"""

import logging
from datetime import date as date_type, datetime

from sqlalchemy import and_, case, func
from sqlalchemy.exc import IntegrityError

from config import ATTENDANCE_STATUSES
from errors import ConflictError, NotFoundError, ValidationError
from models import AttendanceRecord, Enrollment, ScanSession, Student, Subject, transaction

logger = logging.getLogger(__name__)

ALREADY_RECORDED_TODAY = 'Attendance already recorded for this student today'


def parse_date(value, field='date'):
    """Accept a date, a datetime or an ISO `YYYY-MM-DD` string."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date_type):
        return value
    if not value:
        raise ValidationError(f'{field} is required')
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        raise ValidationError(f'Invalid {field}, expected YYYY-MM-DD')


def parse_datetime(value, field='time_in'):
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        raise ValidationError(f'Invalid {field}, expected an ISO 8601 timestamp')


def validate_status(status):
    if status not in ATTENDANCE_STATUSES:
        raise ValidationError('Valid status (present, absent, late) is required')


class ScanService:

    def __init__(self, db, notifier, clock=datetime.now):
        self.db = db
        self.notifier = notifier
        self.clock = clock

    @property
    def session(self):
        return self.db.session

    # ------------------------------------------------------------- sessions

    def start_session(self, subject_id):
        if not subject_id:
            raise ValidationError('Subject ID is required')

        with transaction(self.session) as session:
            # Lock the subject row so two starts for the same subject serialize
            subject = session.query(Subject).filter(Subject.id == subject_id).with_for_update().first()
            if subject is None:
                raise NotFoundError('Subject not found')

            active = session.query(ScanSession).filter_by(subject_id=subject_id, is_active=True).first()
            if active is not None:
                raise ConflictError('There is already an active session for this subject')

            scan_session = ScanSession(subject_id=subject_id, start_time=self.clock(), is_active=True)
            session.add(scan_session)

        logger.info('Scan session #%s started for subject %s', scan_session.id, subject_id)
        return scan_session

    def end_session(self, session_id):
        with transaction(self.session) as session:
            scan_session = (
                session.query(ScanSession)
                .filter_by(id=session_id, is_active=True)
                .with_for_update()
                .first()
            )
            if scan_session is None:
                raise NotFoundError('Active session not found')
            scan_session.end_time = self.clock()
            scan_session.is_active = False

        logger.info('Scan session #%s ended', session_id)
        return scan_session

    def _session_dict(self, scan_session, subject):
        data = scan_session.to_dict()
        data['subject_name'] = subject.name
        data['subject_code'] = subject.code
        return data

    def active_sessions(self):
        rows = (
            self.session.query(ScanSession, Subject)
            .join(Subject, ScanSession.subject_id == Subject.id)
            .filter(ScanSession.is_active.is_(True))
            .order_by(ScanSession.start_time.desc())
            .all()
        )
        return [self._session_dict(s, subject) for s, subject in rows]

    def get_session(self, session_id):
        scan_session = self.session.get(ScanSession, session_id)
        if scan_session is None:
            raise NotFoundError('Session not found')
        data = self._session_dict(scan_session, scan_session.subject)
        data['attendance_count'] = AttendanceRecord.query.filter_by(
            subject_id=scan_session.subject_id,
            date=scan_session.start_time.date()
        ).count()
        return data

    # --------------------------------------------------------------- scans

    def scan(self, qr_code, subject_id, actor_id=None):
        """Record `present` for the student behind `qr_code`.

        Returns:
            tuple: (student, record)
        """
        if not qr_code or not subject_id:
            raise ValidationError('QR code and subject ID are required')

        now = self.clock()
        try:
            with transaction(self.session) as session:
                active = (
                    session.query(ScanSession)
                    .filter_by(subject_id=subject_id, is_active=True)
                    .with_for_update()
                    .first()
                )
                if active is None:
                    raise ConflictError('No active scanning session for this subject')

                student = session.query(Student).filter_by(qr_code=qr_code).first()
                if student is None:
                    raise NotFoundError('Student not found with this QR code')

                existing = session.query(AttendanceRecord).filter_by(
                    student_id=student.id, subject_id=subject_id, date=now.date()
                ).first()
                if existing is not None:
                    raise ConflictError(ALREADY_RECORDED_TODAY, data={
                        'student': student.to_dict(),
                        'attendance': existing.to_dict(),
                    })

                record = AttendanceRecord(
                    student_id=student.id,
                    subject_id=subject_id,
                    date=now.date(),
                    time_in=now,
                    status='present'
                )
                session.add(record)
        except IntegrityError:
            raise ConflictError(ALREADY_RECORDED_TODAY)

        logger.info('Scan recorded: student %s subject %s', student.student_id, subject_id)
        self._notify_student(student, self.session.get(Subject, subject_id), record, actor_id)
        return student, record

    def manual_attendance(self, student_id, subject_id, date, status, time_in=None, actor_id=None):
        if not student_id or not subject_id or not date or not status:
            raise ValidationError('Student ID, subject ID, date, and status are required')
        validate_status(status)
        day = parse_date(date)
        stamp = parse_datetime(time_in) if time_in else self.clock()

        try:
            with transaction(self.session) as session:
                student = session.get(Student, student_id)
                if student is None:
                    raise NotFoundError('Student not found')
                subject = session.get(Subject, subject_id)
                if subject is None:
                    raise NotFoundError('Subject not found')

                existing = session.query(AttendanceRecord).filter_by(
                    student_id=student_id, subject_id=subject_id, date=day
                ).first()
                if existing is not None:
                    raise ConflictError('Attendance already recorded for this student on this date',
                                        data={'attendance': existing.to_dict()})

                record = AttendanceRecord(
                    student_id=student_id,
                    subject_id=subject_id,
                    date=day,
                    time_in=stamp,
                    status=status
                )
                session.add(record)
        except IntegrityError:
            raise ConflictError('Attendance already recorded for this student on this date')

        if status == 'present':
            self._notify_student(student, subject, record, actor_id)
        return record

    def _notify_student(self, student, subject, record, actor_id):
        self.notifier.notify('student_attendance', student.email, {
            'student_name': student.full_name,
            'student_number': student.student_id,
            'section': student.section,
            'subject_name': subject.name,
            'subject_code': subject.code,
            'date': record.date.isoformat(),
            'time_in': record.time_in.strftime('%H:%M:%S'),
            'status': record.status,
        }, sent_by=actor_id)

    # ------------------------------------------------------------- records

    def _record(self, record_id):
        record = self.session.get(AttendanceRecord, record_id)
        if record is None:
            raise NotFoundError('Attendance record not found')
        return record

    def update_status(self, record_id, status):
        validate_status(status)
        record = self._record(record_id)
        record.status = status
        self.session.commit()
        return record

    def update_manual(self, record_id, status, time_in=None):
        validate_status(status)
        record = self._record(record_id)
        record.status = status
        record.time_in = parse_datetime(time_in) if time_in else self.clock()
        self.session.commit()
        return record

    def delete_record(self, record_id):
        record = self._record(record_id)
        self.session.delete(record)
        self.session.commit()
        return record

    # ------------------------------------------------------------- queries

    def attendance_for(self, subject_id, date):
        day = parse_date(date)
        rows = (
            self.session.query(AttendanceRecord, Student)
            .join(Student, AttendanceRecord.student_id == Student.id)
            .filter(AttendanceRecord.subject_id == subject_id, AttendanceRecord.date == day)
            .order_by(AttendanceRecord.time_in.asc())
            .all()
        )
        result = []
        for record, student in rows:
            data = record.to_dict()
            data.update({
                'student_name': student.full_name,
                'student_number': student.student_id,
                'email': student.email,
            })
            result.append(data)
        return result

    def attendance_summary(self, subject_id, start_date=None, end_date=None):
        """Per-date counts for a subject, newest first."""
        query = self.session.query(
            AttendanceRecord.date,
            func.count(AttendanceRecord.id),
            func.sum(case((AttendanceRecord.status == 'present', 1), else_=0)),
            func.sum(case((AttendanceRecord.status == 'absent', 1), else_=0)),
            func.sum(case((AttendanceRecord.status == 'late', 1), else_=0)),
        ).filter(AttendanceRecord.subject_id == subject_id)

        if start_date and end_date:
            query = query.filter(AttendanceRecord.date.between(
                parse_date(start_date, 'start_date'), parse_date(end_date, 'end_date')
            ))

        rows = query.group_by(AttendanceRecord.date).order_by(AttendanceRecord.date.desc()).all()
        return [
            {
                'date': day.isoformat(),
                'total_attendance': total,
                'present_count': int(present or 0),
                'absent_count': int(absent or 0),
                'late_count': int(late or 0),
            }
            for day, total, present, absent, late in rows
        ]

    def students_for_manual(self, subject_id, date):
        """Actively enrolled students with their status on `date` (absent when unrecorded)."""
        day = parse_date(date)
        rows = (
            self.session.query(Student, AttendanceRecord)
            .join(Enrollment, and_(Enrollment.student_id == Student.id, Enrollment.is_active.is_(True)))
            .outerjoin(AttendanceRecord, and_(
                AttendanceRecord.student_id == Student.id,
                AttendanceRecord.subject_id == subject_id,
                AttendanceRecord.date == day
            ))
            .filter(Enrollment.subject_id == subject_id)
            .order_by(Student.last_name, Student.first_name)
            .all()
        )
        result = []
        for student, record in rows:
            data = student.to_dict()
            data.update({
                'attendance_id': record.id if record else None,
                'status': record.status if record else 'absent',
                'time_in': record.time_in.isoformat() if record and record.time_in else None,
                'is_default_absent': record is None,
            })
            result.append(data)
        return result

    def today_overview(self):
        today = self.clock().date()
        counts = dict(
            self.session.query(AttendanceRecord.subject_id, func.count(AttendanceRecord.id))
            .filter(AttendanceRecord.date == today)
            .group_by(AttendanceRecord.subject_id)
            .all()
        )
        active = {
            s.subject_id: s for s in ScanSession.query.filter(ScanSession.is_active.is_(True)).all()
        }
        overview = []
        for subject in Subject.query.order_by(Subject.name).all():
            scan_session = active.get(subject.id)
            overview.append({
                'subject_id': subject.id,
                'subject_name': subject.name,
                'subject_code': subject.code,
                'attendance_count': counts.get(subject.id, 0),
                'session_start': scan_session.start_time.isoformat() if scan_session else None,
            })
        return overview
