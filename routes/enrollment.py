"""routes/enrollment.py

Student <-> subject enrollments:
 - list all / by student / by subject
 - enroll one student, toggle is_active (PATCH), delete (admin)
 - bulk: enroll many students into one subject in a single transaction;
   students already enrolled (or unknown) are reported in `errors`, the rest
   are committed together or not at all.
"""

from flask import Blueprint, request

from decorators import requires
from errors import ConflictError, NotFoundError, ValidationError, success_response
from models import Enrollment, Student, Subject, db, transaction

enrollment = Blueprint('enrollment', __name__)


def _enrollment_dict(row, student, subject):
    data = row.to_dict()
    data.update({
        'student_name': student.full_name,
        'student_number': student.student_id,
        'section': student.section,
        'subject_name': subject.name,
        'subject_code': subject.code,
    })
    return data


def _as_ids(values):
    ids = []
    for value in values:
        if isinstance(value, bool):
            raise ValidationError('Student IDs must be integers')
        try:
            ids.append(int(value))
        except (TypeError, ValueError):
            raise ValidationError('Student IDs must be integers')
    return ids


def _joined():
    return (
        db.session.query(Enrollment, Student, Subject)
        .join(Student, Enrollment.student_id == Student.id)
        .join(Subject, Enrollment.subject_id == Subject.id)
    )


@enrollment.route('/', methods=['GET'])
@requires('enrollments.view')
def list_enrollments():
    rows = _joined().order_by(Student.last_name, Student.first_name, Subject.name).all()
    return success_response([_enrollment_dict(*row) for row in rows])


@enrollment.route('/student/<int:student_id>', methods=['GET'])
@requires('enrollments.view')
def by_student(student_id):
    rows = _joined().filter(Enrollment.student_id == student_id).order_by(Subject.name).all()
    return success_response([_enrollment_dict(*row) for row in rows])


@enrollment.route('/subject/<int:subject_id>', methods=['GET'])
@requires('enrollments.view')
def by_subject(subject_id):
    rows = (
        _joined().filter(Enrollment.subject_id == subject_id)
        .order_by(Student.last_name, Student.first_name)
        .all()
    )
    return success_response([_enrollment_dict(*row) for row in rows])


@enrollment.route('/', methods=['POST'])
@requires('enrollments.manage')
def enroll():
    data = request.get_json(silent=True) or {}
    student_id = data.get('student_id')
    subject_id = data.get('subject_id')
    if not student_id or not subject_id:
        raise ValidationError('Student ID and Subject ID are required')
    if db.session.get(Student, student_id) is None:
        raise NotFoundError('Student not found')
    if db.session.get(Subject, subject_id) is None:
        raise NotFoundError('Subject not found')
    if Enrollment.query.filter_by(student_id=student_id, subject_id=subject_id).first():
        raise ConflictError('Student is already enrolled in this subject')

    row = Enrollment(student_id=student_id, subject_id=subject_id, is_active=True)
    db.session.add(row)
    db.session.commit()
    return success_response(row.to_dict(), message='Student enrolled successfully', status_code=201)


@enrollment.route('/<int:enrollment_id>', methods=['PATCH'])
@requires('enrollments.manage')
def set_active(enrollment_id):
    is_active = (request.get_json(silent=True) or {}).get('is_active')
    if not isinstance(is_active, bool):
        raise ValidationError('is_active must be a boolean value')
    row = db.session.get(Enrollment, enrollment_id)
    if row is None:
        raise NotFoundError('Enrollment not found')
    row.is_active = is_active
    db.session.commit()
    return success_response(row.to_dict(), message='Enrollment updated successfully')


@enrollment.route('/<int:enrollment_id>', methods=['DELETE'])
@requires('enrollments.delete')
def delete_enrollment(enrollment_id):
    row = db.session.get(Enrollment, enrollment_id)
    if row is None:
        raise NotFoundError('Enrollment not found')
    db.session.delete(row)
    db.session.commit()
    return success_response(message='Enrollment deleted successfully')


@enrollment.route('/bulk', methods=['POST'])
@requires('enrollments.manage')
def bulk_enroll():
    data = request.get_json(silent=True) or {}
    subject_id = data.get('subject_id')
    student_ids = data.get('student_ids')
    if not subject_id or not isinstance(student_ids, list):
        raise ValidationError('Subject ID and array of Student IDs are required')
    student_ids = _as_ids(student_ids)
    if db.session.get(Subject, subject_id) is None:
        raise NotFoundError('Subject not found')

    created = []
    errors = []
    with transaction(db.session) as session:
        already = {
            sid for (sid,) in session.query(Enrollment.student_id).filter(
                Enrollment.subject_id == subject_id, Enrollment.student_id.in_(student_ids)
            )
        }
        known = {
            sid for (sid,) in session.query(Student.id).filter(Student.id.in_(student_ids))
        }
        for student_id in dict.fromkeys(student_ids):
            if student_id not in known:
                errors.append(f'Student {student_id} not found')
            elif student_id in already:
                errors.append(f'Student {student_id} is already enrolled')
            else:
                row = Enrollment(student_id=student_id, subject_id=subject_id, is_active=True)
                session.add(row)
                created.append(row)

    body = {'enrollments': [row.to_dict() for row in created]}
    if errors:
        body['errors'] = errors
    return success_response(body, message=f'Bulk enrollment completed. {len(created)} students enrolled.')
