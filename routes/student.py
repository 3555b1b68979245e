"""routes/student.py

Student directory:
 - list / get / create / update / delete
 - by-qr lookup (scanner clients), by-section listing, distinct sections

A new student gets a random uuid4 QR code and section "A" unless one is given.
"""

import uuid

from flask import Blueprint, request
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from decorators import requires
from errors import ConflictError, NotFoundError, ValidationError, success_response
from models import Student, db

student = Blueprint('student', __name__)

STUDENT_FIELDS = ('student_id', 'first_name', 'middle_name', 'last_name', 'email', 'section')
DUPLICATE_STUDENT = 'Student ID or email already exists'


def _get_student(student_pk):
    found = db.session.get(Student, student_pk)
    if found is None:
        raise NotFoundError('Student not found')
    return found


def _check_unique(student_id, email, exclude_id=None):
    query = Student.query.filter(or_(Student.student_id == student_id, Student.email == email))
    if exclude_id is not None:
        query = query.filter(Student.id != exclude_id)
    if query.first():
        raise ConflictError(DUPLICATE_STUDENT)


@student.route('/', methods=['GET'])
@requires('students.view')
def list_students():
    students = Student.query.order_by(Student.last_name, Student.first_name).all()
    return success_response([s.to_dict() for s in students])


@student.route('/<int:student_pk>', methods=['GET'])
@requires('students.view')
def get_student(student_pk):
    return success_response(_get_student(student_pk).to_dict())


@student.route('/', methods=['POST'])
@requires('students.edit')
def create_student():
    data = request.get_json(silent=True) or {}
    if not data.get('student_id') or not data.get('first_name') or not data.get('last_name') or not data.get('email'):
        raise ValidationError('Student ID, first name, last name, and email are required')
    _check_unique(data['student_id'], data['email'])

    new_student = Student(
        student_id=data['student_id'],
        first_name=data['first_name'],
        middle_name=data.get('middle_name') or None,
        last_name=data['last_name'],
        email=data['email'],
        qr_code=str(uuid.uuid4()),
        section=data.get('section') or 'A'
    )
    try:
        db.session.add(new_student)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError(DUPLICATE_STUDENT)
    return success_response(new_student.to_dict(), status_code=201)


@student.route('/<int:student_pk>', methods=['PUT'])
@requires('students.edit')
def update_student(student_pk):
    found = _get_student(student_pk)
    data = request.get_json(silent=True) or {}
    changes = {k: v for k, v in data.items() if k in STUDENT_FIELDS}
    if not changes:
        raise ValidationError('No fields to update')
    for required in ('student_id', 'first_name', 'last_name', 'email'):
        if required in changes and not changes[required]:
            raise ValidationError(f'{required} cannot be empty')
    _check_unique(changes.get('student_id', found.student_id), changes.get('email', found.email),
                  exclude_id=found.id)

    for name, value in changes.items():
        setattr(found, name, value)
    if 'middle_name' in changes:
        found.middle_name = changes['middle_name'] or None
    if 'section' in changes:
        found.section = changes['section'] or 'A'
    db.session.commit()
    return success_response(found.to_dict())


@student.route('/<int:student_pk>', methods=['DELETE'])
@requires('students.delete')
def delete_student(student_pk):
    found = _get_student(student_pk)
    db.session.delete(found)
    db.session.commit()
    return success_response(message='Student deleted successfully')


@student.route('/by-qr/<path:qr_code>', methods=['GET'])
@requires('students.lookup')
def by_qr(qr_code):
    found = Student.query.filter_by(qr_code=qr_code).first()
    if found is None:
        raise NotFoundError('Student not found')
    return success_response(found.to_dict())


@student.route('/by-section/<section>', methods=['GET'])
@requires('students.view')
def by_section(section):
    students = Student.query.filter_by(section=section).order_by(Student.last_name, Student.first_name).all()
    return success_response([s.to_dict() for s in students])


@student.route('/sections/all', methods=['GET'])
@requires('students.view')
def sections():
    rows = db.session.query(Student.section).distinct().order_by(Student.section).all()
    return success_response([section for (section,) in rows if section])
