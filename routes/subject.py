"""routes/subject.py

Subject directory: list / get / create / update / delete (delete is admin only
and cascades to the subject's sessions, enrollments and attendance records).
"""

from flask import Blueprint, request

from decorators import requires
from errors import ConflictError, NotFoundError, ValidationError, success_response
from models import Subject, db

subject = Blueprint('subject', __name__)

SUBJECT_FIELDS = ('name', 'code', 'description')


def _get_subject(subject_id):
    found = db.session.get(Subject, subject_id)
    if found is None:
        raise NotFoundError('Subject not found')
    return found


@subject.route('/', methods=['GET'])
@requires('subjects.view')
def list_subjects():
    return success_response([s.to_dict() for s in Subject.query.order_by(Subject.name).all()])


@subject.route('/<int:subject_id>', methods=['GET'])
@requires('subjects.view')
def get_subject(subject_id):
    return success_response(_get_subject(subject_id).to_dict())


@subject.route('/', methods=['POST'])
@requires('subjects.edit')
def create_subject():
    data = request.get_json(silent=True) or {}
    if not data.get('name') or not data.get('code'):
        raise ValidationError('Name and code are required')
    if Subject.query.filter_by(code=data['code']).first():
        raise ConflictError('Subject code already exists')

    new_subject = Subject(name=data['name'], code=data['code'], description=data.get('description'))
    db.session.add(new_subject)
    db.session.commit()
    return success_response(new_subject.to_dict(), status_code=201)


@subject.route('/<int:subject_id>', methods=['PUT'])
@requires('subjects.edit')
def update_subject(subject_id):
    found = _get_subject(subject_id)
    data = request.get_json(silent=True) or {}
    changes = {k: v for k, v in data.items() if k in SUBJECT_FIELDS}
    if not changes:
        raise ValidationError('No fields to update')
    if ('name' in changes and not changes['name']) or ('code' in changes and not changes['code']):
        raise ValidationError('Name and code cannot be empty')
    if 'code' in changes:
        clash = Subject.query.filter(Subject.code == changes['code'], Subject.id != subject_id).first()
        if clash:
            raise ConflictError('Subject code already exists')

    for name, value in changes.items():
        setattr(found, name, value)
    db.session.commit()
    return success_response(found.to_dict())


@subject.route('/<int:subject_id>', methods=['DELETE'])
@requires('subjects.delete')
def delete_subject(subject_id):
    found = _get_subject(subject_id)
    db.session.delete(found)
    db.session.commit()
    return success_response(message='Subject deleted successfully')
