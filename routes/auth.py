"""routes/auth.py

Authentication and account administration:
 - login: username or email + password -> bearer token
 - register: admin creates an account (welcome email queued)
 - profile / change-password: the caller's own account
 - users: admin list / get / update / role change / delete

Every login failure answers 401 "Invalid credentials" whatever the cause.
"""

from flask import Blueprint, current_app, g, request

import auth_service
from decorators import requires
from errors import NotFoundError, ValidationError, success_response
from models import User, db

auth = Blueprint('auth', __name__)


def _body():
    return request.get_json(silent=True) or {}


@auth.route('/login', methods=['POST'])
def login():
    data = _body()
    identifier = data.get('username') or data.get('email')
    user, token = auth_service.login(identifier, data.get('password'), request.remote_addr or 'unknown')
    return success_response({'token': token, 'user': user.to_dict()}, message='Login successful')


@auth.route('/register', methods=['POST'])
@requires('users.register')
def register():
    data = _body()
    user = auth_service.register_user(
        data.get('username'),
        data.get('email'),
        data.get('password'),
        data.get('role') or 'teacher'
    )
    current_app.extensions['notifier'].notify('welcome', user.email, {
        'username': user.username,
        'role': user.role,
    }, sent_by=g.current_user.id)
    return success_response(user.to_dict(), message='User registered successfully', status_code=201)


@auth.route('/profile', methods=['GET'])
@requires()
def profile():
    user = db.session.get(User, g.current_user.id)
    if user is None:
        raise NotFoundError('User not found')
    data = user.to_dict()
    data['library_user'] = user.library_user.to_dict() if user.library_user else None
    return success_response(data)


@auth.route('/change-password', methods=['PUT'])
@requires()
def change_password():
    data = _body()
    auth_service.change_password(g.current_user.id, data.get('currentPassword') or data.get('current_password'),
                                 data.get('newPassword') or data.get('new_password'))
    return success_response(message='Password changed successfully')


@auth.route('/users', methods=['GET'])
@requires('users.manage')
def list_users():
    users = User.query.order_by(User.created_at.desc(), User.id.desc()).all()
    return success_response([u.to_dict() for u in users])


@auth.route('/users/<int:user_id>', methods=['GET'])
@requires('users.manage')
def get_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError('User not found')
    return success_response(user.to_dict())


@auth.route('/users/<int:user_id>', methods=['PUT'])
@requires('users.manage')
def update_user(user_id):
    data = _body()
    user = auth_service.update_user(user_id, data.get('username'), data.get('email'), data.get('role'))
    return success_response(user.to_dict(), message='User updated successfully')


@auth.route('/users/<int:user_id>/role', methods=['PUT'])
@requires('users.manage')
def update_role(user_id):
    role = _body().get('role')
    if not role:
        raise ValidationError('Role is required')
    user = auth_service.update_user(user_id, role=role)
    return success_response(user.to_dict(), message='User role updated successfully')


@auth.route('/users/<int:user_id>', methods=['DELETE'])
@requires('users.manage')
def delete_user(user_id):
    auth_service.delete_user(user_id, g.current_user.id)
    return success_response(message='User deleted successfully')
