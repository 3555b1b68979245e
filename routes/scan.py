"""routes/scan.py

QR scanning sessions and attendance records (thin layer over ScanService).
"""

from flask import Blueprint, current_app, g, request

from decorators import requires
from errors import ValidationError, success_response

scan = Blueprint('scan', __name__)


def _service():
    return current_app.extensions['scan']


def _body():
    return request.get_json(silent=True) or {}


@scan.route('/', methods=['GET'])
@requires('sessions.view')
def index():
    return success_response(message='Scan router is working', data={
        'POST /session/start': 'Start a new scanning session',
        'PUT /session/end/<id>': 'End a scanning session',
        'GET /session/active': 'Get all active sessions',
        'GET /session/<id>': 'Get session details',
        'POST /scan': 'Process QR code scan',
        'GET /attendance/<subject_id>/<date>': 'Get attendance for subject on date',
        'GET /attendance/summary/<subject_id>': 'Get attendance summary',
        'PUT /attendance/<id>': 'Update attendance status',
        'DELETE /attendance/<id>': 'Delete attendance record',
        'GET /students/<subject_id>?date=': 'Enrolled students with their status for manual attendance',
        'POST /attendance/manual': 'Record attendance manually',
        'PUT /attendance/manual/<id>': 'Update a manual attendance record',
        'GET /today': "Get today's attendance overview",
    })


@scan.route('/session/start', methods=['POST'])
@requires('sessions.manage')
def start_session():
    scan_session = _service().start_session(_body().get('subject_id'))
    return success_response(scan_session.to_dict(), message='Scanning session started', status_code=201)


@scan.route('/session/end/<int:session_id>', methods=['PUT'])
@requires('sessions.manage')
def end_session(session_id):
    scan_session = _service().end_session(session_id)
    return success_response(scan_session.to_dict(), message='Scanning session ended')


@scan.route('/session/active', methods=['GET'])
@requires('sessions.view')
def active_sessions():
    return success_response(_service().active_sessions())


@scan.route('/session/<int:session_id>', methods=['GET'])
@requires('sessions.view')
def get_session(session_id):
    return success_response(_service().get_session(session_id))


@scan.route('/scan', methods=['POST'])
@requires('attendance.scan')
def scan_qr():
    data = _body()
    student, record = _service().scan(data.get('qr_code'), data.get('subject_id'), actor_id=g.current_user.id)
    return success_response({'student': student.to_dict(), 'attendance': record.to_dict()},
                            message='Attendance recorded successfully', status_code=201)


@scan.route('/attendance/<int:subject_id>/<date>', methods=['GET'])
@requires('attendance.view')
def attendance_for(subject_id, date):
    return success_response(_service().attendance_for(subject_id, date))


@scan.route('/attendance/summary/<int:subject_id>', methods=['GET'])
@requires('attendance.view')
def attendance_summary(subject_id):
    return success_response(_service().attendance_summary(
        subject_id, request.args.get('start_date'), request.args.get('end_date')
    ))


@scan.route('/attendance/<int:record_id>', methods=['PUT'])
@requires('attendance.edit')
def update_attendance(record_id):
    record = _service().update_status(record_id, _body().get('status'))
    return success_response(record.to_dict(), message='Attendance updated successfully')


@scan.route('/attendance/<int:record_id>', methods=['DELETE'])
@requires('attendance.delete')
def delete_attendance(record_id):
    _service().delete_record(record_id)
    return success_response(message='Attendance record deleted successfully')


@scan.route('/students/<int:subject_id>', methods=['GET'])
@requires('attendance.view')
def students_for_manual(subject_id):
    date = request.args.get('date')
    if not date:
        raise ValidationError('Date parameter is required')
    return success_response(_service().students_for_manual(subject_id, date))


@scan.route('/attendance/manual', methods=['POST'])
@requires('attendance.edit')
def manual_attendance():
    data = _body()
    record = _service().manual_attendance(
        data.get('student_id'),
        data.get('subject_id'),
        data.get('date'),
        data.get('status'),
        time_in=data.get('time_in'),
        actor_id=g.current_user.id
    )
    return success_response(record.to_dict(), message='Attendance recorded successfully', status_code=201)


@scan.route('/attendance/manual/<int:record_id>', methods=['PUT'])
@requires('attendance.edit')
def update_manual(record_id):
    data = _body()
    record = _service().update_manual(record_id, data.get('status'), data.get('time_in'))
    return success_response(record.to_dict(), message='Attendance updated successfully')


@scan.route('/today', methods=['GET'])
@requires('attendance.view')
def today():
    return success_response(_service().today_overview())
