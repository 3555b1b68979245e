import email_service
from models import AttendanceRecord, EmailHistory, ScanSession, db


def start(client, headers, subject_id):
    return client.post('/scan/session/start', json={'subject_id': subject_id}, headers=headers)


def scan(client, headers, qr_code, subject_id):
    return client.post('/scan/scan', json={'qr_code': qr_code, 'subject_id': subject_id}, headers=headers)


def test_scan_records_present_once_per_day(client, headers, math101, john):
    assert start(client, headers['teacher'], math101.id).status_code == 201

    first = scan(client, headers['teacher'], 'qr-john-doe-001', math101.id)
    assert first.status_code == 201
    attendance = first.get_json()['data']['attendance']
    assert attendance['status'] == 'present'
    assert attendance['date'] == '2024-03-04'

    second = scan(client, headers['teacher'], 'qr-john-doe-001', math101.id)
    assert second.status_code == 409
    assert second.get_json()['error'] == 'Attendance already recorded for this student today'
    assert AttendanceRecord.query.filter_by(student_id=john.id, subject_id=math101.id).count() == 1


def test_scan_sends_confirmation_email(app, client, headers, math101, john):
    start(client, headers['teacher'], math101.id)
    with email_service.mail.record_messages() as outbox:
        scan(client, headers['teacher'], 'qr-john-doe-001', math101.id)

    assert len(outbox) == 1
    assert outbox[0].recipients == ['john.doe@students.test']
    assert 'Mathematics 101' in outbox[0].subject

    entry = EmailHistory.query.filter_by(email_type='student_attendance').one()
    assert entry.status == 'sent'
    assert entry.message_id == outbox[0].msgId


def test_scan_succeeds_when_email_fails(monkeypatch, client, headers, math101, john):
    def broken_send(message):
        raise ConnectionRefusedError('smtp down')

    monkeypatch.setattr(email_service.mail, 'send', broken_send)
    start(client, headers['teacher'], math101.id)

    resp = scan(client, headers['teacher'], 'qr-john-doe-001', math101.id)
    assert resp.status_code == 201

    entry = EmailHistory.query.filter_by(email_type='student_attendance').one()
    assert entry.status == 'failed'
    assert 'smtp down' in entry.last_error
    assert entry.attempts == 1


def test_scan_without_active_session(client, headers, math101, john):
    resp = scan(client, headers['teacher'], 'qr-john-doe-001', math101.id)
    assert resp.status_code == 409
    assert resp.get_json()['error'] == 'No active scanning session for this subject'
    assert AttendanceRecord.query.count() == 0


def test_scan_unknown_qr(client, headers, math101):
    start(client, headers['teacher'], math101.id)
    resp = scan(client, headers['teacher'], 'qr-nobody', math101.id)
    assert resp.status_code == 404


def test_scan_requires_fields(client, headers):
    assert client.post('/scan/scan', json={}, headers=headers['teacher']).status_code == 400


def test_one_active_session_per_subject(client, headers, math101):
    first = start(client, headers['teacher'], math101.id)
    assert first.status_code == 201
    assert start(client, headers['admin'], math101.id).status_code == 409
    assert ScanSession.query.filter_by(subject_id=math101.id, is_active=True).count() == 1

    session_id = first.get_json()['data']['id']
    ended = client.put(f'/scan/session/end/{session_id}', headers=headers['teacher'])
    assert ended.status_code == 200
    assert ended.get_json()['data']['is_active'] is False
    assert client.put(f'/scan/session/end/{session_id}', headers=headers['teacher']).status_code == 404

    # A new session may start once the previous one ended
    assert start(client, headers['teacher'], math101.id).status_code == 201


def test_start_session_unknown_subject(client, headers):
    assert start(client, headers['teacher'], 999).status_code == 404


def test_viewer_can_read_but_not_scan(client, headers, math101):
    assert start(client, headers['viewer'], math101.id).status_code == 403
    assert client.get('/scan/session/active', headers=headers['viewer']).status_code == 200
    assert client.get('/scan/today', headers=headers['viewer']).status_code == 200


def test_session_details(client, headers, math101, john):
    session_id = start(client, headers['teacher'], math101.id).get_json()['data']['id']
    scan(client, headers['teacher'], 'qr-john-doe-001', math101.id)

    active = client.get('/scan/session/active', headers=headers['teacher']).get_json()['data']
    assert [s['subject_code'] for s in active] == ['MATH101']

    detail = client.get(f'/scan/session/{session_id}', headers=headers['teacher']).get_json()['data']
    assert detail['subject_name'] == 'Mathematics 101'
    assert detail['attendance_count'] == 1


def test_manual_attendance(client, headers, math101, john, jane):
    with email_service.mail.record_messages() as outbox:
        late = client.post('/scan/attendance/manual', headers=headers['teacher'], json={
            'student_id': john.id, 'subject_id': math101.id, 'date': '2024-03-01', 'status': 'late'
        })
        present = client.post('/scan/attendance/manual', headers=headers['teacher'], json={
            'student_id': jane.id, 'subject_id': math101.id, 'date': '2024-03-01', 'status': 'present',
            'time_in': '2024-03-01T08:05:00'
        })
    assert late.status_code == 201
    assert present.status_code == 201
    assert present.get_json()['data']['time_in'] == '2024-03-01T08:05:00'
    # only `present` is confirmed by email
    assert [m.recipients for m in outbox] == [['jane.smith@students.test']]

    duplicate = client.post('/scan/attendance/manual', headers=headers['teacher'], json={
        'student_id': john.id, 'subject_id': math101.id, 'date': '2024-03-01', 'status': 'absent'
    })
    assert duplicate.status_code == 409


def test_manual_attendance_validation(client, headers, math101, john):
    bad_status = client.post('/scan/attendance/manual', headers=headers['teacher'], json={
        'student_id': john.id, 'subject_id': math101.id, 'date': '2024-03-01', 'status': 'excused'
    })
    assert bad_status.status_code == 400

    bad_date = client.post('/scan/attendance/manual', headers=headers['teacher'], json={
        'student_id': john.id, 'subject_id': math101.id, 'date': '03/01/2024', 'status': 'present'
    })
    assert bad_date.status_code == 400

    unknown_student = client.post('/scan/attendance/manual', headers=headers['teacher'], json={
        'student_id': 999, 'subject_id': math101.id, 'date': '2024-03-01', 'status': 'present'
    })
    assert unknown_student.status_code == 404


def test_update_and_delete_record(client, headers, math101, john):
    start(client, headers['teacher'], math101.id)
    record_id = scan(client, headers['teacher'], 'qr-john-doe-001', math101.id).get_json()['data']['attendance']['id']

    updated = client.put(f'/scan/attendance/{record_id}', json={'status': 'late'}, headers=headers['teacher'])
    assert updated.status_code == 200
    assert updated.get_json()['data']['status'] == 'late'
    # same status again is fine
    again = client.put(f'/scan/attendance/{record_id}', json={'status': 'late'}, headers=headers['teacher'])
    assert again.status_code == 200

    assert client.put(f'/scan/attendance/{record_id}', json={'status': 'gone'},
                      headers=headers['teacher']).status_code == 400

    manual = client.put(f'/scan/attendance/manual/{record_id}', headers=headers['teacher'],
                        json={'status': 'present', 'time_in': '2024-03-04T07:59:00'})
    assert manual.get_json()['data']['time_in'] == '2024-03-04T07:59:00'

    assert client.delete(f'/scan/attendance/{record_id}', headers=headers['teacher']).status_code == 403
    assert client.delete(f'/scan/attendance/{record_id}', headers=headers['admin']).status_code == 200
    assert db.session.get(AttendanceRecord, record_id) is None


def test_attendance_queries(client, headers, enrolled, john, jane):
    subject_id = enrolled.id
    start(client, headers['teacher'], subject_id)
    scan(client, headers['teacher'], 'qr-john-doe-001', subject_id)

    day = client.get(f'/scan/attendance/{subject_id}/2024-03-04', headers=headers['viewer']).get_json()['data']
    assert [r['student_name'] for r in day] == ['John Doe']

    roster = client.get(f'/scan/students/{subject_id}?date=2024-03-04', headers=headers['teacher']).get_json()['data']
    statuses = {r['full_name']: (r['status'], r['is_default_absent']) for r in roster}
    assert statuses == {'John Doe': ('present', False), 'Jane Q Smith': ('absent', True)}

    assert client.get(f'/scan/students/{subject_id}', headers=headers['teacher']).status_code == 400

    summary = client.get(f'/scan/attendance/summary/{subject_id}', headers=headers['viewer']).get_json()['data']
    assert summary == [{
        'date': '2024-03-04', 'total_attendance': 1, 'present_count': 1, 'absent_count': 0, 'late_count': 0,
    }]

    today = client.get('/scan/today', headers=headers['viewer']).get_json()['data']
    assert today[0]['subject_code'] == 'MATH101'
    assert today[0]['attendance_count'] == 1
    assert today[0]['session_start'] == '2024-03-04T09:00:00'


def test_scan_next_day_is_a_new_record(client, clock, headers, math101, john):
    start(client, headers['teacher'], math101.id)
    assert scan(client, headers['teacher'], 'qr-john-doe-001', math101.id).status_code == 201
    clock.advance(days=1)
    assert scan(client, headers['teacher'], 'qr-john-doe-001', math101.id).status_code == 201
    assert AttendanceRecord.query.filter_by(student_id=john.id).count() == 2
