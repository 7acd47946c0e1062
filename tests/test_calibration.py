"""Tests for instruments, calibration results and QPR tickets."""

import io
import os
from datetime import date, timedelta

import app as qc
from qc_calc import add_months


def _register(client, serial='CAL-100', **extra):
    payload = {'name': 'Digital Caliper', 'serial_number': serial, 'location': 'Receiving'}
    payload.update(extra)
    resp = client.post('/api/calibration/instruments', json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['data']


def _calibrate(client, instrument_id, measured, standard=10.0, **extra):
    payload = {'standard_value': standard, 'measured_value': measured, 'calibration_date': '2026-03-01'}
    payload.update(extra)
    return client.post(f'/api/calibration/instruments/{instrument_id}/calibrations', json=payload)


class TestInstruments:
    def test_register_with_default_plan(self, inspector_client):
        item = _register(inspector_client)
        expected = add_months(date.today(), 6).isoformat()
        assert item['frequency_months'] == 6
        assert item['acceptance_criteria'] == 0.05
        assert item['next_cal_date'] == expected
        assert item['plan_next_cal_date'] == expected
        assert item['status'] == 'ACTIVE'
        assert item['due_status'] == 'ok'

    def test_register_custom_plan(self, inspector_client):
        item = _register(inspector_client, frequency_months=12, acceptance_criteria=0.5)
        assert item['frequency_months'] == 12
        assert item['next_cal_date'] == add_months(date.today(), 12).isoformat()

    def test_duplicate_serial(self, inspector_client):
        _register(inspector_client)
        resp = inspector_client.post('/api/calibration/instruments',
                                     json={'name': 'Other', 'serial_number': 'CAL-100'})
        assert resp.status_code == 409

    def test_numeric_serial_number(self, inspector_client):
        item = _register(inspector_client, serial=40012)
        assert item['serial_number'] == '40012'
        resp = inspector_client.post('/api/calibration/instruments',
                                     json={'name': 'Second caliper', 'serial_number': '40012'})
        assert resp.status_code == 409

    def test_invalid_values(self, inspector_client):
        base = {'name': 'Gauge', 'serial_number': 'G-1'}
        assert inspector_client.post('/api/calibration/instruments',
                                     json=dict(base, status='BROKEN')).status_code == 400
        assert inspector_client.post('/api/calibration/instruments',
                                     json=dict(base, frequency_months=0)).status_code == 400
        assert inspector_client.post('/api/calibration/instruments',
                                     json=dict(base, acceptance_criteria=-1)).status_code == 400

    def test_update_plan_keeps_next_date(self, inspector_client):
        item = _register(inspector_client)
        data = inspector_client.put(f"/api/calibration/instruments/{item['id']}",
                                    json={'frequency_months': 3, 'location': 'Lab'}).get_json()['data']
        assert data['frequency_months'] == 3
        assert data['location'] == 'Lab'
        assert data['next_cal_date'] == item['next_cal_date']

    def test_change_status(self, inspector_client, qm_client):
        item = _register(inspector_client)
        url = f"/api/calibration/instruments/{item['id']}/status"
        assert inspector_client.patch(url, json={'status': 'SPARE'}).status_code == 403
        assert qm_client.patch(url, json={'status': 'UNKNOWN'}).status_code == 400
        data = qm_client.patch(url, json={'status': 'suspend', 'reason': 'dropped'}).get_json()['data']
        assert data['status'] == 'SUSPEND'

    def test_list_filters(self, inspector_client, qm_client):
        first = _register(inspector_client)
        _register(inspector_client, serial='MIC-200', name='Micrometer')
        qm_client.patch(f"/api/calibration/instruments/{first['id']}/status", json={'status': 'MISSING'})
        missing = inspector_client.get('/api/calibration/instruments?status=missing').get_json()['data']
        assert [i['serial_number'] for i in missing] == ['CAL-100']
        found = inspector_client.get('/api/calibration/instruments?search=micro').get_json()['data']
        assert [i['serial_number'] for i in found] == ['MIC-200']


class TestDueSoon:
    def test_due_and_overdue(self, inspector_client, db):
        soon = _register(inspector_client, serial='S-1')
        late = _register(inspector_client, serial='L-1')
        _register(inspector_client, serial='OK-1')
        db.execute('UPDATE calibration_plans SET next_cal_date = ? WHERE instrument_id = ?',
                   [(date.today() + timedelta(days=10)).isoformat(), soon['id']])
        db.execute('UPDATE calibration_plans SET next_cal_date = ? WHERE instrument_id = ?',
                   [(date.today() - timedelta(days=3)).isoformat(), late['id']])
        db.commit()

        rows = inspector_client.get('/api/calibration/due-soon').get_json()['data']
        assert [(r['serial_number'], r['due_status']) for r in rows] == [('L-1', 'overdue'), ('S-1', 'due_soon')]

    def test_custom_window(self, inspector_client, db):
        item = _register(inspector_client)
        db.execute('UPDATE calibration_plans SET next_cal_date = ? WHERE instrument_id = ?',
                   [(date.today() + timedelta(days=45)).isoformat(), item['id']])
        db.commit()
        assert inspector_client.get('/api/calibration/due-soon').get_json()['data'] == []
        assert len(inspector_client.get('/api/calibration/due-soon?days=60').get_json()['data']) == 1


class TestCalibrationResults:
    def test_pass_on_the_limit(self, inspector_client):
        item = _register(inspector_client)
        body = _calibrate(inspector_client, item['id'], 10.05).get_json()['data']
        assert body['result']['error_value'] == 0.05
        assert body['result']['result_status'] == 'PASS'
        assert body['qprTicket'] is None

        instrument = inspector_client.get(f"/api/calibration/instruments/{item['id']}").get_json()['data']
        assert instrument['last_cal_date'] == '2026-03-01'
        assert instrument['next_cal_date'] == '2026-09-01'
        assert instrument['plan_next_cal_date'] == '2026-09-01'
        assert len(instrument['results']) == 1

    def test_fail_opens_qpr_ticket(self, inspector_client, db):
        item = _register(inspector_client)
        body = _calibrate(inspector_client, item['id'], 9.9).get_json()['data']
        assert body['result']['result_status'] == 'FAIL'
        assert body['result']['error_value'] == -0.1
        ticket = body['qprTicket']
        assert ticket['ticket_no'] == f"QPR-{date.today().strftime('%Y%m%d')}-0001"
        assert ticket['approval_status'] == 'PENDING'
        assert ticket['calibration_result_id'] == body['result']['id']

        instrument = inspector_client.get(f"/api/calibration/instruments/{item['id']}").get_json()['data']
        assert instrument['status'] == 'NG'
        assert instrument['last_cal_date'] is None
        kinds = {r['notification_type'] for r in db.execute('SELECT notification_type FROM notifications')}
        assert kinds == {'calibration_failed'}

        second = _calibrate(inspector_client, item['id'], 10.3).get_json()['data']
        assert second['qprTicket']['ticket_no'].endswith('-0002')

    def test_pass_after_ng_reactivates(self, inspector_client):
        item = _register(inspector_client)
        _calibrate(inspector_client, item['id'], 11)
        _calibrate(inspector_client, item['id'], 10.01, calibration_date='2026-03-02')
        instrument = inspector_client.get(f"/api/calibration/instruments/{item['id']}").get_json()['data']
        assert instrument['status'] == 'ACTIVE'

    def test_history_newest_first(self, inspector_client):
        item = _register(inspector_client)
        _calibrate(inspector_client, item['id'], 10.01, calibration_date='2026-01-05')
        _calibrate(inspector_client, item['id'], 10.02, calibration_date='2026-02-05')
        rows = inspector_client.get(f"/api/calibration/instruments/{item['id']}/calibrations").get_json()['data']
        assert [r['calibration_date'] for r in rows] == ['2026-02-05', '2026-01-05']

    def test_instrument_without_plan(self, inspector_client, db):
        cur = db.execute("INSERT INTO instruments (name, serial_number) VALUES ('Loose gauge', 'NP-1')")
        db.commit()
        assert _calibrate(inspector_client, cur.lastrowid, 10).status_code == 400

    def test_unknown_master_standard(self, inspector_client):
        item = _register(inspector_client)
        assert _calibrate(inspector_client, item['id'], 10, master_standard_id=77).status_code == 400

    def test_values_required(self, inspector_client):
        item = _register(inspector_client)
        resp = inspector_client.post(f"/api/calibration/instruments/{item['id']}/calibrations",
                                     json={'standard_value': 10})
        assert resp.status_code == 400

    def test_failure_leaves_no_rows_or_files(self, app, inspector_client, db, monkeypatch):
        item = _register(inspector_client)

        def broken_audit(*args, **kwargs):
            raise RuntimeError('audit store unavailable')

        monkeypatch.setattr(qc, 'log_audit', broken_audit)
        resp = inspector_client.post(f"/api/calibration/instruments/{item['id']}/calibrations", data={
            'standard_value': '10', 'measured_value': '10.4', 'calibration_date': '2026-03-01',
            'files': (io.BytesIO(b'%PDF-1.4'), 'certificate.pdf'),
        }, content_type='multipart/form-data')
        assert resp.status_code == 500
        for table in ('calibration_results', 'qpr_tickets', 'notifications', 'attachments'):
            assert db.execute(f'SELECT COUNT(*) FROM {table}').fetchone()[0] == 0
        instrument = db.execute('SELECT status FROM instruments WHERE id = ?', [item['id']]).fetchone()
        assert instrument['status'] == 'ACTIVE'
        folder = os.path.join(app.config['UPLOAD_FOLDER'], 'calibration')
        assert not os.path.isdir(folder) or os.listdir(folder) == []


class TestQprTickets:
    def test_close_ticket(self, inspector_client, qm_client):
        item = _register(inspector_client)
        ticket = _calibrate(inspector_client, item['id'], 12).get_json()['data']['qprTicket']
        url = f"/api/calibration/qpr-tickets/{ticket['id']}"
        assert inspector_client.patch(url, json={'approval_status': 'CLOSED'}).status_code == 403
        assert qm_client.patch(url, json={'approval_status': 'DONE'}).status_code == 400

        data = qm_client.patch(url, json={'approval_status': 'closed', 'remarks': 'sent for repair'}).get_json()['data']
        assert data['approval_status'] == 'CLOSED'
        assert data['remarks'] == 'sent for repair'

        assert qm_client.get('/api/calibration/qpr-tickets?status=PENDING').get_json()['data'] == []
        closed = qm_client.get('/api/calibration/qpr-tickets?status=closed').get_json()['data']
        assert closed[0]['serial_number'] == 'CAL-100'
