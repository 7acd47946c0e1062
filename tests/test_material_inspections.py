"""Tests for material receiving inspections."""

import io
import json
import os
from datetime import date

import app as qc

BASE = {
    'material_type': 'bar',
    'material_grade': 'S45C',
    'batch_number': 'B-2026-001',
    'supplier_name': 'Siam Steel Bar',
    'receipt_date': '2026-03-05',
    'inspector': 'Inspector A',
    'bar_inspections': [
        {'barNumber': 1, 'odMeasurement': 25.0, 'lengthMeasurement': 3000, 'surfaceCondition': 'OK'},
        {'barNumber': 2, 'odMeasurement': 25.2, 'lengthMeasurement': 3002, 'surfaceCondition': 'OK'},
    ],
}


def _seed_inspection(client, **overrides):
    payload = dict(BASE, **overrides)
    resp = client.post('/api/material-inspections', json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['data']


def _upload_files(app):
    folder = os.path.join(app.config['UPLOAD_FOLDER'], 'materials')
    return os.listdir(folder) if os.path.isdir(folder) else []


class TestCreateMaterialInspection:
    def test_sequential_numbers(self, inspector_client):
        year = date.today().year
        first = _seed_inspection(inspector_client)
        second = _seed_inspection(inspector_client, batch_number='B-2026-002')
        assert first['inspection_number'] == f'MI-{year}-00001'
        assert second['inspection_number'] == f'MI-{year}-00002'
        assert first['overall_result'] == 'pending'
        assert first['bar_inspections'][1]['odMeasurement'] == 25.2

    def test_missing_required_fields(self, inspector_client):
        resp = inspector_client.post('/api/material-inspections', json={'material_type': 'bar'})
        assert resp.status_code == 400
        error = resp.get_json()['error']
        assert 'batch_number' in error and 'receipt_date' in error

    def test_invalid_material_type(self, inspector_client):
        resp = inspector_client.post('/api/material-inspections', json=dict(BASE, material_type='tube'))
        assert resp.status_code == 400

    def test_multipart_with_attachment(self, app, inspector_client):
        form = {k: v for k, v in BASE.items() if k != 'bar_inspections'}
        form['bar_inspections'] = json.dumps(BASE['bar_inspections'])
        form['files'] = (io.BytesIO(b'%PDF-1.4 mill cert'), 'mill cert.pdf')
        resp = inspector_client.post('/api/material-inspections', data=form, content_type='multipart/form-data')
        assert resp.status_code == 201, resp.get_json()
        data = resp.get_json()['data']
        assert len(data['bar_inspections']) == 2
        assert data['attachments'][0]['file_name'] == 'mill cert.pdf'
        assert data['attachments'][0]['file_type'] == 'pdf'
        assert len(_upload_files(app)) == 1

    def test_disallowed_file_type(self, app, inspector_client, db):
        form = {k: v for k, v in BASE.items() if k != 'bar_inspections'}
        form['files'] = (io.BytesIO(b'MZ'), 'virus.exe')
        resp = inspector_client.post('/api/material-inspections', data=form, content_type='multipart/form-data')
        assert resp.status_code == 400
        assert db.execute('SELECT COUNT(*) FROM material_inspections').fetchone()[0] == 0

    def test_failure_leaves_no_rows_or_files(self, app, inspector_client, db, monkeypatch):
        def broken_audit(*args, **kwargs):
            raise RuntimeError('audit store unavailable')

        monkeypatch.setattr(qc, 'log_audit', broken_audit)
        form = {k: v for k, v in BASE.items() if k != 'bar_inspections'}
        form['files'] = (io.BytesIO(b'%PDF-1.4'), 'cert.pdf')
        resp = inspector_client.post('/api/material-inspections', data=form, content_type='multipart/form-data')
        assert resp.status_code == 500
        assert db.execute('SELECT COUNT(*) FROM material_inspections').fetchone()[0] == 0
        assert db.execute('SELECT COUNT(*) FROM attachments').fetchone()[0] == 0
        assert _upload_files(app) == []

    def test_failed_result_notifies_quality(self, inspector_client, db, user_ids):
        _seed_inspection(inspector_client, overall_result='fail')
        rows = db.execute('SELECT user_id FROM notifications').fetchall()
        assert {r['user_id'] for r in rows} == {user_ids['admin'], user_ids['qm']}

    def test_operator_cannot_create(self, operator_client):
        assert operator_client.post('/api/material-inspections', json=BASE).status_code == 403


class TestListMaterialInspections:
    def test_search_is_case_insensitive(self, inspector_client):
        _seed_inspection(inspector_client)
        _seed_inspection(inspector_client, batch_number='X-9', supplier_name='Eastern Wire Rod')
        resp = inspector_client.get('/api/material-inspections?search=siam')
        assert [r['batch_number'] for r in resp.get_json()['data']] == ['B-2026-001']

    def test_month_and_status_filters(self, inspector_client):
        _seed_inspection(inspector_client)
        _seed_inspection(inspector_client, receipt_date='2026-04-01', overall_result='pass')
        assert len(inspector_client.get('/api/material-inspections?month=2026-04').get_json()['data']) == 1
        assert len(inspector_client.get('/api/material-inspections?status=pending').get_json()['data']) == 1

    def test_bad_month(self, inspector_client):
        assert inspector_client.get('/api/material-inspections?month=April').status_code == 400

    def test_pagination(self, inspector_client):
        for i in range(3):
            _seed_inspection(inspector_client, batch_number=f'B-{i}')
        body = inspector_client.get('/api/material-inspections?page=2&limit=2').get_json()
        assert body['pagination'] == {'page': 2, 'limit': 2, 'total': 3, 'totalPages': 2}
        assert len(body['data']) == 1
        assert body['data'][0]['batch_number'] == 'B-0'

    def test_stats(self, inspector_client):
        _seed_inspection(inspector_client, overall_result='pass')
        _seed_inspection(inspector_client, overall_result='fail')
        _seed_inspection(inspector_client)
        stats = inspector_client.get('/api/material-inspections/stats').get_json()['data']
        assert stats == {'totalInspections': 3, 'passCount': 1, 'failCount': 1, 'pendingCount': 1,
                         'passRate': 33.3}

    def test_stats_empty(self, inspector_client):
        stats = inspector_client.get('/api/material-inspections/stats').get_json()['data']
        assert stats['passRate'] == 0.0


class TestUpdateMaterialInspection:
    def test_partial_update_audited(self, inspector_client, db):
        item = _seed_inspection(inspector_client)
        resp = inspector_client.put(f"/api/material-inspections/{item['id']}",
                                    json={'invoice_number': 'INV-77', 'reason': 'invoice arrived'})
        assert resp.get_json()['data']['invoice_number'] == 'INV-77'
        assert resp.get_json()['data']['batch_number'] == 'B-2026-001'
        audit = db.execute("SELECT * FROM audit_logs WHERE entity_type = 'material_inspection' "
                           "AND action = 'update'").fetchone()
        assert audit['reason'] == 'invoice arrived'
        assert json.loads(audit['changes'])['invoice_number'] == [None, 'INV-77']

    def test_required_field_cannot_be_blanked(self, inspector_client):
        item = _seed_inspection(inspector_client)
        resp = inspector_client.put(f"/api/material-inspections/{item['id']}", json={'batch_number': ''})
        assert resp.status_code == 400

    def test_unknown_id(self, inspector_client):
        assert inspector_client.put('/api/material-inspections/999', json={'notes': 'x'}).status_code == 404


class TestApproveMaterialInspection:
    def test_approve_pending(self, inspector_client, qm_client, user_ids):
        item = _seed_inspection(inspector_client)
        resp = qm_client.post(f"/api/material-inspections/{item['id']}/approve")
        data = resp.get_json()['data']
        assert data['overall_result'] == 'pass'
        assert data['approved_by'] == user_ids['qm']
        assert data['approved_at']

    def test_only_pending_can_be_approved(self, inspector_client, qm_client):
        item = _seed_inspection(inspector_client, overall_result='fail')
        assert qm_client.post(f"/api/material-inspections/{item['id']}/approve").status_code == 400

    def test_inspector_cannot_approve(self, inspector_client):
        item = _seed_inspection(inspector_client)
        assert inspector_client.post(f"/api/material-inspections/{item['id']}/approve").status_code == 403


class TestDeleteMaterialInspection:
    def test_hard_delete_removes_files(self, app, inspector_client, qm_client, db):
        form = {k: v for k, v in BASE.items() if k != 'bar_inspections'}
        form['files'] = (io.BytesIO(b'%PDF-1.4'), 'cert.pdf')
        item = inspector_client.post('/api/material-inspections', data=form,
                                     content_type='multipart/form-data').get_json()['data']
        assert qm_client.delete(f"/api/material-inspections/{item['id']}").status_code == 200
        assert db.execute('SELECT COUNT(*) FROM attachments').fetchone()[0] == 0
        assert _upload_files(app) == []

    def test_soft_delete_and_restore(self, inspector_client, qm_client):
        item = _seed_inspection(inspector_client)
        assert qm_client.delete(f"/api/material-inspections/{item['id']}/soft").status_code == 200
        assert qm_client.get('/api/material-inspections').get_json()['data'] == []
        listed = qm_client.get('/api/material-inspections?include_deleted=1').get_json()['data']
        assert listed[0]['deleted_at']

        resp = qm_client.post(f"/api/material-inspections/{item['id']}/restore")
        assert resp.get_json()['data']['deleted_at'] is None
        assert len(qm_client.get('/api/material-inspections').get_json()['data']) == 1

    def test_restore_not_deleted(self, inspector_client, qm_client):
        item = _seed_inspection(inspector_client)
        assert qm_client.post(f"/api/material-inspections/{item['id']}/restore").status_code == 400

    def test_bulk_delete(self, inspector_client, qm_client):
        ids = [_seed_inspection(inspector_client, batch_number=f'B-{i}')['id'] for i in range(3)]
        resp = qm_client.delete('/api/material-inspections/bulk', json={'ids': ids[:2] + [999]})
        assert resp.get_json()['data']['deletedCount'] == 2
        assert len(qm_client.get('/api/material-inspections').get_json()['data']) == 1

    def test_bulk_delete_empty(self, qm_client):
        assert qm_client.delete('/api/material-inspections/bulk', json={'ids': []}).status_code == 400

    def test_bulk_delete_none_found(self, qm_client):
        assert qm_client.delete('/api/material-inspections/bulk', json={'ids': [41, 42]}).status_code == 404

    def test_cleanup_removes_old_records(self, inspector_client, admin_client, db):
        old = _seed_inspection(inspector_client, batch_number='OLD')
        _seed_inspection(inspector_client, batch_number='NEW')
        db.execute("UPDATE material_inspections SET created_at = '2020-01-01 00:00:00' WHERE id = ?", [old['id']])
        db.commit()
        resp = admin_client.delete('/api/material-inspections/cleanup?older_than=90')
        assert resp.get_json()['data']['deletedCount'] == 1
        remaining = admin_client.get('/api/material-inspections').get_json()['data']
        assert [r['batch_number'] for r in remaining] == ['NEW']

    def test_cleanup_admin_only(self, qm_client):
        assert qm_client.delete('/api/material-inspections/cleanup').status_code == 403


class TestMaterialStatistics:
    def test_bar_statistics(self, inspector_client):
        item = _seed_inspection(inspector_client)
        stats = inspector_client.get(f"/api/material-inspections/{item['id']}/statistics").get_json()['data']
        assert stats['statistics']['pieces'] == 2
        assert stats['statistics']['odMeasurement']['average'] == 25.1
        assert stats['statistics']['lengthMeasurement']['range'] == 2.0

    def test_window_adds_evaluation(self, inspector_client):
        item = _seed_inspection(inspector_client)
        url = f"/api/material-inspections/{item['id']}/statistics?odMeasurement_min=24.9&odMeasurement_max=25.1"
        stats = inspector_client.get(url).get_json()['data']['statistics']
        evaluation = stats['odMeasurement']['evaluation']
        assert [d['result'] for d in evaluation['details']] == ['pass', 'fail']
        assert evaluation['passRate'] == 50.0
        assert evaluation['valid'] is False
        assert 'evaluation' not in stats['lengthMeasurement']

    def test_window_must_be_numeric(self, inspector_client):
        item = _seed_inspection(inspector_client)
        resp = inspector_client.get(f"/api/material-inspections/{item['id']}/statistics?diameter_max=thick")
        assert resp.status_code == 400

    def test_pdf(self, inspector_client):
        item = _seed_inspection(inspector_client)
        resp = inspector_client.get(f"/api/material-inspections/{item['id']}/pdf")
        assert resp.status_code == 200
        assert resp.mimetype == 'application/pdf'
        assert resp.data.startswith(b'%PDF')
