"""Tests for KPI entries, andon alerts, claims, actions and daily production."""

import io
import json
from datetime import date

import pytest
from openpyxl import load_workbook

TODAY = date.today()
STAMP = TODAY.strftime('%Y%m%d')


def _entry(client, disposition='GOOD', machine='CNC-01', **extra):
    payload = {'machine_code': machine, 'part_number': 'GP-1001', 'disposition': disposition,
               'operator_name': 'Op A', 'shift': 'A'}
    if disposition != 'GOOD':
        payload['defect_code'] = 'D01'
    payload.update(extra)
    resp = client.post('/api/kpi/entries', json=payload)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()['data']


def _production(client, **extra):
    payload = {'machine_code': 'CNC-01', 'part_number': 'GP-1001', 'operator_name': 'Op A', 'shift': 'A',
               'total_produced': 100, 'good_qty': 90, 'rework_qty': 6, 'scrap_qty': 4,
               'rework_good_qty': 5, 'rework_scrap_qty': 1}
    payload.update(extra)
    return client.post('/api/kpi/production', json=payload)


class TestKpiMasterData:
    def test_master_data_lists(self, seeded, operator_client):
        data = operator_client.get('/api/kpi/master-data').get_json()['data']
        assert [m['code'] for m in data['machines']] == ['CNC-01', 'CNC-02', 'HT-01', 'MC-01']
        assert len(data['defectCodes']) == 5
        assert {t['metric_code'] for t in data['targets']} >= {'FPY', 'CLAIM_PPM_AUTO'}

    def test_create_machine(self, seeded, qm_client):
        resp = qm_client.post('/api/kpi/master/machines', json={'code': 'CNC-03', 'name': 'CNC Lathe 3'})
        assert resp.status_code == 201
        assert resp.get_json()['data']['status'] == 'running'

    def test_duplicate_code(self, seeded, qm_client):
        resp = qm_client.post('/api/kpi/master/defect-codes', json={'code': 'D01', 'name': 'Again'})
        assert resp.status_code == 409

    def test_target_value_numeric(self, seeded, qm_client):
        resp = qm_client.post('/api/kpi/master/targets',
                              json={'metric_code': 'X', 'metric_name': 'X', 'target_value': 'lots'})
        assert resp.status_code == 400

    def test_unknown_kind_and_role(self, seeded, qm_client, operator_client):
        assert qm_client.post('/api/kpi/master/shifts', json={'code': 'A'}).status_code == 404
        assert operator_client.post('/api/kpi/master/machines',
                                    json={'code': 'X', 'name': 'X'}).status_code == 403


class TestInspectionEntries:
    def test_good_entry(self, seeded, operator_client):
        body = _entry(operator_client, lot_number='LOT-1', product_line_code='AUTO')
        entry = body['entry']
        assert entry['entry_number'] == f'IE-{STAMP}-0001'
        assert entry['machine_code'] == 'CNC-01'
        assert entry['product_line_code'] == 'AUTO'
        assert entry['quantity'] == 1
        assert body['consecutiveNG'] == 0
        assert body['andonTriggered'] is False
        assert body['andonAlert'] is None

    def test_defect_code_required_for_ng(self, seeded, operator_client):
        resp = operator_client.post('/api/kpi/entries', json={
            'machine_code': 'CNC-01', 'part_number': 'P', 'disposition': 'SCRAP', 'operator_name': 'Op'})
        assert resp.status_code == 400

    @pytest.mark.parametrize('override', [
        {'machine_code': 'NOPE'},
        {'disposition': 'MAYBE'},
        {'shift': 'C'},
        {'defect_code': 'Z99', 'disposition': 'REWORK'},
        {'quantity': 0},
    ])
    def test_rejected_entries(self, seeded, operator_client, override):
        payload = {'machine_code': 'CNC-01', 'part_number': 'P', 'disposition': 'GOOD', 'operator_name': 'Op'}
        payload.update(override)
        assert operator_client.post('/api/kpi/entries', json=payload).status_code == 400

    def test_numeric_part_number(self, seeded, operator_client):
        entry = _entry(operator_client, part_number=1001, operator_name=7)['entry']
        assert entry['part_number'] == '1001'
        assert entry['operator_name'] == '7'

    def test_list_filters(self, seeded, operator_client):
        _entry(operator_client)
        _entry(operator_client, 'REWORK', machine='MC-01', shift='B')
        body = operator_client.get(f'/api/kpi/entries?date={TODAY.isoformat()}&shift=b').get_json()
        assert body['pagination']['total'] == 1
        assert body['data'][0]['defect_code'] == 'D01'
        assert len(operator_client.get('/api/kpi/entries?machine=CNC-01').get_json()['data']) == 1
        assert len(operator_client.get('/api/kpi/entries?defect_category=dimension').get_json()['data']) == 1


class TestAndon:
    def test_third_scrap_opens_alert(self, seeded, operator_client, db):
        assert _entry(operator_client, 'SCRAP')['consecutiveNG'] == 1
        assert _entry(operator_client, 'SCRAP')['andonTriggered'] is False
        body = _entry(operator_client, 'SCRAP')
        assert body['consecutiveNG'] == 3
        assert body['andonTriggered'] is True
        assert body['andonAlert']['alert_number'] == f'AND-{STAMP}-001'
        assert body['andonAlert']['status'] == 'open'
        kinds = {r['notification_type'] for r in db.execute('SELECT notification_type FROM notifications')}
        assert kinds == {'andon_open'}

    def test_active_alert_is_not_duplicated(self, seeded, operator_client, db):
        for _ in range(3):
            _entry(operator_client, 'SCRAP')
        body = _entry(operator_client, 'SCRAP')
        assert body['andonAlert']['alert_number'] == f'AND-{STAMP}-001'
        assert body['andonAlert']['consecutive_ng'] == 4
        assert db.execute('SELECT COUNT(*) FROM andon_alerts').fetchone()[0] == 1

    def test_good_part_breaks_the_run(self, seeded, operator_client):
        _entry(operator_client, 'SCRAP')
        _entry(operator_client, 'SCRAP')
        _entry(operator_client, 'GOOD')
        assert _entry(operator_client, 'SCRAP')['consecutiveNG'] == 1

    def test_rework_does_not_count(self, seeded, operator_client):
        _entry(operator_client, 'SCRAP')
        _entry(operator_client, 'REWORK')
        assert _entry(operator_client, 'SCRAP')['consecutiveNG'] == 1

    def test_runs_are_per_machine(self, seeded, operator_client):
        _entry(operator_client, 'SCRAP')
        _entry(operator_client, 'SCRAP', machine='CNC-02')
        assert _entry(operator_client, 'SCRAP')['consecutiveNG'] == 2

    def test_long_run_is_counted_in_full(self, seeded, operator_client, db):
        machine_id = db.execute("SELECT id FROM machines WHERE code = 'CNC-01'").fetchone()['id']
        for n in range(1, 61):
            db.execute('''
                INSERT INTO inspection_entries (entry_number, inspected_at, shift, machine_id, part_number,
                                                disposition, operator_name)
                VALUES (?, '2026-01-05 08:00:00', 'A', ?, 'GP-1001', 'SCRAP', 'Op A')
            ''', [f'IE-20260105-{n:04d}', machine_id])
        db.commit()
        assert _entry(operator_client, 'SCRAP')['consecutiveNG'] == 61

    def test_acknowledge_then_resolve(self, seeded, operator_client):
        for _ in range(3):
            _entry(operator_client, 'SCRAP')
        number = f'AND-{STAMP}-001'

        alerts = operator_client.get('/api/kpi/andon').get_json()['data']
        assert [a['alert_number'] for a in alerts] == [number]

        ack = operator_client.patch(f'/api/kpi/andon/{number}/acknowledge',
                                    json={'assignee_name': 'Leader B'}).get_json()['data']
        assert ack['status'] == 'acknowledged'
        assert ack['assignee_name'] == 'Leader B'
        assert ack['response_minutes'] >= 0
        assert operator_client.patch(f'/api/kpi/andon/{number}/acknowledge', json={}).status_code == 400

        resolved = operator_client.patch(f"/api/kpi/andon/{ack['id']}/resolve",
                                         json={'root_cause': 'worn insert', 'action_taken': 'insert changed'}
                                         ).get_json()['data']
        assert resolved['status'] == 'resolved'
        assert resolved['root_cause'] == 'worn insert'
        assert operator_client.patch(f'/api/kpi/andon/{number}/resolve', json={}).status_code == 400

        assert _entry(operator_client, 'SCRAP')['andonAlert']['alert_number'] == f'AND-{STAMP}-002'

    def test_unknown_alert(self, seeded, operator_client):
        assert operator_client.patch('/api/kpi/andon/AND-19990101-001/acknowledge', json={}).status_code == 404

    def test_machine_status(self, seeded, operator_client):
        _entry(operator_client, quantity=8)
        _entry(operator_client, 'REWORK')
        _entry(operator_client, 'SCRAP')
        machines = {m['code']: m for m in operator_client.get('/api/kpi/machines/status').get_json()['data']}
        cnc = machines['CNC-01']
        assert (cnc['produced'], cnc['good'], cnc['rework'], cnc['scrap']) == (10, 8, 1, 1)
        assert cnc['fpy'] == 80.0
        assert machines['CNC-02']['produced'] == 0


class TestClaims:
    def test_create_and_close(self, seeded, inspector_client):
        resp = inspector_client.post('/api/kpi/claims', json={
            'claim_date': '2026-03-04', 'claim_category': 'automotive', 'customer': 'Auto Tier 1',
            'part_number': 'GP-1001', 'shipped_qty': 10000, 'defect_qty': 5, 'defect_code': 'D01',
            'product_line_code': 'AUTO'})
        claim = resp.get_json()['data']
        assert claim['claim_number'] == 'CLM-202603-001'
        assert claim['ppm'] == 500.0
        assert claim['defect_code'] == 'D01'
        assert claim['status'] == 'open'

        closed = inspector_client.patch(f"/api/kpi/claims/{claim['id']}",
                                        json={'status': 'Closed', 'root_cause': 'burr'}).get_json()['data']
        assert closed['status'] == 'closed'
        assert closed['closed_at']

    def test_invalid_update(self, seeded, inspector_client):
        claim = inspector_client.post('/api/kpi/claims', json={
            'claim_date': '2026-03-04', 'claim_category': 'industrial', 'customer': 'C',
            'part_number': 'P', 'shipped_qty': 0, 'defect_qty': 0}).get_json()['data']
        assert claim['ppm'] == 0.0
        url = f"/api/kpi/claims/{claim['id']}"
        assert inspector_client.patch(url, json={'status': 'lost'}).status_code == 400
        assert inspector_client.patch(url, json={'customer': 'renamed'}).status_code == 400

    def test_list_filters(self, seeded, inspector_client):
        for category, day in (('automotive', '2026-02-01'), ('industrial', '2026-03-01')):
            inspector_client.post('/api/kpi/claims', json={
                'claim_date': day, 'claim_category': category, 'customer': 'C', 'part_number': 'P',
                'shipped_qty': 100, 'defect_qty': 1})
        body = inspector_client.get('/api/kpi/claims?category=industrial').get_json()
        assert body['pagination']['total'] == 1
        ranged = inspector_client.get('/api/kpi/claims?date_from=2026-01-01&date_to=2026-02-28').get_json()
        assert [c['claim_category'] for c in ranged['data']] == ['automotive']


class TestActionPlans:
    def test_priority_order_and_completion(self, seeded, inspector_client):
        for title, priority in (('Label bins', 'low'), ('Stop line', 'critical'), ('Fix gauge', 'high')):
            inspector_client.post('/api/kpi/actions', json={'title': title, 'priority': priority})
        actions = inspector_client.get('/api/kpi/actions').get_json()['data']
        assert [a['priority'] for a in actions] == ['critical', 'high', 'low']
        assert actions[0]['action_number'] == f'ACT-{STAMP}-002'

        done = inspector_client.patch(f"/api/kpi/actions/{actions[0]['id']}",
                                      json={'status': 'done', 'after_value': 0.2}).get_json()['data']
        assert done['completed_at']
        assert done['after_value'] == 0.2
        assert [a['title'] for a in inspector_client.get('/api/kpi/actions?status=open').get_json()['data']] == [
            'Fix gauge', 'Label bins']

    def test_invalid_priority(self, seeded, inspector_client):
        assert inspector_client.post('/api/kpi/actions', json={'title': 'X', 'priority': 'urgent'}).status_code == 400


class TestDailyProduction:
    def test_record_and_accumulate(self, seeded, operator_client):
        first = _production(operator_client, notes='start of run').get_json()['data']
        assert first['final_good_qty'] == 95
        assert first['final_reject_qty'] == 5
        assert first['good_pct'] == 95.0

        second = _production(operator_client, total_produced=50, good_qty=50, rework_qty=0, scrap_qty=0,
                             rework_good_qty=0, rework_scrap_qty=0, notes='second batch').get_json()['data']
        assert second['id'] == first['id']
        assert second['total_produced'] == 150
        assert second['good_qty'] == 140
        assert second['notes'] == 'start of run; second batch'

    def test_quantities_cannot_exceed_total(self, seeded, operator_client):
        resp = _production(operator_client, total_produced=10, good_qty=9, rework_qty=1, scrap_qty=1)
        assert resp.status_code == 400

    def test_numeric_part_number(self, seeded, operator_client):
        first = _production(operator_client, part_number=1001).get_json()['data']
        second = _production(operator_client, part_number='1001').get_json()['data']
        assert first['part_number'] == '1001'
        assert second['id'] == first['id']
        assert second['total_produced'] == 200

    def test_entries_written_per_disposition(self, seeded, operator_client):
        _production(operator_client, defects=[{'defect_code': 'S01', 'defect_type': 'rework', 'quantity': 6},
                                              {'defect_code': 'D02', 'defect_type': 'scrap', 'quantity': 4}])
        entries = operator_client.get('/api/kpi/entries').get_json()['data']
        by_disposition = {e['disposition']: e for e in entries}
        assert by_disposition['GOOD']['quantity'] == 90
        assert by_disposition['REWORK']['defect_code'] == 'S01'
        assert by_disposition['SCRAP']['defect_code'] == 'D02'

    def test_report_with_breakdown(self, seeded, operator_client):
        _production(operator_client, defects=[{'defect_code': 'S01', 'defect_type': 'rework', 'quantity': 6},
                                              {'defect_code': 'D02', 'defect_type': 'scrap', 'quantity': 4}])
        _production(operator_client, machine_code='MC-01', part_number='SH-2040', total_produced=20,
                    good_qty=20, rework_qty=0, scrap_qty=0, rework_good_qty=0, rework_scrap_qty=0)
        report = operator_client.get(f'/api/kpi/production/report?date={TODAY.isoformat()}').get_json()['data']
        assert len(report['records']) == 2
        assert report['totals']['total_produced'] == 120
        assert report['totals']['final_good_qty'] == 115
        assert [b['defect_code'] for b in report['defectBreakdown']] == ['S01', 'D02']

        line = operator_client.get('/api/kpi/production/report?line=MC-01').get_json()['data']
        assert [r['part_number'] for r in line['records']] == ['SH-2040']

    def test_exports(self, seeded, operator_client):
        _production(operator_client, defects=[{'defect_code': 'S01', 'quantity': 6}])

        pdf = operator_client.get('/api/kpi/production/export?format=pdf')
        assert pdf.data.startswith(b'%PDF')

        xlsx = operator_client.get('/api/kpi/production/export?format=xlsx')
        workbook = load_workbook(io.BytesIO(xlsx.data))
        assert workbook.sheetnames == ['Production', 'Defects']
        assert workbook['Production']['A6'].value == 'CNC-01'

        csv = operator_client.get('/api/kpi/production/export?format=csv')
        lines = csv.get_data(as_text=True).splitlines()
        assert lines[0].startswith('"Line","Part No"')
        assert lines[1].startswith('"CNC-01","GP-1001","A"')

        assert operator_client.get('/api/kpi/production/export?format=doc').status_code == 400


class TestProductionCorrections:
    def _record(self, client):
        resp = _production(client, defects=[{'defect_code': 'S01', 'defect_type': 'rework', 'quantity': 6},
                                            {'defect_code': 'D02', 'defect_type': 'scrap', 'quantity': 4}])
        return resp.get_json()['data']

    def test_list_and_detail(self, seeded, operator_client):
        row = self._record(operator_client)
        _production(operator_client, machine_code='MC-01', shift='B')
        body = operator_client.get('/api/kpi/production?line=CNC-01').get_json()
        assert body['pagination']['total'] == 1
        assert body['data'][0]['line_no'] == 'CNC-01'
        assert body['data'][0]['final_good_qty'] == 95

        detail = operator_client.get(f"/api/kpi/production/{row['id']}").get_json()['data']
        assert [d['defect_code'] for d in detail['defects']] == ['S01', 'D02']
        assert operator_client.get('/api/kpi/production/9999').status_code == 404

    def test_update_replaces_quantities(self, seeded, operator_client, inspector_client, db):
        row = self._record(operator_client)
        assert operator_client.patch(f"/api/kpi/production/{row['id']}",
                                     json={'good_qty': 80}).status_code == 403
        data = inspector_client.patch(f"/api/kpi/production/{row['id']}", json={
            'good_qty': 85, 'scrap_qty': 9, 'rework_scrap_qty': 0, 'reason': 'recount at shift end',
        }).get_json()['data']
        assert data['good_qty'] == 85
        assert data['final_reject_qty'] == 9
        assert len(data['defects']) == 2

        audit = db.execute("SELECT * FROM audit_logs WHERE entity_type = 'daily_production' "
                           "AND action = 'update'").fetchone()
        assert audit['reason'] == 'recount at shift end'
        assert json.loads(audit['changes'])['good_qty'] == [90, 85]

    def test_update_validates_totals(self, seeded, operator_client, inspector_client):
        row = self._record(operator_client)
        resp = inspector_client.patch(f"/api/kpi/production/{row['id']}", json={'total_produced': 50})
        assert resp.status_code == 400
        resp = inspector_client.patch(f"/api/kpi/production/{row['id']}", json={'shift': 'C'})
        assert resp.status_code == 400
        assert inspector_client.patch(f"/api/kpi/production/{row['id']}", json={}).status_code == 400

    def test_update_onto_existing_key_conflicts(self, seeded, operator_client, inspector_client):
        row = self._record(operator_client)
        _production(operator_client, shift='B')
        resp = inspector_client.patch(f"/api/kpi/production/{row['id']}", json={'shift': 'B'})
        assert resp.status_code == 409

    def test_delete_removes_defect_rows(self, seeded, operator_client, inspector_client, qm_client, db):
        row = self._record(operator_client)
        assert inspector_client.delete(f"/api/kpi/production/{row['id']}").status_code == 403
        body = qm_client.delete(f"/api/kpi/production/{row['id']}").get_json()['data']
        assert body['defects_deleted'] == 2
        assert db.execute('SELECT COUNT(*) FROM daily_production_summary').fetchone()[0] == 0
        assert db.execute('SELECT COUNT(*) FROM defect_details').fetchone()[0] == 0
        assert qm_client.delete(f"/api/kpi/production/{row['id']}").status_code == 404

    def test_update_and_delete_defect_row(self, seeded, operator_client, inspector_client, qm_client, db):
        row = self._record(operator_client)
        defects = operator_client.get(f"/api/kpi/production/{row['id']}").get_json()['data']['defects']
        rework_id, scrap_id = defects[0]['id'], defects[1]['id']

        data = inspector_client.patch(f'/api/kpi/production/defects/{rework_id}', json={
            'defect_code': 'S02', 'quantity': 5, 'rework_result': 'ok after deburr'}).get_json()['data']
        assert data['defect_code'] == 'S02'
        assert data['quantity'] == 5
        cleared = inspector_client.patch(f'/api/kpi/production/defects/{rework_id}',
                                         json={'defect_code': ''}).get_json()['data']
        assert cleared['defect_code_id'] is None

        assert inspector_client.patch(f'/api/kpi/production/defects/{scrap_id}',
                                      json={'defect_type': 'melted'}).status_code == 400
        assert inspector_client.patch(f'/api/kpi/production/defects/{scrap_id}',
                                      json={'defect_code': 'Z99'}).status_code == 400

        assert qm_client.delete(f'/api/kpi/production/defects/{scrap_id}').status_code == 200
        remaining = [r['id'] for r in db.execute('SELECT id FROM defect_details')]
        assert remaining == [rework_id]
        actions = {(r['entity_type'], r['action']) for r in db.execute('SELECT * FROM audit_logs')}
        assert ('defect_detail', 'update') in actions
        assert ('defect_detail', 'delete') in actions


class TestKpiViews:
    def test_dashboard(self, seeded, operator_client):
        _entry(operator_client, quantity=7)
        _entry(operator_client, 'REWORK', product_line_code='AUTO')
        _entry(operator_client, 'SCRAP', quantity=2)
        data = operator_client.get('/api/kpi/dashboard?range=mtd').get_json()['data']
        assert data['summary'] == {'total': 10, 'good': 7, 'rework': 1, 'scrap': 2,
                                   'fpy': 70.0, 'reworkRate': 10.0, 'scrapRate': 20.0}
        assert len(data['recentEntries']) == 3
        auto = operator_client.get('/api/kpi/dashboard?line=AUTO').get_json()['data']
        assert auto['summary']['total'] == 1

    def test_bad_range(self, seeded, operator_client):
        assert operator_client.get('/api/kpi/dashboard?range=week').status_code == 400

    def test_values(self, seeded, inspector_client):
        inspector_client.post('/api/kpi/claims', json={
            'claim_date': TODAY.isoformat(), 'claim_category': 'automotive', 'customer': 'C',
            'part_number': 'P', 'shipped_qty': 20000, 'defect_qty': 2})
        _production(inspector_client)
        data = inspector_client.get('/api/kpi/values?range=ytd').get_json()['data']
        assert data['claims'][0]['ppm'] == 100.0
        assert data['internal'][0]['area'] == 'machining'
        assert data['internal'][0]['scrapRate'] == 4.0
        assert data['topParts'][0]['defectRate'] == 10.0

    def test_trends(self, seeded, operator_client):
        _production(operator_client)
        data = operator_client.get('/api/kpi/trends?months=3').get_json()['data']
        assert data['production'][-1]['month'] == TODAY.strftime('%Y-%m')
        assert data['production'][-1]['fpy'] == 90.0

    def test_pareto_from_production(self, seeded, operator_client):
        _production(operator_client, defects=[{'defect_code': 'S01', 'quantity': 6},
                                              {'defect_code': 'D02', 'defect_type': 'scrap', 'quantity': 2},
                                              {'defect_code': 'S02', 'quantity': 2}])
        data = operator_client.get('/api/kpi/pareto').get_json()['data']
        assert data['source'] == 'production'
        assert data['total'] == 10
        assert [i['defect_code'] for i in data['items']][0] == 'S01'
        assert data['items'][0]['share_pct'] == 60.0
        assert data['items'][-1]['cumulative_pct'] == 100.0
        assert data['categories'][0] == {'category': 'surface', 'defect_qty': 8, 'share_pct': 80.0,
                                         'cumulative_pct': 80.0}

    def test_pareto_falls_back_to_entries(self, seeded, operator_client):
        _entry(operator_client, 'REWORK', defect_code='S02', quantity=3)
        _entry(operator_client, 'SCRAP')
        data = operator_client.get('/api/kpi/pareto').get_json()['data']
        assert data['source'] == 'entries'
        assert [(i['defect_code'], i['defect_qty']) for i in data['items']] == [('S02', 3), ('D01', 1)]
