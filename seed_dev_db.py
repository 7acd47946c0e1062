#!/usr/bin/env python3
"""
Seed script to populate development database with sample data.
Run with: python seed_dev_db.py
"""

import sqlite3
from datetime import date

from werkzeug.security import generate_password_hash

from qc_calc import add_months
from qc_logging import get_logger

logger = get_logger('qc.seed')

SAMPLE_USERS = [
    ('admin', 'admin@qc.local', 'admin', 'admin'),
    ('inspector1', 'inspector1@qc.local', 'inspector', 'inspector123'),
    ('operator1', 'operator1@qc.local', 'operator', 'operator123'),
    ('qm', 'quality@qc.local', 'quality_manager', 'quality123'),
]

SAMPLE_SUPPLIERS = [
    ('Siam Steel Bar', 'SSB', 'Somchai P.', 'sales@siamsteelbar.example', '+66 2 111 2222'),
    ('Eastern Wire Rod', 'EWR', 'Anan K.', 'qa@easternwirerod.example', '+66 38 333 444'),
    ('Nippon Special Steel', 'NSS', 'Takeshi M.', 'export@nss.example', '+81 3 5555 6666'),
]

# part_no, part_name, material, spec_min, spec_max, scale
SAMPLE_PARTS = [
    ('GP-1001', 'Guide Pin 12mm', 'SCM440', 28.0, 34.0, 'HRC'),
    ('SH-2040', 'Drive Shaft', 'S45C', 20.0, 26.0, 'HRC'),
    ('BU-0310', 'Bushing', 'SUJ2', 58.0, 62.0, 'HRC'),
]

# material_grade, parameter_name, min, max
SAMPLE_CHEMICAL_STANDARDS = [
    ('S45C', 'Carbon (C)', 0.42, 0.48),
    ('S45C', 'Silicon (Si)', 0.15, 0.35),
    ('S45C', 'Manganese (Mn)', 0.60, 0.90),
    ('S45C', 'Phosphorus (P)', None, 0.030),
    ('S45C', 'Sulfur (S)', None, 0.035),
    ('SCM440', 'Carbon (C)', 0.38, 0.43),
    ('SCM440', 'Chromium (Cr)', 0.90, 1.20),
    ('SCM440', 'Molybdenum (Mo)', 0.15, 0.30),
]

SAMPLE_MASTER_STANDARDS = [
    ('Gauge Block Set 0-100mm', 'GB-0001', 'CERT-GB-2026-01', 'National Metrology Institute'),
    ('Hardness Test Block 30 HRC', 'HTB-30', 'CERT-HTB-2026-07', 'Accredited Lab 0412'),
]

# name, serial_number, location, department, frequency_months, acceptance
SAMPLE_INSTRUMENTS = [
    ('Digital Caliper 150mm', 'CAL-001', 'Receiving', 'QA', 6, 0.02),
    ('Outside Micrometer 0-25mm', 'MIC-001', 'Receiving', 'QA', 6, 0.005),
    ('Rockwell Hardness Tester', 'HRT-001', 'Heat Treatment', 'QA', 12, 0.5),
    ('Platform Scale 60kg', 'SCL-001', 'Receiving', 'Warehouse', 12, 0.05),
]

SAMPLE_MACHINES = [
    ('CNC-01', 'CNC Lathe 1', 'cnc_lathe'),
    ('CNC-02', 'CNC Lathe 2', 'cnc_lathe'),
    ('MC-01', 'Machining Center 1', 'machining_center'),
    ('HT-01', 'Induction Hardening', 'heat_treatment'),
]

# code, name, name_en, category, severity
SAMPLE_DEFECT_CODES = [
    ('D01', 'Oversize OD', 'Oversize OD', 'dimension', 'major'),
    ('D02', 'Undersize OD', 'Undersize OD', 'dimension', 'major'),
    ('S01', 'Scratch', 'Scratch', 'surface', 'minor'),
    ('S02', 'Burr', 'Burr', 'surface', 'minor'),
    ('H01', 'Low hardness', 'Low hardness', 'hardness', 'critical'),
]

SAMPLE_PRODUCT_LINES = [
    ('AUTO', 'Automotive parts', 'automotive'),
    ('IND', 'Industrial parts', 'industrial'),
]

# metric_code, metric_name, target_value, unit, category, claim_category
SAMPLE_KPI_TARGETS = [
    ('CLAIM_PPM_AUTO', 'Customer claim PPM (automotive)', 50, 'ppm', 'claim', 'automotive'),
    ('CLAIM_PPM_IND', 'Customer claim PPM (industrial)', 200, 'ppm', 'claim', 'industrial'),
    ('FPY', 'First pass yield', 98.5, '%', 'internal', None),
    ('SCRAP_RATE', 'Internal scrap rate', 0.5, '%', 'internal', None),
]


def _insert_missing(cur, table, key_column, rows, columns):
    """Insert rows whose key is not present yet. Returns how many were added."""
    added = 0
    for row in rows:
        cur.execute(f'SELECT id FROM {table} WHERE {key_column} = ?', [row[0]])
        if cur.fetchone():
            continue
        cur.execute(
            f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            list(row)
        )
        added += 1
    if added:
        logger.info("Created %s %s", added, table)
    return added


def seed_database(db_path):
    """Seed the database with sample data. The schema must already exist."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    cur = conn.cursor()

    logger.info("Seeding database %s", db_path)

    for username, email, role, password in SAMPLE_USERS:
        cur.execute('SELECT id FROM users WHERE username = ?', [username])
        if not cur.fetchone():
            cur.execute('''
                INSERT INTO users (username, email, password_hash, role)
                VALUES (?, ?, ?, ?)
            ''', [username, email, generate_password_hash(password), role])
            logger.info("Created user %s (%s)", username, role)

    _insert_missing(cur, 'suppliers', 'name', SAMPLE_SUPPLIERS,
                    ['name', 'code', 'contact_person', 'email', 'phone'])
    _insert_missing(cur, 'parts', 'part_no', SAMPLE_PARTS,
                    ['part_no', 'part_name', 'material', 'spec_min', 'spec_max', 'scale'])

    cur.execute("SELECT COUNT(*) as count FROM quality_standards WHERE process_stage = 'chemical_test'")
    if not cur.fetchone()['count']:
        for grade, name, lo, hi in SAMPLE_CHEMICAL_STANDARDS:
            cur.execute('''
                INSERT INTO quality_standards (material_grade, process_stage, parameter_name, min_value, max_value)
                VALUES (?, 'chemical_test', ?, ?, ?)
            ''', [grade, name, lo, hi])
        logger.info("Created %s chemical standards", len(SAMPLE_CHEMICAL_STANDARDS))

    expire = add_months(date.today(), 12).isoformat()
    _insert_missing(cur, 'master_standards', 'serial_number',
                    [(serial, name, cert, expire, source) for name, serial, cert, source in SAMPLE_MASTER_STANDARDS],
                    ['serial_number', 'name', 'certificate_no', 'expire_date', 'traceability_source'])

    today = date.today()
    for name, serial, location, department, frequency, acceptance in SAMPLE_INSTRUMENTS:
        cur.execute('SELECT id FROM instruments WHERE serial_number = ?', [serial])
        if cur.fetchone():
            continue
        # Back-date the last calibration so the list has due and overdue items.
        last_cal = add_months(today, -frequency + 1 if frequency > 6 else -frequency)
        next_cal = add_months(last_cal, frequency).isoformat()
        cur.execute('''
            INSERT INTO instruments (name, serial_number, location, department, status, next_cal_date)
            VALUES (?, ?, ?, ?, 'ACTIVE', ?)
        ''', [name, serial, location, department, next_cal])
        cur.execute('''
            INSERT INTO calibration_plans (instrument_id, frequency_months, acceptance_criteria,
                                           last_cal_date, next_cal_date)
            VALUES (?, ?, ?, ?, ?)
        ''', [cur.lastrowid, frequency, acceptance, last_cal.isoformat(), next_cal])
        logger.info("Created instrument %s, next calibration %s", serial, next_cal)

    _insert_missing(cur, 'machines', 'code', SAMPLE_MACHINES, ['code', 'name', 'machine_type'])
    _insert_missing(cur, 'defect_codes', 'code', SAMPLE_DEFECT_CODES,
                    ['code', 'name', 'name_en', 'category', 'severity'])
    _insert_missing(cur, 'product_lines', 'code', SAMPLE_PRODUCT_LINES, ['code', 'name', 'claim_category'])
    _insert_missing(cur, 'kpi_targets', 'metric_code', SAMPLE_KPI_TARGETS,
                    ['metric_code', 'metric_name', 'target_value', 'unit', 'category', 'claim_category'])

    conn.commit()
    conn.close()

    logger.info("Database seeded. Logins: admin/admin, inspector1/inspector123, "
                "operator1/operator123, qm/quality123")


if __name__ == '__main__':
    from app import app, init_db

    with app.app_context():
        init_db()
    seed_database(app.config['DATABASE'])
