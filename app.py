"""
QC Records - steel parts plant quality control
Flask application with SQLite database
"""

import json
import math
import os
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from functools import wraps

from flask import Flask, request, g, jsonify, send_file, send_from_directory
from flask_login import LoginManager, UserMixin, login_user, logout_user, login_required, current_user
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename

import qc_calc
import qc_reports
from qc_logging import get_logger, set_level

# Configuration
app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-production')
app.config['DATABASE'] = os.environ.get('QC_DATABASE', os.path.join(app.root_path, 'qc.db'))
app.config['CALIBRATION_DUE_DAYS'] = int(os.environ.get('QC_CALIBRATION_DUE_DAYS', 30))
app.config['ANDON_CONSECUTIVE_NG'] = int(os.environ.get('QC_ANDON_CONSECUTIVE_NG', 3))
app.config['LOG_LEVEL'] = os.environ.get('QC_LOG_LEVEL', 'INFO')

# Upload configuration
UPLOAD_FOLDER = os.environ.get('QC_UPLOAD_FOLDER', os.path.join(app.root_path, 'static', 'uploads'))
ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'pdf', 'doc', 'docx', 'xls', 'xlsx'}
IMAGE_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif'}
app.config['UPLOAD_FOLDER'] = UPLOAD_FOLDER
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max upload

# Flask-Login setup
login_manager = LoginManager()
login_manager.init_app(app)

logger = get_logger('qc.app')
set_level(app.config['LOG_LEVEL'])

ROLES = ('admin', 'quality_manager', 'inspector', 'operator')
QUALITY_ROLES = ('admin', 'quality_manager')
INSPECTION_ROLES = ('admin', 'quality_manager', 'inspector')


# =============================================================================
# Errors
# =============================================================================

class ApiError(Exception):
    """Error returned to the client as a JSON envelope."""
    status = 400

    def __init__(self, message, status=None):
        super().__init__(message)
        self.message = message
        if status is not None:
            self.status = status


class NotFound(ApiError):
    status = 404


class Conflict(ApiError):
    status = 409


def error_response(message, status):
    return jsonify({'success': False, 'error': message}), status


def _rollback_open_transaction():
    db = g.get('db')
    if db is not None and db.in_transaction:
        db.rollback()


@app.errorhandler(ApiError)
def handle_api_error(e):
    if e.status >= 500:
        logger.error("%s %s failed: %s", request.method, request.path, e.message)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.path, e.status, e.message)
    return error_response(e.message, e.status)


@app.errorhandler(sqlite3.IntegrityError)
def handle_integrity_error(e):
    _rollback_open_transaction()
    logger.warning("%s %s integrity error: %s", request.method, request.path, e)
    return error_response(f'Conflicting or invalid record: {e}', 409)


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return error_response(e.description or e.name, e.code)


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    _rollback_open_transaction()
    logger.exception("Unhandled error on %s %s", request.method, request.path)
    return error_response('Internal server error', 500)


# =============================================================================
# Database Helpers
# =============================================================================

def get_db():
    """Get database connection for current request."""
    if 'db' not in g:
        g.db = sqlite3.connect(app.config['DATABASE'])
        g.db.row_factory = sqlite3.Row
        g.db.execute('PRAGMA foreign_keys = ON')
    return g.db


def close_db(e=None):
    """Close database connection."""
    db = g.pop('db', None)
    if db is not None:
        db.close()


app.teardown_appcontext(close_db)


def query_db(query, args=(), one=False):
    """Query database and return results."""
    cur = get_db().execute(query, args)
    rv = cur.fetchall()
    cur.close()
    return (rv[0] if rv else None) if one else rv


def execute_db(query, args=()):
    """Execute a database command (insert, update, delete)."""
    db = get_db()
    cur = db.execute(query, args)
    db.commit()
    lastrowid = cur.lastrowid
    cur.close()
    return lastrowid


@contextmanager
def transaction():
    """
    Run several writes as one unit.

    Commits when the block finishes, rolls back on any exception. Files
    saved through save_upload() inside the block are removed again when
    the transaction rolls back.
    """
    db = get_db()
    g.pending_files = []
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        for path in g.pop('pending_files', []):
            if os.path.exists(path):
                os.remove(path)
        raise
    g.pop('pending_files', None)


def rows_to_dicts(rows):
    return [dict(r) for r in rows]


def next_number(table, column, prefix, width, db=None):
    """Next sequential document number such as MI-2026-00042."""
    db = db or get_db()
    row = db.execute(
        f'SELECT MAX(CAST(SUBSTR({column}, ?) AS INTEGER)) AS max_num FROM {table} WHERE {column} LIKE ?',
        [len(prefix) + 1, prefix + '%']
    ).fetchone()
    next_num = (row['max_num'] or 0) + 1
    return f"{prefix}{next_num:0{width}d}"


def now_str():
    """Local timestamp in the format stored in the database."""
    return datetime.now().strftime('%Y-%m-%d %H:%M:%S')


def today_str():
    return date.today().isoformat()


def get_or_create_part(part_no, part_name=None, material=None, spec_min=None, spec_max=None,
                       scale='HRC', db=None):
    """Get existing part or create new one. Returns (part_row, was_created)."""
    db = db or get_db()
    existing = db.execute('SELECT * FROM parts WHERE part_no = ?', [part_no]).fetchone()
    if existing:
        return existing, False

    if not part_name:
        raise ApiError(f'Unknown part {part_no}; part_name is required to register it')

    cur = db.execute('''
        INSERT INTO parts (part_no, part_name, material, spec_min, spec_max, scale)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', [part_no, part_name, material, spec_min, spec_max, scale or 'HRC'])
    part = db.execute('SELECT * FROM parts WHERE id = ?', [cur.lastrowid]).fetchone()
    logger.info("Registered part %s from inspection entry", part_no)
    return part, True


# =============================================================================
# Database Schema
# =============================================================================

def init_db():
    """Initialize database with schema."""
    db = get_db()

    # Users table
    db.execute('''
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            email TEXT,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'operator',
            active INTEGER DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Suppliers table (material suppliers and mills)
    db.execute('''
        CREATE TABLE IF NOT EXISTS suppliers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT UNIQUE NOT NULL,
            code TEXT,
            contact_person TEXT,
            email TEXT,
            phone TEXT,
            active INTEGER DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Parts master (hardness specification per part)
    db.execute('''
        CREATE TABLE IF NOT EXISTS parts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            part_no TEXT UNIQUE NOT NULL,
            part_name TEXT NOT NULL,
            material TEXT,
            spec_min REAL,
            spec_max REAL,
            scale TEXT DEFAULT 'HRC',
            standard_ref TEXT,
            active INTEGER DEFAULT 1,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Quality standards (limits per grade and process stage)
    db.execute('''
        CREATE TABLE IF NOT EXISTS quality_standards (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            material_grade TEXT NOT NULL,
            process_stage TEXT NOT NULL,
            parameter_name TEXT NOT NULL,
            min_value REAL,
            max_value REAL,
            unit TEXT DEFAULT '%',
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Material receiving inspections
    db.execute('''
        CREATE TABLE IF NOT EXISTS material_inspections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inspection_number TEXT UNIQUE NOT NULL,
            material_type TEXT NOT NULL CHECK (material_type IN ('bar', 'rod')),
            material_grade TEXT NOT NULL,
            batch_number TEXT NOT NULL,
            supplier_name TEXT NOT NULL,
            maker_mat TEXT,
            receipt_date DATE NOT NULL,
            invoice_number TEXT,
            inspector TEXT,
            cer_number TEXT,
            inspection_quantity INTEGER,
            notes TEXT,
            overall_result TEXT NOT NULL DEFAULT 'pending'
                CHECK (overall_result IN ('pending', 'pass', 'fail')),
            bar_inspections TEXT DEFAULT '[]',
            rod_inspections TEXT DEFAULT '[]',
            created_by INTEGER,
            approved_by INTEGER,
            approved_at TIMESTAMP,
            deleted_at TIMESTAMP,
            deleted_by INTEGER,
            created_at TIMESTAMP,
            updated_at TIMESTAMP,
            FOREIGN KEY (created_by) REFERENCES users(id)
        )
    ''')

    # Chemical composition tests
    db.execute('''
        CREATE TABLE IF NOT EXISTS chemical_tests (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            test_number TEXT UNIQUE NOT NULL,
            inspection_date DATE NOT NULL,
            material_grade TEXT NOT NULL,
            heat_no TEXT,
            cert_no TEXT,
            inspector TEXT,
            standard TEXT,
            manufacturer TEXT,
            supplier TEXT,
            overall_result TEXT NOT NULL DEFAULT 'pending'
                CHECK (overall_result IN ('pending', 'pass', 'fail')),
            remarks TEXT,
            tested_by INTEGER,
            tested_at TIMESTAMP,
            approved_by INTEGER,
            approved_at TIMESTAMP,
            created_at TIMESTAMP,
            updated_at TIMESTAMP,
            FOREIGN KEY (tested_by) REFERENCES users(id),
            FOREIGN KEY (approved_by) REFERENCES users(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS chemical_element_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            chemical_test_id INTEGER NOT NULL,
            element_symbol TEXT NOT NULL,
            element_name TEXT,
            measured_value REAL,
            specification_min REAL,
            specification_max REAL,
            result TEXT NOT NULL DEFAULT 'pending'
                CHECK (result IN ('pending', 'pass', 'fail')),
            unit TEXT DEFAULT '%',
            FOREIGN KEY (chemical_test_id) REFERENCES chemical_tests(id) ON DELETE CASCADE
        )
    ''')

    # Hardness inspections (header keeps a snapshot of the part spec)
    db.execute('''
        CREATE TABLE IF NOT EXISTS hardness_inspections (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            part_id INTEGER,
            part_no TEXT NOT NULL,
            part_name TEXT,
            material TEXT,
            spec_min REAL,
            spec_max REAL,
            scale TEXT,
            supplier_id INTEGER,
            report_no TEXT,
            lot_no TEXT,
            heat_no_internal TEXT,
            heat_no_supplier TEXT,
            process_type TEXT,
            inspector_name TEXT,
            inspection_type TEXT,
            sampling_rate TEXT,
            receipt_date DATE,
            average_value REAL,
            overall_status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK (overall_status IN ('PASS', 'FAIL', 'PENDING')),
            remarks TEXT,
            created_by INTEGER,
            created_at TIMESTAMP,
            updated_at TIMESTAMP,
            FOREIGN KEY (part_id) REFERENCES parts(id),
            FOREIGN KEY (supplier_id) REFERENCES suppliers(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS hardness_measurements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inspection_id INTEGER NOT NULL,
            piece_no INTEGER NOT NULL,
            measure_value REAL NOT NULL,
            point_type TEXT NOT NULL DEFAULT 'Surface'
                CHECK (point_type IN ('Surface', 'Core')),
            status TEXT NOT NULL DEFAULT 'PENDING',
            FOREIGN KEY (inspection_id) REFERENCES hardness_inspections(id) ON DELETE CASCADE
        )
    ''')

    # Calibration
    db.execute('''
        CREATE TABLE IF NOT EXISTS instruments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            serial_number TEXT UNIQUE NOT NULL,
            location TEXT,
            department TEXT,
            manufacturer TEXT,
            model TEXT,
            responsible_person TEXT,
            status TEXT NOT NULL DEFAULT 'ACTIVE'
                CHECK (status IN ('ACTIVE', 'NG', 'SUSPEND', 'SPARE', 'MISSING')),
            next_cal_date DATE,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS calibration_plans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            instrument_id INTEGER UNIQUE NOT NULL,
            frequency_months INTEGER NOT NULL DEFAULT 6,
            acceptance_criteria REAL NOT NULL DEFAULT 0.05,
            vendor_name TEXT,
            last_cal_date DATE,
            next_cal_date DATE,
            FOREIGN KEY (instrument_id) REFERENCES instruments(id) ON DELETE CASCADE
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS master_standards (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            serial_number TEXT UNIQUE NOT NULL,
            certificate_no TEXT,
            expire_date DATE,
            traceability_source TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS calibration_results (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            instrument_id INTEGER NOT NULL,
            master_standard_id INTEGER,
            calibration_date DATE NOT NULL,
            standard_value REAL NOT NULL,
            measured_value REAL NOT NULL,
            error_value REAL NOT NULL,
            acceptance_criteria REAL,
            result_status TEXT NOT NULL CHECK (result_status IN ('PASS', 'FAIL')),
            performed_by TEXT,
            certificate_no TEXT,
            remarks TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (instrument_id) REFERENCES instruments(id) ON DELETE CASCADE,
            FOREIGN KEY (master_standard_id) REFERENCES master_standards(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS qpr_tickets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            ticket_no TEXT UNIQUE NOT NULL,
            instrument_id INTEGER,
            calibration_result_id INTEGER,
            issue_type TEXT NOT NULL DEFAULT 'CAL_NG',
            description TEXT,
            approval_status TEXT NOT NULL DEFAULT 'PENDING'
                CHECK (approval_status IN ('PENDING', 'APPROVED', 'REJECTED', 'CLOSED')),
            remarks TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (instrument_id) REFERENCES instruments(id) ON DELETE CASCADE,
            FOREIGN KEY (calibration_result_id) REFERENCES calibration_results(id) ON DELETE SET NULL
        )
    ''')

    # KPI master data
    db.execute('''
        CREATE TABLE IF NOT EXISTS machines (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            machine_type TEXT,
            status TEXT DEFAULT 'running',
            is_active INTEGER DEFAULT 1
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS defect_codes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            name_en TEXT,
            category TEXT,
            severity TEXT DEFAULT 'minor',
            is_active INTEGER DEFAULT 1
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS product_lines (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            claim_category TEXT,
            is_active INTEGER DEFAULT 1
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS kpi_targets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            metric_code TEXT UNIQUE NOT NULL,
            metric_name TEXT NOT NULL,
            target_value REAL NOT NULL,
            unit TEXT,
            category TEXT,
            claim_category TEXT,
            is_active INTEGER DEFAULT 1
        )
    ''')

    # KPI transactional data
    db.execute('''
        CREATE TABLE IF NOT EXISTS inspection_entries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entry_number TEXT UNIQUE NOT NULL,
            inspected_at TIMESTAMP NOT NULL,
            shift TEXT NOT NULL,
            machine_id INTEGER NOT NULL,
            part_number TEXT NOT NULL,
            lot_number TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            disposition TEXT NOT NULL CHECK (disposition IN ('GOOD', 'REWORK', 'SCRAP')),
            defect_code_id INTEGER,
            defect_detail TEXT,
            measurement TEXT,
            spec TEXT,
            operator_name TEXT NOT NULL,
            inspector_name TEXT,
            product_line_id INTEGER,
            remark TEXT,
            material_lot TEXT,
            tool_id TEXT,
            tool_life_count INTEGER,
            FOREIGN KEY (machine_id) REFERENCES machines(id),
            FOREIGN KEY (defect_code_id) REFERENCES defect_codes(id),
            FOREIGN KEY (product_line_id) REFERENCES product_lines(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS andon_alerts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            alert_number TEXT UNIQUE NOT NULL,
            machine_id INTEGER NOT NULL,
            triggered_at TIMESTAMP NOT NULL,
            alert_type TEXT NOT NULL DEFAULT 'CONSECUTIVE_NG',
            escalation TEXT DEFAULT 'line_leader',
            status TEXT NOT NULL DEFAULT 'open'
                CHECK (status IN ('open', 'acknowledged', 'resolved')),
            description TEXT,
            consecutive_ng INTEGER,
            assignee_name TEXT,
            acknowledged_at TIMESTAMP,
            resolved_at TIMESTAMP,
            response_minutes REAL,
            resolution_minutes REAL,
            root_cause TEXT,
            action_taken TEXT,
            FOREIGN KEY (machine_id) REFERENCES machines(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS customer_claims (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            claim_number TEXT UNIQUE NOT NULL,
            claim_date DATE NOT NULL,
            claim_category TEXT NOT NULL,
            customer TEXT NOT NULL,
            product_line_id INTEGER,
            part_number TEXT NOT NULL,
            lot_number TEXT,
            defect_code_id INTEGER,
            defect_description TEXT,
            shipped_qty INTEGER NOT NULL,
            defect_qty INTEGER NOT NULL,
            containment_action TEXT,
            root_cause TEXT,
            corrective_action TEXT,
            status TEXT NOT NULL DEFAULT 'open',
            closed_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (product_line_id) REFERENCES product_lines(id),
            FOREIGN KEY (defect_code_id) REFERENCES defect_codes(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS action_plans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            action_number TEXT UNIQUE NOT NULL,
            source_type TEXT,
            source_ref TEXT,
            title TEXT NOT NULL,
            description TEXT,
            priority TEXT NOT NULL DEFAULT 'medium'
                CHECK (priority IN ('critical', 'high', 'medium', 'low')),
            status TEXT NOT NULL DEFAULT 'open'
                CHECK (status IN ('open', 'in_progress', 'done', 'cancelled')),
            assignee_name TEXT,
            department TEXT,
            due_date DATE,
            related_kpi TEXT,
            before_value REAL,
            after_value REAL,
            completed_at TIMESTAMP,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS daily_production_summary (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            production_date DATE NOT NULL,
            machine_id INTEGER NOT NULL,
            part_number TEXT NOT NULL,
            part_name TEXT,
            shift TEXT NOT NULL DEFAULT 'A',
            operator_name TEXT,
            total_produced INTEGER NOT NULL DEFAULT 0,
            good_qty INTEGER NOT NULL DEFAULT 0,
            rework_qty INTEGER NOT NULL DEFAULT 0,
            scrap_qty INTEGER NOT NULL DEFAULT 0,
            rework_good_qty INTEGER NOT NULL DEFAULT 0,
            rework_scrap_qty INTEGER NOT NULL DEFAULT 0,
            rework_pending_qty INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (production_date, machine_id, part_number, shift),
            FOREIGN KEY (machine_id) REFERENCES machines(id)
        )
    ''')

    db.execute('''
        CREATE TABLE IF NOT EXISTS defect_details (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            summary_id INTEGER NOT NULL,
            defect_code_id INTEGER,
            defect_type TEXT NOT NULL DEFAULT 'rework'
                CHECK (defect_type IN ('rework', 'scrap')),
            quantity INTEGER NOT NULL DEFAULT 1,
            measurement REAL,
            spec_value TEXT,
            detail TEXT,
            rework_result TEXT,
            FOREIGN KEY (summary_id) REFERENCES daily_production_summary(id) ON DELETE CASCADE,
            FOREIGN KEY (defect_code_id) REFERENCES defect_codes(id)
        )
    ''')

    # Attachments
    db.execute('''
        CREATE TABLE IF NOT EXISTS attachments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            entity_type TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            file_name TEXT NOT NULL,
            file_path TEXT NOT NULL,
            file_type TEXT,
            file_size INTEGER,
            uploaded_by INTEGER,
            uploaded_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (uploaded_by) REFERENCES users(id)
        )
    ''')

    # Audit Logs
    db.execute('''
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            action TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            description TEXT,
            reason TEXT,
            changes TEXT,
            timestamp TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    # Notifications
    db.execute('''
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            notification_type TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT,
            entity_type TEXT,
            entity_id INTEGER,
            read INTEGER DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users(id)
        )
    ''')

    # Create indexes
    db.execute('CREATE INDEX IF NOT EXISTS idx_material_inspections_result ON material_inspections(overall_result)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_material_inspections_receipt ON material_inspections(receipt_date)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_chemical_tests_grade ON chemical_tests(material_grade)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_element_results_test ON chemical_element_results(chemical_test_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_quality_standards_grade ON quality_standards(material_grade, process_stage)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_hardness_part ON hardness_inspections(part_no)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_hardness_receipt ON hardness_inspections(receipt_date)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_hardness_measurements_inspection ON hardness_measurements(inspection_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_instruments_next_cal ON instruments(next_cal_date)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_calibration_results_instrument ON calibration_results(instrument_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_entries_machine ON inspection_entries(machine_id, id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_entries_inspected ON inspection_entries(inspected_at)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_andon_machine ON andon_alerts(machine_id, status)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_claims_date ON customer_claims(claim_date)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_production_date ON daily_production_summary(production_date)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_defect_details_summary ON defect_details(summary_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_notifications_read ON notifications(user_id, read)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_attachments_entity ON attachments(entity_type, entity_id)')
    db.execute('CREATE INDEX IF NOT EXISTS idx_audit_logs_entity ON audit_logs(entity_type, entity_id)')

    db.commit()
    logger.info("Database schema ready at %s", app.config['DATABASE'])


# =============================================================================
# User Model & Authentication
# =============================================================================

class User(UserMixin):
    def __init__(self, id, username, email, role, active=1):
        self.id = id
        self.username = username
        self.email = email
        self.role = role
        self.active = active

    @property
    def is_active(self):
        return bool(self.active)

    def to_dict(self):
        return {'id': self.id, 'username': self.username, 'email': self.email,
                'role': self.role, 'active': self.active}

    @staticmethod
    def get(user_id):
        user = query_db('SELECT * FROM users WHERE id = ?', [user_id], one=True)
        if user:
            return User(user['id'], user['username'], user['email'], user['role'], user['active'])
        return None

    @staticmethod
    def get_by_username(username):
        return query_db('SELECT * FROM users WHERE username = ?', [username], one=True)


@login_manager.user_loader
def load_user(user_id):
    return User.get(int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return error_response('Authentication required', 401)


def role_required(*roles):
    """Decorator to require specific roles."""
    def decorator(f):
        @wraps(f)
        def decorated_function(*args, **kwargs):
            if not current_user.is_authenticated:
                return error_response('Authentication required', 401)
            if current_user.role not in roles:
                logger.warning("User %s (%s) denied access to %s",
                               current_user.username, current_user.role, request.path)
                return error_response('Insufficient permissions', 403)
            return f(*args, **kwargs)
        return decorated_function
    return decorator


@app.route('/login', methods=['POST'])
def login():
    data = request_data()
    username = data.get('username', '')
    password = data.get('password', '')

    user = User.get_by_username(username)
    if not user or not check_password_hash(user['password_hash'], password):
        logger.warning("Failed login for %s", username)
        raise ApiError('Invalid username or password', 401)
    if not user['active']:
        raise ApiError('Account is deactivated', 403)

    user_obj = User(user['id'], user['username'], user['email'], user['role'], user['active'])
    login_user(user_obj)
    logger.info("User %s logged in", username)
    return ok(user_obj.to_dict())


@app.route('/logout', methods=['POST'])
@login_required
def logout():
    username = current_user.username
    logout_user()
    logger.info("User %s logged out", username)
    return ok({'loggedOut': True})


@app.route('/api/me')
@login_required
def me():
    return ok(current_user.to_dict())


# =============================================================================
# Request Helpers
# =============================================================================

def ok(data=None, status=200, **extra):
    payload = {'success': True, 'data': data}
    payload.update(extra)
    return jsonify(payload), status


def request_data():
    """
    Body of the request as a dict.

    JSON bodies are used as-is. Form posts (multipart uploads) may carry a
    'data' field holding a JSON object, which is merged over the form fields.
    """
    if request.is_json:
        data = request.get_json(silent=True)
        if data is None:
            raise ApiError('Request body must be valid JSON')
    else:
        data = request.form.to_dict()
        payload = data.pop('data', None)
        if payload:
            try:
                data.update(json.loads(payload))
            except (ValueError, TypeError):
                raise ApiError('Field "data" must be a JSON object')
    if not isinstance(data, dict):
        raise ApiError('Request body must be a JSON object')
    return data


def require_fields(data, fields):
    missing = [f for f in fields if data.get(f) is None or str(data.get(f)).strip() == '']
    if missing:
        raise ApiError(f"Required fields missing: {', '.join(missing)}")


def parse_json_list(value, field):
    """Lists may arrive as real lists or as JSON strings in a form post."""
    if value is None or value == '':
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError:
            raise ApiError(f'{field} must be a JSON array')
    if not isinstance(value, list):
        raise ApiError(f'{field} must be an array')
    return value


def to_int(value, field, default=None, minimum=None):
    if value is None or value == '':
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ApiError(f'{field} must be an integer')
    if minimum is not None and number < minimum:
        raise ApiError(f'{field} must be at least {minimum}')
    return number


def to_float(value, field, default=None):
    if value is None or value == '':
        return default
    number = qc_calc.to_number(value)
    if number is None:
        raise ApiError(f'{field} must be a number')
    return number


def clean(value):
    """Empty strings from forms are stored as NULL."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def clean_text(value):
    """Like clean(), but JSON numbers become their text form (part 1001 -> '1001')."""
    if value is None:
        return None
    return str(value).strip() or None


def required_text(data, field):
    """Text value of a field already checked by require_fields."""
    return str(data[field]).strip()


def check_date(value, field):
    if value in (None, ''):
        return None
    try:
        return qc_calc.parse_date(value).isoformat()
    except ValueError:
        raise ApiError(f'{field} must be a date (YYYY-MM-DD)')


def check_month(value):
    if value:
        try:
            datetime.strptime(value, '%Y-%m')
        except ValueError:
            raise ApiError('month must be YYYY-MM')
    return value


def pagination_args(default_limit=10):
    page = max(request.args.get('page', 1, type=int) or 1, 1)
    limit = request.args.get('limit', default_limit, type=int) or default_limit
    limit = min(max(limit, 1), 200)
    return page, limit, (page - 1) * limit


def paginated(rows, total, page, limit):
    return ok(rows, pagination={
        'page': page,
        'limit': limit,
        'total': total,
        'totalPages': math.ceil(total / limit) if limit else 0,
    })


def date_range_bounds(date_range, today=None):
    """(start, end) ISO dates for the dashboard ranges today / mtd / ytd."""
    today = today or date.today()
    if date_range == 'ytd':
        start = today.replace(month=1, day=1)
    elif date_range == 'mtd':
        start = today.replace(day=1)
    else:
        start = today
    return start.isoformat(), today.isoformat()


# =============================================================================
# Audit Logging
# =============================================================================

def log_audit(action, entity_type, entity_id, description=None, changes=None, reason=None, commit=True):
    """Log an action to the audit trail."""
    user_id = current_user.id if current_user and current_user.is_authenticated else None
    changes_json = json.dumps(changes, default=str) if changes else None

    db = get_db()
    db.execute('''
        INSERT INTO audit_logs (user_id, action, entity_type, entity_id, description, reason, changes)
        VALUES (?, ?, ?, ?, ?, ?, ?)
    ''', [user_id, action, entity_type, entity_id, description, reason, changes_json])
    if commit:
        db.commit()


def diff_fields(existing, updates):
    """{field: [old, new]} for the fields whose value actually changes."""
    changes = {}
    for key, new in updates.items():
        old = existing[key]
        if old != new:
            changes[key] = [old, new]
    return changes


def audit_history(entity_type, entity_id):
    rows = query_db('''
        SELECT a.*, u.username
        FROM audit_logs a
        LEFT JOIN users u ON a.user_id = u.id
        WHERE a.entity_type = ? AND a.entity_id = ?
        ORDER BY a.id DESC
    ''', [entity_type, entity_id])
    history = []
    for r in rows:
        item = dict(r)
        item['changes'] = json.loads(item['changes']) if item['changes'] else None
        history.append(item)
    return history


@app.route('/api/audit')
@login_required
@role_required(*QUALITY_ROLES)
def audit_log_list():
    entity_type = request.args.get('entity_type')
    entity_id = request.args.get('entity_id', type=int)
    limit = min(max(request.args.get('limit', 100, type=int) or 100, 1), 500)

    if entity_type and entity_id:
        return ok(audit_history(entity_type, entity_id))

    query = '''
        SELECT a.*, u.username
        FROM audit_logs a
        LEFT JOIN users u ON a.user_id = u.id
    '''
    args = []
    if entity_type:
        query += ' WHERE a.entity_type = ?'
        args.append(entity_type)
    query += ' ORDER BY a.id DESC LIMIT ?'
    args.append(limit)

    logs = []
    for r in query_db(query, args):
        item = dict(r)
        item['changes'] = json.loads(item['changes']) if item['changes'] else None
        logs.append(item)
    return ok(logs)


# =============================================================================
# Notifications
# =============================================================================

def create_notification(user_id, notification_type, title, message, entity_type=None, entity_id=None, commit=True):
    """Create a notification for a user."""
    db = get_db()
    db.execute('''
        INSERT INTO notifications (user_id, notification_type, title, message, entity_type, entity_id)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', [user_id, notification_type, title, message, entity_type, entity_id])
    if commit:
        db.commit()


def get_quality_notification_users():
    """Get users who should receive quality notifications (quality_manager and admin)."""
    return query_db('''
        SELECT id FROM users
        WHERE role IN ('quality_manager', 'admin') AND active = 1
    ''')


def notify_quality(notification_type, title, message, entity_type=None, entity_id=None, commit=True):
    users = get_quality_notification_users()
    for user in users:
        create_notification(user['id'], notification_type, title, message,
                            entity_type, entity_id, commit=False)
    if commit:
        get_db().commit()
    logger.info("Notified %s quality users: %s", len(users), title)


@app.route('/api/notifications')
@login_required
def notifications_list():
    """List notifications for the current user."""
    unread_only = request.args.get('unread') == '1'
    query = 'SELECT * FROM notifications WHERE user_id = ?'
    if unread_only:
        query += ' AND read = 0'
    query += ' ORDER BY created_at DESC, id DESC LIMIT 50'
    return ok(rows_to_dicts(query_db(query, [current_user.id])))


@app.route('/api/notifications/unread-count')
@login_required
def notifications_unread_count():
    """Get count of unread notifications for current user."""
    result = query_db('SELECT COUNT(*) as count FROM notifications WHERE user_id = ? AND read = 0',
                      [current_user.id], one=True)
    return ok({'count': result['count']})


@app.route('/api/notifications/<int:notification_id>/read', methods=['POST'])
@login_required
def notification_mark_read(notification_id):
    """Mark a notification as read."""
    notification = query_db('SELECT * FROM notifications WHERE id = ? AND user_id = ?',
                            [notification_id, current_user.id], one=True)
    if not notification:
        raise NotFound('Notification not found')
    execute_db('UPDATE notifications SET read = 1 WHERE id = ?', [notification_id])
    return ok({'id': notification_id, 'read': 1})


@app.route('/api/notifications/read-all', methods=['POST'])
@login_required
def notifications_mark_all_read():
    """Mark all notifications as read for current user."""
    execute_db('UPDATE notifications SET read = 1 WHERE user_id = ? AND read = 0', [current_user.id])
    return ok({'read': True})


# =============================================================================
# User Management (Admin only)
# =============================================================================

@app.route('/api/users')
@login_required
@role_required('admin')
def users_list():
    """List all users."""
    users = query_db('SELECT id, username, email, role, active, created_at FROM users ORDER BY username')
    return ok(rows_to_dicts(users))


@app.route('/api/users', methods=['POST'])
@login_required
@role_required('admin')
def user_add():
    """Add a new user."""
    data = request_data()
    require_fields(data, ['username', 'password'])
    role = data.get('role') or 'operator'
    if role not in ROLES:
        raise ApiError(f"role must be one of {', '.join(ROLES)}")

    username = required_text(data, 'username')
    if User.get_by_username(username):
        raise Conflict('Username already exists')

    user_id = execute_db('''
        INSERT INTO users (username, email, password_hash, role)
        VALUES (?, ?, ?, ?)
    ''', [username, clean(data.get('email')), generate_password_hash(data['password']), role])

    log_audit('create', 'user', user_id, f'Created user {username} with role {role}')
    logger.info("User %s created with role %s", username, role)
    user = query_db('SELECT id, username, email, role, active, created_at FROM users WHERE id = ?',
                    [user_id], one=True)
    return ok(dict(user), 201)


@app.route('/api/users/<int:user_id>/toggle', methods=['POST'])
@login_required
@role_required('admin')
def user_toggle(user_id):
    """Toggle user active status."""
    if user_id == current_user.id:
        raise ApiError('You cannot deactivate yourself')

    user = query_db('SELECT * FROM users WHERE id = ?', [user_id], one=True)
    if not user:
        raise NotFound('User not found')

    new_status = 0 if user['active'] else 1
    execute_db('UPDATE users SET active = ? WHERE id = ?', [new_status, user_id])

    status_text = 'activated' if new_status else 'deactivated'
    log_audit('update', 'user', user_id, f'User {user["username"]} {status_text}')
    return ok({'id': user_id, 'active': new_status})


@app.route('/api/users/<int:user_id>/reset-password', methods=['POST'])
@login_required
@role_required('admin')
def user_reset_password(user_id):
    """Reset user password."""
    user = query_db('SELECT * FROM users WHERE id = ?', [user_id], one=True)
    if not user:
        raise NotFound('User not found')

    data = request_data()
    new_password = data.get('password', '')
    if len(new_password) < 4:
        raise ApiError('Password must be at least 4 characters')

    execute_db('UPDATE users SET password_hash = ? WHERE id = ?',
               [generate_password_hash(new_password), user_id])
    log_audit('update', 'user', user_id, f'Password reset for {user["username"]}')
    return ok({'id': user_id})


# =============================================================================
# Attachments
# =============================================================================

# entity_type -> (table, upload subdir, file prefix)
ATTACHMENT_ENTITIES = {
    'material_inspection': ('material_inspections', 'materials', 'MI'),
    'chemical_test': ('chemical_tests', 'chemical', 'CT'),
    'hardness_inspection': ('hardness_inspections', 'hardness', 'HD'),
    'calibration_result': ('calibration_results', 'calibration', 'CAL'),
    'instrument': ('instruments', 'calibration', 'INS'),
}


def allowed_file(filename):
    """Check if file extension is allowed."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def uploaded_files():
    """Files posted under 'files' (or 'file'), all checked before any is saved."""
    files = [f for f in request.files.getlist('files') + request.files.getlist('file')
             if f and f.filename]
    for f in files:
        if not allowed_file(f.filename):
            raise ApiError(f'File type not allowed: {f.filename}')
    return files


def save_upload(file, subdir, prefix):
    """Write one upload to disk. Returns the attachment fields."""
    ext = file.filename.rsplit('.', 1)[1].lower()
    filename = secure_filename(file.filename) or f'upload.{ext}'
    timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
    relative_path = f'{subdir}/{prefix}_{timestamp}_{filename}'
    full_path = os.path.join(app.config['UPLOAD_FOLDER'], relative_path)
    os.makedirs(os.path.dirname(full_path), exist_ok=True)
    file.save(full_path)

    pending = g.get('pending_files')
    if pending is not None:
        pending.append(full_path)

    return {
        'file_name': file.filename,
        'file_path': relative_path,
        'file_type': 'image' if ext in IMAGE_EXTENSIONS else ('pdf' if ext == 'pdf' else 'other'),
        'file_size': os.path.getsize(full_path),
    }


def store_attachments(db, entity_type, entity_id, files):
    """Save files and insert their attachment rows on the given connection."""
    _, subdir, prefix = ATTACHMENT_ENTITIES[entity_type]
    user_id = current_user.id if current_user.is_authenticated else None
    stored = []
    for file in files:
        info = save_upload(file, subdir, prefix)
        cur = db.execute('''
            INSERT INTO attachments (entity_type, entity_id, file_name, file_path, file_type, file_size, uploaded_by)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', [entity_type, entity_id, info['file_name'], info['file_path'], info['file_type'],
              info['file_size'], user_id])
        info['id'] = cur.lastrowid
        stored.append(info)
    return stored


def attachments_for(entity_type, entity_id):
    return rows_to_dicts(query_db('''
        SELECT * FROM attachments WHERE entity_type = ? AND entity_id = ? ORDER BY id
    ''', [entity_type, entity_id]))


def remove_attachment_files(attachments):
    for attachment in attachments:
        path = os.path.join(app.config['UPLOAD_FOLDER'], attachment['file_path'])
        if os.path.exists(path):
            os.remove(path)


def delete_attachments(db, entity_type, entity_ids):
    """Delete attachment rows for the given records. Returns the removed rows."""
    if not entity_ids:
        return []
    placeholders = ','.join('?' * len(entity_ids))
    rows = db.execute(f'''
        SELECT * FROM attachments WHERE entity_type = ? AND entity_id IN ({placeholders})
    ''', [entity_type] + list(entity_ids)).fetchall()
    db.execute(f'DELETE FROM attachments WHERE entity_type = ? AND entity_id IN ({placeholders})',
               [entity_type] + list(entity_ids))
    return rows_to_dicts(rows)


@app.route('/api/attachments/<entity_type>/<int:entity_id>')
@login_required
def attachment_list(entity_type, entity_id):
    if entity_type not in ATTACHMENT_ENTITIES:
        raise NotFound(f'Unknown entity type {entity_type}')
    return ok(attachments_for(entity_type, entity_id))


@app.route('/api/attachments/<entity_type>/<int:entity_id>', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def attachment_upload(entity_type, entity_id):
    """Upload attachments to an existing record."""
    if entity_type not in ATTACHMENT_ENTITIES:
        raise NotFound(f'Unknown entity type {entity_type}')
    table = ATTACHMENT_ENTITIES[entity_type][0]
    if not query_db(f'SELECT id FROM {table} WHERE id = ?', [entity_id], one=True):
        raise NotFound('Record not found')

    files = uploaded_files()
    if not files:
        raise ApiError('No file selected')

    with transaction() as db:
        stored = store_attachments(db, entity_type, entity_id, files)
        log_audit('upload', entity_type, entity_id,
                  f"Uploaded {', '.join(s['file_name'] for s in stored)}", commit=False)

    logger.info("Uploaded %s file(s) to %s %s", len(stored), entity_type, entity_id)
    return ok(stored, 201)


@app.route('/api/attachments/<int:attachment_id>/download')
@login_required
def attachment_download(attachment_id):
    attachment = query_db('SELECT * FROM attachments WHERE id = ?', [attachment_id], one=True)
    if not attachment:
        raise NotFound('Attachment not found')
    return send_from_directory(app.config['UPLOAD_FOLDER'], attachment['file_path'],
                               as_attachment=True, download_name=attachment['file_name'])


@app.route('/api/attachments/<int:attachment_id>', methods=['DELETE'])
@login_required
@role_required(*INSPECTION_ROLES)
def attachment_delete(attachment_id):
    """Delete an attachment."""
    attachment = query_db('SELECT * FROM attachments WHERE id = ?', [attachment_id], one=True)
    if not attachment:
        raise NotFound('Attachment not found')

    execute_db('DELETE FROM attachments WHERE id = ?', [attachment_id])
    remove_attachment_files([attachment])
    log_audit('delete', attachment['entity_type'], attachment['entity_id'],
              f'Deleted attachment {attachment["file_name"]}')
    logger.info("Deleted attachment %s", attachment_id)
    return ok({'id': attachment_id})


# =============================================================================
# Master Data - Parts, Suppliers, Quality Standards, Master Standards
# =============================================================================

PART_FIELDS = ('part_name', 'material', 'spec_min', 'spec_max', 'scale', 'standard_ref', 'active')


def _part_values(data):
    values = {}
    for key in PART_FIELDS:
        if key not in data:
            continue
        if key in ('spec_min', 'spec_max'):
            values[key] = to_float(data[key], key)
        elif key == 'active':
            values[key] = 1 if data[key] in (True, 1, '1', 'true', 'on') else 0
        else:
            values[key] = clean(data[key])
    lo, hi = values.get('spec_min'), values.get('spec_max')
    if lo is not None and hi is not None and lo > hi:
        raise ApiError('spec_min cannot be greater than spec_max')
    return values


@app.route('/api/parts')
@login_required
def parts_list():
    search = request.args.get('search', '').strip()
    query = 'SELECT * FROM parts WHERE 1=1'
    args = []
    if request.args.get('active') == '1':
        query += ' AND active = 1'
    if search:
        query += ' AND (part_no LIKE ? OR part_name LIKE ? OR material LIKE ?)'
        args.extend([f'%{search}%'] * 3)
    query += ' ORDER BY part_no'
    return ok(rows_to_dicts(query_db(query, args)))


@app.route('/api/parts/<int:part_id>')
@login_required
def part_detail(part_id):
    part = query_db('SELECT * FROM parts WHERE id = ?', [part_id], one=True)
    if not part:
        raise NotFound('Part not found')
    return ok(dict(part))


@app.route('/api/parts', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def part_create():
    data = request_data()
    require_fields(data, ['part_no', 'part_name'])
    part_no = required_text(data, 'part_no')
    if query_db('SELECT id FROM parts WHERE part_no = ?', [part_no], one=True):
        raise Conflict(f'Part {part_no} already exists')

    values = _part_values(data)
    values.setdefault('scale', 'HRC')
    values['scale'] = values['scale'] or 'HRC'
    columns = ['part_no'] + list(values)
    part_id = execute_db(
        f"INSERT INTO parts ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
        [part_no] + list(values.values())
    )
    log_audit('create', 'part', part_id, f'Created part {part_no}')
    logger.info("Part %s created", part_no)
    return ok(dict(query_db('SELECT * FROM parts WHERE id = ?', [part_id], one=True)), 201)


@app.route('/api/parts/<int:part_id>', methods=['PUT'])
@login_required
@role_required(*QUALITY_ROLES)
def part_update(part_id):
    part = query_db('SELECT * FROM parts WHERE id = ?', [part_id], one=True)
    if not part:
        raise NotFound('Part not found')

    data = request_data()
    values = _part_values(data)
    if 'part_name' in values and not values['part_name']:
        raise ApiError('part_name cannot be empty')
    lo = values.get('spec_min', part['spec_min'])
    hi = values.get('spec_max', part['spec_max'])
    if lo is not None and hi is not None and lo > hi:
        raise ApiError('spec_min cannot be greater than spec_max')
    if not values:
        raise ApiError('No fields to update')

    changes = diff_fields(part, values)
    assignments = ', '.join(f'{k} = ?' for k in values)
    execute_db(f'UPDATE parts SET {assignments}, updated_at = ? WHERE id = ?',
               list(values.values()) + [now_str(), part_id])
    log_audit('update', 'part', part_id, f'Updated part {part["part_no"]}', changes)
    return ok(dict(query_db('SELECT * FROM parts WHERE id = ?', [part_id], one=True)))


@app.route('/api/parts/<int:part_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def part_delete(part_id):
    part = query_db('SELECT * FROM parts WHERE id = ?', [part_id], one=True)
    if not part:
        raise NotFound('Part not found')
    in_use = query_db('SELECT COUNT(*) as count FROM hardness_inspections WHERE part_id = ?',
                      [part_id], one=True)
    if in_use['count']:
        raise Conflict(f'Part {part["part_no"]} is used by {in_use["count"]} hardness inspection(s)')

    execute_db('DELETE FROM parts WHERE id = ?', [part_id])
    log_audit('delete', 'part', part_id, f'Deleted part {part["part_no"]}')
    logger.info("Part %s deleted", part['part_no'])
    return ok({'id': part_id})


SUPPLIER_FIELDS = ('name', 'code', 'contact_person', 'email', 'phone')


@app.route('/api/suppliers')
@login_required
def suppliers_list():
    query = 'SELECT * FROM suppliers'
    if request.args.get('all') != '1':
        query += ' WHERE active = 1'
    query += ' ORDER BY name'
    return ok(rows_to_dicts(query_db(query)))


@app.route('/api/suppliers', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def supplier_create():
    data = request_data()
    require_fields(data, ['name'])
    name = required_text(data, 'name')
    if query_db('SELECT id FROM suppliers WHERE name = ?', [name], one=True):
        raise Conflict(f'Supplier {name} already exists')

    supplier_id = execute_db('''
        INSERT INTO suppliers (name, code, contact_person, email, phone)
        VALUES (?, ?, ?, ?, ?)
    ''', [name, clean(data.get('code')), clean(data.get('contact_person')),
          clean(data.get('email')), clean(data.get('phone'))])
    log_audit('create', 'supplier', supplier_id, f'Created supplier {name}')
    return ok(dict(query_db('SELECT * FROM suppliers WHERE id = ?', [supplier_id], one=True)), 201)


@app.route('/api/suppliers/<int:supplier_id>', methods=['PUT'])
@login_required
@role_required(*QUALITY_ROLES)
def supplier_update(supplier_id):
    supplier = query_db('SELECT * FROM suppliers WHERE id = ?', [supplier_id], one=True)
    if not supplier:
        raise NotFound('Supplier not found')

    data = request_data()
    values = {k: clean(data[k]) for k in SUPPLIER_FIELDS if k in data}
    if 'name' in values and not values['name']:
        raise ApiError('name cannot be empty')
    if not values:
        raise ApiError('No fields to update')

    changes = diff_fields(supplier, values)
    assignments = ', '.join(f'{k} = ?' for k in values)
    execute_db(f'UPDATE suppliers SET {assignments}, updated_at = ? WHERE id = ?',
               list(values.values()) + [now_str(), supplier_id])
    log_audit('update', 'supplier', supplier_id, f'Updated supplier {supplier["name"]}', changes)
    return ok(dict(query_db('SELECT * FROM suppliers WHERE id = ?', [supplier_id], one=True)))


@app.route('/api/suppliers/<int:supplier_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def supplier_delete(supplier_id):
    """Suppliers are deactivated, not removed, so old inspections keep their link."""
    supplier = query_db('SELECT * FROM suppliers WHERE id = ?', [supplier_id], one=True)
    if not supplier:
        raise NotFound('Supplier not found')
    execute_db('UPDATE suppliers SET active = 0, updated_at = ? WHERE id = ?', [now_str(), supplier_id])
    log_audit('delete', 'supplier', supplier_id, f'Deactivated supplier {supplier["name"]}')
    return ok({'id': supplier_id, 'active': 0})


def find_supplier(value, db=None):
    """Resolve a supplier by id, name or code. Returns the id or None."""
    if value in (None, ''):
        return None
    db = db or get_db()
    row = db.execute('SELECT id FROM suppliers WHERE id = ? OR name = ? OR code = ?',
                     [value, str(value), str(value)]).fetchone()
    return row['id'] if row else None


@app.route('/api/quality-standards')
@login_required
def quality_standards_list():
    query = 'SELECT * FROM quality_standards WHERE 1=1'
    args = []
    if request.args.get('material_grade'):
        query += ' AND material_grade = ?'
        args.append(request.args['material_grade'])
    if request.args.get('process_stage'):
        query += ' AND process_stage = ?'
        args.append(request.args['process_stage'])
    query += ' ORDER BY material_grade, process_stage, parameter_name'
    return ok(rows_to_dicts(query_db(query, args)))


@app.route('/api/quality-standards', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def quality_standard_create():
    data = request_data()
    require_fields(data, ['material_grade', 'process_stage', 'parameter_name'])
    min_value = to_float(data.get('min_value'), 'min_value')
    max_value = to_float(data.get('max_value'), 'max_value')
    if min_value is not None and max_value is not None and min_value > max_value:
        raise ApiError('min_value cannot be greater than max_value')

    standard_id = execute_db('''
        INSERT INTO quality_standards (material_grade, process_stage, parameter_name, min_value, max_value, unit)
        VALUES (?, ?, ?, ?, ?, ?)
    ''', [required_text(data, 'material_grade'), required_text(data, 'process_stage'),
          required_text(data, 'parameter_name'), min_value, max_value, clean(data.get('unit')) or '%'])
    log_audit('create', 'quality_standard', standard_id,
              f"Standard {data['parameter_name']} for {data['material_grade']}")
    return ok(dict(query_db('SELECT * FROM quality_standards WHERE id = ?', [standard_id], one=True)), 201)


@app.route('/api/quality-standards/<int:standard_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def quality_standard_delete(standard_id):
    standard = query_db('SELECT * FROM quality_standards WHERE id = ?', [standard_id], one=True)
    if not standard:
        raise NotFound('Quality standard not found')
    execute_db('DELETE FROM quality_standards WHERE id = ?', [standard_id])
    log_audit('delete', 'quality_standard', standard_id,
              f"Deleted standard {standard['parameter_name']} for {standard['material_grade']}")
    return ok({'id': standard_id})


@app.route('/api/master-standards')
@login_required
def master_standards_list():
    standards = rows_to_dicts(query_db('SELECT * FROM master_standards ORDER BY name'))
    today = date.today()
    for s in standards:
        expire = qc_calc.parse_date(s['expire_date'])
        s['expired'] = bool(expire and expire < today)
    return ok(standards)


@app.route('/api/master-standards', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def master_standard_create():
    data = request_data()
    require_fields(data, ['name', 'serial_number'])
    serial = required_text(data, 'serial_number')
    if query_db('SELECT id FROM master_standards WHERE serial_number = ?', [serial], one=True):
        raise Conflict(f'Master standard {serial} already exists')

    standard_id = execute_db('''
        INSERT INTO master_standards (name, serial_number, certificate_no, expire_date, traceability_source)
        VALUES (?, ?, ?, ?, ?)
    ''', [required_text(data, 'name'), serial, clean(data.get('certificate_no')),
          check_date(data.get('expire_date'), 'expire_date'), clean(data.get('traceability_source'))])
    log_audit('create', 'master_standard', standard_id, f'Registered master standard {serial}')
    return ok(dict(query_db('SELECT * FROM master_standards WHERE id = ?', [standard_id], one=True)), 201)


# =============================================================================
# Material Receiving Inspection
# =============================================================================

MATERIAL_TYPES = ('bar', 'rod')
RESULTS = ('pending', 'pass', 'fail')
MATERIAL_REQUIRED = ('material_type', 'material_grade', 'batch_number', 'supplier_name', 'receipt_date')
MATERIAL_FIELDS = MATERIAL_REQUIRED + ('maker_mat', 'invoice_number', 'inspector', 'cer_number',
                                       'inspection_quantity', 'notes', 'overall_result',
                                       'bar_inspections', 'rod_inspections')


def material_to_dict(row):
    item = dict(row)
    for key in ('bar_inspections', 'rod_inspections'):
        item[key] = json.loads(item[key]) if item[key] else []
    return item


def get_material_or_404(inspection_id, include_deleted=True):
    row = query_db('SELECT * FROM material_inspections WHERE id = ?', [inspection_id], one=True)
    if not row or (row['deleted_at'] and not include_deleted):
        raise NotFound('Material inspection not found')
    return row


def _material_values(data):
    """Validated column values for the material fields present in data."""
    values = {}
    for key in MATERIAL_FIELDS:
        if key not in data:
            continue
        value = data[key]
        if key in MATERIAL_REQUIRED and (value is None or str(value).strip() == ''):
            raise ApiError(f'{key} cannot be empty')
        if key == 'material_type':
            value = str(value).strip().lower()
            if value not in MATERIAL_TYPES:
                raise ApiError('material_type must be bar or rod')
        elif key == 'overall_result':
            value = str(value or 'pending').strip().lower()
            if value not in RESULTS:
                raise ApiError('overall_result must be pending, pass or fail')
        elif key == 'receipt_date':
            value = check_date(value, key)
        elif key == 'inspection_quantity':
            value = to_int(value, key, minimum=0)
        elif key in ('bar_inspections', 'rod_inspections'):
            value = json.dumps(parse_json_list(value, key))
        else:
            value = clean(value)
        values[key] = value
    return values


@app.route('/api/material-inspections')
@login_required
def material_inspections_list():
    page, limit, offset = pagination_args()
    where = ['1=1']
    args = []

    if request.args.get('include_deleted') != '1':
        where.append('deleted_at IS NULL')
    search = request.args.get('search', '').strip()
    if search:
        where.append('''(batch_number LIKE ? OR supplier_name LIKE ? OR maker_mat LIKE ?
                         OR invoice_number LIKE ? OR material_grade LIKE ?)''')
        args.extend([f'%{search}%'] * 5)
    status = request.args.get('status', '').strip().lower()
    if status:
        where.append('overall_result = ?')
        args.append(status)
    if request.args.get('material_grade'):
        where.append('material_grade = ?')
        args.append(request.args['material_grade'])
    if request.args.get('supplier_name'):
        where.append('supplier_name LIKE ?')
        args.append(f"%{request.args['supplier_name']}%")
    month = check_month(request.args.get('month'))
    if month:
        where.append("strftime('%Y-%m', receipt_date) = ?")
        args.append(month)

    where_sql = ' AND '.join(where)
    total = query_db(f'SELECT COUNT(*) as count FROM material_inspections WHERE {where_sql}',
                     args, one=True)['count']
    rows = query_db(f'''
        SELECT * FROM material_inspections
        WHERE {where_sql}
        ORDER BY created_at DESC, id DESC
        LIMIT ? OFFSET ?
    ''', args + [limit, offset])

    inspections = []
    for row in rows:
        item = material_to_dict(row)
        item['attachments'] = attachments_for('material_inspection', row['id'])
        inspections.append(item)
    return paginated(inspections, total, page, limit)


@app.route('/api/material-inspections/stats')
@login_required
def material_inspections_stats():
    row = query_db('''
        SELECT COUNT(*) as total,
               SUM(CASE WHEN overall_result = 'pass' THEN 1 ELSE 0 END) as passed,
               SUM(CASE WHEN overall_result = 'fail' THEN 1 ELSE 0 END) as failed,
               SUM(CASE WHEN overall_result = 'pending' THEN 1 ELSE 0 END) as pending
        FROM material_inspections
        WHERE deleted_at IS NULL
    ''', one=True)
    total = row['total'] or 0
    passed = row['passed'] or 0
    return ok({
        'totalInspections': total,
        'passCount': passed,
        'failCount': row['failed'] or 0,
        'pendingCount': row['pending'] or 0,
        'passRate': qc_calc.pass_rate(total, passed),
    })


@app.route('/api/material-inspections/<int:inspection_id>')
@login_required
def material_inspection_detail(inspection_id):
    item = material_to_dict(get_material_or_404(inspection_id))
    item['attachments'] = attachments_for('material_inspection', inspection_id)
    return ok(item)


@app.route('/api/material-inspections', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def material_inspection_create():
    data = request_data()
    require_fields(data, MATERIAL_REQUIRED)
    values = _material_values(data)
    values.setdefault('overall_result', 'pending')
    files = uploaded_files()

    year = date.today().year
    with transaction() as db:
        number = next_number('material_inspections', 'inspection_number', f'MI-{year}-', 5, db)
        timestamp = now_str()
        columns = ['inspection_number'] + list(values) + ['created_by', 'created_at', 'updated_at']
        params = [number] + list(values.values()) + [current_user.id, timestamp, timestamp]
        cur = db.execute(
            f"INSERT INTO material_inspections ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            params
        )
        inspection_id = cur.lastrowid
        store_attachments(db, 'material_inspection', inspection_id, files)
        log_audit('create', 'material_inspection', inspection_id,
                  f"Created material inspection {number} for batch {values['batch_number']}", commit=False)
        if values['overall_result'] == 'fail':
            notify_quality('inspection_failed', f'Material inspection {number} failed',
                           f"Batch {values['batch_number']} from {values['supplier_name']} failed receiving inspection",
                           'material_inspection', inspection_id, commit=False)

    logger.info("Material inspection %s created with %s attachment(s)", number, len(files))
    item = material_to_dict(get_material_or_404(inspection_id))
    item['attachments'] = attachments_for('material_inspection', inspection_id)
    return ok(item, 201)


@app.route('/api/material-inspections/<int:inspection_id>', methods=['PUT'])
@login_required
@role_required(*INSPECTION_ROLES)
def material_inspection_update(inspection_id):
    existing = get_material_or_404(inspection_id, include_deleted=False)
    data = request_data()
    values = _material_values(data)
    files = uploaded_files()
    if not values and not files:
        raise ApiError('No fields to update')

    changes = diff_fields(existing, values)
    with transaction() as db:
        if values:
            assignments = ', '.join(f'{k} = ?' for k in values)
            db.execute(f'UPDATE material_inspections SET {assignments}, updated_at = ? WHERE id = ?',
                       list(values.values()) + [now_str(), inspection_id])
        stored = store_attachments(db, 'material_inspection', inspection_id, files)
        if stored:
            changes['attachments_added'] = [s['file_name'] for s in stored]
        log_audit('update', 'material_inspection', inspection_id,
                  f"Updated material inspection {existing['inspection_number']}",
                  changes, reason=clean(data.get('reason')), commit=False)

    logger.info("Material inspection %s updated (%s field(s) changed)",
                existing['inspection_number'], len(changes))
    item = material_to_dict(get_material_or_404(inspection_id))
    item['attachments'] = attachments_for('material_inspection', inspection_id)
    return ok(item)


@app.route('/api/material-inspections/<int:inspection_id>/approve', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def material_inspection_approve(inspection_id):
    existing = get_material_or_404(inspection_id, include_deleted=False)
    if existing['overall_result'] != 'pending':
        raise ApiError(f"Only pending inspections can be approved (current: {existing['overall_result']})")

    timestamp = now_str()
    with transaction() as db:
        db.execute('''
            UPDATE material_inspections
            SET overall_result = 'pass', approved_by = ?, approved_at = ?, updated_at = ?
            WHERE id = ?
        ''', [current_user.id, timestamp, timestamp, inspection_id])
        log_audit('approve', 'material_inspection', inspection_id,
                  f"Approved material inspection {existing['inspection_number']}",
                  {'overall_result': ['pending', 'pass']}, commit=False)

    logger.info("Material inspection %s approved by %s", existing['inspection_number'], current_user.username)
    return ok(material_to_dict(get_material_or_404(inspection_id)))


def _hard_delete_materials(ids):
    """Delete inspections with their attachment rows and files. Returns deleted numbers."""
    placeholders = ','.join('?' * len(ids))
    with transaction() as db:
        rows = db.execute(f'SELECT id, inspection_number FROM material_inspections WHERE id IN ({placeholders})',
                          list(ids)).fetchall()
        found = [r['id'] for r in rows]
        if not found:
            return []
        attachments = delete_attachments(db, 'material_inspection', found)
        db.execute(f"DELETE FROM material_inspections WHERE id IN ({','.join('?' * len(found))})", found)
        for r in rows:
            log_audit('delete', 'material_inspection', r['id'],
                      f"Deleted material inspection {r['inspection_number']}", commit=False)
    remove_attachment_files(attachments)
    return [r['inspection_number'] for r in rows]


@app.route('/api/material-inspections/<int:inspection_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def material_inspection_delete(inspection_id):
    get_material_or_404(inspection_id)
    deleted = _hard_delete_materials([inspection_id])
    logger.info("Material inspection %s deleted", deleted[0])
    return ok({'id': inspection_id, 'deleted': deleted})


@app.route('/api/material-inspections/<int:inspection_id>/soft', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def material_inspection_soft_delete(inspection_id):
    existing = get_material_or_404(inspection_id, include_deleted=False)
    with transaction() as db:
        db.execute('UPDATE material_inspections SET deleted_at = ?, deleted_by = ? WHERE id = ?',
                   [now_str(), current_user.id, inspection_id])
        log_audit('soft_delete', 'material_inspection', inspection_id,
                  f"Soft deleted material inspection {existing['inspection_number']}", commit=False)
    logger.info("Material inspection %s soft deleted", existing['inspection_number'])
    return ok({'id': inspection_id})


@app.route('/api/material-inspections/<int:inspection_id>/restore', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def material_inspection_restore(inspection_id):
    existing = get_material_or_404(inspection_id)
    if not existing['deleted_at']:
        raise ApiError('Inspection is not deleted')
    with transaction() as db:
        db.execute('UPDATE material_inspections SET deleted_at = NULL, deleted_by = NULL WHERE id = ?',
                   [inspection_id])
        log_audit('restore', 'material_inspection', inspection_id,
                  f"Restored material inspection {existing['inspection_number']}", commit=False)
    logger.info("Material inspection %s restored", existing['inspection_number'])
    return ok(material_to_dict(get_material_or_404(inspection_id)))


@app.route('/api/material-inspections/bulk', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def material_inspections_bulk_delete():
    data = request_data()
    ids = parse_json_list(data.get('ids'), 'ids')
    if not ids:
        raise ApiError('ids must be a non-empty array')
    ids = [to_int(i, 'ids') for i in ids]

    deleted = _hard_delete_materials(ids)
    if not deleted:
        raise NotFound('No matching inspections found')
    logger.info("Bulk deleted %s material inspection(s)", len(deleted))
    return ok({'deletedCount': len(deleted), 'deleted': deleted})


@app.route('/api/material-inspections/cleanup', methods=['DELETE'])
@login_required
@role_required('admin')
def material_inspections_cleanup():
    days = to_int(request.args.get('older_than'), 'older_than', default=90, minimum=1)
    cutoff = (datetime.now() - timedelta(days=days)).strftime('%Y-%m-%d %H:%M:%S')
    ids = [r['id'] for r in query_db('SELECT id FROM material_inspections WHERE created_at < ?', [cutoff])]

    deleted = _hard_delete_materials(ids) if ids else []
    logger.info("Cleanup removed %s material inspection(s) created before %s", len(deleted), cutoff)
    return ok({'deletedCount': len(deleted), 'cutoff': cutoff})


@app.route('/api/material-inspections/<int:inspection_id>/statistics')
@login_required
def material_inspection_statistics(inspection_id):
    item = material_to_dict(get_material_or_404(inspection_id))
    # optional window per field, e.g. ?odMeasurement_min=24.8&odMeasurement_max=25.2
    limits = {}
    for field in qc_calc.BAR_FIELDS + qc_calc.ROD_FIELDS:
        lower = to_float(request.args.get(f'{field}_min'), f'{field}_min')
        upper = to_float(request.args.get(f'{field}_max'), f'{field}_max')
        if lower is not None or upper is not None:
            limits[field] = (lower, upper)
    stats = qc_calc.material_statistics(item['material_type'], item['bar_inspections'],
                                        item['rod_inspections'], limits)
    return ok({'inspection_number': item['inspection_number'],
               'material_type': item['material_type'], 'statistics': stats})


# =============================================================================
# Chemical Composition Test
# =============================================================================

CHEMICAL_HEADER_FIELDS = ('inspection_date', 'material_grade', 'heat_no', 'cert_no', 'inspector',
                          'standard', 'manufacturer', 'supplier', 'remarks')


def _chemical_header_values(data):
    values = {}
    for key in CHEMICAL_HEADER_FIELDS:
        if key not in data:
            continue
        if key == 'inspection_date':
            values[key] = check_date(data[key], key)
        else:
            values[key] = clean(data[key])
    if 'material_grade' in values and not values['material_grade']:
        raise ApiError('material_grade cannot be empty')
    return values


def _element_rows(data):
    """Validated element results from 'elements' (list or JSON string)."""
    rows = []
    for index, element in enumerate(parse_json_list(data.get('elements'), 'elements'), start=1):
        if not isinstance(element, dict):
            raise ApiError(f'elements[{index}] must be an object')
        symbol = clean_text(element.get('element_symbol') or element.get('symbol'))
        if not symbol:
            raise ApiError(f'elements[{index}].element_symbol is required')
        rows.append({
            'element_symbol': symbol,
            'element_name': clean(element.get('element_name'))
            or qc_calc.ELEMENT_NAMES.get(symbol.lower(), '').capitalize() or None,
            'measured_value': to_float(element.get('measured_value'), f'elements[{index}].measured_value'),
            'specification_min': to_float(element.get('specification_min'), f'elements[{index}].specification_min'),
            'specification_max': to_float(element.get('specification_max'), f'elements[{index}].specification_max'),
            'unit': clean(element.get('unit')) or '%',
        })
    return rows


def _insert_elements(db, test_id, elements):
    for e in elements:
        db.execute('''
            INSERT INTO chemical_element_results
                (chemical_test_id, element_symbol, element_name, measured_value,
                 specification_min, specification_max, unit)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', [test_id, e['element_symbol'], e['element_name'], e['measured_value'],
              e['specification_min'], e['specification_max'], e['unit']])


def evaluate_chemical_test(db, test_id, material_grade):
    """Grade every element of a test against its grade's standards. Returns overall result."""
    standards = db.execute('''
        SELECT * FROM quality_standards
        WHERE material_grade = ? AND process_stage = 'chemical_test'
        ORDER BY id
    ''', [material_grade]).fetchall()
    elements = db.execute('SELECT * FROM chemical_element_results WHERE chemical_test_id = ? ORDER BY id',
                          [test_id]).fetchall()

    graded, overall = qc_calc.evaluate_elements([dict(e) for e in elements], standards)
    for e in graded:
        db.execute('''
            UPDATE chemical_element_results
            SET specification_min = ?, specification_max = ?, result = ?
            WHERE id = ?
        ''', [e['specification_min'], e['specification_max'], e['result'], e['id']])
    db.execute('UPDATE chemical_tests SET overall_result = ?, updated_at = ? WHERE id = ?',
               [overall, now_str(), test_id])
    return overall


def chemical_test_to_dict(test_id):
    test = query_db('''
        SELECT c.*, t.username as tested_by_name, a.username as approved_by_name
        FROM chemical_tests c
        LEFT JOIN users t ON c.tested_by = t.id
        LEFT JOIN users a ON c.approved_by = a.id
        WHERE c.id = ?
    ''', [test_id], one=True)
    if not test:
        raise NotFound('Chemical test not found')
    item = dict(test)
    item['elements'] = rows_to_dicts(query_db(
        'SELECT * FROM chemical_element_results WHERE chemical_test_id = ? ORDER BY id', [test_id]))
    item['attachments'] = attachments_for('chemical_test', test_id)
    return item


@app.route('/api/chemical-tests')
@login_required
def chemical_tests_list():
    page, limit, offset = pagination_args()
    where = ['1=1']
    args = []
    status = (request.args.get('status') or request.args.get('result') or '').strip()
    if status:
        where.append('LOWER(overall_result) = LOWER(?)')
        args.append(status)
    if request.args.get('material_grade'):
        where.append('material_grade = ?')
        args.append(request.args['material_grade'])
    search = request.args.get('search', '').strip()
    if search:
        where.append('(test_number LIKE ? OR heat_no LIKE ? OR cert_no LIKE ? OR supplier LIKE ?)')
        args.extend([f'%{search}%'] * 4)

    where_sql = ' AND '.join(where)
    total = query_db(f'SELECT COUNT(*) as count FROM chemical_tests WHERE {where_sql}', args, one=True)['count']
    rows = query_db(f'''
        SELECT c.*,
               (SELECT COUNT(*) FROM chemical_element_results e WHERE e.chemical_test_id = c.id) as element_count
        FROM chemical_tests c
        WHERE {where_sql}
        ORDER BY c.inspection_date DESC, c.id DESC
        LIMIT ? OFFSET ?
    ''', args + [limit, offset])
    return paginated(rows_to_dicts(rows), total, page, limit)


@app.route('/api/chemical-tests/stats')
@login_required
def chemical_tests_stats():
    row = query_db('''
        SELECT COUNT(*) as total,
               SUM(CASE WHEN overall_result = 'pass' THEN 1 ELSE 0 END) as passed,
               SUM(CASE WHEN overall_result = 'fail' THEN 1 ELSE 0 END) as failed,
               SUM(CASE WHEN overall_result = 'pending' THEN 1 ELSE 0 END) as pending
        FROM chemical_tests
    ''', one=True)
    total = row['total'] or 0
    passed = row['passed'] or 0
    return ok({
        'total': total,
        'passed': passed,
        'failed': row['failed'] or 0,
        'pending': row['pending'] or 0,
        'passRate': qc_calc.pass_rate(total, passed, places=2),
    })


@app.route('/api/chemical-tests/<int:test_id>')
@login_required
def chemical_test_detail(test_id):
    return ok(chemical_test_to_dict(test_id))


@app.route('/api/chemical-tests', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def chemical_test_create():
    data = request_data()
    require_fields(data, ['material_grade'])
    values = _chemical_header_values(data)
    values['inspection_date'] = values.get('inspection_date') or today_str()
    elements = _element_rows(data)
    files = uploaded_files()

    prefix = f'CT{date.today().year}'
    with transaction() as db:
        number = next_number('chemical_tests', 'test_number', prefix, 6, db)
        timestamp = now_str()
        columns = ['test_number'] + list(values) + ['tested_by', 'tested_at', 'created_at', 'updated_at']
        params = [number] + list(values.values()) + [current_user.id, timestamp, timestamp, timestamp]
        cur = db.execute(
            f"INSERT INTO chemical_tests ({', '.join(columns)}) VALUES ({', '.join('?' * len(columns))})",
            params
        )
        test_id = cur.lastrowid
        _insert_elements(db, test_id, elements)
        store_attachments(db, 'chemical_test', test_id, files)
        overall = evaluate_chemical_test(db, test_id, values['material_grade'])
        log_audit('create', 'chemical_test', test_id,
                  f"Created chemical test {number} ({len(elements)} elements, {overall})", commit=False)
        if overall == 'fail':
            notify_quality('inspection_failed', f'Chemical test {number} failed',
                           f"Grade {values['material_grade']} heat {values.get('heat_no') or '-'} is out of specification",
                           'chemical_test', test_id, commit=False)

    logger.info("Chemical test %s created: %s", number, overall)
    return ok(chemical_test_to_dict(test_id), 201)


@app.route('/api/chemical-tests/<int:test_id>', methods=['PUT'])
@login_required
@role_required(*INSPECTION_ROLES)
def chemical_test_update(test_id):
    existing = query_db('SELECT * FROM chemical_tests WHERE id = ?', [test_id], one=True)
    if not existing:
        raise NotFound('Chemical test not found')
    if existing['approved_at']:
        raise ApiError('Approved tests cannot be modified')

    data = request_data()
    values = _chemical_header_values(data)
    replace_elements = 'elements' in data
    elements = _element_rows(data) if replace_elements else []
    files = uploaded_files()

    changes = diff_fields(existing, values)
    grade = values.get('material_grade') or existing['material_grade']
    with transaction() as db:
        if values:
            assignments = ', '.join(f'{k} = ?' for k in values)
            db.execute(f'UPDATE chemical_tests SET {assignments}, updated_at = ? WHERE id = ?',
                       list(values.values()) + [now_str(), test_id])
        if replace_elements:
            db.execute('DELETE FROM chemical_element_results WHERE chemical_test_id = ?', [test_id])
            _insert_elements(db, test_id, elements)
            changes['elements'] = [e['element_symbol'] for e in elements]
        store_attachments(db, 'chemical_test', test_id, files)
        overall = evaluate_chemical_test(db, test_id, grade)
        if overall != existing['overall_result']:
            changes['overall_result'] = [existing['overall_result'], overall]
        log_audit('update', 'chemical_test', test_id, f"Updated chemical test {existing['test_number']}",
                  changes, reason=clean(data.get('reason')), commit=False)

    logger.info("Chemical test %s updated: %s", existing['test_number'], overall)
    return ok(chemical_test_to_dict(test_id))


@app.route('/api/chemical-tests/<int:test_id>/approve', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def chemical_test_approve(test_id):
    existing = query_db('SELECT * FROM chemical_tests WHERE id = ?', [test_id], one=True)
    if not existing:
        raise NotFound('Chemical test not found')
    if existing['approved_at']:
        raise ApiError('Test is already approved')

    data = request_data() if request.get_data() else {}
    notes = clean(data.get('notes'))
    remarks = existing['remarks']
    if notes:
        remarks = f'{remarks}\nApproval: {notes}' if remarks else f'Approval: {notes}'

    timestamp = now_str()
    with transaction() as db:
        db.execute('''
            UPDATE chemical_tests SET approved_by = ?, approved_at = ?, remarks = ?, updated_at = ?
            WHERE id = ?
        ''', [current_user.id, timestamp, remarks, timestamp, test_id])
        log_audit('approve', 'chemical_test', test_id, f"Approved chemical test {existing['test_number']}",
                  reason=notes, commit=False)

    logger.info("Chemical test %s approved by %s", existing['test_number'], current_user.username)
    return ok(chemical_test_to_dict(test_id))


@app.route('/api/chemical-tests/<int:test_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def chemical_test_delete(test_id):
    existing = query_db('SELECT * FROM chemical_tests WHERE id = ?', [test_id], one=True)
    if not existing:
        raise NotFound('Chemical test not found')
    if existing['approved_at']:
        raise ApiError('Approved tests cannot be deleted')

    with transaction() as db:
        attachments = delete_attachments(db, 'chemical_test', [test_id])
        db.execute('DELETE FROM chemical_tests WHERE id = ?', [test_id])
        log_audit('delete', 'chemical_test', test_id, f"Deleted chemical test {existing['test_number']}",
                  commit=False)
    remove_attachment_files(attachments)
    logger.info("Chemical test %s deleted", existing['test_number'])
    return ok({'id': test_id})


# =============================================================================
# Hardness Inspection
# =============================================================================

HARDNESS_HEADER_FIELDS = ('report_no', 'lot_no', 'heat_no_internal', 'heat_no_supplier', 'process_type',
                          'inspector_name', 'inspection_type', 'sampling_rate', 'receipt_date', 'remarks')


def _hardness_header_values(data):
    values = {}
    for key in HARDNESS_HEADER_FIELDS:
        if key in data:
            values[key] = check_date(data[key], key) if key == 'receipt_date' else clean(data[key])
    return values


def _hardness_measurements(data):
    """
    Measurements from the request.

    Either 'measurements' as [{piece_no, value, point_type}] or the short
    form 'test_values' (list of numbers) with one 'test_point' for all.
    Returns None when neither is present.
    """
    if 'measurements' in data:
        items = parse_json_list(data.get('measurements'), 'measurements')
        for index, m in enumerate(items, start=1):
            if not isinstance(m, dict):
                raise ApiError(f'measurements[{index}] must be an object')
        return items
    if 'test_values' in data:
        point_type = data.get('test_point') or 'Surface'
        return [{'piece_no': i, 'value': v, 'point_type': point_type}
                for i, v in enumerate(parse_json_list(data.get('test_values'), 'test_values'), start=1)]
    return None


def _insert_measurements(db, inspection_id, graded):
    for m in graded:
        db.execute('''
            INSERT INTO hardness_measurements (inspection_id, piece_no, measure_value, point_type, status)
            VALUES (?, ?, ?, ?, ?)
        ''', [inspection_id, m['piece_no'], m['value'], m['point_type'], m['status']])


def get_hardness_or_404(inspection_id):
    row = query_db('''
        SELECT h.*, s.name as supplier_name
        FROM hardness_inspections h
        LEFT JOIN suppliers s ON h.supplier_id = s.id
        WHERE h.id = ?
    ''', [inspection_id], one=True)
    if not row:
        raise NotFound('Hardness inspection not found')
    return row


def hardness_measurement_rows(inspection_id):
    return rows_to_dicts(query_db('''
        SELECT * FROM hardness_measurements WHERE inspection_id = ? ORDER BY piece_no, id
    ''', [inspection_id]))


@app.route('/api/hardness', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def hardness_create():
    data = request_data()
    require_fields(data, ['part_no'])
    values = _hardness_header_values(data)
    measurements = _hardness_measurements(data) or []
    files = uploaded_files()

    with transaction() as db:
        part, created = get_or_create_part(
            required_text(data, 'part_no'), clean(data.get('part_name')), clean(data.get('material')),
            to_float(data.get('spec_min'), 'spec_min'), to_float(data.get('spec_max'), 'spec_max'),
            clean(data.get('scale')), db=db)
        graded, avg, overall = qc_calc.evaluate_hardness(measurements, part['spec_min'], part['spec_max'])
        supplier_id = find_supplier(data.get('supplier_id') or data.get('supplier'), db)

        timestamp = now_str()
        snapshot = {
            'part_id': part['id'], 'part_no': part['part_no'], 'part_name': part['part_name'],
            'material': part['material'], 'spec_min': part['spec_min'], 'spec_max': part['spec_max'],
            'scale': part['scale'], 'supplier_id': supplier_id,
        }
        row = dict(snapshot, **values)
        row.update({'average_value': avg, 'overall_status': overall, 'created_by': current_user.id,
                    'created_at': timestamp, 'updated_at': timestamp})
        cur = db.execute(
            f"INSERT INTO hardness_inspections ({', '.join(row)}) VALUES ({', '.join('?' * len(row))})",
            list(row.values())
        )
        inspection_id = cur.lastrowid
        _insert_measurements(db, inspection_id, graded)
        store_attachments(db, 'hardness_inspection', inspection_id, files)
        log_audit('create', 'hardness_inspection', inspection_id,
                  f"Hardness inspection for {part['part_no']} ({len(graded)} pieces, {overall})", commit=False)
        if overall == 'FAIL':
            notify_quality('inspection_failed', f"Hardness inspection failed for {part['part_no']}",
                           f"Lot {values.get('lot_no') or '-'} average {avg} outside "
                           f"{part['spec_min']}-{part['spec_max']} {part['scale']}",
                           'hardness_inspection', inspection_id, commit=False)

    logger.info("Hardness inspection %s created for %s: %s (part created: %s)",
                inspection_id, part['part_no'], overall, created)
    return ok(hardness_details(inspection_id), 201)


def hardness_details(inspection_id):
    item = dict(get_hardness_or_404(inspection_id))
    item['measurements'] = hardness_measurement_rows(inspection_id)
    item['statistics'] = qc_calc.summarize([m['measure_value'] for m in item['measurements']], places=2)
    item['attachments'] = attachments_for('hardness_inspection', inspection_id)
    item['history'] = audit_history('hardness_inspection', inspection_id)
    return item


@app.route('/api/hardness/<int:inspection_id>')
@login_required
def hardness_detail(inspection_id):
    return ok(hardness_details(inspection_id))


def _point_status_sql(point_type):
    return f'''
        (SELECT CASE
                    WHEN COUNT(*) = 0 THEN NULL
                    WHEN SUM(CASE WHEN m.status = 'FAIL' THEN 1 ELSE 0 END) > 0 THEN 'FAIL'
                    WHEN SUM(CASE WHEN m.status = 'PENDING' THEN 1 ELSE 0 END) > 0 THEN 'PENDING'
                    ELSE 'PASS'
                END
         FROM hardness_measurements m
         WHERE m.inspection_id = h.id AND m.point_type = '{point_type}')
    '''


@app.route('/api/hardness/history')
@login_required
def hardness_history():
    month = check_month(request.args.get('month'))
    query = f'''
        SELECT h.*, s.name as supplier_name,
               (SELECT measure_value FROM hardness_measurements m
                WHERE m.inspection_id = h.id ORDER BY m.piece_no, m.id LIMIT 1) as first_value,
               (SELECT COUNT(*) FROM hardness_measurements m WHERE m.inspection_id = h.id) as piece_count,
               (SELECT a.reason FROM audit_logs a
                WHERE a.entity_type = 'hardness_inspection' AND a.entity_id = h.id AND a.action = 'update'
                ORDER BY a.id DESC LIMIT 1) as last_edit_reason,
               {_point_status_sql("Surface")} as surface_status,
               {_point_status_sql("Core")} as core_status
        FROM hardness_inspections h
        LEFT JOIN suppliers s ON h.supplier_id = s.id
    '''
    args = []
    if month:
        query += " WHERE strftime('%Y-%m', h.receipt_date) = ?"
        args.append(month)
    query += ' ORDER BY COALESCE(h.receipt_date, h.created_at) DESC, h.id DESC LIMIT 100'
    return ok(rows_to_dicts(query_db(query, args)))


@app.route('/api/hardness/<int:inspection_id>', methods=['PUT'])
@login_required
@role_required(*INSPECTION_ROLES)
def hardness_update(inspection_id):
    existing = get_hardness_or_404(inspection_id)
    data = request_data()
    reason = clean(data.get('reason') or data.get('edit_reason'))
    if not reason:
        raise ApiError('An edit reason is required')

    values = _hardness_header_values(data)
    if 'supplier' in data or 'supplier_id' in data:
        values['supplier_id'] = find_supplier(data.get('supplier_id') or data.get('supplier'))
    measurements = _hardness_measurements(data)
    files = uploaded_files()

    previous_status = existing['overall_status']
    new_status = previous_status
    if measurements is not None:
        graded, avg, new_status = qc_calc.evaluate_hardness(measurements, existing['spec_min'],
                                                            existing['spec_max'])
        values['average_value'] = avg
    elif data.get('overall_status'):
        new_status = str(data['overall_status']).upper()
        if new_status not in ('PASS', 'FAIL', 'PENDING'):
            raise ApiError('overall_status must be PASS, FAIL or PENDING')
    values['overall_status'] = new_status

    changes = diff_fields(existing, values)
    changes['previous_status'] = previous_status
    changes['new_status'] = new_status
    with transaction() as db:
        assignments = ', '.join(f'{k} = ?' for k in values)
        db.execute(f'UPDATE hardness_inspections SET {assignments}, updated_at = ? WHERE id = ?',
                   list(values.values()) + [now_str(), inspection_id])
        if measurements is not None:
            db.execute('DELETE FROM hardness_measurements WHERE inspection_id = ?', [inspection_id])
            _insert_measurements(db, inspection_id, graded)
            changes['measurements'] = len(graded)
        stored = store_attachments(db, 'hardness_inspection', inspection_id, files)
        if stored:
            changes['attachments_added'] = [s['file_name'] for s in stored]
        log_audit('update', 'hardness_inspection', inspection_id,
                  f"Edited hardness inspection for {existing['part_no']}", changes, reason=reason, commit=False)

    logger.info("Hardness inspection %s edited: %s -> %s (%s)", inspection_id, previous_status, new_status, reason)
    return ok(hardness_details(inspection_id))


@app.route('/api/hardness/<int:inspection_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def hardness_delete(inspection_id):
    existing = get_hardness_or_404(inspection_id)
    with transaction() as db:
        attachments = delete_attachments(db, 'hardness_inspection', [inspection_id])
        db.execute('DELETE FROM hardness_inspections WHERE id = ?', [inspection_id])
        log_audit('delete', 'hardness_inspection', inspection_id,
                  f"Deleted hardness inspection for {existing['part_no']}", commit=False)
    remove_attachment_files(attachments)
    logger.info("Hardness inspection %s deleted", inspection_id)
    return ok({'id': inspection_id})


@app.route('/api/hardness/stats')
@login_required
def hardness_stats():
    month = check_month(request.args.get('month'))
    part_no = request.args.get('part_no', '').strip()
    where = ['1=1']
    args = []
    if month:
        where.append("strftime('%Y-%m', h.receipt_date) = ?")
        args.append(month)
    if part_no:
        where.append('h.part_no = ?')
        args.append(part_no)
    where_sql = ' AND '.join(where)

    headers = query_db(f'SELECT h.overall_status FROM hardness_inspections h WHERE {where_sql}', args)
    measurements = query_db(f'''
        SELECT m.measure_value, m.point_type
        FROM hardness_measurements m
        JOIN hardness_inspections h ON m.inspection_id = h.id
        WHERE {where_sql}
    ''', args)

    values = [m['measure_value'] for m in measurements]
    passed = sum(1 for h in headers if h['overall_status'] == 'PASS')
    result = {
        'inspections': len(headers),
        'passCount': passed,
        'failCount': sum(1 for h in headers if h['overall_status'] == 'FAIL'),
        'passRate': qc_calc.pass_rate(len(headers), passed),
        'surfaceCount': sum(1 for m in measurements if m['point_type'] == 'Surface'),
        'coreCount': sum(1 for m in measurements if m['point_type'] == 'Core'),
        'statistics': qc_calc.summarize(values, places=2),
    }
    if part_no:
        part = query_db('SELECT spec_min, spec_max FROM parts WHERE part_no = ?', [part_no], one=True)
        if part:
            result['capability'] = qc_calc.process_capability(values, part['spec_min'], part['spec_max'])
    return ok(result)


# =============================================================================
# Calibration - Instruments, Plans, Results, QPR Tickets
# =============================================================================

INSTRUMENT_STATUSES = ('ACTIVE', 'NG', 'SUSPEND', 'SPARE', 'MISSING')
INSTRUMENT_FIELDS = ('name', 'serial_number', 'location', 'department', 'manufacturer', 'model',
                     'responsible_person')
QPR_STATUSES = ('PENDING', 'APPROVED', 'REJECTED', 'CLOSED')


def _plan_values(data):
    values = {}
    if 'frequency_months' in data:
        values['frequency_months'] = to_int(data['frequency_months'], 'frequency_months', minimum=1)
    if 'acceptance_criteria' in data:
        acceptance = to_float(data['acceptance_criteria'], 'acceptance_criteria')
        if acceptance is not None and acceptance < 0:
            raise ApiError('acceptance_criteria cannot be negative')
        values['acceptance_criteria'] = acceptance
    if 'vendor_name' in data:
        values['vendor_name'] = clean(data['vendor_name'])
    return {k: v for k, v in values.items() if v is not None or k == 'vendor_name'}


def _instrument_with_plan(row):
    item = dict(row)
    item['due_status'] = qc_calc.due_status(item.get('plan_next_cal_date') or item.get('next_cal_date'),
                                            due_days=app.config['CALIBRATION_DUE_DAYS'])
    return item


INSTRUMENT_SELECT = '''
    SELECT i.*, p.frequency_months, p.acceptance_criteria, p.vendor_name, p.last_cal_date,
           p.next_cal_date as plan_next_cal_date, p.id as plan_id
    FROM instruments i
    LEFT JOIN calibration_plans p ON p.instrument_id = i.id
'''


def get_instrument_or_404(instrument_id):
    row = query_db(INSTRUMENT_SELECT + ' WHERE i.id = ?', [instrument_id], one=True)
    if not row:
        raise NotFound('Instrument not found')
    return row


@app.route('/api/calibration/instruments')
@login_required
def instruments_list():
    query = INSTRUMENT_SELECT + ' WHERE 1=1'
    args = []
    status = request.args.get('status', '').strip().upper()
    if status:
        query += ' AND i.status = ?'
        args.append(status)
    search = request.args.get('search', '').strip()
    if search:
        query += ' AND (i.name LIKE ? OR i.serial_number LIKE ? OR i.location LIKE ?)'
        args.extend([f'%{search}%'] * 3)
    query += ' ORDER BY i.name, i.serial_number'
    return ok([_instrument_with_plan(r) for r in query_db(query, args)])


@app.route('/api/calibration/instruments', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def instrument_register():
    data = request_data()
    require_fields(data, ['name', 'serial_number'])
    plan = {'frequency_months': 6, 'acceptance_criteria': 0.05, 'vendor_name': None}
    plan.update(_plan_values(data))
    status = str(data.get('status') or 'ACTIVE').upper()
    if status not in INSTRUMENT_STATUSES:
        raise ApiError(f"status must be one of {', '.join(INSTRUMENT_STATUSES)}")

    serial = required_text(data, 'serial_number')
    if query_db('SELECT id FROM instruments WHERE serial_number = ?', [serial], one=True):
        raise Conflict(f'Instrument {serial} already exists')

    next_date = qc_calc.add_months(date.today(), plan['frequency_months']).isoformat()
    with transaction() as db:
        cur = db.execute('''
            INSERT INTO instruments (name, serial_number, location, department, manufacturer, model,
                                     responsible_person, status, next_cal_date)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [required_text(data, 'name'), serial, clean(data.get('location')), clean(data.get('department')),
              clean(data.get('manufacturer')), clean(data.get('model')),
              clean(data.get('responsible_person')), status, next_date])
        instrument_id = cur.lastrowid
        db.execute('''
            INSERT INTO calibration_plans (instrument_id, frequency_months, acceptance_criteria, vendor_name,
                                           next_cal_date)
            VALUES (?, ?, ?, ?, ?)
        ''', [instrument_id, plan['frequency_months'], plan['acceptance_criteria'], plan['vendor_name'],
              next_date])
        log_audit('create', 'instrument', instrument_id,
                  f"Registered instrument {serial}, next calibration {next_date}", commit=False)

    logger.info("Instrument %s registered, next calibration %s", serial, next_date)
    return ok(_instrument_with_plan(get_instrument_or_404(instrument_id)), 201)


@app.route('/api/calibration/instruments/<int:instrument_id>')
@login_required
def instrument_detail(instrument_id):
    item = _instrument_with_plan(get_instrument_or_404(instrument_id))
    item['results'] = rows_to_dicts(query_db('''
        SELECT r.*, m.name as master_standard_name, m.serial_number as master_standard_serial
        FROM calibration_results r
        LEFT JOIN master_standards m ON r.master_standard_id = m.id
        WHERE r.instrument_id = ?
        ORDER BY r.calibration_date DESC, r.id DESC
    ''', [instrument_id]))
    item['qpr_tickets'] = rows_to_dicts(query_db(
        'SELECT * FROM qpr_tickets WHERE instrument_id = ? ORDER BY id DESC', [instrument_id]))
    item['attachments'] = attachments_for('instrument', instrument_id)
    return ok(item)


@app.route('/api/calibration/instruments/<int:instrument_id>', methods=['PUT'])
@login_required
@role_required(*INSPECTION_ROLES)
def instrument_update(instrument_id):
    """Update instrument and plan fields. A new frequency applies from the next calibration on."""
    existing = get_instrument_or_404(instrument_id)
    data = request_data()
    values = {k: clean(data[k]) for k in INSTRUMENT_FIELDS if k in data}
    for key in ('name', 'serial_number'):
        if key in values and not values[key]:
            raise ApiError(f'{key} cannot be empty')
    plan = _plan_values(data)
    if not values and not plan:
        raise ApiError('No fields to update')

    changes = diff_fields(existing, values)
    with transaction() as db:
        if values:
            assignments = ', '.join(f'{k} = ?' for k in values)
            db.execute(f'UPDATE instruments SET {assignments}, updated_at = ? WHERE id = ?',
                       list(values.values()) + [now_str(), instrument_id])
        if plan:
            if existing['plan_id']:
                assignments = ', '.join(f'{k} = ?' for k in plan)
                db.execute(f'UPDATE calibration_plans SET {assignments} WHERE instrument_id = ?',
                           list(plan.values()) + [instrument_id])
            else:
                plan.setdefault('frequency_months', 6)
                plan.setdefault('acceptance_criteria', 0.05)
                next_date = existing['next_cal_date'] or \
                    qc_calc.add_months(date.today(), plan['frequency_months']).isoformat()
                db.execute('''
                    INSERT INTO calibration_plans (instrument_id, frequency_months, acceptance_criteria,
                                                   vendor_name, next_cal_date)
                    VALUES (?, ?, ?, ?, ?)
                ''', [instrument_id, plan['frequency_months'], plan['acceptance_criteria'],
                      plan.get('vendor_name'), next_date])
            changes.update({f'plan.{k}': [existing[k], v] for k, v in plan.items() if existing[k] != v})
        log_audit('update', 'instrument', instrument_id, f"Updated instrument {existing['serial_number']}",
                  changes, commit=False)

    logger.info("Instrument %s updated", existing['serial_number'])
    return ok(_instrument_with_plan(get_instrument_or_404(instrument_id)))


@app.route('/api/calibration/instruments/<int:instrument_id>/status', methods=['PATCH'])
@login_required
@role_required(*QUALITY_ROLES)
def instrument_change_status(instrument_id):
    existing = get_instrument_or_404(instrument_id)
    data = request_data()
    status = str(data.get('status') or '').upper()
    if status not in INSTRUMENT_STATUSES:
        raise ApiError(f"status must be one of {', '.join(INSTRUMENT_STATUSES)}")

    with transaction() as db:
        db.execute('UPDATE instruments SET status = ?, updated_at = ? WHERE id = ?',
                   [status, now_str(), instrument_id])
        log_audit('status', 'instrument', instrument_id,
                  f"Instrument {existing['serial_number']} {existing['status']} -> {status}",
                  {'status': [existing['status'], status]}, reason=clean(data.get('reason')), commit=False)

    logger.info("Instrument %s status %s -> %s", existing['serial_number'], existing['status'], status)
    return ok(_instrument_with_plan(get_instrument_or_404(instrument_id)))


@app.route('/api/calibration/due-soon')
@login_required
def instruments_due_soon():
    """Instruments due within the warning window, overdue ones included."""
    days = to_int(request.args.get('days'), 'days', default=app.config['CALIBRATION_DUE_DAYS'], minimum=0)
    limit_date = (date.today() + timedelta(days=days)).isoformat()
    rows = query_db(INSTRUMENT_SELECT + '''
        WHERE p.next_cal_date IS NOT NULL AND p.next_cal_date <= ?
        ORDER BY p.next_cal_date, i.name
    ''', [limit_date])
    return ok([_instrument_with_plan(r) for r in rows])


@app.route('/api/calibration/instruments/<int:instrument_id>/calibrations', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def calibration_record(instrument_id):
    instrument = get_instrument_or_404(instrument_id)
    if not instrument['plan_id']:
        raise ApiError('Instrument has no calibration plan')

    data = request_data()
    require_fields(data, ['standard_value', 'measured_value'])
    standard_value = to_float(data['standard_value'], 'standard_value')
    measured_value = to_float(data['measured_value'], 'measured_value')
    calibration_date = check_date(data.get('calibration_date'), 'calibration_date') or today_str()
    master_standard_id = to_int(data.get('master_standard_id'), 'master_standard_id')
    if master_standard_id and not query_db('SELECT id FROM master_standards WHERE id = ?',
                                           [master_standard_id], one=True):
        raise ApiError('Unknown master standard')
    files = uploaded_files()

    acceptance = instrument['acceptance_criteria']
    error_value, result_status = qc_calc.calibration_verdict(standard_value, measured_value, acceptance)

    ticket = None
    with transaction() as db:
        cur = db.execute('''
            INSERT INTO calibration_results
                (instrument_id, master_standard_id, calibration_date, standard_value, measured_value,
                 error_value, acceptance_criteria, result_status, performed_by, certificate_no, remarks)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [instrument_id, master_standard_id, calibration_date, standard_value, measured_value,
              error_value, acceptance, result_status,
              clean(data.get('performed_by')) or current_user.username,
              clean(data.get('certificate_no')), clean(data.get('remarks'))])
        result_id = cur.lastrowid
        store_attachments(db, 'calibration_result', result_id, files)

        if result_status == 'PASS':
            next_date = qc_calc.add_months(calibration_date, instrument['frequency_months']).isoformat()
            db.execute('''
                UPDATE calibration_plans SET last_cal_date = ?, next_cal_date = ? WHERE instrument_id = ?
            ''', [calibration_date, next_date, instrument_id])
            db.execute('''
                UPDATE instruments SET status = 'ACTIVE', next_cal_date = ?, updated_at = ? WHERE id = ?
            ''', [next_date, now_str(), instrument_id])
        else:
            db.execute("UPDATE instruments SET status = 'NG', updated_at = ? WHERE id = ?",
                       [now_str(), instrument_id])
            ticket_no = next_number('qpr_tickets', 'ticket_no', f"QPR-{date.today().strftime('%Y%m%d')}-", 4, db)
            description = (f"Calibration NG on {instrument['name']} ({instrument['serial_number']}): "
                           f"error {error_value} exceeds acceptance {acceptance}")
            cur = db.execute('''
                INSERT INTO qpr_tickets (ticket_no, instrument_id, calibration_result_id, issue_type, description)
                VALUES (?, ?, ?, 'CAL_NG', ?)
            ''', [ticket_no, instrument_id, result_id, description])
            ticket = dict(db.execute('SELECT * FROM qpr_tickets WHERE id = ?', [cur.lastrowid]).fetchone())
            notify_quality('calibration_failed', f"Calibration failed: {instrument['serial_number']}",
                           description, 'instrument', instrument_id, commit=False)

        log_audit('calibrate', 'instrument', instrument_id,
                  f"Calibration {result_status} for {instrument['serial_number']} (error {error_value})",
                  {'standard_value': standard_value, 'measured_value': measured_value,
                   'error_value': error_value, 'result_status': result_status}, commit=False)

    logger.info("Calibration of %s recorded: %s (error %s, limit %s)",
                instrument['serial_number'], result_status, error_value, acceptance)
    result = dict(query_db('SELECT * FROM calibration_results WHERE id = ?', [result_id], one=True))
    result['attachments'] = attachments_for('calibration_result', result_id)
    return ok({'result': result, 'qprTicket': ticket}, 201)


@app.route('/api/calibration/instruments/<int:instrument_id>/calibrations')
@login_required
def calibration_history(instrument_id):
    get_instrument_or_404(instrument_id)
    rows = query_db('''
        SELECT * FROM calibration_results WHERE instrument_id = ?
        ORDER BY calibration_date DESC, id DESC
    ''', [instrument_id])
    return ok(rows_to_dicts(rows))


@app.route('/api/calibration/qpr-tickets')
@login_required
def qpr_tickets_list():
    query = '''
        SELECT q.*, i.name as instrument_name, i.serial_number
        FROM qpr_tickets q
        LEFT JOIN instruments i ON q.instrument_id = i.id
    '''
    args = []
    status = request.args.get('status', '').strip().upper()
    if status:
        query += ' WHERE q.approval_status = ?'
        args.append(status)
    query += ' ORDER BY q.id DESC'
    return ok(rows_to_dicts(query_db(query, args)))


@app.route('/api/calibration/qpr-tickets/<int:ticket_id>', methods=['PATCH'])
@login_required
@role_required(*QUALITY_ROLES)
def qpr_ticket_update(ticket_id):
    ticket = query_db('SELECT * FROM qpr_tickets WHERE id = ?', [ticket_id], one=True)
    if not ticket:
        raise NotFound('QPR ticket not found')

    data = request_data()
    status = str(data.get('approval_status') or '').upper()
    if status not in QPR_STATUSES:
        raise ApiError(f"approval_status must be one of {', '.join(QPR_STATUSES)}")
    remarks = clean(data.get('remarks'))

    with transaction() as db:
        db.execute('''
            UPDATE qpr_tickets SET approval_status = ?, remarks = COALESCE(?, remarks), updated_at = ?
            WHERE id = ?
        ''', [status, remarks, now_str(), ticket_id])
        log_audit('update', 'qpr_ticket', ticket_id, f"QPR {ticket['ticket_no']} -> {status}",
                  {'approval_status': [ticket['approval_status'], status]}, reason=remarks, commit=False)

    logger.info("QPR ticket %s set to %s", ticket['ticket_no'], status)
    return ok(dict(query_db('SELECT * FROM qpr_tickets WHERE id = ?', [ticket_id], one=True)))


# =============================================================================
# KPI - Master Data
# =============================================================================

# kind -> (table, required fields, optional fields)
KPI_MASTER_TABLES = {
    'machines': ('machines', ('code', 'name'), ('machine_type', 'status')),
    'defect-codes': ('defect_codes', ('code', 'name'), ('name_en', 'category', 'severity')),
    'product-lines': ('product_lines', ('code', 'name'), ('claim_category',)),
    'targets': ('kpi_targets', ('metric_code', 'metric_name', 'target_value'), ('unit', 'category', 'claim_category')),
}


@app.route('/api/kpi/master-data')
@login_required
def kpi_master_data():
    return ok({
        'machines': rows_to_dicts(query_db('SELECT * FROM machines WHERE is_active = 1 ORDER BY code')),
        'defectCodes': rows_to_dicts(query_db('SELECT * FROM defect_codes WHERE is_active = 1 ORDER BY code')),
        'productLines': rows_to_dicts(query_db('SELECT * FROM product_lines WHERE is_active = 1 ORDER BY code')),
        'targets': rows_to_dicts(query_db('SELECT * FROM kpi_targets WHERE is_active = 1 ORDER BY metric_code')),
    })


@app.route('/api/kpi/master/<kind>', methods=['POST'])
@login_required
@role_required(*QUALITY_ROLES)
def kpi_master_create(kind):
    if kind not in KPI_MASTER_TABLES:
        raise NotFound(f'Unknown master data type {kind}')
    table, required, optional = KPI_MASTER_TABLES[kind]
    data = request_data()
    require_fields(data, required)

    values = {}
    for key in required + optional:
        if key not in data:
            continue
        values[key] = to_float(data[key], key) if key == 'target_value' else clean(data[key])
    code_field = required[0]
    if query_db(f'SELECT id FROM {table} WHERE {code_field} = ?', [values[code_field]], one=True):
        raise Conflict(f'{values[code_field]} already exists')

    row_id = execute_db(
        f"INSERT INTO {table} ({', '.join(values)}) VALUES ({', '.join('?' * len(values))})",
        list(values.values())
    )
    log_audit('create', table, row_id, f'Created {kind} {values[code_field]}')
    logger.info("KPI master %s %s created", kind, values[code_field])
    return ok(dict(query_db(f'SELECT * FROM {table} WHERE id = ?', [row_id], one=True)), 201)


def find_machine(code, db=None):
    db = db or get_db()
    machine = db.execute('SELECT * FROM machines WHERE code = ? AND is_active = 1', [code]).fetchone()
    if not machine:
        raise ApiError(f'Unknown machine {code}')
    return machine


def find_defect_code(code, db=None):
    if not code:
        return None
    db = db or get_db()
    row = db.execute('SELECT * FROM defect_codes WHERE code = ?', [code]).fetchone()
    if not row:
        raise ApiError(f'Unknown defect code {code}')
    return row


def find_product_line_id(code, db=None):
    if not code:
        return None
    db = db or get_db()
    row = db.execute('SELECT id FROM product_lines WHERE code = ?', [code]).fetchone()
    return row['id'] if row else None


# =============================================================================
# KPI - Inspection Entries & Andon
# =============================================================================

ENTRY_SELECT = '''
    SELECT e.*, m.code as machine_code, m.name as machine_name,
           dc.code as defect_code, dc.name as defect_name, dc.category as defect_category,
           pl.code as product_line_code
    FROM inspection_entries e
    JOIN machines m ON e.machine_id = m.id
    LEFT JOIN defect_codes dc ON e.defect_code_id = dc.id
    LEFT JOIN product_lines pl ON e.product_line_id = pl.id
'''


def _insert_entry(db, moment, shift, machine_id, part_number, quantity, disposition, operator_name,
                  defect_code_id=None, **extra):
    entry_number = next_number('inspection_entries', 'entry_number', f"IE-{moment.strftime('%Y%m%d')}-", 4, db)
    row = {
        'entry_number': entry_number,
        'inspected_at': moment.strftime('%Y-%m-%d %H:%M:%S'),
        'shift': shift,
        'machine_id': machine_id,
        'part_number': part_number,
        'quantity': quantity,
        'disposition': disposition,
        'defect_code_id': defect_code_id,
        'operator_name': operator_name,
    }
    row.update(extra)
    cur = db.execute(
        f"INSERT INTO inspection_entries ({', '.join(row)}) VALUES ({', '.join('?' * len(row))})",
        list(row.values())
    )
    return cur.lastrowid


def scrap_run_length(db, machine_id):
    """Number of SCRAP entries since the machine's last GOOD or REWORK entry."""
    row = db.execute('''
        SELECT COUNT(*) as count FROM inspection_entries
        WHERE machine_id = ? AND id > COALESCE(
            (SELECT MAX(id) FROM inspection_entries WHERE machine_id = ? AND disposition != 'SCRAP'), 0)
    ''', [machine_id, machine_id]).fetchone()
    return row['count']


def open_andon(db, machine, consecutive):
    """Open a consecutive-NG alert for a machine unless one is still active."""
    active = db.execute('''
        SELECT * FROM andon_alerts
        WHERE machine_id = ? AND status IN ('open', 'acknowledged')
        ORDER BY id DESC LIMIT 1
    ''', [machine['id']]).fetchone()
    if active:
        db.execute('UPDATE andon_alerts SET consecutive_ng = ? WHERE id = ?', [consecutive, active['id']])
        return dict(db.execute('SELECT * FROM andon_alerts WHERE id = ?', [active['id']]).fetchone())

    moment = datetime.now()
    alert_number = next_number('andon_alerts', 'alert_number', f"AND-{moment.strftime('%Y%m%d')}-", 3, db)
    description = f"{consecutive} consecutive NG on {machine['code']}"
    cur = db.execute('''
        INSERT INTO andon_alerts (alert_number, machine_id, triggered_at, alert_type, description, consecutive_ng)
        VALUES (?, ?, ?, 'CONSECUTIVE_NG', ?, ?)
    ''', [alert_number, machine['id'], moment.strftime('%Y-%m-%d %H:%M:%S'), description, consecutive])
    alert_id = cur.lastrowid
    notify_quality('andon_open', f"Andon {alert_number} on {machine['code']}", description,
                   'andon_alert', alert_id, commit=False)
    logger.warning("Andon %s opened: %s", alert_number, description)
    return dict(db.execute('SELECT * FROM andon_alerts WHERE id = ?', [alert_id]).fetchone())


@app.route('/api/kpi/entries', methods=['POST'])
@login_required
def kpi_entry_create():
    data = request_data()
    require_fields(data, ['machine_code', 'part_number', 'disposition', 'operator_name'])
    disposition = str(data['disposition']).strip().upper()
    if disposition not in qc_calc.DISPOSITIONS:
        raise ApiError(f"disposition must be one of {', '.join(qc_calc.DISPOSITIONS)}")
    if disposition != 'GOOD' and not clean(data.get('defect_code')):
        raise ApiError('defect_code is required for REWORK and SCRAP')

    machine = find_machine(required_text(data, 'machine_code'))
    defect = find_defect_code(clean(data.get('defect_code')))
    moment = datetime.now()
    shift = str(data.get('shift') or qc_calc.detect_shift(moment)).upper()
    if shift not in ('A', 'B'):
        raise ApiError('shift must be A or B')
    quantity = to_int(data.get('quantity'), 'quantity', default=1, minimum=1)
    extra = {key: clean(data.get(key)) for key in
             ('lot_number', 'defect_detail', 'measurement', 'spec', 'inspector_name', 'remark',
              'material_lot', 'tool_id')}
    extra['tool_life_count'] = to_int(data.get('tool_life_count'), 'tool_life_count', minimum=0)
    extra['product_line_id'] = find_product_line_id(clean(data.get('product_line_code')))

    threshold = app.config['ANDON_CONSECUTIVE_NG']
    consecutive = 0
    alert = None
    with transaction() as db:
        entry_id = _insert_entry(db, moment, shift, machine['id'], required_text(data, 'part_number'), quantity,
                                 disposition, required_text(data, 'operator_name'),
                                 defect['id'] if defect else None, **extra)
        if disposition == 'SCRAP':
            consecutive = scrap_run_length(db, machine['id'])
            if consecutive >= threshold:
                alert = open_andon(db, machine, consecutive)

    entry = dict(query_db(ENTRY_SELECT + ' WHERE e.id = ?', [entry_id], one=True))
    logger.info("Entry %s %s x%s on %s", entry['entry_number'], disposition, quantity, machine['code'])
    return ok({
        'entry': entry,
        'consecutiveNG': consecutive,
        'andonTriggered': consecutive >= threshold,
        'andonAlert': alert,
    }, 201)


@app.route('/api/kpi/entries')
@login_required
def kpi_entries_list():
    page, limit, offset = pagination_args(default_limit=50)
    where = ['1=1']
    args = []
    entry_date = check_date(request.args.get('date'), 'date')
    if entry_date:
        where.append('date(e.inspected_at) = ?')
        args.append(entry_date)
    if request.args.get('shift'):
        where.append('e.shift = ?')
        args.append(request.args['shift'].upper())
    if request.args.get('machine'):
        where.append('m.code = ?')
        args.append(request.args['machine'])
    if request.args.get('disposition'):
        where.append('e.disposition = ?')
        args.append(request.args['disposition'].upper())
    if request.args.get('defect_category'):
        where.append('dc.category = ?')
        args.append(request.args['defect_category'])

    where_sql = ' AND '.join(where)
    total = query_db(f'''
        SELECT COUNT(*) as count FROM inspection_entries e
        JOIN machines m ON e.machine_id = m.id
        LEFT JOIN defect_codes dc ON e.defect_code_id = dc.id
        WHERE {where_sql}
    ''', args, one=True)['count']
    rows = query_db(ENTRY_SELECT + f' WHERE {where_sql} ORDER BY e.id DESC LIMIT ? OFFSET ?',
                    args + [limit, offset])
    return paginated(rows_to_dicts(rows), total, page, limit)


def get_andon_or_404(ref):
    if ref.isdigit():
        alert = query_db('SELECT * FROM andon_alerts WHERE id = ?', [int(ref)], one=True)
    else:
        alert = query_db('SELECT * FROM andon_alerts WHERE alert_number = ?', [ref], one=True)
    if not alert:
        raise NotFound('Andon alert not found')
    return alert


def andon_to_dict(alert_id):
    return dict(query_db('''
        SELECT a.*, m.code as machine_code, m.name as machine_name
        FROM andon_alerts a JOIN machines m ON a.machine_id = m.id
        WHERE a.id = ?
    ''', [alert_id], one=True))


@app.route('/api/kpi/andon')
@login_required
def andon_list():
    alert_date = check_date(request.args.get('date'), 'date') or today_str()
    query = '''
        SELECT a.*, m.code as machine_code, m.name as machine_name
        FROM andon_alerts a JOIN machines m ON a.machine_id = m.id
        WHERE date(a.triggered_at) = ?
    '''
    args = [alert_date]
    if request.args.get('status'):
        query += ' AND a.status = ?'
        args.append(request.args['status'].lower())
    query += ' ORDER BY a.triggered_at DESC, a.id DESC'
    return ok(rows_to_dicts(query_db(query, args)))


@app.route('/api/kpi/andon/<ref>/acknowledge', methods=['PATCH'])
@login_required
def andon_acknowledge(ref):
    alert = get_andon_or_404(ref)
    if alert['status'] != 'open':
        raise ApiError(f"Alert is already {alert['status']}")
    data = request_data()
    now = datetime.now()
    response_minutes = qc_calc.minutes_between(alert['triggered_at'], now)

    with transaction() as db:
        db.execute('''
            UPDATE andon_alerts SET status = 'acknowledged', assignee_name = ?, acknowledged_at = ?,
                   response_minutes = ?
            WHERE id = ?
        ''', [clean(data.get('assignee_name')) or current_user.username, now.strftime('%Y-%m-%d %H:%M:%S'),
              response_minutes, alert['id']])
        log_audit('acknowledge', 'andon_alert', alert['id'],
                  f"Acknowledged {alert['alert_number']} after {response_minutes} min", commit=False)

    logger.info("Andon %s acknowledged after %s min", alert['alert_number'], response_minutes)
    return ok(andon_to_dict(alert['id']))


@app.route('/api/kpi/andon/<ref>/resolve', methods=['PATCH'])
@login_required
def andon_resolve(ref):
    alert = get_andon_or_404(ref)
    if alert['status'] == 'resolved':
        raise ApiError('Alert is already resolved')
    data = request_data()
    now = datetime.now()
    resolution_minutes = qc_calc.minutes_between(alert['triggered_at'], now)

    with transaction() as db:
        db.execute('''
            UPDATE andon_alerts SET status = 'resolved', resolved_at = ?, resolution_minutes = ?,
                   root_cause = ?, action_taken = ?
            WHERE id = ?
        ''', [now.strftime('%Y-%m-%d %H:%M:%S'), resolution_minutes, clean(data.get('root_cause')),
              clean(data.get('action_taken')), alert['id']])
        log_audit('resolve', 'andon_alert', alert['id'],
                  f"Resolved {alert['alert_number']} after {resolution_minutes} min",
                  {'root_cause': clean(data.get('root_cause')), 'action_taken': clean(data.get('action_taken'))},
                  commit=False)

    logger.info("Andon %s resolved after %s min", alert['alert_number'], resolution_minutes)
    return ok(andon_to_dict(alert['id']))


@app.route('/api/kpi/machines/status')
@login_required
def machines_status():
    rows = query_db('''
        SELECT m.*,
               COALESCE(SUM(e.quantity), 0) as produced,
               COALESCE(SUM(CASE WHEN e.disposition = 'SCRAP' THEN e.quantity ELSE 0 END), 0) as scrap,
               COALESCE(SUM(CASE WHEN e.disposition = 'REWORK' THEN e.quantity ELSE 0 END), 0) as rework,
               (SELECT COUNT(*) FROM andon_alerts a
                WHERE a.machine_id = m.id AND a.status IN ('open', 'acknowledged')) as active_alerts
        FROM machines m
        LEFT JOIN inspection_entries e ON e.machine_id = m.id AND date(e.inspected_at) = ?
        WHERE m.is_active = 1
        GROUP BY m.id
        ORDER BY m.code
    ''', [today_str()])
    machines = []
    for r in rows:
        item = dict(r)
        item['good'] = item['produced'] - item['scrap'] - item['rework']
        item['fpy'] = qc_calc.percent(item['good'], item['produced'])
        machines.append(item)
    return ok(machines)


# =============================================================================
# KPI - Customer Claims & Action Plans
# =============================================================================

CLAIM_UPDATE_FIELDS = ('defect_description', 'lot_number', 'containment_action', 'root_cause',
                       'corrective_action', 'status', 'shipped_qty', 'defect_qty')
CLAIM_STATUSES = ('open', 'investigating', 'closed')
ACTION_STATUSES = ('open', 'in_progress', 'done', 'cancelled')


def claim_to_dict(row):
    item = dict(row)
    item['ppm'] = qc_calc.ppm(item['defect_qty'], item['shipped_qty'])
    return item


CLAIM_SELECT = '''
    SELECT c.*, pl.code as product_line_code, dc.code as defect_code, dc.name as defect_name
    FROM customer_claims c
    LEFT JOIN product_lines pl ON c.product_line_id = pl.id
    LEFT JOIN defect_codes dc ON c.defect_code_id = dc.id
'''


@app.route('/api/kpi/claims', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def claim_create():
    data = request_data()
    require_fields(data, ['claim_date', 'claim_category', 'customer', 'part_number', 'shipped_qty', 'defect_qty'])
    claim_date = check_date(data['claim_date'], 'claim_date')
    shipped = to_int(data['shipped_qty'], 'shipped_qty', minimum=0)
    defects = to_int(data['defect_qty'], 'defect_qty', minimum=0)
    defect = find_defect_code(clean(data.get('defect_code')))

    with transaction() as db:
        claim_number = clean(data.get('claim_number')) or next_number(
            'customer_claims', 'claim_number', f"CLM-{claim_date[:7].replace('-', '')}-", 3, db)
        cur = db.execute('''
            INSERT INTO customer_claims
                (claim_number, claim_date, claim_category, customer, product_line_id, part_number, lot_number,
                 defect_code_id, defect_description, shipped_qty, defect_qty, containment_action)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [claim_number, claim_date, required_text(data, 'claim_category'), required_text(data, 'customer'),
              find_product_line_id(clean(data.get('product_line_code')), db), required_text(data, 'part_number'),
              clean(data.get('lot_number')), defect['id'] if defect else None,
              clean(data.get('defect_description')), shipped, defects, clean(data.get('containment_action'))])
        claim_id = cur.lastrowid
        log_audit('create', 'customer_claim', claim_id, f'Claim {claim_number} from {data["customer"]}',
                  commit=False)

    logger.info("Claim %s recorded (%s/%s)", claim_number, defects, shipped)
    return ok(claim_to_dict(query_db(CLAIM_SELECT + ' WHERE c.id = ?', [claim_id], one=True)), 201)


@app.route('/api/kpi/claims/<int:claim_id>', methods=['PATCH'])
@login_required
@role_required(*INSPECTION_ROLES)
def claim_update(claim_id):
    existing = query_db('SELECT * FROM customer_claims WHERE id = ?', [claim_id], one=True)
    if not existing:
        raise NotFound('Claim not found')

    data = request_data()
    values = {}
    for key in CLAIM_UPDATE_FIELDS:
        if key not in data:
            continue
        if key in ('shipped_qty', 'defect_qty'):
            values[key] = to_int(data[key], key, minimum=0)
        else:
            values[key] = clean(data[key])
    if not values:
        raise ApiError('No valid fields to update')
    if 'status' in values:
        values['status'] = str(values['status'] or '').lower()
        if values['status'] not in CLAIM_STATUSES:
            raise ApiError(f"status must be one of {', '.join(CLAIM_STATUSES)}")
        if values['status'] == 'closed' and existing['status'] != 'closed':
            values['closed_at'] = now_str()

    changes = diff_fields(existing, values)
    assignments = ', '.join(f'{k} = ?' for k in values)
    with transaction() as db:
        db.execute(f'UPDATE customer_claims SET {assignments}, updated_at = ? WHERE id = ?',
                   list(values.values()) + [now_str(), claim_id])
        log_audit('update', 'customer_claim', claim_id, f"Updated claim {existing['claim_number']}", changes,
                  commit=False)

    logger.info("Claim %s updated", existing['claim_number'])
    return ok(claim_to_dict(query_db(CLAIM_SELECT + ' WHERE c.id = ?', [claim_id], one=True)))


@app.route('/api/kpi/claims')
@login_required
def claims_list():
    page, limit, offset = pagination_args(default_limit=20)
    where = ['1=1']
    args = []
    if request.args.get('category'):
        where.append('c.claim_category = ?')
        args.append(request.args['category'])
    if request.args.get('status'):
        where.append('c.status = ?')
        args.append(request.args['status'].lower())
    if request.args.get('customer'):
        where.append('c.customer LIKE ?')
        args.append(f"%{request.args['customer']}%")
    date_from = check_date(request.args.get('date_from'), 'date_from')
    if date_from:
        where.append('c.claim_date >= ?')
        args.append(date_from)
    date_to = check_date(request.args.get('date_to'), 'date_to')
    if date_to:
        where.append('c.claim_date <= ?')
        args.append(date_to)

    where_sql = ' AND '.join(where)
    total = query_db(f'SELECT COUNT(*) as count FROM customer_claims c WHERE {where_sql}', args, one=True)['count']
    rows = query_db(CLAIM_SELECT + f' WHERE {where_sql} ORDER BY c.claim_date DESC, c.id DESC LIMIT ? OFFSET ?',
                    args + [limit, offset])
    return paginated([claim_to_dict(r) for r in rows], total, page, limit)


@app.route('/api/kpi/actions', methods=['POST'])
@login_required
@role_required(*INSPECTION_ROLES)
def action_plan_create():
    data = request_data()
    require_fields(data, ['title'])
    priority = str(data.get('priority') or 'medium').lower()
    if priority not in qc_calc.PRIORITY_ORDER:
        raise ApiError(f"priority must be one of {', '.join(qc_calc.PRIORITY_ORDER)}")

    with transaction() as db:
        action_number = next_number('action_plans', 'action_number',
                                    f"ACT-{date.today().strftime('%Y%m%d')}-", 3, db)
        cur = db.execute('''
            INSERT INTO action_plans
                (action_number, source_type, source_ref, title, description, priority, assignee_name,
                 department, due_date, related_kpi, before_value)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', [action_number, clean(data.get('source_type')), clean(data.get('source_ref')), required_text(data, 'title'),
              clean(data.get('description')), priority, clean(data.get('assignee_name')),
              clean(data.get('department')), check_date(data.get('due_date'), 'due_date'),
              clean(data.get('related_kpi')), to_float(data.get('before_value'), 'before_value')])
        action_id = cur.lastrowid
        log_audit('create', 'action_plan', action_id, f'Action {action_number}: {data["title"]}', commit=False)

    logger.info("Action plan %s created (%s)", action_number, priority)
    return ok(dict(query_db('SELECT * FROM action_plans WHERE id = ?', [action_id], one=True)), 201)


@app.route('/api/kpi/actions/<int:action_id>', methods=['PATCH'])
@login_required
@role_required(*INSPECTION_ROLES)
def action_plan_update(action_id):
    existing = query_db('SELECT * FROM action_plans WHERE id = ?', [action_id], one=True)
    if not existing:
        raise NotFound('Action plan not found')

    data = request_data()
    values = {}
    if 'status' in data:
        status = str(data['status'] or '').lower()
        if status not in ACTION_STATUSES:
            raise ApiError(f"status must be one of {', '.join(ACTION_STATUSES)}")
        values['status'] = status
        if status == 'done' and existing['status'] != 'done':
            values['completed_at'] = now_str()
    if 'priority' in data:
        priority = str(data['priority'] or '').lower()
        if priority not in qc_calc.PRIORITY_ORDER:
            raise ApiError(f"priority must be one of {', '.join(qc_calc.PRIORITY_ORDER)}")
        values['priority'] = priority
    if 'after_value' in data:
        values['after_value'] = to_float(data['after_value'], 'after_value')
    if 'due_date' in data:
        values['due_date'] = check_date(data['due_date'], 'due_date')
    for key in ('assignee_name', 'description'):
        if key in data:
            values[key] = clean(data[key])
    if not values:
        raise ApiError('No valid fields to update')

    changes = diff_fields(existing, values)
    assignments = ', '.join(f'{k} = ?' for k in values)
    with transaction() as db:
        db.execute(f'UPDATE action_plans SET {assignments} WHERE id = ?', list(values.values()) + [action_id])
        log_audit('update', 'action_plan', action_id, f"Updated action {existing['action_number']}", changes,
                  commit=False)

    logger.info("Action plan %s updated", existing['action_number'])
    return ok(dict(query_db('SELECT * FROM action_plans WHERE id = ?', [action_id], one=True)))


@app.route('/api/kpi/actions')
@login_required
def action_plans_list():
    query = 'SELECT * FROM action_plans'
    args = []
    if request.args.get('status'):
        query += ' WHERE status = ?'
        args.append(request.args['status'].lower())
    query += '''
        ORDER BY CASE priority WHEN 'critical' THEN 1 WHEN 'high' THEN 2 WHEN 'medium' THEN 3 ELSE 4 END,
                 due_date IS NULL, due_date, id
    '''
    return ok(rows_to_dicts(query_db(query, args)))


# =============================================================================
# KPI - Daily Production
# =============================================================================

PRODUCTION_QTY_FIELDS = ('total_produced', 'good_qty', 'rework_qty', 'scrap_qty', 'rework_good_qty',
                         'rework_scrap_qty', 'rework_pending_qty')


def _defect_items(data, db):
    items = []
    for index, d in enumerate(parse_json_list(data.get('defects'), 'defects'), start=1):
        if not isinstance(d, dict):
            raise ApiError(f'defects[{index}] must be an object')
        defect_type = str(d.get('defect_type') or 'rework').lower()
        if defect_type not in ('rework', 'scrap'):
            raise ApiError(f'defects[{index}].defect_type must be rework or scrap')
        defect = find_defect_code(clean(d.get('defect_code')), db)
        items.append({
            'defect_code_id': defect['id'] if defect else None,
            'defect_type': defect_type,
            'quantity': to_int(d.get('quantity'), f'defects[{index}].quantity', default=1, minimum=1),
            'measurement': to_float(d.get('measurement'), f'defects[{index}].measurement'),
            'spec_value': clean(d.get('spec_value')),
            'detail': clean(d.get('detail')),
            'rework_result': clean(d.get('rework_result')),
        })
    return items


@app.route('/api/kpi/production', methods=['POST'])
@login_required
def production_record():
    """Add a production count. Repeated posts for the same date/machine/part/shift accumulate."""
    data = request_data()
    require_fields(data, ['machine_code', 'part_number', 'operator_name', 'total_produced'])
    machine = find_machine(required_text(data, 'machine_code'))
    qty = {key: to_int(data.get(key), key, default=0, minimum=0) for key in PRODUCTION_QTY_FIELDS}
    if qty['total_produced'] < 1:
        raise ApiError('total_produced must be at least 1')
    if qty['good_qty'] + qty['rework_qty'] + qty['scrap_qty'] > qty['total_produced']:
        raise ApiError('good_qty + rework_qty + scrap_qty cannot exceed total_produced')

    moment = datetime.now()
    production_date = check_date(data.get('production_date'), 'production_date') or moment.date().isoformat()
    shift = str(data.get('shift') or qc_calc.detect_shift(moment)).upper()
    if shift not in ('A', 'B'):
        raise ApiError('shift must be A or B')
    part_number = required_text(data, 'part_number')
    operator = required_text(data, 'operator_name')
    defects = _defect_items(data, get_db())

    with transaction() as db:
        db.execute('''
            INSERT INTO daily_production_summary
                (production_date, machine_id, part_number, part_name, shift, operator_name, total_produced,
                 good_qty, rework_qty, scrap_qty, rework_good_qty, rework_scrap_qty, rework_pending_qty,
                 notes, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (production_date, machine_id, part_number, shift) DO UPDATE SET
                total_produced = total_produced + excluded.total_produced,
                good_qty = good_qty + excluded.good_qty,
                rework_qty = rework_qty + excluded.rework_qty,
                scrap_qty = scrap_qty + excluded.scrap_qty,
                rework_good_qty = rework_good_qty + excluded.rework_good_qty,
                rework_scrap_qty = rework_scrap_qty + excluded.rework_scrap_qty,
                rework_pending_qty = rework_pending_qty + excluded.rework_pending_qty,
                operator_name = excluded.operator_name,
                part_name = COALESCE(excluded.part_name, part_name),
                notes = CASE
                    WHEN excluded.notes IS NULL THEN notes
                    WHEN notes IS NULL THEN excluded.notes
                    ELSE notes || '; ' || excluded.notes
                END,
                updated_at = excluded.updated_at
        ''', [production_date, machine['id'], part_number, clean(data.get('part_name')), shift, operator,
              qty['total_produced'], qty['good_qty'], qty['rework_qty'], qty['scrap_qty'],
              qty['rework_good_qty'], qty['rework_scrap_qty'], qty['rework_pending_qty'],
              clean(data.get('notes')), now_str(), now_str()])
        summary = db.execute('''
            SELECT * FROM daily_production_summary
            WHERE production_date = ? AND machine_id = ? AND part_number = ? AND shift = ?
        ''', [production_date, machine['id'], part_number, shift]).fetchone()

        for d in defects:
            db.execute('''
                INSERT INTO defect_details (summary_id, defect_code_id, defect_type, quantity, measurement,
                                            spec_value, detail, rework_result)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', [summary['id'], d['defect_code_id'], d['defect_type'], d['quantity'], d['measurement'],
                  d['spec_value'], d['detail'], d['rework_result']])

        first_code = {t: next((d['defect_code_id'] for d in defects if d['defect_type'] == t), None)
                      for t in ('rework', 'scrap')}
        for disposition, quantity, defect_code_id in (('GOOD', qty['good_qty'], None),
                                                      ('REWORK', qty['rework_qty'], first_code['rework']),
                                                      ('SCRAP', qty['scrap_qty'], first_code['scrap'])):
            if quantity:
                _insert_entry(db, moment, shift, machine['id'], part_number, quantity, disposition, operator,
                              defect_code_id, remark='daily production')

        log_audit('production', 'daily_production', summary['id'],
                  f"{machine['code']} {part_number} shift {shift}: +{qty['total_produced']} produced",
                  {k: v for k, v in qty.items() if v}, commit=False)

    result = dict(query_db('SELECT * FROM daily_production_summary WHERE id = ?', [summary['id']], one=True))
    result['machine_code'] = machine['code']
    result.update(qc_calc.production_totals(result))
    logger.info("Production %s %s %s shift %s recorded: %s produced",
                production_date, machine['code'], part_number, shift, qty['total_produced'])
    return ok(result, 201)


def _production_filters(args):
    """WHERE clause, params and a label for production report filters."""
    where = []
    params = []
    if args.get('date'):
        label = check_date(args['date'], 'date')
        where.append('p.production_date = ?')
        params.append(label)
    elif args.get('month'):
        label = check_month(args['month'])
        where.append("strftime('%Y-%m', p.production_date) = ?")
        params.append(label)
    elif args.get('year'):
        label = str(to_int(args['year'], 'year'))
        where.append("strftime('%Y', p.production_date) = ?")
        params.append(label)
    else:
        label = date.today().strftime('%Y-%m')
        where.append("strftime('%Y-%m', p.production_date) = ?")
        params.append(label)
    if args.get('line'):
        where.append('m.code = ?')
        params.append(args['line'])
    if args.get('part_number'):
        where.append('p.part_number LIKE ?')
        params.append(f"%{args['part_number']}%")
    if args.get('shift'):
        where.append('p.shift = ?')
        params.append(args['shift'].upper())
    return ' AND '.join(where), params, label


def build_production_report(where_sql, params, label):
    """Records, defect rows and totals for the production report and its exports."""
    records = []
    for r in query_db(f'''
        SELECT p.*, m.code as line_no, m.name as machine_name
        FROM daily_production_summary p
        JOIN machines m ON p.machine_id = m.id
        WHERE {where_sql}
        ORDER BY p.production_date, m.code, p.shift, p.part_number
    ''', params):
        item = dict(r)
        item.update(qc_calc.production_totals(item))
        records.append(item)

    defects = rows_to_dicts(query_db(f'''
        SELECT d.*, p.production_date, p.part_number, p.shift, m.code as line_no,
               dc.code as defect_code, dc.name as defect_name
        FROM defect_details d
        JOIN daily_production_summary p ON d.summary_id = p.id
        JOIN machines m ON p.machine_id = m.id
        LEFT JOIN defect_codes dc ON d.defect_code_id = dc.id
        WHERE {where_sql}
        ORDER BY p.production_date, m.code, d.id
    ''', params))

    totals = {key: sum(r[key] for r in records) for key in PRODUCTION_QTY_FIELDS}
    totals.update(qc_calc.production_totals(totals))
    return {'date': label, 'records': records, 'defects': defects, 'totals': totals}


@app.route('/api/kpi/production/report')
@login_required
def production_report():
    where_sql, params, label = _production_filters(request.args)
    report = build_production_report(where_sql, params, label)
    breakdown = {}
    for d in report['defects']:
        key = d['defect_code'] or 'UNCODED'
        entry = breakdown.setdefault(key, {'defect_code': key, 'defect_name': d['defect_name'],
                                           'rework': 0, 'scrap': 0})
        entry[d['defect_type']] += d['quantity']
    report['defectBreakdown'] = sorted(breakdown.values(), key=lambda b: b['rework'] + b['scrap'], reverse=True)
    return ok(report)


@app.route('/api/kpi/production/export')
@login_required
def production_export():
    """Daily production report as pdf, xlsx or csv (default today)."""
    fmt = request.args.get('format', 'pdf').lower()
    report_date = check_date(request.args.get('date'), 'date') or today_str()
    report = build_production_report('p.production_date = ?', [report_date], report_date)

    if fmt == 'pdf':
        buffer = qc_reports.production_pdf(report)
        return send_file(buffer, mimetype='application/pdf', as_attachment=True,
                         download_name=f'production_{report_date}.pdf')
    if fmt == 'xlsx':
        buffer = qc_reports.production_workbook(report)
        return send_file(buffer, as_attachment=True, download_name=f'production_{report_date}.xlsx',
                         mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')
    if fmt == 'csv':
        header = [c[0] for c in qc_reports.PRODUCTION_COLUMNS]
        rows = [[r.get(k) for _, k in qc_reports.PRODUCTION_COLUMNS] for r in report['records']]
        return csv_response(qc_reports.csv_text(header, rows), f'production_{report_date}.csv')
    raise ApiError('format must be pdf, xlsx or csv')


# =============================================================================
# KPI - Production Corrections
# =============================================================================

PRODUCTION_SELECT = '''
    SELECT p.*, m.code as line_no, m.name as machine_name
    FROM daily_production_summary p
    JOIN machines m ON p.machine_id = m.id
'''

DEFECT_SELECT = '''
    SELECT d.*, dc.code as defect_code, dc.name as defect_name, dc.category as defect_category
    FROM defect_details d
    LEFT JOIN defect_codes dc ON d.defect_code_id = dc.id
'''

PRODUCTION_TEXT_FIELDS = ('part_number', 'part_name', 'operator_name', 'notes')


def get_production_or_404(summary_id):
    row = query_db(PRODUCTION_SELECT + ' WHERE p.id = ?', [summary_id], one=True)
    if not row:
        raise NotFound('Production record not found')
    return row


def production_to_dict(row, with_defects=False):
    item = dict(row)
    item.update(qc_calc.production_totals(item))
    if with_defects:
        item['defects'] = rows_to_dicts(query_db(DEFECT_SELECT + ' WHERE d.summary_id = ? ORDER BY d.id',
                                                 [item['id']]))
    return item


@app.route('/api/kpi/production')
@login_required
def production_list():
    page, limit, offset = pagination_args(default_limit=50)
    where = ['1=1']
    args = []
    production_date = check_date(request.args.get('date'), 'date')
    month = check_month(request.args.get('month'))
    if production_date:
        where.append('p.production_date = ?')
        args.append(production_date)
    elif month:
        where.append("strftime('%Y-%m', p.production_date) = ?")
        args.append(month)
    if request.args.get('line'):
        where.append('m.code = ?')
        args.append(request.args['line'])
    if request.args.get('shift'):
        where.append('p.shift = ?')
        args.append(request.args['shift'].upper())
    where_sql = ' AND '.join(where)

    total = query_db(f'''
        SELECT COUNT(*) as count FROM daily_production_summary p JOIN machines m ON p.machine_id = m.id
        WHERE {where_sql}
    ''', args, one=True)['count']
    rows = query_db(PRODUCTION_SELECT + f'''
        WHERE {where_sql}
        ORDER BY p.production_date DESC, m.code, p.shift
        LIMIT ? OFFSET ?
    ''', args + [limit, offset])
    return paginated([production_to_dict(r) for r in rows], total, page, limit)


@app.route('/api/kpi/production/<int:summary_id>')
@login_required
def production_detail(summary_id):
    return ok(production_to_dict(get_production_or_404(summary_id), with_defects=True))


@app.route('/api/kpi/production/<int:summary_id>', methods=['PATCH'])
@login_required
@role_required(*INSPECTION_ROLES)
def production_update(summary_id):
    """Correct a production row. Quantities replace the stored values."""
    existing = get_production_or_404(summary_id)
    data = request_data()
    values = {}
    for key in PRODUCTION_QTY_FIELDS:
        if key in data:
            values[key] = to_int(data[key], key, default=0, minimum=0)
    for key in PRODUCTION_TEXT_FIELDS:
        if key in data:
            values[key] = clean_text(data[key])
    if 'shift' in data:
        values['shift'] = str(data['shift'] or '').upper()
        if values['shift'] not in ('A', 'B'):
            raise ApiError('shift must be A or B')
    if 'production_date' in data:
        values['production_date'] = check_date(data['production_date'], 'production_date')
    for key in ('part_number', 'production_date'):
        if key in values and not values[key]:
            raise ApiError(f'{key} cannot be empty')
    if not values:
        raise ApiError('No valid fields to update')

    merged = dict(existing)
    merged.update(values)
    if merged['good_qty'] + merged['rework_qty'] + merged['scrap_qty'] > merged['total_produced']:
        raise ApiError('good_qty + rework_qty + scrap_qty cannot exceed total_produced')

    changes = diff_fields(existing, values)
    assignments = ', '.join(f'{k} = ?' for k in values)
    with transaction() as db:
        db.execute(f'UPDATE daily_production_summary SET {assignments}, updated_at = ? WHERE id = ?',
                   list(values.values()) + [now_str(), summary_id])
        log_audit('update', 'daily_production', summary_id,
                  f"Corrected production {existing['line_no']} {existing['part_number']} "
                  f"{existing['production_date']} shift {existing['shift']}",
                  changes, reason=clean_text(data.get('reason')), commit=False)

    logger.info("Production row %s corrected: %s", summary_id, ', '.join(changes) or 'no changes')
    return ok(production_to_dict(get_production_or_404(summary_id), with_defects=True))


@app.route('/api/kpi/production/<int:summary_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def production_delete(summary_id):
    existing = get_production_or_404(summary_id)
    with transaction() as db:
        defect_count = db.execute('DELETE FROM defect_details WHERE summary_id = ?', [summary_id]).rowcount
        db.execute('DELETE FROM daily_production_summary WHERE id = ?', [summary_id])
        log_audit('delete', 'daily_production', summary_id,
                  f"Deleted production {existing['line_no']} {existing['part_number']} "
                  f"{existing['production_date']} shift {existing['shift']} ({defect_count} defect rows)",
                  commit=False)
    logger.info("Production row %s deleted with %s defect rows", summary_id, defect_count)
    return ok({'deleted': summary_id, 'defects_deleted': defect_count})


def get_defect_or_404(defect_id):
    row = query_db(DEFECT_SELECT + ' WHERE d.id = ?', [defect_id], one=True)
    if not row:
        raise NotFound('Defect detail not found')
    return row


@app.route('/api/kpi/production/defects/<int:defect_id>', methods=['PATCH'])
@login_required
@role_required(*INSPECTION_ROLES)
def production_defect_update(defect_id):
    existing = get_defect_or_404(defect_id)
    data = request_data()
    values = {}
    if 'defect_type' in data:
        values['defect_type'] = str(data['defect_type'] or '').lower()
        if values['defect_type'] not in ('rework', 'scrap'):
            raise ApiError('defect_type must be rework or scrap')
    if 'quantity' in data:
        values['quantity'] = to_int(data['quantity'], 'quantity', minimum=1)
        if values['quantity'] is None:
            raise ApiError('quantity cannot be empty')
    if 'measurement' in data:
        values['measurement'] = to_float(data['measurement'], 'measurement')
    for key in ('spec_value', 'detail', 'rework_result'):
        if key in data:
            values[key] = clean_text(data[key])
    if 'defect_code' in data:
        # a blank code clears the link
        defect = find_defect_code(clean_text(data['defect_code']))
        values['defect_code_id'] = defect['id'] if defect else None
    if not values:
        raise ApiError('No valid fields to update')

    changes = diff_fields(existing, values)
    assignments = ', '.join(f'{k} = ?' for k in values)
    with transaction() as db:
        db.execute(f'UPDATE defect_details SET {assignments} WHERE id = ?', list(values.values()) + [defect_id])
        db.execute('UPDATE daily_production_summary SET updated_at = ? WHERE id = ?',
                   [now_str(), existing['summary_id']])
        log_audit('update', 'defect_detail', defect_id,
                  f"Corrected defect row {defect_id} of production {existing['summary_id']}",
                  changes, reason=clean_text(data.get('reason')), commit=False)
    return ok(dict(get_defect_or_404(defect_id)))


@app.route('/api/kpi/production/defects/<int:defect_id>', methods=['DELETE'])
@login_required
@role_required(*QUALITY_ROLES)
def production_defect_delete(defect_id):
    existing = get_defect_or_404(defect_id)
    with transaction() as db:
        db.execute('DELETE FROM defect_details WHERE id = ?', [defect_id])
        log_audit('delete', 'defect_detail', defect_id,
                  f"Deleted {existing['defect_type']} defect row {defect_id} "
                  f"({existing['quantity']} pcs) of production {existing['summary_id']}", commit=False)
    return ok({'deleted': defect_id})


# =============================================================================
# KPI - Dashboard, Values, Trends, Pareto
# =============================================================================

def _range_args():
    date_range = request.args.get('range', 'today').lower()
    if date_range not in ('today', 'mtd', 'ytd'):
        raise ApiError('range must be today, mtd or ytd')
    start, end = date_range_bounds(date_range)
    return date_range, start, end


@app.route('/api/kpi/dashboard')
@login_required
def kpi_dashboard():
    date_range, start, end = _range_args()
    where = ['date(e.inspected_at) BETWEEN ? AND ?']
    args = [start, end]
    if request.args.get('shift'):
        where.append('e.shift = ?')
        args.append(request.args['shift'].upper())
    if request.args.get('line'):
        where.append('pl.code = ?')
        args.append(request.args['line'])
    where_sql = ' AND '.join(where)

    counts = {d: 0 for d in qc_calc.DISPOSITIONS}
    for r in query_db(f'''
        SELECT e.disposition, SUM(e.quantity) as qty
        FROM inspection_entries e
        LEFT JOIN product_lines pl ON e.product_line_id = pl.id
        WHERE {where_sql}
        GROUP BY e.disposition
    ''', args):
        counts[r['disposition']] = r['qty'] or 0
    total = sum(counts.values())

    alerts = rows_to_dicts(query_db('''
        SELECT a.*, m.code as machine_code
        FROM andon_alerts a JOIN machines m ON a.machine_id = m.id
        WHERE date(a.triggered_at) = ?
        ORDER BY a.id DESC
    ''', [today_str()]))
    recent = rows_to_dicts(query_db(ENTRY_SELECT + f' WHERE {where_sql} ORDER BY e.id DESC LIMIT 20', args))

    return ok({
        'range': date_range,
        'from': start,
        'to': end,
        'summary': {
            'total': total,
            'good': counts['GOOD'],
            'rework': counts['REWORK'],
            'scrap': counts['SCRAP'],
            'fpy': qc_calc.percent(counts['GOOD'], total),
            'reworkRate': qc_calc.percent(counts['REWORK'], total),
            'scrapRate': qc_calc.percent(counts['SCRAP'], total),
        },
        'alerts': alerts,
        'openAlerts': sum(1 for a in alerts if a['status'] != 'resolved'),
        'recentEntries': recent,
    })


@app.route('/api/kpi/values')
@login_required
def kpi_values():
    date_range, start, end = _range_args()

    claims = []
    for r in query_db('''
        SELECT claim_category, COUNT(*) as claims, SUM(shipped_qty) as shipped, SUM(defect_qty) as defects
        FROM customer_claims
        WHERE claim_date BETWEEN ? AND ?
        GROUP BY claim_category
        ORDER BY claim_category
    ''', [start, end]):
        item = dict(r)
        item['ppm'] = qc_calc.ppm(item['defects'], item['shipped'])
        claims.append(item)

    internal = []
    for r in query_db('''
        SELECT CASE WHEN m.code LIKE '%MC%' OR m.code LIKE '%CNC%' THEN 'machining' ELSE 'production' END as area,
               SUM(p.total_produced) as produced, SUM(p.rework_qty) as rework, SUM(p.scrap_qty) as scrap
        FROM daily_production_summary p
        JOIN machines m ON p.machine_id = m.id
        WHERE p.production_date BETWEEN ? AND ?
        GROUP BY area
        ORDER BY area
    ''', [start, end]):
        item = dict(r)
        item['reworkRate'] = qc_calc.percent(item['rework'], item['produced'])
        item['scrapRate'] = qc_calc.percent(item['scrap'], item['produced'])
        internal.append(item)

    top_parts = []
    for r in query_db('''
        SELECT part_number, SUM(total_produced) as produced, SUM(rework_qty) as rework, SUM(scrap_qty) as scrap
        FROM daily_production_summary
        WHERE production_date BETWEEN ? AND ?
        GROUP BY part_number
        ORDER BY SUM(rework_qty) + SUM(scrap_qty) DESC, part_number
        LIMIT 20
    ''', [start, end]):
        item = dict(r)
        item['defectRate'] = qc_calc.percent(item['rework'] + item['scrap'], item['produced'])
        top_parts.append(item)

    top_defects = rows_to_dicts(query_db('''
        SELECT dc.code as defect_code, dc.name as defect_name, dc.category, SUM(d.quantity) as defect_qty
        FROM defect_details d
        JOIN daily_production_summary p ON d.summary_id = p.id
        LEFT JOIN defect_codes dc ON d.defect_code_id = dc.id
        WHERE p.production_date BETWEEN ? AND ?
        GROUP BY dc.code, dc.name, dc.category
        ORDER BY defect_qty DESC
        LIMIT 20
    ''', [start, end]))

    return ok({
        'range': date_range,
        'claims': claims,
        'internal': internal,
        'topParts': top_parts,
        'topDefects': top_defects,
        'targets': rows_to_dicts(query_db('SELECT * FROM kpi_targets WHERE is_active = 1 ORDER BY metric_code')),
    })


@app.route('/api/kpi/trends')
@login_required
def kpi_trends():
    months = to_int(request.args.get('months'), 'months', default=12, minimum=1)
    start = qc_calc.add_months(date.today().replace(day=1), -(months - 1)).isoformat()

    production = []
    for r in query_db('''
        SELECT strftime('%Y-%m', production_date) as month,
               SUM(total_produced) as produced, SUM(good_qty) as good,
               SUM(rework_qty) as rework, SUM(scrap_qty) as scrap
        FROM daily_production_summary
        WHERE production_date >= ?
        GROUP BY month
        ORDER BY month
    ''', [start]):
        item = dict(r)
        item['fpy'] = qc_calc.percent(item['good'], item['produced'])
        production.append(item)

    claims = []
    for r in query_db('''
        SELECT strftime('%Y-%m', claim_date) as month, claim_category,
               SUM(shipped_qty) as shipped, SUM(defect_qty) as defects
        FROM customer_claims
        WHERE claim_date >= ?
        GROUP BY month, claim_category
        ORDER BY month, claim_category
    ''', [start]):
        item = dict(r)
        item['ppm'] = qc_calc.ppm(item['defects'], item['shipped'])
        claims.append(item)

    return ok({'from': start, 'months': months, 'production': production, 'claims': claims})


@app.route('/api/kpi/pareto')
@login_required
def kpi_pareto():
    """Defects by code, category and machine; production defect details first, entries as fallback."""
    date_range, start, end = _range_args()
    where = []
    args = [start, end]
    if request.args.get('category'):
        where.append('dc.category = ?')
        args.append(request.args['category'])
    if request.args.get('line'):
        where.append('m.code = ?')
        args.append(request.args['line'])
    extra = ''.join(f' AND {w}' for w in where)

    source = 'production'
    rows = query_db(f'''
        SELECT dc.code as defect_code, dc.name as defect_name, dc.category, m.code as machine_code,
               SUM(d.quantity) as defect_qty
        FROM defect_details d
        JOIN daily_production_summary p ON d.summary_id = p.id
        JOIN machines m ON p.machine_id = m.id
        LEFT JOIN defect_codes dc ON d.defect_code_id = dc.id
        WHERE p.production_date BETWEEN ? AND ?{extra}
        GROUP BY dc.code, dc.name, dc.category, m.code
    ''', args)
    if not rows:
        source = 'entries'
        rows = query_db(f'''
            SELECT dc.code as defect_code, dc.name as defect_name, dc.category, m.code as machine_code,
                   SUM(e.quantity) as defect_qty
            FROM inspection_entries e
            JOIN machines m ON e.machine_id = m.id
            LEFT JOIN defect_codes dc ON e.defect_code_id = dc.id
            WHERE e.disposition != 'GOOD' AND date(e.inspected_at) BETWEEN ? AND ?{extra}
            GROUP BY dc.code, dc.name, dc.category, m.code
        ''', args)

    by_code, by_category, by_machine = {}, {}, {}
    for r in rows:
        code = r['defect_code'] or 'UNCODED'
        item = by_code.setdefault(code, {'defect_code': code, 'defect_name': r['defect_name'],
                                         'category': r['category'], 'defect_qty': 0})
        item['defect_qty'] += r['defect_qty']
        category = r['category'] or 'uncategorized'
        by_category.setdefault(category, {'category': category, 'defect_qty': 0})['defect_qty'] += r['defect_qty']
        by_machine.setdefault(r['machine_code'], {'machine_code': r['machine_code'], 'defect_qty': 0})[
            'defect_qty'] += r['defect_qty']

    items = qc_calc.pareto(list(by_code.values()))
    return ok({
        'range': date_range,
        'source': source,
        'total': sum(i['defect_qty'] for i in items),
        'items': items,
        'categories': qc_calc.pareto(list(by_category.values())),
        'byMachine': qc_calc.pareto(list(by_machine.values())),
    })


# =============================================================================
# Reports - CSV / Excel exports and PDF certificates
# =============================================================================

def csv_response(text, filename):
    return app.response_class(
        text,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'}
    )


def _export_material_inspections(date_from, date_to):
    rows = query_db('''
        SELECT * FROM material_inspections
        WHERE deleted_at IS NULL AND receipt_date BETWEEN ? AND ?
        ORDER BY receipt_date, id
    ''', [date_from, date_to])
    header = ['Inspection No', 'Type', 'Grade', 'Batch', 'Supplier', 'Maker', 'Receipt Date', 'Invoice',
              'Inspector', 'Certificate', 'Quantity', 'Result', 'Approved At']
    data = [[r['inspection_number'], r['material_type'], r['material_grade'], r['batch_number'],
             r['supplier_name'], r['maker_mat'], r['receipt_date'], r['invoice_number'], r['inspector'],
             r['cer_number'], r['inspection_quantity'], r['overall_result'], r['approved_at']] for r in rows]
    return header, data


def _export_chemical_tests(date_from, date_to):
    rows = query_db('''
        SELECT c.*, e.element_symbol, e.measured_value, e.specification_min, e.specification_max, e.result
        FROM chemical_tests c
        LEFT JOIN chemical_element_results e ON e.chemical_test_id = c.id
        WHERE c.inspection_date BETWEEN ? AND ?
        ORDER BY c.inspection_date, c.id, e.id
    ''', [date_from, date_to])
    header = ['Test No', 'Date', 'Grade', 'Heat No', 'Certificate', 'Supplier', 'Overall', 'Element',
              'Measured', 'Min', 'Max', 'Element Result']
    data = [[r['test_number'], r['inspection_date'], r['material_grade'], r['heat_no'], r['cert_no'],
             r['supplier'], r['overall_result'], r['element_symbol'], r['measured_value'],
             r['specification_min'], r['specification_max'], r['result']] for r in rows]
    return header, data


def _export_hardness(date_from, date_to):
    rows = query_db('''
        SELECT h.*, s.name as supplier_name,
               (SELECT COUNT(*) FROM hardness_measurements m WHERE m.inspection_id = h.id) as pieces
        FROM hardness_inspections h
        LEFT JOIN suppliers s ON h.supplier_id = s.id
        WHERE date(COALESCE(h.receipt_date, h.created_at)) BETWEEN ? AND ?
        ORDER BY COALESCE(h.receipt_date, h.created_at), h.id
    ''', [date_from, date_to])
    header = ['Report No', 'Receipt Date', 'Part No', 'Part Name', 'Material', 'Spec Min', 'Spec Max', 'Scale',
              'Supplier', 'Lot', 'Heat No', 'Pieces', 'Average', 'Status', 'Inspector']
    data = [[r['report_no'], r['receipt_date'], r['part_no'], r['part_name'], r['material'], r['spec_min'],
             r['spec_max'], r['scale'], r['supplier_name'], r['lot_no'], r['heat_no_supplier'], r['pieces'],
             r['average_value'], r['overall_status'], r['inspector_name']] for r in rows]
    return header, data


def _export_calibration_results(date_from, date_to):
    rows = query_db('''
        SELECT r.*, i.name as instrument_name, i.serial_number
        FROM calibration_results r
        JOIN instruments i ON r.instrument_id = i.id
        WHERE r.calibration_date BETWEEN ? AND ?
        ORDER BY r.calibration_date, r.id
    ''', [date_from, date_to])
    header = ['Date', 'Instrument', 'Serial No', 'Standard', 'Measured', 'Error', 'Acceptance', 'Result',
              'Performed By', 'Certificate']
    data = [[r['calibration_date'], r['instrument_name'], r['serial_number'], r['standard_value'],
             r['measured_value'], r['error_value'], r['acceptance_criteria'], r['result_status'],
             r['performed_by'], r['certificate_no']] for r in rows]
    return header, data


EXPORTS = {
    'material-inspections': ('Material Inspections', _export_material_inspections),
    'chemical-tests': ('Chemical Tests', _export_chemical_tests),
    'hardness': ('Hardness', _export_hardness),
    'calibration-results': ('Calibration Results', _export_calibration_results),
}


@app.route('/api/reports/export/<kind>')
@login_required
def report_export(kind):
    """Export records in a date range (default: current year) as csv or xlsx."""
    if kind not in EXPORTS:
        raise NotFound(f'Unknown export {kind}')
    title, build = EXPORTS[kind]
    date_from = check_date(request.args.get('from'), 'from') or date.today().replace(month=1, day=1).isoformat()
    date_to = check_date(request.args.get('to'), 'to') or today_str()
    header, rows = build(date_from, date_to)
    filename = f"{kind}_{date_from}_{date_to}"
    logger.info("Export %s %s..%s: %s rows", kind, date_from, date_to, len(rows))

    fmt = request.args.get('format', 'csv').lower()
    if fmt == 'csv':
        return csv_response(qc_reports.csv_text(header, rows), f'{filename}.csv')
    if fmt == 'xlsx':
        return send_file(qc_reports.rows_workbook(title, header, rows), as_attachment=True,
                         download_name=f'{filename}.xlsx',
                         mimetype='application/vnd.openxmlformats-officedocument.spreadsheetml.sheet')
    raise ApiError('format must be csv or xlsx')


def pdf_response(buffer, filename):
    return send_file(buffer, mimetype='application/pdf', as_attachment=True, download_name=filename)


@app.route('/api/material-inspections/<int:inspection_id>/pdf')
@login_required
def material_inspection_pdf(inspection_id):
    item = material_to_dict(get_material_or_404(inspection_id))
    stats = qc_calc.material_statistics(item['material_type'], item['bar_inspections'], item['rod_inspections'])
    buffer = qc_reports.material_inspection_pdf(item, attachments_for('material_inspection', inspection_id), stats)
    return pdf_response(buffer, f"{item['inspection_number']}.pdf")


@app.route('/api/chemical-tests/<int:test_id>/pdf')
@login_required
def chemical_test_pdf(test_id):
    test = chemical_test_to_dict(test_id)
    buffer = qc_reports.chemical_test_pdf(test, test['elements'])
    return pdf_response(buffer, f"{test['test_number']}.pdf")


@app.route('/api/hardness/<int:inspection_id>/pdf')
@login_required
def hardness_inspection_pdf(inspection_id):
    item = hardness_details(inspection_id)
    buffer = qc_reports.hardness_pdf(item, item['measurements'], item['statistics'])
    return pdf_response(buffer, f"hardness_{item['report_no'] or inspection_id}.pdf")


# =============================================================================
# CLI Commands
# =============================================================================

@app.cli.command('init-db')
def init_db_command():
    """Initialize the database."""
    init_db()
    print('Database initialized.')


@app.cli.command('create-admin')
def create_admin_command():
    """Create an admin user."""
    init_db()
    if User.get_by_username('admin'):
        print('Admin user already exists.')
        return

    execute_db('''
        INSERT INTO users (username, email, password_hash, role)
        VALUES (?, ?, ?, ?)
    ''', ['admin', 'admin@example.com', generate_password_hash('admin'), 'admin'])
    print('Admin user created (username: admin, password: admin)')


# =============================================================================
# Run Application
# =============================================================================

if __name__ == '__main__':
    with app.app_context():
        init_db()
    app.run(debug=True, port=5000)
