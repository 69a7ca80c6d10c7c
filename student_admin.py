"""
Student Database Management - Admin API

A Flask JSON backend for college administration: student records, daily
attendance with holiday-aware reporting, course/branch configuration, fee
tracking, feedback forms, previous-college lists, document requirements and
support tickets.

Version: 1.0.0
"""

from flask import Flask, request, session, jsonify, Response
from flask_wtf import FlaskForm
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_migrate import Migrate
from wtforms import StringField, PasswordField, IntegerField, DecimalField, DateField, TextAreaField, validators
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
import json
import csv
import uuid
from io import StringIO
from decimal import Decimal, ROUND_HALF_UP
from datetime import date, datetime, timedelta
from functools import wraps

import os
from contextlib import contextmanager

import logging
from dotenv import load_dotenv

import attendance_stats
import holiday_calendar
from attendance_stats import date_key, parse_date

load_dotenv()

app = Flask(__name__)
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.json.sort_keys = False

# JSON clients send the token from /api/auth/csrf-token as X-CSRFToken.
csrf = CSRFProtect(app)

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL.startswith(('postgres://', 'postgresql://')):
    raise RuntimeError("PostgreSQL is required. Set DATABASE_URL to a postgresql:// connection string.")
ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin').strip().lower()
ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', '').strip()
if not ADMIN_PASSWORD:
    raise RuntimeError("ADMIN_PASSWORD is required. Set it in environment variables.")
if len(ADMIN_PASSWORD) < 12:
    raise RuntimeError("ADMIN_PASSWORD is too short. Use at least 12 characters.")

# Schema is managed by migrations/; env.py reads DATABASE_URL itself.
migrate = Migrate(app, None, directory=os.path.join(os.path.dirname(os.path.abspath(__file__)), 'migrations'))

HOLIDAY_COUNTRY = (os.environ.get('HOLIDAY_COUNTRY') or 'IN').strip().upper()
HOLIDAY_API_ENABLED = os.environ.get('HOLIDAY_API_ENABLED', '1').strip().lower() in ('1', 'true', 'yes')
try:
    ATTENDANCE_THRESHOLD = float(os.environ.get('ATTENDANCE_THRESHOLD', '75'))
except ValueError:
    raise RuntimeError("ATTENDANCE_THRESHOLD must be a number.")
EXCLUDED_COURSES = [
    c.strip() for c in os.environ.get(
        'EXCLUDED_COURSES', 'M.Tech,MBA,MCA,M Sc Aqua,MSC Aqua,MCS,M.Pharma,M Pharma'
    ).split(',') if c.strip()
]
FRONTEND_URL = (os.environ.get('FRONTEND_URL') or 'http://localhost:3000').split(',')[0].strip().rstrip('/')
PK_COLUMN_SQL = 'SERIAL PRIMARY KEY'
LOGIN_MAX_ATTEMPTS = 4
LOGIN_LOCK_MINUTES = 15
MAX_REPORT_RANGE_DAYS = 366
ADMIN_ROLES = {'super_admin', 'admin'}
ALL_ROLES = {'super_admin', 'admin', 'staff'}
TICKET_STATUSES = ('open', 'in_progress', 'resolved', 'closed')
COURSE_TYPES = ('UG', 'PG')
ACADEMIC_STAGES = ('10th', 'Inter', 'Diploma', 'UG')
FEEDBACK_FIELD_TYPES = {'rating', 'text', 'textarea', 'select', 'radio', 'checkbox', 'yes_no'}
FIELDS_WITH_OPTIONS = {'select', 'radio', 'checkbox'}
STUDENT_COLUMNS = (
    'admission_number', 'pin_no', 'student_name', 'student_mobile', 'parent_mobile1',
    'parent_mobile2', 'college', 'course', 'branch', 'batch', 'current_year',
    'current_semester', 'student_status', 'caste', 'previous_college',
)

def _adapt_query(query):
    return query.replace('?', '%s')

def db_execute(cursor, query, params=None):
    if params is None:
        return cursor.execute(_adapt_query(query))
    return cursor.execute(_adapt_query(query), params)

def get_db():
    """Create a PostgreSQL DB connection."""
    try:
        import psycopg2
        from psycopg2.extras import DictCursor
    except ImportError as exc:
        raise RuntimeError("PostgreSQL backend requires psycopg2-binary") from exc
    return psycopg2.connect(DATABASE_URL, cursor_factory=DictCursor, connect_timeout=10)

@contextmanager
def db_connection(commit=False):
    """Context manager for PostgreSQL connections with optional commit."""
    conn = get_db()
    try:
        yield conn
        if commit:
            conn.commit()
    finally:
        conn.close()

# Set up logging
logging.basicConfig(filename='app.log', level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

def init_db():
    """Create every table and index used by the admin API."""
    conn = get_db()
    c = conn.cursor()

    def safe_exec_ignore(sql):
        """
        Execute DDL that may fail if column/index already exists, without
        poisoning the whole PostgreSQL transaction.
        """
        db_execute(c, 'SAVEPOINT ddl_ignore')
        try:
            db_execute(c, sql)
        except Exception:
            db_execute(c, 'ROLLBACK TO SAVEPOINT ddl_ignore')
        finally:
            db_execute(c, 'RELEASE SAVEPOINT ddl_ignore')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS admins (
                        id {PK_COLUMN_SQL},
                        username TEXT UNIQUE NOT NULL,
                        password_hash TEXT NOT NULL,
                        role TEXT DEFAULT 'admin',
                        email TEXT,
                        is_active INTEGER DEFAULT 1,
                        current_login_at TIMESTAMP,
                        last_login_at TIMESTAMP,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS login_attempts (
                        id {PK_COLUMN_SQL},
                        endpoint TEXT NOT NULL,
                        username TEXT NOT NULL,
                        ip_address TEXT NOT NULL,
                        failures INTEGER DEFAULT 0,
                        first_failed_at TIMESTAMP,
                        last_failed_at TIMESTAMP,
                        locked_until TIMESTAMP,
                        UNIQUE(endpoint, username, ip_address)
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS colleges (
                        id {PK_COLUMN_SQL},
                        name TEXT UNIQUE NOT NULL,
                        code TEXT UNIQUE,
                        is_active INTEGER DEFAULT 1,
                        metadata TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS courses (
                        id {PK_COLUMN_SQL},
                        name TEXT NOT NULL,
                        code TEXT,
                        college_id INTEGER REFERENCES colleges(id) ON DELETE SET NULL,
                        level TEXT,
                        total_years INTEGER NOT NULL DEFAULT 4,
                        semesters_per_year INTEGER NOT NULL DEFAULT 2,
                        metadata TEXT,
                        is_active INTEGER DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    safe_exec_ignore('ALTER TABLE courses ADD COLUMN level TEXT')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS course_branches (
                        id {PK_COLUMN_SQL},
                        course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
                        name TEXT NOT NULL,
                        code TEXT,
                        total_years INTEGER NOT NULL DEFAULT 4,
                        semesters_per_year INTEGER NOT NULL DEFAULT 2,
                        metadata TEXT,
                        is_active INTEGER DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS students (
                        id {PK_COLUMN_SQL},
                        admission_number TEXT UNIQUE NOT NULL,
                        pin_no TEXT,
                        student_name TEXT,
                        student_mobile TEXT,
                        parent_mobile1 TEXT,
                        parent_mobile2 TEXT,
                        college TEXT,
                        course TEXT,
                        branch TEXT,
                        batch TEXT,
                        current_year INTEGER,
                        current_semester INTEGER,
                        student_status TEXT DEFAULT 'Regular',
                        caste TEXT,
                        previous_college TEXT,
                        student_data TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    safe_exec_ignore('ALTER TABLE students ADD COLUMN caste TEXT')
    safe_exec_ignore('ALTER TABLE students ADD COLUMN previous_college TEXT')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS attendance_records (
                        id {PK_COLUMN_SQL},
                        student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        admission_number TEXT,
                        attendance_date DATE NOT NULL,
                        status TEXT NOT NULL CHECK (status IN ('present', 'absent', 'holiday')),
                        holiday_reason TEXT,
                        marked_by INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    safe_exec_ignore('ALTER TABLE attendance_records ADD COLUMN holiday_reason TEXT')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS custom_holidays (
                        id {PK_COLUMN_SQL},
                        holiday_date DATE UNIQUE NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT,
                        created_by INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS semesters (
                        id {PK_COLUMN_SQL},
                        college_id INTEGER REFERENCES colleges(id) ON DELETE SET NULL,
                        course_id INTEGER NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
                        academic_year TEXT,
                        year_of_study INTEGER NOT NULL,
                        semester_number INTEGER NOT NULL,
                        start_date DATE NOT NULL,
                        end_date DATE NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        CHECK (start_date <= end_date)
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS fee_headers (
                        id {PK_COLUMN_SQL},
                        name TEXT UNIQUE NOT NULL,
                        code TEXT UNIQUE NOT NULL,
                        description TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS student_fees (
                        id {PK_COLUMN_SQL},
                        student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        fee_header_id INTEGER NOT NULL REFERENCES fee_headers(id),
                        academic_year TEXT NOT NULL,
                        student_year INTEGER,
                        semester INTEGER,
                        amount NUMERIC(12, 2) NOT NULL,
                        remarks TEXT,
                        created_by INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS fee_payments (
                        id {PK_COLUMN_SQL},
                        student_fee_id INTEGER NOT NULL REFERENCES student_fees(id) ON DELETE CASCADE,
                        amount NUMERIC(12, 2) NOT NULL,
                        payment_mode TEXT,
                        reference TEXT,
                        paid_on DATE DEFAULT CURRENT_DATE,
                        remarks TEXT,
                        recorded_by INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS forms (
                        id {PK_COLUMN_SQL},
                        form_id TEXT UNIQUE NOT NULL,
                        form_name TEXT NOT NULL,
                        form_description TEXT,
                        form_fields TEXT NOT NULL,
                        form_category TEXT DEFAULT 'feedback',
                        recurrence_config TEXT,
                        is_active INTEGER DEFAULT 1,
                        created_by INTEGER,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS feedback_responses (
                        id {PK_COLUMN_SQL},
                        form_id TEXT NOT NULL REFERENCES forms(form_id) ON DELETE CASCADE,
                        student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                        faculty_id TEXT NOT NULL,
                        subject_id TEXT NOT NULL,
                        responses TEXT NOT NULL,
                        academic_year TEXT,
                        semester INTEGER,
                        submitted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS previous_colleges (
                        id {PK_COLUMN_SQL},
                        name TEXT UNIQUE NOT NULL,
                        category TEXT DEFAULT 'Other',
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')
    safe_exec_ignore("ALTER TABLE previous_colleges ADD COLUMN category TEXT DEFAULT 'Other'")

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS document_requirements (
                        id {PK_COLUMN_SQL},
                        course_type TEXT NOT NULL,
                        academic_stage TEXT NOT NULL,
                        required_documents TEXT NOT NULL DEFAULT '[]',
                        is_enabled INTEGER DEFAULT 1,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS tickets (
                        id {PK_COLUMN_SQL},
                        title TEXT NOT NULL,
                        description TEXT NOT NULL,
                        category TEXT,
                        raised_by TEXT NOT NULL,
                        status TEXT DEFAULT 'open',
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        resolved_at TIMESTAMP
                    )''')

    db_execute(c, f'''CREATE TABLE IF NOT EXISTS audit_logs (
                        id {PK_COLUMN_SQL},
                        action_type TEXT NOT NULL,
                        entity_type TEXT NOT NULL,
                        entity_id TEXT,
                        admin_id INTEGER,
                        details TEXT,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )''')

    # Unique guards (checked again by verify_required_db_guards).
    db_execute(c, 'CREATE UNIQUE INDEX IF NOT EXISTS uq_attendance_student_date ON attendance_records(student_id, attendance_date)')
    db_execute(c, 'CREATE UNIQUE INDEX IF NOT EXISTS uq_course_branch_name ON course_branches(course_id, name)')
    db_execute(c, 'CREATE UNIQUE INDEX IF NOT EXISTS uq_document_requirements ON document_requirements(course_type, academic_stage)')
    db_execute(
        c,
        '''CREATE UNIQUE INDEX IF NOT EXISTS uq_feedback_response
           ON feedback_responses(form_id, student_id, faculty_id, subject_id, academic_year, semester)''',
    )
    db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance_records(attendance_date)')
    db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_students_cohort ON students(college, course, batch, branch, current_year, current_semester)')
    db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_student_fees_student ON student_fees(student_id)')
    db_execute(c, 'CREATE INDEX IF NOT EXISTS idx_semesters_course ON semesters(course_id, year_of_study, semester_number)')

    conn.commit()
    conn.close()

def verify_required_db_guards():
    """Verify the unique indexes the attendance/feedback upserts rely on."""
    strict = os.environ.get('DB_GUARDS_STRICT', '0').strip().lower() in ('1', 'true', 'yes')
    required_indexes = {
        'uq_attendance_student_date',
        'uq_course_branch_name',
        'uq_document_requirements',
        'uq_feedback_response',
    }
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT indexname
               FROM pg_indexes
               WHERE schemaname = 'public' '''
        )
        present_indexes = {str(row[0]) for row in c.fetchall() if row and row[0]}

    missing_indexes = sorted(required_indexes - present_indexes)
    if not missing_indexes:
        return
    message = f"Missing DB guards. indexes={missing_indexes}"
    if strict:
        raise RuntimeError(message)
    logging.warning(message)

def create_super_admin():
    """Ensure the bootstrap super admin exists; never reset an existing password."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT username, role FROM admins WHERE LOWER(username) = LOWER(?)', (ADMIN_USERNAME,))
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO admins (username, password_hash, role)
                   VALUES (?, ?, ?)''',
                (ADMIN_USERNAME, generate_password_hash(ADMIN_PASSWORD), 'super_admin'),
            )
            logging.info("Super admin user created: %s", ADMIN_USERNAME)
        elif (row['role'] or '') != 'super_admin':
            logging.warning(
                "ADMIN_USERNAME '%s' exists with role '%s'; skipping automatic role escalation.",
                ADMIN_USERNAME,
                row['role'],
            )

# Initialize database (can be disabled when schema is managed by migrations).
RUN_STARTUP_DDL = os.environ.get('RUN_STARTUP_DDL', '1').strip().lower() in ('1', 'true', 'yes')
RUN_STARTUP_BOOTSTRAP = os.environ.get('RUN_STARTUP_BOOTSTRAP', '1').strip().lower() in ('1', 'true', 'yes')
if RUN_STARTUP_DDL:
    init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")
if RUN_STARTUP_BOOTSTRAP:
    verify_required_db_guards()
    create_super_admin()

# ==================== GENERAL HELPERS ====================

def safe_int(value, default):
    """Parse integer safely while preserving valid zero values."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default

def parse_bool(value, default=False):
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')

def clean_text(value):
    """WTForms filter: coerce JSON scalars to stripped text."""
    if value is None:
        return None
    return str(value).strip()

def to_money(value):
    return Decimal(str(value or 0)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

def to_json_value(value):
    if isinstance(value, datetime):
        return value.isoformat(sep=' ', timespec='seconds')
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value

def load_json_text(value, default):
    if value is None or value == '':
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default

def row_to_dict(row, json_fields=None):
    """Convert a DictCursor row to a JSON-ready dict.

    json_fields maps column name -> default for TEXT columns holding JSON.
    """
    if row is None:
        return None
    data = {key: to_json_value(value) for key, value in dict(row).items()}
    for field, default in (json_fields or {}).items():
        if field in data:
            data[field] = load_json_text(data[field], default)
    return data

def format_timestamp(ts):
    if not ts:
        return 'First login'
    try:
        return ts.strftime('%Y-%m-%d %H:%M:%S')
    except AttributeError:
        return str(ts)

def json_ok(data=None, message=None, status=200, **extra):
    payload = {'success': True}
    if message:
        payload['message'] = message
    if data is not None:
        payload['data'] = data
    payload.update(extra)
    return jsonify(payload), status

def json_error(message, status=400, **extra):
    payload = {'success': False, 'message': message}
    payload.update(extra)
    return jsonify(payload), status

def form_error_message(form):
    messages = []
    for field_name, errors in form.errors.items():
        label = getattr(getattr(form, field_name, None), 'label', None)
        name = label.text if label is not None else field_name
        for err in errors:
            messages.append(f'{name}: {err}')
    return '; '.join(messages) or 'Invalid input.'

def get_json_body():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}

def parse_pagination(args, default_limit=25, max_limit=500):
    """Return (limit, offset) from page/limit or limit/offset query args."""
    limit = safe_int(args.get('limit'), default_limit)
    limit = max(1, min(limit, max_limit))
    if args.get('offset') not in (None, ''):
        offset = max(0, safe_int(args.get('offset'), 0))
    else:
        page = max(1, safe_int(args.get('page'), 1))
        offset = (page - 1) * limit
    return limit, offset

def write_audit_log(c, action_type, entity_type, entity_id, admin_id, details=None):
    """Insert an audit row inside the caller's transaction."""
    db_execute(
        c,
        '''INSERT INTO audit_logs (action_type, entity_type, entity_id, admin_id, details)
           VALUES (?, ?, ?, ?, ?)''',
        (action_type, entity_type, str(entity_id) if entity_id is not None else None, admin_id,
         json.dumps(details, default=str) if details is not None else None),
    )

def current_admin_id():
    return session.get('admin_id')

def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if 'user_id' not in session:
            return json_error('Authentication required.', 401)
        return view(*args, **kwargs)
    return wrapped

def admin_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if 'user_id' not in session:
            return json_error('Authentication required.', 401)
        if session.get('role') not in ADMIN_ROLES:
            return json_error('Administrator access required.', 403)
        return view(*args, **kwargs)
    return wrapped

# ==================== AUTH FUNCTIONS ====================

def check_password(hashed, password):
    """Verify a password."""
    return check_password_hash(hashed, password)

def get_admin(username):
    """Fetch one admin by username (case-insensitive)."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, username, password_hash, role, is_active, last_login_at
               FROM admins
               WHERE LOWER(username) = LOWER(?)
               LIMIT 1''',
            ((username or '').strip(),),
        )
        row = c.fetchone()
    if not row:
        return None
    return {
        'id': row['id'],
        'username': row['username'],
        'password_hash': row['password_hash'],
        'role': row['role'] or 'staff',
        'is_active': int(row['is_active'] if row['is_active'] is not None else 1),
        'last_login_at': row['last_login_at'],
    }

def get_client_ip():
    """Best-effort client IP extraction."""
    trust_proxy = os.environ.get('TRUST_PROXY_HEADERS', '').strip().lower() in ('1', 'true', 'yes')
    xff = (request.headers.get('X-Forwarded-For') or '').strip()
    if trust_proxy and xff:
        # Use the left-most client IP when running behind a trusted reverse proxy.
        for part in xff.split(','):
            ip = (part or '').strip()
            if ip:
                return ip
    return (request.remote_addr or '').strip() or 'unknown'

def is_login_blocked(endpoint, username, ip_address):
    """Return (blocked, wait_minutes)."""
    purge_old_login_attempts()
    endpoint = (endpoint or '').strip().lower()
    username = (username or '').strip().lower()
    ip_address = (ip_address or '').strip()
    now = datetime.now()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, locked_until
               FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?
               LIMIT 1''',
            (endpoint, username, ip_address),
        )
        row = c.fetchone()
    if not row:
        return False, 0
    locked_until = row[1]
    if locked_until and locked_until > now:
        remaining = locked_until - now
        wait_minutes = max(1, int(remaining.total_seconds() // 60) + (1 if remaining.total_seconds() % 60 else 0))
        return True, wait_minutes
    return False, 0

def register_failed_login(endpoint, username, ip_address):
    """Track a failed login and lock after max attempts."""
    purge_old_login_attempts()
    endpoint = (endpoint or '').strip().lower()
    username = (username or '').strip().lower()
    ip_address = (ip_address or '').strip()
    now = datetime.now()
    window_start = now - timedelta(minutes=LOGIN_LOCK_MINUTES)
    lock_until = now + timedelta(minutes=LOGIN_LOCK_MINUTES)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT failures, last_failed_at, locked_until
               FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?
               LIMIT 1''',
            (endpoint, username, ip_address),
        )
        row = c.fetchone()
        if not row:
            db_execute(
                c,
                '''INSERT INTO login_attempts
                   (endpoint, username, ip_address, failures, first_failed_at, last_failed_at, locked_until)
                   VALUES (?, ?, ?, ?, ?, ?, ?)''',
                (endpoint, username, ip_address, 1, now, now, None),
            )
            return
        failures = int(row[0] or 0)
        last_failed_at = row[1]
        current_locked_until = row[2]
        if current_locked_until and current_locked_until > now:
            return
        if not last_failed_at or last_failed_at < window_start:
            failures = 1
        else:
            failures += 1
        new_locked_until = lock_until if failures >= LOGIN_MAX_ATTEMPTS else None
        if failures == 1:
            db_execute(
                c,
                '''UPDATE login_attempts
                   SET failures = ?, first_failed_at = ?, last_failed_at = ?, locked_until = ?
                   WHERE endpoint = ? AND username = ? AND ip_address = ?''',
                (failures, now, now, new_locked_until, endpoint, username, ip_address),
            )
        else:
            db_execute(
                c,
                '''UPDATE login_attempts
                   SET failures = ?, last_failed_at = ?, locked_until = ?
                   WHERE endpoint = ? AND username = ? AND ip_address = ?''',
                (failures, now, new_locked_until, endpoint, username, ip_address),
            )
        if new_locked_until:
            logging.warning("Login locked for %s from %s until %s", username, ip_address, new_locked_until)

def clear_failed_login(endpoint, username, ip_address):
    endpoint = (endpoint or '').strip().lower()
    username = (username or '').strip().lower()
    ip_address = (ip_address or '').strip()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE endpoint = ? AND username = ? AND ip_address = ?''',
            (endpoint, username, ip_address),
        )

def purge_old_login_attempts():
    """Delete stale login-attempt rows to keep table size small."""
    cutoff = datetime.now() - timedelta(days=7)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''DELETE FROM login_attempts
               WHERE (locked_until IS NOT NULL AND locked_until < ?)
                  OR (locked_until IS NULL AND last_failed_at IS NOT NULL AND last_failed_at < ?)''',
            (cutoff, cutoff),
        )

def update_login_timestamps(username):
    """Shift current_login_at -> last_login_at and set current_login_at=now."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE admins
               SET last_login_at = current_login_at,
                   current_login_at = CURRENT_TIMESTAMP
               WHERE LOWER(username) = LOWER(?)''',
            ((username or '').strip(),),
        )

# ==================== FORMS ====================

class LoginForm(FlaskForm):
    username = StringField('Username', filters=[clean_text], validators=[validators.DataRequired()])
    password = PasswordField('Password', validators=[validators.DataRequired()])

class StudentForm(FlaskForm):
    admission_number = StringField('Admission number', filters=[clean_text],
                                   validators=[validators.DataRequired(), validators.Length(max=50)])
    student_name = StringField('Student name', filters=[clean_text],
                               validators=[validators.DataRequired(), validators.Length(max=200)])
    pin_no = StringField('PIN number', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=50)])
    student_mobile = StringField('Student mobile', filters=[clean_text],
                                 validators=[validators.Optional(), validators.Regexp(r'^\+?\d{7,15}$')])
    parent_mobile1 = StringField('Parent mobile 1', filters=[clean_text],
                                 validators=[validators.Optional(), validators.Regexp(r'^\+?\d{7,15}$')])
    parent_mobile2 = StringField('Parent mobile 2', filters=[clean_text],
                                 validators=[validators.Optional(), validators.Regexp(r'^\+?\d{7,15}$')])
    college = StringField('College', filters=[clean_text], validators=[validators.Optional()])
    course = StringField('Course', filters=[clean_text], validators=[validators.Optional()])
    branch = StringField('Branch', filters=[clean_text], validators=[validators.Optional()])
    batch = StringField('Batch', filters=[clean_text], validators=[validators.Optional()])
    current_year = IntegerField('Current year', validators=[validators.Optional(), validators.NumberRange(min=1, max=10)])
    current_semester = IntegerField('Current semester', validators=[validators.Optional(), validators.NumberRange(min=1, max=10)])
    student_status = StringField('Student status', filters=[clean_text], validators=[validators.Optional()])
    caste = StringField('Category', filters=[clean_text], validators=[validators.Optional()])
    previous_college = StringField('Previous college', filters=[clean_text], validators=[validators.Optional()])

class StudentUpdateForm(StudentForm):
    admission_number = StringField('Admission number', filters=[clean_text], validators=[validators.Optional()])
    student_name = StringField('Student name', filters=[clean_text],
                               validators=[validators.Optional(), validators.Length(max=200)])

class HolidayForm(FlaskForm):
    date = DateField('Date', validators=[validators.DataRequired()])
    title = StringField('Title', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=120)])
    description = TextAreaField('Description', filters=[clean_text], validators=[validators.Optional()])

class SemesterForm(FlaskForm):
    college_id = IntegerField('College', validators=[validators.Optional()])
    course_id = IntegerField('Course', validators=[validators.InputRequired()])
    academic_year = StringField('Academic year', filters=[clean_text], validators=[validators.Optional()])
    year_of_study = IntegerField('Year of study', validators=[validators.InputRequired(), validators.NumberRange(min=1, max=10)])
    semester_number = IntegerField('Semester', validators=[validators.InputRequired(), validators.NumberRange(min=1, max=4)])
    start_date = DateField('Start date', validators=[validators.DataRequired()])
    end_date = DateField('End date', validators=[validators.DataRequired()])

    def validate_end_date(self, field):
        if self.start_date.data and field.data and field.data < self.start_date.data:
            raise validators.ValidationError('End date must not be before start date.')

class CollegeForm(FlaskForm):
    name = StringField('Name', filters=[clean_text], validators=[validators.DataRequired(), validators.Length(max=255)])
    code = StringField('Code', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=50)])

class CourseForm(FlaskForm):
    name = StringField('Name', filters=[clean_text], validators=[validators.DataRequired(), validators.Length(max=255)])
    code = StringField('Code', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=50)])
    level = StringField('Level', filters=[clean_text], validators=[validators.Optional()])
    college_id = IntegerField('College', validators=[validators.Optional()])
    total_years = IntegerField('Total years', validators=[validators.InputRequired(), validators.NumberRange(min=1, max=10)])
    semesters_per_year = IntegerField('Semesters per year', validators=[validators.InputRequired(), validators.NumberRange(min=1, max=4)])

class FeeHeaderForm(FlaskForm):
    name = StringField('Name', filters=[clean_text], validators=[validators.DataRequired(), validators.Length(max=120)])
    code = StringField('Code', filters=[clean_text], validators=[validators.DataRequired(), validators.Length(max=30)])
    description = TextAreaField('Description', filters=[clean_text], validators=[validators.Optional()])

class StudentFeeForm(FlaskForm):
    fee_header_id = IntegerField('Fee head', validators=[validators.InputRequired()])
    amount = DecimalField('Amount', places=2, validators=[validators.InputRequired(), validators.NumberRange(min=Decimal('0.01'))])
    academic_year = StringField('Academic year', filters=[clean_text], validators=[validators.DataRequired()])
    student_year = IntegerField('Student year', validators=[validators.Optional(), validators.NumberRange(min=1, max=10)])
    semester = IntegerField('Semester', validators=[validators.Optional(), validators.NumberRange(min=1, max=10)])
    remarks = TextAreaField('Remarks', filters=[clean_text], validators=[validators.Optional()])

class PaymentForm(FlaskForm):
    amount = DecimalField('Amount', places=2, validators=[validators.InputRequired(), validators.NumberRange(min=Decimal('0.01'))])
    payment_mode = StringField('Payment mode', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=30)])
    reference = StringField('Reference', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=100)])
    paid_on = DateField('Paid on', validators=[validators.Optional()])
    remarks = TextAreaField('Remarks', filters=[clean_text], validators=[validators.Optional()])

class PreviousCollegeForm(FlaskForm):
    name = StringField('College name', filters=[clean_text], validators=[validators.DataRequired(), validators.Length(max=255)])
    category = StringField('Category', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=50)])

class TicketForm(FlaskForm):
    title = StringField('Title', filters=[clean_text], validators=[validators.DataRequired(), validators.Length(max=200)])
    description = TextAreaField('Description', filters=[clean_text],
                                validators=[validators.DataRequired(), validators.Length(max=2000)])
    category = StringField('Category', filters=[clean_text], validators=[validators.Optional(), validators.Length(max=50)])

# ==================== STUDENT QUERY HELPERS ====================

STUDENT_TEXT_FILTERS = ('college', 'course', 'branch', 'batch', 'student_status')
STUDENT_INT_FILTERS = (('year', 'current_year'), ('semester', 'current_semester'))

def build_student_filters(args, alias='s', exclude=()):
    """Translate query args into WHERE clauses over the students table."""
    clauses = []
    params = []
    for key in STUDENT_TEXT_FILTERS:
        if key in exclude:
            continue
        value = (args.get(key) or '').strip()
        if value:
            clauses.append(f'{alias}.{key} = ?')
            params.append(value)
    for key, column in STUDENT_INT_FILTERS:
        value = safe_int(args.get(key), None)
        if value is not None:
            clauses.append(f'{alias}.{column} = ?')
            params.append(value)
    search = (args.get('search') or '').strip().lower()
    if search:
        like = f'%{search}%'
        clauses.append(
            f'''(LOWER(COALESCE({alias}.student_name, '')) LIKE ?
                 OR LOWER({alias}.admission_number) LIKE ?
                 OR LOWER(COALESCE({alias}.pin_no, '')) LIKE ?)'''
        )
        params.extend([like, like, like])
    return clauses, params

def where_sql(clauses):
    return (' WHERE ' + ' AND '.join(clauses)) if clauses else ''

def student_row_to_dict(row):
    data = row_to_dict(row, {'student_data': {}})
    labels = attendance_stats.resolve_student_labels(dict(row))
    data['pin_number'] = labels['pin_number']
    return data

# ==================== CALENDAR FUNCTIONS ====================

def load_custom_holidays(start, end):
    """Custom holidays in [start, end] as {date, title, description} dicts."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT holiday_date, title, description
               FROM custom_holidays
               WHERE holiday_date BETWEEN ? AND ?
               ORDER BY holiday_date''',
            (date_key(start), date_key(end)),
        )
        rows = c.fetchall()
    return [
        {'date': date_key(row['holiday_date']), 'title': row['title'], 'description': row['description']}
        for row in rows
    ]

def get_non_working_days(start, end):
    return holiday_calendar.build_non_working_days(
        start,
        end,
        custom_holidays=load_custom_holidays(start, end),
        country=HOLIDAY_COUNTRY,
        use_remote=HOLIDAY_API_ENABLED,
    )

def get_attendance_submission_counts(start, end):
    """Number of attendance rows per date in range."""
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT attendance_date, COUNT(*) AS total
               FROM attendance_records
               WHERE attendance_date BETWEEN ? AND ?
               GROUP BY attendance_date''',
            (date_key(start), date_key(end)),
        )
        return {date_key(row['attendance_date']): int(row['total'] or 0) for row in c.fetchall()}

def upsert_custom_holiday(holiday_date, title, description, admin_id):
    title = (title or '').strip() or 'Holiday'
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''INSERT INTO custom_holidays (holiday_date, title, description, created_by)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (holiday_date) DO UPDATE
               SET title = EXCLUDED.title,
                   description = EXCLUDED.description,
                   updated_at = CURRENT_TIMESTAMP
               RETURNING id, holiday_date, title, description, created_by, created_at, updated_at''',
            (date_key(holiday_date), title, description or None, admin_id),
        )
        row = c.fetchone()
    logging.info("Custom holiday saved for %s (%s)", date_key(holiday_date), title)
    return row_to_dict(row)

def delete_custom_holiday(holiday_date):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM custom_holidays WHERE holiday_date = ?', (date_key(holiday_date),))
        deleted = int(c.rowcount or 0)
    if deleted:
        logging.info("Custom holiday removed for %s", date_key(holiday_date))
    return deleted

def list_custom_holidays(start=None, end=None):
    clauses = []
    params = []
    if start:
        clauses.append('holiday_date >= ?')
        params.append(date_key(start))
    if end:
        clauses.append('holiday_date <= ?')
        params.append(date_key(end))
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            'SELECT id, holiday_date, title, description, created_at, updated_at FROM custom_holidays'
            + where_sql(clauses) + ' ORDER BY holiday_date',
            tuple(params) if params else None,
        )
        return [row_to_dict(row) for row in c.fetchall()]

# ==================== SEMESTER FUNCTIONS ====================

SEMESTER_SELECT = '''SELECT sem.id, sem.college_id, sem.course_id, co.name AS course_name, sem.academic_year,
                            sem.year_of_study, sem.semester_number, sem.start_date, sem.end_date,
                            sem.created_at, sem.updated_at
                     FROM semesters sem
                     LEFT JOIN courses co ON co.id = sem.course_id'''

def list_semesters(args):
    clauses = []
    params = []
    for key, column in (('college_id', 'sem.college_id'), ('course_id', 'sem.course_id'),
                        ('year', 'sem.year_of_study'), ('semester', 'sem.semester_number')):
        value = safe_int(args.get(key), None)
        if value is not None:
            clauses.append(f'{column} = ?')
            params.append(value)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            SEMESTER_SELECT + where_sql(clauses)
            + ' ORDER BY sem.course_id, sem.year_of_study, sem.semester_number, sem.start_date DESC',
            tuple(params) if params else None,
        )
        return [row_to_dict(row) for row in c.fetchall()]

def save_semester(data, semester_id=None):
    """Insert or update one semester. Returns (row, error, status)."""
    values = (
        data.get('college_id'), data['course_id'], data.get('academic_year') or None,
        data['year_of_study'], data['semester_number'],
        date_key(data['start_date']), date_key(data['end_date']),
    )
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM courses WHERE id = ?', (data['course_id'],))
        if not c.fetchone():
            return None, 'Course not found.', 404
        if semester_id is None:
            db_execute(
                c,
                '''INSERT INTO semesters
                   (college_id, course_id, academic_year, year_of_study, semester_number, start_date, end_date)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   RETURNING id''',
                values,
            )
            semester_id = c.fetchone()['id']
        else:
            db_execute(
                c,
                '''UPDATE semesters
                   SET college_id = ?, course_id = ?, academic_year = ?, year_of_study = ?,
                       semester_number = ?, start_date = ?, end_date = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?''',
                values + (semester_id,),
            )
            if not c.rowcount:
                return None, 'Semester not found.', 404
        db_execute(c, SEMESTER_SELECT + ' WHERE sem.id = ?', (semester_id,))
        row = c.fetchone()
    logging.info("Semester %s saved", semester_id)
    return row_to_dict(row), None, 200

def delete_semester(semester_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM semesters WHERE id = ?', (int(semester_id),))
        return int(c.rowcount or 0)

def find_current_semester(course, year_of_study, semester_number, ref):
    """Semester containing ref, else the latest one starting on or before it."""
    year_of_study = safe_int(year_of_study, None)
    semester_number = safe_int(semester_number, None)
    if not course or year_of_study is None or semester_number is None:
        return None
    ref_key = date_key(ref)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            SEMESTER_SELECT + '''
               WHERE LOWER(co.name) = LOWER(?)
                 AND sem.year_of_study = ?
                 AND sem.semester_number = ?
                 AND sem.start_date <= ?
               ORDER BY CASE WHEN sem.end_date >= ? THEN 0 ELSE 1 END, sem.start_date DESC
               LIMIT 1''',
            (str(course), year_of_study, semester_number, ref_key, ref_key),
        )
        row = c.fetchone()
    return row_to_dict(row)

# ==================== ATTENDANCE FUNCTIONS ====================

ATTENDANCE_STUDENT_COLUMNS = '''s.id, s.admission_number, s.pin_no, s.student_name, s.college, s.course,
                                s.branch, s.batch, s.current_year, s.current_semester, s.student_status,
                                s.student_data'''

def get_attendance_filter_options():
    options = {}
    with db_connection() as conn:
        c = conn.cursor()
        for key, column in (('batches', 'batch'), ('years', 'current_year'), ('semesters', 'current_semester'),
                            ('colleges', 'college'), ('courses', 'course'), ('branches', 'branch')):
            db_execute(
                c,
                f'''SELECT DISTINCT {column} AS value
                    FROM students
                    WHERE {column} IS NOT NULL
                    ORDER BY {column}''',
            )
            options[key] = [row['value'] for row in c.fetchall() if row['value'] not in (None, '', 0)]
    return options

def list_attendance_students(attendance_date, args):
    """Students matching args with their mark for the date. Returns (rows, total)."""
    clauses, params = build_student_filters(args)
    limit, offset = parse_pagination(args, default_limit=100, max_limit=1000)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM students s' + where_sql(clauses), tuple(params) if params else None)
        total = int(c.fetchone()['total'] or 0)
        db_execute(
            c,
            f'''SELECT {ATTENDANCE_STUDENT_COLUMNS}, ar.status AS attendance_status, ar.holiday_reason
                FROM students s
                LEFT JOIN attendance_records ar
                  ON ar.student_id = s.id AND ar.attendance_date = ?'''
            + where_sql(clauses)
            + ' ORDER BY s.batch, s.course, s.branch, s.pin_no, s.student_name LIMIT ? OFFSET ?',
            tuple([date_key(attendance_date)] + params + [limit, offset]),
        )
        rows = c.fetchall()
    students = []
    for row in rows:
        labels = attendance_stats.resolve_student_labels(dict(row))
        students.append({
            'id': row['id'],
            'admission_number': row['admission_number'],
            'pin_number': labels['pin_number'],
            'student_name': labels['student_name'],
            'college': labels['college'],
            'course': labels['course'],
            'batch': labels['batch'],
            'branch': labels['branch'],
            'year': labels['year'],
            'semester': labels['semester'],
            'attendance_status': row['attendance_status'],
            'holiday_reason': row['holiday_reason'],
        })
    return students, total

def normalize_attendance_records(records):
    """Lowercase statuses and drop malformed records; last mark per student wins."""
    normalized = {}
    for record in records or []:
        if not isinstance(record, dict):
            continue
        student_id = safe_int(record.get('student_id'), None)
        status = str(record.get('status') or '').strip().lower()
        if student_id is None or status not in attendance_stats.VALID_STATUSES:
            continue
        normalized[student_id] = {
            'student_id': student_id,
            'status': status,
            'holiday_reason': clean_text(record.get('holiday_reason')) or None,
        }
    return list(normalized.values())

def save_attendance(attendance_date, records, admin_id, allow_holiday=False):
    """Mark attendance for one date in a single transaction.

    Returns (result, error, status_code).
    """
    key = date_key(attendance_date)
    records = normalize_attendance_records(records)
    if not records:
        return None, 'No valid attendance records supplied.', 400

    info = get_non_working_days(key, key).get(key)
    if info and not allow_holiday and any(r['status'] != 'holiday' for r in records):
        reasons = ', '.join(info['reasons'])
        return None, f'{key} is a non-working day ({reasons}).', 409

    student_ids = [r['student_id'] for r in records]
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, admission_number FROM students WHERE id = ANY(?)', (student_ids,))
        known = {row['id']: row['admission_number'] for row in c.fetchall()}
        missing = [sid for sid in student_ids if sid not in known]
        if missing:
            return None, f'Unknown student ids: {missing}', 404

        db_execute(
            c,
            '''SELECT student_id, status
               FROM attendance_records
               WHERE attendance_date = ? AND student_id = ANY(?)''',
            (key, student_ids),
        )
        existing = {row['student_id']: row['status'] for row in c.fetchall()}

        inserted = updated = unchanged = 0
        for record in records:
            sid = record['student_id']
            reason = record['holiday_reason'] if record['status'] == 'holiday' else None
            if sid in existing:
                if existing[sid] == record['status']:
                    unchanged += 1
                    continue
                db_execute(
                    c,
                    '''UPDATE attendance_records
                       SET status = ?, holiday_reason = ?, marked_by = ?, updated_at = CURRENT_TIMESTAMP
                       WHERE student_id = ? AND attendance_date = ?''',
                    (record['status'], reason, admin_id, sid, key),
                )
                updated += 1
            else:
                # another marker may insert the same row between the read above and this write
                db_execute(
                    c,
                    '''INSERT INTO attendance_records
                       (student_id, admission_number, attendance_date, status, holiday_reason, marked_by)
                       VALUES (?, ?, ?, ?, ?, ?)
                       ON CONFLICT (student_id, attendance_date) DO UPDATE
                       SET status = EXCLUDED.status, holiday_reason = EXCLUDED.holiday_reason,
                           marked_by = EXCLUDED.marked_by, updated_at = CURRENT_TIMESTAMP
                       WHERE attendance_records.status IS DISTINCT FROM EXCLUDED.status
                       RETURNING (xmax = 0) AS inserted''',
                    (sid, known[sid], key, record['status'], reason, admin_id),
                )
                outcome = c.fetchone()
                if outcome is None:
                    unchanged += 1
                elif outcome['inserted']:
                    inserted += 1
                else:
                    updated += 1
        result = {
            'attendance_date': key,
            'total': len(records),
            'inserted': inserted,
            'updated': updated,
            'unchanged': unchanged,
        }
        write_audit_log(c, 'MARK_ATTENDANCE', 'attendance', key, admin_id, result)
    logging.info("Attendance saved for %s: %s inserted, %s updated", key, inserted, updated)
    return result, None, 200

def clear_attendance(attendance_date, student_ids=None):
    key = date_key(attendance_date)
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if student_ids:
            db_execute(
                c,
                'DELETE FROM attendance_records WHERE attendance_date = ? AND student_id = ANY(?)',
                (key, list(student_ids)),
            )
        else:
            db_execute(c, 'DELETE FROM attendance_records WHERE attendance_date = ?', (key,))
        deleted = int(c.rowcount or 0)
    logging.info("Cleared %s attendance marks for %s", deleted, key)
    return deleted

def get_student_by_id(student_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT {ATTENDANCE_STUDENT_COLUMNS} FROM students s WHERE s.id = ?', (int(student_id),))
        row = c.fetchone()
    return dict(row) if row else None

def load_student_attendance_map(student_id, start, end):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT attendance_date, status
               FROM attendance_records
               WHERE student_id = ? AND attendance_date BETWEEN ? AND ?''',
            (int(student_id), date_key(start), date_key(end)),
        )
        return {date_key(row['attendance_date']): row['status'] for row in c.fetchall()}

def get_student_attendance_history(student, ref):
    labels = attendance_stats.resolve_student_labels(student)
    semester = find_current_semester(labels['course'], labels['year'], labels['semester'], ref)
    window_start = min(attendance_stats.week_window(ref)[0], attendance_stats.month_window(ref)[0])
    sem_window = attendance_stats.semester_window(ref, semester)
    if sem_window:
        window_start = min(window_start, sem_window[0])
    attendance_map = load_student_attendance_map(student['id'], window_start, ref)
    non_working = get_non_working_days(window_start, ref)
    history = attendance_stats.build_student_history(attendance_map, ref, non_working, semester)
    history['student'] = {
        'id': student['id'],
        'admission_number': student.get('admission_number'),
        'student_name': labels['student_name'],
        'pin_number': labels['pin_number'],
        'course': labels['course'],
        'year': labels['year'],
        'semester': labels['semester'],
    }
    history['semester_info'] = semester
    return history

def load_day_rows(attendance_date, args):
    clauses, params = build_student_filters(args)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT {ATTENDANCE_STUDENT_COLUMNS}, ar.status AS attendance_status
                FROM students s
                LEFT JOIN attendance_records ar
                  ON ar.student_id = s.id AND ar.attendance_date = ?'''
            + where_sql(clauses),
            tuple([date_key(attendance_date)] + params),
        )
        return [dict(row) for row in c.fetchall()]

def load_report_rows(start, end, args):
    """Return (student_rows, attendance_rows) for the sheet report."""
    clauses, params = build_student_filters(args)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'SELECT {ATTENDANCE_STUDENT_COLUMNS} FROM students s' + where_sql(clauses)
            + ' ORDER BY s.batch, s.course, s.branch, s.pin_no, s.student_name',
            tuple(params) if params else None,
        )
        students = [dict(row) for row in c.fetchall()]
        db_execute(
            c,
            '''SELECT ar.student_id, ar.attendance_date, ar.status
               FROM attendance_records ar
               JOIN students s ON s.id = ar.student_id
               WHERE ar.attendance_date BETWEEN ? AND ?'''
            + (' AND ' + ' AND '.join(clauses) if clauses else ''),
            tuple([date_key(start), date_key(end)] + params),
        )
        attendance = [dict(row) for row in c.fetchall()]
    return students, attendance

def resolve_report_range(args):
    """Parse from/to query args. Returns (start, end, error)."""
    start = parse_date(args.get('from') or args.get('start_date'))
    end = parse_date(args.get('to') or args.get('end_date'))
    if not start or not end:
        return None, None, 'Both from and to dates (YYYY-MM-DD) are required.'
    if start > end:
        return None, None, 'from date must not be after to date.'
    if (end - start).days + 1 > MAX_REPORT_RANGE_DAYS:
        return None, None, f'Date range cannot exceed {MAX_REPORT_RANGE_DAYS} days.'
    return start, end, None

def build_attendance_sheet(start, end, args):
    student_rows, attendance_rows = load_report_rows(start, end, args)
    holiday_dates = set(get_non_working_days(start, end))
    return attendance_stats.build_attendance_report(
        student_rows, attendance_rows, start, end, holiday_dates, threshold=ATTENDANCE_THRESHOLD,
    )

# ==================== STUDENT FUNCTIONS ====================

STUDENT_RESERVED_KEYS = {'id', 'student_data', 'csrf_token', 'created_at', 'updated_at'}

def split_student_payload(payload):
    """Separate whitelisted columns from extra fields destined for student_data."""
    extra = {}
    nested = payload.get('student_data')
    if isinstance(nested, dict):
        extra.update(nested)
    for key, value in payload.items():
        if key not in STUDENT_COLUMNS and key not in STUDENT_RESERVED_KEYS:
            extra[key] = value
    return extra

def list_students(args):
    clauses, params = build_student_filters(args)
    limit, offset = parse_pagination(args)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM students s' + where_sql(clauses), tuple(params) if params else None)
        total = int(c.fetchone()['total'] or 0)
        db_execute(
            c,
            'SELECT s.* FROM students s' + where_sql(clauses)
            + ' ORDER BY s.created_at DESC, s.id DESC LIMIT ? OFFSET ?',
            tuple(params + [limit, offset]),
        )
        rows = [student_row_to_dict(row) for row in c.fetchall()]
    return rows, total

def get_student(admission_number):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT * FROM students WHERE admission_number = ?', ((admission_number or '').strip(),))
        row = c.fetchone()
    return student_row_to_dict(row) if row else None

def create_student(values, extra, admin_id):
    """Insert a student. Returns (student, error, status)."""
    admission_number = values['admission_number']
    columns = [col for col in STUDENT_COLUMNS if values.get(col) not in (None, '')]
    if not values.get('student_status'):
        columns.append('student_status')
        values['student_status'] = 'Regular'
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM students WHERE admission_number = ?', (admission_number,))
        if c.fetchone():
            return None, f'Student with admission number {admission_number} already exists.', 409
        placeholders = ', '.join('?' for _ in columns)
        db_execute(
            c,
            f'''INSERT INTO students ({', '.join(columns)}, student_data)
                VALUES ({placeholders}, ?)
                RETURNING *''',
            tuple(values[col] for col in columns) + (json.dumps(extra or {}),),
        )
        row = c.fetchone()
        write_audit_log(c, 'CREATE', 'student', admission_number, admin_id, {'columns': columns})
    logging.info("Student %s created", admission_number)
    return student_row_to_dict(row), None, 201

def update_student(admission_number, updates, extra, admin_id):
    """Partial update; extra fields merge into student_data. Returns (student, error, status)."""
    updates = {k: v for k, v in updates.items() if k in STUDENT_COLUMNS and k != 'admission_number'}
    if not updates and not extra:
        return None, 'No fields to update.', 400
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, student_data FROM students WHERE admission_number = ?', (admission_number,))
        row = c.fetchone()
        if not row:
            return None, 'Student not found.', 404
        assignments = [f'{col} = ?' for col in updates]
        params = [value if value != '' else None for value in updates.values()]
        if extra:
            merged = attendance_stats.parse_student_data(row['student_data'])
            merged.update(extra)
            assignments.append('student_data = ?')
            params.append(json.dumps(merged))
        assignments.append('updated_at = CURRENT_TIMESTAMP')
        db_execute(
            c,
            f"UPDATE students SET {', '.join(assignments)} WHERE id = ? RETURNING *",
            tuple(params + [row['id']]),
        )
        updated = c.fetchone()
        write_audit_log(c, 'UPDATE', 'student', admission_number, admin_id,
                        {'columns': sorted(updates), 'extra_fields': sorted(extra or {})})
    logging.info("Student %s updated", admission_number)
    return student_row_to_dict(updated), None, 200

def delete_student(admission_number, admin_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM students WHERE admission_number = ?', (admission_number,))
        deleted = int(c.rowcount or 0)
        if deleted:
            write_audit_log(c, 'DELETE', 'student', admission_number, admin_id)
    if deleted:
        logging.info("Student %s deleted", admission_number)
    return deleted

def get_dashboard_stats():
    today = date.today().isoformat()
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT COUNT(*) AS total,
                      SUM(CASE WHEN student_status = 'Regular' THEN 1 ELSE 0 END) AS regular
               FROM students''',
        )
        row = c.fetchone()
        totals = {'total_students': int(row['total'] or 0), 'regular_students': int(row['regular'] or 0)}
        db_execute(
            c,
            '''SELECT COALESCE(college, 'Unknown') AS label, COUNT(*) AS total
               FROM students
               GROUP BY COALESCE(college, 'Unknown')
               ORDER BY label''',
        )
        by_college = [{'college': r['label'], 'total': int(r['total'])} for r in c.fetchall()]
        db_execute(
            c,
            '''SELECT status, COUNT(*) AS total
               FROM attendance_records
               WHERE attendance_date = ?
               GROUP BY status''',
            (today,),
        )
        today_counts = {status: 0 for status in attendance_stats.VALID_STATUSES}
        for r in c.fetchall():
            today_counts[r['status']] = int(r['total'])
        db_execute(c, "SELECT COUNT(*) AS total FROM tickets WHERE status = 'open'")
        open_tickets = int(c.fetchone()['total'] or 0)
    totals.update({
        'by_college': by_college,
        'attendance_today': today_counts,
        'open_tickets': open_tickets,
    })
    return totals

# ==================== COLLEGE & COURSE FUNCTIONS ====================

def list_colleges(include_inactive=False):
    with db_connection() as conn:
        c = conn.cursor()
        query = 'SELECT id, name, code, is_active, created_at, updated_at FROM colleges'
        if not include_inactive:
            query += ' WHERE is_active = 1'
        db_execute(c, query + ' ORDER BY name')
        return [row_to_dict(row) for row in c.fetchall()]

def _college_conflict(c, name, code, exclude_id=None):
    db_execute(
        c,
        '''SELECT id FROM colleges
           WHERE (LOWER(name) = LOWER(?) OR (? <> '' AND LOWER(COALESCE(code, '')) = LOWER(?)))
             AND id <> ?''',
        (name, code or '', code or '', exclude_id or 0),
    )
    return c.fetchone() is not None

def save_college(name, code, is_active=True, college_id=None):
    """Create or update a college. Returns (row, error, status)."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if _college_conflict(c, name, code, college_id):
            return None, 'A college with this name or code already exists.', 409
        if college_id is None:
            db_execute(
                c,
                '''INSERT INTO colleges (name, code, is_active)
                   VALUES (?, ?, ?)
                   RETURNING id, name, code, is_active, created_at, updated_at''',
                (name, code or None, 1 if is_active else 0),
            )
            status = 201
        else:
            db_execute(
                c,
                '''UPDATE colleges
                   SET name = ?, code = ?, is_active = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?
                   RETURNING id, name, code, is_active, created_at, updated_at''',
                (name, code or None, 1 if is_active else 0, college_id),
            )
            status = 200
        row = c.fetchone()
        if not row:
            return None, 'College not found.', 404
    logging.info("College %s saved", row['id'])
    return row_to_dict(row), None, status

def deactivate_college(college_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE colleges SET is_active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
            (int(college_id),),
        )
        return int(c.rowcount or 0)

def normalize_branch_payload(branch, course_years, course_semesters):
    """Validate one branch dict. Returns (branch, error)."""
    if isinstance(branch, str):
        branch = {'name': branch}
    if not isinstance(branch, dict):
        return None, 'Each branch must be an object or a name.'
    name = clean_text(branch.get('name')) or ''
    if not name:
        return None, 'Branch name is required.'
    total_years = safe_int(branch.get('total_years'), course_years)
    semesters_per_year = safe_int(branch.get('semesters_per_year'), course_semesters)
    if not 1 <= total_years <= 10:
        return None, f'Branch {name}: total_years must be between 1 and 10.'
    if not 1 <= semesters_per_year <= 4:
        return None, f'Branch {name}: semesters_per_year must be between 1 and 4.'
    return {
        'name': name,
        'code': clean_text(branch.get('code')) or None,
        'total_years': total_years,
        'semesters_per_year': semesters_per_year,
        'is_active': parse_bool(branch.get('is_active'), True),
    }, None

def _insert_branch(c, course_id, branch):
    db_execute(
        c,
        '''INSERT INTO course_branches (course_id, name, code, total_years, semesters_per_year, is_active)
           VALUES (?, ?, ?, ?, ?, ?)
           RETURNING id, course_id, name, code, total_years, semesters_per_year, is_active, created_at, updated_at''',
        (course_id, branch['name'], branch['code'], branch['total_years'],
         branch['semesters_per_year'], 1 if branch['is_active'] else 0),
    )
    return row_to_dict(c.fetchone())

def _load_branches(c, course_ids, include_inactive=False):
    if not course_ids:
        return {}
    query = '''SELECT id, course_id, name, code, total_years, semesters_per_year, is_active, created_at, updated_at
               FROM course_branches
               WHERE course_id = ANY(?)'''
    if not include_inactive:
        query += ' AND is_active = 1'
    db_execute(c, query + ' ORDER BY name', (list(course_ids),))
    grouped = {}
    for row in c.fetchall():
        grouped.setdefault(row['course_id'], []).append(row_to_dict(row))
    return grouped

COURSE_COLUMNS = 'id, name, code, college_id, level, total_years, semesters_per_year, is_active, created_at, updated_at'

def list_courses(include_inactive=False):
    with db_connection() as conn:
        c = conn.cursor()
        query = f'SELECT {COURSE_COLUMNS} FROM courses'
        if not include_inactive:
            query += ' WHERE is_active = 1'
        db_execute(c, query + ' ORDER BY name')
        courses = [row_to_dict(row) for row in c.fetchall()]
        branches = _load_branches(c, [course['id'] for course in courses], include_inactive)
    for course in courses:
        course['branches'] = branches.get(course['id'], [])
    return courses

def create_course(values, branches):
    """Create a course and its branches in one transaction. Returns (course, error, status)."""
    normalized = []
    for branch in branches or []:
        item, err = normalize_branch_payload(branch, values['total_years'], values['semesters_per_year'])
        if err:
            return None, err, 400
        normalized.append(item)
    names = [b['name'].lower() for b in normalized]
    if len(names) != len(set(names)):
        return None, 'Branch names must be unique within a course.', 400

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM courses WHERE LOWER(name) = LOWER(?)', (values['name'],))
        if c.fetchone():
            return None, 'A course with this name already exists.', 409
        db_execute(
            c,
            f'''INSERT INTO courses (name, code, college_id, level, total_years, semesters_per_year, is_active)
                VALUES (?, ?, ?, ?, ?, ?, 1)
                RETURNING {COURSE_COLUMNS}''',
            (values['name'], values.get('code') or None, values.get('college_id'), values.get('level') or None,
             values['total_years'], values['semesters_per_year']),
        )
        course = row_to_dict(c.fetchone())
        course['branches'] = [_insert_branch(c, course['id'], branch) for branch in normalized]
    logging.info("Course %s created with %s branches", course['id'], len(normalized))
    return course, None, 201

def update_course(course_id, values, is_active=None):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM courses WHERE LOWER(name) = LOWER(?) AND id <> ?', (values['name'], course_id))
        if c.fetchone():
            return None, 'A course with this name already exists.', 409
        db_execute(
            c,
            f'''UPDATE courses
                SET name = ?, code = ?, college_id = ?, level = ?, total_years = ?, semesters_per_year = ?,
                    is_active = COALESCE(?, is_active), updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                RETURNING {COURSE_COLUMNS}''',
            (values['name'], values.get('code') or None, values.get('college_id'), values.get('level') or None,
             values['total_years'], values['semesters_per_year'],
             None if is_active is None else (1 if is_active else 0), course_id),
        )
        row = c.fetchone()
        if not row:
            return None, 'Course not found.', 404
        course = row_to_dict(row)
        course['branches'] = _load_branches(c, [course_id], include_inactive=True).get(course_id, [])
    logging.info("Course %s updated", course_id)
    return course, None, 200

def deactivate_course(course_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'UPDATE courses SET is_active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
            (int(course_id),),
        )
        return int(c.rowcount or 0)

def _get_course(c, course_id):
    db_execute(c, f'SELECT {COURSE_COLUMNS} FROM courses WHERE id = ?', (int(course_id),))
    row = c.fetchone()
    return row_to_dict(row) if row else None

def list_branches(course_id, include_inactive=False):
    with db_connection() as conn:
        c = conn.cursor()
        if not _get_course(c, course_id):
            return None
        return _load_branches(c, [int(course_id)], include_inactive).get(int(course_id), [])

def create_branch(course_id, payload):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        course = _get_course(c, course_id)
        if not course:
            return None, 'Course not found.', 404
        branch, err = normalize_branch_payload(payload, course['total_years'], course['semesters_per_year'])
        if err:
            return None, err, 400
        db_execute(
            c,
            'SELECT id FROM course_branches WHERE course_id = ? AND LOWER(name) = LOWER(?)',
            (course['id'], branch['name']),
        )
        if c.fetchone():
            return None, 'Branch already exists for this course.', 409
        row = _insert_branch(c, course['id'], branch)
    logging.info("Branch %s added to course %s", row['id'], course_id)
    return row, None, 201

def update_branch(course_id, branch_id, payload):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        course = _get_course(c, course_id)
        if not course:
            return None, 'Course not found.', 404
        branch, err = normalize_branch_payload(payload, course['total_years'], course['semesters_per_year'])
        if err:
            return None, err, 400
        db_execute(
            c,
            '''SELECT id FROM course_branches
               WHERE course_id = ? AND LOWER(name) = LOWER(?) AND id <> ?''',
            (course['id'], branch['name'], int(branch_id)),
        )
        if c.fetchone():
            return None, 'Branch already exists for this course.', 409
        db_execute(
            c,
            '''UPDATE course_branches
               SET name = ?, code = ?, total_years = ?, semesters_per_year = ?, is_active = ?,
                   updated_at = CURRENT_TIMESTAMP
               WHERE id = ? AND course_id = ?
               RETURNING id, course_id, name, code, total_years, semesters_per_year, is_active, created_at, updated_at''',
            (branch['name'], branch['code'], branch['total_years'], branch['semesters_per_year'],
             1 if branch['is_active'] else 0, int(branch_id), course['id']),
        )
        row = c.fetchone()
        if not row:
            return None, 'Branch not found.', 404
    return row_to_dict(row), None, 200

def delete_branch(course_id, branch_id):
    """Hard delete unless students still reference the branch. Returns (result, error, status)."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT b.id, b.name, co.name AS course_name
               FROM course_branches b
               JOIN courses co ON co.id = b.course_id
               WHERE b.id = ? AND b.course_id = ?''',
            (int(branch_id), int(course_id)),
        )
        branch = c.fetchone()
        if not branch:
            return None, 'Branch not found.', 404
        db_execute(
            c,
            '''SELECT COUNT(*) AS total FROM students
               WHERE LOWER(course) = LOWER(?) AND LOWER(branch) = LOWER(?)''',
            (branch['course_name'], branch['name']),
        )
        in_use = int(c.fetchone()['total'] or 0)
        if in_use:
            db_execute(
                c,
                'UPDATE course_branches SET is_active = 0, updated_at = CURRENT_TIMESTAMP WHERE id = ?',
                (branch['id'],),
            )
            result = {'id': branch['id'], 'deleted': False, 'deactivated': True, 'student_count': in_use}
        else:
            db_execute(c, 'DELETE FROM course_branches WHERE id = ?', (branch['id'],))
            result = {'id': branch['id'], 'deleted': True, 'deactivated': False, 'student_count': 0}
    logging.info("Branch %s removed (soft=%s)", branch_id, result['deactivated'])
    return result, None, 200

def get_course_options():
    return [
        {
            'id': course['id'],
            'name': course['name'],
            'code': course['code'],
            'total_years': course['total_years'],
            'semesters_per_year': course['semesters_per_year'],
            'branches': [branch['name'] for branch in course['branches']],
        }
        for course in list_courses()
    ]

# ==================== FEE FUNCTIONS ====================

def list_fee_headers():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id, name, code, description, created_at, updated_at FROM fee_headers ORDER BY name')
        return [row_to_dict(row) for row in c.fetchall()]

def save_fee_header(name, code, description, header_id=None):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id FROM fee_headers
               WHERE (LOWER(name) = LOWER(?) OR LOWER(code) = LOWER(?)) AND id <> ?''',
            (name, code, header_id or 0),
        )
        if c.fetchone():
            return None, 'A fee head with this name or code already exists.', 409
        if header_id is None:
            db_execute(
                c,
                '''INSERT INTO fee_headers (name, code, description)
                   VALUES (?, ?, ?)
                   RETURNING id, name, code, description, created_at, updated_at''',
                (name, code.upper(), description or None),
            )
            status = 201
        else:
            db_execute(
                c,
                '''UPDATE fee_headers
                   SET name = ?, code = ?, description = ?, updated_at = CURRENT_TIMESTAMP
                   WHERE id = ?
                   RETURNING id, name, code, description, created_at, updated_at''',
                (name, code.upper(), description or None, header_id),
            )
            status = 200
        row = c.fetchone()
        if not row:
            return None, 'Fee head not found.', 404
    logging.info("Fee head %s saved", row['id'])
    return row_to_dict(row), None, status

def delete_fee_header(header_id):
    """Returns (ok, message, status)."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM student_fees WHERE fee_header_id = ?', (int(header_id),))
        if int(c.fetchone()['total'] or 0):
            return False, 'Fee head is assigned to students and cannot be deleted.', 400
        db_execute(c, 'DELETE FROM fee_headers WHERE id = ?', (int(header_id),))
        if not c.rowcount:
            return False, 'Fee head not found.', 404
    logging.info("Fee head %s deleted", header_id)
    return True, 'Fee head deleted.', 200

def assign_student_fee(admission_number, values, admin_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM students WHERE admission_number = ?', (admission_number,))
        student = c.fetchone()
        if not student:
            return None, 'Student not found.', 404
        db_execute(c, 'SELECT id FROM fee_headers WHERE id = ?', (values['fee_header_id'],))
        if not c.fetchone():
            return None, 'Fee head not found.', 404
        db_execute(
            c,
            '''INSERT INTO student_fees
               (student_id, fee_header_id, academic_year, student_year, semester, amount, remarks, created_by)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id, student_id, fee_header_id, academic_year, student_year, semester, amount, remarks, created_at''',
            (student['id'], values['fee_header_id'], values['academic_year'], values.get('student_year'),
             values.get('semester'), to_money(values['amount']), values.get('remarks') or None, admin_id),
        )
        row = c.fetchone()
    logging.info("Fee %s assigned to %s", row['id'], admission_number)
    return row_to_dict(row), None, 201

def record_fee_payment(student_fee_id, values, admin_id):
    """A payment must be positive and within the outstanding balance."""
    amount = to_money(values['amount'])
    if amount <= 0:
        return None, 'Payment amount must be positive.', 400
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        # row lock serialises concurrent payments against the same fee
        db_execute(c, 'SELECT id, amount FROM student_fees WHERE id = ? FOR UPDATE', (int(student_fee_id),))
        fee = c.fetchone()
        if not fee:
            return None, 'Student fee not found.', 404
        db_execute(
            c,
            'SELECT COALESCE(SUM(amount), 0) AS paid FROM fee_payments WHERE student_fee_id = ?',
            (fee['id'],),
        )
        balance = to_money(fee['amount']) - to_money(c.fetchone()['paid'])
        if amount > balance:
            return None, f'Payment exceeds outstanding balance of {balance}.', 400
        db_execute(
            c,
            '''INSERT INTO fee_payments (student_fee_id, amount, payment_mode, reference, paid_on, remarks, recorded_by)
               VALUES (?, ?, ?, ?, COALESCE(?, CURRENT_DATE), ?, ?)
               RETURNING id, student_fee_id, amount, payment_mode, reference, paid_on, remarks, created_at''',
            (fee['id'], amount, values.get('payment_mode') or None, values.get('reference') or None,
             date_key(values.get('paid_on')), values.get('remarks') or None, admin_id),
        )
        row = row_to_dict(c.fetchone())
    row['balance'] = float(balance - amount)
    logging.info("Payment %s recorded against fee %s", row['id'], student_fee_id)
    return row, None, 201

def list_fee_students(args):
    clauses, params = build_student_filters(args)
    join_params = []
    fee_join = 'LEFT JOIN student_fees sf ON sf.student_id = s.id'
    academic_year = (args.get('academic_year') or '').strip()
    if academic_year:
        fee_join += ' AND sf.academic_year = ?'
        join_params.append(academic_year)
    limit, offset = parse_pagination(args)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT COUNT(*) AS total FROM students s' + where_sql(clauses), tuple(params) if params else None)
        total = int(c.fetchone()['total'] or 0)
        db_execute(
            c,
            f'''SELECT s.id, s.admission_number, s.student_name, s.pin_no, s.college, s.course, s.branch,
                       s.batch, s.current_year, s.current_semester,
                       COALESCE(SUM(sf.amount), 0) AS total_due,
                       COALESCE(SUM(p.paid), 0) AS total_paid
                FROM students s
                {fee_join}
                LEFT JOIN (
                    SELECT student_fee_id, SUM(amount) AS paid
                    FROM fee_payments
                    GROUP BY student_fee_id
                ) p ON p.student_fee_id = sf.id'''
            + where_sql(clauses)
            + ' GROUP BY s.id ORDER BY s.admission_number LIMIT ? OFFSET ?',
            tuple(join_params + params + [limit, offset]),
        )
        rows = []
        for row in c.fetchall():
            item = row_to_dict(row)
            item['balance'] = round(item['total_due'] - item['total_paid'], 2)
            rows.append(item)
    return rows, total

def get_student_fee_details(admission_number):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT id, admission_number, student_name, pin_no, college, course, branch, batch,
                      current_year, current_semester
               FROM students WHERE admission_number = ?''',
            (admission_number,),
        )
        student = c.fetchone()
        if not student:
            return None
        db_execute(
            c,
            '''SELECT sf.id, sf.fee_header_id, fh.name AS fee_header_name, fh.code AS fee_header_code,
                      sf.academic_year, sf.student_year, sf.semester, sf.amount, sf.remarks, sf.created_at
               FROM student_fees sf
               JOIN fee_headers fh ON fh.id = sf.fee_header_id
               WHERE sf.student_id = ?
               ORDER BY sf.academic_year, sf.student_year, sf.semester, fh.name''',
            (student['id'],),
        )
        fees = [row_to_dict(row) for row in c.fetchall()]
        payments = {}
        if fees:
            db_execute(
                c,
                '''SELECT id, student_fee_id, amount, payment_mode, reference, paid_on, remarks, created_at
                   FROM fee_payments
                   WHERE student_fee_id = ANY(?)
                   ORDER BY paid_on, id''',
                ([fee['id'] for fee in fees],),
            )
            for row in c.fetchall():
                payments.setdefault(row['student_fee_id'], []).append(row_to_dict(row))
    totals = {'total_due': 0.0, 'total_paid': 0.0}
    for fee in fees:
        fee['payments'] = payments.get(fee['id'], [])
        fee['paid'] = round(sum(p['amount'] for p in fee['payments']), 2)
        fee['balance'] = round(fee['amount'] - fee['paid'], 2)
        totals['total_due'] += fee['amount']
        totals['total_paid'] += fee['paid']
    totals = {key: round(value, 2) for key, value in totals.items()}
    totals['balance'] = round(totals['total_due'] - totals['total_paid'], 2)
    return {'student': row_to_dict(student), 'fees': fees, 'totals': totals}

def get_fee_filter_options():
    options = {}
    with db_connection() as conn:
        c = conn.cursor()
        for key, column in (('colleges', 'college'), ('courses', 'course'), ('branches', 'branch'), ('batches', 'batch')):
            db_execute(c, f'SELECT DISTINCT {column} AS value FROM students WHERE {column} IS NOT NULL ORDER BY {column}')
            options[key] = [row['value'] for row in c.fetchall() if row['value']]
        db_execute(c, 'SELECT DISTINCT academic_year AS value FROM student_fees ORDER BY academic_year DESC')
        options['academic_years'] = [row['value'] for row in c.fetchall() if row['value']]
    return options

# ==================== FEEDBACK FUNCTIONS ====================

FORM_COLUMNS = '''id, form_id, form_name, form_description, form_fields, form_category, recurrence_config,
                  is_active, created_by, created_at, updated_at'''
FORM_JSON_FIELDS = {'form_fields': [], 'recurrence_config': None}

def validate_form_fields(fields):
    """Normalize feedback form fields. Returns (fields, error)."""
    if not isinstance(fields, list) or not fields:
        return None, 'At least one form field is required.'
    normalized = []
    seen_ids = set()
    for index, field in enumerate(fields, start=1):
        if not isinstance(field, dict):
            return None, f'Field {index} must be an object.'
        label = clean_text(field.get('label')) or ''
        if not label:
            return None, f'Field {index} needs a label.'
        field_type = (clean_text(field.get('type')) or '').lower()
        if field_type not in FEEDBACK_FIELD_TYPES:
            return None, f'Field "{label}" has an invalid type.'
        options = field.get('options') or []
        if not isinstance(options, list):
            return None, f'Field "{label}" options must be a list.'
        options = [clean_text(option) for option in options if clean_text(option)]
        if field_type in FIELDS_WITH_OPTIONS and not options:
            return None, f'Field "{label}" requires options.'
        field_id = clean_text(field.get('id')) or f'q{index}'
        if field_id in seen_ids:
            return None, f'Duplicate field id "{field_id}".'
        seen_ids.add(field_id)
        normalized.append({
            'id': field_id,
            'label': label,
            'type': field_type,
            'required': parse_bool(field.get('required'), False),
            'options': options,
        })
    return normalized, None

def form_public_url(form_id):
    return f'{FRONTEND_URL}/form/{form_id}'

def feedback_form_to_dict(row, response_count=None):
    data = row_to_dict(row, FORM_JSON_FIELDS)
    data['form_url'] = form_public_url(data['form_id'])
    if response_count is not None:
        data['response_count'] = int(response_count or 0)
    return data

def create_feedback_form(name, description, fields, recurrence_config, admin_id):
    form_id = str(uuid.uuid4())
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''INSERT INTO forms
                (form_id, form_name, form_description, form_fields, form_category, recurrence_config, is_active, created_by)
                VALUES (?, ?, ?, ?, 'feedback', ?, 1, ?)
                RETURNING {FORM_COLUMNS}''',
            (form_id, name, description or None, json.dumps(fields),
             json.dumps(recurrence_config) if recurrence_config is not None else None, admin_id),
        )
        row = c.fetchone()
        write_audit_log(c, 'CREATE', 'feedback_form', form_id, admin_id, {'form_name': name})
    logging.info("Feedback form %s created", form_id)
    return feedback_form_to_dict(row)

def list_feedback_forms():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT f.id, f.form_id, f.form_name, f.form_description, f.form_fields, f.form_category,
                      f.recurrence_config, f.is_active, f.created_by, f.created_at, f.updated_at,
                      COUNT(r.id) AS response_count
               FROM forms f
               LEFT JOIN feedback_responses r ON r.form_id = f.form_id
               WHERE f.form_category = 'feedback'
               GROUP BY f.id
               ORDER BY f.created_at DESC''',
        )
        rows = c.fetchall()
    forms = []
    for row in rows:
        data = dict(row)
        count = data.pop('response_count', 0)
        forms.append(feedback_form_to_dict(data, count))
    return forms

def get_feedback_form(form_id):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT {FORM_COLUMNS} FROM forms WHERE form_id = ?', (form_id,))
        row = c.fetchone()
    return feedback_form_to_dict(row) if row else None

def update_feedback_form(form_id, payload, admin_id):
    """Partial update of name/description/fields/recurrence/active flag."""
    assignments = []
    params = []
    if 'form_name' in payload:
        name = clean_text(payload.get('form_name')) or ''
        if not name:
            return None, 'Form name cannot be empty.', 400
        assignments.append('form_name = ?')
        params.append(name)
    if 'form_description' in payload:
        assignments.append('form_description = ?')
        params.append(clean_text(payload.get('form_description')) or None)
    if 'form_fields' in payload:
        fields, err = validate_form_fields(payload.get('form_fields'))
        if err:
            return None, err, 400
        assignments.append('form_fields = ?')
        params.append(json.dumps(fields))
    if 'recurrence_config' in payload:
        assignments.append('recurrence_config = ?')
        params.append(json.dumps(payload['recurrence_config']) if payload['recurrence_config'] is not None else None)
    if 'is_active' in payload:
        assignments.append('is_active = ?')
        params.append(1 if parse_bool(payload.get('is_active')) else 0)
    if not assignments:
        return None, 'No fields to update.', 400
    assignments.append('updated_at = CURRENT_TIMESTAMP')
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f"UPDATE forms SET {', '.join(assignments)} WHERE form_id = ? RETURNING {FORM_COLUMNS}",
            tuple(params + [form_id]),
        )
        row = c.fetchone()
        if not row:
            return None, 'Form not found.', 404
        write_audit_log(c, 'UPDATE', 'feedback_form', form_id, admin_id, {'fields': sorted(payload)})
    logging.info("Feedback form %s updated", form_id)
    return feedback_form_to_dict(row), None, 200

def delete_feedback_form(form_id, admin_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM forms WHERE form_id = ?', (form_id,))
        deleted = int(c.rowcount or 0)
        if deleted:
            write_audit_log(c, 'DELETE', 'feedback_form', form_id, admin_id)
    if deleted:
        logging.info("Feedback form %s deleted", form_id)
    return deleted

def parse_rating(value):
    """Whole-number rating 1-5 from an int or digit string; floats and booleans are rejected."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        rating = value
    elif isinstance(value, str) and value.strip().isdigit():
        rating = int(value.strip())
    else:
        return None
    if not 1 <= rating <= 5:
        return None
    return rating

def validate_feedback_responses(fields, responses):
    """Check required answers and rating ranges. Returns an error message or None."""
    if not isinstance(responses, dict):
        return 'Responses must be an object keyed by field id.'
    for field in fields:
        answer = responses.get(field['id'])
        if answer is None:
            answer = responses.get(field['label'])
        empty = answer is None or (isinstance(answer, str) and not answer.strip()) or answer == []
        if empty:
            if field.get('required'):
                return f'"{field["label"]}" is required.'
            continue
        if field['type'] == 'rating' and parse_rating(answer) is None:
            return f'"{field["label"]}" must be a rating between 1 and 5.'
    return None

def submit_feedback(payload):
    """Store one feedback response. Returns (result, error, status)."""
    required = ('form_id', 'student_id', 'faculty_id', 'subject_id', 'responses')
    missing = [key for key in required if payload.get(key) in (None, '', {})]
    if missing:
        return None, f"Missing required fields: {', '.join(missing)}", 400
    form_id = str(payload['form_id']).strip()
    student_id = safe_int(payload.get('student_id'), None)
    if student_id is None:
        return None, 'student_id must be an integer.', 400
    faculty_id = str(payload['faculty_id']).strip()
    subject_id = str(payload['subject_id']).strip()

    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT form_fields, is_active FROM forms WHERE form_id = ?', (form_id,))
        form = c.fetchone()
        if not form:
            return None, 'Form not found.', 404
        if not int(form['is_active'] or 0):
            return None, 'This form is no longer accepting responses.', 400
        fields = load_json_text(form['form_fields'], [])
        err = validate_feedback_responses(fields, payload['responses'])
        if err:
            return None, err, 400

        db_execute(c, 'SELECT id, current_year, current_semester FROM students WHERE id = ?', (student_id,))
        student = c.fetchone()
        if not student:
            return None, 'Student not found.', 404
        academic_year = str(student['current_year']) if student['current_year'] else None
        semester = student['current_semester']

        db_execute(
            c,
            '''SELECT id FROM feedback_responses
               WHERE form_id = ? AND student_id = ? AND faculty_id = ? AND subject_id = ?
                 AND academic_year IS NOT DISTINCT FROM ? AND semester IS NOT DISTINCT FROM ?''',
            (form_id, student_id, faculty_id, subject_id, academic_year, semester),
        )
        if c.fetchone():
            return None, 'Feedback already submitted for this subject and faculty.', 409
        db_execute(
            c,
            '''INSERT INTO feedback_responses
               (form_id, student_id, faculty_id, subject_id, responses, academic_year, semester)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (form_id, student_id, faculty_id, subject_id, academic_year, semester) DO NOTHING
               RETURNING id, submitted_at''',
            (form_id, student_id, faculty_id, subject_id, json.dumps(payload['responses']), academic_year, semester),
        )
        row = c.fetchone()
        if not row:
            # a concurrent submission won the unique guard
            return None, 'Feedback already submitted for this subject and faculty.', 409
    logging.info("Feedback %s submitted for form %s", row['id'], form_id)
    return {'id': row['id'], 'submitted_at': to_json_value(row['submitted_at'])}, None, 201

def rating_remark(average):
    if average is None:
        return 'No Ratings'
    if average >= 4:
        return 'Excellent'
    if average >= 3:
        return 'Good'
    if average >= 2:
        return 'Average'
    return 'Needs Improvement'

def build_feedback_analytics(fields, rows):
    """Summarize response rows (responses, student_id, subject_id, faculty_id, course)."""
    rating_fields = [field for field in fields if field.get('type') == 'rating']
    groups = {}
    students = set()
    subjects = set()
    courses = set()
    for row in rows:
        students.add(row.get('student_id'))
        subjects.add(row.get('subject_id'))
        if row.get('course'):
            courses.add(row['course'])
        responses = load_json_text(row.get('responses'), {})
        key = (str(row.get('subject_id')), str(row.get('faculty_id')))
        group = groups.setdefault(key, {
            'subject_id': key[0],
            'faculty_id': key[1],
            'response_count': 0,
            '_ratings': [],
        })
        group['response_count'] += 1
        for field in rating_fields:
            answer = responses.get(field['id'])
            if answer is None:
                answer = responses.get(field['label'])
            rating = parse_rating(answer)
            if rating is not None:
                group['_ratings'].append(rating)

    breakdown = []
    for key in sorted(groups):
        group = groups[key]
        ratings = group.pop('_ratings')
        average = round(sum(ratings) / len(ratings), 2) if ratings else None
        group['average_rating'] = average
        group['rating_count'] = len(ratings)
        group['remark'] = rating_remark(average)
        breakdown.append(group)
    return {
        'total_responses': len(rows),
        'unique_students': len(students),
        'subject_count': len(subjects),
        'course_count': len(courses),
        'breakdown': breakdown,
    }

def get_feedback_analytics(form_id, args):
    form = get_feedback_form(form_id)
    if not form:
        return None
    clauses = ['r.form_id = ?']
    params = [form_id]
    year = safe_int(args.get('year'), None)
    if year is not None:
        clauses.append('s.current_year = ?')
        params.append(year)
    semester = safe_int(args.get('semester'), None)
    if semester is not None:
        clauses.append('r.semester = ?')
        params.append(semester)
    branch = (args.get('branch') or '').strip()
    if branch:
        clauses.append('s.branch = ?')
        params.append(branch)
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT r.student_id, r.faculty_id, r.subject_id, r.responses, s.course
               FROM feedback_responses r
               JOIN students s ON s.id = r.student_id'''
            + where_sql(clauses),
            tuple(params),
        )
        rows = [dict(row) for row in c.fetchall()]
    analytics = build_feedback_analytics(form['form_fields'], rows)
    analytics['form'] = {'form_id': form['form_id'], 'form_name': form['form_name']}
    return analytics

# ==================== PREVIOUS COLLEGE FUNCTIONS ====================

DEFAULT_COLLEGE_CATEGORY = 'Other'

def _should_upgrade_category(current, new):
    current = (current or DEFAULT_COLLEGE_CATEGORY).strip()
    new = (new or DEFAULT_COLLEGE_CATEGORY).strip()
    return current.lower() == DEFAULT_COLLEGE_CATEGORY.lower() and new.lower() != DEFAULT_COLLEGE_CATEGORY.lower()

def list_previous_colleges(category=None):
    with db_connection() as conn:
        c = conn.cursor()
        if category:
            db_execute(
                c,
                'SELECT id, name, category, created_at FROM previous_colleges WHERE category = ? ORDER BY name',
                (category,),
            )
        else:
            db_execute(c, 'SELECT id, name, category, created_at FROM previous_colleges ORDER BY name')
        return [row_to_dict(row) for row in c.fetchall()]

def _upsert_previous_college(c, name, category):
    """Returns (row, action) with action in inserted/updated/existing."""
    db_execute(c, 'SELECT id, name, category, created_at FROM previous_colleges WHERE LOWER(name) = LOWER(?)', (name,))
    existing = c.fetchone()
    if existing:
        if _should_upgrade_category(existing['category'], category):
            db_execute(
                c,
                'UPDATE previous_colleges SET category = ? WHERE id = ? RETURNING id, name, category, created_at',
                (category, existing['id']),
            )
            return c.fetchone(), 'updated'
        return existing, 'existing'
    db_execute(
        c,
        '''INSERT INTO previous_colleges (name, category)
           VALUES (?, ?)
           RETURNING id, name, category, created_at''',
        (name, category or DEFAULT_COLLEGE_CATEGORY),
    )
    return c.fetchone(), 'inserted'

def add_previous_college(name, category=None):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        row, action = _upsert_previous_college(c, name.strip(), (category or '').strip() or DEFAULT_COLLEGE_CATEGORY)
    if action != 'existing':
        logging.info("Previous college %s %s", row['id'], action)
    return row_to_dict(row), action

def bulk_add_previous_colleges(items, default_category=None):
    """Add many names at once; later duplicates of the same name are skipped."""
    counts = {'inserted': 0, 'updated': 0, 'skipped': 0}
    seen = set()
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        for item in items or []:
            if isinstance(item, dict):
                name = clean_text(item.get('name')) or ''
                category = clean_text(item.get('category')) or default_category
            else:
                name = clean_text(item) or ''
                category = default_category
            if not name or name.lower() in seen:
                counts['skipped'] += 1
                continue
            seen.add(name.lower())
            _row, action = _upsert_previous_college(c, name, category or DEFAULT_COLLEGE_CATEGORY)
            if action == 'existing':
                counts['skipped'] += 1
            else:
                counts[action] += 1
    logging.info("Previous colleges bulk import: %s", counts)
    return counts

def update_previous_college(college_id, name, category):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'SELECT id FROM previous_colleges WHERE LOWER(name) = LOWER(?) AND id <> ?', (name, int(college_id)))
        if c.fetchone():
            return None, 'A college with this name already exists.', 409
        db_execute(
            c,
            '''UPDATE previous_colleges SET name = ?, category = ?
               WHERE id = ?
               RETURNING id, name, category, created_at''',
            (name, category or DEFAULT_COLLEGE_CATEGORY, int(college_id)),
        )
        row = c.fetchone()
        if not row:
            return None, 'College not found.', 404
    return row_to_dict(row), None, 200

def delete_previous_college(college_id):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM previous_colleges WHERE id = ?', (int(college_id),))
        return int(c.rowcount or 0)

# ==================== DOCUMENT REQUIREMENT FUNCTIONS ====================

DOCUMENT_COLUMNS = 'id, course_type, academic_stage, required_documents, is_enabled, created_at, updated_at'

def validate_document_requirement(payload):
    """Returns (values, error)."""
    course_type = (clean_text(payload.get('course_type')) or '').upper()
    if course_type not in COURSE_TYPES:
        return None, f"course_type must be one of {', '.join(COURSE_TYPES)}."
    stage = clean_text(payload.get('academic_stage')) or ''
    matched = [s for s in ACADEMIC_STAGES if s.lower() == stage.lower()]
    if not matched:
        return None, f"academic_stage must be one of {', '.join(ACADEMIC_STAGES)}."
    documents = payload.get('required_documents')
    if not isinstance(documents, list) or not all(isinstance(doc, str) for doc in documents):
        return None, 'required_documents must be a list of strings.'
    cleaned = []
    for doc in documents:
        doc = doc.strip()
        if doc and doc not in cleaned:
            cleaned.append(doc)
    return {
        'course_type': course_type,
        'academic_stage': matched[0],
        'required_documents': cleaned,
        'is_enabled': parse_bool(payload.get('is_enabled'), True),
    }, None

def list_document_requirements():
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(c, f'SELECT {DOCUMENT_COLUMNS} FROM document_requirements ORDER BY course_type, academic_stage')
        return [row_to_dict(row, {'required_documents': []}) for row in c.fetchall()]

def get_document_requirement(course_type, academic_stage):
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''SELECT {DOCUMENT_COLUMNS} FROM document_requirements
                WHERE course_type = ? AND LOWER(academic_stage) = LOWER(?)''',
            ((course_type or '').upper(), academic_stage or ''),
        )
        row = c.fetchone()
    return row_to_dict(row, {'required_documents': []}) if row else None

def upsert_document_requirement(values):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''INSERT INTO document_requirements (course_type, academic_stage, required_documents, is_enabled)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (course_type, academic_stage) DO UPDATE
                SET required_documents = EXCLUDED.required_documents,
                    is_enabled = EXCLUDED.is_enabled,
                    updated_at = CURRENT_TIMESTAMP
                RETURNING {DOCUMENT_COLUMNS}''',
            (values['course_type'], values['academic_stage'], json.dumps(values['required_documents']),
             1 if values['is_enabled'] else 0),
        )
        row = c.fetchone()
    logging.info("Document requirements saved for %s/%s", values['course_type'], values['academic_stage'])
    return row_to_dict(row, {'required_documents': []})

def delete_document_requirement(course_type, academic_stage):
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            'DELETE FROM document_requirements WHERE course_type = ? AND LOWER(academic_stage) = LOWER(?)',
            ((course_type or '').upper(), academic_stage or ''),
        )
        return int(c.rowcount or 0)

# ==================== REGISTRATION REPORT FUNCTIONS ====================

def load_registration_rows(args):
    """Regular students with the columns the abstract reports group on."""
    clauses, params = build_student_filters(args, exclude=('student_status',))
    clauses.append("s.student_status = 'Regular'")
    with db_connection() as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''SELECT s.college, s.course, s.branch, s.batch, s.current_year, s.current_semester,
                      s.caste, s.student_data
               FROM students s''' + where_sql(clauses),
            tuple(params) if params else None,
        )
        return [dict(row) for row in c.fetchall()]

# ==================== TICKET FUNCTIONS ====================

TICKET_COLUMNS = 'id, title, description, category, raised_by, status, created_at, updated_at, resolved_at'

def load_tickets(status_filter='', user_filter='', text_filter='', owner=None):
    """Load tickets with optional filtering.

    user_filter is a substring search; owner restricts to one exact raiser.
    """
    with db_connection() as conn:
        c = conn.cursor()
        where = []
        params = []
        status_val = (status_filter or '').strip().lower()
        if status_val in TICKET_STATUSES:
            where.append('status = ?')
            params.append(status_val)
        user_val = (user_filter or '').strip().lower()
        if user_val:
            where.append('LOWER(raised_by) LIKE ?')
            params.append(f'%{user_val}%')
        if owner:
            where.append('LOWER(raised_by) = LOWER(?)')
            params.append(str(owner))
        text_val = (text_filter or '').strip().lower()
        if text_val:
            where.append('(LOWER(title) LIKE ? OR LOWER(description) LIKE ?)')
            params.extend([f'%{text_val}%', f'%{text_val}%'])

        query = f'SELECT {TICKET_COLUMNS} FROM tickets'
        if where:
            query += ' WHERE ' + ' AND '.join(where)
        query += ' ORDER BY created_at DESC LIMIT 1000'
        db_execute(c, query, tuple(params) if params else None)
        return [row_to_dict(row) for row in c.fetchall()]

def save_ticket(title, description, category, raised_by):
    """Save a ticket."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            f'''INSERT INTO tickets (title, description, category, raised_by, status)
                VALUES (?, ?, ?, ?, 'open')
                RETURNING {TICKET_COLUMNS}''',
            (title, description, category or None, raised_by),
        )
        row = c.fetchone()
    logging.info("Ticket %s raised by %s", row['id'], raised_by)
    return row_to_dict(row)

def mark_ticket_status(ticket_id, status):
    """Set one ticket's status. Returns the updated row count, or None for an invalid status."""
    state = (status or '').strip().lower()
    if state not in TICKET_STATUSES:
        return None
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        if state in ('resolved', 'closed'):
            db_execute(
                c,
                '''UPDATE tickets
                   SET status = ?, updated_at = CURRENT_TIMESTAMP,
                       resolved_at = COALESCE(resolved_at, CURRENT_TIMESTAMP)
                   WHERE id = ?''',
                (state, int(ticket_id)),
            )
        else:
            db_execute(
                c,
                '''UPDATE tickets
                   SET status = ?, updated_at = CURRENT_TIMESTAMP, resolved_at = NULL
                   WHERE id = ?''',
                (state, int(ticket_id)),
            )
        return int(c.rowcount or 0)

def mark_all_tickets_in_progress():
    """Move every open ticket to in_progress."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(
            c,
            '''UPDATE tickets
               SET status = 'in_progress', updated_at = CURRENT_TIMESTAMP
               WHERE status = 'open' ''',
        )
        return int(c.rowcount or 0)

def delete_ticket(ticket_id):
    """Delete one ticket by id."""
    with db_connection(commit=True) as conn:
        c = conn.cursor()
        db_execute(c, 'DELETE FROM tickets WHERE id = ?', (int(ticket_id),))
        return int(c.rowcount or 0)

# ==================== ROUTES ====================

@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    logging.warning("CSRF rejected on %s %s: %s", request.method, request.path, error.description)
    return json_error('CSRF token missing or invalid. Fetch /api/auth/csrf-token and retry.', 400)

@app.errorhandler(404)
def not_found(error):
    return json_error('Resource not found.', 404)

@app.errorhandler(405)
def method_not_allowed(error):
    return json_error('Method not allowed.', 405)

@app.errorhandler(Exception)
def unhandled_error(error):
    if isinstance(error, HTTPException):
        return json_error(error.description or error.name, error.code or 500)
    logging.exception("Unhandled error on %s %s", request.method, request.path)
    return json_error('Internal server error.', 500)

@app.route('/api/health')
def health():
    return json_ok({'status': 'ok'})

# ---------- auth ----------

@app.route('/api/auth/csrf-token')
def csrf_token():
    return json_ok({'csrf_token': generate_csrf()})

@app.route('/api/auth/login', methods=['POST'])
def login():
    form = LoginForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    username = form.username.data.lower()
    ip_address = get_client_ip()
    blocked, wait_minutes = is_login_blocked('admin_login', username, ip_address)
    if blocked:
        return json_error(f'Too many failed attempts. Try again in {wait_minutes} minute(s).', 429)

    admin = get_admin(username)
    if not admin or not admin['is_active'] or not check_password(admin['password_hash'], form.password.data):
        register_failed_login('admin_login', username, ip_address)
        logging.warning("Failed login for %s from %s", username, ip_address)
        return json_error('Invalid username or password.', 401)

    clear_failed_login('admin_login', username, ip_address)
    update_login_timestamps(admin['username'])
    session.clear()
    session['user_id'] = admin['username']
    session['admin_id'] = admin['id']
    session['role'] = admin['role']
    logging.info("User %s logged in from %s", admin['username'], ip_address)
    return json_ok({
        'username': admin['username'],
        'role': admin['role'],
        'last_login_at': format_timestamp(admin['last_login_at']),
    }, 'Login successful.')

@app.route('/api/auth/logout', methods=['POST'])
def logout():
    username = session.get('user_id')
    session.clear()
    if username:
        logging.info("User %s logged out", username)
    return json_ok(message='Logged out.')

@app.route('/api/auth/me')
@login_required
def me():
    return json_ok({'username': session['user_id'], 'role': session.get('role'), 'admin_id': session.get('admin_id')})

# ---------- calendar ----------

@app.route('/api/calendar/non-working-days')
@login_required
def calendar_non_working_days():
    year, month = holiday_calendar.parse_month_param(request.args.get('month'), request.args.get('year'))
    if year is None:
        return json_error('Invalid month. Use YYYY-MM.', 400)
    start, end = holiday_calendar.month_bounds(year, month)
    non_working = get_non_working_days(start, end)
    counts = get_attendance_submission_counts(start, end)
    today_key = date.today().isoformat()
    statuses = {
        key: attendance_stats.calendar_day_status(key, key in non_working, counts.get(key, 0), today_key)
        for key in attendance_stats.iter_date_keys(start, end)
    }
    return json_ok({
        'month': f'{year:04d}-{month:02d}',
        'range': {'start': start.isoformat(), 'end': end.isoformat()},
        'sundays': holiday_calendar.sundays_for_month(year, month),
        'public_holidays': [info['public_holiday'] for info in non_working.values() if info['public_holiday']],
        'custom_holidays': [info['custom_holiday'] for info in non_working.values() if info['custom_holiday']],
        'non_working_days': non_working,
        'attendance_status': statuses,
    })

@app.route('/api/calendar/custom-holidays', methods=['GET'])
@login_required
def custom_holidays_list():
    start = request.args.get('start')
    end = request.args.get('end')
    if (start and not parse_date(start)) or (end and not parse_date(end)):
        return json_error('Invalid date. Use YYYY-MM-DD.', 400)
    return json_ok(list_custom_holidays(start, end))

@app.route('/api/calendar/custom-holidays', methods=['POST'])
@admin_required
def custom_holidays_save():
    form = HolidayForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    holiday = upsert_custom_holiday(form.date.data, form.title.data, form.description.data, current_admin_id())
    return json_ok(holiday, 'Holiday saved.')

@app.route('/api/calendar/custom-holidays/<holiday_date>', methods=['DELETE'])
@admin_required
def custom_holidays_delete(holiday_date):
    if not parse_date(holiday_date):
        return json_error('Invalid date. Use YYYY-MM-DD.', 400)
    if not delete_custom_holiday(holiday_date):
        return json_error('Holiday not found.', 404)
    return json_ok(message='Holiday removed.')

# ---------- semesters ----------

def _semester_values(form):
    return {name: value for name, value in form.data.items() if name != 'csrf_token'}

@app.route('/api/semesters', methods=['GET'])
@login_required
def semesters_list():
    return json_ok(list_semesters(request.args))

@app.route('/api/semesters', methods=['POST'])
@admin_required
def semesters_create():
    form = SemesterForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = save_semester(_semester_values(form))
    if err:
        return json_error(err, status)
    return json_ok(row, 'Semester created.', 201)

@app.route('/api/semesters/<int:semester_id>', methods=['PUT'])
@admin_required
def semesters_update(semester_id):
    form = SemesterForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = save_semester(_semester_values(form), semester_id)
    if err:
        return json_error(err, status)
    return json_ok(row, 'Semester updated.')

@app.route('/api/semesters/<int:semester_id>', methods=['DELETE'])
@admin_required
def semesters_delete(semester_id):
    if not delete_semester(semester_id):
        return json_error('Semester not found.', 404)
    return json_ok(message='Semester deleted.')

# ---------- attendance ----------

def _date_arg(name='date'):
    """Parse a date query arg, defaulting to today. Returns (date, error)."""
    raw = request.args.get(name)
    if not raw:
        return date.today(), None
    parsed = parse_date(raw)
    if not parsed:
        return None, 'Invalid date. Use YYYY-MM-DD.'
    return parsed, None

@app.route('/api/attendance/filters')
@login_required
def attendance_filters():
    return json_ok(get_attendance_filter_options())

@app.route('/api/attendance', methods=['GET'])
@login_required
def attendance_list():
    attendance_date, err = _date_arg()
    if err:
        return json_error(err, 400)
    students, total = list_attendance_students(attendance_date, request.args)
    info = get_non_working_days(attendance_date, attendance_date).get(attendance_date.isoformat())
    return json_ok(
        students,
        total=total,
        attendance_date=attendance_date.isoformat(),
        is_non_working_day=info is not None,
        non_working_reasons=info['reasons'] if info else [],
    )

@app.route('/api/attendance', methods=['POST'])
@login_required
def attendance_mark():
    payload = get_json_body()
    attendance_date = parse_date(payload.get('attendance_date'))
    if not attendance_date:
        return json_error('attendance_date (YYYY-MM-DD) is required.', 400)
    if not isinstance(payload.get('records'), list):
        return json_error('records must be a list.', 400)
    result, err, status = save_attendance(
        attendance_date,
        payload['records'],
        current_admin_id(),
        allow_holiday=parse_bool(payload.get('allow_holiday')),
    )
    if err:
        return json_error(err, status)
    return json_ok(result, 'Attendance saved.')

@app.route('/api/attendance', methods=['DELETE'])
@admin_required
def attendance_clear():
    raw = request.args.get('date')
    attendance_date = parse_date(raw)
    if not attendance_date:
        return json_error('date (YYYY-MM-DD) is required.', 400)
    student_ids = [sid for sid in (safe_int(v, None) for v in request.args.getlist('student_id')) if sid is not None]
    deleted = clear_attendance(attendance_date, student_ids or None)
    return json_ok({'deleted': deleted, 'attendance_date': attendance_date.isoformat()}, 'Attendance cleared.')

@app.route('/api/attendance/student/<int:student_id>/history')
@login_required
def attendance_history(student_id):
    ref, err = _date_arg()
    if err:
        return json_error(err, 400)
    student = get_student_by_id(student_id)
    if not student:
        return json_error('Student not found.', 404)
    return json_ok(get_student_attendance_history(student, ref))

@app.route('/api/attendance/summary')
@login_required
def attendance_summary():
    attendance_date, err = _date_arg()
    if err:
        return json_error(err, 400)
    report = attendance_stats.build_day_end_report(load_day_rows(attendance_date, request.args), EXCLUDED_COURSES)
    info = get_non_working_days(attendance_date, attendance_date).get(attendance_date.isoformat())
    report['date'] = attendance_date.isoformat()
    report['is_non_working_day'] = info is not None
    report['non_working_reasons'] = info['reasons'] if info else []
    return json_ok(report)

@app.route('/api/attendance/report')
@login_required
def attendance_report():
    start, end, err = resolve_report_range(request.args)
    if err:
        return json_error(err, 400)
    report = build_attendance_sheet(start, end, request.args)
    group_by = request.args.get('group_by')
    if group_by:
        abstract, err = attendance_stats.attendance_abstract(report['students'], group_by, ATTENDANCE_THRESHOLD)
        if err:
            return json_error(err, 400)
        report['abstract'] = abstract
    return json_ok(report)

@app.route('/api/attendance/report.csv')
@login_required
def attendance_report_csv():
    start, end, err = resolve_report_range(request.args)
    if err:
        return json_error(err, 400)
    report = build_attendance_sheet(start, end, request.args)
    output = StringIO()
    writer = csv.writer(output)
    stat_columns = ['working_days', 'present_days', 'absent_days', 'holidays', 'attendance_percentage']
    writer.writerow(
        ['admission_number', 'pin_number', 'student_name', 'college', 'course', 'batch', 'branch', 'year', 'semester']
        + report['dates'] + stat_columns
    )
    for student in report['students']:
        writer.writerow(
            [student['admission_number'], student['pin_number'] or '', student['student_name'], student['college'],
             student['course'], student['batch'], student['branch'], student['year'], student['semester']]
            + [student['attendance'].get(key, '') for key in report['dates']]
            + [student['statistics'][col] for col in stat_columns]
        )
    filename = f'attendance_{start.isoformat()}_{end.isoformat()}.csv'
    return Response(
        output.getvalue(),
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )

# ---------- students ----------

@app.route('/api/students', methods=['GET'])
@login_required
def students_list():
    rows, total = list_students(request.args)
    limit, offset = parse_pagination(request.args)
    return json_ok(rows, total=total, limit=limit, offset=offset)

@app.route('/api/students/stats')
@login_required
def students_stats():
    return json_ok(get_dashboard_stats())

@app.route('/api/students/<admission_number>', methods=['GET'])
@login_required
def students_get(admission_number):
    student = get_student(admission_number)
    if not student:
        return json_error('Student not found.', 404)
    return json_ok(student)

@app.route('/api/students', methods=['POST'])
@login_required
def students_create():
    form = StudentForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    values = {col: getattr(form, col).data for col in STUDENT_COLUMNS}
    student, err, status = create_student(values, split_student_payload(get_json_body()), current_admin_id())
    if err:
        return json_error(err, status)
    return json_ok(student, 'Student created.', status)

@app.route('/api/students/<admission_number>', methods=['PUT'])
@login_required
def students_update(admission_number):
    form = StudentUpdateForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    payload = get_json_body()
    updates = {col: getattr(form, col).data for col in STUDENT_COLUMNS if col in payload}
    student, err, status = update_student(admission_number, updates, split_student_payload(payload), current_admin_id())
    if err:
        return json_error(err, status)
    return json_ok(student, 'Student updated.')

@app.route('/api/students/<admission_number>', methods=['DELETE'])
@admin_required
def students_delete(admission_number):
    if not delete_student(admission_number, current_admin_id()):
        return json_error('Student not found.', 404)
    return json_ok(message='Student deleted.')

# ---------- colleges ----------

@app.route('/api/colleges', methods=['GET'])
@login_required
def colleges_list():
    return json_ok(list_colleges(parse_bool(request.args.get('include_inactive'))))

@app.route('/api/colleges', methods=['POST'])
@admin_required
def colleges_create():
    form = CollegeForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = save_college(form.name.data, form.code.data, parse_bool(get_json_body().get('is_active'), True))
    if err:
        return json_error(err, status)
    return json_ok(row, 'College created.', status)

@app.route('/api/colleges/<int:college_id>', methods=['PUT'])
@admin_required
def colleges_update(college_id):
    form = CollegeForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = save_college(
        form.name.data, form.code.data, parse_bool(get_json_body().get('is_active'), True), college_id,
    )
    if err:
        return json_error(err, status)
    return json_ok(row, 'College updated.')

@app.route('/api/colleges/<int:college_id>', methods=['DELETE'])
@admin_required
def colleges_delete(college_id):
    if not deactivate_college(college_id):
        return json_error('College not found.', 404)
    return json_ok(message='College deactivated.')

# ---------- courses & branches ----------

def _course_values(form):
    return {
        'name': form.name.data,
        'code': form.code.data,
        'level': form.level.data,
        'college_id': form.college_id.data,
        'total_years': form.total_years.data,
        'semesters_per_year': form.semesters_per_year.data,
    }

@app.route('/api/courses', methods=['GET'])
@login_required
def courses_list():
    return json_ok(list_courses(parse_bool(request.args.get('include_inactive'))))

@app.route('/api/courses/options')
@login_required
def courses_options():
    return json_ok(get_course_options())

@app.route('/api/courses', methods=['POST'])
@admin_required
def courses_create():
    form = CourseForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    branches = get_json_body().get('branches') or []
    if not isinstance(branches, list):
        return json_error('branches must be a list.', 400)
    course, err, status = create_course(_course_values(form), branches)
    if err:
        return json_error(err, status)
    return json_ok(course, 'Course created.', status)

@app.route('/api/courses/<int:course_id>', methods=['PUT'])
@admin_required
def courses_update(course_id):
    form = CourseForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    payload = get_json_body()
    is_active = parse_bool(payload.get('is_active')) if 'is_active' in payload else None
    course, err, status = update_course(course_id, _course_values(form), is_active)
    if err:
        return json_error(err, status)
    return json_ok(course, 'Course updated.')

@app.route('/api/courses/<int:course_id>', methods=['DELETE'])
@admin_required
def courses_delete(course_id):
    if not deactivate_course(course_id):
        return json_error('Course not found.', 404)
    return json_ok(message='Course deactivated.')

@app.route('/api/courses/<int:course_id>/branches', methods=['GET'])
@login_required
def branches_list(course_id):
    branches = list_branches(course_id, parse_bool(request.args.get('include_inactive')))
    if branches is None:
        return json_error('Course not found.', 404)
    return json_ok(branches)

@app.route('/api/courses/<int:course_id>/branches', methods=['POST'])
@admin_required
def branches_create(course_id):
    branch, err, status = create_branch(course_id, get_json_body())
    if err:
        return json_error(err, status)
    return json_ok(branch, 'Branch created.', status)

@app.route('/api/courses/<int:course_id>/branches/<int:branch_id>', methods=['PUT'])
@admin_required
def branches_update(course_id, branch_id):
    branch, err, status = update_branch(course_id, branch_id, get_json_body())
    if err:
        return json_error(err, status)
    return json_ok(branch, 'Branch updated.')

@app.route('/api/courses/<int:course_id>/branches/<int:branch_id>', methods=['DELETE'])
@admin_required
def branches_delete(course_id, branch_id):
    result, err, status = delete_branch(course_id, branch_id)
    if err:
        return json_error(err, status)
    message = 'Branch deactivated; students still reference it.' if result['deactivated'] else 'Branch deleted.'
    return json_ok(result, message)

# ---------- fees ----------

@app.route('/api/fees/headers', methods=['GET'])
@login_required
def fee_headers_list():
    return json_ok(list_fee_headers())

@app.route('/api/fees/headers', methods=['POST'])
@admin_required
def fee_headers_create():
    form = FeeHeaderForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = save_fee_header(form.name.data, form.code.data, form.description.data)
    if err:
        return json_error(err, status)
    return json_ok(row, 'Fee head created.', status)

@app.route('/api/fees/headers/<int:header_id>', methods=['PUT'])
@admin_required
def fee_headers_update(header_id):
    form = FeeHeaderForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = save_fee_header(form.name.data, form.code.data, form.description.data, header_id)
    if err:
        return json_error(err, status)
    return json_ok(row, 'Fee head updated.')

@app.route('/api/fees/headers/<int:header_id>', methods=['DELETE'])
@admin_required
def fee_headers_delete(header_id):
    ok, message, status = delete_fee_header(header_id)
    if not ok:
        return json_error(message, status)
    return json_ok(message=message)

@app.route('/api/fees/filters')
@login_required
def fee_filters():
    return json_ok(get_fee_filter_options())

@app.route('/api/fees/students', methods=['GET'])
@login_required
def fee_students_list():
    rows, total = list_fee_students(request.args)
    limit, offset = parse_pagination(request.args)
    return json_ok(rows, total=total, limit=limit, offset=offset)

@app.route('/api/fees/students/<admission_number>', methods=['GET'])
@login_required
def fee_student_details(admission_number):
    details = get_student_fee_details(admission_number)
    if not details:
        return json_error('Student not found.', 404)
    return json_ok(details)

@app.route('/api/fees/students/<admission_number>/fees', methods=['POST'])
@admin_required
def fee_student_assign(admission_number):
    form = StudentFeeForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    values = {name: value for name, value in form.data.items() if name != 'csrf_token'}
    row, err, status = assign_student_fee(admission_number, values, current_admin_id())
    if err:
        return json_error(err, status)
    return json_ok(row, 'Fee assigned.', status)

@app.route('/api/fees/student-fees/<int:student_fee_id>/payments', methods=['POST'])
@login_required
def fee_payment_record(student_fee_id):
    form = PaymentForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    values = {name: value for name, value in form.data.items() if name != 'csrf_token'}
    row, err, status = record_fee_payment(student_fee_id, values, current_admin_id())
    if err:
        return json_error(err, status)
    return json_ok(row, 'Payment recorded.', status)

# ---------- feedback ----------

@app.route('/api/feedback/forms', methods=['GET'])
@login_required
def feedback_forms_list():
    return json_ok(list_feedback_forms())

@app.route('/api/feedback/forms', methods=['POST'])
@admin_required
def feedback_forms_create():
    payload = get_json_body()
    name = clean_text(payload.get('form_name')) or ''
    if not name:
        return json_error('Form name is required.', 400)
    fields, err = validate_form_fields(payload.get('form_fields'))
    if err:
        return json_error(err, 400)
    form = create_feedback_form(
        name, clean_text(payload.get('form_description')), fields, payload.get('recurrence_config'), current_admin_id(),
    )
    return json_ok(form, 'Feedback form created.', 201)

@app.route('/api/feedback/forms/<form_id>', methods=['GET'])
@login_required
def feedback_forms_get(form_id):
    form = get_feedback_form(form_id)
    if not form:
        return json_error('Form not found.', 404)
    return json_ok(form)

@app.route('/api/feedback/forms/<form_id>', methods=['PUT'])
@admin_required
def feedback_forms_update(form_id):
    form, err, status = update_feedback_form(form_id, get_json_body(), current_admin_id())
    if err:
        return json_error(err, status)
    return json_ok(form, 'Feedback form updated.')

@app.route('/api/feedback/forms/<form_id>', methods=['DELETE'])
@admin_required
def feedback_forms_delete(form_id):
    if not delete_feedback_form(form_id, current_admin_id()):
        return json_error('Form not found.', 404)
    return json_ok(message='Feedback form deleted.')

@app.route('/api/feedback/submit', methods=['POST'])
@login_required
def feedback_submit():
    result, err, status = submit_feedback(get_json_body())
    if err:
        return json_error(err, status)
    return json_ok(result, 'Feedback submitted.', status)

@app.route('/api/feedback/forms/<form_id>/analytics')
@login_required
def feedback_analytics(form_id):
    analytics = get_feedback_analytics(form_id, request.args)
    if analytics is None:
        return json_error('Form not found.', 404)
    return json_ok(analytics)

# ---------- previous colleges ----------

@app.route('/api/previous-colleges', methods=['GET'])
@login_required
def previous_colleges_list():
    return json_ok(list_previous_colleges((request.args.get('category') or '').strip() or None))

@app.route('/api/previous-colleges', methods=['POST'])
@login_required
def previous_colleges_add():
    form = PreviousCollegeForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, action = add_previous_college(form.name.data, form.category.data)
    if action == 'inserted':
        return json_ok(row, 'College added.', 201)
    return json_ok(row, 'College already exists.', 200, action=action)

@app.route('/api/previous-colleges/bulk', methods=['POST'])
@admin_required
def previous_colleges_bulk():
    payload = request.get_json(silent=True)
    default_category = None
    if isinstance(payload, dict):
        default_category = clean_text(payload.get('category')) or None
        payload = payload.get('colleges')
    if not isinstance(payload, list) or not payload:
        return json_error('Provide a non-empty list of colleges.', 400)
    return json_ok(bulk_add_previous_colleges(payload, default_category), 'Import complete.')

@app.route('/api/previous-colleges/<int:college_id>', methods=['PUT'])
@admin_required
def previous_colleges_update(college_id):
    form = PreviousCollegeForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    row, err, status = update_previous_college(college_id, form.name.data, form.category.data)
    if err:
        return json_error(err, status)
    return json_ok(row, 'College updated.')

@app.route('/api/previous-colleges/<int:college_id>', methods=['DELETE'])
@admin_required
def previous_colleges_delete(college_id):
    if not delete_previous_college(college_id):
        return json_error('College not found.', 404)
    return json_ok(message='College deleted.')

# ---------- document requirements ----------

@app.route('/api/settings/documents', methods=['GET'])
@login_required
def documents_list():
    return json_ok(list_document_requirements())

@app.route('/api/settings/documents/<course_type>/<academic_stage>', methods=['GET'])
@login_required
def documents_get(course_type, academic_stage):
    row = get_document_requirement(course_type, academic_stage)
    if not row:
        return json_error('Document requirements not configured.', 404)
    return json_ok(row)

@app.route('/api/settings/documents', methods=['POST'])
@admin_required
def documents_save():
    values, err = validate_document_requirement(get_json_body())
    if err:
        return json_error(err, 400)
    return json_ok(upsert_document_requirement(values), 'Document requirements saved.')

@app.route('/api/settings/documents/<course_type>/<academic_stage>', methods=['DELETE'])
@admin_required
def documents_delete(course_type, academic_stage):
    if not delete_document_requirement(course_type, academic_stage):
        return json_error('Document requirements not configured.', 404)
    return json_ok(message='Document requirements deleted.')

# ---------- reports ----------

@app.route('/api/reports/registration/abstract')
@login_required
def registration_abstract():
    result, err = attendance_stats.build_abstract(load_registration_rows(request.args), request.args.get('group_by'))
    if err:
        return json_error(err, 400)
    return json_ok(result)

@app.route('/api/reports/category')
@login_required
def category_report():
    result, err = attendance_stats.build_abstract(
        load_registration_rows(request.args), request.args.get('group_by'), count_field='caste',
    )
    if err:
        return json_error(err, 400)
    return json_ok(result)

# ---------- tickets ----------

@app.route('/api/tickets', methods=['GET'])
@login_required
def tickets_list():
    if session.get('role') in ADMIN_ROLES:
        user_filter, owner = request.args.get('user', ''), None
    else:
        user_filter, owner = '', session['user_id']
    return json_ok(load_tickets(request.args.get('status', ''), user_filter, request.args.get('q', ''), owner=owner))

@app.route('/api/tickets', methods=['POST'])
@login_required
def tickets_create():
    form = TicketForm()
    if not form.validate():
        return json_error(form_error_message(form), 400)
    ticket = save_ticket(form.title.data, form.description.data, form.category.data, session['user_id'])
    return json_ok(ticket, 'Ticket raised.', 201)

@app.route('/api/tickets/<int:ticket_id>/status', methods=['PUT'])
@admin_required
def tickets_status(ticket_id):
    updated = mark_ticket_status(ticket_id, get_json_body().get('status'))
    if updated is None:
        return json_error(f"Status must be one of {', '.join(TICKET_STATUSES)}.", 400)
    if not updated:
        return json_error('Ticket not found.', 404)
    return json_ok(message='Ticket updated.')

@app.route('/api/tickets/mark-all-in-progress', methods=['POST'])
@admin_required
def tickets_mark_all():
    return json_ok({'updated': mark_all_tickets_in_progress()}, 'Open tickets moved to in progress.')

@app.route('/api/tickets/<int:ticket_id>', methods=['DELETE'])
@admin_required
def tickets_delete(ticket_id):
    if not delete_ticket(ticket_id):
        return json_error('Ticket not found.', 404)
    return json_ok(message='Ticket deleted.')

if __name__ == '__main__':
    port = int(os.environ.get('PORT', '5000'))
    debug_enabled = os.environ.get('FLASK_DEBUG', '').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug_enabled)
