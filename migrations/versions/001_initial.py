"""Initial schema for the student database admin API.

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create all tables and indexes used by student_admin."""

    # Admin accounts: super_admin, admin, staff
    op.execute('''CREATE TABLE IF NOT EXISTS admins (
                    id SERIAL PRIMARY KEY,
                    username TEXT UNIQUE NOT NULL,
                    password_hash TEXT NOT NULL,
                    role TEXT DEFAULT 'admin',
                    email TEXT,
                    is_active INTEGER DEFAULT 1,
                    current_login_at TIMESTAMP,
                    last_login_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS login_attempts (
                    id SERIAL PRIMARY KEY,
                    endpoint TEXT NOT NULL,
                    username TEXT NOT NULL,
                    ip_address TEXT NOT NULL,
                    failures INTEGER DEFAULT 0,
                    first_failed_at TIMESTAMP,
                    last_failed_at TIMESTAMP,
                    locked_until TIMESTAMP,
                    UNIQUE(endpoint, username, ip_address)
                )''')

    # Academic structure
    op.execute('''CREATE TABLE IF NOT EXISTS colleges (
                    id SERIAL PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    code TEXT UNIQUE,
                    is_active INTEGER DEFAULT 1,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS courses (
                    id SERIAL PRIMARY KEY,
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

    op.execute('''CREATE TABLE IF NOT EXISTS course_branches (
                    id SERIAL PRIMARY KEY,
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

    op.execute('''CREATE TABLE IF NOT EXISTS semesters (
                    id SERIAL PRIMARY KEY,
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

    op.execute('''CREATE TABLE IF NOT EXISTS students (
                    id SERIAL PRIMARY KEY,
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

    # Attendance and calendar
    op.execute('''CREATE TABLE IF NOT EXISTS attendance_records (
                    id SERIAL PRIMARY KEY,
                    student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    admission_number TEXT,
                    attendance_date DATE NOT NULL,
                    status TEXT NOT NULL CHECK (status IN ('present', 'absent', 'holiday')),
                    holiday_reason TEXT,
                    marked_by INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS custom_holidays (
                    id SERIAL PRIMARY KEY,
                    holiday_date DATE UNIQUE NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT,
                    created_by INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Fees
    op.execute('''CREATE TABLE IF NOT EXISTS fee_headers (
                    id SERIAL PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    code TEXT UNIQUE NOT NULL,
                    description TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS student_fees (
                    id SERIAL PRIMARY KEY,
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

    op.execute('''CREATE TABLE IF NOT EXISTS fee_payments (
                    id SERIAL PRIMARY KEY,
                    student_fee_id INTEGER NOT NULL REFERENCES student_fees(id) ON DELETE CASCADE,
                    amount NUMERIC(12, 2) NOT NULL,
                    payment_mode TEXT,
                    reference TEXT,
                    paid_on DATE DEFAULT CURRENT_DATE,
                    remarks TEXT,
                    recorded_by INTEGER,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Feedback
    op.execute('''CREATE TABLE IF NOT EXISTS forms (
                    id SERIAL PRIMARY KEY,
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

    op.execute('''CREATE TABLE IF NOT EXISTS feedback_responses (
                    id SERIAL PRIMARY KEY,
                    form_id TEXT NOT NULL REFERENCES forms(form_id) ON DELETE CASCADE,
                    student_id INTEGER NOT NULL REFERENCES students(id) ON DELETE CASCADE,
                    faculty_id TEXT NOT NULL,
                    subject_id TEXT NOT NULL,
                    responses TEXT NOT NULL,
                    academic_year TEXT,
                    semester INTEGER,
                    submitted_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    # Settings and support
    op.execute('''CREATE TABLE IF NOT EXISTS previous_colleges (
                    id SERIAL PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    category TEXT DEFAULT 'Other',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS document_requirements (
                    id SERIAL PRIMARY KEY,
                    course_type TEXT NOT NULL,
                    academic_stage TEXT NOT NULL,
                    required_documents TEXT NOT NULL DEFAULT '[]',
                    is_enabled INTEGER DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS tickets (
                    id SERIAL PRIMARY KEY,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    category TEXT,
                    raised_by TEXT NOT NULL,
                    status TEXT DEFAULT 'open',
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    resolved_at TIMESTAMP
                )''')

    op.execute('''CREATE TABLE IF NOT EXISTS audit_logs (
                    id SERIAL PRIMARY KEY,
                    action_type TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT,
                    admin_id INTEGER,
                    details TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )''')

    op.execute('CREATE INDEX IF NOT EXISTS idx_admins_username_lower ON admins(LOWER(username))')
    op.execute('CREATE INDEX IF NOT EXISTS idx_login_attempts_locked_until ON login_attempts(locked_until)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_attendance_date ON attendance_records(attendance_date)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_students_cohort ON students(college, course, batch, branch, current_year, current_semester)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_student_fees_student ON student_fees(student_id)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_semesters_course ON semesters(course_id, year_of_study, semester_number)')
    op.execute('CREATE INDEX IF NOT EXISTS idx_audit_logs_entity ON audit_logs(entity_type, entity_id)')

    # Uniqueness guards checked by verify_required_db_guards()
    op.execute('CREATE UNIQUE INDEX IF NOT EXISTS uq_attendance_student_date ON attendance_records(student_id, attendance_date)')
    op.execute('CREATE UNIQUE INDEX IF NOT EXISTS uq_course_branch_name ON course_branches(course_id, name)')
    op.execute('CREATE UNIQUE INDEX IF NOT EXISTS uq_document_requirements ON document_requirements(course_type, academic_stage)')
    op.execute('''CREATE UNIQUE INDEX IF NOT EXISTS uq_feedback_response
                  ON feedback_responses(form_id, student_id, faculty_id, subject_id, academic_year, semester)''')


def downgrade() -> None:
    """Drop all tables (destructive)."""
    op.execute('DROP TABLE IF EXISTS audit_logs CASCADE')
    op.execute('DROP TABLE IF EXISTS tickets CASCADE')
    op.execute('DROP TABLE IF EXISTS document_requirements CASCADE')
    op.execute('DROP TABLE IF EXISTS previous_colleges CASCADE')
    op.execute('DROP TABLE IF EXISTS feedback_responses CASCADE')
    op.execute('DROP TABLE IF EXISTS forms CASCADE')
    op.execute('DROP TABLE IF EXISTS fee_payments CASCADE')
    op.execute('DROP TABLE IF EXISTS student_fees CASCADE')
    op.execute('DROP TABLE IF EXISTS fee_headers CASCADE')
    op.execute('DROP TABLE IF EXISTS custom_holidays CASCADE')
    op.execute('DROP TABLE IF EXISTS attendance_records CASCADE')
    op.execute('DROP TABLE IF EXISTS students CASCADE')
    op.execute('DROP TABLE IF EXISTS semesters CASCADE')
    op.execute('DROP TABLE IF EXISTS course_branches CASCADE')
    op.execute('DROP TABLE IF EXISTS courses CASCADE')
    op.execute('DROP TABLE IF EXISTS colleges CASCADE')
    op.execute('DROP TABLE IF EXISTS login_attempts CASCADE')
    op.execute('DROP TABLE IF EXISTS admins CASCADE')
