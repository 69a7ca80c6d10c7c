"""
Apply database migrations without starting the API server.

Usage:
  python migrate.py

Runs Flask-Migrate's upgrade against DATABASE_URL, then makes sure the
bootstrap super admin exists.
"""

import os
import sys


def main():
    # Startup hooks stay off while importing; run them explicitly below.
    os.environ['RUN_STARTUP_DDL'] = '0'
    os.environ['RUN_STARTUP_BOOTSTRAP'] = '0'
    os.environ.setdefault('DB_GUARDS_STRICT', '0')

    import student_admin
    from flask_migrate import upgrade

    try:
        print("Applying database migrations...")
        with student_admin.app.app_context():
            upgrade(directory=student_admin.migrate.directory)
        student_admin.verify_required_db_guards()
        student_admin.create_super_admin()
        print("✓ Migrations completed successfully.")
    except Exception as e:
        print(f"✗ Migration failed: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
