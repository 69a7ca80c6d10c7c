"""Reset an admin account's password from the command line.

Usage:
  python reset_password.py admin
  RESET_PASSWORD='new-long-password' python reset_password.py admin --unlock
"""

import argparse
import getpass
import os

import psycopg2
from dotenv import load_dotenv
from werkzeug.security import generate_password_hash

MIN_PASSWORD_LENGTH = 12


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reset the password of a staff/admin account.")
    parser.add_argument("username", nargs="?", default=os.environ.get("RESET_USERNAME", ""),
                        help="Account username (default: RESET_USERNAME)")
    parser.add_argument("--database-url", default=None, help="PostgreSQL URL (default: DATABASE_URL)")
    parser.add_argument("--unlock", action="store_true",
                        help="Also clear failed login attempts so the account is not locked out")
    return parser.parse_args(argv)


def read_new_password():
    raw_password = os.getenv("RESET_PASSWORD")
    if raw_password is None:
        raw_password = getpass.getpass("New password: ")
        if raw_password != getpass.getpass("Repeat password: "):
            raise RuntimeError("Passwords do not match.")
    if len(raw_password) < MIN_PASSWORD_LENGTH:
        raise RuntimeError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
    return raw_password


def reset_admin_password(database_url, username, raw_password, unlock=False):
    """Returns the number of admin rows updated (0 or 1)."""
    with psycopg2.connect(database_url) as conn:
        with conn.cursor() as c:
            c.execute(
                "UPDATE admins SET password_hash = %s, is_active = 1 "
                "WHERE LOWER(username) = LOWER(%s)",
                (generate_password_hash(raw_password), username),
            )
            updated = int(c.rowcount or 0)
            if updated and unlock:
                c.execute("DELETE FROM login_attempts WHERE LOWER(username) = LOWER(%s)", (username,))
        conn.commit()
    return updated


def main(argv=None):
    load_dotenv()
    args = parse_args(argv)
    database_url = (args.database_url or os.getenv("DATABASE_URL") or "").strip()
    username = (args.username or "").strip()

    if not database_url:
        raise RuntimeError("DATABASE_URL not found. Set it in .env or pass --database-url.")
    if not username:
        raise RuntimeError("A username is required.")

    if reset_admin_password(database_url, username, read_new_password(), unlock=args.unlock):
        print(f"Password reset successfully for {username}.")
    else:
        print(f"No admin found for {username}.")


if __name__ == "__main__":
    main()
