#!/usr/bin/env python3
from __future__ import annotations

import argparse
import hashlib
import os
import secrets
from datetime import datetime

from sqlalchemy import create_engine, text


ROLES = ("Admin", "Staff")
MIN_PASSWORD_LENGTH = 6


def _password_hash(password: str, salt: str) -> str:
    raw = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        120000,
    )
    return raw.hex()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one desk user directly from terminal.",
    )
    parser.add_argument("--email", required=True, help="Login email (stored lower-case)")
    parser.add_argument("--name", default=None, help="Display name stamped on payments and notes")
    parser.add_argument("--role", choices=ROLES, default="Staff", help="Desk role")
    parser.add_argument(
        "--password",
        default=None,
        help="Password to set. Required for new users; omit to keep the existing one.",
    )
    parser.add_argument("--deactivate", action="store_true", help="Block logins for this user.")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("RENTAL_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to RENTAL_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    email = (args.email or "").strip().lower()
    if "@" not in email:
        parser.error("--email must be a valid email address")
    if not args.db_url:
        parser.error("Missing DB URL. Set RENTAL_DB_URL or pass --db-url.")
    if args.password is not None and len(args.password.strip()) < MIN_PASSWORD_LENGTH:
        parser.error(f"--password must be at least {MIN_PASSWORD_LENGTH} characters.")

    password_salt = None
    password_hash = None
    if args.password is not None:
        password_salt = secrets.token_hex(16)
        password_hash = _password_hash(args.password.strip(), password_salt)

    now = datetime.now()
    params = {
        "email": email,
        "name": (args.name or "").strip() or None,
        "role": args.role,
        "is_active": not args.deactivate,
        "password_hash": password_hash,
        "password_salt": password_salt,
        "now": now,
    }

    engine = create_engine(args.db_url, pool_pre_ping=True, future=True)
    with engine.begin() as conn:
        existing = conn.execute(
            text("SELECT UserID FROM Users WHERE lower(Email) = :email"),
            {"email": email},
        ).scalar()
        if existing is None:
            if password_hash is None:
                parser.error("--password is required when creating a user.")
            conn.execute(
                text(
                    """
                    INSERT INTO Users (Email, DisplayName, PasswordHash, PasswordSalt, Role, IsActive, CreatedAt, UpdatedAt)
                    VALUES (:email, COALESCE(:name, :email), :password_hash, :password_salt, :role, :is_active, :now, :now)
                    """
                ),
                params,
            )
        else:
            conn.execute(
                text(
                    """
                    UPDATE Users SET
                        DisplayName = COALESCE(:name, DisplayName),
                        Role = :role,
                        IsActive = :is_active,
                        PasswordHash = COALESCE(:password_hash, PasswordHash),
                        PasswordSalt = COALESCE(:password_salt, PasswordSalt),
                        UpdatedAt = :now
                    WHERE UserID = :user_id
                    """
                ),
                {**params, "user_id": existing},
            )
        row = conn.execute(
            text("SELECT UserID, Email, DisplayName, Role, IsActive, PasswordHash, UpdatedAt FROM Users WHERE lower(Email) = :email"),
            {"email": email},
        ).mappings().first()

    if not row:
        raise RuntimeError("Upsert finished but no row returned.")

    print(
        f"OK user_id={row['UserID']} email={row['Email']} name={row['DisplayName']} role={row['Role']} "
        f"active={bool(row['IsActive'])} has_password={bool(row['PasswordHash'])} updated_at={row.get('UpdatedAt')}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
