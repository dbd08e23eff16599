#!/usr/bin/env python3
"""
Create (or promote) an account from the command line.

Admins and panel experts cannot self-register through the API; use this to
bootstrap them. Accounts created here are verified.
"""

import argparse
import getpass


ROLE_CHOICES = ["admin", "lawyer", "religious_scholar", "social_expert", "user"]


def main() -> int:
    parser = argparse.ArgumentParser(description="Create or promote a mediation-service account.")
    parser.add_argument("email")
    parser.add_argument("--name", default=None, help="Display name (defaults to the email)")
    parser.add_argument("--role", choices=ROLE_CHOICES, default="admin")
    parser.add_argument("--password", default=None, help="Prompted for when omitted")
    args = parser.parse_args()

    from mediation_service.auth import get_password_hash, is_password_too_long
    from mediation_service.db.models import User, UserRole
    from mediation_service.db.session import get_db_session, init_db

    init_db()

    with get_db_session() as db:
        user = db.query(User).filter(User.email == args.email).first()
        if user:
            user.role = UserRole(args.role)
            user.is_verified = True
            print(f"Updated {args.email}: role={args.role}, verified")
            return 0

        password = args.password or getpass.getpass("Password: ")
        if is_password_too_long(password):
            print("Password exceeds 72 bytes")
            return 1

        db.add(User(
            email=args.email,
            name=args.name or args.email,
            password_hash=get_password_hash(password),
            role=UserRole(args.role),
            is_verified=True,
            is_active=True,
        ))
        print(f"Created {args.email}: role={args.role}, verified")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
