#!/usr/bin/env python3
"""Promote (or register) a phone number as admin and print a bearer token for it."""

from __future__ import annotations

import argparse

from collospot.core.database import SessionLocal
from collospot.core.security import create_access_token
from collospot.models import User, UserRole
from collospot.services.mpesa import normalize_phone


def main() -> None:
    parser = argparse.ArgumentParser(description="Create a COLLOSPOT admin and print an access token.")
    parser.add_argument("--phone", required=True)
    parser.add_argument("--super", action="store_true", help="Grant SUPER_ADMIN instead of ADMIN")
    parser.add_argument("--expires-minutes", type=int, default=None)
    args = parser.parse_args()

    phone = normalize_phone(args.phone)
    role = UserRole.SUPER_ADMIN if args.super else UserRole.ADMIN
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.phone == phone).first()
        if user is None:
            user = User(phone=phone, role=role, is_active=True)
            db.add(user)
        else:
            user.role = role
            user.is_active = True
        db.commit()
        db.refresh(user)
        token = create_access_token(str(user.id), role.value, expires_minutes=args.expires_minutes)
    finally:
        db.close()
    print(f"Admin user id={user.id} role={role.value}")
    print(token)


if __name__ == "__main__":
    main()
