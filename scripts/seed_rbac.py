#!/usr/bin/env python3
from __future__ import annotations

import argparse
from datetime import datetime, timedelta

from dotenv import load_dotenv

from crm_shared import hash_password
from repository.clients_repo import create_client, ensure_salesperson_for_user
from repository.deals_repo import create_deal
from repository.organizations_repo import create_organization, get_organization_by_slug
from repository.tasks_repo import create_task
from repository.users_repo import create_user_with_password, get_user_by_email
from services.rbac_seed import is_rbac_seeded, seed_rbac
from shared.db import Base, SessionLocal, engine


def seed_demo_organization(db, owner_email: str, password: str, slug: str) -> None:
    owner = get_user_by_email(db, owner_email)
    if owner is None:
        owner = create_user_with_password(db, name="Demo Owner", email=owner_email, password_hash=hash_password(password))
    if get_organization_by_slug(db, slug):
        print(f"Organization {slug} already exists, skipping demo data")
        return

    org = create_organization(db, name="Demo Sales", slug=slug, creator=owner)
    salesperson = ensure_salesperson_for_user(db, org.id, owner)
    client = create_client(
        db,
        org.id,
        {"name": "John Buyer", "email": "john.buyer@example.com", "phone": "+1 555 000 1101", "status": "lead"},
        salesperson,
    )
    create_deal(
        db,
        org.id,
        {
            "title": "Website redesign",
            "clientId": client.id,
            "value": 12000,
            "stage": "needs_assessment",
            "priority": "high",
            "dueDate": datetime.utcnow() + timedelta(days=21),
            "description": "Scope the redesign with the marketing team.",
        },
        owner.id,
    )
    create_task(
        db,
        org.id,
        {
            "title": "Schedule discovery call",
            "description": "Coordinate calendars and book the call.",
            "dueDate": (datetime.utcnow() + timedelta(days=3)).strftime("%Y-%m-%d"),
            "dueTime": "10:00",
            "priority": "medium",
            "category": "call",
        },
        owner.id,
    )
    print(f"Seeded demo organization {slug} owned by {owner_email}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the RBAC catalog and optional demo data")
    parser.add_argument("--owner-email", help="Create a demo organization owned by this user")
    parser.add_argument("--password", default="changeme123", help="Password for a newly created owner")
    parser.add_argument("--slug", default="demo-sales", help="Demo organization slug")
    args = parser.parse_args()

    load_dotenv()
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        already_seeded = is_rbac_seeded(db)
        result = seed_rbac(db)
        if args.owner_email:
            seed_demo_organization(db, args.owner_email.strip().lower(), args.password, args.slug)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
    state = "updated" if already_seeded else "created"
    print(f"RBAC catalog {state}: {result}")


if __name__ == "__main__":
    main()
