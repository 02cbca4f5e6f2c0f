"""
Seed script: one organisation with two branches, a user per role, and the
FX rates routing needs. Prints a development access token for each user.
Run from the project root: python -m scripts.seed
"""
import asyncio
import sys
import os
import uuid
from datetime import date
from decimal import Decimal

# Ensure the project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select
from signoff.database import AsyncSessionLocal
from signoff.domain.enums import Role
from signoff.models.branch import Branch
from signoff.models.fx_rate import FxRate
from signoff.models.organisation import Organisation
from signoff.models.user import User
from signoff.services.auth_service import create_access_token

# ---------- Fixed UUIDs ----------

ORG_ACME_ID = uuid.UUID("a0000000-0000-0000-0000-000000000001")

BRANCH_LONDON_ID = uuid.UUID("b0000000-0000-0000-0000-000000000001")
BRANCH_LAGOS_ID = uuid.UUID("b0000000-0000-0000-0000-000000000002")

USER_OWNER_ID = uuid.UUID("c0000000-0000-0000-0000-000000000001")
USER_ADMIN_ID = uuid.UUID("c0000000-0000-0000-0000-000000000002")
USER_LONDON_MGR_ID = uuid.UUID("c0000000-0000-0000-0000-000000000003")
USER_LAGOS_MGR_ID = uuid.UUID("c0000000-0000-0000-0000-000000000004")
USER_SUPERVISOR_ID = uuid.UUID("c0000000-0000-0000-0000-000000000005")
USER_STAFF_ID = uuid.UUID("c0000000-0000-0000-0000-000000000006")


async def seed():
    async with AsyncSessionLocal() as db:
        result = await db.execute(select(Organisation).where(Organisation.id == ORG_ACME_ID))
        if result.scalar_one_or_none():
            print("Seed data already exists. Skipping.")
            return

        db.add(
            Organisation(
                id=ORG_ACME_ID,
                name="Acme Corporation",
                ref="acme-corp",
                base_currency="USD",
                status="ACTIVE",
                settings={},
            )
        )
        await db.flush()

        db.add_all([
            Branch(id=BRANCH_LONDON_ID, organisation_id=ORG_ACME_ID, name="London"),
            Branch(id=BRANCH_LAGOS_ID, organisation_id=ORG_ACME_ID, name="Lagos"),
        ])
        await db.flush()

        # --- Users (one per role) ---
        users = [
            User(id=USER_OWNER_ID, organisation_id=ORG_ACME_ID, email="owner@acme.com",
                 first_name="Olivia", last_name="Owner", role=Role.OWNER),
            User(id=USER_ADMIN_ID, organisation_id=ORG_ACME_ID, email="admin@acme.com",
                 first_name="Adrian", last_name="Admin", role=Role.ADMIN),
            User(id=USER_LONDON_MGR_ID, organisation_id=ORG_ACME_ID, branch_id=BRANCH_LONDON_ID,
                 email="manager.london@acme.com", first_name="Maya", last_name="Manager",
                 role=Role.MANAGER),
            User(id=USER_LAGOS_MGR_ID, organisation_id=ORG_ACME_ID, branch_id=BRANCH_LAGOS_ID,
                 email="manager.lagos@acme.com", first_name="Tunde", last_name="Manager",
                 role=Role.MANAGER),
            User(id=USER_SUPERVISOR_ID, organisation_id=ORG_ACME_ID, branch_id=BRANCH_LONDON_ID,
                 email="supervisor@acme.com", first_name="Sam", last_name="Supervisor",
                 role=Role.SUPERVISOR),
            User(id=USER_STAFF_ID, organisation_id=ORG_ACME_ID, branch_id=BRANCH_LONDON_ID,
                 email="staff@acme.com", first_name="Uma", last_name="User", role=Role.USER),
        ]
        db.add_all(users)

        # --- FX rates against the base currency ---
        effective = date(2026, 1, 1)
        db.add_all([
            FxRate(organisation_id=ORG_ACME_ID, from_currency="EUR", to_currency="USD",
                   rate=Decimal("1.085000"), effective_date=effective),
            FxRate(organisation_id=ORG_ACME_ID, from_currency="GBP", to_currency="USD",
                   rate=Decimal("1.270000"), effective_date=effective),
            FxRate(organisation_id=ORG_ACME_ID, from_currency="USD", to_currency="NGN",
                   rate=Decimal("1550.000000"), effective_date=effective),
        ])

        await db.commit()
        print("Seed data inserted successfully!")
        print(f"  Organisations: 1")
        print(f"  Branches: 2")
        print(f"  Users: {len(users)}")
        print(f"  FX rates: 3")

        for user in users:
            token = create_access_token(
                user_id=str(user.id),
                organisation_id=str(ORG_ACME_ID),
                role=user.role.value,
                email=user.email,
                branch_id=str(user.branch_id) if user.branch_id else None,
            )
            print(f"  {user.email:<28} {token}")


if __name__ == "__main__":
    asyncio.run(seed())
