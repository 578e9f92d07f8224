"""
Account domain service.
- get_account(account_id)
- get_or_create_account(account_id, email, display_name)

Every account owns exactly one subscription record; creating the account
creates its Free record.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from vvip.core.database import get_db_session, accounts
from vvip.features.billing.store import ensure_record
from vvip.models.account import Account


def get_account(account_id: str) -> Optional[Account]:
    with get_db_session() as session:
        row = session.execute(select(accounts).where(accounts.c.account_id == account_id)).first()
        if not row:
            return None
        return Account(
            account_id=row.account_id,
            created_at=row.created_at,
            email=row.email,
            display_name=row.display_name,
        )


def get_or_create_account(
    account_id: str,
    email: Optional[str] = None,
    display_name: Optional[str] = None,
) -> Account:
    existing = get_account(account_id)
    if existing:
        if email and existing.email != email:
            # Identity provider is the source of truth for email
            with get_db_session() as session:
                session.execute(
                    update(accounts).where(accounts.c.account_id == account_id).values(email=email)
                )
            existing = existing.model_copy(update={"email": email})
        ensure_record(account_id)
        return existing

    now = datetime.now(timezone.utc)
    try:
        with get_db_session() as session:
            session.execute(
                insert(accounts).values(
                    account_id=account_id,
                    email=email,
                    display_name=display_name,
                    created_at=now,
                )
            )
    except IntegrityError:
        # Race condition: concurrent first request for the same account
        pass

    ensure_record(account_id)
    return get_account(account_id)
