from functools import lru_cache

from fastapi import Header

from stockledger.db.database import SessionLocal
from stockledger.services.ledger_service import LedgerService


@lru_cache
def get_ledger_service() -> LedgerService:
    return LedgerService(SessionLocal)


def get_actor(x_actor_id: str | None = Header(default=None, max_length=128)) -> str | None:
    # Opaque caller identity, recorded on entries and audit rows and never interpreted.
    if x_actor_id is None:
        return None
    return x_actor_id.strip() or None
