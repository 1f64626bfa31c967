import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import select

from stockledger.api.deps import get_ledger_service
from stockledger.api.routes.stock import router as stock_router
from stockledger.core.config import settings
from stockledger.core.errors import LedgerError
from stockledger.core.logging import configure_logging
from stockledger.db.database import SessionLocal
from stockledger.models.ledger import LedgerEntry, MonthlyLedger

configure_logging(settings.log_level)
logger = logging.getLogger("stockledger.main")


def _keys_with_expiring_batches() -> list[tuple[str, str]]:
    with SessionLocal() as db:
        rows = db.execute(
            select(MonthlyLedger.venue_id, MonthlyLedger.product_id)
            .distinct()
            .join(MonthlyLedger.entries)
            .where(LedgerEntry.expire_date.is_not(None))
        ).all()
    return [(venue_id, product_id) for venue_id, product_id in rows]


def sweep_expired_batches() -> int:
    service = get_ledger_service()
    expired = 0
    for venue_id, product_id in _keys_with_expiring_batches():
        try:
            expired += len(service.expire_due_batches(venue_id, product_id, actor="expiry-sweep"))
        except LedgerError:
            logger.exception("Expiry sweep failed for %s/%s", venue_id, product_id)
    return expired


async def _expiry_worker() -> None:
    while True:
        try:
            expired = await asyncio.to_thread(sweep_expired_batches)
            if expired:
                logger.info("Expiry sweep wrote off %s batches", expired)
        except Exception:
            logger.exception("Expiry sweep error")
        await asyncio.sleep(max(60, settings.expiry_sweep_interval_minutes * 60))


@asynccontextmanager
async def lifespan(_: FastAPI):
    task: asyncio.Task | None = None
    if settings.expiry_sweep_enabled:
        task = asyncio.create_task(_expiry_worker())
    try:
        yield
    finally:
        if task:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(stock_router)


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "ok"}
