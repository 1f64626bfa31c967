import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockledger.models.reporting import AlertSeverity, AlertType, StockAlert
from stockledger.services.fifo import Batch

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AlertRules:
    low_stock_threshold: int
    overstock_threshold: int
    expiry_warning_days: int


def _active_alerts(db: Session, venue_id: str, product_id: str) -> list[StockAlert]:
    return list(
        db.scalars(
            select(StockAlert).where(
                StockAlert.venue_id == venue_id,
                StockAlert.product_id == product_id,
                StockAlert.is_active.is_(True),
            )
        ).all()
    )


def resolve(alert: StockAlert, actor: str | None) -> None:
    alert.is_active = False
    alert.resolved_at = datetime.utcnow()
    alert.resolved_by = actor


def evaluate_stock_alerts(
    db: Session,
    venue_id: str,
    product_id: str,
    current_stock: int,
    batches: Iterable[Batch],
    rules: AlertRules,
    today: date,
) -> list[StockAlert]:
    """Raise, refresh or resolve the key's alerts; returns only newly created ones."""
    active = {(alert.alert_type, alert.reference): alert for alert in _active_alerts(db, venue_id, product_id)}
    wanted: dict[tuple[AlertType, str | None], tuple[AlertSeverity, str, int | None, int]] = {}

    if current_stock <= 0:
        wanted[(AlertType.OUT_OF_STOCK, None)] = (
            AlertSeverity.CRITICAL,
            "Product is out of stock",
            0,
            current_stock,
        )
    elif current_stock <= rules.low_stock_threshold:
        wanted[(AlertType.LOW_STOCK, None)] = (
            AlertSeverity.HIGH,
            f"Stock is low: {current_stock} left (threshold {rules.low_stock_threshold})",
            rules.low_stock_threshold,
            current_stock,
        )

    if rules.overstock_threshold > 0 and current_stock > rules.overstock_threshold:
        wanted[(AlertType.OVERSTOCK, None)] = (
            AlertSeverity.LOW,
            f"Stock {current_stock} exceeds {rules.overstock_threshold}",
            rules.overstock_threshold,
            current_stock,
        )

    horizon = today + timedelta(days=rules.expiry_warning_days)
    for batch in batches:
        if batch.remaining_quantity <= 0 or batch.expire_date is None:
            continue
        if today <= batch.expire_date <= horizon:
            reference = batch.batch_number or batch.entry_date.isoformat()
            wanted[(AlertType.EXPIRY_WARNING, reference)] = (
                AlertSeverity.MEDIUM,
                f"Batch {reference} expires on {batch.expire_date.isoformat()} with {batch.remaining_quantity} left",
                rules.expiry_warning_days,
                batch.remaining_quantity,
            )

    created: list[StockAlert] = []
    for key, (severity, message, threshold, current_value) in wanted.items():
        alert = active.pop(key, None)
        if alert is not None:
            alert.severity = severity
            alert.message = message
            alert.threshold = threshold
            alert.current_value = current_value
            continue
        alert_type, reference = key
        alert = StockAlert(
            venue_id=venue_id,
            product_id=product_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            reference=reference,
            threshold=threshold,
            current_value=current_value,
            is_active=True,
        )
        db.add(alert)
        created.append(alert)
        logger.info("Raised %s alert for %s/%s: %s", alert_type.value, venue_id, product_id, message)

    for alert in active.values():
        resolve(alert, SYSTEM_ACTOR)
        logger.info("Resolved %s alert %s for %s/%s", alert.alert_type.value, alert.id, venue_id, product_id)
    return created
