# Overview: Stock alert classification and publication on the "stock-alert" signal.

"""
Stock alerts.

WHY: Operators need to know when a product runs low, runs out or goes into
debt (oversold). The thresholds are configuration, passed into every
evaluation explicitly so tests and callers never depend on hidden state.

BANDS (by available = on_hand - reserved):
- negative_stock: available < 0
- out_of_stock:   available == 0
- low_stock:      1 <= available <= threshold
- ok:             available > threshold

An alert fires only when a change moves the product INTO a non-ok band.
Staying in the same band (e.g. selling from 2 to 1 while low) is silent.

Delivery belongs to the notification collaborator: it connects a receiver
to `stock_alert`. Receivers run synchronously in the publishing request.
"""

from __future__ import annotations

from dataclasses import dataclass

from blinker import Namespace
from flask import current_app

from ..extensions import db
from ..models import Product


BAND_NEGATIVE = "negative_stock"
BAND_OUT_OF_STOCK = "out_of_stock"
BAND_LOW = "low_stock"
BAND_OK = "ok"

_signals = Namespace()
stock_alert = _signals.signal("stock-alert")


@dataclass(frozen=True)
class AlertConfig:
    low_stock_threshold: int = 3
    enabled: bool = True


@dataclass(frozen=True)
class StockAlert:
    product_id: int
    kind: str
    current_available: int

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "kind": self.kind,
            "current_available": self.current_available,
        }


def alert_config_from_app(app=None) -> AlertConfig:
    cfg = (app or current_app).config
    return AlertConfig(
        low_stock_threshold=int(cfg.get("LOW_STOCK_THRESHOLD", 3)),
        enabled=bool(cfg.get("STOCK_ALERTS_ENABLED", True)),
    )


def classify(available: int, threshold: int) -> str:
    if available < 0:
        return BAND_NEGATIVE
    if available == 0:
        return BAND_OUT_OF_STOCK
    if available <= threshold:
        return BAND_LOW
    return BAND_OK


def evaluate(
    product_id: int,
    before_available: int | None,
    after_available: int,
    config: AlertConfig,
) -> StockAlert | None:
    """
    Decide whether a stock change deserves an alert.

    before_available=None means "no baseline" (always alert on a non-ok band).
    """
    if not config.enabled:
        return None

    after_band = classify(after_available, config.low_stock_threshold)
    if after_band == BAND_OK:
        return None

    if before_available is not None:
        before_band = classify(before_available, config.low_stock_threshold)
        if before_band == after_band:
            return None

    return StockAlert(product_id=product_id, kind=after_band, current_available=after_available)


def publish(alert: StockAlert) -> None:
    current_app.logger.warning(
        "Stock alert: product_id=%s kind=%s available=%s",
        alert.product_id,
        alert.kind,
        alert.current_available,
    )
    stock_alert.send(current_app._get_current_object(), alert=alert)


def publish_changes(changes: list[tuple[int, int | None]], config: AlertConfig | None = None) -> list[StockAlert]:
    """
    Evaluate and publish alerts for committed stock changes.

    changes: (product_id, available_before) pairs. The "after" value is read
    from the database, so this must run after the transaction committed.
    """
    config = config or alert_config_from_app()
    alerts: list[StockAlert] = []
    if not config.enabled:
        return alerts

    for product_id, before in changes:
        product = db.session.get(Product, product_id)
        if product is None:
            continue
        alert = evaluate(product_id, before, product.available, config)
        if alert:
            publish(alert)
            alerts.append(alert)
    return alerts
