# Overview: Pytest coverage for stock alert bands and publication.

import pytest

from commerce_ledger.services import alert_service
from commerce_ledger.services.alert_service import AlertConfig


CONFIG = AlertConfig(low_stock_threshold=3)


@pytest.mark.parametrize(
    "available,band",
    [(-1, "negative_stock"), (0, "out_of_stock"), (1, "low_stock"), (3, "low_stock"), (4, "ok")],
)
def test_classify(available, band):
    assert alert_service.classify(available, 3) == band


def test_entering_low_band_alerts():
    alert = alert_service.evaluate(7, 5, 2, CONFIG)
    assert alert.to_dict() == {"product_id": 7, "kind": "low_stock", "current_available": 2}


def test_staying_in_band_is_silent():
    assert alert_service.evaluate(7, 3, 1, CONFIG) is None
    assert alert_service.evaluate(7, -1, -6, CONFIG) is None


def test_moving_between_non_ok_bands_alerts():
    assert alert_service.evaluate(7, 1, 0, CONFIG).kind == "out_of_stock"
    assert alert_service.evaluate(7, 0, -2, CONFIG).kind == "negative_stock"


def test_recovering_to_ok_is_silent():
    assert alert_service.evaluate(7, -2, 10, CONFIG) is None


def test_no_baseline_alerts_on_any_non_ok_band():
    assert alert_service.evaluate(7, None, 2, CONFIG).kind == "low_stock"
    assert alert_service.evaluate(7, None, 9, CONFIG) is None


def test_disabled_config_never_alerts():
    assert alert_service.evaluate(7, 5, -5, AlertConfig(enabled=False)) is None


def test_threshold_is_configurable():
    assert alert_service.evaluate(7, 20, 8, AlertConfig(low_stock_threshold=10)).kind == "low_stock"
    assert alert_service.evaluate(7, 20, 8, AlertConfig(low_stock_threshold=5)) is None


def test_publish_changes_reads_committed_state(db_session, make_product, captured_alerts):
    product = make_product(on_hand=0)

    alerts = alert_service.publish_changes([(product.id, 6)])

    assert [a.kind for a in alerts] == ["out_of_stock"]
    assert captured_alerts == alerts


def test_publish_changes_respects_app_config(app, db_session, make_product, captured_alerts):
    app.config["STOCK_ALERTS_ENABLED"] = False
    product = make_product(on_hand=0)

    assert alert_service.publish_changes([(product.id, 6)]) == []
    assert captured_alerts == []
