# Overview: Tests for the flask CLI ledger commands.

import json

from commerce_ledger.services import import_service, inventory_service


def test_stock_command(app, db_session, make_product):
    product = make_product(on_hand=-2, sku="CLI-1")

    result = app.test_cli_runner().invoke(args=["ledger", "stock", str(product.id)])

    assert result.exit_code == 0
    assert "(CLI-1)" in result.output
    assert "debt:      2" in result.output


def test_stock_command_unknown_product(app, db_session):
    result = app.test_cli_runner().invoke(args=["ledger", "stock", "999999"])
    assert result.exit_code != 0
    assert "Product not found" in result.output


def test_balance_command(app, db_session, make_customer, fund_customer):
    customer = make_customer()
    fund_customer(customer, 2500)

    result = app.test_cli_runner().invoke(args=["ledger", "balance", str(customer.id)])

    assert result.exit_code == 0
    assert "balance:  2500 cents" in result.output


def test_sweep_command(app, db_session, make_product):
    product = make_product(on_hand=5)
    inventory_service.reserve(product.id, 1, "op-1", lease_seconds=-1)

    result = app.test_cli_runner().invoke(args=["ledger", "sweep-reservations"])

    assert "Expired 1 reservation(s)" in result.output
    assert product.reserved == 0


def test_fingerprint_command(app, tmp_path):
    invoice = {
        "supplier_id": "SUP-1",
        "document_number": "0042",
        "emission_date": "2024-05-01",
        "lines": [{"sku": "A", "quantity": 3}],
    }
    path = tmp_path / "invoice.json"
    path.write_text(json.dumps(invoice), encoding="utf-8")

    result = app.test_cli_runner().invoke(args=["ledger", "fingerprint", str(path)])

    assert result.exit_code == 0
    assert result.output.strip() == import_service.compute_fingerprint(
        "SUP-1", "42", "2024-05-01", [{"sku": "a", "quantity": 3}]
    )
