# Overview: Pytest coverage for fingerprinted supplier imports.

import logging

import pytest

from commerce_ledger.errors import DuplicateImport, InvalidLine, NotFound
from commerce_ledger.models import ImportRecord, Product, StockMovement
from commerce_ledger.services import import_service


def _invoice_lines(product):
    return [{"sku": product.sku, "quantity": 12, "price_cents": 990}]


class TestFingerprint:

    def test_formatting_noise_does_not_change_fingerprint(self):
        a = import_service.compute_fingerprint(
            "12.345.678/0001-90",
            "000123",
            "2024-03-05",
            [{"barcode": "789", "quantity": 2}, {"sku": "abc-1", "quantity": 5, "name": "Shirt"}],
        )
        b = import_service.compute_fingerprint(
            "12345678000190",
            "123",
            "2024-03-05T14:30:00Z",
            [{"sku": "ABC-1", "quantity": 5, "name": "Shirt (blue)"}, {"barcode": "789", "quantity": 2}],
        )
        assert a == b
        assert len(a) == 64

    def test_content_changes_fingerprint(self):
        base = import_service.compute_fingerprint("S1", "1", "2024-03-05", [{"sku": "A", "quantity": 2}])
        assert base != import_service.compute_fingerprint("S1", "1", "2024-03-05", [{"sku": "A", "quantity": 3}])
        assert base != import_service.compute_fingerprint("S1", "2", "2024-03-05", [{"sku": "A", "quantity": 2}])
        assert base != import_service.compute_fingerprint("S2", "1", "2024-03-05", [{"sku": "A", "quantity": 2}])


class TestAccept:

    def test_accept_credits_stock_once(self, db_session, make_product):
        product = make_product(on_hand=-2)
        lines = _invoice_lines(product)

        record = import_service.accept("fp-1", lines, supplier_id="SUP-1", document_number="77", actor_id="stock-1")

        assert record.status == "accepted"
        assert record.line_count == 1
        assert record.total_units == 12
        assert product.on_hand == 10

    def test_duplicate_fingerprint_rejected_without_stock_change(self, db_session, make_product):
        product = make_product(on_hand=0)
        lines = _invoice_lines(product)
        import_service.accept("fp-1", lines)

        with pytest.raises(DuplicateImport) as exc:
            import_service.accept("fp-1", lines)

        assert exc.value.details["fingerprint"] == "fp-1"
        assert product.on_hand == 12
        assert db_session.query(ImportRecord).count() == 1
        assert db_session.query(StockMovement).count() == 1

    def test_duplicate_that_slips_past_the_check_is_still_rejected(
        self, db_session, make_product, monkeypatch, caplog
    ):
        product = make_product(on_hand=0)
        lines = _invoice_lines(product)
        import_service.accept("fp-1", lines)

        real_find = import_service._find_record
        lookups = []

        def _miss_first_lookup(fingerprint):
            # A twin that committed after this lookup ran
            lookups.append(fingerprint)
            return None if len(lookups) == 1 else real_find(fingerprint)

        monkeypatch.setattr(import_service, "_find_record", _miss_first_lookup)

        with caplog.at_level(logging.WARNING):
            with pytest.raises(DuplicateImport):
                import_service.accept("fp-1", lines)

        assert len(lookups) == 2
        assert "Duplicate import rejected: fingerprint=fp-1" in caplog.text
        assert product.on_hand == 12
        assert db_session.query(ImportRecord).count() == 1

    def test_resolves_by_barcode_then_sku_then_creates(self, db_session, make_product):
        by_barcode = make_product(on_hand=0, barcode="7891000000001")
        by_sku = make_product(on_hand=0, sku="TSHIRT-M")

        import_service.accept("fp-2", [
            {"barcode": "7891000000001", "quantity": 1},
            {"sku": "TSHIRT-M", "quantity": 2},
            {"barcode": "7891000000099", "sku": "NEW-1", "name": "Cap", "quantity": 3, "price_cents": 4500},
        ])

        assert by_barcode.on_hand == 1
        assert by_sku.on_hand == 2
        created = db_session.query(Product).filter_by(sku="NEW-1").one()
        assert created.on_hand == 3
        assert created.name == "Cap"
        assert created.price_cents == 4500

    def test_invalid_line_aborts_whole_batch(self, db_session, make_product):
        product = make_product(on_hand=0)
        with pytest.raises(InvalidLine) as exc:
            import_service.accept("fp-3", [{"sku": product.sku, "quantity": 5}, {"sku": "X", "quantity": 0}])

        assert exc.value.details["line_index"] == 2
        assert product.on_hand == 0
        assert db_session.query(ImportRecord).count() == 0

    def test_line_needs_identifier(self, db_session):
        with pytest.raises(InvalidLine):
            import_service.accept("fp-4", [{"quantity": 5}])

    def test_empty_batch(self, db_session):
        with pytest.raises(InvalidLine):
            import_service.accept("fp-5", [])

    def test_fingerprint_required(self, db_session):
        with pytest.raises(InvalidLine):
            import_service.accept("  ", [{"sku": "A", "quantity": 1}])

    def test_restock_out_of_low_band_is_silent(self, db_session, make_product, captured_alerts):
        product = make_product(on_hand=1)
        import_service.accept("fp-6", [{"sku": product.sku, "quantity": 10}])
        assert captured_alerts == []


class TestImportQueries:

    def test_get_import(self, db_session, make_product):
        product = make_product(on_hand=0)
        import_service.accept("fp-7", _invoice_lines(product), supplier_id="SUP-9")

        record = import_service.get_import("fp-7")
        assert record.supplier_id == "SUP-9"
        assert [r.fingerprint for r in import_service.list_imports(supplier_id="SUP-9")] == ["fp-7"]

    def test_get_import_missing(self, db_session):
        with pytest.raises(NotFound):
            import_service.get_import("nope")
