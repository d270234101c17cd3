# Overview: Idempotent supplier restock imports guarded by a content fingerprint.

"""
Import Guard

WHY: The same supplier invoice arrives more than once (resent e-mails,
re-uploads, retried requests). Crediting stock twice silently inflates
inventory, so a batch is applied at most once, keyed by its fingerprint.

RULES:
- An existing ImportRecord with the fingerprint -> DuplicateImport, no stock change.
- Otherwise the ImportRecord and every stock credit commit together.
- Two concurrent accepts of one fingerprint: the unique constraint lets one
  win; the loser rolls back and raises DuplicateImport.

Lines: [{"barcode"?, "sku"?, "name"?, "quantity", "price_cents"?}].
Each line resolves to a product by barcode, then SKU, else a new product
is created from the line.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from flask import current_app

from ..extensions import db
from ..errors import DuplicateImport, InvalidLine, NotFound
from ..models import ImportRecord, Product
from commerce_ledger.time_utils import to_iso_date
from . import inventory_service
from .alert_service import publish_changes
from .concurrency import begin_write, run_with_retry


IMPORT_STATUS_ACCEPTED = "accepted"

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def _clean(value) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _canonical_supplier(value) -> str:
    # "12.345.678/0001-90" and "12345678000190" are the same supplier
    return _NON_ALNUM.sub("", _clean(value)).upper()


def _canonical_document_number(value) -> str:
    cleaned = _clean(value).upper()
    if cleaned.isdigit():
        return cleaned.lstrip("0") or "0"
    return cleaned


def _canonical_line(line: dict) -> dict:
    return {
        "barcode": _clean(line.get("barcode")),
        "sku": _clean(line.get("sku")).upper(),
        "quantity": int(line.get("quantity") or 0),
    }


def compute_fingerprint(supplier_id, document_number, emission_date, lines: list[dict]) -> str:
    """
    Deterministic SHA-256 over the logical content of an invoice.

    Formatting noise (supplier id punctuation, leading zeros on the document
    number, date representation, line order) does not change the result.
    Names and prices are excluded: they do not change what stock is credited.
    """
    payload = {
        "supplier_id": _canonical_supplier(supplier_id),
        "document_number": _canonical_document_number(document_number),
        "emission_date": to_iso_date(emission_date) or "",
        "lines": sorted(
            (_canonical_line(line) for line in lines or []),
            key=lambda l: (l["barcode"], l["sku"], l["quantity"]),
        ),
    }
    return hashlib.sha256(_json_dumps(payload).encode("utf-8")).hexdigest()


def _validate_lines(lines) -> list[dict]:
    if not lines:
        raise InvalidLine("An import needs at least one line")

    normalized = []
    for index, raw in enumerate(lines, start=1):
        if not isinstance(raw, dict):
            raise InvalidLine(f"Import line {index}: must be an object", details={"line_index": index})
        barcode = _clean(raw.get("barcode")) or None
        sku = _clean(raw.get("sku")) or None
        if not barcode and not sku:
            raise InvalidLine(
                f"Import line {index}: barcode or sku is required",
                details={"line_index": index},
            )
        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidLine(
                f"Import line {index}: quantity must be a positive integer",
                details={"line_index": index, "quantity": quantity},
            )
        price = raw.get("price_cents")
        if price is not None and (isinstance(price, bool) or not isinstance(price, int) or price < 0):
            raise InvalidLine(
                f"Import line {index}: price_cents must be a non-negative integer",
                details={"line_index": index, "price_cents": price},
            )
        normalized.append({
            "index": index,
            "barcode": barcode,
            "sku": sku,
            "name": _clean(raw.get("name")) or None,
            "quantity": quantity,
            "price_cents": price,
        })
    return normalized


def _resolve_product(line: dict) -> Product:
    product = None
    if line["barcode"]:
        product = db.session.query(Product).filter_by(barcode=line["barcode"]).first()
    if product is None:
        product = db.session.query(Product).filter_by(sku=line["sku"] or line["barcode"]).first()
    if product is None:
        product = Product(
            sku=line["sku"] or line["barcode"],
            barcode=line["barcode"],
            name=line["name"] or line["sku"] or line["barcode"],
            price_cents=line["price_cents"],
            on_hand=0,
            reserved=0,
            is_active=True,
        )
        db.session.add(product)
        db.session.flush()
    return product


def _find_record(fingerprint: str) -> ImportRecord | None:
    return db.session.query(ImportRecord).filter_by(fingerprint=fingerprint).first()


def _duplicate(fingerprint: str) -> DuplicateImport:
    return DuplicateImport(
        "Import already accepted",
        details={"fingerprint": fingerprint},
    )


def accept(
    fingerprint: str,
    lines: list[dict],
    *,
    supplier_id: str | None = None,
    document_number: str | None = None,
    emission_date=None,
    actor_id: str | None = None,
) -> ImportRecord:
    """
    Apply a restock batch exactly once.

    Raises DuplicateImport (and changes nothing) when the fingerprint was
    already accepted.
    """
    fingerprint = _clean(fingerprint)
    if not fingerprint:
        raise InvalidLine("fingerprint is required")
    normalized = _validate_lines(lines)

    def _op():
        begin_write()
        if _find_record(fingerprint) is not None:
            raise _duplicate(fingerprint)

        # Claim the fingerprint first; a concurrent twin fails here and its retry
        # finds the record and raises DuplicateImport above
        record = ImportRecord(
            fingerprint=fingerprint,
            status=IMPORT_STATUS_ACCEPTED,
            supplier_id=_clean(supplier_id) or None,
            document_number=_clean(document_number) or None,
            emission_date=to_iso_date(emission_date),
            line_count=len(normalized),
            total_units=sum(line["quantity"] for line in normalized),
            actor_id=actor_id,
        )
        db.session.add(record)
        db.session.flush()

        resolved = [(line, _resolve_product(line)) for line in normalized]

        changes = {}
        for line, product in sorted(resolved, key=lambda pair: (pair[1].id, pair[0]["index"])):
            locked = inventory_service.lock_product(product.id)
            _, before = inventory_service.credit_locked(
                locked,
                line["quantity"],
                f"import:{fingerprint}:{line['index']}",
                reason="RESTOCK",
                actor_id=actor_id,
                note=f"Import {record.document_number or fingerprint[:12]}",
            )
            if before is not None:
                changes.setdefault(locked.id, before)

        db.session.commit()
        return record, list(changes.items())

    try:
        record, changes = run_with_retry(_op)
    except DuplicateImport:
        current_app.logger.warning("Duplicate import rejected: fingerprint=%s", fingerprint)
        raise

    publish_changes(changes)
    current_app.logger.info(
        "Import accepted: fingerprint=%s lines=%s units=%s",
        fingerprint, record.line_count, record.total_units,
    )
    return record


def get_import(fingerprint: str) -> ImportRecord:
    record = _find_record(fingerprint)
    if record is None:
        raise NotFound("Import not found", details={"fingerprint": fingerprint})
    return record


def list_imports(*, supplier_id: str | None = None, limit: int = 100) -> list[ImportRecord]:
    query = db.session.query(ImportRecord)
    if supplier_id:
        query = query.filter(ImportRecord.supplier_id == supplier_id)
    limit = max(1, min(int(limit), 500))
    return query.order_by(ImportRecord.id.desc()).limit(limit).all()
