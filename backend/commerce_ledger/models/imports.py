from __future__ import annotations

from ..extensions import db
from commerce_ledger.time_utils import to_utc_z


class ImportRecord(db.Model):
    """
    An accepted supplier restock batch (e.g. a parsed invoice).

    WHY: Suppliers resend invoices and clients retry uploads. The existence
    of a fingerprint row is the sole authority on whether a batch was
    already applied to stock. The row is written in the same DB transaction
    as the stock credits, so "recorded" and "applied" cannot disagree.

    Append-only: rows are never updated or deleted.
    """
    __tablename__ = "import_records"
    __table_args__ = (
        db.UniqueConstraint("fingerprint", name="uq_import_records_fingerprint"),
        db.Index("ix_import_records_supplier_document", "supplier_id", "document_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    fingerprint = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="accepted")

    # Source document metadata (for operators; not part of deduplication)
    supplier_id = db.Column(db.String(64), nullable=True)
    document_number = db.Column(db.String(64), nullable=True)
    emission_date = db.Column(db.String(10), nullable=True)  # YYYY-MM-DD

    line_count = db.Column(db.Integer, nullable=False, default=0)
    total_units = db.Column(db.Integer, nullable=False, default=0)

    actor_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "fingerprint": self.fingerprint,
            "status": self.status,
            "supplier_id": self.supplier_id,
            "document_number": self.document_number,
            "emission_date": self.emission_date,
            "line_count": self.line_count,
            "total_units": self.total_units,
            "actor_id": self.actor_id,
            "created_at": to_utc_z(self.created_at),
        }
