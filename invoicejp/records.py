"""
Flat export records for reviewed invoices.

A record mirrors one row of the invoice_exports table: typed columns for
every field plus the reviewed fields and confidence kept in raw_json.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from invoicejp.fields import (
    AMOUNT_FIELDS,
    DEFAULT_CURRENCY,
    FIELD_NAMES,
    ISO_DATE_PATTERN,
    ISO_TIME_PATTERN,
    Confidence,
    InvoiceFields,
    format_number,
    normalize_document_type_value,
    normalize_invoice_confidence,
    normalize_invoice_fields,
    to_nullable_number,
)

logger = logging.getLogger(__name__)


def _text_or_none(value: str) -> Optional[str]:
    trimmed = value.strip()
    return trimmed or None


def _date_or_none(value: str) -> Optional[str]:
    trimmed = value.strip()
    return trimmed if ISO_DATE_PATTERN.match(trimmed) else None


def _time_or_none(value: str) -> Optional[str]:
    trimmed = value.strip()
    return trimmed if ISO_TIME_PATTERN.match(trimmed) else None


def _number_like_to_string(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return value.strip()
    return ""


def to_export_record(
    fields: InvoiceFields,
    confidence: Dict[str, Confidence],
    source_file_name: str,
    user_id: Optional[str] = None,
    record_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build the flat record persisted for a reviewed invoice.

    Args:
        fields: Reviewed invoice fields.
        confidence: Confidence levels reported for the fields.
        source_file_name: Name of the uploaded document.
        user_id: Owner of the record, if any.
        record_id: Existing id when updating; a new id is generated otherwise.

    Returns:
        Dictionary keyed by column name. Empty text, invalid dates/times and
        non-numeric amounts are stored as None.
    """
    record: Dict[str, Any] = {
        "id": record_id or uuid.uuid4().hex,
        "user_id": user_id,
        "source_file_name": source_file_name,
    }

    for name in FIELD_NAMES:
        value = getattr(fields, name)
        if name in AMOUNT_FIELDS:
            record[name] = to_nullable_number(value)
        elif name in ("issue_date", "due_date"):
            record[name] = _date_or_none(value)
        elif name == "issue_time":
            record[name] = _time_or_none(value)
        elif name == "document_type":
            record[name] = normalize_document_type_value(value) or None
        elif name == "currency":
            record[name] = DEFAULT_CURRENCY
        elif name in ("vendor", "invoice_number"):
            record[name] = value
        else:
            record[name] = _text_or_none(value)

    record["raw_json"] = {
        "fields": fields.to_dict(),
        "confidence": {name: level.value for name, level in confidence.items()},
    }
    record["created_at"] = datetime.now(timezone.utc).isoformat()
    return record


def from_export_row(row: Dict[str, Any]) -> Tuple[InvoiceFields, Dict[str, Confidence]]:
    """
    Rebuild fields and confidence from a stored record.

    Values in raw_json win; columns fill in whatever raw_json lacks.
    """
    raw = row.get("raw_json")
    raw = raw if isinstance(raw, dict) else {}
    fields_payload = raw.get("fields") if isinstance(raw.get("fields"), dict) else raw
    confidence_payload = raw.get("confidence") if isinstance(raw.get("confidence"), dict) else None

    normalized = normalize_invoice_fields(fields_payload).to_dict()
    merged: Dict[str, str] = {}
    for name in FIELD_NAMES:
        merged[name] = normalized.get(name) or _number_like_to_string(row.get(name))
    merged["currency"] = DEFAULT_CURRENCY

    return InvoiceFields(**merged), normalize_invoice_confidence(confidence_payload)


class ExportStore:
    """
    JSON-file store of export records, keyed by record id.

    Args:
        path: File holding a JSON list of records. Created on first save.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path, 'r', encoding='utf-8') as f:
            records = json.load(f)
        if not isinstance(records, list):
            raise ValueError(f"Records file '{self.path}' must contain a JSON list")
        return records

    def _write(self, records: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(records, f, indent=2, ensure_ascii=False)

    def all(self) -> List[Dict[str, Any]]:
        return self.load()

    def save(self, record: Dict[str, Any]) -> str:
        """Insert the record, or replace the stored one with the same id."""
        records = self.load()
        for idx, existing in enumerate(records):
            if existing.get("id") == record["id"]:
                record = {**record, "created_at": existing.get("created_at", record.get("created_at"))}
                records[idx] = record
                break
        else:
            records.append(record)

        self._write(records)
        logger.debug(f"Saved export record id={record['id']} to {self.path}")
        return record["id"]

    def delete(self, record_ids: List[str]) -> int:
        records = self.load()
        kept = [r for r in records if r.get("id") not in set(record_ids)]
        self._write(kept)
        return len(records) - len(kept)
