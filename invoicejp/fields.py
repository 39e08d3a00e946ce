"""
Invoice field schema and normalization.

Converts arbitrary JSON returned by the extraction workflow into the fixed
InvoiceFields record: alias-based key matching, date/time/amount coercion and
confidence-level normalization.
"""

import json
import logging
import math
import re
import unicodedata
from dataclasses import dataclass, asdict, fields as dataclass_fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "JPY"


class Confidence(str, Enum):
    LOW = "Low"
    MED = "Med"
    HIGH = "High"


@dataclass(frozen=True)
class InvoiceFields:
    vendor: str = ""
    vendor_registration_number: str = ""
    invoice_number: str = ""
    issue_date: str = ""
    issue_time: str = ""
    due_date: str = ""
    currency: str = DEFAULT_CURRENCY
    subtotal: str = ""
    tax_amount: str = ""
    total: str = ""
    total_amount_tax_inc: str = ""
    tax10_target_amount: str = ""
    tax10_amount: str = ""
    tax8_target_amount: str = ""
    tax8_amount: str = ""
    payment_method: str = ""
    document_type: str = ""
    notes: str = ""

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


FIELD_NAMES: List[str] = [f.name for f in dataclass_fields(InvoiceFields)]

DATE_FIELDS = {"issue_date", "due_date"}
TIME_FIELDS = {"issue_time"}
AMOUNT_FIELDS = {
    "subtotal",
    "tax_amount",
    "total",
    "total_amount_tax_inc",
    "tax10_target_amount",
    "tax10_amount",
    "tax8_target_amount",
    "tax8_amount",
}

# Canonical field -> accepted external key spellings. Keys are compared after
# canonical_key(), so "Invoice No.", "invoice_no" and "invoiceNo" all match.
FIELD_ALIASES: Dict[str, List[str]] = {
    "vendor": ["vendor", "vendorname", "supplier", "suppliername", "storename", "store",
               "merchant", "issuer", "発行者", "店名", "取引先"],
    "vendor_registration_number": ["vendorregistrationnumber", "registrationnumber",
                                   "invoiceregistrationnumber", "qualifiedinvoiceissuernumber",
                                   "taxregistrationnumber", "tnumber", "登録番号",
                                   "適格請求書発行事業者登録番号"],
    "invoice_number": ["invoicenumber", "invoiceid", "invoiceno", "invoicecode", "invno",
                       "billnumber", "receiptnumber", "receiptno", "documentnumber",
                       "請求書番号", "領収書番号"],
    "issue_date": ["issuedate", "invoicedate", "invoiceissuedate", "dateofissue", "billingdate",
                   "receiptdate", "transactiondate", "date", "発行日", "日付"],
    "issue_time": ["issuetime", "invoicetime", "receipttime", "transactiontime", "time", "時刻"],
    "due_date": ["duedate", "paymentduedate", "payby", "paymentdate", "支払期限"],
    "currency": ["currency", "currencycode"],
    "subtotal": ["subtotal", "amountbeforetax", "pretaxamount", "netamount", "小計", "税抜金額"],
    "tax_amount": ["taxamount", "consumptiontax", "totaltax", "vat", "tax", "消費税", "消費税額"],
    "total": ["total", "totalamount", "grandtotal", "amountdue", "合計", "合計金額"],
    "total_amount_tax_inc": ["totalamounttaxinc", "totalamountincludingtax", "totaltaxincluded",
                             "taxincludedtotal", "totalinctax", "税込合計", "税込金額"],
    "tax10_target_amount": ["tax10targetamount", "taxable10amount", "target10amount",
                            "10対象", "10対象額"],
    "tax10_amount": ["tax10amount", "tax10", "consumptiontax10", "10消費税", "10税額"],
    "tax8_target_amount": ["tax8targetamount", "taxable8amount", "target8amount",
                           "8対象", "8対象額"],
    "tax8_amount": ["tax8amount", "tax8", "consumptiontax8", "8消費税", "8税額"],
    "payment_method": ["paymentmethod", "paymenttype", "payment", "支払方法"],
    "document_type": ["documenttype", "doctype", "type", "書類種別"],
    "notes": ["notes", "note", "remarks", "memo", "備考"],
}

CONFIDENCE_VALUES: Dict[str, Confidence] = {
    "high": Confidence.HIGH,
    "medium": Confidence.MED,
    "med": Confidence.MED,
    "low": Confidence.LOW,
    "高": Confidence.HIGH,
    "中": Confidence.MED,
    "低": Confidence.LOW,
}

DOCUMENT_TYPES = {
    "receipt": "receipt",
    "invoice": "invoice",
    "領収書": "receipt",
    "請求書": "invoice",
}

# Offsets such that era year 1 maps to the era's first Gregorian year.
WAREKI_OFFSETS = {
    "令和": 2018, "r": 2018,
    "平成": 1988, "h": 1988,
    "昭和": 1925, "s": 1925,
}

ISO_DATE_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')
GENERIC_DATE_PATTERN = re.compile(r'^(\d{4})\D+(\d{1,2})\D+(\d{1,2})\D*$')
US_DATE_PATTERN = re.compile(r'^(\d{1,2})/(\d{1,2})/(\d{4})$')
WAREKI_DATE_PATTERN = re.compile(
    r'^(令和|平成|昭和|r|h|s)\s*(\d{1,2}|元)\D+(\d{1,2})\D+(\d{1,2})\D*$',
    re.IGNORECASE
)
TIME_PATTERN = re.compile(r'^(\d{1,2})\s*[:：時]\s*(\d{2})\s*分?$')
ISO_TIME_PATTERN = re.compile(r'^\d{2}:\d{2}$')
JSON_FENCE_PATTERN = re.compile(r'^```(?:json)?\s*(.*?)\s*```$', re.DOTALL | re.IGNORECASE)


def canonical_key(value: str) -> str:
    """Lowercase a key and strip punctuation, whitespace and underscores."""
    folded = unicodedata.normalize("NFKC", str(value)).lower()
    return re.sub(r'[\W_]+', '', folded)


CANONICAL_ALIAS_KEYS = {
    canonical_key(alias) for aliases in FIELD_ALIASES.values() for alias in aliases
}


def create_empty_invoice_fields() -> InvoiceFields:
    return InvoiceFields()


def parse_json_if_string(value: Any) -> Any:
    """
    Decode a JSON object/array held in a string, leaving anything else as-is.

    Model output wrapped in a ```json fence is unwrapped before decoding.
    """
    if not isinstance(value, str):
        return value

    trimmed = value.strip()
    fenced = JSON_FENCE_PATTERN.match(trimmed)
    if fenced:
        trimmed = fenced.group(1).strip()

    if not trimmed.startswith("{") and not trimmed.startswith("["):
        return value

    try:
        return json.loads(trimmed)
    except ValueError:
        return value


def _has_invoice_like_keys(data: Dict[str, Any]) -> bool:
    return any(canonical_key(key) in CANONICAL_ALIAS_KEYS for key in data)


def _to_best_object(payload: Any) -> Optional[Dict[str, Any]]:
    if isinstance(payload, dict):
        if _has_invoice_like_keys(payload):
            return payload

        for value in payload.values():
            parsed = parse_json_if_string(value)
            if isinstance(parsed, dict) and _has_invoice_like_keys(parsed):
                return parsed

        return payload

    parsed = parse_json_if_string(payload)
    if isinstance(parsed, dict):
        return _to_best_object(parsed)

    return None


def _lookup_aliases(source: Dict[str, Any]) -> Dict[str, Any]:
    """Map each canonical field to the first non-null aliased value in source."""
    source_map: Dict[str, Any] = {}
    for key, value in source.items():
        source_map[canonical_key(key)] = value

    found: Dict[str, Any] = {}
    for field_name, aliases in FIELD_ALIASES.items():
        for alias in aliases:
            value = source_map.get(canonical_key(alias))
            if value is not None:
                found[field_name] = value
                break
    return found


def _coerce_to_string(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return format_number(value)
    if isinstance(value, str):
        return value.strip()
    return ""


def format_number(value: float) -> str:
    """Render a finite number the way the CSV expects: 1200, 1200.5, -3."""
    if isinstance(value, int):
        return str(value)
    if not math.isfinite(value):
        return ""
    if value.is_integer():
        return str(int(value))
    return repr(value)


def normalize_amount_value(value: str) -> str:
    """
    Reduce a monetary string to a plain number string.

    Args:
        value: Raw amount, e.g. "¥1,200", "１，２００円", "1200.50".

    Returns:
        Normalized numeric string ("1200", "1200.5"), or "" if unparsable.
    """
    if not value:
        return ""

    folded = unicodedata.normalize("NFKC", value)
    compact = re.sub(r'[^0-9.\-]', '', folded.replace(",", ""))
    if not compact:
        return ""

    try:
        parsed = float(compact)
    except ValueError:
        return ""

    return format_number(parsed)


def _pad2(value: str) -> str:
    return value.zfill(2)


def _wareki_to_iso(match: "re.Match[str]") -> str:
    era, year, month, day = match.groups()
    era_year = 1 if year == "元" else int(year)
    western_year = WAREKI_OFFSETS[era.lower()] + era_year
    return f"{western_year}-{_pad2(month)}-{_pad2(day)}"


def normalize_date_value(value: str) -> str:
    """
    Normalize a date string to YYYY-MM-DD.

    Accepts ISO dates, YYYY<sep>MM<sep>DD with any separators (including
    2024年3月5日), Japanese era dates, MM/DD/YYYY, and finally anything
    dateutil can parse. Unparsable input yields "".
    """
    if not value:
        return ""

    trimmed = unicodedata.normalize("NFKC", value).strip()
    if ISO_DATE_PATTERN.match(trimmed):
        return trimmed

    generic = GENERIC_DATE_PATTERN.match(trimmed)
    if generic:
        year, month, day = generic.groups()
        return f"{year}-{_pad2(month)}-{_pad2(day)}"

    wareki = WAREKI_DATE_PATTERN.match(trimmed)
    if wareki:
        return _wareki_to_iso(wareki)

    us_date = US_DATE_PATTERN.match(trimmed)
    if us_date:
        month, day, year = us_date.groups()
        return f"{year}-{_pad2(month)}-{_pad2(day)}"

    try:
        parsed = date_parser.parse(trimmed, fuzzy=False)
    except (ValueError, TypeError, OverflowError):
        return ""

    return parsed.date().isoformat()


def normalize_time_value(value: str) -> str:
    """Normalize H:MM / HH:MM (half- or full-width colon) to HH:MM, else ""."""
    if not value:
        return ""

    match = TIME_PATTERN.match(value.strip())
    if not match:
        return ""

    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return ""

    return f"{hour:02d}:{minute:02d}"


def normalize_document_type_value(value: str) -> str:
    return DOCUMENT_TYPES.get(value.strip().lower(), "")


def _normalize_field_value(field_name: str, value: str) -> str:
    if field_name == "currency":
        return DEFAULT_CURRENCY
    if field_name in DATE_FIELDS:
        return normalize_date_value(value)
    if field_name in TIME_FIELDS:
        return normalize_time_value(value)
    if field_name in AMOUNT_FIELDS:
        return normalize_amount_value(value)
    if field_name == "document_type":
        return normalize_document_type_value(value)
    return value


def normalize_invoice_fields(payload: Any) -> InvoiceFields:
    """
    Normalize an arbitrary extraction payload into InvoiceFields.

    Args:
        payload: Dict (possibly nested) or JSON string from the extraction service.

    Returns:
        InvoiceFields with every recognized field coerced to its canonical
        format. Unknown keys are ignored and currency is always JPY.
    """
    source = _to_best_object(payload)
    if source is None:
        return create_empty_invoice_fields()

    values: Dict[str, str] = {}
    for field_name, raw_value in _lookup_aliases(source).items():
        values[field_name] = _normalize_field_value(field_name, _coerce_to_string(raw_value))

    values["currency"] = DEFAULT_CURRENCY
    return InvoiceFields(**values)


def normalize_confidence_value(value: Any) -> Optional[Confidence]:
    if isinstance(value, Confidence):
        return value
    if not isinstance(value, str):
        return None
    return CONFIDENCE_VALUES.get(value.strip().lower())


def normalize_invoice_confidence(payload: Any) -> Dict[str, Confidence]:
    """
    Normalize the confidence sub-object of an extraction payload.

    Unrecognized levels are dropped rather than defaulted.
    """
    source = parse_json_if_string(payload)
    if not isinstance(source, dict):
        return {}

    confidence: Dict[str, Confidence] = {}
    for field_name, raw_value in _lookup_aliases(source).items():
        level = normalize_confidence_value(raw_value)
        if level is not None:
            confidence[field_name] = level
    return confidence


def to_nullable_number(value: str) -> Optional[float]:
    normalized = normalize_amount_value(value)
    if not normalized:
        return None
    parsed = float(normalized)
    return parsed if math.isfinite(parsed) else None


def _is_number(value: str) -> bool:
    try:
        return math.isfinite(float(value))
    except ValueError:
        return False


def heuristic_confidence(name: str, value: str) -> Confidence:
    """Guess a confidence level for a field the service did not score."""
    if not value:
        return Confidence.LOW
    if name in DATE_FIELDS:
        return Confidence.HIGH if ISO_DATE_PATTERN.match(value) else Confidence.LOW
    if name in TIME_FIELDS:
        return Confidence.HIGH if ISO_TIME_PATTERN.match(value) else Confidence.LOW
    if name in AMOUNT_FIELDS:
        return Confidence.HIGH if _is_number(value) else Confidence.LOW
    if len(value) < 3:
        return Confidence.MED
    return Confidence.HIGH


def resolve_field_confidence(
    fields: InvoiceFields,
    confidence: Dict[str, Confidence],
    name: str,
) -> Confidence:
    reported = confidence.get(name)
    if reported:
        return reported
    return heuristic_confidence(name, getattr(fields, name))


def needs_review(fields: InvoiceFields) -> bool:
    """True when a key field is missing or the total is not numeric."""
    if not fields.vendor or not fields.invoice_number or not fields.issue_date or not fields.total:
        return True
    return not _is_number(fields.total)


def update_field(fields: InvoiceFields, name: str, value: str) -> InvoiceFields:
    """
    Apply a reviewer edit to one field.

    Raises:
        KeyError: if name is not an InvoiceFields field.
    """
    if name not in FIELD_NAMES:
        raise KeyError(name)
    if name == "currency":
        logger.debug("Ignoring currency edit %r; currency is fixed to %s", value, DEFAULT_CURRENCY)
        return fields
    return replace(fields, **{name: value})


def invoice_fields_from_dict(data: Dict[str, Any]) -> InvoiceFields:
    """
    Build InvoiceFields from already-reviewed values without re-normalizing.

    Only exact field names are read; values are stringified and currency stays JPY.
    """
    values = {}
    for name in FIELD_NAMES:
        value = data.get(name)
        if value is not None:
            values[name] = _coerce_to_string(value)
    values["currency"] = DEFAULT_CURRENCY
    return InvoiceFields(**values)
