"""
CSV serialization for reviewed invoice fields.

One header line followed by exactly one data line, every value quoted.
"""

import csv
import io
import re
import zipfile
from typing import Dict, Iterable, List, Set, Tuple

from invoicejp.fields import DEFAULT_CURRENCY, FIELD_NAMES, InvoiceFields

CSV_HEADERS: List[str] = [
    "Vendor/Supplier",
    "Registration number",
    "Invoice number",
    "Issue date",
    "Issue time",
    "Due date",
    "Currency",
    "Subtotal",
    "Tax amount",
    "Total",
    "Total (tax inc.)",
    "Tax 10% target amount",
    "Tax 10% amount",
    "Tax 8% target amount",
    "Tax 8% amount",
    "Payment method",
    "Document type",
    "Notes",
]

# Column order follows InvoiceFields declaration order.
HEADER_TO_FIELD: Dict[str, str] = dict(zip(CSV_HEADERS, FIELD_NAMES))


def _row_values(fields: InvoiceFields) -> List[str]:
    values = []
    for name in FIELD_NAMES:
        values.append(DEFAULT_CURRENCY if name == "currency" else getattr(fields, name))
    return values


def invoice_fields_to_csv(fields: InvoiceFields) -> str:
    """
    Serialize InvoiceFields to a two-line CSV document.

    Args:
        fields: Reviewed invoice fields.

    Returns:
        CSV text: header line, data line, each terminated by "\\n".
        The currency column is always JPY.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    writer.writerow(_row_values(fields))
    return buffer.getvalue()


def parse_csv(text: str) -> InvoiceFields:
    """
    Read back a CSV produced by invoice_fields_to_csv.

    Raises:
        ValueError: if the header or data line is missing or the header is unknown.
    """
    rows = list(csv.reader(io.StringIO(text)))
    if len(rows) < 2:
        raise ValueError("CSV must contain a header line and a data line")

    header, data = rows[0], rows[1]
    unknown = [column for column in header if column not in HEADER_TO_FIELD]
    if unknown:
        raise ValueError(f"Unknown CSV columns: {unknown}")

    values = {HEADER_TO_FIELD[column]: value for column, value in zip(header, data)}
    values["currency"] = DEFAULT_CURRENCY
    return InvoiceFields(**values)


def safe_csv_filename(source_name: str) -> str:
    """Turn an uploaded file name into a download-safe CSV name."""
    base = re.sub(r'\.[a-z0-9]+$', '', source_name, flags=re.IGNORECASE)
    safe = re.sub(r'[^A-Za-z0-9_-]', '_', base)
    return f"{safe or 'invoice'}.csv"


def invoice_fields_to_zip(items: Iterable[Tuple[str, InvoiceFields]]) -> bytes:
    """
    Bundle one CSV per (source_name, fields) pair into a ZIP archive.

    Names that collide after sanitizing get the first free numeric suffix
    (name_2.csv, name_3.csv, ...).
    """
    buffer = io.BytesIO()
    written: Set[str] = set()

    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for source_name, fields in items:
            filename = safe_csv_filename(source_name)
            stem = filename[:-4]
            count = 1
            while filename in written:
                count += 1
                filename = f"{stem}_{count}.csv"
            written.add(filename)
            archive.writestr(filename, invoice_fields_to_csv(fields))

    return buffer.getvalue()
