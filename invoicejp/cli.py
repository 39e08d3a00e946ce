"""
Command-line interface for invoice extraction and CSV export.
"""

import json
import logging
import mimetypes
from pathlib import Path
from typing import Dict, List, Optional

import typer

from invoicejp.config import get_settings
from invoicejp.csv_export import invoice_fields_to_csv, invoice_fields_to_zip, safe_csv_filename
from invoicejp.dify import DifyClient, ExtractionResult
from invoicejp.fields import normalize_invoice_confidence, normalize_invoice_fields
from invoicejp.queue import DONE, FAILED, NEEDS_REVIEW, ExtractionQueue, QueueItem
from invoicejp.records import ExportStore, from_export_row, to_export_record

app = typer.Typer()

SUPPORTED_SUFFIXES = {".pdf", ".png", ".jpg", ".jpeg", ".webp", ".heic", ".gif"}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")):
    """
    Extract Japanese invoice fields with Dify and export them as CSV.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _find_invoice_files(input_dir: Path) -> List[Path]:
    """Find all PDF and image files in the given directory."""
    return sorted(p for p in input_dir.iterdir() if p.is_file() and p.suffix.lower() in SUPPORTED_SUFFIXES)


def _print_summary(counts: Dict[str, int]):
    """Print human-readable summary to stdout."""
    total = sum(counts.values())
    print(f"\n{'='*60}")
    print("Summary")
    print(f"{'='*60}")
    print(f"Total files: {total}")
    print(f"Done: {counts.get(DONE, 0)}")
    print(f"Needs review: {counts.get(NEEDS_REVIEW, 0)}")
    print(f"Failed: {counts.get(FAILED, 0)}")
    print(f"{'='*60}\n")


def _read_json(path: Path):
    if not path.exists():
        typer.echo(f"Error: Input file '{path}' does not exist", err=True)
        raise typer.Exit(code=1)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        typer.echo(f"Error: Invalid JSON in '{path}': {e}", err=True)
        raise typer.Exit(code=1)


@app.command()
def extract(
    input_dir: str = typer.Option(..., "--input-dir", help="Directory containing PDF/image invoices"),
    records: Optional[str] = typer.Option(None, "--records", help="Export records JSON file (default: $INVOICEJP_RECORDS_PATH)"),
    csv_dir: Optional[str] = typer.Option(None, "--csv-dir", help="Directory to write one CSV per invoice"),
    user: str = typer.Option("cli", "--user", help="User id sent to Dify"),
):
    """
    Extract invoice fields from every file in a directory, one at a time.
    """
    settings = get_settings()
    input_path = Path(input_dir)

    if not input_path.is_dir():
        typer.echo(f"Error: '{input_dir}' is not a directory", err=True)
        raise typer.Exit(code=1)

    if not settings.dify_api_key:
        typer.echo("Error: DIFY_API_KEY is not set", err=True)
        raise typer.Exit(code=1)

    files = _find_invoice_files(input_path)
    if not files:
        typer.echo(f"Warning: No PDF or image files found in '{input_dir}'", err=True)
        raise typer.Exit(code=0)

    client = DifyClient(settings.dify_api_key, settings.dify_base_url)
    store = ExportStore(records or settings.records_path)

    def run_extract(item: QueueItem) -> ExtractionResult:
        return client.extract(item.name, item.content, user, item.content_type)

    def save(item: QueueItem) -> str:
        record = to_export_record(
            item.fields, item.confidence, item.name, user_id=user, record_id=item.record_id
        )
        return store.save(record)

    queue = ExtractionQueue(run_extract, saver=save)
    for path in files:
        content_type, _ = mimetypes.guess_type(path.name)
        queue.add(path.name, path.read_bytes(), content_type)

    typer.echo(f"Found {len(files)} file(s). Extracting...")
    for item in queue.run():
        typer.echo(f"{item.name}: {item.status}" + (f" ({item.error})" if item.error else ""))

    if csv_dir:
        csv_path = Path(csv_dir)
        csv_path.mkdir(parents=True, exist_ok=True)
        for item in queue.completed():
            (csv_path / safe_csv_filename(item.name)).write_text(
                invoice_fields_to_csv(item.fields), encoding='utf-8'
            )
        typer.echo(f"CSV files written to: {csv_path}")

    counts = queue.summary()
    _print_summary(counts)

    if counts[FAILED] > 0:
        typer.echo(f"Extraction failed for {counts[FAILED]} file(s)", err=True)
        raise typer.Exit(code=1)


@app.command()
def normalize(
    input: str = typer.Option(..., "--input", help="JSON file with a raw extraction payload"),
    output: str = typer.Option(..., "--output", help="Output CSV file path"),
):
    """
    Normalize a raw extraction payload and write it as CSV.
    """
    payload = _read_json(Path(input))
    fields = normalize_invoice_fields(payload)
    confidence = normalize_invoice_confidence(
        payload.get("confidence") if isinstance(payload, dict) else None
    )

    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(invoice_fields_to_csv(fields), encoding='utf-8')

    typer.echo(f"CSV written to: {output_path}")
    if confidence:
        levels = ", ".join(f"{name}={level.value}" for name, level in confidence.items())
        typer.echo(f"Confidence: {levels}")


@app.command()
def export_csv(
    records: str = typer.Option(..., "--records", help="Export records JSON file"),
    output: str = typer.Option(..., "--output", help="Output ZIP file path"),
):
    """
    Bundle stored export records into a ZIP of CSV files.
    """
    records_path = Path(records)
    if not records_path.exists():
        typer.echo(f"Error: Records file '{records}' does not exist", err=True)
        raise typer.Exit(code=1)

    try:
        rows = ExportStore(records).load()
    except (json.JSONDecodeError, ValueError) as e:
        typer.echo(f"Error reading '{records}': {e}", err=True)
        raise typer.Exit(code=1)

    items = []
    for row in rows:
        fields, _ = from_export_row(row)
        items.append((row.get("source_file_name") or f"{row.get('id')}.csv", fields))

    output_path = Path(output)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(invoice_fields_to_zip(items))

    typer.echo(f"Exported {len(items)} invoice(s) to: {output_path}")


if __name__ == "__main__":
    app()
