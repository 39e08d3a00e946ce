"""
FastAPI endpoints for invoice extraction, normalization and CSV export.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from invoicejp.config import Settings, get_settings
from invoicejp.csv_export import invoice_fields_to_csv, safe_csv_filename
from invoicejp.dify import DifyClient, DifyMappingError, DifyUploadError, DifyWorkflowError
from invoicejp.fields import (
    Confidence,
    invoice_fields_from_dict,
    needs_review,
    normalize_invoice_confidence,
    normalize_invoice_fields,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="InvoiceJP API", version="1.0.0")

# Allow cross-origin requests so the review console can call this API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # tighten to the console domain in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_dify_client(settings: Settings = Depends(get_settings)) -> Optional[DifyClient]:
    """Build the Dify client, or None when no API key is configured."""
    if not settings.dify_api_key:
        return None
    return DifyClient(settings.dify_api_key, settings.dify_base_url)


def _is_supported_file(filename: str, content_type: Optional[str]) -> bool:
    if content_type == "application/pdf" or (content_type or "").startswith("image/"):
        return True
    return filename.lower().endswith(".pdf")


def _confidence_to_json(confidence: Dict[str, Confidence]) -> Dict[str, str]:
    return {name: level.value for name, level in confidence.items()}


@app.get("/health")
async def health() -> Dict[str, str]:
    """
    Health check endpoint.

    Returns:
        Dictionary with status "ok"
    """
    return {"status": "ok"}


@app.post("/extract")
async def extract(
    file: Optional[UploadFile] = File(None),
    user: str = Form("anonymous"),
    settings: Settings = Depends(get_settings),
    client: Optional[DifyClient] = Depends(get_dify_client),
) -> Dict[str, Any]:
    """
    Extract invoice fields from one uploaded PDF or image.

    Returns:
        Dictionary with fields, confidence, needs_review and the raw
        workflow event, outputs and stream events.
    """
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="File is required.")

    content = await file.read()
    if not content:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    if len(content) > settings.max_upload_size:
        raise HTTPException(
            status_code=413,
            detail=f"File '{file.filename}' exceeds maximum size of {settings.max_upload_size} bytes",
        )

    if not _is_supported_file(file.filename, file.content_type):
        raise HTTPException(status_code=415, detail=f"File '{file.filename}' is not a PDF or image")

    if client is None:
        raise HTTPException(status_code=500, detail="Missing DIFY_API_KEY in server environment.")

    try:
        result = await run_in_threadpool(
            client.extract, file.filename, content, user, file.content_type
        )
    except (DifyUploadError, DifyWorkflowError) as e:
        logger.error(f"Extraction failed for {file.filename}: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    except DifyMappingError as e:
        return JSONResponse(
            status_code=422,
            content={
                "error": f"Dify output mapping failed: {e}",
                "raw": e.raw,
                "raw_outputs": e.raw_outputs,
            },
        )

    return {
        "fields": result.fields.to_dict(),
        "confidence": _confidence_to_json(result.confidence),
        "needs_review": needs_review(result.fields),
        "raw": result.raw,
        "raw_outputs": result.raw_outputs,
        "raw_stream_events": result.raw_stream_events,
    }


@app.post("/normalize")
async def normalize(payload: Any = Body(...)) -> Dict[str, Any]:
    """
    Normalize an arbitrary extraction payload into the fixed invoice fields.
    """
    fields = normalize_invoice_fields(payload)
    confidence_payload = payload.get("confidence") if isinstance(payload, dict) else None
    confidence = normalize_invoice_confidence(confidence_payload)

    return {
        "fields": fields.to_dict(),
        "confidence": _confidence_to_json(confidence),
        "needs_review": needs_review(fields),
    }


@app.post("/csv")
async def download_csv(
    fields: Dict[str, Any] = Body(..., embed=True),
    filename: str = Body("invoice", embed=True),
) -> Response:
    """
    Render reviewed fields as a CSV attachment.
    """
    csv_text = invoice_fields_to_csv(invoice_fields_from_dict(fields))
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{safe_csv_filename(filename)}"'},
    )
