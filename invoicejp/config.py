"""
Runtime configuration read from environment variables.
"""

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_DIFY_BASE_URL = "https://api.dify.ai"

# Maximum upload size per file (bytes). Set to 10 MB by default.
DEFAULT_MAX_UPLOAD_SIZE = 10 * 1024 * 1024

DEFAULT_RECORDS_PATH = "invoice_exports.json"


@dataclass(frozen=True)
class Settings:
    dify_api_key: Optional[str]
    dify_base_url: str
    max_upload_size: int
    records_path: str


def get_settings() -> Settings:
    """Build Settings from the current environment."""
    base_url = os.getenv("DIFY_BASE_URL") or DEFAULT_DIFY_BASE_URL
    max_upload_size = os.getenv("INVOICEJP_MAX_UPLOAD_SIZE")

    return Settings(
        dify_api_key=os.getenv("DIFY_API_KEY") or None,
        dify_base_url=base_url.rstrip("/"),
        max_upload_size=int(max_upload_size) if max_upload_size else DEFAULT_MAX_UPLOAD_SIZE,
        records_path=os.getenv("INVOICEJP_RECORDS_PATH") or DEFAULT_RECORDS_PATH,
    )
