"""
Sequential extraction queue.

Files are processed one at a time: queued -> processing -> done,
needs_review or failed. Processed items are handed to an optional saver.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional

from invoicejp.dify import ExtractionResult
from invoicejp.fields import (
    Confidence,
    InvoiceFields,
    create_empty_invoice_fields,
    needs_review,
    normalize_invoice_confidence,
    normalize_invoice_fields,
    update_field,
)

logger = logging.getLogger(__name__)

QUEUED = "queued"
PROCESSING = "processing"
DONE = "done"
NEEDS_REVIEW = "needs_review"
FAILED = "failed"

COMPLETED_STATUSES = {DONE, NEEDS_REVIEW}

SAVE_FAILED_MESSAGE = "DB save failed"

# Ordered: first matching keyword wins.
SHORT_ERRORS = [
    ("unauthorized", "Login required"),
    ("subscription required", "Subscription required"),
    ("timeout", "Dify timeout"),
    ("gateway", "Dify timeout"),
    ("cloudflare", "Dify upstream error"),
    ("empty", "Empty file"),
    ("blurry", "Too blurry"),
    ("corrupt", "File corrupted"),
    ("text", "Text not detected"),
]


def short_error(message: str) -> str:
    """Reduce an extraction error to a short user-facing label."""
    lower = message.lower()
    for keyword, label in SHORT_ERRORS:
        if keyword in lower:
            return label
    return "Failed"


@dataclass
class QueueItem:
    name: str
    content: Optional[bytes] = None
    content_type: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    record_id: Optional[str] = None
    status: str = QUEUED
    fields: InvoiceFields = field(default_factory=create_empty_invoice_fields)
    confidence: Dict[str, Confidence] = field(default_factory=dict)
    error: Optional[str] = None
    processed_at: Optional[float] = None

    @property
    def size(self) -> int:
        return len(self.content) if self.content else 0


Extractor = Callable[[QueueItem], ExtractionResult]
Saver = Callable[[QueueItem], str]


class ExtractionQueue:
    """
    Processes queued items one at a time.

    Args:
        extractor: Called with the item; returns the extraction result or raises.
        saver: Optional; persists a processed item and returns its record id.
    """

    def __init__(self, extractor: Extractor, saver: Optional[Saver] = None):
        self.extractor = extractor
        self.saver = saver
        self.items: List[QueueItem] = []

    def add(self, name: str, content: bytes, content_type: Optional[str] = None) -> QueueItem:
        item = QueueItem(name=name, content=content, content_type=content_type)
        self.items.append(item)
        return item

    def get(self, item_id: str) -> Optional[QueueItem]:
        return next((item for item in self.items if item.id == item_id), None)

    def _replace(self, item: QueueItem, **changes) -> QueueItem:
        updated = replace(item, **changes)
        self.items = [updated if entry.id == item.id else entry for entry in self.items]
        return updated

    def process_next(self) -> Optional[QueueItem]:
        """Process the oldest queued item; None when nothing is queued."""
        target = next(
            (item for item in self.items if item.status == QUEUED and item.content is not None), None
        )
        if target is None:
            return None
        return self.process(target.id)

    def process(self, item_id: str) -> Optional[QueueItem]:
        target = self.get(item_id)
        if target is None or target.content is None:
            return None

        target = self._replace(target, status=PROCESSING, error=None)
        logger.info(f"Processing {target.name} size={target.size}")

        try:
            result = self.extractor(target)
        except Exception as e:
            logger.exception(f"Extraction failed for {target.name}")
            return self._replace(
                target, status=FAILED, processed_at=time.time(), error=short_error(str(e))
            )

        fields = normalize_invoice_fields(result.fields.to_dict())
        confidence = normalize_invoice_confidence(
            {name: level.value for name, level in result.confidence.items()}
        )
        status = NEEDS_REVIEW if needs_review(fields) else DONE
        processed = self._replace(
            target, status=status, fields=fields, confidence=confidence, processed_at=time.time()
        )
        return self.save(processed.id) or processed

    def save(self, item_id: str) -> Optional[QueueItem]:
        """Persist an item through the saver; a failure is recorded on the item."""
        item = self.get(item_id)
        if item is None or self.saver is None:
            return item

        try:
            record_id = self.saver(item)
        except Exception as e:
            logger.error(f"Saving {item.name} failed: {e}")
            return self._replace(item, error=SAVE_FAILED_MESSAGE)

        return self._replace(item, record_id=record_id, error=None)

    def run(self) -> List[QueueItem]:
        """Process queued items until none remain; returns the processed items."""
        processed = []
        while True:
            item = self.process_next()
            if item is None:
                return processed
            processed.append(item)

    def edit_field(self, item_id: str, name: str, value: str) -> Optional[QueueItem]:
        """Apply a reviewer edit to one field of an item."""
        item = self.get(item_id)
        if item is None:
            return None
        return self._replace(item, fields=update_field(item.fields, name, value))

    def retry(self, item_id: str) -> Optional[QueueItem]:
        item = self.get(item_id)
        if item is None:
            return None
        return self._replace(item, status=QUEUED, processed_at=None, error=None)

    def remove(self, item_id: str) -> bool:
        before = len(self.items)
        self.items = [item for item in self.items if item.id != item_id]
        return len(self.items) < before

    def completed(self) -> List[QueueItem]:
        return [item for item in self.items if item.status in COMPLETED_STATUSES]

    def summary(self) -> Dict[str, int]:
        counts = {QUEUED: 0, PROCESSING: 0, DONE: 0, NEEDS_REVIEW: 0, FAILED: 0}
        for item in self.items:
            counts[item.status] += 1
        return counts
