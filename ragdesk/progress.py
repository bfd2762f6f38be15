"""Step-by-step ingestion progress persisted on the Document row.

Every write replaces processing_progress as a whole with one UPDATE and a
commit, so a polling client never sees a half-updated step list.
"""
import logging
from typing import Any, Dict, List, Optional

from ragdesk.db import SessionFactory, session_scope
from ragdesk.models import Document, DocumentStatus

logger = logging.getLogger(__name__)

STEP_DOWNLOAD = "Downloading file"
STEP_EXTRACT = "Extracting text & images"
STEP_CAPTION = "Captioning images"
STEP_CHUNK = "Creating chunks"
STEP_EMBED = "Generating embeddings"
STEP_SAVE = "Saving to database"

STEPS: List[str] = [STEP_DOWNLOAD, STEP_EXTRACT, STEP_CAPTION, STEP_CHUNK, STEP_EMBED, STEP_SAVE]


def starting_snapshot() -> Dict[str, Any]:
    """Snapshot for a freshly uploaded (or restored) document."""
    return {
        "currentStep": "Starting",
        "progress": 0,
        "eta": None,
        "steps": [{"name": s, "status": "pending"} for s in STEPS],
    }


def failed_snapshot() -> Dict[str, Any]:
    return {"currentStep": "Failed", "progress": 0, "eta": None, "steps": []}


class ProgressTracker:
    """Writes progress snapshots for one ingestion run.

    progress never decreases and a non-null eta never increases across the
    snapshots written by a tracker.
    """

    def __init__(self, session_factory: SessionFactory, document_id: str):
        self.session_factory = session_factory
        self.document_id = document_id
        self._progress = 0
        self._eta: Optional[int] = None

    def snapshot(self, step: str, progress: int, eta: Optional[int]) -> Dict[str, Any]:
        """Build a complete snapshot; steps before `step` are completed."""
        current = STEPS.index(step)
        steps = []
        for i, name in enumerate(STEPS):
            status = "completed" if i < current else "processing" if i == current else "pending"
            steps.append({"name": name, "status": status})

        progress = max(self._progress, min(100, int(progress)))
        if eta is not None and self._eta is not None:
            eta = min(self._eta, eta)
        if eta is not None:
            eta = max(0, eta)
        self._progress = progress
        self._eta = eta if eta is not None else self._eta
        return {"currentStep": step, "progress": progress, "eta": eta, "steps": steps}

    def _write(self, values: Dict[str, Any]) -> None:
        with session_scope(self.session_factory) as db:
            db.query(Document).filter(Document.id == self.document_id).update(
                values, synchronize_session=False
            )

    def start(self, eta: Optional[int] = None) -> None:
        """First write of a run: back to processing with the download step active."""
        self._write(
            {
                "status": DocumentStatus.PROCESSING,
                "error_message": None,
                "processing_progress": self.snapshot(STEP_DOWNLOAD, 5, eta),
            }
        )

    def update(self, step: str, progress: int, eta: Optional[int]) -> None:
        snap = self.snapshot(step, progress, eta)
        logger.info("Document %s: %s (%d%%)", self.document_id, step, snap["progress"])
        self._write({"processing_progress": snap})

    def complete(
        self,
        processing_time: int,
        verified: bool,
        images_processed: int,
        images_captioned: int,
        total_chunks: int,
    ) -> None:
        """Write the terminal Completed snapshot and mark the document indexed."""
        snap = {
            "currentStep": "Completed",
            "progress": 100,
            "eta": 0,
            "steps": [{"name": s, "status": "completed"} for s in STEPS],
            "processingTime": processing_time,
            "verificationStatus": "passed" if verified else "warning",
            "imagesProcessed": images_processed,
            "imagesCaptioned": images_captioned,
            "totalChunks": total_chunks,
        }
        self._progress = 100
        self._eta = 0
        self._write({"status": DocumentStatus.INDEXED, "error_message": None, "processing_progress": snap})

    def fail(self, error_message: str) -> None:
        self._write(
            {
                "status": DocumentStatus.FAILED,
                "error_message": error_message or "Unknown error",
                "processing_progress": failed_snapshot(),
            }
        )
