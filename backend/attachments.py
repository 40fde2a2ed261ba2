import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .file_store import BlobStore, FileStore

logger = logging.getLogger(__name__)


@dataclass
class ResolvedAttachment:
    record: Dict[str, Any]
    blobs: BlobStore
    category: str
    extension: str

    @property
    def name(self) -> str:
        return self.record.get("fileName") or self.record.get("filename") or "file"

    @property
    def stored_name(self) -> str:
        return self.record.get("filename") or ""

    def read_bytes(self) -> bytes:
        return self.blobs.read(self.stored_name)

    def read_text(self) -> str:
        return self.read_bytes().decode("utf-8")


class AttachmentResolver:
    """Maps a message's file id to the uploaded bytes and their metadata."""

    def __init__(self, files: FileStore):
        self.files = files

    def resolve(self, file_id: Optional[str]) -> Optional[ResolvedAttachment]:
        if not file_id:
            return None
        record = self.files.get(file_id)
        if not record:
            logger.info("attachment %s: no file record", file_id)
            return None
        stored = record.get("filename") or ""
        if not self.files.blobs.exists(stored):
            logger.info("attachment %s: blob %s missing", file_id, stored)
            return None
        ext = os.path.splitext(stored or record.get("fileName") or "")[1]
        return ResolvedAttachment(
            record=record,
            blobs=self.files.blobs,
            category=record.get("fileType") or "document",
            extension=ext.lower().lstrip("."),
        )
