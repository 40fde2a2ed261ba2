import mimetypes
import os
import random
import time
from typing import Any, Dict, List, Optional

from werkzeug.utils import secure_filename

from .conversation_store import gen_id, now_iso
from .db import Database

FILE_TYPES = ("image", "document", "audio", "video")


class BlobStore:
    """Flat directory of uploaded bytes, addressed by stored filename."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        os.makedirs(self.root, exist_ok=True)

    def path_for(self, stored_name: str) -> str:
        return os.path.join(self.root, os.path.basename(stored_name or ""))

    def write(self, data: bytes, name: str) -> str:
        safe = secure_filename(name or "") or "upload"
        stored = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}-{safe}"
        with open(self.path_for(stored), "wb") as fh:
            fh.write(data)
        return stored

    def exists(self, stored_name: str) -> bool:
        return bool(stored_name) and os.path.isfile(self.path_for(stored_name))

    def read(self, stored_name: str) -> bytes:
        with open(self.path_for(stored_name), "rb") as fh:
            return fh.read()


def _file_from_row(row) -> Dict[str, Any]:
    row = dict(row)
    return {
        "id": row["id"],
        "user": row["user_id"],
        "fileName": row["file_name"],
        "filename": row["filename"],
        "path": row["path"],
        "fileType": row["file_type"],
        "mimeType": row["mime_type"],
        "size": row["size"],
        "uploadTime": row["upload_time"],
    }


class FileStore:
    def __init__(self, db: Database, blobs: BlobStore):
        self.db = db
        self.blobs = blobs

    def save_upload(
        self,
        user_id: str,
        data: bytes,
        original_name: str,
        file_type: str = "document",
        mime_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        if file_type not in FILE_TYPES:
            raise ValueError(f"Unsupported file type: {file_type}")
        original_name = original_name or "upload"
        stored = self.blobs.write(data, original_name)
        mime = mime_type or mimetypes.guess_type(original_name)[0] or "application/octet-stream"
        record = {
            "id": gen_id(),
            "user": user_id,
            "fileName": original_name,
            "filename": stored,
            "path": f"/uploads/{stored}",
            "fileType": file_type,
            "mimeType": mime,
            "size": len(data),
            "uploadTime": now_iso(),
        }
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO files (id, user_id, file_name, filename, path, file_type, mime_type, size, upload_time)
                VALUES ({ph(9)})
                """,
                (
                    record["id"],
                    user_id,
                    record["fileName"],
                    stored,
                    record["path"],
                    file_type,
                    mime,
                    record["size"],
                    record["uploadTime"],
                ),
            )
        return record

    def get(self, file_id: str) -> Optional[Dict[str, Any]]:
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(f"SELECT * FROM files WHERE id = {ph()}", (file_id,))
            row = cur.fetchone()
        return _file_from_row(row) if row else None

    def list_for_user(self, user_id: str) -> List[Dict[str, Any]]:
        ph = self.db.ph
        with self.db.transaction() as cur:
            cur.execute(
                f"SELECT * FROM files WHERE user_id = {ph()} ORDER BY upload_time ASC",
                (user_id,),
            )
            rows = cur.fetchall()
        return [_file_from_row(r) for r in rows]

    def blob_path(self, record: Dict[str, Any]) -> str:
        return self.blobs.path_for(record.get("filename") or "")
