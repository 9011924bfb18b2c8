"""
AuthScan Orchestrator - Report Blob Store
Report artifacts on local disk, with their metadata in the report_files table.
"""
import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from authscan.config import REPORTS_DIR
from authscan.database import Database, utc_now

logger = logging.getLogger("BlobStore")

_SAFE_NAME = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class FileRef:
    """Reference recorded on the scan session for each stored artifact."""
    file_id: str
    filename: str
    content_type: str
    format: str
    size: int
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        ref = {
            "fileId": self.file_id,
            "filename": self.filename,
            "contentType": self.content_type,
            "format": self.format,
            "size": self.size,
        }
        if self.description:
            ref["description"] = self.description
        return ref


def _write_bytes(path: Path, data: bytes):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


class BlobStore:
    """Files under root_dir/<scan_id>/, looked up by file id."""

    def __init__(self, db: Database, root_dir: Path = None):
        self.db = db
        self.root_dir = Path(root_dir or REPORTS_DIR)
        self.root_dir.mkdir(parents=True, exist_ok=True)

    async def upload_file(self, data: bytes, filename: str, metadata: Dict[str, Any]) -> FileRef:
        """
        Store `data` and record its metadata.

        metadata keys: scan_id (required), content_type, format, description.
        """
        scan_id = metadata["scan_id"]
        file_id = uuid.uuid4().hex
        path = self.root_dir / _SAFE_NAME.sub("_", scan_id) / f"{file_id}_{_SAFE_NAME.sub('_', filename)}"

        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_bytes, path, data)

        ref = FileRef(
            file_id=file_id,
            filename=filename,
            content_type=metadata.get("content_type", "application/octet-stream"),
            format=metadata.get("format", ""),
            size=len(data),
            description=metadata.get("description"),
        )
        await self.db.save_file_record({
            "id": file_id,
            "scan_id": scan_id,
            "filename": filename,
            "content_type": ref.content_type,
            "format": ref.format,
            "size": ref.size,
            "path": str(path),
            "description": ref.description,
            "created_at": utc_now(),
        })
        logger.info(f"[{scan_id}] Stored {filename} ({ref.size} bytes)")
        return ref

    async def get_file(self, file_id: str) -> Optional[Dict[str, Any]]:
        """Return the metadata record plus a `data` key with the file contents."""
        record = await self.db.get_file_record(file_id)
        if not record:
            return None
        path = Path(record["path"])
        if not path.exists():
            logger.warning(f"Blob missing on disk for file {file_id}: {path}")
            return None
        loop = asyncio.get_running_loop()
        record["data"] = await loop.run_in_executor(None, path.read_bytes)
        return record

    async def list_files(self, scan_id: str) -> List[Dict[str, Any]]:
        return await self.db.list_file_records(scan_id)

    async def delete_file(self, file_id: str) -> bool:
        record = await self.db.get_file_record(file_id)
        if not record:
            return False
        Path(record["path"]).unlink(missing_ok=True)
        return await self.db.delete_file_record(file_id)
