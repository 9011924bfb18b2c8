"""
AuthScan Orchestrator - SQLite Persistence Layer
Scan session records, one-time cookie handles and report file metadata.
WAL mode so the orchestrator task and the API can write concurrently.
"""
import aiosqlite
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from authscan.config import DB_PATH

logger = logging.getLogger("Database")

TERMINAL_STATUSES = ("completed", "failed", "stopped")

# Columns stored as JSON text
JSON_COLUMNS = {"risk_counts", "alerts", "report_files", "warnings"}

# Columns callers may set through update_scan / mark_terminal
UPDATABLE_COLUMNS = {
    "status", "phase", "progress", "message", "urls_found", "alerts_found",
    "risk_counts", "alerts", "total_alerts", "total_occurrences", "report_files",
    "error", "completed_at",
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def empty_risk_counts() -> Dict[str, int]:
    return {"High": 0, "Medium": 0, "Low": 0, "Informational": 0}


@dataclass
class ScanSession:
    """One row of the auth_scans table."""
    id: str
    target_url: str
    owner_id: Optional[str] = None
    login_url: Optional[str] = None
    status: str = "running"
    phase: str = "queued"
    progress: int = 0
    message: str = ""
    urls_found: int = 0
    alerts_found: int = 0
    risk_counts: Dict[str, int] = field(default_factory=empty_risk_counts)
    alerts: List[Dict[str, Any]] = field(default_factory=list)
    total_alerts: int = 0
    total_occurrences: int = 0
    report_files: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @classmethod
    def from_row(cls, row) -> "ScanSession":
        r = dict(row)
        for col in JSON_COLUMNS:
            if r.get(col):
                r[col] = json.loads(r[col])
            else:
                r.pop(col, None)
        return cls(**r)

    def to_snapshot(self) -> Dict[str, Any]:
        """Snapshot handed to polling clients."""
        return {
            "scanId": self.id,
            "ownerId": self.owner_id,
            "targetUrl": self.target_url,
            "loginUrl": self.login_url,
            "authenticated": True,
            "status": self.status,
            "phase": self.phase,
            "progress": self.progress,
            "message": self.message,
            "urlsFound": self.urls_found,
            "alertsFound": self.alerts_found,
            "riskCounts": dict(self.risk_counts),
            "alerts": list(self.alerts),
            "totalAlerts": self.total_alerts,
            "totalOccurrences": self.total_occurrences,
            "reportFiles": list(self.report_files),
            "warnings": list(self.warnings),
            "error": self.error,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "updatedAt": self.updated_at,
        }


class Database:
    """Async SQLite database manager"""

    def __init__(self, db_path: Path = None):
        self.db_path = Path(db_path or DB_PATH)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    async def init_db(self):
        """Initialize database tables"""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")

            # Authenticated scan sessions
            await db.execute("""
                CREATE TABLE IF NOT EXISTS auth_scans (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    target_url TEXT NOT NULL,
                    login_url TEXT,
                    status TEXT NOT NULL DEFAULT 'running',
                    phase TEXT NOT NULL DEFAULT 'queued',
                    progress INTEGER DEFAULT 0,
                    message TEXT DEFAULT '',
                    urls_found INTEGER DEFAULT 0,
                    alerts_found INTEGER DEFAULT 0,
                    risk_counts TEXT,
                    alerts TEXT,
                    total_alerts INTEGER DEFAULT 0,
                    total_occurrences INTEGER DEFAULT 0,
                    report_files TEXT,
                    warnings TEXT,
                    error TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT
                )
            """)

            # One-time session cookie handles
            await db.execute("""
                CREATE TABLE IF NOT EXISTS cookie_handles (
                    id TEXT PRIMARY KEY,
                    cookies TEXT NOT NULL,
                    login_url TEXT,
                    created_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
            """)

            # Report file metadata (content lives in the blob store)
            await db.execute("""
                CREATE TABLE IF NOT EXISTS report_files (
                    id TEXT PRIMARY KEY,
                    scan_id TEXT NOT NULL,
                    filename TEXT NOT NULL,
                    content_type TEXT,
                    format TEXT,
                    size INTEGER DEFAULT 0,
                    path TEXT NOT NULL,
                    description TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (scan_id) REFERENCES auth_scans(id)
                )
            """)

            await db.execute("CREATE INDEX IF NOT EXISTS idx_auth_scans_owner ON auth_scans(owner_id, started_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_handles_expiry ON cookie_handles(expires_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_report_files_scan ON report_files(scan_id)")
            await db.commit()
            logger.info(f"Database initialized: {self.db_path}")

    # ==================== Scan Sessions ====================

    async def create_or_reset_scan(
        self,
        scan_id: str,
        target_url: str,
        login_url: Optional[str] = None,
        owner_id: Optional[str] = None,
        message: str = "Initializing authenticated scan...",
    ) -> bool:
        """
        Create a running session record, or reset a finished one with the same id.

        Returns False (and leaves the row untouched) when the id is already running.
        """
        now = utc_now()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("""
                INSERT INTO auth_scans (
                    id, owner_id, target_url, login_url, status, phase, progress, message,
                    risk_counts, alerts, report_files, warnings, started_at, updated_at
                ) VALUES (?, ?, ?, ?, 'running', 'queued', 0, ?, ?, '[]', '[]', '[]', ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    target_url = excluded.target_url,
                    login_url = excluded.login_url,
                    status = 'running',
                    phase = 'queued',
                    progress = 0,
                    message = excluded.message,
                    urls_found = 0,
                    alerts_found = 0,
                    risk_counts = excluded.risk_counts,
                    alerts = '[]',
                    total_alerts = 0,
                    total_occurrences = 0,
                    report_files = '[]',
                    warnings = '[]',
                    error = NULL,
                    started_at = excluded.started_at,
                    completed_at = NULL,
                    updated_at = excluded.updated_at
                WHERE auth_scans.status != 'running'
            """, (
                scan_id, owner_id, target_url, login_url, message,
                json.dumps(empty_risk_counts()), now, now,
            ))
            await db.commit()
            return cursor.rowcount > 0

    async def get_scan(self, scan_id: str) -> Optional[ScanSession]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM auth_scans WHERE id = ?", (scan_id,)) as cursor:
                row = await cursor.fetchone()
                return ScanSession.from_row(row) if row else None

    async def update_scan(self, scan_id: str, only_if_running: bool = True, **fields) -> bool:
        """
        Update scan columns in one statement; updated_at is always refreshed.

        With only_if_running the write is rejected once the record is terminal.
        Returns True when a row was written.
        """
        unknown = set(fields) - UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown scan columns: {sorted(unknown)}")

        updates = []
        values = []
        for col, value in fields.items():
            if value is None and col not in ("error", "completed_at"):
                continue
            updates.append(f"{col} = ?")
            values.append(json.dumps(value) if col in JSON_COLUMNS else value)

        updates.append("updated_at = ?")
        values.append(utc_now())

        query = f"UPDATE auth_scans SET {', '.join(updates)} WHERE id = ?"
        values.append(scan_id)
        if only_if_running:
            query += " AND status = 'running'"

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, values)
            await db.commit()
            return cursor.rowcount > 0

    async def mark_terminal(
        self,
        scan_id: str,
        status: str,
        phase: Optional[str] = None,
        error: Optional[str] = None,
        message: Optional[str] = None,
        only_if_running: bool = True,
        **fields,
    ) -> bool:
        """Move a session to completed/failed/stopped and stamp completed_at."""
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal status: {status}")
        if message is not None:
            fields["message"] = message
        return await self.update_scan(
            scan_id,
            only_if_running=only_if_running,
            status=status,
            phase=phase or status,
            error=error,
            completed_at=utc_now(),
            **fields,
        )

    async def append_warnings(self, scan_id: str, warnings: List[str]):
        """Append non-fatal warnings, whatever the scan's status."""
        if not warnings:
            return
        async with aiosqlite.connect(self.db_path) as db:
            for warning in warnings:
                await db.execute(
                    "UPDATE auth_scans SET warnings = json_insert(COALESCE(warnings, '[]'), '$[#]', ?) WHERE id = ?",
                    (warning, scan_id)
                )
            await db.commit()

    async def list_scans(self, owner_id: Optional[str], limit: int = 50) -> List[ScanSession]:
        """Latest sessions for an owner, newest first."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            if owner_id is None:
                query = "SELECT * FROM auth_scans WHERE owner_id IS NULL ORDER BY started_at DESC LIMIT ?"
                params = (limit,)
            else:
                query = "SELECT * FROM auth_scans WHERE owner_id = ? ORDER BY started_at DESC LIMIT ?"
                params = (owner_id, limit)
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [ScanSession.from_row(row) for row in rows]

    # ==================== Cookie Handles ====================

    async def save_cookie_handle(
        self, handle_id: str, cookies: List[Dict], login_url: Optional[str], expires_at: str
    ):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO cookie_handles (id, cookies, login_url, created_at, expires_at) VALUES (?, ?, ?, ?, ?)",
                (handle_id, json.dumps(cookies), login_url, utc_now(), expires_at)
            )
            await db.commit()

    async def consume_cookie_handle(self, handle_id: str, now: str) -> Optional[Dict]:
        """
        Read and delete a handle in one go. Returns None when the handle is
        unknown, expired, or was consumed concurrently.
        """
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM cookie_handles WHERE id = ?", (handle_id,)) as cursor:
                row = await cursor.fetchone()
            if not row:
                return None
            cursor = await db.execute("DELETE FROM cookie_handles WHERE id = ?", (handle_id,))
            await db.commit()
            if cursor.rowcount == 0 or row["expires_at"] <= now:
                return None
            return {
                "cookies": json.loads(row["cookies"]),
                "login_url": row["login_url"],
                "expires_at": row["expires_at"],
            }

    async def purge_cookie_handles(self, now: str) -> int:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM cookie_handles WHERE expires_at <= ?", (now,))
            await db.commit()
            return cursor.rowcount

    # ==================== Report Files ====================

    async def save_file_record(self, record: Dict[str, Any]):
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("""
                INSERT INTO report_files
                    (id, scan_id, filename, content_type, format, size, path, description, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record["id"], record["scan_id"], record["filename"], record.get("content_type"),
                record.get("format"), record.get("size", 0), record["path"],
                record.get("description"), record.get("created_at") or utc_now(),
            ))
            await db.commit()

    async def get_file_record(self, file_id: str) -> Optional[Dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute("SELECT * FROM report_files WHERE id = ?", (file_id,)) as cursor:
                row = await cursor.fetchone()
                return dict(row) if row else None

    async def list_file_records(self, scan_id: str) -> List[Dict]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(
                "SELECT * FROM report_files WHERE scan_id = ? ORDER BY created_at", (scan_id,)
            ) as cursor:
                rows = await cursor.fetchall()
                return [dict(row) for row in rows]

    async def delete_file_record(self, file_id: str) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM report_files WHERE id = ?", (file_id,))
            await db.commit()
            return cursor.rowcount > 0


# Global database instance
_db: Optional[Database] = None


async def get_db() -> Database:
    """Get or create database instance"""
    global _db
    if _db is None:
        _db = Database()
        await _db.init_db()
    return _db
