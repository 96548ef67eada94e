"""
SQLite persistence backend for the access-control layer.

Provides durable storage for the audit log, patient consents and cross-site
referrals. Uses WAL journal mode for concurrent read/write access and
thread-local connections for thread safety.

The audit table is append-only: this module issues INSERTs against it and
never UPDATE or DELETE.
"""

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


DEFAULT_DB_PATH = Path("data/access_control.db")


def _sortable_ts(value: datetime) -> str:
    """Fixed-width UTC timestamp so SQL string order matches time order."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")


class AccessControlDB:
    """Thread-safe SQLite backend for access-control data."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize access-control database.

        Args:
            db_path: Path to SQLite database file. Use ':memory:' for testing.
                     Defaults to 'data/access_control.db'.
        """
        if db_path == ":memory:":
            # One shared connection; a per-thread in-memory DB would be empty.
            self.db_path = ":memory:"
            self._shared_conn: Optional[sqlite3.Connection] = sqlite3.connect(
                ":memory:", check_same_thread=False
            )
            self._shared_conn.row_factory = sqlite3.Row
        else:
            self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._shared_conn = None

        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local connection."""
        if self._shared_conn is not None:
            return self._shared_conn
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(str(self.db_path))
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=FULL")
        return self._local.conn

    def _init_schema(self):
        """Create tables if they don't exist."""
        conn = self._get_conn()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS audit_log (
                audit_id TEXT PRIMARY KEY,
                sequence INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                event_type TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                resource_type TEXT NOT NULL,
                resource_id TEXT NOT NULL,
                action TEXT NOT NULL,
                result TEXT NOT NULL,
                site_context TEXT,
                reason TEXT,
                justification TEXT,
                review_required INTEGER DEFAULT 0,
                corrects TEXT,
                details TEXT DEFAULT '{}',
                previous_hash TEXT,
                entry_hash TEXT,
                created_at TEXT DEFAULT (datetime('now'))
            );
            CREATE INDEX IF NOT EXISTS idx_audit_timestamp
                ON audit_log(timestamp);
            CREATE INDEX IF NOT EXISTS idx_audit_resource
                ON audit_log(resource_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_audit_actor
                ON audit_log(actor_id);

            CREATE TABLE IF NOT EXISTS consents (
                consent_id TEXT PRIMARY KEY,
                patient_id TEXT NOT NULL,
                consent_type TEXT NOT NULL,
                authorized_sites TEXT NOT NULL DEFAULT '[]',
                restrictions TEXT NOT NULL DEFAULT '[]',
                granted_at TEXT,
                expires_at TEXT,
                withdrawn_at TEXT,
                updated_at TEXT DEFAULT (datetime('now'))
            );
            CREATE INDEX IF NOT EXISTS idx_consent_patient
                ON consents(patient_id);

            CREATE TABLE IF NOT EXISTS referrals (
                referral_id TEXT PRIMARY KEY,
                patient_id TEXT NOT NULL,
                from_site TEXT NOT NULL,
                to_site TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT NOT NULL,
                updated_at TEXT DEFAULT (datetime('now'))
            );
            CREATE INDEX IF NOT EXISTS idx_referral_sites
                ON referrals(from_site, to_site);
        """)
        conn.commit()

    def close(self):
        """Close the connection."""
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None
            return
        if hasattr(self._local, "conn") and self._local.conn is not None:
            self._local.conn.close()
            self._local.conn = None

    # =========================================================================
    # AUDIT LOG
    # =========================================================================

    def insert_audit_entry(self, entry) -> str:
        """Append one AuditLogEntry. Raises sqlite3.Error on failure."""
        data = entry.to_log_entry()
        with self._write_lock:
            conn = self._get_conn()
            conn.execute(
                """INSERT INTO audit_log
                   (audit_id, sequence, timestamp, event_type, actor_id,
                    resource_type, resource_id, action, result, site_context,
                    reason, justification, review_required, corrects, details,
                    previous_hash, entry_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    data["audit_id"],
                    data["sequence"],
                    _sortable_ts(entry.timestamp),
                    data["event_type"],
                    data["actor_id"],
                    data["resource_type"],
                    data["resource_id"],
                    data["action"],
                    data["result"],
                    data.get("site_context"),
                    data.get("reason"),
                    data.get("justification"),
                    1 if data.get("review_required") else 0,
                    data.get("corrects"),
                    json.dumps(data.get("details", {})),
                    data.get("previous_hash"),
                    data.get("entry_hash"),
                ),
            )
            conn.commit()
        return data["audit_id"]

    def list_audit_entries(self) -> List[Dict[str, Any]]:
        """All audit rows in append order."""
        conn = self._get_conn()
        rows = conn.execute("SELECT * FROM audit_log ORDER BY sequence ASC").fetchall()
        return [self._row_to_audit_dict(r) for r in rows]

    def query_audit(
        self,
        resource_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        actor_id: Optional[str] = None,
        site_id: Optional[str] = None,
        actions: Optional[List[str]] = None,
        result: Optional[str] = None,
        event_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Query audit log with filters. Returns (rows, total matching)."""
        conn = self._get_conn()
        where = " WHERE 1=1"
        params: list = []

        if resource_type:
            where += " AND resource_type = ?"
            params.append(resource_type)
        if result:
            where += " AND result = ?"
            params.append(result)
        if event_type:
            where += " AND event_type = ?"
            params.append(event_type)
        if resource_id:
            where += " AND resource_id = ?"
            params.append(resource_id)
        if actor_id:
            where += " AND actor_id = ?"
            params.append(actor_id)
        if site_id:
            where += " AND site_context = ?"
            params.append(site_id)
        if actions:
            where += f" AND action IN ({','.join('?' for _ in actions)})"
            params.extend(actions)
        if start_date:
            where += " AND timestamp >= ?"
            params.append(_sortable_ts(start_date))
        if end_date:
            where += " AND timestamp <= ?"
            params.append(_sortable_ts(end_date))

        total = conn.execute(f"SELECT COUNT(*) AS cnt FROM audit_log{where}", params).fetchone()["cnt"]
        rows = conn.execute(
            f"SELECT * FROM audit_log{where} ORDER BY timestamp ASC, sequence ASC LIMIT ? OFFSET ?",
            [*params, limit, offset],
        ).fetchall()
        return [self._row_to_audit_dict(r) for r in rows], total

    def _row_to_audit_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert SQLite row to a dict suitable for AuditLogEntry construction."""
        return {
            "audit_id": row["audit_id"],
            "sequence": row["sequence"],
            "timestamp": row["timestamp"],
            "event_type": row["event_type"],
            "actor_id": row["actor_id"],
            "resource_type": row["resource_type"],
            "resource_id": row["resource_id"],
            "action": row["action"],
            "result": row["result"],
            "site_context": row["site_context"],
            "reason": row["reason"],
            "justification": row["justification"],
            "review_required": bool(row["review_required"]),
            "corrects": row["corrects"],
            "details": json.loads(row["details"]) if row["details"] else {},
            "previous_hash": row["previous_hash"],
            "entry_hash": row["entry_hash"],
        }

    # =========================================================================
    # CONSENTS
    # =========================================================================

    def save_consent(self, consent) -> None:
        """Save or update a Consent."""
        data = consent.model_dump(mode="json")
        with self._write_lock:
            conn = self._get_conn()
            conn.execute(
                """INSERT OR REPLACE INTO consents
                   (consent_id, patient_id, consent_type, authorized_sites,
                    restrictions, granted_at, expires_at, withdrawn_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, datetime('now'))""",
                (
                    data["consent_id"],
                    data["patient_id"],
                    data["consent_type"],
                    json.dumps(data.get("authorized_sites", [])),
                    json.dumps(data.get("restrictions", [])),
                    data.get("granted_at"),
                    data.get("expires_at"),
                    data.get("withdrawn_at"),
                ),
            )
            conn.commit()

    def list_consents(self, patient_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """List consents, optionally for one patient."""
        conn = self._get_conn()
        if patient_id:
            rows = conn.execute(
                "SELECT * FROM consents WHERE patient_id = ?", (patient_id,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM consents").fetchall()
        return [
            {
                "consent_id": r["consent_id"],
                "patient_id": r["patient_id"],
                "consent_type": r["consent_type"],
                "authorized_sites": json.loads(r["authorized_sites"]),
                "restrictions": json.loads(r["restrictions"]),
                "granted_at": r["granted_at"],
                "expires_at": r["expires_at"],
                "withdrawn_at": r["withdrawn_at"],
            }
            for r in rows
        ]

    # =========================================================================
    # REFERRALS
    # =========================================================================

    def save_referral(self, referral) -> None:
        """Save or update a CrossSiteReferral."""
        data = referral.model_dump(mode="json")
        with self._write_lock:
            conn = self._get_conn()
            conn.execute(
                """INSERT OR REPLACE INTO referrals
                   (referral_id, patient_id, from_site, to_site, status, payload,
                    updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, datetime('now'))""",
                (
                    data["referral_id"],
                    data["patient_id"],
                    data["from_site"],
                    data["to_site"],
                    data["status"],
                    json.dumps(data),
                ),
            )
            conn.commit()

    def list_referrals(self) -> List[Dict[str, Any]]:
        conn = self._get_conn()
        rows = conn.execute("SELECT payload FROM referrals").fetchall()
        return [json.loads(r["payload"]) for r in rows]
