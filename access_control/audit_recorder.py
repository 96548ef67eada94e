"""
Audit Recorder Module
=====================
Append-only, ordered log of every access decision, temporary grant,
break-glass override and referral transition.

Entries are written to a sink before the decision they describe is
returned. Each entry carries a global sequence number and a hash chained to
its predecessor, so gaps and edits are detectable with `verify_chain()`.
Corrections and reviews are new entries that reference the original; no
entry is ever updated or deleted.
"""

import csv
import io
import json
import os
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import structlog

from core.models import (
    AuditEventType,
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    AuditResult,
    ErrorKind,
)
from core.exceptions import AuditWriteError, InvalidRequestError
from core.utils import compute_hash, generate_id, mask_id, utc_now, verify_hash

logger = structlog.get_logger(__name__)


CSV_COLUMNS = [
    "audit_id",
    "sequence",
    "timestamp",
    "event_type",
    "actor_id",
    "resource_type",
    "resource_id",
    "action",
    "result",
    "site_context",
    "reason",
    "justification",
    "review_required",
    "corrects",
]


# =============================================================================
# Sinks
# =============================================================================


class AuditSink(ABC):
    """Durable destination for audit entries."""

    @abstractmethod
    def persist(self, entry: AuditLogEntry) -> str:
        """Durably store one entry and return its audit id."""

    @abstractmethod
    def entries(self) -> List[AuditLogEntry]:
        """All stored entries in append order."""

    def query(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]:
        """Return one page of matching entries and the total match count."""
        matching = sorted(
            (e for e in self.entries() if query.matches(e)),
            key=lambda e: (e.timestamp, e.sequence),
        )
        start = (query.page - 1) * query.page_size
        return matching[start:start + query.page_size], len(matching)


class InMemoryAuditSink(AuditSink):
    """List-backed sink for tests and single-process simulation."""

    def __init__(self):
        self._entries: List[AuditLogEntry] = []

    def persist(self, entry: AuditLogEntry) -> str:
        self._entries.append(entry)
        return entry.audit_id

    def entries(self) -> List[AuditLogEntry]:
        return list(self._entries)


class JsonlAuditSink(AuditSink):
    """
    Append-only JSON Lines file.

    Every write is flushed and fsynced before `persist` returns.
    """

    def __init__(self, storage_path: Optional[str] = None, filename: str = "audit.jsonl"):
        self.storage_path = Path(storage_path) if storage_path else Path("logs/audit")
        self.storage_path.mkdir(parents=True, exist_ok=True)
        self.file_path = self.storage_path / filename

    def persist(self, entry: AuditLogEntry) -> str:
        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry.to_log_entry(), sort_keys=True) + "\n")
            f.flush()
            os.fsync(f.fileno())
        return entry.audit_id

    def entries(self) -> List[AuditLogEntry]:
        if not self.file_path.exists():
            return []
        with open(self.file_path, "r", encoding="utf-8") as f:
            return [AuditLogEntry(**json.loads(line)) for line in f if line.strip()]


class SqliteAuditSink(AuditSink):
    """Sink backed by the `audit_log` table of an `AccessControlDB`."""

    def __init__(self, db):
        self.db = db

    def persist(self, entry: AuditLogEntry) -> str:
        return self.db.insert_audit_entry(entry)

    def entries(self) -> List[AuditLogEntry]:
        return [AuditLogEntry(**row) for row in self.db.list_audit_entries()]

    def query(self, query: AuditQuery) -> Tuple[List[AuditLogEntry], int]:
        if query.patient_id and query.resource_id and query.patient_id != query.resource_id:
            return [], 0
        rows, total = self.db.query_audit(
            resource_id=query.patient_id or query.resource_id,
            resource_type="patient" if query.patient_id else None,
            actor_id=query.user_id,
            site_id=query.site_id,
            actions=query.actions,
            result=query.result.value if query.result else None,
            event_type=query.event_type.value if query.event_type else None,
            start_date=query.start_date,
            end_date=query.end_date,
            limit=query.page_size,
            offset=(query.page - 1) * query.page_size,
        )
        return [AuditLogEntry(**row) for row in rows], total


def create_sink(backend: str = "memory", storage_path: Optional[str] = None, db=None) -> AuditSink:
    """
    Build a sink from the `audit` config section.

    Args:
        backend: 'memory', 'jsonl' or 'sqlite'.
        storage_path: Directory for the jsonl backend.
        db: AccessControlDB for the sqlite backend.
    """
    if backend == "memory":
        return InMemoryAuditSink()
    if backend == "jsonl":
        return JsonlAuditSink(storage_path)
    if backend == "sqlite":
        if db is None:
            raise InvalidRequestError("sqlite audit backend requires a database", field="db")
        return SqliteAuditSink(db)
    raise InvalidRequestError(f"Unknown audit backend: {backend}", field="backend")


# =============================================================================
# Recorder
# =============================================================================


class AuditRecorder:
    """
    Serializes appends to an audit sink.

    Within one resource, timestamps never go backwards: an entry stamped
    earlier than its predecessor for the same resource is clamped forward.
    """

    def __init__(
        self,
        sink: Optional[AuditSink] = None,
        clock=None,
        retention_days: int = 2555,  # ~7 years
    ):
        """
        Initialize audit recorder.

        Args:
            sink: Durable destination (in-memory if None).
            clock: Callable returning the current UTC datetime.
            retention_days: Retention period reported in compliance reports.
        """
        self.sink = sink or InMemoryAuditSink()
        self.clock = clock or utc_now
        self.retention_days = retention_days
        self._lock = threading.Lock()

        self._sequence = 0
        self._last_hash: Optional[str] = None
        self._last_timestamp: Dict[Tuple[str, str], datetime] = {}

        # Resume the chain from an existing durable log
        for entry in self.sink.entries():
            self._advance(entry)

    def _advance(self, entry: AuditLogEntry) -> None:
        self._sequence = max(self._sequence, entry.sequence)
        self._last_hash = entry.entry_hash
        key = (entry.resource_type, entry.resource_id)
        last = self._last_timestamp.get(key)
        if last is None or entry.timestamp > last:
            self._last_timestamp[key] = entry.timestamp

    # -------------------------------------------------------------------------
    # Write Path
    # -------------------------------------------------------------------------

    def append(self, entry: AuditLogEntry) -> str:
        """
        Seal and persist one entry.

        Returns:
            The audit id of the stored entry.

        Raises:
            AuditWriteError: If the sink cannot durably record the entry.
        """
        with self._lock:
            key = (entry.resource_type, entry.resource_id)
            last = self._last_timestamp.get(key)
            timestamp = entry.timestamp if last is None or entry.timestamp >= last else last

            sealed = entry.model_copy(update={
                "sequence": self._sequence + 1,
                "timestamp": timestamp,
                "previous_hash": self._last_hash,
            })
            sealed = sealed.model_copy(update={
                "entry_hash": compute_hash(sealed.hash_payload()),
            })

            try:
                audit_id = self.sink.persist(sealed)
            except AuditWriteError:
                raise
            except Exception as e:
                logger.error(
                    "Audit write failed",
                    audit_id=sealed.audit_id,
                    action=sealed.action,
                    error=str(e),
                )
                raise AuditWriteError(
                    f"Failed to write audit entry: {str(e)}",
                    log_entry=sealed.to_log_entry(),
                )

            self._advance(sealed)

        logger.debug(
            "Audit entry appended",
            audit_id=audit_id,
            sequence=sealed.sequence,
            event_type=sealed.event_type.value,
            result=sealed.result.value,
        )
        return audit_id

    def record(
        self,
        event_type: AuditEventType,
        actor_id: str,
        resource_id: str,
        action: str,
        result: AuditResult,
        resource_type: str = "patient",
        site_context: Optional[str] = None,
        reason: Optional[ErrorKind] = None,
        justification: Optional[str] = None,
        review_required: bool = False,
        corrects: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        at: Optional[datetime] = None,
    ) -> str:
        """Build an entry from keyword fields and append it."""
        entry = AuditLogEntry(
            audit_id=generate_id("audit"),
            timestamp=at or self.clock(),
            event_type=event_type,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            result=result,
            site_context=site_context,
            reason=reason,
            justification=justification,
            review_required=review_required,
            corrects=corrects,
            details=details or {},
        )
        return self.append(entry)

    def append_correction(
        self,
        original_audit_id: str,
        actor_id: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Record a correction to an earlier entry.

        The original entry is left untouched; the correction references it
        through `corrects`.
        """
        original = self.get_entry(original_audit_id)
        if original is None:
            raise InvalidRequestError(
                f"Cannot correct unknown audit entry: {original_audit_id}",
                field="original_audit_id",
            )
        if not reason or not reason.strip():
            raise InvalidRequestError("Correction reason is required", field="reason")

        audit_id = self.record(
            event_type=AuditEventType.CORRECTION,
            actor_id=actor_id,
            resource_type=original.resource_type,
            resource_id=original.resource_id,
            action="correct",
            result=AuditResult.RECORDED,
            site_context=original.site_context,
            justification=reason,
            corrects=original_audit_id,
            details=details,
        )
        logger.info(
            "Audit correction recorded",
            audit_id=audit_id,
            corrects=original_audit_id,
            actor_id=mask_id(actor_id),
        )
        return audit_id

    def record_review(
        self,
        audit_id: str,
        reviewer_id: str,
        outcome: str,
        notes: str = "",
    ) -> str:
        """
        Record the post-hoc review of a break-glass entry.

        Raises:
            InvalidRequestError: If the entry does not exist, does not need a
                review, or has already been reviewed.
        """
        original = self.get_entry(audit_id)
        if original is None or not original.review_required:
            raise InvalidRequestError(
                f"No reviewable audit entry: {audit_id}", field="audit_id"
            )
        if audit_id in self._reviewed_ids():
            raise InvalidRequestError(f"Audit entry already reviewed: {audit_id}", field="audit_id")

        review_id = self.record(
            event_type=AuditEventType.REVIEW,
            actor_id=reviewer_id,
            resource_type=original.resource_type,
            resource_id=original.resource_id,
            action="review",
            result=AuditResult.RECORDED,
            site_context=original.site_context,
            corrects=audit_id,
            details={"outcome": outcome, "notes": notes},
        )
        logger.info(
            "Break-glass review recorded",
            audit_id=audit_id,
            review_id=review_id,
            outcome=outcome,
        )
        return review_id

    # -------------------------------------------------------------------------
    # Read Path
    # -------------------------------------------------------------------------

    def entries(self) -> List[AuditLogEntry]:
        return self.sink.entries()

    def get_entry(self, audit_id: str) -> Optional[AuditLogEntry]:
        for entry in self.sink.entries():
            if entry.audit_id == audit_id:
                return entry
        return None

    def entries_for(self, resource_id: str) -> List[AuditLogEntry]:
        """Entries for one resource, ordered by timestamp."""
        return sorted(
            (e for e in self.sink.entries() if e.resource_id == resource_id),
            key=lambda e: (e.timestamp, e.sequence),
        )

    def _reviewed_ids(self) -> set:
        return {
            e.corrects for e in self.sink.entries()
            if e.event_type == AuditEventType.REVIEW and e.corrects
        }

    def pending_reviews(self) -> List[AuditLogEntry]:
        """Break-glass entries flagged for review with no review recorded."""
        reviewed = self._reviewed_ids()
        return [
            e for e in self.sink.entries()
            if e.event_type == AuditEventType.BREAK_GLASS
            and e.review_required
            and e.audit_id not in reviewed
        ]

    def query(self, query: Optional[AuditQuery] = None) -> AuditPage:
        """
        Filtered, paginated read of the audit trail.

        Args:
            query: Filters and page; all entries on page 1 if None.
        """
        query = query or AuditQuery()
        entries, total = self.sink.query(query)
        logger.info(
            "Audit trail queried",
            patient_id=mask_id(query.patient_id) if query.patient_id else None,
            site_id=query.site_id,
            total=total,
        )
        return AuditPage(
            entries=entries,
            page=query.page,
            page_size=query.page_size,
            total=total,
        )

    def _all_matching(self, query: AuditQuery) -> List[AuditLogEntry]:
        return sorted(
            (e for e in self.sink.entries() if query.matches(e)),
            key=lambda e: (e.timestamp, e.sequence),
        )

    def compliance_report(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Summarize audit activity in a time window.

        Args:
            start: Window start (inclusive).
            end: Window end (inclusive).

        Returns:
            Counts by action, result, event type and site, plus break-glass
            and review figures.
        """
        window = self._all_matching(AuditQuery(start_date=start, end_date=end))
        reviewed = self._reviewed_ids()
        break_glass = [e for e in window if e.event_type == AuditEventType.BREAK_GLASS]

        report = {
            "period": {"start": start.isoformat(), "end": end.isoformat()},
            "generated_at": self.clock().isoformat(),
            "retention_days": self.retention_days,
            "total_events": len(window),
            "by_action": dict(Counter(e.action for e in window)),
            "by_result": dict(Counter(e.result.value for e in window)),
            "by_event_type": dict(Counter(e.event_type.value for e in window)),
            "by_site": dict(Counter(e.site_context for e in window if e.site_context)),
            "unique_users": len({e.actor_id for e in window}),
            "denials": sum(1 for e in window if e.result == AuditResult.DENIED),
            "errors": sum(1 for e in window if e.result == AuditResult.ERROR),
            "break_glass": {
                "attempts": len(break_glass),
                "granted": sum(1 for e in break_glass if e.result == AuditResult.GRANTED),
                "pending_review": sum(
                    1 for e in break_glass
                    if e.review_required and e.audit_id not in reviewed
                ),
            },
        }

        logger.info(
            "Compliance report generated",
            total_events=report["total_events"],
            denials=report["denials"],
            break_glass=report["break_glass"]["attempts"],
        )
        return report

    def export_csv(self, query: Optional[AuditQuery] = None) -> str:
        """Export every entry matching the query (all pages) as CSV text."""
        query = query or AuditQuery()
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for entry in self._all_matching(query):
            writer.writerow(entry.to_log_entry())
        return buffer.getvalue()

    def verify_chain(self) -> bool:
        """
        Check sequence continuity and hash links over the whole log.

        Returns:
            True if no entry was altered, removed or reordered.
        """
        previous_hash = None
        expected_sequence = 1
        for entry in sorted(self.sink.entries(), key=lambda e: e.sequence):
            if entry.sequence != expected_sequence:
                logger.warning("Audit sequence gap", audit_id=entry.audit_id, sequence=entry.sequence)
                return False
            if entry.previous_hash != previous_hash:
                logger.warning("Audit chain broken", audit_id=entry.audit_id)
                return False
            if not verify_hash(entry.hash_payload(), entry.entry_hash or ""):
                logger.warning("Audit entry hash mismatch", audit_id=entry.audit_id)
                return False
            previous_hash = entry.entry_hash
            expected_sequence += 1
        return True

    @property
    def count(self) -> int:
        return len(self.sink.entries())
