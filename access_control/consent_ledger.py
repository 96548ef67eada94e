"""
Consent Ledger Module
=====================
Per-patient data-sharing consents for cross-site access.

A consent is `active` until it is withdrawn or expires. Withdrawal is
final and applies to every evaluation after it is recorded, including
evaluations whose snapshot time precedes the withdrawal. All checks take an
explicit snapshot time so one decision never sees two different answers.
"""

import threading
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple
import structlog

from core.models import Consent, ConsentState
from core.exceptions import InvalidRequestError
from core.utils import KeyedLocks, mask_id, utc_now

logger = structlog.get_logger(__name__)


class ConsentSnapshot:
    """Frozen view of a patient's consents at one instant."""

    def __init__(self, patient_id: str, consents: Tuple[Consent, ...], at: datetime):
        self.patient_id = patient_id
        self.consents = consents
        self.at = at

    def authorizes(self, site_id: str) -> bool:
        return any(c.authorizes(site_id, self.at) for c in self.consents)

    def authorizing_consent(self, site_id: str) -> Optional[Consent]:
        for consent in self.consents:
            if consent.authorizes(site_id, self.at):
                return consent
        return None


class ConsentLedger:
    """
    Store of patient consents, with optional SQLite write-through.

    Writes are serialized per patient id; reads copy the current records
    into a `ConsentSnapshot`.
    """

    def __init__(self, db=None):
        """
        Initialize consent ledger.

        Args:
            db: Optional AccessControlDB instance for SQLite persistence.
        """
        self._db = db
        self._consents: Dict[str, Dict[str, Consent]] = defaultdict(dict)
        self._locks = KeyedLocks()

        # Pre-load consents from SQLite when db is provided
        if self._db is not None:
            for row in self._db.list_consents():
                consent = Consent(**row)
                self._consents[consent.patient_id][consent.consent_id] = consent

    def _lock_for(self, patient_id: str) -> threading.Lock:
        return self._locks.for_key(patient_id)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def record_consent(self, consent: Consent) -> None:
        """
        Record a new consent or replace one with the same id.

        A withdrawn consent cannot be reinstated by re-recording it; the
        patient must give a new consent with a new id.
        """
        with self._lock_for(consent.patient_id):
            existing = self._consents[consent.patient_id].get(consent.consent_id)
            if existing is not None and existing.withdrawn_at is not None and consent.withdrawn_at is None:
                raise InvalidRequestError(
                    f"Consent {consent.consent_id} was withdrawn and cannot be reinstated",
                    field="consent_id",
                )
            self._consents[consent.patient_id][consent.consent_id] = consent
            if self._db is not None:
                self._db.save_consent(consent)

        logger.info(
            "Consent recorded",
            patient_id=mask_id(consent.patient_id),
            consent_id=consent.consent_id,
            authorized_sites=consent.authorized_sites,
        )

    def withdraw_consent(
        self,
        patient_id: str,
        consent_id: str,
        at: Optional[datetime] = None,
    ) -> bool:
        """
        Withdraw a consent.

        Returns:
            True if an un-withdrawn consent was found and withdrawn.
        """
        at = at or utc_now()
        with self._lock_for(patient_id):
            consent = self._consents[patient_id].get(consent_id)
            if consent is None or consent.withdrawn_at is not None:
                logger.warning(
                    "No consent to withdraw",
                    patient_id=mask_id(patient_id),
                    consent_id=consent_id,
                )
                return False

            withdrawn = consent.model_copy(update={"withdrawn_at": at})
            self._consents[patient_id][consent_id] = withdrawn
            if self._db is not None:
                self._db.save_consent(withdrawn)

        logger.info(
            "Consent withdrawn",
            patient_id=mask_id(patient_id),
            consent_id=consent_id,
        )
        return True

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def consents_for(self, patient_id: str) -> List[Consent]:
        with self._lock_for(patient_id):
            return list(self._consents.get(patient_id, {}).values())

    def active_consents(self, patient_id: str, at: datetime) -> List[Consent]:
        return [
            c for c in self.consents_for(patient_id)
            if c.state_at(at) == ConsentState.ACTIVE
        ]

    def snapshot(
        self,
        patient_id: str,
        at: datetime,
        extra_consents: Optional[List[Consent]] = None,
    ) -> ConsentSnapshot:
        """
        Freeze the consents for a patient at a decision's start time.

        Consents carried on patient metadata are merged in; a ledger record
        with the same consent id takes precedence, so a withdrawal recorded
        here is never masked by a stale upstream copy.
        """
        merged: Dict[str, Consent] = {
            c.consent_id: c for c in extra_consents or [] if c.patient_id == patient_id
        }
        for consent in self.consents_for(patient_id):
            merged[consent.consent_id] = consent
        return ConsentSnapshot(patient_id, tuple(merged.values()), at)

    def is_authorized(self, patient_id: str, site_id: str, at: datetime) -> bool:
        """
        True iff an active consent for the patient lists the site.

        Args:
            patient_id: Patient whose consent is checked.
            site_id: Site requesting access.
            at: Snapshot time of the enclosing decision.
        """
        return self.snapshot(patient_id, at).authorizes(site_id)
