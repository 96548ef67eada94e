"""
Multi-Site Access Data Models
=============================
Pydantic models for sites, user permissions, consents, temporary grants,
audit entries and referrals used throughout the access-control layer.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator

from core.utils import ensure_utc, utc_now


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# =============================================================================
# Enums
# =============================================================================


class ClinicalRole(str, Enum):
    """Roles a network user can hold."""

    ATTENDING_PHYSICIAN = "attending_physician"
    FELLOW = "fellow"
    RESIDENT = "resident"
    NURSE_PRACTITIONER = "nurse_practitioner"
    PHYSICIAN_ASSISTANT = "physician_assistant"
    PHARMACIST = "pharmacist"
    NURSE = "nurse"
    CARE_COORDINATOR = "care_coordinator"
    SOCIAL_WORKER = "social_worker"
    GENETIC_COUNSELOR = "genetic_counselor"
    RESEARCHER = "researcher"
    DATA_MANAGER = "data_manager"
    QUALITY_COORDINATOR = "quality_coordinator"
    ADMINISTRATOR = "administrator"


class SiteType(str, Enum):
    """Kinds of clinical site in the network."""

    ACADEMIC_MEDICAL_CENTER = "academic_medical_center"
    COMMUNITY_HOSPITAL = "community_hospital"
    CANCER_CENTER = "cancer_center"
    RESEARCH_INSTITUTE = "research_institute"
    CLINIC_NETWORK = "clinic_network"
    PRIVATE_PRACTICE = "private_practice"


class DataClassification(str, Enum):
    """Sensitivity tier of a patient record."""

    STANDARD = "standard"
    SENSITIVE = "sensitive"
    RESTRICTED = "restricted"
    HIGHLY_RESTRICTED = "highly_restricted"


class AccessAction(str, Enum):
    """Actions that can be requested on a patient record."""

    VIEW = "view"
    EDIT = "edit"
    EXPORT = "export"


class AccessLevel(str, Enum):
    """Level of access carried by a temporary or break-glass grant."""

    READ_ONLY = "read_only"
    READ_WRITE = "read_write"
    FULL = "full"

    def permits(self, action: AccessAction) -> bool:
        """Check whether this level covers the requested action."""
        return action in _LEVEL_ACTIONS[self]


_LEVEL_ACTIONS = {
    AccessLevel.READ_ONLY: {AccessAction.VIEW},
    AccessLevel.READ_WRITE: {AccessAction.VIEW, AccessAction.EDIT},
    AccessLevel.FULL: {AccessAction.VIEW, AccessAction.EDIT, AccessAction.EXPORT},
}


class SiteAccessLevel(str, Enum):
    """Scope of a standing grant to a non-home site."""

    FULL = "full"
    DEPARTMENT_ONLY = "department_only"
    CONSULTATION = "consultation"
    RESEARCH = "research"
    EMERGENCY_ONLY = "emergency_only"


class SpecialPermissionType(str, Enum):
    """Special permissions that lift data-classification restrictions."""

    BREAK_GLASS = "break_glass"
    RESEARCH_COORDINATOR = "research_coordinator"
    QUALITY_ASSURANCE = "quality_assurance"
    LEGAL_HOLD = "legal_hold"
    PUBLIC_HEALTH = "public_health"


class ConsentType(str, Enum):
    """Purpose a data-sharing consent was given for."""

    TREATMENT = "treatment"
    RESEARCH = "research"
    QUALITY_IMPROVEMENT = "quality_improvement"
    POPULATION_HEALTH = "population_health"


class ConsentState(str, Enum):
    """Effective state of a consent at a given instant."""

    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"


class TemporaryAccessType(str, Enum):
    """Target kind of a temporary grant."""

    PATIENT = "patient"
    SITE = "site"


class TemporaryAccessReason(str, Enum):
    """Why elevated access is requested."""

    EMERGENCY = "emergency"
    COVERAGE = "coverage"
    CONSULTATION = "consultation"
    TRANSFER = "transfer"


class TemporaryAccessState(str, Enum):
    """Lifecycle state of a temporary grant."""

    REQUESTED = "requested"
    AUTO_GRANTED = "auto_granted"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ErrorKind(str, Enum):
    """Reason codes attached to denied or failed decisions."""

    AUTHENTICATION_REQUIRED = "authentication_required"
    SITE_ACCESS_DENIED = "site_access_denied"
    PATIENT_RESTRICTED = "patient_restricted"
    CONSENT_REQUIRED = "consent_required"
    EMERGENCY_NOT_ENABLED = "emergency_not_enabled"
    APPROVAL_REQUIRED = "approval_required"
    AUDIT_WRITE_FAILURE = "audit_write_failure"
    PATIENT_NOT_FOUND = "patient_not_found"
    USER_NOT_FOUND = "user_not_found"
    INVALID_REQUEST = "invalid_request"
    ACCESS_ERROR = "access_error"


class DecisionBasis(str, Enum):
    """What satisfied the consent step of an allowed decision."""

    SAME_SITE = "same_site"
    CONSENT = "consent"
    TEMPORARY_GRANT = "temporary_grant"


class AuditEventType(str, Enum):
    """Kinds of audit entries."""

    ACCESS_DECISION = "access_decision"
    TEMPORARY_ACCESS = "temporary_access"
    BREAK_GLASS = "break_glass"
    REFERRAL = "referral"
    CONSENT = "consent"
    CORRECTION = "correction"
    REVIEW = "review"


class AuditResult(str, Enum):
    """Outcome recorded on an audit entry."""

    ALLOWED = "allowed"
    DENIED = "denied"
    ERROR = "error"
    GRANTED = "granted"
    GRANTED_AUTO = "granted-auto"
    PENDING_APPROVAL = "pending-approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    REDIRECTED = "redirected"
    RECORDED = "recorded"


class ReferralStatus(str, Enum):
    """Status of a cross-site referral."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    EXPIRED = "expired"


class ReferralUrgency(str, Enum):
    ROUTINE = "routine"
    URGENT = "urgent"
    EMERGENT = "emergent"


# =============================================================================
# Network Models
# =============================================================================


class NetworkSite(BaseModel):
    """A registered clinical site."""

    site_id: str = Field(..., min_length=1, description="Globally unique site identifier")
    site_name: str = Field(default="")
    site_type: SiteType = Field(default=SiteType.COMMUNITY_HOSPITAL)
    country: Optional[str] = Field(default=None)
    timezone: str = Field(default="UTC")
    data_classification_default: DataClassification = Field(
        default=DataClassification.STANDARD
    )
    emergency_access_enabled: bool = Field(default=True)
    auto_approve_roles: List[ClinicalRole] = Field(
        default_factory=list,
        description="Roles pre-authorized for coverage/transfer auto-approval",
    )


class NetworkSettings(BaseModel):
    """Network-wide access settings."""

    emergency_access_enabled: bool = Field(default=True)
    break_glass_audit_required: bool = Field(default=True)
    break_glass_access_level: AccessLevel = Field(default=AccessLevel.READ_ONLY)
    break_glass_duration_hours: int = Field(default=24, ge=1)
    min_temporary_access_hours: int = Field(default=1, ge=1)
    max_temporary_access_hours: int = Field(default=720, ge=1)
    referral_expiry_days: int = Field(default=30, ge=1)
    audit_retention_days: int = Field(default=2555, ge=1)


# =============================================================================
# Permission Models
# =============================================================================


class TimeWindowRestriction(BaseModel):
    """Access is valid only while `at < expires_at`."""

    kind: Literal["time_window"] = "time_window"
    expires_at: UtcDatetime
    reason: str = ""

    def allows(self, at: datetime, role: ClinicalRole) -> bool:
        return at < self.expires_at


class RoleLimitedRestriction(BaseModel):
    """Access is valid only for the listed roles."""

    kind: Literal["role_limited"] = "role_limited"
    roles: List[ClinicalRole] = Field(default_factory=list)
    reason: str = ""

    def allows(self, at: datetime, role: ClinicalRole) -> bool:
        return role in self.roles


AccessRestriction = Annotated[
    Union[TimeWindowRestriction, RoleLimitedRestriction],
    Field(discriminator="kind"),
]


class SiteAccess(BaseModel):
    """Grant of access to one non-home site."""

    site_id: str = Field(..., description="Site the grant applies to")
    access_level: SiteAccessLevel = Field(default=SiteAccessLevel.FULL)
    authorized_by: str = Field(default="")
    authorized_at: UtcDatetime = Field(default_factory=utc_now)
    restrictions: List[AccessRestriction] = Field(default_factory=list)
    departments: List[str] = Field(default_factory=list)

    def is_valid(self, at: datetime, role: ClinicalRole) -> bool:
        """Check every restriction holds at the given instant."""
        return all(r.allows(at, role) for r in self.restrictions)


class SpecialPermission(BaseModel):
    """A special permission held by a user."""

    type: SpecialPermissionType
    scope: str = Field(default="network")
    granted_by: str = Field(default="")
    granted_at: UtcDatetime = Field(default_factory=utc_now)
    expires_at: Optional[UtcDatetime] = Field(default=None)

    def is_active(self, at: datetime) -> bool:
        return self.expires_at is None or at < self.expires_at


class TemporaryAccess(BaseModel):
    """
    Time-boxed elevated grant.

    Validity is computed from `granted_at + duration_hours`; there is no
    explicit revoke step.
    """

    grant_id: str = Field(..., description="Unique grant identifier")
    type: TemporaryAccessType
    target_id: str = Field(..., description="Patient or site the grant targets")
    reason: TemporaryAccessReason
    access_level: AccessLevel = Field(default=AccessLevel.READ_ONLY)
    granted_by: str = Field(default="system")
    granted_at: UtcDatetime = Field(default_factory=utc_now)
    duration_hours: int = Field(..., ge=1)
    state: TemporaryAccessState = Field(default=TemporaryAccessState.REQUESTED)
    workflow_id: Optional[str] = Field(default=None)
    justification: str = Field(default="")

    @property
    def expires_at(self) -> datetime:
        return self.granted_at + timedelta(hours=self.duration_hours)

    def state_at(self, at: datetime) -> TemporaryAccessState:
        """Effective state, with expiry derived from the clock."""
        if self.state in (TemporaryAccessState.AUTO_GRANTED, TemporaryAccessState.ACTIVE):
            if at >= self.expires_at:
                return TemporaryAccessState.EXPIRED
        return self.state

    def is_valid(self, at: datetime) -> bool:
        return self.state_at(at) in (
            TemporaryAccessState.AUTO_GRANTED,
            TemporaryAccessState.ACTIVE,
        )

    def covers(self, target_type: TemporaryAccessType, target_id: str, at: datetime) -> bool:
        return self.type == target_type and self.target_id == target_id and self.is_valid(at)


class UserPermission(BaseModel):
    """A user's network-wide access profile."""

    user_id: str = Field(..., min_length=1)
    role: ClinicalRole
    home_site: str = Field(..., min_length=1, description="Site where the account is provisioned")
    authorized_sites: List[SiteAccess] = Field(default_factory=list)
    special_permissions: List[SpecialPermission] = Field(default_factory=list)
    temporary_access: List[TemporaryAccess] = Field(default_factory=list)

    def has_site_access(self, site_id: str, at: datetime) -> bool:
        """Home site, a valid standing grant, or an active site-type grant."""
        if site_id == self.home_site:
            return True
        if any(
            access.site_id == site_id and access.is_valid(at, self.role)
            for access in self.authorized_sites
        ):
            return True
        return any(
            grant.covers(TemporaryAccessType.SITE, site_id, at)
            for grant in self.temporary_access
        )

    def has_special_permission(
        self, types: List[SpecialPermissionType], at: datetime
    ) -> bool:
        return any(p.type in types and p.is_active(at) for p in self.special_permissions)

    def patient_grant(
        self, patient_id: str, action: AccessAction, at: datetime
    ) -> Optional[TemporaryAccess]:
        """Return an active patient grant covering the action, if any."""
        for grant in self.temporary_access:
            if grant.covers(TemporaryAccessType.PATIENT, patient_id, at) and (
                grant.access_level.permits(action)
            ):
                return grant
        return None


# =============================================================================
# Consent and Patient Models
# =============================================================================


class Consent(BaseModel):
    """Patient authorization to share data with specific sites."""

    consent_id: str = Field(..., description="Unique consent identifier")
    patient_id: str = Field(..., min_length=1)
    consent_type: ConsentType = Field(default=ConsentType.TREATMENT)
    authorized_sites: List[str] = Field(default_factory=list)
    restrictions: List[str] = Field(default_factory=list)
    granted_at: UtcDatetime = Field(default_factory=utc_now)
    expires_at: Optional[UtcDatetime] = Field(default=None)
    withdrawn_at: Optional[UtcDatetime] = Field(default=None)

    def state_at(self, at: datetime) -> ConsentState:
        """
        Effective consent state at a snapshot time.

        A withdrawal is final: a withdrawn consent never authorizes access,
        including for instants before `withdrawn_at`.
        """
        if self.withdrawn_at is not None:
            return ConsentState.WITHDRAWN
        if self.expires_at is not None and self.expires_at <= at:
            return ConsentState.EXPIRED
        return ConsentState.ACTIVE

    def authorizes(self, site_id: str, at: datetime) -> bool:
        return site_id in self.authorized_sites and self.state_at(at) == ConsentState.ACTIVE


class PatientSiteMetadata(BaseModel):
    """Per-patient site and sharing context."""

    patient_id: str = Field(..., min_length=1)
    origin_site: Optional[str] = Field(default=None, description="Site of first registration")
    primary_site: str = Field(..., min_length=1, description="Current primary care site")
    authorized_sites: List[str] = Field(default_factory=list)
    data_classification: DataClassification = Field(default=DataClassification.STANDARD)
    data_sharing_consents: List[Consent] = Field(default_factory=list)


# =============================================================================
# Decision and Result Models
# =============================================================================


class Decision(BaseModel):
    """Result of an access evaluation."""

    allowed: bool
    reason: Optional[ErrorKind] = None
    site_context: Optional[str] = None
    requires_justification: bool = False
    basis: Optional[DecisionBasis] = None
    grant_id: Optional[str] = None
    audit_id: Optional[str] = None
    evaluated_at: UtcDatetime = Field(default_factory=utc_now)


class PatientAccessSummary(BaseModel):
    """Breakdown of accessible patients by what allowed the access."""

    home_site_patients: int = 0
    consent_patients: int = 0
    consultation_patients: int = 0
    emergency_access: int = 0
    temporary_grant_patients: int = Field(
        default=0, description="All patients reached through a patient grant"
    )


class AccessiblePatients(BaseModel):
    """Patients an actor may access, in request order, with a summary."""

    patient_ids: List[str] = Field(default_factory=list)
    total_count: int = 0
    summary: PatientAccessSummary = Field(default_factory=PatientAccessSummary)


class TemporaryAccessRequest(BaseModel):
    """Request for time-boxed elevated access."""

    type: TemporaryAccessType
    target_id: str = Field(..., min_length=1)
    reason: TemporaryAccessReason
    justification: str = Field(default="")
    duration_hours: int
    requested_access_level: AccessLevel = Field(default=AccessLevel.READ_ONLY)


class TemporaryAccessResult(BaseModel):
    """Outcome of a temporary access request."""

    approved: bool
    access_granted: Optional[TemporaryAccess] = None
    requires_approval: bool = False
    approval_workflow_id: Optional[str] = None
    redirect: Optional[str] = None
    audit_id: Optional[str] = None


class BreakGlassResult(BaseModel):
    """Outcome of a break-glass request."""

    granted: bool
    access_level: Optional[AccessLevel] = None
    expires_at: Optional[UtcDatetime] = None
    audit_id: str
    review_required: bool = False
    grant_id: Optional[str] = None
    reason: Optional[ErrorKind] = None


# =============================================================================
# Audit Models
# =============================================================================


class AuditLogEntry(BaseModel):
    """One immutable access event. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    audit_id: str = Field(..., description="Unique audit identifier")
    sequence: int = Field(default=0, ge=0)
    timestamp: UtcDatetime = Field(default_factory=utc_now)
    event_type: AuditEventType = Field(default=AuditEventType.ACCESS_DECISION)
    actor_id: str
    resource_type: str = Field(default="patient")
    resource_id: str
    action: str
    result: AuditResult
    site_context: Optional[str] = None
    reason: Optional[ErrorKind] = None
    justification: Optional[str] = None
    review_required: bool = False
    corrects: Optional[str] = Field(default=None, description="Audit id this entry refers to")
    details: Dict[str, Any] = Field(default_factory=dict)
    previous_hash: Optional[str] = None
    entry_hash: Optional[str] = None

    def to_log_entry(self) -> dict:
        """Convert to a flat, JSON-serialisable record."""
        return self.model_dump(mode="json")

    def hash_payload(self) -> dict:
        """Fields covered by the chain hash."""
        return self.model_dump(mode="json", exclude={"entry_hash"})


class AuditQuery(BaseModel):
    """Filters for the compliance read path."""

    patient_id: Optional[str] = None
    resource_id: Optional[str] = None
    site_id: Optional[str] = None
    user_id: Optional[str] = None
    actions: Optional[List[str]] = None
    result: Optional[AuditResult] = None
    event_type: Optional[AuditEventType] = None
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=1000)

    def matches(self, entry: AuditLogEntry) -> bool:
        if self.patient_id and not (
            entry.resource_type == "patient" and entry.resource_id == self.patient_id
        ):
            return False
        if self.resource_id and entry.resource_id != self.resource_id:
            return False
        if self.site_id and entry.site_context != self.site_id:
            return False
        if self.user_id and entry.actor_id != self.user_id:
            return False
        if self.actions and entry.action not in self.actions:
            return False
        if self.result and entry.result != self.result:
            return False
        if self.event_type and entry.event_type != self.event_type:
            return False
        if self.start_date and entry.timestamp < self.start_date:
            return False
        if self.end_date and entry.timestamp > self.end_date:
            return False
        return True


class AuditPage(BaseModel):
    """One page of audit query results."""

    entries: List[AuditLogEntry] = Field(default_factory=list)
    page: int = 1
    page_size: int = 50
    total: int = 0

    @property
    def pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.total else 0


# =============================================================================
# Referral Models
# =============================================================================


class ReferralDetails(BaseModel):
    """Clinical details supplied when creating a referral."""

    specialty: str = Field(default="")
    urgency: ReferralUrgency = Field(default=ReferralUrgency.ROUTINE)
    reason: str = Field(default="")
    from_provider: Optional[str] = None
    to_provider: Optional[str] = None
    data_shared: List[str] = Field(default_factory=list)
    follow_up_required: bool = False


class CrossSiteReferral(BaseModel):
    """Patient hand-off between sites."""

    referral_id: str
    from_site: str
    to_site: str
    patient_id: str
    requested_by: str
    specialty: str = ""
    urgency: ReferralUrgency = ReferralUrgency.ROUTINE
    reason: str = ""
    from_provider: Optional[str] = None
    to_provider: Optional[str] = None
    status: ReferralStatus = ReferralStatus.PENDING
    created_at: UtcDatetime = Field(default_factory=utc_now)
    responded_at: Optional[UtcDatetime] = None
    responded_by: Optional[str] = None
    data_shared: List[str] = Field(default_factory=list)
    follow_up_required: bool = False
    expires_at: Optional[UtcDatetime] = None

    @field_validator("to_site")
    @classmethod
    def validate_sites_differ(cls, v: str, info) -> str:
        """Ensure a referral never points back at its origin site."""
        if v == info.data.get("from_site"):
            raise ValueError("Referral sites must differ")
        return v

    def status_at(self, at: datetime) -> ReferralStatus:
        """Effective status, with expiry derived from the clock."""
        if (
            self.status == ReferralStatus.PENDING
            and self.expires_at is not None
            and at >= self.expires_at
        ):
            return ReferralStatus.EXPIRED
        return self.status
