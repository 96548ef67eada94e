"""
Multi-Site Access Core Module
=============================
Data models, exception hierarchy and utility functions shared by the
access-control layer.
"""

from .models import (
    AccessAction,
    AccessiblePatients,
    AccessLevel,
    AuditLogEntry,
    ClinicalRole,
    Consent,
    DataClassification,
    Decision,
    ErrorKind,
    NetworkSettings,
    NetworkSite,
    PatientAccessSummary,
    PatientSiteMetadata,
    TemporaryAccess,
    UserPermission,
)
from .exceptions import AccessControlError, AuditWriteError, EmergencyNotEnabledError
from .utils import setup_logging, utc_now

__all__ = [
    "AccessAction",
    "AccessiblePatients",
    "AccessLevel",
    "AuditLogEntry",
    "ClinicalRole",
    "Consent",
    "DataClassification",
    "Decision",
    "ErrorKind",
    "NetworkSettings",
    "NetworkSite",
    "PatientAccessSummary",
    "PatientSiteMetadata",
    "TemporaryAccess",
    "UserPermission",
    "AccessControlError",
    "AuditWriteError",
    "EmergencyNotEnabledError",
    "setup_logging",
    "utc_now",
]
