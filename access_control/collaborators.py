"""
External Collaborator Contracts
===============================
Contracts for the services the access-control layer consumes but does not
own: the patient-record service, the identity/directory service and the
human approval workflow.

Each contract has an in-memory implementation (tests, simulation) and a
REST implementation built on `requests`.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import requests
import structlog

from core.models import PatientSiteMetadata, UserPermission
from core.exceptions import CollaboratorError, PatientNotFoundError, UserNotFoundError
from core.utils import generate_id, mask_id

logger = structlog.get_logger(__name__)


# =============================================================================
# Contracts
# =============================================================================


class PatientDirectory(ABC):
    """Read access to per-patient site metadata."""

    @abstractmethod
    def get_patient_metadata(self, patient_id: str) -> PatientSiteMetadata:
        """
        Fetch site metadata for a patient.

        Raises:
            PatientNotFoundError: If the patient does not exist.
            CollaboratorError: If the service cannot be reached.
        """


class UserDirectory(ABC):
    """Read access to user permission profiles."""

    @abstractmethod
    def get_user_permissions(self, user_id: str) -> UserPermission:
        """
        Fetch the permission profile of a user.

        Raises:
            UserNotFoundError: If the user does not exist.
            CollaboratorError: If the service cannot be reached.
        """


class ApprovalWorkflow(ABC):
    """Submission side of the human approval workflow."""

    @abstractmethod
    def submit_approval_request(self, request: Dict[str, Any]) -> str:
        """Submit a request for sign-off and return its workflow id."""


# =============================================================================
# In-Memory Implementations
# =============================================================================


class InMemoryPatientDirectory(PatientDirectory):
    """Dictionary-backed patient metadata source."""

    def __init__(self, patients: Optional[List[PatientSiteMetadata]] = None):
        self._patients: Dict[str, PatientSiteMetadata] = {}
        for patient in patients or []:
            self.add(patient)

    def add(self, patient: PatientSiteMetadata) -> None:
        self._patients[patient.patient_id] = patient

    def get_patient_metadata(self, patient_id: str) -> PatientSiteMetadata:
        patient = self._patients.get(patient_id)
        if patient is None:
            raise PatientNotFoundError(patient_id)
        return patient.model_copy(deep=True)


class InMemoryUserDirectory(UserDirectory):
    """Dictionary-backed identity service."""

    def __init__(self, users: Optional[List[UserPermission]] = None):
        self._users: Dict[str, UserPermission] = {}
        for user in users or []:
            self.add(user)

    def add(self, user: UserPermission) -> None:
        self._users[user.user_id] = user

    def get_user_permissions(self, user_id: str) -> UserPermission:
        user = self._users.get(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user.model_copy(deep=True)


class InMemoryApprovalWorkflow(ApprovalWorkflow):
    """Records submitted approval requests and hands out workflow ids."""

    def __init__(self):
        self._submitted: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def submit_approval_request(self, request: Dict[str, Any]) -> str:
        workflow_id = generate_id("wf")
        with self._lock:
            self._submitted[workflow_id] = dict(request)
        logger.info("Approval request submitted", workflow_id=workflow_id)
        return workflow_id

    def get_request(self, workflow_id: str) -> Optional[Dict[str, Any]]:
        return self._submitted.get(workflow_id)

    @property
    def submitted(self) -> Dict[str, Dict[str, Any]]:
        return dict(self._submitted)


# =============================================================================
# REST Implementations
# =============================================================================


class _RestClient:
    """Shared session handling for the REST collaborators."""

    service_name = "service"

    def __init__(
        self,
        base_url: str,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

        if auth_token:
            self.session.headers["Authorization"] = f"Bearer {auth_token}"
        self.session.headers["Accept"] = "application/json"

    def _json_object(self, response: requests.Response) -> Dict[str, Any]:
        data = response.json()
        if not isinstance(data, dict):
            raise CollaboratorError(
                self.service_name, f"expected a JSON object, got {type(data).__name__}"
            )
        return data

    def _get_json(self, path: str) -> Optional[Dict[str, Any]]:
        """GET a JSON object; None on 404."""
        url = f"{self.base_url}{path}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise CollaboratorError(self.service_name, str(e))

        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
            return self._json_object(response)
        except (requests.HTTPError, ValueError) as e:
            raise CollaboratorError(self.service_name, str(e))

    def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.post(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            return self._json_object(response)
        except (requests.RequestException, ValueError) as e:
            raise CollaboratorError(self.service_name, str(e))


class RestPatientDirectory(_RestClient, PatientDirectory):
    """Patient-record service reached over HTTP."""

    service_name = "patient-record-service"

    def get_patient_metadata(self, patient_id: str) -> PatientSiteMetadata:
        data = self._get_json(f"/api/patients/{patient_id}/metadata")
        if data is None:
            raise PatientNotFoundError(patient_id)
        try:
            return PatientSiteMetadata(**data)
        except (TypeError, ValueError) as e:
            logger.error(
                "Malformed patient metadata",
                patient_id=mask_id(patient_id),
                error=str(e),
            )
            raise CollaboratorError(self.service_name, f"malformed metadata: {e}")


class RestUserDirectory(_RestClient, UserDirectory):
    """Identity/directory service reached over HTTP."""

    service_name = "identity-service"

    def get_user_permissions(self, user_id: str) -> UserPermission:
        data = self._get_json(f"/api/users/{user_id}/permissions/multi-site")
        if data is None:
            raise UserNotFoundError(user_id)
        try:
            return UserPermission(**data)
        except (TypeError, ValueError) as e:
            raise CollaboratorError(self.service_name, f"malformed permissions: {e}")


class RestApprovalWorkflow(_RestClient, ApprovalWorkflow):
    """Approval workflow service reached over HTTP."""

    service_name = "approval-workflow"

    def submit_approval_request(self, request: Dict[str, Any]) -> str:
        data = self._post_json("/api/access/approvals", request)
        workflow_id = data.get("workflow_id")
        if not workflow_id:
            raise CollaboratorError(self.service_name, "response missing workflow_id")
        return workflow_id
