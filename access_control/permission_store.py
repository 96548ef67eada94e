"""
Permission Store Module
=======================
Per-user cross-site permission records: home site, standing site grants,
special permissions and temporary grants.

Profiles come from two places. Profiles registered with `put` are held
locally; every other profile is read from the upstream `UserDirectory` on
each snapshot, so a revocation at the identity service applies to the next
call. Temporary grants issued by this layer are kept apart from the profile
and merged onto whichever copy the snapshot returns.

Reads return deep-copied snapshots so a decision never sees a record that
changes underneath it. Writes are serialized per user id.
"""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional
import structlog

from core.models import TemporaryAccess, UserPermission
from core.exceptions import UserNotFoundError
from core.utils import KeyedLocks, mask_id

from access_control.collaborators import UserDirectory

logger = structlog.get_logger(__name__)


class PermissionStore:
    """
    Store of user permission profiles and locally issued grants.

    Upstream profiles are never cached here.
    """

    def __init__(self, user_directory: Optional[UserDirectory] = None):
        """
        Initialize permission store.

        Args:
            user_directory: Upstream identity service for users not held
                locally.
        """
        self.user_directory = user_directory
        self._permissions: Dict[str, UserPermission] = {}
        self._grants: Dict[str, List[TemporaryAccess]] = defaultdict(list)
        self._locks = KeyedLocks()

    def _lock_for(self, user_id: str):
        return self._locks.for_key(user_id)

    def _load_profile(self, user_id: str) -> UserPermission:
        """Local profile if registered, otherwise a fresh upstream read."""
        permission = self._permissions.get(user_id)
        if permission is None and self.user_directory is not None:
            permission = self.user_directory.get_user_permissions(user_id)
        if permission is None:
            raise UserNotFoundError(user_id)
        return permission

    def _merge(self, permission: UserPermission, user_id: str) -> UserPermission:
        known = {g.grant_id for g in permission.temporary_access}
        issued = [g for g in self._grants.get(user_id, []) if g.grant_id not in known]
        return permission.model_copy(
            update={"temporary_access": [*permission.temporary_access, *issued]},
            deep=True,
        )

    # -------------------------------------------------------------------------
    # Profiles
    # -------------------------------------------------------------------------

    def put(self, permission: UserPermission) -> None:
        """Create or replace a locally held profile."""
        with self._lock_for(permission.user_id):
            self._permissions[permission.user_id] = permission.model_copy(deep=True)
        logger.info(
            "User permissions stored",
            user_id=mask_id(permission.user_id),
            home_site=permission.home_site,
            authorized_sites=len(permission.authorized_sites),
        )

    def snapshot(self, user_id: str) -> UserPermission:
        """
        Return a copy of a user's current profile with issued grants merged.

        Raises:
            UserNotFoundError: If neither the store nor the upstream
                directory knows the user.
            CollaboratorError: If the upstream directory cannot be reached.
        """
        with self._lock_for(user_id):
            return self._merge(self._load_profile(user_id), user_id)

    def contains(self, user_id: str) -> bool:
        """Whether the profile is held locally (upstream users are not)."""
        return user_id in self._permissions

    # -------------------------------------------------------------------------
    # Temporary Grants
    # -------------------------------------------------------------------------

    def add_temporary_access(self, user_id: str, grant: TemporaryAccess) -> UserPermission:
        """
        Record a grant issued to a user.

        Grants are never renewed in place: each one is a new record.

        Returns:
            Snapshot of the updated profile.

        Raises:
            UserNotFoundError: If the user is unknown.
        """
        with self._lock_for(user_id):
            permission = self._load_profile(user_id)
            self._grants[user_id].append(grant)
            updated = self._merge(permission, user_id)

        logger.info(
            "Temporary access added",
            user_id=mask_id(user_id),
            grant_id=grant.grant_id,
            target_type=grant.type.value,
            reason=grant.reason.value,
            expires_at=grant.expires_at.isoformat(),
        )
        return updated

    def active_grants(self, user_id: str, at: datetime) -> List[TemporaryAccess]:
        """List grants still valid at the given instant."""
        return [g for g in self.snapshot(user_id).temporary_access if g.is_valid(at)]

    def prune_expired(self, at: datetime) -> int:
        """Drop issued grants that are no longer valid; returns how many."""
        removed = 0
        for user_id in list(self._grants):
            with self._lock_for(user_id):
                grants = self._grants.get(user_id, [])
                kept = [g for g in grants if g.is_valid(at)]
                removed += len(grants) - len(kept)
                if kept:
                    self._grants[user_id] = kept
                else:
                    self._grants.pop(user_id, None)
        if removed:
            logger.info("Expired grants pruned", removed=removed)
        return removed

    @property
    def count(self) -> int:
        return len(self._permissions)
