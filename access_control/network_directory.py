"""
Network Directory Module
========================
Registry of clinical sites in the network together with the network-wide
settings (emergency access, break-glass audit review, grant bounds).
"""

import threading
from typing import Any, Dict, List, Optional
import structlog

from core.models import NetworkSettings, NetworkSite
from core.exceptions import ConfigurationError, DuplicateSiteError, SiteNotFoundError

logger = structlog.get_logger(__name__)


class NetworkDirectory:
    """
    Read-mostly registry of network sites.

    Site ids are globally unique: registering an id twice raises
    `DuplicateSiteError`.
    """

    def __init__(
        self,
        sites: Optional[List[NetworkSite]] = None,
        settings: Optional[NetworkSettings] = None,
        network_id: str = "default-network",
    ):
        """
        Initialize network directory.

        Args:
            sites: Sites to register up front.
            settings: Network-wide settings (defaults if None).
            network_id: Identifier of the network.
        """
        self.network_id = network_id
        self.settings = settings or NetworkSettings()
        self._sites: Dict[str, NetworkSite] = {}
        self._lock = threading.Lock()

        for site in sites or []:
            self.register_site(site)

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "NetworkDirectory":
        """
        Build a directory from the `network` section of config.yaml.

        Args:
            cfg: Full parsed configuration dict.

        Raises:
            ConfigurationError: If a site or the settings block is invalid.
        """
        network = cfg.get("network", {}) or {}
        try:
            settings = NetworkSettings(**(network.get("settings") or {}))
            sites = [NetworkSite(**raw) for raw in network.get("sites") or []]
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid network configuration: {e}", config_key="network")

        directory = cls(
            settings=settings,
            network_id=network.get("network_id", "default-network"),
        )
        for site in sites:
            directory.register_site(site)
        return directory

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register_site(self, site: NetworkSite) -> None:
        """
        Register a site.

        Raises:
            DuplicateSiteError: If the site id is already registered.
        """
        with self._lock:
            if site.site_id in self._sites:
                raise DuplicateSiteError(site.site_id)
            self._sites[site.site_id] = site

        logger.info(
            "Site registered",
            network_id=self.network_id,
            site_id=site.site_id,
            site_type=site.site_type.value,
        )

    def update_settings(self, settings: NetworkSettings) -> None:
        """Replace the network-wide settings."""
        self.settings = settings
        logger.info(
            "Network settings updated",
            network_id=self.network_id,
            emergency_access_enabled=settings.emergency_access_enabled,
        )

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def has_site(self, site_id: str) -> bool:
        return site_id in self._sites

    def get_site(self, site_id: str) -> NetworkSite:
        """
        Retrieve a registered site.

        Raises:
            SiteNotFoundError: If the site is not registered.
        """
        site = self._sites.get(site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        return site

    def list_sites(self) -> List[NetworkSite]:
        return list(self._sites.values())

    @property
    def emergency_access_enabled(self) -> bool:
        return self.settings.emergency_access_enabled

    @property
    def break_glass_audit_required(self) -> bool:
        return self.settings.break_glass_audit_required

    def emergency_enabled_for(self, site_id: str) -> bool:
        """Break-glass needs both the network switch and the site's own flag."""
        if not self.settings.emergency_access_enabled:
            return False
        site = self._sites.get(site_id)
        return site is not None and site.emergency_access_enabled

    @property
    def count(self) -> int:
        return len(self._sites)
