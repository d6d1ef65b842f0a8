"""Engine settings from the environment or a project config file."""

import os
import re
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .clients.connection import OrgConnection
from .clients.rate_limit import RateLimitGate
from .clients.rest_client import RestDataClient
from .exceptions import ConfigurationError
from .models.migration import DEFAULT_BATCH_SIZE, DEFAULT_BULK_API_THRESHOLD, MigrationOptions

logger = logging.getLogger(__name__)

ENV_PREFIX = "ORG_MIGRATION_"


def org_env_key(org_id: str) -> str:
    """Environment variable stem for an org: my-org -> ORG_MIGRATION_MY_ORG."""
    return ENV_PREFIX + re.sub(r"\W", "_", org_id).upper()


@dataclass
class OrgCredentials:
    """Connection details of one org."""
    org_id: str
    instance_url: str
    access_token: str
    api_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "org_id": self.org_id,
            "instance_url": self.instance_url,
            "access_token": "***" if self.access_token else "",
            "api_version": self.api_version,
        }

    @classmethod
    def from_dict(cls, org_id: str, data: Dict[str, Any]) -> "OrgCredentials":
        return cls(
            org_id=org_id,
            instance_url=data["instance_url"],
            access_token=data["access_token"],
            api_version=data.get("api_version"),
        )


@dataclass
class EngineSettings:
    """Tunables shared by every run of an engine."""
    batch_size: int = DEFAULT_BATCH_SIZE
    bulk_api_threshold: int = DEFAULT_BULK_API_THRESHOLD
    requests_per_second: float = 10.0
    max_concurrent_requests: int = 5
    output_dir: str = "./migration_output"
    api_version: str = "59.0"
    templates_dir: Optional[str] = None
    orgs: Dict[str, OrgCredentials] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Read ORG_MIGRATION_* variables, keeping defaults for the ones not set."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, default: Any, cast=str) -> Any:
            raw = env.get(ENV_PREFIX + name)
            if raw in (None, ""):
                return default
            try:
                return cast(raw)
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {ENV_PREFIX}{name}: {raw}") from e

        return cls(
            batch_size=get("BATCH_SIZE", defaults.batch_size, int),
            bulk_api_threshold=get("BULK_API_THRESHOLD", defaults.bulk_api_threshold, int),
            requests_per_second=get("REQUESTS_PER_SECOND", defaults.requests_per_second, float),
            max_concurrent_requests=get("MAX_CONCURRENT_REQUESTS", defaults.max_concurrent_requests, int),
            output_dir=get("OUTPUT_DIR", defaults.output_dir),
            api_version=get("API_VERSION", defaults.api_version),
            templates_dir=get("TEMPLATES_DIR", None),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> "EngineSettings":
        """Build settings from a config file's settings and orgs sections over the environment."""
        settings = cls.from_env(environ)
        for key in ("batch_size", "bulk_api_threshold", "requests_per_second",
                    "max_concurrent_requests", "output_dir", "api_version", "templates_dir"):
            if key in data.get("settings", {}):
                setattr(settings, key, data["settings"][key])

        for org_id, org_data in data.get("orgs", {}).items():
            settings.orgs[org_id] = OrgCredentials.from_dict(org_id, org_data)
        return settings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "bulk_api_threshold": self.bulk_api_threshold,
            "requests_per_second": self.requests_per_second,
            "max_concurrent_requests": self.max_concurrent_requests,
            "output_dir": self.output_dir,
            "api_version": self.api_version,
            "templates_dir": self.templates_dir,
            "orgs": {k: v.to_dict() for k, v in self.orgs.items()},
        }

    def default_options(self) -> MigrationOptions:
        return MigrationOptions(batch_size=self.batch_size, bulk_api_threshold=self.bulk_api_threshold)

    def credentials_for(self, org_id: str, environ: Optional[Mapping[str, str]] = None) -> OrgCredentials:
        """
        Get an org's credentials from the orgs section or the environment.

        Raises:
            ConfigurationError: If the org is not configured anywhere
        """
        if org_id in self.orgs:
            return self.orgs[org_id]

        env = os.environ if environ is None else environ
        stem = org_env_key(org_id)
        instance_url = env.get(f"{stem}_INSTANCE_URL")
        access_token = env.get(f"{stem}_ACCESS_TOKEN")
        if not instance_url or not access_token:
            raise ConfigurationError(
                f"No credentials for org {org_id}: set {stem}_INSTANCE_URL and {stem}_ACCESS_TOKEN "
                f"or add it to the orgs section"
            )
        return OrgCredentials(org_id=org_id, instance_url=instance_url, access_token=access_token)

    def build_connection(self, org_id: str, environ: Optional[Mapping[str, str]] = None) -> OrgConnection:
        """Create a REST connection to an org behind its own rate-limit gate."""
        credentials = self.credentials_for(org_id, environ)
        client = RestDataClient(
            org_id=org_id,
            instance_url=credentials.instance_url,
            access_token=credentials.access_token,
            api_version=credentials.api_version or self.api_version,
        )
        gate = RateLimitGate(
            max_requests_per_second=self.requests_per_second,
            max_concurrent=self.max_concurrent_requests,
        )
        logger.debug(f"Connection to {org_id} at {credentials.instance_url}")
        return OrgConnection(client, gate)
