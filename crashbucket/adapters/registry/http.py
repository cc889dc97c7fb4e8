"""HTTP app registry adapter.

Implements AppRegistryPort against the dashboard's registry API:

- ``GET /api/registry/apps/by-key`` with ``X-API-Key`` returns
  ``{"app_id", "package_name"}``
- ``GET /api/registry/apps/{app_id}/versions/{code}`` returns
  ``{"version_code", "version_name", "mute_crashes", "has_mapping"}``
- ``GET /api/registry/apps/{app_id}/versions/{code}/mapping`` returns the
  raw mapping file

404 means "unknown" and maps to None; every other failure propagates.
"""

import logging

import httpx
from pydantic import BaseModel, ValidationError

from crashbucket.core.models import AppIdentity, VersionInfo
from crashbucket.core.ports import AppRegistryPort

logger = logging.getLogger(__name__)


class _AppResponse(BaseModel):
    app_id: str
    package_name: str


class _VersionResponse(BaseModel):
    version_code: int
    version_name: str | None = None
    mute_crashes: bool = False
    has_mapping: bool = False


class HTTPAppRegistry(AppRegistryPort):
    """Dashboard-backed app registry via REST API."""

    def __init__(
        self,
        api_url: str,
        api_token: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the HTTP registry client.

        Args:
            api_url: Base URL of the dashboard API.
            api_token: Optional bearer token for the registry endpoints.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (tests use MockTransport).
        """
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.client = httpx.AsyncClient(
            base_url=self.api_url,
            headers=self._get_headers(),
            timeout=timeout,
            transport=transport,
        )

    def _get_headers(self) -> dict[str, str]:
        """Build request headers."""
        headers = {"Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.client.aclose()

    async def close(self) -> None:
        """Close the httpx client and clean up resources."""
        await self.client.aclose()

    async def authenticate(self, api_key: str) -> AppIdentity | None:
        try:
            response = await self.client.get(
                "/api/registry/apps/by-key", headers={"X-API-Key": api_key}
            )
            if response.status_code in (401, 404):
                return None
            response.raise_for_status()
            app = _AppResponse.model_validate(response.json())
        except httpx.HTTPError as e:
            logger.error(f"Failed to authenticate API key against registry: {e}")
            raise
        except ValidationError as e:
            raise ValueError(f"Malformed registry app response: {e}") from e

        return AppIdentity(app_id=app.app_id, package_name=app.package_name)

    async def get_version(self, app_id: str, version_code: int) -> VersionInfo | None:
        path = f"/api/registry/apps/{app_id}/versions/{version_code}"
        try:
            response = await self.client.get(path)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            version = _VersionResponse.model_validate(response.json())

            symbol_map: bytes | None = None
            if version.has_mapping:
                mapping_response = await self.client.get(f"{path}/mapping")
                if mapping_response.status_code == 404:
                    logger.warning(
                        f"Registry advertised a mapping for version {version_code} "
                        "but none was found",
                        extra={"app_id": app_id, "version_code": version_code},
                    )
                else:
                    mapping_response.raise_for_status()
                    symbol_map = mapping_response.content
        except httpx.HTTPError as e:
            logger.error(f"Failed to fetch version {version_code} of app {app_id}: {e}")
            raise
        except ValidationError as e:
            raise ValueError(f"Malformed registry version response: {e}") from e

        return VersionInfo(
            app_id=app_id,
            version_code=version.version_code,
            version_name=version.version_name,
            mute_crashes=version.mute_crashes,
            symbol_map=symbol_map,
        )
