"""Static file app registry adapter.

Implements AppRegistryPort from a JSON document listing applications,
their SDK API keys and their registered versions::

    {
      "apps": [
        {
          "app_id": "app-1",
          "package_name": "com.example.app",
          "api_keys": ["key-1"],
          "versions": [
            {"version_code": 42, "version_name": "1.4.2",
             "mute_crashes": false, "mapping_file": "mappings/42.txt"}
          ]
        }
      ]
    }

Mapping file paths are resolved relative to the registry file and read
on demand off the event loop.
"""

import asyncio
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from crashbucket.core.models import AppIdentity, VersionInfo
from crashbucket.core.ports import AppRegistryPort

logger = logging.getLogger(__name__)


class VersionEntry(BaseModel):
    version_code: int
    version_name: str | None = None
    mute_crashes: bool = False
    mapping_file: str | None = None


class AppEntry(BaseModel):
    app_id: str
    package_name: str
    api_keys: list[str] = Field(default_factory=list)
    versions: list[VersionEntry] = Field(default_factory=list)


class RegistryDocument(BaseModel):
    apps: list[AppEntry] = Field(default_factory=list)


class StaticAppRegistry(AppRegistryPort):
    """App registry backed by an in-memory document."""

    def __init__(self, document: RegistryDocument, base_dir: Path | None = None):
        """Initialize the registry.

        Args:
            document: Parsed registry document.
            base_dir: Directory that relative mapping file paths start from.
        """
        self.base_dir = base_dir or Path.cwd()
        self._by_key: dict[str, AppIdentity] = {}
        self._versions: dict[tuple[str, int], VersionEntry] = {}

        for app in document.apps:
            identity = AppIdentity(app_id=app.app_id, package_name=app.package_name)
            for key in app.api_keys:
                if key in self._by_key:
                    raise ValueError(f"API key registered for more than one app: {app.app_id}")
                self._by_key[key] = identity
            for version in app.versions:
                self._versions[(app.app_id, version.version_code)] = version

    @classmethod
    def from_file(cls, path: str) -> "StaticAppRegistry":
        """Load and validate a registry JSON file.

        Raises:
            FileNotFoundError: If the file doesn't exist.
            ValueError: If the document is not a valid registry.
        """
        registry_path = Path(path)
        try:
            document = RegistryDocument.model_validate_json(registry_path.read_text("utf-8"))
        except ValidationError as e:
            raise ValueError(f"Invalid registry file {registry_path}: {e}") from e

        logger.info(
            f"Loaded app registry from {registry_path}",
            extra={"app_count": len(document.apps)},
        )
        return cls(document, base_dir=registry_path.parent)

    async def authenticate(self, api_key: str) -> AppIdentity | None:
        return self._by_key.get(api_key)

    async def get_version(self, app_id: str, version_code: int) -> VersionInfo | None:
        entry = self._versions.get((app_id, version_code))
        if entry is None:
            return None

        symbol_map: bytes | None = None
        if entry.mapping_file:
            mapping_path = self.base_dir / entry.mapping_file
            try:
                symbol_map = await asyncio.to_thread(mapping_path.read_bytes)
            except FileNotFoundError:
                logger.warning(
                    f"Mapping file {mapping_path} for version {version_code} is missing",
                    extra={"app_id": app_id, "version_code": version_code},
                )

        return VersionInfo(
            app_id=app_id,
            version_code=version_code,
            version_name=entry.version_name,
            mute_crashes=entry.mute_crashes,
            symbol_map=symbol_map,
        )
