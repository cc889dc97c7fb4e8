"""Integration tests for the composition root.

These tests verify that configuration is loaded and validated, adapters
are selected from settings, core services are wired together, and the
entry point maps failures to exit codes.
"""

import asyncio
import inspect
import json
import logging
import os
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import structlog
from pydantic import ValidationError

from crashbucket.adapters.registry.http import HTTPAppRegistry
from crashbucket.adapters.registry.static import StaticAppRegistry
from crashbucket.adapters.store.sqlite import SQLiteCrashStore
from crashbucket.config import Settings, load_settings
from crashbucket.core.models import GroupStatus
from crashbucket.main import (
    build_application,
    build_registry,
    build_store,
    configure_logging,
    json_log_formatter,
    main,
)
from crashbucket.tests.fakes import FakeAppRegistryPort, FakeCrashStorePort


@pytest.fixture
def registry_file(tmp_path: Path) -> Path:
    path = tmp_path / "registry.json"
    path.write_text(json.dumps({"apps": []}))
    return path


@pytest.fixture
def restore_logging():
    """Put root logging back after a test reconfigures it."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigurationLoading:
    """Test configuration loading and validation."""

    def test_load_settings_with_defaults(self) -> None:
        settings = load_settings()
        assert settings.store_backend == "sqlite"
        assert settings.registry_backend == "static"
        assert settings.grouping_trace_source == "raw"
        assert settings.decode_timeout_seconds == 10.0
        assert settings.status_priority == ("open", "resolved", "ignored")
        assert settings.run_mode == "server"

    def test_load_settings_from_env(self) -> None:
        with patch.dict(
            os.environ,
            {
                "GROUPING_TRACE_SOURCE": "decoded",
                "MERGE_STATUS_PRIORITY": "Ignored, open ,resolved",
                "RUN_MODE": "cli",
                "LOG_LEVEL": "DEBUG",
            },
        ):
            settings = load_settings()
        assert settings.grouping_trace_source == "decoded"
        assert settings.status_priority == ("ignored", "open", "resolved")
        assert settings.run_mode == "cli"
        assert settings.log_level == "DEBUG"

    def test_load_settings_from_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / "test.env"
        env_file.write_text("SERVER_PORT=9090\nRESOLVER_MAX_ATTEMPTS=8\n")

        settings = load_settings(str(env_file))

        assert settings.server_port == 9090
        assert settings.resolver_max_attempts == 8

    @pytest.mark.parametrize(
        "env",
        [
            {"DECODE_TIMEOUT_SECONDS": "0"},
            {"RESOLVER_MAX_ATTEMPTS": "0"},
            {"MERGE_STATUS_PRIORITY": "open,resolved"},
            {"MERGE_STATUS_PRIORITY": "open,open,resolved,ignored"},
            {"SERVER_PORT": "70000"},
            {"STORE_BACKEND": "postgresql"},
            {"REQUIRE_ADMIN_AUTH": "true"},
            {"GROUPING_TRACE_SOURCE": "symbolicated"},
        ],
    )
    def test_invalid_settings_are_rejected(self, env: dict[str, str]) -> None:
        with patch.dict(os.environ, env):
            with pytest.raises(ValidationError):
                load_settings()


class TestAdapterSelection:
    """Adapters are chosen from settings."""

    @pytest.mark.asyncio
    async def test_sqlite_store(self, tmp_path: Path) -> None:
        store = build_store(Settings(store_sqlite_path=str(tmp_path / "db" / "crashes.db")))
        assert isinstance(store, SQLiteCrashStore)
        assert (tmp_path / "db").is_dir()
        await store.close_pool()

    def test_postgresql_store(self) -> None:
        from crashbucket.adapters.store.postgresql import PostgreSQLCrashStore

        store = build_store(
            Settings(store_backend="postgresql", database_url="postgresql://u@h/db")
        )
        assert isinstance(store, PostgreSQLCrashStore)
        assert store.dsn == "postgresql://u@h/db"

    def test_static_registry(self, registry_file: Path) -> None:
        registry = build_registry(Settings(registry_file=str(registry_file)))
        assert isinstance(registry, StaticAppRegistry)

    @pytest.mark.asyncio
    async def test_http_registry(self) -> None:
        registry = build_registry(
            Settings(registry_backend="http", registry_api_url="https://dash.example.com/")
        )
        assert isinstance(registry, HTTPAppRegistry)
        assert registry.api_url == "https://dash.example.com"
        await registry.close()


class TestDependencyWiring:
    """build_application hands settings through to the core services."""

    @pytest.mark.asyncio
    async def test_services_share_store_and_registry(self) -> None:
        store, registry = FakeCrashStorePort(), FakeAppRegistryPort()
        settings = Settings(
            grouping_trace_source="decoded",
            decode_timeout_seconds=2.5,
            resolver_max_attempts=9,
            merge_target_rule="current_fingerprint",
            merge_status_priority="resolved,open,ignored",
        )

        app = build_application(settings, store=store, registry=registry)

        assert app.ingestion.store is store
        assert app.ingestion.registry is registry
        assert app.ingestion.resolver.max_attempts == 9
        assert app.ingestion.coordinator.timeout_seconds == 2.5
        assert app.ingestion.coordinator.grouping_source == "decoded"
        reconciliation = app.management.reconciliation
        assert reconciliation.grouping_source == "decoded"
        assert reconciliation.policy.target_rule == "current_fingerprint"
        assert reconciliation.policy.status_priority[0] is GroupStatus.RESOLVED
        assert app.management.stop_event is app.stop_event

    @pytest.mark.asyncio
    async def test_close_releases_store(self) -> None:
        store = FakeCrashStorePort()
        app = build_application(Settings(), store=store, registry=FakeAppRegistryPort())

        await app.close()

        assert store.closed


class TestLoggingConfiguration:
    """Test logging configuration."""

    def test_json_formatter_includes_extra_fields(self) -> None:
        record = logging.LogRecord(
            "crashbucket.core.resolver", logging.INFO, __file__, 1, "Created %s", ("g-1",), None
        )
        record.app_id = "app-1"

        payload = json.loads(json_log_formatter().format(record))

        assert payload["event"] == "Created g-1"
        assert payload["level"] == "info"
        assert payload["logger"] == "crashbucket.core.resolver"
        assert payload["app_id"] == "app-1"
        assert "timestamp" in payload

    def test_json_formatter_renders_exception(self) -> None:
        try:
            raise RuntimeError("disk full")
        except RuntimeError:
            exc_info = sys.exc_info()
        record = logging.LogRecord(
            "crashbucket.main", logging.ERROR, __file__, 1, "Fatal error", (), exc_info
        )

        payload = json.loads(json_log_formatter().format(record))

        assert payload["event"] == "Fatal error"
        assert "RuntimeError: disk full" in payload["exception"]

    @pytest.mark.parametrize("log_format", ["json", "text"])
    def test_configure_logging(self, restore_logging, log_format: str) -> None:
        configure_logging("WARNING", log_format)

        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert len(root.handlers) == 1
        assert isinstance(
            root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter
        ) == (log_format == "json")


class TestEntryPoint:
    """main() exit codes."""

    @pytest.mark.parametrize(
        "error,code",
        [(KeyboardInterrupt(), 130), (RuntimeError("boom"), 1), (asyncio.CancelledError(), 0)],
    )
    def test_exit_codes(self, error: BaseException, code: int) -> None:
        with (
            patch("crashbucket.main.bootstrap", MagicMock()),
            patch("crashbucket.main.asyncio.run", side_effect=error),
        ):
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == code

    def test_bootstrap_is_a_coroutine_function(self) -> None:
        from crashbucket.main import bootstrap

        assert inspect.iscoroutinefunction(bootstrap)
