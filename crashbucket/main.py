"""Composition root for the crashbucket ingestion engine.

This module is the ONLY location that imports both core domain logic
and concrete adapter implementations. All wiring of dependencies
happens here, creating a clear entry point for the application.

Module Structure:
- Configuration loading via config module
- Adapter instantiation
- Core service initialization
- Entry point selection (server or CLI)
"""

import asyncio
import json
import logging
import signal
import sys
from dataclasses import dataclass

import structlog

from crashbucket.adapters.cli.commands import run_command
from crashbucket.adapters.decoder.proguard import ProGuardDecoder
from crashbucket.adapters.registry.http import HTTPAppRegistry
from crashbucket.adapters.registry.static import StaticAppRegistry
from crashbucket.adapters.store.sqlite import SQLiteCrashStore
from crashbucket.adapters.webhook.http_server import CrashBucketHTTPServer
from crashbucket.adapters.webhook.receiver import WebhookReceiver
from crashbucket.config import Settings, load_settings
from crashbucket.core.decoding import DecodeCoordinator
from crashbucket.core.ingestion_service import IngestionService
from crashbucket.core.management_service import ManagementService
from crashbucket.core.models import GroupStatus
from crashbucket.core.ports import AppRegistryPort, CrashStorePort
from crashbucket.core.reconciliation import MergePolicy, ReconciliationService
from crashbucket.core.resolver import GroupResolver


def json_log_formatter() -> logging.Formatter:
    """Formatter rendering stdlib records, including ``extra={...}`` fields, as JSON lines."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.ExtraAdder(),
            structlog.processors.TimeStamper(fmt="iso"),
        ],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
    )


def configure_logging(log_level: str, log_format: str) -> None:
    """Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_format: Log format (json, text).
    """
    level = getattr(logging, log_level, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(json_log_formatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)


@dataclass
class Application:
    """Everything bootstrap wires together, for run modes and shutdown."""

    settings: Settings
    store: CrashStorePort
    registry: AppRegistryPort
    ingestion: IngestionService
    management: ManagementService
    stop_event: asyncio.Event

    async def close(self) -> None:
        await self.store.close_pool()
        if isinstance(self.registry, HTTPAppRegistry):
            await self.registry.close()


def build_store(settings: Settings) -> CrashStorePort:
    """Crash store adapter selected by settings.store_backend."""
    if settings.store_backend == "postgresql":
        # Lazy import for optional PostgreSQL dependency
        from crashbucket.adapters.store.postgresql import PostgreSQLCrashStore

        return PostgreSQLCrashStore(dsn=settings.database_url)
    return SQLiteCrashStore(db_path=settings.store_sqlite_path)


def build_registry(settings: Settings) -> AppRegistryPort:
    """App registry adapter selected by settings.registry_backend."""
    if settings.registry_backend == "http":
        return HTTPAppRegistry(
            api_url=settings.registry_api_url,
            api_token=settings.registry_api_token,
        )
    return StaticAppRegistry.from_file(settings.registry_file)


def build_application(
    settings: Settings,
    store: CrashStorePort | None = None,
    registry: AppRegistryPort | None = None,
) -> Application:
    """Wire adapters and core services.

    Args:
        settings: Validated settings.
        store: Optional pre-built store (tests pass fakes).
        registry: Optional pre-built registry (tests pass fakes).
    """
    logger = logging.getLogger(__name__)

    store = store if store is not None else build_store(settings)
    registry = registry if registry is not None else build_registry(settings)
    logger.info(
        f"Adapters: store={settings.store_backend}, registry={settings.registry_backend}"
    )

    coordinator = DecodeCoordinator(
        decoder=ProGuardDecoder(),
        timeout_seconds=settings.decode_timeout_seconds,
        grouping_source=settings.grouping_trace_source,
    )
    resolver = GroupResolver(store, max_attempts=settings.resolver_max_attempts)
    policy = MergePolicy(
        status_priority=tuple(GroupStatus(s) for s in settings.status_priority),
        target_rule=settings.merge_target_rule,
    )
    reconciliation = ReconciliationService(
        store, policy=policy, grouping_source=settings.grouping_trace_source
    )
    stop_event = asyncio.Event()

    return Application(
        settings=settings,
        store=store,
        registry=registry,
        ingestion=IngestionService(store, registry, coordinator, resolver),
        management=ManagementService(
            store, registry, coordinator, reconciliation, stop_event=stop_event
        ),
        stop_event=stop_event,
    )


async def _run_server(app: Application) -> None:
    """Serve SDK submissions and operator endpoints until stopped."""
    logger = logging.getLogger(__name__)
    settings = app.settings

    receiver = WebhookReceiver(ingestion=app.ingestion, management=app.management)
    http_server = CrashBucketHTTPServer(
        receiver=receiver,
        host=settings.server_host,
        port=settings.server_port,
        admin_api_key=settings.admin_api_key or None,
        require_admin_auth=settings.require_admin_auth,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, app.stop_event.set)
        except NotImplementedError:
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    await http_server.start()
    try:
        await app.stop_event.wait()
        logger.info("Shutdown signal received")
    finally:
        await http_server.stop()


async def _run_cli_interactive(app: Application) -> None:
    """Run interactive CLI loop.

    Provides a REPL-like interface for management commands. Each line is
    a command name followed by a JSON object of arguments.
    """
    logger = logging.getLogger(__name__)
    logger.info("Starting interactive CLI. Type 'help' for available commands or 'exit' to quit.")

    loop = asyncio.get_running_loop()

    while True:
        try:
            # Read command from stdin in a thread to avoid blocking
            command_line = await loop.run_in_executor(None, input, "crashbucket> ")
        except EOFError:
            logger.info("EOF received, exiting CLI")
            break
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            continue

        command_line = command_line.strip()
        if not command_line:
            continue
        if command_line.lower() == "exit":
            logger.info("Exiting CLI")
            break
        if command_line.lower() == "help":
            _print_cli_help()
            continue

        parts = command_line.split(maxsplit=1)
        command = parts[0].lower()
        try:
            args = json.loads(parts[1]) if len(parts) > 1 else {}
        except json.JSONDecodeError:
            logger.error("Invalid JSON arguments. Use 'help' for command syntax.")
            continue
        if not isinstance(args, dict):
            logger.error("Arguments must be a JSON object. Use 'help' for command syntax.")
            continue

        try:
            result = await run_command(app.management, command, args)
        except KeyError as e:
            result = {"status": "error", "message": f"Missing required parameter: {e.args[0]}"}
        except ValueError as e:
            result = {"status": "error", "message": str(e)}
        except Exception as e:
            logger.error(f"Command execution error: {e}", exc_info=True)
            result = {"status": "error", "message": str(e)}

        print(json.dumps(result, indent=2, default=str))


def _print_cli_help() -> None:
    """Print CLI help message."""
    help_text = """
Available Commands (JSON format):

  reconcile
    Recompute fingerprints of an application's groups and merge collisions.
    Required: app_id

    Example: reconcile {"app_id": "app-1"}

  status
    Mark a crash group open, resolved or ignored.
    Required: group_id, status

    Example: status {"group_id": "uuid-here", "status": "resolved"}

  delete
    Delete a crash group and all of its crashes.
    Required: group_id

    Example: delete {"group_id": "uuid-here"}

  retrace
    Re-decode a stored crash with its version's mapping file.
    Required: crash_id

    Example: retrace {"crash_id": "uuid-here"}

  details
    Show a crash group with its most recent crashes.
    Required: group_id
    Optional: limit, format (json or text)

    Example: details {"group_id": "uuid-here", "format": "text"}

  help
    Show this help message.

  exit
    Exit the CLI.

Note: All commands accept arguments as a single JSON object.
Provide the JSON after the command name on the same line.
    """
    print(help_text)


async def bootstrap() -> None:
    """Load configuration, wire adapters, and start the application.

    This is the composition root: the single place where all components
    are instantiated and wired together.

    Raises:
        ValidationError: On invalid configuration
        Exception: On adapter initialization or runtime failures
    """
    settings = load_settings()

    configure_logging("DEBUG" if settings.debug else settings.log_level, settings.log_format)
    logger = logging.getLogger(__name__)
    logger.info("Loading crashbucket...")

    app = build_application(settings)

    logger.info(f"Starting in {settings.run_mode} mode...")
    try:
        if settings.run_mode == "server":
            await _run_server(app)
        else:
            await _run_cli_interactive(app)
    finally:
        app.stop_event.set()
        await app.close()


def main() -> None:
    """Application entry point.

    Exit codes:
        0: Successful shutdown
        1: Fatal bootstrap or runtime error
        130: Interrupted by user (SIGINT/KeyboardInterrupt)
    """
    logger = logging.getLogger(__name__)
    try:
        asyncio.run(bootstrap())
    except KeyboardInterrupt:
        logger.warning("Shutdown requested by user (SIGINT)")
        sys.exit(130)
    except asyncio.CancelledError:
        logger.info("Graceful shutdown completed")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
