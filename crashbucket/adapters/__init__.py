"""External adapters for the crashbucket ingestion engine.

This package contains all external dependencies (SQLite, PostgreSQL,
the app registry, HTTP servers, etc.) and provides implementations of
the core port interfaces.

Adapter Organization:

- store/: Group and crash persistence (SQLite, PostgreSQL)
- registry/: App identity, version and mapping lookup (static file, HTTP API)
- decoder/: Symbol-map decoding of obfuscated traces (ProGuard/R8)
- cli/: Command-line interface and management commands
- webhook/: HTTP receiver for SDK submissions and operator requests
"""
