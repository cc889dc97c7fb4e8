"""Test suite for the crashbucket ingestion engine.

Organized into three categories:

1. core/: Unit tests for core domain logic
   - Minimal dependencies, fast execution
   - Uses in-memory fakes for ports

2. adapters/: Tests for adapter implementations
   - Tests against real SQLite files, mocked HTTP transports and pools
   - Validates adapter behavior and error mapping

3. fakes/: Port implementations for testing
   - In-memory implementations of CrashStorePort, AppRegistryPort, etc.
   - Used by core unit tests

Top-level test modules cover the CLI, the composition root and
end-to-end workflows wired with real adapters.
"""
