"""Fake/mock implementations of core ports for testing.

These in-memory implementations allow core domain logic to be tested
without external dependencies:

- FakeCrashStorePort: In-memory group and crash persistence
- FakeAppRegistryPort: In-memory apps, keys and versions
- FakeDecoderPort / FailingDecoderPort / SlowDecoderPort: Decoder behaviours
- FakeManagementPort: Captured management operations
"""

from .decoder import FailingDecoderPort, FakeDecoderPort, SlowDecoderPort
from .management import FakeManagementPort
from .registry import FakeAppRegistryPort
from .store import FakeCrashStorePort

__all__ = [
    "FailingDecoderPort",
    "FakeAppRegistryPort",
    "FakeCrashStorePort",
    "FakeDecoderPort",
    "FakeManagementPort",
    "SlowDecoderPort",
]
