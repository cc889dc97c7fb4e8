"""HTTP adapters.

Provides HTTP endpoints for SDKs and operators:
- Receive crash submissions from client SDKs
- Change group status, delete groups, retrace crashes
- Trigger reconciliation for an application
"""
