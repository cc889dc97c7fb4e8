"""Command-line interface adapters.

Provides CLI commands for managing crash groups:
- reconcile: Re-bucket an application's groups under the current fingerprint
- status: Mark a group open, resolved or ignored
- delete: Remove a group and its crashes
- retrace: Re-decode a stored crash
- details: Show a group with its most recent crashes
"""
