"""App registry adapters.

Implementations support multiple backends:
- Static JSON file (development, small deployments)
- HTTP dashboard API
"""
