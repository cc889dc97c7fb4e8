"""Symbol-map decoder adapters.

Implementations:
- ProGuard/R8 mapping files (pure Python)
"""
