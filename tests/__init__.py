"""
tagorm Test Suite.

This package contains:
- unit/: Unit tests (recording fake dialect, no database)
- integration/: Integration tests (real SQLite databases in temp dirs)
"""
