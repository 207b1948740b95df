"""
vsrestic launcher test suite.

This package contains:
- unit/: Unit tests (temporary directories, fake server and restic hooks)
- integration/: Full backup cycles against real SQLite savegames
"""
