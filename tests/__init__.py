"""
Tests Package - Unit Tests

Test structure:
- tests/unit/ - Fast, isolated unit tests (SQLite in a temp dir, mocked HTTP and Redis)
- tests/fakes.py - In-memory stand-ins for the upstream client and publisher
- tests/conftest.py - Shared pytest fixtures
"""
