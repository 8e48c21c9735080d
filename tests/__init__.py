"""
Test Suite

This module contains all tests for the Smart Forms engine.

Structure:
    tests/
    ├── __init__.py         # This file
    ├── conftest.py         # Pytest fixtures
    └── unit/               # Unit tests
        ├── __init__.py
        ├── test_domain/    # Model construction checks
        ├── test_engine/    # Engine tests
        ├── test_services/  # Service and scheduler tests
        └── test_utils/     # Utility tests

To run tests:
    pytest tests/
    pytest tests/unit/test_engine/
"""
