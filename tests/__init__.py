"""
AlpacaDeck Test Suite

Test Organization:
    tests/
    ├── conftest.py          # Shared fixtures (event bus, registry, dispatcher)
    ├── mocks/               # Mock Alpaca clients and a fake clock
    ├── unit/                # Unit tests (no external dependencies)
    └── integration/         # Tests against a running Alpaca simulator

Running Tests:
    # Run all tests
    pytest tests/

    # Unit tests only
    pytest tests/unit/

    # Run with coverage
    pytest tests/ --cov=alpacadeck --cov=services --cov-report=html

Requirements:
    pip install -e ".[test]"

Integration Test Setup:
    Start the ASCOM Alpaca OmniSimulator on localhost:11111, then verify:
        curl http://localhost:11111/management/apiversions
"""
