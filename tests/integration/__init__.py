"""
AlpacaDeck Integration Tests

Tests against a live ASCOM Alpaca simulator (the OmniSimulator serves
every device type on port 11111). Tests are skipped when no simulator
answers on localhost:11111.

Running:
    pytest tests/integration/ -v -m integration
"""
