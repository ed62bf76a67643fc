"""The ``make_device`` fixture lives in tests/conftest.py so every test package can use it."""
