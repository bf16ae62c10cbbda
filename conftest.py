"""Root conftest: keeps the flat modules importable without an install."""
