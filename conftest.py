"""Pytest configuration for Audit Trail Store."""


def pytest_configure(config):
    """Configure pytest with custom settings."""
    # Add custom markers
    config.addinivalue_line(
        "markers", "concurrency: mark test as exercising concurrent writers"
    )
