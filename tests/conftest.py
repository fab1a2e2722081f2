"""Configuration for pytest testing framework."""

import pytest


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest."""
    config.addinivalue_line("markers", "quick: mark test as fast-running")
    config.addinivalue_line(
        "markers", "integration: mark test as running against a real database"
    )


@pytest.fixture(autouse=True)
def isolated_settings_path(tmp_path, monkeypatch):
    """Point settings lookups at an empty per-test directory."""
    settings_path = tmp_path / "settings"
    settings_path.mkdir()
    monkeypatch.setenv("REPOKIT_SETTINGS_PATH", str(settings_path))
    return settings_path
