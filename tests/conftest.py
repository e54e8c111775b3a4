import pytest
from pathlib import Path

from cable_pose import config


@pytest.fixture(autouse=True)
def override_default_config(monkeypatch):
    """
    This fixture automatically runs for every test.
    It uses monkeypatch to change the "DEFAULT_CONFIG_PATH" variable
    """
    monkeypatch.setattr(
        config,
        "DEFAULT_CONFIG_PATH",
        Path(__file__).parent / 'configuration.json' # gives /tests/configuration.json
    )
