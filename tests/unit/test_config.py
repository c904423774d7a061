import logging

import pytest
from pydantic import ValidationError

from genbridge.config import Settings, configure_logging


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("COMFYUI_URL", "http://10.0.0.5:8188")
    monkeypatch.setenv("GENBRIDGE_POLL_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("GENBRIDGE_STEP_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("LOG_LEVEL", "debug")
    s = Settings()
    assert s.comfyui_url == "http://10.0.0.5:8188"
    assert s.poll_interval_seconds == 0.5
    assert s.step_timeout_seconds == 0
    assert s.log_level == "DEBUG"

    configure_logging(s)
    assert logging.getLogger("genbridge").level == logging.DEBUG


def test_settings_defaults_and_validation():
    s = Settings()
    assert s.poll_interval_seconds == 2.0
    assert s.min_stream_timeout_seconds == 600.0 and s.api_prefix == "/api"

    with pytest.raises(ValidationError):
        Settings(GENBRIDGE_POLL_INTERVAL_SECONDS=0)
    with pytest.raises(ValidationError):
        Settings(LOG_LEVEL="chatty")
    assert Settings(db_path="/tmp/x.db").db_path == "/tmp/x.db"
