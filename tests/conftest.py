import os

import pytest

# Read once when reelsync.config builds `settings`, so these must be set
# before any test module imports the app
os.environ.setdefault("OPENAI_API_KEY", "test-key-for-unit-tests")
os.environ.setdefault("CLICKUP_API_KEY", "test-clickup-key")
os.environ["STREAM_ENABLED"] = "false"
os.environ["LOCAL_WHISPER_ENABLED"] = "false"

from reelsync.config import settings  # noqa: E402


@pytest.fixture(autouse=True)
def settings_env(monkeypatch):
    """Pin the settings tests depend on, whatever the local .env says."""
    monkeypatch.setattr(settings, "openai_api_key", "test-key-for-unit-tests")
    monkeypatch.setattr(settings, "clickup_api_key", "test-clickup-key")
    monkeypatch.setattr(settings, "stream_enabled", False)
    monkeypatch.setattr(settings, "local_whisper_enabled", False)
    yield
