import importlib

import pytest

import config
from errors import SecurityViolation
from models.diagram import DiagramType
from services.security_scanner import SecurityScanner


@pytest.fixture
def reload_config(monkeypatch):
    def _reload(**env):
        for key in ("ENVIRONMENT", "DEBUG"):
            monkeypatch.delenv(key, raising=False)
        for key, value in env.items():
            monkeypatch.setenv(key, value)
        return importlib.reload(config)

    yield _reload
    monkeypatch.undo()
    importlib.reload(config)


def test_debug_is_off_by_default(reload_config):
    settings = reload_config()

    assert settings.ENVIRONMENT == "production"
    assert settings.DEBUG is False


def test_development_environment_turns_debug_on(reload_config):
    assert reload_config(ENVIRONMENT="development").DEBUG is True
    assert reload_config(ENVIRONMENT="development", DEBUG="false").DEBUG is False


def test_default_scanner_keeps_matched_text_out_of_errors(reload_config):
    settings = reload_config()
    scanner = SecurityScanner(debug=settings.DEBUG)

    with pytest.raises(SecurityViolation) as exc_info:
        scanner.check("<script>alert(document.cookie)</script>", DiagramType.MERMAID)

    details = exc_info.value.details
    assert details["rule"] == "script-tag"
    assert "excerpt" not in details
    assert "position" not in details
    assert "document.cookie" not in str(exc_info.value)


@pytest.mark.parametrize("key, value", [("RENDER_TIMEOUT_SECONDS", "soon"), ("MAX_CONCURRENT_RENDERS", "0")])
def test_malformed_numeric_setting_names_the_key(reload_config, key, value):
    with pytest.raises(RuntimeError, match=key):
        reload_config(**{key: value})
