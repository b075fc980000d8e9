import logging

import pytest

from quizcore.core.config import Settings, validate_config


def test_defaults():
    cfg = Settings(_env_file=None)
    assert cfg.APP_TIMEZONE == "Europe/Chisinau"
    assert cfg.IDEMPOTENCY_TTL_SECONDS == 60
    assert cfg.SUBMISSION_MIN_INTERVAL_SECONDS == 30
    assert cfg.MAX_QUESTIONS_PER_QUIZ == 50
    assert validate_config(settings_obj=cfg) is True


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("IDEMPOTENCY_TTL_SECONDS", "120")
    monkeypatch.setenv("APP_TIMEZONE", "Europe/Bucharest")
    cfg = Settings(_env_file=None)
    assert cfg.IDEMPOTENCY_TTL_SECONDS == 120
    assert cfg.APP_TIMEZONE == "Europe/Bucharest"


def test_invalid_config_warns_when_not_strict(caplog):
    cfg = Settings(_env_file=None, APP_TIMEZONE="Nowhere/Land", MAX_QUESTIONS_PER_QUIZ=0)
    with caplog.at_level(logging.WARNING, logger="quizcore"):
        assert validate_config(strict=False, settings_obj=cfg) is False
    message = caplog.records[-1].getMessage()
    assert "APP_TIMEZONE" in message
    assert "MAX_QUESTIONS_PER_QUIZ" in message


def test_invalid_config_raises_when_strict():
    cfg = Settings(_env_file=None, SUBMISSION_MIN_INTERVAL_SECONDS=-1)
    with pytest.raises(RuntimeError, match="SUBMISSION_MIN_INTERVAL_SECONDS"):
        validate_config(strict=True, settings_obj=cfg)


def test_strict_flag_read_from_settings():
    cfg = Settings(_env_file=None, CONFIG_STRICT=True, IDEMPOTENCY_TTL_SECONDS=0)
    with pytest.raises(RuntimeError):
        validate_config(settings_obj=cfg)
