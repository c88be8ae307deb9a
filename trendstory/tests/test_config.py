# trendstory/tests/test_config.py
from trendstory.config import Settings
from trendstory.utils.logging import get_logging_config


def test_defaults_are_derived_from_interval():
    s = Settings(refresh_interval_seconds=600)
    assert s.ttl == 1800
    assert s.grace == 600
    assert s.max_signal_age == 1800
    assert s.feed_names == ["google_trends"]


def test_explicit_values_win(monkeypatch):
    monkeypatch.setenv("TREND_STORY_TTL_SECONDS", "60")
    monkeypatch.setenv("TREND_STORY_GRACE_SECONDS", "0")
    monkeypatch.setenv("TREND_STORY_LOG_LEVEL", "debug")
    s = Settings(refresh_interval_seconds=30)
    assert s.ttl == 60
    assert s.grace == 0
    assert s.log_level == "DEBUG"


def test_production_logging_uses_json():
    cfg = get_logging_config("INFO", "production")
    assert cfg["handlers"]["console"]["formatter"] == "json"
    assert get_logging_config("INFO", "development")["handlers"]["console"]["formatter"] == "console"
