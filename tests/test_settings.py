"""Tests for settings.py"""

from rereader.core.scheduler import RetryPolicy
from rereader.core.settings import RecallConfig, Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        for name in ("DB_PATH", "LOG_LEVEL", "NOTIFIER_WEBHOOK_URL", "MAX_RETRIES"):
            monkeypatch.delenv(name, raising=False)
        s = Settings.from_env()
        assert s.db_path == "./_local/data/rereader.db"
        assert s.log_level == "INFO"
        assert s.notifier_webhook_url is None
        assert s.max_retries == 3

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "debug")
        monkeypatch.setenv("NOTIFIER_WEBHOOK_URL", " https://hooks.example.com ")
        monkeypatch.setenv("OPERATION_TIMEOUT_SECONDS", "5")
        monkeypatch.setenv("MAX_RETRIES", "0")
        s = Settings.from_env()
        assert s.log_level == "DEBUG"
        assert s.notifier_webhook_url == "https://hooks.example.com"
        policy = RetryPolicy.from_settings(s)
        assert policy.timeout == 5.0
        assert policy.attempts == 1


class TestRecallConfig:
    def test_empty_mapping_gives_defaults(self):
        assert RecallConfig.from_mapping({}) == RecallConfig()

    def test_legacy_mode_names(self):
        assert RecallConfig.from_mapping({"selection_mode": "weighted-smart"}).selection_mode == "weighted"
        assert (
            RecallConfig.from_mapping({"selection_mode": "most-highlighted"}).selection_mode
            == "balanced-by-source"
        )

    def test_invalid_values_fall_back(self):
        config = RecallConfig.from_mapping(
            {"selection_mode": "alphabetical", "recurrence": "hourly", "highlights_per_cycle": "0", "weekday": "x"}
        )
        assert config.selection_mode == "spaced-repetition"
        assert config.recurrence == "daily"
        assert config.highlights_per_cycle == 5
        assert config.weekday == 0

    def test_round_trip_keeps_unknown_keys(self):
        stored = {
            "highlights_per_cycle": "3",
            "source_filter": "B1, B2",
            "theme": "dark",
        }
        config = RecallConfig.from_mapping(stored)
        assert config.source_filter == ("B1", "B2")
        assert config.extra == {"theme": "dark"}

        mapping = config.to_mapping()
        assert mapping["theme"] == "dark"
        assert mapping["source_filter"] == "B1,B2"
        assert RecallConfig.from_mapping(mapping) == config
