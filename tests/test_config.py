"""Tests for runtime configuration."""
from tripmatch.config import Settings


class TestSettings:

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        settings = Settings()
        assert settings.PREFILTER_URL is None
        assert settings.PREFILTER_LIMIT == 50
        assert settings.PREFILTER_RETRIES == 3
        assert settings.MIN_TOTAL_SCORE == 0
        assert settings.ROUTING_ENABLED is False

    def test_environment_override(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("TRIPMATCH_PREFILTER_URL", "http://prefilter:8000")
        monkeypatch.setenv("TRIPMATCH_AWAIT_TIMEOUT", "2.5")
        monkeypatch.setenv("TRIPMATCH_ROUTING_ENABLED", "true")
        settings = Settings()
        assert settings.PREFILTER_URL == "http://prefilter:8000"
        assert settings.AWAIT_TIMEOUT == 2.5
        assert settings.ROUTING_ENABLED is True

    def test_env_file(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("TRIPMATCH_MIN_TOTAL_SCORE=40\nOTHER_APP_SETTING=x\n")
        assert Settings().MIN_TOTAL_SCORE == 40

    def test_explicit_values(self):
        settings = Settings(PORT=9000, PREFILTER_BACKOFF=0.0)
        assert settings.PORT == 9000
        assert settings.PREFILTER_BACKOFF == 0.0
