"""Tests for configuration loading and validation."""

import pytest

from utils.config import DEFAULT_TOKEN_TTL_SECONDS, load_config, parse_ttl_to_seconds, validate_config


class TestParseTtl:
    """Tests for parse_ttl_to_seconds."""

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("90s", 90),
            ("2m", 120),
            ("1h", 3600),
            ("45", 45),
            (300, 300),
            (" 5M ", 300),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_ttl_to_seconds(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "soon", "5d", "0m", "0", "-3s"])
    def test_invalid_falls_back(self, raw):
        """Test that unparseable TTLs fall back to two minutes."""
        assert parse_ttl_to_seconds(raw) == DEFAULT_TOKEN_TTL_SECONDS


class TestLoadConfig:
    def test_env_overrides(self, monkeypatch, tmp_path):
        """Test that environment variables are read and converted."""
        monkeypatch.setenv("VIDEO_HOST_RATE_LIMIT_WINDOW_MS", "1500")
        monkeypatch.setenv("VIDEO_HOST_RATE_LIMIT_MAX", "3")
        monkeypatch.setenv("VIDEO_SEGMENT_TOKEN_TTL", "5m")
        monkeypatch.setenv("API_PREFIX", "/v2/")
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "x.db"))

        config = load_config()

        assert config["host_rate_window_seconds"] == 1.5
        assert config["host_rate_max_requests"] == 3
        assert config["segment_token_ttl_seconds"] == 300
        assert config["api_prefix"] == "/v2"
        assert config["database_path"] == str(tmp_path / "x.db")

    def test_sign_secret_falls_back_to_jwt_secret(self, monkeypatch):
        monkeypatch.delenv("VIDEO_SIGN_SECRET", raising=False)
        monkeypatch.setenv("JWT_SECRET", "jwt-secret")

        assert load_config()["segment_sign_secret"] == "jwt-secret"


class TestValidateConfig:
    """Tests for validate_config."""

    def test_valid_config(self, sample_config):
        assert validate_config(sample_config) == []

    def test_production_requires_secret(self, sample_config):
        sample_config["environment"] = "production"
        sample_config["segment_sign_secret"] = None

        errors = validate_config(sample_config)

        assert any("VIDEO_SIGN_SECRET" in e for e in errors)

    def test_partial_r2_credentials(self, sample_config):
        sample_config["r2_account_id"] = "acct"

        errors = validate_config(sample_config)

        assert any("R2_ACCOUNT_ID" in e for e in errors)

    def test_rate_limit_bounds(self, sample_config):
        sample_config["host_rate_max_requests"] = 0
        sample_config["host_rate_window_seconds"] = 0

        assert len(validate_config(sample_config)) == 2
