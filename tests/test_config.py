"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from checkout_service.config import DEFAULT_ALLOWED_ORIGINS, Settings, load_settings


class TestLoadSettings:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("RAZORPAY_KEY_ID", "rzp_live_key")
        monkeypatch.setenv("RAZORPAY_KEY_SECRET", "secret")
        monkeypatch.setenv("RATE_LIMIT_CRITICAL", "5")
        monkeypatch.setenv("STORE_BACKEND", "memory")
        monkeypatch.setenv("PAYMENT_CURRENCY", "USD")
        monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("ALLOWED_ORIGINS", "https://a.example.com, https://b.example.com")

        settings = load_settings()

        assert settings.razorpay_key_id == "rzp_live_key"
        assert settings.razorpay_key_secret == "secret"
        assert settings.rate_limit_critical == 5
        assert settings.rate_limit_webhook == 100
        assert settings.store_backend == "memory"
        assert settings.payment_currency == "USD"
        assert settings.http_timeout_seconds == 2.5
        assert "https://b.example.com" in settings.origin_allow_list()
        assert "http://localhost:3000" in settings.origin_allow_list()

    def test_invalid_integer(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_CRITICAL", "ten")
        with pytest.raises(ValidationError):
            load_settings()

    @pytest.mark.parametrize("raw", ["fast", "0", "-1"])
    def test_invalid_timeout(self, monkeypatch, raw):
        monkeypatch.setenv("HTTP_TIMEOUT_SECONDS", raw)
        with pytest.raises(ValidationError):
            load_settings()

    def test_unknown_store_backend(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "firestore")
        with pytest.raises(ValidationError):
            load_settings()

    def test_empty_variables_use_defaults(self, monkeypatch):
        monkeypatch.setenv("RATE_LIMIT_WEBHOOK", "")
        monkeypatch.setenv("LOG_FILE", "")
        monkeypatch.delenv("ALLOWED_ORIGINS", raising=False)

        settings = load_settings()

        assert settings.rate_limit_webhook == 100
        assert settings.log_file == ""
        assert settings.allowed_origins == DEFAULT_ALLOWED_ORIGINS

    def test_log_file_defaults_to_disabled(self, monkeypatch):
        monkeypatch.delenv("LOG_FILE", raising=False)
        assert load_settings().log_file == Settings.model_fields["log_file"].default == ""

    def test_settings_are_immutable(self):
        settings = Settings(store_backend="memory")
        with pytest.raises(ValidationError):
            settings.rate_limit_critical = 1


class TestOriginAllowList:
    def test_site_url_first_without_duplicates(self):
        settings = Settings(
            site_url="https://shop.example.com/",
            allowed_origins=("http://localhost:3000", "https://shop.example.com", " ", "http://localhost:3000"),
        )
        assert settings.origin_allow_list() == ("https://shop.example.com", "http://localhost:3000")
