from decimal import Decimal

import pytest

import config
from config import Config, ConfigurationError, get_config, reload_config


ENV_KEYS = [
    "STORE_BACKEND", "SUPABASE_URL", "SUPABASE_KEY", "STORE_TIMEOUT", "SEED_DEMO_DATA",
    "ENABLE_SMS", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN", "TWILIO_PHONE_NUMBER",
    "SMS_DEFAULT_COUNTRY_CODE", "CAFE_NAME",
    "POINT_VALUE", "EARN_RATE", "MAX_REDEEM_POINTS",
    "HOST", "PORT", "CORS_ORIGINS", "LOG_LEVEL", "LOG_JSON",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    # Keep a developer's .env out of the tests
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config, "_config", None)


class TestDefaults:
    def test_memory_store_without_sms(self):
        cfg = Config()

        assert cfg.store.backend == "memory"
        assert cfg.store.supabase_url is None
        assert not cfg.twilio.enabled
        assert cfg.twilio.default_country_code == "+91"
        assert cfg.loyalty.point_value == Decimal("0.5")
        assert cfg.loyalty.earn_rate == Decimal("0.1")
        assert cfg.loyalty.max_redeem_points == 100
        assert cfg.server.port == 5000
        assert cfg.server.cors_origins == ["*"]

    def test_runtime_warnings(self):
        warnings = Config().validate_runtime_dependencies()

        assert len(warnings) == 2

    def test_safe_summary_has_no_secrets(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "supabase")
        monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "service-role-secret")

        summary = Config().get_safe_summary()

        assert "service-role-secret" not in str(summary)
        assert summary["store_backend"] == "supabase"


class TestStoreConfig:
    def test_supabase_requires_credentials(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "supabase")

        with pytest.raises(ConfigurationError):
            Config()

    def test_supabase_requires_https(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "supabase")
        monkeypatch.setenv("SUPABASE_URL", "http://x.supabase.co")
        monkeypatch.setenv("SUPABASE_KEY", "key")

        with pytest.raises(ConfigurationError):
            Config()

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("STORE_BACKEND", "mongo")

        with pytest.raises(ConfigurationError):
            Config()


class TestTwilioConfig:
    def test_enabled_requires_credentials(self, monkeypatch):
        monkeypatch.setenv("ENABLE_SMS", "true")

        with pytest.raises(ConfigurationError):
            Config()

    def test_sender_must_be_e164(self, monkeypatch):
        monkeypatch.setenv("ENABLE_SMS", "true")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
        monkeypatch.setenv("TWILIO_PHONE_NUMBER", "5551234567")

        with pytest.raises(ConfigurationError):
            Config()

    def test_valid_sms_config(self, monkeypatch):
        monkeypatch.setenv("ENABLE_SMS", "yes")
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
        monkeypatch.setenv("TWILIO_AUTH_TOKEN", "token")
        monkeypatch.setenv("TWILIO_PHONE_NUMBER", "+15551234567")
        monkeypatch.setenv("SMS_DEFAULT_COUNTRY_CODE", "+44")

        cfg = Config()

        assert cfg.twilio.enabled
        assert cfg.twilio.default_country_code == "+44"


class TestLoyaltyConfig:
    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("POINT_VALUE", "1.25")
        monkeypatch.setenv("EARN_RATE", "0.05")
        monkeypatch.setenv("MAX_REDEEM_POINTS", "40")

        cfg = Config()

        assert cfg.loyalty.point_value == Decimal("1.25")
        assert cfg.loyalty.earn_rate == Decimal("0.05")
        assert cfg.loyalty.max_redeem_points == 40

    @pytest.mark.parametrize("key,value", [
        ("POINT_VALUE", "-1"),
        ("POINT_VALUE", "abc"),
        ("EARN_RATE", "1.5"),
        ("MAX_REDEEM_POINTS", "-5"),
        ("MAX_REDEEM_POINTS", "ten"),
    ])
    def test_invalid_values(self, monkeypatch, key, value):
        monkeypatch.setenv(key, value)

        with pytest.raises(ConfigurationError):
            Config()


class TestServerConfig:
    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "chatty")

        with pytest.raises(ConfigurationError):
            Config()

    def test_cors_origins_split(self, monkeypatch):
        monkeypatch.setenv("CORS_ORIGINS", "https://a.example,https://b.example")

        assert Config().server.cors_origins == ["https://a.example", "https://b.example"]


class TestSingleton:
    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_replaces_instance(self, monkeypatch):
        first = get_config()
        monkeypatch.setenv("PORT", "8080")

        second = reload_config()

        assert second is not first
        assert get_config().server.port == 8080
