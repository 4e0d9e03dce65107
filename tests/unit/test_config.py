"""
Unit tests for settings and injection configuration loading.
"""

import json

import pytest

from demo_seed.config import (
    SeedSettings,
    credentials_for,
    load_injection_config,
    parse_injection_config,
)
from demo_seed.exceptions import InjectionConfigError

SEED_VARIABLES = [
    "SEED_BULK_THRESHOLD", "SEED_USE_BULK_API", "SEED_DESCRIBE_CACHE_TTL_SECONDS",
    "SEED_BULK_POLL_TIMEOUT_SECONDS", "SEED_BULK_POLL_INTERVAL_SECONDS", "SEED_ROW_WORKERS",
    "SEED_DEMO_MARKER", "SEED_API_VERSION", "SEED_LOG_DIR",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in SEED_VARIABLES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestSeedSettings:
    """Tests for SeedSettings.from_env"""

    def test_defaults(self, clean_env):
        settings = SeedSettings.from_env()
        assert settings.bulk_threshold == 200
        assert settings.use_bulk_api is True
        assert settings.describe_cache_ttl_seconds == 600
        assert settings.bulk_poll_timeout_seconds == 300
        assert settings.demo_marker == "[TestBox Demo Data]"

    def test_overrides(self, clean_env):
        clean_env.setenv("SEED_BULK_THRESHOLD", "50")
        clean_env.setenv("SEED_USE_BULK_API", "false")
        clean_env.setenv("SEED_ROW_WORKERS", "4")
        settings = SeedSettings.from_env()
        assert settings.bulk_threshold == 50
        assert settings.use_bulk_api is False
        assert settings.row_workers == 4


class TestCredentials:
    def test_default_environment(self, monkeypatch):
        monkeypatch.setenv("SALESFORCE_USERNAME", "user@example.com")
        monkeypatch.setenv("SALESFORCE_PASSWORD", "pw")
        monkeypatch.setenv("SALESFORCE_SECURITY_TOKEN", "token")
        credentials = credentials_for()
        assert credentials.username == "user@example.com"
        assert credentials.has_password_login

    def test_named_environment(self, monkeypatch):
        monkeypatch.setenv("SALESFORCE_DEMO_INSTANCE_URL", "https://demo.my.salesforce.com")
        monkeypatch.setenv("SALESFORCE_DEMO_ACCESS_TOKEN", "00Dxx!abc")
        credentials = credentials_for("demo")
        assert credentials.has_session
        assert credentials.instance_url == "https://demo.my.salesforce.com"


class TestInjectionConfigParsing:
    """Tests for parse_injection_config"""

    def test_empty_means_no_configuration(self):
        for raw in (None, "", "null"):
            config = parse_injection_config(raw)
            assert config.field_mappings == {}
            assert config.record_type_overrides == {}

    def test_valid_document(self):
        config = parse_injection_config(json.dumps({
            "recordTypeOverrides": {"Account": "Partner"},
            "fieldDefaults": {"Lead": {"Company": "Acme", "NumberOfEmployees": 10}},
        }))
        assert config.record_type_overrides == {"Account": "Partner"}
        assert config.field_defaults["Lead"]["NumberOfEmployees"] == 10
        assert config.field_mappings == {}

    def test_unknown_key_rejected(self):
        with pytest.raises(InjectionConfigError):
            parse_injection_config('{"fieldMappings": {}, "extra": 1}')

    def test_bad_json_rejected(self):
        with pytest.raises(InjectionConfigError):
            parse_injection_config("{not json")

    def test_non_object_rejected(self):
        with pytest.raises(InjectionConfigError):
            parse_injection_config("[1, 2]")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"fieldMappings": {"Contact": {"Phone": "MobilePhone"}}}))
        config = load_injection_config(path)
        assert config.field_mappings == {"Contact": {"Phone": "MobilePhone"}}
        assert load_injection_config(None).field_mappings == {}
