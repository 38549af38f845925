from pathlib import Path

import pytest
from pydantic import ValidationError

from threatwatch.config import EnrichmentConfig, Settings, load_settings
from threatwatch.errors import ConfigError
from threatwatch.intel import MockProvider, build_providers
from threatwatch.intel.ratelimit import FixedWindowRateLimiter, SharedWindowRateLimiter
from threatwatch.models import EntityType

ROOT = Path(__file__).resolve().parent.parent
KEY_ENVS = (
    "VT_API_KEY",
    "OTX_API_KEY",
    "ABUSEIPDB_API_KEY",
    "GREYNOISE_API_KEY",
    "PHISHTANK_API_KEY",
    "URLHAUS_AUTH_KEY",
    "THREATFOX_AUTH_KEY",
    "SHODAN_API_KEY",
    "PULSEDIVE_API_KEY",
)


def _write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return str(path)


@pytest.fixture
def no_keys(monkeypatch):
    for name in KEY_ENVS:
        monkeypatch.delenv(name, raising=False)


def test_shipped_config_loads():
    settings = load_settings(str(ROOT / "config" / "config.yaml"))
    assert settings.enrichment.mode == "offline"
    assert "breach" in settings.keywords
    assert settings.enrichment.per_type_limits[EntityType.IP] == 3
    assert settings.enrichment.provider("virustotal").rate_limit == 4
    # providers not named in the file keep their defaults
    assert settings.enrichment.provider("greynoise").rate_limit == 50
    assert settings.correlation.max_window == 500


def test_empty_file_gives_defaults(tmp_path):
    settings = load_settings(_write(tmp_path, ""))
    assert settings == Settings()
    assert sum(settings.scoring.weights.values()) == pytest.approx(1.0)


def test_provider_override_merges_with_defaults():
    cfg = EnrichmentConfig(providers={"virustotal": {"enabled": False}, "custom": {"rate_limit": 2}})
    assert cfg.provider("virustotal").enabled is False
    assert cfg.provider("virustotal").rate_limit == 4
    assert cfg.provider("custom").per_seconds == 60
    assert cfg.provider("never-configured").rate_limit == 10


@pytest.mark.parametrize(
    "text",
    [
        "scoring:\n  weights:\n    keyword_criticality: 0.9\n",
        "scoring:\n  weights:\n    keyword_criticality: 0.5\n    luck: 0.5\n",
        "correlation:\n  threshold: 1.5\n",
        "enrichment:\n  mode: sideways\n",
        "unexpected_section: true\n",
        "- just\n- a list\n",
        "keywords: [unclosed\n",
    ],
)
def test_invalid_config_raises_config_error(tmp_path, text):
    with pytest.raises(ConfigError):
        load_settings(_write(tmp_path, text))


def test_missing_config(tmp_path):
    with pytest.raises(ConfigError):
        load_settings(str(tmp_path / "nope.yaml"))


def test_settings_frozen():
    settings = Settings()
    with pytest.raises(ValidationError):
        settings.database = "other.db"


def test_offline_mode_uses_mock_only(db_path, no_keys):
    providers = build_providers(EnrichmentConfig(), db_path)
    assert [type(p) for p in providers] == [MockProvider]
    assert isinstance(providers[0].limiter, FixedWindowRateLimiter)

    disabled = EnrichmentConfig(providers={"mock": {"enabled": False}})
    assert build_providers(disabled, db_path) == []


def test_online_mode_needs_keys(db_path, no_keys, monkeypatch):
    cfg = EnrichmentConfig(mode="online", providers={"urlhaus": {"enabled": False}})
    assert [p.name for p in build_providers(cfg, db_path)] == ["greynoise", "threatfox"]

    monkeypatch.setenv("VT_API_KEY", "k")
    assert [p.name for p in build_providers(cfg, db_path)] == ["virustotal", "greynoise", "threatfox"]

    monkeypatch.setenv("SHODAN_API_KEY", "k")
    monkeypatch.setenv("PULSEDIVE_API_KEY", "k")
    assert [p.name for p in build_providers(cfg, db_path)][-2:] == ["shodan", "pulsedive"]


def test_shared_rate_limits(db_path, no_keys):
    cfg = EnrichmentConfig(mode="online", shared_rate_limits=True)
    providers = build_providers(cfg, db_path)
    assert providers
    assert all(isinstance(p.limiter, SharedWindowRateLimiter) for p in providers)
