import pytest

from anchor_integration.config.settings import IntegrationConfig, Settings, get_settings, reset_settings
from anchor_integration.exceptions import ConfigurationError


def test_defaults_match_documented_values():
    config = IntegrationConfig()
    assert config.num_shared_features == 3000
    assert config.embedding_dim == 30
    assert config.k_neighbors == 5
    assert config.anchor_score_threshold == 0.0
    assert config.regularization_epsilon == 1e-4
    assert config.kernel_bandwidth is None


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("EMBEDDING_DIM", "12")
    monkeypatch.setenv("K_NEIGHBORS", "7")
    monkeypatch.setenv("KERNEL_BANDWIDTH", "0.25")
    monkeypatch.setenv("K_FILTER", "0")
    monkeypatch.setenv("INTEGRATION_REFERENCE", "largest")

    config = IntegrationConfig.from_settings(Settings(base_dir=tmp_path))

    assert config.embedding_dim == 12
    assert config.k_neighbors == 7
    assert config.kernel_bandwidth == 0.25
    assert config.k_filter is None
    assert config.reference == "largest"


def test_auto_bandwidth_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("KERNEL_BANDWIDTH", "auto")
    assert Settings(base_dir=tmp_path).KERNEL_BANDWIDTH is None


def test_overrides_take_precedence(sample_settings):
    config = IntegrationConfig.from_settings(sample_settings, k_neighbors=3)
    assert config.k_neighbors == 3


def test_settings_do_not_create_directories_until_asked(tmp_path):
    settings = Settings(base_dir=tmp_path)
    assert not settings.DATA_DIR.exists()
    settings.create_directories()
    assert settings.PROCESSED_DATA_DIR.is_dir()
    assert settings.TABLES_DIR.is_dir()


def test_get_settings_is_cached():
    reset_settings()
    try:
        assert get_settings() is get_settings()
    finally:
        reset_settings()


@pytest.mark.parametrize(
    "changes",
    [
        {"k_neighbors": 0},
        {"embedding_dim": -1},
        {"anchor_score_threshold": 1.0},
        {"regularization_epsilon": 0.0},
        {"kernel_bandwidth": -0.5},
        {"k_filter": 0},
        {"min_shared_features": 5000},
    ],
)
def test_invalid_values_rejected(changes):
    with pytest.raises(ConfigurationError):
        IntegrationConfig().replace(**changes)


def test_replace_rejects_unknown_option():
    with pytest.raises(ConfigurationError, match="Unknown"):
        IntegrationConfig().replace(k_nieghbors=3)


def test_config_is_immutable():
    config = IntegrationConfig()
    with pytest.raises(AttributeError):
        config.k_neighbors = 10


@pytest.mark.parametrize("name, value", [("K_NEIGHBORS", "abc"), ("KERNEL_BANDWIDTH", "wide")])
def test_malformed_environment_value(monkeypatch, tmp_path, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError, match=name):
        Settings(base_dir=tmp_path)
