import pytest

from scanner.config import AppConfig, ConfigError, ConfigStore, ScannerThresholds, merge, validate


def test_defaults_are_valid():
    cfg = ScannerThresholds()
    assert validate(cfg) == {}
    d = cfg.as_dict()
    assert d["volumeSpikeThreshold"] == 1.2
    assert d["minAlertIntervalMs"] == 60_000
    assert d["spoofDetectionEnabled"] is True


def test_merge_accepts_camel_and_snake_case():
    cfg = merge(ScannerThresholds(), {"volumeSpikeThreshold": 2, "whale_min_turnover": 1e7})
    assert cfg.volume_spike_threshold == 2.0
    assert isinstance(cfg.volume_spike_threshold, float)
    assert cfg.whale_min_turnover == 1e7


def test_update_rejects_threshold_not_above_one_and_keeps_previous():
    store = ConfigStore()
    before = store.current
    with pytest.raises(ConfigError) as ei:
        store.update({"priceBreakoutThreshold": 1.0, "liquidityWallThreshold": 0.5})
    assert set(ei.value.errors) == {"priceBreakoutThreshold", "liquidityWallThreshold"}
    assert store.current is before


def test_update_rejects_unknown_and_mistyped_keys():
    store = ConfigStore()
    with pytest.raises(ConfigError) as ei:
        store.update({"foo": 1, "whaleAlertsEnabled": "yes", "minAlertIntervalMs": 1.5})
    assert set(ei.value.errors) == {"foo", "whaleAlertsEnabled", "minAlertIntervalMs"}
    assert isinstance(ei.value, ValueError)


def test_update_negative_values_rejected():
    with pytest.raises(ConfigError):
        ConfigStore().update({"whaleMinChangePct": -1})
    with pytest.raises(ConfigError):
        ConfigStore().update({"minAlertIntervalMs": -5})


def test_update_is_applied_atomically():
    store = ConfigStore()
    new = store.update({"spoofDetectionEnabled": False, "minAlertIntervalMs": 0})
    assert store.current is new
    assert new.spoof_detection_enabled is False
    assert new.min_alert_interval_ms == 0


def test_invalid_initial_config_raises():
    with pytest.raises(ConfigError):
        ConfigStore(ScannerThresholds(multi_method_min_agree=7))


def test_app_config_from_env(monkeypatch):
    monkeypatch.setenv("SYMBOLS", "btcusdt, ethusdt")
    monkeypatch.setenv("WS_PORT", "9999")
    monkeypatch.setenv("REDIS_MIRROR", "true")
    monkeypatch.setenv("SCANNER_VOLUME_SPIKE_THRESHOLD", "1.8")
    monkeypatch.setenv("SCANNER_WHALE_ALERTS_ENABLED", "0")
    cfg = AppConfig.from_env()
    assert cfg.symbols == ["BTCUSDT", "ETHUSDT"]
    assert cfg.ws_port == 9999
    assert cfg.redis_mirror is True
    assert cfg.thresholds.volume_spike_threshold == 1.8
    assert cfg.thresholds.whale_alerts_enabled is False
    assert cfg.kline_intervals == ["1", "5"]


def test_app_config_from_env_invalid_threshold(monkeypatch):
    monkeypatch.setenv("SCANNER_ORDER_BOOK_IMBALANCE_THRESHOLD", "0.9")
    with pytest.raises(ConfigError):
        AppConfig.from_env()


@pytest.mark.parametrize("key,value", [
    ("whaleMinTurnover", float("nan")),
    ("whaleMinChangePct", float("inf")),
    ("volumeSpikeThreshold", float("nan")),
    ("minAlertIntervalMs", float("inf")),
    ("minAlertIntervalMs", float("nan")),
])
def test_update_rejects_non_finite_numbers(key, value):
    store = ConfigStore()
    before = store.current
    with pytest.raises(ConfigError) as ei:
        store.update({key: value})
    assert set(ei.value.errors) == {key}
    assert store.current is before


def test_app_config_bootstrap_and_alert_tz_from_env(monkeypatch):
    monkeypatch.setenv("REST_BOOTSTRAP", "0")
    monkeypatch.setenv("ALERT_TZ", "America/Chicago")
    cfg = AppConfig.from_env()
    assert cfg.rest_bootstrap is False
    assert cfg.alert_tz == "America/Chicago"


def test_app_config_bootstrap_defaults(monkeypatch):
    monkeypatch.delenv("REST_BOOTSTRAP", raising=False)
    monkeypatch.delenv("ALERT_TZ", raising=False)
    cfg = AppConfig.from_env()
    assert cfg.rest_bootstrap is True
    assert cfg.alert_tz == "UTC"
