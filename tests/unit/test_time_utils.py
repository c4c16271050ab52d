import pytest

from scanner.utils.time import ms_to_s, normalize_epoch_s, utc_hour, utc_now_ms, utc_now_s


def test_normalize_epoch_units():
    assert normalize_epoch_s(1_700_000_000) == 1_700_000_000
    assert normalize_epoch_s(1_700_000_000_000) == pytest.approx(1_700_000_000)
    assert normalize_epoch_s(1_700_000_000_000_000_000) == pytest.approx(1_700_000_000)


def test_utc_hour_from_millis():
    # 2023-11-14T22:13:20Z
    assert utc_hour(1_700_000_000_000) == 22
    assert ms_to_s(1500) == 1.5


def test_now_helpers_agree():
    assert abs(utc_now_ms() / 1000.0 - utc_now_s()) < 1.0
