import time
from datetime import date

import pytest
import requests

import holiday_calendar as hc


@pytest.fixture(autouse=True)
def fresh_cache():
    hc.clear_holiday_cache()
    yield
    hc.clear_holiday_cache()


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.content = b"[]" if payload is not None else b""

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")

    def json(self):
        return self._payload


def test_month_helpers():
    assert hc.month_bounds(2024, 2) == (date(2024, 2, 1), date(2024, 2, 29))
    assert hc.sundays_for_month(2025, 6) == ["2025-06-01", "2025-06-08", "2025-06-15", "2025-06-22", "2025-06-29"]


def test_parse_month_param():
    assert hc.parse_month_param("2025-06") == (2025, 6)
    assert hc.parse_month_param("6", 2025) == (2025, 6)
    assert hc.parse_month_param("2025-13") == (None, None)
    assert hc.parse_month_param("1999-01") == (None, None)
    assert hc.parse_month_param("June", 2025) == (None, None)


def test_fallback_holidays_are_copies():
    holidays = hc.get_fallback_holidays("in", 2025)
    assert any(h["date"] == "2025-08-15" for h in holidays)
    holidays[0]["name"] = "changed"
    assert hc.get_fallback_holidays("IN", 2025)[0]["name"] != "changed"
    assert hc.get_fallback_holidays("US", 2025) == []


def test_fetch_public_holidays_uses_api_and_caches(monkeypatch):
    calls = []

    def fake_get(url, timeout=None, headers=None):
        calls.append(url)
        return FakeResponse([{"date": "2026-01-26", "localName": "Republic Day", "name": "Republic Day",
                              "countryCode": "IN", "types": ["Public"]}])

    monkeypatch.setattr(hc.requests, "get", fake_get)

    holidays, from_cache = hc.fetch_public_holidays(2026, "IN")
    assert from_cache is False
    assert holidays == [{"date": "2026-01-26", "local_name": "Republic Day", "name": "Republic Day",
                         "country_code": "IN", "types": ["Public"]}]
    assert calls == ["https://date.nager.at/api/v3/PublicHolidays/2026/IN"]

    _holidays, from_cache = hc.fetch_public_holidays(2026, "IN")
    assert from_cache is True
    assert len(calls) == 1


def test_fetch_public_holidays_falls_back_on_http_error(monkeypatch):
    monkeypatch.setattr(hc.requests, "get", lambda *args, **kwargs: FakeResponse(None, status_code=503))

    holidays, _from_cache = hc.fetch_public_holidays(2024, "IN")
    assert holidays == hc.get_fallback_holidays("IN", 2024)


def test_fetch_public_holidays_falls_back_on_non_list_payload(monkeypatch):
    monkeypatch.setattr(hc.requests, "get", lambda *args, **kwargs: FakeResponse({"message": "rate limited"}))

    holidays, _from_cache = hc.fetch_public_holidays(2025, "IN")
    assert holidays == hc.get_fallback_holidays("IN", 2025)


def test_expired_cache_entry_is_refetched(monkeypatch):
    calls = []

    def fake_get(url, timeout=None, headers=None):
        calls.append(url)
        return FakeResponse([{"date": "2026-08-15", "name": "Independence Day"}])

    monkeypatch.setattr(hc.requests, "get", fake_get)
    hc.fetch_public_holidays(2026, "IN")
    hc._HOLIDAY_CACHE[(2026, "IN")]["expires_at"] = time.time() - 1

    _holidays, from_cache = hc.fetch_public_holidays(2026, "IN")
    assert from_cache is False
    assert len(calls) == 2


def test_cache_is_bounded(monkeypatch):
    monkeypatch.setattr(hc, "HOLIDAY_CACHE_MAX_ENTRIES", 2)
    for year in (2024, 2025, 2026):
        hc.fetch_public_holidays(year, "IN", use_remote=False)

    assert len(hc._HOLIDAY_CACHE) == 2
    assert (2024, "IN") not in hc._HOLIDAY_CACHE
    assert (2026, "IN") in hc._HOLIDAY_CACHE


def test_fetch_public_holidays_falls_back_on_network_error(monkeypatch):
    def boom(*args, **kwargs):
        raise requests.exceptions.ConnectionError("offline")

    monkeypatch.setattr(hc.requests, "get", boom)
    holidays, _from_cache = hc.fetch_public_holidays(2025, "IN")
    assert len(holidays) == len(hc.get_fallback_holidays("IN", 2025))


def test_fetch_public_holidays_offline_skips_requests(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("remote lookup should be skipped")

    monkeypatch.setattr(hc.requests, "get", fail)
    holidays, _from_cache = hc.fetch_public_holidays(2025, "IN", use_remote=False)
    assert holidays


def test_build_non_working_days_merges_sources_in_reason_order():
    custom = [
        {"date": "2025-08-15", "title": "Flag Hoisting"},
        {"holiday_date": date(2025, 8, 20), "title": ""},
        {"date": "2025-09-01", "title": "Out of range"},
    ]
    days = hc.build_non_working_days("2025-08-10", "2025-08-20", custom, country="IN", use_remote=False)
    assert list(days) == ["2025-08-10", "2025-08-15", "2025-08-17", "2025-08-19", "2025-08-20"]
    assert days["2025-08-10"]["reasons"] == ["Sunday"]
    assert days["2025-08-15"]["reasons"] == ["Independence Day", "Flag Hoisting"]
    assert days["2025-08-19"]["public_holiday"]["name"] == "Janmashtami"
    assert days["2025-08-20"]["custom_holiday"]["title"] == "Holiday"
    assert days["2025-08-20"]["is_sunday"] is False


def test_build_non_working_days_rejects_invalid_range():
    with pytest.raises(ValueError):
        hc.build_non_working_days("2025-08-20", "2025-08-10", use_remote=False)
    with pytest.raises(ValueError):
        hc.build_non_working_days("bad", "2025-08-10", use_remote=False)
