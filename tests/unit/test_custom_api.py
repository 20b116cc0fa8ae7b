from datetime import datetime, timezone

import httpx
import pytest

from aiportfolio.core.cache import TTLCache
from aiportfolio.models.market import Provider
from aiportfolio.models.position import Position
from aiportfolio.providers.custom_api import (
    CustomApiClient,
    SeriesPoint,
    build_auth_headers,
    extract_point_series,
    find_point_at_or_before,
    normalise_daily_series,
    normalise_point_series,
    parse_portfolio_equity_map,
    parse_trading_app_equity_url,
    price_entry_from_series,
)
from aiportfolio.services.api_monitoring_service import APIMonitoringService, APIProvider

NOW = datetime(2024, 6, 15, 15, 0, tzinfo=timezone.utc)


def _ts(text: str) -> float:
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc).timestamp()


def test_extract_point_series_tries_known_keys():
    assert extract_point_series([{"value": 1}]) == [{"value": 1}]
    assert extract_point_series({"data": [1]}) == [1]
    assert extract_point_series({"prices": [2]}) == [2]
    assert extract_point_series({"results": [3]}) == [3]
    assert extract_point_series({"other": [4]}) == []
    assert extract_point_series("garbage") == []


def test_normalise_point_series_field_fallbacks_and_sorting():
    payload = {
        "data": [
            {"date": "2024-01-03", "close": 103},
            {"timestamp": "2024-01-01T00:00:00Z", "equityValue": "101"},
            {"t": 1704153600000, "nav": 102},      # 2024-01-02 毫秒
            {"datetime": "bad", "value": 1},
            {"date": "2024-01-04"},
            "not-a-dict",
        ]
    }
    points = normalise_point_series(payload)
    assert [p.value for p in points] == [101.0, 102.0, 103.0]
    assert [p.day for p in points] == ["2024-01-01", "2024-01-02", "2024-01-03"]


def test_normalise_point_series_keeps_most_recent():
    payload = [{"date": f"2024-01-{d:02d}", "value": d} for d in range(1, 11)]
    points = normalise_point_series(payload, max_points=3)
    assert [p.value for p in points] == [8.0, 9.0, 10.0]


def test_normalise_daily_series_keeps_latest_per_day():
    payload = [
        {"timestamp": "2024-01-01T10:00:00Z", "value": 1},
        {"timestamp": "2024-01-01T20:00:00Z", "value": 2},
        {"timestamp": "2024-01-01T15:00:00Z", "value": 3},
        {"timestamp": "2024-01-02T09:00:00Z", "value": 4},
    ]
    points = normalise_daily_series(payload)
    assert [(p.day, p.value) for p in points] == [("2024-01-01", 2.0), ("2024-01-02", 4.0)]


def test_find_point_at_or_before():
    points = [SeriesPoint(ts=float(t), value=float(t)) for t in (10, 20, 30)]
    assert find_point_at_or_before(points, 5) is None
    assert find_point_at_or_before(points, 20).value == 20.0
    assert find_point_at_or_before(points, 29).value == 20.0
    assert find_point_at_or_before(points, 100).value == 30.0


def test_price_entry_from_series_daily_only():
    daily = [
        SeriesPoint(ts=_ts("2023-06-01"), value=80.0),
        SeriesPoint(ts=_ts("2024-06-01"), value=90.0),
        SeriesPoint(ts=_ts("2024-06-13"), value=98.0),
        SeriesPoint(ts=_ts("2024-06-14"), value=100.0),
    ]
    entry = price_entry_from_series(daily, now=NOW)
    assert entry.source is Provider.CUSTOM
    assert entry.current == 100.0
    assert entry.previous_close == 98.0
    assert entry.price_10d == 90.0
    assert entry.price_1y == 80.0
    assert entry.change_10d_pct == pytest.approx(100 / 9)
    assert entry.change_1y_pct == pytest.approx(25.0)


def test_price_entry_from_series_intraday_previous_close_is_first_point_today():
    daily = [SeriesPoint(ts=_ts("2024-06-14"), value=100.0)]
    intraday = [
        SeriesPoint(ts=_ts("2024-06-14T20:00:00"), value=99.0),
        SeriesPoint(ts=_ts("2024-06-15T09:00:00"), value=101.0),
        SeriesPoint(ts=_ts("2024-06-15T14:00:00"), value=105.0),
    ]
    entry = price_entry_from_series(daily, intraday, now=NOW)
    assert entry.current == 105.0
    assert entry.previous_close == 101.0
    assert entry.change == pytest.approx(4.0)


def test_price_entry_from_series_intraday_without_today_uses_second_to_last():
    intraday = [
        SeriesPoint(ts=_ts("2024-06-14T10:00:00"), value=99.0),
        SeriesPoint(ts=_ts("2024-06-14T20:00:00"), value=100.0),
    ]
    entry = price_entry_from_series([], intraday, now=NOW)
    assert entry.current == 100.0
    assert entry.previous_close == 99.0
    assert entry.price_10d is None


def test_price_entry_from_series_empty():
    assert price_entry_from_series([], [], now=NOW).is_empty


def test_build_auth_headers():
    assert "authorization" not in build_auth_headers(None)
    headers = build_auth_headers("  tok ")
    assert headers["x-auth-token"] == "tok"
    assert headers["authorization"] == "Bearer tok"


def test_parse_trading_app_equity_url():
    parsed = parse_trading_app_equity_url("https://app.example.com:8443/api/strategies/equity/u1/s%201?x=1")
    assert parsed == {"origin": "https://app.example.com:8443", "user_id": "u1", "strategy_id": "s%201"}
    assert parse_trading_app_equity_url("https://app.example.com/api/other/u1/s1") is None
    assert parse_trading_app_equity_url("ftp://app.example.com/api/strategies/equity/u1/s1") is None
    assert parse_trading_app_equity_url("") is None


def test_parse_portfolio_equity_map():
    payload = {
        "portfolios": [
            {"strategy_id": "s1", "currentValue": 1000, "cashBuffer": 50},
            {"strategy_id": "s2", "currentValue": "200"},
            {"strategy_id": "", "currentValue": 1},
            {"strategy_id": "s3"},
            "junk",
        ]
    }
    assert parse_portfolio_equity_map(payload) == {"s1": 1050.0, "s2": 200.0}
    assert parse_portfolio_equity_map({"portfolios": None}) == {}


def _series_handler(calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if "startDate" in request.url.params:
            return httpx.Response(
                200,
                json=[
                    {"timestamp": "2024-06-15T09:00:00Z", "value": 101},
                    {"timestamp": "2024-06-15T14:00:00Z", "value": 103},
                ],
            )
        return httpx.Response(
            200,
            json={
                "data": [
                    {"date": "2024-06-01", "equityValue": 90},
                    {"date": "2024-06-14", "equityValue": 100},
                ]
            },
        )

    return handler


@pytest.mark.asyncio
async def test_price_entry_for_combines_daily_and_intraday():
    calls = []
    monitor = APIMonitoringService()
    async with httpx.AsyncClient(transport=httpx.MockTransport(_series_handler(calls))) as client:
        api = CustomApiClient(client, monitor=monitor)
        entry = await api.price_entry_for("https://strat.example.com/equity", "tok", now=NOW)

    assert entry.source is Provider.CUSTOM
    assert entry.current == 103.0
    assert entry.previous_close == 101.0
    assert entry.price_10d == 90.0
    assert len(calls) == 2
    intraday_request = next(r for r in calls if "startDate" in r.url.params)
    assert intraday_request.url.params["limit"] == "5000"
    assert intraday_request.url.params["startDate"] == "2024-06-13T12:00:00.000Z"
    assert all(r.headers["authorization"] == "Bearer tok" for r in calls)
    assert monitor.get_api_stats(APIProvider.CUSTOM_API)["success_calls"] == 2


@pytest.mark.asyncio
async def test_series_responses_are_cached():
    calls = []
    async with httpx.AsyncClient(transport=httpx.MockTransport(_series_handler(calls))) as client:
        api = CustomApiClient(client, cache=TTLCache(15))
        await api.price_entry_for("https://strat.example.com/equity", None, now=NOW)
        await api.price_entry_for("https://strat.example.com/equity", None, now=NOW)
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_trading_app_fallback_when_series_unavailable():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if request.url.path == "/api/strategies/portfolios/u1":
            return httpx.Response(
                200, json={"portfolios": [{"strategy_id": "s 1", "currentValue": 500, "cashBuffer": 25}]}
            )
        return httpx.Response(500, text="boom")

    monitor = APIMonitoringService()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        api = CustomApiClient(client, monitor=monitor)
        entry = await api.price_entry_for("https://app.example.com/api/strategies/equity/u1/s%201", "tok", now=NOW)

    assert entry.current == 525.0
    assert entry.previous_close is None
    assert entry.source is Provider.CUSTOM
    assert "/api/strategies/portfolios/u1" in calls
    assert monitor.get_api_stats(APIProvider.CUSTOM_API)["error_calls"] == 2


@pytest.mark.asyncio
async def test_price_entry_for_invalid_url_is_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        entry = await CustomApiClient(client).price_entry_for("not a url", now=NOW)
    assert entry.is_empty


@pytest.mark.asyncio
async def test_market_data_custom_prices_keyed_by_position_id(build_service):
    svc = build_service({})

    async def fake_price_entry_for(api_url, api_token=None, now=None):
        if api_url.endswith("broken"):
            raise RuntimeError("boom")
        return price_entry_from_series([SeriesPoint(ts=NOW.timestamp(), value=42.0)], now=NOW)

    svc.custom_api.price_entry_for = fake_price_entry_for
    positions = [
        Position(symbol="STRAT", id="p1", api_url="https://x.example.com/ok"),
        Position(symbol="STRAT2", id="p2", api_url="https://x.example.com/broken"),
        Position(symbol="AAPL", id="p3"),
    ]
    prices = await svc.get_custom_prices_for_positions(positions)
    assert set(prices) == {"p1", "p2"}
    assert prices["p1"].current == 42.0
    assert prices["p2"].is_empty
