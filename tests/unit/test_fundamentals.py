import json

import httpx
import pytest

from aiportfolio.providers.fundamentals import (
    FundamentalsClient,
    MetricPoint,
    build_snapshot,
    compute_cagr_pct,
    compute_latest_quick_ratio,
    compute_pe_ratio,
    compute_peg_ratio,
    compute_roe_series,
    compute_yoy_growth,
    parse_timeseries_response,
)


def _series(metric, values):
    return {
        "meta": {"type": [metric]},
        metric: [
            {"asOfDate": f"{2018 + i}-12-31", "reportedValue": {"raw": v}} if v is not None else None
            for i, v in enumerate(values)
        ],
    }


PAYLOAD = {
    "timeseries": {
        "result": [
            _series("annualTotalRevenue", [100, 110, 99, 120, 132, 145.2]),
            _series("annualDilutedEPS", [1.0, 1.5, 2.0, 2.5, 3.375]),
            _series("annualNetIncome", [10, 20, 30]),
            _series("annualStockholdersEquity", [100, 0, 150]),
            _series("annualCurrentAssets", [50, 60, 70]),
            _series("annualInventory", [10, 20, 30]),
            _series("annualCurrentLiabilities", [20, 40, 0]),
        ]
    }
}


def _pts(values):
    return [MetricPoint(date=f"{2018 + i}-12-31", value=v) for i, v in enumerate(values)]


def test_parse_timeseries_response_sorts_and_skips_invalid():
    series = parse_timeseries_response(PAYLOAD)
    assert set(series) == {
        "annualTotalRevenue",
        "annualDilutedEPS",
        "annualNetIncome",
        "annualStockholdersEquity",
        "annualCurrentAssets",
        "annualInventory",
        "annualCurrentLiabilities",
    }
    assert [p.value for p in series["annualTotalRevenue"]] == [100, 110, 99, 120, 132, 145.2]
    assert parse_timeseries_response({}) == {}


def test_yoy_growth_skips_non_positive_prior():
    growth = compute_yoy_growth(_pts([0, 100, 110]))
    assert len(growth) == 1
    assert growth[0].value == pytest.approx(10.0)


def test_cagr():
    assert compute_cagr_pct(_pts([1.0, 1.21])) == pytest.approx(21.0)
    assert compute_cagr_pct(_pts([1.0, 1.1, 1.21])) == pytest.approx(10.0)
    assert compute_cagr_pct(_pts([-1.0, 2.0])) is None
    assert compute_cagr_pct(_pts([1.0])) is None


def test_roe_and_quick_ratio():
    roe = compute_roe_series(_pts([10, 20, 30]), _pts([100, 0, 150]))
    assert [p.value for p in roe] == pytest.approx([10.0, 20.0])

    quick = compute_latest_quick_ratio(_pts([50, 60, 70]), _pts([10, 20, 30]), _pts([20, 40, 0]))
    # 最新日期负债为 0，退回到上一期
    assert quick == pytest.approx(1.0)
    assert compute_latest_quick_ratio([], [], []) is None


def test_build_snapshot():
    snapshot = build_snapshot(parse_timeseries_response(PAYLOAD))
    # 同比：10, -10, 21.21.., 10, 10 -> 最近5个的最小值 -10
    assert snapshot.revenue_growth_min_yoy_5y_pct == pytest.approx(-10.0)
    assert snapshot.revenue_growth_latest_yoy_pct == pytest.approx(10.0)
    assert snapshot.eps_diluted == 3.375
    # 最近4个 EPS：1.5 -> 3.375，3年 CAGR = 31.04%
    assert snapshot.eps_cagr_pct == pytest.approx((2.25 ** (1 / 3) - 1) * 100)
    assert snapshot.roe_5y_avg_pct == pytest.approx(15.0)
    assert snapshot.quick_ratio == pytest.approx(1.0)


def test_empty_snapshot():
    snapshot = build_snapshot({})
    assert all(v is None for v in snapshot.to_dict().values())


def test_pe_and_peg():
    assert compute_pe_ratio(100, 5) == pytest.approx(20.0)
    assert compute_pe_ratio(100, 0) is None
    assert compute_pe_ratio(100, -1) is None
    assert compute_pe_ratio(None, 5) is None
    assert compute_peg_ratio(20, 10) == pytest.approx(2.0)
    assert compute_peg_ratio(20, 0) is None
    assert compute_peg_ratio(None, 10) is None


@pytest.mark.asyncio
async def test_client_requests_annual_types():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, text=json.dumps(PAYLOAD))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        snapshot = await FundamentalsClient(client).fetch_snapshot("AAPL")

    assert snapshot.eps_diluted == 3.375
    assert seen[0].path.endswith("/timeseries/AAPL")
    assert seen[0].params["period1"] == "0"
    assert "annualDilutedEPS" in seen[0].params["type"]


@pytest.mark.asyncio
async def test_service_fundamentals_cached_and_none_on_failure(build_service, monkeypatch):
    svc = build_service({})
    calls = []

    async def fake_fetch_snapshot(symbol):
        calls.append(symbol)
        return build_snapshot(parse_timeseries_response(PAYLOAD))

    monkeypatch.setattr(svc.fundamentals, "fetch_snapshot", fake_fetch_snapshot)
    first = await svc.get_fundamentals("aapl")
    second = await svc.get_fundamentals("AAPL")
    assert first is second
    assert calls == ["AAPL"]

    # mock_http_client 对所有请求返回 404
    svc2 = build_service({})
    assert await svc2.get_fundamentals("MSFT") is None
    assert len(svc2.fundamentals_cache) == 0

    refreshed = await svc.refresh_fundamentals(["AAPL", "aapl"])
    assert list(refreshed) == ["AAPL"]


@pytest.mark.asyncio
async def test_refresh_fundamentals_isolates_unexpected_errors(build_service, monkeypatch):
    svc = build_service({})
    snapshot = build_snapshot(parse_timeseries_response(PAYLOAD))

    async def fake_fetch_snapshot(symbol):
        if symbol == "BAD":
            raise KeyError("unexpected payload shape")
        return snapshot

    monkeypatch.setattr(svc.fundamentals, "fetch_snapshot", fake_fetch_snapshot)
    refreshed = await svc.refresh_fundamentals(["AAPL", "BAD", "MSFT"])
    assert refreshed == {"AAPL": snapshot, "BAD": None, "MSFT": snapshot}
