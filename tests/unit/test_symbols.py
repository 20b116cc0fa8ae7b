import pytest

from aiportfolio.providers.symbols import (
    boursorama_candidates,
    fund_page_id,
    is_fund_identifier,
    split_exchange_suffix,
    stooq_symbol,
)


def test_split_exchange_suffix():
    assert split_exchange_suffix("saf.pa") == ("SAF", "PA")
    assert split_exchange_suffix("AAPL") == ("AAPL", None)
    assert split_exchange_suffix("BRK.B.US") == ("BRK.B", "US")


def test_boursorama_candidates():
    assert boursorama_candidates("SAF.PA") == ["1rPSAF", "1rASAF"]
    assert boursorama_candidates("RHM.DE") == ["1zRHM"]
    assert boursorama_candidates("AAPL") == ["AAPL"]
    assert boursorama_candidates("0700.HK") == []
    assert boursorama_candidates("") == []


@pytest.mark.parametrize(
    "symbol,expected",
    [
        ("AAPL", "aapl.us"),
        ("SAF.PA", "saf.fr"),
        ("RHM.DE", "rhm.de"),
        ("VOD.L", "vod.uk"),
        ("7203.T", "7203.jp"),
        ("0700.HK", "0700.hk"),
        ("SHOP.TO", "shop.to"),
    ],
)
def test_stooq_symbol(symbol, expected):
    assert stooq_symbol(symbol) == expected


def test_fund_identifier():
    assert is_fund_identifier("0P0000ZWX4.F")
    assert is_fund_identifier("0p0000zwx4.f")
    assert not is_fund_identifier("0P0000ZWX4")
    assert not is_fund_identifier("AAPL.F")
    assert fund_page_id("0P0000ZWX4.F") == "0P0000ZWX4"
