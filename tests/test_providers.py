from __future__ import annotations

from datetime import date

import pytest

from conftest import IST, ist, make_quote
from folioquote.marketdata.errors import ProviderUnavailable
from folioquote.marketdata.providers import (
    TROY_OUNCE_GRAMS,
    filter_mf_schemes,
    metal_quote,
    parse_bse_quote,
    parse_google_finance,
    parse_mfapi,
    parse_yahoo_chart,
    parse_yahoo_search,
    strip_exchange_suffix,
    to_google_symbol,
)

SESSION = date(2024, 1, 8)


def _chart(**meta) -> dict:  # noqa: ANN003
    return {"chart": {"result": [{"meta": meta}], "error": None}}


def test_yahoo_chart_current_session_quote() -> None:
    payload = _chart(
        regularMarketPrice=2500.5,
        chartPreviousClose=2450.0,
        regularMarketTime=int(ist(2024, 1, 8, 10, 0).timestamp()),
        currency="inr",
    )

    quote = parse_yahoo_chart(payload, "RELIANCE.NS", tz=IST, session_date=SESSION)

    assert quote.price == 2500.5
    assert quote.previous_close == 2450.0
    assert quote.change == 50.5
    assert quote.currency == "INR"
    assert quote.trading_date == SESSION
    assert quote.is_live_session is True
    assert quote.source == "yahoo"


def test_yahoo_chart_previous_session_is_not_live() -> None:
    payload = _chart(
        regularMarketPrice=100.0,
        previousClose=99.0,
        regularMarketTime=int(ist(2024, 1, 5, 15, 29).timestamp()),
    )

    quote = parse_yahoo_chart(payload, "TCS.NS", tz=IST, session_date=SESSION)

    assert quote.trading_date == date(2024, 1, 5)
    assert quote.is_live_session is False
    assert quote.currency == "INR"


@pytest.mark.parametrize(
    "payload",
    [
        {"chart": {"result": None, "error": {"code": "Not Found"}}},
        {},
        _chart(currency="INR"),
        _chart(regularMarketPrice=-4.0),
    ],
)
def test_yahoo_chart_rejects_unusable_payloads(payload) -> None:  # noqa: ANN001
    with pytest.raises(ProviderUnavailable):
        parse_yahoo_chart(payload, "BAD.NS", tz=IST, session_date=SESSION)


def test_bse_graph_shape_derives_change() -> None:
    quote = parse_bse_quote({"CurrValue": "1,234.50", "PrevClose": "1,200.00"}, "ABB.BO", session_date=SESSION)

    assert quote.price == 1234.5
    assert quote.change == 34.5
    assert quote.source == "bse"


def test_bse_header_shape_uses_reported_change() -> None:
    payload = {"Header": {"CurrentVal": "101.00", "PreClsVal": "100.00", "Change": "1.00", "PerChange": "1.00"}}

    quote = parse_bse_quote(payload, "XYZ.BO", session_date=SESSION)

    assert quote.price == 101.0
    assert quote.change == 1.0
    assert quote.change_percent == 1.0


def test_bse_unrecognised_payload() -> None:
    with pytest.raises(ProviderUnavailable):
        parse_bse_quote({"Table": []}, "XYZ.BO", session_date=SESSION)


def test_google_finance_data_attributes() -> None:
    html = """
    <div data-last-price="2501.3" data-currency-code="INR" data-previous-close="2480.0"
         data-price-change="21.3" data-price-change-percent="0.8589"></div>
    """

    quote = parse_google_finance(html, "RELIANCE.NS", session_date=SESSION)

    assert quote.price == 2501.3
    assert quote.previous_close == 2480.0
    assert quote.change == 21.3
    assert quote.change_percent == 0.8589
    assert quote.currency == "INR"


def test_google_finance_falls_back_to_price_div() -> None:
    html = '<main><div class="YMlKec fxKbKc">₹2,501.30</div></main>'

    quote = parse_google_finance(html, "RELIANCE.NS", session_date=SESSION)

    assert quote.price == 2501.3
    assert quote.change == 0.0


def test_google_finance_without_price_fails() -> None:
    with pytest.raises(ProviderUnavailable):
        parse_google_finance("<html><body>consent</body></html>", "X.NS", session_date=SESSION)


def test_mfapi_latest_and_previous_nav() -> None:
    payload = {
        "meta": {"scheme_code": 119551},
        "data": [{"date": "05-01-2024", "nav": "52.1200"}, {"date": "04-01-2024", "nav": "52.0000"}],
    }

    quote = parse_mfapi(payload, "119551", session_date=SESSION)

    assert quote.price == 52.12
    assert quote.previous_close == 52.0
    assert quote.change == pytest.approx(0.12)
    assert quote.trading_date == date(2024, 1, 5)
    assert quote.is_live_session is False


def test_mfapi_same_day_nav_is_still_not_live() -> None:
    payload = {"data": [{"date": "08-01-2024", "nav": "10.0"}]}

    quote = parse_mfapi(payload, "1", session_date=SESSION)

    assert quote.change == 0.0
    assert quote.is_live_session is False


def test_mfapi_empty_data() -> None:
    with pytest.raises(ProviderUnavailable):
        parse_mfapi({"data": []}, "1", session_date=SESSION)


def test_metal_quote_per_gram_in_home_currency() -> None:
    futures = make_quote("GC=F", 2000.0, previous_close=1990.0)
    fx = make_quote("USDINR=X", 83.0, previous_close=82.5)

    quote = metal_quote("GOLD", futures=futures, fx=fx, premium=1.052, session_date=SESSION, currency="INR")

    assert quote.price == round(2000.0 * 83.0 / TROY_OUNCE_GRAMS * 1.052, 2)
    assert quote.previous_close == round(1990.0 * 82.5 / TROY_OUNCE_GRAMS * 1.052, 2)
    assert quote.source == "metals"
    assert quote.symbol == "GOLD"


def test_symbol_conventions() -> None:
    assert strip_exchange_suffix("reliance.ns") == "RELIANCE"
    assert strip_exchange_suffix("ABB.BO") == "ABB"
    assert to_google_symbol("RELIANCE.NS") == "RELIANCE:NSE"
    assert to_google_symbol("ABB.BO") == "ABB:BOM"


def test_yahoo_search_keeps_home_exchange_equities() -> None:
    payload = {"quotes": [
        {"symbol": "RELIANCE.NS", "quoteType": "EQUITY", "exchange": "NSI", "longname": "Reliance Industries Limited"},
        {"symbol": "RELIANCE.BO", "quoteType": "EQUITY", "exchange": "BSE", "shortname": "RELIANCE IND."},
        {"symbol": "RIGD.IL", "quoteType": "EQUITY", "exchange": "IOB", "shortname": "Reliance GDR"},
        {"symbol": "^NSEI", "quoteType": "INDEX", "exchange": "NSI"},
        {"quoteType": "EQUITY", "exchange": "NSI"},
    ]}

    stocks = parse_yahoo_search(payload)

    assert stocks == [
        {"symbol": "RELIANCE.NS", "name": "Reliance Industries Limited", "exchange": "NSE", "type": "STOCK"},
        {"symbol": "RELIANCE.BO", "name": "RELIANCE IND.", "exchange": "BSE", "type": "STOCK"},
    ]


def test_yahoo_search_caps_results() -> None:
    payload = {"quotes": [{"symbol": f"S{i}.NS", "quoteType": "EQUITY"} for i in range(15)]}

    assert len(parse_yahoo_search(payload)) == 10
    assert parse_yahoo_search({"quotes": None}) == []
    assert parse_yahoo_search([]) == []


def test_mf_scheme_filter_is_case_insensitive_and_capped() -> None:
    schemes = [{"schemeCode": i, "schemeName": f"Parag Parikh Flexi Cap Fund - Plan {i}"} for i in range(25)]
    schemes.append({"schemeCode": 999, "schemeName": "HDFC Index Fund"})
    schemes.append({"schemeCode": 1000})

    matches = filter_mf_schemes(schemes, "FLEXI cap")

    assert len(matches) == 20
    assert all("Flexi Cap" in m["schemeName"] for m in matches)
    assert filter_mf_schemes(schemes, "hdfc") == [{"schemeCode": 999, "schemeName": "HDFC Index Fund"}]
