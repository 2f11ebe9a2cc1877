"""
Unit tests for exchanges.py -- REST clients with requests mocked out.
"""

from unittest.mock import MagicMock, patch

import pytest
import requests

from errors import ConfigurationError, ExchangeError, NetworkError
from exchanges import (
    BinanceClient,
    BitgetClient,
    BybitClient,
    OKXClient,
    _get,
    build_enabled_clients,
    create_client,
    split_symbol,
    unify_concatenated,
)


def _response(payload, status=200):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload
    if status >= 400:
        err = requests.exceptions.HTTPError(f"HTTP {status}")
        err.response = resp
        resp.raise_for_status.side_effect = err
    return resp


class TestSymbols:
    def test_split_symbol(self):
        assert split_symbol("btc/usdt") == ("BTC", "USDT", None)
        assert split_symbol("BTC/USDT:USDT") == ("BTC", "USDT", "USDT")
        with pytest.raises(ValueError):
            split_symbol("BTCUSDT")

    def test_unify_concatenated(self):
        assert unify_concatenated("BTCUSDT", perp=False) == "BTC/USDT"
        assert unify_concatenated("ETHUSDT", perp=True) == "ETH/USDT:USDT"
        assert unify_concatenated("BTCFDUSD", perp=False) == "BTC/FDUSD"
        assert unify_concatenated("BTCTUSD", perp=False) == "BTC/TUSD"
        assert unify_concatenated("BTCUSD", perp=False) == "BTC/USD"
        assert unify_concatenated("USDT", perp=False) is None


class TestGetHelper:
    @patch("exchanges.time.sleep")
    @patch("exchanges.requests.get")
    def test_retries_server_errors_then_succeeds(self, mock_get, _sleep):
        mock_get.side_effect = [_response({}, 502), _response({"ok": 1})]
        data, latency = _get("https://api.example.com/x", retries=3)
        assert data == {"ok": 1}
        assert latency >= 0
        assert mock_get.call_count == 2

    @patch("exchanges.time.sleep")
    @patch("exchanges.requests.get")
    def test_client_error_not_retried(self, mock_get, _sleep):
        mock_get.return_value = _response({}, 400)
        with pytest.raises(ExchangeError) as exc_info:
            _get("https://api.example.com/x", retries=3)
        assert mock_get.call_count == 1
        assert exc_info.value.context["exchange"] == "api.example.com"

    @patch("exchanges.time.sleep")
    @patch("exchanges.requests.get")
    def test_connection_errors_become_network_error(self, mock_get, _sleep):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        with pytest.raises(NetworkError) as exc_info:
            _get("https://api.example.com/x", retries=2)
        assert mock_get.call_count == 2
        assert exc_info.value.retryable

    @patch("exchanges.time.sleep")
    @patch("exchanges.requests.get")
    def test_rate_limit_sleeps_and_retries(self, mock_get, mock_sleep):
        mock_get.side_effect = [_response({}, 429), _response([1])]
        data, _ = _get("https://api.example.com/x", retries=2)
        assert data == [1]
        assert mock_sleep.called


class TestBinance:
    @patch("exchanges.requests.get")
    def test_spot_ticker(self, mock_get):
        mock_get.return_value = _response({
            "symbol": "BTCUSDT", "lastPrice": "65000.5", "quoteVolume": "123456789",
            "bidPrice": "65000.0", "askPrice": "65001.0",
        })
        t = BinanceClient().fetch_ticker("BTC/USDT")
        assert t == {"price": 65000.5, "volume": 123456789.0, "bid": 65000.0, "ask": 65001.0}
        assert mock_get.call_args.kwargs["params"] == {"symbol": "BTCUSDT"}

    @patch("exchanges.requests.get")
    def test_funding(self, mock_get):
        mock_get.return_value = _response({"lastFundingRate": "0.0001", "nextFundingTime": 1700000000000})
        f = BinanceClient().fetch_funding_rate("BTC/USDT:USDT")
        assert f["rate"] == pytest.approx(0.0001)
        assert f["next_timestamp"] == 1700000000000

    def test_funding_rejects_spot(self):
        with pytest.raises(ExchangeError):
            BinanceClient().fetch_funding_rate("BTC/USDT")

    def test_non_usdt_settle_rejected(self):
        with pytest.raises(ExchangeError):
            BinanceClient().fetch_ticker("BTC/USD:BTC")

    @patch("exchanges.requests.get")
    def test_bulk_tickers(self, mock_get):
        mock_get.side_effect = [
            _response([{"symbol": "ETHUSDT", "lastPrice": "3000", "quoteVolume": "5"}]),
            _response([{"symbol": "ETHUSDT", "lastPrice": "3001", "quoteVolume": "6"},
                       {"symbol": "ETHUSDC", "lastPrice": "3001", "quoteVolume": "6"}]),
        ]
        tickers = BinanceClient().fetch_all_tickers()
        assert set(tickers) == {"ETH/USDT", "ETH/USDT:USDT"}
        assert tickers["ETH/USDT:USDT"]["price"] == 3001.0


    @patch("exchanges.requests.get")
    def test_bulk_funding(self, mock_get):
        mock_get.return_value = _response([
            {"symbol": "BTCUSDT", "lastFundingRate": "0.0001", "nextFundingTime": 1700000000000},
            {"symbol": "ETHUSDC", "lastFundingRate": "0.0002", "nextFundingTime": 1700000000000},
        ])
        client = BinanceClient()
        assert client.supports_bulk_funding
        rates = client.fetch_all_funding_rates()
        assert list(rates) == ["BTC/USDT:USDT"]
        assert rates["BTC/USDT:USDT"]["rate"] == pytest.approx(0.0001)
        assert mock_get.call_args.kwargs["params"] is None


class TestOKX:
    def test_no_bulk_funding(self):
        assert not OKXClient().supports_bulk_funding

    @patch("exchanges.requests.get")
    def test_swap_volume_in_quote(self, mock_get):
        mock_get.return_value = _response({"code": "0", "data": [
            {"instId": "BTC-USDT-SWAP", "last": "100", "volCcy24h": "50", "bidPx": "99", "askPx": "101"},
        ]})
        t = OKXClient().fetch_ticker("BTC/USDT:USDT")
        assert t["volume"] == 5000.0
        assert mock_get.call_args.kwargs["params"] == {"instId": "BTC-USDT-SWAP"}

    @patch("exchanges.requests.get")
    def test_error_code_raises(self, mock_get):
        mock_get.return_value = _response({"code": "51001", "msg": "Instrument ID does not exist", "data": []})
        with pytest.raises(ExchangeError):
            OKXClient().fetch_ticker("NOPE/USDT")


class TestBybit:
    @patch("exchanges.requests.get")
    def test_bulk_funding_from_linear_tickers(self, mock_get):
        mock_get.return_value = _response({"retCode": 0, "result": {"list": [
            {"symbol": "SOLUSDT", "fundingRate": "-0.00005", "nextFundingTime": "1700000000000"},
        ]}})
        rates = BybitClient().fetch_all_funding_rates()
        assert rates == {"SOL/USDT:USDT": {"rate": -0.00005, "next_timestamp": 1700000000000.0}}
        assert mock_get.call_args.kwargs["params"] == {"category": "linear"}

    @patch("exchanges.requests.get")
    def test_empty_list_is_not_listed(self, mock_get):
        mock_get.return_value = _response({"retCode": 0, "result": {"list": []}})
        with pytest.raises(ExchangeError):
            BybitClient().fetch_ticker("NOPE/USDT")


class TestBitget:
    @patch("exchanges.requests.get")
    def test_bulk_funding_from_mix_tickers(self, mock_get):
        mock_get.return_value = _response({"code": "00000", "data": [
            {"symbol": "BTCUSDT", "lastPr": "100", "fundingRate": "0.0001"},
        ]})
        rates = BitgetClient().fetch_all_funding_rates()
        assert rates["BTC/USDT:USDT"] == {"rate": 0.0001, "next_timestamp": None}


class TestFactory:
    def test_create_client(self):
        assert isinstance(create_client("Binance"), BinanceClient)
        with pytest.raises(ConfigurationError):
            create_client("kraken")

    def test_build_enabled_clients(self):
        clients = build_enabled_clients({"binance": True, "okx": False, "kraken": True})
        assert list(clients) == ["binance"]
