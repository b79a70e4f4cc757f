import threading
import unittest

import requests

from tokenchart.core.data_fetch import ChartApiClient, parse_holder_payload, parse_ohlc_payload
from tokenchart.core.errors import CancelledError, EmptyDataError, NetworkError
from tokenchart.core.models import ChartRange


class _FakeResponse:
    def __init__(self, payload=None, status=200, bad_json=False):
        self.payload = payload
        self.status = status
        self.bad_json = bad_json

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        if self.bad_json:
            raise ValueError("Expecting value")
        return self.payload


class _FakeSession:
    def __init__(self, response=None, exc=None, on_get=None):
        self.response = response
        self.exc = exc
        self.on_get = on_get
        self.calls = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {}), timeout))
        if self.on_get is not None:
            self.on_get()
        if self.exc is not None:
            raise self.exc
        return self.response

    def close(self):
        self.closed = True


class ParseOhlcTests(unittest.TestCase):
    def test_unsorted_rows_are_sorted_and_converted(self):
        payload = {
            "ohlc": [
                [120000, "1.2", "1.3", "1.1", "1.25", "10"],
                [0, 1, 2, 0.5, 1.5, 100],
                [60999, "1.5", "1.6", "1.4", "1.55", "50"],
            ]
        }
        candles = parse_ohlc_payload(payload)
        self.assertEqual([c.time for c in candles], [0, 60, 120])
        self.assertEqual(candles[1].close, 1.55)
        self.assertEqual(candles[2].volume, 10.0)

    def test_duplicate_time_keeps_later_row(self):
        payload = {"ohlc": [[60000, 1, 1, 1, 1, 1], [60000, 2, 2, 2, 2, 2]]}
        candles = parse_ohlc_payload(payload)
        self.assertEqual(len(candles), 1)
        self.assertEqual(candles[0].close, 2)

    def test_scientific_and_bad_fields(self):
        payload = {
            "ohlc": [
                [0, "1.2e-12", "3e-5", "1e-5", "2e-5", "-4"],
                [60000, 1, 1],
                ["not-a-time", 1, 1, 1, 1, 1],
                None,
            ]
        }
        candles = parse_ohlc_payload(payload)
        self.assertEqual(len(candles), 1)
        self.assertEqual(candles[0].open, 0)
        self.assertEqual(candles[0].high, 3e-5)
        self.assertEqual(candles[0].volume, 0.0)

    def test_missing_or_wrong_payload(self):
        self.assertEqual(parse_ohlc_payload({}), [])
        self.assertEqual(parse_ohlc_payload({"ohlc": None}), [])
        self.assertEqual(parse_ohlc_payload([1, 2]), [])


class ParseHolderTests(unittest.TestCase):
    def test_maps_fields_and_dedupes(self):
        payload = {
            "history": [
                {"time": 120000, "length": 12, "top10": 40.5, "active24H": 3},
                {"time": 60000, "length": 10, "top10": 41, "top20": 55, "top50": 70, "top100": 80},
                {"time": 120000, "length": 13},
            ]
        }
        points = parse_holder_payload(payload)
        self.assertEqual([p.time for p in points], [60, 120])
        self.assertEqual(points[0].top100, 80)
        self.assertEqual(points[1].holders, 13)
        self.assertEqual(points[1].value, 13)
        self.assertEqual(points[1].top10, 0)


class ChartApiClientTests(unittest.TestCase):
    def test_fetch_ohlc_request_shape(self):
        session = _FakeSession(_FakeResponse({"ohlc": [[0, 1, 2, 0.5, 1.5, 100]]}))
        client = ChartApiClient("https://example.test/api/", timeout=3.0, session=session)
        candles = client.fetch_ohlc("abc", ChartRange.D5, "15m", "USD")
        self.assertEqual(len(candles), 1)
        url, params, timeout = session.calls[0]
        self.assertEqual(url, "https://example.test/api/graph-ohlc-v2/abc")
        self.assertEqual(params, {"range": "5D", "interval": "15m", "vs_currency": "USD"})
        self.assertEqual(timeout, 3.0)

    def test_fetch_holders_request_shape(self):
        session = _FakeSession(_FakeResponse({"history": [{"time": 0, "length": 5}]}))
        client = ChartApiClient("https://example.test/api", session=session)
        points = client.fetch_holders("abc", ChartRange.M1)
        self.assertEqual(points[0].holders, 5)
        url, params, _ = session.calls[0]
        self.assertEqual(url, "https://example.test/api/graphrich/abc")
        self.assertEqual(params, {"range": "1M"})

    def test_empty_series_raises_empty(self):
        client = ChartApiClient("http://x", session=_FakeSession(_FakeResponse({"ohlc": []})))
        with self.assertRaises(EmptyDataError):
            client.fetch_ohlc("abc", ChartRange.D1, "5m", "XRP")

    def test_transport_http_and_json_errors_raise_network(self):
        cases = [
            _FakeSession(exc=requests.ConnectionError("refused")),
            _FakeSession(_FakeResponse({}, status=502)),
            _FakeSession(_FakeResponse(bad_json=True)),
        ]
        for session in cases:
            client = ChartApiClient("http://x", session=session)
            with self.assertRaises(NetworkError):
                client.fetch_ohlc("abc", ChartRange.D1, "5m", "XRP")

    def test_cancel_before_request_skips_network(self):
        session = _FakeSession(_FakeResponse({"ohlc": [[0, 1, 1, 1, 1, 1]]}))
        client = ChartApiClient("http://x", session=session)
        event = threading.Event()
        event.set()
        with self.assertRaises(CancelledError):
            client.fetch_ohlc("abc", ChartRange.D1, "5m", "XRP", cancel_event=event)
        self.assertEqual(session.calls, [])

    def test_cancel_during_request_discards_response(self):
        event = threading.Event()
        session = _FakeSession(_FakeResponse({"ohlc": [[0, 1, 1, 1, 1, 1]]}), on_get=event.set)
        client = ChartApiClient("http://x", session=session)
        with self.assertRaises(CancelledError):
            client.fetch_ohlc("abc", ChartRange.D1, "5m", "XRP", cancel_event=event)

    def test_close_closes_session(self):
        session = _FakeSession()
        ChartApiClient("http://x", session=session).close()
        self.assertTrue(session.closed)


if __name__ == "__main__":
    unittest.main()
