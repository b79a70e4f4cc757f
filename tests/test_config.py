import unittest

from tokenchart.core.config import DEFAULT_API_URL, ChartConfig, load_config


class LoadConfigTests(unittest.TestCase):
    def test_defaults(self):
        config = load_config(env={})
        self.assertEqual(config, ChartConfig())
        self.assertEqual(config.api_url, DEFAULT_API_URL)
        self.assertEqual(config.poll_interval_ms, 4000)
        self.assertEqual(config.viewport_debounce_ms, 100)
        self.assertIsNone(config.max_poll_attempts)
        self.assertEqual(config.max_candles, 10000)

    def test_env_overrides(self):
        env = {
            "TOKENCHART_API_URL": "http://localhost:9000/api/",
            "TOKENCHART_POLL_MS": "2500",
            "TOKENCHART_DEBOUNCE_MS": "50",
            "TOKENCHART_TIMEOUT": "4.5",
            "TOKENCHART_MAX_POLLS": "12",
            "TOKENCHART_CURRENCY": "usd",
        }
        config = load_config(env=env)
        self.assertEqual(config.api_url, "http://localhost:9000/api")
        self.assertEqual(config.poll_interval_ms, 2500)
        self.assertEqual(config.viewport_debounce_ms, 50)
        self.assertEqual(config.request_timeout, 4.5)
        self.assertEqual(config.max_poll_attempts, 12)
        self.assertEqual(config.default_currency, "USD")

    def test_malformed_values_fall_back(self):
        env = {
            "TOKENCHART_POLL_MS": "fast",
            "TOKENCHART_DEBOUNCE_MS": "-1",
            "TOKENCHART_TIMEOUT": "0",
            "TOKENCHART_MAX_POLLS": "0",
            "TOKENCHART_CURRENCY": "DOGE",
        }
        config = load_config(env=env)
        self.assertEqual(config.poll_interval_ms, 4000)
        self.assertEqual(config.viewport_debounce_ms, 100)
        self.assertEqual(config.request_timeout, 15.0)
        self.assertIsNone(config.max_poll_attempts)
        self.assertEqual(config.default_currency, "XRP")

    def test_keyword_overrides_win(self):
        config = load_config(env={"TOKENCHART_POLL_MS": "2500"}, poll_interval_ms=10, max_poll_attempts=3)
        self.assertEqual(config.poll_interval_ms, 10)
        self.assertEqual(config.max_poll_attempts, 3)


if __name__ == "__main__":
    unittest.main()
