"""Unit tests for DeviceHealthClient payload parsing and failure handling."""

import unittest

import httpx

from core.app_config import AppConfig
from core.device import DeviceEndpoint, HealthStatus, parse_device_address
from core.errors import ConfigurationError, ProtocolError
from core.health_client import DeviceHealthClient

_FULL_PAYLOAD = {
    "wifi_connected": True,
    "sd_initialized": True,
    "recording_active": False,
    "ip_address": "192.168.1.77",
    "free_heap": 123456,
    "uptime": 98765,
    "conversation_history_count": 4,
}


def _client(handler) -> DeviceHealthClient:
    return DeviceHealthClient(AppConfig(), client=httpx.Client(transport=httpx.MockTransport(handler)))


class HealthStatusParsingTests(unittest.TestCase):
    def test_full_payload_is_parsed(self):
        status = HealthStatus.from_payload(_FULL_PAYLOAD)
        self.assertTrue(status.wifi_connected)
        self.assertTrue(status.sd_initialized)
        self.assertFalse(status.recording_active)
        self.assertEqual(status.ip_address, "192.168.1.77")
        self.assertEqual(status.free_heap, 123456)
        self.assertEqual(status.uptime_ms, 98765)
        self.assertAlmostEqual(status.uptime_seconds, 98.765)
        self.assertEqual(status.conversation_history_count, 4)

    def test_non_object_payload_is_protocol_error(self):
        with self.assertRaises(ProtocolError):
            HealthStatus.from_payload(["wifi_connected"])

    def test_missing_connectivity_field_is_protocol_error(self):
        with self.assertRaises(ProtocolError):
            HealthStatus.from_payload({"sd_initialized": True})

    def test_non_numeric_counters_fall_back_to_zero(self):
        status = HealthStatus.from_payload({"wifi_connected": False, "free_heap": "lots"})
        self.assertEqual(status.free_heap, 0)


class ParseDeviceAddressTests(unittest.TestCase):
    def test_valid_address_is_normalized(self):
        self.assertEqual(parse_device_address(" 192.168.1.77 "), "192.168.1.77")

    def test_invalid_address_is_configuration_error(self):
        for value in ("", "192.168.1", "300.1.1.1", "esp32.local"):
            with self.assertRaises(ConfigurationError):
                parse_device_address(value)


class CheckHealthTests(unittest.TestCase):
    def test_reachable_device_marks_endpoint_healthy(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            return httpx.Response(200, json=_FULL_PAYLOAD)

        endpoint = DeviceEndpoint(address="192.168.1.77", healthy=False)
        result = _client(handler).check_health(endpoint)

        self.assertTrue(result.reachable)
        self.assertEqual(result.payload.ip_address, "192.168.1.77")
        self.assertEqual(len(seen), 1)
        self.assertTrue(seen[0].startswith("http://192.168.1.77"))
        self.assertTrue(seen[0].endswith("/status"))
        snapshot = endpoint.snapshot()
        self.assertTrue(snapshot.healthy)
        self.assertIsNotNone(snapshot.last_checked_at)

    def test_transport_error_never_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        endpoint = DeviceEndpoint(address="192.168.1.77")
        result = _client(handler).check_health(endpoint)

        self.assertFalse(result.reachable)
        self.assertIsNone(result.payload)
        self.assertIn("192.168.1.77", result.error)
        self.assertFalse(endpoint.snapshot().healthy)

    def test_timeout_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        result = _client(handler).check_health(DeviceEndpoint(address="192.168.1.77"), timeout=0.5)
        self.assertFalse(result.reachable)
        self.assertIn("Timed out", result.error)

    def test_non_200_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="busy")

        result = _client(handler).check_health(DeviceEndpoint(address="192.168.1.77"))
        self.assertFalse(result.reachable)
        self.assertIn("503", result.error)

    def test_malformed_payload_is_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>captive portal</html>")

        endpoint = DeviceEndpoint(address="192.168.1.77")
        result = _client(handler).check_health(endpoint)
        self.assertFalse(result.reachable)
        self.assertFalse(endpoint.snapshot().healthy)


if __name__ == "__main__":
    unittest.main()
