from __future__ import annotations

import threading
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock, patch

from requests.exceptions import ProxyError

from lead_harvester.errors import TunnelStartError
from lead_harvester.models import ProxyProtocol, ProxyRecord, ProxyStatus
from lead_harvester.proxy_registry import ProxyRegistry
from lead_harvester.proxy_tester import ProxyTester


def _response(ok: bool = True, text: str = '{"origin": "203.0.113.9"}', status_code: int = 200) -> Mock:
    response = Mock()
    response.ok = ok
    response.text = text
    response.status_code = status_code
    return response


class ProxyTesterTest(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = ProxyRegistry()
        self.supervisor = Mock()
        self.session = Mock()
        self.tester = ProxyTester(
            registry=self.registry,
            supervisor=self.supervisor,
            test_url="https://echo.example/ip",
            timeout=3,
            slow_threshold_ms=5000,
            max_workers=4,
            session=self.session,
        )

    def _socks(self, host: str = "198.51.100.1") -> ProxyRecord:
        return self.registry.add(ProxyRecord(protocol=ProxyProtocol.SOCKS5, host=host, port=1080))

    def test_working_proxy_becomes_active(self) -> None:
        proxy = self._socks()
        self.session.get.return_value = _response()

        result = self.tester.test(proxy)

        self.assertEqual(result.status, ProxyStatus.ACTIVE)
        self.assertEqual(result.success_count, 1)
        self.assertIsNotNone(result.last_tested_at)
        _, kwargs = self.session.get.call_args
        self.assertEqual(kwargs["proxies"]["http"], "socks5h://198.51.100.1:1080")

    def test_slow_proxy(self) -> None:
        proxy = self._socks()
        self.session.get.return_value = _response()

        with patch("lead_harvester.proxy_tester.time") as fake_time:
            fake_time.monotonic.side_effect = [100.0, 106.5]
            result = self.tester.test(proxy)

        self.assertEqual(result.status, ProxyStatus.SLOW)
        self.assertEqual(result.avg_latency_ms, 6500)

    def test_unexpected_body_fails(self) -> None:
        proxy = self._socks()
        self.session.get.return_value = _response(text="<html>captive portal</html>")

        result = self.tester.test(proxy)

        self.assertEqual(result.status, ProxyStatus.FAILED)
        self.assertEqual(result.failure_count, 1)

    def test_connection_error_fails(self) -> None:
        proxy = self._socks()
        self.session.get.side_effect = ProxyError("refused")

        self.assertEqual(self.tester.test(proxy).status, ProxyStatus.FAILED)

    def test_tunnel_is_stopped_after_test(self) -> None:
        proxy = self.registry.add(
            ProxyRecord(protocol=ProxyProtocol.VMESS, host="vm.example", port=443, uuid="id")
        )

        def _start(record: ProxyRecord) -> int:
            record.local_port = 20010
            return 20010

        self.supervisor.start_proxy.side_effect = _start
        self.session.get.return_value = _response()

        result = self.tester.test(proxy)

        self.assertEqual(result.status, ProxyStatus.ACTIVE)
        self.supervisor.stop_proxy.assert_called_once_with(proxy.id)

    def test_tunnel_start_failure_marks_failed(self) -> None:
        proxy = self.registry.add(
            ProxyRecord(protocol=ProxyProtocol.VLESS, host="v.example", port=443, uuid="id")
        )
        self.supervisor.start_proxy.side_effect = TunnelStartError(proxy.id, "no binary")

        result = self.tester.test(proxy)

        self.assertEqual(result.status, ProxyStatus.FAILED)
        self.session.get.assert_not_called()

    def test_batch_counts_by_status(self) -> None:
        good = self._socks("198.51.100.1")
        bad = self._socks("198.51.100.2")

        def _get(_url, timeout, proxies):
            if "198.51.100.2" in proxies["http"]:
                raise ProxyError("refused")
            return _response()

        self.session.get.side_effect = _get

        counts = self.tester.test_untested()

        self.assertEqual(counts, {"active": 1, "failed": 1})
        self.assertEqual(self.registry.get(good.id).status, ProxyStatus.ACTIVE)
        self.assertEqual(self.registry.get(bad.id).status, ProxyStatus.FAILED)
        self.assertEqual(self.registry.untested(), [])

    def test_batch_runs_on_shared_executor(self) -> None:
        proxy = self._socks("198.51.100.3")
        self.session.get.return_value = _response()
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="pipeline")
        self.addCleanup(executor.shutdown)
        self.tester.executor = executor
        threads = []
        original_test = self.tester.test

        def _recording_test(record):
            threads.append(threading.current_thread().name)
            return original_test(record)

        self.tester.test = _recording_test

        counts = self.tester.test_untested()

        self.assertEqual(counts, {"active": 1})
        self.assertEqual(self.registry.get(proxy.id).status, ProxyStatus.ACTIVE)
        self.assertTrue(threads[0].startswith("pipeline"))
        self.assertEqual(executor.submit(lambda: "still open").result(), "still open")

    def test_shutdown_stops_scheduling(self) -> None:
        self._socks("198.51.100.1")
        event = threading.Event()
        event.set()

        self.assertEqual(self.tester.test_all(event), {})
        self.session.get.assert_not_called()


if __name__ == "__main__":
    unittest.main()
