from __future__ import annotations

import tempfile
import unittest
from unittest.mock import Mock

from requests.exceptions import HTTPError, Timeout

from lead_harvester.errors import TunnelStartError
from lead_harvester.models import PipelineRun, PipelineState, ProxyProtocol, ProxyRecord, ProxyStatus, ScrapeJob
from lead_harvester.pipeline_control import PipelineControl
from lead_harvester.proxy_registry import ProxyRegistry
from lead_harvester.scraper import PAGE_FILE_NAME, Scraper, is_blocked_domain
from lead_harvester.storage import ArtifactStorage, ArtifactStore, JobStore, JsonStore


def _ok_response(text: str = "<html>contact@harbourlaw.com</html>") -> Mock:
    response = Mock()
    response.text = text
    response.raise_for_status.return_value = None
    return response


def _error_response(status: int = 503) -> Mock:
    response = Mock()
    response.raise_for_status.side_effect = HTTPError(f"{status} Server Error")
    return response


class BlockedDomainTest(unittest.TestCase):
    def test_suffix_matching(self) -> None:
        domains = ["facebook.com", "google.com"]

        self.assertTrue(is_blocked_domain("https://facebook.com/page", domains))
        self.assertTrue(is_blocked_domain("https://m.facebook.com/page", domains))
        self.assertFalse(is_blocked_domain("https://notfacebook.com/", domains))
        self.assertFalse(is_blocked_domain("https://harbourlaw.com/google.com", domains))
        self.assertFalse(is_blocked_domain("not a url", domains))


class ScraperTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        store = JsonStore()
        self.jobs = JobStore(store)
        self.artifacts = ArtifactStore(store)
        self.artifact_storage = ArtifactStorage(self.temp_dir.name)
        self.registry = ProxyRegistry()
        self.supervisor = Mock()
        self.control = PipelineControl(wait_slice=0.05)
        self.session = Mock()
        self.session.headers = {}

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _scraper(self, **kwargs) -> Scraper:
        options = dict(
            jobs=self.jobs,
            artifacts=self.artifacts,
            artifact_storage=self.artifact_storage,
            registry=self.registry,
            supervisor=self.supervisor,
            control=self.control,
            use_proxy=False,
            batch_size=2,
            max_attempts=3,
            page_timeout_seconds=5,
            user_agent="TestAgent/1.0",
            blocked_domains=["facebook.com"],
            session=self.session,
        )
        options.update(kwargs)
        return Scraper(**options)

    def test_scrapes_pending_jobs_in_batches(self) -> None:
        jobs = [ScrapeJob(link=f"https://site{index}.example/contact") for index in range(5)]
        blocked = ScrapeJob(link="https://www.facebook.com/acme")
        self.jobs.save_all(jobs + [blocked])
        self.session.get.return_value = _ok_response()
        scraper = self._scraper()

        stored = scraper.scrape_pending_jobs()

        self.assertEqual(stored, 5)
        self.assertEqual(scraper.total_count, 5)
        self.assertEqual(self.session.get.call_count, 5)
        self.assertEqual(self.session.headers["User-Agent"], "TestAgent/1.0")
        self.assertFalse(self.jobs.require(blocked.id).scraped)
        artifacts = self.artifacts.list()
        self.assertEqual(len(artifacts), 5)
        first = artifacts[0]
        self.assertEqual(first.attempt, 1)
        self.assertEqual(first.file_name, PAGE_FILE_NAME)
        self.assertIn("harbourlaw", self.artifact_storage.read(first.job_id, 1, PAGE_FILE_NAME))
        self.assertTrue(all(job.scraped for job in self.jobs.list() if job.id != blocked.id))

    def test_failures_retry_until_max_attempts(self) -> None:
        job = ScrapeJob(link="https://down.example/")
        self.jobs.save(job)
        self.session.get.return_value = _error_response()
        scraper = self._scraper()

        scraper.scrape_pending_jobs()

        stored = self.jobs.require(job.id)
        self.assertEqual(stored.attempt, 3)
        self.assertTrue(stored.scrape_failed)
        self.assertFalse(stored.scraped)
        self.assertEqual(self.session.get.call_count, 3)
        self.assertEqual(scraper.errors_count, 3)
        self.assertEqual(self.artifacts.count(), 0)

    def test_stops_when_cancelled(self) -> None:
        self.jobs.save_all([ScrapeJob(link=f"https://s{index}.example/") for index in range(3)])
        run = PipelineRun(state=PipelineState.RUNNING)
        self.control.register(run.id)
        self.control.cancel(run.id)

        stored = self._scraper().scrape_pending_jobs()

        self.assertEqual(stored, 0)
        self.session.get.assert_not_called()

    def test_standard_proxy_records_success(self) -> None:
        proxy = self.registry.add(
            ProxyRecord(protocol=ProxyProtocol.HTTP, host="10.2.2.2", port=3128, status=ProxyStatus.ACTIVE)
        )
        self.jobs.save(ScrapeJob(link="https://acme.example/"))
        self.session.get.return_value = _ok_response()

        self._scraper(use_proxy=True).scrape_pending_jobs()

        _, kwargs = self.session.get.call_args
        self.assertEqual(kwargs["proxies"], {"http": "http://10.2.2.2:3128", "https": "http://10.2.2.2:3128"})
        self.assertEqual(self.registry.get(proxy.id).success_count, 1)
        self.supervisor.start_proxy.assert_not_called()

    def test_tunnel_proxy_is_started_and_stopped(self) -> None:
        proxy = self.registry.add(
            ProxyRecord(
                protocol=ProxyProtocol.TROJAN,
                host="tr.example",
                port=443,
                password="pw",
                status=ProxyStatus.ACTIVE,
            )
        )

        def _start(record: ProxyRecord) -> int:
            record.local_port = 20001
            return 20001

        self.supervisor.start_proxy.side_effect = _start
        self.jobs.save(ScrapeJob(link="https://acme.example/"))
        self.session.get.side_effect = Timeout("read timed out")

        self._scraper(use_proxy=True).scrape_pending_jobs()

        first_call = self.session.get.call_args_list[0]
        self.assertEqual(first_call.kwargs["proxies"]["http"], "socks5h://127.0.0.1:20001")
        self.assertEqual(self.supervisor.stop_proxy.call_count, self.supervisor.start_proxy.call_count)
        self.supervisor.stop_proxy.assert_called_with(proxy.id)
        self.assertEqual(self.registry.get(proxy.id).failure_count, 3)

    def test_tunnel_start_failure_falls_back_to_direct(self) -> None:
        proxy = self.registry.add(
            ProxyRecord(protocol=ProxyProtocol.VLESS, host="v.example", port=443, uuid="u", status=ProxyStatus.ACTIVE)
        )
        self.supervisor.start_proxy.side_effect = TunnelStartError("p", "boom")
        self.jobs.save_all([ScrapeJob(link="https://acme.example/"), ScrapeJob(link="https://beta.example/")])
        self.session.get.return_value = _ok_response()

        stored = self._scraper(use_proxy=True).scrape_pending_jobs()

        self.assertEqual(stored, 2)
        self.assertEqual(self.supervisor.start_proxy.call_count, 1)
        self.assertEqual(self.registry.get(proxy.id).status, ProxyStatus.FAILED)
        self.assertIsNone(self.session.get.call_args.kwargs["proxies"])
        self.supervisor.stop_proxy.assert_not_called()


if __name__ == "__main__":
    unittest.main()
