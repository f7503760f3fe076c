from __future__ import annotations

import json
import random
import unittest
from unittest.mock import Mock

from requests.exceptions import ConnectionError as RequestsConnectionError

from lead_harvester.errors import ConfigurationError, SearchResponseError
from lead_harvester.link_parser import parse_links
from lead_harvester.models import ApiKey, SearchQuery
from lead_harvester.pipeline_control import PipelineControl
from lead_harvester.search_client import SearchFetcher, truncate
from lead_harvester.storage import ApiKeyStore, JobStore, JsonStore, QueryStore

TEMPLATE = "https://search.example/v1?key=<api_key>&cx=<search_engine_id>&q=<query>&start=<start_index>&num=<count>"


def _response(status_code: int = 200, payload=None, text=None) -> Mock:
    response = Mock()
    response.status_code = status_code
    response.headers = {}
    if text is None:
        text = json.dumps(payload) if payload is not None else ""
    response.text = text
    return response


def _items(*links: str) -> dict:
    return {"items": [{"link": link, "title": f"T {link}", "snippet": "s"} for link in links]}


class SearchFetcherTest(unittest.TestCase):
    def setUp(self) -> None:
        store = JsonStore()
        self.api_keys = ApiKeyStore(store)
        self.queries = QueryStore(store)
        self.jobs = JobStore(store)
        self.control = PipelineControl()
        self.control.sleep = Mock(return_value=True)
        self.session = Mock()

    def _fetcher(self, **kwargs) -> SearchFetcher:
        options = dict(
            api_keys=self.api_keys,
            queries=self.queries,
            jobs=self.jobs,
            control=self.control,
            results_per_page=10,
            max_pages=1,
            rate_limit_ms=0,
            max_retries_per_page=3,
            backoff_initial_ms=3000,
            backoff_multiplier=2.0,
            backoff_max_ms=20000,
            max_query_links=10,
            session=self.session,
            rng=random.Random(7),
        )
        options.update(kwargs)
        return SearchFetcher(**options)

    def _add_keys(self, count: int) -> list:
        keys = [ApiKey(key=f"key{index}", api_link=TEMPLATE, search_engine_id="cx") for index in range(count)]
        self.api_keys.save_all(keys)
        return keys

    def _requested_keys(self) -> list:
        urls = [call.args[0] for call in self.session.get.call_args_list]
        return [url.split("key=", 1)[1].split("&", 1)[0] for url in urls]

    def test_build_url_replaces_tokens(self) -> None:
        fetcher = self._fetcher()
        key = ApiKey(key="abc", api_link=TEMPLATE, search_engine_id="engine")

        url = fetcher.build_url("dentist london contact", 2, key)

        self.assertEqual(
            url,
            "https://search.example/v1?key=abc&cx=engine&q=dentist+london+contact&start=21&num=10",
        )

    def test_backoff_is_monotonic_and_capped(self) -> None:
        fetcher = self._fetcher()
        delays = [fetcher.backoff_delay(retries) for retries in range(10)]

        self.assertEqual(delays[:3], [3000, 6000, 12000])
        self.assertEqual(delays, sorted(delays))
        self.assertEqual(max(delays), 20000)

    def test_jitter_stays_within_quarter(self) -> None:
        fetcher = self._fetcher()
        for base in (0, 500, 3000, 20000):
            safe = max(base, 1000)
            for _ in range(50):
                value = fetcher.with_jitter(base)
                self.assertGreaterEqual(value, safe)
                self.assertLess(value, safe + max(1, safe // 4))

    def test_no_keys_is_configuration_error(self) -> None:
        self.queries.save(SearchQuery(sentence="plumber dublin"))

        with self.assertRaises(ConfigurationError):
            self._fetcher().fetch()

    def test_gives_up_after_exactly_max_retries_on_429(self) -> None:
        self._add_keys(2)
        self.queries.save(SearchQuery(sentence="law firm berlin"))
        self.session.get.return_value = _response(429)
        fetcher = self._fetcher()

        created = fetcher.fetch()

        self.assertEqual(created, 0)
        self.assertEqual(self.session.get.call_count, 4)
        waits = [call.args[0] for call in self.control.sleep.call_args_list]
        self.assertEqual(len(waits), 3)
        for attempt, wait in enumerate(waits):
            base = fetcher.backoff_delay(attempt) / 1000.0
            self.assertGreaterEqual(wait, base)
            self.assertLess(wait, base * 1.25 + 0.001)
        requested = self._requested_keys()
        self.assertTrue(all(first != second for first, second in zip(requested, requested[1:])))

    def test_http_errors_rotate_through_every_key_then_abort(self) -> None:
        self._add_keys(3)
        self.queries.save(SearchQuery(sentence="architect madrid"))
        self.session.get.return_value = _response(500)

        self._fetcher(max_pages=3).fetch()

        self.assertEqual(self.session.get.call_count, 3)
        self.assertEqual(sorted(self._requested_keys()), ["key0", "key1", "key2"])

    def test_transport_errors_are_treated_like_http_errors(self) -> None:
        self._add_keys(2)
        self.queries.save(SearchQuery(sentence="vet toronto"))
        self.session.get.side_effect = RequestsConnectionError("reset")

        self._fetcher(max_pages=2).fetch()

        self.assertEqual(self.session.get.call_count, 2)

    def test_success_creates_deduplicated_jobs(self) -> None:
        self._add_keys(1)
        first = SearchQuery(sentence="dentist london")
        second = SearchQuery(sentence="dentist sydney")
        self.queries.save_all([first, second])
        self.session.get.side_effect = [
            _response(200, _items("https://a.example/contact", "https://b.example/")),
            _response(200, _items("https://b.example/", "https://c.example/about")),
        ]
        fetcher = self._fetcher()

        created = fetcher.fetch()

        self.assertEqual(created, 3)
        self.assertEqual(fetcher.processed_count, 2)
        self.assertEqual(
            sorted(job.link for job in self.jobs.list()),
            ["https://a.example/contact", "https://b.example/", "https://c.example/about"],
        )
        self.assertEqual(self.queries.require(first.id).link_count, 2)
        self.assertEqual(self.queries.require(second.id).link_count, 2)

    def test_empty_and_linkless_pages_advance(self) -> None:
        self._add_keys(2)
        query = SearchQuery(sentence="accountant amsterdam")
        self.queries.save(query)
        self.session.get.side_effect = [
            _response(200, text=""),
            _response(200, {"items": []}),
            _response(200, text="<html>not json</html>"),
        ]

        self._fetcher(max_pages=3).fetch()

        self.assertEqual(self.session.get.call_count, 3)
        requested = self._requested_keys()
        self.assertTrue(all(first != second for first, second in zip(requested, requested[1:])))
        self.assertEqual(self.queries.require(query.id).link_count, 0)
        self.assertEqual(self.jobs.count(), 0)

    def test_rate_limit_spacing_between_pages(self) -> None:
        self._add_keys(1)
        self.queries.save(SearchQuery(sentence="plumber london"))
        self.session.get.side_effect = [
            _response(200, _items("https://p1.example/")),
            _response(200, _items("https://p2.example/")),
        ]

        self._fetcher(max_pages=2, rate_limit_ms=1500).fetch()

        self.assertEqual([call.args[0] for call in self.control.sleep.call_args_list], [1.5])

    def test_cancelled_wait_stops_processing(self) -> None:
        self._add_keys(1)
        self.queries.save(SearchQuery(sentence="marketing agency berlin"))
        self.session.get.return_value = _response(429)
        self.control.sleep.return_value = False

        self._fetcher().fetch()

        self.assertEqual(self.session.get.call_count, 1)

    def test_queries_at_link_threshold_are_skipped(self) -> None:
        self._add_keys(1)
        self.queries.save(SearchQuery(sentence="done already", link_count=10))

        self.assertEqual(self._fetcher().fetch(), 0)
        self.session.get.assert_not_called()

    def test_parse_links(self) -> None:
        links = parse_links({"items": [{"link": " https://a.example/ ", "title": "A"}, {"title": "no link"}, "junk"]})

        self.assertEqual([(link.link, link.title, link.snippet) for link in links], [("https://a.example/", "A", "")])
        self.assertEqual(parse_links(""), [])
        self.assertEqual(parse_links(b'{"kind": "customsearch"}'), [])
        with self.assertRaises(SearchResponseError):
            parse_links("[1, 2]")
        with self.assertRaises(SearchResponseError):
            parse_links("{broken")

    def test_truncate(self) -> None:
        self.assertEqual(truncate(None, 5), "")
        self.assertEqual(truncate("short", 5), "short")
        self.assertEqual(truncate("longer text", 6), "longer...")


if __name__ == "__main__":
    unittest.main()
