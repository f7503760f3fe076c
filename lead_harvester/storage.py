from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any, Callable, Dict, Generic, Iterable, Iterator, List, Optional, Type, TypeVar

from .errors import RecordNotFoundError
from .models import (
    ApiKey,
    Contact,
    LinkResult,
    PipelineRun,
    ProxyRecord,
    ScrapeArtifact,
    ScrapeJob,
    SearchQuery,
)

COLLECTIONS = ("pipelines", "proxies", "queries", "api_keys", "jobs", "artifacts", "contacts")

RecordT = TypeVar("RecordT")


class JsonStore:
    """Thread-safe document store snapshotted to a single JSON file.

    When ``path`` is ``None`` the store lives in memory only. Every write
    rewrites the whole file, so callers saving many records in a loop should
    wrap the loop in ``deferred_flush()``.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path) if path else None
        self._lock = threading.RLock()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in COLLECTIONS}
        self._deferral = threading.local()
        self._dirty = False
        self.logger = logging.getLogger(__name__ + ".JsonStore")
        if self.path is not None and self.path.exists():
            self._load()

    def _load(self) -> None:
        assert self.path is not None
        with self.path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        for name in COLLECTIONS:
            records = payload.get(name) or {}
            if isinstance(records, dict):
                self._data[name] = records
        self.logger.info(
            "Loaded store %s (%s)",
            self.path,
            ", ".join(f"{name}={len(self._data[name])}" for name in COLLECTIONS),
        )

    def _flush_locked(self) -> None:
        if self.path is None:
            return
        if getattr(self._deferral, "depth", 0):
            self._dirty = True
            return
        self._dirty = False
        self._write_snapshot()

    def _write_snapshot(self) -> None:
        assert self.path is not None
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=self.path.name, suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(self._data, handle, ensure_ascii=False, indent=2)
            os.replace(tmp_name, self.path)
        except OSError:
            tmp_path = Path(tmp_name)
            if tmp_path.exists():
                tmp_path.unlink()
            raise

    @contextlib.contextmanager
    def deferred_flush(self) -> Iterator[None]:
        """Hold this thread's file writes until the outermost block exits."""
        self._deferral.depth = getattr(self._deferral, "depth", 0) + 1
        try:
            yield
        finally:
            self._deferral.depth -= 1
            if not self._deferral.depth:
                with self._lock:
                    if self._dirty:
                        self._flush_locked()

    def put(self, collection: str, record_id: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._data[collection][record_id] = deepcopy(payload)
            self._flush_locked()

    def put_many(self, collection: str, payloads: Dict[str, Dict[str, Any]]) -> None:
        if not payloads:
            return
        with self._lock:
            for record_id, payload in payloads.items():
                self._data[collection][record_id] = deepcopy(payload)
            self._flush_locked()

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            payload = self._data[collection].get(record_id)
            return deepcopy(payload) if payload is not None else None

    def all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [deepcopy(payload) for payload in self._data[collection].values()]

    def delete(self, collection: str, record_id: str) -> bool:
        with self._lock:
            removed = self._data[collection].pop(record_id, None)
            if removed is not None:
                self._flush_locked()
            return removed is not None

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._data[collection])


class RecordStore(Generic[RecordT]):
    collection = ""
    record_type: Type = object
    kind = "Record"

    def __init__(self, store: JsonStore) -> None:
        self.store = store

    def save(self, record: RecordT) -> RecordT:
        self.store.put(self.collection, record.id, record.to_dict())
        return record

    def save_all(self, records: Iterable[RecordT]) -> None:
        self.store.put_many(self.collection, {record.id: record.to_dict() for record in records})

    def get(self, record_id: str) -> Optional[RecordT]:
        payload = self.store.get(self.collection, record_id)
        if payload is None:
            return None
        return self.record_type.from_dict(payload)

    def require(self, record_id: str) -> RecordT:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(self.kind, record_id)
        return record

    def list(self) -> List[RecordT]:
        records = [self.record_type.from_dict(payload) for payload in self.store.all(self.collection)]
        records.sort(key=lambda item: item.created_at)
        return records

    def delete(self, record_id: str) -> bool:
        return self.store.delete(self.collection, record_id)

    def count(self) -> int:
        return self.store.count(self.collection)


class PipelineStore(RecordStore[PipelineRun]):
    collection = "pipelines"
    record_type = PipelineRun
    kind = "Pipeline"

    def list(self) -> List[PipelineRun]:
        runs = [PipelineRun.from_dict(payload) for payload in self.store.all(self.collection)]
        runs.sort(key=lambda run: run.start_time.timestamp() if run.start_time else 0.0)
        return runs

    def active_runs(self) -> List[PipelineRun]:
        return [run for run in self.list() if run.state.is_active]

    def latest(self) -> Optional[PipelineRun]:
        runs = self.list()
        return runs[-1] if runs else None


class ProxyStore(RecordStore[ProxyRecord]):
    collection = "proxies"
    record_type = ProxyRecord
    kind = "Proxy"


class QueryStore(RecordStore[SearchQuery]):
    collection = "queries"
    record_type = SearchQuery
    kind = "Search query"

    def below_link_count(self, threshold: int) -> List[SearchQuery]:
        return [query for query in self.list() if query.link_count < threshold]

    def sentences(self) -> set:
        return {" ".join(query.sentence.split()).lower() for query in self.list()}

    def add_sentences(self, sentences: Iterable[str]) -> List[SearchQuery]:
        known = self.sentences()
        created: List[SearchQuery] = []
        for sentence in sentences:
            normalized = " ".join((sentence or "").split())
            if not normalized or normalized.lower() in known:
                continue
            known.add(normalized.lower())
            created.append(SearchQuery(sentence=normalized))
        self.save_all(created)
        return created


class ApiKeyStore(RecordStore[ApiKey]):
    collection = "api_keys"
    record_type = ApiKey
    kind = "API key"


class JobStore(RecordStore[ScrapeJob]):
    collection = "jobs"
    record_type = ScrapeJob
    kind = "Scrape job"

    def known_links(self) -> set:
        return {job.link for job in self.list()}

    def create_for_links(self, links: Iterable[LinkResult], query_id: Optional[str] = None) -> List[ScrapeJob]:
        """Create jobs for links that no existing job covers."""
        known = self.known_links()
        created: List[ScrapeJob] = []
        for result in links:
            if not result.link or result.link in known:
                continue
            known.add(result.link)
            created.append(
                ScrapeJob(link=result.link, title=result.title, snippet=result.snippet, query_id=query_id)
            )
        self.save_all(created)
        return created

    def pending(
        self,
        max_attempts: int,
        limit: Optional[int] = None,
        skip: Optional[Callable[[str], bool]] = None,
    ) -> List[ScrapeJob]:
        jobs = [
            job
            for job in self.list()
            if not job.scraped and not job.scrape_failed and job.attempt < max_attempts
            and not (skip and skip(job.link))
        ]
        if limit is not None:
            jobs = jobs[:limit]
        return jobs


class ArtifactStore(RecordStore[ScrapeArtifact]):
    collection = "artifacts"
    record_type = ScrapeArtifact
    kind = "Scrape data"

    def unparsed(self) -> List[ScrapeArtifact]:
        return [artifact for artifact in self.list() if not artifact.parsed]


class ContactStore(RecordStore[Contact]):
    collection = "contacts"
    record_type = Contact
    kind = "Contact"

    def all_emails(self) -> set:
        emails = set()
        for contact in self.list():
            emails.update(contact.emails)
        return emails


class ArtifactStorage:
    """Page bodies on disk under ``<base>/<job_id>/<attempt>/<file_name>``."""

    def __init__(self, base_dir: str) -> None:
        self.base_dir = Path(base_dir)
        self.logger = logging.getLogger(__name__ + ".ArtifactStorage")

    def path_for(self, job_id: str, attempt: int, file_name: str) -> Path:
        return self.base_dir / job_id / str(attempt) / file_name

    def write(self, job_id: str, attempt: int, file_name: str, content: str) -> Path:
        path = self.path_for(job_id, attempt, file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            handle.write(content)
        self.logger.debug("Stored %d characters at %s", len(content), path)
        return path

    def read(self, job_id: str, attempt: int, file_name: str) -> str:
        path = self.path_for(job_id, attempt, file_name)
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return handle.read()


class Stores:
    """Typed views over one shared ``JsonStore``."""

    def __init__(self, store: JsonStore) -> None:
        self.store = store
        self.pipelines = PipelineStore(store)
        self.proxies = ProxyStore(store)
        self.queries = QueryStore(store)
        self.api_keys = ApiKeyStore(store)
        self.jobs = JobStore(store)
        self.artifacts = ArtifactStore(store)
        self.contacts = ContactStore(store)


__all__ = [
    "ApiKeyStore",
    "ArtifactStorage",
    "ArtifactStore",
    "COLLECTIONS",
    "ContactStore",
    "JobStore",
    "JsonStore",
    "PipelineStore",
    "ProxyStore",
    "QueryStore",
    "RecordStore",
    "Stores",
]
