from __future__ import annotations

import itertools
import logging
import random
import threading
from collections import Counter
from dataclasses import replace
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from . import proxy_codec
from .errors import InvalidProxyUriError, RecordNotFoundError
from .models import ImportSummary, ProxyRecord, ProxyStatus, utcnow
from .storage import ProxyStore

STRATEGIES = ("round_robin", "best", "random")


class ProxyRegistry:
    """In-memory proxy records with persistence through a ``ProxyStore``.

    Records handed out are copies; mutate them through the registry so the
    live map and the store stay in sync.
    """

    def __init__(
        self,
        store: Optional[ProxyStore] = None,
        *,
        failure_threshold: int = 5,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.failure_threshold = failure_threshold
        self._records: Dict[str, ProxyRecord] = {}
        self._lock = threading.RLock()
        self._counter = itertools.count()
        self.random = rng or random.Random()
        self.logger = logging.getLogger(__name__ + ".ProxyRegistry")
        if store is not None:
            for record in store.list():
                # tunnels never survive a restart
                record.local_port = None
                self._records[record.id] = record

    def _persist(self, record: ProxyRecord) -> None:
        if self.store is not None:
            self.store.save(record)

    def _require(self, proxy_id: str) -> ProxyRecord:
        record = self._records.get(proxy_id)
        if record is None:
            raise RecordNotFoundError("Proxy", proxy_id)
        return record

    def _find_by_address(self, address_key: str) -> Optional[ProxyRecord]:
        for record in self._records.values():
            if record.address_key == address_key:
                return record
        return None

    def add(self, proxy: ProxyRecord) -> Optional[ProxyRecord]:
        """Store ``proxy`` unless another record already uses its host:port."""
        with self._lock:
            if self._find_by_address(proxy.address_key) is not None:
                return None
            self._records[proxy.id] = proxy
            self._persist(proxy)
            return replace(proxy)

    def add_uri(self, uri: str) -> Optional[ProxyRecord]:
        return self.add(proxy_codec.decode(uri))

    def import_lines(self, lines: Iterable[str]) -> ImportSummary:
        summary = ImportSummary()
        for raw in lines:
            line = (raw or "").strip()
            if not line or line.startswith("#"):
                continue
            try:
                proxy = proxy_codec.decode(line)
            except InvalidProxyUriError as exc:
                summary.invalid += 1
                summary.errors.append(str(exc))
                self.logger.warning("Skipping invalid proxy line: %s", exc)
                continue
            created = self.add(proxy)
            if created is None:
                summary.duplicates += 1
                self.logger.debug("Skipping duplicate proxy %s", proxy.address_key)
                continue
            summary.created.append(created)
        self.logger.info(
            "Imported %d proxies (%d duplicates, %d invalid)",
            summary.created_count,
            summary.duplicates,
            summary.invalid,
        )
        return summary

    def import_text(self, text: str) -> ImportSummary:
        return self.import_lines(text.splitlines())

    def import_file(self, path) -> ImportSummary:
        with Path(path).open("r", encoding="utf-8") as handle:
            return self.import_lines(handle)

    def get(self, proxy_id: str) -> ProxyRecord:
        with self._lock:
            return replace(self._require(proxy_id))

    def list(self, include_deleted: bool = False) -> List[ProxyRecord]:
        with self._lock:
            return [
                replace(record)
                for record in self._records.values()
                if include_deleted or not record.deleted
            ]

    def untested(self) -> List[ProxyRecord]:
        return [record for record in self.list() if record.status == ProxyStatus.UNTESTED]

    def live(self) -> List[ProxyRecord]:
        return [record for record in self.list() if record.is_live]

    def update(self, proxy_id: str, mutate: Callable[[ProxyRecord], None]) -> ProxyRecord:
        with self._lock:
            record = self._require(proxy_id)
            mutate(record)
            self._persist(record)
            return replace(record)

    def soft_delete(self, proxy_id: str) -> ProxyRecord:
        return self.update(proxy_id, lambda record: setattr(record, "deleted", True))

    def restore(self, proxy_id: str) -> ProxyRecord:
        return self.update(proxy_id, lambda record: setattr(record, "deleted", False))

    def delete(self, proxy_id: str) -> None:
        with self._lock:
            self._require(proxy_id)
            del self._records[proxy_id]
            if self.store is not None:
                self.store.delete(proxy_id)

    def set_status(self, proxy_id: str, status: ProxyStatus) -> ProxyRecord:
        def _mutate(record: ProxyRecord) -> None:
            record.status = status
            record.last_tested_at = utcnow()

        return self.update(proxy_id, _mutate)

    def set_local_port(self, proxy_id: str, port: Optional[int]) -> None:
        with self._lock:
            record = self._records.get(proxy_id)
            if record is not None:
                record.local_port = port

    def record_success(self, proxy_id: str, latency_ms: int) -> ProxyRecord:
        return self.update(proxy_id, lambda record: record.record_success(latency_ms))

    def record_failure(self, proxy_id: str) -> ProxyRecord:
        def _mutate(record: ProxyRecord) -> None:
            previous = record.status
            record.record_failure(self.failure_threshold)
            if previous != ProxyStatus.FAILED and record.status == ProxyStatus.FAILED:
                self.logger.warning(
                    "Proxy %s marked failed after %d failures",
                    record.display_name(),
                    record.failure_count,
                )

        return self.update(proxy_id, _mutate)

    def _live_locked(self) -> List[ProxyRecord]:
        return [record for record in self._records.values() if record.is_live]

    def next_proxy(self) -> Optional[ProxyRecord]:
        """Round robin over the live set."""
        with self._lock:
            pool = self._live_locked()
            if not pool:
                return None
            index = next(self._counter) % len(pool)
            return replace(pool[index])

    def best_proxy(self) -> Optional[ProxyRecord]:
        """Lowest average latency (unknown last), then highest success count."""
        with self._lock:
            pool = self._live_locked()
            if not pool:
                return None
            best = min(
                pool,
                key=lambda record: (
                    record.avg_latency_ms is None,
                    record.avg_latency_ms or 0,
                    -record.success_count,
                ),
            )
            return replace(best)

    def random_proxy(self) -> Optional[ProxyRecord]:
        with self._lock:
            pool = self._live_locked()
            if not pool:
                return None
            return replace(self.random.choice(pool))

    def select(self, strategy: str = "round_robin") -> Optional[ProxyRecord]:
        if strategy == "round_robin":
            return self.next_proxy()
        if strategy == "best":
            return self.best_proxy()
        if strategy == "random":
            return self.random_proxy()
        raise ValueError(f"Unknown proxy selection strategy '{strategy}', expected one of {STRATEGIES}")

    def has_live(self) -> bool:
        with self._lock:
            return bool(self._live_locked())

    def stats(self) -> Dict[str, int]:
        with self._lock:
            records = [record for record in self._records.values() if not record.deleted]
            counts = Counter(record.status.value for record in records)
            protocols = Counter(record.protocol.value for record in records)
        result = {"total": len(records)}
        for status in ProxyStatus:
            result[status.value] = counts.get(status.value, 0)
        for protocol, count in protocols.items():
            result[f"protocol:{protocol}"] = count
        return result


__all__ = ["ProxyRegistry", "STRATEGIES"]
