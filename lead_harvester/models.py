from __future__ import annotations

import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class PipelineStage(str, Enum):
    STARTED = "started"
    API_CALLER_STARTED = "api_caller_started"
    API_CALLER_COMPLETE = "api_caller_complete"
    SCRAPER_STARTED = "scraper_started"
    SCRAPER_COMPLETE = "scraper_complete"
    PARSER_STARTED = "parser_started"
    PARSER_COMPLETE = "parser_complete"


class PipelineState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SKIPPING = "skipping"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (PipelineState.RUNNING, PipelineState.PAUSED, PipelineState.SKIPPING)

    @property
    def is_finished(self) -> bool:
        return self in (PipelineState.COMPLETED, PipelineState.FAILED, PipelineState.CANCELLED)


class ProxyProtocol(str, Enum):
    SOCKS4 = "socks4"
    SOCKS5 = "socks5"
    HTTP = "http"
    HTTPS = "https"
    VLESS = "vless"
    VMESS = "vmess"
    SHADOWSOCKS = "shadowsocks"
    TROJAN = "trojan"

    @property
    def requires_tunnel(self) -> bool:
        return self in TUNNEL_PROTOCOLS

    @property
    def scheme(self) -> str:
        if self is ProxyProtocol.SHADOWSOCKS:
            return "ss"
        return self.value


TUNNEL_PROTOCOLS = frozenset(
    {ProxyProtocol.VLESS, ProxyProtocol.VMESS, ProxyProtocol.SHADOWSOCKS, ProxyProtocol.TROJAN}
)


class ProxyStatus(str, Enum):
    UNTESTED = "untested"
    ACTIVE = "active"
    SLOW = "slow"
    FAILED = "failed"


def _to_json_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_to_json_value(item) for item in value]
    return value


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class _Record:
    """Dict conversion shared by every persisted dataclass."""

    _enum_fields: ClassVar[Dict[str, Type[Enum]]] = {}
    _datetime_fields: ClassVar[tuple] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {item.name: _to_json_value(getattr(self, item.name)) for item in fields(self)}

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]):
        known = {item.name for item in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in payload.items():
            if key not in known:
                continue
            if key in cls._enum_fields and value is not None:
                value = cls._enum_fields[key](value)
            elif key in cls._datetime_fields:
                value = _parse_datetime(value)
            values[key] = value
        return cls(**values)


@dataclass
class PipelineRun(_Record):
    id: str = field(default_factory=new_id)
    stage: PipelineStage = PipelineStage.STARTED
    state: PipelineState = PipelineState.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    items_processed: int = 0
    items_total: int = 0
    current_step_name: Optional[str] = None
    links_created: int = 0
    pages_scraped: int = 0
    contacts_found: int = 0
    errors_count: int = 0

    _enum_fields: ClassVar[Dict[str, Type[Enum]]] = {
        "stage": PipelineStage,
        "state": PipelineState,
    }
    _datetime_fields: ClassVar[tuple] = ("start_time", "end_time")

    @property
    def duration(self) -> Optional[timedelta]:
        if self.start_time is None:
            return None
        end = self.end_time or utcnow()
        return end - self.start_time

    @property
    def duration_formatted(self) -> str:
        delta = self.duration
        if delta is None:
            return "N/A"
        total = max(0, int(delta.total_seconds()))
        hours, remainder = divmod(total, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}h {minutes}m {seconds}s"
        if minutes > 0:
            return f"{minutes}m {seconds}s"
        return f"{seconds}s"

    @property
    def progress_percent(self) -> float:
        if not self.items_total:
            return 0.0
        return (self.items_processed * 100.0) / self.items_total

    def increment_links_created(self, count: int) -> None:
        self.links_created += count

    def increment_contacts_found(self, count: int) -> None:
        self.contacts_found += count


@dataclass
class ProxyRecord(_Record):
    protocol: ProxyProtocol
    host: str
    port: int
    id: str = field(default_factory=new_id)
    username: Optional[str] = None
    password: Optional[str] = None
    status: ProxyStatus = ProxyStatus.UNTESTED
    success_count: int = 0
    failure_count: int = 0
    avg_latency_ms: Optional[int] = None
    last_tested_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    # tunnel protocol fields
    uuid: Optional[str] = None
    encryption: Optional[str] = None
    transport_type: Optional[str] = None
    security: Optional[str] = None
    sni: Optional[str] = None
    path: Optional[str] = None
    ws_host: Optional[str] = None
    alpn: Optional[str] = None
    fingerprint: Optional[str] = None
    public_key: Optional[str] = None
    short_id: Optional[str] = None
    alter_id: Optional[int] = None
    flow: Optional[str] = None

    original_url: Optional[str] = None
    description: Optional[str] = None
    local_port: Optional[int] = None
    deleted: bool = False
    created_at: datetime = field(default_factory=utcnow)

    _enum_fields: ClassVar[Dict[str, Type[Enum]]] = {
        "protocol": ProxyProtocol,
        "status": ProxyStatus,
    }
    _datetime_fields: ClassVar[tuple] = ("last_tested_at", "last_used_at", "created_at")

    @property
    def requires_tunnel(self) -> bool:
        return self.protocol.requires_tunnel

    @property
    def address_key(self) -> str:
        return f"{self.host.lower()}:{self.port}"

    @property
    def is_live(self) -> bool:
        return not self.deleted and self.status in (ProxyStatus.ACTIVE, ProxyStatus.SLOW)

    def record_success(self, latency_ms: int) -> None:
        self.success_count += 1
        if self.avg_latency_ms is None:
            self.avg_latency_ms = int(latency_ms)
        else:
            self.avg_latency_ms = int((self.avg_latency_ms + latency_ms) / 2)
        self.last_used_at = utcnow()

    def record_failure(self, threshold: int = 5) -> None:
        self.failure_count += 1
        self.last_used_at = utcnow()
        if self.failure_count > threshold and self.failure_count > self.success_count:
            self.status = ProxyStatus.FAILED

    def to_proxy_url(self) -> str:
        """URL usable by an HTTP client; tunnel protocols go through the local SOCKS inbound."""
        if self.requires_tunnel:
            if self.local_port is None:
                raise ValueError(
                    f"Tunnel protocol {self.protocol.value} requires a running tunnel with a local port"
                )
            return f"socks5://127.0.0.1:{self.local_port}"
        credentials = ""
        if self.username:
            credentials = self.username
            if self.password:
                credentials += f":{self.password}"
            credentials += "@"
        return f"{self.protocol.value}://{credentials}{self.host}:{self.port}"

    def requests_proxies(self) -> Dict[str, str]:
        url = self.to_proxy_url()
        # resolve hostnames through the proxy
        if url.startswith("socks5://"):
            url = "socks5h://" + url[len("socks5://"):]
        return {"http": url, "https": url}

    def display_name(self) -> str:
        label = f"{self.protocol.value.upper()} {self.host}:{self.port}"
        if self.description:
            label += f" ({self.description})"
        return label


@dataclass
class SearchQuery(_Record):
    sentence: str
    id: str = field(default_factory=new_id)
    link_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields: ClassVar[tuple] = ("created_at",)


@dataclass
class ApiKey(_Record):
    key: str
    api_link: str
    search_engine_id: str = ""
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields: ClassVar[tuple] = ("created_at",)


@dataclass
class ScrapeJob(_Record):
    link: str
    id: str = field(default_factory=new_id)
    title: str = ""
    snippet: str = ""
    query_id: Optional[str] = None
    attempt: int = 0
    scraped: bool = False
    scrape_failed: bool = False
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields: ClassVar[tuple] = ("created_at",)


@dataclass
class ScrapeArtifact(_Record):
    job_id: str
    attempt: int
    file_name: str
    id: str = field(default_factory=new_id)
    parsed: bool = False
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields: ClassVar[tuple] = ("created_at",)


@dataclass
class Contact(_Record):
    artifact_id: str
    emails: List[str] = field(default_factory=list)
    id: str = field(default_factory=new_id)
    created_at: datetime = field(default_factory=utcnow)

    _datetime_fields: ClassVar[tuple] = ("created_at",)

    @property
    def has_contact_info(self) -> bool:
        return bool(self.emails)


@dataclass(frozen=True)
class LinkResult:
    link: str
    title: str = ""
    snippet: str = ""


@dataclass
class ImportSummary:
    created: List[ProxyRecord] = field(default_factory=list)
    duplicates: int = 0
    invalid: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def skipped_count(self) -> int:
        return self.duplicates + self.invalid
