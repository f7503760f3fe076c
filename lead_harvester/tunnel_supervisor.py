from __future__ import annotations

import contextlib
import itertools
import json
import logging
import socket
import subprocess
import threading
import time
import zlib
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, TYPE_CHECKING

from . import proxy_codec
from .errors import ConfigurationError, LeadHarvesterError, TunnelStartError
from .models import ProxyRecord

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .proxy_registry import ProxyRegistry

LOCAL_HOST = "127.0.0.1"
MAX_PORT = 65535
START_LOCK_STRIPES = 32


def classify_log_level(line: str) -> int:
    lowered = line.lower()
    if "error" in lowered or "fatal" in lowered or "panic" in lowered:
        return logging.ERROR
    if "warn" in lowered:
        return logging.WARNING
    if "debug" in lowered:
        return logging.DEBUG
    return logging.INFO


def build_tunnel_config(proxy: ProxyRecord, local_port: int) -> Dict[str, Any]:
    return {
        "log": {"loglevel": "warning"},
        "inbounds": [
            {
                "tag": "socks-in",
                "port": local_port,
                "listen": LOCAL_HOST,
                "protocol": "socks",
                "settings": {"auth": "noauth", "udp": True},
            }
        ],
        "outbounds": [proxy_codec.build_outbound(proxy)],
    }


class TunnelProcess:
    """A running tunnel client and the thread draining its output."""

    def __init__(self, proxy_id: str, process: subprocess.Popen) -> None:
        self.proxy_id = proxy_id
        self.process = process
        self.logger = logging.getLogger(__name__ + ".TunnelProcess")
        self._reader: Optional[threading.Thread] = None

    def start_reader(self) -> None:
        if self.process.stdout is None:
            return
        self._reader = threading.Thread(
            target=self._drain_output,
            name=f"tunnel-{self.proxy_id[:8]}",
            daemon=True,
        )
        self._reader.start()

    def _drain_output(self) -> None:
        stream = self.process.stdout
        try:
            for raw in iter(stream.readline, ""):
                line = raw.rstrip()
                if line:
                    self.logger.log(classify_log_level(line), "[%s] %s", self.proxy_id, line)
        except (OSError, ValueError):
            # stream closed while the process was being torn down
            pass
        finally:
            with contextlib.suppress(OSError, ValueError):
                stream.close()

    def is_alive(self) -> bool:
        return self.process.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.poll()

    def stop(self, timeout: float) -> None:
        if self.is_alive():
            self.process.terminate()
            try:
                self.process.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                self.logger.warning("Tunnel for proxy %s did not exit, killing it", self.proxy_id)
                self.process.kill()
                self.process.wait(timeout=timeout)
        if self._reader is not None:
            self._reader.join(timeout=timeout)


class TunnelSupervisor:
    """Starts and stops local tunnel clients for tunnel-protocol proxies.

    Each running tunnel owns a distinct local SOCKS port; ports are handed
    out from a monotonic counter, skipped when already allocated in-process
    or bound by someone else, and released on stop.
    """

    def __init__(
        self,
        *,
        executable: str = "xray",
        config_dir: str = "./tunnel-configs",
        base_port: int = 20000,
        max_port_attempts: int = 200,
        startup_settle_seconds: float = 0.5,
        startup_timeout_seconds: float = 5.0,
        probe_interval_seconds: float = 0.2,
        probe_connect_timeout: float = 0.5,
        stop_timeout_seconds: float = 5.0,
        registry: Optional["ProxyRegistry"] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executable = executable
        self.config_dir = Path(config_dir)
        self.base_port = base_port
        self.max_port_attempts = max(1, max_port_attempts)
        self.startup_settle_seconds = startup_settle_seconds
        self.startup_timeout_seconds = max(startup_timeout_seconds, startup_settle_seconds)
        self.probe_interval_seconds = probe_interval_seconds
        self.probe_connect_timeout = probe_connect_timeout
        self.stop_timeout_seconds = stop_timeout_seconds
        self.registry = registry
        self._sleep = sleep
        self._port_counter = itertools.count(base_port)
        self._allocated_ports: Set[int] = set()
        self._port_lock = threading.Lock()
        self._running: Dict[str, TunnelProcess] = {}
        self._ports: Dict[str, int] = {}
        self._running_lock = threading.Lock()
        self._start_locks: List[threading.Lock] = [threading.Lock() for _ in range(START_LOCK_STRIPES)]
        self.logger = logging.getLogger(__name__ + ".TunnelSupervisor")

    # ports --------------------------------------------------------------

    @staticmethod
    def _port_is_free(port: int) -> bool:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
            try:
                sock.bind((LOCAL_HOST, port))
            except OSError:
                return False
        return True

    def allocate_port(self, proxy_id: str = "") -> int:
        with self._port_lock:
            for _ in range(self.max_port_attempts):
                port = next(self._port_counter)
                if port > MAX_PORT:
                    self._port_counter = itertools.count(self.base_port)
                    port = next(self._port_counter)
                if port in self._allocated_ports:
                    continue
                if not self._port_is_free(port):
                    self.logger.debug("Port %d is in use, trying the next one", port)
                    continue
                self._allocated_ports.add(port)
                return port
        raise TunnelStartError(
            proxy_id,
            f"no free local port after {self.max_port_attempts} attempts from {self.base_port}",
        )

    def release_port(self, port: Optional[int]) -> None:
        if port is None:
            return
        with self._port_lock:
            self._allocated_ports.discard(port)

    def allocated_ports(self) -> Set[int]:
        with self._port_lock:
            return set(self._allocated_ports)

    # config files -------------------------------------------------------

    def config_path(self, proxy_id: str) -> Path:
        return self.config_dir / f"proxy-{proxy_id}.json"

    def write_config(self, proxy: ProxyRecord, local_port: int) -> Path:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        path = self.config_path(proxy.id)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(build_tunnel_config(proxy, local_port), handle, ensure_ascii=False, indent=2)
        self.logger.debug("Wrote tunnel config %s", path)
        return path

    def _remove_config(self, proxy_id: str) -> None:
        path = self.config_path(proxy_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning("Unable to remove tunnel config %s: %s", path, exc)

    # lifecycle ----------------------------------------------------------

    def _start_lock(self, proxy_id: str) -> threading.Lock:
        # fixed stripes; one proxy id always maps to the same lock
        return self._start_locks[zlib.crc32(proxy_id.encode("utf-8")) % len(self._start_locks)]

    def _spawn(self, proxy_id: str, path: Path) -> subprocess.Popen:
        command = [self.executable, "run", "-c", str(path)]
        try:
            return subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as exc:
            raise TunnelStartError(
                proxy_id,
                ConfigurationError(f"Tunnel executable '{self.executable}' not found: {exc}"),
            ) from exc
        except OSError as exc:
            raise TunnelStartError(proxy_id, exc) from exc

    def _wait_for_port(self, port: int, handle: TunnelProcess) -> bool:
        deadline = time.monotonic() + max(0.0, self.startup_timeout_seconds - self.startup_settle_seconds)
        while True:
            if not handle.is_alive():
                return False
            try:
                with contextlib.closing(
                    socket.create_connection((LOCAL_HOST, port), timeout=self.probe_connect_timeout)
                ):
                    return True
            except OSError:
                pass
            if time.monotonic() >= deadline:
                return False
            self._sleep(self.probe_interval_seconds)

    def start_proxy(self, proxy: ProxyRecord) -> int:
        """Start a tunnel for ``proxy`` and return its local SOCKS port."""
        if not proxy.requires_tunnel:
            raise TunnelStartError(proxy.id, f"{proxy.protocol.value} does not need a tunnel")

        with self._start_lock(proxy.id):
            with self._running_lock:
                existing = self._running.get(proxy.id)
                if existing is not None and existing.is_alive():
                    port = self._ports[proxy.id]
                    self.logger.info("Tunnel for proxy %s already running on port %d", proxy.id, port)
                    proxy.local_port = port
                    return port
            if existing is not None:
                self.stop_proxy(proxy.id)

            port = self.allocate_port(proxy.id)
            handle: Optional[TunnelProcess] = None
            try:
                path = self.write_config(proxy, port)
                handle = TunnelProcess(proxy.id, self._spawn(proxy.id, path))
                handle.start_reader()
                self._sleep(self.startup_settle_seconds)
                if not handle.is_alive():
                    raise TunnelStartError(proxy.id, f"process exited with code {handle.returncode}")
                if not self._wait_for_port(port, handle):
                    raise TunnelStartError(proxy.id, f"local port {port} did not accept connections")
            except (LeadHarvesterError, OSError, ValueError) as exc:
                if handle is not None:
                    handle.stop(self.stop_timeout_seconds)
                self._remove_config(proxy.id)
                self.release_port(port)
                self.logger.error("Failed to start tunnel for proxy %s: %s", proxy.id, exc)
                if isinstance(exc, TunnelStartError):
                    raise
                raise TunnelStartError(proxy.id, exc) from exc

            with self._running_lock:
                self._running[proxy.id] = handle
                self._ports[proxy.id] = port
            proxy.local_port = port
            if self.registry is not None:
                self.registry.set_local_port(proxy.id, port)
            self.logger.info("Started tunnel for proxy %s on port %d", proxy.display_name(), port)
            return port

    def stop_proxy(self, proxy_id: str) -> bool:
        with self._running_lock:
            handle = self._running.pop(proxy_id, None)
            port = self._ports.pop(proxy_id, None)
        if handle is None:
            return False
        try:
            handle.stop(self.stop_timeout_seconds)
        finally:
            self._remove_config(proxy_id)
            self.release_port(port)
            if self.registry is not None:
                self.registry.set_local_port(proxy_id, None)
        self.logger.info("Stopped tunnel for proxy %s", proxy_id)
        return True

    def stop_all(self) -> None:
        with self._running_lock:
            proxy_ids = list(self._running)
        if proxy_ids:
            self.logger.info("Stopping %d tunnel clients...", len(proxy_ids))
        for proxy_id in proxy_ids:
            try:
                self.stop_proxy(proxy_id)
            except Exception as exc:  # pylint: disable=broad-except
                self.logger.error("Failed to stop tunnel for proxy %s: %s", proxy_id, exc)

    def is_running(self, proxy_id: str) -> bool:
        with self._running_lock:
            handle = self._running.get(proxy_id)
        return handle is not None and handle.is_alive()

    def running_proxies(self) -> Dict[str, int]:
        with self._running_lock:
            return dict(self._ports)

    def local_port(self, proxy_id: str) -> Optional[int]:
        with self._running_lock:
            return self._ports.get(proxy_id)


__all__ = [
    "TunnelProcess",
    "TunnelSupervisor",
    "build_tunnel_config",
    "classify_log_level",
]
