import os
from copy import deepcopy
from typing import Any, Dict, Iterable, Optional, Tuple

from .errors import ConfigurationError

SEARCH_TEMPLATE_TOKENS = ("<query>", "<api_key>", "<start_index>")

DEFAULT_CONFIG: Dict[str, Any] = {
    "search": {
        "results_per_page": 10,
        "max_pages": 3,
        "rate_limit_ms": 1000,
        "max_retries_per_page": 3,
        "backoff_initial_ms": 3000,
        "backoff_multiplier": 2.0,
        "backoff_max_ms": 20000,
        "max_query_links": 10,
        "request_timeout": 15,
        "api_link_template": (
            "https://www.googleapis.com/customsearch/v1"
            "?key=<api_key>&cx=<search_engine_id>&q=<query>&start=<start_index>&num=<count>"
        ),
    },
    "scraper": {
        "use_proxy": True,
        "batch_size": 100,
        "max_attempts": 3,
        "page_timeout_seconds": 10,
        "proxy_strategy": "round_robin",
        "user_agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
        ),
        "blocked_domains": [
            "google.com",
            "youtube.com",
            "facebook.com",
            "twitter.com",
            "instagram.com",
            "linkedin.com",
            "pinterest.com",
            "tiktok.com",
            "reddit.com",
            "wikipedia.org",
            "yahoo.com",
            "bing.com",
            "amazon.com",
            "ebay.com",
            "netflix.com",
        ],
    },
    "tunnel": {
        "executable": "xray",
        "config_dir": "./tunnel-configs",
        "base_port": 20000,
        "max_port_attempts": 200,
        "startup_settle_seconds": 0.5,
        "startup_timeout_seconds": 5.0,
        "probe_interval_seconds": 0.2,
        "probe_connect_timeout": 0.5,
        "stop_timeout_seconds": 5.0,
    },
    "proxies": {
        "test_url": "https://httpbin.org/ip",
        "test_timeout_seconds": 15.0,
        "slow_threshold_ms": 5000,
        "test_workers": 8,
        "failure_threshold": 5,
    },
    "pipeline": {
        "worker_count": 2,
        "wait_slice_seconds": 0.25,
        "recover_orphaned_runs": True,
    },
    "storage": {
        "path": "data/store.json",
        "artifact_dir": "data/artifacts",
    },
    "logging": {
        "level": "INFO",
        "directory": "logs",
        "filename": "app.log",
        "max_bytes": 2 * 1024 * 1024,
        "backup_count": 5,
    },
}


def _deep_update(target: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            target[key] = _deep_update(dict(target[key]), value)
        else:
            target[key] = value
    return target


def _apply_config_value(config: Dict[str, Any], path: Iterable[str], value: Any) -> None:
    keys = list(path)
    target = config
    for key in keys[:-1]:
        target = target.setdefault(key, {})
    target[keys[-1]] = value


def _env_int(name: str, minimum: Optional[int] = None) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        parsed = int(value)
    except ValueError:
        return None
    if minimum is not None:
        parsed = max(minimum, parsed)
    return parsed


def _env_float(name: str, minimum: Optional[float] = None) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except ValueError:
        return None
    if minimum is not None:
        parsed = max(minimum, parsed)
    return parsed


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_bool(name: str) -> Optional[bool]:
    value = _env_str(name)
    if value is None:
        return None
    lowered = value.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return None


def _apply_first_env(
    config: Dict[str, Any],
    env_keys: Iterable[str],
    path: Tuple[str, ...],
    parser,
) -> None:
    for env_name in env_keys:
        parsed = parser(env_name)
        if parsed is not None:
            _apply_config_value(config, path, parsed)
            break


def load_config(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    config = deepcopy(DEFAULT_CONFIG)

    if overrides:
        config = _deep_update(config, overrides)

    # Search overrides
    _apply_first_env(
        config,
        ("SEARCH_RATE_LIMIT_MS", "RATE_LIMIT_MS"),
        ("search", "rate_limit_ms"),
        lambda key: _env_int(key, minimum=0),
    )
    _apply_first_env(
        config,
        ("SEARCH_MAX_PAGES", "MAX_PAGES"),
        ("search", "max_pages"),
        lambda key: _env_int(key, minimum=1),
    )
    _apply_first_env(
        config,
        ("SEARCH_MAX_RETRIES_PER_PAGE",),
        ("search", "max_retries_per_page"),
        lambda key: _env_int(key, minimum=0),
    )
    _apply_first_env(
        config,
        ("SEARCH_RESULTS_PER_PAGE",),
        ("search", "results_per_page"),
        lambda key: _env_int(key, minimum=1),
    )
    _apply_first_env(
        config,
        ("SEARCH_BACKOFF_INITIAL_MS",),
        ("search", "backoff_initial_ms"),
        lambda key: _env_int(key, minimum=0),
    )
    _apply_first_env(
        config,
        ("SEARCH_BACKOFF_MULTIPLIER",),
        ("search", "backoff_multiplier"),
        lambda key: _env_float(key, minimum=1.0),
    )
    _apply_first_env(
        config,
        ("SEARCH_BACKOFF_MAX_MS",),
        ("search", "backoff_max_ms"),
        lambda key: _env_int(key, minimum=0),
    )

    # Scraper overrides
    _apply_first_env(
        config,
        ("SCRAPER_USE_PROXY",),
        ("scraper", "use_proxy"),
        _env_bool,
    )
    _apply_first_env(
        config,
        ("SCRAPER_BATCH_SIZE",),
        ("scraper", "batch_size"),
        lambda key: _env_int(key, minimum=1),
    )

    # Tunnel overrides
    _apply_first_env(
        config,
        ("TUNNEL_EXECUTABLE", "XRAY_EXECUTABLE", "V2RAY_EXECUTABLE"),
        ("tunnel", "executable"),
        _env_str,
    )
    _apply_first_env(
        config,
        ("TUNNEL_CONFIG_DIR",),
        ("tunnel", "config_dir"),
        _env_str,
    )
    _apply_first_env(
        config,
        ("TUNNEL_BASE_PORT",),
        ("tunnel", "base_port"),
        lambda key: _env_int(key, minimum=1024),
    )

    # Proxy testing overrides
    _apply_first_env(
        config,
        ("PROXY_TEST_WORKERS",),
        ("proxies", "test_workers"),
        lambda key: _env_int(key, minimum=1),
    )
    _apply_first_env(
        config,
        ("PROXY_TEST_TIMEOUT",),
        ("proxies", "test_timeout_seconds"),
        lambda key: _env_float(key, minimum=0.5),
    )

    # Pipeline / storage overrides
    _apply_first_env(
        config,
        ("PIPELINE_WORKERS",),
        ("pipeline", "worker_count"),
        lambda key: _env_int(key, minimum=1),
    )
    _apply_first_env(
        config,
        ("STORE_PATH",),
        ("storage", "path"),
        _env_str,
    )
    _apply_first_env(
        config,
        ("ARTIFACT_DIR",),
        ("storage", "artifact_dir"),
        _env_str,
    )

    # Logging overrides
    _apply_first_env(
        config,
        ("LOG_LEVEL", "HARVESTER_LOG_LEVEL"),
        ("logging", "level"),
        _env_str,
    )

    # Ensure backoff bounds remain valid
    search_cfg = config["search"]
    if search_cfg["backoff_max_ms"] < search_cfg["backoff_initial_ms"]:
        search_cfg["backoff_max_ms"] = search_cfg["backoff_initial_ms"]
    if float(search_cfg["backoff_multiplier"]) < 1.0:
        search_cfg["backoff_multiplier"] = 1.0
    if search_cfg["max_pages"] < 1:
        search_cfg["max_pages"] = 1

    tunnel_cfg = config["tunnel"]
    if tunnel_cfg["startup_timeout_seconds"] < tunnel_cfg["startup_settle_seconds"]:
        tunnel_cfg["startup_timeout_seconds"] = float(tunnel_cfg["startup_settle_seconds"])

    wait_slice = float(config["pipeline"]["wait_slice_seconds"])
    config["pipeline"]["wait_slice_seconds"] = min(max(wait_slice, 0.01), 0.25)

    return config


def validate_config(config: Dict[str, Any]) -> None:
    """Reject settings that would make every run fail."""
    template = config["search"].get("api_link_template") or ""
    missing = [token for token in SEARCH_TEMPLATE_TOKENS if token not in template]
    if missing:
        raise ConfigurationError(
            f"Search URL template is missing required tokens: {', '.join(missing)}"
        )
    executable = config["tunnel"].get("executable")
    if not executable or not str(executable).strip():
        raise ConfigurationError("Tunnel executable path cannot be empty")


def validate_api_link(template: str) -> None:
    missing = [token for token in SEARCH_TEMPLATE_TOKENS if token not in (template or "")]
    if missing:
        raise ConfigurationError(
            f"API link template '{template}' is missing tokens: {', '.join(missing)}"
        )
