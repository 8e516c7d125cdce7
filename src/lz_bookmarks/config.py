"""Configuration loading and saving.

Config file location: ~/.config/lz-bookmarks/config.toml

Schema:
    [api]
    base_url = "http://localhost:8080/api/v1/"
    per_page = 20
    timeout = 30.0

    [query]
    retry = 3
    stale_time = 0.0
    refetch_on_focus = true
    network_mode = "online"  # or "offline_first", "always"

    [cache]
    cache_dir = ".cache"

LZ_API_BASE_URL overrides api.base_url.
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

import tomli_w

from .query import NETWORK_MODES, QueryOptions

CONFIG_DIR = Path.home() / ".config" / "lz-bookmarks"
CONFIG_FILE = CONFIG_DIR / "config.toml"

BASE_URL_ENV = "LZ_API_BASE_URL"


@dataclass
class ApiConfig:
    base_url: str
    per_page: int | None = 20
    timeout: float = 30.0


@dataclass
class QueryConfig:
    retry: int = 3
    stale_time: float = 0.0
    refetch_on_focus: bool = True
    network_mode: str = "online"

    def to_options(self) -> QueryOptions:
        return QueryOptions(
            retry=self.retry,
            stale_time=self.stale_time,
            refetch_on_focus=self.refetch_on_focus,
            network_mode=self.network_mode,
        )


@dataclass
class AppConfig:
    api: ApiConfig
    query: QueryConfig = field(default_factory=QueryConfig)
    cache_dir: Path = Path(".cache")


def load_config(config_path: Path = CONFIG_FILE) -> AppConfig:
    """Load and validate config from TOML file."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    api_data = data.get("api", {})
    base_url = os.environ.get(BASE_URL_ENV) or api_data.get("base_url", "")
    if not base_url:
        raise ValueError("Config missing required api.base_url")

    query_data = data.get("query", {})
    network_mode = query_data.get("network_mode", "online")
    if network_mode not in NETWORK_MODES:
        raise ValueError(
            f"query.network_mode must be one of {', '.join(NETWORK_MODES)}"
        )

    cache_data = data.get("cache", {})

    return AppConfig(
        api=ApiConfig(
            base_url=base_url,
            per_page=api_data.get("per_page", 20),
            timeout=float(api_data.get("timeout", 30.0)),
        ),
        query=QueryConfig(
            retry=int(query_data.get("retry", 3)),
            stale_time=float(query_data.get("stale_time", 0.0)),
            refetch_on_focus=bool(query_data.get("refetch_on_focus", True)),
            network_mode=network_mode,
        ),
        cache_dir=Path(cache_data.get("cache_dir", ".cache")),
    )


def save_config(config: AppConfig, config_path: Path = CONFIG_FILE) -> None:
    """Write config to TOML file, readable only by the owner."""
    config_path.parent.mkdir(parents=True, exist_ok=True)

    api = {"base_url": config.api.base_url, "timeout": config.api.timeout}
    if config.api.per_page is not None:
        api["per_page"] = config.api.per_page

    data = {
        "api": api,
        "query": {
            "retry": config.query.retry,
            "stale_time": config.query.stale_time,
            "refetch_on_focus": config.query.refetch_on_focus,
            "network_mode": config.query.network_mode,
        },
        "cache": {
            "cache_dir": str(config.cache_dir),
        },
    }

    with open(config_path, "wb") as f:
        tomli_w.dump(data, f)

    os.chmod(config_path, 0o600)


def config_exists(config_path: Path = CONFIG_FILE) -> bool:
    """Check if config file exists."""
    return config_path.exists()
