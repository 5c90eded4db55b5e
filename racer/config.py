"""
Racer configuration from environment variables (and a .env file).

Indexer:
    DATABASE_URL, RPC_URL, WS_RPC_URL, RACER_ADDRESS, START_HEIGHT,
    REORG_THRESHOLD, DB_POOL_SIZE, RECONCILE_TIMEOUT

Server:
    DATABASE_URL, RPC_URL, RACER_ADDRESS, CHAIN_ID, DB_POOL_SIZE,
    SERVER_HOST, SERVER_PORT, PUBLISH_INTERVAL, PUBLISH_TIMEOUT

RPC_URL and WS_RPC_URL may list several chains separated by commas.
"""

import os
from dataclasses import dataclass, field
from typing import List, Mapping, Optional

from dotenv import load_dotenv


class ConfigError(ValueError):
    """Missing or malformed configuration. Fatal at startup."""


def _environment(environ: Optional[Mapping[str, str]], load_env: bool) -> Mapping[str, str]:
    if environ is not None:
        return environ
    if load_env:
        load_dotenv()
    return os.environ


def _required(env: Mapping[str, str], name: str) -> str:
    value = (env.get(name) or "").strip()
    if not value:
        raise ConfigError(f"{name} must be set")
    return value


def _int(env: Mapping[str, str], name: str, default: Optional[int] = None) -> int:
    raw = (env.get(name) or "").strip()
    if not raw:
        if default is None:
            raise ConfigError(f"{name} must be set")
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    if value < 0:
        raise ConfigError(f"{name} must not be negative, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def http_to_ws(url: str) -> str:
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


@dataclass
class ChainEndpoint:
    """RPC endpoints for one chain."""
    rpc_url: str
    ws_url: str

    @property
    def name(self) -> str:
        return self.rpc_url


def _chain_endpoints(env: Mapping[str, str]) -> List[ChainEndpoint]:
    rpc_urls = _split(_required(env, "RPC_URL"))
    ws_raw = (env.get("WS_RPC_URL") or "").strip()
    ws_urls = _split(ws_raw) if ws_raw else [http_to_ws(url) for url in rpc_urls]
    if len(ws_urls) != len(rpc_urls):
        raise ConfigError(
            f"WS_RPC_URL lists {len(ws_urls)} endpoint(s) but RPC_URL lists {len(rpc_urls)}"
        )
    return [ChainEndpoint(rpc_url=rpc, ws_url=ws) for rpc, ws in zip(rpc_urls, ws_urls)]


@dataclass
class IndexerConfig:
    """Settings for scripts/run_indexer.py."""
    database_url: str
    racer_address: str
    start_height: int
    chains: List[ChainEndpoint] = field(default_factory=list)
    reorg_threshold: int = 7
    pool_size: int = 5
    reconcile_timeout: Optional[float] = 60.0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, load_env: bool = True) -> "IndexerConfig":
        env = _environment(environ, load_env)
        timeout = _float(env, "RECONCILE_TIMEOUT", 60.0)
        return cls(
            database_url=_required(env, "DATABASE_URL"),
            racer_address=_required(env, "RACER_ADDRESS"),
            start_height=_int(env, "START_HEIGHT"),
            chains=_chain_endpoints(env),
            reorg_threshold=_int(env, "REORG_THRESHOLD", 7),
            pool_size=max(1, _int(env, "DB_POOL_SIZE", 5)),
            # 0 disables the reconcile timeout
            reconcile_timeout=timeout if timeout > 0 else None,
        )


@dataclass
class ServerConfig:
    """Settings for scripts/run_server.py."""
    database_url: str
    rpc_url: str
    racer_address: str
    chain_id: Optional[int] = None
    pool_size: int = 5
    host: str = "127.0.0.1"
    port: int = 3000
    publish_interval: float = 5.0
    publish_timeout: float = 5.0
    outbound_capacity: int = 1000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, load_env: bool = True) -> "ServerConfig":
        env = _environment(environ, load_env)
        chain_id = (env.get("CHAIN_ID") or "").strip()
        return cls(
            database_url=_required(env, "DATABASE_URL"),
            # The leaderboard follows the first configured chain
            rpc_url=_split(_required(env, "RPC_URL"))[0],
            racer_address=_required(env, "RACER_ADDRESS"),
            chain_id=_int(env, "CHAIN_ID") if chain_id else None,
            pool_size=max(1, _int(env, "DB_POOL_SIZE", 5)),
            host=(env.get("SERVER_HOST") or "127.0.0.1").strip(),
            port=_int(env, "SERVER_PORT", 3000),
            publish_interval=_float(env, "PUBLISH_INTERVAL", 5.0),
            publish_timeout=_float(env, "PUBLISH_TIMEOUT", 5.0),
        )
