from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv

from .errors import ConfigIncomplete, ConfigMissing
from .store.kv import KeyValueStore


load_dotenv()


SYSTEM_CONFIG_KEY = "systemConfig"


def _optional_float(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass(frozen=True)
class Settings:
    # Local key-value database (system config + saved replies).
    db_path: str = os.getenv("MEMORYCORE_DB_PATH", "./data/memorycore.db")

    # Offline graph store, used when no MCP address is configured.
    graph_db_path: str = os.getenv("MEMORYCORE_GRAPH_DB_PATH", "./data/graph.db")

    log_level: str = os.getenv("MEMORYCORE_LOG_LEVEL", "INFO")

    # Second graph refresh after extraction, for stores that index asynchronously.
    refresh_delay_s: float = float(os.getenv("MEMORYCORE_REFRESH_DELAY_S", "0.5"))

    # Unset means no timeout on completion requests.
    http_timeout_s: float | None = _optional_float(os.getenv("MEMORYCORE_HTTP_TIMEOUT_S"))


@dataclass(frozen=True)
class SystemConfig:
    mcp_address: str = ""
    api_url: str = ""
    api_key: str = ""
    ai_model: str = ""

    def missing_fields(self) -> list[str]:
        out = []
        if not self.api_url.strip():
            out.append("apiUrl")
        if not self.api_key.strip():
            out.append("apiKey")
        if not self.ai_model.strip():
            out.append("aiModel")
        return out

    def to_dict(self) -> dict[str, str]:
        return {
            "mcpAddress": self.mcp_address,
            "apiUrl": self.api_url,
            "apiKey": self.api_key,
            "aiModel": self.ai_model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SystemConfig":
        return cls(
            mcp_address=str(data.get("mcpAddress") or ""),
            api_url=str(data.get("apiUrl") or ""),
            api_key=str(data.get("apiKey") or ""),
            ai_model=str(data.get("aiModel") or ""),
        )


def read_system_config(kv: KeyValueStore) -> SystemConfig | None:
    """Return the saved config as-is (possibly incomplete), or None."""
    raw = kv.get(SYSTEM_CONFIG_KEY)
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None
    return SystemConfig.from_dict(data)


def load_system_config(kv: KeyValueStore) -> SystemConfig:
    """Load the config required for a completion request.

    Raises ConfigMissing when nothing usable is stored and ConfigIncomplete
    when the API url, key or model is empty.
    """
    cfg = read_system_config(kv)
    if cfg is None:
        raise ConfigMissing("No system configuration found; set the API url, key and model first.")
    missing = cfg.missing_fields()
    if missing:
        raise ConfigIncomplete(missing)
    return cfg


def save_system_config(kv: KeyValueStore, cfg: SystemConfig) -> None:
    kv.set(SYSTEM_CONFIG_KEY, json.dumps(cfg.to_dict(), ensure_ascii=False))
