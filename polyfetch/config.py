"""
Polyfetch configuration.

Settings are layered, later layers winning:

1. Defaults declared on the models below
2. rc files (JSON): /etc/polyfetchrc, ~/.config/polyfetch/config,
   ~/.polyfetchrc, ./.polyfetchrc, or the file named by POLYFETCH_CONFIG
3. Environment variables: POLYFETCH_<KEY>, double underscore for nesting
   (POLYFETCH_LLM__MODEL=llama3.2:3b, POLYFETCH_HTTPS=false)
4. Explicit overrides passed to load_config()
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

APP_NAME = "polyfetch"
ENV_PREFIX = "POLYFETCH_"


def user_data_dir() -> Path:
    """Per-user data directory (XDG on Linux)."""
    base = os.getenv("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(base) / APP_NAME


USER_DATA = user_data_dir()


# =============================================================================
# Models
# =============================================================================

class LLMConfig(BaseModel):
    """OpenAI-compatible language model backend."""

    enabled: bool = Field(default=True, description="Expose the llm API")
    base_url: str = Field(
        default="http://127.0.0.1:11434/v1/",
        description="OpenAI-compatible API root (https://api.openai.com/v1/ for OpenAI)",
    )
    api_key: str = Field(default="ollama", description="Bearer token; 'ollama' selects the local service checks")
    model: str = Field(default="qwen2.5-coder:3b", description="Model id")
    temperature: float = Field(default=0.7, description="Default sampling temperature")
    autopull: bool = Field(default=False, description="Download the model automatically when missing")


class HyperConfig(BaseModel):
    """hyper:// through a hyper gateway daemon."""

    enabled: bool = Field(default=True, description="Register the hyper: scheme")
    gateway_url: Optional[str] = Field(
        default=None,
        description="Use an already running gateway instead of spawning one",
    )
    gateway_command: List[str] = Field(
        default_factory=lambda: ["hyper-gateway", "run"],
        description="Command that starts the gateway",
    )
    port: int = Field(default=4977, description="Port for a spawned gateway")
    persist: bool = Field(default=False, description="Keep hypercore data between runs")
    storage: Path = Field(default=USER_DATA / "hyper", description="Gateway storage directory")
    startup_timeout: float = Field(default=30.0, description="Seconds to wait for a spawned gateway")


class IPFSConfig(BaseModel):
    """ipfs://, ipns:// and ipld:// through the IPFS HTTP API."""

    enabled: bool = Field(default=True, description="Register the ipfs: scheme and its aliases")
    api_addr: str = Field(default="/ip4/127.0.0.1/tcp/5001", description="IPFS daemon API multiaddr")
    timeout: int = Field(default=60, description="Timeout for IPFS operations (seconds)")
    retry_attempts: int = Field(default=3, description="Retries for transient IPFS failures")
    retry_backoff: float = Field(default=0.5, description="Base backoff between retries (seconds)")


class PolyfetchConfig(BaseModel):
    """Runtime configuration."""

    root: Optional[str] = Field(
        default=None,
        description="Base URL for relative URLs (defaults to the current directory as file: URL)",
    )
    http: bool = Field(default=True, description="Register the http: scheme")
    https: bool = Field(default=True, description="Register the https: scheme")
    file: bool = Field(default=True, description="Register the file: scheme")
    fetch_timeout: Optional[float] = Field(
        default=None,
        description="Seconds to wait for a response; None waits indefinitely",
    )

    hyper: HyperConfig = Field(default_factory=HyperConfig)
    ipfs: IPFSConfig = Field(default_factory=IPFSConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)


# =============================================================================
# Loading
# =============================================================================

def deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = deep_merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def default_config_paths() -> List[Path]:
    paths = [
        Path("/etc") / f"{APP_NAME}rc",
        Path.home() / ".config" / APP_NAME / "config",
        Path.home() / f".{APP_NAME}rc",
        Path.cwd() / f".{APP_NAME}rc",
    ]
    explicit = os.getenv(f"{ENV_PREFIX}CONFIG")
    if explicit:
        paths.append(Path(explicit))
    return paths


def read_config_file(path: Path) -> Dict[str, Any]:
    """Read one JSON rc file; a missing file is an empty layer."""
    if not path.is_file():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    logger.debug(f"Loaded config file {path}")
    return data


def _parse_env_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Collect POLYFETCH_* variables into a nested dict."""
    environ = os.environ if environ is None else environ
    result: Dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG":
            continue
        path = [part.lower() for part in key[len(ENV_PREFIX):].split("__") if part]
        if not path:
            continue
        node = result
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = _parse_env_value(raw)
    return result


def load_config(
    overrides: Optional[Mapping[str, Any]] = None,
    paths: Optional[Iterable[Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> PolyfetchConfig:
    """
    Build a validated PolyfetchConfig from rc files, environment and overrides.

    Args:
        overrides: Highest-priority settings (e.g. from CLI flags)
        paths: rc files to read instead of the default search list
        environ: Environment mapping (defaults to os.environ)

    Returns:
        PolyfetchConfig
    """
    data: Dict[str, Any] = {}
    for path in (default_config_paths() if paths is None else paths):
        data = deep_merge(data, read_config_file(Path(path)))
    data = deep_merge(data, env_overrides(environ))
    data = deep_merge(data, overrides or {})
    return PolyfetchConfig.model_validate(data)
