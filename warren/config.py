# warren/config.py
"""
Configuration for the Warren host.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Each subsystem gets its
own settings class; ``WarrenConfig`` composes them and resolves paths.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode

logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above warren/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single int or str  → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, (int, float)):
        return [str(int(value))]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                return _coerce_str_list(json.loads(stripped))
            except json.JSONDecodeError:
                pass
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


class PathsConfig(BaseSettings):
    """Where the host keeps its state and where group folders live."""

    data_dir: Path = Field(Path("./warren_data"), alias="WARREN_DATA_DIR")
    groups_dir: Path = Field(Path("./groups"), alias="WARREN_GROUPS_DIR")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def registry_file(self) -> Path:
        return self.data_dir / "registered_groups.json"

    @property
    def chats_file(self) -> Path:
        return self.data_dir / "chats.json"


class AssistantConfig(BaseSettings):
    """Identity of the assistant and the administrative group."""

    name: str = Field("Andy", alias="WARREN_ASSISTANT_NAME")
    main_group: str = Field("main", alias="WARREN_MAIN_GROUP")
    # Chat JID prefixes owned by the configured channels (e.g. "tg:").
    jid_prefixes: StrList = Field(default_factory=lambda: ["tg:"], alias="WARREN_JID_PREFIXES")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize(self) -> "AssistantConfig":
        self.name = self.name.strip() or "Andy"
        self.main_group = self.main_group.strip() or "main"
        return self

    @property
    def default_trigger(self) -> str:
        return f"@{self.name}"


class QueueConfig(BaseSettings):
    """Limits for ordinary conversation turns."""

    max_concurrent_sessions: int = Field(5, alias="WARREN_MAX_CONCURRENT_SESSIONS")
    session_timeout: float = Field(1800.0, alias="WARREN_SESSION_TIMEOUT")
    # Untriggered messages kept per chat as context for the next turn.
    max_pending_messages: int = Field(100, alias="WARREN_MAX_PENDING_MESSAGES")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "QueueConfig":
        self.max_concurrent_sessions = max(1, int(self.max_concurrent_sessions))
        self.session_timeout = max(1.0, float(self.session_timeout))
        self.max_pending_messages = max(1, int(self.max_pending_messages))
        return self


class DelegationConfig(BaseSettings):
    """Configuration for cross-group delegation and the task IPC watcher."""

    enabled: bool = Field(True, alias="WARREN_DELEGATION_ENABLED")
    max_delegation_containers: int = Field(3, alias="WARREN_MAX_DELEGATION_CONTAINERS")
    ipc_poll_interval: float = Field(1.0, alias="WARREN_IPC_POLL_INTERVAL")
    default_timeout: int = Field(300, alias="WARREN_DELEGATION_DEFAULT_TIMEOUT")
    max_timeout: int = Field(1800, alias="WARREN_DELEGATION_MAX_TIMEOUT")
    result_poll_interval: float = Field(0.5, alias="WARREN_RESULT_POLL_INTERVAL")
    seen_request_cache: int = Field(4096, alias="WARREN_SEEN_REQUEST_CACHE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "DelegationConfig":
        self.max_delegation_containers = max(1, int(self.max_delegation_containers))
        self.ipc_poll_interval = max(0.05, float(self.ipc_poll_interval))
        self.max_timeout = max(1, int(self.max_timeout))
        self.default_timeout = max(1, min(self.max_timeout, int(self.default_timeout)))
        self.result_poll_interval = max(0.05, float(self.result_poll_interval))
        self.seen_request_cache = max(16, int(self.seen_request_cache))
        return self


class ContainerRuntimeConfig(BaseSettings):
    """Docker settings for agent session containers."""

    image: str = Field("warren-agent:latest", alias="WARREN_CONTAINER_IMAGE")
    network: str = Field("bridge", alias="WARREN_CONTAINER_NETWORK")
    memory_limit: str = Field("1g", alias="WARREN_CONTAINER_MEMORY")
    cpu_limit: float = Field(1.0, alias="WARREN_CONTAINER_CPU")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "ContainerRuntimeConfig":
        self.cpu_limit = max(0.1, float(self.cpu_limit))
        return self


class WarrenConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. Relative paths are resolved
    against the project root (where .env lives), not the working directory.
    """

    def __init__(self) -> None:
        self.paths = PathsConfig()
        self.assistant = AssistantConfig()
        self.queue = QueueConfig()
        self.delegation = DelegationConfig()
        self.container = ContainerRuntimeConfig()

        self._resolve_paths()
        self.paths.data_dir.mkdir(parents=True, exist_ok=True)

    def _resolve_paths(self) -> None:
        def _resolve(p: Path) -> Path:
            if p.is_absolute():
                return p
            return (_PROJECT_ROOT / p).resolve()

        self.paths.data_dir = _resolve(self.paths.data_dir)
        self.paths.groups_dir = _resolve(self.paths.groups_dir)

    def __repr__(self) -> str:
        return (
            f"WarrenConfig(data_dir={self.paths.data_dir}, "
            f"max_sessions={self.queue.max_concurrent_sessions}, "
            f"max_delegations={self.delegation.max_delegation_containers})"
        )
