"""
Group Registry — the conversations Warren actively manages.

A group is a chat (identified by its channel JID) bound to a folder on disk.
The folder name is the group's namespace everywhere: its workspace under
``groups/``, its IPC directory, its agent session state, and the name other
groups use when they delegate to it.

Registrations are persisted to a JSON file with atomic writes so a crash
mid-save never leaves a truncated registry behind.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from warren.errors import GroupRegistryError

logger = structlog.get_logger(__name__)

FOLDER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def validate_folder(folder: str) -> str:
    """Return *folder* if it is a safe single path component, else raise."""
    if not isinstance(folder, str) or not FOLDER_PATTERN.match(folder):
        raise GroupRegistryError(f"Invalid group folder name: {folder!r}")
    return folder


class ContainerConfig(BaseModel):
    """Per-group container policy. ``None`` means "use the system default"."""

    additional_mounts: list[str] = Field(default_factory=list, alias="additionalMounts")
    timeout: Optional[float] = None
    allow_delegation: set[str] = Field(default_factory=set, alias="allowDelegation")

    model_config = {"populate_by_name": True}


class RegisteredGroup(BaseModel):
    """A conversation bound to a folder namespace."""

    jid: str
    name: str
    folder: str
    trigger: str = ""
    added_at: str = Field(default_factory=_utc_now_iso)
    container_config: Optional[ContainerConfig] = Field(None, alias="containerConfig")

    model_config = {"populate_by_name": True}

    @field_validator("folder")
    @classmethod
    def _check_folder(cls, value: str) -> str:
        if not FOLDER_PATTERN.match(value):
            raise ValueError(f"invalid folder name {value!r}")
        return value

    @property
    def allow_delegation(self) -> set[str]:
        if self.container_config is None:
            return set()
        return set(self.container_config.allow_delegation)


class GroupRegistry:
    """
    In-memory registry of groups keyed by JID, optionally backed by a file.

    Lookups by folder are the hot path for delegation; lookups by JID are the
    hot path for inbound routing. Both are O(n) over a handful of groups.
    """

    def __init__(self, path: Optional[Path] = None, main_folder: str = "main") -> None:
        self._path = path
        self._main_folder = main_folder
        self._groups: dict[str, RegisteredGroup] = {}
        self._mtime: float = 0.0

    @property
    def main_folder(self) -> str:
        return self._main_folder

    def is_main(self, folder: str) -> bool:
        return folder == self._main_folder

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, jid: str) -> Optional[RegisteredGroup]:
        return self._groups.get(jid)

    def by_folder(self, folder: str) -> Optional[RegisteredGroup]:
        for group in self._groups.values():
            if group.folder == folder:
                return group
        return None

    def all(self) -> dict[str, RegisteredGroup]:
        return dict(self._groups)

    def folders(self) -> list[str]:
        return sorted(g.folder for g in self._groups.values())

    def __contains__(self, jid: object) -> bool:
        return jid in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def register(self, group: RegisteredGroup) -> RegisteredGroup:
        """Add (or replace) the registration for ``group.jid``."""
        validate_folder(group.folder)
        existing = self.by_folder(group.folder)
        if existing is not None and existing.jid != group.jid:
            raise GroupRegistryError(
                f"Folder {group.folder!r} is already used by {existing.jid}"
            )
        self._groups[group.jid] = group
        logger.info("groups.registered", jid=group.jid, folder=group.folder, name=group.name)
        self.save()
        return group

    def deregister(self, jid: str) -> bool:
        group = self._groups.pop(jid, None)
        if group is None:
            return False
        logger.info("groups.deregistered", jid=jid, folder=group.folder)
        self.save()
        return True

    def rename(self, jid: str, name: str) -> RegisteredGroup:
        group = self._require(jid)
        group.name = name
        self.save()
        return group

    def reconfigure(self, jid: str, container_config: Optional[ContainerConfig]) -> RegisteredGroup:
        group = self._require(jid)
        group.container_config = container_config
        logger.info(
            "groups.reconfigured",
            jid=jid,
            allow_delegation=sorted(group.allow_delegation),
        )
        self.save()
        return group

    def _require(self, jid: str) -> RegisteredGroup:
        group = self._groups.get(jid)
        if group is None:
            raise GroupRegistryError(f"Group {jid!r} is not registered")
        return group

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Load registrations from disk. Returns the number loaded."""
        if self._path is None or not self._path.exists():
            return 0
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("groups.load_failed", path=str(self._path), error=str(exc))
            return 0

        groups: dict[str, RegisteredGroup] = {}
        for jid, data in raw.items():
            try:
                groups[jid] = RegisteredGroup.model_validate({**data, "jid": jid})
            except ValidationError as exc:
                logger.warning("groups.skip_invalid", jid=jid, error=str(exc))
        self._groups = groups
        self._mtime = self._stat_mtime()
        logger.info("groups.loaded", count=len(groups), path=str(self._path))
        return len(groups)

    def reload_if_changed(self) -> bool:
        """Pick up registrations written by another process (e.g. the CLI)."""
        if self._path is None:
            return False
        mtime = self._stat_mtime()
        if mtime == self._mtime:
            return False
        self.load()
        return True

    def _stat_mtime(self) -> float:
        try:
            return self._path.stat().st_mtime if self._path is not None else 0.0
        except FileNotFoundError:
            return 0.0

    def save(self) -> None:
        """Atomic write with tempfile + rename."""
        if self._path is None:
            return
        payload = {
            jid: group.model_dump(mode="json", by_alias=True, exclude={"jid"}, exclude_none=True)
            for jid, group in self._groups.items()
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self._path.parent, suffix=".tmp", prefix=".registered_groups_"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self._path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        self._mtime = self._stat_mtime()
