"""
Routing — inbound messages, chat metadata, and outbound channel selection.

Channel adapters normalize platform events into InboundMessage and report
chat metadata (JID, name, last activity). The host decides what to do with
them; this module holds the pure helpers it uses.
"""

from __future__ import annotations

import html
import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence

import structlog

from warren.channels.base import Channel
from warren.groups import GroupRegistry
from warren.orchestration.task_channel import atomic_write_json

logger = structlog.get_logger(__name__)

# Placeholder chat some adapters use to record "last group sync" time.
GROUP_SYNC_SENTINEL = "__group_sync__"


@dataclass
class InboundMessage:
    """A normalized chat message from any channel."""

    id: str
    chat_jid: str
    sender: str
    sender_name: str
    content: str
    timestamp: str
    is_from_me: bool = False


@dataclass
class ChatInfo:
    jid: str
    name: str
    last_activity: str


@dataclass
class AvailableGroup:
    """A known chat, flagged with whether it is registered."""

    jid: str
    name: str
    last_activity: str
    is_registered: bool


class ChatDirectory:
    """Every chat the channels have seen, registered or not.

    When backed by a file, the directory is saved after each change so the
    CLI can list chats discovered by a running host.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = path
        self._chats: dict[str, ChatInfo] = {}

    def store_chat_metadata(self, jid: str, timestamp: str, name: Optional[str] = None) -> None:
        """Record activity for *jid*; keeps the newest timestamp and latest name."""
        existing = self._chats.get(jid)
        if existing is None:
            self._chats[jid] = ChatInfo(jid=jid, name=name or jid, last_activity=timestamp)
        else:
            if name:
                existing.name = name
            if timestamp > existing.last_activity:
                existing.last_activity = timestamp
        self.save()

    def get(self, jid: str) -> Optional[ChatInfo]:
        return self._chats.get(jid)

    def load(self) -> int:
        if self._path is None or not self._path.exists():
            return 0
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
            self._chats = {item["jid"]: ChatInfo(**item) for item in raw}
        except (OSError, ValueError, TypeError, KeyError) as exc:
            logger.warning("chats.load_failed", path=str(self._path), error=str(exc))
            return 0
        return len(self._chats)

    def save(self) -> None:
        if self._path is None:
            return
        atomic_write_json(
            self._path.parent,
            self._path.name,
            [asdict(chat) for chat in self._chats.values()],
        )

    def available_groups(
        self,
        registry: GroupRegistry,
        jid_prefixes: Sequence[str] = ("tg:",),
    ) -> list[AvailableGroup]:
        """Known chats on our channels, most recently active first."""
        chats = [
            chat
            for chat in self._chats.values()
            if chat.jid != GROUP_SYNC_SENTINEL and chat.jid.startswith(tuple(jid_prefixes))
        ]
        # ISO-8601 timestamps sort lexically.
        chats.sort(key=lambda c: c.last_activity, reverse=True)
        return [
            AvailableGroup(
                jid=chat.jid,
                name=chat.name,
                last_activity=chat.last_activity,
                is_registered=chat.jid in registry,
            )
            for chat in chats
        ]


def matches_trigger(content: str, trigger: str) -> bool:
    """True if *content* starts with the trigger phrase (case-insensitive)."""
    if not trigger:
        return True
    stripped = content.lstrip()
    if not stripped.lower().startswith(trigger.lower()):
        return False
    rest = stripped[len(trigger):]
    return not rest or not (rest[0].isalnum() or rest[0] == "_")


def format_messages(messages: Iterable[InboundMessage]) -> str:
    """Render a batch of messages as the XML prompt the agent expects."""
    lines = ["<messages>"]
    for msg in messages:
        lines.append(
            f'<message sender="{html.escape(msg.sender_name)}" '
            f'time="{html.escape(msg.timestamp)}">{html.escape(msg.content, quote=False)}</message>'
        )
    lines.append("</messages>")
    return "\n".join(lines)


def find_channel(channels: Iterable[Channel], jid: str) -> Optional[Channel]:
    for channel in channels:
        if channel.owns_jid(jid):
            return channel
    return None
