"""
Base channel abstract class.

Every platform adapter (Telegram, WhatsApp, …) implements this interface. The
host only ever talks to adapters through it:

  - connect() / disconnect() manage the platform connection
  - owns_jid() tells the host which adapter delivers replies for a chat
  - send_message() delivers text (adapters split to their platform limit)
  - handle_admin_command() forwards a chat's admin command (/reset_session,
    /reset_memory, /restart, /rebuild) to the host

Adapters push inbound traffic the other way through two callbacks supplied by
the host: ``on_message(InboundMessage)`` and
``on_chat_metadata(jid, timestamp, name)``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from typing import Optional


ADMIN_COMMANDS = ("reset_session", "reset_memory", "restart", "rebuild")


class AdminCommands(ABC):
    """Host-side operations a channel may trigger on behalf of a chat."""

    @abstractmethod
    async def run_admin_command(self, jid: str, command: str) -> str:
        """Run *command* for the group bound to *jid*; returns the reply text."""


class Channel(ABC):
    """Abstract base for all platform channel adapters."""

    # Longest message the platform accepts; 0 means unlimited.
    max_message_length: int = 0
    admin: Optional[AdminCommands] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Short platform identifier: 'telegram', 'whatsapp', …"""

    @property
    @abstractmethod
    def jid_prefix(self) -> str:
        """Prefix of the chat JIDs this channel owns, e.g. ``"tg:"``."""

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the platform and begin delivering inbound messages."""

    @abstractmethod
    async def disconnect(self) -> None:
        """Stop the channel gracefully."""

    @abstractmethod
    async def send_message(self, jid: str, text: str) -> None:
        """Deliver *text* to the chat identified by *jid*."""

    @abstractmethod
    def is_connected(self) -> bool:
        """True while the platform connection is up."""

    def owns_jid(self, jid: str) -> bool:
        return jid.startswith(self.jid_prefix)

    async def set_typing(self, jid: str, is_typing: bool) -> None:
        """Show or clear a typing indicator. Default: unsupported, no-op."""

    def bind_admin(self, admin: AdminCommands) -> None:
        self.admin = admin

    async def handle_admin_command(self, jid: str, command: str) -> str:
        """Forward a platform command such as ``/restart`` from chat *jid*."""
        if self.admin is None:
            return "Admin commands not available."
        return await self.admin.run_admin_command(jid, command.lstrip("/").strip())

    def split_for_platform(self, text: str) -> list[str]:
        if self.max_message_length <= 0:
            return [text] if text.strip() else []
        return split_message(text, self.max_message_length)


_SPLIT_PATTERNS = [
    r"\n\n",  # Paragraph break
    r"\n",  # Single newline
    r"\s+",  # Word boundary
]


def split_message(text: str, max_len: int) -> list[str]:
    """
    Split *text* into chunks of at most *max_len* characters, preferring
    paragraph, then line, then word boundaries, then a hard cut.
    """
    if not text or not text.strip():
        return []
    chunks: list[str] = []
    while len(text) > max_len:
        window = text[: max_len + 1]
        cut = -1
        for pattern in _SPLIT_PATTERNS:
            matches = [m for m in re.finditer(pattern, window) if 0 < m.start() <= max_len]
            if matches:
                last = matches[-1]
                cut = last.start()
                rest_start = last.end()
                break
        if cut <= 0:
            cut = rest_start = max_len
        chunks.append(text[:cut])
        text = text[rest_start:]
    if text.strip():
        chunks.append(text)
    return chunks
