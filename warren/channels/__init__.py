"""
Warren channel interface — the contract platform adapters implement.

Concrete adapters (Telegram, WhatsApp, …) live outside the core and are
handed to the host at startup.
"""

from warren.channels.base import Channel, split_message

__all__ = [
    "Channel",
    "split_message",
]
