"""
Warren — a host for many isolated agent sessions.

Warren runs each conversation ("group") as short-lived sandboxed container
sessions, routes inbound chat messages to the right group, and lets one
group's agent delegate a sub-task to another group's agent through a
file-drop request/response protocol.

Layers (bottom to top):
    1. Session runners (container lifecycle, output streaming)
    2. Concurrency pools and the per-group run-queue
    3. Delegation coordinator (authorization, timeouts, busy policy)
    4. Task and result channels (file-drop IPC)
    5. Host (routing, watcher loop, admin commands)
"""

__version__ = "0.1.0"
