"""
Orchestration — running isolated sessions and delegating between groups.

Ordinary conversation turns go through the per-group run-queue and the global
session pool. Delegations arrive as file-drop tasks, are authorized and run by
the DelegationCoordinator on a separate, fail-fast pool, and answer through a
file-drop result channel.
"""

from __future__ import annotations

from warren.orchestration.models import (
    DelegateRequest,
    DelegationOutcome,
    RequestRecord,
    RequestState,
    SessionRunResult,
    SessionSpec,
    TaskRequest,
)

__all__ = [
    "DelegateRequest",
    "DelegationOutcome",
    "RequestRecord",
    "RequestState",
    "SessionRunResult",
    "SessionSpec",
    "TaskRequest",
]
