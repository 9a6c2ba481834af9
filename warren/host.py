"""
Warren Host — the single coordinating process.

Wires the pieces together and keeps them running:

  - Channel adapters push inbound messages and chat metadata in
  - Registered groups get their messages batched into agent turns on the
    per-group run-queue (global session pool)
  - The task watcher polls every group's IPC directory and hands
    ``delegate`` requests to the DelegationCoordinator (delegation pool)
  - Admin commands reset or restart a group's sessions

Start with: warren run
"""

from __future__ import annotations

import asyncio
import shutil
import signal
from collections import deque
from typing import Any, Iterable, Optional

import structlog

from warren.channels.base import ADMIN_COMMANDS, AdminCommands, Channel
from warren.config import WarrenConfig
from warren.groups import ContainerConfig, GroupRegistry, RegisteredGroup, validate_folder
from warren.orchestration.container_manager import ContainerManager
from warren.orchestration.delegation import DelegationCoordinator
from warren.orchestration.models import SessionSpec
from warren.orchestration.pool import ConcurrencyPool
from warren.orchestration.run_queue import GroupRunQueue
from warren.orchestration.runners import ContainerSessionRunner, SessionRunnerBase
from warren.orchestration.task_channel import TaskChannel, TaskWatcher
from warren.routing import (
    AvailableGroup,
    ChatDirectory,
    InboundMessage,
    find_channel,
    format_messages,
    matches_trigger,
)

logger = structlog.get_logger(__name__)


class WarrenHost(AdminCommands):
    """
    Orchestrates isolated agent sessions for every registered group.

    Architecture:
      - One GroupRunQueue over the global session pool for ordinary turns
      - One DelegationCoordinator over its own, smaller pool
      - One TaskWatcher polling ``<data>/ipc/*/tasks``
      - Per-group agent session ids for resuming conversations
    """

    def __init__(
        self,
        config: WarrenConfig,
        *,
        registry: Optional[GroupRegistry] = None,
        runner: Optional[SessionRunnerBase] = None,
        container_manager: Optional[ContainerManager] = None,
        channels: Iterable[Channel] = (),
    ) -> None:
        self._config = config
        paths = config.paths
        if registry is None:
            registry = GroupRegistry(paths.registry_file, main_folder=config.assistant.main_group)
        self._registry = registry
        self._chats = ChatDirectory(paths.chats_file)
        self._channels: list[Channel] = list(channels)
        for channel in self._channels:
            channel.bind_admin(self)

        self._containers = container_manager
        if self._containers is None and runner is None:
            self._containers = ContainerManager(
                groups_dir=paths.groups_dir,
                ipc_dir=paths.ipc_dir,
                sessions_dir=paths.sessions_dir,
                image=config.container.image,
                network=config.container.network,
                memory_limit=config.container.memory_limit,
                cpu_limit=config.container.cpu_limit,
            )
        self._runner = runner or ContainerSessionRunner(self._containers)

        self._session_pool = ConcurrencyPool("session", config.queue.max_concurrent_sessions)
        self._run_queue = GroupRunQueue(self._session_pool)

        self._task_channel = TaskChannel(paths.ipc_dir)
        self._coordinator = DelegationCoordinator(
            config.delegation,
            self._registry,
            self._task_channel,
            self._runner,
        )
        self._watcher = TaskWatcher(self._task_channel, config.delegation.ipc_poll_interval)
        self._watcher.register("delegate", self._coordinator.handle_task)

        # group folder -> agent session id (resumed by ordinary turns only)
        self._sessions: dict[str, str] = {}
        # chat jid -> most recent messages not yet handed to a turn
        self._pending: dict[str, deque[InboundMessage]] = {}
        self._maintenance_task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def registry(self) -> GroupRegistry:
        return self._registry

    @property
    def chats(self) -> ChatDirectory:
        return self._chats

    @property
    def coordinator(self) -> DelegationCoordinator:
        return self._coordinator

    @property
    def run_queue(self) -> GroupRunQueue:
        return self._run_queue

    @property
    def task_channel(self) -> TaskChannel:
        return self._task_channel

    @property
    def watcher(self) -> TaskWatcher:
        return self._watcher

    def session_id(self, folder: str) -> Optional[str]:
        return self._sessions.get(folder)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._registry.load()
        self._chats.load()
        for group in self._registry.all().values():
            self._prepare_group_dirs(group.folder)

        if self._containers is not None:
            await self._containers.cleanup_orphans()

        for channel in self._channels:
            try:
                await channel.connect()
            except Exception:
                logger.error("host.channel_connect_failed", channel=channel.name, exc_info=True)

        self._watcher.start()
        self._maintenance_task = asyncio.create_task(self._maintenance(), name="host_maintenance")
        logger.info(
            "host.started",
            groups=len(self._registry),
            channels=[c.name for c in self._channels],
            max_sessions=self._session_pool.limit,
            max_delegations=self._coordinator.pool.limit,
        )

    async def stop(self) -> None:
        logger.info("host.stopping")
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            try:
                await self._maintenance_task
            except asyncio.CancelledError:
                pass
            self._maintenance_task = None

        await self._watcher.stop()
        await self._run_queue.shutdown()
        for channel in self._channels:
            try:
                await channel.disconnect()
            except Exception:
                logger.warning("host.channel_disconnect_failed", channel=channel.name, exc_info=True)
        if self._containers is not None:
            await self._containers.cleanup_all()
        logger.info("host.stopped")

    async def run(self) -> None:
        """Full lifecycle: start → wait for a shutdown signal → stop."""
        self._shutdown_event = asyncio.Event()
        self._install_signal_handlers(asyncio.get_running_loop())
        await self.start()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self, reason: str = "requested") -> None:
        logger.info("host.shutdown_requested", reason=reason)
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown, f"signal_{sig.name.lower()}")
            except NotImplementedError:
                pass

    async def _maintenance(self) -> None:
        """Pick up registry changes made by other processes."""
        while True:
            await asyncio.sleep(max(5.0, self._config.delegation.ipc_poll_interval))
            try:
                if self._registry.reload_if_changed():
                    for group in self._registry.all().values():
                        self._prepare_group_dirs(group.folder)
            except Exception:
                logger.error("host.maintenance_failed", exc_info=True)

    # ------------------------------------------------------------------
    # Group management
    # ------------------------------------------------------------------

    def register_group(
        self,
        jid: str,
        name: str,
        folder: str,
        trigger: Optional[str] = None,
        container_config: Optional[ContainerConfig] = None,
    ) -> RegisteredGroup:
        group = RegisteredGroup(
            jid=jid,
            name=name,
            folder=validate_folder(folder),
            trigger=trigger if trigger is not None else self._config.assistant.default_trigger,
            container_config=container_config,
        )
        self._registry.register(group)
        self._prepare_group_dirs(folder)
        return group

    def available_groups(self) -> list[AvailableGroup]:
        return self._chats.available_groups(self._registry, self._config.assistant.jid_prefixes)

    def _prepare_group_dirs(self, folder: str) -> None:
        (self._config.paths.groups_dir / folder).mkdir(parents=True, exist_ok=True)
        (self._config.paths.sessions_dir / folder).mkdir(parents=True, exist_ok=True)
        self._task_channel.ensure_group(folder)

    # ------------------------------------------------------------------
    # Inbound routing (channel callbacks)
    # ------------------------------------------------------------------

    def on_chat_metadata(self, jid: str, timestamp: str, name: Optional[str] = None) -> None:
        self._chats.store_chat_metadata(jid, timestamp, name)

    def on_message(self, message: InboundMessage) -> Optional[asyncio.Future[Any]]:
        """Route one inbound message. Returns the queued turn, if one was started."""
        self._chats.store_chat_metadata(message.chat_jid, message.timestamp)
        group = self._registry.get(message.chat_jid)
        if group is None:
            logger.debug("host.unregistered_chat", jid=message.chat_jid)
            return None
        if message.is_from_me:
            return None

        batch = self._pending.get(message.chat_jid)
        if batch is None:
            batch = deque(maxlen=self._config.queue.max_pending_messages)
            self._pending[message.chat_jid] = batch
        elif len(batch) == batch.maxlen:
            logger.debug("host.pending_trimmed", group=group.folder, kept=batch.maxlen)
        batch.append(message)

        is_main = self._registry.is_main(group.folder)
        trigger = group.trigger or self._config.assistant.default_trigger
        if not is_main and not matches_trigger(message.content, trigger):
            # Kept as context for the next triggered turn.
            return None

        messages = list(self._pending.pop(message.chat_jid))
        prompt = format_messages(messages)
        logger.info("host.turn_queued", group=group.folder, messages=len(messages))
        fut = self._run_queue.enqueue_turn(group.folder, lambda: self._run_turn(group, prompt))
        fut.add_done_callback(self._on_turn_done)
        return fut

    def _on_turn_done(self, fut: asyncio.Future[Any]) -> None:
        # Failures are logged by the run-queue; retrieve so asyncio does not warn.
        if not fut.cancelled():
            fut.exception()

    async def _run_turn(self, group: RegisteredGroup, prompt: str) -> Optional[str]:
        cfg = group.container_config
        timeout = cfg.timeout if cfg is not None and cfg.timeout else self._config.queue.session_timeout
        spec = SessionSpec(
            group_folder=group.folder,
            prompt=prompt,
            chat_jid=group.jid,
            is_main=self._registry.is_main(group.folder),
            resume_session_id=self._sessions.get(group.folder),
            timeout_seconds=float(timeout),
            additional_mounts=list(cfg.additional_mounts) if cfg is not None else [],
        )
        channel = find_channel(self._channels, group.jid)
        fragments: list[str] = []

        async def _deliver(text: str) -> None:
            fragments.append(text)
            if channel is None:
                return
            for chunk in channel.split_for_platform(text):
                await channel.send_message(group.jid, chunk)

        if channel is not None:
            await channel.set_typing(group.jid, True)
        try:
            result = await self._runner.run(spec, on_output=_deliver)
        finally:
            if channel is not None:
                await channel.set_typing(group.jid, False)

        if result.session_id:
            self._sessions[group.folder] = result.session_id
        if result.status != "success":
            logger.warning(
                "host.turn_failed",
                group=group.folder,
                status=result.status,
                error=result.error,
            )
            return None
        if not fragments and result.summary:
            await _deliver(result.summary)
        return "\n\n".join(fragments) if fragments else result.summary

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    async def reset_session(self, folder: str) -> str:
        if self._sessions.pop(folder, None) is None:
            return f"No active session for {folder}."
        logger.info("host.session_reset", group=folder)
        return f"Session for {folder} reset. The next message starts a fresh conversation."

    async def reset_memory(self, folder: str) -> str:
        state_dir = self._config.paths.sessions_dir / validate_folder(folder)
        self._sessions.pop(folder, None)
        if state_dir.exists():
            shutil.rmtree(state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)
        logger.info("host.memory_reset", group=folder)
        return f"Memory for {folder} cleared."

    async def restart_container(self, folder: str) -> str:
        if self._containers is None:
            return "Container management is not available."
        names = await self._containers.list_containers(folder)
        for name in names:
            await self._containers.kill_container(name)
        logger.info("host.containers_restarted", group=folder, count=len(names))
        if not names:
            return f"No running container for {folder}."
        return f"Stopped {len(names)} container(s) for {folder}; the next message starts a new one."

    async def rebuild_container(self) -> str:
        if self._containers is None:
            return "Container management is not available."
        ok = await self._containers.ensure_image(rebuild=True)
        return "Container image rebuilt." if ok else "Container image rebuild failed; see logs."

    async def run_admin_command(self, jid: str, command: str) -> str:
        if command not in ADMIN_COMMANDS:
            return f"Unknown admin command: {command}"
        if command == "rebuild":
            return await self.rebuild_container()
        handler = {
            "reset_session": self.reset_session,
            "reset_memory": self.reset_memory,
            "restart": self.restart_container,
        }[command]
        group = self._registry.get(jid)
        if group is None:
            return "This chat is not registered."
        logger.info("host.admin_command", command=command, group=group.folder)
        return await handler(group.folder)
