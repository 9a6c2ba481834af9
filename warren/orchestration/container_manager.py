"""
Container Manager — Docker lifecycle for agent sessions.

Handles building the agent image, launching one container per session with
the group's mounts, and killing containers on timeout, restart or shutdown.

Each container sees only its own group:
  - ``groups/<folder>``         → /workspace/group   (rw)
  - ``ipc/<folder>``            → /workspace/ipc     (rw, task + result files)
  - ``sessions/<folder>``       → /workspace/state   (rw, agent engine state)
  - validated extra mounts      → /workspace/extra/<name> (ro)

Sensitive paths (warren_data/, .env, credentials) are never mounted as extras.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Optional

import structlog

from warren.orchestration.models import SessionSpec

logger = structlog.get_logger(__name__)

# Path components that are never mounted into session containers
DENIED_MOUNT_PATTERNS = frozenset(
    {
        "warren_data",
        ".env",
        ".ssh",
        ".gnupg",
        "credentials",
        "secrets",
        ".git",
    }
)

SESSION_LABEL = "warren-session=true"

# One stdout event per line; a long answer can exceed the 64 KiB asyncio default.
STDOUT_LINE_LIMIT = 16 * 1024 * 1024


class ContainerManager:
    """Manages Docker container lifecycle for agent sessions."""

    def __init__(
        self,
        groups_dir: Path,
        ipc_dir: Path,
        sessions_dir: Path,
        image: str = "warren-agent:latest",
        network: str = "bridge",
        memory_limit: str = "1g",
        cpu_limit: float = 1.0,
        project_root: Optional[Path] = None,
    ):
        self._groups_dir = groups_dir
        self._ipc_dir = ipc_dir
        self._sessions_dir = sessions_dir
        self._image = image
        self._network = network
        self._memory_limit = memory_limit
        self._cpu_limit = cpu_limit
        if project_root is not None:
            self._project_root = project_root
        else:
            self._project_root = Path(__file__).resolve().parent.parent.parent
        self._available: Optional[bool] = None

    @property
    def image(self) -> str:
        return self._image

    async def check_available(self) -> bool:
        """Check if Docker is available on this system."""
        if self._available is not None:
            return self._available

        try:
            proc = await asyncio.create_subprocess_exec(
                "docker",
                "version",
                "--format",
                "{{.Server.Version}}",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=5.0)
            self._available = proc.returncode == 0
            if self._available:
                logger.info("docker.available", version=stdout.decode().strip())
            else:
                logger.warning("docker.unavailable")
        except (FileNotFoundError, asyncio.TimeoutError):
            self._available = False
            logger.warning("docker.not_found")

        return self._available

    async def ensure_image(self, rebuild: bool = False) -> bool:
        """Check if the agent image exists; build it if missing (or forced)."""
        if not rebuild:
            proc = await asyncio.create_subprocess_exec(
                "docker",
                "image",
                "inspect",
                self._image,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await proc.wait()
            if proc.returncode == 0:
                return True

        dockerfile = self._project_root / "container" / "Dockerfile"
        if not dockerfile.exists():
            logger.error("docker.dockerfile_missing", path=str(dockerfile))
            return False

        logger.info("docker.building_image", image=self._image, rebuild=rebuild)
        proc = await asyncio.create_subprocess_exec(
            "docker",
            "build",
            "-t",
            self._image,
            "-f",
            str(dockerfile),
            str(dockerfile.parent),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            logger.error("docker.build_failed", stderr=stderr.decode()[:500])
            return False

        logger.info("docker.image_built", image=self._image)
        return True

    def build_command(self, spec: SessionSpec) -> list[str]:
        """Assemble the ``docker run`` argv for *spec*."""
        folder = spec.group_folder
        group_dir = self._groups_dir / folder
        ipc_dir = self._ipc_dir / folder
        state_dir = self._sessions_dir / folder
        for path in (group_dir, ipc_dir / "tasks", ipc_dir / "results", state_dir):
            path.mkdir(parents=True, exist_ok=True)

        cmd = [
            "docker",
            "run",
            "--rm",
            "-i",
            "--name",
            spec.session_name,
            "--network",
            self._network,
            f"--memory={self._memory_limit}",
            f"--cpus={self._cpu_limit}",
            "--label",
            SESSION_LABEL,
            "--label",
            f"warren-pid={os.getpid()}",
            "--label",
            f"warren-group={folder}",
            "-v",
            f"{group_dir.resolve()}:/workspace/group:rw",
            "-v",
            f"{ipc_dir.resolve()}:/workspace/ipc:rw",
            "-v",
            f"{state_dir.resolve()}:/workspace/state:rw",
        ]

        for path_str in spec.additional_mounts:
            path = Path(path_str).expanduser().resolve()
            if self._is_mount_allowed(path):
                cmd.extend(["-v", f"{path}:/workspace/extra/{path.name}:ro"])
            else:
                logger.warning("docker.mount_denied", path=str(path), group=folder)

        cmd.append(self._image)
        return cmd

    async def run_container(self, spec: SessionSpec) -> tuple[str, asyncio.subprocess.Process]:
        """Launch a container for *spec*. Returns (container_name, process)."""
        cmd = self.build_command(spec)
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STDOUT_LINE_LIMIT,
        )
        logger.info(
            "docker.container_started",
            container=spec.session_name,
            group=spec.group_folder,
            delegation=spec.is_delegation,
        )
        return spec.session_name, proc

    async def kill_container(self, container_name: str) -> None:
        """Kill a running container."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker",
                "kill",
                container_name,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
            await asyncio.wait_for(proc.wait(), timeout=10.0)
            logger.info("docker.container_killed", container=container_name)
        except (asyncio.TimeoutError, OSError) as exc:
            logger.warning("docker.kill_failed", container=container_name, error=str(exc))

    async def list_containers(self, group_folder: Optional[str] = None) -> list[str]:
        """Names of running session containers started by this process."""
        cmd = [
            "docker",
            "ps",
            "--filter",
            f"label={SESSION_LABEL}",
            "--filter",
            f"label=warren-pid={os.getpid()}",
            "--format",
            "{{.Names}}",
        ]
        if group_folder is not None:
            cmd[4:4] = ["--filter", f"label=warren-group={group_folder}"]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await proc.communicate()
        except OSError as exc:
            logger.warning("docker.list_failed", error=str(exc))
            return []
        return [line.strip() for line in stdout.decode().splitlines() if line.strip()]

    async def cleanup_orphans(self) -> int:
        """Kill session containers whose parent host process no longer exists."""
        try:
            proc = await asyncio.create_subprocess_exec(
                "docker",
                "ps",
                "--filter",
                f"label={SESSION_LABEL}",
                "--format",
                '{{.Names}}\t{{.Label "warren-pid"}}',
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
            stdout, _ = await proc.communicate()
        except OSError as exc:
            logger.warning("docker.orphan_cleanup_failed", error=str(exc))
            return 0

        killed = 0
        for line in stdout.decode().splitlines():
            name, _, pid_str = line.strip().partition("\t")
            if not name or not pid_str.isdigit() or int(pid_str) == os.getpid():
                continue
            try:
                os.kill(int(pid_str), 0)
            except OSError:
                await self.kill_container(name)
                killed += 1

        if killed:
            logger.info("docker.orphans_cleaned", count=killed)
        return killed

    async def cleanup_all(self) -> None:
        """Kill all session containers owned by this process."""
        for name in await self.list_containers():
            await self.kill_container(name)

    def _is_mount_allowed(self, path: Path) -> bool:
        """Component matching, so ``.git`` does not match ``.github/``."""
        parts = [p.lower() for p in path.parts]
        return not any(pattern in parts for pattern in DENIED_MOUNT_PATTERNS)
