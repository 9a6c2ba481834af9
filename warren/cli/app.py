"""CLI application — Click-based command hierarchy for Warren.

Registry commands edit ``registered_groups.json`` directly; a running host
picks the change up on its next maintenance pass.
"""

from __future__ import annotations

import asyncio
import functools
import json as json_mod
from typing import Any

import click

from warren.cli.formatters import build_table, get_console, registered_marker


def async_cmd(func):
    """Decorator to run an async Click command via asyncio.run()."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        return asyncio.run(func(*args, **kwargs))

    return wrapper


def _load_config():
    from warren.config import WarrenConfig

    try:
        return WarrenConfig()
    except Exception as exc:
        raise click.ClickException(f"Configuration error: {exc}") from exc


def _make_host():
    from warren.host import WarrenHost

    host = WarrenHost(_load_config())
    host.registry.load()
    host.chats.load()
    return host


@click.group()
@click.option("--json", "json_output", is_flag=True, help="Structured JSON output")
@click.option("--no-color", is_flag=True, help="Disable ANSI colors")
@click.pass_context
def cli(ctx: click.Context, json_output: bool, no_color: bool) -> None:
    """Warren - isolated agent sessions per chat group."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = json_output
    ctx.obj["no_color"] = no_color


@cli.command("run")
@click.option("--verbose", "-v", is_flag=True, help="Log at INFO level")
def run_cmd(verbose: bool) -> None:
    """Start the host and serve until interrupted."""
    from warren.main import run_host

    run_host(verbose=verbose)


@cli.command("groups")
@click.pass_context
def groups_cmd(ctx: click.Context) -> None:
    """List registered groups."""
    host = _make_host()
    groups = sorted(host.registry.all().values(), key=lambda g: g.folder)
    if ctx.obj["json"]:
        click.echo(
            json_mod.dumps([g.model_dump(mode="json", by_alias=True) for g in groups], indent=2)
        )
        return
    rows = [
        [
            g.folder + (" (main)" if host.registry.is_main(g.folder) else ""),
            g.name,
            g.jid,
            g.trigger,
            ", ".join(sorted(g.allow_delegation)) or "-",
        ]
        for g in groups
    ]
    get_console(ctx.obj["no_color"]).print(
        build_table("Registered groups", ["Folder", "Name", "JID", "Trigger", "May delegate to"], rows)
    )


@cli.command("register")
@click.option("--jid", required=True, help="Chat JID, e.g. tg:-100123")
@click.option("--name", required=True, help="Display name")
@click.option("--folder", required=True, help="Folder namespace for the group")
@click.option("--trigger", default=None, help="Trigger phrase (default: @<assistant>)")
@click.option("--allow", "allow", multiple=True, help="Group folder this group may delegate to")
@click.option("--timeout", type=float, default=None, help="Turn timeout in seconds")
@click.pass_context
def register_cmd(
    ctx: click.Context,
    jid: str,
    name: str,
    folder: str,
    trigger: str | None,
    allow: tuple[str, ...],
    timeout: float | None,
) -> None:
    """Register a chat as a group."""
    from warren.errors import GroupRegistryError
    from warren.groups import ContainerConfig

    host = _make_host()
    container_config = None
    if allow or timeout is not None:
        container_config = ContainerConfig(allow_delegation=set(allow), timeout=timeout)
    try:
        group = host.register_group(jid, name, folder, trigger, container_config)
    except GroupRegistryError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Registered {group.name} ({group.jid}) as '{group.folder}'.")


@cli.command("deregister")
@click.argument("jid")
def deregister_cmd(jid: str) -> None:
    """Remove a group registration (its folder is left on disk)."""
    host = _make_host()
    if not host.registry.deregister(jid):
        raise click.ClickException(f"{jid} is not registered")
    click.echo(f"Deregistered {jid}.")


@cli.command("available")
@click.pass_context
def available_cmd(ctx: click.Context) -> None:
    """List chats the channels have seen, most recent first."""
    host = _make_host()
    chats = host.available_groups()
    if ctx.obj["json"]:
        click.echo(
            json_mod.dumps(
                [
                    {
                        "jid": c.jid,
                        "name": c.name,
                        "lastActivity": c.last_activity,
                        "isRegistered": c.is_registered,
                    }
                    for c in chats
                ],
                indent=2,
            )
        )
        return
    rows = [[c.name, c.jid, c.last_activity, registered_marker(c.is_registered)] for c in chats]
    get_console(ctx.obj["no_color"]).print(
        build_table("Available chats", ["Name", "JID", "Last activity", "Registered"], rows)
    )


@cli.command("reset-memory")
@click.argument("folder")
@async_cmd
async def reset_memory_cmd(folder: str) -> None:
    """Wipe a group's agent session state."""
    from warren.errors import GroupRegistryError

    host = _make_host()
    try:
        click.echo(await host.reset_memory(folder))
    except GroupRegistryError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command("restart-container")
@click.argument("folder")
@async_cmd
async def restart_container_cmd(folder: str) -> None:
    """Stop a group's running containers; its next message starts fresh."""
    host = _make_host()
    if host.registry.by_folder(folder) is None:
        raise click.ClickException(f"No registered group uses folder '{folder}'")
    click.echo(await host.restart_container(folder))


@cli.command("rebuild-image")
@async_cmd
async def rebuild_image_cmd() -> None:
    """Rebuild the agent container image."""
    host = _make_host()
    click.echo(await host.rebuild_container())


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
