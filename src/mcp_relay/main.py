"""Main CLI entry point for mcp-relay.

This module provides the command-line interface for supervising local MCP
stdio servers: managing their definitions, secrets and profiles, running the
supervisor and inspecting tool catalogs.
"""

import asyncio
import json
import signal
import sys
import traceback
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import click
import structlog

from . import __version__
from .config import configure_logging, load_settings
from .config.settings import RelaySettings
from .events import LOG_TOPIC, USAGE_TOPIC
from .exceptions import RelayError
from .management import RelayManager, check_dependencies, test_connection
from .management.pidfile import RELOAD_SIGNAL, read_pid, remove_pid, write_pid
from .management.process import is_alive

logger = structlog.get_logger()

T = TypeVar("T")


class CLIError(RelayError):
    """CLI usage error with a user-friendly message."""


def handle_cli_error(error: Exception, ctx: Optional[click.Context] = None):
    """Global CLI error handler."""
    if isinstance(error, RelayError):
        click.echo(f"Error: {error.message}", err=True)
        if error.suggestion:
            click.echo(f"Suggestion: {error.suggestion}", err=True)
    elif isinstance(error, click.ClickException):
        error.show()
    else:
        verbose = bool(ctx and ctx.obj and ctx.obj.get("verbose"))
        click.echo(f"Unexpected error: {error}", err=True)
        if verbose:
            click.echo(traceback.format_exc(), err=True)
        else:
            click.echo("Run with --verbose for detailed error information", err=True)

    sys.exit(1)


def _run(ctx: click.Context, func: Callable[[RelayManager], Awaitable[T]]) -> T:
    """Run one coroutine against a freshly initialized manager."""

    async def runner() -> T:
        manager = RelayManager(ctx.obj["settings"])
        await manager.initialize()
        return await func(manager)

    try:
        return asyncio.run(runner())
    except RelayError as error:
        handle_cli_error(error, ctx)
    except ValueError as error:
        handle_cli_error(CLIError(str(error)), ctx)


def _parse_env(pairs: Tuple[str, ...]) -> Dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False))


@click.group()
@click.version_option(version=__version__, prog_name="mcp-relay")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output with detailed logging",
)
@click.option(
    "--quiet", "-q", is_flag=True, help="Enable quiet mode with minimal output"
)
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path (YAML format)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, quiet: bool, config: Optional[str]):
    """mcp-relay: supervise local MCP servers and inspect their tools

    Servers are local programs speaking JSON-RPC over stdin/stdout. Enabled
    servers of the active profile are kept running by 'mcp-relay run'.

    \b
    Examples:
      mcp-relay server add github npx -- -y @modelcontextprotocol/server-github
      mcp-relay secret set <server-id> GITHUB_TOKEN
      mcp-relay server enable <server-id>
      mcp-relay tools list <server-id>
      mcp-relay run
    """
    if verbose and quiet:
        raise click.BadParameter("Cannot use both --verbose and --quiet options")

    ctx.ensure_object(dict)
    try:
        settings = load_settings(config)
    except RelayError as error:
        handle_cli_error(error, ctx)

    level = "DEBUG" if verbose else "ERROR" if quiet else settings.logging.level
    log_file = settings.get_log_file_path()
    configure_logging(
        level=level,
        log_file=str(log_file) if log_file else None,
        json_logs=settings.logging.json_format,
    )

    ctx.obj["settings"] = settings
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet


# ----------------------------------------------------------------------
# run
# ----------------------------------------------------------------------


@cli.command()
@click.option("--no-logs", is_flag=True, help="Do not print server output")
@click.option("--usage", is_flag=True, help="Print usage events as they happen")
@click.pass_context
def run(ctx: click.Context, no_logs: bool, usage: bool):
    """Run the supervisor until interrupted.

    Starts every enabled server of the active profile, prints their output
    and stops them all on Ctrl+C or SIGTERM.
    """
    settings: RelaySettings = ctx.obj["settings"]
    quiet = ctx.obj["quiet"]

    try:
        asyncio.run(_run_supervisor(settings, quiet, show_logs=not no_logs, show_usage=usage))
    except RelayError as error:
        handle_cli_error(error, ctx)
    except KeyboardInterrupt:
        pass


async def _run_supervisor(
    settings: RelaySettings, quiet: bool, show_logs: bool, show_usage: bool
) -> None:
    manager = RelayManager(settings)

    if show_logs:
        manager.events.subscribe(
            LOG_TOPIC,
            lambda event: click.echo(
                f"[{event['name']}:{event['stream']}] {event['message']}"
            ),
        )
    if show_usage:
        manager.events.subscribe(
            USAGE_TOPIC,
            lambda event: click.echo(
                f"[usage] {event['serverId']}: {event['totalBytes']} bytes, "
                f"~{event['totalTokens']} tokens",
                err=True,
            ),
        )

    stop_event = asyncio.Event()
    reload_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        loop.add_signal_handler(RELOAD_SIGNAL, reload_event.set)

    pid_file = settings.get_pid_file_path()
    try:
        result = await manager.start()
        write_pid(pid_file)
        if not quiet:
            click.echo(f"✅ Supervising {len(manager.registry.running_ids())} server(s)")
            for server_id, message in result.failed.items():
                click.echo(f"❌ {server_id}: {message}", err=True)
            click.echo("   Press Ctrl+C to stop")
        await _supervise(manager, stop_event, reload_event, settings.process.refresh_interval)
    finally:
        remove_pid(pid_file)
        stopped = await manager.shutdown()
        if not quiet:
            click.echo(f"🛑 Stopped {len(stopped)} server(s)")


async def _supervise(
    manager: RelayManager,
    stop_event: asyncio.Event,
    reload_event: asyncio.Event,
    interval: float,
) -> None:
    """Refresh from the store on SIGHUP or every ``interval`` seconds until stopped."""
    while not stop_event.is_set():
        stop_wait = asyncio.ensure_future(stop_event.wait())
        reload_wait = asyncio.ensure_future(reload_event.wait())
        try:
            await asyncio.wait(
                [stop_wait, reload_wait],
                timeout=interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            stop_wait.cancel()
            reload_wait.cancel()

        if stop_event.is_set():
            break
        reload_event.clear()
        try:
            result = await manager.refresh()
        except RelayError as error:
            logger.error("Refresh from store failed", error=error.message)
            continue
        for server_id, message in result.failed.items():
            click.echo(f"❌ {server_id}: {message}", err=True)


# ----------------------------------------------------------------------
# server
# ----------------------------------------------------------------------


@cli.group()
def server():
    """Manage server definitions."""


@server.command("add")
@click.argument("name")
@click.argument("command")
@click.argument("args", nargs=-1)
@click.option("--env", "-e", "env_pairs", multiple=True, help="Environment variable KEY=VALUE")
@click.option("--secret", "-s", "secrets", multiple=True, help="Secret key name resolved from the vault")
@click.option("--profile", "-p", "profile_id", help="Profile id (default: active profile)")
@click.option("--description", "-d", help="Free-form description")
@click.option("--category", default="other", show_default=True, help="Server category")
@click.option("--enable", is_flag=True, help="Enable the server right away")
@click.pass_context
def server_add(
    ctx: click.Context,
    name: str,
    command: str,
    args: Tuple[str, ...],
    env_pairs: Tuple[str, ...],
    secrets: Tuple[str, ...],
    profile_id: Optional[str],
    description: Optional[str],
    category: str,
    enable: bool,
):
    """Add a server definition.

    \b
    Use '--' before arguments that start with a dash:
      mcp-relay server add fs npx -- -y @modelcontextprotocol/server-filesystem /tmp
    """
    env = _parse_env(env_pairs)
    definition = _run(
        ctx,
        lambda manager: manager.create_server(
            name,
            command,
            args=list(args),
            env=env,
            secrets=list(secrets),
            profile_id=profile_id,
            description=description,
            category=category,
            enabled=enable,
        ),
    )
    if ctx.obj["quiet"]:
        click.echo(definition.id)
    else:
        click.echo(f"✅ Added server '{definition.name}' ({definition.id})")


@server.command("list")
@click.option("--profile", "-p", "profile_id", help="Only servers of this profile")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def server_list(ctx: click.Context, profile_id: Optional[str], output_format: str):
    """List server definitions."""
    servers = _run(ctx, lambda manager: manager.list_servers(profile_id))

    if output_format == "json":
        _echo_json([s.to_dict() for s in servers])
        return

    if not servers:
        click.echo("No servers configured")
        return

    click.echo(f"{'ID':<38} {'NAME':<20} {'PROFILE':<12} {'ENABLED':<8} COMMAND")
    for s in servers:
        command_line = " ".join([s.command, *s.args])
        click.echo(
            f"{s.id:<38} {s.name[:20]:<20} {s.profile_id[:12]:<12} "
            f"{'yes' if s.enabled else 'no':<8} {command_line}"
        )


def _toggle(ctx: click.Context, server_id: str, enabled: bool) -> None:
    definition = _run(ctx, lambda manager: manager.toggle_server(server_id, enabled))
    state = "enabled" if enabled else "disabled"
    click.echo(f"✅ Server '{definition.name}' {state}")


@server.command("enable")
@click.argument("server_id")
@click.pass_context
def server_enable(ctx: click.Context, server_id: str):
    """Enable a server; a running supervisor starts it shortly."""
    _toggle(ctx, server_id, True)


@server.command("disable")
@click.argument("server_id")
@click.pass_context
def server_disable(ctx: click.Context, server_id: str):
    """Disable a server."""
    _toggle(ctx, server_id, False)


@server.command("remove")
@click.argument("server_id")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def server_remove(ctx: click.Context, server_id: str, yes: bool):
    """Remove a server definition and its stored secrets."""
    if not yes:
        click.confirm(f"Remove server '{server_id}' and its secrets?", abort=True)
    _run(ctx, lambda manager: manager.delete_server(server_id))
    click.echo(f"✅ Server '{server_id}' removed")


# ----------------------------------------------------------------------
# secret
# ----------------------------------------------------------------------


@cli.group()
def secret():
    """Manage secrets stored in the vault."""


@secret.command("set")
@click.argument("server_id")
@click.argument("key")
@click.option(
    "--value",
    prompt=True,
    hide_input=True,
    help="Secret value (prompted when omitted)",
)
@click.pass_context
def secret_set(ctx: click.Context, server_id: str, key: str, value: str):
    """Store a secret for a server."""
    _run(ctx, lambda manager: manager.set_secret(server_id, key, value))
    click.echo(f"✅ Secret '{key}' stored")


@secret.command("delete")
@click.argument("server_id")
@click.argument("key")
@click.pass_context
def secret_delete(ctx: click.Context, server_id: str, key: str):
    """Delete a secret of a server."""
    _run(ctx, lambda manager: manager.delete_secret(server_id, key))
    click.echo(f"✅ Secret '{key}' deleted")


# ----------------------------------------------------------------------
# tools
# ----------------------------------------------------------------------


@cli.group()
def tools():
    """Inspect server tools through short-lived processes."""


@tools.command("list")
@click.argument("server_id")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.pass_context
def tools_list(ctx: click.Context, server_id: str, output_format: str):
    """List the tools a server exposes."""
    result = _run(ctx, lambda manager: manager.list_tools(server_id))

    if output_format == "json":
        _echo_json(result)
        return

    tool_list: List[Dict[str, Any]] = result.get("tools") or []
    if not tool_list:
        click.echo("Server exposes no tools")
        return
    for tool in tool_list:
        description = (tool.get("description") or "").strip().splitlines()
        click.echo(f"• {tool.get('name')}")
        if description:
            click.echo(f"    {description[0]}")


@tools.command("call")
@click.argument("server_id")
@click.argument("tool_name")
@click.option(
    "--arguments",
    "-a",
    "arguments_json",
    default="{}",
    help="Tool arguments as a JSON object",
)
@click.pass_context
def tools_call(ctx: click.Context, server_id: str, tool_name: str, arguments_json: str):
    """Call one tool and print its result."""
    try:
        arguments = json.loads(arguments_json)
    except ValueError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--arguments")
    if not isinstance(arguments, dict):
        raise click.BadParameter("Arguments must be a JSON object", param_hint="--arguments")

    result = _run(ctx, lambda manager: manager.call_tool(server_id, tool_name, arguments))
    _echo_json(result)


# ----------------------------------------------------------------------
# profile
# ----------------------------------------------------------------------


@cli.group()
def profile():
    """Manage profiles."""


@profile.command("list")
@click.pass_context
def profile_list(ctx: click.Context):
    """List profiles; the active one is marked with '*'."""

    async def collect(manager: RelayManager):
        return await manager.list_profiles(), await manager.store.get_active_profile()

    profiles, active = _run(ctx, collect)
    for p in profiles:
        marker = "*" if p.id == active else " "
        click.echo(f"{marker} {p.id:<24} {p.name}")


@profile.command("create")
@click.argument("name")
@click.pass_context
def profile_create(ctx: click.Context, name: str):
    """Create a profile."""
    created = _run(ctx, lambda manager: manager.create_profile(name))
    click.echo(f"✅ Created profile '{created.name}' ({created.id})")


@profile.command("switch")
@click.argument("profile_id")
@click.pass_context
def profile_switch(ctx: click.Context, profile_id: str):
    """Make a profile active."""
    _run(ctx, lambda manager: manager.switch_profile(profile_id))
    click.echo(f"✅ Active profile: {profile_id}")


# ----------------------------------------------------------------------
# diagnostics
# ----------------------------------------------------------------------


@cli.command()
@click.argument("server_id", required=False)
@click.option("--command", "command", help="Command to test instead of a stored server")
@click.option("--arg", "args", multiple=True, help="Argument for --command (repeatable)")
@click.option("--env", "-e", "env_pairs", multiple=True, help="Environment variable KEY=VALUE")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    help="Output format",
)
@click.pass_context
def diagnose(
    ctx: click.Context,
    server_id: Optional[str],
    command: Optional[str],
    args: Tuple[str, ...],
    env_pairs: Tuple[str, ...],
    output_format: str,
):
    """Check prerequisites and test the MCP handshake of a server.

    \b
    Examples:
      mcp-relay diagnose <server-id>
      mcp-relay diagnose --command npx --arg -y --arg @scope/server
    """
    if bool(server_id) == bool(command):
        raise click.UsageError("Pass either SERVER_ID or --command")

    if server_id:
        result = _run(ctx, lambda manager: manager.test_server(server_id))
    else:
        env = _parse_env(env_pairs)
        settings = ctx.obj["settings"]

        async def ad_hoc(manager: RelayManager):
            return await test_connection(command, args, env=env, settings=settings)

        result = _run(ctx, ad_hoc)

    if output_format == "json":
        _echo_json(result.to_dict())
    else:
        icon = "✅" if result.success else "❌"
        click.echo(f"{icon} {result.message}")
        for issue in result.missing_dependencies:
            click.echo(f"   missing: {issue.binary} ({issue.required_by})")
        if result.stderr_preview:
            click.echo("   stderr:")
            for line in result.stderr_preview:
                click.echo(f"     {line}")
        for hint in result.hints:
            click.echo(f"💡 {hint}")

    if not result.success:
        sys.exit(1)


@cli.command()
@click.argument("command")
@click.argument("args", nargs=-1)
def deps(command: str, args: Tuple[str, ...]):
    """Check that a command and its runtime are installed."""
    missing = check_dependencies(command, args)
    if not missing:
        click.echo("✅ All prerequisites found")
        return
    for issue in missing:
        click.echo(f"❌ {issue.binary}: {issue.install_hint}")
    sys.exit(1)


@cli.command()
@click.option("--profile", "-p", "profile_id", help="Profile id (default: active profile)")
@click.pass_context
def conflicts(ctx: click.Context, profile_id: Optional[str]):
    """Show enabled servers that would expose the same tools."""
    found = _run(ctx, lambda manager: manager.detect_conflicts(profile_id))
    if not found:
        click.echo("✅ No tool conflicts")
        return
    for conflict in found:
        click.echo(f"⚠️  {conflict.tool_key}")
        for sid, name in conflict.servers:
            click.echo(f"     {name} ({sid})")


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show the active profile and stored servers."""

    async def collect(manager: RelayManager):
        active = await manager.store.get_active_profile()
        return active, await manager.store.list_enabled_servers(active)

    active, enabled = _run(ctx, collect)
    click.echo(f"Active profile: {active}")
    supervisor_pid = read_pid(ctx.obj["settings"].get_pid_file_path())
    if supervisor_pid and is_alive(supervisor_pid):
        click.echo(f"Supervisor: running (pid {supervisor_pid})")
    else:
        click.echo("Supervisor: not running")
    click.echo(f"Enabled servers: {len(enabled)}")
    for s in enabled:
        click.echo(f"   • {s.name} ({s.id})")


@cli.command("export")
@click.option("--profile", "-p", "profile_id", help="Profile id (default: active profile)")
@click.option(
    "--write",
    "write_path",
    type=click.Path(dir_okay=False),
    help="Write into this client config file instead of printing",
)
@click.pass_context
def export_config(ctx: click.Context, profile_id: Optional[str], write_path: Optional[str]):
    """Export enabled servers as an MCP client 'mcpServers' config.

    Secret values are never exported; add them in the client yourself.

    \b
    Examples:
      mcp-relay export
      mcp-relay export --write ~/.config/Claude/claude_desktop_config.json
    """
    if write_path is None:
        _echo_json(_run(ctx, lambda manager: manager.export_config(profile_id)))
        return

    written = _run(ctx, lambda manager: manager.export_to_file(write_path, profile_id))
    click.echo(f"✅ Wrote {written}")


if __name__ == "__main__":
    cli()
