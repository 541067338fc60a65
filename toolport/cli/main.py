"""
toolport CLI.

    toolport discover                       servers and tool counts
    toolport discover list <server>         tools of one server
    toolport discover info <server> <tool>  one tool's full descriptor
    toolport call <server> <tool> [params]  one stateless call
    toolport session start|call|stop|list   long-lived sessions

Results go to stdout; diagnostics and errors go to stderr.
"""

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any, Optional, Tuple

import click
from rich.console import Console
from rich.markup import escape

from toolport import __version__
from toolport.catalogue.refresh import CatalogueRefresher
from toolport.catalogue.schema import TransportConfig
from toolport.errors import ToolportError, UnknownServer
from toolport.invocation.result import InvocationResult
from toolport.runtime import Runtime
from toolport.validation.config import Config, ConfigError

console = Console(soft_wrap=True, highlight=False)
err_console = Console(stderr=True, soft_wrap=True, highlight=False)

EXIT_ERROR = 1
EXIT_CONFIG = 2


def _fail(kind: str, message: str, payload: Any = None) -> None:
    err_console.print(f"{kind}: {message}", markup=False)
    if payload is not None:
        err_console.print(_dumps(payload), markup=False)
    sys.exit(EXIT_ERROR)


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def handle_errors(func):
    """Turn toolport errors into ``Kind: message`` on stderr and a non-zero exit."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except ToolportError as exc:
            _fail(exc.kind, exc.message, getattr(exc, "payload", None))
        except ConfigError as exc:
            err_console.print(f"ConfigError: {exc}", markup=False)
            sys.exit(EXIT_CONFIG)

    return wrapper


def _emit(result: InvocationResult) -> None:
    if not result.ok:
        _fail(result.error_kind or "Error", result.message, result.payload)
    if isinstance(result.value, str):
        click.echo(result.value)
    else:
        click.echo(_dumps(result.value))


def _runtime(ctx: click.Context) -> Runtime:
    return ctx.find_root().obj


@click.group()
@click.version_option(__version__, prog_name="toolport")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging on stderr")
@click.option(
    "--catalogue",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Catalogue root (overrides config and TOOLPORT_CATALOGUE)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, catalogue: Optional[Path]) -> None:
    """Progressive tool catalogue and invocation runtime."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s [%(name)s] %(message)s",
        stream=sys.stderr,
    )
    if ctx.obj is None:
        try:
            ctx.obj = Runtime(Config.load(), catalogue_root=catalogue)
        except ConfigError as exc:
            err_console.print(f"ConfigError: {exc}", markup=False)
            sys.exit(EXIT_CONFIG)
    ctx.call_on_close(ctx.obj.close)


# ── discover ──────────────────────────────────────────────────────────────


@cli.group(invoke_without_command=True)
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
@handle_errors
def discover(ctx: click.Context, as_json: bool) -> None:
    """List servers, or browse one server's tools."""
    if ctx.invoked_subcommand is not None:
        return
    servers = _runtime(ctx).catalogue.list_servers()
    if as_json:
        click.echo(_dumps([s.model_dump() for s in servers]))
        return
    for server in servers:
        console.print(f"[bold]{escape(server.name)}[/bold]  [dim]({server.tool_count} tools)[/dim]")


@discover.command("list")
@click.argument("server")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
@handle_errors
def discover_list(ctx: click.Context, server: str, as_json: bool) -> None:
    """List a server's tools with one-line descriptions."""
    tools = _runtime(ctx).catalogue.list_tools(server)
    if as_json:
        click.echo(_dumps([t.model_dump() for t in tools]))
        return
    for tool in tools:
        console.print(f"[cyan]{escape(tool.name)}[/cyan]  {escape(tool.description)}")


@discover.command("info")
@click.argument("server")
@click.argument("tool")
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_context
@handle_errors
def discover_info(ctx: click.Context, server: str, tool: str, as_json: bool) -> None:
    """Show one tool's full descriptor."""
    descriptor = _runtime(ctx).catalogue.get_tool_descriptor(server, tool)
    if as_json:
        click.echo(_dumps(descriptor.model_dump()))
        return
    console.print(descriptor.full_schema_text(), markup=False)


@discover.command("refresh")
@click.argument("server")
@click.pass_context
@handle_errors
def discover_refresh(ctx: click.Context, server: str) -> None:
    """Fetch a server's tools and rewrite its catalogue entry."""
    runtime = _runtime(ctx)
    override = runtime.config.server_overrides().get(server, {})
    if override.get("command") or override.get("url"):
        transport = TransportConfig(**override)
        description = ""
    else:
        try:
            descriptor = runtime.catalogue.get_server(server)
        except ToolportError:
            raise UnknownServer(server)
        transport = descriptor.transport.merged(override)
        description = descriptor.description

    refresher = CatalogueRefresher(
        runtime.catalogue_root,
        factory=runtime.transport_factory,
        timeout=runtime.config.merged.invoker.connect_timeout,
    )
    tools = refresher.refresh(server, transport, description=description)
    err_console.print(f"{server}: {len(tools)} tools written", markup=False)


# ── call ──────────────────────────────────────────────────────────────────


@cli.command("call")
@click.argument("server")
@click.argument("tool")
@click.argument("params", nargs=-1)
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the result")
@click.pass_context
@handle_errors
def call(ctx: click.Context, server: str, tool: str, params: Tuple[str, ...], timeout: Optional[float]) -> None:
    """Call a tool once: inline JSON, key=value pairs, @file, or piped stdin."""
    runtime = _runtime(ctx)
    arguments = runtime.normalizer.from_cli_args(params)
    _emit(runtime.invoker.invoke(server, tool, arguments, timeout=timeout))


# ── session ───────────────────────────────────────────────────────────────


@cli.group()
@click.pass_context
@handle_errors
def session(ctx: click.Context) -> None:
    """Long-lived server sessions."""
    _runtime(ctx).sessions.reconcile()


@session.command("start")
@click.argument("server")
@click.pass_context
@handle_errors
def session_start(ctx: click.Context, server: str) -> None:
    """Start (or reuse) the session for SERVER."""
    handle = _runtime(ctx).sessions.start(server)
    click.echo(_dumps({
        "server": handle.server,
        "session_id": handle.session_id,
        "created_at": handle.created_at.isoformat(),
    }))


@session.command("call")
@click.argument("server")
@click.argument("tool")
@click.argument("params", nargs=-1)
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the result")
@click.pass_context
@handle_errors
def session_call(ctx: click.Context, server: str, tool: str, params: Tuple[str, ...], timeout: Optional[float]) -> None:
    """Call a tool over SERVER's active session."""
    runtime = _runtime(ctx)
    arguments = runtime.normalizer.from_cli_args(params)
    _emit(runtime.sessions.call(server, tool, arguments, timeout=timeout))


@session.command("stop")
@click.argument("server")
@click.pass_context
@handle_errors
def session_stop(ctx: click.Context, server: str) -> None:
    """Stop SERVER's session (no-op when there is none)."""
    stopped = _runtime(ctx).sessions.stop(server)
    click.echo(_dumps({"server": server, "stopped": stopped}))


@session.command("list")
@click.pass_context
@handle_errors
def session_list(ctx: click.Context) -> None:
    """Show persisted sessions, one JSON object per line."""
    for record in _runtime(ctx).sessions.list_sessions():
        click.echo(json.dumps(record.to_dict()))


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
