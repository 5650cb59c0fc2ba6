"""
CLI interface for the onui local store.

Usage:
    onui setup                 # register the native host with the browser
    onui doctor [--json]       # check store and native-host wiring
    onui mcp                   # MCP stdio server for AI agents
    onui native-host           # native-messaging host (spawned by the browser)
"""

import json
import os
import sys
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .logging_config import configure_quiet_mode, enable_debug_mode

# Set ONUI_VERBOSE=1 to enable debug logging via environment
if os.environ.get("ONUI_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"onui {version('onui-local')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


def _store_callback(value: Optional[Path]):
    # Store override reaches every subcommand (and child processes) via env
    if value is not None:
        os.environ["ONUI_STORE_PATH"] = str(value.expanduser())
    return value


app = typer.Typer(
    name="onui",
    help="Local annotation store and native-messaging host for the onUI extension.",
    no_args_is_help=True,
    add_completion=False,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="ONUI_STORE_PATH",
        help="Store file (default: per-user data directory)",
        callback=_store_callback,
    )] = None,
):
    """Local annotation store and native-messaging host for the onUI extension."""


@app.command()
def setup(
    extension_id: Annotated[Optional[str], typer.Option(
        "--extension-id", help="Chrome extension id allowed to call the host",
    )] = None,
    host_command: Annotated[Optional[str], typer.Option(
        "--host-command",
        help="Command the launcher runs (default: this Python with -m onui native-host)",
    )] = None,
):
    """Register the native-messaging host with the browser."""
    import shlex

    from .config import load_or_create_config, save_config
    from .manifest import install_native_host

    config = load_or_create_config()
    if extension_id:
        config.native.extension_id = extension_id
        save_config(config)

    result = install_native_host(
        shlex.split(host_command) if host_command else None,
        host_name=config.native.host_name,
        extension_id=config.native.extension_id,
    )
    typer.echo(f"Launcher: {result.launcher_path}")
    typer.echo(f"Manifest: {result.manifest_path}")
    typer.echo(f"Host:     {result.host_name}")


@app.command()
def doctor(
    output_json: Annotated[bool, typer.Option("--json", help="Output JSON")] = False,
    skip_roundtrip: Annotated[bool, typer.Option(
        "--no-roundtrip", help="Don't spawn the native host",
    )] = False,
):
    """Diagnostic checks for the store and native-host setup."""
    from .config import get_native_host_manifest_path, load_or_create_config, resolve_store_path
    from .doctor import CHECK_ERROR, run_doctor

    config = load_or_create_config()
    report = run_doctor(
        resolve_store_path(config),
        manifest_path=get_native_host_manifest_path(host_name=config.native.host_name),
        roundtrip=not skip_roundtrip,
    )

    if output_json:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        typer.echo(f"onui doctor: {report.status}")
        for check in report.checks:
            typer.echo(f"  [{check.status}] {check.name}: {check.message}")
            if check.fix:
                typer.echo(f"      fix: {check.fix}")

    if report.status == CHECK_ERROR:
        raise typer.Exit(1)


@app.command()
def mcp():
    """Start MCP stdio server for AI agent integration."""
    from .mcp import main as mcp_main
    mcp_main()


@app.command("native-host")
def native_host():
    """Serve native-messaging frames on stdin/stdout (spawned by the browser)."""
    from .native_host import run_native_host
    run_native_host()


# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="onui CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
