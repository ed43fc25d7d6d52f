"""Command-line interface for devicecloud.

Usage:
    dcloud instances                       # List instances of the project
    dcloud show ID                         # Print the state snapshot as JSON
    dcloud power ID start --wait           # Start and wait until "on"
    dcloud wait ID off --timeout 120       # Block until a state is reported
    dcloud console-log ID                  # Print the buffered console
    dcloud snapshots ID                    # List snapshots
    dcloud screenshot ID -o screen.png     # Save a PNG screenshot

Connection settings come from DEVICECLOUD_* environment variables
(DEVICECLOUD_ENDPOINT, DEVICECLOUD_API_TOKEN or DEVICECLOUD_USERNAME /
DEVICECLOUD_PASSWORD, DEVICECLOUD_PROJECT) or the matching options.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import aiofiles
import click

from devicecloud import (
    AuthenticationError,
    Client,
    DeviceCloudError,
    Instance,
    PowerAction,
    Project,
    ProjectNotFoundError,
    __version__,
)
from devicecloud._logging import configure_logging
from devicecloud.settings import Settings

# Exit codes following Unix conventions
EXIT_SUCCESS = 0
EXIT_CLI_ERROR = 2
EXIT_TIMEOUT = 124  # Matches `timeout` command
EXIT_API_ERROR = 125


@dataclass(frozen=True)
class CliOptions:
    endpoint: str | None
    project: str | None


def format_error(title: str, message: str, suggestions: list[str] | None = None) -> str:
    """Render a red error title, an indented explanation and optional hints for stderr."""
    lines = [
        click.style(f"Error: {title}", fg="red", bold=True),
        "",
        f"  {message}",
    ]

    if suggestions:
        lines.extend(["", "  Suggestions:"])
        lines.extend(f"    • {suggestion}" for suggestion in suggestions)

    return "\n".join(lines)


def format_instance_row(instance: Instance) -> str:
    return f"{instance.id}  {instance.state or '-':<10} {instance.flavor or '-':<12} {instance.name or ''}"


@asynccontextmanager
async def open_project(options: CliOptions) -> AsyncIterator[Project]:
    """Log in and resolve the configured project."""
    settings = Settings()
    try:
        config = settings.client_config(options.endpoint)
    except ValueError as exc:
        raise click.UsageError(str(exc)) from exc

    project_name = options.project or settings.project
    if not project_name:
        raise click.UsageError("No project configured. Set DEVICECLOUD_PROJECT or pass --project.")

    async with Client(
        config,
        api_token=settings.api_token.get_secret_value() if settings.api_token else None,
        username=settings.username,
        password=settings.password.get_secret_value() if settings.password else None,
    ) as client:
        yield await client.get_project(project_name)


@asynccontextmanager
async def open_instance(options: CliOptions, instance_id: str) -> AsyncIterator[Instance]:
    async with open_project(options) as project:
        instance = await project.get_instance(instance_id)
        async with instance:
            yield instance


def run(coro: Coroutine[Any, Any, int]) -> NoReturn:
    """Run a command coroutine and exit with its code, mapping errors to exit codes."""
    try:
        exit_code = asyncio.run(coro)
    except TimeoutError:
        click.echo(
            format_error(
                "Timed out",
                "The instance did not reach the requested state in time.",
                ["Increase --timeout", "Check the instance state with `dcloud show`"],
            ),
            err=True,
        )
        exit_code = EXIT_TIMEOUT
    except AuthenticationError as e:
        click.echo(
            format_error(
                "Authentication failed",
                e.message,
                ["Set DEVICECLOUD_API_TOKEN or DEVICECLOUD_USERNAME/DEVICECLOUD_PASSWORD"],
            ),
            err=True,
        )
        exit_code = EXIT_API_ERROR
    except ProjectNotFoundError as e:
        click.echo(format_error("Project not found", e.message, ["List projects in the web UI"]), err=True)
        exit_code = EXIT_CLI_ERROR
    except DeviceCloudError as e:
        click.echo(format_error("Platform error", e.message), err=True)
        exit_code = EXIT_API_ERROR
    sys.exit(exit_code)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--endpoint", help="Platform URL (default: $DEVICECLOUD_ENDPOINT)")
@click.option("-P", "--project", help="Project name or id (default: $DEVICECLOUD_PROJECT)")
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
@click.option("-q", "--quiet", is_flag=True, help="Only log errors")
@click.version_option(__version__, "-V", "--version", prog_name="devicecloud")
@click.pass_context
def main(ctx: click.Context, endpoint: str | None, project: str | None, verbose: bool, quiet: bool) -> None:
    """Control remote virtual devices."""
    if verbose or quiet:
        configure_logging(level="DEBUG" if verbose else None, quiet=quiet)
    ctx.obj = CliOptions(endpoint=endpoint, project=project)


@main.command("instances")
@click.pass_obj
def list_instances(options: CliOptions) -> NoReturn:
    """List instances of the project."""

    async def _run() -> int:
        async with open_project(options) as project:
            for instance in await project.instances():
                click.echo(format_instance_row(instance))
        return EXIT_SUCCESS

    run(_run())


@main.command("show")
@click.argument("instance_id")
@click.pass_obj
def show(options: CliOptions, instance_id: str) -> NoReturn:
    """Print the instance state snapshot as JSON."""

    async def _run() -> int:
        async with open_instance(options, instance_id) as instance:
            click.echo(json.dumps(instance.info, indent=2, sort_keys=True))
        return EXIT_SUCCESS

    run(_run())


@main.command("power")
@click.argument("instance_id")
@click.argument("action", type=click.Choice([a.value for a in PowerAction], case_sensitive=False))
@click.option("--wait", "wait_", is_flag=True, help="Wait until the resulting state is reported")
@click.option("-t", "--timeout", default=300.0, show_default=True, help="Wait timeout in seconds")
@click.pass_obj
def power(options: CliOptions, instance_id: str, action: str, wait_: bool, timeout: float) -> NoReturn:
    """Start, stop, reboot, pause or unpause an instance."""
    power_action = PowerAction(action.lower())

    async def _run() -> int:
        async with open_instance(options, instance_id) as instance:
            before = instance.state
            await getattr(instance, power_action.value)()
            if wait_:
                target = power_action.target_state.value
                async with asyncio.timeout(timeout):
                    if power_action.cycles:
                        # The cached record predates the command; see the instance leave first
                        await instance.wait_for(lambda info: info["state"] != before)
                    await instance.wait_for_state(target)
                click.echo(f"{instance.id}: {target}")
        return EXIT_SUCCESS

    run(_run())


@main.command("wait")
@click.argument("instance_id")
@click.argument("state")
@click.option("-t", "--timeout", default=300.0, show_default=True, help="Timeout in seconds")
@click.pass_obj
def wait(options: CliOptions, instance_id: str, state: str, timeout: float) -> NoReturn:
    """Block until the instance reports STATE."""

    async def _run() -> int:
        async with open_instance(options, instance_id) as instance:
            async with asyncio.timeout(timeout):
                await instance.wait_for_state(state)
        return EXIT_SUCCESS

    run(_run())


@main.command("console-log")
@click.argument("instance_id")
@click.pass_obj
def console_log(options: CliOptions, instance_id: str) -> NoReturn:
    """Print the buffered serial console output."""

    async def _run() -> int:
        async with open_instance(options, instance_id) as instance:
            click.echo(await instance.console_log() or "", nl=False)
        return EXIT_SUCCESS

    run(_run())


@main.command("snapshots")
@click.argument("instance_id")
@click.pass_obj
def snapshots(options: CliOptions, instance_id: str) -> NoReturn:
    """List snapshots of an instance."""

    async def _run() -> int:
        async with open_instance(options, instance_id) as instance:
            for snapshot in await instance.snapshots():
                marker = " (fresh)" if snapshot.fresh else ""
                click.echo(f"{snapshot.id}  {snapshot.name or ''}{marker}")
        return EXIT_SUCCESS

    run(_run())


@main.command("screenshot")
@click.argument("instance_id")
@click.option("-o", "--output", type=click.Path(dir_okay=False, path_type=Path), required=True)
@click.pass_obj
def screenshot(options: CliOptions, instance_id: str, output: Path) -> NoReturn:
    """Save the current screen as a PNG file."""

    async def _run() -> int:
        async with open_instance(options, instance_id) as instance:
            png = await instance.take_screenshot()
        async with aiofiles.open(output, "wb") as f:
            await f.write(png)
        click.echo(f"Wrote {len(png)} bytes to {output}")
        return EXIT_SUCCESS

    run(_run())


if __name__ == "__main__":
    main()
