"""CLI entry point for mdatp-watch."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import signal
from datetime import datetime, timezone

import click

from . import __version__
from .client import DefenderClient
from .config import (
    CredentialsConfig,
    MdatpWatchConfig,
    load_config,
    save_config,
)
from .exceptions import AlertAPIError, AlertSourceError, ConfigError, EncoderError
from .models import Alert, AlertRequestParams
from .oauth import ClientCredentialsToken
from .sinks import open_output
from .watch import AlertWatcher, WatchSettings, file_state_storage

logger = logging.getLogger("mdatp-watch")

_SHUTDOWN_SIGNALS = ("SIGHUP", "SIGINT", "SIGTERM", "SIGQUIT")


# ── Helpers ──────────────────────────────────────────────


def _load(config_path: str | None) -> MdatpWatchConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e


def _build_client(config: MdatpWatchConfig) -> DefenderClient:
    creds = config.credentials
    if not creds.is_complete:
        raise click.ClickException(
            "Missing credentials: set client_id, client_secret and tenant_id "
            "in the config file or MDATP_* environment variables "
            "(run 'mdatp-watch init' to create a config)."
        )
    tokens = ClientCredentialsToken(
        creds.client_id,
        creds.client_secret,
        creds.tenant_id,
        resource=config.api.base_url,
    )
    return DefenderClient(
        tokens,
        base_url=config.api.base_url,
        version=config.api.version,
        timeout=config.api.timeout_seconds,
    )


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _echo_alerts(alerts: list[Alert]) -> None:
    for alert in alerts:
        click.echo(json.dumps(alert.to_json_dict()))


def _echo_api_error(e: AlertAPIError) -> None:
    click.echo(json.dumps(e.to_dict()))
    raise click.exceptions.Exit(1)


async def _run_watch(
    client: DefenderClient,
    settings: WatchSettings,
    output: str,
    state_file: str,
) -> None:
    # Fail on bad intervals before opening any output
    settings.validate()
    sink = await open_output(output)
    if output:
        logger.info(f"Using output: {sink.description}")
    storage = file_state_storage(state_file) if state_file else None
    watcher = AlertWatcher(client, sink, settings, state_storage=storage)

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for name in _SHUTDOWN_SIGNALS:
        sig = getattr(signal, name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, watcher.stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            pass  # e.g. Windows or not the main thread

    try:
        await watcher.run()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await client.close()
        await sink.close()


async def _run_once(client: DefenderClient, params: AlertRequestParams | None, flt: str):
    try:
        if params is not None:
            return await client.fetch_alerts(params)
        return await client.list_alerts(flt)
    finally:
        await client.close()


# ── CLI Commands ─────────────────────────────────────────


@click.group()
@click.version_option(version=__version__, prog_name="mdatp-watch")
def main() -> None:
    """mdatp-watch — tail Microsoft Defender ATP alerts."""


@main.command()
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
@click.option(
    "--log", "-l", "log_file", default="", help="Write logs to this file (default stderr)"
)
@click.option(
    "--state",
    "-s",
    "state_file",
    default=None,
    help="Persist lastFetchTime to this file (default: config watch.state_file)",
)
@click.option(
    "--output",
    "-o",
    default=None,
    help="Records output: file://path, tcp://host:port or udp://host:port (default stdout)",
)
@click.option("--indent", "-i", is_flag=True, help="Indent JSON records")
@click.option("--debug", "-d", is_flag=True, help="Set log level to DEBUG")
@click.option("--json", "json_logging", is_flag=True, help="Log as JSON lines")
def watch(
    config_path: str | None,
    log_file: str,
    state_file: str | None,
    output: str | None,
    indent: bool,
    debug: bool,
    json_logging: bool,
) -> None:
    """Query alerts at regular intervals and stream new ones."""
    from .logging_setup import configure_logging

    config = _load(config_path)
    try:
        handler = configure_logging(debug=debug, json_format=json_logging, log_file=log_file)
    except OSError as e:
        raise click.ClickException(f"Could not use log file {log_file}: {e}") from e

    settings = config.watch_settings()
    if indent:
        settings = dataclasses.replace(settings, indent_output=True)
    output = config.watch.output if output is None else output
    state_file = config.watch.state_file if state_file is None else state_file

    try:
        client = _build_client(config)
        asyncio.run(_run_watch(client, settings, output, state_file))
    except (ConfigError, EncoderError) as e:
        raise click.ClickException(str(e)) from e
    finally:
        handler.close()


@main.command()
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
@click.option("--since", "since", type=click.DateTime(), default=None, help="Lower time bound (UTC)")
@click.option("--until", "until", type=click.DateTime(), default=None, help="Upper time bound (UTC)")
@click.option("--ago", default="", help="ISO-8601 duration, e.g. PT12H (excludes --since/--until)")
@click.option("--limit", default=0, type=click.IntRange(min=0), help="Max alerts (most recent first)")
@click.option("--machine-group", "machine_groups", multiple=True, help="Machine group (repeatable)")
@click.option("--device-tag", default="", help="Device-created machine tag")
@click.option("--cloud-tag", "cloud_tags", multiple=True, help="Cloud-created machine tag (repeatable)")
def fetch(
    config_path: str | None,
    since: datetime | None,
    until: datetime | None,
    ago: str,
    limit: int,
    machine_groups: tuple[str, ...],
    device_tag: str,
    cloud_tags: tuple[str, ...],
) -> None:
    """Fetch alerts once by time range and print one JSON line per alert."""
    params = AlertRequestParams(
        since_time_utc=_as_utc(since),
        until_time_utc=_as_utc(until),
        ago=ago,
        limit=limit,
        machine_groups=list(machine_groups),
        device_created_machine_tags=device_tag,
        cloud_created_machine_tags=list(cloud_tags),
    )
    try:
        params.to_query()
    except ValueError as e:
        raise click.BadParameter(str(e)) from e

    client = _build_client(_load(config_path))
    try:
        alerts = asyncio.run(_run_once(client, params, ""))
    except AlertAPIError as e:
        _echo_api_error(e)
    except AlertSourceError as e:
        raise click.ClickException(str(e)) from e
    else:
        _echo_alerts(alerts)


@main.command(name="list")
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
@click.option("--filter", "flt", default="", help="OData $filter expression")
def list_cmd(config_path: str | None, flt: str) -> None:
    """List alerts once, optionally filtered, one JSON line per alert."""
    client = _build_client(_load(config_path))
    try:
        alerts = asyncio.run(_run_once(client, None, flt))
    except AlertAPIError as e:
        _echo_api_error(e)
    except AlertSourceError as e:
        raise click.ClickException(str(e)) from e
    else:
        _echo_alerts(alerts)


@main.command()
@click.option("--config", "-c", "config_path", default=None, help="Config file path")
def init(config_path: str | None) -> None:
    """Create a config file with API credentials."""
    click.echo("mdatp-watch setup — Azure AD app registration details:\n")
    client_id = click.prompt("  Client ID")
    client_secret = click.prompt("  Client secret", hide_input=True)
    tenant_id = click.prompt("  Tenant ID")
    config = MdatpWatchConfig(
        credentials=CredentialsConfig(
            client_id=client_id, client_secret=client_secret, tenant_id=tenant_id
        )
    )
    path = save_config(config, config_path)
    path.chmod(0o600)
    click.echo(f"\nConfig written to {path}")


if __name__ == "__main__":
    main()
