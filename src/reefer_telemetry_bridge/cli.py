"""Click CLI for the reefer telemetry bridge.

Entry point registered in ``pyproject.toml`` as ``reefer-telemetry-bridge``.

Subcommands::

    reefer-telemetry-bridge                    # run ingestion + subscriber server
    reefer-telemetry-bridge secrets init       # create encrypted secrets file
    reefer-telemetry-bridge secrets set KEY    # store a secret
    reefer-telemetry-bridge secrets delete KEY # remove a secret
    reefer-telemetry-bridge secrets list       # list secret names
    reefer-telemetry-bridge secrets rekey      # re-encrypt with a new key
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import asdict
from pathlib import Path
from typing import Optional

import click

from reefer_telemetry_bridge import __version__
from reefer_telemetry_bridge.config import AppConfig, load_config
from reefer_telemetry_bridge.connection import ConnectionManager, ConnectionState
from reefer_telemetry_bridge.engine import TelemetryEngine
from reefer_telemetry_bridge.fanout import FanoutHub
from reefer_telemetry_bridge.logsetup import collect_secret_values, setup_logging
from reefer_telemetry_bridge.presence import AssetRegistry
from reefer_telemetry_bridge.secrets import SecretStore
from reefer_telemetry_bridge.server import SubscriberServer
from reefer_telemetry_bridge.storage import build_storage
from reefer_telemetry_bridge.visibility import VisibilityFilter

logger = logging.getLogger("reefer_telemetry_bridge")

DEFAULT_CONFIG = "/etc/reefer-telemetry/config.json"
DEFAULT_SECRETS_FILE = "/etc/reefer-telemetry/.secrets.enc"


def _secrets_file() -> str:
    return os.environ.get("REEFER_SECRETS_FILE", DEFAULT_SECRETS_FILE)


# ── main CLI group ──────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.option("-o", "--output", "output_mode", type=click.Choice(["stdout", "file", "none"]),
              default=None, help="Storage mode (default: from config).")
@click.option("-d", "--output-dir", default=None, help="Override storage directory.")
@click.option("-c", "--config", "config_path", default=None, help="Config file path.")
@click.option("--log-level", default=None,
              type=click.Choice(["debug", "info", "warning", "error"]),
              help="Log verbosity.")
@click.option("--dry-run", is_flag=True, help="Accept ~5 events then exit.")
@click.option("--validate-config", "validate_only", is_flag=True,
              help="Validate config and exit.")
@click.option("--orbcomm-auth", default=None, help="Override the upstream Authorization header.")
@click.option("--orbcomm-url", default=None, help="Override the upstream WebSocket URL.")
@click.version_option(__version__)
@click.pass_context
def main(
    ctx: click.Context,
    output_mode: Optional[str],
    output_dir: Optional[str],
    config_path: Optional[str],
    log_level: Optional[str],
    dry_run: bool,
    validate_only: bool,
    orbcomm_auth: Optional[str],
    orbcomm_url: Optional[str],
) -> None:
    """Reefer telemetry bridge: ORBCOMM feed → presence tracking → live subscribers."""
    if ctx.invoked_subcommand is not None:
        return

    cfg_path = config_path or os.environ.get("REEFER_CONFIG", DEFAULT_CONFIG)

    overrides: dict[str, str] = {}
    if orbcomm_auth:
        overrides["ORBCOMM_AUTH"] = orbcomm_auth
    if orbcomm_url:
        overrides["ORBCOMM_WS_URL"] = orbcomm_url

    secrets_dict: dict[str, str] = {}
    key_file = os.environ.get("REEFER_KEY_FILE")
    if key_file and Path(key_file).exists() and Path(_secrets_file()).exists():
        secrets_dict = SecretStore(_secrets_file(), key_file).load()

    try:
        cfg = load_config(cfg_path, overrides=overrides, secrets=secrets_dict)
    except Exception as exc:
        click.echo(f"Config error: {exc}", err=True)
        raise SystemExit(1) from exc

    effective_level = log_level or os.environ.get("REEFER_LOG_LEVEL") or cfg.logging.level
    effective_output = output_mode or os.environ.get("REEFER_OUTPUT") or cfg.output.mode
    if output_dir:
        cfg.output.file.output_dir = output_dir
    elif os.environ.get("REEFER_OUTPUT_DIR"):
        cfg.output.file.output_dir = os.environ["REEFER_OUTPUT_DIR"]

    secret_values = collect_secret_values(asdict(cfg), cfg.logging.redact_patterns)
    secret_values.extend(secrets_dict.values())
    setup_logging(effective_level, secret_values, cfg.logging.file, cfg.logging.format)

    if validate_only:
        click.echo("Configuration is valid.", err=True)
        raise SystemExit(0)

    logger.info(
        "Starting reefer-telemetry-bridge %s (instance=%s, output=%s, clients=%d)",
        __version__,
        cfg.instance_id,
        effective_output,
        len(cfg.clients),
    )

    failed = asyncio.run(_run_pipeline(cfg, effective_output, dry_run))
    if failed:
        raise SystemExit(1)


# ── async pipeline ──────────────────────────────────────────────────


async def _run_pipeline(cfg: AppConfig, output_mode: str, dry_run: bool) -> bool:
    """Connect → normalize → track → fan out, until shutdown.

    Returns ``True`` when the upstream connection ended in ``FAILED``.
    """
    loop = asyncio.get_running_loop()

    visibility = VisibilityFilter(cfg.clients)
    if cfg.ingest.client_id and visibility.client(cfg.ingest.client_id) is None:
        logger.warning("Ingest client %s is not configured; nothing will be accepted",
                       cfg.ingest.client_id)
    storage = build_storage(cfg.output, cfg.instance_id, output_mode)
    engine = TelemetryEngine(
        registry=AssetRegistry.from_config(cfg.presence),
        hub=FanoutHub(),
        visibility=visibility,
        storage=storage,
        ingest_client_id=cfg.ingest.client_id,
    )
    conn = ConnectionManager(cfg.upstream)
    engine.attach(conn)
    server = SubscriberServer(engine, cfg.server) if cfg.server.enabled else None

    def _handle_signal() -> None:
        logger.info("Received shutdown signal")
        conn.disconnect()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _handle_signal)
        except NotImplementedError:
            pass  # Windows

    if dry_run:
        accepted = 0

        def _count(_event: object) -> None:
            nonlocal accepted
            accepted += 1
            if accepted >= 5:
                logger.info("Dry run complete; accepted %d events", accepted)
                conn.disconnect()

        engine.hub.subscribe(lambda _asset_id: True, _count)

    try:
        if server is not None:
            await server.start()
        conn.connect()
        await conn.wait_closed()
    finally:
        failed = conn.state is ConnectionState.FAILED
        conn.disconnect()
        if server is not None:
            await server.stop()
        await engine.drain()
        if storage is not None:
            await storage.close()
        logger.info("Pipeline shut down (%s)", engine.health())
    return failed


# ── secrets subcommand group ────────────────────────────────────────


@main.group()
def secrets() -> None:
    """Manage the encrypted secrets file."""


@secrets.command("init")
@click.option("--output", default=None, help="Path for the encrypted file.")
@click.option("--key-file", required=True, help="Path for the master key.")
def secrets_init(output: Optional[str], key_file: str) -> None:
    """Create an empty encrypted secrets file and key."""
    path = output or _secrets_file()
    SecretStore(path, key_file).init()
    click.echo(f"Initialized: {path} (key: {key_file})")


@secrets.command("set")
@click.argument("key")
@click.option("--value", prompt=True, hide_input=True, help="Secret value.")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_set(key: str, value: str, key_file: str) -> None:
    """Store a secret in the encrypted file."""
    SecretStore(_secrets_file(), key_file).set(key, value)
    click.echo(f"Set: {key}")


@secrets.command("delete")
@click.argument("key")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_delete(key: str, key_file: str) -> None:
    """Remove a secret from the encrypted file."""
    if not SecretStore(_secrets_file(), key_file).delete(key):
        click.echo(f"Not found: {key}", err=True)
        raise SystemExit(1)
    click.echo(f"Deleted: {key}")


@secrets.command("list")
@click.option("--key-file", required=True, help="Path to the master key.")
def secrets_list(key_file: str) -> None:
    """List stored secret names (values are never shown)."""
    for name in SecretStore(_secrets_file(), key_file).names():
        click.echo(name)


@secrets.command("rekey")
@click.option("--key-file", required=True, help="Current master key path.")
@click.option("--new-key-file", required=True, help="New master key path.")
def secrets_rekey(key_file: str, new_key_file: str) -> None:
    """Re-encrypt the secrets store with a new key."""
    SecretStore(_secrets_file(), key_file).rekey(new_key_file)
    click.echo(f"Re-keyed with: {new_key_file}")
