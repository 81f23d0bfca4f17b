"""azurerator command line.

Usage:
    azurerator run                          # Run the operator loop
    azurerator reconcile <namespace>/<name> # Reconcile one resource once
    azurerator hash <manifest>              # Print the synchronization hash of a manifest
    azurerator secrets <namespace>/<name>   # Show managed secrets and key IDs in use
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from pathlib import Path

import click

from .annotations import APP_LABEL_KEY, secret_labels
from .config import DEFAULT_SECRET_KEY_PREFIX, Config, ConfigurationError
from .main import build_reconciler, main, setup_logging
from .models import AzureAdApplication
from .options import spec_hash
from .reconciler import ReconcileError
from .secrets import SecretDataKeys, classify, key_ids_in_use
from .security import IdentityConfigurationError, SecretlessViolationError
from .store import FileResourceStore, ResourceLoadError, parse_manifest

DEFAULT_MANIFESTS_DIR = "/manifests"


def _load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def _split_key(key: str) -> tuple[str, str]:
    namespace, sep, name = key.partition("/")
    if not sep or not namespace or not name:
        raise click.BadParameter(f"expected <namespace>/<name>, got '{key}'", param_hint="KEY")
    return namespace, name


@click.group()
@click.version_option(version="0.1.0", prog_name="azurerator")
def cli() -> None:
    """azurerator: Azure AD applications for AzureAdApplication resources.

    \b
    Quick Start:
        azurerator hash manifests/azureadapplications/team/app.yaml
        azurerator secrets team/app --manifests-dir ./manifests
        azurerator reconcile team/app
    """
    pass


@cli.command()
@click.option(
    "--manifests-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Manifest directory (overrides MANIFESTS_DIR)",
)
def run(manifests_dir: Path | None) -> None:
    """Run the operator until SIGTERM or SIGINT."""
    if manifests_dir is not None:
        os.environ["MANIFESTS_DIR"] = str(manifests_dir)
    sys.exit(asyncio.run(main()))


@cli.command()
@click.argument("key")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def reconcile(key: str, verbose: bool) -> None:
    """Reconcile the resource KEY (<namespace>/<name>) once."""
    _split_key(key)
    setup_logging(logging.DEBUG if verbose else logging.INFO)
    config = _load_config()

    try:
        reconciler = build_reconciler(config)
    except (SecretlessViolationError, IdentityConfigurationError) as e:
        raise click.ClickException(str(e)) from e

    async def _reconcile() -> None:
        result = await reconciler.reconcile(key)
        await reconciler.publisher.drain()
        operation = result.operation.value if result.operation else "none"
        click.echo(f"{key}: operation={operation} skipped={result.skipped} finalized={result.finalized}")

    try:
        asyncio.run(_reconcile())
    except ReconcileError as e:
        raise click.ClickException(str(e)) from e


@cli.command("hash")
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def hash_command(manifest: Path) -> None:
    """Print the synchronization hash of an AzureAdApplication MANIFEST.

    A resource is resynchronized when this differs from status.synchronizationHash.
    """
    try:
        instance = parse_manifest(manifest, AzureAdApplication)
    except ResourceLoadError as e:
        raise click.ClickException(str(e)) from e

    current = spec_hash(instance)
    click.echo(current)
    recorded = instance.status.synchronization_hash
    if recorded and recorded != current:
        click.secho(f"differs from recorded hash {recorded}", fg="yellow", err=True)


@cli.command()
@click.argument("key")
@click.option(
    "--manifests-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=lambda: os.environ.get("MANIFESTS_DIR", DEFAULT_MANIFESTS_DIR),
    help="Manifest directory (default: MANIFESTS_DIR or /manifests)",
)
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
def secrets(key: str, manifests_dir: Path, as_json: bool) -> None:
    """Show managed secrets of the resource KEY and the key IDs they keep alive."""
    namespace, name = _split_key(key)
    store = FileResourceStore(Path(manifests_dir))

    async def _inspect() -> dict[str, list[str]]:
        instance = await store.get(key)
        if instance is None:
            raise click.ClickException(f"resource '{key}' not found")
        managed = classify(
            await store.list_secrets(namespace, secret_labels(instance)),
            await store.list_pods(namespace, {APP_LABEL_KEY: name}),
        )
        keys = SecretDataKeys.for_prefix(instance.secret_key_prefix(DEFAULT_SECRET_KEY_PREFIX))
        in_use = key_ids_in_use(managed.used, keys)
        return {
            "used": [s.metadata.name for s in managed.used],
            "unused": [s.metadata.name for s in managed.unused],
            "certificateKeyIdsInUse": in_use.certificate,
            "passwordKeyIdsInUse": in_use.password,
        }

    try:
        report = asyncio.run(_inspect())
    except ResourceLoadError as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(report, indent=2))
        return

    for label, value in report.items():
        click.echo(f"{label}: {', '.join(value) if value else '-'}")


if __name__ == "__main__":
    cli()
