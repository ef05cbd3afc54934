"""Command line entry point."""

import logging
from dataclasses import dataclass
from pathlib import Path

import typer

from aptpublish.config import RepositoryConfig, load_config
from aptpublish.constants import CONFIG_PATH
from aptpublish.driver import RunOutcome, UpdateDriver
from aptpublish.errors import AptPublishError, ConfigError, FailureReason
from aptpublish.publisher import verify_tree
from aptpublish.signer import GnuPGKeyProvider, KeyProvider
from aptpublish.utils import try_parse_date, utcnow

logger = logging.getLogger(__name__)

cli = typer.Typer(help="Build, sign and publish an APT repository.", no_args_is_help=True)

EXIT_CODES = {
    FailureReason.CONFIG: 3,
    FailureReason.NO_KEY: 4,
    FailureReason.AMBIGUOUS_KEY: 5,
    FailureReason.SIGNING_FAILED: 6,
    FailureReason.PUBLISH_IO: 7,
    FailureReason.POOL_CORRUPT: 8,
    FailureReason.INTEGRITY: 9,
    FailureReason.LOCKED: 10,
}


@dataclass
class CliContext:
    config: RepositoryConfig
    key_provider: KeyProvider

    def driver(self) -> UpdateDriver:
        return UpdateDriver(self.config, self.key_provider)


def _report(outcome: RunOutcome) -> None:
    for warning in outcome.warnings:
        typer.echo(f"warning: skipped {warning.path}: {warning.message}", err=True)
    if outcome.success:
        typer.echo(outcome.message)
        return
    typer.echo(f"error [{outcome.reason}]: {outcome.message}", err=True)
    raise typer.Exit(code=EXIT_CODES.get(outcome.reason, 1))


def _fail(error: AptPublishError) -> None:
    typer.echo(f"error [{error.reason}]: {error}", err=True)
    raise typer.Exit(code=EXIT_CODES.get(error.reason, 1))


@cli.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(CONFIG_PATH, "--config", "-c", help="Path to the TOML configuration file"),
    root: Path | None = typer.Option(None, "--root", "-r", help="Repository root, overrides the config"),
    gnupg_home: Path | None = typer.Option(None, "--gnupg-home", help="GnuPG home directory holding the key"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Build, sign and publish an APT repository."""
    if verbose:
        logging.getLogger("aptpublish").setLevel(logging.DEBUG)
    try:
        repo_config = load_config(config, root=root)
    except ConfigError as e:
        _fail(e)
    if gnupg_home is not None:
        repo_config.gnupg_home = gnupg_home
    ctx.obj = CliContext(config=repo_config, key_provider=GnuPGKeyProvider(homedir=repo_config.gnupg_home))


@cli.command()
def init(ctx: typer.Context):
    """Create the empty pool/ and dists/ layout."""
    ctx.obj.driver().init_layout()
    typer.echo(f"Repository initialized at {ctx.obj.config.root}")


@cli.command()
def update(
    ctx: typer.Context,
    debs: list[Path] = typer.Argument(None, help="New .deb archives to move into the pool"),
    suite: str | None = typer.Option(None, help="Suite to publish (default: the configured suite)"),
    component: str | None = typer.Option(None, help="Target component (default: first configured)"),
):
    """Add new archives to the pool and republish the suite."""
    debs = debs or []
    missing = [p for p in debs if not p.is_file()]
    if missing:
        typer.echo(f"error: no such file: {', '.join(map(str, missing))}", err=True)
        raise typer.Exit(code=2)
    if not debs:
        logger.info("No new packages given, republishing the current pool")
    _report(ctx.obj.driver().run(debs, suite=suite, component=component))


@cli.command()
def publish(ctx: typer.Context):
    """Re-index and re-sign the current pool."""
    _report(ctx.obj.driver().run())


@cli.command()
def prune(
    ctx: typer.Context,
    keep: int = typer.Option(..., "--keep", min=1, help="Versions to keep per package and architecture"),
):
    """Delete superseded archives from the pool and republish."""
    outcome = ctx.obj.driver().prune(keep)
    for path in outcome.pruned:
        typer.echo(f"pruned {path}")
    _report(outcome)


@cli.command("export-key")
def export_key(ctx: typer.Context):
    """Write the public signing key to the repository root."""
    try:
        path = ctx.obj.driver().export_public_key()
    except AptPublishError as e:
        _fail(e)
    typer.echo(f"Public key written to {path}")


@cli.command()
def verify(ctx: typer.Context):
    """Check the published files against the Release checksum table and its expiry."""
    driver = ctx.obj.driver()
    manifest = driver.published_release()
    if manifest is None:
        typer.echo(f"error: no readable Release in {ctx.obj.config.suite_dir}", err=True)
        raise typer.Exit(code=EXIT_CODES[FailureReason.INTEGRITY])

    problems = verify_tree(ctx.obj.config.suite_dir, manifest)
    if manifest.valid_until:
        expires = try_parse_date(manifest.valid_until)
        if expires is None:
            problems.append(f"Release: unreadable Valid-Until '{manifest.valid_until}'")
        elif expires < utcnow():
            problems.append(f"Release: expired at {manifest.valid_until}")
    for problem in problems:
        typer.echo(problem, err=True)
    if problems:
        raise typer.Exit(code=EXIT_CODES[FailureReason.INTEGRITY])
    typer.echo(f"{ctx.obj.config.suite.name} {manifest.version}: {len(manifest.checksums)} checksum(s) OK")


if __name__ == "__main__":
    cli()
