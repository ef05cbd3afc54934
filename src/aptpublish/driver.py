"""Update driver: stages new archives and republishes the suite."""

import datetime
import logging
import os
import shutil
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from filelock import FileLock, Timeout

from aptpublish.config import RepositoryConfig
from aptpublish.constants import LOCK_FILENAME
from aptpublish.errors import (
    AptPublishError,
    ConfigError,
    FailureReason,
    LockedError,
    PoolCorruptionError,
    PublishError,
)
from aptpublish.index import build_indexes
from aptpublish.models import IndexFile, PackageRecord, ReleaseManifest, ScanWarning
from aptpublish.publisher import Publisher
from aptpublish.release import assemble_release, parse_release, render_release
from aptpublish.scanner import ScanReport, collect_packages, latest_versions, read_package, scan_pool
from aptpublish.signer import KeyProvider, Signer
from aptpublish.utils import hash_file, utcnow

logger = logging.getLogger(__name__)


class RunState(StrEnum):
    IDLE = "idle"
    PACKAGES_STAGED = "packages-staged"
    SCANNED = "scanned"
    INDEXED = "indexed"
    ASSEMBLED = "assembled"
    SIGNED = "signed"
    PUBLISHED = "published"
    FAILED = "failed"


@dataclass
class RunOutcome:
    """Result of one driver invocation."""

    success: bool = False
    state: RunState = RunState.IDLE
    reason: FailureReason | None = None
    message: str = ""
    version: str | None = None
    warnings: list[ScanWarning] = field(default_factory=list)
    staged: list[Path] = field(default_factory=list)
    pruned: list[Path] = field(default_factory=list)
    history: list[RunState] = field(default_factory=lambda: [RunState.IDLE])

    @property
    def corrupt_count(self) -> int:
        return len(self.warnings)

    def advance(self, state: RunState) -> None:
        logger.debug(f"{self.state} -> {state}")
        self.state = state
        self.history.append(state)

    def fail(self, error: AptPublishError) -> None:
        self.success = False
        self.reason = error.reason
        self.message = str(error)
        self.advance(RunState.FAILED)


class UpdateDriver:
    """Runs Scanner -> Index Builder -> Release Assembler -> Signer -> Publisher for one suite."""

    def __init__(
        self,
        config: RepositoryConfig,
        key_provider: KeyProvider,
        *,
        clock: Callable[[], datetime.datetime] = utcnow,
        max_workers: int | None = None,
    ):
        self.config = config
        self.signer = Signer(key_provider, config.key_identity)
        self.publisher = Publisher(config)
        self.clock = clock
        self.max_workers = max_workers

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.config.root.mkdir(parents=True, exist_ok=True)
        lock = FileLock(self.config.root / LOCK_FILENAME, timeout=self.config.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise LockedError(f"Another run holds {lock.lock_file}") from e
        try:
            yield
        finally:
            lock.release()

    def init_layout(self) -> None:
        """Create the empty pool and dists directories."""
        for component in self.config.suite.components:
            (self.config.pool_dir / component).mkdir(parents=True, exist_ok=True)
        self.config.dists_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initialized repository layout under {self.config.root}")

    def run(
        self,
        new_archives: Iterable[Path] = (),
        *,
        suite: str | None = None,
        component: str | None = None,
        prune_keep: int | None = None,
    ) -> RunOutcome:
        """Stage `new_archives` into the pool and republish the suite.

        Args:
            new_archives: Archives to add to the pool; they are moved, not copied
            suite: Suite to publish; must name the configured suite when given
            component: Target component, defaults to the suite's first component
            prune_keep: When set, index only the newest `prune_keep` versions of
                every package and delete the rest from the pool once published

        Returns:
            The outcome; on failure the published tree is unchanged
        """
        outcome = RunOutcome()
        try:
            with self._locked():
                component = component or self.config.suite.default_component
                self._run(outcome, list(new_archives), suite, component, prune_keep)
        except AptPublishError as e:
            logger.error(f"Run failed in state {outcome.state}: {e}")
            outcome.fail(e)
        except OSError as e:
            logger.exception(f"Unexpected I/O error in state {outcome.state}: {e}")
            outcome.fail(PublishError(str(e)))

        if outcome.warnings:
            skipped = ", ".join(w.path.name for w in outcome.warnings)
            logger.warning(f"{len(outcome.warnings)} archive(s) were skipped: {skipped}")
        return outcome

    def prune(self, keep_versions: int) -> RunOutcome:
        """Remove superseded archives from the pool and republish."""
        if keep_versions < 1:
            raise ValueError("keep_versions must be at least 1")
        return self.run(prune_keep=keep_versions)

    def export_public_key(self) -> Path:
        with self._locked():
            return self.publisher.write_public_key(self.signer.export_public_key())

    def _run(
        self,
        outcome: RunOutcome,
        new_archives: list[Path],
        suite_name: str | None,
        component: str,
        prune_keep: int | None,
    ) -> None:
        suite = self.config.suite
        if suite_name is not None and suite_name != suite.name:
            raise ConfigError(f"Suite '{suite_name}' is not configured, this repository publishes {suite.name}")
        if component not in suite.components:
            raise ConfigError(f"Component '{component}' is not part of suite {suite.name}")

        # fail on a missing or ambiguous key before touching anything
        fingerprint = self.signer.fingerprint
        logger.debug(f"Signing key for {suite.name}: {fingerprint}")

        report = ScanReport()
        outcome.warnings = report.warnings
        outcome.staged = self.stage_archives(new_archives, component, report)
        outcome.advance(RunState.PACKAGES_STAGED)

        records = self.scan(report)
        superseded: list[PackageRecord] = []
        if prune_keep is not None:
            superseded = self.superseded_records(records, prune_keep)
            dropped = {r.path for r in superseded}
            records = {comp: [r for r in recs if r.path not in dropped] for comp, recs in records.items()}
        if not suite.multiversion:
            records = {comp: latest_versions(recs) for comp, recs in records.items()}
        outcome.advance(RunState.SCANNED)

        files: list[IndexFile] = []
        for comp in suite.components:
            files.extend(
                build_indexes(
                    records[comp],
                    suite.architectures,
                    component=comp,
                    compressions=suite.compressions,
                    max_workers=self.max_workers,
                )
            )
        outcome.advance(RunState.INDEXED)

        manifest = assemble_release(
            suite, files, previous=self.published_release(), now=self.clock(), max_workers=self.max_workers
        )
        release = render_release(manifest)
        outcome.version = manifest.version
        outcome.advance(RunState.ASSEMBLED)

        signed = self.signer.sign_release(release)
        outcome.advance(RunState.SIGNED)

        self.publisher.publish(files, manifest, signed)
        outcome.advance(RunState.PUBLISHED)

        # only safe once no published index references the superseded archives
        outcome.pruned = self.remove_archives(superseded)

        outcome.success = True
        outcome.message = f"Published {suite.name} version {manifest.version}"
        outcome.advance(RunState.IDLE)
        logger.info(outcome.message)

    def stage_archives(self, archives: list[Path], component: str, report: ScanReport) -> list[Path]:
        """Move new archives into pool/<component>/.

        Unreadable archives are reported and left where they are. An archive
        whose name already exists in the pool with different contents is
        refused, the pool is append-only.
        """
        pool = self.config.pool_dir / component
        staged = []
        for archive in archives:
            try:
                read_package(archive, repo_root=archive.parent)
            except ValueError as e:
                report.warn(archive, str(e))
                continue

            dest = pool / archive.name
            if dest.exists():
                _, incoming = hash_file(archive, ["sha256"])
                _, existing = hash_file(dest, ["sha256"])
                if incoming != existing:
                    raise PoolCorruptionError(f"{dest} already exists with different contents")
                logger.info(f"{archive.name} is already in the pool")
                archive.unlink()
                continue

            try:
                pool.mkdir(parents=True, exist_ok=True)
                tmp = dest.with_name(f".{dest.name}.tmp")
                shutil.copyfile(archive, tmp)
                os.replace(tmp, dest)
                archive.unlink()
            except OSError as e:
                raise PublishError(f"Failed to move {archive} into the pool: {e}") from e
            logger.info(f"Added {archive.name} to {pool}")
            staged.append(dest)
        return staged

    def scan(self, report: ScanReport) -> dict[str, list[PackageRecord]]:
        """Scan every component's pool directory, keeping every version found."""
        suite = self.config.suite
        return {
            comp: collect_packages(
                scan_pool(
                    self.config.pool_dir / comp,
                    repo_root=self.config.root,
                    architectures=suite.architectures,
                    report=report,
                ),
                multiversion=True,
            )
            for comp in suite.components
        }

    def superseded_records(self, records: dict[str, list[PackageRecord]], keep: int) -> list[PackageRecord]:
        """Records older than the newest `keep` versions per (name, architecture)."""
        superseded = []
        for comp_records in records.values():
            groups: dict[tuple[str, str], list[PackageRecord]] = {}
            for record in comp_records:
                groups.setdefault((record.name, record.architecture), []).append(record)
            for group in groups.values():
                group.sort(key=lambda r: r.debian_version, reverse=True)
                superseded.extend(group[keep:])
        return superseded

    def remove_archives(self, records: list[PackageRecord]) -> list[Path]:
        """Delete pruned archives from the pool after the index without them is live.

        A file that cannot be removed is logged and left for the next prune;
        the published tree is already consistent at this point.
        """
        removed = []
        for record in records:
            try:
                record.path.unlink()
            except OSError as e:
                logger.warning(f"Could not remove pruned archive {record.path}: {e}")
                continue
            logger.info(f"Pruned {record.filename}")
            removed.append(record.path)
        return removed

    def published_release(self) -> ReleaseManifest | None:
        """The currently published Release, or None if there is none or it is unreadable."""
        path = self.config.suite_dir / "Release"
        if not path.is_file():
            return None
        try:
            return parse_release(path.read_text(encoding="utf-8"))
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring unreadable published Release {path}: {e}")
            return None
