"""Pool scanner: reads control metadata from .deb archives."""

import logging
import tarfile
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

from debian.arfile import ArError
from debian.debfile import DebError, DebFile
from debian.debian_support import Version

from aptpublish.constants import ARCH_ALL, PACKAGE_DIGEST_FIELDS
from aptpublish.errors import PoolCorruptionError
from aptpublish.models import PackageRecord, ScanWarning
from aptpublish.utils import hash_file

logger = logging.getLogger(__name__)

# fields owned by the index itself, never passed through from the archive
_RESERVED_FIELDS = {"Package", "Version", "Architecture", "Filename", "Size", *PACKAGE_DIGEST_FIELDS.values()}

_ARCHIVE_ERRORS = (DebError, ArError, tarfile.TarError, EOFError, OSError, ValueError, KeyError)


@dataclass
class ScanReport:
    """Collects per-archive problems found during a scan."""

    warnings: list[ScanWarning] = field(default_factory=list)
    scanned: int = 0

    def warn(self, path: Path, message: str) -> None:
        logger.warning(f"Skipping {path}: {message}")
        self.warnings.append(ScanWarning(path=path, message=message))


def read_package(path: Path, *, repo_root: Path) -> PackageRecord:
    """Parse a single .deb archive into a PackageRecord.

    Args:
        path: The archive to read
        repo_root: Repository root, used to compute the Filename field

    Returns:
        The parsed record

    Raises:
        ValueError: If the archive is unreadable or lacks mandatory control fields
    """
    try:
        control = DebFile(filename=str(path)).debcontrol()
        size, digests = hash_file(path, PACKAGE_DIGEST_FIELDS)
    except _ARCHIVE_ERRORS as e:
        raise ValueError(f"not a readable Debian archive ({e.__class__.__name__}: {e})") from e

    missing = [key for key in ("Package", "Version", "Architecture") if not control.get(key)]
    if missing:
        raise ValueError(f"control file lacks {', '.join(missing)}")

    version = control["Version"].strip()
    try:
        Version(version)
    except ValueError as e:
        raise ValueError(f"invalid version '{version}': {e}") from e

    return PackageRecord(
        name=control["Package"].strip(),
        version=version,
        architecture=control["Architecture"].strip(),
        filename=path.resolve().relative_to(repo_root.resolve()).as_posix(),
        size=size,
        md5=digests["md5"],
        sha1=digests["sha1"],
        sha256=digests["sha256"],
        path=path,
        control={key: value for key, value in control.items() if key not in _RESERVED_FIELDS},
    )


def scan_pool(
    pool_dir: Path,
    *,
    repo_root: Path,
    architectures: Iterable[str] | None = None,
    report: ScanReport | None = None,
) -> Iterator[PackageRecord]:
    """Stream package records for every valid archive below pool_dir.

    Unreadable archives and archives built for an unconfigured architecture are
    skipped and recorded on `report`; they never abort the scan.

    Args:
        pool_dir: Directory to walk recursively
        repo_root: Repository root (pool_dir must be inside it)
        architectures: Accepted architectures, `all` is always accepted. None accepts anything.
        report: Optional report collecting warnings

    Yields:
        One PackageRecord per valid archive, in sorted path order
    """
    report = report if report is not None else ScanReport()
    accepted = None if architectures is None else {*architectures, ARCH_ALL}

    if not pool_dir.is_dir():
        logger.info(f"Pool directory {pool_dir} does not exist yet, nothing to scan")
        return

    for path in sorted(pool_dir.rglob("*.deb")):
        if not path.is_file():
            continue
        report.scanned += 1
        try:
            record = read_package(path, repo_root=repo_root)
        except ValueError as e:
            report.warn(path, str(e))
            continue

        if accepted is not None and record.architecture not in accepted:
            report.warn(path, f"architecture '{record.architecture}' is not published by this suite")
            continue

        logger.debug(f"Scanned {record.name} {record.version} ({record.architecture}) from {path}")
        yield record


def collect_packages(records: Iterable[PackageRecord], *, multiversion: bool = True) -> list[PackageRecord]:
    """Materialize scanned records, enforcing (name, version, architecture) uniqueness.

    Args:
        records: Records from scan_pool
        multiversion: Keep every version of a package. When False only the
            highest version per (name, architecture) survives.

    Raises:
        PoolCorruptionError: If two archives carry the same triple
    """
    seen: dict[tuple[str, str, str], PackageRecord] = {}
    for record in records:
        if (existing := seen.get(record.key)) is not None:
            raise PoolCorruptionError(
                f"{record.name} {record.version} ({record.architecture}) is provided by both "
                f"{existing.filename} and {record.filename}"
            )
        seen[record.key] = record

    if multiversion:
        return list(seen.values())
    return latest_versions(seen.values())


def latest_versions(records: Iterable[PackageRecord]) -> list[PackageRecord]:
    """Keep only the highest version of each (name, architecture)."""
    latest: dict[tuple[str, str], PackageRecord] = {}
    for record in records:
        slot = (record.name, record.architecture)
        current = latest.get(slot)
        if current is None or record.debian_version > current.debian_version:
            latest[slot] = record
    return list(latest.values())
