"""Release manifest assembly and parsing."""

import datetime
import logging
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor

from debian import deb822

from aptpublish.config import SuiteConfig
from aptpublish.constants import CHECKSUM_SIZE_WIDTH, DIGEST_ALGORITHMS
from aptpublish.models import ChecksumEntry, IndexFile, ReleaseManifest
from aptpublish.utils import format_release_date, hash_bytes, utcnow

logger = logging.getLogger(__name__)


def checksum_files(
    files: Sequence[IndexFile],
    digests: Sequence[str],
    *,
    max_workers: int | None = None,
) -> list[ChecksumEntry]:
    """Compute the checksum table for a set of index files.

    Each file is hashed with every algorithm in `digests` (Release field names,
    e.g. "SHA256"). Files are hashed concurrently.

    Returns:
        Entries grouped by algorithm (in `digests` order), sorted by path within each group
    """
    algorithms = [DIGEST_ALGORITHMS[name] for name in digests]

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="digest") as pool:
        hashed = list(pool.map(lambda f: hash_bytes(f.data, algorithms), files))

    entries = []
    for name, algorithm in zip(digests, algorithms):
        rows = [
            ChecksumEntry(algorithm=name, digest=result[algorithm], size=f.size, path=f.path)
            for f, result in zip(files, hashed)
        ]
        entries.extend(sorted(rows, key=lambda e: e.path))
    return entries


def _same_table(a: Sequence[ChecksumEntry], b: Sequence[ChecksumEntry]) -> bool:
    return [e.model_dump() for e in a] == [e.model_dump() for e in b]


def next_version(base: str, checksums: Sequence[ChecksumEntry], previous: ReleaseManifest | None) -> str:
    """Work out the Version field for a new Release.

    The version is "<base>.<serial>". The serial of the currently published
    Release is kept when the checksum table is unchanged and bumped otherwise,
    so the marker only moves when the repository content does.
    """
    serial = 0
    if previous is not None:
        prefix = f"{base}."
        suffix = previous.version[len(prefix) :] if previous.version.startswith(prefix) else ""
        if suffix.isdigit():
            serial = int(suffix)
            if _same_table(checksums, previous.checksums):
                return previous.version
    return f"{base}.{serial + 1}"


def assemble_release(
    suite: SuiteConfig,
    files: Sequence[IndexFile],
    *,
    previous: ReleaseManifest | None = None,
    now: datetime.datetime | None = None,
    max_workers: int | None = None,
) -> ReleaseManifest:
    """Build the Release manifest describing `files`.

    Args:
        suite: Suite metadata
        files: Every index representation published under the suite, compressed and uncompressed
        previous: The Release currently published, if any
        now: Generation time, defaults to the current time

    Returns:
        The manifest, ready to render
    """
    now = now or utcnow()
    checksums = checksum_files(files, suite.digests, max_workers=max_workers)
    version = next_version(suite.version, checksums, previous)
    if previous is not None and version != previous.version:
        logger.info(f"Suite {suite.name} content changed, version {previous.version} -> {version}")

    return ReleaseManifest(
        origin=suite.origin,
        label=suite.label,
        suite=suite.name,
        codename=suite.codename_or_name,
        version=version,
        date=format_release_date(now),
        valid_until=(
            format_release_date(now + datetime.timedelta(days=suite.valid_days)) if suite.valid_days else None
        ),
        architectures=list(suite.architectures),
        components=list(suite.components),
        description=suite.description,
        checksums=checksums,
    )


def render_release(manifest: ReleaseManifest) -> bytes:
    """Render a manifest as Release file bytes."""
    entry = deb822.Deb822()
    entry["Origin"] = manifest.origin
    entry["Label"] = manifest.label
    entry["Suite"] = manifest.suite
    entry["Codename"] = manifest.codename
    entry["Version"] = manifest.version
    entry["Architectures"] = " ".join(manifest.architectures)
    entry["Components"] = " ".join(manifest.components)
    if manifest.description:
        entry["Description"] = manifest.description
    entry["Date"] = manifest.date
    if manifest.valid_until:
        entry["Valid-Until"] = manifest.valid_until

    for name, rows in manifest.checksum_table().items():
        lines = [f" {e.digest} {e.size: >{CHECKSUM_SIZE_WIDTH}} {e.path}" for e in rows]
        entry[name] = "\n" + "\n".join(lines)

    return entry.dump().encode("utf-8")


def parse_release(text: str) -> ReleaseManifest:
    """Parse Release file text back into a manifest.

    Raises:
        ValueError: If the text is not a Release file
    """
    release_data = deb822.Release(text)
    if "Suite" not in release_data and "Codename" not in release_data:
        raise ValueError("not a Release file: neither Suite nor Codename present")

    checksums = []
    for name in DIGEST_ALGORITHMS:
        for row in release_data.get(name, []):
            checksums.append(
                ChecksumEntry(algorithm=name, digest=row[name.lower()], size=int(row["size"]), path=row["name"])
            )

    return ReleaseManifest(
        origin=release_data.get("Origin", ""),
        label=release_data.get("Label", ""),
        suite=release_data.get("Suite", ""),
        codename=release_data.get("Codename", ""),
        version=release_data.get("Version", ""),
        date=release_data.get("Date", ""),
        valid_until=release_data.get("Valid-Until"),
        architectures=release_data.get("Architectures", "").split(),
        components=release_data.get("Components", "").split(),
        description=release_data.get("Description"),
        checksums=checksums,
    )
