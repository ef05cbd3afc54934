"""Packages index rendering, one index per component and architecture."""

import bz2
import gzip
import logging
import lzma
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor

from debian.deb822 import Deb822

from aptpublish.constants import ARCH_ALL
from aptpublish.models import IndexFile, PackageRecord

logger = logging.getLogger(__name__)


def _gzip(data: bytes) -> bytes:
    # mtime=0 keeps the output byte-identical between runs
    return gzip.compress(data, compresslevel=9, mtime=0)


COMPRESSORS: dict[str, Callable[[bytes], bytes]] = {
    "gz": _gzip,
    "xz": lzma.compress,
    "bz2": bz2.compress,
}


def select_packages(records: Iterable[PackageRecord], architecture: str) -> list[PackageRecord]:
    """Return the records belonging in `architecture`'s index, in stable order.

    Architecture-independent packages appear in every architecture's index.
    """
    selected = [r for r in records if r.architecture in (architecture, ARCH_ALL)]
    return sorted(selected, key=PackageRecord.sort_key)


def package_stanza(record: PackageRecord) -> Deb822:
    """Build the Packages stanza for one record."""
    entry = Deb822()
    entry["Package"] = record.name
    entry["Version"] = record.version
    entry["Architecture"] = record.architecture
    for key, value in record.control.items():
        entry[key] = value
    entry["Filename"] = record.filename
    entry["Size"] = str(record.size)
    entry["MD5sum"] = record.md5
    entry["SHA1"] = record.sha1
    entry["SHA256"] = record.sha256
    return entry


def render_packages(records: Sequence[PackageRecord]) -> bytes:
    """Render records as a Packages document (stanzas separated by blank lines)."""
    return "\n".join(package_stanza(r).dump() for r in records).encode("utf-8")


def index_dir(component: str, architecture: str) -> str:
    return f"{component}/binary-{architecture}"


def render_index(
    records: Iterable[PackageRecord],
    *,
    component: str,
    architecture: str,
    compressions: Sequence[str] = ("gz",),
) -> list[IndexFile]:
    """Render one architecture's index plus its compressed encodings.

    Returns:
        The uncompressed Packages file followed by one file per compression
    """
    selected = select_packages(records, architecture)
    data = render_packages(selected)
    base = f"{index_dir(component, architecture)}/Packages"

    files = [IndexFile(path=base, data=data, architecture=architecture)]
    for ext in compressions:
        files.append(
            IndexFile(
                path=f"{base}.{ext}",
                data=COMPRESSORS[ext](data),
                architecture=architecture,
                compression=ext,
            )
        )
    logger.info(f"Rendered {base} with {len(selected)} package(s)")
    return files


def build_indexes(
    records: Sequence[PackageRecord],
    architectures: Sequence[str],
    *,
    component: str,
    compressions: Sequence[str] = ("gz",),
    max_workers: int | None = None,
) -> list[IndexFile]:
    """Render every architecture's index for a component.

    Architectures are rendered concurrently; the result is ordered like `architectures`.
    """
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="index") as pool:
        rendered = pool.map(
            lambda arch: render_index(records, component=component, architecture=arch, compressions=compressions),
            architectures,
        )
        return [f for files in rendered for f in files]
