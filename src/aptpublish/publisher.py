"""Atomic publication of a suite's dists/ tree."""

import ctypes
import ctypes.util
import errno
import logging
import os
import shutil
import tempfile
from collections.abc import Sequence
from pathlib import Path

from aptpublish.config import RepositoryConfig
from aptpublish.constants import DIGEST_ALGORITHMS, DIR_MODE, FILE_MODE, PUBLIC_KEY_FILENAME
from aptpublish.errors import IntegrityError, PublishError
from aptpublish.models import IndexFile, ReleaseManifest, SignedRelease
from aptpublish.utils import hash_file

logger = logging.getLogger(__name__)

_AT_FDCWD = -100
_RENAME_EXCHANGE = 1 << 1


def _renameat2_exchange(a: Path, b: Path) -> bool:
    """Atomically swap two paths with renameat2(2). Returns False when unsupported."""
    libc_name = ctypes.util.find_library("c")
    if libc_name is None:
        return False
    libc = ctypes.CDLL(libc_name, use_errno=True)
    renameat2 = getattr(libc, "renameat2", None)
    if renameat2 is None:
        return False
    renameat2.argtypes = [ctypes.c_int, ctypes.c_char_p, ctypes.c_int, ctypes.c_char_p, ctypes.c_uint]
    renameat2.restype = ctypes.c_int

    if renameat2(_AT_FDCWD, os.fsencode(a), _AT_FDCWD, os.fsencode(b), _RENAME_EXCHANGE) == 0:
        return True
    err = ctypes.get_errno()
    if err in (errno.ENOSYS, errno.EINVAL, errno.ENOTSUP):
        return False
    raise OSError(err, os.strerror(err), str(a), None, str(b))


def exchange_paths(staging: Path, live: Path) -> None:
    """Swap `staging` into `live`; afterwards `staging` holds the previous tree."""
    if _renameat2_exchange(staging, live):
        return
    # two renames: readers may briefly see no directory, never a mixed one
    parked = staging.with_name(staging.name + ".old")
    os.rename(live, parked)
    try:
        os.rename(staging, live)
    except OSError:
        os.rename(parked, live)
        raise
    os.rename(parked, staging)


def verify_tree(suite_dir: Path, manifest: ReleaseManifest) -> list[str]:
    """Check every checksum-table entry against the files below suite_dir.

    Returns:
        A list of human-readable problems, empty when the tree matches
    """
    problems = []
    algorithms = {DIGEST_ALGORITHMS[e.algorithm] for e in manifest.checksums}
    actual: dict[str, tuple[int, dict[str, str]] | None] = {}
    for entry in manifest.checksums:
        if entry.path not in actual:
            path = suite_dir / entry.path
            actual[entry.path] = hash_file(path, algorithms) if path.is_file() else None
            if actual[entry.path] is None:
                problems.append(f"{entry.path}: missing")
        if (found := actual[entry.path]) is None:
            continue
        size, digests = found
        if size != entry.size:
            problems.append(f"{entry.path}: size {size} != {entry.size}")
        elif digests[DIGEST_ALGORITHMS[entry.algorithm]] != entry.digest:
            problems.append(f"{entry.path}: {entry.algorithm} mismatch")
    return problems


class Publisher:
    """Writes a suite's indexes, Release and signatures without exposing partial state."""

    def __init__(self, config: RepositoryConfig):
        self.config = config

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def apply_permissions(self, top: Path) -> None:
        """World-readable files and traversable directories, optionally chowned."""
        owner, group = self.config.owner, self.config.group
        for path in [top, *top.rglob("*")]:
            path.chmod(DIR_MODE if path.is_dir() else FILE_MODE)
            if owner or group:
                shutil.chown(path, user=owner, group=group)

    def stage(self, staging: Path, files: Sequence[IndexFile], signed: SignedRelease) -> None:
        for f in files:
            self._write(staging / f.path, f.data)
        self._write(staging / "Release", signed.release)
        self._write(staging / "Release.gpg", signed.detached)
        self._write(staging / "InRelease", signed.inline)

    def publish(self, files: Sequence[IndexFile], manifest: ReleaseManifest, signed: SignedRelease) -> Path:
        """Publish a complete suite generation.

        The new tree is built next to the live one and swapped in only once
        every file is written and verified against the manifest.

        Returns:
            The live suite directory

        Raises:
            IntegrityError: If a staged file does not match the manifest
            PublishError: On any filesystem failure; the live tree is left as it was
        """
        live = self.config.suite_dir
        staging: Path | None = None
        try:
            live.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{live.name}.staging-", dir=live.parent))
            self.stage(staging, files, signed)

            if problems := verify_tree(staging, manifest):
                raise IntegrityError("Staged tree does not match its Release: " + "; ".join(problems))

            self.apply_permissions(staging)

            if live.exists():
                # staging now holds the previous generation and is removed below
                exchange_paths(staging, live)
            else:
                os.rename(staging, live)
                staging = None
        except OSError as e:
            raise PublishError(f"Failed to publish {live}: {e}") from e
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        logger.info(f"Published {len(files)} index file(s) to {live}")
        return live

    def write_public_key(self, data: bytes) -> Path:
        """Place the armored public key at the repository root for clients to fetch."""
        target = self.config.root / PUBLIC_KEY_FILENAME
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{target.name}.tmp")
            tmp.write_bytes(data)
            tmp.chmod(FILE_MODE)
            if self.config.owner or self.config.group:
                shutil.chown(tmp, user=self.config.owner, group=self.config.group)
            os.replace(tmp, target)
        except OSError as e:
            raise PublishError(f"Failed to write public key to {target}: {e}") from e
        return target
