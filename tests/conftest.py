import datetime
import hashlib
import io
import tarfile
from pathlib import Path

import pytest

from aptpublish.config import RepositoryConfig, SuiteConfig
from aptpublish.driver import UpdateDriver
from aptpublish.errors import AmbiguousKeyError, KeyNotFoundError

FIXED_NOW = datetime.datetime(2026, 1, 2, 3, 4, 5, tzinfo=datetime.UTC)


def _tar_gz(members: dict[str, bytes]) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mtime = 0
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def _ar_member(name: str, data: bytes) -> bytes:
    header = f"{name:<16}{0:<12}{0:<6}{0:<6}{100644:<8}{len(data):<10}`\n".encode("ascii")
    return header + data + (b"\n" if len(data) % 2 else b"")


def build_deb(
    directory: Path,
    name: str,
    version: str,
    architecture: str,
    *,
    payload: bytes = b"",
    extra: dict[str, str] | None = None,
) -> Path:
    """Write a minimal but valid .deb archive and return its path."""
    fields = {
        "Package": name,
        "Version": version,
        "Architecture": architecture,
        "Maintainer": "Team Nifty <packages@team-nifty.com>",
        "Section": "utils",
        "Priority": "optional",
        **(extra or {}),
        "Description": f"{name} test package\n built for the test-suite",
    }
    control = "".join(f"{key}: {value}\n" for key, value in fields.items()).encode("utf-8")
    data = _tar_gz({f"./usr/share/doc/{name}/payload": payload or name.encode()})

    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}_{version.split(':')[-1]}_{architecture}.deb"
    path.write_bytes(
        b"!<arch>\n"
        + _ar_member("debian-binary", b"2.0\n")
        + _ar_member("control.tar.gz", _tar_gz({"./control": control}))
        + _ar_member("data.tar.gz", data)
    )
    return path


class FakeKeyProvider:
    """Deterministic in-memory stand-in for a gpg keyring."""

    def __init__(self, keys: list[tuple[str, str]] | None = None):
        # (user id, fingerprint)
        self.keys = keys if keys is not None else [("Team Nifty Repository <packages@team-nifty.com>", "F" * 40)]
        self.signed: list[bytes] = []

    def resolve(self, identity: str) -> str:
        matches = [fpr for uid, fpr in self.keys if identity.lower() in uid.lower()]
        if not matches:
            raise KeyNotFoundError(f"No usable secret key matches '{identity}'")
        if len(matches) > 1:
            raise AmbiguousKeyError(identity, matches)
        return matches[0]

    @staticmethod
    def signature(data: bytes, fingerprint: str) -> bytes:
        digest = hashlib.sha256(fingerprint.encode() + data).hexdigest()
        return f"-----BEGIN PGP SIGNATURE-----\n\n{digest}\n-----END PGP SIGNATURE-----\n".encode()

    def sign(self, data: bytes, fingerprint: str, *, inline: bool) -> bytes:
        self.signed.append(data)
        block = self.signature(data, fingerprint)
        if not inline:
            return block
        escaped = b"".join(b"- " + line if line.startswith(b"-") else line for line in data.splitlines(keepends=True))
        return b"-----BEGIN PGP SIGNED MESSAGE-----\nHash: SHA512\n\n" + escaped + block

    def export_public_key(self, fingerprint: str) -> bytes:
        return f"-----BEGIN PGP PUBLIC KEY BLOCK-----\n\n{fingerprint}\n-----END PGP PUBLIC KEY BLOCK-----\n".encode()


def snapshot(directory: Path) -> dict[str, bytes]:
    """All files below directory, keyed by relative path."""
    if not directory.exists():
        return {}
    return {p.relative_to(directory).as_posix(): p.read_bytes() for p in sorted(directory.rglob("*")) if p.is_file()}


@pytest.fixture
def config(tmp_path: Path) -> RepositoryConfig:
    return RepositoryConfig(
        root=tmp_path / "repo",
        suite=SuiteConfig(architectures=["amd64", "arm64"], compressions=["gz"]),
    )


@pytest.fixture
def pool(config: RepositoryConfig) -> Path:
    path = config.pool_dir / "main"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def incoming(tmp_path: Path) -> Path:
    path = tmp_path / "incoming"
    path.mkdir()
    return path


@pytest.fixture
def keys() -> FakeKeyProvider:
    return FakeKeyProvider()


@pytest.fixture
def driver(config: RepositoryConfig, keys: FakeKeyProvider) -> UpdateDriver:
    return UpdateDriver(config, keys, clock=lambda: FIXED_NOW)


@pytest.fixture
def make_deb():
    return build_deb


@pytest.fixture
def make_keys():
    return FakeKeyProvider


@pytest.fixture
def tree_snapshot():
    return snapshot
