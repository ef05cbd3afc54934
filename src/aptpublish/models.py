"""Data models for the repository publishing pipeline."""

from pathlib import Path
from typing import Annotated

from debian.debian_support import Version
from pydantic import BaseModel, ConfigDict, Field, computed_field

type OptionalStr = str | None
type ControlFields = Annotated[dict[str, str], Field(default_factory=dict)]


class PackageRecord(BaseModel):
    """One binary package archive found in the pool."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str
    architecture: str
    filename: str
    size: int
    md5: str
    sha1: str
    sha256: str
    path: Path = Field(repr=False)
    # remaining control fields in their original order (Depends, Description, ...)
    control: ControlFields

    @property
    def key(self) -> tuple[str, str, str]:
        """The (name, version, architecture) triple identifying this record."""
        return self.name, self.version, self.architecture

    @property
    def debian_version(self) -> Version:
        return Version(self.version)

    def sort_key(self) -> tuple[str, Version, str]:
        return self.name, self.debian_version, self.architecture


class ScanWarning(BaseModel):
    """An archive that was skipped while scanning the pool."""

    path: Path
    message: str


class IndexFile(BaseModel):
    """A rendered index file, relative to the suite's dists/ directory."""

    model_config = ConfigDict(frozen=True)

    path: str
    data: bytes = Field(repr=False)
    architecture: OptionalStr = None
    compression: OptionalStr = None

    @computed_field
    @property
    def size(self) -> int:
        return len(self.data)


class ChecksumEntry(BaseModel):
    """One line of a Release checksum block."""

    algorithm: str
    digest: str
    size: int
    path: str


class ReleaseManifest(BaseModel):
    """Parsed or freshly assembled Release file contents."""

    origin: str
    label: str
    suite: str
    codename: str
    version: str
    date: str
    architectures: list[str] = Field(default_factory=list)
    components: list[str] = Field(default_factory=list)
    description: OptionalStr = None
    valid_until: OptionalStr = None
    checksums: list[ChecksumEntry] = Field(default_factory=list)

    def checksum_table(self) -> dict[str, list[ChecksumEntry]]:
        """Checksum entries grouped by algorithm field name."""
        table: dict[str, list[ChecksumEntry]] = {}
        for entry in self.checksums:
            table.setdefault(entry.algorithm, []).append(entry)
        return table


class SignedRelease(BaseModel):
    """Release bytes together with both signature forms."""

    model_config = ConfigDict(frozen=True)

    release: bytes = Field(repr=False)
    detached: bytes = Field(repr=False)
    inline: bytes = Field(repr=False)
    fingerprint: str
