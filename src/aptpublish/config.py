"""Repository and suite configuration."""

import logging
import tomllib
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator

from aptpublish.constants import ARCH_ALL, DIGEST_ALGORITHMS, GNUPG_HOME, KNOWN_ARCHITECTURES, REPO_ROOT
from aptpublish.errors import ConfigError

logger = logging.getLogger(__name__)

SUPPORTED_COMPRESSIONS = ("gz", "xz", "bz2")


class SuiteConfig(BaseModel):
    """Static metadata for one suite (e.g. "stable")."""

    name: str = "stable"
    codename: str | None = None
    origin: str = "Team Nifty"
    label: str = "Team Nifty Repository"
    description: str | None = "Debian repository by Team Nifty GmbH"
    # base of the Version field, a serial is appended on every content change
    version: str = "1.0"
    architectures: list[str] = Field(default_factory=lambda: ["amd64", "armhf", "arm64"])
    components: list[str] = Field(default_factory=lambda: ["main"])
    compressions: list[str] = Field(default_factory=lambda: ["gz", "xz"])
    digests: list[str] = Field(default_factory=lambda: ["MD5Sum", "SHA1", "SHA256"])
    multiversion: bool = True
    valid_days: int | None = None

    @property
    def codename_or_name(self) -> str:
        return self.codename or self.name

    @property
    def default_component(self) -> str:
        return self.components[0]

    @field_validator("architectures")
    @classmethod
    def _check_architectures(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one architecture is required")
        if ARCH_ALL in value:
            raise ValueError(f"'{ARCH_ALL}' is not a publishable architecture, it is folded into every index")
        for arch in value:
            if arch not in KNOWN_ARCHITECTURES:
                logger.warning(f"Unknown Debian architecture '{arch}', publishing it anyway")
        return list(dict.fromkeys(value))

    @field_validator("components")
    @classmethod
    def _check_components(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one component is required")
        return list(dict.fromkeys(value))

    @field_validator("compressions")
    @classmethod
    def _check_compressions(cls, value: list[str]) -> list[str]:
        unknown = [c for c in value if c not in SUPPORTED_COMPRESSIONS]
        if unknown:
            raise ValueError(f"unsupported compressions: {', '.join(unknown)}")
        return list(dict.fromkeys(value))

    @field_validator("digests")
    @classmethod
    def _check_digests(cls, value: list[str]) -> list[str]:
        unknown = [d for d in value if d not in DIGEST_ALGORITHMS]
        if unknown:
            raise ValueError(f"unsupported digests: {', '.join(unknown)}")
        value = list(dict.fromkeys(value))
        if len(value) < 2:
            raise ValueError("at least two digest algorithms are required")
        # keep apt's canonical ordering regardless of config order
        return [d for d in DIGEST_ALGORITHMS if d in value]


class RepositoryConfig(BaseModel):
    """Where the repository lives and how it is signed."""

    root: Path = REPO_ROOT
    key_identity: str = "Team Nifty"
    gnupg_home: Path | None = Field(default_factory=lambda: Path(GNUPG_HOME) if GNUPG_HOME else None)
    owner: str | None = None
    group: str | None = None
    lock_timeout: float = 0.0
    suite: SuiteConfig = Field(default_factory=SuiteConfig)

    @property
    def pool_dir(self) -> Path:
        return self.root / "pool"

    @property
    def dists_dir(self) -> Path:
        return self.root / "dists"

    @property
    def suite_dir(self) -> Path:
        return self.dists_dir / self.suite.name


def load_config(path: Path | None, *, root: Path | None = None) -> RepositoryConfig:
    """Load configuration from a TOML file.

    Args:
        path: Path to the TOML file. A missing file yields the defaults.
        root: Optional override for the repository root.

    Returns:
        The validated configuration
    """
    data: dict = {}
    if path is not None and path.is_file():
        with path.open("rb") as f:
            try:
                data = tomllib.load(f)
            except tomllib.TOMLDecodeError as e:
                raise ConfigError(f"Invalid TOML in {path}: {e}") from e
        logger.debug(f"Loaded configuration from {path}")
    elif path is not None:
        logger.debug(f"No configuration at {path}, using defaults")

    repo_data = dict(data.get("repository", {}))
    if "suite" in data:
        repo_data["suite"] = data["suite"]
    if root is not None:
        repo_data["root"] = root

    try:
        return RepositoryConfig.model_validate(repo_data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
