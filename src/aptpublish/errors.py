"""Exception types raised by the publishing pipeline."""

from enum import StrEnum


class FailureReason(StrEnum):
    """Machine-readable reason attached to a failed run."""

    NO_KEY = "no-key"
    AMBIGUOUS_KEY = "ambiguous-key"
    SIGNING_FAILED = "signing-failed"
    PUBLISH_IO = "publish-io"
    POOL_CORRUPT = "pool-corrupt"
    INTEGRITY = "integrity"
    LOCKED = "locked"
    CONFIG = "config"


class AptPublishError(Exception):
    """Base class for fatal pipeline errors."""

    reason: FailureReason = FailureReason.PUBLISH_IO


class ConfigError(AptPublishError):
    reason = FailureReason.CONFIG


class KeyNotFoundError(AptPublishError):
    reason = FailureReason.NO_KEY


class AmbiguousKeyError(AptPublishError):
    reason = FailureReason.AMBIGUOUS_KEY

    def __init__(self, identity: str, candidates: list[str]):
        self.identity = identity
        self.candidates = candidates
        super().__init__(
            f"{len(candidates)} secret keys match '{identity}', refusing to pick one: {', '.join(candidates)}"
        )


class SigningError(AptPublishError):
    reason = FailureReason.SIGNING_FAILED


class PublishError(AptPublishError):
    reason = FailureReason.PUBLISH_IO


class PoolCorruptionError(AptPublishError):
    reason = FailureReason.POOL_CORRUPT


class IntegrityError(AptPublishError):
    reason = FailureReason.INTEGRITY


class LockedError(AptPublishError):
    reason = FailureReason.LOCKED
