"""Release signing through an injectable key provider."""

import logging
import subprocess
from pathlib import Path
from typing import Protocol

from aptpublish.errors import AmbiguousKeyError, KeyNotFoundError, SigningError
from aptpublish.models import SignedRelease

logger = logging.getLogger(__name__)

CLEARSIGN_BEGIN = b"-----BEGIN PGP SIGNED MESSAGE-----"
SIGNATURE_BEGIN = b"-----BEGIN PGP SIGNATURE-----"


class KeyProvider(Protocol):
    """Access to the secret key store used for signing."""

    def resolve(self, identity: str) -> str:
        """Return the fingerprint of the single secret key matching `identity`."""
        ...

    def sign(self, data: bytes, fingerprint: str, *, inline: bool) -> bytes:
        """Return an armored detached signature, or a clear-signed document if `inline`."""
        ...

    def export_public_key(self, fingerprint: str) -> bytes: ...


def clearsigned_text(document: bytes) -> bytes:
    """Extract the signed text embedded in a clear-signed document.

    Dash-escaped lines ("- -----") are unescaped, so for a document produced
    from `data` this returns `data` byte for byte.

    Raises:
        ValueError: If the document is not clear-signed
    """
    lines = iter(document.splitlines(keepends=True))
    for line in lines:
        if line.rstrip(b"\r\n") == CLEARSIGN_BEGIN:
            break
    else:
        raise ValueError("no clear-signed message header found")

    # armor headers ("Hash: SHA512") end at the first empty line
    for line in lines:
        if not line.rstrip(b"\r\n"):
            break

    text = []
    for line in lines:
        if line.rstrip(b"\r\n") == SIGNATURE_BEGIN:
            return b"".join(text)
        text.append(line[2:] if line.startswith(b"- ") else line)
    raise ValueError("clear-signed message has no signature block")


class GnuPGKeyProvider:
    """Key provider backed by the gpg binary and a (possibly custom) keyring."""

    def __init__(self, homedir: Path | None = None, gpg_binary: str = "gpg", timeout: float = 60.0):
        self.homedir = homedir
        self.gpg_binary = gpg_binary
        self.timeout = timeout

    def _run(self, args: list[str], data: bytes | None = None) -> subprocess.CompletedProcess:
        cmd = [self.gpg_binary, "--batch", "--no-tty"]
        if self.homedir is not None:
            cmd.extend(["--homedir", str(self.homedir)])
        cmd.extend(args)
        logger.debug(f"Running {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, input=data, capture_output=True, timeout=self.timeout)
        except (subprocess.SubprocessError, FileNotFoundError) as e:
            raise SigningError(f"Unable to run {self.gpg_binary}: {e}") from e

    def resolve(self, identity: str) -> str:
        result = self._run(["--with-colons", "--list-secret-keys", "--", identity])
        fingerprints: list[str] = []
        expect_fpr = False
        for line in result.stdout.decode("utf-8", errors="replace").splitlines():
            fields = line.split(":")
            if fields[0] == "sec":
                # validity "r" = revoked, "e" = expired, neither can sign
                expect_fpr = fields[1] not in ("r", "e")
            elif fields[0] == "fpr" and expect_fpr:
                fingerprints.append(fields[9])
                expect_fpr = False

        if not fingerprints:
            raise KeyNotFoundError(f"No usable secret key matches '{identity}'")
        if len(fingerprints) > 1:
            raise AmbiguousKeyError(identity, fingerprints)
        logger.debug(f"Resolved signing key '{identity}' to {fingerprints[0]}")
        return fingerprints[0]

    def sign(self, data: bytes, fingerprint: str, *, inline: bool) -> bytes:
        mode = ["--clearsign"] if inline else ["--armor", "--detach-sign"]
        result = self._run(["--local-user", fingerprint, "--digest-algo", "SHA512", *mode, "--output", "-"], data)
        if result.returncode != 0 or not result.stdout:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise SigningError(f"gpg failed to sign with {fingerprint}: {stderr}")
        return result.stdout

    def export_public_key(self, fingerprint: str) -> bytes:
        result = self._run(["--armor", "--export", fingerprint])
        if result.returncode != 0 or not result.stdout:
            raise SigningError(f"gpg failed to export public key {fingerprint}")
        return result.stdout


class Signer:
    """Signs Release files with the one key matching a configured identity."""

    def __init__(self, provider: KeyProvider, identity: str):
        self.provider = provider
        self.identity = identity
        self._fingerprint: str | None = None

    @property
    def fingerprint(self) -> str:
        """Fingerprint of the signing key, resolved on first use.

        Raises:
            KeyNotFoundError: If no key matches the identity
            AmbiguousKeyError: If several keys match
        """
        if self._fingerprint is None:
            self._fingerprint = self.provider.resolve(self.identity)
        return self._fingerprint

    def sign_release(self, release: bytes) -> SignedRelease:
        """Produce Release.gpg and InRelease for the given Release bytes."""
        fingerprint = self.fingerprint
        detached = self.provider.sign(release, fingerprint, inline=False)
        inline = self.provider.sign(release, fingerprint, inline=True)

        try:
            embedded = clearsigned_text(inline)
        except ValueError as e:
            raise SigningError(f"InRelease is not a clear-signed document: {e}") from e
        if embedded != release:
            raise SigningError("InRelease does not embed the exact Release contents")

        logger.info(f"Signed Release with key {fingerprint}")
        return SignedRelease(release=release, detached=detached, inline=inline, fingerprint=fingerprint)

    def export_public_key(self) -> bytes:
        return self.provider.export_public_key(self.fingerprint)
