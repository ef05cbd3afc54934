import subprocess

import pytest

from aptpublish.errors import AmbiguousKeyError, KeyNotFoundError, SigningError
from aptpublish.signer import GnuPGKeyProvider, Signer, clearsigned_text

RELEASE = b"Origin: Team Nifty\nSuite: stable\nSHA256:\n abc 12 main/binary-amd64/Packages\n"


def test_clearsigned_text_unescapes_dash_lines():
    document = (
        b"-----BEGIN PGP SIGNED MESSAGE-----\n"
        b"Hash: SHA512\n"
        b"\n"
        b"Origin: x\n"
        b"- -----not a marker\n"
        b"-----BEGIN PGP SIGNATURE-----\n"
        b"\n"
        b"sig\n"
        b"-----END PGP SIGNATURE-----\n"
    )

    assert clearsigned_text(document) == b"Origin: x\n-----not a marker\n"


@pytest.mark.parametrize(
    "document",
    [b"Origin: x\n", b"-----BEGIN PGP SIGNED MESSAGE-----\nHash: SHA512\n\nOrigin: x\n"],
)
def test_clearsigned_text_rejects_malformed(document):
    with pytest.raises(ValueError):
        clearsigned_text(document)


def test_sign_release_embeds_exact_bytes(keys):
    signed = Signer(keys, "Team Nifty").sign_release(RELEASE)

    assert signed.release == RELEASE
    assert clearsigned_text(signed.inline) == RELEASE
    assert signed.detached == keys.signature(RELEASE, signed.fingerprint)
    assert signed.fingerprint == "F" * 40


def test_resigning_identical_bytes_verifies(keys):
    signer = Signer(keys, "Team Nifty")
    first, second = signer.sign_release(RELEASE), signer.sign_release(RELEASE)

    assert clearsigned_text(first.inline) == clearsigned_text(second.inline) == RELEASE


def test_missing_and_ambiguous_keys_fail(make_keys):
    with pytest.raises(KeyNotFoundError):
        Signer(make_keys([]), "Team Nifty").sign_release(RELEASE)

    ambiguous = make_keys([("Team Nifty A", "A" * 40), ("Team Nifty B", "B" * 40)])
    with pytest.raises(AmbiguousKeyError) as exc_info:
        Signer(ambiguous, "Team Nifty").sign_release(RELEASE)
    assert exc_info.value.candidates == ["A" * 40, "B" * 40]
    assert ambiguous.signed == []


def test_mangled_inline_signature_is_rejected(keys, monkeypatch):
    original = keys.sign

    def mangled(data, fingerprint, *, inline):
        return original(data + b"Extra: field\n", fingerprint, inline=inline)

    monkeypatch.setattr(keys, "sign", mangled)
    with pytest.raises(SigningError, match="exact Release"):
        Signer(keys, "Team Nifty").sign_release(RELEASE)


COLONS = """\
sec:u:4096:1:1111111111111111:1700000000:1763000000::u:::scESC:::+:::23::0:
fpr:::::::::AAAA1111111111111111111111111111AAAA1111:
grp:::::::::0000:
uid:u::::1700000000::HASH::Team Nifty Repository <packages@team-nifty.com>::::::::::0:
ssb:u:4096:1:2222222222222222:1700000000::::::e:::+:::23:
fpr:::::::::BBBB2222222222222222222222222222BBBB2222:
"""

REVOKED = """\
sec:r:4096:1:3333333333333333:1600000000:::u:::sc:::+:::23::0:
fpr:::::::::CCCC3333333333333333333333333333CCCC3333:
uid:r::::1600000000::HASH::Team Nifty Old <old@team-nifty.com>::::::::::0:
"""


def _fake_gpg(monkeypatch, stdout: str, returncode: int = 0):
    calls = []

    def run(cmd, input=None, capture_output=False, timeout=None):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, returncode, stdout.encode(), b"")

    monkeypatch.setattr(subprocess, "run", run)
    return calls


def test_gnupg_resolve_picks_primary_fingerprint(monkeypatch, tmp_path):
    calls = _fake_gpg(monkeypatch, COLONS + REVOKED)

    fingerprint = GnuPGKeyProvider(homedir=tmp_path).resolve("Team Nifty")

    assert fingerprint == "AAAA1111111111111111111111111111AAAA1111"
    assert calls[0][:5] == ["gpg", "--batch", "--no-tty", "--homedir", str(tmp_path)]
    assert calls[0][-2:] == ["--", "Team Nifty"]


def test_gnupg_resolve_without_keys(monkeypatch):
    _fake_gpg(monkeypatch, REVOKED)
    with pytest.raises(KeyNotFoundError):
        GnuPGKeyProvider().resolve("Team Nifty")

    _fake_gpg(monkeypatch, "", returncode=2)
    with pytest.raises(KeyNotFoundError):
        GnuPGKeyProvider().resolve("Team Nifty")


def test_gnupg_resolve_ambiguous(monkeypatch):
    second = COLONS.replace("AAAA1111", "DDDD4444")
    _fake_gpg(monkeypatch, COLONS + second)

    with pytest.raises(AmbiguousKeyError):
        GnuPGKeyProvider().resolve("Team Nifty")


def test_gnupg_sign_failure_raises(monkeypatch):
    _fake_gpg(monkeypatch, "", returncode=2)

    with pytest.raises(SigningError):
        GnuPGKeyProvider().sign(RELEASE, "A" * 40, inline=True)


def test_gnupg_missing_binary(monkeypatch):
    def run(*args, **kwargs):
        raise FileNotFoundError("gpg")

    monkeypatch.setattr(subprocess, "run", run)
    with pytest.raises(SigningError, match="Unable to run"):
        GnuPGKeyProvider().resolve("Team Nifty")
