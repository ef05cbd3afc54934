from os import getenv
from pathlib import Path

# repository root served by the web server, overridable per invocation
REPO_ROOT = Path(getenv("APTPUBLISH_ROOT", "/var/www/debian-repo"))

# default config file location
CONFIG_PATH = Path(getenv("APTPUBLISH_CONFIG", "aptpublish.toml"))

# gpg home directory holding the signing keyring, None means gpg's own default
GNUPG_HOME = getenv("APTPUBLISH_GNUPGHOME") or None

LOCK_FILENAME = ".aptpublish.lock"
PUBLIC_KEY_FILENAME = "repository-key.gpg"

# architecture-independent marker used by dpkg
ARCH_ALL = "all"

# fmt: off
KNOWN_ARCHITECTURES = [
    "i386", "amd64",
    "armel", "armhf", "arm64",
    "riscv64",
    "mipsel", "mips64el",
    "loong64",
    "ppc64el",
    "s390x",
]
# fmt: on

# Release field name -> hashlib algorithm, in the order apt lists them
DIGEST_ALGORITHMS = {
    "MD5Sum": "md5",
    "SHA1": "sha1",
    "SHA256": "sha256",
    "SHA512": "sha512",
}

# Packages stanza field name for each digest of the archive itself
PACKAGE_DIGEST_FIELDS = {
    "md5": "MD5sum",
    "sha1": "SHA1",
    "sha256": "SHA256",
}

# size column width in the Release checksum table
CHECKSUM_SIZE_WIDTH = 16

FILE_MODE = 0o644
DIR_MODE = 0o755
