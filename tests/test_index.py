import gzip
import lzma

from debian import deb822

from aptpublish.index import build_indexes, render_index, render_packages, select_packages
from aptpublish.scanner import collect_packages, scan_pool


def _records(config, pool, make_deb):
    make_deb(pool, "pkg-b", "2.0", "all")
    make_deb(pool, "pkg-a", "1.10", "amd64")
    make_deb(pool, "pkg-a", "1.9", "amd64")
    make_deb(pool, "pkg-c", "0.1", "arm64")
    return collect_packages(scan_pool(pool, repo_root=config.root))


def test_all_packages_fan_into_every_architecture(config, pool, make_deb):
    records = _records(config, pool, make_deb)

    amd64 = select_packages(records, "amd64")
    arm64 = select_packages(records, "arm64")

    assert [(r.name, r.version) for r in amd64] == [("pkg-a", "1.9"), ("pkg-a", "1.10"), ("pkg-b", "2.0")]
    assert [r.name for r in arm64] == ["pkg-b", "pkg-c"]


def test_stanzas_carry_index_fields(config, pool, make_deb):
    records = _records(config, pool, make_deb)

    stanzas = list(deb822.Packages.iter_paragraphs(render_packages(select_packages(records, "arm64")).decode()))

    assert [s["Package"] for s in stanzas] == ["pkg-b", "pkg-c"]
    pkg_c = stanzas[1]
    record = next(r for r in records if r.name == "pkg-c")
    assert pkg_c["Filename"] == "pool/main/pkg-c_0.1_arm64.deb"
    assert int(pkg_c["Size"]) == record.size
    assert pkg_c["SHA256"] == record.sha256
    assert pkg_c["MD5sum"] == record.md5
    assert pkg_c["Description"].startswith("pkg-c test package")


def test_compressed_variants_encode_identical_bytes(config, pool, make_deb):
    records = _records(config, pool, make_deb)

    files = render_index(records, component="main", architecture="amd64", compressions=["gz", "xz"])

    assert [f.path for f in files] == [
        "main/binary-amd64/Packages",
        "main/binary-amd64/Packages.gz",
        "main/binary-amd64/Packages.xz",
    ]
    plain = files[0].data
    assert gzip.decompress(files[1].data) == plain
    assert lzma.decompress(files[2].data) == plain


def test_rendering_is_deterministic(config, pool, make_deb):
    records = _records(config, pool, make_deb)

    first = build_indexes(records, ["amd64", "arm64"], component="main", compressions=["gz", "bz2"])
    second = build_indexes(list(reversed(records)), ["amd64", "arm64"], component="main", compressions=["gz", "bz2"])

    assert [(f.path, f.data) for f in first] == [(f.path, f.data) for f in second]
    assert [f.architecture for f in first] == ["amd64"] * 3 + ["arm64"] * 3


def test_empty_architecture_still_gets_an_index(config, pool, make_deb):
    make_deb(pool, "pkg-a", "1.0", "amd64")
    records = collect_packages(scan_pool(pool, repo_root=config.root))

    files = render_index(records, component="main", architecture="arm64", compressions=["gz"])

    assert files[0].data == b""
    assert gzip.decompress(files[1].data) == b""
