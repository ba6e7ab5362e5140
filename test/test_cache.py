import io
import logging
import tarfile
import pytest
from pathlib import Path
import sys
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT / 'src') not in sys.path:
    sys.path.insert(0, str(ROOT / 'src'))

from gatecheck import CacheError, CacheSpec, DirectoryCacheStore, InMemoryCacheStore  # noqa: E402
from gatecheck.cache import CacheReport, pack_tree, persist_caches, restore_caches, unpack_tree  # noqa: E402

log = logging.getLogger("gatecheck.test")


def _make_tree(root: Path) -> None:
    (root / "registry" / "index").mkdir(parents=True)
    (root / "registry" / "index" / "crate.json").write_text('{"name": "serde"}')
    (root / "config.toml").write_text("[net]\n")


def test_pack_then_unpack_restores_tree(tmp_path: Path):
    src = tmp_path / "src"
    _make_tree(src)
    dest = tmp_path / "dest"
    (dest / "stale").mkdir(parents=True)
    unpack_tree(pack_tree(src), dest)
    assert (dest / "registry" / "index" / "crate.json").read_text() == '{"name": "serde"}'
    assert (dest / "config.toml").exists()
    assert not (dest / "stale").exists()


def test_pack_missing_directory_is_empty_archive(tmp_path: Path):
    dest = tmp_path / "dest"
    unpack_tree(pack_tree(tmp_path / "missing"), dest)
    assert dest.is_dir()
    assert list(dest.iterdir()) == []


def test_unpack_corrupt_blob_raises(tmp_path: Path):
    with pytest.raises(CacheError):
        unpack_tree(b"not a tarball", tmp_path / "dest")


def test_directory_store_roundtrip_and_miss(tmp_path: Path):
    store = DirectoryCacheStore(tmp_path / "store")
    assert store.get("cargo-cache-test-rs") is None
    store.put("cargo-cache-test-rs", b"one")
    store.put("cargo-cache-test-rs", b"two")
    assert store.get("cargo-cache-test-rs") == b"two"
    assert [p.name for p in (tmp_path / "store").iterdir() if p.name.startswith(".put-")] == []


def test_directory_store_put_failure_raises_cache_error(tmp_path: Path):
    blocker = tmp_path / "store"
    blocker.write_text("a file, not a directory")
    with pytest.raises(CacheError):
        DirectoryCacheStore(blocker).put("k", b"x")


@pytest.mark.parametrize("store_factory", [InMemoryCacheStore, lambda: DirectoryCacheStore(Path("."))])
def test_keys_are_isolated(store_factory, tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    store = store_factory()
    store.put("ubuntu-x86-64-target-cache-stable", b"target")
    store.put("cargo-cache-test-rs", b"cargo-1")
    store.put("cargo-cache-test-rs", b"cargo-2")
    assert store.get("ubuntu-x86-64-target-cache-stable") == b"target"


def test_restore_miss_creates_empty_directory(tmp_path: Path):
    spec = CacheSpec(key="k", path=tmp_path / "cargo")
    report = CacheReport()
    restore_caches([spec], InMemoryCacheStore(), report, log)
    assert spec.path.is_dir()
    assert report.misses == ["k"]
    assert report.restored == []


def test_restore_corrupt_entry_is_treated_as_miss(tmp_path: Path):
    store = InMemoryCacheStore()
    store.put("k", b"garbage")
    spec = CacheSpec(key="k", path=tmp_path / "cargo")
    report = CacheReport()
    restore_caches([spec], store, report, log)
    assert report.misses == ["k"]
    assert spec.path.is_dir()


def test_persist_then_restore(tmp_path: Path):
    store = InMemoryCacheStore()
    spec = CacheSpec(key="k", path=tmp_path / "cargo")
    _make_tree(spec.path)
    report = CacheReport()
    persist_caches([spec], store, report, log)
    assert report.saved == ["k"]

    other = CacheSpec(key="k", path=tmp_path / "elsewhere")
    report = CacheReport()
    restore_caches([other], store, report, log)
    assert report.restored == ["k"]
    assert (other.path / "config.toml").read_text() == "[net]\n"


class _BrokenStore(InMemoryCacheStore):
    def put(self, key, blob):
        raise CacheError("backend unavailable")


def test_persist_failure_is_recorded_not_raised(tmp_path: Path):
    specs = [CacheSpec(key="a", path=tmp_path / "a"), CacheSpec(key="b", path=tmp_path / "b")]
    report = CacheReport()
    persist_caches(specs, _BrokenStore(), report, log)
    assert report.persist_failures == {"a": "backend unavailable", "b": "backend unavailable"}
    assert report.saved == []


def test_unpack_rejected_member_is_named(tmp_path: Path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo("bin/rustc")
        info.type = tarfile.SYMTYPE
        info.linkname = "/opt/rust/bin/rustc"
        tar.addfile(info)
    dest = tmp_path / "dest"
    with pytest.raises(CacheError) as e:
        unpack_tree(buf.getvalue(), dest)
    assert "'bin/rustc'" in str(e.value)
    assert [p for p in tmp_path.iterdir() if p.name.startswith(".dest-restore-")] == []
