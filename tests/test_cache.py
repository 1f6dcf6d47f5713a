import json

import pytest

from auditor.cache import ResultCache, compute_key, hash_sources, make_key
from auditor.errors import NotFoundError, ValidationError
from auditor.models import EvaluationResult, SourceHashes
from auditor.store import ArtifactStore, FileAuditStore


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _result(total=5.0):
    return EvaluationResult(total_score=total, max_possible_score=5, percentage=total * 20)


@pytest.fixture
def artifacts(tmp_path):
    return ArtifactStore(tmp_path / "results")


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def cache(tmp_path, artifacts, clock):
    return ResultCache(tmp_path / "cache", artifacts, ttl_hours=1, clock=clock)


def test_key_ignores_image_order(media):
    audio, images = media
    assert compute_key(audio, images) == compute_key(audio, list(reversed(images)))
    assert len(compute_key(audio, images)) == 64


def test_key_depends_on_every_byte(tmp_path, media):
    audio, images = media
    before = compute_key(audio, images)
    with open(images[0], "ab") as f:
        f.write(b"!")
    assert compute_key(audio, images) != before

    other_audio = tmp_path / "other.mp3"
    other_audio.write_bytes(b"RIFF-audio-bytez")
    assert compute_key(str(other_audio), images) != compute_key(audio, images)


def test_key_distinguishes_image_sets():
    assert make_key(SourceHashes(audio="a", images=["b"])) != make_key(SourceHashes(audio="a", images=[]))
    assert make_key(SourceHashes(audio="a", images=["b", "c"])) == make_key(SourceHashes(audio="a", images=["c", "b"]))


def test_put_then_get(cache, artifacts, media):
    audio, images = media
    assert cache.get(audio, images) is None
    ref = artifacts.save("auditoria.xlsx", b"xlsx")
    cache.put(audio, images, _result(4), ref, executive_id="E-1", call_type="fraude")

    hit = cache.get(audio, images)
    assert hit is not None
    assert hit.total_score == 4
    entry = cache.lookup(compute_key(audio, images))
    assert entry.artifact_reference == "auditoria.xlsx"
    assert entry.source_hashes == hash_sources(audio, images)
    assert entry.executive_id == "E-1"


def test_entry_evicted_when_artifact_missing(cache, artifacts, media):
    audio, images = media
    ref = artifacts.save("gone.xlsx", b"xlsx")
    cache.put(audio, images, _result(), ref)
    artifacts.delete(ref)

    assert cache.get(audio, images) is None
    assert cache.stats()["entries"] == 0


def test_entry_expires_after_ttl(cache, artifacts, clock, media):
    audio, images = media
    cache.put(audio, images, _result(), artifacts.save("a.xlsx", b"x"))
    clock.now += 3599
    assert cache.get(audio, images) is not None
    clock.now += 2
    assert cache.get(audio, images) is None
    assert cache.stats()["entries"] == 0


def test_cleanup_only_removes_expired(cache, artifacts, clock):
    ref = artifacts.save("a.xlsx", b"x")
    cache.store("old", SourceHashes(audio="1"), _result(), ref)
    clock.now += 1800
    cache.store("new", SourceHashes(audio="2"), _result(), ref)
    clock.now += 2000

    assert cache.cleanup() == 1
    assert cache.lookup("old") is None
    assert cache.lookup("new") is not None
    assert cache.cleanup() == 0


def test_remove_and_invalidate(cache, artifacts):
    ref = artifacts.save("a.xlsx", b"x")
    for key in ("k1", "k2", "k3"):
        cache.store(key, SourceHashes(audio=key), _result(), ref)

    assert cache.remove("k1") is True
    assert cache.remove("k1") is False
    assert cache.invalidate_all() == 2
    assert cache.stats()["entries"] == 0


def test_stats_and_index_file(cache, artifacts, clock):
    empty = cache.stats()
    assert empty["entries"] == 0
    assert empty["oldest"] is None
    assert empty["ttl_hours"] == 1

    ref = artifacts.save("a.xlsx", b"x")
    cache.store("k1", SourceHashes(audio="1"), _result(), ref)
    clock.now += 60
    cache.store("k2", SourceHashes(audio="2"), _result(), ref)

    stats = cache.stats()
    assert stats["entries"] == 2
    assert stats["oldest"] < stats["newest"]

    with open(cache.index_path, encoding="utf-8") as f:
        index = json.load(f)
    assert sorted(index) == ["k1", "k2"]
    assert index["k1"]["evaluation_result"]["total_score"] == 5
    # no temp files left behind
    assert [p.name for p in cache.cache_dir.iterdir()] == ["index.json"]


def test_corrupt_entry_is_evicted(cache):
    cache.index_path.write_text(json.dumps({"bad": {"content_key": "bad"}}), encoding="utf-8")
    assert cache.lookup("bad") is None
    assert cache.stats()["entries"] == 0


def test_artifact_store_rejects_paths(artifacts):
    with pytest.raises(ValidationError):
        artifacts.path("../secret.xlsx")
    with pytest.raises(ValidationError):
        artifacts.path("")
    assert artifacts.exists("../secret.xlsx") is False


def test_audit_store_records_and_log(tmp_path):
    store = FileAuditStore(tmp_path / "data")
    audit_id = store.create_record({"executive_id": "E-1"})
    record = store.get_record(audit_id)
    assert record["status"] == "uploaded"
    assert record["executive_id"] == "E-1"

    updated = store.update_record(audit_id, status="completed", total_score=5)
    assert updated["status"] == "completed"
    assert store.get_record(audit_id)["total_score"] == 5

    store.append_activity_log(audit_id, "created", "fraude")
    lines = store.activity_csv.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "timestamp,audit_id,action,details"
    assert lines[1].endswith(f"{audit_id},created,fraude")

    with pytest.raises(NotFoundError):
        store.get_record("missing")


def test_undecodable_index_starts_empty(cache, artifacts):
    cache.index_path.write_bytes(b"\xff\xfe\x00garbage")
    assert cache.lookup("k") is None
    assert cache.stats()["entries"] == 0

    artifacts.save("a.xlsx", b"PK")
    cache.store("k", SourceHashes(audio="a"), _result(), "a.xlsx")
    assert cache.lookup("k").artifact_reference == "a.xlsx"


def test_non_object_entries_do_not_break_maintenance(cache):
    cache.index_path.write_text(json.dumps({"junk": 5, "other": {"created_at": "yesterday"}}), encoding="utf-8")
    assert cache.stats()["entries"] == 2
    assert cache.cleanup() == 2
    assert cache.stats()["entries"] == 0
