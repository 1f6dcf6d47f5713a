from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from auditor.cache import ResultCache
from auditor.config import Settings
from auditor.evidence import VisualEvidenceExtractor
from auditor.main import Services, create_app
from auditor.pipeline import AuditPipeline
from auditor.progress import ProgressBroadcaster
from auditor.scoring import ScoringOrchestrator
from auditor.store import ArtifactStore, FileAuditStore

from conftest import FakeLLM, FakeTranscriber, scorer_reply, vision_reply


@pytest.fixture
def client(tmp_path, closure_registry):
    settings = Settings(output_dir=tmp_path / "out", results_dir=tmp_path / "out" / "results",
                        upload_dir=tmp_path / "out" / "uploads", cache_dir=tmp_path / "cache")
    settings.upload_dir.mkdir(parents=True)
    llm = FakeLLM(
        vision=lambda image: vision_reply("FALCON"),
        scoring=lambda prompt: scorer_reply([{"block": "Closure", "topic": "Correct case closure", "score": 5}]),
    )
    artifacts = ArtifactStore(settings.results_dir)
    progress = ProgressBroadcaster()
    cache = ResultCache(settings.cache_dir, artifacts)
    pipeline = AuditPipeline(
        registry=closure_registry,
        transcriber=FakeTranscriber(),
        extractor=VisualEvidenceExtractor(llm, sleep=lambda s: None),
        scorer=ScoringOrchestrator(llm, sleep=lambda s: None),
        artifacts=artifacts,
        records=FileAuditStore(settings.output_dir),
        progress=progress,
        cache=cache,
        clock=lambda: datetime(2025, 10, 14),
    )
    services = Services(settings=settings, pipeline=pipeline, artifacts=artifacts, progress=progress, cache=cache)
    with TestClient(create_app(services)) as c:
        c.services = services
        yield c


def _files():
    return [
        ("audio", ("call.mp3", b"audio-bytes", "audio/mpeg")),
        ("images", ("falcon.png", b"falcon", "image/png")),
        ("images", ("vcas.png", b"vcas", "image/png")),
    ]


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_analyze_requires_audio(client):
    r = client.post("/analyze", data={"executive_id": "E-1"},
                    files=[("images", ("a.png", b"x", "image/png"))])
    assert r.status_code == 400
    assert "audio" in r.json()["error"]


def test_analyze_requires_executive(client):
    r = client.post("/analyze", files=_files()[:1])
    assert r.status_code == 400


def test_analyze_and_download(client):
    r = client.post("/analyze", files=_files(),
                    data={"executive_id": "E-1", "executive_name": "Ana", "call_type": "closure",
                          "correlation_id": "cid-42"})
    assert r.status_code == 200
    body = r.json()
    assert body["correlation_id"] == "cid-42"
    assert body["cached"] is False
    assert body["result"]["total_score"] == 5
    assert body["costs"]["currency"] == "USD"

    download = client.get(body["artifact_url"])
    assert download.status_code == 200
    assert download.content[:2] == b"PK"
    # uploads are removed once the run ends
    assert list(client.services.settings.upload_dir.iterdir()) == []

    again = client.post("/analyze", files=_files(), data={"executive_id": "E-1", "call_type": "closure"})
    assert again.json()["cached"] is True

    stats = client.get("/cache/stats").json()
    assert stats["enabled"] is True
    assert stats["entries"] == 1
    assert client.post("/cache/cleanup").json() == {"enabled": True, "evicted": 0}


def test_missing_result_is_404(client):
    assert client.get("/results/nope.xlsx").status_code == 404


def test_cancel_unknown_audit_is_404(client):
    r = client.post("/progress/unknown/cancel")
    assert r.status_code == 404
    assert "unknown" in r.json()["error"]


def test_cache_disabled(client):
    client.services.cache = None
    assert client.get("/cache/stats").json() == {"enabled": False}
