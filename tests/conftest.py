import json
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from auditor.criteria import CatalogRegistry
from auditor.llm import LLMReply
from auditor.models import Block, CriteriaCatalog, TokenUsage, Topic, Transcript, Utterance

Reply = Union[str, Exception]


class FakeLLM:
    """Counting stand-in for a remote model. Vision calls carry an image, scoring calls do not."""

    def __init__(self, vision: Optional[Callable[[Any], Reply]] = None,
                 scoring: Optional[Callable[[str], Reply]] = None,
                 usage: TokenUsage = TokenUsage(input=100, output=20)) -> None:
        self.vision = vision
        self.scoring = scoring
        self.usage = usage
        self.calls: List[Dict[str, Any]] = []

    def count(self, kind: str) -> int:
        return sum(1 for c in self.calls if c["kind"] == kind)

    def generate(self, prompt, *, system=None, image=None, json_mode=False, seed=None, max_tokens=4000):
        kind = "vision" if image is not None else "scoring"
        self.calls.append({"kind": kind, "prompt": prompt, "system": system, "seed": seed, "json_mode": json_mode})
        handler = self.vision if kind == "vision" else self.scoring
        if handler is None:
            raise AssertionError(f"unexpected {kind} call")
        reply = handler(image if kind == "vision" else prompt)
        if isinstance(reply, Exception):
            raise reply
        return LLMReply(text=reply, usage=self.usage)


class FakeTranscriber:
    def __init__(self, transcript: Optional[Transcript] = None, error: Optional[Exception] = None) -> None:
        self.transcript = transcript or Transcript(
            text="hola",
            utterances=[
                Utterance(speaker="A", text="Buenas tardes, le confirmo que su tarjeta quedó bloqueada",
                          start_ms=5000, end_ms=9000),
                Utterance(speaker="B", text="Gracias", start_ms=9500, end_ms=10000),
            ],
            duration_seconds=120.0,
        )
        self.error = error
        self.calls = 0

    def transcribe(self, audio_path, token=None):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.transcript


class RecordingProgress:
    def __init__(self) -> None:
        self.events: List[Any] = []

    def publish(self, correlation_id, stage, percentage, message=""):
        self.events.append((correlation_id, getattr(stage, "value", stage), percentage, message))


def scorer_reply(evaluations: List[Dict[str, Any]], **extra: Any) -> str:
    body = {"evaluations": evaluations, "observations": "Llamada correcta", "recommendations": [], "key_moments": []}
    body.update(extra)
    return json.dumps(body, ensure_ascii=False)


def vision_reply(system: str, **data: Any) -> str:
    return json.dumps({
        "system": system,
        "confidence": 0.95,
        "data": data or {"case_number": "6788724"},
        "critical_fields": {"has_case_number": True},
        "findings": ["case_number: 6788724 visible"],
    })


@pytest.fixture
def closure_catalog() -> CriteriaCatalog:
    return CriteriaCatalog(
        name="closure",
        version="1",
        layout="horizontal",
        blocks=[Block(name="Closure", topics=[Topic(id="1.1", label="Correct case closure", max_points=5)])],
    )


@pytest.fixture
def closure_registry(closure_catalog) -> CatalogRegistry:
    return CatalogRegistry({"closure": closure_catalog}, keywords=(("closure", "closure"),), default="closure")


@pytest.fixture
def media(tmp_path):
    """An audio file and two screenshots on disk."""
    audio = tmp_path / "call.mp3"
    audio.write_bytes(b"RIFF-audio-bytes")
    img1 = tmp_path / "falcon.png"
    img1.write_bytes(b"falcon-screen")
    img2 = tmp_path / "vcas.jpg"
    img2.write_bytes(b"vcas-screen")
    return str(audio), [str(img1), str(img2)]
