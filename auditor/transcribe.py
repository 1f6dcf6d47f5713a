import logging
import os
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional, Protocol

import requests

from .config import Settings
from .errors import (
    CancellationToken,
    ConfigurationError,
    FatalPipelineError,
    TransientRemoteError,
    retry_call,
)
from .models import Transcript, Utterance

logger = logging.getLogger(__name__)

API_BASE = "https://api.assemblyai.com/v2"

# Domain vocabulary boosted during recognition
WORD_BOOST = [
    "tarjeta", "crédito", "débito", "cuenta", "saldo", "movimiento", "cargo", "compra", "transacción",
    "fraude", "fraudulento", "bloqueo", "bloqueada", "bloqueamos", "reposición", "plástico", "sucursal",
    "aclaración", "titular", "tarjetahabiente", "CVV", "NIP", "PIN", "OTP", "token",
    "Falcon", "VCAS", "Vision", "VRM", "Front", "BI", "CallerID", "ARQE", "IBI", "ASHI",
    "Hotlist", "Bypass", "folio", "caso", "reversa", "contracargo",
    "autenticación", "verificación", "validación",
    "en qué puedo ayudarle", "para su seguridad", "no reconozco", "no reconoce",
]


class Transcriber(Protocol):
    def transcribe(self, audio_path: str, token: Optional[CancellationToken] = None) -> Transcript:
        ...


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> "JobState":
        try:
            return cls(str(value))
        except ValueError:
            return cls.PROCESSING


class PollBudget:
    """Wall-clock budget for waiting on a transcription job."""

    def __init__(self, max_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_seconds = max_seconds
        self.clock = clock
        self.started = clock()

    @property
    def elapsed(self) -> float:
        return self.clock() - self.started

    @property
    def remaining(self) -> float:
        return max(0.0, self.max_seconds - self.elapsed)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0


def poll_delay(poll: int, base: float, cap: float) -> float:
    """Capped linear backoff: base, 2*base, ... up to cap."""
    return min(base * max(poll, 1), cap)


class AssemblyAITranscriber:
    def __init__(
        self,
        api_key: str,
        language: str = "es",
        poll_seconds: float = 3.0,
        poll_max_seconds: float = 15.0,
        timeout_seconds: float = 720.0,
        upload_attempts: int = 3,
        upload_delay: float = 5.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not api_key:
            raise ConfigurationError("ASSEMBLYAI_API_KEY is not configured")
        self.language = language
        self.poll_seconds = poll_seconds
        self.poll_max_seconds = poll_max_seconds
        self.timeout_seconds = timeout_seconds
        self.upload_attempts = upload_attempts
        self.upload_delay = upload_delay
        self.session = session or requests.Session()
        self.session.headers.update({"authorization": api_key})
        self.sleep = sleep
        self.clock = clock

    def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            r = self.session.request(method, url, **kwargs)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as exc:
            raise TransientRemoteError(f"{method} {url} failed: {exc}") from exc

    def _upload(self, audio_path: str, token: Optional[CancellationToken]) -> str:
        with open(audio_path, "rb") as f:
            data = f.read()
        logger.info("Uploading audio %s (%.2f MB)", os.path.basename(audio_path), len(data) / 1024 / 1024)

        def send() -> str:
            body = self._request("POST", f"{API_BASE}/upload", data=data,
                                 headers={"content-type": "application/octet-stream"}, timeout=300)
            url = body.get("upload_url")
            if not url:
                raise TransientRemoteError("upload response has no upload_url")
            return url

        return retry_call(send, attempts=self.upload_attempts, delay=self.upload_delay,
                          label="audio upload", token=token, sleep=self.sleep)

    def _create_job(self, upload_url: str) -> Dict[str, Any]:
        payload = {
            "audio_url": upload_url,
            "language_code": self.language,
            "speaker_labels": True,
            "punctuate": True,
            "format_text": False,
            "disfluencies": False,
            "word_boost": WORD_BOOST,
            "boost_param": "high",
        }
        return self._request("POST", f"{API_BASE}/transcript", json=payload, timeout=60)

    def wait(
        self,
        job: Dict[str, Any],
        token: Optional[CancellationToken] = None,
        on_poll: Optional[Callable[[JobState, PollBudget], None]] = None,
    ) -> Dict[str, Any]:
        """Poll the job until it completes, fails, or the wait budget runs out."""
        job_id = job.get("id")
        budget = PollBudget(self.timeout_seconds, self.clock)
        state = JobState.parse(job.get("status"))
        body = job
        polls = 0
        while True:
            if state is JobState.COMPLETED:
                logger.info("Transcription %s completed after %.1fs", job_id, budget.elapsed)
                return body
            if state is JobState.ERROR:
                raise FatalPipelineError(f"transcription failed: {body.get('error')}")
            if budget.exhausted:
                raise FatalPipelineError(
                    f"transcription timed out after {budget.elapsed:.0f}s (budget {self.timeout_seconds:.0f}s)")
            if token is not None:
                token.raise_if_cancelled()

            polls += 1
            self.sleep(min(poll_delay(polls, self.poll_seconds, self.poll_max_seconds), budget.remaining))
            try:
                body = self._request("GET", f"{API_BASE}/transcript/{job_id}", timeout=30)
            except TransientRemoteError as exc:
                logger.warning("Poll %d for %s failed, will retry: %s", polls, job_id, exc)
                continue
            state = JobState.parse(body.get("status"))
            if on_poll is not None:
                on_poll(state, budget)
            if polls % 3 == 0:
                logger.info("Transcription %s %s: %.0fs elapsed, %.0fs remaining",
                            job_id, state.value, budget.elapsed, budget.remaining)

    def transcribe(self, audio_path: str, token: Optional[CancellationToken] = None) -> Transcript:
        upload_url = self._upload(audio_path, token)
        job = self._create_job(upload_url)
        logger.info("Transcription job %s created", job.get("id"))
        body = self.wait(job, token)
        return transcript_from_response(body)


def transcript_from_response(body: Dict[str, Any]) -> Transcript:
    utterances = [
        Utterance(
            speaker=str(u.get("speaker") or "A"),
            text=u.get("text") or "",
            start_ms=int(u.get("start") or 0),
            end_ms=int(u.get("end") or 0),
        )
        for u in body.get("utterances") or []
    ]
    text = body.get("text") or ""
    if len(text) < 100:
        logger.warning("Transcript is very short (%d chars); audio may be silent or damaged", len(text))
    return Transcript(text=text, utterances=utterances, duration_seconds=float(body.get("audio_duration") or 0))


def build_transcriber(settings: Settings) -> Transcriber:
    if settings.transcriber == "whisper":
        from .whisper import WhisperTranscriber
        return WhisperTranscriber(settings.whisper_model, settings.whisper_device,
                                  settings.whisper_compute, settings.transcript_language)
    if settings.transcriber == "assemblyai":
        return AssemblyAITranscriber(
            settings.assemblyai_api_key,
            language=settings.transcript_language,
            poll_seconds=settings.transcript_poll_seconds,
            poll_max_seconds=settings.transcript_poll_max_seconds,
            timeout_seconds=settings.transcript_timeout_seconds,
        )
    raise ConfigurationError(f"Unknown TRANSCRIBER {settings.transcriber!r}")
