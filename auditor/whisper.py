# Local transcription with faster-whisper
import logging
from typing import List, Optional

import ctranslate2
from faster_whisper import WhisperModel

from .errors import CancellationToken
from .models import Transcript, Utterance

logger = logging.getLogger(__name__)


def pick_compute_type(device: str, requested: str = "") -> str:
    """
    Choose a supported compute_type for the device.
    Preference order: int8_float16 -> int8 -> float16 -> float32.
    """
    supported = set(ctranslate2.get_supported_compute_types(device or "cpu"))
    if requested and requested in supported:
        return requested
    for ct in ("int8_float16", "int8", "float16", "float32"):
        if ct in supported:
            return ct
    return "float32"


class WhisperTranscriber:
    def __init__(self, model_name: str = "small", device: str = "cpu", compute: str = "",
                 language: Optional[str] = "es") -> None:
        self.model_name = model_name
        self.device = device
        self.compute_type = pick_compute_type(device, compute)
        self.language = language
        self._model: Optional[WhisperModel] = None

    def _get_model(self) -> WhisperModel:
        if self._model is None:
            logger.info("Loading whisper model %s on %s (%s)", self.model_name, self.device, self.compute_type)
            self._model = WhisperModel(self.model_name, device=self.device, compute_type=self.compute_type)
        return self._model

    def transcribe(self, audio_path: str, token: Optional[CancellationToken] = None) -> Transcript:
        segments, info = self._get_model().transcribe(
            audio_path,
            language=self.language,
            vad_filter=True,
            # deterministic decoding
            beam_size=1,
            best_of=1,
            temperature=0.0,
            compression_ratio_threshold=None,
        )
        utterances: List[Utterance] = []
        for s in segments:
            if token is not None:
                token.raise_if_cancelled()
            text = (s.text or "").strip()
            if not text:
                continue
            utterances.append(Utterance(speaker="A", text=text,
                                        start_ms=int(s.start * 1000), end_ms=int(s.end * 1000)))
        return Transcript(
            text=" ".join(u.text for u in utterances),
            utterances=utterances,
            duration_seconds=float(getattr(info, "duration", 0.0) or 0.0),
        )
