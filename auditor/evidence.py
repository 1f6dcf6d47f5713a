import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import CancellationToken, MalformedResponseError, TransientRemoteError, retry_call
from .llm import ImagePayload, LLMBackend, parse_json_object
from .models import TokenUsage, Utterance, VerbalEvidenceLine, VisualEvidenceRecord
from .prompts import VISION_PROMPT, VISION_SEED
from .utils import as_bool

logger = logging.getLogger(__name__)

VisualEvidence = Dict[str, List[VisualEvidenceRecord]]

VERBAL_KEYWORDS: Tuple[str, ...] = (
    "bloque", "bloqu", "tarjeta",
    "folio", "caso", "número",
    "transacción", "compra", "cargo",
    "confirmo", "confirmó", "reconoce", "reconozco",
    "fraude", "fraudulent",
    "excel", "archivo", "documento",
    "autenticación", "autentica", "verifico", "valido",
    "sistema", "vcas", "falcon", "vision",
    "reposición", "pasos a seguir", "plástico",
    "sucursal", "días", "nueva",
    "callerid", "caller id", "identificador de llamada",
    "otp", "código", "clave", "pin", "token",
    "verificar", "validar", "corroborar",
    "identidad", "identificación",
    "preguntas de seguridad",
    "último cargo", "últimos movimientos", "saldo",
    "código de seguridad",
)
MIN_UTTERANCE_CHARS = 15
DEFAULT_CONFIDENCE = 0.9


def _confidence(value: Any) -> float:
    try:
        return float(value) if value is not None else DEFAULT_CONFIDENCE
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE


def _record_from_reply(source_id: str, parsed: dict) -> VisualEvidenceRecord:
    system = parsed.get("system")
    data = parsed.get("data")
    if not system or not isinstance(data, dict):
        raise MalformedResponseError("vision response is missing 'system' or 'data'")
    flags = parsed.get("critical_fields") or {}
    findings = parsed.get("findings") or []
    return VisualEvidenceRecord(
        source_id=source_id,
        detected_system=str(system).strip().upper(),
        fields=data,
        # flags the model wrote in a form we cannot read count as not set
        critical_flags={str(k): as_bool(v) is True for k, v in flags.items()} if isinstance(flags, dict) else {},
        findings=[str(f) for f in findings] if isinstance(findings, list) else [],
        confidence=_confidence(parsed.get("confidence")),
    )


class VisualEvidenceExtractor:
    """
    Turns each screenshot into a system-tagged record.

    Images are analysed one after another. A reply that fails to parse is
    retried with linear backoff; after the last attempt the image is skipped
    and the batch continues.
    """

    def __init__(
        self,
        llm: LLMBackend,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep

    def extract(
        self,
        image_paths: Sequence[str],
        token: Optional[CancellationToken] = None,
        on_image: Optional[Callable[[int, int], None]] = None,
    ) -> Tuple[VisualEvidence, TokenUsage]:
        evidence: VisualEvidence = {}
        usage = TokenUsage()
        total = len(image_paths)

        for i, path in enumerate(image_paths, start=1):
            if token is not None:
                token.raise_if_cancelled()
            source_id = os.path.basename(path)
            try:
                payload = ImagePayload.from_path(path)
            except OSError as exc:
                logger.warning("Skipping image %d/%d (%s): cannot read file: %s", i, total, source_id, exc)
                continue

            attempts = {"n": 0}

            def analyse() -> VisualEvidenceRecord:
                nonlocal usage
                attempts["n"] += 1
                reply = self.llm.generate(VISION_PROMPT, image=payload, seed=VISION_SEED, max_tokens=4000)
                usage = usage + reply.usage
                return _record_from_reply(source_id, parse_json_object(reply.text))

            try:
                record = retry_call(
                    analyse,
                    attempts=self.max_attempts,
                    delay=self.retry_delay,
                    label=f"image {i}/{total} ({source_id})",
                    token=token,
                    sleep=self.sleep,
                )
            except TransientRemoteError as exc:
                logger.warning("Skipping image %d/%d (%s) after %d attempts: %s",
                               i, total, source_id, attempts["n"], exc)
                continue
            finally:
                if on_image is not None:
                    on_image(i, total)

            evidence.setdefault(record.detected_system, []).append(record)
            logger.info("Image %d/%d analysed (attempt %d): system=%s fields=%d",
                        i, total, attempts["n"], record.detected_system, len(record.fields))

        logger.info("Visual evidence: %d systems, %d records, tokens in=%d out=%d",
                    len(evidence), sum(len(v) for v in evidence.values()), usage.input, usage.output)
        return evidence, usage


def extract_verbal_evidence(
    utterances: Sequence[Utterance],
    keywords: Sequence[str] = VERBAL_KEYWORDS,
    min_chars: int = MIN_UTTERANCE_CHARS,
) -> List[VerbalEvidenceLine]:
    """Keep utterances that mention a keyword and are longer than `min_chars`, in order."""
    lines: List[VerbalEvidenceLine] = []
    for utt in utterances:
        lower = utt.text.lower()
        if len(utt.text) > min_chars and any(kw in lower for kw in keywords):
            lines.append(VerbalEvidenceLine(timestamp_ms=utt.start_ms, speaker_tag=utt.speaker, text=utt.text))
    return lines
