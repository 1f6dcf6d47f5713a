import logging
import time
from typing import Any, Callable, Dict, List, Optional, Sequence

from .errors import CancellationToken, retry_call
from .evidence import VisualEvidence
from .llm import LLMBackend, parse_json_object
from .matching import TopicRef, entries_from_response, reconcile
from .models import (
    AuditContext,
    CriteriaCatalog,
    EvaluationResult,
    KeyMoment,
    ScoredTopic,
    TokenUsage,
    UnevaluatedTopic,
    VerbalEvidenceLine,
)
from .prompts import SCORING_SEED, SCORING_SYSTEM_PROMPT, build_scoring_prompt
from .utils import as_bool, format_timestamp

logger = logging.getLogger(__name__)

# An applicable topic the scorer never answered still counts toward the maximum,
# so a silent scorer lowers the percentage instead of inflating it.
UNEVALUATED_COUNTS_AGAINST_DENOMINATOR = True

UNEVALUATED_NOTE = "El evaluador no devolvió una calificación para este tópico"
BLOCK_HINT_NOTE = "El evaluador respondió para el bloque {block}, pero no fue posible identificar el tópico"


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip().replace(",", "."))
        except ValueError:
            return 0.0
    return 0.0


def _clamp(score: float, upper: float) -> float:
    return max(0.0, min(score, upper))


def build_result(
    catalog: CriteriaCatalog,
    response: Dict[str, Any],
    usage: Optional[TokenUsage] = None,
) -> EvaluationResult:
    """
    Normalize a parsed scorer response against `catalog`.

    Totals reported by the scorer are ignored; everything is recomputed from
    the reconciled topics.
    """
    applicable = catalog.applicable_topics()
    refs = [TopicRef(t.id, b.name, t.label) for b, t in applicable]
    rec = reconcile(refs, entries_from_response(response.get("evaluations")))

    scored: List[ScoredTopic] = []
    unevaluated: List[UnevaluatedTopic] = []
    for block, topic in applicable:
        hit = rec.matches.get(topic.id)
        if hit is None:
            hinted = topic.id in rec.block_hints
            unevaluated.append(UnevaluatedTopic(
                topic_id=topic.id,
                block_name=block.name,
                topic_label=topic.label,
                max_score=topic.weight,
                note=BLOCK_HINT_NOTE.format(block=block.name) if hinted else UNEVALUATED_NOTE,
                block_hint=hinted,
            ))
            continue

        entry, strategy = hit
        raw = entry.raw
        justification = str(raw.get("justification") or raw.get("observations") or "")
        if topic.max_points is None:
            # pass/fail check without points
            passed = as_bool(raw.get("passed"))
            if passed is None:
                passed = _as_number(raw.get("score")) > 0 or as_bool(raw.get("completed")) is True
            score = 0.0
        else:
            score = _clamp(_as_number(raw.get("score")), topic.weight)
            passed = score >= topic.weight if topic.is_critical else None
        scored.append(ScoredTopic(
            topic_id=topic.id,
            block_name=block.name,
            topic_label=topic.label,
            score=score,
            max_score=topic.weight,
            justification=justification,
            passed=passed,
            strategy=strategy,
        ))

    total = sum(s.score for s in scored)
    if UNEVALUATED_COUNTS_AGAINST_DENOMINATOR:
        max_possible = catalog.max_possible_score()
    else:
        max_possible = sum(s.max_score for s in scored)
    percentage = total / max_possible * 100 if max_possible > 0 else 0.0

    moments = []
    for m in response.get("key_moments") or []:
        if not isinstance(m, dict):
            continue
        moments.append(KeyMoment(
            timestamp=format_timestamp(str(m.get("timestamp") or "")),
            kind=str(m.get("event") or m.get("type") or ""),
            description=str(m.get("description") or ""),
        ))
    recommendations = response.get("recommendations") or []
    if not isinstance(recommendations, list):
        recommendations = [recommendations]

    return EvaluationResult(
        total_score=total,
        max_possible_score=max_possible,
        percentage=percentage,
        scored_topics=scored,
        unevaluated_topics=unevaluated,
        narrative=str(response.get("observations") or ""),
        recommendations=[str(r) for r in recommendations],
        key_moments=moments,
        token_usage=usage or TokenUsage(),
        catalog_name=catalog.name,
        catalog_version=catalog.version,
    )


class ScoringOrchestrator:
    """Sends one scoring request per evaluation and normalizes the reply."""

    def __init__(
        self,
        llm: LLMBackend,
        max_attempts: int = 2,
        retry_delay: float = 1.0,
        verbal_window: int = 40,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.llm = llm
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.verbal_window = verbal_window
        self.sleep = sleep

    def score(
        self,
        catalog: CriteriaCatalog,
        visual: VisualEvidence,
        verbal: Sequence[VerbalEvidenceLine],
        context: AuditContext,
        token: Optional[CancellationToken] = None,
    ) -> EvaluationResult:
        prompt = build_scoring_prompt(catalog, visual, verbal, context, self.verbal_window)
        usage = TokenUsage()

        def ask() -> Dict[str, Any]:
            nonlocal usage
            reply = self.llm.generate(
                prompt,
                system=SCORING_SYSTEM_PROMPT,
                json_mode=True,
                seed=SCORING_SEED,
                max_tokens=4000,
            )
            usage = usage + reply.usage
            return parse_json_object(reply.text)

        response = retry_call(
            ask,
            attempts=self.max_attempts,
            delay=self.retry_delay,
            label="scoring request",
            token=token,
            sleep=self.sleep,
        )
        result = build_result(catalog, response, usage)
        logger.info("Scored %s: %.2f/%.2f (%.1f%%), %d unevaluated, tokens in=%d out=%d",
                    catalog.name, result.total_score, result.max_possible_score, result.percentage,
                    len(result.unevaluated_topics), usage.input, usage.output)
        return result
