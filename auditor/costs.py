from typing import Any, Dict

from .models import TokenUsage

TRANSCRIPTION_COST_PER_MINUTE = 0.00037
INPUT_COST_PER_1M = 2.50
OUTPUT_COST_PER_1M = 10.00


def token_cost(usage: TokenUsage) -> float:
    return usage.input / 1_000_000 * INPUT_COST_PER_1M + usage.output / 1_000_000 * OUTPUT_COST_PER_1M


def audit_cost(
    audio_seconds: float,
    image_count: int,
    vision_usage: TokenUsage,
    scoring_usage: TokenUsage,
) -> Dict[str, Any]:
    """USD breakdown for one audit; amounts rounded to 4 decimals."""
    minutes = audio_seconds / 60
    transcription = minutes * TRANSCRIPTION_COST_PER_MINUTE
    images = token_cost(vision_usage)
    evaluation = token_cost(scoring_usage)
    return {
        "transcription": {
            "audio_minutes": round(minutes, 2),
            "cost_per_minute": TRANSCRIPTION_COST_PER_MINUTE,
            "cost": round(transcription, 4),
        },
        "images": {
            "count": image_count,
            "input_tokens": vision_usage.input,
            "output_tokens": vision_usage.output,
            "cost": round(images, 4),
        },
        "evaluation": {
            "input_tokens": scoring_usage.input,
            "output_tokens": scoring_usage.output,
            "cost": round(evaluation, 4),
        },
        "llm_total": round(images + evaluation, 4),
        "total": round(transcription + images + evaluation, 4),
        "currency": "USD",
    }
