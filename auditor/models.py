from typing import Any, Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

NOT_APPLICABLE = "n/a"


class Topic(BaseModel):
    id: str = ""
    label: str
    criticality: Literal["none", "critical"] = "none"
    # None is the not-applicable sentinel ("n/a" in the YAML catalogs)
    max_points: Optional[float] = None
    applies: bool = True
    guidance: str = ""

    model_config = {"frozen": True}

    @field_validator("max_points", mode="before")
    @classmethod
    def _parse_points(cls, value: Any) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, str):
            if value.strip().lower() == NOT_APPLICABLE:
                return None
            value = float(value)
        if value < 0:
            raise ValueError("max_points must be non-negative or 'n/a'")
        return float(value)

    @field_validator("criticality", mode="before")
    @classmethod
    def _parse_criticality(cls, value: Any) -> str:
        if value in (None, "", "-"):
            return "none"
        text = str(value).strip().lower()
        if text.startswith("cr"):
            return "critical"
        return text

    @property
    def is_critical(self) -> bool:
        return self.criticality == "critical"

    @property
    def weight(self) -> float:
        """Points this topic contributes to the achievable maximum."""
        if not self.applies or self.max_points is None:
            return 0.0
        return self.max_points


class Block(BaseModel):
    name: str
    topics: List[Topic] = Field(default_factory=list)

    model_config = {"frozen": True}


class CriteriaCatalog(BaseModel):
    name: str
    version: str = "1"
    layout: Literal["horizontal", "vertical"] = "horizontal"
    blocks: List[Block] = Field(default_factory=list)

    model_config = {"frozen": True}

    def iter_topics(self) -> Iterator[Tuple[Block, Topic]]:
        for block in self.blocks:
            for topic in block.topics:
                yield block, topic

    def applicable_topics(self) -> List[Tuple[Block, Topic]]:
        return [(b, t) for b, t in self.iter_topics() if t.applies]

    def max_possible_score(self) -> float:
        return sum(t.weight for _, t in self.iter_topics())

    def topic_count(self) -> int:
        return sum(len(b.topics) for b in self.blocks)


class CatalogSelection(BaseModel):
    catalog: CriteriaCatalog
    interaction_type: str
    matched_keyword: Optional[str] = None
    resolved_via_default: bool = False


class Utterance(BaseModel):
    speaker: str = "A"
    text: str
    start_ms: int = 0
    end_ms: int = 0


class Transcript(BaseModel):
    text: str = ""
    utterances: List[Utterance] = Field(default_factory=list)
    duration_seconds: float = 0.0


class VisualEvidenceRecord(BaseModel):
    source_id: str
    detected_system: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    critical_flags: Dict[str, bool] = Field(default_factory=dict)
    findings: List[str] = Field(default_factory=list)
    confidence: float = 0.9


class VerbalEvidenceLine(BaseModel):
    timestamp_ms: int
    speaker_tag: str
    text: str


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(input=self.input + other.input, output=self.output + other.output)


class ScoredTopic(BaseModel):
    topic_id: str = ""
    block_name: str
    topic_label: str
    score: float
    max_score: float
    justification: str = ""
    passed: Optional[bool] = None
    strategy: str = ""


class UnevaluatedTopic(BaseModel):
    topic_id: str = ""
    block_name: str
    topic_label: str
    max_score: float
    note: str
    block_hint: bool = False


class KeyMoment(BaseModel):
    timestamp: str = ""
    kind: str = ""
    description: str = ""


class EvaluationResult(BaseModel):
    total_score: float
    max_possible_score: float
    percentage: float
    scored_topics: List[ScoredTopic] = Field(default_factory=list)
    unevaluated_topics: List[UnevaluatedTopic] = Field(default_factory=list)
    narrative: str = ""
    recommendations: List[str] = Field(default_factory=list)
    key_moments: List[KeyMoment] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    catalog_name: str = ""
    catalog_version: str = ""


class AuditContext(BaseModel):
    executive_name: str = ""
    executive_id: str = ""
    call_type: str = ""
    client_id: str = ""
    call_date: str = ""
    call_duration: Optional[str] = None
    analyst: str = "IA"


class SourceHashes(BaseModel):
    audio: str
    images: List[str] = Field(default_factory=list)


class CacheEntry(BaseModel):
    content_key: str
    created_at: float
    evaluation_result: EvaluationResult
    artifact_reference: str
    source_hashes: SourceHashes
    executive_id: str = ""
    call_type: str = ""
