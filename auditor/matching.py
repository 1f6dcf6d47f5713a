"""
Reconciles the scorer's free-text (block, topic) pairs back to catalog topics.

Each strategy is a plain function taking a topic and the still-unclaimed
entries and returning the entry it accepts, or None. `reconcile` runs them
strategy-major: every topic tries strategy 1, the remaining ones strategy 2,
and so on. An entry is claimed by at most one topic, so a loose strategy can
never steal an entry that a stricter one would have matched.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from .utils import normalize_text

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TopicRef:
    topic_id: str
    block_name: str
    label: str

    @property
    def norm_block(self) -> str:
        return normalize_text(self.block_name)

    @property
    def norm_label(self) -> str:
        return normalize_text(self.label)


@dataclass(frozen=True)
class ScorerEntry:
    index: int
    block: str
    topic: str
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def norm_block(self) -> str:
        return normalize_text(self.block)

    @property
    def norm_topic(self) -> str:
        return normalize_text(self.topic)


def entries_from_response(evaluations: Any) -> List[ScorerEntry]:
    entries: List[ScorerEntry] = []
    if not isinstance(evaluations, list):
        return entries
    for i, item in enumerate(evaluations):
        if not isinstance(item, dict):
            logger.warning("Ignoring scorer entry %d: not an object", i)
            continue
        entries.append(ScorerEntry(
            index=i,
            block=str(item.get("block") or ""),
            topic=str(item.get("topic") or ""),
            raw=item,
        ))
    return entries


Matcher = Callable[[TopicRef, Sequence[ScorerEntry], Sequence[TopicRef]], Optional[ScorerEntry]]


def match_exact(ref: TopicRef, entries: Sequence[ScorerEntry], unresolved: Sequence[TopicRef]) -> Optional[ScorerEntry]:
    for e in entries:
        if e.block == ref.block_name and e.topic == ref.label:
            return e
    return None


def match_normalized(ref: TopicRef, entries: Sequence[ScorerEntry], unresolved: Sequence[TopicRef]) -> Optional[ScorerEntry]:
    for e in entries:
        if e.norm_block == ref.norm_block and e.norm_topic == ref.norm_label:
            return e
    return None


def match_topic_only(ref: TopicRef, entries: Sequence[ScorerEntry], unresolved: Sequence[TopicRef]) -> Optional[ScorerEntry]:
    for e in entries:
        if e.norm_topic and e.norm_topic == ref.norm_label:
            return e
    return None


def match_block_only(ref: TopicRef, entries: Sequence[ScorerEntry], unresolved: Sequence[TopicRef]) -> Optional[ScorerEntry]:
    # Only when the pairing is unambiguous: one open entry and one open topic in the block.
    same_block = [e for e in entries if e.norm_block and e.norm_block == ref.norm_block]
    peers = [t for t in unresolved if t.norm_block == ref.norm_block]
    if len(same_block) == 1 and len(peers) == 1:
        return same_block[0]
    return None


def match_substring(ref: TopicRef, entries: Sequence[ScorerEntry], unresolved: Sequence[TopicRef]) -> Optional[ScorerEntry]:
    label = ref.norm_label
    if not label:
        return None
    for e in entries:
        topic = e.norm_topic
        if topic and (topic in label or label in topic):
            return e
    return None


STRATEGIES: Tuple[Tuple[str, Matcher], ...] = (
    ("exact", match_exact),
    ("normalized", match_normalized),
    ("topic", match_topic_only),
    ("block", match_block_only),
    ("substring", match_substring),
)


@dataclass
class Reconciliation:
    matches: Dict[str, Tuple[ScorerEntry, str]] = field(default_factory=dict)
    unmatched: List[TopicRef] = field(default_factory=list)
    block_hints: Set[str] = field(default_factory=set)
    leftovers: List[ScorerEntry] = field(default_factory=list)


def reconcile(
    topics: Sequence[TopicRef],
    entries: Sequence[ScorerEntry],
    strategies: Sequence[Tuple[str, Matcher]] = STRATEGIES,
) -> Reconciliation:
    open_entries: List[ScorerEntry] = list(entries)
    unresolved: List[TopicRef] = list(topics)
    result = Reconciliation()

    for name, matcher in strategies:
        if not unresolved or not open_entries:
            break
        still_open: List[TopicRef] = []
        for ref in unresolved:
            hit = matcher(ref, open_entries, unresolved)
            if hit is None:
                still_open.append(ref)
                continue
            result.matches[ref.topic_id] = (hit, name)
            open_entries.remove(hit)
            if name != "exact":
                logger.debug("Topic %s %r matched scorer entry %r via %s", ref.topic_id, ref.label, hit.topic, name)
        unresolved = still_open

    open_blocks = {e.norm_block for e in open_entries if e.norm_block}
    for ref in unresolved:
        if ref.norm_block in open_blocks:
            result.block_hints.add(ref.topic_id)
    result.unmatched = unresolved
    result.leftovers = open_entries
    if unresolved:
        logger.warning("%d topic(s) left unevaluated: %s", len(unresolved), ", ".join(t.topic_id for t in unresolved))
    if open_entries:
        logger.info("%d scorer entr(ies) did not match any topic", len(open_entries))
    return result
