import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from .models import Block, CatalogSelection, CriteriaCatalog, Topic
from .utils import normalize_text

logger = logging.getLogger(__name__)

CRITERIA_DIR = Path(__file__).resolve().parent / "criteria"

# Checked in order; the first keyword contained in the interaction type wins.
TYPE_KEYWORDS: Tuple[Tuple[str, str], ...] = (
    ("monitoreo", "monitoreo"),
    ("fraude", "fraude"),
    ("th confirma", "th_confirma"),
    ("th_confirma", "th_confirma"),
)
DEFAULT_CATALOG = "fraude"

# Block names map to the system tag the vision extractor emits.
BLOCK_SYSTEMS: Dict[str, str] = {
    "falcon": "FALCON",
    "front": "FRONT",
    "vcas": "VCAS",
    "vision": "VISION",
    "vision+": "VISION",
    "vrm": "VRM",
    "b.i": "BI",
    "bi": "BI",
    "manejo de llamada": "TRANSCRIPCIÓN",
    "casos criticos": "FALCON/FRONT/VISION",
}


def system_for_block(block_name: str) -> str:
    return BLOCK_SYSTEMS.get(normalize_text(block_name), block_name)


def _build_catalog(raw: Dict[str, Any]) -> CriteriaCatalog:
    blocks: List[Block] = []
    for bi, raw_block in enumerate(raw.get("blocks") or []):
        topics = []
        for ti, raw_topic in enumerate(raw_block.get("topics") or []):
            topics.append(Topic(
                id=f"{bi + 1}.{ti + 1}",
                label=raw_topic["label"],
                criticality=raw_topic.get("criticality", "none"),
                max_points=raw_topic.get("points"),
                applies=bool(raw_topic.get("applies", True)),
                guidance=raw_topic.get("guidance", "") or "",
            ))
        blocks.append(Block(name=raw_block["name"], topics=topics))
    return CriteriaCatalog(
        name=raw["name"],
        version=str(raw.get("version", "1")),
        layout=raw.get("layout", "horizontal"),
        blocks=blocks,
    )


def load_catalog(path: Path) -> CriteriaCatalog:
    with open(path, "r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f)
    return _build_catalog(raw)


class CatalogRegistry:
    """Immutable set of rubrics plus the interaction-type lookup."""

    def __init__(
        self,
        catalogs: Dict[str, CriteriaCatalog],
        keywords: Sequence[Tuple[str, str]] = TYPE_KEYWORDS,
        default: str = DEFAULT_CATALOG,
    ) -> None:
        if default not in catalogs:
            raise ValueError(f"default catalog {default!r} is not registered")
        self._catalogs = dict(catalogs)
        self._keywords = tuple(keywords)
        self._default = default

    @classmethod
    def from_directory(cls, directory: Path = CRITERIA_DIR) -> "CatalogRegistry":
        catalogs = {}
        for path in sorted(directory.glob("*.yml")):
            catalog = load_catalog(path)
            catalogs[catalog.name] = catalog
        return cls(catalogs)

    @property
    def names(self) -> List[str]:
        return sorted(self._catalogs)

    def get(self, name: str) -> Optional[CriteriaCatalog]:
        return self._catalogs.get(name)

    def select(self, interaction_type: Optional[str]) -> CatalogSelection:
        normalized = normalize_text(interaction_type)
        for keyword, name in self._keywords:
            if keyword in normalized and name in self._catalogs:
                return CatalogSelection(
                    catalog=self._catalogs[name],
                    interaction_type=interaction_type or "",
                    matched_keyword=keyword,
                )
        logger.warning("No rubric keyword in interaction type %r; using default %r",
                       interaction_type, self._default)
        return CatalogSelection(
            catalog=self._catalogs[self._default],
            interaction_type=interaction_type or "",
            resolved_via_default=True,
        )


@lru_cache(maxsize=1)
def default_registry() -> CatalogRegistry:
    return CatalogRegistry.from_directory()


def select_catalog(interaction_type: Optional[str]) -> CriteriaCatalog:
    return default_registry().select(interaction_type).catalog
