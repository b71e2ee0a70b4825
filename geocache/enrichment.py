"""
Location Enrichment and Popularity Scoring.

The content-generation side supplies an opaque content blob together with
a small enrichment record describing the place (nearby landmarks,
historical context, administrative region). The cache never parses the
content; it only uses the enrichment to score popularity and derive tags.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set

from geocache.config import PopularityWeights

_WHITESPACE = re.compile(r"\s+")


@dataclass
class RegionInfo:
    """Administrative region of a location."""

    municipality: str = ""
    county: str = ""
    country: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "municipality": self.municipality,
            "county": self.county,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RegionInfo":
        return cls(
            municipality=data.get("municipality", ""),
            county=data.get("county", ""),
            country=data.get("country", ""),
        )


@dataclass
class Enrichment:
    """
    Enrichment signals attached to generated content.

    Attributes:
        address: Human-readable address
        nearby_places: Names of nearby landmarks
        historical_context: Free-text historical background
        cultural_context: Free-text cultural background
        local_terminology: Local words/terms relevant to the place
        region: Administrative region
    """

    address: str = ""
    nearby_places: List[str] = field(default_factory=list)
    historical_context: str = ""
    cultural_context: str = ""
    local_terminology: List[str] = field(default_factory=list)
    region: RegionInfo = field(default_factory=RegionInfo)

    @property
    def nearby_place_count(self) -> int:
        return len(self.nearby_places)

    @property
    def historical_context_length(self) -> int:
        return len(self.historical_context)

    @property
    def region_name(self) -> str:
        return self.region.county

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "address": self.address,
            "nearby_places": list(self.nearby_places),
            "historical_context": self.historical_context,
            "cultural_context": self.cultural_context,
            "local_terminology": list(self.local_terminology),
            "region": self.region.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Enrichment":
        """Create from dictionary."""
        return cls(
            address=data.get("address", ""),
            nearby_places=list(data.get("nearby_places", [])),
            historical_context=data.get("historical_context", ""),
            cultural_context=data.get("cultural_context", ""),
            local_terminology=list(data.get("local_terminology", [])),
            region=RegionInfo.from_dict(data.get("region", {})),
        )


@dataclass
class GeneratedContent:
    """
    Output of a content generator.

    Attributes:
        content_id: Generator-assigned id of the content
        content: Opaque payload (title, body, audio reference, ...)
        enrichment: Enrichment record used for scoring and tags
        tags: Extra caller tags
    """

    content_id: str
    content: Any
    enrichment: Optional[Enrichment] = None
    tags: Set[str] = field(default_factory=set)


def initial_popularity(
    enrichment: Optional[Enrichment],
    weights: PopularityWeights,
    popular_regions: Iterable[str] = (),
) -> float:
    """
    Score a new entry from its enrichment signals.

    score = base + per_place * places
            + history_bonus (if historical context is long enough)
            + popular_region_bonus (if the region is on the allow-list)

    capped at weights.max_score.
    """
    score = weights.base
    if enrichment is None:
        return min(score, weights.max_score)

    if enrichment.nearby_place_count > 0:
        score += enrichment.nearby_place_count * weights.per_nearby_place

    if enrichment.historical_context_length > weights.history_min_length:
        score += weights.history_bonus

    if enrichment.region_name and enrichment.region_name in set(popular_regions):
        score += weights.popular_region_bonus

    return min(score, weights.max_score)


def auto_tags(enrichment: Optional[Enrichment], max_terms: int = 3) -> Set[str]:
    """
    Derive classification tags from an enrichment record.

    Region names are lower-cased, landmark names are lower-cased with
    whitespace replaced by underscores, and the first few local terms are
    kept verbatim.
    """
    if enrichment is None:
        return set()

    tags: Set[str] = set()
    for name in (enrichment.region.county, enrichment.region.municipality):
        if name:
            tags.add(name.lower())

    for place in enrichment.nearby_places:
        if place:
            tags.add(_WHITESPACE.sub("_", place.strip().lower()))

    for term in enrichment.local_terminology[:max_terms]:
        if term:
            tags.add(term)

    return tags
