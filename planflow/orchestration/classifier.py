from __future__ import annotations

import re
from enum import Enum
from typing import Any, Mapping, Protocol, Sequence

from pydantic import BaseModel, Field

from ..core.logging import get_logger

logger = get_logger(name=__name__)


class QueryType(str, Enum):
    BUNKER_PLANNING = "bunker_planning"
    ROUTE_CALCULATION = "route_calculation"
    WEATHER_ANALYSIS = "weather_analysis"
    COMPLIANCE = "compliance"
    CII_RATING = "cii_rating"
    EU_ETS = "eu_ets"
    GENERAL_INQUIRY = "general_inquiry"


class QueryClassification(BaseModel):
    query_type: str
    confidence: float = Field(0.0, ge=0.0, le=1.0)
    reasoning: str = ""
    secondary_intents: list[str] = Field(default_factory=list)
    extracted_entities: dict[str, Any] = Field(default_factory=dict)


class QueryClassifier(Protocol):
    async def classify(self, query: str, state: Mapping[str, Any] | None = None) -> QueryClassification:
        ...


_PORT_CODE = re.compile(r"\b[A-Z]{2}[A-Z0-9]{3}\b")

# Earlier rules take precedence; keywords match at word starts.
DEFAULT_RULES: tuple[tuple[QueryType, tuple[str, ...]], ...] = (
    (QueryType.BUNKER_PLANNING, ("bunker", "refuel", "fuel", "vlsfo", "mgo")),
    (QueryType.CII_RATING, ("cii", "carbon intensity")),
    (QueryType.EU_ETS, ("eu ets", "ets", "emission allowance")),
    (QueryType.COMPLIANCE, ("eca", "emission control", "compliance", "sulphur", "sulfur")),
    (QueryType.WEATHER_ANALYSIS, ("weather", "sea state", "wave", "wind", "storm")),
    (QueryType.ROUTE_CALCULATION, ("route", "distance", "how far", "voyage time", "eta")),
)


class KeywordQueryClassifier:
    """Rule-based classifier matching the query against ordered keyword lists."""

    def __init__(self, rules: Sequence[tuple[QueryType | str, Sequence[str]]] | None = None) -> None:
        self._rules = [
            (
                query_type.value if isinstance(query_type, QueryType) else str(query_type),
                [(keyword.lower(), re.compile(r"\b" + re.escape(keyword.lower()))) for keyword in keywords],
            )
            for query_type, keywords in (rules or DEFAULT_RULES)
        ]

    async def classify(self, query: str, state: Mapping[str, Any] | None = None) -> QueryClassification:
        text = query.lower()
        matched: list[tuple[str, list[str]]] = []
        for query_type, keywords in self._rules:
            hits = [keyword for keyword, pattern in keywords if pattern.search(text)]
            if hits:
                matched.append((query_type, hits))

        entities: dict[str, Any] = {}
        ports = _PORT_CODE.findall(query)
        if ports:
            entities["port_codes"] = ports

        if not matched:
            logger.debug("query_classified", query_type=QueryType.GENERAL_INQUIRY.value, matched=False)
            return QueryClassification(
                query_type=QueryType.GENERAL_INQUIRY.value,
                confidence=0.3,
                reasoning="No routing keywords matched",
                extracted_entities=entities,
            )

        primary, hits = matched[0]
        confidence = min(0.95, 0.6 + 0.1 * len(hits))
        secondary = [query_type for query_type, _ in matched[1:] if query_type != primary]
        logger.debug("query_classified", query_type=primary, keywords=hits, secondary=secondary)
        return QueryClassification(
            query_type=primary,
            confidence=confidence,
            reasoning=f"Matched keywords: {', '.join(hits)}",
            secondary_intents=secondary,
            extracted_entities=entities,
        )
