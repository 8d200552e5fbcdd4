from __future__ import annotations

import pytest

from planflow.orchestration import KeywordQueryClassifier, QueryType


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("Where should I bunker VLSFO between Singapore and Rotterdam?", "bunker_planning"),
        ("How far is it from SGSIN to NLRTM?", "route_calculation"),
        ("What is the sea state along the route next week?", "weather_analysis"),
        ("Will the vessel pass through an ECA zone?", "compliance"),
        ("What CII rating will this voyage get?", "cii_rating"),
        ("How many EU ETS allowances do we need?", "eu_ets"),
        ("Tell me a joke", "general_inquiry"),
    ],
)
async def test_keyword_classification(query: str, expected: str) -> None:
    classification = await KeywordQueryClassifier().classify(query)

    assert classification.query_type == expected


@pytest.mark.asyncio
async def test_keywords_match_word_starts_only() -> None:
    classification = await KeywordQueryClassifier().classify("Update the metadata sheet")

    assert classification.query_type == QueryType.GENERAL_INQUIRY.value
    assert classification.confidence == pytest.approx(0.3)


@pytest.mark.asyncio
async def test_secondary_intents_and_port_codes() -> None:
    classification = await KeywordQueryClassifier().classify(
        "Plan bunker fuel for the route SGSIN to NLRTM considering weather"
    )

    assert classification.query_type == "bunker_planning"
    assert classification.secondary_intents == ["weather_analysis", "route_calculation"]
    assert classification.extracted_entities["port_codes"] == ["SGSIN", "NLRTM"]
    assert classification.confidence == pytest.approx(0.8)


@pytest.mark.asyncio
async def test_custom_rules_take_precedence_in_order() -> None:
    classifier = KeywordQueryClassifier([("hull_inspection", ["hull", "fouling"]), (QueryType.ROUTE_CALCULATION, ["route"])])

    classification = await classifier.classify("Check hull fouling before the route")

    assert classification.query_type == "hull_inspection"
    assert classification.secondary_intents == ["route_calculation"]
