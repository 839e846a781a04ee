from unittest.mock import MagicMock

import pytest

from sheetquery.agents.intent_analyzer import IntentAnalyzerAgent, extract_numeric_filters
from sheetquery.utils.response_schemas import EXPANSION_RESPONSE_SCHEMA, INTENT_RESPONSE_SCHEMA
from sheetquery.utils.search_types import SearchFilter


@pytest.fixture(autouse=True)
def _fresh_expansion_cache():
    IntentAnalyzerAgent.clear_expansion_cache()
    yield
    IntentAnalyzerAgent.clear_expansion_cache()


def _completion(intent_payload, variants=None):
    completion = MagicMock()

    def _complete(prompt, schema, **kwargs):
        if schema is EXPANSION_RESPONSE_SCHEMA:
            return {"variants": list(variants or [])}
        assert schema is INTENT_RESPONSE_SCHEMA
        return intent_payload

    completion.complete.side_effect = _complete
    return completion


def test_fallback_total_by_vendor():
    intent = IntentAnalyzerAgent().analyze("total by vendor")
    assert intent.type == "aggregate"
    assert intent.key_concept == "vendor"
    assert intent.target_concepts[0] == "vendor"
    assert "supplier" in intent.target_concepts
    assert "ผู้ขาย" in intent.target_concepts
    assert "total" in intent.target_concepts
    assert intent.aggregations == ("sum",)


def test_fallback_localized_key_concepts():
    analyzer = IntentAnalyzerAgent()
    spanish = analyzer.analyze("total de ventas por proveedor")
    assert spanish.type == "aggregate"
    assert spanish.key_concept == "vendor"
    assert "ventas" in spanish.target_concepts

    thai = analyzer.analyze("ยอดรวมแยกตามผู้ขาย")
    assert thai.type == "aggregate"
    assert thai.key_concept == "vendor"

    grouped = analyzer.analyze("count invoices grouped by the customer")
    assert grouped.key_concept == "customer"
    assert grouped.aggregations == ("count",)


def test_fallback_type_precedence():
    analyzer = IntentAnalyzerAgent()
    assert analyzer.analyze("invoices over 1000").type == "filter"
    assert analyzer.analyze("find the supplier email").type == "lookup"
    assert analyzer.analyze("vendors").type == "list"
    assert analyzer.analyze("average price over 10").type == "aggregate"


def test_fallback_is_deterministic():
    analyzer = IntentAnalyzerAgent()
    first = analyzer.analyze("payments per customer between 10 and 20")
    second = analyzer.analyze("payments per customer between 10 and 20")
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_numeric_filters():
    assert extract_numeric_filters("invoices over 1000") == [SearchFilter("amount", "greater", 1000.0)]
    assert extract_numeric_filters("orders under $50.") == [SearchFilter("amount", "less", 50.0)]
    assert extract_numeric_filters("between 20 and 10") == [SearchFilter("amount", "between", [10.0, 20.0])]
    assert extract_numeric_filters("ยอดขายมากกว่า 1,500") == [SearchFilter("amount", "greater", 1500.0)]
    assert extract_numeric_filters("cover letters") == []


def test_collaborator_intent_with_enough_concepts_skips_expansion():
    completion = _completion(
        {"type": "aggregate", "targetColumns": ["vendor", "amount", "date"], "keyColumn": "vendor", "aggregations": ["sum"]}
    )
    intent = IntentAnalyzerAgent(completion).analyze("total by vendor")
    assert intent.type == "aggregate"
    assert intent.target_concepts == ("vendor", "amount", "date")
    assert intent.key_concept == "vendor"
    assert completion.complete.call_count == 1


def test_collaborator_intent_is_expanded_and_expansions_are_cached():
    completion = _completion({"type": "filter", "targetColumns": ["vendor"]}, variants=["supplier", "ผู้ขาย", "Vendor"])
    analyzer = IntentAnalyzerAgent(completion)
    intent = analyzer.analyze("vendor list")
    assert intent.target_concepts == ("vendor", "supplier", "ผู้ขาย")
    assert completion.complete.call_count == 2

    analyzer.analyze("vendor list")
    # Second analysis reuses the memoized expansion.
    assert completion.complete.call_count == 3
    assert analyzer.expand_concept("VENDOR") == ["supplier", "ผู้ขาย", "Vendor"]


def test_collaborator_payload_is_normalized():
    completion = _completion(
        {
            "type": "weird",
            "targetColumns": ["amount", "Amount", "date", 7],
            "keyColumn": "  ",
            "filters": [
                {"column": "amount", "operator": "like", "value": 1},
                {"column": "amount", "operator": "greater", "value": 5},
                "junk",
            ],
            "aggregations": ["sum", "median"],
        },
        variants=[],
    )
    intent = IntentAnalyzerAgent(completion).analyze("total amount")
    assert intent.type == "aggregate"
    assert intent.target_concepts == ("amount", "date")
    assert intent.key_concept is None
    assert intent.filters == (SearchFilter("amount", "greater", 5),)
    assert intent.aggregations == ("sum",)


def test_collaborator_key_concept_is_folded_into_targets():
    completion = _completion({"type": "aggregate", "targetColumns": ["amount", "date", "total"], "keyColumn": "region"})
    intent = IntentAnalyzerAgent(completion).analyze("sales by region")
    assert intent.target_concepts == ("region", "amount", "date", "total")
    assert intent.key_concept == "region"
    assert completion.complete.call_count == 1


def test_collaborator_failure_or_empty_answer_uses_fallback():
    failing = MagicMock()
    failing.complete.side_effect = RuntimeError("503 unavailable")
    expected = IntentAnalyzerAgent().analyze("total by vendor")
    assert IntentAnalyzerAgent(failing).analyze("total by vendor") == expected

    empty = _completion({"type": "list", "targetColumns": []})
    assert IntentAnalyzerAgent(empty).analyze("total by vendor") == expected


def test_expansion_failure_is_skipped_and_not_cached():
    completion = MagicMock()
    completion.complete.side_effect = RuntimeError("boom")
    analyzer = IntentAnalyzerAgent(completion)
    assert analyzer.expand_concept("vendor") == []
    assert analyzer.expand_concept("vendor") == []
    assert completion.complete.call_count == 2
