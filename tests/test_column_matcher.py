import logging
from unittest.mock import MagicMock

import pytest

from sheetquery.agents.column_matcher import ColumnMatcherAgent
from sheetquery.utils.search_types import ColumnProfile, DataType
from sheetquery.utils.settings import EngineSettings


@pytest.fixture(autouse=True)
def _fresh_embedding_cache():
    ColumnMatcherAgent._embedding_cache.clear()
    yield
    ColumnMatcherAgent._embedding_cache.clear()


class FakeEmbedder:
    def __init__(self, vectors):
        self.vectors = vectors
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        return self.vectors[text.lower()]


def test_exact_match_has_full_confidence():
    match = ColumnMatcherAgent().match_column("amount", ["Date", "Vendor Name", "Amount"])
    assert match.column_index == 2
    assert match.column_name == "Amount"
    assert match.confidence == 1.0
    assert match.method == "exact"


def test_fuzzy_match_is_weighted():
    match = ColumnMatcherAgent().match_column("vendor", ["Vendr", "Amount"])
    assert match.method == "fuzzy"
    assert match.column_index == 0
    assert match.confidence == pytest.approx(0.75)


def test_synonym_and_translated_variants():
    agent = ColumnMatcherAgent()
    supplier = agent.match_column("vendor", ["Supplier", "Total"])
    assert (supplier.column_index, supplier.method) == (0, "synonym")
    assert supplier.confidence == pytest.approx(0.85)

    thai = agent.match_column("vendor", ["วันที่", "ผู้ขาย", "จำนวนเงิน"])
    assert (thai.column_index, thai.column_name, thai.method) == (1, "ผู้ขาย", "synonym")


def test_acceptance_floor_is_exclusive():
    agent = ColumnMatcherAgent(settings=EngineSettings(match_floor=0.85))
    assert agent.match_column("vendor", ["Supplier"]) is None
    assert agent.match_column("vendor", ["Vendor"]).confidence == 1.0


def test_pattern_stage_recognizes_generic_columns():
    rows = [[f"Person {i}", f"person{i}@example.com"] for i in range(18)]
    rows += [["Someone", "pending"], ["Another", "pending"]]
    match = ColumnMatcherAgent().match_column("email", ["Name", "Column 2"], rows)
    assert match.method == "pattern"
    assert match.column_index == 1
    assert match.confidence >= 0.6
    assert match.confidence == pytest.approx(0.9)


def test_pattern_stage_ignores_named_columns():
    rows = [["Person", f"person{i}@example.com"] for i in range(10)]
    assert ColumnMatcherAgent().match_column("email", ["Name", "Notes"], rows) is None


def test_column_profiles_keep_their_indices():
    columns = [
        ColumnProfile(index=3, inferred_name="Invoice", letter_label="D", data_type=DataType.STRING, density=1.0, unique_value_count=4),
        ColumnProfile(index=4, inferred_name="Amount", letter_label="E", data_type=DataType.CURRENCY, density=1.0, unique_value_count=4),
    ]
    match = ColumnMatcherAgent().match_column("amount", columns)
    assert match.column_index == 4
    assert match.column_name == "Amount"


def test_embedding_stage_uses_cached_vectors():
    embedder = FakeEmbedder({"customer": [1.0, 0.0], "buyer org": [0.9, 0.1], "qty": [0.0, 1.0]})
    agent = ColumnMatcherAgent(embedder=embedder)
    match = agent.match_column("customer", ["Buyer Org", "Qty"])
    assert match.method == "embedding"
    assert match.column_index == 0
    assert 0.8 < match.confidence <= 1.0

    agent.match_column("customer", ["Buyer Org", "Qty"])
    assert embedder.calls == ["customer", "Buyer Org", "Qty"]


def test_embedding_failures_are_skipped(caplog):
    embedder = MagicMock()
    embedder.embed.side_effect = RuntimeError("quota exceeded")
    with caplog.at_level(logging.WARNING):
        match = ColumnMatcherAgent(embedder=embedder).match_column("customer", ["Buyer Org", "Qty"])
    assert match is None
    assert "EMBEDDING_STAGE_FAILED" in caplog.text


def test_semantic_stage_validates_the_index():
    completion = MagicMock()
    completion.complete.return_value = {"columnIndex": 1, "confidence": 0.92}
    agent = ColumnMatcherAgent(completion=completion)
    match = agent.match_column("vendor", ["Fecha", "Razón social"])
    assert (match.column_index, match.method) == (1, "semantic")
    assert match.confidence == pytest.approx(0.92)

    completion.complete.return_value = {"columnIndex": 1}
    assert agent.match_column("vendor", ["Fecha", "Razón social"]).confidence == pytest.approx(0.7)

    completion.complete.return_value = {"columnIndex": 5, "confidence": 0.99}
    assert agent.match_column("vendor", ["Fecha", "Razón social"]) is None


def test_semantic_stage_is_skipped_after_a_confident_match():
    completion = MagicMock()
    match = ColumnMatcherAgent(completion=completion).match_column("vendor", ["Vendor", "Amount"])
    assert match.method == "exact"
    completion.complete.assert_not_called()


def test_match_concepts_keeps_one_match_per_column():
    matches = ColumnMatcherAgent().match_concepts(["amount", "seller", "vendor"], ["Vendor", "Date", "Amount"])
    assert [(m.column_index, m.concept, m.method) for m in matches] == [(0, "vendor", "exact"), (2, "amount", "exact")]


def test_blank_inputs():
    agent = ColumnMatcherAgent()
    assert agent.match_column("", ["Vendor"]) is None
    assert agent.match_column("vendor", []) is None
    assert agent.match_concepts([], ["Vendor"]) == []
