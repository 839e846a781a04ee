from unittest.mock import MagicMock

from sheetquery.agents.sheet_matcher import SheetMatcherAgent
from sheetquery.utils.search_types import FileCandidate, SearchIntent, SheetSchema
from sheetquery.utils.settings import EngineSettings

INTENT = SearchIntent(type="aggregate", target_concepts=("vendor", "amount"), key_concept="vendor", aggregations=("sum",))


def _sheet(name, index, *columns):
    return SheetSchema(name=name, index=index, columns=tuple({"name": c, "dataType": "string"} for c in columns), total_rows=10)


def _candidates():
    return [
        FileCandidate(
            file_id="f1",
            name="Vendor Payments 2024.xlsx",
            sheets=(_sheet("Payments", 0, "Vendor", "Amount", "Date"), _sheet("Notes", 1, "Text")),
        ),
        FileCandidate(file_id="f2", name="Team Roster.xlsx", sheets=(_sheet("Staff", 0, "Name", "Phone"),)),
    ]


def _keys(matches):
    return [(m.file_id, m.sheet_index, m.relevance_score) for m in matches]


def test_heuristic_scores_name_columns_and_file():
    matches = SheetMatcherAgent().match_sheets("total payments by vendor", INTENT, _candidates())
    assert _keys(matches) == [("f1", 0, 1.0)]
    reasons = " ".join(matches[0].reasons)
    assert "sheet name" in reasons and "columns cover vendor, amount" in reasons and "file name" in reasons


def test_heuristic_threshold_is_exclusive_and_summary_counts():
    agent = SheetMatcherAgent()
    plain = FileCandidate(file_id="x", name="x.xlsx", sheets=(_sheet("Vendor", 0, "Foo"),))
    assert agent.score_sheet("vendor", INTENT, plain, plain.sheets[0])[0] == 0.3
    assert agent.match_sheets("vendor", INTENT, [plain]) == []

    summarized = FileCandidate(file_id="x", name="x.xlsx", sheets=plain.sheets, summary="Vendor ledger")
    assert _keys(agent.match_sheets("vendor", INTENT, [summarized])) == [("x", 0, 0.4)]


def test_heuristic_ties_keep_candidate_order():
    files = [
        FileCandidate(file_id="b", name="b.xlsx", sheets=(_sheet("Payments", 0, "Vendor", "Amount"),)),
        FileCandidate(file_id="a", name="a.xlsx", sheets=(_sheet("Payments", 0, "Vendor", "Amount"),)),
    ]
    matches = SheetMatcherAgent().match_sheets("payments by vendor", INTENT, files)
    assert [m.file_id for m in matches] == ["b", "a"]
    assert matches[0].relevance_score == matches[1].relevance_score == 0.8


def test_heuristic_matches_thai_columns():
    intent = SearchIntent(type="aggregate", target_concepts=("ผู้ขาย", "ยอดขาย"), key_concept="ผู้ขาย")
    thai = FileCandidate(file_id="t", name="data.xlsx", sheets=(_sheet("Sheet1", 0, "ชื่อผู้ขาย", "ยอดขายรวม"),))
    matches = SheetMatcherAgent().match_sheets("ยอดขายแยกตามผู้ขาย", intent, [thai])
    assert _keys(matches) == [("t", 0, 0.5)]


def test_collaborator_scores_are_validated():
    completion = MagicMock()
    completion.complete.return_value = {
        "matches": [
            {"fileId": "f1", "sheetIndex": 0, "relevanceScore": 0.9, "matchReasons": "vendor column"},
            {"fileId": "f1", "sheetIndex": 1, "relevanceScore": 0.4},
            {"fileId": "ghost", "sheetIndex": 0, "relevanceScore": 0.99},
            {"fileId": "f2", "sheetIndex": 0, "relevanceScore": 1.7},
            {"fileId": "f2", "sheetIndex": "x", "relevanceScore": 0.8},
        ]
    }
    matches = SheetMatcherAgent(completion).match_sheets("total payments by vendor", INTENT, _candidates())
    assert _keys(matches) == [("f2", 0, 1.0), ("f1", 0, 0.9)]
    assert matches[1].reasons == ("vendor column",)
    assert completion.complete.call_count == 1


def test_malformed_collaborator_answer_uses_heuristic():
    completion = MagicMock()
    completion.complete.return_value = {"nope": []}
    matches = SheetMatcherAgent(completion).match_sheets("total payments by vendor", INTENT, _candidates())
    assert _keys(matches) == [("f1", 0, 1.0)]


def test_each_batch_falls_back_on_its_own():
    completion = MagicMock()
    completion.complete.side_effect = [
        RuntimeError("503 unavailable"),
        {"matches": [{"fileId": "f1", "sheetIndex": 1, "relevanceScore": 0.7}]},
        {"matches": []},
    ]
    agent = SheetMatcherAgent(completion, EngineSettings(sheet_batch_size=1))
    matches = agent.match_sheets("total payments by vendor", INTENT, _candidates())
    assert _keys(matches) == [("f1", 0, 1.0), ("f1", 1, 0.7)]
    assert completion.complete.call_count == 3
