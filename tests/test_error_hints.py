from sheetquery.graph.steps.retry_policy import build_regeneration_context, is_retryable_execution_error
from sheetquery.utils.error_hints import EMPTY_ROWS_HINT, append_repair_hints, derive_repair_hints


def test_missing_rows_get_empty_rows_hint():
    assert derive_repair_hints("TypeError: 'NoneType' object is not subscriptable") == [EMPTY_ROWS_HINT]
    assert derive_repair_hints("TypeError: object of type 'NoneType' has no len()") == [EMPTY_ROWS_HINT]


def test_max_two_hints_and_deterministic_order():
    error_text = """
list index out of range
could not resolve column 'Amount'; available columns: A=Vendor
Execution timed out after 5s
"""
    hints = derive_repair_hints(error_text)
    assert len(hints) == 2
    assert hints[0] == EMPTY_ROWS_HINT
    assert "keywords" in hints[1]


def test_oversized_result_gets_serialization_hint():
    hints = derive_repair_hints("Result exceeds the 1024 byte limit")
    assert len(hints) == 1
    assert "coerce dates" in hints[0]


def test_no_hints_for_unknown_errors():
    assert derive_repair_hints("something odd happened") == []
    feedback, hints = append_repair_hints("Attempt failed.", "something odd happened")
    assert feedback == "Attempt failed."
    assert hints == []


def test_append_repair_hints_is_idempotent():
    feedback, hints = append_repair_hints("Attempt failed.", "Execution timed out after 5s")
    assert feedback.startswith("Attempt failed.\n\nREPAIR_HINTS:\n- ")
    again, _ = append_repair_hints(feedback, "Execution timed out after 5s")
    assert again == feedback
    assert len(hints) == 1


def test_regeneration_context_folds_error_history_and_hints():
    history = [{"attempt": 1, "error": "step 2 (group): unknown field(s) ['by']"}]
    context = build_regeneration_context(2, "IndexError: list index out of range", history)
    assert "Attempt 1 failed with: step 2 (group): unknown field(s) ['by']" in context
    assert "Previous attempt 2 failed with: IndexError" in context
    assert EMPTY_ROWS_HINT in context


def test_cancellation_is_not_retryable():
    assert not is_retryable_execution_error("Execution cancelled")
    assert not is_retryable_execution_error("")
    assert is_retryable_execution_error("Execution timed out after 5s")
