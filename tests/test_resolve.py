import logging
import time

from sheetquery.utils.resolve import resolve_with_fallback


def test_missing_primary_uses_fallback():
    assert resolve_with_fallback(None, lambda: "fallback") == "fallback"


def test_primary_value_wins_even_when_empty():
    assert resolve_with_fallback(lambda: [], lambda: ["fallback"]) == []


def test_none_and_errors_fall_back(caplog):
    def boom():
        raise RuntimeError("upstream 500")

    with caplog.at_level(logging.INFO):
        assert resolve_with_fallback(lambda: None, lambda: 1, context_tag="intent") == 1
        assert resolve_with_fallback(boom, lambda: 2, context_tag="intent") == 2
    assert "COLLABORATOR_FAILED context=intent error=RuntimeError" in caplog.text
    assert caplog.text.count("FALLBACK_USED context=intent") == 2


def test_slow_primary_is_abandoned(caplog):
    def slow():
        time.sleep(1.0)
        return "late"

    started = time.monotonic()
    with caplog.at_level(logging.WARNING):
        assert resolve_with_fallback(slow, lambda: "fallback", timeout_s=0.1, context_tag="sheet_match") == "fallback"
    assert time.monotonic() - started < 0.9
    assert "COLLABORATOR_TIMEOUT context=sheet_match" in caplog.text
