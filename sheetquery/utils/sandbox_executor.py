"""
Sandboxed, retryable execution of extraction plans.

Each attempt evaluates the plan's procedure in a child process that only
receives the procedure, ``rows`` and ``headers``. The parent waits on a pipe
for the JSON-encoded result; when the per-attempt deadline passes the child is
terminated (and killed if needed), so runaway procedures are interrupted
without their cooperation.

State machine per call:
    PENDING -> EXECUTING -> SUCCEEDED
                         -> FAILED -> REGENERATING -> EXECUTING ... -> TERMINAL_FAILED
"""

import json
import logging
import multiprocessing
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sheetquery.utils.extraction_dsl import interpret_procedure
from sheetquery.utils.json_sanitize import ensure_json_serializable
from sheetquery.utils.search_types import ExtractionOutcome, ExtractionPlan

logger = logging.getLogger(__name__)

MAX_RESULT_BYTES = 10 * 1024 * 1024
_POLL_SLICE_S = 0.05

Evaluator = Callable[[Dict[str, Any], List[List[Any]], List[str]], Any]
RetryCallback = Callable[[int, str], Optional[ExtractionPlan]]


class ExecutionState(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REGENERATING = "regenerating"
    TERMINAL_FAILED = "terminal_failed"


def _child_main(conn: Any, evaluate: Evaluator, procedure: Dict[str, Any], rows: Any, headers: Any, max_bytes: int) -> None:
    try:
        try:
            result = evaluate(procedure, rows, headers)
        except Exception as exc:
            conn.send(("error", f"{type(exc).__name__}: {exc}"))
            return
        try:
            payload = ensure_json_serializable(result)
        except (TypeError, ValueError) as exc:
            conn.send(("error", f"Result is not JSON-serializable: {exc}"))
            return
        if len(payload.encode("utf-8")) > max_bytes:
            conn.send(("error", f"Result exceeds the {max_bytes} byte limit"))
            return
        conn.send(("ok", payload))
    finally:
        conn.close()


def _default_context() -> Any:
    """
    forkserver where the platform has it: children start from a clean server
    process instead of copying the caller's threads and locks.
    """
    methods = multiprocessing.get_all_start_methods()
    if "forkserver" in methods:
        context = multiprocessing.get_context("forkserver")
        context.set_forkserver_preload([interpret_procedure.__module__])
        return context
    if "fork" in methods:
        return multiprocessing.get_context("fork")
    return multiprocessing.get_context("spawn")


class SandboxedExecutor:
    def __init__(
        self,
        evaluate: Evaluator = interpret_procedure,
        *,
        timeout_s: float = 5.0,
        max_attempts: int = 3,
        max_result_bytes: int = MAX_RESULT_BYTES,
        mp_context: Any = None,
    ):
        if timeout_s <= 0:
            raise ValueError("timeout_s must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.evaluate = evaluate
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.max_result_bytes = max_result_bytes
        self.mp_context = mp_context or _default_context()

    def _stop(self, proc: Any) -> None:
        if proc.is_alive():
            proc.terminate()
            proc.join(0.5)
            if proc.is_alive():
                proc.kill()
                proc.join(0.5)
        else:
            proc.join(0.1)

    def run_once(
        self,
        procedure: Dict[str, Any],
        rows: List[List[Any]],
        headers: List[str],
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[bool, Any]:
        """
        One isolated attempt. Returns (True, result) or (False, error message).
        """
        parent_conn, child_conn = self.mp_context.Pipe(duplex=False)
        proc = self.mp_context.Process(
            target=_child_main,
            args=(child_conn, self.evaluate, procedure, rows, headers, self.max_result_bytes),
            daemon=True,
        )
        proc.start()
        child_conn.close()
        deadline = time.monotonic() + self.timeout_s
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False, f"Execution timed out after {self.timeout_s:g}s"
                if cancel_event is not None and cancel_event.is_set():
                    return False, "Execution cancelled"
                if parent_conn.poll(min(_POLL_SLICE_S, remaining)):
                    break
            try:
                status, payload = parent_conn.recv()
            except EOFError:
                return False, f"Execution process exited without a result (exit code {proc.exitcode})"
        finally:
            parent_conn.close()
            self._stop(proc)

        if status != "ok":
            return False, payload
        return True, json.loads(payload)

    def execute(
        self,
        plan: ExtractionPlan,
        rows: List[List[Any]],
        headers: List[str],
        *,
        on_retry: Optional[RetryCallback] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractionOutcome:
        """
        Runs ``plan`` with up to ``max_attempts`` sequential attempts. Between
        failed attempts ``on_retry(attempt, error)`` may supply a regenerated
        plan; when it fails or returns None the previous plan is reused.
        """
        outcome = ExtractionOutcome(success=False, state=ExecutionState.PENDING.value, plan=plan)
        started = time.monotonic()
        current = plan
        last_error: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                last_error = last_error or "Execution cancelled"
                break
            outcome.state = ExecutionState.EXECUTING.value
            outcome.attempts = attempt
            ok, value = self.run_once(current.procedure, rows, headers, cancel_event)
            if ok:
                outcome.success = True
                outcome.result = value
                outcome.rows_processed = len(value) if isinstance(value, (list, dict)) else 0
                outcome.state = ExecutionState.SUCCEEDED.value
                outcome.history.append({"attempt": attempt, "state": outcome.state})
                break

            last_error = str(value)
            outcome.state = ExecutionState.FAILED.value
            outcome.history.append({"attempt": attempt, "state": outcome.state, "error": last_error})
            logger.warning("SANDBOX_ATTEMPT_FAILED attempt=%s/%s error=%s", attempt, self.max_attempts, last_error[:300])
            if attempt >= self.max_attempts or last_error == "Execution cancelled":
                break

            if on_retry is not None:
                outcome.state = ExecutionState.REGENERATING.value
                try:
                    regenerated = on_retry(attempt, last_error)
                except Exception as exc:
                    logger.warning(
                        "SANDBOX_REGENERATION_FAILED attempt=%s error=%s message=%s",
                        attempt,
                        type(exc).__name__,
                        str(exc)[:200],
                    )
                    regenerated = None
                if regenerated is not None:
                    current = regenerated

        if not outcome.success:
            outcome.state = ExecutionState.TERMINAL_FAILED.value
            outcome.error = last_error or "Execution failed"
        outcome.plan = current
        outcome.elapsed_time = round(time.monotonic() - started, 4)
        return outcome
