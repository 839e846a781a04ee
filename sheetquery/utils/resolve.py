import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

_default_logger = logging.getLogger(__name__)


def resolve_with_fallback(
    primary: Optional[Callable[[], Optional[T]]],
    fallback: Callable[[], T],
    *,
    timeout_s: Optional[float] = None,
    logger: Optional[logging.Logger] = None,
    context_tag: str = "resolve",
) -> T:
    """
    Runs ``primary`` (a collaborator-backed attempt) under a wall-clock bound
    and returns its value, or ``fallback()`` when primary is missing, raises,
    times out or yields None. Both sides share the same result contract.

    The collaborator call cannot be cancelled server-side; on timeout its
    worker thread is abandoned and its eventual result discarded.
    """
    log = logger or _default_logger
    if primary is None:
        return fallback()

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sheetquery-{context_tag}")
    try:
        future = executor.submit(primary)
        try:
            result = future.result(timeout=timeout_s)
        except FutureTimeout:
            log.warning("COLLABORATOR_TIMEOUT context=%s timeout_s=%s", context_tag, timeout_s)
            result = None
        except Exception as exc:
            log.warning(
                "COLLABORATOR_FAILED context=%s error=%s message=%s",
                context_tag,
                type(exc).__name__,
                str(exc)[:200],
            )
            result = None
    finally:
        executor.shutdown(wait=False)

    if result is None:
        log.info("FALLBACK_USED context=%s", context_tag)
        return fallback()
    return result
