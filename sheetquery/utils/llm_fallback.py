import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple


class ModelChainError(RuntimeError):
    """Every model of the chain failed; ``failures`` holds (model, error) pairs in call order."""

    def __init__(self, failures: List[Tuple[str, str]]):
        summary = "; ".join(f"{model}: {error}" for model, error in failures) or "no models configured"
        super().__init__(f"All completion models failed ({summary})")
        self.failures = failures


def _block_text(block: Any) -> str:
    if block is None:
        return ""
    if isinstance(block, str):
        return block
    if isinstance(block, dict):
        return str(block.get("text") or "")
    return str(getattr(block, "text", "") or "")


def extract_response_text(response: Any) -> str:
    """Message text of the first choice of a chat completion ('' when absent)."""
    choices = getattr(response, "choices", None)
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    # Some OpenAI-compatible servers return a list of content blocks.
    if isinstance(content, (list, tuple)):
        return "\n".join(t for t in (_block_text(b).strip() for b in content) if t)
    return _block_text(content).strip()


def _empty_reason(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    first = choices[0] if choices else None
    refusal = getattr(getattr(first, "message", None), "refusal", None)
    if refusal:
        return f"refusal={str(refusal)[:120]!r}"
    usage = getattr(response, "usage", None)
    return "finish_reason={} completion_tokens={}".format(
        getattr(first, "finish_reason", None),
        getattr(usage, "completion_tokens", None),
    )


def call_chat_with_fallback(
    llm_client: Any,
    messages: List[Dict[str, str]],
    model_chain: Iterable[str],
    *,
    call_kwargs: Optional[Dict[str, Any]] = None,
    logger: Optional[logging.Logger] = None,
    context_tag: str = "completion",
) -> Tuple[Any, str]:
    """
    Asks each model of the chain in turn and returns (response, model) for the
    first reply with text. An empty reply counts as a failure of that model.
    Raises ModelChainError naming every failed model.
    """
    failures: List[Tuple[str, str]] = []
    for model in [m for m in model_chain if m]:
        try:
            response = llm_client.chat.completions.create(model=model, messages=messages, **(call_kwargs or {}))
        except Exception as exc:
            error = f"{type(exc).__name__}: {str(exc)[:200]}"
        else:
            if extract_response_text(response):
                return response, model
            error = f"EMPTY_COMPLETION {_empty_reason(response)}"
        failures.append((model, error))
        if logger:
            logger.warning("LLM_FALLBACK_WARNING context=%s model=%s error=%s", context_tag, model, error)
    raise ModelChainError(failures)
