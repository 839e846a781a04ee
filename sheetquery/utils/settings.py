import logging
import os
from dataclasses import dataclass, field, fields
from typing import Dict, Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

ENV_PREFIX = "SHEETQUERY_"
DEFAULT_COMPLETION_MODELS = ("gpt-4o-mini", "gpt-4.1-mini")
DEFAULT_EMBEDDING_MODEL = "text-embedding-3-small"


def _default_pattern_ratios() -> Dict[str, float]:
    return {"email": 0.8, "phone": 0.7, "date": 0.8, "amount": 0.9, "vendor": 0.7}


@dataclass(frozen=True)
class EngineSettings:
    # column matching
    match_floor: float = 0.5
    fuzzy_min_ratio: float = 0.7
    fuzzy_weight: float = 0.9
    synonym_weight: float = 0.85
    embedding_min_similarity: float = 0.8
    semantic_default_confidence: float = 0.7
    pattern_ratios: Dict[str, float] = field(default_factory=_default_pattern_ratios)
    pattern_min_matches: int = 3
    pattern_sample_size: int = 20
    # sheet matching
    sheet_llm_min_score: float = 0.5
    sheet_fallback_min_score: float = 0.3
    sheet_batch_size: int = 20
    # execution
    execution_timeout_s: float = 5.0
    max_attempts: int = 3
    collaborator_timeout_s: float = 20.0
    request_timeout_s: float = 60.0
    # cache / retrieval
    cache_ttl_s: float = 1800.0
    cache_max_entries: int = 50
    retriever_row_cap: int = 1000
    # intent expansion
    expansion_max_concepts: int = 3
    expansion_max_variants: int = 8
    # collaborators
    completion_models: Tuple[str, ...] = DEFAULT_COMPLETION_MODELS
    embedding_model: str = DEFAULT_EMBEDDING_MODEL

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """
        Reads SHEETQUERY_<FIELD> overrides (e.g. SHEETQUERY_MATCH_FLOOR=0.6).
        Malformed values are logged and the default is kept.
        """
        load_dotenv()
        overrides = {}
        for f in fields(cls):
            if f.name == "pattern_ratios":
                continue
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None or not raw.strip():
                continue
            try:
                if f.name == "completion_models":
                    models = tuple(m.strip() for m in raw.split(",") if m.strip())
                    if models:
                        overrides[f.name] = models
                elif f.type in ("float", float):
                    overrides[f.name] = float(raw)
                elif f.type in ("int", int):
                    overrides[f.name] = int(raw)
                else:
                    overrides[f.name] = raw.strip()
            except ValueError:
                logger.warning("SETTINGS_INVALID_VALUE name=%s value=%r", f.name, raw)

        ratios = _default_pattern_ratios()
        for kind in list(ratios):
            raw = os.getenv(f"{ENV_PREFIX}PATTERN_RATIO_{kind.upper()}")
            if not raw:
                continue
            try:
                ratios[kind] = float(raw)
            except ValueError:
                logger.warning("SETTINGS_INVALID_VALUE name=pattern_ratio_%s value=%r", kind, raw)
        overrides["pattern_ratios"] = ratios
        return cls(**overrides)
