import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dotenv import load_dotenv
from openai import OpenAI

from sheetquery.utils.llm_fallback import call_chat_with_fallback, extract_response_text
from sheetquery.utils.llm_json_repair import parse_json_object_with_repair
from sheetquery.utils.retries import call_with_retries
from sheetquery.utils.settings import EngineSettings

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You analyse spreadsheets for a search engine. Answer with a single JSON object that follows "
    "the schema given in the request. No prose, no markdown."
)


class OpenAICompletionClient:
    """
    Completion collaborator: ``complete(prompt, response_schema) -> dict``.

    Walks the configured model chain, retries transient failures and repairs
    near-JSON replies. Any remaining failure is raised to the caller, which owns
    the fallback.
    """

    def __init__(
        self,
        client: Any = None,
        *,
        model_chain: Sequence[str] = (),
        temperature: float = 0.1,
        timeout_s: float = 20.0,
        max_retries: int = 2,
    ):
        if client is None:
            load_dotenv()
            client = OpenAI(
                api_key=os.getenv("OPENAI_API_KEY"),
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                timeout=timeout_s,
            )
        self.client = client
        self.model_chain = [m for m in (model_chain or EngineSettings().completion_models) if m]
        self.temperature = temperature
        self.max_retries = max_retries
        self.last_model: Optional[str] = None

    def complete(
        self,
        prompt: str,
        response_schema: Dict[str, Any],
        *,
        system: Optional[str] = None,
        context_tag: str = "completion",
    ) -> Dict[str, Any]:
        messages = [
            {"role": "system", "content": system or DEFAULT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": prompt + "\n\nRESPONSE JSON SCHEMA:\n" + json.dumps(response_schema, ensure_ascii=False),
            },
        ]

        def _call() -> Tuple[Any, str]:
            return call_chat_with_fallback(
                self.client,
                messages,
                self.model_chain,
                call_kwargs={"response_format": {"type": "json_object"}, "temperature": self.temperature},
                logger=logger,
                context_tag=context_tag,
            )

        response, model = call_with_retries(_call, max_retries=self.max_retries)
        self.last_model = model
        payload, trace = parse_json_object_with_repair(
            extract_response_text(response), actor=context_tag, schema=response_schema
        )
        if trace.get("used_repair"):
            logger.info("LLM_JSON_REPAIRED context=%s model=%s step=%s", context_tag, model, trace.get("chosen_step"))
        return payload


class OpenAIEmbeddingClient:
    """Embedding collaborator: ``embed(text) -> list[float]``."""

    def __init__(self, client: Any = None, *, model: Optional[str] = None, timeout_s: float = 20.0):
        if client is None:
            load_dotenv()
            client = OpenAI(
                api_key=os.getenv("OPENAI_API_KEY"),
                base_url=os.getenv("OPENAI_BASE_URL") or None,
                timeout=timeout_s,
            )
        self.client = client
        self.model = model or EngineSettings().embedding_model

    def embed(self, text: str) -> List[float]:
        response = call_with_retries(lambda: self.client.embeddings.create(model=self.model, input=str(text)))
        data = getattr(response, "data", None) or []
        if not data:
            raise ValueError("EMPTY_EMBEDDING")
        return [float(x) for x in data[0].embedding]


def build_default_collaborators(
    settings: Optional[EngineSettings] = None,
) -> Tuple[Optional[OpenAICompletionClient], Optional[OpenAIEmbeddingClient]]:
    """
    (completion, embedding) collaborators from the environment, or (None, None)
    when OPENAI_API_KEY is absent so every component runs on its fallbacks.
    """
    load_dotenv()
    settings = settings or EngineSettings.from_env()
    if not os.getenv("OPENAI_API_KEY"):
        logger.info("COLLABORATORS_DISABLED reason=missing_api_key")
        return None, None
    client = OpenAI(
        api_key=os.getenv("OPENAI_API_KEY"),
        base_url=os.getenv("OPENAI_BASE_URL") or None,
        timeout=settings.collaborator_timeout_s,
    )
    completion = OpenAICompletionClient(
        client,
        model_chain=settings.completion_models,
        timeout_s=settings.collaborator_timeout_s,
    )
    embedding = OpenAIEmbeddingClient(client, model=settings.embedding_model)
    return completion, embedding
