"""
StoryForge
LLM Gateway.

Provider-agnostic model access for the enhancement pipeline:
    - OpenAI Responses API (structured outputs + file_search retrieval)
    - Anthropic Messages API (JSON text output, no retrieval)
    - Local stub for dev/test without API keys
    - ``call_with_retry``: per-attempt timeout, retriable-status detection,
      retry-after honouring and exponential backoff with jitter

Usage:
    from storyforge.ai.gateway import LLMGateway
    gw = LLMGateway.from_config(app.config)
    result = gw.generate(system=..., user=..., schema=..., schema_name=...)
"""

import json
import logging
import os
import random
import re
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from storyforge.core.exceptions import ConfigurationError, ModelTimeoutError

logger = logging.getLogger(__name__)

RETRIABLE_STATUSES = {408, 409, 425, 429}
_TIMEOUT_RE = re.compile(r"time(d)?\s*out", re.I)

# Attempts that outlive their timeout keep running here; the caller moves on
_CALL_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="llm-call")


# ── Retry discipline ─────────────────────────────────────────────────────────


def error_status(err) -> int | None:
    """HTTP status carried by a provider SDK error, if any."""
    status = getattr(err, "status_code", None)
    if status is None:
        status = getattr(err, "status", None)
    if status is None:
        response = getattr(err, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _error_headers(err):
    headers = getattr(err, "headers", None)
    if headers is None:
        headers = getattr(getattr(err, "response", None), "headers", None)
    return headers or {}


def error_request_id(err) -> str | None:
    request_id = getattr(err, "request_id", None)
    if request_id:
        return request_id
    headers = _error_headers(err)
    try:
        return headers.get("x-request-id")
    except AttributeError:
        return None


def retry_after_seconds(err) -> float | None:
    """Server-supplied retry delay in seconds, or None."""
    explicit = getattr(err, "retry_after", None)
    if isinstance(explicit, (int, float)):
        return float(explicit)
    try:
        raw = _error_headers(err).get("retry-after")
    except AttributeError:
        return None
    if raw is None:
        return None
    try:
        return float(int(str(raw).strip()))
    except ValueError:
        return None


def is_retriable(err) -> bool:
    if isinstance(err, (ModelTimeoutError, TimeoutError)):
        return True
    status = error_status(err)
    if status is not None and (status in RETRIABLE_STATUSES or 500 <= status <= 599):
        return True
    return "Timeout" in type(err).__name__ or bool(_TIMEOUT_RE.search(str(err)))


def _run_with_timeout(fn, timeout: float | None):
    if not timeout:
        return fn()
    future = _CALL_EXECUTOR.submit(fn)
    try:
        return future.result(timeout=timeout)
    except FutureTimeoutError:
        future.cancel()
        raise ModelTimeoutError(f"Timeout after {int(timeout * 1000)}ms")


def call_with_retry(
    fn,
    label: str,
    *,
    max_retries: int = 3,
    timeout: float | None = 45.0,
    backoff_base_ms: int = 500,
    jitter_ms: int = 250,
    sleep=time.sleep,
):
    """Call ``fn`` with up to ``max_retries`` retries (``max_retries + 1`` attempts).

    Each attempt is bounded by ``timeout`` seconds. Retries on 408/409/425/429,
    5xx and timeouts; waits for the server's retry-after when given,
    otherwise ``base * 2**attempt`` plus random jitter. Non-retriable errors
    and the final failure are re-raised unchanged.
    """
    attempt = 0
    while True:
        try:
            return _run_with_timeout(fn, timeout)
        except Exception as exc:
            if not is_retriable(exc) or attempt >= max_retries:
                raise
            delay = retry_after_seconds(exc)
            if delay is None:
                jitter = random.randint(0, jitter_ms - 1) if jitter_ms > 0 else 0
                delay = (backoff_base_ms * (2 ** attempt) + jitter) / 1000.0
            logger.warning(
                "LLM %s attempt=%d/%d failed status=%s; retrying in %.2fs",
                label, attempt + 1, max_retries + 1, error_status(exc), delay,
                extra={"attempt": attempt + 1},
            )
            sleep(delay)
            attempt += 1


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    name = "abstract"
    supports_retrieval = False

    @abstractmethod
    def generate(
        self,
        *,
        system: str,
        user: str,
        model: str,
        schema: dict,
        schema_name: str,
        max_output_tokens: int,
        temperature: float,
    ) -> dict:
        """
        Request one structured completion.

        Returns:
            dict with keys: parsed (dict | None), text, request_id,
            prompt_tokens, completion_tokens, model
        """
        ...

    def retrieve(
        self,
        *,
        query: str,
        knowledge_base_id: str,
        model: str,
        max_results: int,
        max_output_tokens: int,
    ) -> dict:
        """
        Run one bounded search over the project's knowledge base.

        Returns:
            dict with keys: snippets (list[str]), summary (str)
        """
        raise NotImplementedError(f"{self.name} provider does not support retrieval")


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI Responses API provider."""

    name = "openai"
    supports_retrieval = True

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import openai
                self._client = openai.OpenAI(api_key=self.api_key, max_retries=0)
            except ImportError:
                raise RuntimeError("openai package not installed. Run: pip install openai")
        return self._client

    def generate(self, *, system, user, model, schema, schema_name, max_output_tokens, temperature) -> dict:
        client = self._get_client()
        response = client.responses.create(
            model=model,
            input=[
                {"role": "system", "content": [{"type": "input_text", "text": system}]},
                {"role": "user", "content": [{"type": "input_text", "text": user}]},
            ],
            text={"format": {"type": "json_schema", "name": schema_name, "strict": True, "schema": schema}},
            tool_choice="none",
            max_output_tokens=max_output_tokens,
            temperature=temperature,
        )

        parsed = None
        for node in getattr(response, "output", None) or []:
            if getattr(node, "type", None) != "message":
                continue
            for part in getattr(node, "content", None) or []:
                candidate = getattr(part, "parsed", None)
                if candidate:
                    parsed = candidate
                    break
            if parsed:
                break

        usage = getattr(response, "usage", None)
        return {
            "parsed": parsed,
            "text": getattr(response, "output_text", "") or "",
            "request_id": getattr(response, "_request_id", None),
            "prompt_tokens": getattr(usage, "input_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "output_tokens", 0) or 0,
            "model": model,
        }

    def retrieve(self, *, query, knowledge_base_id, model, max_results, max_output_tokens) -> dict:
        client = self._get_client()
        response = client.responses.create(
            model=model,
            input=[
                {
                    "role": "system",
                    "content": [{
                        "type": "input_text",
                        "text": "You will perform a single file_search and then stop. Do not generate a story.",
                    }],
                },
                {"role": "user", "content": [{"type": "input_text", "text": query}]},
            ],
            tools=[{
                "type": "file_search",
                "vector_store_ids": [knowledge_base_id],
                "max_num_results": max_results,
                "ranking_options": {"ranker": "auto", "score_threshold": 0.2},
            }],
            parallel_tool_calls=False,
            max_tool_calls=1,
            include=["file_search_call.results"],
            max_output_tokens=max_output_tokens,
            temperature=0.0,
        )
        snippets = []
        for node in getattr(response, "output", None) or []:
            if getattr(node, "type", None) != "file_search_call":
                continue
            for hit in getattr(node, "results", None) or []:
                text = getattr(hit, "text", None)
                if text:
                    snippets.append(text)
        return {"snippets": snippets, "summary": getattr(response, "output_text", "") or ""}


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider. Structured output is requested as JSON text."""

    name = "anthropic"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY", "")
        self._client = None

    def _get_client(self):
        if self._client is None:
            try:
                import anthropic
                self._client = anthropic.Anthropic(api_key=self.api_key, max_retries=0)
            except ImportError:
                raise RuntimeError("anthropic package not installed. Run: pip install anthropic")
        return self._client

    def generate(self, *, system, user, model, schema, schema_name, max_output_tokens, temperature) -> dict:
        client = self._get_client()
        system_msg = (
            f"{system}\n\nRespond with a single JSON object named {schema_name} that "
            f"validates against this JSON schema and nothing else:\n{json.dumps(schema)}"
        )
        response = client.messages.create(
            model=model,
            system=system_msg,
            messages=[{"role": "user", "content": user}],
            max_tokens=max_output_tokens,
            temperature=temperature,
        )
        text = "".join(
            getattr(block, "text", "") for block in response.content
            if getattr(block, "type", "text") == "text"
        )
        return {
            "parsed": None,
            "text": text,
            "request_id": getattr(response, "_request_id", None),
            "prompt_tokens": response.usage.input_tokens,
            "completion_tokens": response.usage.output_tokens,
            "model": model,
        }


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns a deterministic enhancement built from the
    work item in the prompt. No API key required.
    """

    name = "local"

    def generate(self, *, system, user, model, schema, schema_name, max_output_tokens, temperature) -> dict:
        try:
            payload = json.loads(user[user.index("{"):])
        except ValueError:
            payload = {}
        item = payload.get("workItemPlain") or {}
        title = (item.get("title") or "Untitled work item").strip()
        description = (item.get("descriptionText") or "").strip()

        content = {
            "title": title,
            "type": "User Story",
            "roleGoalReason": f"As a user, I want {title.lower()} so that the outcome is delivered.",
            "descriptionText": description or f"Deliver: {title}",
            "acceptanceCriteria": [f"{title} works as described"],
            "testCases": [{
                "given": "the feature is deployed",
                "when": f"the user exercises {title.lower()}",
                "then": "the expected outcome is observed",
            }],
            "implementationNotes": [],
            "tasks": [f"Implement {title}"],
            "gaps": [],
            "dependencies": [],
            "storyPoints": 3,
            "estimateRationale": "Default local estimate.",
            "tags": [],
        }
        text = json.dumps(content)
        return {
            "parsed": None,
            "text": text,
            "request_id": None,
            "prompt_tokens": len(user.split()) * 2,  # rough estimate
            "completion_tokens": len(text.split()) * 2,
            "model": "local-stub",
        }


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for model calls made by the enhancement pipeline.

    Routes by model name, falls back to the local stub when the provider
    has no API key, and wraps every call in ``call_with_retry``.
    """

    # Model prefix → provider
    PROVIDER_PREFIXES = (
        ("gpt-", "openai"),
        ("o1", "openai"),
        ("o3", "openai"),
        ("o4", "openai"),
        ("claude-", "anthropic"),
        ("local-stub", "local"),
    )

    def __init__(
        self,
        *,
        generation_model: str = "gpt-4o-mini",
        retrieval_model: str = "gpt-4o-mini",
        timeout: float | None = 45.0,
        max_retries: int = 3,
        retrieval_max_retries: int = 1,
        backoff_base_ms: int = 500,
        jitter_ms: int = 250,
        max_output_tokens: int = 1200,
        providers: dict | None = None,
        sleep=time.sleep,
    ):
        self.generation_model = generation_model
        self.retrieval_model = retrieval_model
        self.timeout = timeout
        self.max_retries = max_retries
        self.retrieval_max_retries = retrieval_max_retries
        self.backoff_base_ms = backoff_base_ms
        self.jitter_ms = jitter_ms
        self.max_output_tokens = max_output_tokens
        self._sleep = sleep
        self._providers = providers if providers is not None else self._init_providers()
        self._providers.setdefault("local", LocalStubProvider())

    @classmethod
    def from_config(cls, cfg, **overrides) -> "LLMGateway":
        kwargs = dict(
            generation_model=cfg.get("LLM_GENERATION_MODEL", "gpt-4o-mini"),
            retrieval_model=cfg.get("LLM_RETRIEVAL_MODEL", "gpt-4o-mini"),
            timeout=cfg.get("LLM_CALL_TIMEOUT_SECONDS", 45.0),
            max_retries=cfg.get("LLM_MAX_RETRIES", 3),
            retrieval_max_retries=cfg.get("LLM_RETRIEVAL_MAX_RETRIES", 1),
            backoff_base_ms=cfg.get("LLM_BACKOFF_BASE_MS", 500),
            jitter_ms=cfg.get("LLM_BACKOFF_JITTER_MS", 250),
            max_output_tokens=cfg.get("LLM_MAX_OUTPUT_TOKENS", 1200),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @staticmethod
    def _init_providers() -> dict:
        """Register real providers whose API keys are present."""
        providers = {}
        if os.getenv("OPENAI_API_KEY"):
            providers["openai"] = OpenAIProvider()
        if os.getenv("ANTHROPIC_API_KEY"):
            providers["anthropic"] = AnthropicProvider()
        return providers

    def _provider_name(self, model: str) -> str:
        for prefix, name in self.PROVIDER_PREFIXES:
            if model.startswith(prefix):
                return name
        return "local"

    def get_provider(self, model: str) -> tuple[LLMProvider, str]:
        """
        Resolve model to provider. Falls back to local stub if real provider unavailable.
        Returns (provider, provider_name).
        """
        provider_name = self._provider_name(model)
        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        logger.warning(
            "Provider '%s' not available (no API key?). Falling back to local stub for model '%s'.",
            provider_name, model,
        )
        return self._providers["local"], "local"

    def generate(self, *, system: str, user: str, schema: dict, schema_name: str,
                 temperature: float = 0.3) -> dict:
        """Structured generation call under the full retry budget."""
        provider, provider_name = self.get_provider(self.generation_model)
        start = time.time()
        result = call_with_retry(
            lambda: provider.generate(
                system=system,
                user=user,
                model=self.generation_model,
                schema=schema,
                schema_name=schema_name,
                max_output_tokens=self.max_output_tokens,
                temperature=temperature,
            ),
            "generation",
            max_retries=self.max_retries,
            timeout=self.timeout,
            backoff_base_ms=self.backoff_base_ms,
            jitter_ms=self.jitter_ms,
            sleep=self._sleep,
        )
        result["provider"] = provider_name
        result["latency_ms"] = int((time.time() - start) * 1000)
        logger.info(
            "LLM generation ok provider=%s model=%s tokens=%s/%s latency=%dms",
            provider_name, result.get("model"), result.get("prompt_tokens"),
            result.get("completion_tokens"), result["latency_ms"],
        )
        return result

    def supports_retrieval(self) -> bool:
        provider, _ = self.get_provider(self.retrieval_model)
        return provider.supports_retrieval

    def retrieve(self, *, query: str, knowledge_base_id: str, max_results: int = 8) -> dict:
        """Single-shot knowledge-base search under the retrieval retry budget."""
        provider, provider_name = self.get_provider(self.retrieval_model)
        if not provider.supports_retrieval:
            raise ConfigurationError(f"Provider '{provider_name}' does not support retrieval")
        return call_with_retry(
            lambda: provider.retrieve(
                query=query,
                knowledge_base_id=knowledge_base_id,
                model=self.retrieval_model,
                max_results=max_results,
                max_output_tokens=self.max_output_tokens,
            ),
            "retrieval",
            max_retries=self.retrieval_max_retries,
            timeout=self.timeout,
            backoff_base_ms=self.backoff_base_ms,
            jitter_ms=self.jitter_ms,
            sleep=self._sleep,
        )
