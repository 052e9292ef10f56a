"""LLM client, per-project LLM settings and JSON extraction from model output."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

import commentjson
import yaml
from json_repair import repair_json
from openai import OpenAI

from .config import get_settings
from .errors import InternalError
from .models import LlmConfig, new_id, utcnow
from .storage import Repository

logger = logging.getLogger("specforge.llm")

T = TypeVar("T")

MASKED_KEY = "********"


class LlmUnavailableError(InternalError):
    """The LLM could not be reached after all retries."""


class LlmClient(Protocol):
    def generate(self, prompt: str) -> str: ...


def call_with_retries(fn: Callable[[], T], retries: int = 3, backoff: float = 1.0,
                      log: Optional[Callable[[str], None]] = None) -> T:
    """Run ``fn`` up to ``retries`` times, sleeping ``backoff * attempt`` between tries."""
    last_exception: Optional[Exception] = None
    for attempt in range(1, retries + 1):
        try:
            return fn()
        except Exception as e:
            last_exception = e
            if log:
                log(f"Attempt {attempt}/{retries} failed: {e}")
            if attempt < retries and backoff:
                time.sleep(backoff * attempt)
    raise LlmUnavailableError(f"All {retries} retry attempts failed.", details=str(last_exception)) from last_exception


class OpenAiLlmClient:
    """Thin wrapper over the OpenAI Responses API."""

    def __init__(self, model: str, api_key: str = "", base_url: str = "", timeout: Optional[float] = 60.0,
                 retries: int = 3):
        client_kwargs: Dict[str, Any] = {"max_retries": 0}
        if api_key:
            client_kwargs["api_key"] = api_key
        if base_url:
            client_kwargs["base_url"] = base_url
        if timeout is not None:
            client_kwargs["timeout"] = timeout
        self.model = model
        self.retries = retries
        self._client = OpenAI(**client_kwargs)

    def _invoke_once(self, prompt: str) -> str:
        resp = self._client.responses.create(model=self.model, input=prompt)
        return (getattr(resp, "output_text", "") or "").strip()

    def generate(self, prompt: str) -> str:
        return call_with_retries(lambda: self._invoke_once(prompt), retries=self.retries, log=logger.warning)

    def list_models(self) -> List[str]:
        return sorted(m.id for m in self._client.models.list())

    def test_connection(self) -> None:
        self._client.models.list()


def build_client(config: LlmConfig) -> OpenAiLlmClient:
    if config.provider not in ("openai", ""):
        # Any OpenAI-compatible endpoint works through base_url.
        logger.info(f"Using OpenAI-compatible transport for provider {config.provider}")
    return OpenAiLlmClient(model=config.model or get_settings().openai_model,
                           api_key=config.api_key, base_url=config.base_url)


class LlmSettingsService:
    """One LLM configuration per project; keys are masked on read."""

    def __init__(self, repository: Repository, client_factory: Callable[[LlmConfig], LlmClient] = build_client):
        self.repository = repository
        self.client_factory = client_factory

    def _resolve_masked_key(self, config: LlmConfig) -> LlmConfig:
        # Only the literal mask (or an empty key) together with a config id means "keep the stored key".
        if config.api_key in ("", MASKED_KEY) and config.id:
            existing = self.repository.get_llm_config(config.project_id)
            if existing is not None:
                config.api_key = existing.api_key
        return config

    def save_config(self, config: LlmConfig) -> LlmConfig:
        config = self._resolve_masked_key(config)
        if not config.id:
            config.id = new_id()
        existing = self.repository.get_llm_config(config.project_id)
        if existing is not None and existing.id != config.id:
            self.repository.delete(LlmConfig, existing.id)
        config.updated_at = utcnow()
        self.repository.save(config)
        logger.info(f"LLM config saved for project {config.project_id} ({config.provider}/{config.model})")
        return self.mask(config)

    def get_config(self, project_id: str) -> Optional[LlmConfig]:
        config = self.repository.get_llm_config(project_id)
        return self.mask(config) if config is not None else None

    @staticmethod
    def mask(config: LlmConfig) -> LlmConfig:
        masked = LlmConfig.from_dict(config.to_dict())
        if masked.api_key:
            masked.api_key = MASKED_KEY
        return masked

    def get_client(self, project_id: str) -> LlmClient:
        config = self.repository.get_llm_config(project_id)
        if config is None:
            settings = get_settings()
            config = LlmConfig(project_id=project_id, model=settings.openai_model, api_key=settings.openai_api_key)
        return self.client_factory(config)

    def test_configuration(self, config: LlmConfig) -> None:
        client = self.client_factory(self._resolve_masked_key(config))
        tester = getattr(client, "test_connection", None)
        if tester is not None:
            tester()
        else:
            client.generate("ping")


# ----------------------------------------------------------------------
# JSON extraction
# ----------------------------------------------------------------------

_FENCE_PATTERN = re.compile(r"```[a-zA-Z]*\n?|```\n?")


def clean_triple_backticks(text: str) -> str:
    return _FENCE_PATTERN.sub("", text)


def strip_comments(text: str) -> str:
    """Drop ``//`` and ``/* */`` comments that sit outside string literals."""
    out = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def outermost_json_span(text: str) -> Optional[str]:
    """Return the first balanced ``{...}`` or ``[...]`` substring, ignoring brackets in strings."""
    start = -1
    for idx, ch in enumerate(text):
        if ch in "{[":
            start = idx
            break
    if start < 0:
        return None
    stack: List[str] = []
    in_string = False
    escaped = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack.pop() != ch:
                return None
            if not stack:
                return text[start:idx + 1]
    # unbalanced tail; let the repair step have a go
    return text[start:]


def extract_json(text: str) -> Any:
    """Parse the JSON object or array embedded in an LLM response.

    Raises ``ValueError`` when nothing usable can be recovered.
    """
    if not text or not text.strip():
        raise ValueError("empty response")
    cleaned = strip_comments(clean_triple_backticks(text))
    candidate = outermost_json_span(cleaned)
    if candidate is None:
        raise ValueError("no JSON object or array found in response")

    errors = []
    for loader in (json.loads, commentjson.loads, yaml.safe_load):
        try:
            data = loader(candidate)
        except Exception as e:
            errors.append(f"{getattr(loader, '__module__', loader)}: {e}")
            continue
        if isinstance(data, (dict, list)):
            return data

    repaired = repair_json(candidate)
    try:
        data = json.loads(repaired) if isinstance(repaired, str) else repaired
    except ValueError as e:
        errors.append(f"json_repair: {e}")
        data = None
    if isinstance(data, (dict, list)) and data:
        return data
    raise ValueError("could not parse JSON from response: " + " | ".join(errors))
