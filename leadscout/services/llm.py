"""
Streaming text generation over LangChain chat models.

Each model has its own key pool (``openai:<model>``). A 429 on one key moves
to the next key; once every key of a model is spent the next model in the
chain answers, and the first model is re-probed before giving up. Callers
that can live without the model (expansion, location research) catch
``GenerationUnavailable`` and fall back to heuristics.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from leadscout import settings
from leadscout.errors import GenerationUnavailable, ResourceExhausted, RunCancelled
from leadscout.keys import ApiKey, FallbackStep, KeyRotationManager, model_service
from leadscout.state import CancelToken

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a concise research assistant for local business prospecting."
CAPABILITY = "text_generation"


def _make_chat_client(api_key: str, model: str = settings.LANGCHAIN_MODEL,
                      temperature: float | None = settings.TEMPERATURE):
    kwargs: dict[str, Any] = {
        "model": model,
        "api_key": api_key,
        "timeout": settings.LLM_TIMEOUT_S,
        "max_retries": 0,
        "streaming": True,
        "verbose": False,
    }
    # Some models (e.g., gpt-5) only support default temperature; omit override
    if temperature is not None and not (model or "").lower().startswith("gpt-5"):
        kwargs["temperature"] = temperature
    return ChatOpenAI(**kwargs)


class TextGenerator:
    def __init__(self, keys: KeyRotationManager, *, provider: str = "openai",
                 models: Optional[Sequence[str]] = None,
                 client_factory: Callable[[str, str], Any] = _make_chat_client):
        self.keys = keys
        self.provider = provider
        self.models = list(models if models is not None else settings.LLM_MODELS)
        self._client_factory = client_factory
        self._services = {model_service(provider, m): m for m in self.models}

    @property
    def chain(self) -> list[FallbackStep]:
        return [FallbackStep(svc, probe_on_exhaustion=(i == 0)) for i, svc in enumerate(self._services)]

    @property
    def available(self) -> bool:
        return any(self.keys.has(svc) for svc in self._services)

    async def complete(
        self,
        prompt: str,
        on_token: Optional[Callable[[str], None]] = None,
        on_complete: Optional[Callable[[str], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        if not self.available:
            raise GenerationUnavailable(f"no {self.provider} API keys configured")

        messages = [SystemMessage(content=SYSTEM_PROMPT), HumanMessage(content=prompt)]

        async def _stream(service: str, key: ApiKey) -> str:
            model = self._services[service]
            llm = self._client_factory(key.value, model)
            parts: list[str] = []
            async for chunk in llm.astream(messages):
                if cancel_token is not None:
                    cancel_token.raise_if_cancelled()
                text = getattr(chunk, "content", "") or ""
                if not isinstance(text, str):
                    text = str(text)
                if text:
                    parts.append(text)
                    if on_token:
                        on_token(text)
            logger.debug("[llm] answered by model=%s", model)
            return "".join(parts)

        async def _run() -> str:
            return await self.keys.execute_chain(self.chain, _stream, capability=CAPABILITY)

        try:
            if cancel_token is not None:
                text = await cancel_token.guard(_run())
            else:
                text = await _run()
        except ResourceExhausted as exc:
            if on_error:
                on_error(exc)
            raise GenerationUnavailable(str(exc)) from exc
        except RunCancelled:
            raise
        except Exception as exc:
            logger.warning("generation failed: %s", exc)
            if on_error:
                on_error(exc)
            raise
        if on_complete:
            on_complete(text)
        return text


def parse_lines(text: str, *, max_len: int = 50) -> list[str]:
    """Split a one-item-per-line model answer into clean entries.

    Bullets and list numbering are stripped; empty lines and lines of
    ``max_len`` characters or more are skipped.
    """
    out: list[str] = []
    for raw in (text or "").splitlines():
        line = raw.strip().lstrip("-*•").strip()
        # "1. Lyon" / "2) Nice"
        head, sep, rest = line.partition(" ")
        if sep and head.rstrip(".)").isdigit():
            line = rest.strip()
        line = line.strip("\"'`").strip()
        if line and len(line) < max_len:
            out.append(line)
    return out
