"""
Metered calls to the generation API with stored-key rotation.

The registry is consulted right before each call and told the outcome right
after. Failures are recorded against the key and re-raised; rotating to a
different key is an explicit loop in :meth:`GenerationClient.generate_with_rotation`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from loguru import logger

from oloro.config import Config
from oloro.core.error_taxonomy import classify_exception, should_rotate_credential
from oloro.core.errors import NoCredentialAvailable
from oloro.data.key_registry import KeyRegistry

# backend(api_key, prompt) -> (text, tokens_used)
GenerationBackend = Callable[[str, Any], Awaitable[tuple[str, int]]]


@dataclass(frozen=True)
class GenerationResult:
    text: str
    tokens_used: int
    credential_id: Optional[str]


class GenerationClient:
    def __init__(
        self,
        registry: KeyRegistry,
        backend: GenerationBackend,
        *,
        fallback_key_getter: Callable[[], str] | None = None,
    ):
        self._registry = registry
        self._backend = backend
        self._fallback_key_getter = fallback_key_getter or Config.env_fallback_key

    def _resolve_key(self, exclude: Iterable[str] = ()) -> tuple[str, Optional[str]]:
        credential = self._registry.select_credential(exclude=exclude)
        if credential is not None:
            return credential.secret, credential.id
        fallback = (self._fallback_key_getter() or "").strip()
        if fallback:
            logger.debug("No healthy stored API key; using environment key")
            return fallback, None
        raise NoCredentialAvailable()

    async def generate(self, prompt: Any, *, exclude: Iterable[str] = ()) -> GenerationResult:
        api_key, credential_id = self._resolve_key(exclude)
        try:
            text, tokens = await self._backend(api_key, prompt)
        except Exception as exc:
            if credential_id:
                self._registry.log_failure(credential_id, str(exc) or type(exc).__name__)
            raise
        tokens = max(0, int(tokens or 0))
        if credential_id:
            self._registry.log_success(credential_id, tokens)
        return GenerationResult(text=text or "", tokens_used=tokens, credential_id=credential_id)

    async def generate_with_rotation(self, prompt: Any, *, max_attempts: int = 3) -> GenerationResult:
        attempts = max(1, int(max_attempts))
        tried: list[str] = []
        for attempt in range(1, attempts + 1):
            used = self._registry.select_credential(exclude=tried)
            try:
                return await self.generate(prompt, exclude=tried)
            except Exception as exc:
                category = classify_exception(exc)
                if used is None or attempt == attempts or not should_rotate_credential(category):
                    raise
                tried.append(used.id)
                if self._registry.select_credential(exclude=tried) is None:
                    raise
                logger.info(f"Generation failed ({category.value}); retrying with another key ({attempt}/{attempts})")
        raise NoCredentialAvailable()


def _extract_tokens(response: Any) -> int:
    usage = getattr(response, "usage_metadata", None)
    if usage is None:
        return 0
    prompt_tokens = getattr(usage, "prompt_token_count", 0) or 0
    output_tokens = getattr(usage, "candidates_token_count", 0) or 0
    return int(prompt_tokens) + int(output_tokens)


def gemini_backend(model: str | None = None) -> GenerationBackend:
    """Backend calling Google Gemini via ``google-generativeai``."""

    async def _call(api_key: str, prompt: Any) -> tuple[str, int]:
        model_name = model or Config.GEMINI_MODEL
        try:
            import google.generativeai as genai
        except ImportError:
            raise RuntimeError("google-generativeai library not installed. Run: pip install google-generativeai")

        loop = asyncio.get_running_loop()

        # Run in executor since genai is synchronous
        def _generate() -> tuple[str, int]:
            genai.configure(api_key=api_key)
            gemini_model = genai.GenerativeModel(model_name)
            response = gemini_model.generate_content(prompt)
            return response.text, _extract_tokens(response)

        text, tokens = await loop.run_in_executor(None, _generate)
        logger.info(f"Gemini generation complete: {len(text or '')} chars, {tokens} tokens")
        return text, tokens

    return _call
