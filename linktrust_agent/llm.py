"""
Language-model runtimes and their availability tracking.

Two runtimes share one small async interface: a local Ollama server (default)
and Google Gemini through google-genai. ModelAvailability probes the active
runtime (list models, then a 1-token generation) at most once per interval
and caches the boolean; nothing else writes that boolean.
"""
from __future__ import annotations

import asyncio
import time
from typing import Callable, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .logger import get_logger
from .models import ModelHealth

logger = get_logger(__name__)

LIST_TIMEOUT_S = 5.0
TEST_TIMEOUT_S = 20.0
DEFAULT_CHECK_INTERVAL_S = 300.0


class ModelError(Exception):
    """A model runtime call failed."""


class ModelTimeout(ModelError):
    pass


class ModelHTTPError(ModelError):
    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status


class ModelRuntime(Protocol):
    name: str
    model: str

    @property
    def configured(self) -> bool: ...

    async def list_models(self, timeout: float | None = None) -> list[str]: ...

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> str: ...


def _is_placeholder(value: str) -> bool:
    return not value or "placeholder" in value.lower()


class OllamaRuntime:
    name = "ollama"

    def __init__(self, client: httpx.AsyncClient, base_url: str, model: str) -> None:
        self.client = client
        self.base_url = (base_url or "").rstrip("/")
        self.model = model

    @property
    def configured(self) -> bool:
        return not _is_placeholder(self.base_url)

    async def _request(self, method: str, path: str, timeout: float | None, **kwargs) -> httpx.Response:
        try:
            res = await self.client.request(method, f"{self.base_url}{path}", timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise ModelTimeout(f"Ollama timed out on {path}") from e
        except httpx.HTTPError as e:
            raise ModelError(f"Cannot connect to Ollama at {self.base_url}: {e}") from e
        if not res.is_success:
            raise ModelHTTPError(res.status_code, f"Ollama {path} returned {res.status_code}: {res.text[:200]}")
        return res

    async def list_models(self, timeout: float | None = None) -> list[str]:
        res = await self._request("GET", "/api/tags", timeout)
        try:
            data = res.json()
        except ValueError as e:
            raise ModelError("Ollama returned a malformed model list") from e
        return [m.get("name", "") for m in data.get("models") or [] if isinstance(m, dict)]

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> str:
        options: dict = {"temperature": temperature, "top_p": 0.9, "num_predict": max_tokens or 2000}
        body = {"model": model or self.model, "prompt": prompt, "stream": False, "options": options}
        res = await self._request("POST", "/api/generate", timeout, json=body)

        if not res.text.strip():
            return ""
        try:
            data = res.json()
        except ValueError as e:
            raise ModelError("Ollama returned a malformed response") from e
        if data.get("error"):
            raise ModelError(f"Ollama error: {data['error']}")
        return data.get("response") or data.get("text") or data.get("content") or ""


class GeminiRuntime:
    name = "gemini"

    def __init__(self, api_key: str, model: str, client: genai.Client | None = None) -> None:
        self.api_key = (api_key or "").strip()
        self.model = model
        self._client = client

    @property
    def configured(self) -> bool:
        return self._client is not None or not _is_placeholder(self.api_key)

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _call(self, coro, timeout: float | None):
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError as e:
            raise ModelTimeout("Gemini timed out") from e
        except genai_errors.APIError as e:
            raise ModelHTTPError(int(e.code or 0), str(e)) from e
        except httpx.HTTPError as e:
            raise ModelError(f"Gemini transport error: {e}") from e

    async def list_models(self, timeout: float | None = None) -> list[str]:
        async def _collect() -> list[str]:
            names = []
            async for m in await self.client.aio.models.list():
                name = (m.name or "").removeprefix("models/")
                if name:
                    names.append(name)
            return names

        return await self._call(_collect(), timeout)

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float = 0.2,
        timeout: float | None = None,
    ) -> str:
        config = genai_types.GenerateContentConfig(
            temperature=temperature,
            max_output_tokens=max_tokens or 2000,
        )
        resp = await self._call(
            self.client.aio.models.generate_content(model=model or self.model, contents=prompt, config=config),
            timeout,
        )
        return (getattr(resp, "text", None) or "").strip()


def build_runtime(settings, client: httpx.AsyncClient) -> ModelRuntime:
    if settings.ai_provider == "gemini":
        return GeminiRuntime(settings.gemini_api_key, settings.gemini_model)
    return OllamaRuntime(client, settings.ollama_url, settings.ollama_model)


def resolve_model(available: list[str], wanted: str) -> str | None:
    """Exact name first, then a tagged variant ("mistral" -> "mistral:7b")."""
    if wanted in available:
        return wanted
    for name in available:
        if name.startswith(wanted + ":") or name.startswith(wanted + "-"):
            return name
    return None


class ModelAvailability:
    def __init__(
        self,
        runtime: ModelRuntime,
        interval_s: float = DEFAULT_CHECK_INTERVAL_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.runtime = runtime
        self.interval_s = interval_s
        self.clock = clock
        self._available: bool | None = None
        self._checked_at = 0.0
        self._probe_lock = asyncio.Lock()
        self.last_health: ModelHealth | None = None

    @property
    def available(self) -> bool | None:
        return self._available

    def _fresh(self) -> bool:
        return self._available is not None and self.clock() - self._checked_at < self.interval_s

    async def is_available(self) -> bool:
        if self._fresh():
            return bool(self._available)
        async with self._probe_lock:
            if self._fresh():
                return bool(self._available)
            health = await self.probe()
            return health.available

    def _record(self, health: ModelHealth) -> ModelHealth:
        self._available = health.available
        self._checked_at = self.clock()
        self.last_health = health
        log = logger.info if health.available else logger.warning
        log("model_probe", provider=health.provider, model=health.model, available=health.available, error=health.error)
        return health

    async def probe(self) -> ModelHealth:
        rt = self.runtime
        provider = rt.name

        if not rt.configured:
            return self._record(ModelHealth(available=False, provider=provider, error=f"{provider} is not configured"))

        try:
            names = await rt.list_models(timeout=LIST_TIMEOUT_S)
        except ModelTimeout:
            return self._record(
                ModelHealth(available=False, provider=provider, error=f"{provider} connection timeout - is it running?")
            )
        except ModelError as e:
            return self._record(ModelHealth(available=False, provider=provider, error=str(e)))

        found = resolve_model(names, rt.model)
        if found is None:
            if not names:
                error = f"No models installed. Pull '{rt.model}' first."
            else:
                error = f"Model '{rt.model}' not found. Available models: {', '.join(names)}"
            return self._record(
                ModelHealth(available=False, provider=provider, error=error, available_models=names)
            )

        try:
            await rt.generate("Hi", model=found, max_tokens=1, temperature=0.0, timeout=TEST_TIMEOUT_S)
        except ModelTimeout:
            # Listed but slow to answer: it is loading.
            return self._record(
                ModelHealth(available=True, provider=provider, model=found, available_models=names)
            )
        except ModelHTTPError as e:
            if e.status == 500:
                return self._record(
                    ModelHealth(
                        available=True,
                        provider=provider,
                        model=found,
                        available_models=names,
                        error="Model test returned 500 but model exists - may be loading",
                    )
                )
            return self._record(
                ModelHealth(
                    available=False,
                    provider=provider,
                    model=found,
                    available_models=names,
                    error=f"Model '{found}' test failed with status {e.status}",
                )
            )
        except ModelError as e:
            return self._record(
                ModelHealth(available=False, provider=provider, model=found, available_models=names, error=str(e))
            )

        return self._record(ModelHealth(available=True, provider=provider, model=found, available_models=names))
