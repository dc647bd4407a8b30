"""
Schema-constrained generation backends.

A closed set of providers behind one interface, chosen once from
``ProviderConfig.kind`` by ``build_provider``. All of them speak plain HTTP
through httpx and return the raw JSON text; validation is the mapper's job.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Type

import httpx

from .config import ProviderConfig
from .exceptions import ConfigError, ProviderError

logger = logging.getLogger(__name__)


RETRYABLE_STATUS = {429, 503}

# Keys of the OpenAPI subset Gemini accepts in responseSchema
GEMINI_SCHEMA_KEYS = {
    "type", "format", "description", "nullable", "enum", "properties",
    "required", "items", "minItems", "maxItems", "minimum", "maximum",
}


def inline_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve local ``$ref`` pointers so the schema is one self-contained tree."""
    defs = schema.get("$defs", {})

    def resolve(node):
        if isinstance(node, dict):
            if "$ref" in node:
                name = node["$ref"].split("/")[-1]
                merged = {**defs[name], **{k: v for k, v in node.items() if k != "$ref"}}
                return resolve(merged)
            return {k: resolve(v) for k, v in node.items() if k != "$defs"}
        if isinstance(node, list):
            return [resolve(v) for v in node]
        return node

    return resolve(schema)


def to_gemini_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    def strip(node):
        if isinstance(node, dict):
            out = {}
            for key, value in node.items():
                if key == "properties":
                    out[key] = {name: strip(prop) for name, prop in value.items()}
                elif key in GEMINI_SCHEMA_KEYS:
                    out[key] = strip(value)
            return out
        if isinstance(node, list):
            return [strip(v) for v in node]
        return node

    return strip(inline_schema(schema))


class GenerativeProvider(ABC):
    """A backend that answers a prompt with JSON matching a schema."""

    kind: str = ""
    default_base_url: str = ""
    base_delay: float = 2.0

    def __init__(self, config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.base_url = (config.base_url or self.default_base_url).rstrip("/")
        self._transport = transport

    @property
    def model(self) -> str:
        return self.config.model_name

    @abstractmethod
    async def generate_json(self, prompt: str, schema: Dict[str, Any], system: Optional[str] = None) -> str:
        """Return the model's raw JSON text for ``prompt`` constrained to ``schema``."""

    async def _post(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        max_retries = max(1, self.config.max_retries)

        async with httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport) as client:
            for attempt in range(max_retries):
                try:
                    response = await client.post(url, headers=headers, json=payload)
                    response.raise_for_status()
                    return response.json()

                except httpx.HTTPStatusError as e:
                    status = e.response.status_code
                    if status in RETRYABLE_STATUS and attempt < max_retries - 1:
                        delay = self.base_delay * (2 ** attempt)
                        logger.warning(
                            f"[{self.kind}] HTTP {status}, retrying in {delay:.1f}s "
                            f"(attempt {attempt + 1}/{max_retries})"
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise ProviderError(
                        f"{self.kind} request failed with HTTP {status}: {e.response.text[:300]}"
                    ) from e
                except httpx.HTTPError as e:
                    raise ProviderError(f"{self.kind} request failed: {e}") from e
                except ValueError as e:
                    raise ProviderError(f"{self.kind} returned a non-JSON body: {e}") from e

        raise ProviderError(f"{self.kind} request failed after {max_retries} attempts")


class GeminiProvider(GenerativeProvider):
    kind = "gemini"
    default_base_url = "https://generativelanguage.googleapis.com/v1beta"

    async def generate_json(self, prompt, schema, system=None):
        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.config.temperature,
                "responseMimeType": "application/json",
                "responseSchema": to_gemini_schema(schema),
            },
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}

        data = await self._post(
            f"{self.base_url}/models/{self.model}:generateContent",
            payload,
            headers={"x-goog-api-key": self.config.api_key or "", "Content-Type": "application/json"},
        )
        try:
            candidate = data["candidates"][0]
            return "".join(part.get("text", "") for part in candidate["content"]["parts"])
        except (KeyError, IndexError, TypeError) as e:
            reason = (data.get("candidates") or [{}])[0].get("finishReason") if isinstance(data, dict) else None
            raise ProviderError(f"gemini returned no content (finishReason={reason})") from e


class OpenAIProvider(GenerativeProvider):
    kind = "openai"
    default_base_url = "https://api.openai.com/v1"

    async def generate_json(self, prompt, schema, system=None):
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        data = await self._post(
            f"{self.base_url}/chat/completions",
            {
                "model": self.model,
                "messages": messages,
                "temperature": self.config.temperature,
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {"name": "page_structure", "schema": inline_schema(schema), "strict": False},
                },
            },
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError("openai returned no message content") from e


class OllamaProvider(GenerativeProvider):
    kind = "ollama"
    default_base_url = "http://localhost:11434"

    async def generate_json(self, prompt, schema, system=None):
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        data = await self._post(
            f"{self.base_url}/api/chat",
            {
                "model": self.model,
                "messages": messages,
                "stream": False,
                "format": inline_schema(schema),
                "options": {"temperature": self.config.temperature},
            },
        )
        try:
            return data["message"]["content"]
        except (KeyError, TypeError) as e:
            raise ProviderError("ollama returned no message content") from e


PROVIDERS: Dict[str, Type[GenerativeProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
}


def build_provider(config: ProviderConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> GenerativeProvider:
    """Instantiate the provider named by ``config.kind``."""
    if config.kind != "ollama" and not config.api_key:
        raise ConfigError(f"An API key is required for the {config.kind} provider")
    return PROVIDERS[config.kind](config, transport=transport)
