"""
Structural discovery: snapshot in, validated page map out.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .exceptions import GenerationInvalid
from .models import DiscoveryResponse, PageSnapshot, PageStructure
from .prompts import SYSTEM_INSTRUCTION, build_discovery_prompt
from .providers import GenerativeProvider
from .urls import normalize_url, to_full_url

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


class Mapper:
    """Asks a schema-constrained model to name and locate a page's elements."""

    def __init__(self, provider: GenerativeProvider):
        self.provider = provider
        self._schema: Optional[Dict[str, Any]] = None

    @property
    def response_schema(self) -> Dict[str, Any]:
        if self._schema is None:
            self._schema = DiscoveryResponse.model_json_schema()
        return self._schema

    async def analyze(self, url: str, snapshot: PageSnapshot, timeout: Optional[float] = None) -> PageStructure:
        """
        Discover the element map for ``url``.

        Raises GenerationInvalid when the model output is not JSON or violates
        the page schema, and asyncio.TimeoutError when ``timeout`` expires.
        """
        target = normalize_url(url)
        prompt = build_discovery_prompt(to_full_url(url), snapshot.html, snapshot.structure_summary)

        logger.info(f"[Mapper] Discovering elements for {target.url} via {self.provider.kind}/{self.provider.model}")
        call = self.provider.generate_json(prompt, self.response_schema, system=SYSTEM_INSTRUCTION)
        raw = await asyncio.wait_for(call, timeout) if timeout else await call

        discovered = self.parse(raw)
        if discovered.domain.lower().removeprefix("www.") != target.domain:
            logger.debug(f"[Mapper] Model reported domain {discovered.domain}, using {target.domain}")

        page = PageStructure(
            domain=target.domain,
            url=target.url,
            page_type=discovered.page_type,
            elements=discovered.elements,
        )
        logger.info(f"[Mapper] Mapped {len(page.elements)} elements on {target.url} ({page.page_type})")
        return page

    @staticmethod
    def parse(raw: str) -> DiscoveryResponse:
        text = raw or ""
        fenced = _FENCE.match(text)
        if fenced:
            text = fenced.group(1)

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            logger.error(f"[Mapper] Model response is not JSON: {raw[:500] if raw else raw!r}")
            raise GenerationInvalid(f"AI response is not valid JSON: {e}", raw_response=raw) from e

        try:
            return DiscoveryResponse.model_validate(data)
        except ValidationError as e:
            logger.error(f"[Mapper] Model response failed schema validation: {e.error_count()} errors")
            raise GenerationInvalid(
                f"AI response failed schema validation: {e}",
                raw_response=raw,
                errors=e.errors(include_url=False, include_context=False),
            ) from e
