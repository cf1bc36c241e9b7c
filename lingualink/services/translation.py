"""Text translation backed by the MyMemory public API."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..core.config import settings

logger = logging.getLogger(__name__)


def primary_subtag(language: str) -> str:
    """Return the primary language subtag (``es`` for ``es-MX``)."""

    return language.replace("_", "-").split("-")[0].strip().lower()


class MyMemoryTranslator:
    """Translate short utterances; failures fall back to the untranslated text."""

    def __init__(
        self,
        *,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_url = api_url or settings.translation_api_url
        self._timeout = timeout if timeout is not None else settings.translation_timeout_seconds
        self._client = client

    async def translate(self, text: str, source: str, target: str) -> str:
        source_code = primary_subtag(source)
        target_code = primary_subtag(target)
        if not text.strip() or source_code == target_code:
            return text

        params = {"q": text, "langpair": f"{source_code}|{target_code}"}
        try:
            if self._client is not None:
                response = await self._client.get(self.api_url, params=params, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(self.api_url, params=params)
            response.raise_for_status()
            translated = response.json()["responseData"]["translatedText"]
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
            logger.warning("Translation %s->%s failed, using original text: %s", source_code, target_code, exc)
            return text

        if not isinstance(translated, str) or not translated.strip():
            return text
        return translated
