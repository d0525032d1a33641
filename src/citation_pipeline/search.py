from __future__ import annotations

import logging
import time
from collections.abc import Callable

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from citation_pipeline.models import SearchResult

logger = logging.getLogger(__name__)

DEFAULT_RESULT_COUNT = 5


def _is_rate_limited(exc: BaseException) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429


def parse_search_items(payload: dict) -> list[SearchResult]:
    results = []
    for item in payload.get("items") or []:
        url = item.get("link")
        if not isinstance(url, str) or not url:
            continue
        results.append(
            SearchResult(
                title=str(item.get("title") or "").strip(),
                url=url,
                snippet=str(item.get("snippet") or "").strip(),
            )
        )
    return results


class SearchClient:
    """Google Custom Search JSON API. HTTP 429 is retried with exponential backoff."""

    def __init__(
        self,
        api_key: str,
        engine_id: str,
        *,
        api_url: str,
        timeout: float = 20.0,
        client: httpx.Client | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.api_key = api_key
        self.engine_id = engine_id
        self.api_url = api_url
        self.client = client or httpx.Client(timeout=timeout)
        self.sleep = sleep

    def _get(self, params: dict[str, str | int]) -> dict:
        response = self.client.get(self.api_url, params=params)
        response.raise_for_status()
        return response.json()

    def search(self, query: str, *, count: int = DEFAULT_RESULT_COUNT) -> list[SearchResult]:
        params: dict[str, str | int] = {"key": self.api_key, "cx": self.engine_id, "q": query, "num": count}
        retrying = Retrying(
            retry=retry_if_exception(_is_rate_limited),
            stop=stop_after_attempt(3),
            wait=wait_exponential(multiplier=3, min=3, max=20),
            sleep=self.sleep,
            reraise=True,
        )
        payload = retrying(self._get, params)
        results = parse_search_items(payload)
        logger.debug("search for %r returned %d results", query, len(results))
        return results

    def close(self) -> None:
        self.client.close()
