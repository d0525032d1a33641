from __future__ import annotations

import logging

import httpx

from citation_pipeline.errors import FetchFailure
from citation_pipeline.fetchers.tiers import FetchTier, TierResponse

logger = logging.getLogger(__name__)

ORIGINAL_STATUS_HEADER = "spb-original-status-code"
_WAIT_BROWSER = {
    "networkidle": "networkidle2",
    "domcontentloaded": "domcontentloaded",
    "load": "load",
}
# Seconds allowed on top of the tier budget for the API's own overhead.
_CLIENT_TIMEOUT_PADDING = 10.0


def build_params(api_key: str, url: str, tier: FetchTier, *, country_code: str = "us") -> dict[str, str]:
    params = {
        "api_key": api_key,
        "url": url,
        "render_js": "true" if tier.render_js else "false",
        "premium_proxy": "true" if tier.premium_proxy else "false",
        "block_resources": "true" if tier.block_resources else "false",
        "timeout": str(int(tier.timeout_seconds * 1000)),
    }
    if tier.premium_proxy:
        params["country_code"] = country_code
    if tier.render_js:
        params["wait_browser"] = _WAIT_BROWSER.get(tier.wait_until, "load")
    return params


class ScrapingApiBackend:
    """Hosted scraping API (ScrapingBee-compatible query parameters)."""

    def __init__(
        self,
        api_key: str,
        *,
        api_url: str = "https://app.scrapingbee.com/api/v1/",
        country_code: str = "us",
        client: httpx.Client | None = None,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.country_code = country_code
        self.client = client or httpx.Client()

    def fetch(self, url: str, tier: FetchTier) -> TierResponse:
        if not self.api_key:
            raise FetchFailure(url, tier=tier.name, kind="misconfigured", detail="scraping API key not configured")

        params = build_params(self.api_key, url, tier, country_code=self.country_code)
        try:
            response = self.client.get(
                self.api_url,
                params=params,
                timeout=tier.timeout_seconds + _CLIENT_TIMEOUT_PADDING,
            )
        except httpx.TimeoutException as exc:
            raise FetchFailure(url, tier=tier.name, kind="timeout", detail=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise FetchFailure(url, tier=tier.name, kind="network", detail=str(exc)) from exc

        original = response.headers.get(ORIGINAL_STATUS_HEADER)
        if original and original.isdigit():
            return TierResponse(status_code=int(original), html=response.text)

        if response.status_code in (401, 402):
            raise FetchFailure(
                url,
                tier=tier.name,
                kind="misconfigured",
                status_code=response.status_code,
                detail="scraping API rejected the credentials or quota",
            )
        if response.status_code >= 500 and "timeout" in response.text[:500].lower():
            raise FetchFailure(
                url, tier=tier.name, kind="timeout", status_code=response.status_code, detail="scraping API timeout"
            )
        logger.debug("scraping API answered %s without original status header", response.status_code)
        return TierResponse(status_code=response.status_code, html=response.text)

    def close(self) -> None:
        self.client.close()
