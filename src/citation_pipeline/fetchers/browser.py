from __future__ import annotations

import itertools
import logging

import httpx

from citation_pipeline.errors import FetchFailure
from citation_pipeline.fetchers.tiers import FetchTier, TierResponse

logger = logging.getLogger(__name__)

ROTATING_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
)
BLOCKED_RESOURCE_TYPES = frozenset({"image", "stylesheet", "font", "media"})


def _block_heavy_resources(route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        route.abort()
    else:
        route.continue_()


class LocalBackend:
    """Fetches directly: httpx for plain tiers, headless Chromium for rendering tiers.

    Premium egress has no local equivalent, so premium tiers rotate the
    browser identity instead.
    """

    def __init__(self, *, user_agent: str, client: httpx.Client | None = None):
        self.user_agent = user_agent
        self.client = client or httpx.Client(follow_redirects=True, headers={"User-Agent": user_agent})
        self._agents = itertools.cycle(ROTATING_USER_AGENTS)

    def _user_agent_for(self, tier: FetchTier) -> str:
        return next(self._agents) if tier.premium_proxy else self.user_agent

    def fetch(self, url: str, tier: FetchTier) -> TierResponse:
        if tier.render_js:
            return self._fetch_rendered(url, tier)
        return self._fetch_plain(url, tier)

    def _fetch_plain(self, url: str, tier: FetchTier) -> TierResponse:
        try:
            response = self.client.get(
                url,
                timeout=tier.timeout_seconds,
                headers={"User-Agent": self._user_agent_for(tier)},
            )
        except httpx.TimeoutException as exc:
            raise FetchFailure(url, tier=tier.name, kind="timeout", detail=str(exc)) from exc
        except httpx.HTTPError as exc:
            raise FetchFailure(url, tier=tier.name, kind="network", detail=str(exc)) from exc
        return TierResponse(status_code=response.status_code, html=response.text)

    def _fetch_rendered(self, url: str, tier: FetchTier) -> TierResponse:
        try:
            from playwright.sync_api import Error as PlaywrightError
            from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
            from playwright.sync_api import sync_playwright
        except ImportError as exc:  # pragma: no cover - import depends on env
            raise FetchFailure(
                url, tier=tier.name, kind="misconfigured", detail=f"playwright import failed: {exc}"
            ) from exc

        try:
            with sync_playwright() as playwright:
                browser = playwright.chromium.launch(headless=True)
                try:
                    context = browser.new_context(user_agent=self._user_agent_for(tier))
                    page = context.new_page()
                    if tier.block_resources:
                        page.route("**/*", _block_heavy_resources)
                    response = page.goto(
                        url,
                        wait_until=tier.wait_until,
                        timeout=int(tier.timeout_seconds * 1000),
                    )
                    html = page.content()
                    status = response.status if response is not None else 200
                    context.close()
                finally:
                    browser.close()
        except PlaywrightTimeoutError as exc:
            raise FetchFailure(url, tier=tier.name, kind="timeout", detail=str(exc)) from exc
        except PlaywrightError as exc:  # pragma: no cover - depends on network/browser
            raise FetchFailure(url, tier=tier.name, kind="network", detail=str(exc)) from exc

        logger.debug("rendered %s via %s tier (HTTP %s)", url, tier.name, status)
        return TierResponse(status_code=status, html=html)

    def close(self) -> None:
        self.client.close()
