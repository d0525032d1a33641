from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from citation_pipeline.config import Settings
from citation_pipeline.errors import FetchFailure
from citation_pipeline.fetchers.browser import LocalBackend
from citation_pipeline.fetchers.preflight import ensure_fetchable
from citation_pipeline.fetchers.scraping_api import ScrapingApiBackend
from citation_pipeline.fetchers.spa_detection import RenderingVerdict, detect_rendering_need
from citation_pipeline.fetchers.tiers import DEFAULT_TIERS, FetchBackend, FetchTier, TierResponse
from citation_pipeline.models import FetchResult

logger = logging.getLogger(__name__)

RenderingDetector = Callable[[str, str], RenderingVerdict]

MIN_BODY_BYTES = 500
NOT_FOUND_STATUSES = frozenset({404, 410})
BLOCKED_STATUSES = frozenset({401, 403, 429, 451})
CHALLENGE_MARKERS = (
    "cf-browser-verification",
    "challenge-platform",
    "<title>just a moment",
    "attention required! | cloudflare",
    "px-captcha",
    "g-recaptcha",
)


def classify_response(url: str, tier: FetchTier, response: TierResponse, *, min_body_bytes: int) -> FetchFailure | None:
    """Map a raw tier response to a failure, or None when the body is usable."""
    status = response.status_code
    if status in NOT_FOUND_STATUSES:
        return FetchFailure(url, tier=tier.name, kind="not_found", status_code=status)
    if status in BLOCKED_STATUSES:
        return FetchFailure(url, tier=tier.name, kind="blocked", status_code=status)
    if 400 <= status < 500:
        return FetchFailure(url, tier=tier.name, kind="client_error", status_code=status)
    if not 200 <= status < 300:
        return FetchFailure(url, tier=tier.name, kind="server_error", status_code=status)

    head = response.html[:5000].lower()
    if any(marker in head for marker in CHALLENGE_MARKERS):
        return FetchFailure(url, tier=tier.name, kind="blocked", status_code=status, detail="challenge page")
    size = len(response.html.encode("utf-8"))
    if size < min_body_bytes:
        return FetchFailure(
            url, tier=tier.name, kind="empty_body", status_code=status, detail=f"{size} bytes"
        )
    return None


class TieredFetcher:
    """Walks the tier ladder for one URL: stop on terminal failures, escalate on the rest."""

    def __init__(
        self,
        backend: FetchBackend,
        *,
        tiers: tuple[FetchTier, ...] = DEFAULT_TIERS,
        min_body_bytes: int = MIN_BODY_BYTES,
        detector: RenderingDetector = detect_rendering_need,
    ):
        self.backend = backend
        self.tiers = tiers
        self.min_body_bytes = min_body_bytes
        self.detector = detector

    def fetch(self, url: str) -> FetchResult:
        ensure_fetchable(url)

        attempted: list[str] = []
        last_failure: FetchFailure | None = None
        unrendered: FetchResult | None = None

        for index, tier in enumerate(self.tiers):
            if index > 0 and tier.admitted_after is not None:
                if last_failure is None or last_failure.kind not in tier.admitted_after:
                    logger.debug("tier %s not admitted after %s", tier.name, last_failure)
                    break

            attempted.append(tier.name)
            try:
                response = self.backend.fetch(url, tier)
            except FetchFailure as failure:
                logger.info("fetch %s: %s", url, failure)
                last_failure = failure
                continue

            failure = classify_response(url, tier, response, min_body_bytes=self.min_body_bytes)
            if failure is not None:
                logger.info("fetch %s: %s", url, failure)
                if failure.terminal:
                    failure.attempts = tuple(attempted)
                    raise failure
                last_failure = failure
                continue

            if not tier.render_js:
                verdict = self.detector(response.html, url)
                if verdict.needs_rendering:
                    logger.info("fetch %s: escalating for rendering (%s)", url, "; ".join(verdict.reasons))
                    unrendered = FetchResult(
                        url=url, html=response.html, method=tier.name, status_code=response.status_code
                    )
                    last_failure = FetchFailure(
                        url,
                        tier=tier.name,
                        kind="needs_rendering",
                        status_code=response.status_code,
                        detail="; ".join(verdict.reasons),
                    )
                    continue

            return FetchResult(
                url=url,
                html=response.html,
                method=tier.name,
                status_code=response.status_code,
                attempts=tuple(attempted),
            )

        if unrendered is not None:
            # Every rendering tier failed; the unrendered 2xx body is still a real page.
            logger.info("fetch %s: keeping unrendered %s body", url, unrendered.method)
            return replace(unrendered, attempts=tuple(attempted))
        if last_failure is None:
            raise FetchFailure(url, tier="none", kind="misconfigured", detail="no fetch tiers configured")
        last_failure.attempts = tuple(attempted)
        raise last_failure

    def close(self) -> None:
        self.backend.close()


def build_fetcher(settings: Settings) -> TieredFetcher:
    backend: FetchBackend
    if settings.resolved_fetch_backend == "api":
        backend = ScrapingApiBackend(settings.scraping_api_key, api_url=settings.scraping_api_url)
    else:
        backend = LocalBackend(user_agent=settings.user_agent)
    logger.info("fetch backend: %s", type(backend).__name__)
    return TieredFetcher(backend)
