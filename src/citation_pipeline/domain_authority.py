from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

import tldextract

from citation_pipeline.models import DomainAuthority

logger = logging.getLogger(__name__)

T = TypeVar("T")

HIGH_AUTHORITY_NAMES = frozenset({"google", "amazon", "microsoft", "facebook", "linkedin", "salesforce", "apple"})
MEDIUM_AUTHORITY_NAMES = frozenset({"hubspot", "marketo", "mailchimp", "shopify", "wix", "squarespace", "adobe"})
MARKETING_NAMES = frozenset({"knak", "campaign", "marketing"})
TLD_BONUS = {"edu": (15, 10), "gov": (15, 10), "org": (5, 3), "net": (5, 3)}
SHORT_NAME_LENGTH = 5


@dataclass(frozen=True)
class Bracket:
    """Base value plus jitter span for each metric; a draw lands in ``[base, base + span)``."""

    authority: tuple[int, int]
    page_authority: tuple[int, int]
    backlinks: tuple[int, int]
    referring_domains: tuple[int, int]


HIGH = Bracket((90, 10), (70, 20), (1_000_000, 1_000_000), (50_000, 50_000))
MEDIUM = Bracket((60, 20), (50, 20), (100_000, 100_000), (10_000, 10_000))
MARKETING = Bracket((45, 15), (40, 15), (50_000, 50_000), (5_000, 5_000))
SHORT_NAME = Bracket((45, 15), (35, 15), (10_000, 40_000), (1_000, 4_000))
LONG_NAME = Bracket((35, 10), (25, 15), (1_000, 5_000), (100, 500))


def default_authority(domain: str) -> DomainAuthority:
    return DomainAuthority(domain=domain)


class SpacedQueue:
    """Runs one call at a time with at least ``min_interval`` seconds between call starts."""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self.clock = clock
        self.sleep = sleep
        self._lock = threading.Lock()
        self._last_start: float | None = None

    def run(self, func: Callable[..., T], *args, **kwargs) -> T:
        with self._lock:
            if self._last_start is not None:
                wait = self.min_interval - (self.clock() - self._last_start)
                if wait > 0:
                    self.sleep(wait)
            self._last_start = self.clock()
            return func(*args, **kwargs)


class DomainAuthorityEstimator:
    """Heuristic authority estimate for a bare domain. Not ground truth."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        queue: SpacedQueue | None = None,
        extractor: tldextract.TLDExtract | None = None,
    ):
        self.rng = rng or random.Random()
        self.queue = queue or SpacedQueue(5.0)
        # bundled suffix snapshot only, never fetched
        self.extractor = extractor or tldextract.TLDExtract(suffix_list_urls=())

    def estimate(self, domain: str) -> DomainAuthority:
        return self.queue.run(self._estimate, domain)

    def bracket_for(self, name: str) -> Bracket:
        if name in HIGH_AUTHORITY_NAMES:
            return HIGH
        if name in MEDIUM_AUTHORITY_NAMES:
            return MEDIUM
        if name in MARKETING_NAMES:
            return MARKETING
        return SHORT_NAME if len(name) <= SHORT_NAME_LENGTH else LONG_NAME

    def _draw(self, base_and_span: tuple[int, int]) -> int:
        base, span = base_and_span
        return base + self.rng.randrange(span)

    def _estimate(self, domain: str) -> DomainAuthority:
        host = domain.strip().lower()
        parts = self.extractor(host)
        if not parts.domain:
            logger.debug("no registrable name in %r; using default authority", domain)
            return default_authority(host)

        bracket = self.bracket_for(parts.domain)
        authority = self._draw(bracket.authority)
        page_authority = self._draw(bracket.page_authority)

        tld = parts.suffix.rsplit(".", 1)[-1]
        authority_bonus, page_bonus = TLD_BONUS.get(tld, (0, 0))
        authority = min(100, authority + authority_bonus)
        page_authority = min(100, page_authority + page_bonus)

        result = DomainAuthority(
            domain=host,
            domain_authority=authority,
            page_authority=page_authority,
            backlink_count=self._draw(bracket.backlinks),
            referring_domains=self._draw(bracket.referring_domains),
            spam_score=max(1, min(10, 10 - authority // 10)),
            link_propensity=round(0.3 + (authority / 100) * 0.6, 2),
        )
        logger.debug("domain authority for %s: %s", host, result.domain_authority)
        return result
