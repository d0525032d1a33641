from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class FetchTier:
    """One rung of the fetch ladder.

    ``admitted_after`` lists the failure kinds of the previous rung that may
    unlock this one. ``None`` admits the tier after any non-terminal failure.
    """

    name: str
    render_js: bool
    premium_proxy: bool
    timeout_seconds: float
    block_resources: bool
    wait_until: str
    admitted_after: frozenset[str] | None = None


BASIC = FetchTier(
    name="basic",
    render_js=False,
    premium_proxy=False,
    timeout_seconds=15.0,
    block_resources=True,
    wait_until="load",
)
PREMIUM = FetchTier(
    name="premium",
    render_js=True,
    premium_proxy=True,
    timeout_seconds=30.0,
    block_resources=True,
    wait_until="networkidle",
)
FINAL = FetchTier(
    name="final",
    render_js=True,
    premium_proxy=True,
    timeout_seconds=30.0,
    block_resources=False,
    wait_until="domcontentloaded",
    admitted_after=frozenset({"timeout"}),
)
DEFAULT_TIERS: tuple[FetchTier, ...] = (BASIC, PREMIUM, FINAL)


@dataclass(frozen=True)
class TierResponse:
    status_code: int
    html: str


class FetchBackend(Protocol):
    """Performs a single request for one tier.

    Implementations return whatever status the target answered with and raise
    ``FetchFailure`` only for transport problems (timeouts, connection errors,
    misconfiguration).
    """

    def fetch(self, url: str, tier: FetchTier) -> TierResponse: ...

    def close(self) -> None: ...
