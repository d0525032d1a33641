from __future__ import annotations


class PipelineError(Exception):
    """Base class for failures raised inside the citation pipeline."""


class ClassificationSkip(PipelineError):
    """URL was judged unfetchable before any network call was made."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"skipped {url}: {reason}")


_KIND_CATEGORIES = {
    "not_found": "client",
    "client_error": "client",
    "server_error": "server",
    "blocked": "protocol_block",
    "timeout": "transport",
    "network": "transport",
    "empty_body": "server",
    "needs_rendering": "protocol_block",
    "misconfigured": "client",
}


class FetchFailure(PipelineError):
    def __init__(
        self,
        url: str,
        *,
        tier: str,
        kind: str,
        status_code: int | None = None,
        detail: str = "",
    ):
        self.url = url
        self.tier = tier
        self.kind = kind
        self.status_code = status_code
        self.detail = detail
        self.attempts: tuple[str, ...] = (tier,)
        status = f" (HTTP {status_code})" if status_code is not None else ""
        suffix = f": {detail}" if detail else ""
        super().__init__(f"{tier} tier {kind}{status}{suffix}")

    @property
    def category(self) -> str:
        return _KIND_CATEGORIES.get(self.kind, "server")

    @property
    def terminal(self) -> bool:
        return self.kind == "not_found"

    def to_dict(self) -> dict[str, object]:
        return {
            "tier": self.tier,
            "kind": self.kind,
            "category": self.category,
            "status_code": self.status_code,
            "detail": self.detail,
        }


class ScoringFailure(PipelineError):
    """Transport or decode failure from the completion service. Never escapes a scorer."""

    def __init__(self, stage: str, detail: str):
        self.stage = stage
        self.detail = detail
        super().__init__(f"{stage} scoring failed: {detail}")


class PersistenceFailure(PipelineError):
    def __init__(self, url: str, detail: str):
        self.url = url
        self.detail = detail
        super().__init__(f"could not persist analysis for {url}: {detail}")


class JobExhausted(PipelineError):
    def __init__(self, job_id: int, attempts: int, last_error: str | None):
        self.job_id = job_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"job {job_id} failed after {attempts} attempts: {last_error}")


class QueryExecutionError(PipelineError):
    """The upstream language-model query failed; the whole job is retried."""


class CompletionError(PipelineError):
    """The language-model completion service could not produce a response."""
