from __future__ import annotations

from dataclasses import dataclass, field

from citation_pipeline.extract.document import ParsedDocument

ROOT_CONTAINER_IDS = ("root", "app", "__next", "__nuxt", "___gatsby", "svelte")
FRAMEWORK_MARKERS = (
    "ng-app",
    "ng-version",
    "data-reactroot",
    "__next_data__",
    "window.__nuxt__",
    "reactdom.render",
    "createroot(",
    "v-if=",
    "v-cloak",
    "data-v-app",
    "ember-application",
)
NOSCRIPT_NOTICES = (
    "enable javascript",
    "javascript is required",
    "javascript is disabled",
    "requires javascript",
)
THIN_WORD_COUNT = 50
SCRIPT_TO_TEXT_RATIO = 3.0


@dataclass(frozen=True)
class RenderingVerdict:
    needs_rendering: bool
    reasons: list[str] = field(default_factory=list)


def detect_rendering_need(html: str, url: str) -> RenderingVerdict:
    """Decide whether a 2xx basic-tier body is an unrendered client-side app shell."""
    doc = ParsedDocument(html, url)
    reasons: list[str] = []

    empty_containers = [f"#{element_id}" for element_id in ROOT_CONTAINER_IDS if doc.has_empty_element(element_id)]
    if empty_containers:
        reasons.append(f"empty root container {', '.join(empty_containers)}")

    markers = [marker for marker in FRAMEWORK_MARKERS if marker in doc.lower]
    reasons.extend(f"framework marker {marker}" for marker in markers)

    notice = any(text in doc.lower for text in NOSCRIPT_NOTICES)
    if notice:
        reasons.append("noscript javascript notice")

    script_chars = sum(len(body) for body in doc.inline_scripts)
    text_chars = len(doc.visible_text)
    if script_chars and script_chars > SCRIPT_TO_TEXT_RATIO * max(text_chars, 1):
        reasons.append(f"inline script density {script_chars}:{text_chars}")

    thin = doc.word_count < THIN_WORD_COUNT
    needs = thin and bool(empty_containers or notice or len(reasons) >= 2)
    return RenderingVerdict(needs_rendering=needs, reasons=reasons)
