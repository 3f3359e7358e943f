"""Fundraising email composition: prompts, one model call, and post-processing."""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass
from typing import Any

from config import AppConfig
from models import BrandKit, EditorBlock, RapidDraftPayload, ResearchTopic
from pipeline.composition import CompositionFailure, record_composition_failure
from pipeline.context_retrieval import RetrievedContext, format_context_section
from pipeline.failures import DraftParseError
from pipeline.llm import LLMClient
from pipeline.renderer import EmailRenderer
from pipeline.schemas import BLOCK_CATEGORIES, DRAFT_SCHEMA
from pipeline.validator import (
    ContentValidationError,
    extract_json_payload,
    html_to_text,
    truncate_sample,
    validate_json_payload,
)

logger = logging.getLogger(__name__)

WEEKLY_TEMPLATES = (
    "fundraising-appeal",
    "deadline-urgency",
    "welcome-series",
    "thank-you-receipt",
    "recurring-donor-upgrade",
    "survey-engagement",
    "story-driven-narrative",
    "event-invitation",
)

# No "match" template: unverifiable matching claims are not allowed by donation processors.
RAPID_TEMPLATES = (
    "breaking-news-response",
    "opposition-attack-rebuttal",
    "grassroots-surge",
    "deadline-surprise",
)

MAX_ALT_SUBJECT_LINES = 3
MAX_PREVIEW_CHARS = 90
DEFAULT_PRIMARY_COLOR = "#1a3a5c"
DEFAULT_ACCENT_COLOR = "#e8614d"
DEFAULT_BLOCK_PROPS: dict[str, Any] = {
    "paddingTop": 0,
    "paddingRight": 0,
    "paddingBottom": 0,
    "paddingLeft": 0,
    "backgroundColor": "",
    "width": 600,
}

WEEKLY_SYSTEM_PROMPT = (
    "You are an expert fundraising email copywriter. "
    "Write emails that drive donations and engagement."
)

RAPID_SYSTEM_PROMPT = (
    "You are an expert rapid-response fundraising email writer. "
    "Write URGENT emails that capitalize on breaking news moments."
)

WEEKLY_RULES = (
    "RULES:\n"
    '1. Open with a compelling hook. Never "Dear friend" or "I\'m writing to..."\n'
    "2. ONE clear call-to-action per email\n"
    "3. Match the brand's tone exactly\n"
    "4. Reference the committee name naturally\n"
    "5. 200-400 words for standard appeals, 100-200 for urgency\n"
    "6. End with a P.S. line\n"
    "7. Include 2-3 alternate subject lines for A/B testing\n"
    "8. Write both HTML (with basic formatting) and plain text versions\n"
)

RAPID_RULES = (
    "CRITICAL RULES:\n"
    "1. Keep it SHORT: 100-200 words maximum\n"
    "2. Lead with the news hook. NO preamble\n"
    '3. Write in present tense ("Right now, as I type this...")\n'
    "4. ONE donate CTA, prominently placed\n"
    "5. P.S. must reference the time-sensitive nature\n"
    "6. Subject line must convey urgency WITHOUT clickbait\n"
    "7. Include 2 alternate subject lines\n"
)

COMPLIANCE_RULES = (
    "DONATION PLATFORM COMPLIANCE (MANDATORY):\n"
    "8. NEVER reference other candidates, elected officials, or public figures by "
    "name unless they are listed in the brand context as authorized endorsers. "
    "Do NOT imply endorsement or affiliation with any person or org not directly "
    "part of this committee.\n"
    '9. NEVER include donation matching claims (e.g. "2X match", "triple match", '
    '"your gift will be doubled"). Use deadline urgency, impact framing, or '
    "grassroots momentum instead.\n"
    "10. If disclaimers are provided in the brand context, you MUST include them "
    "VERBATIM at the bottom of the email. Never paraphrase, abbreviate, or omit them.\n"
    "11. Write with urgency but NEVER guilt-trip, shame, or pressure donors. Frame "
    "the ask around what the donation ENABLES, not doom if the donor doesn't give.\n"
    "12. Be honest about who the committee is. Never misrepresent identity, scale, "
    "or affiliation.\n"
)

DRAFT_JSON_SNIPPET = (
    "Return valid JSON with this exact structure:\n"
    "{\n"
    '  "subject_line": "primary subject line",\n'
    '  "alt_subject_lines": ["alt 1", "alt 2"],\n'
    '  "preview_text": "40-90 char preview text",\n'
    '  "body_html": "<div>HTML email body</div>",\n'
    '  "body_text": "Plain text version",\n'
    '  "editor_blocks": [\n'
    '    {"category": "header", "moduleId": "header-2", "html": "<table>...</table>"},\n'
    '    {"category": "content", "moduleId": "content-1", "html": "<table>...</table>"},\n'
    '    {"category": "cta", "moduleId": "cta-4", "html": "<table>...</table>"},\n'
    '    {"category": "ps", "moduleId": "ps-1", "html": "<table>...</table>"},\n'
    '    {"category": "footer", "moduleId": "footer-1", "html": "<table>...</table>"}\n'
    "  ]\n"
    "}\n"
)


@dataclass(frozen=True)
class ComposedDraft:
    """Validated and post-processed model output for one email."""

    subject_line: str
    alt_subject_lines: tuple[str, ...]
    preview_text: str
    body_html: str
    body_text: str
    editor_blocks: tuple[EditorBlock, ...]
    template_used: str
    ai_model: str


def select_templates(
    count: int,
    *,
    most_recent: str | None = None,
    rng: random.Random | None = None,
) -> list[str]:
    """Shuffle the weekly catalog and take ``count`` entries, cycling past its size.

    The first pick is never ``most_recent`` when another template is available.
    """
    if count <= 0:
        return []
    rng = rng or random.Random()
    shuffled = list(WEEKLY_TEMPLATES)
    rng.shuffle(shuffled)
    if most_recent is not None and shuffled[0] == most_recent and len(shuffled) > 1:
        swap_index = rng.randrange(1, len(shuffled))
        shuffled[0], shuffled[swap_index] = shuffled[swap_index], shuffled[0]
    return [shuffled[index % len(shuffled)] for index in range(count)]


class DraftWriter:
    """Generate one fundraising email per call from a brand kit and context."""

    def __init__(
        self,
        config: AppConfig,
        llm_client: LLMClient,
        renderer: EmailRenderer | None = None,
    ) -> None:
        self._config = config
        self._llm_client = llm_client
        self._renderer = renderer or EmailRenderer()

    def write_weekly(
        self,
        *,
        kit: BrandKit,
        template: str,
        topics: list[ResearchTopic],
        week_of: str,
        context: RetrievedContext,
    ) -> ComposedDraft:
        system_prompt = self._build_weekly_prompt(
            kit=kit,
            template=template,
            topics=topics,
            week_of=week_of,
            context=context,
        )
        user_prompt = (
            f"Write a {template} style fundraising email for {kit.kit_name}. "
            "Return only valid JSON."
        )
        return self._compose(
            stage="weekly",
            kit=kit,
            template=template,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=0.7,
            max_tokens=2000,
            input_payload={
                "template": template,
                "week_of": week_of,
                "topic_ids": [topic.id for topic in topics],
            },
        )

    def write_rapid(
        self,
        *,
        kit: BrandKit,
        payload: RapidDraftPayload,
        context: RetrievedContext,
    ) -> ComposedDraft:
        system_prompt = self._build_rapid_prompt(kit=kit, payload=payload, context=context)
        user_prompt = (
            f"Write a rapid response {payload.template} email about: {payload.topic}. "
            "Return only valid JSON."
        )
        return self._compose(
            stage="rapid",
            kit=kit,
            template=payload.template,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=0.6,
            max_tokens=1500,
            input_payload={
                "template": payload.template,
                "topic": payload.topic,
                "urgency": payload.urgency.value,
                "source_urls": list(payload.source_urls),
            },
        )

    def _compose(
        self,
        *,
        stage: str,
        kit: BrandKit,
        template: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
        input_payload: dict[str, Any],
    ) -> ComposedDraft:
        result = self._llm_client.chat(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
            json_mode=True,
        )
        logger.info(
            "Writer (%s/%s): model returned %d chars",
            stage,
            template,
            len(result.content),
        )

        try:
            payload = extract_json_payload(result.content)
            validate_json_payload(payload, DRAFT_SCHEMA)
        except ContentValidationError as exc:
            error_summary = str(exc)
            logger.warning("Writer (%s/%s) output rejected: %s", stage, template, error_summary)
            dead_letter = record_composition_failure(
                self._config.failure_log_dir,
                CompositionFailure(
                    kind=stage,
                    user_id=kit.user_id,
                    template=template,
                    model=result.model,
                    reason=error_summary,
                    inputs=input_payload,
                    model_output=result.content,
                ),
            )
            raise DraftParseError(
                f"{stage} draft for template {template} was malformed: {error_summary} "
                f"(dead letter: {dead_letter})",
                sample=truncate_sample(result.content),
            ) from exc

        draft = self._post_process(payload, kit=kit, template=template, model=result.model)
        if not (draft.body_html or draft.body_text):
            raise DraftParseError(
                f"{stage} draft for template {template} has no usable body",
                sample=truncate_sample(result.content),
            )
        return draft

    def _post_process(
        self,
        payload: dict[str, Any],
        *,
        kit: BrandKit,
        template: str,
        model: str,
    ) -> ComposedDraft:
        subject_line = payload["subject_line"].strip()
        preview_text = _trim_preview(payload.get("preview_text") or "")
        alt_subject_lines = tuple(
            line.strip() for line in payload.get("alt_subject_lines") or () if line.strip()
        )[:MAX_ALT_SUBJECT_LINES]
        blocks = _normalize_blocks(payload.get("editor_blocks") or [], template=template)

        body_html = (payload.get("body_html") or "").strip()
        if not body_html and blocks:
            body_html = self._renderer.render(
                subject_line=subject_line,
                preview_text=preview_text,
                blocks=list(blocks),
                disclaimers=kit.disclaimers,
            )
        body_text = (payload.get("body_text") or "").strip()
        if not body_text and body_html:
            body_text = html_to_text(body_html)

        return ComposedDraft(
            subject_line=subject_line,
            alt_subject_lines=alt_subject_lines,
            preview_text=preview_text,
            body_html=body_html,
            body_text=body_text,
            editor_blocks=blocks,
            template_used=template,
            ai_model=model,
        )

    @staticmethod
    def _build_weekly_prompt(
        *,
        kit: BrandKit,
        template: str,
        topics: list[ResearchTopic],
        week_of: str,
        context: RetrievedContext,
    ) -> str:
        if topics:
            topics_context = "\n".join(
                f"- {topic.title}: {topic.summary or topic.content_snippet or ''}"
                for topic in topics
            )
        else:
            topics_context = (
                "No specific research topics available. Use general fundraising best practices."
            )
        return (
            f"{WEEKLY_SYSTEM_PROMPT}\n\n"
            f"{_brand_context(kit)}"
            f"- Disclaimers: {kit.disclaimers or 'None'}\n\n"
            f"EMAIL FORMAT: {template}\n"
            f"Week of: {week_of}\n\n"
            f"CURRENT NEWS & TOPICS:\n{topics_context}\n"
            f"{format_context_section(context)}\n"
            f"{WEEKLY_RULES}\n"
            f"{COMPLIANCE_RULES}\n"
            f"{DRAFT_JSON_SNIPPET}\n"
            f"{_block_guidance(kit, required=False)}"
        )

    @staticmethod
    def _build_rapid_prompt(
        *,
        kit: BrandKit,
        payload: RapidDraftPayload,
        context: RetrievedContext,
    ) -> str:
        if payload.source_urls:
            sources = "\n".join(f"- Source: {url}" for url in payload.source_urls)
        else:
            sources = "No specific sources provided. Write based on the topic description."
        return (
            f"{RAPID_SYSTEM_PROMPT}\n\n"
            f"{_brand_context(kit, tone_suffix=' (dial urgency UP by 1 notch)')}"
            f"- Disclaimers: {kit.disclaimers or 'None'}\n\n"
            f"FORMAT: {payload.template} (rapid response)\n"
            f"TOPIC: {payload.topic}\n"
            f"URGENCY: {payload.urgency.value}\n\n"
            f"SOURCES:\n{sources}\n"
            f"{format_context_section(context)}\n"
            f"{RAPID_RULES}\n"
            f"{COMPLIANCE_RULES}\n"
            f"{DRAFT_JSON_SNIPPET}\n"
            f"{_block_guidance(kit, required=True)}"
        )


def _brand_context(kit: BrandKit, *, tone_suffix: str = "") -> str:
    return (
        "BRAND CONTEXT:\n"
        f"- Committee: {kit.kit_name}\n"
        f"- Mission: {kit.brand_summary or 'Not specified'}\n"
        f"- Tone: {kit.tone or 'Inspirational'}{tone_suffix}\n"
    )


def _block_guidance(kit: BrandKit, *, required: bool) -> str:
    primary = kit.colors.get("primary") or DEFAULT_PRIMARY_COLOR
    accent = kit.colors.get("accent") or DEFAULT_ACCENT_COLOR
    if required:
        lead = "IMPORTANT for editor_blocks:"
    else:
        lead = "editor_blocks are optional. If included:"
    return (
        f"{lead}\n"
        "- Each block maps to a drag-and-drop editor module category\n"
        "- Use email-safe table-based HTML with inline styles\n"
        f"- Use brand colors: primary={primary}, accent={accent}\n"
        f"- Valid categories: {', '.join(BLOCK_CATEGORIES)}\n"
        "- body_html should be the concatenation of all editor_blocks HTML"
    )


def _trim_preview(text: str) -> str:
    text = " ".join(text.split())
    if len(text) <= MAX_PREVIEW_CHARS:
        return text
    cut = text[:MAX_PREVIEW_CHARS]
    if " " in cut:
        cut = cut.rsplit(" ", 1)[0]
    return cut.rstrip(" ,;:-")


def _normalize_blocks(
    raw_blocks: list[dict[str, Any]], *, template: str
) -> tuple[EditorBlock, ...]:
    batch = uuid.uuid4().hex[:8]
    blocks: list[EditorBlock] = []
    for index, raw in enumerate(raw_blocks):
        category = str(raw.get("category", "")).strip().lower()
        if category not in BLOCK_CATEGORIES:
            logger.warning("Dropping editor block %d with unknown category %r", index, category)
            continue
        blocks.append(
            EditorBlock(
                id=f"block-{template}-{batch}-{index}",
                category=category,
                module_id=str(raw.get("moduleId") or f"{category}-1"),
                html=str(raw["html"]),
                props=dict(DEFAULT_BLOCK_PROPS),
            )
        )
    return tuple(blocks)
