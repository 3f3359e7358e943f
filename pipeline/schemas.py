"""JSON schema definitions for model-generated email drafts."""

from __future__ import annotations

BLOCK_CATEGORIES = ("header", "content", "donation", "cta", "ps", "footer")

EDITOR_BLOCK_SCHEMA: dict[str, object] = {
    "type": "object",
    "required": ["category", "html"],
    "properties": {
        "category": {"type": "string"},
        "moduleId": {"type": "string"},
        "html": {"type": "string", "minLength": 1},
    },
}

DRAFT_SCHEMA: dict[str, object] = {
    "type": "object",
    "required": ["subject_line", "preview_text"],
    "properties": {
        "subject_line": {"type": "string", "minLength": 1},
        "alt_subject_lines": {
            "type": "array",
            "items": {"type": "string"},
        },
        "preview_text": {"type": "string"},
        "body_html": {"type": "string"},
        "body_text": {"type": "string"},
        "editor_blocks": {
            "type": "array",
            "items": EDITOR_BLOCK_SCHEMA,
        },
    },
    "anyOf": [
        {"required": ["body_html"], "properties": {"body_html": {"minLength": 1}}},
        {"required": ["body_text"], "properties": {"body_text": {"minLength": 1}}},
        {"required": ["editor_blocks"], "properties": {"editor_blocks": {"minItems": 1}}},
    ],
}
