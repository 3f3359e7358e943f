"""Deterministic rendering of editor blocks into an email HTML body."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from models import EditorBlock

DEFAULT_TEMPLATE_PATH = Path(__file__).parent / "templates" / "email_shell.html"
DEFAULT_WIDTH = 600


class EmailRenderer:
    """Render normalized editor blocks via a Jinja email shell."""

    def __init__(self, template_path: Path = DEFAULT_TEMPLATE_PATH) -> None:
        self._template_path = template_path
        self._environment = Environment(
            loader=FileSystemLoader(str(template_path.parent)),
            autoescape=select_autoescape(enabled_extensions=("html", "xml")),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(
        self,
        *,
        subject_line: str,
        preview_text: str | None,
        blocks: list[EditorBlock],
        disclaimers: str | None = None,
        background_color: str = "#f4f4f4",
    ) -> str:
        template = self._environment.get_template(self._template_path.name)
        context: dict[str, Any] = {
            "subject_line": subject_line,
            "preview_text": preview_text or "",
            "blocks": [block.to_dict() for block in blocks],
            "disclaimers": disclaimers or "",
            "background_color": background_color,
            "width": DEFAULT_WIDTH,
        }
        return template.render(**context)
