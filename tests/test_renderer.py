"""Tests for deterministic email body rendering."""

from __future__ import annotations

from models import EditorBlock
from pipeline.renderer import EmailRenderer

PROPS = {
    "paddingTop": 24,
    "paddingRight": 16,
    "paddingBottom": 24,
    "paddingLeft": 16,
    "backgroundColor": "",
}


def _block(block_id: str, category: str, html: str, **props: object) -> EditorBlock:
    return EditorBlock(
        id=block_id,
        category=category,
        module_id=f"{category}-1",
        html=html,
        props={**PROPS, **props},
    )


def test_renderer_keeps_block_order_and_html() -> None:
    html = EmailRenderer().render(
        subject_line="Chip in <today>",
        preview_text="Every dollar counts",
        blocks=[
            _block("b1", "header", "<h1>Jane Doe</h1>", backgroundColor="#112233"),
            _block("b2", "donation", "<a href='https://secure.actblue.com'>Give</a>"),
        ],
        disclaimers="Paid for by Jane Doe for Senate.",
    )

    assert html.index("<h1>Jane Doe</h1>") < html.index("Give</a>")
    assert 'data-block-id="b1"' in html
    assert "background-color:#112233;" in html
    assert "padding:24px 16px 24px 16px;" in html
    assert "<title>Chip in &lt;today&gt;</title>" in html
    assert "Every dollar counts" in html
    assert "Paid for by Jane Doe for Senate." in html


def test_renderer_omits_empty_preview_and_disclaimers() -> None:
    html = EmailRenderer().render(
        subject_line="Subject",
        preview_text=None,
        blocks=[_block("b1", "content", "<p>Body</p>")],
    )

    assert "display:none" not in html
    assert "font-size:11px" not in html
    assert "<p>Body</p>" in html
