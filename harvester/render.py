"""Artifact rendering: plain text in, paginated PDF bytes out."""

from __future__ import annotations

import io
import logging
from typing import Protocol
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import A4, LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from .config import LayoutConfig

LOGGER = logging.getLogger(__name__)

_PAGE_SIZES = {
    "letter": LETTER,
    "a4": A4,
}


class RenderFailure(RuntimeError):
    """Raised when an artifact cannot be rendered for an item."""


class ArtifactGenerator(Protocol):
    def render(self, text: str, target_name: str, *, title: str | None = None) -> bytes:  # pragma: no cover
        ...


class PdfRenderer:
    """Render extracted text into a PDF using reportlab's platypus flowables."""

    def __init__(self, layout: LayoutConfig | None = None) -> None:
        self._layout = layout or LayoutConfig()
        try:
            self._page_size = _PAGE_SIZES[self._layout.page_size.lower()]
        except KeyError as exc:
            raise ValueError(f"Unsupported page size {self._layout.page_size!r}") from exc
        styles = getSampleStyleSheet()
        self._title_style = ParagraphStyle(
            name="ArtifactTitle",
            parent=styles["Heading1"],
            fontSize=self._layout.title_font_size,
            leading=self._layout.title_font_size * 1.2,
            spaceAfter=self._layout.title_font_size * 0.6,
        )
        self._body_style = ParagraphStyle(
            name="ArtifactBody",
            parent=styles["BodyText"],
            fontSize=self._layout.body_font_size,
            leading=self._layout.body_font_size * self._layout.line_height,
            spaceAfter=self._layout.body_font_size * 0.5,
        )

    def render(self, text: str, target_name: str, *, title: str | None = None) -> bytes:
        if not text or not text.strip():
            raise RenderFailure(f"Refusing to render empty text for {target_name}")

        buffer = io.BytesIO()
        margin = self._layout.margin_mm * mm
        document = SimpleDocTemplate(
            buffer,
            pagesize=self._page_size,
            leftMargin=margin,
            rightMargin=margin,
            topMargin=margin,
            bottomMargin=margin,
            title=title or target_name,
            subject=target_name,
        )

        story = []
        if title:
            story.append(Paragraph(escape(title), self._title_style))
            story.append(Spacer(1, self._layout.body_font_size))
        for paragraph in _paragraphs(text):
            story.append(Paragraph(escape(paragraph).replace("\n", "<br/>"), self._body_style))

        try:
            document.build(story)
        except Exception as exc:
            raise RenderFailure(f"reportlab failed to build {target_name}: {exc}") from exc

        payload = buffer.getvalue()
        if not payload:
            raise RenderFailure(f"Renderer produced no bytes for {target_name}")
        LOGGER.debug("Rendered %s (%d bytes)", target_name, len(payload))
        return payload


def _paragraphs(text: str) -> list[str]:
    return [block.strip() for block in text.split("\n\n") if block.strip()]
