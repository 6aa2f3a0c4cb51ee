"""Certificate rendering - template binding, styling and PDF export.

This module handles the presentation side of certificates:
- Placeholder substitution into template markup
- Style sheet generation from a template's typed style values
- HTML document assembly
- PDF conversion

Rendering is pure: no I/O, no clock, no randomness. The same
(context, template) pair always yields byte-identical output, which is what
makes fingerprints recomputable at verification time.
"""

import html
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date
from typing import Any

from core.errors import RenderError

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

STYLE_SECTIONS: tuple[str, ...] = (
    "title",
    "body",
    "recipient",
    "issuer",
    "description",
    "dates",
)

# Month names are spelled out here rather than via strftime("%B") so the
# output does not depend on the process locale.
_MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)

_DEFAULT_FONT = "Helvetica, Arial, sans-serif"
_DEFAULT_COLOR = "#111827"
_DEFAULT_SIZES: dict[str, int] = {
    "title": 32,
    "body": 12,
    "recipient": 28,
    "issuer": 14,
    "description": 12,
    "dates": 10,
}
_DEFAULT_PAGE_SIZE = "A4 landscape"
_DEFAULT_MARGIN = 20

_UNSAFE_CSS_CHARS = re.compile(r"[;{}<>\\\n\r]")


def _css_value(value: Any) -> str:
    """Strip characters that could terminate a declaration or the style block."""
    return _UNSAFE_CSS_CHARS.sub("", str(value)).strip()


def format_date(value: date) -> str:
    return f"{_MONTHS[value.month - 1]} {value.day}, {value.year}"


@dataclass(frozen=True)
class TextStyle:
    font: str
    color: str
    size: int


@dataclass(frozen=True)
class StyleSheet:
    """Typed view of a template's style values, one TextStyle per section."""

    sections: tuple[tuple[str, TextStyle], ...]
    page_size: str = _DEFAULT_PAGE_SIZE
    margin: int = _DEFAULT_MARGIN

    @classmethod
    def from_mapping(cls, styles: Mapping[str, Any]) -> "StyleSheet":
        """Build from stored template styles.

        Accepts the flat camelCase keys templates are authored with
        (``titleFont``, ``titleColor``, ``titleFontSize``, ...) and the
        structured form (``{"title": {"font": ..., "color": ..., "size": ...}}``).
        Structured values win when both are present. Sections without their
        own font inherit the body font.
        """
        resolved: dict[str, TextStyle] = {}
        body_font = _DEFAULT_FONT

        for section in ("body", *[s for s in STYLE_SECTIONS if s != "body"]):
            nested = styles.get(section)
            nested = nested if isinstance(nested, Mapping) else {}

            font = nested.get("font", styles.get(f"{section}Font"))
            color = nested.get("color", styles.get(f"{section}Color"))
            size = nested.get("size", styles.get(f"{section}FontSize"))

            text_style = TextStyle(
                font=_css_value(font) if font else body_font,
                color=_css_value(color) if color else _DEFAULT_COLOR,
                size=int(size) if size is not None else _DEFAULT_SIZES[section],
            )
            if section == "body":
                body_font = text_style.font
            resolved[section] = text_style

        page_size = styles.get("pageSize") or _DEFAULT_PAGE_SIZE
        margin = styles.get("margin")

        return cls(
            sections=tuple((name, resolved[name]) for name in STYLE_SECTIONS),
            page_size=_css_value(page_size),
            margin=int(margin) if margin is not None else _DEFAULT_MARGIN,
        )

    def section(self, name: str) -> TextStyle:
        return dict(self.sections)[name]

    def to_css(self) -> str:
        lines = [f"@page {{ size: {self.page_size}; margin: {self.margin}mm; }}"]
        for name, style in self.sections:
            lines.append(
                f".cert-{name} {{ font-family: {style.font}; "
                f"color: {style.color}; font-size: {style.size}pt; }}"
            )
        return "\n".join(lines)


@dataclass(frozen=True)
class TemplateBlueprint:
    """The parts of a template the renderer needs."""

    id: str
    version: int
    html: str
    styles: Mapping[str, Any] = field(default_factory=dict)
    placeholders: Sequence[str] = ()


@dataclass(frozen=True)
class RenderContext:
    """Certificate data available to templates."""

    certificate_id: str
    serial_number: str
    title: str
    description: str
    issuer_name: str
    recipient_name: str
    recipient_email: str
    issue_date: date
    expiry_date: date | None = None
    image_url: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


def build_placeholder_values(context: RenderContext) -> dict[str, str | None]:
    """Map placeholder names to values. ``None`` means unresolvable."""
    values: dict[str, str | None] = {
        key: value for key, value in context.metadata.items()
    }
    if "course_name" in context.metadata:
        values["courseName"] = context.metadata["course_name"]

    values.update(
        {
            "certificateId": context.certificate_id,
            "serialNumber": context.serial_number,
            "title": context.title,
            "description": context.description,
            "issuerName": context.issuer_name,
            "recipientName": context.recipient_name,
            "recipientEmail": context.recipient_email,
            "issueDate": format_date(context.issue_date),
            "expiryDate": (
                format_date(context.expiry_date) if context.expiry_date else None
            ),
            "imageUrl": context.image_url,
        }
    )
    return values


def find_placeholders(markup: str) -> list[str]:
    """Placeholder names referenced by markup, in first-seen order."""
    seen: dict[str, None] = {}
    for match in PLACEHOLDER_PATTERN.finditer(markup):
        seen.setdefault(match.group(1), None)
    return list(seen)


def render_certificate(context: RenderContext, template: TemplateBlueprint) -> str:
    """Bind certificate data into a template and return the HTML document.

    Raises:
        RenderError: If a placeholder declared by the template or referenced
            by its markup has no value (case-sensitive, exact names).
    """
    values = build_placeholder_values(context)

    required = dict.fromkeys([*template.placeholders, *find_placeholders(template.html)])
    missing = [name for name in required if values.get(name) is None]
    if missing:
        raise RenderError.missing_placeholders(missing)

    def _substitute(match: re.Match[str]) -> str:
        return html.escape(values[match.group(1)] or "", quote=True)

    body = PLACEHOLDER_PATTERN.sub(_substitute, template.html)
    css = StyleSheet.from_mapping(template.styles).to_css()
    safe_title = html.escape(context.title, quote=True)

    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '<meta charset="utf-8">\n'
        f"<title>{safe_title}</title>\n"
        f'<meta name="certificate-serial" content="{context.serial_number}">\n'
        f"<style>\n{css}\n</style>\n"
        "</head>\n"
        f'<body class="cert-body">\n{body}\n</body>\n'
        "</html>\n"
    )


class DocumentExportUnavailableError(RuntimeError):
    """Raised when WeasyPrint or its native libraries are missing."""


def _url_fetcher(url: str, *args: Any, **kwargs: Any):
    """Only inline data: URIs; never reach out to the network while exporting."""
    from weasyprint.urls import default_url_fetcher

    if not url.startswith("data:"):
        raise ValueError("External resources are not allowed in PDF export")
    return default_url_fetcher(url, *args, **kwargs)


def html_to_pdf(document: str) -> bytes:
    """Convert a rendered certificate document to PDF bytes using WeasyPrint.

    Raises:
        DocumentExportUnavailableError: If WeasyPrint's system libraries
            (Pango/GObject) are not installed.
    """
    try:
        from weasyprint import HTML
    except (ImportError, OSError) as e:
        raise DocumentExportUnavailableError(
            "PDF export requires WeasyPrint and its system libraries. "
            "On Ubuntu/Debian: apt-get install libpango-1.0-0 libpangoft2-1.0-0. "
            "On macOS: brew install pango."
        ) from e

    return HTML(string=document, url_fetcher=_url_fetcher).write_pdf()
