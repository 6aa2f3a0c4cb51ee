"""Rendering module for presentation concerns.

This module handles all presentation/rendering logic:
- Template placeholder binding
- Certificate style sheets
- PDF conversion

This separates presentation concerns from business logic in services.
"""

from rendering.certificates import (
    DocumentExportUnavailableError,
    RenderContext,
    StyleSheet,
    TemplateBlueprint,
    build_placeholder_values,
    html_to_pdf,
    render_certificate,
)

__all__ = [
    "DocumentExportUnavailableError",
    "RenderContext",
    "StyleSheet",
    "TemplateBlueprint",
    "build_placeholder_values",
    "html_to_pdf",
    "render_certificate",
]
