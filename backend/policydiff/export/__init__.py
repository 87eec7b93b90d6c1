from policydiff.export.markdown import render_policy_markdown
from policydiff.export.pdf import MarkdownPdfConverter, PdfConversionError, PdfServiceNotConfigured
from policydiff.export.workbook import build_policy_workbook, build_standard_workbook

__all__ = [
    "MarkdownPdfConverter",
    "PdfConversionError",
    "PdfServiceNotConfigured",
    "build_policy_workbook",
    "build_standard_workbook",
    "render_policy_markdown",
]
