from __future__ import annotations

import logging
from typing import Any

import httpx

from policydiff.config import Settings

logger = logging.getLogger("policydiff.export")

_SUCCESS_CODE = 100
_STATUS_MESSAGES = {
    503: "APPKEY 权限超限或订单到期，请联系管理员",
    504: "APPKEY 错误，请联系管理员",
    505: "请求次数超出限制，请稍后再试",
    429: "请求频率过高，请稍后再试",
    502: "请求频率过高，请稍后再试",
}


class PdfConversionError(RuntimeError):
    """Raised when the markdown-to-PDF service rejects or fails a conversion."""

    def __init__(self, message: str, *, code: int | None = None) -> None:
        self.code = code
        super().__init__(message)


class PdfServiceNotConfigured(PdfConversionError):
    """Raised when no appkey is configured for the conversion service."""


def status_message(code: int | None, description: str | None) -> str:
    if code in _STATUS_MESSAGES:
        return _STATUS_MESSAGES[code]
    return (description or "").strip() or "PDF 转换失败"


class MarkdownPdfConverter:
    def __init__(self, settings: Settings, *, http_client: httpx.Client | None = None) -> None:
        self._settings = settings
        self._http = http_client or httpx.Client(timeout=settings.markdown_pdf_timeout_seconds)

    def convert(self, markdown: str) -> str:
        """Submit ``markdown`` and return the URL of the generated PDF."""
        appkey = str(self._settings.markdown_pdf_appkey or "").strip()
        if not appkey:
            raise PdfServiceNotConfigured("Markdown-to-PDF service is not configured. Set MARKDOWN_PDF_APPKEY.")

        logger.info("markdown_pdf_requested", extra={"event": "markdown_pdf_requested", "markdown_chars": len(markdown)})
        try:
            response = self._http.post(
                self._settings.markdown_pdf_api_url,
                data={"appkey": appkey, "content": markdown},
            )
        except httpx.HTTPError as exc:
            raise PdfConversionError(f"Markdown-to-PDF service unreachable: {exc}") from exc

        if not response.is_success:
            raise PdfConversionError(
                f"Markdown-to-PDF service returned HTTP {response.status_code} {response.reason_phrase}",
                code=response.status_code,
            )

        try:
            payload: Any = response.json()
        except ValueError as exc:
            raise PdfConversionError("Markdown-to-PDF service returned a non-JSON response.") from exc

        data_status = payload.get("DataStatus") if isinstance(payload, dict) else None
        code = data_status.get("StatusCode") if isinstance(data_status, dict) else None
        if code != _SUCCESS_CODE:
            description = data_status.get("StatusDescription") if isinstance(data_status, dict) else None
            logger.warning(
                "markdown_pdf_rejected",
                extra={"event": "markdown_pdf_rejected", "status_code": code, "description": description},
            )
            raise PdfConversionError(status_message(code, description), code=code)

        pdf_url = payload.get("Data")
        if not isinstance(pdf_url, str) or not pdf_url.strip():
            raise PdfConversionError("未获取到 PDF 链接", code=code)

        logger.info("markdown_pdf_completed", extra={"event": "markdown_pdf_completed"})
        return pdf_url.strip()
