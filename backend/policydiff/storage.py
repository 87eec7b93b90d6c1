from __future__ import annotations

from datetime import datetime
import logging
from pathlib import Path
import re
import time
from uuid import uuid4

import httpx

from policydiff.config import Settings

logger = logging.getLogger("policydiff.storage")

_ILLEGAL_FILE_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")


class StorageError(RuntimeError):
    """Raised when storing or fetching a document fails."""


class StorageMisconfigured(StorageError):
    """Raised when the configured storage backend cannot be used at all."""


def _normalize_backend(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"", "local", "filesystem", "fs"}:
        return "local"
    if normalized in {"s3"}:
        return "s3"
    raise StorageMisconfigured(f"Unsupported STORAGE_BACKEND '{value}'. Use 'local' or 's3'.")


def build_upload_key(file_name: str, *, now_ms: int | None = None) -> str:
    safe_name = Path(file_name or "").name
    extension = safe_name.rsplit(".", 1)[-1] if "." in safe_name else ""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    key = f"{stamp}-{uuid4().hex}"
    return f"{key}.{extension}" if extension else key


def build_fetched_pdf_key(file_name: str, *, now: datetime | None = None) -> str:
    sanitized = _ILLEGAL_FILE_NAME_CHARS.sub("_", file_name)
    sanitized = _WHITESPACE.sub("_", sanitized).strip()
    stem = re.sub(r"\.pdf$", "", sanitized, flags=re.IGNORECASE) or "document"
    stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
    return f"{stem}_{stamp}.pdf"


def public_url(base: str, key: str) -> str:
    domain = base if base.endswith("/") else f"{base}/"
    return f"{domain}{key.lstrip('/')}"


def _object_key(settings: Settings, key: str) -> str:
    prefix = str(settings.s3_prefix or "").strip().strip("/")
    return f"{prefix}/{key}" if prefix else key


def _s3_client(settings: Settings):
    try:
        import boto3  # type: ignore
    except ImportError as exc:
        raise StorageMisconfigured("boto3 is required for S3 storage backend.") from exc

    endpoint = str(settings.s3_endpoint_url or "").strip() or None
    return boto3.client("s3", region_name=settings.aws_region, endpoint_url=endpoint)


def save_bytes(*, settings: Settings, key: str, content: bytes, content_type: str) -> str:
    """Store ``content`` under ``key`` and return its public URL."""
    backend = _normalize_backend(settings.storage_backend)

    if backend == "local":
        root = Path(settings.storage_root)
        destination = root / Path(key).name
        try:
            root.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to write '{key}' to local storage: {exc}") from exc
        return public_url(settings.storage_public_base_url, destination.name)

    bucket = str(settings.s3_bucket or "").strip()
    if not bucket:
        raise StorageMisconfigured("S3 storage backend selected but S3_BUCKET is not configured.")
    domain = str(settings.s3_public_domain or "").strip()
    if not domain:
        raise StorageMisconfigured("S3 storage backend selected but S3_PUBLIC_DOMAIN is not configured.")

    object_key = _object_key(settings, key)
    client = _s3_client(settings)
    try:
        client.put_object(
            Bucket=bucket,
            Key=object_key,
            Body=content,
            ContentType=content_type or "application/octet-stream",
        )
    except Exception as exc:  # pragma: no cover - depends on object storage integration
        raise StorageError(f"Failed to write object (bucket={bucket}, key={object_key}): {exc}") from exc

    return public_url(domain, object_key)


def save_upload(*, settings: Settings, file_name: str, content_type: str, content: bytes) -> dict[str, object]:
    key = build_upload_key(file_name)
    file_url = save_bytes(settings=settings, key=key, content=content, content_type=content_type)
    logger.info(
        "upload_stored",
        extra={
            "event": "upload_stored",
            "file_name": file_name,
            "size_bytes": len(content),
            "object_key": key,
        },
    )
    return {
        "file_url": file_url,
        "file_name": file_name,
        "file_size": len(content),
        "object_key": key,
    }


def fetch_to_storage(
    *,
    settings: Settings,
    source_url: str,
    file_name: str,
    http_client: httpx.Client | None = None,
) -> dict[str, object]:
    """Copy a remote PDF into storage under a sanitised, timestamped name."""
    key = build_fetched_pdf_key(file_name)
    client = http_client or httpx.Client(timeout=settings.remote_fetch_timeout_seconds, follow_redirects=True)
    try:
        response = client.get(source_url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise StorageError(
            f"Fetching '{source_url}' failed with HTTP {exc.response.status_code}."
        ) from exc
    except httpx.HTTPError as exc:
        raise StorageError(f"Fetching '{source_url}' failed: {exc}") from exc
    finally:
        if http_client is None:
            client.close()

    content = response.content
    file_url = save_bytes(
        settings=settings,
        key=key,
        content=content,
        content_type=response.headers.get("content-type", "application/pdf"),
    )
    logger.info(
        "remote_file_stored",
        extra={
            "event": "remote_file_stored",
            "source_url": source_url,
            "object_key": key,
            "size_bytes": len(content),
        },
    )
    return {"pdf_url": file_url, "file_name": key, "file_size": len(content)}


def probe_storage(settings: Settings) -> dict[str, object]:
    """Write and read back a small object; used by the readiness check."""
    backend = _normalize_backend(settings.storage_backend)
    token = f"{time.time()}-{uuid4()}"

    if backend == "local":
        root = Path(settings.storage_root)
        root.mkdir(parents=True, exist_ok=True)
        probe = root / ".ready_probe"
        probe.write_text(token, encoding="utf-8")
        read_back = probe.read_text(encoding="utf-8")
        probe.unlink(missing_ok=True)
        if read_back != token:
            raise StorageError("local storage probe mismatch")
        return {"ok": True, "backend": "local"}

    bucket = str(settings.s3_bucket or "").strip()
    if not bucket:
        raise StorageMisconfigured("S3 storage backend selected but S3_BUCKET is not configured.")
    key = _object_key(settings, f"readyz/{settings.app_env}/backend.txt")
    client = _s3_client(settings)
    client.put_object(Bucket=bucket, Key=key, Body=token.encode("utf-8"), ContentType="text/plain")
    body = client.get_object(Bucket=bucket, Key=key).get("Body")
    if body is None:
        raise StorageError("S3 get_object returned no body")
    if body.read().decode("utf-8", errors="replace") != token:
        raise StorageError("S3 readiness probe mismatch")
    return {"ok": True, "backend": "s3", "bucket": bucket, "key": key}
