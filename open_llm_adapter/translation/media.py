from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import unquote_to_bytes, urlparse

import httpx

logger = logging.getLogger("uvicorn.error")

DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"
DEFAULT_AUDIO_MIME_TYPE = "audio/mp3"
DEFAULT_VIDEO_MIME_TYPE = "video/mp4"
DEFAULT_FILE_MIME_TYPE = "application/pdf"
DEFAULT_FILE_NAME = "file.pdf"

_SUFFIX_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
    ".mp3": "audio/mp3",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".m4a": "audio/mp4",
    ".flac": "audio/flac",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".pdf": "application/pdf",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".md": "text/markdown",
    ".html": "text/html",
    ".json": "application/json",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

_MAGIC_PREFIXES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"%PDF-", "application/pdf"),
    (b"ID3", "audio/mp3"),
    (b"OggS", "audio/ogg"),
    (b"fLaC", "audio/flac"),
)


@dataclass(frozen=True, slots=True)
class InlineMedia:
    mime_type: str
    data: str


def is_url(value: str) -> bool:
    parsed = urlparse(value.strip())
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def is_data_url(value: str) -> bool:
    return value.strip().lower().startswith("data:")


def parse_data_url(value: str) -> InlineMedia | None:
    """Split ``data:<mime>[;base64],<payload>`` into MIME type and base64 payload."""
    if not is_data_url(value):
        return None
    header, separator, payload = value.strip()[5:].partition(",")
    if not separator:
        return None
    params = [item.strip() for item in header.split(";")]
    mime_type = params[0].lower() if params and params[0] else ""
    if "base64" in (item.lower() for item in params[1:]):
        return InlineMedia(mime_type=mime_type, data=payload.strip())
    encoded = base64.b64encode(unquote_to_bytes(payload)).decode("ascii")
    return InlineMedia(mime_type=mime_type, data=encoded)


def guess_mime_type_from_url(url: str) -> str | None:
    path = urlparse(url.strip()).path
    return _SUFFIX_MIME_TYPES.get(PurePosixPath(path).suffix.lower())


def sniff_mime_type(payload: bytes) -> str | None:
    for prefix, mime_type in _MAGIC_PREFIXES:
        if payload.startswith(prefix):
            return mime_type
    if payload[:4] == b"RIFF" and payload[8:12] == b"WEBP":
        return "image/webp"
    if payload[:4] == b"RIFF" and payload[8:12] == b"WAVE":
        return "audio/wav"
    if payload[4:8] == b"ftyp":
        return "video/mp4"
    return None


def detect_mime_type(value: str, default: str = DEFAULT_IMAGE_MIME_TYPE) -> str:
    """Best-effort MIME type for a data URL, remote URL or bare base64 string."""
    if not value:
        return default
    data_url = parse_data_url(value)
    if data_url is not None:
        return data_url.mime_type or default
    if is_url(value):
        return guess_mime_type_from_url(value) or default
    head = value.strip()[:64]
    head = head[: len(head) - len(head) % 4]
    try:
        decoded = base64.b64decode(head, validate=True)
    except (binascii.Error, ValueError):
        return default
    return sniff_mime_type(decoded) or default


class MediaFetcher:
    """Downloads remote media so it can be sent inline as base64."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        max_bytes: int = 20 * 1024 * 1024,
        enabled: bool = True,
    ) -> None:
        self.enabled = enabled
        self.max_bytes = max_bytes
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout_seconds, follow_redirects=True
            )
        return self._client

    async def fetch(self, url: str) -> InlineMedia:
        client = self._get_client()
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            buffer = bytearray()
            async for block in response.aiter_bytes():
                buffer.extend(block)
                if len(buffer) > self.max_bytes:
                    raise ValueError(f"media exceeds {self.max_bytes} bytes")
            content_type = response.headers.get("content-type", "")
        payload = bytes(buffer)
        if not payload:
            raise ValueError("media response is empty")
        mime_type = content_type.split(";", 1)[0].strip().lower()
        if not mime_type or mime_type in {"application/octet-stream", "binary/octet-stream"}:
            mime_type = (
                sniff_mime_type(payload)
                or guess_mime_type_from_url(url)
                or DEFAULT_IMAGE_MIME_TYPE
            )
        return InlineMedia(
            mime_type=mime_type, data=base64.b64encode(payload).decode("ascii")
        )

    async def inline(self, url: str) -> InlineMedia | None:
        """Like :meth:`fetch`, but returns ``None`` when the download fails."""
        if not self.enabled:
            return None
        try:
            return await self.fetch(url)
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            logger.warning(
                "media_fetch_failed host=%s error_type=%s error=%s",
                urlparse(url).netloc or "-",
                exc.__class__.__name__,
                exc,
            )
            return None

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
