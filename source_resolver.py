# source_resolver.py
"""Acquire source image bytes from exactly one of: remote URL, base64 / data
URL payload, or raw upload.

Remote fetches run with redirects disabled. Every hop (the first request and
each ``Location`` target) is re-checked for scheme and, unless private
networks are allowed, resolved through DNS and rejected if *any* address is
private, loopback or link-local. Bodies are streamed and aborted as soon as
the byte budget is exceeded.
"""

import asyncio
import base64
import binascii
import ipaddress
import logging
import socket
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Union

import httpx

from errors import AppError
from models import SourceKind

logger = logging.getLogger(__name__)

USER_AGENT = "og-card-service/0.1"
MAX_REDIRECTS = 3
ALLOWED_MIME_TYPES = {"image/png", "image/jpeg", "image/webp"}
INLINE_SOURCE_REF = "base64-inline"
UPLOAD_SOURCE_REF = "uploaded-file"

_PRIVATE_V4 = [
    ipaddress.ip_network(cidr)
    for cidr in ("10.0.0.0/8", "127.0.0.0/8", "0.0.0.0/8", "169.254.0.0/16", "172.16.0.0/12", "192.168.0.0/16")
]
_PRIVATE_V6 = [ipaddress.ip_network(cidr) for cidr in ("::1/128", "fc00::/7", "fe80::/10")]

HostResolver = Callable[[str], Awaitable[List[str]]]


# ---------- Source variants ----------

@dataclass(frozen=True)
class UrlSource:
    url: str


@dataclass(frozen=True)
class Base64Source:
    payload: str


@dataclass(frozen=True)
class UploadSource:
    data: bytes
    filename: Optional[str] = None


ImageSource = Union[UrlSource, Base64Source, UploadSource]


@dataclass(frozen=True)
class ResolvedSource:
    data: bytes
    kind: SourceKind
    ref: str


def select_source(
    url: Optional[str] = None,
    base64_payload: Optional[str] = None,
    upload: Optional[bytes] = None,
    filename: Optional[str] = None,
) -> ImageSource:
    """Build the single populated source variant, or fail with INVALID_SOURCE."""
    url = (url or "").strip() or None
    base64_payload = (base64_payload or "").strip() or None
    filename = (filename or "").strip() or None

    populated = [value for value in (url, base64_payload, upload) if value]
    if len(populated) != 1:
        raise AppError(
            "INVALID_SOURCE",
            "Provide exactly one image source: source_image_url, source_image_base64, or source_image_file",
            400,
        )

    if url:
        return UrlSource(url)
    if base64_payload:
        return Base64Source(base64_payload)
    return UploadSource(upload, filename)


# ---------- Address checks ----------

def _is_private_v4(addr: ipaddress.IPv4Address) -> bool:
    return any(addr in net for net in _PRIVATE_V4)


def is_private_address(ip: str) -> bool:
    """True for private/loopback/link-local addresses. Unparsable input counts as private."""
    try:
        addr = ipaddress.ip_address(ip.split("%", 1)[0])
    except ValueError:
        return True

    if isinstance(addr, ipaddress.IPv4Address):
        return _is_private_v4(addr)
    if addr.ipv4_mapped is not None:
        return _is_private_v4(addr.ipv4_mapped)
    return any(addr in net for net in _PRIVATE_V6)


async def resolve_host_addresses(hostname: str) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError):
        return []
    return [info[4][0] for info in infos]


def _decode_payload(payload: str) -> bytes:
    trimmed = payload.strip()
    if trimmed.startswith("data:"):
        comma = trimmed.find(",")
        if comma == -1:
            raise AppError("INVALID_BASE64", "Invalid data URL format", 400)
        trimmed = trimmed[comma + 1:]

    compact = "".join(trimmed.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        raise AppError("INVALID_BASE64", "source_image_base64 must be valid base64", 400)


def _too_large(max_bytes: int, what: str = "Source image") -> AppError:
    return AppError(
        "SOURCE_TOO_LARGE", f"{what} exceeded {max_bytes} bytes", 422, {"max_bytes": max_bytes}
    )


async def _read_body_with_limit(response: httpx.Response, max_bytes: int) -> bytes:
    chunks = []
    total = 0
    async for chunk in response.aiter_bytes():
        if not chunk:
            continue
        total += len(chunk)
        if total > max_bytes:
            raise _too_large(max_bytes)
        chunks.append(chunk)

    if total == 0:
        raise AppError("EMPTY_RESPONSE", "Remote image response body was empty", 422)
    return b"".join(chunks)


class SourceResolver:
    def __init__(
        self,
        max_bytes: int,
        timeout_ms: int,
        allow_private_network: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        resolve_host: Optional[HostResolver] = None,
    ):
        self.max_bytes = max_bytes
        self.timeout_s = timeout_ms / 1000.0
        self.allow_private_network = allow_private_network
        self._transport = transport
        self._resolve_host = resolve_host or resolve_host_addresses

    async def resolve(self, source: ImageSource) -> ResolvedSource:
        if isinstance(source, UploadSource):
            if len(source.data) > self.max_bytes:
                raise _too_large(self.max_bytes, "Uploaded image")
            return ResolvedSource(source.data, SourceKind.UPLOAD, source.filename or UPLOAD_SOURCE_REF)

        if isinstance(source, Base64Source):
            data = _decode_payload(source.payload)
            if not data:
                raise AppError("INVALID_BASE64", "source_image_base64 decoded to empty payload", 400)
            if len(data) > self.max_bytes:
                raise _too_large(self.max_bytes, "Base64 image")
            return ResolvedSource(data, SourceKind.BASE64, INLINE_SOURCE_REF)

        if isinstance(source, UrlSource):
            data = await self.fetch(source.url)
            return ResolvedSource(data, SourceKind.URL, source.url)

        raise AppError("INVALID_SOURCE", "Unsupported image source", 400)

    async def fetch(self, raw_url: str) -> bytes:
        """Fetch a remote image under the hard timeout."""
        try:
            return await asyncio.wait_for(self._fetch(raw_url), timeout=self.timeout_s)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            raise AppError(
                "REMOTE_FETCH_TIMEOUT",
                "Remote image fetch timed out",
                422,
                {"timeout_ms": int(self.timeout_s * 1000)},
            )
        except httpx.HTTPError as exc:
            logger.info("remote fetch failed for %s: %s", raw_url, exc)
            raise AppError("REMOTE_FETCH_FAILED", "Remote image could not be fetched", 422)

    async def _assert_public_host(self, hostname: str) -> None:
        if self.allow_private_network:
            return

        addresses = await self._resolve_host(hostname)
        if not addresses:
            raise AppError("DNS_RESOLUTION_FAILED", f"Unable to resolve hostname: {hostname}", 400)

        for address in addresses:
            if is_private_address(address):
                logger.warning("blocked private-network source host %s (%s)", hostname, address)
                raise AppError("PRIVATE_NETWORK_BLOCKED", "Private network addresses are blocked", 400)

    async def _fetch(self, raw_url: str) -> bytes:
        try:
            url = httpx.URL(raw_url.strip())
        except (httpx.InvalidURL, TypeError, ValueError):
            raise AppError("INVALID_URL", "source_image_url must be a valid URL", 400)
        if not url.scheme:
            raise AppError("INVALID_URL", "source_image_url must be a valid URL", 400)

        async with httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=False,
            timeout=httpx.Timeout(self.timeout_s),
            headers={"user-agent": USER_AGENT},
        ) as client:
            for hop in range(MAX_REDIRECTS + 1):
                if url.scheme not in ("http", "https"):
                    raise AppError("INVALID_URL_PROTOCOL", "Only http:// and https:// URLs are allowed", 400)
                if not url.host:
                    raise AppError("INVALID_URL", "source_image_url must be a valid URL", 400)

                await self._assert_public_host(url.host)
                logger.debug("fetching source image hop=%d url=%s", hop, url)

                async with client.stream("GET", url) as response:
                    if 300 <= response.status_code < 400:
                        location = response.headers.get("location")
                        if not location:
                            raise AppError(
                                "REDIRECT_MISSING_LOCATION", "Redirect response was missing location header", 422
                            )
                        try:
                            url = url.join(location)
                        except httpx.InvalidURL:
                            raise AppError("INVALID_URL", "Redirect location is not a valid URL", 400)
                        continue

                    if not response.is_success:
                        raise AppError(
                            "REMOTE_FETCH_FAILED",
                            f"Remote image returned HTTP {response.status_code}",
                            422,
                            {"status": response.status_code},
                        )

                    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                    if content_type not in ALLOWED_MIME_TYPES:
                        raise AppError(
                            "UNSUPPORTED_MIME_TYPE",
                            "Remote image must be png, jpeg, or webp",
                            422,
                            {"content_type": content_type or "unknown"},
                        )

                    content_length = response.headers.get("content-length")
                    if content_length and content_length.strip().isdigit():
                        if int(content_length) > self.max_bytes:
                            raise _too_large(self.max_bytes)

                    return await _read_body_with_limit(response, self.max_bytes)

        raise AppError("TOO_MANY_REDIRECTS", "Remote image exceeded redirect limit", 422)
