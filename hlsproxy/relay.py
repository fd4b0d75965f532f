"""Outbound fetches against origin servers."""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx

from hlsproxy.exceptions import MalformedReference, UpstreamFetchFailed, UpstreamUnreachable
from hlsproxy.models import RefererDecision
from hlsproxy.playlist_classifier import PLAYLIST_EXTENSIONS, has_extension

logger = logging.getLogger(__name__)

MANIFEST_CONTENT_TYPE = "application/vnd.apple.mpegurl"

# Upstream headers copied onto relayed segment/key responses
PASSTHROUGH_HEADERS = ("Content-Type", "Content-Length", "Cache-Control", "Content-Range", "Accept-Ranges")

# Content types that say nothing about whether a body is a playlist
GENERIC_CONTENT_TYPES = ("", "text/plain", "application/octet-stream", "binary/octet-stream")

# Enough of a body to see past blank lines and a byte order mark to #EXTM3U
SNIFF_BYTES = 64

EXTENSION_CONTENT_TYPES = {
    ".m3u8": MANIFEST_CONTENT_TYPE,
    ".m3u": MANIFEST_CONTENT_TYPE,
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".aac": "audio/aac",
    ".mp3": "audio/mpeg",
    ".vtt": "text/vtt",
    ".key": "application/octet-stream",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def get_content_type(url: str) -> str:
    """
    Determine Content-Type based on file extension.

    Args:
        url: Upstream URL (query string ignored)

    Returns:
        Appropriate Content-Type header value
    """
    for extension, content_type in EXTENSION_CONTENT_TYPES.items():
        if has_extension(url, (extension,)):
            return content_type
    return "application/octet-stream"


@dataclass
class RelayedResponse:
    """Status, headers and body stream of a segment/key response."""

    status_code: int
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[AsyncIterator[bytes]] = None


class FetchRelay:
    """Fetches upstream resources with policy-chosen Referer/Origin headers."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        user_agent: str,
        error_excerpt_chars: int = 200,
        default_cache_control: str = "public, max-age=86400",
    ):
        self.client = client
        self.user_agent = user_agent
        self.error_excerpt_chars = error_excerpt_chars
        self.default_cache_control = default_cache_control

    def build_headers(self, decision: RefererDecision, range_header: Optional[str] = None) -> dict[str, str]:
        """Outbound request headers for one upstream fetch."""
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "*/*",
            "Accept-Language": "en-US,en;q=0.9",
            **decision.as_headers(),
        }
        # Byte-range requests (#EXT-X-BYTERANGE) must reach the origin
        if range_header:
            headers["Range"] = range_header
        return headers

    async def open(self, url: str, headers: dict[str, str]) -> httpx.Response:
        """
        Start a streamed GET against the origin.

        The caller owns the returned response and must close it, either by
        reading it fully or through relay().

        Raises:
            MalformedReference: If httpx cannot parse the URL
            UpstreamFetchFailed: If the origin answers with a non-2xx status
            UpstreamUnreachable: On timeouts and transport errors
        """
        logger.info(f"[PROXY] Fetching: {url}")
        logger.debug(f"[PROXY] Referer: {headers.get('Referer')}, Origin: {headers.get('Origin')}")

        try:
            request = self.client.build_request("GET", url, headers=headers)
        except httpx.InvalidURL as e:
            logger.warning(f"[PROXY] Rejected URL {url[:100]}: {e}")
            raise MalformedReference(url, str(e)) from e

        try:
            response = await self.client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.error(f"[PROXY] Timeout fetching: {url}")
            raise UpstreamUnreachable(url, "upstream timed out") from e
        except httpx.HTTPError as e:
            logger.error(f"[PROXY] HTTP error fetching {url}: {e}")
            raise UpstreamUnreachable(url) from e

        logger.info(f"[PROXY] Response status: {response.status_code}")

        if not response.is_success:
            excerpt = await self._read_excerpt(response)
            logger.error(f"[PROXY] Upstream error: status={response.status_code}, url={url}, body={excerpt!r}")
            raise UpstreamFetchFailed(response.status_code, excerpt)

        return response

    async def _read_excerpt(self, response: httpx.Response) -> str:
        """Read at most error_excerpt_chars of an error body and close the response."""
        collected = ""
        try:
            async for chunk in response.aiter_text():
                collected += chunk
                if len(collected) >= self.error_excerpt_chars:
                    break
        except httpx.HTTPError as e:
            logger.debug(f"[PROXY] Could not read upstream error body: {e}")
        finally:
            await response.aclose()
        return collected[: self.error_excerpt_chars]

    async def peek(self, response: httpx.Response) -> tuple[bytes, AsyncIterator[bytes]]:
        """
        Read the first SNIFF_BYTES of a body without losing them.

        Returns:
            The bytes read so far and an iterator over the rest of the body;
            pass both on to read_manifest() or relay()
        """
        chunks = response.aiter_bytes()
        head = b""
        try:
            while len(head) < SNIFF_BYTES:
                head += await anext(chunks)
        except StopAsyncIteration:
            pass
        except httpx.HTTPError as e:
            await response.aclose()
            raise UpstreamUnreachable(str(response.request.url), "upstream closed the connection") from e
        return head, chunks

    async def read_manifest(
        self,
        response: httpx.Response,
        head: bytes = b"",
        remaining: Optional[AsyncIterator[bytes]] = None,
    ) -> tuple[str, str]:
        """
        Buffer a manifest body (manifests are small).

        Args:
            response: Open upstream response
            head: Bytes already consumed by peek()
            remaining: Rest of the body from peek(); None reads the whole body

        Returns:
            Manifest text and the final URL after redirects, which is the
            base for relative references
        """
        try:
            if remaining is None:
                body = await response.aread()
            else:
                body = head + b"".join([chunk async for chunk in remaining])
        except httpx.HTTPError as e:
            raise UpstreamUnreachable(str(response.request.url), "upstream closed the connection") from e
        finally:
            await response.aclose()

        logger.info(f"[PROXY] Manifest size: {len(body)} bytes")
        # utf-8-sig drops a leading byte order mark
        return body.decode("utf-8-sig", errors="replace"), str(response.url)

    def relay(
        self,
        response: httpx.Response,
        url: str,
        head: bytes = b"",
        remaining: Optional[AsyncIterator[bytes]] = None,
    ) -> RelayedResponse:
        """
        Stream a segment or key back to the client unchanged.

        Content-Type falls back to the URL's extension and Cache-Control to
        the configured default when the origin omits them. head and
        remaining come from peek() when the body was sniffed first.
        """
        headers = {}
        for name in PASSTHROUGH_HEADERS:
            value = response.headers.get(name)
            if value:
                headers[name] = value

        # httpx decodes Content-Encoding, so the upstream length no longer applies
        if "Content-Encoding" in response.headers:
            headers.pop("Content-Length", None)

        headers.setdefault("Content-Type", get_content_type(url))
        headers.setdefault("Cache-Control", self.default_cache_control)

        return RelayedResponse(
            status_code=response.status_code,
            headers=headers,
            body=self._stream_body(response, head, remaining),
        )

    async def _stream_body(
        self,
        response: httpx.Response,
        head: bytes = b"",
        remaining: Optional[AsyncIterator[bytes]] = None,
    ) -> AsyncIterator[bytes]:
        """Yield the upstream body; closing on exit also aborts it when the client goes away."""
        try:
            if head:
                yield head
            chunks = remaining if remaining is not None else response.aiter_bytes()
            async for chunk in chunks:
                yield chunk
        finally:
            await response.aclose()


def is_manifest_response(response: httpx.Response, url: str) -> bool:
    """True if the upstream response is an HLS playlist."""
    content_type = response.headers.get("Content-Type", "").lower()
    return "mpegurl" in content_type or has_extension(url, PLAYLIST_EXTENSIONS)


def needs_sniffing(response: httpx.Response, url: str) -> bool:
    """
    True when neither the URL nor the Content-Type tells a playlist from media.

    Opaque links carry no role, so a variant like ``variant?id=1`` served
    as text/plain can only be recognised by its body.
    """
    content_type = response.headers.get("Content-Type", "").split(";", 1)[0].strip().lower()
    if content_type not in GENERIC_CONTENT_TYPES:
        return False
    return not any(has_extension(url, (extension,)) for extension in EXTENSION_CONTENT_TYPES)
