"""Main FastAPI application for the HLS Referer Proxy."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional
from urllib.parse import parse_qs, urlsplit

import httpx
from fastapi import FastAPI, Query, Request, Response, status
from fastapi.responses import PlainTextResponse, StreamingResponse

from hlsproxy import token_codec
from hlsproxy.config import settings
from hlsproxy.exceptions import MalformedPayload, MalformedReference, SecretKeyMissing, TokenError
from hlsproxy.link_builder import LinkBuilder, LinkMode
from hlsproxy.m3u8_rewriter import M3U8Rewriter
from hlsproxy.models import ReferrerContext
from hlsproxy.playlist_classifier import ReferenceRole, has_magic_marker, role_from_extension
from hlsproxy.referrer_policy import decide
from hlsproxy.relay import MANIFEST_CONTENT_TYPE, FetchRelay, is_manifest_response, needs_sniffing
from hlsproxy.url_resolver import check_target

VERSION = "0.1.0"

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Accept, Origin, Referer, Range",
    "Access-Control-Expose-Headers": "Content-Length, Content-Type, Content-Range",
    "Access-Control-Max-Age": "86400",
}

# Global HTTP client for upstream requests
http_client: httpx.AsyncClient | None = None


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan (startup and shutdown)."""
    global http_client

    # Startup
    logger.info("Starting HLS Referer Proxy")
    http_client = httpx.AsyncClient(
        limits=httpx.Limits(
            max_keepalive_connections=settings.http_max_keepalive_connections,
            max_connections=settings.http_max_connections,
        ),
        timeout=httpx.Timeout(settings.http_timeout_seconds),
        follow_redirects=True,
    )
    logger.info(f"HTTP client initialized with timeout={settings.http_timeout_seconds}s")
    if settings.secret_key_bytes is None:
        logger.warning("SECRET_KEY not set: /video links and tokenized mode are disabled")

    yield

    # Shutdown
    logger.info("Shutting down HLS Referer Proxy")
    if http_client:
        await http_client.aclose()
        logger.info("HTTP client closed")


# Initialize FastAPI app
app = FastAPI(
    title="HLS Referer Proxy",
    description="Proxy that rewrites HLS manifests so every request carries the Referer the origin expects",
    version=VERSION,
    lifespan=lifespan,
)


@app.middleware("http")
async def add_cors_headers(request: Request, call_next) -> Response:
    """Answer CORS preflights and add permissive CORS headers to every response."""
    if request.method == "OPTIONS":
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers=CORS_HEADERS)
    response = await call_next(request)
    response.headers.update(CORS_HEADERS)
    return response


def _get_relay() -> FetchRelay:
    if http_client is None:
        raise RuntimeError("HTTP client not initialized; application lifespan has not started")
    return FetchRelay(
        http_client,
        user_agent=settings.user_agent,
        error_excerpt_chars=settings.error_excerpt_chars,
        default_cache_control=settings.segment_cache_control,
    )


def _get_secret_key() -> bytes:
    """
    Configured token key.

    Raises:
        SecretKeyMissing: If no key is configured
        InvalidKeyLength: If the key is not 32 bytes
    """
    key = settings.secret_key_bytes
    if key is None:
        raise SecretKeyMissing()
    token_codec.check_key(key)
    return key


def _link_builder(mode: LinkMode) -> LinkBuilder:
    secret_key = _get_secret_key() if mode == LinkMode.TOKENIZED else settings.secret_key_bytes
    return LinkBuilder(mode=mode, proxy_base=settings.public_base_url, secret_key=secret_key)


def _ref_from_target(url: str) -> Optional[str]:
    """Referer smuggled in the target URL's own ?ref= parameter."""
    try:
        values = parse_qs(urlsplit(url).query).get("ref")
    except ValueError:
        return None
    return values[0] if values else None


def _referrer_context(request: Request, override: Optional[str]) -> ReferrerContext:
    return ReferrerContext(
        declared_referer=request.headers.get("Referer"),
        override_referer=override or None,
    )


async def _open_upstream(request: Request, url: str, context: ReferrerContext, tag: str) -> tuple[FetchRelay, httpx.Response]:
    try:
        url = check_target(url)
    except MalformedReference:
        logger.warning(f"[{tag}] Rejected target URL: {url[:100]}")
        raise
    relay = _get_relay()
    decision = decide(
        context.declared_referer,
        context.override_referer,
        url,
        settings.host_referers,
    )
    logger.info(f"[{tag}] Referer={decision.referer} Origin={decision.origin} (rule={decision.source})")
    headers = relay.build_headers(decision, range_header=request.headers.get("Range"))
    response = await relay.open(url, headers)
    return relay, response


async def _rewritten_manifest(
    relay: FetchRelay,
    upstream: httpx.Response,
    context: ReferrerContext,
    link_builder: LinkBuilder,
    tag: str,
    head: bytes = b"",
    remaining: Optional[AsyncIterator[bytes]] = None,
) -> Response:
    cache_control = upstream.headers.get("Cache-Control") or settings.manifest_cache_control
    manifest_text, final_url = await relay.read_manifest(upstream, head, remaining)

    rewriter = M3U8Rewriter(link_builder)
    rewritten_manifest = rewriter.rewrite_manifest(manifest_text, final_url, context)
    logger.info(f"[{tag}] Manifest rewritten: {len(rewritten_manifest)} bytes")

    return Response(
        content=rewritten_manifest,
        media_type=MANIFEST_CONTENT_TYPE,
        headers={"Cache-Control": cache_control},
    )


def _streamed(
    relay: FetchRelay,
    upstream: httpx.Response,
    url: str,
    head: bytes = b"",
    remaining: Optional[AsyncIterator[bytes]] = None,
) -> StreamingResponse:
    relayed = relay.relay(upstream, url, head, remaining)
    return StreamingResponse(
        relayed.body,
        status_code=relayed.status_code,
        headers=relayed.headers,
    )


@app.get(
    "/m3u8",
    summary="Proxy an HLS playlist",
    description="Fetch a master or media playlist and rewrite its references through this proxy",
)
async def proxy_manifest(
    request: Request,
    url: str = Query(..., description="Absolute URL of the upstream playlist"),
    ref: Optional[str] = Query(None, description="Referer to present to the origin"),
) -> Response:
    """Fetch, rewrite and return a playlist."""
    override = ref or _ref_from_target(url)
    context = _referrer_context(request, override)
    link_builder = _link_builder(LinkMode(settings.link_mode))

    logger.info(f"[M3U8] Request: url={url}, ref={override or 'none'}")
    relay, upstream = await _open_upstream(request, url, context, "M3U8")
    return await _rewritten_manifest(relay, upstream, context, link_builder, "M3U8")


async def _proxy_media(request: Request, url: str, ref: Optional[str], tag: str) -> StreamingResponse:
    context = _referrer_context(request, ref)
    logger.info(f"[{tag}] Request: url={url}, ref={ref or 'none'}")
    relay, upstream = await _open_upstream(request, url, context, tag)
    return _streamed(relay, upstream, url)


@app.get(
    "/proxy",
    summary="Proxy a media segment",
    description="Stream a segment (or any other binary resource) from the origin unchanged",
)
async def proxy_segment(
    request: Request,
    url: str = Query(..., description="Absolute URL of the upstream segment"),
    ref: Optional[str] = Query(None, description="Referer to present to the origin"),
) -> StreamingResponse:
    """Stream a segment."""
    return await _proxy_media(request, url, ref, "PROXY")


@app.get(
    "/key",
    summary="Proxy a decryption key",
    description="Stream an HLS decryption key from the origin unchanged",
)
async def proxy_key(
    request: Request,
    url: str = Query(..., description="Absolute URL of the upstream key"),
    ref: Optional[str] = Query(None, description="Referer to present to the origin"),
) -> StreamingResponse:
    """Stream a key."""
    return await _proxy_media(request, url, ref, "KEY")


@app.get(
    "/video/{token:path}",
    summary="Proxy an opaque link",
    description="Decrypt a {url, referer} token and proxy its target without revealing it",
)
async def proxy_opaque(request: Request, token: str) -> Response:
    """
    Serve a link minted in tokenized mode.

    Invalid tokens are rejected with 400 before any upstream request is
    made. Playlists are rewritten with tokenized links; everything else is
    streamed unchanged.
    """
    secret_key = _get_secret_key()
    try:
        payload = token_codec.decode_payload(token, secret_key)
    except MalformedPayload:
        logger.warning(f"[VIDEO] Token decrypted to a malformed payload: {token[:8]}...")
        raise
    except TokenError as e:
        logger.warning(f"[VIDEO] Token rejected ({type(e).__name__}): {token[:8]}...")
        raise

    context = _referrer_context(request, payload.referer)
    logger.info(f"[VIDEO] Request: token={token[:8]}..., ref={payload.referer or 'none'}")
    relay, upstream = await _open_upstream(request, payload.url, context, "VIDEO")

    if role_from_extension(payload.url) == ReferenceRole.SUB_PLAYLIST or is_manifest_response(upstream, payload.url):
        link_builder = _link_builder(LinkMode.TOKENIZED)
        return await _rewritten_manifest(relay, upstream, context, link_builder, "VIDEO")

    if not needs_sniffing(upstream, payload.url):
        return _streamed(relay, upstream, payload.url)

    # The token does not say whether its URL was a variant playlist
    head, remaining = await relay.peek(upstream)
    if has_magic_marker(head):
        logger.info("[VIDEO] Body starts with #EXTM3U, rewriting as a playlist")
        link_builder = _link_builder(LinkMode.TOKENIZED)
        return await _rewritten_manifest(relay, upstream, context, link_builder, "VIDEO", head, remaining)
    return _streamed(relay, upstream, payload.url, head, remaining)


@app.get(
    "/health",
    summary="Health check",
    description="Health check endpoint",
)
async def health_check() -> dict:
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": VERSION,
        "link_mode": settings.link_mode,
        "tokens_enabled": settings.secret_key_bytes is not None,
    }


@app.get("/", include_in_schema=False)
async def root() -> PlainTextResponse:
    """Usage banner."""
    return PlainTextResponse(
        "HLS Referer Proxy - use /m3u8?url=PLAYLIST_URL&ref=REFERER for playlists, "
        "/proxy?url=URL&ref=REFERER for segments, or /video/TOKEN for encrypted links"
    )
