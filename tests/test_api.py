"""Tests for API endpoints."""

from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import respx
from fastapi.testclient import TestClient

from hlsproxy import token_codec
from hlsproxy.config import settings
from hlsproxy.main import app

KEY = "0123456789abcdef0123456789abcdef"
REFERER = "https://ref.test/"

MASTER_URL = "https://origin.test/show/master.m3u8"
MEDIA_URL = "https://origin.test/show/stream_0/playlist.m3u8"
SEGMENT_URL = "https://origin.test/show/stream_0/seg1.ts"
KEY_URL = "https://origin.test/show/stream_0/enc.key"

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-STREAM-INF:BANDWIDTH=800000
stream_0/playlist.m3u8"""

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-TARGETDURATION:10
#EXT-X-KEY:METHOD=AES-128,URI="enc.key"
#EXTINF:10.0,
seg1.ts
#EXT-X-ENDLIST"""

TS_PACKET = b"\x47" + b"\x00" * 187


@pytest.fixture(autouse=True)
def default_settings(monkeypatch):
    """Isolate every test from the environment's configuration."""
    monkeypatch.setattr(settings, "secret_key", None)
    monkeypatch.setattr(settings, "link_mode", "transparent")
    monkeypatch.setattr(settings, "public_base_url", "")


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def _links(body: str) -> list[str]:
    return [line for line in body.split("\n") if line and not line.startswith("#")]


def _query(link: str) -> dict:
    return {name: values[0] for name, values in parse_qs(urlsplit(link).query).items()}


class TestManifestEndpoint:
    """Test suite for /m3u8."""

    @respx.mock
    def test_master_playlist_rewritten(self, client):
        route = respx.get(MASTER_URL).respond(200, text=MASTER_PLAYLIST)

        response = client.get("/m3u8", params={"url": MASTER_URL, "ref": REFERER})

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert response.headers["cache-control"] == "no-cache"
        assert response.text.split("\n") == [
            "#EXTM3U",
            "#EXT-X-STREAM-INF:BANDWIDTH=800000",
            "/m3u8?url=https%3A%2F%2Forigin.test%2Fshow%2Fstream_0%2Fplaylist.m3u8&ref=https%3A%2F%2Fref.test%2F",
        ]

        upstream = route.calls.last.request
        assert upstream.headers["Referer"] == REFERER
        assert upstream.headers["Origin"] == "https://ref.test"
        assert "Mozilla" in upstream.headers["User-Agent"]

    @respx.mock
    def test_media_playlist_rewritten(self, client):
        respx.get(MEDIA_URL).respond(200, text=MEDIA_PLAYLIST)

        response = client.get("/m3u8", params={"url": MEDIA_URL, "ref": REFERER})
        body = response.text

        assert '#EXT-X-KEY:METHOD=AES-128,URI="/key?url=https%3A%2F%2Forigin.test%2Fshow%2Fstream_0%2Fenc.key&ref=' in body
        assert _links(body) == [
            "/proxy?url=https%3A%2F%2Forigin.test%2Fshow%2Fstream_0%2Fseg1.ts&ref=https%3A%2F%2Fref.test%2F"
        ]

    @respx.mock
    def test_upstream_cache_control_kept(self, client):
        respx.get(MEDIA_URL).respond(200, text=MEDIA_PLAYLIST, headers={"Cache-Control": "max-age=2"})

        response = client.get("/m3u8", params={"url": MEDIA_URL})

        assert response.headers["cache-control"] == "max-age=2"

    @respx.mock
    def test_declared_referer_used_and_propagated(self, client):
        route = respx.get(MASTER_URL).respond(200, text=MASTER_PLAYLIST)

        response = client.get("/m3u8", params={"url": MASTER_URL}, headers={"Referer": "https://page.test/watch"})

        assert route.calls.last.request.headers["Referer"] == "https://page.test/watch"
        assert _query(_links(response.text)[0])["ref"] == "https://page.test/watch"

    @respx.mock
    def test_no_referer_falls_back_to_target_origin(self, client):
        route = respx.get(MASTER_URL).respond(200, text=MASTER_PLAYLIST)

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert route.calls.last.request.headers["Referer"] == "https://origin.test"
        assert route.calls.last.request.headers["Origin"] == "https://origin.test"
        assert "ref" not in _query(_links(response.text)[0])

    @respx.mock
    def test_known_host_gets_fixed_origin(self, client):
        url = "https://hls.krussdomi.com/anime/master.m3u8"
        route = respx.get(url).respond(200, text=MASTER_PLAYLIST)

        client.get("/m3u8", params={"url": url}, headers={"Referer": "https://page.test/"})

        upstream = route.calls.last.request
        assert upstream.headers["Referer"] == url
        assert upstream.headers["Origin"] == "https://hls.krussdomi.com"

    @respx.mock
    def test_ref_inside_target_url(self, client):
        url = "https://origin.test/show/master.m3u8?ref=https://inner.test/"
        route = respx.get(url).respond(200, text=MASTER_PLAYLIST)

        client.get("/m3u8", params={"url": url})

        assert route.calls.last.request.headers["Referer"] == "https://inner.test/"

    @respx.mock
    def test_relative_references_follow_redirect(self, client):
        respx.get(MASTER_URL).respond(302, headers={"Location": "https://cdn.test/moved/master.m3u8"})
        respx.get("https://cdn.test/moved/master.m3u8").respond(200, text=MASTER_PLAYLIST)

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert _query(_links(response.text)[0])["url"] == "https://cdn.test/moved/stream_0/playlist.m3u8"

    @respx.mock
    def test_public_base_url(self, client, monkeypatch):
        monkeypatch.setattr(settings, "public_base_url", "https://proxy.test")
        respx.get(MASTER_URL).respond(200, text=MASTER_PLAYLIST)

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert _links(response.text)[0].startswith("https://proxy.test/m3u8?url=")

    @respx.mock
    def test_tokenized_mode(self, client, monkeypatch):
        monkeypatch.setattr(settings, "link_mode", "tokenized")
        monkeypatch.setattr(settings, "secret_key", KEY)
        respx.get(MASTER_URL).respond(200, text=MASTER_PLAYLIST)

        response = client.get("/m3u8", params={"url": MASTER_URL, "ref": REFERER})
        link = _links(response.text)[0]

        assert link.startswith("/video/")
        payload = token_codec.decode_payload(link[len("/video/"):], KEY.encode())
        assert payload.url == MEDIA_URL
        assert payload.referer == REFERER

    def test_tokenized_mode_without_key(self, client, monkeypatch):
        monkeypatch.setattr(settings, "link_mode", "tokenized")

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert response.status_code == 500

    def test_missing_url(self, client):
        assert client.get("/m3u8").status_code == 422


class TestUpstreamFailures:
    """Test suite for origin errors."""

    @respx.mock
    def test_upstream_error_status(self, client):
        respx.get(MASTER_URL).respond(403, text="denied " * 100)

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["error"] == "Failed to fetch from remote server"
        assert detail["status"] == 403
        assert detail["details"] == ("denied " * 100)[:200]

    @respx.mock
    def test_upstream_unreachable(self, client):
        respx.get(SEGMENT_URL).mock(side_effect=httpx.ConnectError("connection refused"))

        response = client.get("/proxy", params={"url": SEGMENT_URL})

        assert response.status_code == 502

    @respx.mock
    def test_upstream_timeout(self, client):
        respx.get(SEGMENT_URL).mock(side_effect=httpx.ReadTimeout("slow"))

        response = client.get("/proxy", params={"url": SEGMENT_URL})

        assert response.status_code == 502
        assert response.json()["detail"] == "Bad gateway: upstream timed out"

    @respx.mock
    def test_not_a_playlist(self, client):
        respx.get(MASTER_URL).respond(200, text="<html><body>Blocked</body></html>")

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert response.status_code == 502

    @respx.mock
    def test_errors_carry_cors_headers(self, client):
        respx.get(MASTER_URL).respond(404)

        response = client.get("/m3u8", params={"url": MASTER_URL})

        assert response.status_code == 502
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.parametrize("route", ["/m3u8", "/proxy", "/key"])
    @pytest.mark.parametrize(
        "url",
        [
            "http://[bad-host/x.m3u8",
            "https://origin.test:99999/x.m3u8",
            "ftp://origin.test/x.m3u8",
            "/show/x.m3u8",
            "https:///x.m3u8",
        ],
    )
    @respx.mock
    def test_malformed_target_rejected_without_fetch(self, client, route, url):
        response = client.get(route, params={"url": url})

        assert response.status_code == 400
        assert response.headers["access-control-allow-origin"] == "*"
        assert not respx.calls


class TestMediaEndpoints:
    """Test suite for /proxy and /key."""

    @respx.mock
    def test_segment_defaults(self, client):
        route = respx.get(SEGMENT_URL).respond(200, content=TS_PACKET)

        response = client.get("/proxy", params={"url": SEGMENT_URL, "ref": REFERER})

        assert response.status_code == 200
        assert response.content == TS_PACKET
        assert response.headers["content-type"] == "video/mp2t"
        assert response.headers["cache-control"] == "public, max-age=86400"
        assert route.calls.last.request.headers["Referer"] == REFERER

    @respx.mock
    def test_segment_upstream_headers_copied(self, client):
        respx.get(SEGMENT_URL).respond(
            200,
            content=TS_PACKET,
            headers={"Content-Type": "video/MP2T", "Cache-Control": "max-age=60"},
        )

        response = client.get("/proxy", params={"url": SEGMENT_URL})

        assert response.headers["content-type"] == "video/MP2T"
        assert response.headers["cache-control"] == "max-age=60"
        assert response.headers["content-length"] == str(len(TS_PACKET))

    @respx.mock
    def test_key(self, client):
        route = respx.get(KEY_URL).respond(200, content=b"k" * 16)

        response = client.get("/key", params={"url": KEY_URL, "ref": REFERER})

        assert response.content == b"k" * 16
        assert response.headers["content-type"] == "application/octet-stream"
        assert route.calls.last.request.headers["Origin"] == "https://ref.test"

    @respx.mock
    def test_range_forwarded(self, client):
        route = respx.get(SEGMENT_URL).respond(
            206,
            content=TS_PACKET[:4],
            headers={"Content-Range": "bytes 0-3/188", "Accept-Ranges": "bytes"},
        )

        response = client.get("/proxy", params={"url": SEGMENT_URL}, headers={"Range": "bytes=0-3"})

        assert response.status_code == 206
        assert response.headers["content-range"] == "bytes 0-3/188"
        assert route.calls.last.request.headers["Range"] == "bytes=0-3"

    def test_preflight(self, client):
        response = client.options("/proxy")

        assert response.status_code == 204
        assert response.headers["access-control-allow-origin"] == "*"
        assert "Range" in response.headers["access-control-allow-headers"]


class TestOpaqueEndpoint:
    """Test suite for /video/<token>."""

    def _token(self, url: str, referer: str = REFERER) -> str:
        return token_codec.encode_payload(url, referer, KEY.encode())

    def test_no_secret_key(self, client):
        response = client.get("/video/anything")

        assert response.status_code == 500
        assert response.json()["detail"] == "Server configuration error: secret key not defined"

    def test_wrong_key_length(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", "too-short")

        response = client.get("/video/anything")

        assert response.status_code == 500
        assert "too-short" not in response.text

    @respx.mock
    def test_garbage_token_rejected_without_fetch(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)

        response = client.get("/video/not-a-token")

        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid encrypted URL"
        assert not respx.calls

    def test_malformed_payload(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)
        token = token_codec.encode(b'{"referer": "https://ref.test/"}', KEY.encode())

        response = client.get(f"/video/{token}")

        assert response.status_code == 400

    @respx.mock
    def test_playlist_rewritten_with_tokens(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)
        route = respx.get(MASTER_URL).respond(200, text=MASTER_PLAYLIST)

        response = client.get(f"/video/{self._token(MASTER_URL)}")

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert route.calls.last.request.headers["Referer"] == REFERER

        link = _links(response.text)[0]
        assert link.startswith("/video/")
        payload = token_codec.decode_payload(link[len("/video/"):], KEY.encode())
        assert payload.url == MEDIA_URL
        assert payload.referer == REFERER

    @respx.mock
    def test_segment_streamed(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)
        respx.get(SEGMENT_URL).respond(200, content=TS_PACKET)

        response = client.get(f"/video/{self._token(SEGMENT_URL)}")

        assert response.status_code == 200
        assert response.content == TS_PACKET
        assert response.headers["content-type"] == "video/mp2t"

    @respx.mock
    def test_playlist_detected_by_content_type(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)
        url = "https://origin.test/show/play?id=7"
        respx.get(url).respond(
            200,
            text=MEDIA_PLAYLIST,
            headers={"Content-Type": "application/vnd.apple.mpegurl"},
        )

        response = client.get(f"/video/{self._token(url, '')}")

        assert all(link.startswith("/video/") for link in _links(response.text))
        assert 'URI="/video/' in response.text


    @respx.mock
    def test_extensionless_variant_rewritten(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)
        master_url = "https://origin.test/show/master"
        respx.get(master_url).respond(
            200,
            text="#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=800000\nvariant?id=1",
            headers={"Content-Type": "application/vnd.apple.mpegurl"},
        )
        # Served as text/plain, so only the body says it is a playlist
        respx.get("https://origin.test/show/variant?id=1").respond(200, text=MEDIA_PLAYLIST)

        master = client.get(f"/video/{self._token(master_url)}")
        variant_link = _links(master.text)[0]
        response = client.get(variant_link)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/vnd.apple.mpegurl"
        segment_link = _links(response.text)[0]
        assert segment_link.startswith("/video/")
        payload = token_codec.decode_payload(segment_link[len("/video/"):], KEY.encode())
        assert payload.url == "https://origin.test/show/seg1.ts"
        assert 'URI="/video/' in response.text

    @pytest.mark.parametrize("body", [TS_PACKET * 3, b"abc", b""])
    @respx.mock
    def test_extensionless_media_streamed_whole(self, client, monkeypatch, body):
        monkeypatch.setattr(settings, "secret_key", KEY)
        url = "https://origin.test/show/chunk?n=3"
        respx.get(url).respond(200, content=body)

        response = client.get(f"/video/{self._token(url)}")

        assert response.status_code == 200
        assert response.content == body
        assert response.headers["content-type"] == "application/octet-stream"

    @respx.mock
    def test_malformed_payload_url_rejected(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)

        response = client.get(f"/video/{self._token('http://[bad-host/x.m3u8')}")

        assert response.status_code == 400
        assert not respx.calls


class TestServiceEndpoints:
    """Test suite for health and banner endpoints."""

    def test_health(self, client, monkeypatch):
        monkeypatch.setattr(settings, "secret_key", KEY)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "version": "0.1.0",
            "link_mode": "transparent",
            "tokens_enabled": True,
        }

    def test_root_banner(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert "/m3u8?url=" in response.text
