"""Construction of proxy links that replace manifest references."""

import logging
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs, quote, urlsplit

from hlsproxy import token_codec
from hlsproxy.exceptions import TokenError
from hlsproxy.playlist_classifier import ReferenceRole, role_from_extension

logger = logging.getLogger(__name__)

# Characters JavaScript's encodeURIComponent leaves alone
URI_COMPONENT_SAFE = "-_.!~*'()"

PLAYLIST_ROUTE = "/m3u8"
SEGMENT_ROUTE = "/proxy"
KEY_ROUTE = "/key"
OPAQUE_ROUTE = "/video"


class LinkMode(str, Enum):
    """How rewritten links carry their upstream target."""

    TRANSPARENT = "transparent"
    TOKENIZED = "tokenized"


def encode_component(value: str) -> str:
    """Percent-encode a query value the way encodeURIComponent does."""
    return quote(value, safe=URI_COMPONENT_SAFE)


class LinkBuilder:
    """Builds the outbound link for a resolved manifest reference."""

    def __init__(
        self,
        mode: LinkMode = LinkMode.TRANSPARENT,
        proxy_base: str = "",
        secret_key: Optional[bytes] = None,
    ):
        """
        Initialize the builder.

        Args:
            mode: TRANSPARENT exposes the upstream URL in query parameters,
                TOKENIZED hides it inside an opaque token
            proxy_base: Scheme and host of this proxy as seen by clients
                (e.g. "https://proxy.example.com"); empty for relative links
            secret_key: 32-byte key, required for TOKENIZED mode
        """
        self.mode = LinkMode(mode)
        self.proxy_base = proxy_base.rstrip("/")
        self.secret_key = secret_key
        self.routes = {
            ReferenceRole.SUB_PLAYLIST: PLAYLIST_ROUTE,
            ReferenceRole.SEGMENT: SEGMENT_ROUTE,
            ReferenceRole.KEY: KEY_ROUTE,
        }

    def build(self, url: str, role: ReferenceRole, referer: Optional[str] = None) -> str:
        """
        Build the proxy link for an absolute upstream URL.

        Args:
            url: Absolute upstream URL
            role: Role of the reference, selects the route
            referer: Referer to propagate to the next hop, if known

        Returns:
            Link routed through this proxy
        """
        if self.mode == LinkMode.TOKENIZED:
            if self.secret_key is None:
                raise ValueError("Tokenized links require a secret key")
            token = token_codec.encode_payload(url, referer or "", self.secret_key)
            return f"{self.proxy_base}{OPAQUE_ROUTE}/{token}"

        link = f"{self.proxy_base}{self.routes[role]}?url={encode_component(url)}"
        if referer:
            link += f"&ref={encode_component(referer)}"
        return link

    def role_of(self, link: str) -> Optional[ReferenceRole]:
        """
        Role carried by a link this proxy built earlier, or None if the link
        is not a proxy link.

        Keeps repeated rewriting stable: a link to the playlist route stays a
        sub-playlist even though "/m3u8" has no file extension.
        """
        try:
            parts = urlsplit(link)
        except ValueError:
            return None
        path = parts.path.rstrip("/")

        opaque_marker = f"{OPAQUE_ROUTE}/"
        if opaque_marker in path:
            token = path.rsplit(opaque_marker, 1)[1]
            if self.secret_key is None or not token:
                return None
            try:
                payload = token_codec.decode_payload(token, self.secret_key)
            except TokenError:
                return None
            return role_from_extension(payload.url)

        if "url" not in parse_qs(parts.query):
            return None
        for role, route in self.routes.items():
            if path.endswith(route):
                return role
        return None
