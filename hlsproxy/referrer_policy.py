"""Selection of the Referer/Origin pair presented to an origin server."""

import logging
from typing import Mapping, Optional
from urllib.parse import urlsplit

from hlsproxy.models import HostReferer, RefererDecision

logger = logging.getLogger(__name__)


def origin_of(url: str) -> Optional[str]:
    """Return ``scheme://host[:port]`` of an absolute http(s) URL, or None."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def decide(
    declared: Optional[str],
    override: Optional[str],
    target: str,
    host_defaults: Mapping[str, HostReferer],
) -> RefererDecision:
    """
    Decide the Referer and Origin headers for fetching target.

    Precedence, highest first:
        1. override: explicit per-request instruction (?ref= or token referer)
        2. host_defaults[target host]: origins that demand a fixed referer
        3. declared: the caller's own Referer header
        4. the target's own origin

    Origin is derived from the winning referer, except for hosts listed in
    host_defaults, which always get their canonical origin. Candidates that
    are not absolute http(s) URLs are skipped.

    Args:
        declared: Inbound Referer header, if any
        override: Explicit referer for this request, if any
        target: Absolute URL about to be fetched
        host_defaults: Hostname -> fixed referer table

    Returns:
        RefererDecision naming the rule that won
    """
    hostname = (urlsplit(target).hostname or "").lower()
    quirk = host_defaults.get(hostname)

    referer, source = None, None
    if override and origin_of(override):
        referer, source = override.strip(), "override"
    elif quirk is not None:
        referer, source = (quirk.referer or target), "host_default"
    elif declared and origin_of(declared):
        referer, source = declared.strip(), "declared"
    else:
        referer, source = origin_of(target) or target, "target"

    if override and source != "override":
        logger.debug(f"[REFERER] Ignoring unusable override referer: {override[:100]}")

    if quirk is not None:
        origin = quirk.origin
    else:
        origin = origin_of(referer) or referer

    return RefererDecision(referer=referer, origin=origin, source=source)
