"""Resolution of manifest references against the manifest's own location."""

import re
from urllib.parse import urljoin, urlsplit, urlunsplit

from hlsproxy.exceptions import MalformedReference

# RFC 3986 scheme: ALPHA *( ALPHA / DIGIT / "+" / "-" / "." ) ":"
SCHEME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:")
CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def has_scheme(reference: str) -> bool:
    """Return True if the reference is absolute (carries a scheme)."""
    return bool(SCHEME_PATTERN.match(reference))


def base_directory(source_url: str) -> str:
    """
    Directory URL containing a manifest, with a trailing slash.

    The manifest's filename, query string and fragment are dropped:
    ``https://host/a/b/index.m3u8?t=1`` -> ``https://host/a/b/``.

    Raises:
        MalformedReference: If source_url is not an absolute URL
    """
    parts = _split(source_url)
    if not parts.scheme or not parts.netloc:
        raise MalformedReference(source_url, "base URL must be absolute")

    path = parts.path
    last_slash = path.rfind("/")
    directory = path[: last_slash + 1] if last_slash >= 0 else "/"
    return urlunsplit((parts.scheme, parts.netloc, directory, "", ""))


def resolve(reference: str, base_dir: str) -> str:
    """
    Resolve a manifest reference against the manifest's base directory.

    Absolute references are returned unchanged. Relative ones are merged
    following RFC 3986 (dot segments removed, ``/``-rooted paths replace the
    base path, ``//host`` references inherit only the scheme).

    Args:
        reference: Reference exactly as written in the manifest (whitespace trimmed)
        base_dir: Directory URL from base_directory()

    Returns:
        Absolute URL

    Raises:
        MalformedReference: If the reference is empty, contains control
            characters, or cannot be parsed
    """
    reference = reference.strip()
    if not reference:
        raise MalformedReference(reference, "empty reference")
    if CONTROL_CHARS.search(reference):
        raise MalformedReference(reference, "control characters in reference")

    if has_scheme(reference):
        _split(reference)
        return reference

    base_parts = _split(base_dir)
    if not base_parts.scheme or not base_parts.netloc:
        raise MalformedReference(reference, f"base {base_dir!r} is not absolute")

    try:
        resolved = urljoin(base_dir, reference)
    except ValueError as e:
        raise MalformedReference(reference, str(e)) from e

    _split(resolved)
    return resolved


def check_target(url: str) -> str:
    """
    Validate an upstream URL taken from a request before it is fetched.

    Returns:
        The URL with surrounding whitespace removed

    Raises:
        MalformedReference: If the URL is not an absolute http(s) URL with a host
    """
    url = url.strip()
    if CONTROL_CHARS.search(url):
        raise MalformedReference(url, "control characters in URL")
    parts = _split(url)
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        raise MalformedReference(url, "target must be an absolute http(s) URL")
    return url


def _split(url: str):
    """urlsplit that reports unparseable hosts and ports as MalformedReference."""
    try:
        parts = urlsplit(url)
        # Accessing .port validates it
        parts.port
    except ValueError as e:
        raise MalformedReference(url, str(e)) from e
    return parts
