"""Syntactic classification of HLS playlists and their lines."""

import re
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlsplit

MAGIC_MARKER = "#EXTM3U"
COMMENT_MARKER = "#"
BOM = "\ufeff"

STREAM_VARIANT_TAG = "#EXT-X-STREAM-INF"
IFRAME_VARIANT_TAG = "#EXT-X-I-FRAME-STREAM-INF"
# Trailing colon keeps #EXT-X-MEDIA-SEQUENCE out
ALTERNATE_MEDIA_TAG = "#EXT-X-MEDIA:"
KEY_TAGS = ("#EXT-X-KEY:", "#EXT-X-SESSION-KEY:")

PLAYLIST_EXTENSIONS = (".m3u8", ".m3u")
KEY_EXTENSIONS = (".key",)

# URI="..." attribute, not the tail of a longer attribute name
URI_PATTERN = re.compile(r'(?<![A-Z0-9-])URI="([^"]*)"')
MAGIC_MARKER_PATTERN = re.compile(r"#EXTM3U(\s|$)")


class PlaylistKind(str, Enum):
    """Kind of HLS document."""

    MASTER = "master"
    MEDIA = "media"
    INVALID = "invalid"


class LineRole(str, Enum):
    """Syntactic role of one manifest line."""

    DIRECTIVE_WITH_URI = "directive_with_uri"
    DIRECTIVE_PLAIN = "directive_plain"
    BARE_REFERENCE = "bare_reference"
    BLANK = "blank"


class ReferenceRole(str, Enum):
    """What a manifest reference points at."""

    SUB_PLAYLIST = "sub_playlist"
    SEGMENT = "segment"
    KEY = "key"


def classify_line(line: str) -> LineRole:
    """Determine the syntactic role of a single manifest line."""
    stripped = line.strip()
    if not stripped:
        return LineRole.BLANK
    if stripped.startswith(COMMENT_MARKER):
        if URI_PATTERN.search(stripped):
            return LineRole.DIRECTIVE_WITH_URI
        return LineRole.DIRECTIVE_PLAIN
    return LineRole.BARE_REFERENCE


def classify_document(lines: Iterable[str]) -> PlaylistKind:
    """
    Determine whether a document is a master playlist, a media playlist or
    not a playlist at all.

    The first non-blank line must be exactly ``#EXTM3U``. The document is a
    master playlist if any line is a variant or alternate-rendition tag, or
    if a bare reference points at another playlist.
    """
    seen_marker = False
    for line in lines:
        stripped = line.strip()
        if not seen_marker:
            if not stripped:
                continue
            if stripped.lstrip(BOM) != MAGIC_MARKER:
                return PlaylistKind.INVALID
            seen_marker = True
            continue

        if is_stream_variant(stripped) or stripped.startswith((IFRAME_VARIANT_TAG, ALTERNATE_MEDIA_TAG)):
            return PlaylistKind.MASTER
        if classify_line(stripped) == LineRole.BARE_REFERENCE and has_extension(stripped, PLAYLIST_EXTENSIONS):
            return PlaylistKind.MASTER

    if not seen_marker:
        return PlaylistKind.INVALID
    return PlaylistKind.MEDIA


def has_magic_marker(head: bytes) -> bool:
    """
    Check whether the start of a response body opens an HLS playlist.

    Used when neither the URL nor the Content-Type says what a body is.
    Leading blank lines and a byte order mark are skipped, as in
    classify_document().
    """
    text = head.decode("utf-8", errors="replace").lstrip().lstrip(BOM)
    return MAGIC_MARKER_PATTERN.match(text) is not None


def is_stream_variant(line: str) -> bool:
    """True for a variant tag whose URI sits on the following line."""
    stripped = line.strip()
    return stripped.startswith(STREAM_VARIANT_TAG) and not stripped.startswith(IFRAME_VARIANT_TAG)


def is_key_directive(line: str) -> bool:
    return line.strip().startswith(KEY_TAGS)


def is_playlist_directive(line: str) -> bool:
    """True for directives whose URI attribute names a child playlist."""
    return line.strip().startswith((ALTERNATE_MEDIA_TAG, IFRAME_VARIANT_TAG))


def extract_uri(line: str) -> Optional[str]:
    """Return the quoted URI attribute value of a directive, if any."""
    match = URI_PATTERN.search(line)
    return match.group(1) if match else None


def has_extension(reference: str, extensions: tuple[str, ...]) -> bool:
    """Check the filename of a URL or path reference, ignoring query and fragment."""
    try:
        path = urlsplit(reference.strip()).path
    except ValueError:
        path = reference.split("?", 1)[0].split("#", 1)[0]
    return path.lower().endswith(extensions)


def role_from_extension(url: str) -> ReferenceRole:
    """Role implied by a URL's file extension alone."""
    if has_extension(url, KEY_EXTENSIONS):
        return ReferenceRole.KEY
    if has_extension(url, PLAYLIST_EXTENSIONS):
        return ReferenceRole.SUB_PLAYLIST
    return ReferenceRole.SEGMENT
