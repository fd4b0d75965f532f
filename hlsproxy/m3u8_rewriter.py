"""HLS M3U8 manifest rewriter that routes every reference back through the proxy."""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from hlsproxy.exceptions import InvalidPlaylist, MalformedReference
from hlsproxy.link_builder import LinkBuilder
from hlsproxy.models import ReferrerContext
from hlsproxy.playlist_classifier import (
    URI_PATTERN,
    LineRole,
    PlaylistKind,
    ReferenceRole,
    classify_document,
    classify_line,
    is_key_directive,
    is_playlist_directive,
    is_stream_variant,
    role_from_extension,
)
from hlsproxy.url_resolver import base_directory, resolve

logger = logging.getLogger(__name__)

FETCHABLE_SCHEMES = ("http://", "https://")


@dataclass(frozen=True)
class ResolvedReference:
    """A manifest reference resolved to an absolute URL and its role."""

    absolute_url: str
    role: ReferenceRole


class M3U8Rewriter:
    """Rewrites M3U8 playlists so child playlists, segments and keys go through the proxy."""

    def __init__(self, link_builder: LinkBuilder):
        """
        Initialize the rewriter.

        Args:
            link_builder: Builds the replacement link for each reference
        """
        self.link_builder = link_builder

    def rewrite_manifest(
        self,
        content: str,
        source_url: str,
        referrer_context: Optional[ReferrerContext] = None,
    ) -> str:
        """
        Rewrite all references in an M3U8 manifest to proxy through this server.

        Args:
            content: Original M3U8 manifest content
            source_url: URL the manifest was fetched from
            referrer_context: Referer supplied by the caller, propagated into links

        Returns:
            Rewritten manifest; line count and line terminators are unchanged

        Raises:
            InvalidPlaylist: If content does not start with #EXTM3U
        """
        lines = content.split("\n")
        kind = classify_document(lines)
        if kind == PlaylistKind.INVALID:
            raise InvalidPlaylist(source_url)

        base_dir = base_directory(source_url)
        referer = referrer_context.propagated_referer if referrer_context else None
        logger.debug(f"[REWRITE] {kind.value} playlist, base={base_dir}, mode={self.link_builder.mode.value}")

        rewritten_lines = []
        expect_variant_uri = False
        for raw_line in lines:
            # Keep CRLF endings byte-for-byte
            line, eol = (raw_line[:-1], "\r") if raw_line.endswith("\r") else (raw_line, "")
            line, expect_variant_uri = self._rewrite_line(line, base_dir, referer, expect_variant_uri)
            rewritten_lines.append(line + eol)

        return "\n".join(rewritten_lines)

    def _rewrite_line(
        self,
        line: str,
        base_dir: str,
        referer: Optional[str],
        expect_variant_uri: bool,
    ) -> tuple[str, bool]:
        """
        Rewrite a single line from the M3U8 manifest.

        Returns:
            Rewritten line and whether the next bare reference is a variant playlist
        """
        role = classify_line(line)

        if role == LineRole.BLANK:
            return line, expect_variant_uri

        if role == LineRole.DIRECTIVE_PLAIN:
            # #EXT-X-STREAM-INF carries its URI on the next reference line
            return line, expect_variant_uri or is_stream_variant(line)

        if role == LineRole.DIRECTIVE_WITH_URI:
            return self._rewrite_uri_line(line, base_dir, referer), expect_variant_uri

        hint = ReferenceRole.SUB_PLAYLIST if expect_variant_uri else None
        try:
            return self._rewrite_reference(line.strip(), base_dir, referer, hint), False
        except MalformedReference as e:
            logger.warning(f"[REWRITE] Leaving line unchanged: {e.detail}")
            return line, False

    def _rewrite_uri_line(self, line: str, base_dir: str, referer: Optional[str]) -> str:
        """Replace only the quoted URI attribute value, keeping the rest of the directive."""
        hint = None
        if is_key_directive(line):
            hint = ReferenceRole.KEY
        elif is_playlist_directive(line):
            hint = ReferenceRole.SUB_PLAYLIST

        def replace_uri(match: re.Match) -> str:
            original_uri = match.group(1)
            try:
                proxied_uri = self._rewrite_reference(original_uri, base_dir, referer, hint)
            except MalformedReference as e:
                logger.warning(f"[REWRITE] Leaving URI attribute unchanged: {e.detail}")
                return match.group(0)
            return f'URI="{proxied_uri}"'

        return URI_PATTERN.sub(replace_uri, line)

    def _rewrite_reference(
        self,
        reference: str,
        base_dir: str,
        referer: Optional[str],
        hint: Optional[ReferenceRole],
    ) -> str:
        resolved = self.resolve_reference(reference, base_dir, hint)
        if resolved is None:
            return reference
        return self.link_builder.build(resolved.absolute_url, resolved.role, referer)

    def resolve_reference(
        self,
        reference: str,
        base_dir: str,
        hint: Optional[ReferenceRole] = None,
    ) -> Optional[ResolvedReference]:
        """
        Resolve a reference and decide which route serves it.

        Args:
            reference: Reference as written in the manifest
            base_dir: Directory of the manifest
            hint: Role implied by the reference's position (key directive,
                variant URI line, alternate rendition)

        Returns:
            ResolvedReference, or None for schemes the proxy cannot fetch
            (data:, skd:) which are left as written

        Raises:
            MalformedReference: If the reference cannot be resolved
        """
        absolute_url = resolve(reference, base_dir)
        if not absolute_url.lower().startswith(FETCHABLE_SCHEMES):
            return None

        if hint is not None:
            role = hint
        else:
            role = self.link_builder.role_of(absolute_url) or role_from_extension(absolute_url)
        return ResolvedReference(absolute_url=absolute_url, role=role)


def rewrite(
    raw_document: str,
    source_url: str,
    referrer_context: ReferrerContext,
    link_builder: LinkBuilder,
) -> str:
    """Rewrite a manifest with a one-off M3U8Rewriter."""
    return M3U8Rewriter(link_builder).rewrite_manifest(raw_document, source_url, referrer_context)
