"""Custom exceptions for the proxy server."""

from typing import Optional

from fastapi import HTTPException, status


class MalformedReference(HTTPException):
    """Raised when a manifest reference cannot be resolved to a URL."""

    def __init__(self, reference: str, reason: str = "not a resolvable URL"):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed reference {reference[:100]!r}: {reason}",
        )
        self.reference = reference


class InvalidPlaylist(HTTPException):
    """Raised when upstream content is not an HLS playlist."""

    def __init__(self, source_url: str):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Upstream did not return a valid M3U8 playlist: {source_url}",
        )


class InvalidKeyLength(HTTPException):
    """Raised when the configured secret key is not 32 bytes."""

    def __init__(self, length: int):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error: secret key must be 32 bytes",
        )
        self.length = length


class SecretKeyMissing(HTTPException):
    """Raised when an opaque request arrives but no secret key is configured."""

    def __init__(self):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server configuration error: secret key not defined",
        )


class TokenError(HTTPException):
    """Base class for opaque tokens that cannot be turned back into a payload."""

    def __init__(self, detail: str = "Invalid encrypted URL"):
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class TruncatedToken(TokenError):
    """Raised when a token is too short to hold an initialization vector."""


class DecryptionFailed(TokenError):
    """Raised for a bad key, corrupted ciphertext or bad padding."""


class MalformedPayload(TokenError):
    """Raised when a token decrypts but its payload does not parse."""


class UpstreamFetchFailed(HTTPException):
    """Raised when the origin answers with a non-2xx status."""

    def __init__(self, upstream_status: int, excerpt: str = ""):
        detail = {
            "error": "Failed to fetch from remote server",
            "status": upstream_status,
        }
        if excerpt:
            detail["details"] = excerpt
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
        self.upstream_status = upstream_status
        self.excerpt = excerpt


class UpstreamUnreachable(HTTPException):
    """Raised when the origin cannot be reached at all."""

    def __init__(self, url: str, reason: Optional[str] = None):
        detail = "Bad gateway"
        if reason:
            detail = f"Bad gateway: {reason}"
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
        self.url = url
