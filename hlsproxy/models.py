"""Data models for the proxy server."""

from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class HostReferer(BaseModel):
    """Fixed Referer/Origin pair for an origin that rejects anything else."""

    origin: str = Field(..., description="Canonical Origin header value (scheme + host)")
    referer: Optional[str] = Field(
        None,
        description="Fixed Referer; when omitted the requested URL itself is sent",
    )

    @field_validator("origin")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Origins never carry a path."""
        return v.rstrip("/")


class TokenPayload(BaseModel):
    """Routing hints carried inside an opaque token."""

    url: str = Field(..., min_length=1, description="Absolute upstream URL")
    referer: str = Field("", description="Referer to present upstream, empty if unknown")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Only absolute http(s) URLs can be fetched."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError("url must be an absolute http(s) URL")
        return v


@dataclass(frozen=True)
class ReferrerContext:
    """Referrer information supplied by the caller of one request."""

    declared_referer: Optional[str] = None  # inbound Referer header
    override_referer: Optional[str] = None  # explicit ?ref= or token referer

    @property
    def propagated_referer(self) -> Optional[str]:
        """Referer that rewritten links carry forward to the next hop."""
        return self.override_referer or self.declared_referer


@dataclass(frozen=True)
class RefererDecision:
    """Outcome of the referrer policy for one upstream fetch."""

    referer: str
    origin: str
    source: str  # which precedence rule won: override, host_default, declared, target

    def as_headers(self) -> dict[str, str]:
        """Header form of the decision."""
        return {"Referer": self.referer, "Origin": self.origin}
