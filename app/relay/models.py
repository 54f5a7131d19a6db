from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel


class RelayState(str, Enum):
    RESOLVING = "resolving"
    CACHE_CHECK = "cache_check"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    TRANSFORMING = "transforming"
    RESPONDING = "responding"
    DONE = "done"
    FAILED = "failed"


class ContentKind(str, Enum):
    HTML = "html"
    CSS = "css"
    SCRIPT = "script"
    SVG = "svg"
    MANIFEST = "manifest"
    BINARY = "binary"
    OPAQUE = "opaque"


class CacheStatus(str, Enum):
    HIT = "HIT"
    MISS = "MISS"
    BYPASS = "BYPASS"


@dataclass(frozen=True)
class RelayRequest:
    """What the HTTP layer hands to the relay for one inbound request."""

    method: str
    raw_url: Optional[str]
    session_id: str
    proxy_base: str
    body: bytes = b""
    content_type: Optional[str] = None
    referer: Optional[str] = None


@dataclass
class RelayResult:
    status_code: int
    content_type: str
    body: Union[bytes, str]
    final_url: str
    cache_status: CacheStatus = CacheStatus.BYPASS
    content_kind: ContentKind = ContentKind.OPAQUE
    headers: dict[str, str] = field(default_factory=dict)


class HealthStatus(BaseModel):
    status: str
    version: str
    uptime: float
    active_sessions: int
    cache_entries: int
    cache_size_bytes: int
