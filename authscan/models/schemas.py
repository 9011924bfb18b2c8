"""
AuthScan Orchestrator - Pydantic Models
Request and response models for API endpoints.
"""
import ipaddress
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, field_validator

from authscan.config import ALLOW_PRIVATE_TARGETS

# Hostnames that always point back at the scanner host
BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}
BLOCKED_SUFFIXES = (".localhost", ".local", ".internal")

SCAN_ID_PATTERN = r"^[A-Za-z0-9_-]{1,100}$"


def validate_target_url(v: str, allow_private: bool = ALLOW_PRIVATE_TARGETS) -> str:
    """http(s) URL with a public-looking host; raises ValueError otherwise."""
    v = v.strip()
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https"):
        raise ValueError("URL must start with http:// or https://")
    host = (parsed.hostname or "").lower()
    if not host:
        raise ValueError("URL must include a hostname")
    if allow_private:
        return v
    if host in BLOCKED_HOSTNAMES or host.endswith(BLOCKED_SUFFIXES):
        raise ValueError("Scanning localhost or internal hosts is not allowed")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return v
    if ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved or ip.is_unspecified or ip.is_multicast:
        raise ValueError("Scanning localhost or internal addresses is not allowed")
    return v


# =============================================================================
# Session Handle Models
# =============================================================================
class CookieModel(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    value: str = Field("", max_length=8192)
    domain: Optional[str] = None
    httpOnly: bool = False
    secure: bool = False

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        if re.search(r"[\s;=,]", v):
            raise ValueError("Invalid cookie name")
        return v

    @field_validator('value')
    @classmethod
    def validate_value(cls, v: str) -> str:
        if any(c in v for c in ("\r", "\n", ";")):
            raise ValueError("Invalid cookie value")
        return v


class SessionRegisterRequest(BaseModel):
    cookies: List[CookieModel] = Field(..., min_length=1, description="Captured session cookies")
    loginUrl: Optional[str] = Field(None, description="Login page the cookies came from")

    @field_validator('loginUrl')
    @classmethod
    def validate_login_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return validate_target_url(v)


class SessionRegisterResponse(BaseModel):
    tempSessionId: str
    expiresInHours: float


# =============================================================================
# Scan Models
# =============================================================================
class AuthScanRequest(BaseModel):
    targetUrl: str = Field(..., description="Application to scan")
    tempSessionId: str = Field(..., min_length=1, description="One-time session handle")
    scanId: Optional[str] = Field(None, pattern=SCAN_ID_PATTERN, description="Reuse an existing scan id")

    @field_validator('targetUrl')
    @classmethod
    def validate_target(cls, v: str) -> str:
        return validate_target_url(v)


class AuthScanStartResponse(BaseModel):
    scanId: str
    status: str
    message: str


class ScanStopResponse(BaseModel):
    success: bool
    scanId: str
    status: str
    message: str


class ReportFileModel(BaseModel):
    fileId: str
    filename: str
    contentType: str
    format: str
    size: int
    description: Optional[str] = None


class ScanSnapshot(BaseModel):
    scanId: str
    ownerId: Optional[str] = None
    targetUrl: str
    loginUrl: Optional[str] = None
    authenticated: bool = True
    status: str
    phase: str
    progress: int
    message: Optional[str] = None
    urlsFound: int = 0
    alertsFound: int = 0
    riskCounts: Dict[str, int]
    alerts: List[Dict[str, Any]] = Field(default_factory=list)
    totalAlerts: int = 0
    totalOccurrences: int = 0
    reportFiles: List[ReportFileModel] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    startedAt: Optional[str] = None
    completedAt: Optional[str] = None
    updatedAt: Optional[str] = None
