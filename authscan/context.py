"""
AuthScan Orchestrator - Auth Context Configurator
Creates the per-scan ZAP context, scopes it to the target domain and injects
the captured session cookies through a replacer rule.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional
from urllib.parse import urlparse

from authscan.config import ScanSettings
from authscan.errors import ConfigurationError, TransientNetworkError, ZapApiError
from authscan.retry import with_retry
from authscan.zap_client import ZapClient

logger = logging.getLogger("AuthContext")

COOKIE_RULE_NAME = "auth_cookie"

# Logout endpoints would kill the injected session; third-party hosts are out of scope
EXCLUDE_PATTERNS = [
    r".*logout.*", r".*signout.*", r".*sign-out.*", r".*/auth/logout.*",
    r".*google-analytics\.com.*", r".*googletagmanager\.com.*",
    r".*facebook\.com.*", r".*twitter\.com.*", r".*linkedin\.com.*",
    r".*cdn\.jsdelivr\.net.*", r".*cdnjs\.cloudflare\.com.*",
    r".*cloudflare\.com.*", r".*cloudfront\.net.*",
    r".*fonts\.googleapis\.com.*", r".*fonts\.gstatic\.com.*",
    r".*recaptcha\.net.*", r".*hcaptcha\.com.*",
]

VIDEO_EXTENSIONS = ["webm", "mp4", "mov", "avi", "mkv", "flv", "wmv", "m4v"]
ARCHIVE_EXTENSIONS = ["zip", "tar", "gz", "rar", "7z", "iso", "dmg", "bz2"]
INSTALLER_EXTENSIONS = ["exe", "msi", "app", "deb", "rpm", "pkg"]
DOCUMENT_EXTENSIONS = ["pdf", "doc", "docx", "ppt", "pptx"]
FONT_EXTENSIONS = ["woff", "woff2", "ttf", "eot"]

# Video URLs often carry query strings, so they match anywhere in the URL
BINARY_EXCLUSIONS = (
    [rf".*\.{ext}.*" for ext in VIDEO_EXTENSIONS]
    + [rf".*\.{ext}$" for ext in ARCHIVE_EXTENSIONS + INSTALLER_EXTENSIONS
       + DOCUMENT_EXTENSIONS + FONT_EXTENSIONS]
)


@dataclass
class AuthContext:
    context_id: str
    context_name: str
    include_patterns: List[str] = field(default_factory=list)
    exclude_patterns: List[str] = field(default_factory=list)
    cookie_rule: Optional[str] = None


def context_name_for(scan_id: str) -> str:
    return f"auth_scan_{scan_id}"


def build_include_patterns(target_url: str) -> List[str]:
    """Target host plus any of its subdomains, over http or https."""
    host = urlparse(target_url).hostname
    if not host:
        raise ConfigurationError(f"Invalid target URL: {target_url}")
    escaped = host.replace(".", r"\.")
    return [
        rf"https?://{escaped}.*",
        rf"https?://.*\.{escaped}.*",
    ]


def build_cookie_header(cookies: Iterable[Any]) -> str:
    """`name=value; name2=value2` from Cookie objects or plain dicts."""
    parts = []
    for cookie in cookies:
        if isinstance(cookie, dict):
            parts.append(f"{cookie['name']}={cookie.get('value', '')}")
        else:
            parts.append(f"{cookie.name}={cookie.value}")
    return "; ".join(parts)


class AuthContextConfigurator:
    """Sets up and tears down one scan's context and cookie rule."""

    def __init__(self, client: ZapClient, settings: ScanSettings, sleep=None):
        self.client = client
        self.settings = settings
        self._retry_kwargs = {
            "max_attempts": settings.retry_max_attempts,
            "base_delay": settings.retry_base_delay,
        }
        if sleep is not None:
            self._retry_kwargs["sleep"] = sleep

    async def create_context(self, target_url: str, scan_id: str) -> AuthContext:
        context_name = context_name_for(scan_id)
        include_patterns = build_include_patterns(target_url)
        logger.info(f"[{scan_id}] Configuring auth context {context_name}")

        try:
            context_id = await with_retry(
                lambda: self.client.new_context(context_name), "Create context", **self._retry_kwargs
            )
        except (ZapApiError, TransientNetworkError) as e:
            logger.error(f"[{scan_id}] Context creation failed: {e}")
            raise ConfigurationError("Failed to create scan context in ZAP") from e
        if not context_id:
            raise ConfigurationError("Failed to create scan context in ZAP")

        context = AuthContext(context_id=context_id, context_name=context_name)

        for pattern in include_patterns:
            try:
                await self.client.include_in_context(context_name, pattern)
                context.include_patterns.append(pattern)
            except Exception as e:
                logger.warning(f"[{scan_id}] Failed to add include pattern {pattern}: {e}")

        for pattern in EXCLUDE_PATTERNS + BINARY_EXCLUSIONS:
            try:
                await self.client.exclude_from_context(context_name, pattern)
                context.exclude_patterns.append(pattern)
            except Exception as e:
                logger.warning(f"[{scan_id}] Failed to add exclude pattern {pattern}: {e}")

        try:
            await with_retry(
                lambda: self.client.set_context_in_scope(context_name), "Set context in scope",
                **self._retry_kwargs
            )
        except (ZapApiError, TransientNetworkError) as e:
            logger.error(f"[{scan_id}] Marking context in scope failed: {e}")
            raise ConfigurationError("Failed to mark scan context in scope") from e

        logger.info(
            f"[{scan_id}] Context {context_name} (ID: {context_id}) ready: "
            f"{len(context.include_patterns)} includes, {len(context.exclude_patterns)} excludes"
        )
        return context

    async def inject_cookies(self, context: AuthContext, cookies: List[Any]):
        """Install the Cookie header replacement rule and check it took."""
        if not cookies:
            raise ConfigurationError("No session cookies available for authenticated scan")

        cookie_header = build_cookie_header(cookies)
        logger.info(f"[{context.context_name}] Injecting {len(cookies)} cookies via replacer rule")

        try:
            await self.client.remove_replacer_rule(COOKIE_RULE_NAME)
        except ZapApiError:
            pass  # no previous rule

        try:
            await with_retry(
                lambda: self.client.add_replacer_rule(COOKIE_RULE_NAME, "REQ_HEADER", "Cookie", cookie_header),
                "Add cookie replacer rule",
                **self._retry_kwargs
            )
        except (ZapApiError, TransientNetworkError) as e:
            logger.error(f"[{context.context_name}] Failed to add cookie rule: {e}")
            raise ConfigurationError("Failed to configure authentication cookies in ZAP") from e

        if not await self._rule_active(COOKIE_RULE_NAME):
            raise ConfigurationError("Authentication cookie rule was not activated in ZAP")
        context.cookie_rule = COOKIE_RULE_NAME

    async def _rule_active(self, description: str) -> bool:
        try:
            rules = await self.client.replacer_rules()
        except Exception as e:
            logger.warning(f"Could not list replacer rules: {e}")
            return False
        for rule in rules:
            if rule.get("description") == description:
                return str(rule.get("enabled", "")).lower() == "true"
        return False

    async def remove(self, context: Optional[AuthContext], scan_id: str) -> List[str]:
        """
        Remove the cookie rule and the context. Safe to call repeatedly.

        Returns warnings for anything that could not be removed; never raises.
        """
        warnings = []
        steps = [("cookie rule", lambda: self.client.remove_replacer_rule(COOKIE_RULE_NAME))]
        name = context.context_name if context else context_name_for(scan_id)
        steps.append(("scan context", lambda: self.client.remove_context(name)))

        for label, call in steps:
            try:
                await with_retry(call, f"Remove {label}", **self._retry_kwargs)
            except ZapApiError as e:
                if e.does_not_exist:
                    continue
                logger.warning(f"[{scan_id}] Failed to remove {label}: {e}")
                warnings.append(f"Cleanup: failed to remove {label}")
            except Exception as e:
                logger.warning(f"[{scan_id}] Failed to remove {label}: {e}")
                warnings.append(f"Cleanup: failed to remove {label}")
        return warnings
