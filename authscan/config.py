"""
AuthScan Orchestrator - Configuration Module
Centralized configuration loading and constants.
"""
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import yaml
from dotenv import load_dotenv

# =============================================================================
# Path Configuration
# =============================================================================
PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_FILE = Path(os.getenv("AUTHSCAN_CONFIG", PROJECT_ROOT / "config.yaml"))
LOGS_DIR = PROJECT_ROOT / "logs"
LOGS_DIR.mkdir(exist_ok=True)

DATA_DIR = PROJECT_ROOT / "data"
DATA_DIR.mkdir(exist_ok=True)

load_dotenv(PROJECT_ROOT / ".env")

# =============================================================================
# Configure Logging
# =============================================================================
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger("AuthScan")

# =============================================================================
# Load YAML Config
# =============================================================================
def load_config() -> dict:
    """Load configuration from config.yaml"""
    if CONFIG_FILE.exists():
        try:
            with open(CONFIG_FILE, 'r') as f:
                return yaml.safe_load(f) or {}
        except Exception as e:
            logger.warning(f"Failed to load config.yaml: {e}")
    return {}

CONFIG = load_config()

# =============================================================================
# App/Server Configuration (from config.yaml)
# =============================================================================
APP_CONFIG = CONFIG.get('app', {})
APP_NAME = APP_CONFIG.get('name', 'AuthScan Orchestrator')
APP_VERSION = APP_CONFIG.get('version', '1.0.0')
APP_DESCRIPTION = APP_CONFIG.get('description', 'Authenticated ZAP scan orchestration service')
APP_DEBUG = APP_CONFIG.get('debug', False)
SERVER_HOST = APP_CONFIG.get('host', '127.0.0.1')
SERVER_PORT = APP_CONFIG.get('port', 8090)
CORS_ORIGINS = APP_CONFIG.get('cors_origins', [])

# =============================================================================
# Database / Storage Configuration (from config.yaml)
# =============================================================================
DB_CONFIG = CONFIG.get('database', {})
DB_PATH = PROJECT_ROOT / DB_CONFIG.get('path', 'data/authscan.db')

STORAGE_CONFIG = CONFIG.get('storage', {})
REPORTS_DIR = PROJECT_ROOT / STORAGE_CONFIG.get('directory', 'data/reports')

# =============================================================================
# ZAP Engine Configuration (config.yaml, overridable from the environment)
# =============================================================================
ZAP_CONFIG = CONFIG.get('zap', {})
ZAP_AUTH_URL = os.getenv("ZAP_AUTH_API_URL") or ZAP_CONFIG.get('url', 'http://127.0.0.1:8081')
ZAP_AUTH_API_KEY = os.getenv("ZAP_AUTH_API_KEY") or ZAP_CONFIG.get('api_key', '')
# ZAP matches API requests on the Host header; set this when the daemon's
# internal port differs from the published one.
ZAP_HOST_HEADER = ZAP_CONFIG.get('host_header', '')
ZAP_TIMEOUT = ZAP_CONFIG.get('timeout', 120)
ZAP_MAX_CONNECTIONS = ZAP_CONFIG.get('max_connections', 10)

# =============================================================================
# Retry Configuration
# =============================================================================
RETRY_CONFIG = CONFIG.get('retry', {})
RETRY_MAX_ATTEMPTS = RETRY_CONFIG.get('max_attempts', 3)
RETRY_BASE_DELAY = RETRY_CONFIG.get('base_delay', 1.0)
RETRY_SCAN_START_DELAY = RETRY_CONFIG.get('scan_start_delay', 2.0)

# =============================================================================
# Phase Configuration
# =============================================================================
SPIDER_CONFIG = CONFIG.get('spider', {})
AJAX_SPIDER_CONFIG = CONFIG.get('ajax_spider', {})
PASSIVE_SCAN_CONFIG = CONFIG.get('passive_scan', {})
ACTIVE_SCAN_CONFIG = CONFIG.get('active_scan', {})

ALERTS_CONFIG = CONFIG.get('alerts', {})
ALERTS_FETCH_COUNT = ALERTS_CONFIG.get('fetch_count', 10000)
SUMMARY_DESCRIPTION_CHARS = ALERTS_CONFIG.get('summary_description_chars', 200)
SUMMARY_SOLUTION_CHARS = ALERTS_CONFIG.get('summary_solution_chars', 150)
SUMMARY_SAMPLE_URLS = ALERTS_CONFIG.get('summary_sample_urls', 5)

# =============================================================================
# Session Handles / Scan Retention
# =============================================================================
SESSIONS_CONFIG = CONFIG.get('sessions', {})
SESSION_HANDLE_TTL_HOURS = SESSIONS_CONFIG.get('handle_ttl_hours', 24)
SESSION_PURGE_INTERVAL = SESSIONS_CONFIG.get('purge_interval_seconds', 300)

SCANS_CONFIG = CONFIG.get('scans', {})
SCAN_STALE_TIMEOUT_HOURS = SCANS_CONFIG.get('stale_timeout_hours', 24)
SHUTDOWN_GRACE_SECONDS = SCANS_CONFIG.get('shutdown_grace_seconds', 30)

# =============================================================================
# Security Configuration
# =============================================================================
SECURITY_CONFIG = CONFIG.get('security', {})
SCAN_START_RATE_LIMIT = SECURITY_CONFIG.get('scan_start_rate_limit', '10/minute')
ALLOW_PRIVATE_TARGETS = SECURITY_CONFIG.get('allow_private_targets', False)
TRUST_USER_HEADER = SECURITY_CONFIG.get('trust_user_header', False)


@dataclass
class ScanSettings:
    """Tunables for one authenticated scan run."""
    # spider
    spider_max_depth: int = 15
    spider_max_duration_mins: int = 120
    spider_max_children: int = 5000
    spider_thread_count: int = 7
    spider_poll_interval: float = 3
    # ajax spider
    ajax_max_duration_mins: int = 30
    ajax_max_crawl_depth: int = 5
    ajax_browsers: int = 3
    ajax_poll_interval: float = 5
    # passive scan
    passive_poll_interval: float = 1
    passive_max_polls: int = 120
    # active scan
    ascan_max_duration_mins: int = 180
    ascan_max_rule_duration_mins: int = 60
    ascan_threads_per_host: int = 7
    ascan_delay_ms: int = 0
    ascan_poll_interval: float = 5
    ascan_stuck_threshold: int = 60
    # retry
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_scan_start_delay: float = 2.0
    # alerts
    alerts_fetch_count: int = 10000
    summary_description_chars: int = 200
    summary_solution_chars: int = 150
    summary_sample_urls: int = 5

    def __post_init__(self):
        self.validate()

    def validate(self):
        for name in ("spider_poll_interval", "ajax_poll_interval",
                     "passive_poll_interval", "ascan_poll_interval"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1 second")
        for name in ("spider_max_duration_mins", "ajax_max_duration_mins",
                     "ascan_max_duration_mins", "passive_max_polls",
                     "ascan_stuck_threshold", "retry_max_attempts"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @property
    def spider_max_polls(self) -> int:
        return int(self.spider_max_duration_mins * 60 / self.spider_poll_interval)

    @property
    def ajax_max_polls(self) -> int:
        return int(self.ajax_max_duration_mins * 60 / self.ajax_poll_interval)

    @property
    def ascan_max_polls(self) -> int:
        return int(self.ascan_max_duration_mins * 60 / self.ascan_poll_interval)

    @classmethod
    def from_config(cls) -> "ScanSettings":
        """Build settings from the loaded config.yaml sections."""
        return cls(
            spider_max_depth=SPIDER_CONFIG.get('max_depth', 15),
            spider_max_duration_mins=SPIDER_CONFIG.get('max_duration_mins', 120),
            spider_max_children=SPIDER_CONFIG.get('max_children', 5000),
            spider_thread_count=SPIDER_CONFIG.get('thread_count', 7),
            spider_poll_interval=SPIDER_CONFIG.get('poll_interval', 3),
            ajax_max_duration_mins=AJAX_SPIDER_CONFIG.get('max_duration_mins', 30),
            ajax_max_crawl_depth=AJAX_SPIDER_CONFIG.get('max_crawl_depth', 5),
            ajax_browsers=AJAX_SPIDER_CONFIG.get('browsers', 3),
            ajax_poll_interval=AJAX_SPIDER_CONFIG.get('poll_interval', 5),
            passive_poll_interval=PASSIVE_SCAN_CONFIG.get('poll_interval', 1),
            passive_max_polls=PASSIVE_SCAN_CONFIG.get('max_polls', 120),
            ascan_max_duration_mins=ACTIVE_SCAN_CONFIG.get('max_duration_mins', 180),
            ascan_max_rule_duration_mins=ACTIVE_SCAN_CONFIG.get('max_rule_duration_mins', 60),
            ascan_threads_per_host=ACTIVE_SCAN_CONFIG.get('threads_per_host', 7),
            ascan_delay_ms=ACTIVE_SCAN_CONFIG.get('delay_ms', 0),
            ascan_poll_interval=ACTIVE_SCAN_CONFIG.get('poll_interval', 5),
            ascan_stuck_threshold=ACTIVE_SCAN_CONFIG.get('stuck_threshold', 60),
            retry_max_attempts=RETRY_MAX_ATTEMPTS,
            retry_base_delay=RETRY_BASE_DELAY,
            retry_scan_start_delay=RETRY_SCAN_START_DELAY,
            alerts_fetch_count=ALERTS_FETCH_COUNT,
            summary_description_chars=SUMMARY_DESCRIPTION_CHARS,
            summary_solution_chars=SUMMARY_SOLUTION_CHARS,
            summary_sample_urls=SUMMARY_SAMPLE_URLS,
        )


# =============================================================================
# Audit Logging
# =============================================================================
audit_logger = logging.getLogger("audit")
audit_handler = logging.FileHandler(LOGS_DIR / "audit.log")
audit_handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
audit_logger.addHandler(audit_handler)
audit_logger.setLevel(logging.INFO)

def log_scan_event(event: str, scan_id: str, owner_id: Any = None, **extra):
    """Audit log for scan lifecycle events."""
    audit_logger.info(json.dumps({
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        "scan_id": scan_id,
        "owner_id": owner_id,
        **extra
    }, default=str))

# =============================================================================
# Utility Functions
# =============================================================================
def cors_origins() -> List[str]:
    """CORS origins from config, defaulting to the local server address."""
    if CORS_ORIGINS:
        return list(CORS_ORIGINS)
    return [
        f"http://{SERVER_HOST}:{SERVER_PORT}",
        f"http://localhost:{SERVER_PORT}",
        f"http://127.0.0.1:{SERVER_PORT}",
    ]

def describe_engine() -> Dict[str, Any]:
    """Non-secret engine settings, safe to log or return from health checks."""
    return {"url": ZAP_AUTH_URL, "api_key_configured": bool(ZAP_AUTH_API_KEY)}

# =============================================================================
# Log Configuration Status
# =============================================================================
if not ZAP_AUTH_API_KEY:
    logger.warning("ZAP API key not configured (set ZAP_AUTH_API_KEY or zap.api_key)")
logger.info(f"ZAP engine: {ZAP_AUTH_URL}")
