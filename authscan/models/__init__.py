"""
AuthScan Orchestrator - Models Package
"""
from authscan.models.schemas import (
    CookieModel, SessionRegisterRequest, SessionRegisterResponse,
    AuthScanRequest, AuthScanStartResponse, ScanStopResponse,
    ReportFileModel, ScanSnapshot, validate_target_url
)

__all__ = [
    'CookieModel', 'SessionRegisterRequest', 'SessionRegisterResponse',
    'AuthScanRequest', 'AuthScanStartResponse', 'ScanStopResponse',
    'ReportFileModel', 'ScanSnapshot', 'validate_target_url'
]
