"""
AuthScan Orchestrator - Services Package

Modules:
    - auth_scan.py: start/status/stop contract and background task launch

Usage:
    from authscan.services import AuthScanService
"""

from authscan.services.auth_scan import AuthScanService

__all__ = [
    'AuthScanService',
]
