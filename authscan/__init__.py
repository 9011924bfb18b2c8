"""
AuthScan Orchestrator

Drives an OWASP ZAP daemon through an authenticated crawl-and-attack
sequence and exposes progress over a small FastAPI surface.
"""

__version__ = "1.0.0"
