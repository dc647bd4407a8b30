"""
Authentication wall detection, session storage and interactive re-login.
"""

from .detector import AuthDetector
from .escalator import BrowserEscalator
from .vault import SessionVault, sanitize_domain, session_domain

__all__ = [
    "AuthDetector",
    "BrowserEscalator",
    "SessionVault",
    "sanitize_domain",
    "session_domain",
]
