"""
Stealth page capture, AI element discovery and a registry of reusable page maps.
"""

__version__ = "1.0.0"

from .models import Element, PageSnapshot, PageStructure, Strategy, StrategyType
from .urls import normalize_url, to_full_url
from .config import MarrowConfig, load_config
from .browser import Navigator, StealthBrowser
from .extractor import ContextExtractor
from .cartographer import Cartographer
from .mapper import Mapper
from .providers import GenerativeProvider, build_provider
from .registry import Registry
from .client import MarrowClient

__all__ = [
    "Element",
    "PageSnapshot",
    "PageStructure",
    "Strategy",
    "StrategyType",
    "normalize_url",
    "to_full_url",
    "MarrowConfig",
    "load_config",
    "Navigator",
    "StealthBrowser",
    "ContextExtractor",
    "Cartographer",
    "Mapper",
    "GenerativeProvider",
    "build_provider",
    "Registry",
    "MarrowClient",
]
