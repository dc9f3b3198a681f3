"""
Services module for the engagement agent backend.
"""

from .result_cache import ResultCache, CacheEntry, make_signature

__all__ = [
    "ResultCache",
    "CacheEntry",
    "make_signature",
]
