"""
Request-level operations for CardCore.

Each service composes the versioned controller, the retry executor and the
telemetry pipeline for one area of the product:
- ProfileService: personal and professional info
- CardService: cards, slugs, public access and view recording
- AnalyticsService: owner-scoped view reports
"""

from .analytics import AnalyticsReport, AnalyticsService
from .cards import BUSINESS_CARDS, CardService, slugify
from .profile import PERSONAL_INFO, PROFESSIONAL_INFO, ProfileService

__all__ = [
    "ProfileService",
    "CardService",
    "AnalyticsService",
    "AnalyticsReport",
    "slugify",
    "PERSONAL_INFO",
    "PROFESSIONAL_INFO",
    "BUSINESS_CARDS",
]
