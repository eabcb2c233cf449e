"""
Review Interfaces Layer
=======================

Interface adapters (controllers) for the review module.

This is the outermost layer - handles HTTP requests/responses and
delegates to application services.
"""

from src.review.interfaces.controllers import issues_router, reviews_router

__all__ = ["issues_router", "reviews_router"]
