"""
Review Module
=============

Bounded context for graded QA reviews of support agents.

Provides:
- Embedding lifecycle for review texts (generation, staleness, backfill)
- Hybrid keyword + embedding similarity search over past reviews
- Weekly detection of unresolved agent performance issues
"""

__version__ = "1.0.0"
