"""
Shared Kernel Module
====================

Shared infrastructure used by every bounded context of the QA review
service (currently only ``review``).

Contains only generic infrastructure: logging, metrics export and HTTP
middleware. Review, embedding and issue logic lives in ``src.review``.
"""

__version__ = "1.0.0"
