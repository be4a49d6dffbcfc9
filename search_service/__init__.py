"""Unified search service package.

Layout:
- ``api``: HTTP endpoints for search, suggestions and cache administration.
- ``query``: request validation and canonicalization.
- ``hybrid``: fan-out coordination, suggestion path and the ``SearchManager``.
- ``ranking``: score normalization and result fusion.
- ``retrievers``: response caching.
- ``runtime``: service-local metrics and runtime helpers.
"""
