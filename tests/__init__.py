"""Tests for the unified search service.

Backends are replaced by in-process fake sources and mocked clients, so the
suite runs without OpenSearch, PostgreSQL or Redis.
"""
