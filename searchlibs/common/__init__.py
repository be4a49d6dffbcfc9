"""Common utilities shared across the search service.

Includes:
- ``config``: Pydantic-based service configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.

Import pattern:
- from searchlibs.common.config import SearchConfig
- from searchlibs.common.logging import configure_logging
"""
