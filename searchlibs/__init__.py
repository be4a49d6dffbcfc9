"""Shared libraries for the unified search service.

Subpackages:
- ``searchlibs.common``: configuration, logging and metrics.
- ``searchlibs.sources``: search source adapter contract and concrete backends.

Modules:
- ``searchlibs.models``: request, hit and response value types shared by the
  adapters and the fusion engine.

Notes:
- Keep transport and fusion logic out of here; adapters only map backend
  responses into ``SourceHit`` values.
"""
