"""API subpackage for the search service.

Routers expose endpoints for unified search, documentation search, typeahead
suggestions and cache administration. The transport layer remains thin and
delegates to ``SearchManager``.
"""
