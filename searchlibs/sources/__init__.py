"""Search source adapters.

Primary components:
- ``base``: abstract ``SearchSource`` interface and adapter exceptions.
- ``opensearch``: lexical and prefix (typeahead) search over OpenSearch.
- ``pgvector``: semantic search over PostgreSQL/pgvector embeddings.
- ``relational``: substring fallback over the resources table.
- ``factory``: build every configured source from ``SearchConfig``.

Guidance:
- Construct sources via ``factory.create_sources`` so the service remains
  decoupled from specific backends.
"""
