"""Response caching for search workflows.

Cached responses sit in front of retrieval so repeated queries never reach the
backends. Redis is used when configured; an in-process store otherwise.
"""
