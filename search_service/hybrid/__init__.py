"""Hybrid search components for lexical + semantic aggregation.

Includes the ``FanOutCoordinator`` which queries every applicable source under
one deadline, the suggestion path, and the ``SearchManager`` which wires
normalization, caching, coordination and fusion together.
"""
