"""Search ranking and result fusion components.

Contents
- ``fusion``: per-source score normalization, weighted blending, ordering and
  pagination
"""
