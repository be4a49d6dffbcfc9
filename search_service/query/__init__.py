"""Request normalization: raw parameters in, canonical ``SearchRequest`` out."""
