"""Runtime helpers local to the search service."""
