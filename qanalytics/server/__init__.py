"""HTTP API for Q-sort studies and interactive analysis sessions."""
