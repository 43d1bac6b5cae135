"""Manual host cleanup."""
