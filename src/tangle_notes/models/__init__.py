"""Data models for the Tangle Notes store."""
