"""
Tangle Notes - persistence and versioning core for a canvas note-taking app.

Notes are positioned nodes on a 2D canvas joined by connections. This package
implements the entity store (JSON document or SQLite backends), the
time-based versioning policy, cascading deletes, and an optimistic
client-side mirror. The store is exposed to a front end over MCP.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("tangle-notes")
except PackageNotFoundError:
    __version__ = "0.3.0"
