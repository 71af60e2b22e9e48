"""Sandboxed file ingestion for the Zipline upload tools.

This package intentionally keeps FastAPI route handlers thin:
- per-user sandbox directories + retention cleanup
- safe path handling and advisory sandbox locks
- staging local files and downloading remote ones, with content checks

Security note:
The identity token is treated as a secret. Sandboxes are named after its
SHA-256 digest, so anyone holding the token reaches the same sandbox and the
directory name never reveals the token. Never log the token or unredacted
sandbox paths.
"""
