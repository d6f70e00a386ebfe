"""Backend utilities for my-tools conversion sessions.

This package intentionally keeps FastAPI route handlers thin:
- session lifecycle (stage -> submit -> decode -> ready/failed) + TTL cleanup
- preview handles with explicit revocation (no reliance on GC)
- ZIP decoding of archived conversion results

Security note:
Session ids and preview handle ids are treated as capability tokens
(unguessable UUID4). Anyone holding a handle id for a live session can fetch
its bytes, so never log payloads or expose them beyond the owning session.
"""
