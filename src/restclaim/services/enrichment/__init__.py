"""REST claim enrichment engine.

Fans out to configured REST endpoints, caches per-identity results behind a
TTL and configuration fingerprint, evaluates sandboxed query expressions and
maps JSON responses to token claims.
"""
