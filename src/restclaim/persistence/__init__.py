"""restclaim persistence module.

Provides durable identity attribute storage backing the enrichment cache.
"""
