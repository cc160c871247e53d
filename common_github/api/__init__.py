"""Cached GitHub resources.

One module per resource. A resource module owns its cache file, its cache key
format and its TTL; `base_cached.CachedResourceBase` owns the lookup protocol.
"""
