"""Throttle storage adapters.

Counters and policies sit behind small abstract interfaces so the service can
start with in-process dicts and move to Redis (shared by several workers)
without changing the throttling core or the API layer.
"""
