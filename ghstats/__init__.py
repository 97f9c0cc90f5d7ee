"""
GitHub stats API: a read-through cache in front of the GitHub REST API.

Aggregates per-repository language bytes, commit history and profile info
into one snapshot per user, refreshed on a schedule and served with
stale-on-error fallback.
"""

__version__ = "1.0.0"
