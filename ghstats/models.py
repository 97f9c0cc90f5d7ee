"""
Pydantic models describing one user's stats snapshot.

The cache layer treats snapshots as opaque JSON-able dicts; these models
only fix the shape the GitHub client produces.
"""

from typing import Optional

from pydantic import BaseModel, Field


class LanguageData(BaseModel):
    """Aggregated byte count for one language across all repos."""
    name: str
    bytes: int = Field(..., ge=0)
    percentage: float = Field(..., ge=0.0, le=100.0)
    color: str


class CommitActivity(BaseModel):
    """Commits authored on one UTC day."""
    date: str = Field(..., description="YYYY-MM-DD")
    count: int = Field(..., ge=0)


class Profile(BaseModel):
    login: str
    name: Optional[str] = None
    html_url: str
    avatar_url: str
    followers: int = 0
    public_repos: int = 0
    total_stars: int = 0
    fetched_at: str


class SnapshotMeta(BaseModel):
    cached: bool = False
    cached_at: str
    ttl_seconds: int


class StatsSnapshot(BaseModel):
    """Everything served for one user."""
    profile: Profile
    languages: list[LanguageData]
    commit_activity: list[CommitActivity]
    meta: SnapshotMeta
