"""Ownership data: ranked contributors for a repository and its components."""

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class OwnerInfo(BaseModel):
    name: str
    email: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasons: List[str] = Field(default_factory=list)
    last_commit_date: Optional[str] = None
    commit_count: int = 0
    recent_commit_count: int = 0


class ComponentOwnership(BaseModel):
    component_id: str
    component_label: str
    owners: List[OwnerInfo] = Field(default_factory=list)
    key_files: List[str] = Field(default_factory=list)


class OwnershipData(BaseModel):
    """Snapshot produced by one ownership stage run. Replaced wholesale on retry."""
    global_owners: List[OwnerInfo] = Field(default_factory=list)
    components: Dict[str, ComponentOwnership] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.global_owners
