"""
Pydantic models for the design/project listing.
These define the record shapes produced by the listing deduplicator and
returned by the /api/projects endpoint.
"""
from pydantic import BaseModel, Field
from typing import Optional, Literal
from datetime import datetime


ProjectType = Literal["basic", "advanced"]


class ProjectRecord(BaseModel):
    id: Optional[str] = None
    name: str = ""
    species_names: str = ""
    type: ProjectType = "basic"
    design_system_name: Optional[str] = None
    design_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"frozen": True}


class DesignRecord(BaseModel):
    design_id: Optional[str] = None
    design_system_name: str = ""
    project_name: str = ""
    created_at: Optional[datetime] = None
    projects: list[ProjectRecord] = Field(default_factory=list)

    model_config = {"frozen": True}


class ProjectListing(BaseModel):
    projects: list[ProjectRecord] = Field(default_factory=list)
    basic: list[ProjectRecord] = Field(default_factory=list)
    advanced: list[ProjectRecord] = Field(default_factory=list)
