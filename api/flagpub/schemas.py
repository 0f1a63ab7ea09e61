from pydantic import BaseModel, Field
from typing import List, Optional, Any, Dict
from datetime import datetime

class AppCreate(BaseModel):
    name: str = Field(..., min_length=1)
    identifier: str = Field(..., description="reverse-DNS app identifier, e.g. com.example.app")
    artifact_url: str = Field(..., description="URL clients fetch the signed artifact from")
    storage_config: Dict[str, Any] = Field(default_factory=dict, description="bucket, region, endpoint, credentials")
    fetch_policy: Optional[Dict[str, int]] = None

class AppOut(BaseModel):
    id: str
    name: str
    identifier: str
    artifact_url: str
    fetch_policy: Dict[str, Any]
    public_keys: List[Dict[str, Any]]
    created_at: Optional[datetime] = None

class PublishRequest(BaseModel):
    app_id: str
    changelog: str = Field(..., description="human-readable reason for this publish")

class ChangeOut(BaseModel):
    entity_type: str
    action: str
    key: str
    name: str
    details: List[str] = []

class ChangeSetOut(BaseModel):
    changes: List[ChangeOut]
    flag_count: int
    cohort_count: int

class PublishOut(BaseModel):
    version: str
    published_at: str
    changes: ChangeSetOut
    artifact_size: int
    kid: str

class ValidationReport(BaseModel):
    valid: bool
    errors: List[str]
    warnings: List[Dict[str, Any]]

class PublishRecordOut(BaseModel):
    id: str
    version: str
    published_at: datetime
    published_by: str
    changelog: str
    diff_summary: Dict[str, Any]
    artifact_size: int

class KeyCreate(BaseModel):
    app_id: str
    algorithm: Optional[str] = None
    activate: bool = False

class KeyOut(BaseModel):
    kid: str
    pem: str
    algorithm: str
    active: bool
    created_at: Optional[str] = None

