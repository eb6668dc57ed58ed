from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from .constants import (
    DEFAULT_ASPECT_RATIO,
    DEFAULT_OUTPUT_COUNT,
    DEFAULT_RESOLUTION,
    AspectRatio,
    ResolutionPreset,
)

AssetScope = Literal["project", "global"]
AssetKind = Literal["generated", "edited", "reference", "imported", "persona"]
StepStatus = Literal["pending", "completed", "failed"]


class WorkshopModel(BaseModel):
    model_config = ConfigDict(from_attributes=True, extra="forbid")


# =========================
# PROJECT
# =========================
class Project(WorkshopModel):
    id: str
    name: str
    created_at: datetime
    updated_at: datetime
    last_opened_at: datetime
    default_model: Optional[str] = None
    default_aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO
    default_resolution: ResolutionPreset = DEFAULT_RESOLUTION


# =========================
# TIMELINE STEPS
# =========================
class GenerationInput(WorkshopModel):
    model_id: str
    prompt: str
    negative_prompt: Optional[str] = None
    reference_asset_ids: List[str] = Field(default_factory=list)
    persona_ids: List[str] = Field(default_factory=list)
    aspect_ratio: AspectRatio = DEFAULT_ASPECT_RATIO
    resolution_preset: ResolutionPreset = DEFAULT_RESOLUTION
    output_count: int = DEFAULT_OUTPUT_COUNT


class GenerationOutput(WorkshopModel):
    asset_id: str
    mime_type: str
    width: int
    height: int
    provider_url: Optional[str] = None
    revised_prompt: Optional[str] = None


class GenerationTrace(WorkshopModel):
    request_at: datetime
    finished_at: Optional[datetime] = None
    request_payload: Optional[Dict[str, Any]] = None
    response_payload: Optional[Dict[str, Any]] = None


class GenerationStep(WorkshopModel):
    id: str
    project_id: str
    type: Literal["generation"] = "generation"
    created_at: datetime
    input: GenerationInput
    outputs: List[GenerationOutput] = Field(default_factory=list)
    remix_of_step_id: Optional[str] = None
    remix_of_asset_id: Optional[str] = None
    status: StepStatus = "completed"
    error: Optional[str] = None
    trace: Optional[GenerationTrace] = None


class EditOperations(WorkshopModel):
    # crop values are percentages of the source image
    crop_x: float = Field(default=0, ge=0, le=99)
    crop_y: float = Field(default=0, ge=0, le=99)
    crop_width: float = Field(default=100, ge=1, le=100)
    crop_height: float = Field(default=100, ge=1, le=100)
    rotate: float = 0
    brightness: float = 100
    contrast: float = 100
    saturation: float = 100
    blur: float = 0
    sharpen: float = 0


class EditStep(WorkshopModel):
    id: str
    project_id: str
    type: Literal["edit"] = "edit"
    created_at: datetime
    source_asset_id: str
    output_asset_id: str
    operations: EditOperations = Field(default_factory=EditOperations)


TimelineStep = Annotated[Union[GenerationStep, EditStep], Field(discriminator="type")]
timeline_step_adapter = TypeAdapter(TimelineStep)


# =========================
# ASSETS & PERSONAS
# =========================
class OutputAsset(WorkshopModel):
    id: str
    scope: AssetScope
    project_id: Optional[str]
    kind: AssetKind
    created_at: datetime
    mime_type: str
    width: int
    height: int
    source_url: Optional[str] = None
    content: bytes = Field(repr=False)

    @model_validator(mode="after")
    def _scope_matches_owner(self):
        if self.scope == "project" and not self.project_id:
            raise ValueError("project-scoped asset requires project_id")
        if self.scope == "global" and self.project_id is not None:
            raise ValueError("global asset must not have a project_id")
        return self

    @property
    def size_bytes(self) -> int:
        return len(self.content)


class Persona(WorkshopModel):
    id: str
    name: str
    reference_asset_ids: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# =========================
# BACKUP
# =========================
class AssetDescriptor(WorkshopModel):
    id: str
    filename: str
    mime_type: str
    width: int
    height: int
    kind: AssetKind
    created_at: datetime
    source_url: Optional[str] = None


class ProjectBackupManifest(WorkshopModel):
    model_config = ConfigDict(extra="ignore")

    schema_version: int
    exported_at: datetime
    project: Project
    steps: List[TimelineStep] = Field(default_factory=list)
    assets: List[AssetDescriptor] = Field(default_factory=list)
    personas_used: List[Persona] = Field(default_factory=list)


class BackupArchive(WorkshopModel):
    filename: str
    content: bytes = Field(repr=False)


# =========================
# BOUNDARY / REPORTING
# =========================
class BinaryPayload(WorkshopModel):
    """What a generation/edit/import collaborator hands back."""
    content: bytes = Field(repr=False)
    mime_type: str = "image/png"
    width: int
    height: int
    provider_url: Optional[str] = None
    revised_prompt: Optional[str] = None


class QuotaCleanupState(WorkshopModel):
    reason: str
    at: datetime


class CleanupCandidate(WorkshopModel):
    project: Project
    size_bytes: int
