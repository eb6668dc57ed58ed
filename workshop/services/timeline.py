# services/timeline.py
"""Recording what the generation/edit collaborators produced.

The collaborators themselves (provider calls, pixel work) live outside this
package; they hand back ``BinaryPayload`` values and these helpers persist
them as assets plus the step that explains them.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from workshop.constants import get_resolution_preset_config
from workshop.database import atomic
from workshop.errors import NotFoundError, ValidationFailure
from workshop.models import ProjectRow, utcnow
from workshop.schemas import (
    BinaryPayload,
    EditOperations,
    EditStep,
    GenerationInput,
    GenerationOutput,
    GenerationStep,
    GenerationTrace,
    OutputAsset,
)
from workshop.services import repository
from workshop.services.ids import new_id
from workshop.services.integrity import dedupe_payloads
from workshop.settings.config import settings

logger = logging.getLogger(__name__)


def _validated_input(step_input: GenerationInput) -> GenerationInput:
    prompt = (step_input.prompt or "").strip()
    if not prompt:
        raise ValidationFailure("Prompt is required")
    if not 1 <= step_input.output_count <= settings.MAX_OUTPUTS:
        raise ValidationFailure(f"Output count must be between 1 and {settings.MAX_OUTPUTS}")
    try:
        get_resolution_preset_config(step_input.resolution_preset, step_input.aspect_ratio)
    except ValueError as exc:
        raise ValidationFailure(str(exc)) from exc
    negative = (step_input.negative_prompt or "").strip() or None
    return step_input.model_copy(update={"prompt": prompt, "negative_prompt": negative})


def _new_project_asset(project_id: str, kind: str, payload: BinaryPayload,
                       mime_type: Optional[str] = None, source_url: Optional[str] = None) -> OutputAsset:
    return OutputAsset(
        id=new_id("asset"),
        scope="project",
        project_id=project_id,
        kind=kind,
        created_at=utcnow(),
        mime_type=mime_type or payload.mime_type,
        width=payload.width,
        height=payload.height,
        source_url=source_url,
        content=payload.content,
    )


async def _require_project_row(db: AsyncSession, project_id: str) -> ProjectRow:
    row = await db.get(ProjectRow, project_id)
    if row is None:
        raise NotFoundError("project", project_id)
    return row


async def record_generation(
    db: AsyncSession,
    project_id: str,
    step_input: GenerationInput,
    payloads: Sequence[BinaryPayload],
    *,
    remix_of_step_id: Optional[str] = None,
    remix_of_asset_id: Optional[str] = None,
    trace: Optional[GenerationTrace] = None,
) -> GenerationStep:
    """Store provider outputs and the completed generation step in one transaction.

    Byte-identical outputs are collapsed before anything is written. The
    project's defaults follow the model/aspect/resolution just used.
    """
    step_input = _validated_input(step_input)
    project = await _require_project_row(db, project_id)

    assets: List[OutputAsset] = []
    outputs: List[GenerationOutput] = []
    for payload in dedupe_payloads(payloads):
        asset = _new_project_asset(project_id, "generated", payload, source_url=payload.provider_url)
        assets.append(asset)
        outputs.append(GenerationOutput(
            asset_id=asset.id,
            mime_type=asset.mime_type,
            width=asset.width,
            height=asset.height,
            provider_url=payload.provider_url,
            revised_prompt=payload.revised_prompt,
        ))

    step = GenerationStep(
        id=new_id("step"),
        project_id=project_id,
        created_at=utcnow(),
        input=step_input,
        outputs=outputs,
        remix_of_step_id=remix_of_step_id,
        remix_of_asset_id=remix_of_asset_id,
        status="completed",
        trace=trace,
    )

    async with repository.quota_guard(repository.ASSET_QUOTA_REASON):
        async with atomic(db):
            db.add_all(repository.asset_to_row(a) for a in assets)
            db.add(repository.step_to_row(step))
            project.default_model = step_input.model_id
            project.default_aspect_ratio = step_input.aspect_ratio
            project.default_resolution = step_input.resolution_preset
            project.updated_at = utcnow()

    if len(assets) < len(payloads):
        logger.info("Dropped %s duplicate outputs for step %s", len(payloads) - len(assets), step.id)
    return step


async def record_failed_generation(db: AsyncSession, project_id: str,
                                   step_input: GenerationInput, error: str) -> GenerationStep:
    step_input = _validated_input(step_input)
    await _require_project_row(db, project_id)
    step = GenerationStep(
        id=new_id("step"),
        project_id=project_id,
        created_at=utcnow(),
        input=step_input,
        outputs=[],
        status="failed",
        error=error,
    )
    await repository.append_step(db, step)
    return step


async def record_edit(db: AsyncSession, project_id: str, source_asset_id: str,
                      payload: BinaryPayload, operations: EditOperations) -> EditStep:
    project = await _require_project_row(db, project_id)
    source = await repository.get_asset(db, source_asset_id)
    if source is None:
        raise NotFoundError("asset", source_asset_id)

    edited = _new_project_asset(project_id, "edited", payload, mime_type=payload.mime_type or source.mime_type)
    step = EditStep(
        id=new_id("step"),
        project_id=project_id,
        created_at=utcnow(),
        source_asset_id=source_asset_id,
        output_asset_id=edited.id,
        operations=operations,
    )

    async with repository.quota_guard(repository.ASSET_QUOTA_REASON):
        async with atomic(db):
            db.add(repository.asset_to_row(edited))
            db.add(repository.step_to_row(step))
            project.updated_at = utcnow()
    return step


async def store_reference(db: AsyncSession, project_id: str, payload: BinaryPayload, *,
                          kind: str = "reference", source_url: Optional[str] = None) -> OutputAsset:
    if kind not in ("reference", "imported"):
        raise ValidationFailure(f"reference assets must be 'reference' or 'imported', not {kind!r}")
    await _require_project_row(db, project_id)
    asset = _new_project_asset(project_id, kind, payload, source_url=source_url)
    return await repository.upsert_asset(db, asset)
