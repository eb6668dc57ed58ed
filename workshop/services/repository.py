# services/repository.py
"""CRUD and queries over the local workshop store.

Every function takes the caller's ``AsyncSession``. Writes touching more
than one entity run in a single ``atomic`` block, so a reader never sees a
persona gone while its orphaned assets linger, or a step without the
project bump that goes with it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from pydantic import ValidationError
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from workshop.constants import DEFAULT_ASPECT_RATIO, DEFAULT_RESOLUTION
from workshop.database import atomic, is_quota_exceeded_error
from workshop.errors import NotFoundError, QuotaExceededError, ValidationFailure, WorkshopError
from workshop.models import (
    AssetRow, EditStepRow, GenerationStepRow, PersonaRow, ProjectRow, StepRow, utcnow
)
from workshop.schemas import (
    BinaryPayload,
    CleanupCandidate,
    EditStep,
    GenerationStep,
    OutputAsset,
    Persona,
    Project,
    QuotaCleanupState,
    TimelineStep,
)
from workshop.services.ids import new_id
from workshop.settings.config import settings

logger = logging.getLogger(__name__)

ASSET_QUOTA_REASON = "Local storage quota exceeded while saving image assets."
STEP_QUOTA_REASON = "Local storage quota exceeded while writing timeline steps."


# ---------- row <-> entity ----------

def row_to_project(row: ProjectRow) -> Project:
    return Project.model_validate(row)


def row_to_asset(row: AssetRow) -> OutputAsset:
    return OutputAsset.model_validate(row)


def row_to_persona(row: PersonaRow) -> Persona:
    return Persona.model_validate(row)


def row_to_step(row: StepRow) -> TimelineStep:
    match row:
        case GenerationStepRow():
            return GenerationStep.model_validate(row)
        case EditStepRow():
            return EditStep.model_validate(row)
        case _:
            raise TypeError(f"unknown step row type: {row.type!r}")


def project_to_row(project: Project) -> ProjectRow:
    return ProjectRow(**project.model_dump())


def asset_to_row(asset: OutputAsset) -> AssetRow:
    return AssetRow(**asset.model_dump(), size_bytes=asset.size_bytes)


def persona_to_row(persona: Persona) -> PersonaRow:
    return PersonaRow(**persona.model_dump())


def step_to_row(step: TimelineStep) -> StepRow:
    match step:
        case GenerationStep():
            return GenerationStepRow(
                id=step.id,
                project_id=step.project_id,
                created_at=step.created_at,
                input=step.input.model_dump(mode="json"),
                outputs=[o.model_dump(mode="json") for o in step.outputs],
                remix_of_step_id=step.remix_of_step_id,
                remix_of_asset_id=step.remix_of_asset_id,
                status=step.status,
                error=step.error,
                trace=step.trace.model_dump(mode="json") if step.trace else None,
            )
        case EditStep():
            return EditStepRow(
                id=step.id,
                project_id=step.project_id,
                created_at=step.created_at,
                source_asset_id=step.source_asset_id,
                output_asset_id=step.output_asset_id,
                operations=step.operations.model_dump(mode="json"),
            )
        case _:
            raise TypeError(f"unknown step variant: {type(step).__name__}")


# ---------- quota ----------

@asynccontextmanager
async def quota_guard(reason: str) -> AsyncIterator[None]:
    """Turn a capacity failure raised inside the block into ``QuotaExceededError``."""
    try:
        yield
    except WorkshopError:
        raise
    except Exception as exc:
        if is_quota_exceeded_error(exc):
            logger.warning("Write refused for lack of capacity: %s", exc)
            raise QuotaExceededError(QuotaCleanupState(reason=reason, at=utcnow())) from exc
        raise


# ---------- projects ----------

async def list_projects(db: AsyncSession) -> List[Project]:
    rows = await db.execute(select(ProjectRow).order_by(ProjectRow.last_opened_at.desc()))
    return [row_to_project(r) for r in rows.scalars().all()]


async def get_project(db: AsyncSession, project_id: str) -> Optional[Project]:
    row = await db.get(ProjectRow, project_id)
    return row_to_project(row) if row else None


async def require_project(db: AsyncSession, project_id: str) -> Project:
    project = await get_project(db, project_id)
    if project is None:
        raise NotFoundError("project", project_id)
    return project


async def create_project(db: AsyncSession, name: Optional[str] = None) -> Project:
    now = utcnow()
    project = Project(
        id=new_id("project"),
        name=(name or "").strip() or settings.DEFAULT_PROJECT_NAME,
        created_at=now,
        updated_at=now,
        last_opened_at=now,
        default_model=None,
        default_aspect_ratio=DEFAULT_ASPECT_RATIO,
        default_resolution=DEFAULT_RESOLUTION,
    )
    async with atomic(db):
        db.add(project_to_row(project))
    logger.info("Created project %s (%s)", project.id, project.name)
    return project


async def update_project(db: AsyncSession, project_id: str, patch: Mapping[str, Any]) -> Project:
    """Shallow-merge ``patch`` into the project. ``id`` never changes; ``updated_at`` always does."""
    row = await db.get(ProjectRow, project_id)
    if row is None:
        raise NotFoundError("project", project_id)

    changes = {k: v for k, v in dict(patch).items() if k != "id"}
    unknown = set(changes) - set(Project.model_fields)
    if unknown:
        raise ValidationFailure(f"unknown project fields: {', '.join(sorted(unknown))}")
    if "name" in changes and not str(changes["name"] or "").strip():
        raise ValidationFailure("Project name cannot be empty")

    current = row_to_project(row)
    try:
        updated = Project.model_validate(
            {**current.model_dump(), **changes, "id": current.id, "updated_at": utcnow()}
        )
    except ValidationError as exc:
        raise ValidationFailure(str(exc)) from exc

    async with atomic(db):
        for field, value in updated.model_dump().items():
            setattr(row, field, value)
    return updated


async def touch_project(db: AsyncSession, project_id: str) -> Project:
    return await update_project(db, project_id, {"last_opened_at": utcnow()})


async def rename_project(db: AsyncSession, project_id: str, name: str) -> Project:
    return await update_project(db, project_id, {"name": (name or "").strip()})


async def delete_project(db: AsyncSession, project_id: str) -> None:
    """Remove the project, its steps and its project-scoped assets together.

    Global assets are never touched here, even if a step referenced one.
    """
    async with atomic(db):
        project = await db.get(ProjectRow, project_id)
        if project is not None:
            await db.delete(project)
        steps = await db.execute(delete(StepRow).where(StepRow.project_id == project_id))
        assets = await db.execute(
            delete(AssetRow).where(AssetRow.project_id == project_id, AssetRow.scope == "project")
        )
    logger.info(
        "Deleted project %s with %s steps and %s assets",
        project_id, steps.rowcount, assets.rowcount,
    )


# ---------- steps ----------

async def get_project_steps(db: AsyncSession, project_id: str) -> List[TimelineStep]:
    rows = await db.execute(
        select(StepRow)
        .where(StepRow.project_id == project_id)
        .order_by(StepRow.created_at.asc(), StepRow.id.asc())
    )
    return [row_to_step(r) for r in rows.scalars().all()]


async def append_step(db: AsyncSession, step: TimelineStep) -> TimelineStep:
    async with quota_guard(STEP_QUOTA_REASON):
        async with atomic(db):
            await db.merge(step_to_row(step))
            project = await db.get(ProjectRow, step.project_id)
            if project is not None:
                project.updated_at = utcnow()
    return step


# ---------- assets ----------

async def get_project_assets(db: AsyncSession, project_id: str) -> List[OutputAsset]:
    rows = await db.execute(
        select(AssetRow)
        .where(AssetRow.project_id == project_id, AssetRow.scope == "project")
        .order_by(AssetRow.created_at.asc())
    )
    return [row_to_asset(r) for r in rows.scalars().all()]


async def get_asset(db: AsyncSession, asset_id: str) -> Optional[OutputAsset]:
    row = await db.get(AssetRow, asset_id)
    return row_to_asset(row) if row else None


async def get_assets(db: AsyncSession, asset_ids: Iterable[str]) -> List[OutputAsset]:
    """Best-effort batch fetch: ids that do not resolve are dropped, not reported."""
    wanted = list(dict.fromkeys(asset_ids))
    if not wanted:
        return []
    rows = await db.execute(select(AssetRow).where(AssetRow.id.in_(wanted)))
    found = {r.id: r for r in rows.scalars().all()}
    return [row_to_asset(found[i]) for i in wanted if i in found]


async def existing_asset_ids(db: AsyncSession, asset_ids: Iterable[str]) -> Set[str]:
    wanted = set(asset_ids)
    if not wanted:
        return set()
    rows = await db.execute(select(AssetRow.id).where(AssetRow.id.in_(wanted)))
    return set(rows.scalars().all())


@asynccontextmanager
async def open_asset_content(db: AsyncSession, asset_id: str) -> AsyncIterator[memoryview]:
    """Read-only view of an asset's bytes, released when the block exits."""
    asset = await get_asset(db, asset_id)
    if asset is None:
        raise NotFoundError("asset", asset_id)
    view = memoryview(asset.content)
    try:
        yield view
    finally:
        view.release()


async def upsert_asset(db: AsyncSession, asset: OutputAsset) -> OutputAsset:
    async with quota_guard(ASSET_QUOTA_REASON):
        async with atomic(db):
            await db.merge(asset_to_row(asset))
    return asset


async def delete_reference_asset(db: AsyncSession, asset_id: str) -> None:
    """Delete a project-scoped asset. Steps pointing at it are kept as history."""
    row = await db.get(AssetRow, asset_id)
    if row is None:
        raise NotFoundError("asset", asset_id)
    if row.scope != "project":
        raise ValidationFailure("global assets are removed through their persona")
    async with atomic(db):
        await db.delete(row)


# ---------- personas ----------

async def list_personas(db: AsyncSession) -> List[Persona]:
    rows = await db.execute(select(PersonaRow).order_by(PersonaRow.updated_at.desc()))
    return [row_to_persona(r) for r in rows.scalars().all()]


async def get_persona(db: AsyncSession, persona_id: str) -> Optional[Persona]:
    row = await db.get(PersonaRow, persona_id)
    return row_to_persona(row) if row else None


async def require_persona(db: AsyncSession, persona_id: str) -> Persona:
    persona = await get_persona(db, persona_id)
    if persona is None:
        raise NotFoundError("persona", persona_id)
    return persona


def _check_persona_capacity(count: int) -> None:
    limit = settings.MAX_PERSONA_REFERENCES
    if count > limit:
        raise ValidationFailure(f"Persona reached the limit of {limit} images")


async def upsert_persona(db: AsyncSession, persona: Persona) -> Persona:
    async with atomic(db):
        await db.merge(persona_to_row(persona))
    return persona


async def create_persona(db: AsyncSession, name: str, reference_asset_ids: Optional[List[str]] = None) -> Persona:
    normalized = (name or "").strip()
    if not normalized:
        raise ValidationFailure("Persona name cannot be empty")
    ids = list(dict.fromkeys(reference_asset_ids or []))
    _check_persona_capacity(len(ids))
    now = utcnow()
    persona = Persona(
        id=new_id("persona"),
        name=normalized,
        reference_asset_ids=ids,
        created_at=now,
        updated_at=now,
    )
    return await upsert_persona(db, persona)


async def rename_persona(db: AsyncSession, persona_id: str, name: str) -> Persona:
    normalized = (name or "").strip()
    if not normalized:
        raise ValidationFailure("Persona name cannot be empty")
    persona = await require_persona(db, persona_id)
    return await upsert_persona(db, persona.model_copy(update={"name": normalized, "updated_at": utcnow()}))


async def set_persona_reference_asset_ids(db: AsyncSession, persona_id: str, asset_ids: List[str]) -> Persona:
    ids = list(dict.fromkeys(asset_ids))
    _check_persona_capacity(len(ids))
    persona = await require_persona(db, persona_id)
    return await upsert_persona(
        db, persona.model_copy(update={"reference_asset_ids": ids, "updated_at": utcnow()})
    )


async def add_persona_reference(db: AsyncSession, persona_id: str,
                                payload: BinaryPayload) -> Tuple[Persona, OutputAsset]:
    """Store ``payload`` as a global persona asset and attach it, in one transaction."""
    persona = await require_persona(db, persona_id)
    _check_persona_capacity(len(persona.reference_asset_ids) + 1)

    asset = OutputAsset(
        id=new_id("asset"),
        scope="global",
        project_id=None,
        kind="persona",
        created_at=utcnow(),
        mime_type=payload.mime_type,
        width=payload.width,
        height=payload.height,
        content=payload.content,
    )
    updated = persona.model_copy(update={
        "reference_asset_ids": [*persona.reference_asset_ids, asset.id],
        "updated_at": utcnow(),
    })
    async with quota_guard(ASSET_QUOTA_REASON):
        async with atomic(db):
            db.add(asset_to_row(asset))
            await db.merge(persona_to_row(updated))
    return updated, asset


async def delete_persona_reference_asset(db: AsyncSession, asset_id: str) -> List[str]:
    """Detach a global asset from every persona holding it, then delete it.

    Returns the ids of the personas that were updated.
    """
    touched: List[str] = []
    async with atomic(db):
        rows = (await db.execute(select(PersonaRow))).scalars().all()
        now = utcnow()
        for row in rows:
            ids = list(row.reference_asset_ids or [])
            if asset_id in ids:
                row.reference_asset_ids = [i for i in ids if i != asset_id]
                row.updated_at = now
                touched.append(row.id)
        await db.execute(
            delete(AssetRow).where(AssetRow.id == asset_id, AssetRow.scope == "global")
        )
    return touched


async def delete_persona(db: AsyncSession, persona_id: str) -> List[str]:
    """Delete the persona and every persona asset no other persona still references.

    The reference recount happens in the same transaction as the delete.
    Returns the ids of the collected assets.
    """
    collected: List[str] = []
    async with atomic(db):
        row = await db.get(PersonaRow, persona_id)
        if row is None:
            logger.debug("delete_persona: %s not found, nothing to do", persona_id)
            return collected
        referenced = list(row.reference_asset_ids or [])
        await db.delete(row)

        remaining = (
            await db.execute(select(PersonaRow.reference_asset_ids).where(PersonaRow.id != persona_id))
        ).scalars().all()
        still_used = {asset_id for ids in remaining for asset_id in (ids or [])}
        orphans = [asset_id for asset_id in referenced if asset_id not in still_used]

        if orphans:
            collected = list((await db.execute(
                select(AssetRow.id).where(
                    AssetRow.id.in_(orphans),
                    AssetRow.scope == "global",
                    AssetRow.kind == "persona",
                )
            )).scalars().all())
            if collected:
                await db.execute(delete(AssetRow).where(AssetRow.id.in_(collected)))
    logger.info("Deleted persona %s, collected %s orphaned assets", persona_id, len(collected))
    return collected


# ---------- reporting ----------

async def collect_cleanup_candidates(db: AsyncSession) -> List[CleanupCandidate]:
    """Projects ordered by the bytes their project-scoped assets occupy, largest first."""
    projects = await list_projects(db)
    rows = await db.execute(
        select(AssetRow.project_id, func.coalesce(func.sum(AssetRow.size_bytes), 0))
        .where(AssetRow.scope == "project")
        .group_by(AssetRow.project_id)
    )
    sizes: Dict[str, int] = {pid: int(total) for pid, total in rows.all()}
    candidates = [CleanupCandidate(project=p, size_bytes=sizes.get(p.id, 0)) for p in projects]
    return sorted(candidates, key=lambda c: c.size_bytes, reverse=True)


async def collect_usage_for_persona(db: AsyncSession, persona: Persona) -> int:
    rows = await db.execute(select(GenerationStepRow.input).where(StepRow.type == "generation"))
    return sum(
        1 for step_input in rows.scalars().all()
        if persona.id in ((step_input or {}).get("persona_ids") or [])
    )
