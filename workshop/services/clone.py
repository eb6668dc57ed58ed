# services/clone.py
"""Deep copy of a project's subgraph under fresh identifiers.

The id remapping here is shared with backup import: every asset reference a
step carries goes through the same old->new map, so a copy never points back
into the project it came from.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from workshop.constants import DUPLICATE_NAME_SUFFIX
from workshop.database import atomic
from workshop.errors import IntegrityFailure
from workshop.models import utcnow
from workshop.schemas import EditStep, GenerationStep, Project, TimelineStep
from workshop.services import repository
from workshop.services.ids import new_id

logger = logging.getLogger(__name__)

CLONE_QUOTA_REASON = "Local storage quota exceeded while copying project assets."


def remap_asset_id(asset_id: str, id_map: Dict[str, str], *, strict: bool = False) -> str:
    """Translate ``asset_id`` through ``id_map``.

    Lenient by default: an id with no entry passes through unchanged, which
    keeps dangling references dangling instead of failing the whole copy.
    ``strict=True`` raises ``IntegrityFailure`` instead.
    """
    mapped = id_map.get(asset_id)
    if mapped is not None:
        return mapped
    if strict:
        raise IntegrityFailure(f"asset {asset_id} has no counterpart in the copy")
    logger.warning("Asset id %s not remapped, keeping it as is", asset_id)
    return asset_id


def remap_step(step: TimelineStep, asset_map: Dict[str, str], step_map: Dict[str, str], *,
               project_id: str, created_at: datetime, strict: bool = False) -> TimelineStep:
    def remap(asset_id: str) -> str:
        return remap_asset_id(asset_id, asset_map, strict=strict)

    base = {
        "id": step_map.get(step.id) or new_id("step"),
        "project_id": project_id,
        "created_at": created_at,
    }
    match step:
        case GenerationStep():
            return step.model_copy(deep=True, update={
                **base,
                "input": step.input.model_copy(update={
                    "reference_asset_ids": [remap(i) for i in step.input.reference_asset_ids],
                    "persona_ids": list(step.input.persona_ids),
                }),
                "outputs": [o.model_copy(update={"asset_id": remap(o.asset_id)}) for o in step.outputs],
                "remix_of_step_id": step_map.get(step.remix_of_step_id, step.remix_of_step_id),
                "remix_of_asset_id": remap(step.remix_of_asset_id) if step.remix_of_asset_id else None,
            })
        case EditStep():
            return step.model_copy(deep=True, update={
                **base,
                "source_asset_id": remap(step.source_asset_id),
                "output_asset_id": remap(step.output_asset_id),
            })
        case _:
            raise TypeError(f"unknown step variant: {type(step).__name__}")


def remap_steps(steps: Sequence[TimelineStep], asset_map: Dict[str, str], *, project_id: str,
                base_time: datetime, strict: bool = False) -> List[TimelineStep]:
    """Remap a whole timeline. New timestamps keep the original order."""
    ordered = sorted(steps, key=lambda s: s.created_at)
    step_map = {s.id: new_id("step") for s in ordered}
    return [
        remap_step(step, asset_map, step_map, project_id=project_id,
                   created_at=base_time + timedelta(microseconds=index), strict=strict)
        for index, step in enumerate(ordered)
    ]


async def duplicate_project(db: AsyncSession, project_id: str, *, strict: bool = False) -> Project:
    source = await repository.require_project(db, project_id)
    steps = await repository.get_project_steps(db, project_id)
    assets = await repository.get_project_assets(db, project_id)

    now = utcnow()
    asset_map = {asset.id: new_id("asset") for asset in assets}

    project = source.model_copy(update={
        "id": new_id("project"),
        "name": f"{source.name}{DUPLICATE_NAME_SUFFIX}",
        "created_at": now,
        "updated_at": now,
        "last_opened_at": now,
    })
    cloned_assets = [
        asset.model_copy(update={"id": asset_map[asset.id], "project_id": project.id, "created_at": now})
        for asset in assets
    ]
    cloned_steps = remap_steps(steps, asset_map, project_id=project.id, base_time=now, strict=strict)

    async with repository.quota_guard(CLONE_QUOTA_REASON):
        async with atomic(db):
            db.add(repository.project_to_row(project))
            db.add_all(repository.asset_to_row(a) for a in cloned_assets)
            db.add_all(repository.step_to_row(s) for s in cloned_steps)

    logger.info(
        "Duplicated project %s -> %s (%s steps, %s assets)",
        source.id, project.id, len(cloned_steps), len(cloned_assets),
    )
    return project
