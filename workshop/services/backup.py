# services/backup.py
"""Portable project backups.

An archive holds ``manifest.json`` (project, ordered steps, asset
descriptors, personas the timeline actually uses) plus one
``assets/<assetId>.<ext>`` entry per project asset. Persona images are
shared global state and are not bundled.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Set

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from workshop.constants import (
    ASSETS_DIR, BACKUP_SCHEMA_VERSION, IMPORTED_NAME_SUFFIX, MANIFEST_FILENAME
)
from workshop.database import atomic
from workshop.errors import InvalidArchiveError
from workshop.models import utcnow
from workshop.schemas import (
    AssetDescriptor,
    BackupArchive,
    EditStep,
    GenerationStep,
    OutputAsset,
    Project,
    ProjectBackupManifest,
    TimelineStep,
)
from workshop.services import repository
from workshop.services.archive import ArchiveReader, ArchiveWriter
from workshop.services.clone import remap_steps
from workshop.services.ids import new_id
from workshop.utils import extension_for_mime, slugify

logger = logging.getLogger(__name__)

IMPORT_QUOTA_REASON = "Local storage quota exceeded while importing a backup."


def asset_filename(asset: OutputAsset) -> str:
    return f"{asset.id}.{extension_for_mime(asset.mime_type)}"


def describe_asset(asset: OutputAsset) -> AssetDescriptor:
    return AssetDescriptor(
        id=asset.id,
        filename=asset_filename(asset),
        mime_type=asset.mime_type,
        width=asset.width,
        height=asset.height,
        kind=asset.kind,
        created_at=asset.created_at,
        source_url=asset.source_url,
    )


def used_persona_ids(steps: Sequence[TimelineStep]) -> Set[str]:
    used: Set[str] = set()
    for step in steps:
        match step:
            case GenerationStep():
                used.update(step.input.persona_ids)
            case EditStep():
                pass
            case _:
                raise TypeError(f"unknown step variant: {type(step).__name__}")
    return used


async def build_manifest(db: AsyncSession, project_id: str) -> tuple[ProjectBackupManifest, List[OutputAsset]]:
    project = await repository.require_project(db, project_id)
    steps = await repository.get_project_steps(db, project_id)
    assets = await repository.get_project_assets(db, project_id)

    wanted = used_persona_ids(steps)
    personas_used = [p for p in await repository.list_personas(db) if p.id in wanted]

    manifest = ProjectBackupManifest(
        schema_version=BACKUP_SCHEMA_VERSION,
        exported_at=utcnow(),
        project=project,
        steps=steps,
        assets=[describe_asset(a) for a in assets],
        personas_used=personas_used,
    )
    return manifest, assets


async def export_project_backup(db: AsyncSession, project_id: str) -> BackupArchive:
    manifest, assets = await build_manifest(db, project_id)

    writer = ArchiveWriter()
    writer.write(MANIFEST_FILENAME, manifest.model_dump_json(indent=2).encode("utf-8"))
    for asset in assets:
        writer.write(f"{ASSETS_DIR}/{asset_filename(asset)}", asset.content)

    filename = f"{slugify(manifest.project.name) or 'project'}-backup.zip"
    logger.info(
        "Exported project %s: %s steps, %s assets, %s personas",
        project_id, len(manifest.steps), len(assets), len(manifest.personas_used),
    )
    return BackupArchive(filename=filename, content=writer.finish())


def read_backup_manifest(reader: ArchiveReader) -> ProjectBackupManifest:
    raw: Optional[bytes] = reader.read(MANIFEST_FILENAME)
    if raw is None:
        raise InvalidArchiveError("Invalid backup file: manifest missing")
    try:
        manifest = ProjectBackupManifest.model_validate_json(raw)
    except ValidationError as exc:
        raise InvalidArchiveError(f"Invalid backup file: {exc.error_count()} manifest errors") from exc
    if manifest.schema_version > BACKUP_SCHEMA_VERSION:
        raise InvalidArchiveError(
            f"Backup schema version {manifest.schema_version} is newer than supported {BACKUP_SCHEMA_VERSION}"
        )
    return manifest


async def import_project_backup(db: AsyncSession, content: bytes, *, strict: bool = False) -> Project:
    """Restore a backup as a new project.

    Project, assets and steps get fresh ids. Personas keep their original
    ids and are upserted, so importing twice merges rather than duplicates.
    Asset files missing from the archive are skipped.
    """
    now = utcnow()
    with ArchiveReader(content) as reader:
        manifest = read_backup_manifest(reader)
        source = manifest.project
        project = source.model_copy(update={
            "id": new_id("project"),
            "name": f"{source.name}{IMPORTED_NAME_SUFFIX}",
            "created_at": now,
            "updated_at": now,
            "last_opened_at": now,
        })

        asset_map = {}
        restored: List[OutputAsset] = []
        for descriptor in manifest.assets:
            data = reader.read(f"{ASSETS_DIR}/{descriptor.filename}")
            if data is None:
                logger.warning("Backup entry %s missing, skipping asset %s", descriptor.filename, descriptor.id)
                continue
            asset_id = new_id("asset")
            asset_map[descriptor.id] = asset_id
            restored.append(OutputAsset(
                id=asset_id,
                scope="project",
                project_id=project.id,
                kind=descriptor.kind,
                created_at=descriptor.created_at,
                mime_type=descriptor.mime_type,
                width=descriptor.width,
                height=descriptor.height,
                source_url=descriptor.source_url,
                content=data,
            ))

    steps = remap_steps(manifest.steps, asset_map, project_id=project.id, base_time=now, strict=strict)
    personas = [p.model_copy(update={"updated_at": now}) for p in manifest.personas_used]

    async with repository.quota_guard(IMPORT_QUOTA_REASON):
        async with atomic(db):
            db.add(repository.project_to_row(project))
            db.add_all(repository.asset_to_row(a) for a in restored)
            db.add_all(repository.step_to_row(s) for s in steps)
            for persona in personas:
                await db.merge(repository.persona_to_row(persona))

    logger.info(
        "Imported backup as project %s: %s steps, %s/%s assets, %s personas",
        project.id, len(steps), len(restored), len(manifest.assets), len(personas),
    )
    return project
