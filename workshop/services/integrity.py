# services/integrity.py
"""Dangling-reference reporting and content de-duplication.

Steps may outlive the assets they reference; that is tolerated and reported
here, never repaired.
"""
import hashlib
from typing import Dict, Iterable, List, Sequence, Set

from sqlalchemy.ext.asyncio import AsyncSession

from workshop.schemas import BinaryPayload, EditStep, GenerationStep, TimelineStep
from workshop.services import repository


def referenced_asset_ids(step: TimelineStep) -> List[str]:
    match step:
        case GenerationStep():
            ids = [*step.input.reference_asset_ids, *(o.asset_id for o in step.outputs)]
        case EditStep():
            ids = [step.source_asset_id, step.output_asset_id]
        case _:
            raise TypeError(f"unknown step variant: {type(step).__name__}")
    return list(dict.fromkeys(ids))


def missing_reference_ids(step: TimelineStep, known_asset_ids: Set[str]) -> List[str]:
    return [i for i in referenced_asset_ids(step) if i not in known_asset_ids]


async def missing_reference_ids_by_step(db: AsyncSession, project_id: str) -> Dict[str, List[str]]:
    """``{step_id: [asset ids that no longer resolve]}``; steps with none are omitted."""
    steps = await repository.get_project_steps(db, project_id)
    wanted = {i for step in steps for i in referenced_asset_ids(step)}
    known = await repository.existing_asset_ids(db, wanted)
    report: Dict[str, List[str]] = {}
    for step in steps:
        missing = missing_reference_ids(step, known)
        if missing:
            report[step.id] = missing
    return report


def content_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def dedupe_payloads(payloads: Iterable[BinaryPayload],
                    seen: Sequence[str] = ()) -> List[BinaryPayload]:
    """Drop payloads whose bytes were already seen, keeping first occurrences.

    ``seen`` holds digests to treat as already stored.
    """
    digests = set(seen)
    unique: List[BinaryPayload] = []
    for payload in payloads:
        digest = content_digest(payload.content)
        if digest in digests:
            continue
        digests.add(digest)
        unique.append(payload)
    return unique
