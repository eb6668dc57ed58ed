from __future__ import annotations

import pytest

from workshop.errors import IntegrityFailure, NotFoundError
from workshop.schemas import EditStep, GenerationStep
from workshop.services import repository
from workshop.services.clone import duplicate_project, remap_asset_id
from workshop.services.integrity import referenced_asset_ids


async def _seed(db, project_asset, generation_step, edit_step):
    project = await repository.create_project(db, "Demo")
    ref = await repository.upsert_asset(db, project_asset(project.id, b"ref"))
    out = await repository.upsert_asset(db, project_asset(project.id, b"out", kind="generated"))
    edited = await repository.upsert_asset(db, project_asset(project.id, b"edited", kind="edited"))
    gen = await repository.append_step(
        db, generation_step(project.id, reference_asset_ids=[ref.id], output_asset_ids=[out.id],
                            persona_ids=["persona_x"])
    )
    await repository.append_step(db, edit_step(project.id, out.id, edited.id, brightness=120))
    remix = generation_step(project.id, reference_asset_ids=[edited.id], prompt="remix it")
    remix = remix.model_copy(update={"remix_of_step_id": gen.id, "remix_of_asset_id": out.id})
    await repository.append_step(db, remix)
    return project


def _shape(steps):
    shapes = []
    for step in steps:
        match step:
            case GenerationStep():
                shapes.append(("generation", step.input.prompt, step.input.persona_ids, step.status))
            case EditStep():
                shapes.append(("edit", step.operations.model_dump()))
    return shapes


@pytest.mark.asyncio
async def test_duplicate_project_copies_structure_under_new_ids(db, fresh_db, project_asset, generation_step,
                                                              edit_step):
    source = await _seed(db, project_asset, generation_step, edit_step)

    copy = await duplicate_project(fresh_db, source.id)

    assert copy.id != source.id
    assert copy.name == "Demo Copy"
    assert copy.default_resolution == source.default_resolution

    src_steps = await repository.get_project_steps(fresh_db, source.id)
    new_steps = await repository.get_project_steps(fresh_db, copy.id)
    assert _shape(new_steps) == _shape(src_steps)
    assert {s.id for s in new_steps}.isdisjoint({s.id for s in src_steps})

    src_asset_ids = {a.id for a in await repository.get_project_assets(fresh_db, source.id)}
    new_assets = await repository.get_project_assets(fresh_db, copy.id)
    new_asset_ids = {a.id for a in new_assets}
    assert len(new_assets) == len(src_asset_ids)
    assert new_asset_ids.isdisjoint(src_asset_ids)
    assert sorted(a.content for a in new_assets) == [b"edited", b"out", b"ref"]

    for step in new_steps:
        assert set(referenced_asset_ids(step)) <= new_asset_ids
        if isinstance(step, GenerationStep) and step.remix_of_asset_id:
            assert step.remix_of_asset_id in new_asset_ids
            assert step.remix_of_step_id == new_steps[0].id


@pytest.mark.asyncio
async def test_duplicate_leaves_source_untouched(db, fresh_db, project_asset, generation_step, edit_step):
    source = await _seed(db, project_asset, generation_step, edit_step)
    before = await repository.get_project_steps(db, source.id)

    await duplicate_project(db, source.id)

    after = await repository.get_project_steps(fresh_db, source.id)
    assert [s.model_dump() for s in after] == [s.model_dump() for s in before]


@pytest.mark.asyncio
async def test_duplicate_passes_dangling_ids_through(db, project_asset, generation_step):
    project = await repository.create_project(db, "Demo")
    await repository.append_step(db, generation_step(project.id, reference_asset_ids=["asset_deleted"]))

    copy = await duplicate_project(db, project.id)

    (step,) = await repository.get_project_steps(db, copy.id)
    assert step.input.reference_asset_ids == ["asset_deleted"]


@pytest.mark.asyncio
async def test_strict_duplicate_fails_and_writes_nothing(db, generation_step):
    project = await repository.create_project(db, "Demo")
    await repository.append_step(db, generation_step(project.id, reference_asset_ids=["asset_deleted"]))

    with pytest.raises(IntegrityFailure):
        await duplicate_project(db, project.id, strict=True)
    assert [p.id for p in await repository.list_projects(db)] == [project.id]


@pytest.mark.asyncio
async def test_duplicate_missing_project(db):
    with pytest.raises(NotFoundError):
        await duplicate_project(db, "project_missing")


def test_remap_asset_id():
    assert remap_asset_id("a", {"a": "b"}) == "b"
    assert remap_asset_id("z", {"a": "b"}) == "z"
    with pytest.raises(IntegrityFailure):
        remap_asset_id("z", {"a": "b"}, strict=True)
