from __future__ import annotations

import pytest

from workshop.errors import NotFoundError, ValidationFailure
from workshop.schemas import EditOperations, GenerationInput
from workshop.services import repository
from workshop.services.timeline import (
    record_edit,
    record_failed_generation,
    record_generation,
    store_reference,
)


def _input(**overrides):
    values = {"model_id": "vendor/image-2", "prompt": "  a lighthouse at dusk  ",
              "aspect_ratio": "1:1", "resolution_preset": "1080p", "output_count": 2}
    values.update(overrides)
    return GenerationInput(**values)


@pytest.mark.asyncio
async def test_record_generation_stores_outputs_and_updates_defaults(db, payload):
    project = await repository.create_project(db, "Demo")

    step = await record_generation(
        db, project.id, _input(),
        [payload(b"one", provider_url="https://cdn/1", revised_prompt="lighthouse"), payload(b"two")],
    )

    assert step.status == "completed"
    assert step.input.prompt == "a lighthouse at dusk"
    assert [o.revised_prompt for o in step.outputs] == ["lighthouse", None]
    assets = await repository.get_assets(db, [o.asset_id for o in step.outputs])
    assert [a.content for a in assets] == [b"one", b"two"]
    assert {a.kind for a in assets} == {"generated"}
    assert assets[0].source_url == "https://cdn/1"

    stored = await repository.get_project(db, project.id)
    assert stored.default_model == "vendor/image-2"
    assert stored.default_aspect_ratio == "1:1"
    assert stored.default_resolution == "1080p"
    assert stored.updated_at > project.updated_at
    assert [s.id for s in await repository.get_project_steps(db, project.id)] == [step.id]


@pytest.mark.asyncio
async def test_record_generation_collapses_identical_outputs(db, payload):
    project = await repository.create_project(db, "Demo")
    step = await record_generation(db, project.id, _input(), [payload(b"same"), payload(b"same")])
    assert len(step.outputs) == 1
    assert len(await repository.get_project_assets(db, project.id)) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("overrides", [{"prompt": "   "}, {"output_count": 0}, {"output_count": 5}])
async def test_record_generation_rejects_bad_input(db, payload, overrides):
    project = await repository.create_project(db, "Demo")
    with pytest.raises(ValidationFailure):
        await record_generation(db, project.id, _input(**overrides), [payload()])
    assert await repository.get_project_steps(db, project.id) == []
    assert await repository.get_project_assets(db, project.id) == []


@pytest.mark.asyncio
async def test_record_generation_keeps_remix_links(db, payload):
    project = await repository.create_project(db, "Demo")
    first = await record_generation(db, project.id, _input(output_count=1), [payload(b"base")])
    remix = await record_generation(
        db, project.id, _input(prompt="same, at night", output_count=1), [payload(b"night")],
        remix_of_step_id=first.id, remix_of_asset_id=first.outputs[0].asset_id,
    )
    (_, stored) = await repository.get_project_steps(db, project.id)
    assert stored.remix_of_step_id == first.id
    assert stored.remix_of_asset_id == first.outputs[0].asset_id
    assert stored.id == remix.id


@pytest.mark.asyncio
async def test_record_failed_generation(db):
    project = await repository.create_project(db, "Demo")
    step = await record_failed_generation(db, project.id, _input(), "provider timed out")

    (stored,) = await repository.get_project_steps(db, project.id)
    assert stored.id == step.id
    assert stored.status == "failed"
    assert stored.error == "provider timed out"
    assert stored.outputs == []

    with pytest.raises(NotFoundError):
        await record_failed_generation(db, "project_missing", _input(), "nope")


@pytest.mark.asyncio
async def test_record_edit(db, payload, project_asset):
    project = await repository.create_project(db, "Demo")
    source = await repository.upsert_asset(db, project_asset(project.id, b"source"))

    step = await record_edit(db, project.id, source.id, payload(b"edited", width=16, height=9),
                             EditOperations(rotate=90, blur=2))

    edited = await repository.get_asset(db, step.output_asset_id)
    assert edited.kind == "edited"
    assert edited.content == b"edited"
    assert (edited.width, edited.height) == (16, 9)
    assert step.source_asset_id == source.id
    (stored,) = await repository.get_project_steps(db, project.id)
    assert stored.operations.rotate == 90

    with pytest.raises(NotFoundError):
        await record_edit(db, project.id, "asset_missing", payload(), EditOperations())


@pytest.mark.asyncio
async def test_store_reference(db, payload):
    project = await repository.create_project(db, "Demo")

    ref = await store_reference(db, project.id, payload(b"upload"))
    imported = await store_reference(db, project.id, payload(b"url"), kind="imported",
                                     source_url="https://example.org/cat.png")

    assert ref.kind == "reference"
    assert imported.source_url == "https://example.org/cat.png"
    assert {a.id for a in await repository.get_project_assets(db, project.id)} == {ref.id, imported.id}
    with pytest.raises(ValidationFailure):
        await store_reference(db, project.id, payload(), kind="generated")
    with pytest.raises(NotFoundError):
        await store_reference(db, "project_missing", payload())


def test_resolution_presets_cover_every_ratio():
    from workshop.constants import get_resolution_preset_config

    assert (get_resolution_preset_config("1080p", "9:16").width,
            get_resolution_preset_config("1080p", "9:16").height) == (1080, 1920)
    with pytest.raises(ValueError):
        get_resolution_preset_config("4k", "16:9")
