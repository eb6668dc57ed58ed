from __future__ import annotations

import itertools
from datetime import timedelta

import pytest
import pytest_asyncio

from workshop.database import init_db, make_engine, make_session_maker
from workshop.models import utcnow
from workshop.schemas import (
    BinaryPayload,
    EditOperations,
    EditStep,
    GenerationInput,
    GenerationOutput,
    GenerationStep,
    OutputAsset,
)
from workshop.services.ids import new_id


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'workshop.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with make_session_maker(engine)() as session:
        yield session


@pytest_asyncio.fixture
async def fresh_db(engine):
    """A second session on the same file; sees only what was committed."""
    async with make_session_maker(engine)() as session:
        yield session


@pytest.fixture
def payload():
    def _make(content: bytes = b"\x89PNG-fake", *, width=64, height=48, mime_type="image/png", **extra):
        return BinaryPayload(content=content, mime_type=mime_type, width=width, height=height, **extra)
    return _make


@pytest.fixture
def project_asset():
    def _make(project_id: str, content: bytes = b"asset-bytes", *, kind="reference",
              mime_type="image/png", width=32, height=32):
        return OutputAsset(
            id=new_id("asset"),
            scope="project",
            project_id=project_id,
            kind=kind,
            created_at=utcnow(),
            mime_type=mime_type,
            width=width,
            height=height,
            content=content,
        )
    return _make


@pytest.fixture
def global_asset():
    def _make(content: bytes = b"persona-bytes"):
        return OutputAsset(
            id=new_id("asset"),
            scope="global",
            project_id=None,
            kind="persona",
            created_at=utcnow(),
            mime_type="image/jpeg",
            width=512,
            height=512,
            content=content,
        )
    return _make


@pytest.fixture
def step_clock():
    """Strictly increasing timestamps so timeline order is deterministic."""
    base = utcnow()
    counter = itertools.count()
    return lambda: base + timedelta(milliseconds=next(counter))


@pytest.fixture
def generation_step(step_clock):
    def _make(project_id: str, *, reference_asset_ids=(), output_asset_ids=(), persona_ids=(),
              prompt="a red fox in the snow", model_id="test/image-model"):
        return GenerationStep(
            id=new_id("step"),
            project_id=project_id,
            created_at=step_clock(),
            input=GenerationInput(
                model_id=model_id,
                prompt=prompt,
                reference_asset_ids=list(reference_asset_ids),
                persona_ids=list(persona_ids),
                output_count=max(1, len(output_asset_ids)),
            ),
            outputs=[
                GenerationOutput(asset_id=asset_id, mime_type="image/png", width=32, height=32)
                for asset_id in output_asset_ids
            ],
        )
    return _make


@pytest.fixture
def edit_step(step_clock):
    def _make(project_id: str, source_asset_id: str, output_asset_id: str, **operations):
        return EditStep(
            id=new_id("step"),
            project_id=project_id,
            created_at=step_clock(),
            source_asset_id=source_asset_id,
            output_asset_id=output_asset_id,
            operations=EditOperations(**operations),
        )
    return _make
