from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stocktake_service.api import create_app
from stocktake_service.config import Settings
from stocktake_service.database import Base, create_engine, get_session
from stocktake_service.domain import TheoreticalItem
from stocktake_service.lifecycle import create_stocktake
from stocktake_service.models import Stocktake

BARCODE_PAIRS = [
    ("1001", "9300000000011"),
    ("Jim Beam 700ml", "9300000000028"),
]

THEORETICAL_CSV = (
    "Category,Product Code,Description,Unit,Unit Cost,Theoretical Qty\n"
    "Beer,1001,Carlton Draught 375ml,Each,2.50,24\n"
    "Beer,1002,Great Northern Keg,Keg,180,2\n"
    "Spirits,2001,Jim Beam 700ml,Bottle,30,6\n"
    "Spirits,2002,Bundaberg Rum 700ml,Bottle,32,0\n"
).encode("utf-8")

BARCODE_CSV = (
    "Barcode,Product\n"
    "9300000000011,1001\n"
    "9300000000028,Jim Beam 700ml\n"
).encode("utf-8")


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        local_store_url=f"sqlite+aiosqlite:///{tmp_path / 'device.db'}",
        server_url="http://test",
        environment="test",
        access_control_allow_origin="*",
        app_name="Test Stocktake Service",
    )


@pytest.fixture()
async def session_factory(settings: Settings) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = create_engine(settings.database_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture()
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def app(
    settings: Settings, session_factory: async_sessionmaker[AsyncSession]
) -> AsyncIterator[FastAPI]:
    async def override_get_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    app = create_app(settings)
    app.dependency_overrides[get_session] = override_get_session

    yield app


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture()
def theoretical() -> list[TheoreticalItem]:
    return [
        TheoreticalItem("Beer", "1001", "Carlton Draught 375ml", "Each", 2.5, 24),
        TheoreticalItem("Beer", "1002", "Great Northern Keg", "Keg", 180.0, 2),
        TheoreticalItem("Spirits", "2001", "Jim Beam 700ml", "Bottle", 30.0, 6),
        TheoreticalItem("Spirits", "2002", "Bundaberg Rum 700ml", "Bottle", 32.0, 0),
    ]


@pytest.fixture()
async def stocktake(session: AsyncSession, theoretical: list[TheoreticalItem]) -> Stocktake:
    stocktake = await create_stocktake(
        session,
        name="October count",
        created_by="manager",
        theoretical=theoretical,
        barcode_pairs=BARCODE_PAIRS,
    )
    await session.commit()
    return stocktake


@pytest.fixture()
async def created_stocktake(client: AsyncClient) -> dict:
    response = await client.post(
        "/stocktakes",
        data={"name": "October count", "created_by": "manager"},
        files={
            "theoretical_file": ("theoretical.csv", THEORETICAL_CSV, "text/csv"),
            "barcode_file": ("barcodes.csv", BARCODE_CSV, "text/csv"),
        },
    )
    assert response.status_code == 201, response.text
    return response.json()
