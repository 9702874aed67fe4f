"""FastAPI router configuration."""
from __future__ import annotations

from typing import Optional, Sequence

from fastapi import APIRouter, Depends, FastAPI, File, Form, HTTPException, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response
from sqlalchemy.exc import NoResultFound
from sqlalchemy.ext.asyncio import AsyncSession

from . import crud, export, lifecycle, schemas
from .config import Settings, get_settings
from .database import get_session
from .errors import (
    ImportFailure,
    StocktakeAlreadyActive,
    StocktakeError,
    StocktakeNotActive,
    UnknownProduct,
)
from .importer import parse_barcode_mapping, parse_theoretical_export
from .logging_setup import setup_logging

router = APIRouter()


def provide_settings() -> Settings:
    """Dependency returning the active :class:`Settings` instance."""

    return get_settings()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (StocktakeNotActive, StocktakeAlreadyActive)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, ImportFailure):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, (NoResultFound, UnknownProduct)):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _attachment(filename: str) -> dict[str, str]:
    return {"Content-Disposition": f'attachment; filename="{filename}"'}


@router.get("/health", response_model=schemas.HealthStatus, tags=["system"])
async def health_check(settings: Settings = Depends(provide_settings)) -> schemas.HealthStatus:
    return schemas.HealthStatus(environment=settings.environment)


@router.get("/stocktakes/current", response_model=schemas.StocktakeOut, tags=["stocktakes"])
async def get_current_stocktake(
    session: AsyncSession = Depends(get_session),
) -> schemas.StocktakeOut:
    stocktake = await lifecycle.get_active(session)
    if stocktake is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active stocktake")
    return schemas.StocktakeOut.model_validate(stocktake)


@router.get("/stocktakes/history", response_model=list[schemas.StocktakeOut], tags=["stocktakes"])
async def list_stocktake_history(
    session: AsyncSession = Depends(get_session),
) -> Sequence[schemas.StocktakeOut]:
    stocktakes = await lifecycle.list_history(session)
    return [schemas.StocktakeOut.model_validate(stocktake) for stocktake in stocktakes]


@router.post(
    "/stocktakes",
    response_model=schemas.StocktakeOut,
    status_code=status.HTTP_201_CREATED,
    tags=["stocktakes"],
)
async def create_stocktake(
    created_by: str = Form(...),
    name: str = Form(""),
    theoretical_file: UploadFile = File(...),
    barcode_file: Optional[UploadFile] = File(None),
    session: AsyncSession = Depends(get_session),
) -> schemas.StocktakeOut:
    try:
        theoretical = parse_theoretical_export(
            await theoretical_file.read(), theoretical_file.filename or ""
        )
        pairs = []
        if barcode_file is not None and barcode_file.filename:
            pairs = parse_barcode_mapping(await barcode_file.read(), barcode_file.filename)
        stocktake = await lifecycle.create_stocktake(
            session,
            name=name,
            created_by=created_by,
            theoretical=theoretical,
            barcode_pairs=pairs,
        )
    except StocktakeError as exc:
        raise _http_error(exc) from exc
    await session.commit()
    return schemas.StocktakeOut.model_validate(stocktake)


@router.post(
    "/stocktakes/{stocktake_id}/finish",
    response_model=schemas.StocktakeOut,
    tags=["stocktakes"],
)
async def finish_stocktake(
    stocktake_id: str,
    payload: schemas.FinishStocktakeRequest,
    session: AsyncSession = Depends(get_session),
) -> schemas.StocktakeOut:
    try:
        stocktake = await lifecycle.finish_stocktake(
            session, stocktake_id, completed_by=payload.completed_by
        )
    except StocktakeError as exc:
        raise _http_error(exc) from exc
    await session.commit()
    await session.refresh(stocktake)
    return schemas.StocktakeOut.model_validate(stocktake)


@router.get(
    "/stocktakes/{stocktake_id}/snapshot",
    response_model=schemas.StocktakeSnapshot,
    tags=["stocktakes"],
)
async def get_snapshot(
    stocktake_id: str, session: AsyncSession = Depends(get_session)
) -> schemas.StocktakeSnapshot:
    try:
        return await crud.load_snapshot(session, stocktake_id)
    except NoResultFound as exc:
        raise _http_error(exc) from exc


@router.post(
    "/stocktakes/{stocktake_id}/counts",
    response_model=schemas.SyncPushResponse,
    tags=["counts"],
)
async def push_counts(
    stocktake_id: str,
    payload: schemas.SyncPushRequest,
    session: AsyncSession = Depends(get_session),
) -> schemas.SyncPushResponse:
    try:
        acks = await crud.upsert_count_events(session, stocktake_id, payload.events)
    except (StocktakeError, ValueError) as exc:
        raise _http_error(exc) from exc
    await session.commit()
    return schemas.SyncPushResponse(stocktake_id=stocktake_id, acknowledged=acks)


@router.get(
    "/stocktakes/{stocktake_id}/counts",
    response_model=list[schemas.CountEventOut],
    tags=["counts"],
)
async def list_counts(
    stocktake_id: str,
    recorded_by: Optional[str] = None,
    session: AsyncSession = Depends(get_session),
) -> Sequence[schemas.CountEventOut]:
    try:
        await crud.require_stocktake(session, stocktake_id)
    except NoResultFound as exc:
        raise _http_error(exc) from exc
    events = await crud.list_count_events(session, stocktake_id, recorded_by=recorded_by)
    return [schemas.CountEventOut.model_validate(event) for event in events]


@router.post(
    "/stocktakes/{stocktake_id}/counts/delete",
    response_model=schemas.DeleteCountsResponse,
    tags=["counts"],
)
async def delete_counts(
    stocktake_id: str,
    payload: schemas.DeleteCountsRequest,
    session: AsyncSession = Depends(get_session),
) -> schemas.DeleteCountsResponse:
    try:
        deleted = await crud.delete_count_events(session, stocktake_id, payload.sync_ids)
    except (StocktakeError, ValueError) as exc:
        raise _http_error(exc) from exc
    await session.commit()
    return schemas.DeleteCountsResponse(stocktake_id=stocktake_id, deleted=deleted)


@router.post(
    "/stocktakes/{stocktake_id}/adjustments",
    response_model=schemas.AdjustmentOut,
    status_code=status.HTTP_201_CREATED,
    tags=["adjustments"],
)
async def create_adjustment(
    stocktake_id: str,
    payload: schemas.AdjustmentCreate,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.AdjustmentOut:
    try:
        record = await crud.append_adjustment(
            session, stocktake_id, payload, fuzzy_enabled=settings.fuzzy_matching_enabled
        )
    except (StocktakeError, NoResultFound) as exc:
        raise _http_error(exc) from exc
    await session.commit()
    await session.refresh(record)
    return schemas.AdjustmentOut.model_validate(record)


@router.get(
    "/stocktakes/{stocktake_id}/adjustments",
    response_model=list[schemas.AdjustmentOut],
    tags=["adjustments"],
)
async def list_adjustments(
    stocktake_id: str, session: AsyncSession = Depends(get_session)
) -> Sequence[schemas.AdjustmentOut]:
    try:
        await crud.require_stocktake(session, stocktake_id)
    except NoResultFound as exc:
        raise _http_error(exc) from exc
    records = await crud.list_adjustments(session, stocktake_id)
    return [schemas.AdjustmentOut.model_validate(record) for record in records]


@router.get(
    "/stocktakes/{stocktake_id}/variance",
    response_model=schemas.VarianceReportOut,
    tags=["variance"],
)
async def get_variance(
    stocktake_id: str,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> schemas.VarianceReportOut:
    try:
        report = await crud.build_variance_report(
            session, stocktake_id, fuzzy_enabled=settings.fuzzy_matching_enabled
        )
    except NoResultFound as exc:
        raise _http_error(exc) from exc
    return schemas.VarianceReportOut(stocktake_id=stocktake_id, **report.to_dict())


@router.get("/stocktakes/{stocktake_id}/export/dat", tags=["export"])
async def export_dat(
    stocktake_id: str,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> PlainTextResponse:
    try:
        stocktake = await crud.require_stocktake(session, stocktake_id)
        report = await crud.build_variance_report(
            session, stocktake_id, fuzzy_enabled=settings.fuzzy_matching_enabled
        )
    except NoResultFound as exc:
        raise _http_error(exc) from exc
    mapping = await crud.load_barcode_mapping(session, stocktake_id)
    return PlainTextResponse(
        export.render_dat(report, mapping),
        headers=_attachment(f"stocktake-{stocktake.name}.dat"),
    )


@router.get("/stocktakes/{stocktake_id}/export/variance", tags=["export"])
async def export_variance(
    stocktake_id: str,
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(provide_settings),
) -> Response:
    try:
        stocktake = await crud.require_stocktake(session, stocktake_id)
        report = await crud.build_variance_report(
            session, stocktake_id, fuzzy_enabled=settings.fuzzy_matching_enabled
        )
    except NoResultFound as exc:
        raise _http_error(exc) from exc
    content = export.variance_report_to_xls(report, stocktake_name=stocktake.name)
    return Response(
        content,
        media_type="application/vnd.ms-excel",
        headers=_attachment(f"variance-report-{stocktake.name}.xls"),
    )


@router.get("/stocktakes/{stocktake_id}/export/manual", tags=["export"])
async def export_manual_entry_list(
    stocktake_id: str, session: AsyncSession = Depends(get_session)
) -> PlainTextResponse:
    try:
        stocktake = await crud.require_stocktake(session, stocktake_id)
    except NoResultFound as exc:
        raise _http_error(exc) from exc
    theoretical = await crud.load_theoretical(session, stocktake_id)
    mapping = await crud.load_barcode_mapping(session, stocktake_id)
    return PlainTextResponse(
        export.render_manual_entry_list(theoretical, mapping),
        headers=_attachment(f"manual-entry-list-{stocktake.name}.txt"),
    )


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)
    app = FastAPI(title=settings.app_name)
    origins = [origin.strip() for origin in settings.access_control_allow_origin.split(",")]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin for origin in origins if origin],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.dependency_overrides[provide_settings] = lambda: settings
    app.include_router(router)
    return app


app = create_app()


__all__ = ["app", "create_app"]
