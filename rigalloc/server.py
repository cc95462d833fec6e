"""FastAPI allocation server.

Exposes the allocation engine over HTTP:
- Equipment status and availability checks
- Allocation and release
- Conflict listing, resolution and withdrawal
- Forced sync
- Bulk operations and their history

Domain errors map to status codes: conflicts are 409, unavailable units and
capacity shortfalls 422, unknown ids 404, persistence failures 502.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, status
from starlette.responses import PlainTextResponse

from rigalloc import __version__
from rigalloc.adapters.base import PersistenceAdapter
from rigalloc.adapters.sql import SQLAdapter
from rigalloc.config import Settings, get_settings
from rigalloc.engine import AllocationEngine
from rigalloc.errors import (
    AdapterError,
    AllocationError,
    CapacityError,
    ConflictError,
    StaleReferenceError,
    UnavailableError,
)
from rigalloc.logging import configure_logging, get_logger
from rigalloc.metrics import metrics
from rigalloc.middleware import RequestTracingMiddleware
from rigalloc.models import Allocation, BulkOperation
from rigalloc.schemas import (
    AllocateRequest,
    AvailabilityResponse,
    BulkDeployRequest,
    BulkIdsRequest,
    BulkStatusRequest,
    BulkTransferRequest,
    ClearCompletedResponse,
    ConflictListResponse,
    EquipmentStatusResponse,
    ErrorDetail,
    JobEquipmentResponse,
    OperationHistoryResponse,
    ReleaseResponse,
    ResolveConflictRequest,
    ResolveConflictResponse,
    SyncResponse,
)

logger = get_logger(__name__)


def to_http_error(error: AllocationError) -> HTTPException:
    """Map a domain error to an ``HTTPException`` with a structured detail."""
    context: dict = {}
    if isinstance(error, ConflictError):
        code = status.HTTP_409_CONFLICT
        context = error.conflict.model_dump(mode="json")
    elif isinstance(error, CapacityError):
        code = 422
        context = {
            "equipment_id": error.equipment_id,
            "requested": error.requested,
            "available": error.available,
        }
    elif isinstance(error, UnavailableError):
        code = 422
        context = {"equipment_id": error.equipment_id, "status": error.status}
    elif isinstance(error, StaleReferenceError):
        code = status.HTTP_404_NOT_FOUND
        context = {"equipment_id": error.equipment_id}
    elif isinstance(error, AdapterError):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    detail = ErrorDetail(error=type(error).__name__, message=str(error), context=context)
    return HTTPException(status_code=code, detail=detail.model_dump())


def create_app(adapter: PersistenceAdapter | None = None, settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        adapter: Persistence adapter to serve. Defaults to the SQL store at
            ``settings.database_url``.
        settings: Settings override; ``get_settings()`` otherwise.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(
            json_format=not settings.debug,
            level="DEBUG" if settings.debug else settings.log_level,
        )
        logger.info(
            "server_starting",
            version=__version__,
            host=settings.host,
            port=settings.port,
            debug=settings.debug,
        )

        backend = adapter
        if backend is None:
            logger.info("database_init", database_url=settings.database_url)
            sql = SQLAdapter(settings.database_url)
            await sql.initialize()
            backend = sql

        engine = AllocationEngine.create(backend, settings)
        report = await engine.start()
        app.state.engine = engine
        logger.info(
            "engine_ready",
            refreshed=[c.value for c in report.refreshed] if report else [],
            failed=[c.value for c in report.failed] if report else [],
        )
        yield
        await engine.stop()
        await backend.close()
        logger.info("server_shutdown")

    app = FastAPI(
        title="Rig Allocation Server",
        description="Equipment allocation and conflict resolution for job diagrams",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.add_middleware(RequestTracingMiddleware)

    def get_engine(request: Request) -> AllocationEngine:
        return request.app.state.engine

    # Health check
    @app.get("/health")
    async def health(request: Request) -> dict[str, str]:
        """Health check endpoint."""
        engine = get_engine(request)
        return {
            "status": "healthy",
            "version": __version__,
            "sync_status": engine.sync_status.value,
        }

    # Metrics endpoint (Prometheus format)
    @app.get("/metrics", include_in_schema=False)
    async def get_metrics() -> PlainTextResponse:
        return PlainTextResponse(
            content=metrics.to_prometheus(),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/metrics/json")
    async def get_metrics_json() -> dict:
        return metrics.get_stats()

    # Equipment
    @app.get("/v1/equipment/{equipment_id}/status", response_model=EquipmentStatusResponse)
    async def equipment_status(equipment_id: str, request: Request) -> EquipmentStatusResponse:
        """Status for display; unknown ids report ``unavailable``."""
        engine = get_engine(request)
        return EquipmentStatusResponse(
            equipment_id=equipment_id,
            status=engine.get_equipment_status(equipment_id),
            allocation=engine.get_allocation(equipment_id),
        )

    @app.get("/v1/equipment/{equipment_id}/availability", response_model=AvailabilityResponse)
    async def equipment_availability(
        equipment_id: str,
        request: Request,
        job_id: str = Query(...),
        quantity: int | None = Query(default=None, gt=0),
    ) -> AvailabilityResponse:
        engine = get_engine(request)
        return AvailabilityResponse(
            equipment_id=equipment_id,
            job_id=job_id,
            available=engine.validate_equipment_availability(equipment_id, job_id, quantity),
        )

    # Allocations
    @app.post("/v1/allocations", response_model=Allocation, status_code=status.HTTP_201_CREATED)
    async def allocate(body: AllocateRequest, request: Request) -> Allocation:
        """Allocate equipment to a job.

        Raises:
            404: Unknown equipment id
            409: Held by another job (the conflict is recorded)
            422: Unavailable status or insufficient quantity
            502: Persistence failure
        """
        engine = get_engine(request)
        try:
            allocation = await engine.allocate_equipment(
                body.equipment_id,
                body.job_id,
                body.job_name,
                body.status,
                body.quantity,
            )
        except AllocationError as e:
            raise to_http_error(e) from e
        if allocation is None:
            raise to_http_error(StaleReferenceError(body.equipment_id))
        return allocation

    @app.delete("/v1/allocations/{equipment_id}", response_model=ReleaseResponse)
    async def release(equipment_id: str, request: Request, job_id: str = Query(...)) -> ReleaseResponse:
        """Release a hold. Releasing for a job that is not the holder is a no-op."""
        engine = get_engine(request)
        try:
            allocation = await engine.release_equipment(equipment_id, job_id)
        except AllocationError as e:
            raise to_http_error(e) from e
        return ReleaseResponse(
            equipment_id=equipment_id,
            released=allocation is not None,
            allocation=allocation,
        )

    @app.get("/v1/jobs/{job_id}/equipment", response_model=JobEquipmentResponse)
    async def job_equipment(job_id: str, request: Request) -> JobEquipmentResponse:
        engine = get_engine(request)
        return JobEquipmentResponse(job_id=job_id, equipment_ids=engine.get_job_equipment(job_id))

    # Conflicts
    @app.get("/v1/conflicts", response_model=ConflictListResponse)
    async def list_conflicts(request: Request) -> ConflictListResponse:
        conflicts = get_engine(request).conflicts
        return ConflictListResponse(conflicts=conflicts, count=len(conflicts))

    @app.post("/v1/conflicts/{equipment_id}/resolve", response_model=ResolveConflictResponse)
    async def resolve_conflict(
        equipment_id: str,
        body: ResolveConflictRequest,
        request: Request,
    ) -> ResolveConflictResponse:
        """Resolve an open conflict in favour of the current or requesting job."""
        engine = get_engine(request)
        if engine.registry.get(equipment_id) is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No open conflict for '{equipment_id}'",
            )
        try:
            allocation = await engine.resolve_conflict(equipment_id, body.resolution)
        except AllocationError as e:
            raise to_http_error(e) from e
        return ResolveConflictResponse(
            equipment_id=equipment_id,
            resolution=body.resolution,
            allocation=allocation,
        )

    @app.delete("/v1/conflicts/{equipment_id}")
    async def withdraw_conflict(
        equipment_id: str,
        request: Request,
        job_id: str = Query(...),
    ) -> dict[str, bool]:
        """Withdraw the requesting job's claim."""
        withdrawn = get_engine(request).withdraw_conflict(equipment_id, job_id)
        if not withdrawn:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"No open conflict for '{equipment_id}' requested by '{job_id}'",
            )
        return {"withdrawn": True}

    # Sync
    @app.post("/v1/sync", response_model=SyncResponse)
    async def sync(request: Request) -> SyncResponse:
        engine = get_engine(request)
        report = await engine.sync_inventory_status()
        return SyncResponse(
            status=engine.sync_status,
            refreshed=[c.value for c in report.refreshed],
            failed=[c.value for c in report.failed],
            duration_ms=report.duration_ms,
            last_sync_time=engine.last_sync_time,
        )

    # Bulk operations
    @app.post("/v1/bulk/status", response_model=BulkOperation)
    async def bulk_status(body: BulkStatusRequest, request: Request) -> BulkOperation:
        return await get_engine(request).bulk_update_status(body.equipment_ids, body.params)

    @app.post("/v1/bulk/transfer", response_model=BulkOperation)
    async def bulk_transfer(body: BulkTransferRequest, request: Request) -> BulkOperation:
        return await get_engine(request).bulk_transfer_equipment(body.type_ids, body.params)

    @app.post("/v1/bulk/deploy", response_model=BulkOperation)
    async def bulk_deploy(body: BulkDeployRequest, request: Request) -> BulkOperation:
        return await get_engine(request).bulk_deploy_equipment(
            body.equipment_ids, body.job_id, body.job_name
        )

    @app.post("/v1/bulk/return", response_model=BulkOperation)
    async def bulk_return(body: BulkIdsRequest, request: Request) -> BulkOperation:
        return await get_engine(request).bulk_return_equipment(body.equipment_ids)

    @app.post("/v1/bulk/delete", response_model=BulkOperation)
    async def bulk_delete(body: BulkIdsRequest, request: Request) -> BulkOperation:
        return await get_engine(request).bulk_delete_equipment(body.equipment_ids)

    @app.get("/v1/bulk/operations", response_model=OperationHistoryResponse)
    async def operation_history(request: Request) -> OperationHistoryResponse:
        engine = get_engine(request)
        operations = engine.operation_history()
        return OperationHistoryResponse(
            operations=operations,
            count=len(operations),
            is_processing=engine.is_processing,
        )

    @app.delete("/v1/bulk/operations/completed", response_model=ClearCompletedResponse)
    async def clear_completed(request: Request) -> ClearCompletedResponse:
        return ClearCompletedResponse(removed=get_engine(request).clear_completed_operations())

    return app


# Create default app instance
app = create_app()
