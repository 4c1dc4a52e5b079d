import logging
from typing import Optional

import anyio
from fastapi import APIRouter, Header, HTTPException, Query
from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse

from adapters.factory import registered_drivers
from api.schemas import (
    CancelResponse,
    ConnectionCreateRequest,
    ConnectionListResponse,
    ConnectionResponse,
    ConnectionUpdateRequest,
    ExecutionResultResponse,
    ExecutionStatusResponse,
    ExecutionSubmitRequest,
    SchemaResponse,
)
from api.state import get_core
from execution.export import CONTENT_TYPES, ENCODERS
from execution.models import QueryRequest
from utils.errors import CoreError, ValidationError
from utils.settings import APP_VERSION

logger = logging.getLogger(__name__)

router = APIRouter()

STATUS_BY_KIND = {
    "ValidationError": 400,
    "QueryError": 400,
    "NotFound": 404,
    "InUse": 409,
    "ConnectionError": 502,
    "TimeoutError": 504,
}


def _http_error(exc: CoreError) -> HTTPException:
    return HTTPException(status_code=STATUS_BY_KIND.get(exc.kind, 500), detail=exc.to_dict())


@router.get("/health")
def health() -> dict:
    core = get_core()
    return {
        "status": "ok",
        "drivers": registered_drivers(),
        "active_executions": core.executor.active_count(),
        "pools": core.executor.pools.stats(),
    }


@router.get("/version")
def version() -> dict:
    return {"version": APP_VERSION}


# -- connections ---------------------------------------------------------------


@router.get("/connections", response_model=ConnectionListResponse)
def list_connections() -> ConnectionListResponse:
    items = [c.redacted() for c in get_core().registry.list()]
    return ConnectionListResponse(connections=items, count=len(items))


@router.post("/connections", response_model=ConnectionResponse, status_code=201)
def create_connection(payload: ConnectionCreateRequest) -> ConnectionResponse:
    registry = get_core().registry
    try:
        connection_id = registry.create(payload.model_dump())
        return ConnectionResponse(connection=registry.get(connection_id).redacted())
    except CoreError as exc:
        raise _http_error(exc) from exc


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
def get_connection(connection_id: str) -> ConnectionResponse:
    try:
        return ConnectionResponse(connection=get_core().registry.get(connection_id).redacted())
    except CoreError as exc:
        raise _http_error(exc) from exc


@router.patch("/connections/{connection_id}", response_model=ConnectionResponse)
def update_connection(connection_id: str, payload: ConnectionUpdateRequest) -> ConnectionResponse:
    patch = payload.model_dump(exclude_unset=True)
    if not patch:
        raise _http_error(ValidationError("No fields to update"))
    try:
        updated = get_core().registry.update(connection_id, patch)
    except CoreError as exc:
        raise _http_error(exc) from exc
    return ConnectionResponse(connection=updated.redacted())


@router.delete("/connections/{connection_id}", status_code=204)
def delete_connection(connection_id: str) -> None:
    try:
        get_core().registry.delete(connection_id)
    except CoreError as exc:
        raise _http_error(exc) from exc


@router.post("/connections/{connection_id}/test")
def run_connection_test(connection_id: str) -> dict:
    try:
        return get_core().executor.test_connection(connection_id)
    except CoreError as exc:
        raise _http_error(exc) from exc


@router.get("/connections/{connection_id}/schema", response_model=SchemaResponse, response_model_by_alias=True)
def connection_schema(connection_id: str, reload: bool = Query(default=False)) -> SchemaResponse:
    try:
        tree = get_core().introspector.get_schema(connection_id, reload=reload)
    except CoreError as exc:
        raise _http_error(exc) from exc
    return SchemaResponse(
        connection_id=connection_id,
        table_count=tree.table_count,
        column_count=tree.column_count,
        schema_tree=tree.to_dict(),
    )


# -- executions ----------------------------------------------------------------


@router.post("/executions", response_model=ExecutionStatusResponse, status_code=202)
def submit_execution(
    payload: ExecutionSubmitRequest,
    x_principal: Optional[str] = Header(default=None),
) -> ExecutionStatusResponse:
    request = QueryRequest(
        sql=payload.sql,
        connection_id=payload.connection_id,
        mode=payload.mode,
        limit=payload.limit,
        timeout_ms=payload.timeout_ms,
        principal=x_principal,
    )
    try:
        execution = get_core().executor.submit(request)
    except CoreError as exc:
        raise _http_error(exc) from exc
    return ExecutionStatusResponse(**execution.status())


@router.get("/executions/{execution_id}", response_model=ExecutionStatusResponse)
def execution_status(execution_id: str) -> ExecutionStatusResponse:
    try:
        return ExecutionStatusResponse(**get_core().executor.poll(execution_id))
    except CoreError as exc:
        raise _http_error(exc) from exc


@router.get("/executions/{execution_id}/result", response_model=ExecutionResultResponse)
def execution_result(
    execution_id: str,
    wait: float = Query(default=30.0, ge=0.0, le=600.0, description="Seconds to wait for completion"),
) -> ExecutionResultResponse:
    executor = get_core().executor
    try:
        result = executor.result(execution_id, timeout=wait)
        status = ExecutionStatusResponse(**executor.poll(execution_id))
    except CoreError as exc:
        raise _http_error(exc) from exc
    if result is None:
        return ExecutionResultResponse(status=status)
    body = jsonable_encoder(result.to_dict())
    return ExecutionResultResponse(
        status=status,
        columns=body["columns"],
        column_types=body["column_types"],
        rows=body["rows"],
        truncated=body["truncated"],
    )


async def _download_body(streamer, encoder):
    parts = encoder(streamer.columns, streamer)
    try:
        async for part in iterate_in_threadpool(parts):
            yield part
    finally:
        # No-op after a full read; otherwise the client went away and this
        # task is being cancelled, so the close must not be.
        with anyio.CancelScope(shield=True):
            await run_in_threadpool(streamer.close)


@router.get("/executions/{execution_id}/download")
def download_execution(
    execution_id: str,
    format: str = Query(default="csv", pattern="^(csv|json|ndjson)$"),
    wait: float = Query(default=30.0, ge=0.0, le=600.0),
) -> StreamingResponse:
    executor = get_core().executor
    try:
        streamer = executor.stream(execution_id, timeout=wait)
        if streamer is None:
            state = executor.poll(execution_id)["state"]
            raise ValidationError(f"Execution {execution_id} has no open stream (state={state})")
    except CoreError as exc:
        raise _http_error(exc) from exc
    logger.info("Streaming execution %s as %s", execution_id, format)
    return StreamingResponse(
        _download_body(streamer, ENCODERS[format]),
        media_type=CONTENT_TYPES[format],
        headers={"Content-Disposition": f'attachment; filename="{execution_id}.{format}"'},
    )


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
def cancel_execution(execution_id: str) -> CancelResponse:
    executor = get_core().executor
    try:
        cancelled = executor.cancel(execution_id)
        state = executor.poll(execution_id)["state"]
    except CoreError as exc:
        raise _http_error(exc) from exc
    return CancelResponse(id=execution_id, cancelled=cancelled, state=state)
