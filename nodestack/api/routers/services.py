"""Service runtime state router."""

from __future__ import annotations

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from nodestack.db import RuntimeStateRepositoryPort
from nodestack.domain import ServiceRuntimeRecord


def api_create_services_router(state_repository: RuntimeStateRepositoryPort) -> APIRouter:
    """Create router listing persisted service runtime state.

    Args:
        state_repository: Runtime state repository.

    Returns:
        APIRouter: Router exposing `/services` endpoints.

    Raises:
        ValueError: Raised when state_repository is None.
    """

    if state_repository is None:
        raise ValueError("state_repository must not be None")

    router = APIRouter(prefix="/services", tags=["services"])

    @router.get("")
    def api_services_list() -> JSONResponse:
        """Return every service snapshot in start order."""

        items = [_api_serialize_runtime_record(record) for record in state_repository.db_runtime_state_list()]
        return JSONResponse(content={"items": items, "total": len(items)}, status_code=status.HTTP_200_OK)

    @router.get("/{service_name}")
    def api_services_detail(service_name: str) -> JSONResponse:
        """Return one service snapshot or 404."""

        record = state_repository.db_runtime_state_get(service_name)
        if record is None:
            return JSONResponse(
                content={"status": "error", "message": f"unknown service {service_name}"},
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return JSONResponse(content=_api_serialize_runtime_record(record), status_code=status.HTTP_200_OK)

    return router


def _api_serialize_runtime_record(record: ServiceRuntimeRecord) -> dict[str, object]:
    return {
        "service_name": record.service_name,
        "state": record.state.value,
        "pid": record.pid,
        "start_sequence": record.start_sequence,
        "restart_count": record.restart_count,
        "stop_requested": record.stop_requested,
        "detail": record.detail,
        "updated_at_utc": record.updated_at_utc.isoformat(),
    }
