"""Health endpoint router composition for stack and database checks."""

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from nodestack.db import DatabaseHealthPort, RuntimeStateRepositoryPort
from nodestack.domain import RuntimeState


def api_create_health_router(
    db_health_service: DatabaseHealthPort,
    state_repository: RuntimeStateRepositoryPort,
) -> APIRouter:
    """Create health-check router with stack and database status.

    Args:
        db_health_service: DB-layer health service interface.
        state_repository: Runtime state repository.

    Returns:
        APIRouter: Router exposing `/health` endpoint.

    Raises:
        ValueError: Raised when a dependency is invalid.
    """

    if db_health_service is None:
        raise ValueError("db_health_service must not be None")
    if state_repository is None:
        raise ValueError("state_repository must not be None")

    router = APIRouter(tags=["health"])

    @router.get("/health")
    def api_health_status() -> JSONResponse:
        """Return stack and database health state.

        The stack is `ok` when every service is healthy, `degraded` otherwise.

        Returns:
            JSONResponse: Deterministic health payload for operational checks.

        Raises:
            RuntimeError: Raised when runtime state cannot be read.
        """

        try:
            db_health = db_health_service.db_check_health()
        except ConnectionError as error:
            payload = {
                "status": "degraded",
                "database": "down",
                "detail": str(error),
                "target": db_health_service.db_connection_label(),
                "services": {},
            }
            return JSONResponse(content=payload, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

        records = state_repository.db_runtime_state_list()
        services = {record.service_name: record.state.value for record in records}
        all_healthy = bool(records) and all(record.state == RuntimeState.HEALTHY for record in records)
        payload = {
            "status": "ok" if all_healthy else "degraded",
            "database": db_health.status,
            "detail": db_health.detail,
            "target": db_health_service.db_connection_label(),
            "services": services,
        }
        return JSONResponse(
            content=payload,
            status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return router
