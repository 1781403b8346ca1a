"""Tests for the read-only status API.

These tests validate deterministic response behavior for healthy, degraded
and database-unavailable states plus service and certificate lookups.
"""

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from nodestack.api.application import create_api_application
from nodestack.config import OrchestratorSettings
from nodestack.domain import CertificateRecord, HealthStatus, RuntimeState, ServiceRuntimeRecord

_UPDATED_AT = datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc)


class _HealthyDatabaseService:
    """Test double that simulates a healthy state database."""

    def db_connection_label(self) -> str:
        """Return deterministic target label.

        Returns:
            str: Health target label.

        Raises:
            RuntimeError: Never raised by this test double.
        """

        return "sqlite:///state/nodestack.db"

    def db_check_health(self) -> HealthStatus:
        """Return healthy database result.

        Returns:
            HealthStatus: Healthy DB response.

        Raises:
            ConnectionError: Never raised by this test double.
        """

        return HealthStatus(status="ok", detail="state database connectivity verified")


class _FailingDatabaseService:
    """Test double that simulates a state database failure."""

    def db_connection_label(self) -> str:
        return "sqlite:///state/nodestack.db"

    def db_check_health(self) -> HealthStatus:
        """Raise deterministic connection error.

        Returns:
            HealthStatus: This method does not return.

        Raises:
            ConnectionError: Always raised by this test double.
        """

        raise ConnectionError("state database connectivity check failed")


class _StateRepositoryStub:
    """Runtime state repository stub returning fixed records."""

    def __init__(self, states: dict[str, RuntimeState]):
        """Initialize stub with one record per service.

        Args:
            states: State per service name, in start order.

        Returns:
            None: Initializer does not return values.

        Raises:
            RuntimeError: This stub does not raise runtime errors.
        """

        self._records = [
            ServiceRuntimeRecord(
                service_name=name,
                state=state,
                pid=3000 + index if state != RuntimeState.STOPPED else None,
                start_sequence=index + 1,
                restart_count=0,
                stop_requested=False,
                detail=None,
                updated_at_utc=_UPDATED_AT,
            )
            for index, (name, state) in enumerate(states.items())
        ]

    def db_runtime_state_list(self) -> list[ServiceRuntimeRecord]:
        return list(self._records)

    def db_runtime_state_get(self, service_name: str) -> ServiceRuntimeRecord | None:
        return next((record for record in self._records if record.service_name == service_name), None)


class _CertificateRepositoryStub:
    """Certificate repository stub with one valid domain."""

    def __init__(self):
        self._record = CertificateRecord(
            domain="electrum.example.org",
            validation_status="valid",
            issued_at_utc=_UPDATED_AT,
            expires_at_utc=datetime(2027, 1, 15, tzinfo=timezone.utc),
            certificate_path="/srv/certs/electrum.example.org/current/fullchain.pem",
            failure_count=0,
            last_error=None,
            first_failure_at_utc=None,
            next_attempt_at_utc=None,
            updated_at_utc=_UPDATED_AT,
        )

    def db_certificate_list(self) -> list[CertificateRecord]:
        return [self._record]

    def db_certificate_get(self, domain: str) -> CertificateRecord | None:
        """Return the record for the known domain.

        Args:
            domain: Domain name.

        Returns:
            CertificateRecord | None: Record or None.

        Raises:
            ValueError: Raised when domain is blank.
        """

        normalized_domain = domain.strip().lower()
        if not normalized_domain:
            raise ValueError("domain must not be blank")
        return self._record if normalized_domain == self._record.domain else None


def _build_client(db_health_service, states: dict[str, RuntimeState]) -> TestClient:
    """Create a test client over stubs.

    Returns:
        TestClient: Client for the status application.

    Raises:
        ValueError: Raised by OrchestratorSettings when values are invalid.
    """

    application = create_api_application(
        OrchestratorSettings(environment_name="test"),
        db_health_service,
        _StateRepositoryStub(states),
        _CertificateRepositoryStub(),
    )
    return TestClient(application)


def test_api_health_returns_success_when_every_service_is_healthy() -> None:
    """Return HTTP 200 and healthy payload when all services are healthy.

    Returns:
        None: Assertions validate response behavior.

    Raises:
        AssertionError: Raised when response does not match expected payload.
    """

    client = _build_client(
        _HealthyDatabaseService(),
        {"bitcoin": RuntimeState.HEALTHY, "electrs": RuntimeState.HEALTHY},
    )

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["database"] == "ok"
    assert response.json()["services"] == {"bitcoin": "healthy", "electrs": "healthy"}


def test_api_health_returns_service_unavailable_when_a_service_is_degraded() -> None:
    """Return HTTP 503 when any service is not healthy.

    Returns:
        None: Assertions validate response behavior.

    Raises:
        AssertionError: Raised when response does not match expected payload.
    """

    client = _build_client(
        _HealthyDatabaseService(),
        {"bitcoin": RuntimeState.HEALTHY, "electrs": RuntimeState.DEGRADED},
    )

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["services"]["electrs"] == "degraded"


def test_api_health_returns_service_unavailable_when_database_is_down() -> None:
    """Return HTTP 503 and degraded payload when the state database fails.

    Returns:
        None: Assertions validate response behavior.

    Raises:
        AssertionError: Raised when response does not match expected payload.
    """

    client = _build_client(_FailingDatabaseService(), {"bitcoin": RuntimeState.HEALTHY})

    response = client.get("/health")

    assert response.status_code == 503
    assert response.json()["status"] == "degraded"
    assert response.json()["database"] == "down"


def test_api_services_and_certificates_lookups() -> None:
    """Serve service snapshots and certificate records with 404 for unknowns.

    Returns:
        None: Assertions validate response behavior.

    Raises:
        AssertionError: Raised when lookups do not match expected payloads.
    """

    client = _build_client(
        _HealthyDatabaseService(),
        {"bitcoin": RuntimeState.HEALTHY, "electrs": RuntimeState.STOPPED},
    )

    listing = client.get("/services")
    assert listing.status_code == 200
    assert listing.json()["total"] == 2
    assert [item["service_name"] for item in listing.json()["items"]] == ["bitcoin", "electrs"]

    detail = client.get("/services/bitcoin")
    assert detail.status_code == 200
    assert detail.json()["pid"] == 3000
    assert detail.json()["updated_at_utc"] == "2026-10-17T08:30:00+00:00"
    assert client.get("/services/lnd").status_code == 404

    certificate = client.get("/certificates/Electrum.Example.org")
    assert certificate.status_code == 200
    assert certificate.json()["validation_status"] == "valid"
    assert certificate.json()["expires_at_utc"] == "2027-01-15T00:00:00+00:00"
    assert client.get("/certificates/unknown.example.org").status_code == 404
    assert client.get("/certificates").json()["total"] == 1
