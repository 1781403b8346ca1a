"""Typed orchestrator settings with dotenv support and startup validation."""

import ipaddress
import signal

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_PLACEHOLDER_VALUES = (
    "changeme",
    "change_me",
    "change-me",
    "password",
    "secret",
    "example",
    "your_password_here",
    "your_rpc_password",
    "bitcoinrpc",
)


class SettingsLoadError(RuntimeError):
    """Raised when orchestrator settings cannot be loaded or validated."""


class OrchestratorSettings(BaseSettings):
    """Orchestrator settings for manifests, supervision and certificate management.

    Environment variable names map directly to field names in uppercase.
    Example: `stack_manifest_path` reads from `STACK_MANIFEST_PATH`.

    Attributes:
        environment_name: Runtime environment label.
        log_level: Root logging level name.
        stack_manifest_path: YAML service manifest path.
        stack_credentials_file: Dotenv-style credential file path.
        stack_data_root: Root directory for service data directories.
        stack_log_directory: Directory holding per-service log files.
        stack_state_database_url: SQLAlchemy URL for durable orchestrator state.
        overlay_network_cidr: Private overlay range used for internal bindings.
        public_bind_address: Host-routable address used by reverse-proxy listeners.
        privileged_port_names: Port names always treated as privileged RPC surfaces.
        credential_enforce_non_default: Block startup on placeholder credential values.
        credential_placeholder_values: Values treated as unmodified example credentials.
        stage_timeout_seconds: Collective timeout for one startup stage.
        restart_backoff_floor_seconds: Minimum delay before any restart.
        restart_backoff_max_seconds: Maximum restart delay.
        crash_rate_threshold: Crashes tolerated within the crash window.
        crash_rate_window_seconds: Sliding window for crash-rate escalation.
        stop_grace_seconds: Delay between terminate and kill on stop.
        health_monitor_interval_seconds: Delay between runtime health sweeps.
        network_audit_interval_seconds: Delay between listener audits.
        network_violation_action: `degrade` or `stop` on listener violations.
        log_max_bytes: Service log size that triggers rotation.
        log_backup_count: Rotated service logs kept per service.
        tls_enabled: Whether the certificate manager runs inside `up`.
        tls_certificate_directory: Directory where certificates are published.
        tls_renewal_threshold_days: Renew when expiry is closer than this.
        tls_check_interval_seconds: Delay between certificate sweeps.
        tls_backoff_base_seconds: Base renewal retry delay.
        tls_backoff_max_seconds: Maximum renewal retry delay.
        tls_issuer_command: ACME client command template.
        tls_issuer_certificate_path: Template of the issued full-chain path.
        tls_issuer_key_path: Template of the issued private key path.
        tls_issuer_timeout_seconds: Timeout for one issuer run.
        tls_failure_policy: `keep-serving` or `take-offline`.
        tls_failure_escalation_hours: Failure duration before a domain is failed.
        tls_reload_signal: Signal sent to the reverse proxy after publication.
        status_api_enabled: Whether `up` serves the status API.
        status_api_host: Status API bind host.
        status_api_port: Status API port.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    environment_name: str = Field(default="development")
    log_level: str = Field(default="INFO")
    stack_manifest_path: str = Field(default="stack.yaml", min_length=1)
    stack_credentials_file: str = Field(default="credentials.env", min_length=1)
    stack_data_root: str = Field(default="data", min_length=1)
    stack_log_directory: str = Field(default="data/logs", min_length=1)
    stack_state_database_url: str = Field(default="sqlite:///data/state/nodestack.db", min_length=1)
    overlay_network_cidr: str = Field(default="127.77.0.0/24")
    public_bind_address: str = Field(default="0.0.0.0")
    privileged_port_names: list[str] = Field(default_factory=lambda: ["rpc", "admin"])
    credential_enforce_non_default: bool = Field(default=False)
    credential_placeholder_values: list[str] = Field(default_factory=lambda: list(DEFAULT_PLACEHOLDER_VALUES))
    stage_timeout_seconds: float = Field(default=900.0, gt=0)
    restart_backoff_floor_seconds: float = Field(default=2.0, ge=0)
    restart_backoff_max_seconds: float = Field(default=120.0, gt=0)
    crash_rate_threshold: int = Field(default=5, ge=1)
    crash_rate_window_seconds: float = Field(default=600.0, gt=0)
    stop_grace_seconds: float = Field(default=30.0, gt=0)
    health_monitor_interval_seconds: float = Field(default=30.0, gt=0)
    network_audit_interval_seconds: float = Field(default=60.0, gt=0)
    network_violation_action: str = Field(default="degrade")
    log_max_bytes: int = Field(default=100 * 1024 * 1024, ge=1024)
    log_backup_count: int = Field(default=3, ge=0)
    tls_enabled: bool = Field(default=True)
    tls_certificate_directory: str = Field(default="data/certs", min_length=1)
    tls_renewal_threshold_days: float = Field(default=30.0, gt=0)
    tls_check_interval_seconds: float = Field(default=43200.0, gt=0)
    tls_backoff_base_seconds: float = Field(default=60.0, ge=0)
    tls_backoff_max_seconds: float = Field(default=21600.0, gt=0)
    tls_issuer_command: str = Field(
        default=(
            "certbot certonly --non-interactive --agree-tos --standalone "
            "--preferred-challenges http --cert-name {domain} -d {domain} "
            "--config-dir {work_dir} --work-dir {work_dir}/work --logs-dir {work_dir}/logs"
        ),
        min_length=1,
    )
    tls_issuer_certificate_path: str = Field(default="{work_dir}/live/{domain}/fullchain.pem", min_length=1)
    tls_issuer_key_path: str = Field(default="{work_dir}/live/{domain}/privkey.pem", min_length=1)
    tls_issuer_timeout_seconds: float = Field(default=300.0, gt=0)
    tls_failure_policy: str = Field(default="keep-serving")
    tls_failure_escalation_hours: float = Field(default=72.0, gt=0)
    tls_reload_signal: str = Field(default="SIGHUP")
    status_api_enabled: bool = Field(default=False)
    status_api_host: str = Field(default="127.0.0.1")
    status_api_port: int = Field(default=8420, ge=1, le=65535)

    @field_validator("overlay_network_cidr")
    @classmethod
    def _validate_overlay_network(cls, value: str) -> str:
        network = ipaddress.ip_network(value.strip(), strict=False)
        if network.num_addresses < 4:
            raise ValueError("overlay_network_cidr must hold at least 4 addresses")
        if not (network.is_private or network.is_loopback):
            raise ValueError("overlay_network_cidr must be a private or loopback range")
        return str(network)

    @field_validator("public_bind_address")
    @classmethod
    def _validate_public_bind_address(cls, value: str) -> str:
        return str(ipaddress.ip_address(value.strip()))

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        normalized_value = value.strip().upper()
        if normalized_value not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("log_level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return normalized_value

    @field_validator("network_violation_action")
    @classmethod
    def _validate_violation_action(cls, value: str) -> str:
        normalized_value = value.strip().lower()
        if normalized_value not in {"degrade", "stop"}:
            raise ValueError("network_violation_action must be one of: degrade, stop")
        return normalized_value

    @field_validator("tls_failure_policy")
    @classmethod
    def _validate_tls_failure_policy(cls, value: str) -> str:
        normalized_value = value.strip().lower()
        if normalized_value not in {"keep-serving", "take-offline"}:
            raise ValueError("tls_failure_policy must be one of: keep-serving, take-offline")
        return normalized_value

    @field_validator("tls_reload_signal")
    @classmethod
    def _validate_reload_signal(cls, value: str) -> str:
        normalized_value = value.strip().upper()
        if not hasattr(signal, normalized_value):
            raise ValueError(f"tls_reload_signal {normalized_value} is not a known signal")
        return normalized_value

    @field_validator("restart_backoff_max_seconds")
    @classmethod
    def _validate_restart_backoff_bounds(cls, value: float, info) -> float:
        floor_seconds = float(info.data.get("restart_backoff_floor_seconds", 2.0))
        if value < floor_seconds:
            raise ValueError("restart_backoff_max_seconds must be greater than or equal to restart_backoff_floor_seconds")
        return value

    @field_validator("tls_backoff_max_seconds")
    @classmethod
    def _validate_tls_backoff_bounds(cls, value: float, info) -> float:
        base_seconds = float(info.data.get("tls_backoff_base_seconds", 60.0))
        if value < base_seconds:
            raise ValueError("tls_backoff_max_seconds must be greater than or equal to tls_backoff_base_seconds")
        return value


def config_load_settings(**overrides: object) -> OrchestratorSettings:
    """Load and validate orchestrator settings from environment and dotenv.

    Args:
        overrides: Explicit field values taking precedence over the environment.

    Returns:
        OrchestratorSettings: Validated settings object.

    Raises:
        SettingsLoadError: Raised when settings are missing or invalid.
    """

    try:
        return OrchestratorSettings(**overrides)
    except ValidationError as error:
        raise SettingsLoadError(
            f"Startup configuration validation failed. Update .env or environment variables. Details: {error}"
        ) from error
