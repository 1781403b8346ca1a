"""TLS certificate lifecycle manager for exposed domains.

Renewal is attempted when a domain has no certificate or its certificate is
within the renewal threshold of expiry. Failures back off exponentially; the
previously published certificate stays in service until a replacement has
been published and committed.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable

from nodestack.db import CertificateRepositoryPort
from nodestack.domain import BackoffStrategy, CertificateRecord, CertificateRenewalError, domain_utc_now

from .interfaces import CertificateAuthorityPort, CertificateStatusResult
from .publisher import CertificatePublisher

logger = logging.getLogger(__name__)

DomainCallback = Callable[[str], Awaitable[None]]


class TlsCertificateManager:
    """Ensure valid certificates for exposed domains."""

    def __init__(
        self,
        repository: CertificateRepositoryPort,
        authority: CertificateAuthorityPort,
        publisher: CertificatePublisher,
        renewal_threshold_days: float,
        failure_escalation_hours: float,
        backoff: BackoffStrategy,
        failure_policy: str = "keep-serving",
        on_certificate_updated: DomainCallback | None = None,
        on_domain_failed: DomainCallback | None = None,
        clock: Callable[[], datetime] = domain_utc_now,
    ):
        """Initialize certificate manager dependencies.

        Args:
            repository: Durable certificate record repository.
            authority: Certificate authority adapter.
            publisher: Atomic certificate publisher.
            renewal_threshold_days: Renew when expiry is closer than this.
            failure_escalation_hours: Continuous failure time before `failed`.
            backoff: Retry backoff between failed attempts.
            failure_policy: `keep-serving` or `take-offline` once a domain is failed.
            on_certificate_updated: Called after a new certificate is committed.
            on_domain_failed: Called once when a domain escalates to `failed`
                under the `take-offline` policy.
            clock: UTC clock.

        Returns:
            None: Initializer does not return a value.

        Raises:
            ValueError: Raised when dependencies or thresholds are invalid.
        """

        if repository is None:
            raise ValueError("repository must not be None")
        if authority is None:
            raise ValueError("authority must not be None")
        if publisher is None:
            raise ValueError("publisher must not be None")
        if renewal_threshold_days <= 0:
            raise ValueError("renewal_threshold_days must be positive")
        if failure_escalation_hours <= 0:
            raise ValueError("failure_escalation_hours must be positive")
        if failure_policy not in {"keep-serving", "take-offline"}:
            raise ValueError("failure_policy must be one of: keep-serving, take-offline")

        self._repository = repository
        self._authority = authority
        self._publisher = publisher
        self._renewal_threshold = timedelta(days=renewal_threshold_days)
        self._failure_escalation = timedelta(hours=failure_escalation_hours)
        self._backoff = backoff
        self._failure_policy = failure_policy
        self._on_certificate_updated = on_certificate_updated
        self._on_domain_failed = on_domain_failed
        self._clock = clock

    def manager_needs_renewal(self, record: CertificateRecord | None, now_utc: datetime) -> bool:
        """Return whether a domain lacks a certificate or is due for renewal."""

        if record is None or record.certificate_path is None or record.expires_at_utc is None:
            return True
        return record.expires_at_utc - now_utc <= self._renewal_threshold

    async def manager_ensure_certificate(self, domain: str) -> CertificateStatusResult:
        """Ensure a valid certificate for one domain, renewing when due.

        Args:
            domain: Domain name.

        Returns:
            CertificateStatusResult: `valid`, `pending` or `failed`.

        Raises:
            ValueError: Raised when domain is blank.
            RuntimeError: Raised when certificate record persistence fails.
        """

        normalized_domain = domain.strip().lower()
        if not normalized_domain:
            raise ValueError("domain must not be blank")

        now_utc = self._clock()
        record = self._repository.db_certificate_get(normalized_domain)
        if record is not None and not self.manager_needs_renewal(record, now_utc) and record.failure_count == 0:
            return _manager_status_from_record(record)
        if record is not None and record.next_attempt_at_utc is not None and now_utc < record.next_attempt_at_utc:
            return _manager_status_from_record(record)

        try:
            issued = await self._authority.authority_issue(normalized_domain)
            certificate_path, details = self._publisher.publisher_publish(issued)
        except CertificateRenewalError as error:
            return await self._manager_record_failure(normalized_domain, record, now_utc, error.reason)

        committed = self._repository.db_certificate_upsert(
            CertificateRecord(
                domain=normalized_domain,
                validation_status="valid",
                issued_at_utc=details.not_before_utc,
                expires_at_utc=details.not_after_utc,
                certificate_path=str(certificate_path),
                failure_count=0,
                last_error=None,
                first_failure_at_utc=None,
                next_attempt_at_utc=None,
                updated_at_utc=now_utc,
            )
        )
        logger.info("Certificate for %s renewed, expires %s", normalized_domain, details.not_after_utc.isoformat())
        if self._on_certificate_updated is not None:
            await self._on_certificate_updated(normalized_domain)
        return _manager_status_from_record(committed)

    async def manager_run_forever(
        self,
        domains: Iterable[str],
        stop_event: asyncio.Event,
        check_interval_seconds: float,
    ) -> None:
        """Keep certificates of every domain fresh until stopped.

        The loop wakes at the check interval or at the earliest scheduled
        retry, whichever comes first.

        Args:
            domains: Exposed domains.
            stop_event: Event ending the loop.
            check_interval_seconds: Maximum sleep between rounds.

        Returns:
            None: Runs until the stop event is set.

        Raises:
            RuntimeError: Raised when certificate record persistence fails.
        """

        tracked_domains = sorted({domain.strip().lower() for domain in domains if domain.strip()})
        while not stop_event.is_set():
            next_wake_seconds = check_interval_seconds
            for domain in tracked_domains:
                result = await self.manager_ensure_certificate(domain)
                if result.status != "valid":
                    logger.warning("Certificate for %s is %s: %s", domain, result.status, result.detail)
                record = self._repository.db_certificate_get(domain)
                if record is not None and record.next_attempt_at_utc is not None:
                    retry_in = (record.next_attempt_at_utc - self._clock()).total_seconds()
                    next_wake_seconds = min(next_wake_seconds, max(retry_in, 1.0))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=next_wake_seconds)
            except asyncio.TimeoutError:
                continue

    async def _manager_record_failure(
        self,
        domain: str,
        record: CertificateRecord | None,
        now_utc: datetime,
        reason: str,
    ) -> CertificateStatusResult:
        failure_count = (record.failure_count if record is not None else 0) + 1
        first_failure_at_utc = record.first_failure_at_utc if record is not None else None
        if first_failure_at_utc is None:
            first_failure_at_utc = now_utc
        wait_seconds = self._backoff.strategy_calculate_wait_seconds(failure_count - 1)
        escalated = now_utc - first_failure_at_utc >= self._failure_escalation
        usable = record is not None and record.record_has_usable_certificate(now_utc)
        if escalated:
            status = "failed"
        elif usable:
            status = "valid"
        else:
            status = "pending"

        previously_failed = record is not None and record.validation_status == "failed"
        committed = self._repository.db_certificate_upsert(
            CertificateRecord(
                domain=domain,
                validation_status=status,
                issued_at_utc=record.issued_at_utc if record is not None else None,
                expires_at_utc=record.expires_at_utc if record is not None else None,
                certificate_path=record.certificate_path if record is not None else None,
                failure_count=failure_count,
                last_error=reason,
                first_failure_at_utc=first_failure_at_utc,
                next_attempt_at_utc=now_utc + timedelta(seconds=wait_seconds),
                updated_at_utc=now_utc,
            )
        )
        logger.warning(
            "Certificate renewal for %s failed (attempt %d, retry in %.0fs): %s",
            domain,
            failure_count,
            wait_seconds,
            reason,
        )
        if escalated and not previously_failed:
            logger.error("Certificate for %s failed continuously for %s", domain, now_utc - first_failure_at_utc)
            if self._failure_policy == "take-offline" and self._on_domain_failed is not None:
                await self._on_domain_failed(domain)
        return _manager_status_from_record(committed)


def _manager_status_from_record(record: CertificateRecord) -> CertificateStatusResult:
    return CertificateStatusResult(
        domain=record.domain,
        status=record.validation_status,
        expires_at_utc=record.expires_at_utc,
        detail=record.last_error,
    )
