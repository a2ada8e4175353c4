"""
Forecast Digest Notifier.

Builds a digest of the tenant's latest breach-risk forecast and POSTs it to
the tenant's notification webhook. Delivery is retried with backoff behind a
circuit breaker; an exhausted delivery is reported, never raised.
"""

from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slocast.config import settings
from slocast.db import queries
from slocast.db.models import Alert, ForecastPrediction
from slocast.errors import ValidationFailed
from slocast.services.resilience import CircuitBreaker, CircuitOpenError, retry_with_backoff, webhook_breaker

logger = structlog.get_logger(__name__)

EVENT_TYPE: str = "compliance_forecast"
ALERT_LOOKBACK_DAYS: int = 7
MAX_ALERTS: int = 5


class DeliveryError(Exception):
    """Webhook answered with a non-2xx status."""


def digest_subject(forecast: ForecastPrediction) -> str:
    return (
        f"Compliance Forecast: {forecast.risk_level.upper()} Risk – "
        f"{forecast.breach_probability_7d:g}% Breach Probability"
    )


def build_digest(forecast: ForecastPrediction, alerts: list[Alert], now: datetime) -> dict:
    data = {
        "risk_level": forecast.risk_level,
        "breach_probability": forecast.breach_probability_7d,
        "predicted_sr": forecast.predicted_sr_7d,
        "confidence": forecast.confidence_score,
        "advisories": list(forecast.advisories or []),
        "current_target": forecast.current_slo_target,
        "suggested_target": forecast.suggested_slo_target,
        "recent_alerts": [
            {"severity": a.severity, "title": a.title, "triggered_at": a.triggered_at.isoformat()}
            for a in alerts
        ],
    }
    return {
        "event": EVENT_TYPE,
        "tenant_id": forecast.tenant_id,
        "subject": digest_subject(forecast),
        "data": data,
        "timestamp": now.isoformat(),
    }


class ForecastNotifier:
    """Sends the forecast digest to a tenant webhook."""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: float = 0.5,
    ):
        self.transport = transport
        self.breaker = breaker or webhook_breaker
        self.timeout = timeout if timeout is not None else settings.notify_timeout_seconds
        self.max_retries = max_retries if max_retries is not None else settings.notify_retry_attempts
        self.base_delay = base_delay

    async def _post(self, url: str, payload: dict) -> int:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                url,
                json=payload,
                headers={"Content-Type": "application/json", "X-Event-Type": EVENT_TYPE},
            )
        if response.status_code >= 400:
            raise DeliveryError(f"HTTP {response.status_code}")
        return response.status_code

    async def deliver(self, url: str, payload: dict) -> dict:
        """POST with retry behind the breaker. Returns {"success", "detail"}."""
        try:
            status = await retry_with_backoff(
                lambda: self.breaker.call(self._post, url, payload),
                max_retries=self.max_retries,
                base_delay=self.base_delay,
                retry_on=(httpx.HTTPError, DeliveryError),
                operation_name="forecast_digest_webhook",
            )
            return {"success": True, "detail": f"HTTP {status}"}
        except (httpx.HTTPError, DeliveryError, CircuitOpenError) as e:
            return {"success": False, "detail": str(e)}

    async def send_digest(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str],
        now: Optional[datetime] = None,
    ) -> dict:
        if not tenant_id:
            raise ValidationFailed("tenant_id required")
        now = now or datetime.utcnow()

        async with session_factory() as session:
            forecast = await queries.get_latest_forecast(session, tenant_id)
            if forecast is None:
                return {"ok": True, "note": "no forecast available"}
            tenant = await queries.get_tenant_settings(session, tenant_id)
            url = tenant.notification_webhook_url if tenant else None
            if not url:
                return {"ok": True, "note": "no webhook configured"}
            alerts = await queries.get_recent_alerts(
                session, tenant_id, now - timedelta(days=ALERT_LOOKBACK_DAYS), MAX_ALERTS
            )
            payload = build_digest(forecast, list(alerts), now)

        if urlparse(url).scheme != "https":
            logger.warning("digest_webhook_rejected", tenant_id=tenant_id, reason="non_https")
            return {"ok": True, "webhook_sent": False, "note": "webhook rejected: non-HTTPS"}

        result = await self.deliver(url, payload)
        log = logger.info if result["success"] else logger.warning
        log(
            "forecast_digest_sent" if result["success"] else "forecast_digest_failed",
            tenant_id=tenant_id,
            risk_level=payload["data"]["risk_level"],
            detail=result["detail"],
        )
        return {
            "ok": True,
            "webhook_sent": result["success"],
            "detail": result["detail"],
            "subject": payload["subject"],
        }

    async def send_all(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        tenant_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> dict:
        """Scheduled digest run over every tenant with a webhook configured."""
        async with session_factory() as session:
            tenants = [
                t.tenant_id
                for t in await queries.list_tenants(session, tenant_id)
                if t.notification_webhook_url
            ]

        counts = {"tenants_scanned": len(tenants), "sent": 0, "not_sent": 0, "failed": 0}
        for tid in tenants:
            try:
                result = await self.send_digest(session_factory, tid, now)
            except Exception as e:
                counts["failed"] += 1
                logger.error("forecast_digest_tenant_failed", tenant_id=tid, error=str(e), exc_info=True)
                continue
            counts["sent" if result.get("webhook_sent") else "not_sent"] += 1
        logger.info("send_forecast_digest_completed", **counts)
        return counts
