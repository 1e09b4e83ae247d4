"""
Slack alerting and webhook metrics.
Sends formatted alerts to Slack via Incoming Webhooks and records webhook
validation/sync metrics. Both channels are fire-and-forget: failures are
logged and never raised to the caller.
"""

import asyncio
import httpx
import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Callable, Literal

from square_reconciler.config import settings
from square_reconciler.services.supabase_service import SupabaseService

logger = structlog.get_logger()

Severity = Literal["low", "medium", "high", "critical"]

SEVERITY_EMOJI = {
    "low": "ℹ️",
    "medium": "⚠️",
    "high": "🚨",
    "critical": "🔥",
}


class AlertService:
    """Slack alert side channel plus metric recording."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        enabled: Optional[bool] = None,
        metrics_store=None,
        metrics_store_factory: Optional[Callable[[], Any]] = None,
    ):
        """
        Args:
            webhook_url: Slack Incoming Webhook URL (defaults to settings)
            enabled: Overrides SLACK_ALERTS_ENABLED
            metrics_store: Object with record_webhook_metric(dict)
            metrics_store_factory: Builds the metrics store on first use when
                metrics_store is not given; metrics are only logged when neither is set
        """
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        if enabled is None:
            enabled = str(settings.slack_alerts_enabled).lower() == "true"
        self.enabled = enabled
        self.metrics_store = metrics_store
        self.metrics_store_factory = metrics_store_factory

        # Rate limiting: track last alert time per alert key
        self._rate_limit_cache: Dict[str, datetime] = {}
        self._rate_limit_window = timedelta(minutes=5)

    def _should_send_alert(self, alert_key: str, severity: Severity) -> bool:
        """
        Check if alert should be sent based on rate limiting.
        Critical alerts are never rate limited.
        """
        if severity == "critical":
            return True

        now = datetime.now(timezone.utc)
        last_alert = self._rate_limit_cache.get(alert_key)
        if last_alert is None or now - last_alert >= self._rate_limit_window:
            self._rate_limit_cache[alert_key] = now
            return True

        logger.debug(
            "Slack alert rate limited",
            alert_key=alert_key,
            last_alert=last_alert.isoformat(),
            window_minutes=5,
        )
        return False

    def _format_alert(
        self,
        severity: Severity,
        title: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        timestamp = datetime.now(timezone.utc).isoformat()
        lines = [
            f"{SEVERITY_EMOJI.get(severity, '🚨')} *{title}*",
            f"• Severity: `{severity}`",
            f"• Message: {message}",
            f"• Time: `{timestamp}`",
        ]

        if details:
            lines.append("")
            for key, value in details.items():
                if isinstance(value, dict):
                    value_str = ", ".join(f"{k}: {v}" for k, v in value.items())
                else:
                    value_str = str(value)
                lines.append(f"• {key}: `{value_str[:500]}`")

        return {"text": "\n".join(lines), "mrkdwn": True}

    async def send_webhook_alert(
        self,
        severity: Severity,
        title: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send an alert to Slack.

        Args:
            severity: low, medium, high or critical
            title: Short alert title (also the rate-limit key)
            message: Human readable description
            details: Extra key/value context

        Returns:
            True if alert sent successfully, False otherwise
        """
        logger.warning("Webhook alert raised", severity=severity, title=title, alert_message=message)

        if not self.enabled:
            logger.debug("Slack alerts disabled, skipping notification")
            return False

        if not self.webhook_url:
            logger.warning("Slack webhook URL not configured, skipping notification")
            return False

        if not self._should_send_alert(title, severity):
            return False

        payload = self._format_alert(severity, title, message, details)

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self.webhook_url, json=payload)
                response.raise_for_status()

            logger.info("Slack alert sent successfully", severity=severity, title=title)
            return True

        except httpx.TimeoutException:
            logger.error("Timeout sending Slack alert", title=title)
            return False
        except httpx.HTTPStatusError as e:
            logger.error(
                "Failed to send Slack alert",
                title=title,
                status_code=e.response.status_code,
                response_text=e.response.text,
            )
            return False
        except Exception as e:
            logger.error(
                "Error sending Slack alert",
                title=title,
                error=str(e),
                error_type_name=type(e).__name__,
            )
            return False

    async def track_metric(
        self,
        type: str,
        environment: str,
        valid: bool,
        duration: float,
        **extra: Any,
    ) -> None:
        """Record one metric sample; never raises."""
        metric = {
            "type": type,
            "environment": environment,
            "valid": valid,
            "duration_ms": round(duration, 2),
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            **extra,
        }
        logger.info("Webhook metric", **metric)

        if self.metrics_store is None and self.metrics_store_factory is None:
            return
        try:
            if self.metrics_store is None:
                self.metrics_store = self.metrics_store_factory()
            await asyncio.to_thread(self.metrics_store.record_webhook_metric, metric)
        except Exception as e:
            logger.warning("Failed to record webhook metric", error=str(e), metric_type=type)


# Global instance
_alert_service: Optional[AlertService] = None


def get_alert_service() -> AlertService:
    """Get or create global alert service instance."""
    global _alert_service
    if _alert_service is None:
        _alert_service = AlertService(metrics_store_factory=SupabaseService)
    return _alert_service
