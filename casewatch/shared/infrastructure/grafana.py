"""
Grafana OTLP Metrics Exporter
==============================

Pushes SLA sweep metrics to Grafana Cloud via OTLP.

Metrics exported (one data point per sweep, labelled by sweep kind):
- sla_sweep_cases_scanned: Non-terminal cases evaluated
- sla_sweep_escalations: Escalations fired
- sla_sweep_failures: Write plus notification failures
- sla_sweep_duration_ms: Sweep wall time in milliseconds
"""

import base64
import time
from typing import Any, Dict, List, Optional

import httpx

from casewatch.config import settings
from casewatch.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class GrafanaOTLPExporter:
    """
    Export sweep metrics to Grafana Cloud via OTLP HTTP endpoint.

    Uses OpenTelemetry Protocol (OTLP) JSON format for metrics.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize Grafana OTLP exporter.

        Args:
            host: Grafana OTLP gateway URL
            api_key: Grafana API key
            instance_id: Instance ID for authentication
            http_client: Optional client, mainly for tests
        """
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._enabled = bool(self._host and self._api_key and self._instance_id)
        self._http_client = http_client

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            # Don't double-append the path if host already includes it
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info("Grafana OTLP exporter initialized", extra={"host": self._host})
        else:
            logger.info("Grafana OTLP exporter not configured - metrics will not be exported")

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    def _build_payload(self, report: Any) -> Dict[str, Any]:
        timestamp_ns = int(time.time() * 1_000_000_000)
        attributes = [
            {"key": "sweep", "value": {"stringValue": report.kind}},
            {"key": "aborted", "value": {"stringValue": str(report.aborted).lower()}},
            {"key": "service", "value": {"stringValue": settings.app_name}},
        ]

        def gauge(name: str, unit: str, description: str, value: int) -> Dict[str, Any]:
            return {
                "name": name,
                "unit": unit,
                "description": description,
                "gauge": {
                    "dataPoints": [
                        {"asInt": value, "timeUnixNano": timestamp_ns, "attributes": attributes}
                    ]
                }
            }

        metrics: List[Dict[str, Any]] = [
            gauge("sla_sweep_cases_scanned", "1", "Non-terminal cases evaluated", report.cases_scanned),
            gauge("sla_sweep_escalations", "1", "Escalations fired", report.escalated),
            gauge("sla_sweep_failures", "1", "Write and notification failures", report.failures),
            gauge("sla_sweep_duration_ms", "ms", "Sweep duration in milliseconds", report.duration_ms),
        ]

        return {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": [
                            {"key": "service.name", "value": {"stringValue": settings.app_name}},
                            {"key": "service.version", "value": {"stringValue": settings.app_version}},
                            {"key": "deployment.environment", "value": {"stringValue": settings.environment}},
                        ]
                    },
                    "scopeMetrics": [{"metrics": metrics}]
                }
            ]
        }

    async def export_sweep_metrics(self, report: Any) -> bool:
        """
        Export metrics of one finished sweep.

        Args:
            report: SweepReport of the sweep

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            return False

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    self._url, headers=headers, json=self._build_payload(report)
                )
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(
                        self._url, headers=headers, json=self._build_payload(report)
                    )
        except httpx.HTTPError as e:
            logger.error("Error exporting sweep metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code in (200, 202):
            logger.debug("Sweep metrics exported to Grafana", extra={"sweep": report.kind})
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={"status_code": response.status_code, "response": response.text[:500]}
        )
        return False

