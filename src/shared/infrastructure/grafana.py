"""
Grafana OTLP Metrics Exporter
==============================

Pushes provider usage and offline job metrics to Grafana Cloud via OTLP.

Metrics exported:
- llm_latency_ms / llm_tokens_total: per embedding or summary call
- job_<counter>: processed/skipped/errors style counters of batch jobs
- job_duration_ms: wall time of a batch job run
"""

import base64
import time
from typing import Optional, Dict, List, Any

import httpx

from src.config import settings
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _attributes(values: Dict[str, Any]) -> List[dict]:
    return [
        {"key": key, "value": {"stringValue": str(value)}}
        for key, value in values.items()
    ]


def _gauge(name: str, unit: str, value: int, timestamp_ns: int, attributes: List[dict]) -> dict:
    return {
        "name": name,
        "unit": unit,
        "gauge": {
            "dataPoints": [
                {
                    "asInt": int(value),
                    "timeUnixNano": timestamp_ns,
                    "attributes": attributes,
                }
            ]
        },
    }


class GrafanaOTLPExporter:
    """
    Export metrics to Grafana Cloud via OTLP HTTP endpoint.

    Disabled (every export returns False) unless host, API key and
    instance id are all configured.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        api_key: Optional[str] = None,
        instance_id: Optional[str] = None
    ):
        self._host = host or settings.grafana_host
        self._api_key = api_key or settings.grafana_api_key
        self._instance_id = instance_id or settings.grafana_instance_id
        self._enabled = bool(self._host and self._api_key and self._instance_id)

        if self._enabled:
            auth_pair = f"{self._instance_id}:{self._api_key}"
            self._auth_encoded = base64.b64encode(auth_pair.encode()).decode()
            if "/otlp/v1/metrics" not in self._host:
                self._url = f"{self._host.rstrip('/')}/otlp/v1/metrics"
            else:
                self._url = self._host
            logger.info(
                "Grafana OTLP exporter initialized",
                extra={"host": self._host, "instance_id": self._instance_id}
            )

    def is_enabled(self) -> bool:
        """Check if exporter is properly configured."""
        return self._enabled

    async def export_llm_metrics(
        self,
        model: str,
        operation: str,
        latency_ms: int,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        attributes: Optional[Dict[str, str]] = None
    ) -> bool:
        """
        Export one provider call (embedding or summary).

        Args:
            model: Model name (e.g., "text-embedding-3-small")
            operation: "embedding" or "issue_summary"
            latency_ms: Request latency in milliseconds
            prompt_tokens: Prompt tokens used, when the provider reports them
            completion_tokens: Completion tokens generated
            attributes: Additional attributes to attach to metrics

        Returns:
            True if export succeeded, False otherwise
        """
        if not self._enabled:
            return False

        timestamp_ns = time.time_ns()
        attrs = _attributes({
            "model": model,
            "operation": operation,
            "service": settings.app_name,
            **(attributes or {}),
        })
        metrics = [
            _gauge("llm_latency_ms", "ms", latency_ms, timestamp_ns, attrs),
            _gauge("llm_tokens_total", "1", prompt_tokens + completion_tokens, timestamp_ns, attrs),
        ]
        return await self._push(metrics)

    async def export_job_metrics(
        self,
        job: str,
        counters: Dict[str, int],
        duration_ms: int
    ) -> bool:
        """
        Export the outcome counters of a batch job run.

        Args:
            job: Job name ("embedding_backfill", "issue_analysis")
            counters: e.g. {"processed": 10, "skipped": 2, "errors": 0}
            duration_ms: Wall time of the run
        """
        if not self._enabled:
            return False

        timestamp_ns = time.time_ns()
        attrs = _attributes({"job": job, "service": settings.app_name})
        metrics = [
            _gauge(f"job_{name}", "1", value, timestamp_ns, attrs)
            for name, value in counters.items()
        ]
        metrics.append(_gauge("job_duration_ms", "ms", duration_ms, timestamp_ns, attrs))
        return await self._push(metrics)

    async def _push(self, metrics: List[dict]) -> bool:
        payload = {
            "resourceMetrics": [
                {
                    "resource": {
                        "attributes": _attributes({
                            "service.name": settings.app_name,
                            "service.version": settings.app_version,
                            "deployment.environment": settings.environment,
                        })
                    },
                    "scopeMetrics": [{"metrics": metrics}],
                }
            ]
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Basic {self._auth_encoded}",
            "X-Grafana-Org-Id": str(self._instance_id)
        }

        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(self._url, headers=headers, json=payload)
        except httpx.HTTPError as e:
            logger.error("Error exporting metrics to Grafana", extra={"error": str(e)})
            return False

        if response.status_code in (200, 202):
            return True

        logger.warning(
            "Failed to export metrics to Grafana",
            extra={
                "status_code": response.status_code,
                "response": response.text[:500],
                "url": self._url
            }
        )
        return False


# Global exporter instance
_grafana_exporter: Optional[GrafanaOTLPExporter] = None


def get_grafana_exporter() -> Optional[GrafanaOTLPExporter]:
    """Get or create global Grafana exporter instance."""
    global _grafana_exporter
    if _grafana_exporter is None:
        _grafana_exporter = GrafanaOTLPExporter()
    return _grafana_exporter


def init_grafana_exporter(
    host: str,
    api_key: str,
    instance_id: str
) -> GrafanaOTLPExporter:
    """Initialize Grafana exporter with credentials."""
    global _grafana_exporter
    _grafana_exporter = GrafanaOTLPExporter(
        host=host,
        api_key=api_key,
        instance_id=instance_id
    )
    return _grafana_exporter
