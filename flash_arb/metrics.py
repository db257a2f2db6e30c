"""
Prometheus metrics for the scan loop and settlement submissions.
"""

from typing import Any, Dict, Optional

from aiohttp import web
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

from .utils import get_logger

logger = get_logger(__name__)


class ScanMetrics:
    """
    Scan and submission counters, registered on one CollectorRegistry.

    Pass a fresh registry in tests; the default is the process registry.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.scans_total = Counter(
            "flash_arb_scans_total",
            "Completed scan cycles",
            registry=self.registry,
        )
        self.quotes_total = Counter(
            "flash_arb_quotes_total",
            "Venue quotes collected, by venue kind",
            ["kind"],
            registry=self.registry,
        )
        self.opportunities_total = Counter(
            "flash_arb_opportunities_total",
            "Opportunities at or above the profit threshold",
            registry=self.registry,
        )
        self.submissions_total = Counter(
            "flash_arb_submissions_total",
            "Settlement submissions, by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.best_spread_bps = Gauge(
            "flash_arb_best_spread_bps",
            "Best spread seen in the latest scan",
            registry=self.registry,
        )

        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def record_scan(self, quotes, opportunities) -> None:
        self.scans_total.inc()
        for quote in quotes:
            self.quotes_total.labels(kind=quote.kind.name.lower()).inc()
        self.opportunities_total.inc(len(opportunities))
        if opportunities:
            self.best_spread_bps.set(opportunities[0].profit_bps)

    def record_submission(self, outcome: str) -> None:
        """outcome: settled, dry_run, aborted or failed"""
        self.submissions_total.labels(outcome=outcome).inc()

    # === SERVER MANAGEMENT ===

    async def start_server(
        self, port: int = 8000, host: str = "0.0.0.0", path: str = "/metrics"
    ) -> bool:
        """Start the Prometheus HTTP endpoint."""
        try:
            app = web.Application()
            app.router.add_get(path, self._metrics_handler)
            app.router.add_get("/health", self._health_handler)

            self._runner = web.AppRunner(app)
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, host, port)
            await self._site.start()

            logger.info(f"Metrics server started on http://{host}:{port}{path}")
            return True
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")
            if self._runner:
                await self._runner.cleanup()
            self._site = self._runner = None
            return False

    async def stop_server(self) -> None:
        if self._site:
            await self._site.stop()
        if self._runner:
            await self._runner.cleanup()
        self._site = self._runner = None
        logger.info("Metrics server stopped")

    async def _metrics_handler(self, request: web.Request) -> web.Response:
        # aiohttp sets the charset itself
        content_type = CONTENT_TYPE_LATEST.split(";")[0]
        return web.Response(
            text=generate_latest(self.registry).decode("utf-8"),
            content_type=content_type,
        )

    async def _health_handler(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy", "service": "flash_arb"})

    def summary(self) -> Dict[str, Any]:
        sample = self.registry.get_sample_value
        return {
            "scans": sample("flash_arb_scans_total") or 0.0,
            "opportunities": sample("flash_arb_opportunities_total") or 0.0,
            "best_spread_bps": sample("flash_arb_best_spread_bps") or 0.0,
        }
