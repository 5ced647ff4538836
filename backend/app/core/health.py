"""
Health check aggregation — deep health probe for the communication service.

Checks:
    • Delivery ledger directory exists and is writable
    • Channel provider reachability (through the provider status cache)
    • Reward tracker hand-off configuration
    • Disk space for the ledger files

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_ledger(ledger_dir: Path) -> ComponentHealth:
    """The ledger directory must exist and accept writes."""
    comp = ComponentHealth(name="delivery_ledger")
    start = time.monotonic()
    comp.details = {"directory": str(ledger_dir)}

    if not ledger_dir.is_dir():
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Ledger directory missing"
    elif not os.access(ledger_dir, os.W_OK):
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Ledger directory not writable"
    else:
        comp.message = "Ledger writable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_providers(provider_cache, transports: Mapping) -> ComponentHealth:
    """Provider probes go through the TTL cache, so this is cheap to poll."""
    comp = ComponentHealth(name="providers")
    start = time.monotonic()
    try:
        statuses = await provider_cache.check_all(transports)
        down = [ch.value for ch, s in statuses.items() if not s.available]
        comp.details = {ch.value: s.available for ch, s in statuses.items()}
        if down:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Unavailable: {', '.join(down)}"
        else:
            comp.message = "All providers reachable"
    except Exception as e:
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_reward_tracker() -> ComponentHealth:
    """Outcome events are dropped when no tracker is configured."""
    comp = ComponentHealth(name="reward_tracker")
    if settings.REWARD_TRACKER_BASE_URL:
        comp.message = "Outcome events forwarded"
        comp.details = {"url": settings.REWARD_TRACKER_BASE_URL}
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Not configured; outcome events are discarded"
    return comp


async def check_disk_space(path: Path) -> ComponentHealth:
    """Check available disk space where the ledger lives."""
    comp = ComponentHealth(name="disk_space")
    start = time.monotonic()
    try:
        total, used, free = shutil.disk_usage(path if path.exists() else ".")
        free_gb = free / (1024 ** 3)
        used_pct = (used / total) * 100

        comp.details = {
            "total_gb": round(total / (1024 ** 3), 1),
            "free_gb": round(free_gb, 1),
            "used_pct": round(used_pct, 1),
        }

        if free_gb < 0.5:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = f"Low disk space: {free_gb:.1f} GB free"
        elif free_gb < 2.0:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Disk space warning: {free_gb:.1f} GB free"
        else:
            comp.message = f"{free_gb:.1f} GB free"
    except OSError as e:
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    ledger_dir: Optional[Path] = None,
    provider_cache=None,
    transports: Optional[Mapping] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    ledger_dir = Path(ledger_dir or settings.LEDGER_DIR)
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    report.components.append(await check_ledger(ledger_dir))
    if provider_cache is not None and transports:
        report.components.append(await check_providers(provider_cache, transports))
    report.components.append(await check_reward_tracker())
    report.components.append(await check_disk_space(ledger_dir))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    if report.status != HealthStatus.HEALTHY:
        logger.warning("Health check %s", report.status.value)
    return report
