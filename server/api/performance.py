"""
Performance Management API

Stats and maintenance for the performance layer:
- GET  /api/v1/performance?component=cache|executor|deduplicator|timeout|all
- POST /api/v1/performance  {"action": "clear"|"cleanup", "component": "..."}
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from copilot.performance import PerformanceRegistry, get_performance_registry, parse_component
from core.exceptions import ValidationError

logger = logging.getLogger("api.performance")

router = APIRouter(prefix="/api/v1/performance", tags=["Performance"])

ACTIONS = ("clear", "cleanup")


class PerformanceAction(BaseModel):
    action: str = Field(..., description="clear or cleanup")
    component: Optional[str] = Field("all", description="cache, executor, deduplicator, timeout or all")


def get_registry() -> PerformanceRegistry:
    return get_performance_registry()


def _meta(component: str) -> Dict[str, Any]:
    return {
        "component": component,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("")
async def get_performance_stats(
    component: Optional[str] = Query("all", description="Component to report"),
    registry: PerformanceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """Structured counters for one component or all of them"""
    target = parse_component(component)
    return {
        "success": True,
        "data": registry.get_stats(target),
        "meta": _meta(target.value),
    }


@router.post("")
async def run_performance_action(
    body: PerformanceAction,
    registry: PerformanceRegistry = Depends(get_registry)
) -> Dict[str, Any]:
    """Clear a component's state or purge expired cache entries"""
    action = body.action.lower()
    if action not in ACTIONS:
        raise ValidationError(f"Unknown action '{body.action}'", field="action", allowed=list(ACTIONS))

    target = parse_component(body.component)
    if action == "clear":
        registry.clear(target)
        data: Dict[str, Any] = {"action": "clear", "cleared": target.value}
    else:
        removed = registry.cleanup(target)
        data = {"action": "cleanup", "removed": removed}

    logger.info(f"Performance action {action} on {target.value}")
    return {"success": True, "data": data, "meta": _meta(target.value)}
