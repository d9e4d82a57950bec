"""
Ops Workflow Hub - Best-Effort Side Effects

Approval initialization, reward awards and notification sends are never
allowed to fail the record mutation that triggered them. Each one runs
through run_best_effort(), which returns a SideEffectResult instead of
raising.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class SideEffectResult:
    """Result of a best-effort side effect."""
    step: str
    success: bool
    value: Any = None
    error: Optional[str] = None
    timestamp: str = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["value"] is not None and not isinstance(data["value"], (str, int, float, bool, dict, list)):
            data["value"] = str(data["value"])
        return data


async def run_best_effort(step: str, awaitable: Awaitable, record_id: str = None) -> SideEffectResult:
    """
    Await a side effect, converting any failure into a logged SideEffectResult.

    Args:
        step: Name of the step (e.g. "approval.initialize")
        awaitable: The coroutine performing the side effect
        record_id: Optional record id for log context

    Returns:
        SideEffectResult with success flag and the awaited value
    """
    try:
        value = await awaitable
    except Exception as e:
        logger.warning(
            "Side effect failed: step=%s, record=%s, error=%s",
            step, record_id, str(e)
        )
        return SideEffectResult(step=step, success=False, error=str(e) or type(e).__name__)
    return SideEffectResult(step=step, success=True, value=value)
