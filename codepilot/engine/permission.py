"""Permission gate: policy decisions and the operator approval slot.

``decide()`` is a pure function of (permission mode, risk class).
The gate adds the per-task approval slot: at most one call waits for
the operator at a time, resolved by ``approve`` or ``reject``.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .models import (
    PermissionDecision,
    PermissionMode,
    RiskClass,
    ToolCall,
)

logger = logging.getLogger(__name__)


def decide(mode: PermissionMode, risk: RiskClass) -> PermissionDecision:
    if mode == PermissionMode.FULL_AUTONOMOUS:
        return PermissionDecision.allow()
    if risk == RiskClass.SAFE:
        return PermissionDecision.allow()
    if mode == PermissionMode.DENY_ALL:
        return PermissionDecision.deny(
            f"Permission denied: {risk.value} tools are not allowed in "
            f"{mode.value} mode."
        )
    return PermissionDecision.ask_operator()


@dataclass(frozen=True)
class ApprovalOutcome:
    approved: bool
    reason: str | None = None


class PermissionGate:
    """Authorizes tool calls for one engine."""

    def __init__(
        self,
        mode: PermissionMode | str,
        risk_of: Callable[[ToolCall], RiskClass],
    ) -> None:
        self.mode = PermissionMode(mode)
        self._risk_of = risk_of
        self._pending: ToolCall | None = None
        self._future: asyncio.Future[ApprovalOutcome] | None = None

    def authorize(self, call: ToolCall) -> PermissionDecision:
        risk = self._risk_of(call)
        decision = decide(self.mode, risk)
        logger.info(
            "authorize tool=%s call_id=%s risk=%s mode=%s -> %s",
            call.name, call.id[:12], risk.value, self.mode.value,
            decision.kind.value,
        )
        return decision

    def risk_of(self, call: ToolCall) -> RiskClass:
        return self._risk_of(call)

    @property
    def pending(self) -> ToolCall | None:
        return self._pending

    async def wait_for_operator(self, call: ToolCall) -> ApprovalOutcome:
        """Hold the approval slot for ``call`` until the operator resolves it."""
        if self._pending is not None:
            raise RuntimeError(
                f"Approval already pending for {self._pending.id}; "
                f"cannot queue {call.id}"
            )
        self._pending = call
        self._future = asyncio.get_running_loop().create_future()
        try:
            return await self._future
        finally:
            self._pending = None
            self._future = None

    def approve(self, call_id: str) -> bool:
        return self._resolve(call_id, ApprovalOutcome(True))

    def reject(self, call_id: str, reason: str) -> bool:
        return self._resolve(call_id, ApprovalOutcome(False, reason))

    def _resolve(self, call_id: str, outcome: ApprovalOutcome) -> bool:
        if (
            self._pending is None
            or self._future is None
            or self._pending.id != call_id
            or self._future.done()
        ):
            logger.warning(
                "No pending approval for call_id=%s (pending=%s)",
                call_id, self._pending.id if self._pending else None,
            )
            return False
        logger.info(
            "Operator %s call_id=%s",
            "approved" if outcome.approved else "rejected", call_id[:12],
        )
        self._future.set_result(outcome)
        return True
