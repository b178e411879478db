import asyncio

import pytest

from codepilot.engine.models import DecisionKind, PermissionMode, RiskClass, ToolCall
from codepilot.engine.permission import PermissionGate, decide


@pytest.mark.parametrize("mode,risk,expected", [
    (PermissionMode.FULL_AUTONOMOUS, RiskClass.DESTRUCTIVE, DecisionKind.ALLOW),
    (PermissionMode.MANUAL_APPROVAL, RiskClass.SAFE, DecisionKind.ALLOW),
    (PermissionMode.MANUAL_APPROVAL, RiskClass.NETWORK, DecisionKind.ASK_OPERATOR),
    (PermissionMode.MANUAL_APPROVAL, RiskClass.MUTATING, DecisionKind.ASK_OPERATOR),
    (PermissionMode.DENY_ALL, RiskClass.SAFE, DecisionKind.ALLOW),
    (PermissionMode.DENY_ALL, RiskClass.MUTATING, DecisionKind.DENY),
    (PermissionMode.DENY_ALL, RiskClass.NETWORK, DecisionKind.DENY),
])
def test_decide(mode, risk, expected):
    assert decide(mode, risk).kind == expected


def test_deny_reason_names_mode():
    decision = decide(PermissionMode.DENY_ALL, RiskClass.DESTRUCTIVE)
    assert decision.reason == (
        "Permission denied: destructive tools are not allowed in deny_all mode."
    )


def _gate(mode=PermissionMode.MANUAL_APPROVAL, risk=RiskClass.MUTATING):
    return PermissionGate(mode, lambda call: risk)


@pytest.mark.asyncio
async def test_approval_slot_resolves_once():
    gate = _gate()
    call = ToolCall("c1", "write_to_file", {})
    waiter = asyncio.create_task(gate.wait_for_operator(call))
    await asyncio.sleep(0)
    assert gate.pending is call

    assert not gate.approve("other")
    assert gate.reject("c1", "no thanks")
    outcome = await waiter
    assert not outcome.approved
    assert outcome.reason == "no thanks"
    assert gate.pending is None
    assert not gate.approve("c1")


@pytest.mark.asyncio
async def test_second_waiter_is_refused():
    gate = _gate()
    first = asyncio.create_task(gate.wait_for_operator(ToolCall("c1", "x", {})))
    await asyncio.sleep(0)
    with pytest.raises(RuntimeError, match="already pending"):
        await gate.wait_for_operator(ToolCall("c2", "x", {}))
    gate.approve("c1")
    assert (await first).approved


@pytest.mark.asyncio
async def test_cancelled_waiter_frees_slot():
    gate = _gate()
    waiter = asyncio.create_task(gate.wait_for_operator(ToolCall("c1", "x", {})))
    await asyncio.sleep(0)
    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter
    assert gate.pending is None


def test_mode_accepts_strings():
    gate = PermissionGate("deny_all", lambda call: RiskClass.SAFE)
    assert gate.mode == PermissionMode.DENY_ALL
    with pytest.raises(ValueError):
        PermissionGate("whatever", lambda call: RiskClass.SAFE)
