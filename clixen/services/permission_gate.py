"""
Permission & Quota Gate — the one place tier and quota rules are enforced.

`evaluate` is pure: no I/O, no clock, no mutation.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from clixen.services.intent_classifier import IntentAction, IntentDecision
from clixen.services.tiers import display_name, minimum_tier_for
from clixen.services.user_context import AuthorizationContext


class DenyReason(str, Enum):
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"
    QUOTA_EXCEEDED = "quota_exceeded"


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    reason: Optional[DenyReason] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "GateResult":
        return cls(allowed=True)


def evaluate(
    decision: IntentDecision,
    ctx: AuthorizationContext,
    *,
    upgrade_url: str = "https://clixen.app/subscription",
) -> GateResult:
    if decision.action is not IntentAction.ROUTE_TO_N8N:
        return GateResult.allow()

    workflow = decision.workflow
    if not workflow or workflow not in ctx.permissions:
        needed = minimum_tier_for(workflow) if workflow else None
        hint = f" It's available on the {display_name(needed.value)} plan." if needed else ""
        return GateResult(
            allowed=False,
            reason=DenyReason.INSUFFICIENT_PERMISSIONS,
            message=(
                f"🔒 That feature isn't included in your {display_name(ctx.tier)} plan.{hint}\n\n"
                f"Upgrade at {upgrade_url}"
            ),
        )

    credits = decision.credits_required or 1
    if not ctx.is_unlimited and ctx.quota_used + credits > ctx.quota_limit:
        return GateResult(
            allowed=False,
            reason=DenyReason.QUOTA_EXCEEDED,
            message=(
                f"📊 You've used {ctx.quota_used}/{ctx.quota_limit} automation credits this period.\n\n"
                f"Upgrade for more at {upgrade_url}"
            ),
        )

    return GateResult.allow()
