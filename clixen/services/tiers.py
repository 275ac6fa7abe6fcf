"""
Tier catalogue — which workflows each subscription tier may run and how
many credits it gets per billing period.

Permissions are derived from the tier on every request; nothing here is
stored per user.
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional

from clixen.db.models import UNLIMITED_QUOTA


class Tier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    TEAM_STARTER = "team_starter"
    TEAM_PRO = "team_pro"


class WorkflowName(str, Enum):
    """Downstream workflows the classifier may route to."""
    WEATHER_CHECK = "weather_check"
    EMAIL_INVOICE_SCANNER = "email_invoice_scanner"
    PDF_SUMMARIZER = "pdf_summarizer"
    TEXT_TRANSLATOR = "text_translator"
    DAILY_REMINDER = "daily_reminder"


WORKFLOW_DESCRIPTIONS: Dict[WorkflowName, str] = {
    WorkflowName.WEATHER_CHECK: "Get current weather for a location",
    WorkflowName.EMAIL_INVOICE_SCANNER: "Scan the inbox for invoices and summarize spending",
    WorkflowName.PDF_SUMMARIZER: "Summarize an uploaded document",
    WorkflowName.TEXT_TRANSLATOR: "Translate text into another language",
    WorkflowName.DAILY_REMINDER: "Set a recurring reminder",
}

_FREE_WORKFLOWS = frozenset({
    WorkflowName.WEATHER_CHECK.value,
    WorkflowName.TEXT_TRANSLATOR.value,
})
_ALL_WORKFLOWS = frozenset(w.value for w in WorkflowName)

TIER_PERMISSIONS: Dict[Tier, FrozenSet[str]] = {
    Tier.FREE: _FREE_WORKFLOWS,
    Tier.STARTER: _ALL_WORKFLOWS,
    Tier.PRO: _ALL_WORKFLOWS,
    Tier.TEAM_STARTER: _ALL_WORKFLOWS,
    Tier.TEAM_PRO: _ALL_WORKFLOWS,
}

TIER_QUOTA_LIMITS: Dict[Tier, int] = {
    Tier.FREE: 50,
    Tier.STARTER: 500,
    Tier.PRO: UNLIMITED_QUOTA,
    Tier.TEAM_STARTER: UNLIMITED_QUOTA,
    Tier.TEAM_PRO: UNLIMITED_QUOTA,
}

# Cheapest first, used for upgrade hints
_UPGRADE_ORDER = (Tier.FREE, Tier.STARTER, Tier.PRO, Tier.TEAM_STARTER, Tier.TEAM_PRO)

_DISPLAY_NAMES = {
    Tier.FREE: "Free",
    Tier.STARTER: "Starter",
    Tier.PRO: "Pro",
    Tier.TEAM_STARTER: "Team Starter",
    Tier.TEAM_PRO: "Team Pro",
}


def parse_tier(value: Optional[str]) -> Tier:
    """Map a stored tier string to a Tier; unknown values get the least privilege."""
    try:
        return Tier(value)
    except ValueError:
        return Tier.FREE


def permissions_for(tier: str) -> FrozenSet[str]:
    return TIER_PERMISSIONS[parse_tier(tier)]


def quota_limit_for(tier: str) -> int:
    return TIER_QUOTA_LIMITS[parse_tier(tier)]


def is_paid(tier: str) -> bool:
    return parse_tier(tier) is not Tier.FREE


def display_name(tier: str) -> str:
    return _DISPLAY_NAMES[parse_tier(tier)]


def minimum_tier_for(workflow: str) -> Optional[Tier]:
    """Cheapest tier whose permissions include the workflow."""
    for tier in _UPGRADE_ORDER:
        if workflow in TIER_PERMISSIONS[tier]:
            return tier
    return None
