"""
ledger/pricing.py -- Action name -> credit cost.

CostPolicy walks an ordered list of CostRules; the first rule whose patterns
match the action name decides the cost key, and the key is looked up in the
credit table. Order matters where families overlap: "project" actions are
free even if they also mention "content", and "competitor" is checked before
the fetch family.

Rule order:
  1. free management actions (incl. read-only user_* views) and
     anything containing "project"                             -> 0
  2. workflow stage family (workflow:stageN, workflow_stageN,
     workflow-stage-N)                                         -> workflow_stage{N}
  3. contains "comp" or "competitor"                            -> competitor_analysis
  4. prefix "fetch"                                             -> fetcher_multi / fetcher_single
  5. contains "content"                                         -> content_generate
  6. exact action name in the table, else the default cost

A cost key that is missing from the table (e.g. workflow_stage9) falls back
to the default cost rather than making the action free.

resolve_cost() is pure: the payload is accepted for interface stability but
never read.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Optional, Union

from core.patterns import ActionPattern, any_of, contains, exact, prefix, regex

FREE_ACTIONS = (
    "verifyLicenseKey",
    "getUserInfo",
    "check_status",
    "status",
    "getCredits",
    "ledger:history",
    # Read-only account views served by routing/builtin.py AccountHandler.
    "user_info",
    "user_credits",
    "user_verify",
    "user_has_credits",
)

_WORKFLOW_STAGE = r"^workflow[:_-]stage-?(\d+)"

# None means "free"; a callable derives the key from the action name.
CostKey = Union[str, Callable[[str], str], None]


def _workflow_stage_key(action: str) -> str:
    match = re.search(_WORKFLOW_STAGE, action)
    return f"workflow_stage{int(match.group(1))}" if match else "workflow_stage"


def _fetcher_key(action: str) -> str:
    return "fetcher_multi" if "multi" in action else "fetcher_single"


@dataclass(frozen=True)
class CostRule:
    name: str
    patterns: tuple[ActionPattern, ...]
    key: CostKey

    def cost_key(self, action: str) -> Optional[str]:
        return self.key(action) if callable(self.key) else self.key


DEFAULT_COST_RULES: tuple[CostRule, ...] = (
    CostRule("free", (exact(*FREE_ACTIONS), contains("project")), None),
    CostRule("workflow_stage", (regex(_WORKFLOW_STAGE),), _workflow_stage_key),
    CostRule("competitor", (contains("comp", "competitor"),), "competitor_analysis"),
    CostRule("fetcher", (prefix("fetch"),), _fetcher_key),
    CostRule("content", (contains("content"),), "content_generate"),
)


class CostPolicy:
    """Ordered pricing rules over a credit table.

    Usage:
        policy = CostPolicy(settings.credit_costs, default_cost=1)
        policy.resolve_cost("workflow-stage-2")   # 10
        policy.resolve_cost("project-list")       # 0
    """

    def __init__(
        self,
        costs: Mapping[str, int],
        default_cost: int = 1,
        rules: tuple[CostRule, ...] = DEFAULT_COST_RULES,
    ) -> None:
        self.costs = dict(costs)
        self.default_cost = default_cost
        self.rules = rules

    def match(self, action: str) -> Optional[CostRule]:
        """Return the first rule matching action, or None."""
        for rule in self.rules:
            if any_of(action, rule.patterns):
                return rule
        return None

    def resolve_cost(self, action: str, payload: Optional[dict[str, Any]] = None) -> int:
        rule = self.match(action)
        if rule is None:
            return self.costs.get(action, self.default_cost)
        key = rule.cost_key(action)
        if key is None:
            return 0
        return self.costs.get(key, self.default_cost)
