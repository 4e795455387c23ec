"""
routing/router.py -- ActionRouter: action name -> category handler.

The routing table is an ordered list. The first rule whose patterns match
the action name wins, regardless of how specific a later rule might be. The
order below is part of the contract; overlapping names resolve by it:

     1. generative        prefix gemini_, ai_
     2. search            prefix serper_, search_
     3. page_performance  prefix pagespeed_, page_speed_
     4. domain_rank       prefix opr_, pagerank_; contains domain_rank
     5. workflow          prefix workflow:, workflow_, workflow-, wf:
     6. competitor        prefix comp_, COMP_, ELITE_; contains competitor
     7. account           prefix user_; exact verifyLicenseKey, getUserInfo, getCredits
     8. project           prefix project_, project:, project-
     9. content           prefix content_, content:
    10. fetcher           prefix fetcher_, fetch_, fetch:
    11. account           exact check_status, status
    12. ledger            exact ledger:history

e.g. "search_competitors" routes to search (rule 2), not competitor.

resolve() is separate from dispatch() so the gateway can reject unknown
actions before it reserves any credits.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from core.errors import UnknownActionError
from core.patterns import ActionPattern, any_of, contains, exact, prefix
from routing.handlers import AccountContext, CategoryHandler, HandlerResult

logger = logging.getLogger("licensegate.router")


@dataclass(frozen=True)
class RoutingRule:
    category: str
    patterns: tuple[ActionPattern, ...]

    def matches(self, action: str) -> bool:
        return any_of(action, self.patterns)


DEFAULT_RULES: tuple[RoutingRule, ...] = (
    RoutingRule("generative", (prefix("gemini_", "ai_"),)),
    RoutingRule("search", (prefix("serper_", "search_"),)),
    RoutingRule("page_performance", (prefix("pagespeed_", "page_speed_"),)),
    RoutingRule("domain_rank", (prefix("opr_", "pagerank_"), contains("domain_rank"))),
    RoutingRule("workflow", (prefix("workflow:", "workflow_", "workflow-", "wf:"),)),
    RoutingRule("competitor", (prefix("comp_", "COMP_", "ELITE_"), contains("competitor"))),
    RoutingRule("account", (prefix("user_"), exact("verifyLicenseKey", "getUserInfo", "getCredits"))),
    RoutingRule("project", (prefix("project_", "project:", "project-"),)),
    RoutingRule("content", (prefix("content_", "content:"),)),
    RoutingRule("fetcher", (prefix("fetcher_", "fetch_", "fetch:"),)),
    RoutingRule("account", (exact("check_status", "status"),)),
    RoutingRule("ledger", (exact("ledger:history"),)),
)


class ActionRouter:
    """Ordered first-match router over registered category handlers.

    Usage:
        router = ActionRouter(DEFAULT_RULES, {"account": AccountHandler(...)})
        rule = router.resolve("status")
        result = router.dispatch("status", {}, context)
    """

    def __init__(
        self,
        rules: tuple[RoutingRule, ...] = DEFAULT_RULES,
        handlers: Mapping[str, CategoryHandler] | None = None,
    ) -> None:
        self.rules = rules
        self.handlers: dict[str, CategoryHandler] = dict(handlers or {})

    def register(self, category: str, handler: CategoryHandler) -> None:
        self.handlers[category] = handler

    def resolve(self, action: str) -> RoutingRule:
        """Return the first matching rule whose category has a handler.

        Raises UnknownActionError when no rule matches, or the first matching
        rule's category has no registered handler. Later rules are not
        consulted in that case.
        """
        for rule in self.rules:
            if rule.matches(action):
                if rule.category not in self.handlers:
                    logger.info("Action %.100s routed to %s, which has no handler", action, rule.category)
                    raise UnknownActionError(action)
                return rule
        raise UnknownActionError(action)

    def dispatch(self, action: str, payload: dict[str, Any], context: AccountContext) -> HandlerResult:
        rule = self.resolve(action)
        logger.debug("Dispatching %.100s to %s", action, rule.category)
        return self.handlers[rule.category].handle(action, payload, context)
