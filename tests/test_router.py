"""
tests/test_router.py -- Tests for routing/router.py ActionRouter and routing/builtin.py.

Covers:
  - declared precedence for overlapping action names
  - unknown actions and categories without a registered handler
  - dispatch calls exactly one handler exactly once
  - built-in account and ledger handlers
"""

from __future__ import annotations

import pytest

from core.errors import UnknownActionError
from routing.builtin import AccountHandler, LedgerHandler
from routing.handlers import AccountContext, HandlerResult
from routing.router import DEFAULT_RULES, ActionRouter


def all_categories_router() -> ActionRouter:
    """Router with a handler registered for every category in the table."""
    return ActionRouter(DEFAULT_RULES, {rule.category: AccountHandler() for rule in DEFAULT_RULES})


class TestPrecedence:
    @pytest.mark.parametrize(
        "action,category",
        [
            ("gemini_summarize", "generative"),
            ("ai_outline", "generative"),
            ("serper_search", "search"),
            ("search_competitors", "search"),
            ("pagespeed_mobile", "page_performance"),
            ("opr_rank", "domain_rank"),
            ("bulk_domain_rank", "domain_rank"),
            ("workflow:stage1", "workflow"),
            ("workflow-stage-2", "workflow"),
            ("wf:resume", "workflow"),
            ("comp_keywords", "competitor"),
            ("ELITE_full", "competitor"),
            ("list_competitor_urls", "competitor"),
            ("user_info", "account"),
            ("getCredits", "account"),
            ("project_save", "project"),
            ("project-list", "project"),
            ("content_generate", "content"),
            ("fetcher_multi", "fetcher"),
            ("fetch:page", "fetcher"),
            ("status", "account"),
            ("check_status", "account"),
            ("ledger:history", "ledger"),
        ],
    )
    def test_first_match_wins(self, action, category):
        assert all_categories_router().resolve(action).category == category

    def test_competitor_contains_beats_content_prefix(self):
        # Rule 6 (contains "competitor") is declared before rule 9 (content_).
        assert all_categories_router().resolve("content_competitor_gap").category == "competitor"

    def test_workflow_beats_competitor(self):
        assert all_categories_router().resolve("workflow:competitor_scan").category == "workflow"

    def test_rule_order_is_the_declared_contract(self):
        assert [r.category for r in DEFAULT_RULES] == [
            "generative",
            "search",
            "page_performance",
            "domain_rank",
            "workflow",
            "competitor",
            "account",
            "project",
            "content",
            "fetcher",
            "account",
            "ledger",
        ]


class TestUnknown:
    @pytest.mark.parametrize("action", ["delete_everything", "Status", "", "fetcher"])
    def test_no_rule_matches(self, action):
        with pytest.raises(UnknownActionError) as exc_info:
            all_categories_router().resolve(action)
        assert exc_info.value.status_code == 404

    def test_matched_category_without_handler(self):
        router = ActionRouter(DEFAULT_RULES, {"account": AccountHandler()})
        with pytest.raises(UnknownActionError):
            router.resolve("serper_search")

    def test_message_is_truncated(self):
        with pytest.raises(UnknownActionError) as exc_info:
            all_categories_router().resolve("x" * 500)
        assert len(exc_info.value.message) < 130


class TestDispatch:
    def test_dispatch_invokes_only_the_matching_handler_once(self, make_account, make_handler):
        account, _ = make_account()
        search, competitor = make_handler(HandlerResult.ok(hits=3)), make_handler()
        router = ActionRouter(DEFAULT_RULES, {"search": search, "competitor": competitor})
        result = router.dispatch("search_competitors", {"q": "shoes"}, AccountContext(account=account))
        assert result.data == {"hits": 3}
        assert len(search.calls) == 1
        assert competitor.calls == []


class TestBuiltinHandlers:
    def test_status_view(self, make_account):
        account, _ = make_account(email="a@example.com", credits=12)
        result = AccountHandler().handle("status", {}, AccountContext(account=account))
        assert result.success is True
        assert result.data["user"]["email"] == "a@example.com"
        assert result.data["user"]["credits_remaining"] == 12
        assert "license_hash" not in result.data["user"]

    def test_get_credits(self, make_account):
        account, _ = make_account(credits=7)
        result = AccountHandler().handle("getCredits", {}, AccountContext(account=account))
        assert result.data == {"credits": 7}

    def test_verify_license_key(self, make_account):
        account, _ = make_account()
        result = AccountHandler().handle("verifyLicenseKey", {}, AccountContext(account=account))
        assert result.data["message"] == "License key verified"

    def test_unsupported_user_action_reports_failure(self, make_account):
        account, _ = make_account()
        result = AccountHandler().handle("user_delete", {}, AccountContext(account=account))
        assert result.success is False
        assert "user_delete" in result.error

    def test_has_credits_defaults_to_one(self, make_account):
        account, _ = make_account(credits=0)
        result = AccountHandler().handle("user_has_credits", {}, AccountContext(account=account))
        assert result.data == {"has_credits": False, "current_credits": 0, "required_credits": 1}

    def test_has_credits_with_explicit_requirement(self, make_account):
        account, _ = make_account(credits=12)
        result = AccountHandler().handle("user_has_credits", {"required": 10}, AccountContext(account=account))
        assert result.data == {"has_credits": True, "current_credits": 12, "required_credits": 10}

    @pytest.mark.parametrize("required", [-1, "5", True, 2.5])
    def test_has_credits_rejects_bad_requirement(self, make_account, required):
        account, _ = make_account(credits=12)
        result = AccountHandler().handle("user_has_credits", {"required": required}, AccountContext(account=account))
        assert result.success is False

    def test_ledger_history(self, make_account, ledger):
        account, _ = make_account(credits=10)
        ledger.authorize(account, "fetch_page")
        result = LedgerHandler(ledger).handle("ledger:history", {"limit": 5}, AccountContext(account=account))
        assert result.success is True
        assert [t["action"] for t in result.data["transactions"]] == ["fetch_page"]
        assert result.data["transactions"][0]["status"] == "reserved"

    def test_ledger_history_rejects_bad_limit(self, make_account, ledger):
        account, _ = make_account()
        result = LedgerHandler(ledger).handle("ledger:history", {"limit": "many"}, AccountContext(account=account))
        assert result.success is False
