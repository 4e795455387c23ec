"""
tests/test_gateway.py -- Tests for gateway/orchestrator.py Gateway.process().

Covers:
  - paid action: reserve, dispatch, complete, credits block
  - free action: no reservation, no credits block
  - handler-reported failure: refund + DownstreamError carrying the message
  - handler exception: refund + generic InternalError
  - reservation expired by the sweep mid-request: result returned uncharged
  - unknown action and insufficient credits reserve nothing
  - field extraction: payload.licenseKey, payload.userEmail, missing fields
  - signed envelopes end to end
  - opportunistic cache purge
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
import requests

from accounts.session import IpExclusivityPolicy, PermanentBindingPolicy, SessionGuard
from core.errors import (
    DownstreamError,
    InsufficientCreditsError,
    InternalError,
    InvalidLicenseError,
    PayloadMalformedError,
    SessionActiveError,
    UnknownActionError,
    ValidationError,
)
from core.signing import RequestVerifier
from gateway.orchestrator import Gateway
from routing.builtin import AccountHandler, LedgerHandler
from routing.handlers import CategoryHandler, HandlerResult
from routing.proxy import HttpProxyHandler
from routing.router import DEFAULT_RULES, ActionRouter

HMAC_SECRET = "h" * 32


@pytest.fixture
def workflow(make_handler):
    return make_handler(HandlerResult.ok(report={"score": 88}))


@pytest.fixture
def build_gateway(account_store, ledger, workflow):
    def _build(policy=None, handlers=None, **kwargs) -> Gateway:
        router = ActionRouter(
            DEFAULT_RULES,
            handlers
            or {"account": AccountHandler(), "ledger": LedgerHandler(ledger), "workflow": workflow},
        )
        guard = SessionGuard(account_store, policy or IpExclusivityPolicy(1800))
        return Gateway(RequestVerifier(HMAC_SECRET), guard, ledger, router, **kwargs)

    return _build


@pytest.fixture
def gateway(build_gateway) -> Gateway:
    return build_gateway()


class TestPaidAction:
    def test_success_completes_and_reports_credits(self, gateway, make_account, account_store, workflow, ledger):
        account, key = make_account(credits=30)
        body = gateway.process({"license": key, "action": "workflow-stage-2", "payload": {"url": "x"}}, "1.2.3.4")

        assert body["success"] is True
        assert body["report"] == {"score": 88}
        assert body["credits"] == {"cost": 10, "remaining": 20, "used": 10}
        assert len(workflow.calls) == 1
        action, payload, context = workflow.calls[0]
        assert payload == {"url": "x"}
        assert context.cost == 10
        assert context.transaction_id is not None

        [txn] = ledger.history(account.id)
        assert txn.status == "completed"
        assert account_store.get_by_id(account.id).credit_balance == 20

    def test_reported_failure_refunds(self, build_gateway, make_account, make_handler, account_store, ledger):
        failing = make_handler(HandlerResult.failed("downstream timeout"))
        gateway = build_gateway(handlers={"workflow": failing})
        account, key = make_account(credits=30)

        with pytest.raises(DownstreamError) as exc_info:
            gateway.process({"license": key, "action": "workflow-stage-2"}, "1.2.3.4")

        assert exc_info.value.status_code == 502
        assert exc_info.value.message == "downstream timeout"
        assert exc_info.value.details["refunded"] == 10
        stored = account_store.get_by_id(account.id)
        assert stored.credit_balance == 30
        assert stored.total_credits_used == 0
        [txn] = ledger.history(account.id)
        assert txn.status == "failed"
        assert txn.error_message == "downstream timeout"

    def test_handler_exception_refunds_with_generic_error(
        self, build_gateway, make_account, make_handler, account_store, ledger
    ):
        exploding = make_handler(raises=RuntimeError("db password is hunter2"))
        gateway = build_gateway(handlers={"workflow": exploding})
        account, key = make_account(credits=30)

        with pytest.raises(InternalError) as exc_info:
            gateway.process({"license": key, "action": "workflow:stage1"}, "1.2.3.4")

        assert "hunter2" not in exc_info.value.message
        assert type(exc_info.value) is InternalError
        assert account_store.get_by_id(account.id).credit_balance == 30
        assert ledger.history(account.id)[0].status == "failed"

    def test_license_key_not_journalled(self, gateway, make_account, ledger):
        account, key = make_account(credits=30)
        gateway.process({"action": "workflow:stage1", "payload": {"licenseKey": key, "url": "x"}}, "1.2.3.4")
        [txn] = ledger.history(account.id)
        assert txn.request_snapshot == {"url": "x"}

    def test_license_key_not_forwarded_to_handler(self, gateway, make_account, workflow):
        _, key = make_account(credits=30)
        gateway.process({"action": "workflow:stage1", "payload": {"licenseKey": key, "url": "x"}}, "1.2.3.4")
        _, payload, _ = workflow.calls[0]
        assert "licenseKey" not in payload
        assert payload == {"url": "x"}

    def test_structured_handler_error_is_refunded(self, build_gateway, make_account, make_handler, account_store, ledger):
        failing = make_handler(HandlerResult(success=False, error={"message": "quota", "code": 429}))
        gateway = build_gateway(handlers={"workflow": failing})
        account, key = make_account(credits=30)

        with pytest.raises(DownstreamError) as exc_info:
            gateway.process({"license": key, "action": "workflow-stage-2"}, "1.2.3.4")

        assert isinstance(exc_info.value.message, str)
        assert "quota" in exc_info.value.message
        assert account_store.get_by_id(account.id).credit_balance == 30
        [txn] = ledger.history(account.id)
        assert txn.status == "failed"

    def test_proxied_http_error_with_object_body_is_refunded(self, build_gateway, make_account, account_store, ledger):
        resp = MagicMock()
        resp.status_code = 500
        resp.ok = False
        resp.json.return_value = {"error": {"message": "quota", "code": 429}}
        session = MagicMock(spec=requests.Session)
        session.post.return_value = resp
        gateway = build_gateway(
            handlers={"search": HttpProxyHandler("search", "http://search.internal/run", session=session)}
        )
        account, key = make_account(credits=5)

        with pytest.raises(DownstreamError) as exc_info:
            gateway.process({"license": key, "action": "search_q"}, "1.2.3.4")

        assert isinstance(exc_info.value.message, str)
        assert account_store.get_by_id(account.id).credit_balance == 5
        [txn] = ledger.history(account.id)
        assert txn.status == "failed"

    def test_reservation_expired_during_handler_returns_result_uncharged(
        self, build_gateway, make_account, account_store, ledger
    ):
        class SweptHandler(CategoryHandler):
            def handle(self, action, payload, context):
                ledger.fail(context.transaction_id, "Reservation expired")
                return HandlerResult.ok(report={"score": 1})

        gateway = build_gateway(handlers={"workflow": SweptHandler()})
        account, key = make_account(credits=30)

        body = gateway.process({"license": key, "action": "workflow-stage-2"}, "1.2.3.4")

        assert body == {"report": {"score": 1}, "success": True}
        stored = account_store.get_by_id(account.id)
        assert stored.credit_balance == 30
        assert stored.total_credits_used == 0
        assert ledger.history(account.id)[0].status == "failed"


class TestNothingReserved:
    def test_insufficient_credits(self, gateway, make_account, workflow, ledger):
        account, key = make_account(credits=5)
        with pytest.raises(InsufficientCreditsError):
            gateway.process({"license": key, "action": "workflow-stage-2"}, "1.2.3.4")
        assert workflow.calls == []
        assert ledger.history(account.id) == []

    def test_unknown_action(self, gateway, make_account, ledger, account_store):
        account, key = make_account(credits=30)
        with pytest.raises(UnknownActionError):
            gateway.process({"license": key, "action": "drop_tables"}, "1.2.3.4")
        assert account_store.get_by_id(account.id).credit_balance == 30

    def test_category_without_handler_reserves_nothing(self, gateway, make_account, ledger):
        account, key = make_account(credits=30)
        with pytest.raises(UnknownActionError):
            gateway.process({"license": key, "action": "comp_keywords"}, "1.2.3.4")
        assert ledger.history(account.id) == []

    def test_invalid_license_writes_nothing(self, gateway):
        with pytest.raises(InvalidLicenseError):
            gateway.process({"license": "lg_nope", "action": "status"}, "1.2.3.4")

    def test_session_conflict_surfaces_before_pricing(self, gateway, make_account, workflow):
        _, key = make_account(credits=30)
        gateway.process({"license": key, "action": "status"}, "1.2.3.4")
        with pytest.raises(SessionActiveError):
            gateway.process({"license": key, "action": "workflow:stage1"}, "9.9.9.9")
        assert workflow.calls == []


class TestFreeActions:
    def test_status_has_no_credits_block(self, gateway, make_account, ledger):
        account, key = make_account(email="a@example.com", credits=3)
        body = gateway.process({"license": key, "action": "status"}, "1.2.3.4")
        assert body["success"] is True
        assert body["user"]["credits_remaining"] == 3
        assert "credits" not in body
        assert ledger.history(account.id) == []

    def test_license_from_payload(self, gateway, make_account):
        _, key = make_account(credits=3)
        body = gateway.process({"action": "getCredits", "payload": {"licenseKey": key}}, "1.2.3.4")
        assert body == {"success": True, "credits": 3}

    def test_user_email_from_payload_is_the_asserted_identity(self, build_gateway, make_account, account_store):
        gateway = build_gateway(policy=PermanentBindingPolicy())
        account, key = make_account()
        gateway.process({"license": key, "action": "verifyLicenseKey", "payload": {"userEmail": "A@B.com"}}, "1.1.1.1")
        assert account_store.get_by_id(account.id).bound_identity == "a@b.com"

    def test_free_action_failure_is_downstream_error_without_refund(self, gateway, make_account):
        _, key = make_account()
        with pytest.raises(DownstreamError) as exc_info:
            gateway.process({"license": key, "action": "ledger:history", "payload": {"limit": "many"}}, "1.2.3.4")
        assert "refunded" not in exc_info.value.details

    def test_unpriced_account_action_costs_default_and_is_refunded(self, gateway, make_account, account_store):
        account, key = make_account(credits=2)
        with pytest.raises(DownstreamError) as exc_info:
            gateway.process({"license": key, "action": "user_delete"}, "1.2.3.4")
        assert exc_info.value.details["refunded"] == 1
        assert account_store.get_by_id(account.id).credit_balance == 2

    @pytest.mark.parametrize("action", ["user_info", "user_credits", "user_verify", "user_has_credits"])
    def test_read_only_user_views_are_free(self, gateway, make_account, ledger, action):
        account, key = make_account(credits=0)
        body = gateway.process({"license": key, "action": action}, "1.2.3.4")
        assert body["success"] is True
        assert "credits" not in body
        assert ledger.history(account.id) == []


class TestExtraction:
    @pytest.mark.parametrize(
        "body",
        [
            {"license": "lg_x"},
            {"license": "lg_x", "action": ""},
            {"license": "lg_x", "action": 7},
            {"action": "status"},
            {"action": "status", "payload": {}},
        ],
    )
    def test_missing_fields(self, gateway, body):
        with pytest.raises(ValidationError) as exc_info:
            gateway.process(body, "1.2.3.4")
        assert exc_info.value.status_code == 400

    def test_payload_must_be_object(self, gateway):
        with pytest.raises(PayloadMalformedError):
            gateway.process({"license": "lg_x", "action": "status", "payload": [1, 2]}, "1.2.3.4")


class TestSignedRequests:
    def test_signed_envelope_is_processed(self, gateway, make_account):
        _, key = make_account(credits=30)
        envelope = RequestVerifier(HMAC_SECRET).sign({"license": key, "action": "workflow:stage1"})
        body = gateway.process(envelope.to_dict(), "1.2.3.4")
        assert body["credits"]["cost"] == 5

    def test_envelope_signed_with_other_secret_rejected(self, gateway, make_account):
        _, key = make_account(credits=30)
        envelope = RequestVerifier("x" * 32).sign({"license": key, "action": "workflow:stage1"})
        with pytest.raises(ValidationError):
            gateway.process(envelope.to_dict(), "1.2.3.4")


class TestCachePurge:
    def test_purges_when_sampled(self, build_gateway):
        cache = MagicMock()
        cache.purge_expired.return_value = 4
        gateway = build_gateway(cache=cache, purge_probability=0.01, rng=lambda: 0.0)
        assert gateway.maybe_purge_cache() == 4

    def test_skips_when_not_sampled(self, build_gateway):
        cache = MagicMock()
        gateway = build_gateway(cache=cache, purge_probability=0.01, rng=lambda: 0.5)
        assert gateway.maybe_purge_cache() == 0
        cache.purge_expired.assert_not_called()

    def test_purge_failure_is_swallowed(self, build_gateway):
        cache = MagicMock()
        cache.purge_expired.side_effect = RuntimeError("disk full")
        gateway = build_gateway(cache=cache, purge_probability=1.0)
        assert gateway.maybe_purge_cache() == 0
