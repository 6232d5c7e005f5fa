"""Unit tests for the outbound email gate.

Total: 12 tests
"""

from __future__ import annotations

import pytest

from reportcast.core.errors import SecurityViolation
from reportcast.scheduling.audit import AuditAction, AuditSeverity
from reportcast.scheduling.gate import DeliveryGate


# ── Pure validation ───────────────────────────────────────────────────────────

class TestValidateAddress:
    def test_production_accepts_any_well_formed_address(self, mock_audit):
        DeliveryGate(mock_audit, production=True).validate_address("anyone@partner.io")

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a@b..c", "two words@acme.com"])
    def test_malformed_address_is_rejected(self, mock_audit, email):
        with pytest.raises(SecurityViolation, match="Invalid email format"):
            DeliveryGate(mock_audit, production=True).validate_address(email)

    def test_non_production_requires_allowlist(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=False, approved_recipients=["QA@acme.com"])
        gate.validate_address("qa@ACME.com")
        with pytest.raises(SecurityViolation, match="not approved"):
            gate.validate_address("ceo@acme.com")


class TestValidateCount:
    def test_empty_list_is_rejected(self, mock_audit):
        with pytest.raises(SecurityViolation, match="No recipients provided"):
            DeliveryGate(mock_audit, production=True).validate_count([])

    def test_too_many_recipients(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=True, max_recipients=2)
        with pytest.raises(SecurityViolation, match=r"Too many recipients \(max 2\)"):
            gate.validate_count(["a@x.io", "b@x.io", "c@x.io"])


class TestValidateTransport:
    def test_blocked_relay_substring_match(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=True, blocked_relays=["mailtrap"])
        with pytest.raises(SecurityViolation, match="mailtrap"):
            gate.validate_transport("sandbox.SMTP.Mailtrap.io:2525")

    def test_production_relay_passes(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=True, blocked_relays=["mailtrap"])
        gate.validate_transport("smtp.acme.com:587")


# ── Audited checks ────────────────────────────────────────────────────────────

class TestAuditedChecks:
    @pytest.mark.asyncio
    async def test_blocked_recipients_are_audited_critical(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=True)

        with pytest.raises(SecurityViolation):
            await gate.check_recipients(["bad"], user_id="u-1", tenant_id="t-1", schedule_id="s-1")

        details = mock_audit.log.await_args.args[0]
        kwargs = mock_audit.log.await_args.kwargs
        assert details.action is AuditAction.EMAIL_BLOCKED_DOMAIN
        assert details.recipients == ["bad"]
        assert kwargs["severity"] is AuditSeverity.CRITICAL
        assert kwargs["resource_id"] == "s-1"

    @pytest.mark.asyncio
    async def test_blocked_transport_is_audited_as_test_service(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=True, blocked_relays=["ethereal.email"])

        with pytest.raises(SecurityViolation):
            await gate.check_transport("smtp.ethereal.email:587", tenant_id="t-1")

        details = mock_audit.log.await_args.args[0]
        assert details.action is AuditAction.EMAIL_BLOCKED_TEST_SERVICE
        assert details.relay_host == "smtp.ethereal.email:587"

    @pytest.mark.asyncio
    async def test_passing_check_writes_no_audit(self, mock_audit):
        gate = DeliveryGate(mock_audit, production=True)
        await gate.check_recipients(["ops@acme.com"])
        mock_audit.log.assert_not_awaited()
