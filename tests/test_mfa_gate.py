"""Second-factor lifecycle and the per-navigation step-up gate."""

import asyncio
import time
from dataclasses import replace

import pytest

from crmauth.service.errors import MFAError
from crmauth.service.memory import generate_totp
from crmauth.service.mfa import GateAction, GateDecision
from crmauth.storage.models import AssuranceLevel, Role

PASSWORD = "Password123"


def _code(backend, factor_id):
    return generate_totp(backend.factor_secret(factor_id), time.time())


def _wrong(code):
    return f"{(int(code) + 500_000) % 1_000_000:06d}"


async def _login(tab, email="alice@example.com"):
    await tab.store.initialize()
    result = await tab.auth.login(email, PASSWORD)
    assert result.ok
    return result


async def _enrolled(tab, backend):
    await _login(tab)
    factor = await tab.mfa.enroll("Phone")
    await tab.mfa.confirm_enrollment(factor.id, _code(backend, factor.id))
    await tab.auth.logout()
    await tab.auth.login("alice@example.com", PASSWORD)
    return factor


async def test_gate_loading_before_initialize(tab):
    decision = await tab.gate.evaluate("/contacts")
    assert decision.action == GateAction.LOADING
    assert decision.target is None


async def test_gate_public_paths_always_render(tab):
    assert await tab.gate.evaluate("/login") == GateDecision.render()
    assert await tab.gate.evaluate("/mfa-verify") == GateDecision.render()


async def test_gate_unauthenticated_preserves_return_path(tab):
    await tab.store.initialize()
    decision = await tab.gate.evaluate("/deals?stage=won")
    assert decision == GateDecision.redirect("/login", return_to="/deals")


async def test_gate_deactivated_drops_return_path(tab, user):
    await _login(tab)
    tab.store.apply_profile(replace(tab.store.profile, is_active=False))
    decision = await tab.gate.evaluate("/deals")
    assert decision == GateDecision.redirect("/login")


async def test_gate_role_denied_redirects_home(tab, backend):
    backend.create_user("sam@example.com", PASSWORD, role=Role.SUPPORT)
    await _login(tab, "sam@example.com")
    assert await tab.gate.evaluate("/payments") == GateDecision.redirect("/")
    assert await tab.gate.evaluate("/unknown") == GateDecision.redirect("/")
    assert await tab.gate.evaluate("/contacts") == GateDecision.render()


async def test_gate_requires_step_up_for_enrolled_user(tab, backend, user):
    await _enrolled(tab, backend)
    assert tab.store.session.assurance_level == AssuranceLevel.AAL1
    decision = await tab.gate.evaluate("/contacts")
    assert decision == GateDecision.redirect("/mfa-verify")


async def test_gate_fails_closed_when_assurance_unknown(tab, backend, user):
    await _login(tab)
    backend.fail_next("mfa.get_assurance_level")
    assert await tab.gate.evaluate("/") == GateDecision.redirect("/mfa-verify")


async def test_step_up_checked_before_role(tab, backend, user):
    await _enrolled(tab, backend)
    # Sales may not open /staff, but the missing factor wins
    assert await tab.gate.evaluate("/staff") == GateDecision.redirect("/mfa-verify")


async def test_enroll_returns_secret_and_uri(tab, backend, user):
    await _login(tab)
    factor = await tab.mfa.enroll("Phone")
    assert factor.secret
    assert factor.uri.startswith("otpauth://totp/")
    assert not factor.verified
    listed = await tab.mfa.list_factors()
    assert [f.id for f in listed] == [factor.id]
    assert listed[0].secret is None


async def test_unverified_factor_does_not_require_step_up(tab, backend, user):
    await _login(tab)
    await tab.mfa.enroll("Phone")
    assert await tab.gate.evaluate("/contacts") == GateDecision.render()


async def test_confirm_enrollment_upgrades_session(tab, backend, user):
    await _login(tab)
    factor = await tab.mfa.enroll()
    await tab.mfa.confirm_enrollment(factor.id, _code(backend, factor.id))
    assert tab.store.session.assurance_level == AssuranceLevel.AAL2
    assert tab.store.is_authenticated


async def test_verify_flow(tab, backend, user):
    factor = await _enrolled(tab, backend)

    bad = await tab.auth.verify_mfa(_wrong(_code(backend, factor.id)))
    assert not bad.ok
    assert bad.error.error_code == "mfa_error"
    # A bad code leaves the primary session alone
    assert tab.store.is_authenticated
    assert tab.auth.error is None

    good = await tab.auth.verify_mfa(_code(backend, factor.id))
    assert good.ok
    assert good.redirect_to == "/"
    assert tab.store.session.assurance_level == AssuranceLevel.AAL2
    assert await tab.gate.evaluate("/contacts") == GateDecision.render()


@pytest.mark.parametrize("code", ["", "12345", "1234567", "12a456"])
async def test_verify_rejects_malformed_codes(tab, backend, user, code):
    await _login(tab)
    result = await tab.auth.verify_mfa(code)
    assert result.error.error_code == "validation_error"
    assert backend.calls["mfa.challenge"] == 0


async def test_verify_without_factor(tab, user):
    await _login(tab)
    result = await tab.auth.verify_mfa("123456")
    assert result.error.error_code == "mfa_factor_missing"
    assert result.error.message == "No TOTP factor found."


async def test_unenroll(tab, backend, user):
    await _login(tab)
    factor = await tab.mfa.enroll()
    await tab.mfa.unenroll(factor.id)
    assert await tab.mfa.list_factors() == []
    with pytest.raises(MFAError):
        await tab.mfa.unenroll(factor.id)


class _Gate:
    def __init__(self):
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def wait(self):
        self.entered.set()
        await self.release.wait()


async def test_gate_rechecks_session_after_assurance_lookup(tab, backend, user):
    await _login(tab)
    gate = _Gate()
    original = tab.provider.mfa.get_assurance_level

    async def slow_assurance_level():
        await gate.wait()
        return await original()

    tab.provider.mfa.get_assurance_level = slow_assurance_level
    decision = asyncio.create_task(tab.gate.evaluate("/contacts"))
    await gate.entered.wait()
    await tab.auth.logout()
    gate.release.set()

    assert await decision == GateDecision.redirect("/login", return_to="/contacts")


async def test_verify_superseded_by_logout_is_not_ok(tab, backend, user):
    factor = await _enrolled(tab, backend)
    gate = _Gate()
    profiles = tab.store.profiles

    class SlowProfiles:
        async def get_profile(self, user_id):
            await gate.wait()
            return await profiles.get_profile(user_id)

    tab.store.profiles = SlowProfiles()
    verify = asyncio.create_task(tab.auth.verify_mfa(_code(backend, factor.id)))
    await gate.entered.wait()
    await tab.auth.logout()
    gate.release.set()
    result = await verify

    assert not result.ok
    assert result.error.error_code == "mfa_superseded"
    assert result.profile is None
    assert tab.store.session is None
    assert tab.storage.get_item("sb-testproj-auth-token") is None
