"""Second-factor enrollment, verification and management."""
from __future__ import annotations

import pyotp
import pytest

from backend.portal.app.config import StepUpSettings
from backend.portal.app.errors import (
    InvalidStepUpCodeError,
    MissingCredentialsError,
    PortalError,
    ServerRejectedError,
    SessionExpiredError,
    StepUpStateError,
)
from backend.portal.app.models import PendingStepUp, Session
from backend.portal.app.step_up import StepUpAuthenticator, StepUpState, validate_step_up_code

from conftest import PASSWORD, PLAIN_EMAIL, STEP_UP_EMAIL


def _wrong_code(secret: str) -> str:
    valid = int(pyotp.TOTP(secret).now())
    return f"{(valid + 500_000) % 1_000_000:06d}"


async def _enrolled(portal) -> StepUpAuthenticator:
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    step_up = portal.step_up
    challenge = await step_up.begin_enrollment()
    await step_up.confirm_enrollment(pyotp.TOTP(challenge.secret).now())
    return step_up


@pytest.mark.asyncio
async def test_enrollment_issues_challenge_without_persisting_it(portal):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)

    challenge = await portal.step_up.begin_enrollment()

    assert portal.step_up.state is StepUpState.SECRET_ISSUED
    assert challenge.provisioning_uri.startswith("otpauth://totp/")
    assert "issuer=Travelsphere" in challenge.provisioning_uri
    assert "traveller" in challenge.provisioning_uri
    assert challenge.qr_code_url.startswith("data:image/png")
    assert challenge.backup_codes == ["CODE-0001", "CODE-0002", "CODE-0003"]
    stored = portal.backend.snapshot()
    assert all(challenge.secret not in value for value in stored.values())


@pytest.mark.asyncio
async def test_confirmation_sends_the_issued_secret_and_enables(portal, storefront):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    challenge = await portal.step_up.begin_enrollment()
    secret = challenge.secret

    backup_codes = await portal.step_up.confirm_enrollment(pyotp.TOTP(secret).now())

    assert backup_codes == ["CODE-0001", "CODE-0002", "CODE-0003"]
    assert portal.step_up.state is StepUpState.ENABLED
    assert portal.step_up.challenge is None
    assert challenge.discarded
    assert [call["secret"] for call in storefront.verify_calls] == [secret]


@pytest.mark.asyncio
async def test_rejected_confirmation_keeps_the_challenge(portal, storefront):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    challenge = await portal.step_up.begin_enrollment()
    secret = challenge.secret

    with pytest.raises(InvalidStepUpCodeError) as excinfo:
        await portal.step_up.confirm_enrollment(_wrong_code(secret))

    assert excinfo.value.client_side is False
    assert portal.step_up.state is StepUpState.SECRET_ISSUED
    assert portal.step_up.challenge is challenge
    assert challenge.secret == secret
    assert len(storefront.verify_calls) == 1

    await portal.step_up.confirm_enrollment(pyotp.TOTP(secret).now())
    assert portal.step_up.state is StepUpState.ENABLED


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["12345", "1234567", "12a456", "12 456", "١٢٣٤٥٦", ""])
async def test_malformed_totp_codes_never_reach_the_server(portal, storefront, code):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    await portal.step_up.begin_enrollment()

    with pytest.raises(InvalidStepUpCodeError) as excinfo:
        await portal.step_up.confirm_enrollment(code)

    assert excinfo.value.client_side is True
    assert storefront.verify_calls == []
    assert portal.step_up.state is StepUpState.SECRET_ISSUED


@pytest.mark.asyncio
async def test_re_requesting_a_secret_replaces_the_challenge(portal):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    first = await portal.step_up.begin_enrollment()
    first_secret = first.secret

    second = await portal.step_up.begin_enrollment()

    assert first.discarded
    assert second.secret != first_secret
    assert portal.step_up.state is StepUpState.SECRET_ISSUED


@pytest.mark.asyncio
async def test_cancel_discards_the_challenge(portal):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    challenge = await portal.step_up.begin_enrollment()

    portal.step_up.cancel_enrollment()

    assert portal.step_up.state is StepUpState.IDLE
    assert challenge.discarded and challenge.backup_codes == []


@pytest.mark.asyncio
async def test_logout_discards_enrollment_material(portal, storefront):
    await portal.login.login(PLAIN_EMAIL, PASSWORD)
    challenge = await portal.step_up.begin_enrollment()

    await portal.login.logout()

    assert portal.step_up.state is StepUpState.IDLE
    assert portal.step_up.challenge is None
    assert challenge.discarded and challenge.backup_codes == []
    with pytest.raises(StepUpStateError):
        await portal.step_up.confirm_enrollment("123456")
    assert storefront.verify_calls == []


@pytest.mark.asyncio
async def test_expired_session_resets_enabled_state(portal, storefront):
    step_up = await _enrolled(portal)
    storefront.expire_access_tokens()
    storefront.fail_refresh = True

    with pytest.raises(SessionExpiredError):
        await step_up.regenerate_backup_codes()

    assert step_up.state is StepUpState.IDLE
    with pytest.raises(StepUpStateError):
        await step_up.disable(PASSWORD)


@pytest.mark.asyncio
async def test_operations_outside_their_state_are_refused(portal, storefront):
    with pytest.raises(StepUpStateError):
        await portal.step_up.confirm_enrollment("123456")
    with pytest.raises(StepUpStateError):
        await portal.step_up.disable(PASSWORD)
    with pytest.raises(StepUpStateError):
        await portal.step_up.regenerate_backup_codes()

    assert storefront.verify_calls == []


@pytest.mark.asyncio
async def test_step_up_login_with_correct_code(portal, storefront):
    pending = await portal.login.login(STEP_UP_EMAIL, PASSWORD)
    assert isinstance(pending, PendingStepUp)
    assert await portal.credentials.get_access_token() is None

    code = pyotp.TOTP(storefront.totp_secrets["u-200"]).now()
    session = await portal.step_up.authenticate(pending, code)

    assert isinstance(session, Session)
    assert session.user is not None and session.user.role == "TenantAdmin"
    assert await portal.credentials.get_access_token() == session.access_token
    assert storefront.authenticate_calls == [{"userId": "u-200", "code": code, "isBackupCode": False}]
    assert portal.step_up.state is StepUpState.ENABLED


@pytest.mark.asyncio
async def test_step_up_login_with_incorrect_code(portal, storefront):
    pending = await portal.login.login(STEP_UP_EMAIL, PASSWORD)

    with pytest.raises(InvalidStepUpCodeError):
        await portal.step_up.authenticate(pending, _wrong_code(storefront.totp_secrets["u-200"]))

    assert await portal.credentials.load_session() is None
    assert storefront.refresh_calls == 0


@pytest.mark.asyncio
async def test_backup_codes_are_single_use(portal, storefront):
    pending = await portal.login.login(STEP_UP_EMAIL, PASSWORD)
    await portal.step_up.authenticate(pending, "ALPHA-1234", is_backup_code=True)
    await portal.gateway.logout()

    pending = await portal.login.login(STEP_UP_EMAIL, PASSWORD)
    with pytest.raises(InvalidStepUpCodeError):
        await portal.step_up.authenticate(pending, "ALPHA-1234", is_backup_code=True)


@pytest.mark.asyncio
@pytest.mark.parametrize("code", ["short", "ALPHA_1234", "ALPHA 1234!", "A" * 33])
async def test_malformed_backup_codes_never_reach_the_server(portal, storefront, code):
    pending = await portal.login.login(STEP_UP_EMAIL, PASSWORD)

    with pytest.raises(InvalidStepUpCodeError) as excinfo:
        await portal.step_up.authenticate(pending, code, is_backup_code=True)

    assert excinfo.value.client_side is True
    assert storefront.authenticate_calls == []


@pytest.mark.asyncio
async def test_disable_returns_to_idle(portal):
    step_up = await _enrolled(portal)

    await step_up.disable(PASSWORD)

    assert step_up.state is StepUpState.IDLE
    status = await step_up.status()
    assert status.enabled is False


@pytest.mark.asyncio
async def test_failed_disable_stays_enabled(portal):
    step_up = await _enrolled(portal)

    with pytest.raises(ServerRejectedError) as excinfo:
        await step_up.disable("wrong password")
    with pytest.raises(MissingCredentialsError) as blank:
        await step_up.disable("")

    assert isinstance(blank.value, PortalError)
    assert excinfo.value.status_code == 400
    assert step_up.state is StepUpState.ENABLED


@pytest.mark.asyncio
async def test_regenerate_backup_codes(portal, storefront):
    step_up = await _enrolled(portal)

    codes = await step_up.regenerate_backup_codes()

    assert len(codes) == 4 and all(code.startswith("NEW-") for code in codes)
    assert step_up.state is StepUpState.ENABLED
    status = await step_up.status()
    assert status.backup_codes_remaining == 4


@pytest.mark.asyncio
async def test_status_synchronises_resting_state(portal, storefront):
    pending = await portal.login.login(STEP_UP_EMAIL, PASSWORD)
    await portal.step_up.authenticate(pending, pyotp.TOTP(storefront.totp_secrets["u-200"]).now())
    fresh = StepUpAuthenticator(portal.gateway)
    assert fresh.state is StepUpState.IDLE

    status = await fresh.status()

    assert status.enabled is True
    assert status.backup_codes_remaining == 2
    assert fresh.state is StepUpState.ENABLED


@pytest.mark.parametrize(
    ("code", "is_backup", "expected"),
    [
        (" 123456 ", False, "123456"),
        ("ABCD-1234", True, "ABCD-1234"),
        ("abcd1234", True, "abcd1234"),
    ],
)
def test_validate_accepts_well_formed_codes(code, is_backup, expected):
    assert validate_step_up_code(code, is_backup_code=is_backup) == expected


def test_validate_respects_configured_lengths():
    config = StepUpSettings(backup_code_min_length=10)

    with pytest.raises(InvalidStepUpCodeError):
        validate_step_up_code("ABCD-1234", is_backup_code=True, config=config)
