"""Secondary-factor (TOTP and backup code) enrollment and verification."""
from __future__ import annotations

import enum
import re
from typing import Any, Mapping

import pyotp
from pydantic import ValidationError

from .auth import establish_session
from .config import StepUpSettings
from .errors import (
    InvalidStepUpCodeError,
    MissingCredentialsError,
    PortalError,
    ServerRejectedError,
    StepUpStateError,
)
from .gateway import RequestGateway
from .logging import get_logger
from .models import (
    BackupCodesResponse,
    PendingStepUp,
    Session,
    StepUpChallenge,
    TwoFactorSecret,
    TwoFactorStatus,
)


logger = get_logger(__name__)

_REJECTED_CODE_STATUSES = frozenset({400, 401, 422})
_BACKUP_CODE_PATTERN = re.compile(r"[A-Za-z0-9-]+", re.ASCII)


class StepUpState(str, enum.Enum):
    IDLE = "idle"
    SECRET_ISSUED = "secret_issued"
    VERIFYING = "verifying"
    ENABLED = "enabled"
    DISABLING = "disabling"
    REGENERATING_CODES = "regenerating_codes"


def validate_step_up_code(
    code: str,
    *,
    is_backup_code: bool = False,
    config: StepUpSettings | None = None,
) -> str:
    """Return the trimmed ``code`` or raise before anything reaches the network."""

    config = config or StepUpSettings()
    candidate = code.strip() if isinstance(code, str) else ""
    if is_backup_code:
        valid = (
            config.backup_code_min_length <= len(candidate) <= config.backup_code_max_length
            and _BACKUP_CODE_PATTERN.fullmatch(candidate) is not None
        )
        if not valid:
            raise InvalidStepUpCodeError("Backup code format is invalid", client_side=True)
        return candidate
    if len(candidate) != config.totp_digits or not all("0" <= ch <= "9" for ch in candidate):
        raise InvalidStepUpCodeError(
            f"Verification code must be exactly {config.totp_digits} digits",
            client_side=True,
        )
    return candidate


def _as_mapping(payload: Any) -> Mapping[str, Any]:
    if not isinstance(payload, Mapping):
        raise PortalError("Two-factor response was malformed")
    return payload


class StepUpAuthenticator:
    """State machine for enrolling, verifying and managing the second factor.

    Enrollment material only lives on the current :class:`StepUpChallenge`
    and is discarded as soon as the flow resolves; nothing about it is
    persisted.
    """

    def __init__(
        self,
        gateway: RequestGateway,
        config: StepUpSettings | None = None,
        *,
        enabled: bool = False,
    ) -> None:
        self._gateway = gateway
        self._config = config or StepUpSettings()
        self._state = StepUpState.ENABLED if enabled else StepUpState.IDLE
        self._challenge: StepUpChallenge | None = None
        gateway.add_session_listener(self._session_ended)

    @property
    def state(self) -> StepUpState:
        return self._state

    @property
    def challenge(self) -> StepUpChallenge | None:
        return self._challenge

    def _require(self, *allowed: StepUpState) -> None:
        if self._state not in allowed:
            names = ", ".join(state.value for state in allowed)
            raise StepUpStateError(f"Operation not allowed in state {self._state.value!r} (expected {names})")

    def _endpoint(self, action: str) -> str:
        return self._gateway.config.two_factor_endpoint(action)

    def _drop_challenge(self) -> None:
        if self._challenge is not None:
            self._challenge.discard()
        self._challenge = None

    async def _account_name(self, account_name: str | None) -> str:
        if account_name:
            return account_name
        session = await self._gateway.credentials.load_session()
        if session is not None and session.user is not None:
            return session.user.email or session.user.id
        return "account"

    async def begin_enrollment(self, account_name: str | None = None) -> StepUpChallenge:
        self._require(StepUpState.IDLE, StepUpState.SECRET_ISSUED)
        payload = await self._gateway.fetch_json("POST", self._endpoint("generate"))
        try:
            issued = TwoFactorSecret.model_validate(_as_mapping(payload))
        except ValidationError as exc:
            raise PortalError("Two-factor secret response was malformed") from exc

        if issued.qr_code_url and issued.qr_code_url.startswith("otpauth://"):
            uri = issued.qr_code_url
        else:
            uri = pyotp.TOTP(issued.secret, digits=self._config.totp_digits).provisioning_uri(
                name=await self._account_name(account_name),
                issuer_name=self._config.issuer_name,
            )
        self._drop_challenge()
        self._challenge = StepUpChallenge(
            secret=issued.secret,
            provisioning_uri=uri,
            qr_code_url=issued.qr_code_url,
            backup_codes=list(issued.backup_codes),
        )
        self._state = StepUpState.SECRET_ISSUED
        logger.info("step_up.secret_issued", backup_codes=len(issued.backup_codes))
        return self._challenge

    async def confirm_enrollment(self, code: str) -> list[str]:
        """Verify ``code`` against the issued secret; returns the backup codes on success."""

        self._require(StepUpState.SECRET_ISSUED)
        challenge = self._challenge
        if challenge is None or challenge.discarded:
            raise StepUpStateError("No enrollment challenge is active")
        cleaned = validate_step_up_code(code, config=self._config)

        self._state = StepUpState.VERIFYING
        try:
            await self._gateway.post(
                self._endpoint("verify"),
                json={"secret": challenge.secret, "code": cleaned},
            )
        except ServerRejectedError as exc:
            self._restore(StepUpState.SECRET_ISSUED, StepUpState.VERIFYING)
            if exc.status_code in _REJECTED_CODE_STATUSES:
                logger.info("step_up.verify_rejected", status_code=exc.status_code)
                raise InvalidStepUpCodeError(exc.detail or "Invalid verification code") from exc
            raise
        except BaseException:
            self._restore(StepUpState.SECRET_ISSUED, StepUpState.VERIFYING)
            raise

        backup_codes = list(challenge.backup_codes)
        challenge.verified = True
        self._drop_challenge()
        self._state = StepUpState.ENABLED
        logger.info("step_up.enabled")
        return backup_codes

    def cancel_enrollment(self) -> None:
        self._require(StepUpState.IDLE, StepUpState.SECRET_ISSUED)
        self._drop_challenge()
        self._state = StepUpState.IDLE

    def reset(self) -> None:
        """Forget any enrollment material and return to IDLE regardless of state."""

        self._drop_challenge()
        self._state = StepUpState.IDLE

    def _session_ended(self, reason: str | None) -> None:
        if self._state is not StepUpState.IDLE or self._challenge is not None:
            logger.info("step_up.reset", reason=reason, state=self._state.value)
        self.reset()

    def _restore(self, previous: StepUpState, expected: StepUpState) -> None:
        # A session that ended mid-call has already reset the flow.
        if self._state is expected:
            self._state = previous

    async def authenticate(
        self,
        pending: PendingStepUp,
        code: str,
        *,
        is_backup_code: bool = False,
        origin: str | None = None,
    ) -> Session:
        """Complete a login that stopped at the second factor."""

        cleaned = validate_step_up_code(code, is_backup_code=is_backup_code, config=self._config)
        try:
            payload = await self._gateway.fetch_json(
                "POST",
                self._endpoint("authenticate"),
                json={"userId": pending.user_id, "code": cleaned, "isBackupCode": is_backup_code},
                headers={"Authorization": f"Bearer {pending.intermediate_token}"},
                refreshable=False,
                origin=origin,
            )
        except ServerRejectedError as exc:
            if exc.status_code in _REJECTED_CODE_STATUSES:
                logger.info("step_up.authenticate_rejected", user_id=pending.user_id, backup=is_backup_code)
                raise InvalidStepUpCodeError(exc.detail or "Invalid verification code") from exc
            raise

        session = await establish_session(self._gateway, _as_mapping(payload), user=pending.user, origin=origin)
        self._drop_challenge()
        self._state = StepUpState.ENABLED
        logger.info("step_up.authenticated", user_id=pending.user_id, backup=is_backup_code)
        return session

    async def disable(self, password: str) -> None:
        self._require(StepUpState.ENABLED)
        if not password:
            raise MissingCredentialsError("Password is required to disable two-factor authentication")
        self._state = StepUpState.DISABLING
        try:
            await self._gateway.post(self._endpoint("disable"), json={"password": password})
        except BaseException:
            self._restore(StepUpState.ENABLED, StepUpState.DISABLING)
            raise
        self._drop_challenge()
        self._state = StepUpState.IDLE
        logger.info("step_up.disabled")

    async def regenerate_backup_codes(self) -> list[str]:
        self._require(StepUpState.ENABLED)
        self._state = StepUpState.REGENERATING_CODES
        try:
            payload = await self._gateway.fetch_json("POST", self._endpoint("backup-codes/regenerate"))
            codes = BackupCodesResponse.model_validate(_as_mapping(payload)).backup_codes
        except ValidationError as exc:
            self._restore(StepUpState.ENABLED, StepUpState.REGENERATING_CODES)
            raise PortalError("Backup code response was malformed") from exc
        except BaseException:
            self._restore(StepUpState.ENABLED, StepUpState.REGENERATING_CODES)
            raise
        self._state = StepUpState.ENABLED
        logger.info("step_up.backup_codes_regenerated", count=len(codes))
        return codes

    async def status(self) -> TwoFactorStatus:
        payload = await self._gateway.fetch_json("GET", self._endpoint("status"))
        try:
            status = TwoFactorStatus.model_validate(_as_mapping(payload))
        except ValidationError as exc:
            raise PortalError("Two-factor status response was malformed") from exc
        if self._state in (StepUpState.IDLE, StepUpState.ENABLED):
            self._state = StepUpState.ENABLED if status.enabled else StepUpState.IDLE
        return status


__all__ = ["StepUpAuthenticator", "StepUpState", "validate_step_up_code"]
