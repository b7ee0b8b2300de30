"""
Step-Up Session Controller for Mandi Authz.

Gates sensitive screens and actions behind a second factor (OTP or backup
code) on top of the baseline permission grant.

Flow per check:
    IDLE -> CHECKING -> PASSED          (not locked, or server says CLEAR)
                     -> ENROLL_REQUIRED (caller must set up 2FA first)
                     -> OTP_PENDING     (prompt open, waiting for a code)
         -> RESOLVED

Only one prompt is open at a time. Checks that need OTP while a prompt is
already open queue on it and resolve together with it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from mandi_authz.audit import AuthzAuditor
from mandi_authz.config import AuthzSettings
from mandi_authz.core.correlation import CorrelatedLogger, check_context
from mandi_authz.core.errors import ApiError
from mandi_authz.core.keys import Action, canonicalize_action, canonicalize_resource_key
from mandi_authz.core.models import AdminIdentity, StepUpSession
from mandi_authz.engines.stepup_policy import StepUpPolicyCache
from mandi_authz.storage import ClientSessionState

logger = CorrelatedLogger(logging.getLogger(__name__))

STEPUP_SESSION_HEADER = "X-StepUp-Session"

ENROLL_MANDATORY_MESSAGE = "2FA enrollment is mandatory before you can continue."


class StepUpState(str, Enum):
    """Lifecycle of a gated check."""

    IDLE = "idle"
    CHECKING = "checking"
    PASSED = "passed"
    ENROLL_REQUIRED = "enroll_required"
    OTP_PENDING = "otp_pending"
    RESOLVED = "resolved"


class StepUpMode(str, Enum):
    """Server verdict of a step-up inquiry."""

    CLEAR = "CLEAR"
    ENROLL_MANDATORY = "ENROLL_MANDATORY"
    OTP_REQUIRED = "OTP_REQUIRED"

    @classmethod
    def parse(cls, value: Any) -> StepUpMode:
        """Unknown or missing modes mean no further action is needed."""
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.CLEAR


class StepUpSource(str, Enum):
    """Where a check originated."""

    MENU = "menu"
    ROUTE = "route"
    GUARD = "guard"
    CLIENT = "client"  # challenge raised by the server on an API call
    OTHER = "other"


class NotifyLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class StepUpInquiry:
    """What the server needs to decide whether a check may pass."""

    identity: AdminIdentity
    resource_key: str
    action: str
    browser_session_id: str
    session_token: str | None = None
    target_username: str | None = None
    source: StepUpSource = StepUpSource.OTHER


@dataclass(frozen=True)
class StepUpVerification:
    """A code submitted from the prompt."""

    identity: AdminIdentity
    browser_session_id: str
    otp: str | None = None
    backup_code: str | None = None

    @property
    def method(self) -> str:
        return "otp" if self.otp else "backup_code"


# Where the verdict may sit inside the response envelope, in lookup order.
_VERDICT_PATHS: tuple[tuple[str, ...], ...] = (
    ("response", "stepup"),
    ("data", "stepup"),
    ("stepup",),
    ("response",),
    ("data",),
    (),
)


@dataclass(frozen=True)
class StepUpVerdict:
    """Server answer to a step-up inquiry."""

    mode: StepUpMode
    message: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_response(cls, payload: Any) -> StepUpVerdict:
        """
        Read the verdict from a (possibly wrapped) response body.

        A body without a mode is treated as CLEAR.

        Args:
            payload: Raw response body

        Returns:
            StepUpVerdict
        """
        for path in _VERDICT_PATHS:
            candidate = payload
            for part in path:
                candidate = candidate.get(part) if isinstance(candidate, dict) else None
            if isinstance(candidate, dict) and "mode" in candidate:
                message = candidate.get("message") or candidate.get("description")
                return cls(
                    mode=StepUpMode.parse(candidate.get("mode")),
                    message=str(message) if message else None,
                    details=dict(candidate),
                )
        return cls(mode=StepUpMode.CLEAR)


@dataclass
class StepUpCheck:
    """Bookkeeping for one gated check."""

    check_id: str
    resource_key: str
    action: str
    source: StepUpSource
    state: StepUpState = StepUpState.IDLE
    allowed: bool | None = None

    def advance(self, state: StepUpState) -> None:
        logger.debug("Step-up check %s: %s -> %s", self.check_id, self.state.value, state.value)
        self.state = state

    def resolve(self, allowed: bool) -> bool:
        self.allowed = allowed
        self.advance(StepUpState.RESOLVED)
        return allowed


@dataclass
class StepUpPrompt:
    """The open verification prompt and the checks waiting on it."""

    resource_key: str
    action: str
    source: StepUpSource
    check_id: str
    opened_at: float = field(default_factory=time.time)
    waiters: list[asyncio.Future[bool]] = field(default_factory=list)
    error: str | None = None
    verifying: bool = False

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self.waiters if not waiter.done())


@runtime_checkable
class StepUpApi(Protocol):
    """Server side of step-up, implemented by AdminApiClient."""

    async def require_step_up(self, inquiry: StepUpInquiry) -> StepUpVerdict:
        """Ask whether a check may pass."""
        ...

    async def verify_step_up(self, verification: StepUpVerification) -> str | None:
        """Submit a code; returns the new step-up session token."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """Surfaces messages to the admin (toast, snackbar, console)."""

    def notify(self, message: str, level: NotifyLevel = NotifyLevel.INFO) -> None:
        ...


class LoggingNotifier:
    """Notifier that writes messages to a logger."""

    _LEVELS = {
        NotifyLevel.INFO: logging.INFO,
        NotifyLevel.SUCCESS: logging.INFO,
        NotifyLevel.WARNING: logging.WARNING,
        NotifyLevel.ERROR: logging.ERROR,
    }

    def __init__(self, logger_name: str = "mandi_authz.notify") -> None:
        self._logger = logging.getLogger(logger_name)

    def notify(self, message: str, level: NotifyLevel = NotifyLevel.INFO) -> None:
        self._logger.log(self._LEVELS.get(level, logging.INFO), message)


Navigator = Callable[[str], None]


def _no_navigation(route: str) -> None:
    logger.info("No navigator configured; would redirect to %s", route)


class StepUpSessionController:
    """
    Owns the step-up flow for one login session.

    Usage:
        controller = StepUpSessionController(client, policy_cache, state)
        controller.bind_identity(identity)

        if await controller.ensure_step_up("payments_log.list"):
            # render the screen

        # from the prompt UI
        await controller.submit_code(otp="123456")
    """

    def __init__(
        self,
        api: StepUpApi,
        policy: StepUpPolicyCache,
        state: ClientSessionState,
        *,
        settings: AuthzSettings | None = None,
        notifier: Notifier | None = None,
        navigator: Navigator | None = None,
        auditor: AuthzAuditor | None = None,
    ) -> None:
        """
        Initialize controller.

        Args:
            api: Step-up inquiry and verification endpoints
            policy: Locked-key cache of this session
            state: Client storage holding the step-up token
            settings: Engine settings (enrollment route, OTP length)
            notifier: Where user-facing messages go
            navigator: Called with a route for redirects
            auditor: Optional audit sink
        """
        self._api = api
        self._policy = policy
        self._state = state
        self._settings = settings or AuthzSettings()
        self._notifier: Notifier = notifier or LoggingNotifier()
        self._navigate: Navigator = navigator or _no_navigation
        self._auditor = auditor

        self._identity: AdminIdentity | None = None
        self._prompt: StepUpPrompt | None = None
        self._last_check: StepUpCheck | None = None
        self._verified_version = 0

    # Properties

    @property
    def identity(self) -> AdminIdentity | None:
        return self._identity

    @property
    def policy(self) -> StepUpPolicyCache:
        return self._policy

    @property
    def pending_prompt(self) -> StepUpPrompt | None:
        """The open prompt, if any."""
        return self._prompt

    @property
    def state(self) -> StepUpState:
        """State of the most recent check (OTP_PENDING while a prompt is open)."""
        if self._prompt is not None:
            return StepUpState.OTP_PENDING
        if self._last_check is None:
            return StepUpState.IDLE
        return self._last_check.state

    @property
    def last_check(self) -> StepUpCheck | None:
        return self._last_check

    @property
    def verified_version(self) -> int:
        """Bumped on every successful verification."""
        return self._verified_version

    def bind_identity(self, identity: AdminIdentity | None) -> None:
        """Set the admin on whose behalf checks are made."""
        self._identity = identity

    # Checks

    async def load_policy(self) -> frozenset[str]:
        """Load the locked-key policy for the bound admin (no-op when signed out)."""
        if self._identity is None:
            return self._policy.snapshot
        return await self._policy.load(self._identity)

    def is_locked(self, resource_key: str | None) -> bool:
        """Whether the key requires step-up under the loaded policy."""
        return self._policy.is_locked(resource_key)

    async def ensure_step_up(
        self,
        resource_key: str | None,
        action: str | Action = Action.VIEW,
        source: StepUpSource = StepUpSource.OTHER,
        *,
        target_username: str | None = None,
    ) -> bool:
        """
        Make sure the caller has passed step-up for a resource.

        Returns immediately for keys the policy does not lock. Otherwise asks
        the server and, when it wants OTP, waits until the prompt is resolved.
        Never raises for server or network failures.

        Args:
            resource_key: Resource key (any spelling)
            action: Action being attempted
            source: Where the check comes from
            target_username: Admin user the action targets, if any

        Returns:
            True if the check passed
        """
        key = canonicalize_resource_key(resource_key)
        if not key:
            return True
        folded = canonicalize_action(action) or Action.VIEW.value

        identity = self._identity
        # An invalidate() during the load leaves the cache empty; trust the fetched set.
        locked = await self.load_policy()

        if key not in locked:
            return True
        return await self._run_check(identity, key, folded, source, target_username)

    async def answer_challenge(
        self,
        resource_key: str | None,
        action: str | Action = Action.VIEW,
    ) -> bool:
        """
        Run step-up because the server challenged an API call.

        The local policy is not consulted; the server has already decided
        the call needs step-up. A challenge without a usable key cannot be
        answered and is denied.

        Args:
            resource_key: Key derived from the challenged request
            action: Action being attempted

        Returns:
            True if the check passed and the call may be retried
        """
        key = canonicalize_resource_key(resource_key)
        if not key:
            logger.warning("Step-up challenge without a resource key; not retrying")
            return False
        folded = canonicalize_action(action) or Action.VIEW.value
        return await self._run_check(self._identity, key, folded, StepUpSource.CLIENT, None)

    async def _run_check(
        self,
        identity: AdminIdentity | None,
        key: str,
        folded: str,
        source: StepUpSource,
        target_username: str | None,
    ) -> bool:
        with check_context(resource_key=key, action=folded, source=source.value) as check_id:
            check = StepUpCheck(check_id=check_id, resource_key=key, action=folded, source=source)
            self._last_check = check

            if identity is None:
                logger.warning("Step-up required for %s but no admin is signed in", key)
                return check.resolve(False)

            check.advance(StepUpState.CHECKING)
            inquiry = self._inquiry(identity, key, folded, source, target_username)
            try:
                verdict = await self._api.require_step_up(inquiry)
            except ApiError as exc:
                return self._inquiry_failed(check, identity, exc.message)
            except Exception:
                logger.error("Step-up inquiry for %s crashed", key, exc_info=True)
                return self._inquiry_failed(check, identity, "Unable to verify access right now.")

            logger.info("Step-up verdict for %s/%s: %s", key, folded, verdict.mode.value)

            if verdict.mode is StepUpMode.CLEAR:
                check.advance(StepUpState.PASSED)
                return check.resolve(True)

            if verdict.mode is StepUpMode.ENROLL_MANDATORY:
                check.advance(StepUpState.ENROLL_REQUIRED)
                self._require_enrollment(identity, key, folded)
                return check.resolve(False)

            check.advance(StepUpState.OTP_PENDING)
            if self._auditor:
                self._auditor.log_stepup_required(
                    username=identity.username, resource=key, action=folded
                )
            waiter = self._join_prompt(check)

        allowed = await waiter
        return check.resolve(allowed)

    def _inquiry(
        self,
        identity: AdminIdentity,
        key: str,
        action: str,
        source: StepUpSource,
        target_username: str | None,
    ) -> StepUpInquiry:
        return StepUpInquiry(
            identity=identity,
            resource_key=key,
            action=action,
            browser_session_id=self._state.get_browser_session_id(),
            session_token=self._state.get_stepup_token(),
            target_username=target_username,
            source=source,
        )

    def _inquiry_failed(self, check: StepUpCheck, identity: AdminIdentity, message: str) -> bool:
        logger.warning("Step-up inquiry for %s failed: %s", check.resource_key, message)
        self._notifier.notify(message or "Unable to verify access right now.", NotifyLevel.ERROR)
        if self._auditor:
            self._auditor.log_stepup_failed(
                username=identity.username,
                reason=message,
                resource=check.resource_key,
                details={"stage": "inquiry"},
            )
        return check.resolve(False)

    def _require_enrollment(self, identity: AdminIdentity, key: str, action: str) -> None:
        logger.warning("2FA enrollment required before %s", key)
        self._notifier.notify(ENROLL_MANDATORY_MESSAGE, NotifyLevel.WARNING)
        if self._auditor:
            self._auditor.log_enroll_required(username=identity.username, resource=key, action=action)
        self._navigate(self._settings.enroll_route)

    def _join_prompt(self, check: StepUpCheck) -> asyncio.Future[bool]:
        waiter: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        if self._prompt is None:
            self._prompt = StepUpPrompt(
                resource_key=check.resource_key,
                action=check.action,
                source=check.source,
                check_id=check.check_id,
            )
            logger.info("Opening step-up prompt for %s", check.resource_key)
        else:
            logger.info(
                "Queueing %s behind open step-up prompt for %s",
                check.resource_key,
                self._prompt.resource_key,
            )
        self._prompt.waiters.append(waiter)
        return waiter

    def _close_prompt(self, allowed: bool) -> int:
        """Close the open prompt and resolve its waiters. Returns waiters resolved."""
        prompt = self._prompt
        self._prompt = None
        if prompt is None:
            return 0
        resolved = 0
        for waiter in prompt.waiters:
            if not waiter.done():
                waiter.set_result(allowed)
                resolved += 1
        return resolved

    # Prompt actions

    async def submit_code(self, otp: str | None = None, backup_code: str | None = None) -> bool:
        """
        Submit a code from the open prompt.

        A malformed code keeps the prompt open. A verified code persists the
        new step-up token and releases every queued check; a rejected code
        releases them denied and closes the prompt.

        Args:
            otp: One-time code
            backup_code: Backup code (used when no OTP is given)

        Returns:
            True if verification succeeded
        """
        prompt = self._prompt
        if prompt is None:
            logger.warning("Code submitted with no step-up prompt open")
            return False
        if prompt.verifying:
            return False

        otp_value = (otp or "").strip()
        backup_value = (backup_code or "").strip()
        length = self._settings.otp_length

        if otp_value and not (otp_value.isdigit() and len(otp_value) == length):
            prompt.error = f"Enter a valid {length}-digit code."
            self._notifier.notify(prompt.error, NotifyLevel.WARNING)
            return False
        if not otp_value and not backup_value:
            prompt.error = "Enter a verification code or a backup code."
            self._notifier.notify(prompt.error, NotifyLevel.WARNING)
            return False

        identity = self._identity
        if identity is None:
            logger.warning("Code submitted with no admin signed in")
            self._close_prompt(False)
            return False

        verification = StepUpVerification(
            identity=identity,
            browser_session_id=self._state.get_browser_session_id(),
            otp=otp_value or None,
            backup_code=None if otp_value else backup_value,
        )

        with check_context(prompt.check_id, resource_key=prompt.resource_key):
            prompt.error = None
            prompt.verifying = True
            failure: str | None = None
            token: str | None = None
            try:
                token = await self._api.verify_step_up(verification)
            except ApiError as exc:
                failure = exc.message
            except Exception:
                logger.error("Step-up verification crashed", exc_info=True)
                failure = "Verification failed. Please try again."
            finally:
                prompt.verifying = False

            if token:
                self._state.store_stepup_session(StepUpSession(token=token))
                self.mark_verified()
                if self._auditor:
                    self._auditor.log_stepup_verified(
                        username=identity.username, method=verification.method
                    )
                if self._prompt is prompt:
                    released = self._close_prompt(True)
                    logger.info("Step-up verified; released %d waiting checks", released)
                self._notifier.notify("Verification successful.", NotifyLevel.SUCCESS)
                return True

            failure = failure or "Invalid verification code."
            logger.warning("Step-up verification failed: %s", failure)
            self._notifier.notify(failure, NotifyLevel.ERROR)
            if self._auditor:
                self._auditor.log_stepup_failed(
                    username=identity.username,
                    reason=failure,
                    resource=prompt.resource_key,
                    details={"stage": "verify", "method": verification.method},
                )
            if self._prompt is prompt:
                self._close_prompt(False)
            return False

    async def retry_inquiry(self) -> StepUpMode | None:
        """
        Ask the server again for the resource behind the open prompt.

        Releases the prompt when the server now answers CLEAR (e.g. the
        admin verified in another tab) and redirects on ENROLL_MANDATORY.

        Returns:
            The new verdict mode, or None if no prompt is open or the
            inquiry failed
        """
        prompt = self._prompt
        identity = self._identity
        if prompt is None or identity is None:
            return None

        with check_context(prompt.check_id, resource_key=prompt.resource_key):
            inquiry = self._inquiry(identity, prompt.resource_key, prompt.action, prompt.source, None)
            try:
                verdict = await self._api.require_step_up(inquiry)
            except ApiError as exc:
                prompt.error = exc.message
                self._notifier.notify(exc.message, NotifyLevel.ERROR)
                return None
            except Exception:
                logger.error("Step-up retry crashed", exc_info=True)
                prompt.error = "Unable to verify access right now."
                self._notifier.notify(prompt.error, NotifyLevel.ERROR)
                return None

            logger.info("Step-up retry verdict for %s: %s", prompt.resource_key, verdict.mode.value)
            if self._prompt is not prompt:
                return verdict.mode

            if verdict.mode is StepUpMode.CLEAR:
                self._close_prompt(True)
            elif verdict.mode is StepUpMode.ENROLL_MANDATORY:
                self._close_prompt(False)
                self._require_enrollment(identity, prompt.resource_key, prompt.action)
            return verdict.mode

    def cancel(self) -> None:
        """Dismiss the prompt; queued checks resolve denied."""
        if self._prompt is None:
            return
        released = self._close_prompt(False)
        logger.info("Step-up prompt dismissed; denied %d waiting checks", released)

    # Session

    def mark_verified(self) -> int:
        """Record a verification (bumps verified_version)."""
        self._verified_version += 1
        return self._verified_version

    def session_headers(self) -> dict[str, str]:
        """Headers carrying the held step-up token."""
        token = self._state.get_stepup_token()
        if not token:
            return {}
        return {STEPUP_SESSION_HEADER: token}

    def reset(self) -> None:
        """Forget everything (logout): prompt, token, identity."""
        self.cancel()
        self._state.clear_stepup_session()
        self._identity = None
        self._last_check = None
        self._verified_version = 0
