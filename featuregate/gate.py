"""Client-side orchestration around a protected action.

The gate consults the cache only to skip the network for features the
catalog marks free. Every other feature goes through the server's decision
endpoint, and anything short of an explicit `ok` from the server (denial,
timeout, transport error, garbage response) means the action does not run.
The cache is never a fallback for a failed check.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .cache import EntitlementCache
from .client import DEFAULT_TIMEOUT, EntitlementApiClient
from .constants import Reason
from .schemas import AccessVerdict

logger = logging.getLogger(__name__)


class InvocationState(str, Enum):
    IDLE = "idle"
    CHECKING = "checking"
    GRANTED = "granted"
    EXECUTING = "executing"
    DENIED = "denied"
    ERROR = "error"
    DONE = "done"


_TRANSITIONS: dict[InvocationState, frozenset[InvocationState]] = {
    InvocationState.IDLE: frozenset({InvocationState.CHECKING, InvocationState.GRANTED}),
    InvocationState.CHECKING: frozenset(
        {InvocationState.GRANTED, InvocationState.DENIED, InvocationState.ERROR}
    ),
    InvocationState.ERROR: frozenset({InvocationState.DENIED}),
    InvocationState.GRANTED: frozenset({InvocationState.EXECUTING}),
    InvocationState.EXECUTING: frozenset({InvocationState.DONE}),
    InvocationState.DENIED: frozenset({InvocationState.DONE}),
    InvocationState.DONE: frozenset(),
}


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class Invocation:
    """One pass through the gate. Never reused."""

    feature_key: str
    state: InvocationState = InvocationState.IDLE
    history: list[InvocationState] = field(default_factory=lambda: [InvocationState.IDLE])

    def advance(self, state: InvocationState) -> None:
        if state not in _TRANSITIONS[self.state] or state in self.history:
            raise InvalidTransitionError(f"{self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


@dataclass(frozen=True)
class GateResult:
    feature_key: str
    verdict: AccessVerdict
    history: tuple[InvocationState, ...]
    value: Any = None

    @property
    def allowed(self) -> bool:
        return self.verdict.granted

    @property
    def reason(self) -> Reason:
        return self.verdict.reason


class AccessGate:
    def __init__(
        self,
        cache: EntitlementCache,
        api: EntitlementApiClient,
        *,
        check_timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.cache = cache
        self.api = api
        self.check_timeout = check_timeout
        self._notifications: set[asyncio.Task] = set()

    async def invoke(self, feature_key: str, action: Callable[[], Any]) -> GateResult:
        """Run `action` if access is granted.

        Exceptions raised by `action` itself propagate to the caller.
        """
        invocation = Invocation(feature_key)
        feature = self.cache.info(feature_key)

        if feature is not None and not feature.is_paid and self.cache.advisory_access(feature_key):
            invocation.advance(InvocationState.GRANTED)
            value = await self._execute(invocation, action)
            return self._result(invocation, AccessVerdict.grant(), value)

        invocation.advance(InvocationState.CHECKING)
        verdict = await self._verify(invocation)
        if not verdict.granted:
            invocation.advance(InvocationState.DENIED)
            invocation.advance(InvocationState.DONE)
            return self._result(invocation, verdict)

        invocation.advance(InvocationState.GRANTED)
        value = await self._execute(invocation, action)
        self._notify_usage(feature_key)
        return self._result(invocation, verdict, value)

    async def _verify(self, invocation: Invocation) -> AccessVerdict:
        try:
            verdict = await asyncio.wait_for(
                self.api.check_access(invocation.feature_key),
                timeout=self.check_timeout,
            )
        except Exception as exc:
            logger.warning(
                "Access check could not complete; denying",
                extra={"feature_key": invocation.feature_key, "error": repr(exc)},
            )
            invocation.advance(InvocationState.ERROR)
            return AccessVerdict.deny(Reason.VERIFICATION_FAILED)

        if verdict.allow and verdict.reason is not Reason.OK:
            # An allow with a non-ok reason is not a grant.
            return AccessVerdict.deny(Reason.VERIFICATION_FAILED)
        return verdict

    async def _execute(self, invocation: Invocation, action: Callable[[], Any]) -> Any:
        invocation.advance(InvocationState.EXECUTING)
        try:
            value = action()
            if inspect.isawaitable(value):
                value = await value
            return value
        finally:
            invocation.advance(InvocationState.DONE)

    def _notify_usage(self, feature_key: str) -> None:
        task = asyncio.create_task(self._record_usage(feature_key, uuid.uuid4().hex))
        self._notifications.add(task)
        task.add_done_callback(self._notifications.discard)

    async def _record_usage(self, feature_key: str, idempotency_key: str) -> None:
        try:
            await self.api.record_usage(feature_key, idempotency_key)
        except Exception as exc:
            logger.warning(
                "Usage notification failed",
                extra={"feature_key": feature_key, "error": repr(exc)},
            )

    async def drain(self) -> None:
        """Wait for outstanding usage notifications (shutdown, tests)."""
        if self._notifications:
            await asyncio.gather(*list(self._notifications), return_exceptions=True)

    @staticmethod
    def _result(invocation: Invocation, verdict: AccessVerdict, value: Any = None) -> GateResult:
        return GateResult(
            feature_key=invocation.feature_key,
            verdict=verdict,
            history=tuple(invocation.history),
            value=value,
        )
