"""Connectivity state machine -- Online / Degraded / Offline with hysteresis.

Fed once per ingestion tick with the aggregate fetch outcome and the age of
the stalest tracked symbol. A single dropped request degrades at most to
Degraded; recovering to Online needs several consecutive successes on
fresh data, so the dashboard label does not flicker.

Offline comes in two flavours:
- automatic (repeated or hard failures): the next Success moves back to
  Degraded;
- manual (user toggle): sticky, fetch results are ignored until the user
  toggles it off.
"""

import math

from tickerwatch.logging import get_logger
from tickerwatch.models import ConnectivityState, FetchOutcome

logger = get_logger(__name__)


def format_age(age_seconds: float | None) -> str:
    """Human-readable data age: 'never', 'just now', '5m ago', '2h ago', '3d ago'."""
    if age_seconds is None or math.isinf(age_seconds):
        return "never"
    if age_seconds < 60:
        return "just now"
    if age_seconds < 3600:
        return f"{int(age_seconds // 60)}m ago"
    if age_seconds < 86400:
        return f"{int(age_seconds // 3600)}h ago"
    return f"{int(age_seconds // 86400)}d ago"


class FreshnessStateMachine:
    """Owns the process-wide ConnectivityState.

    Nothing else mutates the state: the ingestion coordinator feeds
    observe() and forwards the user's offline toggle.

    Args:
        refresh_interval: Poll interval in seconds; staleness bounds derive from it.
        n_recover: Consecutive successes needed for Degraded -> Online.
        n_fail: Consecutive failures that turn Degraded into Offline.
    """

    def __init__(
        self,
        refresh_interval: float,
        n_recover: int = 2,
        n_fail: int = 3,
    ) -> None:
        self._refresh_interval = refresh_interval
        self._n_recover = n_recover
        self._n_fail = n_fail
        self._state = ConnectivityState.ONLINE
        self._manual_offline = False
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_outcome: FetchOutcome | None = None
        self._last_success_ms: dict[str, int] = {}

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def manual_offline(self) -> bool:
        return self._manual_offline

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        return self._consecutive_successes

    @property
    def last_outcome(self) -> FetchOutcome | None:
        return self._last_outcome

    def observe(self, outcome: FetchOutcome, max_age: float) -> ConnectivityState:
        """Advance the state machine by one tick and return the new state.

        Args:
            outcome: Aggregate fetch outcome of the tick.
            max_age: Age in seconds of the stalest tracked symbol (math.inf if
                any symbol was never observed).
        """
        self._last_outcome = outcome

        if self._manual_offline:
            logger.debug("fetch_outcome_ignored_manual_offline", outcome=outcome.value)
            return self._state

        failed = outcome is not FetchOutcome.SUCCESS
        if failed:
            self._consecutive_failures += 1
            self._consecutive_successes = 0
        else:
            self._consecutive_successes += 1
            self._consecutive_failures = 0

        if outcome is FetchOutcome.HARD_FAILURE:
            self._transition(ConnectivityState.OFFLINE, "hard_failure", max_age)
        elif self._state is ConnectivityState.ONLINE:
            if failed:
                self._transition(ConnectivityState.DEGRADED, "transient_failure", max_age)
            elif max_age > 2 * self._refresh_interval:
                self._transition(ConnectivityState.DEGRADED, "data_stale", max_age)
        elif self._state is ConnectivityState.DEGRADED:
            if failed and self._consecutive_failures >= self._n_fail:
                self._transition(ConnectivityState.OFFLINE, "consecutive_failures", max_age)
            elif (
                not failed
                and self._consecutive_successes >= self._n_recover
                and max_age <= self._refresh_interval
            ):
                self._transition(ConnectivityState.ONLINE, "recovered", max_age)
        elif not failed:
            # Automatic Offline heals on the first success
            self._transition(ConnectivityState.DEGRADED, "first_success", max_age)

        return self._state

    def set_manual_offline(self, enabled: bool) -> ConnectivityState:
        """Enter or leave the sticky, user-requested Offline state."""
        if enabled == self._manual_offline:
            return self._state
        self._manual_offline = enabled
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        if enabled:
            self._transition(ConnectivityState.OFFLINE, "manual_offline", None)
        else:
            self._transition(ConnectivityState.DEGRADED, "manual_resume", None)
        return self._state

    def toggle_manual_offline(self) -> ConnectivityState:
        return self.set_manual_offline(not self._manual_offline)

    def record_success(self, symbol: str, at_ms: int) -> None:
        """Remember when a symbol was last fetched successfully."""
        self._last_success_ms[symbol] = at_ms

    def last_success(self, symbol: str) -> int | None:
        return self._last_success_ms.get(symbol)

    def describe(self, sync_age: float | None) -> str:
        """One-line status label for the dashboard header."""
        synced = f"synced {format_age(sync_age)}"
        if self._state is ConnectivityState.ONLINE:
            return f"ONLINE {synced}"
        if self._state is ConnectivityState.OFFLINE and self._manual_offline:
            return f"OFFLINE (manual), {synced}"
        failures = self._consecutive_failures
        label = self._state.value.upper()
        if failures:
            return f"{label} {failures} failures, {synced}"
        return f"{label} {synced}"

    def _transition(
        self, new_state: ConnectivityState, reason: str, max_age: float | None
    ) -> None:
        if new_state is self._state:
            return
        logger.info(
            "connectivity_changed",
            old_state=self._state.value,
            new_state=new_state.value,
            reason=reason,
            max_age=None if max_age is None or math.isinf(max_age) else round(max_age, 1),
            consecutive_failures=self._consecutive_failures,
        )
        self._state = new_state
