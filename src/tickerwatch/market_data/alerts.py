"""Edge-triggered price threshold alerts.

A rule fires when a new price crosses its threshold: the new value satisfies
the comparator and the previous cached value did not. Firing disarms the
rule; it re-arms once a later observation fails the comparator again, so a
price that sits above a threshold for many polls produces one event.

While connectivity is Offline nothing is evaluated. The first observation
of a symbol after an Offline period only re-baselines its rules, so the
jump across the gap never fires.
"""

import uuid
from collections import deque
from decimal import Decimal

from tickerwatch.logging import get_logger
from tickerwatch.models import (
    AlertEvent,
    AlertRule,
    Comparator,
    ConnectivityState,
    PriceSnapshot,
    now_ms,
)

logger = get_logger(__name__)


class AlertEvaluator:
    """Owns the alert rules, their armed flags and the event log.

    Args:
        max_events: Size bound of the undrained event log; oldest events are
            dropped first.
    """

    def __init__(self, max_events: int = 1000) -> None:
        self._rules: dict[str, AlertRule] = {}
        self._events: deque[AlertEvent] = deque(maxlen=max_events)
        self._last_state = ConnectivityState.ONLINE
        self._rebaseline: set[str] = set()

    # ──────────────────────────────────────────────
    # Rule management (UI side)
    # ──────────────────────────────────────────────

    def add_rule(
        self, symbol: str, comparator: Comparator, threshold: Decimal
    ) -> AlertRule:
        """Create an armed rule and return it."""
        rule = AlertRule(
            id=uuid.uuid4().hex[:12],
            symbol=symbol.upper(),
            comparator=comparator,
            threshold=threshold,
        )
        self._rules[rule.id] = rule
        if self._last_state is ConnectivityState.OFFLINE:
            self._rebaseline.add(rule.symbol)
        logger.info(
            "alert_rule_added",
            rule_id=rule.id,
            symbol=rule.symbol,
            comparator=comparator.value,
            threshold=str(threshold),
        )
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        """Delete a rule. Returns False if it did not exist."""
        rule = self._rules.pop(rule_id, None)
        if rule is None:
            return False
        logger.info("alert_rule_removed", rule_id=rule_id, symbol=rule.symbol)
        return True

    def rules(self, symbol: str | None = None) -> list[AlertRule]:
        return [r for r in self._rules.values() if symbol is None or r.symbol == symbol]

    # ──────────────────────────────────────────────
    # Evaluation (tick pipeline side)
    # ──────────────────────────────────────────────

    def sync_state(self, state: ConnectivityState) -> None:
        """Track connectivity; entering Offline schedules a re-baseline of every rule."""
        if state is ConnectivityState.OFFLINE:
            self._rebaseline.update(r.symbol for r in self._rules.values())
        self._last_state = state

    def evaluate(
        self,
        snapshot: PriceSnapshot,
        previous: PriceSnapshot | None,
        state: ConnectivityState,
    ) -> list[AlertEvent]:
        """Check every rule bound to the snapshot's symbol.

        Args:
            snapshot: The observation just persisted.
            previous: The symbol's current snapshot before that write.
            state: Connectivity state computed for this tick.

        Returns:
            Events fired by this observation (at most one per rule).
        """
        self.sync_state(state)
        if state is ConnectivityState.OFFLINE:
            return []

        rules = self.rules(snapshot.symbol)
        if snapshot.symbol in self._rebaseline:
            self._rebaseline.discard(snapshot.symbol)
            for rule in rules:
                rule.armed = not rule.comparator.satisfied(snapshot.price, rule.threshold)
            logger.debug(
                "alert_rules_rebaselined",
                symbol=snapshot.symbol,
                rules=len(rules),
                price=str(snapshot.price),
            )
            return []

        fired: list[AlertEvent] = []
        for rule in rules:
            now_satisfied = rule.comparator.satisfied(snapshot.price, rule.threshold)
            if not now_satisfied:
                rule.armed = True
                continue
            if not rule.armed:
                continue
            was_satisfied = previous is not None and rule.comparator.satisfied(
                previous.price, rule.threshold
            )
            if was_satisfied:
                continue

            rule.armed = False
            event = AlertEvent(
                rule_id=rule.id,
                symbol=rule.symbol,
                comparator=rule.comparator,
                threshold=rule.threshold,
                snapshot=snapshot,
                fired_at_ms=now_ms(),
            )
            self._events.append(event)
            fired.append(event)
            logger.info(
                "alert_fired",
                rule_id=rule.id,
                symbol=rule.symbol,
                comparator=rule.comparator.value,
                threshold=str(rule.threshold),
                price=str(snapshot.price),
            )
        return fired

    @property
    def pending_events(self) -> int:
        return len(self._events)

    def drain_events(self) -> list[AlertEvent]:
        """Return and clear all undrained events, oldest first."""
        events = list(self._events)
        self._events.clear()
        return events
