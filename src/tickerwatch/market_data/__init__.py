"""Market data layer -- connectivity freshness tracking and price alerts."""

from tickerwatch.market_data.alerts import AlertEvaluator
from tickerwatch.market_data.freshness import FreshnessStateMachine, format_age

__all__ = ["AlertEvaluator", "FreshnessStateMachine", "format_age"]
