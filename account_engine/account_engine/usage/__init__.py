"""Usage event recording and dashboard aggregation.

Every API call produces one append-only :class:`UsageEvent` and one atomic
increment of the caller's ledger entry for the event's billing period.
"""

from account_engine.usage.events import RecordOutcome, UsageEvent, UsageSummary, UsageWindow
from account_engine.usage.recorder import UsageRecorder

__all__ = ["RecordOutcome", "UsageEvent", "UsageRecorder", "UsageSummary", "UsageWindow"]
