from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Iterable

from flowsync.operations import SYMBOLS

COMPLETED_SYMBOL = "+"


def compute_flow_streak(
    entry_rows: Iterable[Any], today: date | None = None, max_days: int = 365
) -> dict[str, Any]:
    today = today or date.today()
    totals = {symbol: 0 for symbol in SYMBOLS}
    done_days: set[date] = set()
    for row in entry_rows:
        symbol = row["symbol"]
        totals[symbol] = totals.get(symbol, 0) + 1
        if symbol == COMPLETED_SYMBOL:
            done_days.add(date.fromisoformat(row["entry_date"]))

    # An unlogged today does not break a streak that ran through yesterday.
    start = today if today in done_days else today - timedelta(days=1)
    current = 0
    for offset in range(0, max_days):
        if start - timedelta(days=offset) in done_days:
            current += 1
        else:
            break

    best = 0
    run = 0
    previous = None
    for day in sorted(done_days):
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        best = max(best, run)
        previous = day

    return {
        "currentStreak": current,
        "bestStreak": best,
        "totalEntries": sum(totals.values()),
        "symbolTotals": totals,
        "lastCompletedDate": max(done_days).isoformat() if done_days else None,
    }
