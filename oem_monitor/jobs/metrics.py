"""Counters for one monitoring run."""
import logging
import time
from collections import Counter, defaultdict
from typing import Dict, Optional

logger = logging.getLogger(__name__)

# Counters also broken down by site in the final report
SITE_KEYS = ("rendered", "budget_denied", "fetch_error", "render_error", "events")


class Metrics:
    """Run counters, overall and per site."""

    def __init__(self, total: int):
        self.total = total
        self.started = time.monotonic()
        self.counters: Counter = Counter()
        self.by_site: Dict[str, Counter] = defaultdict(Counter)

    def increment(self, key: str, amount: int = 1, site_id: Optional[str] = None) -> None:
        self.counters[key] += amount
        if site_id is not None and key in SITE_KEYS:
            self.by_site[site_id][key] += amount

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def get_rate(self) -> float:
        """Pages processed per second."""
        elapsed = self.elapsed
        return self.counters["processed"] / elapsed if elapsed > 0 else 0.0

    def site_summary(self) -> Dict[str, Dict[str, int]]:
        return {
            site_id: {key: counts[key] for key in SITE_KEYS}
            for site_id, counts in sorted(self.by_site.items())
        }

    def get_summary(self) -> Dict:
        c = self.counters
        return {
            "total": self.total,
            "processed": c["processed"],
            "checked": c["checked"],
            "unchanged": c["unchanged"],
            "rendered": c["rendered"],
            "budget_denied": c["budget_denied"],
            "fetch_errors": c["fetch_error"],
            "render_errors": c["render_error"],
            "unexpected_errors": c["unexpected_error"],
            "llm_calls": c["llm_calls"],
            "selector_repairs": c["selector_repairs"],
            "events": c["events"],
            "emit_errors": c["emit_error"],
            "rate": self.get_rate(),
            "elapsed_seconds": self.elapsed,
            "sites": self.site_summary(),
        }
