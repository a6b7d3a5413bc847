"""
Health file writer for the power-flow poller.

Writes a JSON health file at a configurable path with three fields:
- last_cycle_ts: ISO timestamp of the most recent cycle.
- last_outcome: Outcome of that cycle (``done``, ``timeout``, ...).
- last_success_ts: ISO timestamp of the most recent ``done`` cycle.

Each invocation of the poller is a fresh process, so last_success_ts is
carried over from the existing file when the current cycle failed. Docker
HEALTHCHECK or monitoring can compare it against the polling schedule.

CHANGELOG:
- 2026-10-16: Track cycle outcomes instead of poll/upload timestamps

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


class HealthWriter:
    """Writes poller health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _previous_success(self) -> str | None:
        try:
            data = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("Unreadable health file %s, starting fresh", self.path)
            return None
        if not isinstance(data, dict):
            return None
        return data.get("last_success_ts")

    def record_cycle(self, outcome: str) -> None:
        """Record the outcome of a cycle and write the health file.

        Args:
            outcome: Cycle outcome name; ``"done"`` counts as success.
        """
        now = datetime.now(tz=UTC).isoformat()
        data = {
            "last_cycle_ts": now,
            "last_outcome": outcome,
            "last_success_ts": now if outcome == "done" else self._previous_success(),
        }
        self.path.write_text(json.dumps(data))
