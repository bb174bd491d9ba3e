"""Progress reporting for the upload pipeline.

A reporter is any callable `(current_percent, total_percent, stage) -> None`.
The pipeline wraps whatever it is given in MonotonicProgress so a reporter
never sees a percentage go backwards.
"""

from __future__ import annotations

from typing import Callable

import click

ProgressReporter = Callable[[int, int, str], None]

TOTAL_PERCENT = 100

STAGE_PERCENT = {
    "parsing": 5,
    "validating": 15,
    "uploading": 25,
    "reconciling": 40,
    "saving": 50,
    "finalizing": 95,
    "done": 100,
}

# entry batches are reported between "saving" and "finalizing"
_SAVE_START = STAGE_PERCENT["saving"]
_SAVE_END = STAGE_PERCENT["finalizing"]


def null_progress(current: int, total: int, stage: str) -> None:
    return None


def batch_percent(batches_done: int, batch_count: int) -> int:
    if batch_count <= 0:
        return _SAVE_END
    return _SAVE_START + (_SAVE_END - _SAVE_START) * batches_done // batch_count


class EchoProgress:
    """Prints progress lines via click, prefixed with the run id."""

    def __init__(self, run_id: str, err: bool = False) -> None:
        self.run_id = run_id
        self.err = err

    def __call__(self, current: int, total: int, stage: str) -> None:
        click.echo(f"[{self.run_id}] {stage}: {current}/{total}%", err=self.err)


class MonotonicProgress:
    """Clamp to [0, total] and drop updates that would move backwards."""

    def __init__(self, reporter: ProgressReporter | None = None) -> None:
        self._reporter = reporter or null_progress
        self.last = 0

    def __call__(self, current: int, total: int, stage: str) -> None:
        current = max(0, min(current, total))
        if current < self.last:
            current = self.last
        self.last = current
        self._reporter(current, total, stage)

    def stage(self, name: str) -> None:
        self(STAGE_PERCENT[name], TOTAL_PERCENT, name)
