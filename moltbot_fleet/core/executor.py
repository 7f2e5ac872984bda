"""Bounded parallel execution of per-instance actions across the fleet.

- One task per record, at most ``concurrency`` running at once
- Tasks admitted in enumeration order; completion order is free
- A failing task is recorded against its record and never stops the batch
- Output is labelled with the owning instance name
"""

import logging
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from .instance import InstanceRecord

logger = logging.getLogger(__name__)


@dataclass
class TaskOutcome:
    """Result of one action on a single instance."""

    name: str
    success: bool
    message: str
    output: Optional[str] = None
    duration: float = 0.0


class BatchResult:
    """Aggregated results from a bulk operation."""

    def __init__(self, results: list[TaskOutcome]):
        """
        Initialize batch result.

        Args:
            results: Per-instance outcomes, in admission order
        """
        self.results = results

    @property
    def total(self) -> int:
        """Number of tasks attempted."""
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)

    def get_failures(self) -> list[TaskOutcome]:
        return [r for r in self.results if not r.success]

    def get_successes(self) -> list[TaskOutcome]:
        return [r for r in self.results if r.success]

    def format_summary(self) -> str:
        """Format summary of results."""
        return f"Total: {self.total}, Succeeded: {self.succeeded}, Failed: {self.failed}"


def label_output(name: str, output: Optional[str]) -> list[str]:
    """Prefix every non-empty output line with ``[name]``."""
    if not output:
        return []
    return [f"[{name}] {line}" for line in output.splitlines() if line.strip()]


class BoundedExecutor:
    """Run an action over many instances with a concurrency ceiling."""

    def __init__(self, concurrency: int = 10):
        """
        Initialize executor.

        Args:
            concurrency: Maximum number of actions running at once (>= 1)

        Raises:
            ValueError: If concurrency is below 1
        """
        if concurrency < 1:
            raise ValueError(f"Concurrency limit must be at least 1, got {concurrency}")
        self.concurrency = concurrency

    def run_all(
        self,
        records: Sequence[InstanceRecord],
        action: Callable[[InstanceRecord], Optional[str]],
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> BatchResult:
        """
        Run action once per record.

        The action returns its output on success and raises on failure;
        either way the outcome is recorded against that record only.

        Args:
            records: Records to act on, in admission order
            action: Per-instance action (e.g. DockerManager.up)
            progress_callback: Receives labelled output and status lines as tasks finish

        Returns:
            BatchResult with one outcome per record, in admission order
        """
        if not records:
            return BatchResult([])

        def emit(line: str):
            logger.debug(line)
            if progress_callback:
                progress_callback(line)

        def run_one(record: InstanceRecord) -> TaskOutcome:
            start_time = time.time()
            try:
                output = action(record)
                outcome = TaskOutcome(
                    name=record.name,
                    success=True,
                    message="ok",
                    output=output,
                    duration=time.time() - start_time,
                )
            except Exception as e:
                outcome = TaskOutcome(
                    name=record.name,
                    success=False,
                    message=str(e),
                    output=getattr(e, "output", None),
                    duration=time.time() - start_time,
                )
                logger.info("%s failed: %s", record.name, e)

            for line in label_output(record.name, outcome.output):
                emit(line)
            status = "✓" if outcome.success else "✗"
            emit(f"{status} {record.name}" + ("" if outcome.success else f": {outcome.message}"))
            return outcome

        # ThreadPoolExecutor admits queued work in submission order
        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            futures = [executor.submit(run_one, record) for record in records]
            return BatchResult([future.result() for future in futures])


__all__ = ["BatchResult", "BoundedExecutor", "TaskOutcome", "label_output"]
