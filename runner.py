"""
Bounded parallel execution of conversion tasks.
"""

import logging
import os
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from converter import (
    INPUT_EXTENSIONS,
    ConversionResult,
    ConversionStatus,
    DiscoveryError,
    ImageTask,
    convert_image,
)

logger = logging.getLogger(__name__)


def find_image_files(source_dir: Path) -> List[Path]:
    """List supported image files at the top level of source_dir."""
    try:
        entries = list(source_dir.iterdir())
    except OSError as e:
        raise DiscoveryError(f"Could not read '{source_dir}': {e}") from e

    return sorted(
        (p for p in entries if p.is_file() and p.suffix.lower() in INPUT_EXTENSIONS),
        key=lambda p: p.name.lower(),
    )


def prepare_output_dir(output_dir: Path) -> Path:
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DiscoveryError(f"Could not create output folder '{output_dir}': {e}") from e
    return output_dir


@dataclass
class RunTally:
    """Counts for one run. Owned by the thread consuming results."""
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    copied: int = 0
    warnings: int = 0
    cancelled: int = 0

    def record(self, result: ConversionResult) -> None:
        self.processed += 1
        if result.success:
            self.succeeded += 1
            if result.status is ConversionStatus.COPIED:
                self.copied += 1
            elif result.status is ConversionStatus.CONVERTED_WITH_WARNING:
                self.warnings += 1
        else:
            self.failed += 1


ResultCallback = Callable[[ConversionResult, RunTally], None]


class ConversionRunner:
    """Runs convert_image over many tasks on a thread pool."""

    def __init__(self, max_workers: Optional[int] = None,
                 convert: Callable[[ImageTask], ConversionResult] = convert_image):
        # Use all available CPU cores
        self.max_workers = max_workers or os.cpu_count() or 4
        self.convert = convert
        self._cancelled = False
        self._lock = threading.Lock()

    def cancel(self):
        """Stop dispatching tasks that have not started yet."""
        with self._lock:
            self._cancelled = True

    def is_cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def _collect(self, future: Future, task: ImageTask) -> ConversionResult:
        try:
            return future.result()
        except Exception as e:
            # convert_image reports its own failures; this keeps the tally whole anyway
            logger.exception("Worker crashed on %s", task.source_path.name)
            return ConversionResult.failed(task, e)

    def run(self, tasks: Iterable[ImageTask],
            on_result: Optional[ResultCallback] = None) -> RunTally:
        """
        Convert every task and return the final tally.

        At most max_workers tasks are in flight. Results are tallied and
        passed to on_result in the calling thread, one at a time.
        """
        pending_tasks = list(tasks)
        tally = RunTally(total=len(pending_tasks))
        logger.info("Converting %d files with %d workers", tally.total, self.max_workers)

        queue = iter(pending_tasks)
        in_flight: Dict[Future, ImageTask] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:

            def fill():
                while len(in_flight) < self.max_workers and not self.is_cancelled():
                    task = next(queue, None)
                    if task is None:
                        return
                    in_flight[executor.submit(self.convert, task)] = task

            fill()
            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    task = in_flight.pop(future)
                    result = self._collect(future, task)
                    tally.record(result)
                    if on_result is not None:
                        on_result(result, tally)
                fill()

        tally.cancelled = tally.total - tally.processed
        if tally.cancelled:
            logger.warning("Cancelled %d files before they started", tally.cancelled)
        logger.info("Batch complete. Success: %d, Errors: %d",
                    tally.succeeded, tally.failed)
        return tally
