"""
Worker pool for independent inference tasks.

Tasks (one IF2 start, one profile start) share read-only inputs and return
plain values, so a thread pool is enough: TensorFlow kernels release the GIL
while they run. Every task draws from its own generator, derived from the run
seed and the task index, which makes results independent of the pool size.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from tqdm import tqdm

from epinfer.exceptions import FilterCollapse
from epinfer.utils.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class TaskOutcome(Generic[R]):
    """Result or recoverable failure of one task."""
    index: int
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def run_tasks(
    fn: Callable[[int, T], R],
    items: Sequence[T],
    max_workers: int = 1,
    recoverable: Tuple[Type[BaseException], ...] = (FilterCollapse,),
    progress: bool = False,
    desc: str = "Tasks",
) -> List[TaskOutcome[R]]:
    """
    Run ``fn(index, item)`` for every item.

    Parameters
    ----------
    fn : callable
        Task body. Receives the task index and its item.
    items : sequence
        Task inputs.
    max_workers : int, optional
        Worker threads. 1 (default) runs the tasks in the calling thread.
    recoverable : tuple of exception types, optional
        Exceptions that mark a single task as failed. Any other exception
        propagates and aborts the batch.
    progress : bool, optional
        Show a tqdm progress bar. Default False.
    desc : str, optional
        Progress bar label.

    Returns
    -------
    list of TaskOutcome
        One outcome per item, ordered by task index.
    """
    outcomes: List[TaskOutcome[R]] = []

    def record(index: int, call: Callable[[], R]) -> None:
        try:
            outcomes.append(TaskOutcome(index=index, value=call()))
        except recoverable as exc:
            logger.warning("%s: task %d failed: %s", desc, index, exc)
            outcomes.append(TaskOutcome(index=index, error=exc))

    if max_workers <= 1 or len(items) <= 1:
        for index, item in enumerate(tqdm(items, desc=desc, unit="task", disable=not progress)):
            record(index, lambda: fn(index, item))
    else:
        workers = min(max_workers, len(items))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="epinfer") as executor:
            future_to_index = {
                executor.submit(fn, index, item): index for index, item in enumerate(items)
            }
            completed = tqdm(as_completed(future_to_index), total=len(items), desc=desc,
                             unit="task", disable=not progress)
            for future in completed:
                record(future_to_index[future], future.result)

    outcomes.sort(key=lambda outcome: outcome.index)
    return outcomes


def split_outcomes(outcomes: Sequence[TaskOutcome[R]]) -> Tuple[List[Tuple[int, R]], List[Tuple[int, Any]]]:
    """Separate successful (index, value) pairs from (index, error) pairs."""
    succeeded = [(o.index, o.value) for o in outcomes if o.ok]
    failed = [(o.index, o.error) for o in outcomes if not o.ok]
    return succeeded, failed
