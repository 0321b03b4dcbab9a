"""
Process supervisor.

Forks one worker process per shard and blocks until every one of them has
exited. Workers inherit the implementation's initialized state from the
parent through ``fork``; nothing is re-initialized in the children.
"""

import multiprocessing
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing.connection import wait
from typing import Dict, List, Optional, Sequence, Tuple
import psutil
import structlog

from .constants import FAILURE, NOT_IMPLEMENTED, SUCCESS
from .utils import format_bytes, format_duration, remove_file
from .worker import WorkerDriver, run_worker

logger = structlog.get_logger(__name__)


class SupervisorVerdict(Enum):
    """Combined outcome of all workers for one action."""

    SUCCESS = "success"
    FAILURE = "failure"
    NOT_IMPLEMENTED = "not_implemented"

    @property
    def exit_code(self) -> int:
        return {
            SupervisorVerdict.SUCCESS: SUCCESS,
            SupervisorVerdict.FAILURE: FAILURE,
            SupervisorVerdict.NOT_IMPLEMENTED: NOT_IMPLEMENTED,
        }[self]


@dataclass
class WorkerOutcome:
    """
    How one worker process ended.

    Parameters
    ----------
    shard_index : int
        Index of the shard the worker processed.
    pid : Optional[int]
        Process id of the last attempt.
    exit_code : Optional[int]
        ``multiprocessing`` exit code; negative when killed by a signal.
    attempts : int, default=1
        Number of times the shard was started.
    """

    shard_index: int
    pid: Optional[int]
    exit_code: Optional[int]
    attempts: int = 1

    @property
    def signal(self) -> Optional[int]:
        if self.exit_code is not None and self.exit_code < 0:
            return -self.exit_code
        return None

    @property
    def signal_name(self) -> Optional[str]:
        signum = self.signal
        if signum is None:
            return None
        try:
            return signal.Signals(signum).name
        except ValueError:
            return f"signal {signum}"

    @property
    def crashed(self) -> bool:
        return self.signal is not None

    @property
    def verdict(self) -> SupervisorVerdict:
        if self.exit_code == SUCCESS:
            return SupervisorVerdict.SUCCESS
        if self.exit_code == NOT_IMPLEMENTED:
            return SupervisorVerdict.NOT_IMPLEMENTED
        return SupervisorVerdict.FAILURE


@dataclass
class SupervisionResult:
    verdict: SupervisorVerdict
    outcomes: List[WorkerOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failed_shards(self) -> List[int]:
        return [
            o.shard_index for o in self.outcomes if o.verdict == SupervisorVerdict.FAILURE
        ]


def reduce_outcomes(outcomes: Sequence[WorkerOutcome]) -> SupervisorVerdict:
    """
    Combine per-worker outcomes.

    Any failure or signal termination fails the action; otherwise any
    abstention makes it not implemented; otherwise it succeeded.
    """
    verdicts = {o.verdict for o in outcomes}
    if SupervisorVerdict.FAILURE in verdicts:
        return SupervisorVerdict.FAILURE
    if SupervisorVerdict.NOT_IMPLEMENTED in verdicts:
        return SupervisorVerdict.NOT_IMPLEMENTED
    return SupervisorVerdict.SUCCESS


class ProcessSupervisor:
    """
    Runs worker drivers in child processes and collects their exit codes.

    Parameters
    ----------
    crash_retries : int, default=0
        Times a shard whose worker was killed by a signal is started again.
        A shard is only retried while its input shard file still exists;
        its partial log is removed first.
    start_method : str, default="fork"
        ``multiprocessing`` start method.
    """

    def __init__(self, crash_retries: int = 0, start_method: str = "fork") -> None:
        if crash_retries < 0:
            raise ValueError("crash_retries cannot be negative")
        self.crash_retries = crash_retries
        self.context = multiprocessing.get_context(start_method)

    def _start(self, driver: WorkerDriver) -> multiprocessing.process.BaseProcess:
        process = self.context.Process(
            target=run_worker,
            args=(driver,),
            name=f"bioharness-worker-{driver.index}",
        )
        process.start()
        logger.debug("Worker started", shard=driver.index, pid=process.pid)
        return process

    def run(self, drivers: Sequence[WorkerDriver]) -> SupervisionResult:
        """
        Start every driver and wait for all of them to exit.

        There is no timeout: a worker that never exits blocks the run.

        Returns
        -------
        SupervisionResult
            Per-worker outcomes, in shard order, and the combined verdict.
        """
        start_time = time.perf_counter()
        logger.info(
            "Starting workers",
            num_workers=len(drivers),
            cpu_count=psutil.cpu_count(),
            available_memory=format_bytes(psutil.virtual_memory().available),
        )

        attempts: Dict[int, int] = {}
        running: Dict[int, Tuple[int, multiprocessing.process.BaseProcess]] = {}
        outcomes: Dict[int, WorkerOutcome] = {}

        for position, driver in enumerate(drivers):
            process = self._start(driver)
            attempts[position] = 1
            running[process.sentinel] = (position, process)

        while running:
            for sentinel in wait(list(running)):
                position, process = running.pop(sentinel)
                process.join()
                driver = drivers[position]
                outcome = WorkerOutcome(
                    shard_index=driver.index,
                    pid=process.pid,
                    exit_code=process.exitcode,
                    attempts=attempts[position],
                )

                if outcome.crashed:
                    logger.error(
                        "Worker killed by signal",
                        shard=driver.index,
                        pid=outcome.pid,
                        signal=outcome.signal_name,
                        attempt=outcome.attempts,
                        available_memory=format_bytes(psutil.virtual_memory().available),
                    )
                    if attempts[position] <= self.crash_retries and driver.shard_path.exists():
                        remove_file(driver.log_path)
                        retry = self._start(driver)
                        attempts[position] += 1
                        running[retry.sentinel] = (position, retry)
                        continue
                elif outcome.verdict == SupervisorVerdict.FAILURE:
                    logger.error(
                        "Worker failed",
                        shard=driver.index,
                        pid=outcome.pid,
                        exit_code=outcome.exit_code,
                    )
                else:
                    logger.debug(
                        "Worker exited",
                        shard=driver.index,
                        pid=outcome.pid,
                        exit_code=outcome.exit_code,
                    )
                outcomes[position] = outcome

        ordered = [outcomes[position] for position in range(len(drivers))]
        result = SupervisionResult(
            verdict=reduce_outcomes(ordered),
            outcomes=ordered,
            duration_seconds=time.perf_counter() - start_time,
        )
        logger.info(
            "All workers exited",
            verdict=result.verdict.value,
            failed_shards=result.failed_shards,
            duration=format_duration(result.duration_seconds),
        )
        return result
