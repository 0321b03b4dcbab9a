"""
Worker driver.

A worker owns exactly one input shard. It processes the shard's items in
file order, writes one log record per item, and reports how it ended
through its process exit code:

* ``SUCCESS`` - every item was logged; the input shard is deleted.
* ``NOT_IMPLEMENTED`` - the implementation abstained from the action; the
  partial log, any enrollment shard files and the input shard are deleted.
* ``FAILURE`` - an item could not be read or processed; partial outputs are
  deleted and the input shard is kept for inspection.
"""

import sys
from pathlib import Path
from typing import Optional, Tuple
import structlog

from .actions import Action, ActionContext
from .constants import FAILURE, NOT_IMPLEMENTED, SUCCESS
from .exceptions import HarnessError
from .gallery import EnrollmentShardWriter, GalleryLifecycleManager
from .partitioner import read_input_lines
from .plugin_contract import Interface
from .utils import remove_file

logger = structlog.get_logger(__name__)


class WorkerDriver:
    """
    Runs one action over one input shard.

    Parameters
    ----------
    index : int
        Shard index, used in log events.
    action : Action
        Action to run for every item.
    implementation : Interface
        Implementation under test, already initialized by the parent.
    shard_path : Path
        Input shard produced by the partitioner.
    log_path : Path
        Shard log to write.
    top_k : int, default=1
        Candidate list length for search actions.
    gallery : Optional[GalleryLifecycleManager], default=None
        Search-ready gallery for search actions.
    enrollment_paths : Optional[Tuple[Path, Path]], default=None
        Shard-local ``(edb, manifest)`` pair for enrollment actions.
    keep_shard : bool, default=False
        Keep the input shard after a successful run.
    """

    def __init__(
        self,
        index: int,
        action: Action,
        implementation: Interface,
        shard_path: Path,
        log_path: Path,
        top_k: int = 1,
        gallery: Optional[GalleryLifecycleManager] = None,
        enrollment_paths: Optional[Tuple[Path, Path]] = None,
        keep_shard: bool = False,
    ) -> None:
        self.index = index
        self.action = action
        self.implementation = implementation
        self.shard_path = Path(shard_path)
        self.log_path = Path(log_path)
        self.top_k = top_k
        self.gallery = gallery
        self.enrollment_paths = enrollment_paths
        self.keep_shard = keep_shard
        self.items_logged = 0

    def run(self) -> int:
        """
        Process the shard.

        Returns
        -------
        int
            ``SUCCESS``, ``FAILURE`` or ``NOT_IMPLEMENTED``.
        """
        log = logger.bind(action=self.action.name, shard=self.index)
        self.items_logged = 0

        try:
            lines = read_input_lines(self.shard_path)
        except HarnessError as e:
            log.error("Cannot read input shard", error=str(e))
            return FAILURE

        writer = None
        if self.enrollment_paths is not None:
            writer = EnrollmentShardWriter(*self.enrollment_paths)
        context = ActionContext(
            implementation=self.implementation,
            top_k=self.top_k,
            gallery=self.gallery,
            enrollment=writer,
        )

        log.debug("Worker started", shard_path=str(self.shard_path), items=len(lines))

        abstained = False
        try:
            with open(self.log_path, "w", encoding="utf-8") as out:
                out.write(self.action.header(self.top_k) + "\n")
                for line in lines:
                    item = self.action.parse(line)
                    outcome = self.action.process(item, context)
                    if outcome.status.not_implemented:
                        log.info(
                            "Implementation abstained from action",
                            item_id=item.item_id,
                            items_logged=self.items_logged,
                        )
                        abstained = True
                        break
                    out.write(" ".join(outcome.fields) + "\n")
                    out.flush()
                    self.items_logged += 1
        except HarnessError as e:
            log.error(
                "Worker aborted",
                error=str(e),
                error_type=type(e).__name__,
                error_code=e.error_code,
            )
            self._discard_outputs(writer)
            return FAILURE
        except Exception as e:
            log.exception("Worker aborted by unexpected error", error=str(e))
            self._discard_outputs(writer)
            return FAILURE
        finally:
            if writer is not None:
                writer.close()

        if abstained:
            self._discard_outputs(writer)
            remove_file(self.shard_path)
            return NOT_IMPLEMENTED

        if not self.keep_shard:
            remove_file(self.shard_path)

        log.info("Worker finished", items_logged=self.items_logged)
        return SUCCESS

    def _discard_outputs(self, writer: Optional[EnrollmentShardWriter]) -> None:
        remove_file(self.log_path)
        if writer is not None:
            writer.discard()


def run_worker(driver: WorkerDriver) -> None:
    """Process entry point; the driver's result becomes the exit code."""
    sys.exit(driver.run())
