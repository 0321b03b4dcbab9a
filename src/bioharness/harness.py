"""
Validation harness orchestrator.

Runs one action end to end: interface version check, one-time
initialization of the implementation, partitioning of the input, parallel
workers, and reconciliation of the resulting logs. Gallery finalization is
a separate, single-process step.
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
import structlog

from .actions import Action, EnrollAction, SearchAction, get_action
from .aggregator import (
    ResultAggregator,
    ValidationReport,
    merged_log_path,
    remove_action_logs,
    shard_log_path,
)
from .constants import (
    DEFAULT_EDB_NAME,
    DEFAULT_MANIFEST_NAME,
    DEFAULT_TOP_K,
    FAILURE,
    NOT_IMPLEMENTED,
    SUCCESS,
)
from .data_models import GalleryType, Modality, ReturnStatus
from .exceptions import AggregationError, ConfigurationError
from .gallery import GalleryLifecycleManager, merge_enrollment_shards
from .partitioner import Partition, split_input_file
from .plugin_contract import (
    Interface,
    check_api_version,
    guarded_status,
    supported_operations,
)
from .supervisor import ProcessSupervisor, SupervisionResult, SupervisorVerdict
from .utils import ensure_directory, format_duration, generate_run_id, remove_file, timer
from .worker import WorkerDriver

# Initialize structured logger
logger = structlog.get_logger(__name__)

OPERATION_NAMES = [
    "vector_quality",
    "detect_morph",
    "detect_morph_differentially",
    "compare_images",
    "demorph",
    "demorph_differentially",
    "create_face_template",
    "create_iris_template",
    "create_face_and_iris_template",
    "finalize_enrollment",
    "initialize_identification",
    "search",
]


@dataclass
class HarnessResult:
    """
    Outcome of one harness invocation.

    Parameters
    ----------
    action : str
        Action that was run, or ``finalize``.
    exit_code : int
        ``SUCCESS``, ``FAILURE`` or ``NOT_IMPLEMENTED``.
    run_id : str
        Identifier of this invocation, also bound to its log events.
    verdict : Optional[SupervisorVerdict], default=None
        Combined worker outcome, when workers were started.
    report : Optional[ValidationReport], default=None
        Log reconciliation, when the workers succeeded.
    log_path : Optional[Path], default=None
        Merged output log.
    num_items : int, default=0
        Work items in the partitioned input.
    duration_seconds : float, default=0.0
        Wall-clock duration.
    message : str, default=""
        Short explanation for a non-success exit.
    """

    action: str
    exit_code: int
    run_id: str
    verdict: Optional[SupervisorVerdict] = None
    report: Optional[ValidationReport] = None
    log_path: Optional[Path] = None
    num_items: int = 0
    duration_seconds: float = 0.0
    message: str = ""
    failed_shards: List[int] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.exit_code == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "exit_code": self.exit_code,
            "run_id": self.run_id,
            "verdict": self.verdict.value if self.verdict else None,
            "report": self.report.to_dict() if self.report else None,
            "log_path": str(self.log_path) if self.log_path else None,
            "num_items": self.num_items,
            "duration": format_duration(self.duration_seconds),
            "message": self.message,
            "failed_shards": self.failed_shards,
        }


class ValidationHarness:
    """
    Runs validation actions against one implementation.

    Parameters
    ----------
    implementation : Interface
        Implementation under test.
    config_dir : Path
        Read-only configuration directory handed to the implementation.
    output_dir : Path
        Directory for shard files and logs.
    enrollment_dir : Optional[Path], default=None
        Gallery directory; required by enrollment, search and finalize.
    num_workers : int, default=1
        Worker processes (and shards) per action.
    top_k : int, default=DEFAULT_TOP_K
        Candidate list length for search actions.
    config_value : str, default=""
        Free-form string passed to ``initialize``.
    crash_retries : int, default=0
        Re-runs of a shard whose worker was killed by a signal.
    keep_shards : bool, default=False
        Keep input shards after successful workers.

    Examples
    --------
    >>> harness = ValidationHarness(impl, Path("config"), Path("validation"))
    >>> result = harness.run("vectorQ", Path("input/quality.txt"))
    >>> result.exit_code
    0
    """

    def __init__(
        self,
        implementation: Interface,
        config_dir: Path,
        output_dir: Path,
        enrollment_dir: Optional[Path] = None,
        num_workers: int = 1,
        top_k: int = DEFAULT_TOP_K,
        config_value: str = "",
        crash_retries: int = 0,
        keep_shards: bool = False,
    ) -> None:
        if num_workers < 1:
            raise ValueError("num_workers must be at least 1")
        if top_k < 1:
            raise ValueError("top_k must be at least 1")

        self.implementation = implementation
        self.config_dir = Path(config_dir)
        self.output_dir = Path(output_dir)
        self.enrollment_dir = Path(enrollment_dir) if enrollment_dir else None
        self.num_workers = num_workers
        self.top_k = top_k
        self.config_value = config_value
        self.crash_retries = crash_retries
        self.keep_shards = keep_shards

        logger.info(
            "ValidationHarness initialized",
            implementation=type(implementation).__name__,
            config_dir=str(self.config_dir),
            output_dir=str(self.output_dir),
            enrollment_dir=str(self.enrollment_dir) if self.enrollment_dir else None,
            num_workers=num_workers,
            top_k=top_k,
            supported=supported_operations(implementation, OPERATION_NAMES),
        )

    def _require_enrollment_dir(self) -> Path:
        if self.enrollment_dir is None:
            raise ConfigurationError(
                "An enrollment directory is required for 1:N actions",
                config_key="enrollment_dir",
            )
        return self.enrollment_dir

    def gallery(self, modality: Modality = Modality.FACE) -> GalleryLifecycleManager:
        return GalleryLifecycleManager(
            self.implementation,
            self.config_dir,
            self._require_enrollment_dir(),
            modality=modality,
        )

    def _enrollment_shards(self, count: int) -> List[Tuple[Path, Path]]:
        enrollment_dir = self._require_enrollment_dir()
        return [
            (
                enrollment_dir / f"{DEFAULT_EDB_NAME}.{i}",
                enrollment_dir / f"{DEFAULT_MANIFEST_NAME}.{i}",
            )
            for i in range(count)
        ]

    def _initialize(self, action: Action, log) -> ReturnStatus:
        status = guarded_status(
            self.implementation.initialize,
            str(self.config_dir),
            action.role,
            self.config_value,
        )
        if status.ok:
            log.info("Implementation initialized", role=action.role.value)
        elif not status.not_implemented:
            log.error(
                "initialize() returned error",
                role=action.role.value,
                return_code=int(status.code),
                status=str(status),
            )
        return status

    def _discard_outputs(
        self,
        action: Action,
        partition: Optional[Partition],
        enrollment_shards: List[Tuple[Path, Path]],
    ) -> None:
        """Remove the logs and enrollment shards of an action, and its input shards if given."""
        remove_action_logs(self.output_dir, action.name)
        if partition is not None:
            for path in partition.shard_paths:
                remove_file(path)
        for edb, manifest in enrollment_shards:
            remove_file(edb)
            remove_file(manifest)

    @timer
    def run(self, action_name: str, input_file: Path) -> HarnessResult:
        """
        Run one action over a consolidated input file.

        Parameters
        ----------
        action_name : str
            Action name, for example ``vectorQ`` or ``enrollFace``.
        input_file : Path
            Consolidated validation input. It is deleted once partitioned.

        Returns
        -------
        HarnessResult
            Exit code, worker verdict and log reconciliation.

        Raises
        ------
        ConfigurationError
            If the action is unknown, the interface version differs or a
            1:N action has no enrollment directory.
        GalleryFinalizedError
            If an enrollment action targets a finalized gallery.
        GalleryStateError
            If a search action targets a gallery that was never finalized.
        PartitionError
            If the input cannot be partitioned.
        """
        start_time = time.perf_counter()
        run_id = generate_run_id(action_name)
        log = logger.bind(run_id=run_id, action=action_name)

        action = get_action(action_name)
        check_api_version(self.implementation)
        ensure_directory(self.output_dir)

        is_enroll = isinstance(action, EnrollAction)
        is_search = isinstance(action, SearchAction)
        gallery = None
        if is_enroll or is_search:
            gallery = self.gallery(action.modality)
            if is_enroll:
                gallery.ensure_writable()
                ensure_directory(gallery.enrollment_dir)

        def finish(exit_code: int, **kwargs) -> HarnessResult:
            result = HarnessResult(
                action=action_name,
                exit_code=exit_code,
                run_id=run_id,
                duration_seconds=time.perf_counter() - start_time,
                **kwargs,
            )
            log.info(
                "Action finished",
                exit_code=exit_code,
                duration=format_duration(result.duration_seconds),
                message=result.message,
            )
            return result

        status = self._initialize(action, log)
        if status.not_implemented:
            self._discard_outputs(action, None, [])
            return finish(NOT_IMPLEMENTED, message="initialize() not implemented")
        if not status.ok:
            return finish(FAILURE, message=f"initialize() failed: {status}")

        if is_search:
            status = gallery.initialize_identification()
            if status.not_implemented:
                self._discard_outputs(action, None, [])
                return finish(
                    NOT_IMPLEMENTED, message="initialize_identification() not implemented"
                )
            if not status.ok:
                return finish(
                    FAILURE, message=f"initialize_identification() failed: {status}"
                )

        partition = split_input_file(
            Path(input_file), self.output_dir, self.num_workers
        )
        enrollment_shards = self._enrollment_shards(partition.num_shards) if is_enroll else []

        drivers = [
            WorkerDriver(
                index=index,
                action=action,
                implementation=self.implementation,
                shard_path=shard,
                log_path=shard_log_path(self.output_dir, action.name, index),
                top_k=self.top_k,
                gallery=gallery if is_search else None,
                enrollment_paths=enrollment_shards[index] if is_enroll else None,
                keep_shard=self.keep_shards,
            )
            for index, shard in enumerate(partition.shard_paths)
        ]
        supervision: SupervisionResult = ProcessSupervisor(self.crash_retries).run(drivers)

        if supervision.verdict == SupervisorVerdict.NOT_IMPLEMENTED:
            self._discard_outputs(action, partition, enrollment_shards)
            return finish(
                NOT_IMPLEMENTED,
                verdict=supervision.verdict,
                num_items=partition.total,
                message=f"{action.name} not implemented",
            )

        if supervision.verdict == SupervisorVerdict.FAILURE:
            self._discard_outputs(action, None, enrollment_shards)
            return finish(
                FAILURE,
                verdict=supervision.verdict,
                num_items=partition.total,
                failed_shards=supervision.failed_shards,
                message=f"Workers failed on shards {supervision.failed_shards}",
            )

        log_paths = [driver.log_path for driver in drivers]
        aggregator = ResultAggregator(
            action.name, action.header(self.top_k), log_paths, partition.item_ids
        )
        try:
            report = aggregator.validate()
        except AggregationError as e:
            log.error("Shard logs could not be reconciled", **e.to_dict())
            self._discard_outputs(action, None, enrollment_shards)
            return finish(
                FAILURE,
                verdict=supervision.verdict,
                num_items=partition.total,
                message=f"Shard logs could not be reconciled: {e}",
            )

        if not report.passed:
            self._discard_outputs(action, None, enrollment_shards)
            return finish(
                FAILURE,
                verdict=supervision.verdict,
                report=report,
                num_items=partition.total,
                message="Logged records do not match the input",
            )

        if is_enroll:
            merge_enrollment_shards(
                enrollment_shards, gallery.edb_path, gallery.manifest_path
            )
        log_path = aggregator.merge(merged_log_path(self.output_dir, action.name))

        return finish(
            SUCCESS,
            verdict=supervision.verdict,
            report=report,
            log_path=log_path,
            num_items=partition.total,
        )

    def finalize(
        self, gallery_type: GalleryType = GalleryType.CONSOLIDATED
    ) -> HarnessResult:
        """
        Finalize the gallery in this process.

        Raises
        ------
        GalleryFinalizedError
            If the gallery was already finalized.
        ManifestError
            If the enrollment blob and manifest are missing or inconsistent.
        """
        start_time = time.perf_counter()
        run_id = generate_run_id("finalize")
        check_api_version(self.implementation)

        status = self.gallery().finalize(gallery_type)
        if status.ok:
            exit_code = SUCCESS
        elif status.not_implemented:
            exit_code = NOT_IMPLEMENTED
        else:
            exit_code = FAILURE

        return HarnessResult(
            action="finalize",
            exit_code=exit_code,
            run_id=run_id,
            duration_seconds=time.perf_counter() - start_time,
            message="" if status.ok else str(status),
        )
