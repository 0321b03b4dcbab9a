"""
Result aggregation and validation.

After every worker has exited, the shard logs are read back and reconciled
against the identifiers of the partitioned input: every item must have
exactly one record across all shards. Records with a non-success return
code are acceptable outcomes and only reported.
"""

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Sequence, Tuple
import structlog

from .constants import LOG_SUFFIX
from .data_models import ReturnCode
from .exceptions import AggregationError
from .utils import remove_file

logger = structlog.get_logger(__name__)


def shard_log_path(output_dir: Path, action: str, index: int) -> Path:
    return Path(output_dir) / f"{action}{LOG_SUFFIX}.{index}"


def merged_log_path(output_dir: Path, action: str) -> Path:
    return Path(output_dir) / f"{action}{LOG_SUFFIX}"


def remove_action_logs(output_dir: Path, action: str) -> int:
    """Delete the merged log and every shard log of ``action``."""
    removed = 0
    for path in sorted(Path(output_dir).glob(f"{action}{LOG_SUFFIX}*")):
        name = path.name[len(action + LOG_SUFFIX) :]
        if name == "" or name[1:].isdigit():
            removed += remove_file(path)
    return removed


@dataclass
class ValidationReport:
    """
    Reconciliation of logged records against the expected work items.

    Parameters
    ----------
    action : str
        Action whose logs were checked.
    expected : int
        Number of work items in the partitioned input.
    logged : int
        Number of records found across all shard logs.
    missing : List[str]
        Expected identifiers with no record.
    duplicated : List[str]
        Identifiers with more than one record.
    unexpected : List[str]
        Logged identifiers that were never in the input.
    non_success : Dict[str, int]
        Identifier to return code for records that did not succeed.
    """

    action: str
    expected: int
    logged: int
    missing: List[str] = field(default_factory=list)
    duplicated: List[str] = field(default_factory=list)
    unexpected: List[str] = field(default_factory=list)
    non_success: Dict[str, int] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        return not (self.missing or self.duplicated or self.unexpected)

    def return_code_counts(self) -> Dict[str, int]:
        counts = Counter(self.non_success.values())
        return {ReturnCode(code).name: n for code, n in sorted(counts.items())}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "passed": self.passed,
            "expected": self.expected,
            "logged": self.logged,
            "missing": self.missing,
            "duplicated": self.duplicated,
            "unexpected": self.unexpected,
            "non_success": self.return_code_counts(),
        }


class ResultAggregator:
    """
    Reads and reconciles the shard logs of one action.

    Parameters
    ----------
    action : str
        Action name.
    header : str
        Header line every shard log must start with.
    log_paths : Sequence[Path]
        Shard logs in shard index order. They may be read in any order;
        the order only matters for :meth:`merge`.
    expected_ids : Sequence[str]
        Identifiers of every partitioned work item.
    """

    def __init__(
        self,
        action: str,
        header: str,
        log_paths: Sequence[Path],
        expected_ids: Sequence[str],
    ) -> None:
        self.action = action
        self.header = header
        self.columns = header.split()
        self.log_paths = [Path(p) for p in log_paths]
        self.expected_ids = list(expected_ids)

        try:
            self._code_column = self.columns.index("returnCode")
        except ValueError:
            raise AggregationError(f"Header of {action} has no returnCode column") from None

    def _records(self, log_path: Path) -> Iterator[Tuple[str, int]]:
        if not log_path.is_file():
            raise AggregationError("Shard log not found", str(log_path))

        with open(log_path, "r", encoding="utf-8") as fh:
            header = fh.readline().rstrip("\n")
            if header.split() != self.columns:
                raise AggregationError("Unexpected log header", str(log_path))

            for line_number, line in enumerate(fh, start=2):
                fields = line.split()
                if not fields:
                    continue
                if len(fields) != len(self.columns):
                    raise AggregationError(
                        f"Line {line_number} has {len(fields)} fields, "
                        f"expected {len(self.columns)}",
                        str(log_path),
                    )
                try:
                    code = ReturnCode(int(fields[self._code_column]))
                except ValueError:
                    raise AggregationError(
                        f"Line {line_number} has an invalid return code",
                        str(log_path),
                    ) from None
                yield fields[0], int(code)

    def validate(self) -> ValidationReport:
        """
        Check that every expected item was logged exactly once.

        Returns
        -------
        ValidationReport
            The reconciliation; ``passed`` is False on any missing,
            duplicated or unexpected identifier.

        Raises
        ------
        AggregationError
            If a shard log is missing or malformed.
        """
        counts: Counter = Counter()
        non_success: Dict[str, int] = {}
        for log_path in self.log_paths:
            for item_id, code in self._records(log_path):
                counts[item_id] += 1
                if code != ReturnCode.SUCCESS:
                    non_success[item_id] = code

        expected = set(self.expected_ids)
        report = ValidationReport(
            action=self.action,
            expected=len(self.expected_ids),
            logged=sum(counts.values()),
            missing=[i for i in self.expected_ids if i not in counts],
            duplicated=sorted(i for i, n in counts.items() if n > 1),
            unexpected=sorted(i for i in counts if i not in expected),
            non_success=non_success,
        )

        if report.passed:
            logger.info(
                "Result validation passed",
                action=self.action,
                expected=report.expected,
                logged=report.logged,
            )
        else:
            logger.error(
                "Result validation failed",
                action=self.action,
                missing=len(report.missing),
                duplicated=len(report.duplicated),
                unexpected=len(report.unexpected),
            )
        if report.non_success:
            logger.warning(
                "Records with non-success return codes",
                action=self.action,
                return_codes=report.return_code_counts(),
            )
        return report

    def merge(self, output_path: Path, remove_shards: bool = True) -> Path:
        """
        Concatenate shard logs into one log with a single header.

        Parameters
        ----------
        output_path : Path
            Merged log to write.
        remove_shards : bool, default=True
            Delete shard logs once merged.
        """
        output_path = Path(output_path)
        with open(output_path, "w", encoding="utf-8") as out:
            out.write(self.header + "\n")
            for log_path in self.log_paths:
                with open(log_path, "r", encoding="utf-8") as fh:
                    fh.readline()
                    for line in fh:
                        if line.strip():
                            out.write(line if line.endswith("\n") else line + "\n")

        if remove_shards:
            for log_path in self.log_paths:
                if log_path != output_path:
                    remove_file(log_path)

        logger.info(
            "Shard logs merged",
            action=self.action,
            output_path=str(output_path),
            num_shards=len(self.log_paths),
        )
        return output_path
