"""
Work item source and partitioner.

Splits a consolidated validation input file into N contiguous shard files,
one per worker process. Concatenating the shards in index order reproduces
the non-blank input lines in order, each terminated by a single LF; the
same input and shard count always give the same partition.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Sequence, TypeVar
import structlog

from .constants import SHARD_SUFFIX
from .exceptions import PartitionError
from .utils import ensure_directory, remove_file

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class Partition:
    """
    Result of splitting an input file.

    Parameters
    ----------
    shard_paths : List[Path]
        One shard file per worker, in shard index order.
    item_ids : List[str]
        Identifiers of every work item, in original input order. Kept
        because the consolidated input is deleted after partitioning.
    shard_sizes : List[int]
        Number of items written to each shard.
    """

    shard_paths: List[Path]
    item_ids: List[str]
    shard_sizes: List[int] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.item_ids)

    @property
    def num_shards(self) -> int:
        return len(self.shard_paths)


def split_lines(lines: Sequence[T], num_shards: int) -> List[List[T]]:
    """
    Split ``lines`` into ``num_shards`` contiguous slices.

    Each slice holds ``ceil(total / num_shards)`` items except the trailing
    ones, which may be smaller or empty.

    Examples
    --------
    >>> [len(s) for s in split_lines(list(range(10)), 3)]
    [4, 4, 2]
    """
    if num_shards < 1:
        raise PartitionError(f"Shard count must be at least 1, got {num_shards}")

    chunk = math.ceil(len(lines) / num_shards) if lines else 0
    return [list(lines[i * chunk : (i + 1) * chunk]) for i in range(num_shards)]


def read_input_lines(input_file: Path) -> List[str]:
    """Read non-blank lines of an input file without their line terminators."""
    if not input_file.is_file():
        raise PartitionError("Input file not found", input_path=str(input_file))

    with open(input_file, "r", encoding="utf-8") as fh:
        return [line.rstrip("\r\n") for line in fh if line.strip()]


def item_id_of(line: str) -> str:
    """First whitespace-delimited field of an input or log line."""
    fields = line.split()
    return fields[0] if fields else ""


def shard_path(output_dir: Path, stem: str, index: int) -> Path:
    return output_dir / f"{stem}{SHARD_SUFFIX}.{index}"


def split_input_file(
    input_file: Path,
    output_dir: Path,
    num_shards: int,
    delete_input: bool = True,
) -> Partition:
    """
    Split ``input_file`` into ``num_shards`` shard files in ``output_dir``.

    Blank lines are dropped and CRLF terminators are rewritten as LF, so the
    shards reproduce the work items of the input rather than its bytes.

    Parameters
    ----------
    input_file : Path
        Consolidated validation input, one work item per line.
    output_dir : Path
        Directory receiving ``<stem>.shard.<i>`` files.
    num_shards : int
        Number of shards (one per worker), at least 1.
    delete_input : bool, default=True
        Remove the consolidated input once every shard is written.

    Returns
    -------
    Partition
        Shard paths and the ordered identifiers of all items.

    Raises
    ------
    PartitionError
        If the input is missing, ``num_shards`` is below 1, or an item
        identifier occurs more than once.
    """
    input_file = Path(input_file)
    lines = read_input_lines(input_file)

    item_ids = [item_id_of(line) for line in lines]
    duplicates = sorted(i for i, count in Counter(item_ids).items() if count > 1)
    if duplicates:
        raise PartitionError(
            f"Duplicate work item identifiers in input: {', '.join(duplicates[:10])}",
            input_path=str(input_file),
        )

    shards = split_lines(lines, num_shards)
    ensure_directory(output_dir)

    shard_paths = []
    for index, shard_lines in enumerate(shards):
        path = shard_path(Path(output_dir), input_file.stem, index)
        with open(path, "w", encoding="utf-8") as fh:
            for line in shard_lines:
                fh.write(line + "\n")
        shard_paths.append(path)

    if delete_input:
        remove_file(input_file)

    partition = Partition(
        shard_paths=shard_paths,
        item_ids=item_ids,
        shard_sizes=[len(s) for s in shards],
    )
    logger.info(
        "Input partitioned",
        input_file=str(input_file),
        total_items=partition.total,
        num_shards=num_shards,
        shard_sizes=partition.shard_sizes,
    )
    return partition
