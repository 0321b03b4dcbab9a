"""
Enrollment gallery lifecycle for 1:N identification.

Enrollment workers each write a shard-local template blob and manifest;
after they finish, the shards are concatenated into one enrollment
database (EDB) and one manifest. The gallery is then finalized exactly once
by the implementation and becomes read-only for the rest of its life:
identification initializes against it and every search only reads it.

The manifest is plain text, one ``template_id offset length`` line per
template in enrollment order, with 64-bit offsets so that galleries larger
than 4 GiB are addressable.
"""

import json
import math
import os
import shutil
import stat
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple
import structlog

from .constants import (
    DEFAULT_EDB_NAME,
    DEFAULT_MANIFEST_NAME,
    GALLERY_MARKER_NAME,
)
from .data_models import (
    Candidate,
    GalleryType,
    ManifestEntry,
    Modality,
    ReturnStatus,
    SearchResult,
    unassigned_candidates,
)
from .exceptions import (
    GalleryFinalizedError,
    GalleryIntegrityError,
    GalleryStateError,
    ManifestError,
)
from .plugin_contract import (
    Interface,
    check_search_result,
    guarded_call,
    guarded_status,
)
from .utils import CHUNK_SIZE, file_sha256, format_bytes, remove_file

logger = structlog.get_logger(__name__)


class GalleryState(Enum):
    UNINITIALIZED = "uninitialized"
    FINALIZED = "finalized"
    SEARCH_READY = "search_ready"


# =============================================================================
# Manifest I/O
# =============================================================================


def write_manifest(manifest_path: Path, entries: Sequence[ManifestEntry]) -> None:
    with open(manifest_path, "w", encoding="utf-8") as fh:
        for entry in entries:
            fh.write(f"{entry.template_id} {entry.offset} {entry.length}\n")


def read_manifest(manifest_path: Path) -> List[ManifestEntry]:
    """
    Parse a manifest file.

    Raises
    ------
    ManifestError
        If the file is missing or a line is not ``id offset length`` with
        non-negative 64-bit integers.
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.is_file():
        raise ManifestError("Manifest not found", str(manifest_path))

    entries = []
    with open(manifest_path, "r", encoding="utf-8") as fh:
        for line_number, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            fields = line.split()
            if len(fields) != 3:
                raise ManifestError(
                    f"Line {line_number}: expected 3 fields, found {len(fields)}",
                    str(manifest_path),
                )
            try:
                entries.append(
                    ManifestEntry(fields[0], int(fields[1]), int(fields[2]))
                )
            except ValueError as e:
                raise ManifestError(f"Line {line_number}: {e}", str(manifest_path)) from e
    return entries


def validate_manifest(entries: Sequence[ManifestEntry], blob_size: int) -> None:
    """
    Check that entries tile the blob contiguously in order with unique ids.

    Raises
    ------
    ManifestError
        On a gap, overlap, duplicate identifier or size mismatch.
    """
    expected_offset = 0
    seen = set()
    for entry in entries:
        if entry.template_id in seen:
            raise ManifestError(f"Duplicate template identifier {entry.template_id}")
        seen.add(entry.template_id)
        if entry.offset != expected_offset:
            raise ManifestError(
                f"Template {entry.template_id} starts at {entry.offset}, "
                f"expected {expected_offset}"
            )
        expected_offset = entry.end

    if expected_offset != blob_size:
        raise ManifestError(
            f"Manifest covers {expected_offset} bytes but blob holds {blob_size}"
        )


# =============================================================================
# Enrollment Shards
# =============================================================================


class EnrollmentShardWriter:
    """
    Appends templates to one worker's shard-local blob and manifest.

    Every template is recorded, including zero-length ones produced when
    feature extraction failed.

    Examples
    --------
    >>> with EnrollmentShardWriter(edb, manifest) as writer:
    ...     writer.append("subject_01", template_bytes)
    """

    def __init__(self, edb_path: Path, manifest_path: Path) -> None:
        self.edb_path = Path(edb_path)
        self.manifest_path = Path(manifest_path)
        self._edb = open(self.edb_path, "wb")
        self._manifest = open(self.manifest_path, "w", encoding="utf-8")
        self.offset = 0
        self.count = 0

    def append(self, template_id: str, template: bytes) -> ManifestEntry:
        entry = ManifestEntry(template_id, self.offset, len(template))
        self._edb.write(template)
        self._manifest.write(f"{entry.template_id} {entry.offset} {entry.length}\n")
        self.offset = entry.end
        self.count += 1
        return entry

    def close(self) -> None:
        if not self._edb.closed:
            self._edb.close()
        if not self._manifest.closed:
            self._manifest.close()

    def discard(self) -> None:
        """Close and delete both shard files."""
        self.close()
        remove_file(self.edb_path)
        remove_file(self.manifest_path)

    def __enter__(self) -> "EnrollmentShardWriter":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def merge_enrollment_shards(
    shards: Sequence[Tuple[Path, Path]],
    edb_path: Path,
    manifest_path: Path,
    remove_shards: bool = True,
) -> List[ManifestEntry]:
    """
    Concatenate shard blobs into one EDB and rebase their manifests.

    Parameters
    ----------
    shards : Sequence[Tuple[Path, Path]]
        ``(edb, manifest)`` pairs in shard index order.
    edb_path : Path
        Destination blob.
    manifest_path : Path
        Destination manifest.
    remove_shards : bool, default=True
        Delete shard files once merged.

    Returns
    -------
    List[ManifestEntry]
        Entries of the merged manifest.
    """
    merged: List[ManifestEntry] = []
    base = 0

    with open(edb_path, "wb") as out:
        for shard_edb, shard_manifest in shards:
            entries = read_manifest(shard_manifest)
            shard_size = Path(shard_edb).stat().st_size
            validate_manifest(entries, shard_size)

            with open(shard_edb, "rb") as src:
                shutil.copyfileobj(src, out, CHUNK_SIZE)

            merged.extend(
                ManifestEntry(e.template_id, base + e.offset, e.length) for e in entries
            )
            base += shard_size

    validate_manifest(merged, base)
    write_manifest(manifest_path, merged)

    if remove_shards:
        for shard_edb, shard_manifest in shards:
            remove_file(shard_edb)
            remove_file(shard_manifest)

    logger.info(
        "Enrollment shards merged",
        edb_path=str(edb_path),
        num_shards=len(shards),
        num_templates=len(merged),
        blob_size=format_bytes(base),
    )
    return merged


# =============================================================================
# Candidate Ordering
# =============================================================================


def _relevance_key(modality: Modality):
    sign = -1.0 if modality.higher_is_better else 1.0
    return lambda candidate: sign * candidate.score


def rank_candidates(
    candidates: Sequence[Candidate],
    top_k: int,
    modality: Modality,
    manifest_order: Optional[Dict[str, int]] = None,
) -> List[Candidate]:
    """
    Order a candidate list and size it to exactly ``top_k`` entries.

    Assigned candidates come first, most relevant first under the
    modality's polarity, with ties broken by manifest position. Unassigned
    candidates, candidates with a NaN score, candidates naming a template
    absent from the manifest, and repeated identifiers after their best
    occurrence are dropped. The list is then truncated or padded with
    unassigned candidates.

    Parameters
    ----------
    candidates : Sequence[Candidate]
        Candidates returned by the implementation.
    top_k : int
        Required list length.
    modality : Modality
        Fixes whether higher or lower scores are more relevant.
    manifest_order : Optional[Dict[str, int]], default=None
        Template identifier to enrollment position. When given, candidates
        naming any other template are dropped, so an empty mapping leaves
        every entry unassigned. When None, identifiers are not checked.

    Returns
    -------
    List[Candidate]
        Exactly ``top_k`` candidates.
    """
    order = manifest_order if manifest_order is not None else {}
    unknown_position = len(order)

    usable = [
        c
        for c in candidates
        if c.is_assigned
        and not math.isnan(c.score)
        and (manifest_order is None or c.template_id in manifest_order)
    ]
    relevance = _relevance_key(modality)
    usable.sort(key=lambda c: (relevance(c), order.get(c.template_id, unknown_position)))

    ranked: List[Candidate] = []
    seen = set()
    for candidate in usable:
        if candidate.template_id in seen:
            continue
        seen.add(candidate.template_id)
        ranked.append(candidate)
        if len(ranked) == top_k:
            break

    return ranked + unassigned_candidates(top_k - len(ranked))


def is_ranked(candidates: Sequence[Candidate], modality: Modality) -> bool:
    """True if assigned candidates precede unassigned ones and are in order."""
    assigned_done = False
    previous: Optional[Candidate] = None
    for candidate in candidates:
        if not candidate.is_assigned:
            assigned_done = True
            continue
        if assigned_done:
            return False
        if previous is not None:
            if modality.higher_is_better and previous.score < candidate.score:
                return False
            if not modality.higher_is_better and previous.score > candidate.score:
                return False
        previous = candidate
    return True


# =============================================================================
# Lifecycle Manager
# =============================================================================


class GalleryLifecycleManager:
    """
    Enforces the finalize-once, search-read-only gallery lifecycle.

    The manager persists a marker file in the enrollment directory when the
    gallery is finalized, so the finalized state survives across processes
    and hosts. After finalize the blob and manifest are made read-only and
    their digests are re-checked when identification is initialized.

    Parameters
    ----------
    implementation : Interface
        Implementation under test.
    config_dir : Path
        Read-only configuration directory, passed through unchanged.
    enrollment_dir : Path
        Directory holding the EDB, manifest and marker.
    modality : Modality, default=Modality.FACE
        Polarity used to order search results.
    edb_name : str, default=DEFAULT_EDB_NAME
        File name of the concatenated blob inside ``enrollment_dir``.
    manifest_name : str, default=DEFAULT_MANIFEST_NAME
        File name of the manifest inside ``enrollment_dir``.
    """

    def __init__(
        self,
        implementation: Interface,
        config_dir: Path,
        enrollment_dir: Path,
        modality: Modality = Modality.FACE,
        edb_name: str = DEFAULT_EDB_NAME,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
    ) -> None:
        self.implementation = implementation
        self.config_dir = Path(config_dir)
        self.enrollment_dir = Path(enrollment_dir)
        self.modality = modality
        self.edb_path = self.enrollment_dir / edb_name
        self.manifest_path = self.enrollment_dir / manifest_name
        self.marker_path = self.enrollment_dir / GALLERY_MARKER_NAME

        self._state = (
            GalleryState.FINALIZED if self.marker_path.exists() else GalleryState.UNINITIALIZED
        )
        self._manifest_order: Dict[str, int] = {}

        logger.debug(
            "GalleryLifecycleManager initialized",
            enrollment_dir=str(self.enrollment_dir),
            state=self._state.value,
            modality=modality.value,
        )

    @property
    def state(self) -> GalleryState:
        return self._state

    @property
    def is_finalized(self) -> bool:
        return self._state in (GalleryState.FINALIZED, GalleryState.SEARCH_READY)

    def read_marker(self) -> Dict[str, Any]:
        with open(self.marker_path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def ensure_writable(self) -> None:
        """Raise if the gallery can no longer receive enrollment data."""
        if self.is_finalized or self.marker_path.exists():
            raise GalleryFinalizedError(str(self.enrollment_dir))

    def finalize(
        self, gallery_type: GalleryType = GalleryType.CONSOLIDATED
    ) -> ReturnStatus:
        """
        Freeze the enrollment data through the implementation.

        Returns
        -------
        ReturnStatus
            The implementation's status. The gallery only becomes finalized
            when it is successful.

        Raises
        ------
        GalleryFinalizedError
            If the gallery was already finalized; nothing is modified.
        ManifestError
            If the blob and manifest are missing or inconsistent.
        """
        self.ensure_writable()

        entries = read_manifest(self.manifest_path)
        if not self.edb_path.is_file():
            raise ManifestError("Enrollment blob not found", str(self.edb_path))
        blob_size = self.edb_path.stat().st_size
        validate_manifest(entries, blob_size)

        logger.info(
            "Finalizing enrollment",
            enrollment_dir=str(self.enrollment_dir),
            num_templates=len(entries),
            blob_size=format_bytes(blob_size),
            gallery_type=gallery_type.name,
        )

        status = guarded_status(
            self.implementation.finalize_enrollment,
            str(self.config_dir),
            str(self.enrollment_dir),
            str(self.edb_path),
            str(self.manifest_path),
            gallery_type,
        )
        if not status.ok:
            logger.error(
                "finalize_enrollment() returned error",
                return_code=int(status.code),
                status=str(status),
            )
            return status

        marker = {
            "state": GalleryState.FINALIZED.value,
            "gallery_type": gallery_type.name,
            "num_templates": len(entries),
            "blob_size": blob_size,
            "edb": self.edb_path.name,
            "manifest": self.manifest_path.name,
            "edb_sha256": file_sha256(self.edb_path),
            "manifest_sha256": file_sha256(self.manifest_path),
            "finalized_at": datetime.now(timezone.utc).isoformat(),
        }
        with open(self.marker_path, "w", encoding="utf-8") as fh:
            json.dump(marker, fh, indent=2)

        read_only = stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH
        for path in (self.edb_path, self.manifest_path, self.marker_path):
            os.chmod(path, read_only)

        self._state = GalleryState.FINALIZED
        logger.info("Gallery finalized", enrollment_dir=str(self.enrollment_dir))
        return status

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Check that the finalized blob and manifest are unchanged.

        Raises
        ------
        GalleryStateError
            If the gallery has not been finalized.
        GalleryIntegrityError
            If either file's digest differs from the one recorded at finalize.
        """
        if not self.marker_path.exists():
            raise GalleryStateError(
                "verify gallery", GalleryState.UNINITIALIZED.value, str(self.enrollment_dir)
            )

        marker = self.read_marker()
        for path, key in (
            (self.edb_path, "edb_sha256"),
            (self.manifest_path, "manifest_sha256"),
        ):
            if not path.is_file() or file_sha256(path) != marker[key]:
                raise GalleryIntegrityError(str(self.enrollment_dir), str(path))
        return marker

    def initialize_identification(self) -> ReturnStatus:
        """
        Prepare the implementation for searches against the finalized gallery.

        Raises
        ------
        GalleryStateError
            If the gallery is not finalized or identification was already
            initialized.
        GalleryIntegrityError
            If the gallery files changed since finalize.
        """
        if self._state != GalleryState.FINALIZED:
            raise GalleryStateError(
                "initialize identification", self._state.value, str(self.enrollment_dir)
            )

        self.verify_integrity()
        self._manifest_order = {
            entry.template_id: position
            for position, entry in enumerate(read_manifest(self.manifest_path))
        }

        status = guarded_status(
            self.implementation.initialize_identification,
            str(self.config_dir),
            str(self.enrollment_dir),
        )
        if status.ok:
            self._state = GalleryState.SEARCH_READY
            logger.info(
                "Identification initialized",
                enrollment_dir=str(self.enrollment_dir),
                gallery_size=len(self._manifest_order),
            )
        else:
            logger.error(
                "initialize_identification() returned error",
                return_code=int(status.code),
                status=str(status),
            )
        return status

    def search(self, template: bytes, top_k: int) -> SearchResult:
        """
        Search one identification template and return exactly ``top_k``
        ranked candidates.

        Raises
        ------
        GalleryStateError
            If identification has not been initialized.
        ValueError
            If ``top_k`` is below 1.
        """
        if self._state != GalleryState.SEARCH_READY:
            raise GalleryStateError("search", self._state.value, str(self.enrollment_dir))
        if top_k < 1:
            raise ValueError("top_k must be at least 1")

        result = guarded_call(
            self.implementation.search,
            bytes(template),
            top_k,
            wrap=SearchResult,
            check=check_search_result,
        )
        if not result.status.ok:
            return SearchResult(result.status, tuple(unassigned_candidates(top_k)))

        ranked = rank_candidates(
            result.candidates, top_k, self.modality, self._manifest_order
        )
        returned = [c for c in result.candidates if c.is_assigned][:top_k]
        if returned != [c for c in ranked if c.is_assigned]:
            logger.warning(
                "Candidate list reordered to match the ranking contract",
                modality=self.modality.value,
                returned=len(result.candidates),
                top_k=top_k,
            )
        return SearchResult(result.status, tuple(ranked))
