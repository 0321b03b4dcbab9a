"""
Reference implementation of the plugin interface.

A small, deterministic implementation built on OpenCV and NumPy. It exists
to exercise every harness path end to end and as a worked example for
implementers; its scores carry no biometric meaning.

Templates
---------
* Face: ``FACE_GRID x FACE_GRID`` downsampled, zero-mean, unit-norm grey
  levels as float32. Scores are cosine similarities (higher is better).
* Iris: ``IRIS_ROWS x IRIS_COLS`` bits, each set when the pixel is above
  its row median, packed with ``np.packbits``. Scores are fractional
  Hamming distances (lower is better).
* Multimodal: face vector followed by the iris bits as +/-1, unit-norm
  float32. Scores are cosine similarities.

Demorphing is deliberately not provided, so those actions abstain.
"""

from pathlib import Path
from typing import Dict, List, Optional, Sequence
import cv2
import numpy as np
import structlog

from .data_models import (
    BoundingBox,
    Candidate,
    GalleryType,
    Image,
    ImageDescription,
    Media,
    MorphLabel,
    MorphResult,
    QualityMeasure,
    QualityResult,
    ReturnCode,
    ReturnStatus,
    Role,
    SearchResult,
    SimilarityResult,
    SubjectMetadata,
    TemplateResult,
    TemplateRole,
)
from .gallery import read_manifest
from .plugin_contract import Interface

logger = structlog.get_logger(__name__)

# =============================================================================
# Template Geometry
# =============================================================================
FACE_GRID = 16
FACE_TEMPLATE_BYTES = FACE_GRID * FACE_GRID * 4

IRIS_ROWS = 16
IRIS_COLS = 32
IRIS_TEMPLATE_BYTES = IRIS_ROWS * IRIS_COLS // 8

MULTIMODAL_TEMPLATE_BYTES = (FACE_GRID * FACE_GRID + IRIS_ROWS * IRIS_COLS) * 4

# Smallest side accepted for any input image
MIN_IMAGE_SIDE = 8

# =============================================================================
# Decision Thresholds
# =============================================================================
MORPH_THRESHOLD = 0.5

GALLERY_FILE_NAME = "reference_gallery.npz"


def _grey(image: Image) -> np.ndarray:
    """Grey levels of an image as float64 in [0, 1]."""
    pixels = image.as_array()
    scale = 65535.0 if pixels.dtype == np.uint16 else 255.0
    if pixels.ndim == 3:
        pixels = cv2.cvtColor(pixels, cv2.COLOR_RGB2GRAY)
    return pixels.astype(np.float64) / scale


def _unit(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else vector


def face_features(image: Image) -> np.ndarray:
    grey = _grey(image)
    small = cv2.resize(grey, (FACE_GRID, FACE_GRID), interpolation=cv2.INTER_AREA)
    vector = small.ravel() - small.mean()
    return _unit(vector).astype(np.float32)


def iris_bits(image: Image) -> np.ndarray:
    grey = _grey(image)
    small = cv2.resize(grey, (IRIS_COLS, IRIS_ROWS), interpolation=cv2.INTER_AREA)
    return (small > np.median(small, axis=1, keepdims=True)).astype(np.uint8).ravel()


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    denominator = np.linalg.norm(a) * np.linalg.norm(b)
    if denominator == 0:
        return 0.0
    return float(np.dot(a, b) / denominator)


def hamming_distance(a: bytes, b: bytes) -> float:
    bits_a = np.unpackbits(np.frombuffer(a, dtype=np.uint8))
    bits_b = np.unpackbits(np.frombuffer(b, dtype=np.uint8))
    return float(np.count_nonzero(bits_a != bits_b)) / bits_a.size


def _too_small(images: Sequence[Image]) -> bool:
    return any(min(i.width, i.height) < MIN_IMAGE_SIDE for i in images)


class ReferenceImplementation(Interface):
    """
    Deterministic implementation used by the harness's own tests.

    Parameters
    ----------
    morph_threshold : float, default=MORPH_THRESHOLD
        Score above which an image is reported as a morph.
    """

    def __init__(self, morph_threshold: float = MORPH_THRESHOLD) -> None:
        self.morph_threshold = morph_threshold
        self.config_dir: Optional[str] = None
        self.role: Optional[Role] = None
        self._gallery_ids: List[str] = []
        self._gallery_templates: List[bytes] = []

    def initialize(
        self, config_dir: str, role: Role, config_value: str = ""
    ) -> ReturnStatus:
        self.config_dir = config_dir
        self.role = role
        logger.debug("Reference implementation initialized", role=role.value)
        return ReturnStatus(ReturnCode.SUCCESS)

    # -- quality ----------------------------------------------------------

    def vector_quality(self, image: Image) -> QualityResult:
        if _too_small([image]):
            return QualityResult(ReturnStatus(ReturnCode.REFUSE_INPUT, "image too small"))

        grey = _grey(image)
        mean = float(grey.mean())
        variance = float(grey.var())
        sharpness = float(cv2.Laplacian(grey, cv2.CV_64F).var())
        under = float(np.mean(grey > 0.05))
        over = float(np.mean(grey < 0.95))
        dynamic_range = float(grey.max() - grey.min())

        unified = 100.0 * (
            0.3 * min(1.0, sharpness * 10.0)
            + 0.2 * (1.0 - abs(mean - 0.5) * 2.0)
            + 0.2 * dynamic_range
            + 0.15 * under
            + 0.15 * over
        )

        measures: Dict[QualityMeasure, float] = {
            QualityMeasure.UNIFIED_QUALITY_SCORE: unified,
            QualityMeasure.LUMINANCE_MEAN: 100.0 * mean,
            QualityMeasure.LUMINANCE_VARIANCE: 100.0 * variance,
            QualityMeasure.UNDER_EXPOSURE_PREVENTION: 100.0 * under,
            QualityMeasure.OVER_EXPOSURE_PREVENTION: 100.0 * over,
            QualityMeasure.DYNAMIC_RANGE: 100.0 * dynamic_range,
            QualityMeasure.SHARPNESS: sharpness,
        }
        return QualityResult(
            ReturnStatus(ReturnCode.SUCCESS),
            bounding_box=BoundingBox(0, 0, image.width, image.height),
            measures=measures,
        )

    # -- morph detection --------------------------------------------------

    def detect_morph(self, image: Image, label: MorphLabel) -> MorphResult:
        if _too_small([image]):
            return MorphResult(ReturnStatus(ReturnCode.REFUSE_INPUT, "image too small"))

        # Low detail relative to contrast scores as morph-like
        grey = _grey(image)
        detail = float(cv2.Laplacian(grey, cv2.CV_64F).std())
        contrast = float(grey.std())
        score = 1.0 / (1.0 + detail / contrast) if contrast > 0 else 1.0
        return MorphResult(
            ReturnStatus(ReturnCode.SUCCESS),
            is_morph=score > self.morph_threshold,
            score=score,
        )

    def detect_morph_differentially(
        self,
        image: Image,
        label: MorphLabel,
        probe: Image,
        subject: Optional[SubjectMetadata] = None,
    ) -> MorphResult:
        if _too_small([image, probe]):
            return MorphResult(ReturnStatus(ReturnCode.REFUSE_INPUT, "image too small"))

        similarity = cosine_similarity(face_features(image), face_features(probe))
        score = (1.0 - similarity) / 2.0
        return MorphResult(
            ReturnStatus(ReturnCode.SUCCESS),
            is_morph=score > self.morph_threshold,
            score=score,
        )

    def compare_images(self, enroll_image: Image, verif_image: Image) -> SimilarityResult:
        if _too_small([enroll_image, verif_image]):
            return SimilarityResult(ReturnStatus(ReturnCode.REFUSE_INPUT, "image too small"))

        similarity = cosine_similarity(
            face_features(enroll_image), face_features(verif_image)
        )
        return SimilarityResult(
            ReturnStatus(ReturnCode.SUCCESS), similarity=(similarity + 1.0) / 2.0
        )

    # -- 1:N template creation --------------------------------------------

    def create_face_template(self, media: Media, role: TemplateRole) -> TemplateResult:
        if _too_small(media.data):
            return TemplateResult(
                ReturnStatus(ReturnCode.FACE_DETECTION_ERROR, "image too small")
            )
        vector = _unit(np.mean([face_features(i) for i in media.data], axis=0))
        return TemplateResult(
            ReturnStatus(ReturnCode.SUCCESS), template=vector.astype(np.float32).tobytes()
        )

    def create_iris_template(self, media: Media, role: TemplateRole) -> TemplateResult:
        if _too_small(media.data):
            return TemplateResult(
                ReturnStatus(ReturnCode.TEMPLATE_CREATION_ERROR, "image too small")
            )
        # Majority vote across samples
        votes = np.mean([iris_bits(i) for i in media.data], axis=0)
        bits = (votes >= 0.5).astype(np.uint8)
        return TemplateResult(
            ReturnStatus(ReturnCode.SUCCESS), template=np.packbits(bits).tobytes()
        )

    def create_face_and_iris_template(
        self, media: Media, role: TemplateRole
    ) -> TemplateResult:
        if _too_small(media.data):
            return TemplateResult(
                ReturnStatus(ReturnCode.TEMPLATE_CREATION_ERROR, "image too small")
            )

        faces = [i for i in media.data if i.description != ImageDescription.IRIS]
        irises = [i for i in media.data if i.description == ImageDescription.IRIS]
        if not faces or not irises:
            return TemplateResult(
                ReturnStatus(
                    ReturnCode.NUM_DATA_ERROR, "need at least one face and one iris image"
                )
            )

        face = _unit(np.mean([face_features(i) for i in faces], axis=0))
        iris = np.mean([iris_bits(i) for i in irises], axis=0) * 2.0 - 1.0
        vector = _unit(np.concatenate([face, _unit(iris)]))
        return TemplateResult(
            ReturnStatus(ReturnCode.SUCCESS), template=vector.astype(np.float32).tobytes()
        )

    # -- 1:N gallery lifecycle --------------------------------------------

    def finalize_enrollment(
        self,
        config_dir: str,
        enrollment_dir: str,
        edb_path: str,
        manifest_path: str,
        gallery_type: GalleryType,
    ) -> ReturnStatus:
        entries = read_manifest(Path(manifest_path))
        blob = Path(edb_path).read_bytes()

        ids = np.array([e.template_id for e in entries], dtype=str)
        offsets = np.array([e.offset for e in entries], dtype=np.uint64)
        lengths = np.array([e.length for e in entries], dtype=np.uint64)
        np.savez(
            Path(enrollment_dir) / GALLERY_FILE_NAME,
            ids=ids,
            offsets=offsets,
            lengths=lengths,
            blob=np.frombuffer(blob, dtype=np.uint8),
        )
        logger.info(
            "Reference gallery written",
            num_templates=len(entries),
            gallery_type=gallery_type.name,
        )
        return ReturnStatus(ReturnCode.SUCCESS)

    def initialize_identification(
        self, config_dir: str, enrollment_dir: str
    ) -> ReturnStatus:
        gallery_file = Path(enrollment_dir) / GALLERY_FILE_NAME
        if not gallery_file.is_file():
            return ReturnStatus(ReturnCode.ENROLL_DIR_ERROR, f"{gallery_file} not found")

        with np.load(gallery_file) as data:
            blob = data["blob"].tobytes()
            self._gallery_ids = [str(i) for i in data["ids"]]
            self._gallery_templates = [
                blob[int(o) : int(o) + int(n)]
                for o, n in zip(data["offsets"], data["lengths"])
            ]
        return ReturnStatus(ReturnCode.SUCCESS)

    def search(self, template: bytes, top_k: int) -> SearchResult:
        if len(template) == IRIS_TEMPLATE_BYTES:
            scorer = hamming_distance
            higher_is_better = False
        elif len(template) in (FACE_TEMPLATE_BYTES, MULTIMODAL_TEMPLATE_BYTES):
            probe = np.frombuffer(template, dtype=np.float32)

            def scorer(a: bytes, b: bytes) -> float:
                return cosine_similarity(probe, np.frombuffer(b, dtype=np.float32))

            higher_is_better = True
        else:
            return SearchResult(
                ReturnStatus(ReturnCode.VERIF_TEMPLATE_ERROR, "unrecognised template size")
            )

        scored = [
            (scorer(template, enrolled), template_id)
            for template_id, enrolled in zip(self._gallery_ids, self._gallery_templates)
            if len(enrolled) == len(template)
        ]
        scored.sort(key=lambda pair: -pair[0] if higher_is_better else pair[0])
        candidates = tuple(
            Candidate(is_assigned=True, template_id=template_id, score=score)
            for score, template_id in scored[:top_k]
        )
        return SearchResult(ReturnStatus(ReturnCode.SUCCESS), candidates)


def get_implementation() -> Interface:
    """Factory used by ``load_implementation``."""
    return ReferenceImplementation()
