"""
Data models for the BIOHARNESS validation system.

This module defines the values that cross the plugin boundary (images,
media, templates, candidates, return statuses and per-operation result
structures) together with the harness-side records (work items and
manifest entries). Values handed to an implementation are immutable so an
implementation can never alias or mutate harness-owned buffers; every
operation returns a fresh result object instead of filling output
parameters.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Dict, Optional, Tuple, List
import numpy as np

from .constants import (
    API_MAJOR_VERSION,
    API_MINOR_VERSION,
    MAX_MANIFEST_VALUE,
    UNASSIGNED_SCORE,
    VALID_IMAGE_DEPTHS,
)


# =============================================================================
# Return Status
# =============================================================================


class ReturnCode(IntEnum):
    """Closed set of outcomes of a plugin call; values are written to logs."""

    SUCCESS = 0
    UNKNOWN_ERROR = 1
    CONFIG_ERROR = 2
    REFUSE_INPUT = 3
    EXTRACT_ERROR = 4
    PARSE_ERROR = 5
    TEMPLATE_CREATION_ERROR = 6
    VERIF_TEMPLATE_ERROR = 7
    FACE_DETECTION_ERROR = 8
    NUM_DATA_ERROR = 9
    TEMPLATE_FORMAT_ERROR = 10
    ENROLL_DIR_ERROR = 11
    INPUT_LOCATION_ERROR = 12
    MEMORY_ERROR = 13
    NOT_IMPLEMENTED = 14
    VENDOR_ERROR = 15

    @property
    def description(self) -> str:
        return _RETURN_CODE_DESCRIPTIONS[self]


_RETURN_CODE_DESCRIPTIONS: Dict[ReturnCode, str] = {
    ReturnCode.SUCCESS: "Success",
    ReturnCode.UNKNOWN_ERROR: "Unknown Error",
    ReturnCode.CONFIG_ERROR: "Error reading configuration files",
    ReturnCode.REFUSE_INPUT: "Elective refusal to process the input",
    ReturnCode.EXTRACT_ERROR: "Involuntary failure to process the image",
    ReturnCode.PARSE_ERROR: "Cannot parse the input data",
    ReturnCode.TEMPLATE_CREATION_ERROR: "Elective refusal to produce a template",
    ReturnCode.VERIF_TEMPLATE_ERROR: (
        "Either or both of the input templates were result of failed feature extraction"
    ),
    ReturnCode.FACE_DETECTION_ERROR: "Unable to detect a face in the image",
    ReturnCode.NUM_DATA_ERROR: "Number of input images not supported",
    ReturnCode.TEMPLATE_FORMAT_ERROR: "Template file is an incorrect format or defective",
    ReturnCode.ENROLL_DIR_ERROR: "An operation on the enrollment directory failed",
    ReturnCode.INPUT_LOCATION_ERROR: (
        "Cannot locate the input data - the input files or names seem incorrect"
    ),
    ReturnCode.MEMORY_ERROR: "Memory allocation failed (e.g. out of memory)",
    ReturnCode.NOT_IMPLEMENTED: "Function is not implemented",
    ReturnCode.VENDOR_ERROR: "Vendor-defined error",
}


@dataclass(frozen=True)
class ReturnStatus:
    """
    Outcome of one plugin call.

    Parameters
    ----------
    code : ReturnCode, default=ReturnCode.UNKNOWN_ERROR
        Outcome kind. A status nobody set explicitly is a failure.
    info : str, default=""
        Optional free-text diagnostic from the implementation.
    """

    code: ReturnCode = ReturnCode.UNKNOWN_ERROR
    info: str = ""

    @property
    def ok(self) -> bool:
        return self.code == ReturnCode.SUCCESS

    @property
    def not_implemented(self) -> bool:
        return self.code == ReturnCode.NOT_IMPLEMENTED

    def __str__(self) -> str:
        if self.info:
            return f"{self.code.description} ({self.info})"
        return self.code.description


@dataclass(frozen=True)
class ApiVersion:
    """Interface version an implementation was built against."""

    major: int
    minor: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


CURRENT_API_VERSION = ApiVersion(API_MAJOR_VERSION, API_MINOR_VERSION)


# =============================================================================
# Labels
# =============================================================================


class ImageDescription(IntEnum):
    """Collection conditions of an image or video frame."""

    UNKNOWN = 0
    STILL_ISO = 1
    STILL_MUGSHOT = 2
    STILL_PHOTOJOURNALISM = 3
    STILL_WILD = 4
    VIDEO_LONG_RANGE = 5
    VIDEO_PHOTOJOURNALISM = 6
    VIDEO_PASSIVE_OBSERVATION = 7
    VIDEO_CHOKEPOINT = 8
    VIDEO_ELEVATED_PLATFORM = 9
    IRIS = 10

    @classmethod
    def from_label(cls, label: Optional[str]) -> "ImageDescription":
        """Map an input-file label such as ``mugshot`` or ``iso`` to a description."""
        if not label:
            return cls.UNKNOWN
        key = label.strip().upper().replace("-", "_")
        for candidate in (key, f"STILL_{key}", f"VIDEO_{key}"):
            if candidate in cls.__members__:
                return cls[candidate]
        return cls.UNKNOWN


class Illuminant(IntEnum):
    UNSPECIFIED = 0
    VISIBLE = 1
    NIR = 2


class MediaLabel(IntEnum):
    IMAGE = 0
    VIDEO = 1


class MorphLabel(IntEnum):
    """Whether a suspected morph was printed and scanned before submission."""

    UNKNOWN = 0
    NON_SCANNED = 1
    SCANNED = 2


class TemplateRole(IntEnum):
    ENROLLMENT_1N = 0
    SEARCH_1N = 1


class GalleryType(IntEnum):
    """Composition of a 1:N gallery, passed to finalize."""

    CONSOLIDATED = 0
    UNCONSOLIDATED = 1

    @classmethod
    def from_name(cls, name: str) -> "GalleryType":
        return cls[name.strip().upper()]


class Role(Enum):
    """Purpose an implementation is initialized for."""

    QUALITY = "quality"
    MORPH = "morph"
    ENROLLMENT = "enrollment"
    IDENTIFICATION = "identification"


class Modality(Enum):
    """
    Biometric modality of a search; fixes the polarity of its scores.

    Face and multimodal scores are similarities (higher is more similar);
    iris scores are dissimilarities (lower is more similar).
    """

    FACE = "face"
    IRIS = "iris"
    MULTIMODAL = "multimodal"

    @property
    def higher_is_better(self) -> bool:
        return self is not Modality.IRIS


class QualityMeasure(Enum):
    """Vector quality measures, in the column order used by quality logs."""

    UNIFIED_QUALITY_SCORE = "UnifiedQualityScore"
    BACKGROUND_UNIFORMITY = "BackgroundUniformity"
    ILLUMINATION_UNIFORMITY = "IlluminationUniformity"
    LUMINANCE_MEAN = "LuminanceMean"
    LUMINANCE_VARIANCE = "LuminanceVariance"
    UNDER_EXPOSURE_PREVENTION = "UnderExposurePrevention"
    OVER_EXPOSURE_PREVENTION = "OverExposurePrevention"
    DYNAMIC_RANGE = "DynamicRange"
    SHARPNESS = "Sharpness"
    COMPRESSION_ARTIFACTS = "CompressionArtifacts"
    NATURAL_COLOUR = "NaturalColour"
    SINGLE_FACE_PRESENT = "SingleFacePresent"
    EYES_OPEN = "EyesOpen"
    MOUTH_CLOSED = "MouthClosed"
    EYES_VISIBLE = "EyesVisible"
    MOUTH_OCCLUSION_PREVENTION = "MouthOcclusionPrevention"
    FACE_OCCLUSION_PREVENTION = "FaceOcclusionPrevention"
    INTER_EYE_DISTANCE = "InterEyeDistance"
    HEAD_SIZE = "HeadSize"
    LEFTWARD_CROP = "LeftwardCropOfTheFaceImage"
    RIGHTWARD_CROP = "RightwardCropOfTheFaceImage"
    MARGIN_ABOVE = "MarginAboveOfTheFaceImage"
    MARGIN_BELOW = "MarginBelowOfTheFaceImage"
    HEAD_POSE_YAW = "HeadPoseYaw"
    HEAD_POSE_PITCH = "HeadPosePitch"
    HEAD_POSE_ROLL = "HeadPoseRoll"
    EXPRESSION_NEUTRALITY = "ExpressionNeutrality"
    NO_HEAD_COVERINGS = "NoHeadCoverings"


# =============================================================================
# Images and Media
# =============================================================================


@dataclass(frozen=True)
class Image:
    """
    A single raster image owned by the harness.

    Parameters
    ----------
    width : int
        Number of pixels horizontally.
    height : int
        Number of pixels vertically.
    depth : int
        Bits per pixel: 8 or 16 per channel, with 1 or 3 channels
        (8, 16, 24 or 48).
    data : bytes
        Raster-scanned pixels, ``width * height * depth / 8`` bytes,
        interleaved RGB for colour images, native byte order for 16-bit.
    description : ImageDescription, default=ImageDescription.UNKNOWN
        Collection conditions of the image.
    illuminant : Illuminant, default=Illuminant.VISIBLE
        Source of light used to acquire the image.

    Raises
    ------
    ValueError
        If the depth is not legal or the buffer size does not match.
    """

    width: int
    height: int
    depth: int
    data: bytes = field(repr=False)
    description: ImageDescription = ImageDescription.UNKNOWN
    illuminant: Illuminant = Illuminant.VISIBLE

    def __post_init__(self) -> None:
        if self.depth not in VALID_IMAGE_DEPTHS:
            raise ValueError(f"Illegal image depth {self.depth}")
        if self.width < 0 or self.height < 0:
            raise ValueError("Image dimensions cannot be negative")
        if not isinstance(self.data, bytes):
            object.__setattr__(self, "data", bytes(self.data))
        if len(self.data) != self.size:
            raise ValueError(
                f"Image buffer holds {len(self.data)} bytes, expected {self.size}"
            )

    @property
    def size(self) -> int:
        """Size of the pixel buffer in bytes."""
        return self.width * self.height * (self.depth // 8)

    @property
    def channels(self) -> int:
        return 3 if self.depth in (24, 48) else 1

    @property
    def bits_per_channel(self) -> int:
        return 16 if self.depth in (16, 48) else 8

    def as_array(self) -> np.ndarray:
        """Return a read-only ``(height, width[, 3])`` view of the pixels."""
        dtype = np.uint16 if self.bits_per_channel == 16 else np.uint8
        array = np.frombuffer(self.data, dtype=dtype)
        if self.channels == 3:
            return array.reshape(self.height, self.width, 3)
        return array.reshape(self.height, self.width)

    @classmethod
    def from_array(
        cls,
        array: np.ndarray,
        description: ImageDescription = ImageDescription.UNKNOWN,
        illuminant: Illuminant = Illuminant.VISIBLE,
    ) -> "Image":
        """Build an image from a uint8/uint16 array of shape (H, W) or (H, W, 3)."""
        if array.dtype not in (np.uint8, np.uint16):
            raise ValueError(f"Unsupported pixel type {array.dtype}")
        if array.ndim == 3 and array.shape[2] != 3:
            raise ValueError("Colour images must have exactly 3 channels")
        if array.ndim not in (2, 3):
            raise ValueError("Images must be 2- or 3-dimensional arrays")

        channels = 3 if array.ndim == 3 else 1
        depth = array.dtype.itemsize * 8 * channels
        return cls(
            width=int(array.shape[1]),
            height=int(array.shape[0]),
            depth=depth,
            data=np.ascontiguousarray(array).tobytes(),
            description=description,
            illuminant=illuminant,
        )


@dataclass(frozen=True)
class Media:
    """
    Still images or chronological video frames of one subject.

    Parameters
    ----------
    type : MediaLabel
        Still images or video.
    data : Tuple[Image, ...]
        Images in chronological order.
    fps : int, default=0
        Frame rate; required for video and zero for still images.
    """

    type: MediaLabel
    data: Tuple[Image, ...]
    fps: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "data", tuple(self.data))
        if self.type == MediaLabel.VIDEO and self.fps <= 0:
            raise ValueError("Video media requires a positive frame rate")
        if self.type == MediaLabel.IMAGE and self.fps != 0:
            raise ValueError("Still media cannot carry a frame rate")

    def __len__(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class BoundingBox:
    """Face bounding box; -1 in every field means not computed."""

    xleft: int = -1
    ytop: int = -1
    width: int = -1
    height: int = -1


@dataclass(frozen=True)
class EyePair:
    is_left_assigned: bool = False
    is_right_assigned: bool = False
    xleft: int = 0
    yleft: int = 0
    xright: int = 0
    yright: int = 0


@dataclass(frozen=True)
class IrisAnnulus:
    limbus_center_x: int = 0
    limbus_center_y: int = 0
    pupil_radius: int = 0
    limbus_radius: int = 0


@dataclass(frozen=True)
class SubjectMetadata:
    """Optional demographic hints for differential morph detection."""

    sex: str = "unknown"
    age: Optional[int] = None


# =============================================================================
# Identification
# =============================================================================


@dataclass(frozen=True)
class Candidate:
    """
    Result of one identification search against one enrolled identity.

    When ``is_assigned`` is False the identifier and score carry no
    meaning and must not be sorted or thresholded on.
    """

    is_assigned: bool = False
    template_id: str = ""
    score: float = UNASSIGNED_SCORE

    @classmethod
    def unassigned(cls) -> "Candidate":
        return cls()


# =============================================================================
# Operation Results
# =============================================================================


@dataclass(frozen=True)
class QualityResult:
    status: ReturnStatus
    bounding_box: BoundingBox = field(default_factory=BoundingBox)
    measures: Dict[QualityMeasure, float] = field(default_factory=dict)


@dataclass(frozen=True)
class MorphResult:
    status: ReturnStatus
    is_morph: Optional[bool] = None
    score: Optional[float] = None


@dataclass(frozen=True)
class SimilarityResult:
    status: ReturnStatus
    similarity: Optional[float] = None


@dataclass(frozen=True)
class DemorphResult:
    status: ReturnStatus
    subjects: Tuple[Image, ...] = ()
    is_morph: Optional[bool] = None
    score: Optional[float] = None


@dataclass(frozen=True)
class TemplateResult:
    """
    Output of a template-creation call.

    A zero-length template is legal: it means no features were extracted
    and it is still enrolled like any other template.
    """

    status: ReturnStatus
    template: bytes = b""
    eye_coordinates: Tuple[EyePair, ...] = ()
    iris_locations: Tuple[IrisAnnulus, ...] = ()


@dataclass(frozen=True)
class SearchResult:
    status: ReturnStatus
    candidates: Tuple[Candidate, ...] = ()


# =============================================================================
# Harness Records
# =============================================================================


@dataclass(frozen=True)
class WorkItem:
    """
    One line of validation input.

    Parameters
    ----------
    item_id : str
        Identifier correlating the input line with its log record.
    resources : Tuple[str, ...]
        Input file paths, in the order the action expects them.
    label : Optional[str], default=None
        Optional description label (for example ``mugshot``).
    fps : int, default=0
        Frame rate when the resources are consecutive video frames.
    """

    item_id: str
    resources: Tuple[str, ...]
    label: Optional[str] = None
    fps: int = 0

    def __post_init__(self) -> None:
        if not self.item_id:
            raise ValueError("item_id must be a non-empty string")
        object.__setattr__(self, "resources", tuple(self.resources))
        if not self.resources:
            raise ValueError(f"Work item {self.item_id} references no resources")


@dataclass(frozen=True)
class ManifestEntry:
    """Location of one enrolled template inside the concatenated blob."""

    template_id: str
    offset: int
    length: int

    def __post_init__(self) -> None:
        if not self.template_id or any(c.isspace() for c in self.template_id):
            raise ValueError(f"Invalid template identifier {self.template_id!r}")
        for name in ("offset", "length"):
            value = getattr(self, name)
            if not 0 <= value < MAX_MANIFEST_VALUE:
                raise ValueError(f"Manifest {name} {value} outside 64-bit range")
        if self.offset + self.length > MAX_MANIFEST_VALUE:
            raise ValueError("Manifest entry extends beyond 64-bit address space")

    @property
    def end(self) -> int:
        return self.offset + self.length


def unassigned_candidates(count: int) -> List[Candidate]:
    """Return ``count`` placeholder candidates."""
    return [Candidate.unassigned() for _ in range(max(count, 0))]
