"""
Catalogue of validation actions.

An action ties together three things: the field layout of its input lines,
the plugin operation called for each work item, and the fixed column
layout of the log record written for that item. Numeric results are
rendered in a fixed order and values that were not computed are written as
``NA``, never left blank.

Input layouts (whitespace-delimited, one work item per line)::

    vectorQ                      id image desc
    detect*Morph                 id image
    detect*MorphWithProbeImg     id image probe
    compare                      id enrollImage verifImage
    demorph                      id image
    demorphDifferentially        id image probe
    enroll*/search*              id [face:|iris:]image ... [fps=N]
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .constants import FPS_PREFIX, NA_TOKEN, RESOURCE_JOIN
from .data_models import (
    DemorphResult,
    ImageDescription,
    Media,
    MediaLabel,
    Modality,
    MorphLabel,
    MorphResult,
    QualityMeasure,
    QualityResult,
    ReturnStatus,
    Role,
    SimilarityResult,
    TemplateResult,
    TemplateRole,
    WorkItem,
)
from .exceptions import ConfigurationError, WorkItemError
from .gallery import EnrollmentShardWriter, GalleryLifecycleManager
from .image_io import load_image
from .plugin_contract import Interface, check_template_result, guarded_call


@dataclass
class ActionContext:
    """Per-worker state handed to every ``Action.process`` call."""

    implementation: Interface
    top_k: int = 1
    gallery: Optional[GalleryLifecycleManager] = None
    enrollment: Optional[EnrollmentShardWriter] = None


@dataclass(frozen=True)
class ActionOutcome:
    """Status of one item and its rendered log fields."""

    status: ReturnStatus
    fields: List[str] = field(default_factory=list)


# =============================================================================
# Field Rendering
# =============================================================================


def fmt_float(value: Optional[float]) -> str:
    if value is None or math.isnan(value):
        return NA_TOKEN
    return f"{value:.6f}"


def fmt_bool(value: Optional[bool]) -> str:
    if value is None:
        return NA_TOKEN
    return "1" if value else "0"


def fmt_code(status: ReturnStatus) -> str:
    return str(int(status.code))


# =============================================================================
# Base Action
# =============================================================================


class Action(ABC):
    """
    One validation action.

    Attributes
    ----------
    name : str
        Action name used on the command line and for log file names.
    role : Role
        Role passed to ``initialize`` before the action's workers start.
    """

    name: str = ""
    role: Role = Role.QUALITY

    @abstractmethod
    def columns(self, top_k: int = 1) -> List[str]:
        """Log header columns."""

    @abstractmethod
    def parse(self, line: str) -> WorkItem:
        """Turn one input line into a work item."""

    @abstractmethod
    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        """Load the item's images, call the implementation and render the record."""

    def header(self, top_k: int = 1) -> str:
        return " ".join(self.columns(top_k))

    def _fixed_fields(self, line: str, count: int, optional: int = 0) -> List[str]:
        fields = line.split()
        if not count <= len(fields) <= count + optional:
            raise WorkItemError(
                f"Expected {count} fields, found {len(fields)}", line, self.name
            )
        return fields


# =============================================================================
# Quality
# =============================================================================


class VectorQualityAction(Action):
    name = "vectorQ"
    role = Role.QUALITY

    def columns(self, top_k: int = 1) -> List[str]:
        return [
            "id",
            "image",
            "returnCode",
            "bb_xleft",
            "bb_ytop",
            "bb_width",
            "bb_height",
        ] + [measure.value for measure in QualityMeasure]

    def parse(self, line: str) -> WorkItem:
        item_id, image, desc = self._fixed_fields(line, 3)
        return WorkItem(item_id, (image,), label=desc)

    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        image = load_image(
            item.resources[0], ImageDescription.from_label(item.label)
        )
        result = guarded_call(
            context.implementation.vector_quality, image, wrap=QualityResult
        )
        bb = result.bounding_box
        fields = [item.item_id, item.resources[0], fmt_code(result.status)]
        fields += [str(bb.xleft), str(bb.ytop), str(bb.width), str(bb.height)]
        fields += [fmt_float(result.measures.get(m)) for m in QualityMeasure]
        return ActionOutcome(result.status, fields)


# =============================================================================
# Morph Detection
# =============================================================================


class MorphDetectionAction(Action):
    """Single-image or differential (probe-assisted) morph detection."""

    role = Role.MORPH

    def __init__(self, name: str, label: MorphLabel, with_probe: bool) -> None:
        self.name = name
        self.label = label
        self.with_probe = with_probe

    def columns(self, top_k: int = 1) -> List[str]:
        images = ["image", "probe"] if self.with_probe else ["image"]
        return ["id"] + images + ["returnCode", "isMorph", "score"]

    def parse(self, line: str) -> WorkItem:
        fields = self._fixed_fields(line, 3 if self.with_probe else 2)
        return WorkItem(fields[0], tuple(fields[1:]))

    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        impl = context.implementation
        suspected = load_image(item.resources[0])
        if self.with_probe:
            probe = load_image(item.resources[1])
            result = guarded_call(
                impl.detect_morph_differentially,
                suspected,
                self.label,
                probe,
                wrap=MorphResult,
            )
        else:
            result = guarded_call(
                impl.detect_morph, suspected, self.label, wrap=MorphResult
            )
        fields = [item.item_id, *item.resources, fmt_code(result.status)]
        fields += [fmt_bool(result.is_morph), fmt_float(result.score)]
        return ActionOutcome(result.status, fields)


class CompareAction(Action):
    name = "compare"
    role = Role.MORPH

    def columns(self, top_k: int = 1) -> List[str]:
        return ["id", "enrollImage", "verifImage", "returnCode", "similarity"]

    def parse(self, line: str) -> WorkItem:
        fields = self._fixed_fields(line, 3)
        return WorkItem(fields[0], tuple(fields[1:]))

    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        enroll_image = load_image(item.resources[0])
        verif_image = load_image(item.resources[1])
        result = guarded_call(
            context.implementation.compare_images,
            enroll_image,
            verif_image,
            wrap=SimilarityResult,
        )
        fields = [item.item_id, *item.resources, fmt_code(result.status)]
        fields.append(fmt_float(result.similarity))
        return ActionOutcome(result.status, fields)


class DemorphAction(Action):
    role = Role.MORPH

    def __init__(self, name: str, differential: bool) -> None:
        self.name = name
        self.differential = differential

    def columns(self, top_k: int = 1) -> List[str]:
        images = ["image", "probe"] if self.differential else ["image"]
        return ["id"] + images + ["returnCode", "isMorph", "score", "numSubjects"]

    def parse(self, line: str) -> WorkItem:
        fields = self._fixed_fields(line, 3 if self.differential else 2)
        return WorkItem(fields[0], tuple(fields[1:]))

    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        impl = context.implementation
        suspected = load_image(item.resources[0])
        if self.differential:
            probe = load_image(item.resources[1])
            result = guarded_call(
                impl.demorph_differentially, suspected, probe, wrap=DemorphResult
            )
        else:
            result = guarded_call(impl.demorph, suspected, wrap=DemorphResult)
        fields = [item.item_id, *item.resources, fmt_code(result.status)]
        fields += [
            fmt_bool(result.is_morph),
            fmt_float(result.score),
            str(len(result.subjects)),
        ]
        return ActionOutcome(result.status, fields)


# =============================================================================
# 1:N Template Actions
# =============================================================================


def _template_operation(
    impl: Interface, modality: Modality
) -> Callable[[Media, TemplateRole], TemplateResult]:
    if modality is Modality.IRIS:
        return impl.create_iris_template
    if modality is Modality.MULTIMODAL:
        return impl.create_face_and_iris_template
    return impl.create_face_template


class TemplateAction(Action):
    """Shared input handling for enrollment and search actions."""

    def __init__(self, name: str, modality: Modality) -> None:
        self.name = name
        self.modality = modality

    def parse(self, line: str) -> WorkItem:
        fields = line.split()
        if len(fields) < 2:
            raise WorkItemError("Expected an id and at least one image", line, self.name)

        item_id, resources = fields[0], fields[1:]
        fps = 0
        if resources[-1].startswith(FPS_PREFIX):
            try:
                fps = int(resources.pop()[len(FPS_PREFIX) :])
            except ValueError as e:
                raise WorkItemError(f"Invalid frame rate: {e}", line, self.name) from e
            if fps <= 0 or not resources:
                raise WorkItemError("Video items need frames and fps > 0", line, self.name)
        return WorkItem(item_id, tuple(resources), fps=fps)

    def _split_resource(self, resource: str) -> Tuple[str, ImageDescription]:
        prefix, sep, path = resource.partition(":")
        if sep and prefix in ("face", "iris"):
            description = (
                ImageDescription.IRIS if prefix == "iris" else ImageDescription.UNKNOWN
            )
            return path, description
        if self.modality is Modality.IRIS:
            return resource, ImageDescription.IRIS
        return resource, ImageDescription.UNKNOWN

    def load_media(self, item: WorkItem) -> Media:
        images = []
        for resource in item.resources:
            path, description = self._split_resource(resource)
            images.append(load_image(path, description))
        media_type = MediaLabel.VIDEO if item.fps > 0 else MediaLabel.IMAGE
        return Media(type=media_type, data=tuple(images), fps=item.fps)

    def create_template(
        self, item: WorkItem, context: ActionContext, role: TemplateRole
    ) -> TemplateResult:
        media = self.load_media(item)
        operation = _template_operation(context.implementation, self.modality)
        return guarded_call(
            operation, media, role, wrap=TemplateResult, check=check_template_result
        )

    @staticmethod
    def resource_field(item: WorkItem) -> str:
        return RESOURCE_JOIN.join(item.resources)


class EnrollAction(TemplateAction):
    """Create enrollment templates and append them to the shard's blob."""

    role = Role.ENROLLMENT

    def columns(self, top_k: int = 1) -> List[str]:
        return ["id", "images", "returnCode", "templateSize"]

    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        result = self.create_template(item, context, TemplateRole.ENROLLMENT_1N)
        fields = [item.item_id, self.resource_field(item), fmt_code(result.status)]
        if result.status.not_implemented:
            return ActionOutcome(result.status, fields)

        if context.enrollment is None:
            raise ConfigurationError(f"{self.name} requires an enrollment shard writer")
        context.enrollment.append(item.item_id, bytes(result.template))
        fields.append(str(len(result.template)))
        return ActionOutcome(result.status, fields)


class SearchAction(TemplateAction):
    """Create a search template and rank it against the finalized gallery."""

    role = Role.IDENTIFICATION

    def columns(self, top_k: int = 1) -> List[str]:
        columns = ["id", "images", "returnCode"]
        for rank in range(1, top_k + 1):
            columns += [
                f"cand{rank}_isAssigned",
                f"cand{rank}_id",
                f"cand{rank}_score",
            ]
        return columns

    def process(self, item: WorkItem, context: ActionContext) -> ActionOutcome:
        if context.gallery is None:
            raise ConfigurationError(f"{self.name} requires an initialized gallery")

        created = self.create_template(item, context, TemplateRole.SEARCH_1N)
        status = created.status
        candidates: Sequence = ()
        if created.status.ok:
            searched = context.gallery.search(created.template, context.top_k)
            status, candidates = searched.status, searched.candidates

        fields = [item.item_id, self.resource_field(item), fmt_code(status)]
        for rank in range(context.top_k):
            candidate = candidates[rank] if rank < len(candidates) else None
            if candidate is None or not candidate.is_assigned:
                fields += ["0", NA_TOKEN, NA_TOKEN]
            else:
                fields += ["1", candidate.template_id, fmt_float(candidate.score)]
        return ActionOutcome(status, fields)


# =============================================================================
# Registry
# =============================================================================


def _build_registry() -> Dict[str, Action]:
    actions: List[Action] = [VectorQualityAction(), CompareAction()]
    for label_name, label in (
        ("NonScanned", MorphLabel.NON_SCANNED),
        ("Scanned", MorphLabel.SCANNED),
        ("Unknown", MorphLabel.UNKNOWN),
    ):
        actions.append(MorphDetectionAction(f"detect{label_name}Morph", label, False))
        actions.append(
            MorphDetectionAction(f"detect{label_name}MorphWithProbeImg", label, True)
        )
    actions.append(DemorphAction("demorph", differential=False))
    actions.append(DemorphAction("demorphDifferentially", differential=True))
    for suffix, modality in (
        ("Face", Modality.FACE),
        ("Iris", Modality.IRIS),
        ("Multimodal", Modality.MULTIMODAL),
    ):
        actions.append(EnrollAction(f"enroll{suffix}", modality))
        actions.append(SearchAction(f"search{suffix}", modality))
    return {action.name: action for action in actions}


ACTIONS: Dict[str, Action] = _build_registry()


def get_action(name: str) -> Action:
    """
    Look up an action by name.

    Raises
    ------
    ConfigurationError
        If no action has that name.
    """
    try:
        return ACTIONS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown action: {name}",
            config_key="action",
            config_value=name,
        ) from None
