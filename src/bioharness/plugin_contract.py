"""
Interface that every implementation under test must satisfy.

An implementation subclasses :class:`Interface`, overrides ``initialize``
and whichever operations it supports, and exposes a factory that the
harness reaches through :func:`load_implementation`. Operations that are
not overridden report ``ReturnCode.NOT_IMPLEMENTED``, which the harness
treats as a clean abstention from the corresponding action.

Lifecycle rules enforced by the harness:

* ``initialize`` (and ``initialize_identification``) run exactly once, in
  the parent process, before any worker is forked.
* Per-item operations run inside worker processes, one item at a time.
* ``finalize_enrollment`` runs once, in a single process, after all
  enrollment workers have finished.
"""

import importlib
import numbers
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence, TypeVar
import structlog

from .data_models import (
    ApiVersion,
    Candidate,
    CURRENT_API_VERSION,
    DemorphResult,
    GalleryType,
    Image,
    Media,
    MorphLabel,
    MorphResult,
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
from .exceptions import ApiVersionMismatchError, ImplementationLoadError

logger = structlog.get_logger(__name__)

R = TypeVar("R")


def not_implemented() -> ReturnStatus:
    return ReturnStatus(ReturnCode.NOT_IMPLEMENTED)


class Interface(ABC):
    """
    Capability-set interface implemented by the software under test.

    Attributes
    ----------
    api_version : ApiVersion
        Interface version the implementation was built against. Compared
        with the harness's own version before any work starts.
    """

    api_version: ApiVersion = CURRENT_API_VERSION

    @abstractmethod
    def initialize(
        self, config_dir: str, role: Role, config_value: str = ""
    ) -> ReturnStatus:
        """
        Prepare the implementation for the operations of ``role``.

        Parameters
        ----------
        config_dir : str
            Read-only directory of developer-supplied configuration.
        role : Role
            Family of operations about to be called.
        config_value : str, default=""
            Free-form configuration string passed through unchanged.
        """

    # -- quality ----------------------------------------------------------

    def vector_quality(self, image: Image) -> QualityResult:
        return QualityResult(not_implemented())

    # -- morph detection --------------------------------------------------

    def detect_morph(self, image: Image, label: MorphLabel) -> MorphResult:
        return MorphResult(not_implemented())

    def detect_morph_differentially(
        self,
        image: Image,
        label: MorphLabel,
        probe: Image,
        subject: Optional[SubjectMetadata] = None,
    ) -> MorphResult:
        return MorphResult(not_implemented())

    def compare_images(self, enroll_image: Image, verif_image: Image) -> SimilarityResult:
        return SimilarityResult(not_implemented())

    def demorph(self, image: Image) -> DemorphResult:
        return DemorphResult(not_implemented())

    def demorph_differentially(self, image: Image, probe: Image) -> DemorphResult:
        return DemorphResult(not_implemented())

    # -- 1:N template creation --------------------------------------------

    def create_face_template(self, media: Media, role: TemplateRole) -> TemplateResult:
        return TemplateResult(not_implemented())

    def create_iris_template(self, media: Media, role: TemplateRole) -> TemplateResult:
        return TemplateResult(not_implemented())

    def create_face_and_iris_template(
        self, media: Media, role: TemplateRole
    ) -> TemplateResult:
        return TemplateResult(not_implemented())

    # -- 1:N gallery lifecycle --------------------------------------------

    def finalize_enrollment(
        self,
        config_dir: str,
        enrollment_dir: str,
        edb_path: str,
        manifest_path: str,
        gallery_type: GalleryType,
    ) -> ReturnStatus:
        """
        Freeze the enrollment data.

        The blob and manifest are read-only afterwards and may not remain
        readable; implementations must copy out whatever search needs.
        """
        return not_implemented()

    def initialize_identification(
        self, config_dir: str, enrollment_dir: str
    ) -> ReturnStatus:
        return not_implemented()

    def search(self, template: bytes, top_k: int) -> SearchResult:
        """
        Search an identification template against the finalized gallery.

        Candidates are returned most relevant first: descending similarity
        for face and multimodal, ascending dissimilarity for iris.
        """
        return SearchResult(not_implemented())


def guarded_call(
    operation: Callable[..., R],
    *args,
    wrap: Callable[[ReturnStatus], R],
    check: Optional[Callable[[R], None]] = None,
) -> R:
    """
    Call an implementation operation, converting a raised exception into
    a failed status.

    Implementations report failures through return values; an exception
    escaping one is recorded as ``UNKNOWN_ERROR`` (``MEMORY_ERROR`` for
    ``MemoryError``) so the item is still logged.

    Parameters
    ----------
    operation : Callable
        Bound implementation method.
    *args
        Positional arguments for the operation.
    wrap : Callable[[ReturnStatus], R]
        Builds the operation's result type from a bare status, for example
        ``QualityResult``.
    check : Optional[Callable], default=None
        Validates the returned value. An exception it raises is recorded
        like one raised by the operation itself.
    """
    try:
        result = operation(*args)
        if check is not None:
            check(result)
        return result
    except MemoryError as e:
        status = ReturnStatus(ReturnCode.MEMORY_ERROR, str(e))
    except Exception as e:
        status = ReturnStatus(ReturnCode.UNKNOWN_ERROR, f"{type(e).__name__}: {e}")

    logger.warning(
        "Implementation call did not return a valid result",
        operation=getattr(operation, "__name__", repr(operation)),
        return_code=int(status.code),
        info=status.info,
    )
    return wrap(status)


def _status(status: ReturnStatus) -> ReturnStatus:
    return status


def guarded_status(operation: Callable[..., ReturnStatus], *args) -> ReturnStatus:
    """:func:`guarded_call` for operations that return a bare status."""
    return guarded_call(operation, *args, wrap=_status)


def _check_status(result, expected_type: type) -> None:
    if not isinstance(result, expected_type):
        raise TypeError(
            f"Expected {expected_type.__name__}, got {type(result).__name__}"
        )
    if not isinstance(result.status, ReturnStatus):
        raise TypeError(f"status is {type(result.status).__name__}, not ReturnStatus")


def check_template_result(result: TemplateResult) -> None:
    """Raise ``TypeError`` unless ``result`` carries a byte-string template."""
    _check_status(result, TemplateResult)
    if not isinstance(result.template, (bytes, bytearray, memoryview)):
        raise TypeError(f"template is {type(result.template).__name__}, not bytes")


def check_search_result(result: SearchResult) -> None:
    """
    Raise ``TypeError`` unless every assigned candidate has a string
    identifier and a real-valued score.
    """
    _check_status(result, SearchResult)
    for candidate in result.candidates:
        if not isinstance(candidate, Candidate):
            raise TypeError(f"candidate is {type(candidate).__name__}, not Candidate")
        if not candidate.is_assigned:
            continue
        if not isinstance(candidate.template_id, str):
            raise TypeError(
                f"candidate id is {type(candidate.template_id).__name__}, not str"
            )
        if isinstance(candidate.score, bool) or not isinstance(
            candidate.score, numbers.Real
        ):
            raise TypeError(f"candidate score is {type(candidate.score).__name__}")


def check_api_version(
    implementation: Interface, expected: ApiVersion = CURRENT_API_VERSION
) -> None:
    """
    Compare the implementation's interface version with the harness's.

    Raises
    ------
    ApiVersionMismatchError
        If the major or minor version differs.
    """
    actual = getattr(implementation, "api_version", None)
    if not isinstance(actual, ApiVersion):
        raise ApiVersionMismatchError(str(expected), repr(actual))

    if (actual.major, actual.minor) != (expected.major, expected.minor):
        raise ApiVersionMismatchError(str(expected), str(actual))

    logger.debug("Interface version check passed", version=str(actual))


def load_implementation(target: str) -> Interface:
    """
    Import and instantiate an implementation from ``"module:factory"``.

    ``factory`` may be a function returning an :class:`Interface` or an
    :class:`Interface` subclass, which is instantiated without arguments.

    Parameters
    ----------
    target : str
        Import reference such as ``"vendor_impl:get_implementation"``.

    Returns
    -------
    Interface
        The implementation object.

    Raises
    ------
    ImplementationLoadError
        If the module or attribute cannot be found, the factory fails, or
        the result does not implement :class:`Interface`.
    """
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise ImplementationLoadError(
            "Implementation reference must look like 'module:factory'", target
        )

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ImplementationLoadError(
            f"Cannot import implementation module: {e}", target
        ) from e

    factory = getattr(module, attribute, None)
    if factory is None:
        raise ImplementationLoadError(
            f"Module {module_name} has no attribute {attribute}", target
        )

    try:
        implementation = factory()
    except Exception as e:
        raise ImplementationLoadError(
            f"Implementation factory raised {type(e).__name__}: {e}", target
        ) from e

    if not isinstance(implementation, Interface):
        raise ImplementationLoadError(
            f"Factory returned {type(implementation).__name__}, not an Interface",
            target,
        )

    logger.info(
        "Implementation loaded",
        implementation=target,
        implementation_class=type(implementation).__name__,
        api_version=str(implementation.api_version),
    )
    return implementation


def supported_operations(implementation: Interface, names: Sequence[str]) -> list:
    """Names among ``names`` that the implementation overrides."""
    return [
        name
        for name in names
        if getattr(type(implementation), name, None) is not getattr(Interface, name)
    ]
