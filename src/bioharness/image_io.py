"""
Image loading at the worker boundary.

Decoding is delegated to OpenCV; this module only turns a decoded raster
into the harness's immutable :class:`Image` and reports unreadable files as
:class:`ImageLoadError`, which aborts the worker.
"""

from pathlib import Path
from typing import Optional
import cv2
import numpy as np
import structlog

from .data_models import Illuminant, Image, ImageDescription
from .exceptions import ImageLoadError

logger = structlog.get_logger(__name__)


def load_image(
    image_path: str,
    description: ImageDescription = ImageDescription.UNKNOWN,
    illuminant: Optional[Illuminant] = None,
) -> Image:
    """
    Read an image file into an :class:`Image`.

    Colour images are converted to interleaved RGB, alpha channels are
    dropped, and 16-bit rasters keep their bit depth.

    Parameters
    ----------
    image_path : str
        Path of the image file.
    description : ImageDescription, default=ImageDescription.UNKNOWN
        Collection conditions recorded on the image.
    illuminant : Optional[Illuminant], default=None
        Light source; NIR for iris images and visible otherwise when None.

    Returns
    -------
    Image
        The decoded image.

    Raises
    ------
    ImageLoadError
        If the file is missing, cannot be decoded or has an unsupported
        pixel format.
    """
    path = Path(image_path)
    if not path.is_file():
        raise ImageLoadError(image_path, "file not found")

    try:
        raster = cv2.imread(str(path), cv2.IMREAD_UNCHANGED)
    except cv2.error as e:
        raise ImageLoadError(image_path, f"OpenCV error: {e}") from e

    if raster is None:
        raise ImageLoadError(image_path, "unsupported or corrupt image data")

    if raster.dtype not in (np.uint8, np.uint16):
        raise ImageLoadError(image_path, f"unsupported pixel type {raster.dtype}")

    if raster.ndim == 3:
        if raster.shape[2] == 4:
            raster = cv2.cvtColor(raster, cv2.COLOR_BGRA2RGB)
        elif raster.shape[2] == 3:
            raster = cv2.cvtColor(raster, cv2.COLOR_BGR2RGB)
        elif raster.shape[2] == 1:
            raster = raster[:, :, 0]
        else:
            raise ImageLoadError(image_path, f"unsupported channel count {raster.shape[2]}")

    if illuminant is None:
        illuminant = (
            Illuminant.NIR if description == ImageDescription.IRIS else Illuminant.VISIBLE
        )

    image = Image.from_array(raster, description=description, illuminant=illuminant)
    logger.debug(
        "Image loaded",
        image_path=image_path,
        width=image.width,
        height=image.height,
        depth=image.depth,
    )
    return image
