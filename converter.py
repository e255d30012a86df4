"""
MSDB Converter core
Size-constrained JPEG normalization for a single image file.
"""

import logging
import math
import shutil
from dataclasses import dataclass
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import Callable, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

# Try to register optional format plugins
try:
    from pillow_heif import register_heif_opener
    register_heif_opener()
    HEIC_AVAILABLE = True
except ImportError:
    HEIC_AVAILABLE = False

logger = logging.getLogger(__name__)


DEFAULT_MAX_SIZE_MB = 7.5
DEFAULT_MAX_DIMENSION = 7500
OUTPUT_EXTENSION = '.jpg'

# Searched in order; the first range that yields a fitting quality wins
QUALITY_RANGES = ((91, 100), (50, 90))
FALLBACK_QUALITY = 50

JPEG_SAVE_PARAMS = {'format': 'JPEG', 'optimize': True}

# Pillow reports multi-picture camera JPEGs as MPO
JPEG_FORMATS = {'JPEG', 'MPO'}

HEIF_EXTENSIONS = {'.heic', '.heif'}

INPUT_EXTENSIONS = HEIF_EXTENSIONS | {
    '.tif', '.tiff', '.jpg', '.jpeg', '.png', '.bmp', '.gif', '.webp',
    '.psd', '.psb',
    '.svg',
    '.3fr', '.ari', '.arw', '.bay', '.crw', '.cr2', '.cr3', '.cap',
    '.dcs', '.dcr', '.dng', '.drf', '.eip', '.erf', '.fff',
    '.gpr', '.iiq', '.k25', '.kdc', '.mdc', '.mef', '.mos',
    '.mrw', '.nef', '.nrw', '.obm', '.orf', '.pef', '.ptx',
    '.pxn', '.r3d', '.raf', '.raw', '.rwl', '.rw2', '.rwz',
    '.sr2', '.srf', '.srw', '.x3f',
}


# -----------------------------------------------------------------------------
# Errors
# -----------------------------------------------------------------------------

class ConversionError(Exception):
    """Base class for converter errors."""


class DecodeError(ConversionError):
    """The source file could not be parsed as an image."""


class EncodeError(ConversionError):
    """A JPEG encode or output write failed."""


class DiscoveryError(ConversionError):
    """Source or output folder cannot be used. Fatal to the whole run."""


# -----------------------------------------------------------------------------
# Data model
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class ConversionSettings:
    """Limits applied to every file of a run."""
    max_size_mb: float = DEFAULT_MAX_SIZE_MB
    max_dimension: int = DEFAULT_MAX_DIMENSION

    def __post_init__(self):
        if not (math.isfinite(self.max_size_mb) and self.max_size_mb > 0):
            raise ValueError(f"Max size must be a positive finite number, got {self.max_size_mb}")
        if self.max_dimension <= 0:
            raise ValueError(f"Max dimension must be positive, got {self.max_dimension}")

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)


@dataclass(frozen=True)
class ImageTask:
    """One source file and the constraints its output must satisfy."""
    source_path: Path
    output_path: Path
    max_size_bytes: int
    max_dimension: int

    @classmethod
    def from_source(cls, source_path: Path, output_dir: Path,
                    settings: ConversionSettings) -> 'ImageTask':
        # name.EXT always maps to name.jpg, collisions overwrite
        source_path = Path(source_path)
        return cls(
            source_path=source_path,
            output_path=Path(output_dir) / (source_path.stem + OUTPUT_EXTENSION),
            max_size_bytes=settings.max_size_bytes,
            max_dimension=settings.max_dimension,
        )


@dataclass(frozen=True)
class SearchResult:
    quality: int
    size: int
    found: bool


class ConversionStatus(Enum):
    COPIED = 'copied'
    CONVERTED = 'converted'
    CONVERTED_WITH_WARNING = 'converted_with_warning'
    FAILED = 'failed'


@dataclass(frozen=True)
class ConversionResult:
    """Result of a single file conversion."""
    source_path: Path
    dest_path: Path
    status: ConversionStatus
    original_size: int = 0
    converted_size: int = 0
    quality: Optional[int] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is not ConversionStatus.FAILED

    @property
    def message(self) -> Optional[str]:
        """Console line for warnings and failures, None otherwise."""
        name = self.source_path.name
        if self.status is ConversionStatus.CONVERTED_WITH_WARNING:
            size_mb = self.converted_size / (1024.0 * 1024)
            return f"[WARN] Best achievable quality for {name} is {self.quality} (size: {size_mb:.2f}MB)"
        if self.status is ConversionStatus.FAILED:
            return f"[ERROR] Processing {name}: {self.error}"
        return None

    @classmethod
    def failed(cls, task: ImageTask, error: BaseException,
               original_size: int = 0) -> 'ConversionResult':
        return cls(
            source_path=task.source_path,
            dest_path=task.output_path,
            status=ConversionStatus.FAILED,
            original_size=original_size,
            error=str(error) or type(error).__name__,
        )


# -----------------------------------------------------------------------------
# Encoding
# -----------------------------------------------------------------------------

def prepare_image_for_save(img: Image.Image) -> Image.Image:
    """Flatten alpha over white and coerce to a JPEG-compatible mode."""
    if img.mode in ('RGBA', 'LA') or (img.mode == 'P' and 'transparency' in img.info):
        background = Image.new('RGB', img.size, (255, 255, 255))
        if img.mode != 'RGBA':
            img = img.convert('RGBA')
        background.paste(img, mask=img.split()[3])
        background.info = dict(img.info)
        return background
    if img.mode not in ('RGB', 'L', 'CMYK'):
        converted = img.convert('RGB')
        converted.info = dict(img.info)
        return converted
    return img


def _save_params(img: Image.Image, quality: int) -> dict:
    params = {**JPEG_SAVE_PARAMS, 'quality': quality}
    # Metadata goes into probes too, so a probe size equals the persisted size
    for key in ('exif', 'icc_profile'):
        if img.info.get(key):
            params[key] = img.info[key]
    return params


def probe_size(img: Image.Image, quality: int) -> int:
    """Encode at the given quality into a scratch buffer and return its byte length."""
    with BytesIO() as buffer:
        try:
            img.save(buffer, **_save_params(img, quality))
        except (OSError, ValueError) as e:
            raise EncodeError(f"JPEG encode at quality {quality} failed: {e}") from e
        return buffer.tell()


def write_jpeg(img: Image.Image, quality: int, dest_path: Path) -> int:
    """Persist the final encode and return the size on disk."""
    try:
        img.save(dest_path, **_save_params(img, quality))
    except (OSError, ValueError) as e:
        raise EncodeError(f"Could not write {dest_path}: {e}") from e
    return dest_path.stat().st_size


def search_quality(img: Image.Image, budget_bytes: int,
                   probe: Callable[[Image.Image, int], int] = probe_size) -> SearchResult:
    """
    Find the highest JPEG quality whose encode fits in budget_bytes.

    Each range of QUALITY_RANGES is binary searched in turn, and the search
    stops at the first range holding a fitting quality. This relies on the
    encoded size never growing as quality drops. When nothing fits, the
    result falls back to FALLBACK_QUALITY with found=False and the size
    measured there. Probe errors propagate.
    """
    best_quality = FALLBACK_QUALITY
    best_size = None
    fallback_size = None
    found = False

    for low, high in QUALITY_RANGES:
        while low <= high:
            mid = (low + high) // 2
            size = probe(img, mid)
            logger.debug("Probe quality=%d size=%d budget=%d", mid, size, budget_bytes)

            if mid == FALLBACK_QUALITY:
                fallback_size = size

            if size <= budget_bytes:
                # Fits, look for a higher quality
                best_quality, best_size = mid, size
                found = True
                low = mid + 1
            else:
                high = mid - 1

        if found:
            break

    if not found:
        if fallback_size is None:
            fallback_size = probe(img, FALLBACK_QUALITY)
        return SearchResult(FALLBACK_QUALITY, fallback_size, False)

    return SearchResult(best_quality, best_size, True)


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

def fit_within(img: Image.Image, max_dimension: int) -> Image.Image:
    """Downscale so neither side exceeds max_dimension, keeping the aspect ratio."""
    width, height = img.size
    if width <= max_dimension and height <= max_dimension:
        return img

    ratio = min(max_dimension / width, max_dimension / height)
    new_size = (
        min(max_dimension, max(1, round(width * ratio))),
        min(max_dimension, max(1, round(height * ratio))),
    )
    resized = img.resize(new_size, Image.Resampling.LANCZOS)
    resized.info = dict(img.info)
    return resized


DECODE_ERRORS = (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError)


def _decode(source_path: Path) -> Image.Image:
    try:
        img = Image.open(source_path)
    except DECODE_ERRORS as e:
        raise DecodeError(f"Cannot decode {source_path.name}: {e}") from e
    try:
        # Force the pixel read so truncated files fail here
        img.load()
    except DECODE_ERRORS as e:
        img.close()
        raise DecodeError(f"Cannot decode {source_path.name}: {e}") from e
    return img


def heif_support_warning(paths) -> Optional[str]:
    """Warning line when HEIC/HEIF files are queued but pillow-heif is missing."""
    if HEIC_AVAILABLE:
        return None
    count = sum(1 for p in paths if Path(p).suffix.lower() in HEIF_EXTENSIONS)
    if not count:
        return None
    return (f"[WARN] pillow-heif is not installed, {count} HEIC/HEIF file(s) "
            f"will fail to decode")


def _writes_over_source(task: ImageTask) -> bool:
    """True when the output path names the source file itself."""
    if task.output_path.resolve() == task.source_path.resolve():
        return True
    try:
        return task.output_path.samefile(task.source_path)
    except OSError:
        return False


def _remove_partial(dest_path: Path) -> None:
    try:
        dest_path.unlink(missing_ok=True)
    except OSError as e:
        logger.error("Could not remove partial output %s: %s", dest_path, e)


def convert_image(task: ImageTask) -> ConversionResult:
    """Copy or re-encode one source file so it satisfies the task's limits."""
    source_path = task.source_path
    dest_path = task.output_path
    original_size = 0
    in_place = _writes_over_source(task)

    try:
        try:
            original_size = source_path.stat().st_size
        except OSError as e:
            raise DecodeError(f"Cannot read {source_path.name}: {e}") from e

        with _decode(source_path) as source:
            source_format = source.format
            img = ImageOps.exif_transpose(source)

        width, height = img.size
        logger.debug("Decoded %s: format=%s %dx%d, %d bytes",
                     source_path.name, source_format, width, height, original_size)

        # Already a fitting JPEG, keep the original bytes
        if (source_format in JPEG_FORMATS
                and original_size <= task.max_size_bytes
                and width <= task.max_dimension
                and height <= task.max_dimension):
            if in_place:
                logger.info("Kept %s in place", source_path.name)
            else:
                try:
                    shutil.copyfile(source_path, dest_path)
                except OSError as e:
                    raise EncodeError(f"Could not copy to {dest_path}: {e}") from e
                logger.info("Copied %s unchanged", source_path.name)
            return ConversionResult(
                source_path=source_path,
                dest_path=dest_path,
                status=ConversionStatus.COPIED,
                original_size=original_size,
                converted_size=original_size,
            )

        # Palette and bilevel images resize with NEAREST, so convert first
        img = prepare_image_for_save(img)
        img = fit_within(img, task.max_dimension)

        search = search_quality(img, task.max_size_bytes)
        converted_size = write_jpeg(img, search.quality, dest_path)

        if not search.found or converted_size > task.max_size_bytes:
            status = ConversionStatus.CONVERTED_WITH_WARNING
            logger.info("%s exceeds budget: quality=%d size=%d budget=%d",
                        source_path.name, search.quality, converted_size,
                        task.max_size_bytes)
        else:
            status = ConversionStatus.CONVERTED
            logger.info("Converted %s at quality %d (%d bytes)",
                        source_path.name, search.quality, converted_size)

        return ConversionResult(
            source_path=source_path,
            dest_path=dest_path,
            status=status,
            original_size=original_size,
            converted_size=converted_size,
            quality=search.quality,
        )

    except ConversionError as e:
        if not in_place:
            _remove_partial(dest_path)
        logger.info("Failed %s: %s", source_path.name, e)
        return ConversionResult.failed(task, e, original_size)
    except Exception as e:
        if not in_place:
            _remove_partial(dest_path)
        logger.exception("Unexpected failure on %s", source_path.name)
        return ConversionResult.failed(task, e, original_size)
