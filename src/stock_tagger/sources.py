"""
Image sources: discovery on disk and in-memory preparation for the model.

A source is an immutable handle to an image file. The first time the model needs
it, the image is decoded (RAW via rawpy, everything else via Pillow), flattened to
RGB, downscaled and encoded to JPEG in memory. That prepared payload is cached on
the source until the job holding it is removed.
"""

import contextlib
import mimetypes
import os
from io import BytesIO
from itertools import chain
from pathlib import Path

import rawpy
from loguru import logger
from PIL import Image
from pydantic_ai import BinaryContent


DEFAULT_JPEG_QUALITY = int(os.getenv("JPEG_QUALITY", "80"))
DEFAULT_DIMENSIONS = int(os.getenv("JPEG_DIMENSIONS", "1280"))
DEFAULT_EXTENSIONS = "jpg,jpeg,png,webp"

NON_RAW_EXTENSIONS = frozenset(
    {
        ".jpg",
        ".jpeg",
        ".png",
        ".webp",
        ".bmp",
        ".gif",
        ".jpe",
        ".jp2",
        ".tif",
        ".tiff",
        ".heic",
        ".heif",
        ".avif",
        ".psd",
        ".ico",
        ".ppm",
        ".pgm",
        ".pbm",
    },
)


def _pil_from_image_path(image_path: Path) -> Image.Image:
    """Open an image from a path with PIL, using rawpy unless format is known non-RAW."""
    suffix = image_path.suffix.lower()
    if suffix not in NON_RAW_EXTENSIONS:
        try:
            with rawpy.imread(str(image_path)) as raw:  # type: ignore[no-untyped-call]
                rgb = raw.postprocess()
            logger.debug("image_opened_with_rawpy", extension=suffix)
            return Image.fromarray(rgb)
        except Exception as exc:  # noqa: BLE001
            logger.warning("rawpy_failed_falling_back_to_pil", error=str(exc))

    return Image.open(image_path)


def prepare_image_for_agent(
    image_path: Path,
    jpg_quality: int = DEFAULT_JPEG_QUALITY,
    max_size: int = DEFAULT_DIMENSIONS,
) -> BinaryContent:
    """
    Decode, flatten, downscale and JPEG-encode an image entirely in memory.

    Args:
        image_path: Path to the input image file
        jpg_quality: JPEG compression quality (1-100)
        max_size: Maximum dimension in pixels; smaller images are left as is

    Returns:
        BinaryContent with ``image/jpeg`` media type

    """
    with _pil_from_image_path(image_path) as opened:
        if opened.mode in ("RGBA", "LA") or (
            opened.mode == "P" and "transparency" in opened.info
        ):
            alpha = opened.convert("RGBA")
            bg = Image.new("RGBA", alpha.size, (255, 255, 255, 255))
            img = Image.alpha_composite(bg, alpha).convert("RGB")
        else:
            img = opened.convert("RGB")

    img.thumbnail((max_size, max_size), Image.Resampling.LANCZOS)
    buf = BytesIO()
    img.save(buf, format="JPEG", quality=jpg_quality)
    jpeg_bytes = buf.getvalue()

    logger.debug(
        "image_prepared_for_agent",
        width=img.width,
        height=img.height,
        size_kb=len(jpeg_bytes) // 1024,
    )
    return BinaryContent(data=jpeg_bytes, media_type="image/jpeg")


class ImageSource:
    """Handle to one image file plus its lazily prepared model payload."""

    def __init__(
        self,
        path: Path,
        *,
        jpeg_quality: int = DEFAULT_JPEG_QUALITY,
        max_size: int = DEFAULT_DIMENSIONS,
    ) -> None:
        self._path = path
        self._jpeg_quality = jpeg_quality
        self._max_size = max_size
        self._payload: BinaryContent | None = None

    def __repr__(self) -> str:
        return f"ImageSource({str(self._path)!r})"

    @property
    def path(self) -> Path:
        return self._path

    @property
    def name(self) -> str:
        return self._path.name

    @property
    def mime_type(self) -> str:
        guessed, _ = mimetypes.guess_type(self._path.name)
        return guessed or "application/octet-stream"

    @property
    def is_loaded(self) -> bool:
        return self._payload is not None

    def payload(self) -> BinaryContent:
        if self._payload is None:
            self._payload = prepare_image_for_agent(
                self._path,
                jpg_quality=self._jpeg_quality,
                max_size=self._max_size,
            )
        return self._payload

    def release(self) -> None:
        """Drop the cached payload; the next ``payload()`` call prepares it again."""
        if self._payload is not None:
            logger.debug("image_payload_released", file=self.name)
        self._payload = None


def parse_extensions(image_extensions: str) -> set[str]:
    """
    Normalize comma-separated extensions into a lowercase set like {".cr3", ".jpg"}.

    Examples:
        >>> sorted(parse_extensions("cr3, .JPG ,,png"))
        ['.cr3', '.jpg', '.png']

    """
    return {
        f".{ext.strip().lstrip('.').lower()}"
        for ext in image_extensions.split(",")
        if ext.strip().lstrip(".")
    }


def resolve_image_files(
    inputs: list[Path],
    ext_set: set[str],
    *,
    recursive: bool,
) -> list[Path]:
    """
    Resolve provided inputs into a list of files.

    - Directories are expanded by extension, case-insensitively (honoring ``recursive``)
    - Explicit files are accepted as-is (extension filter not applied)
    - Order is preserved and duplicates removed
    """
    pattern = "**/*" if recursive else "*"

    files_from_dirs: list[Path] = []
    files_explicit: list[Path] = []

    for path in inputs:
        path_resolved = path
        with contextlib.suppress(OSError):
            path_resolved = path.resolve()
        if path_resolved.is_dir():
            files_from_dirs.extend(
                sorted(
                    candidate
                    for candidate in path_resolved.glob(pattern)
                    if candidate.is_file() and candidate.suffix.lower() in ext_set
                ),
            )
        elif path_resolved.is_file():
            files_explicit.append(path_resolved)
        else:
            logger.warning("input_not_file_or_dir", path=str(path))

    combined: list[Path] = []
    seen: set[str] = set()
    for f in chain(files_explicit, files_from_dirs):
        key = str(f.resolve()) if f.exists() else str(f)
        if key not in seen:
            combined.append(f)
            seen.add(key)

    return combined
