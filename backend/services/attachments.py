"""Receipt attachment preprocessing for the PDF export.

Every attachment is normalized to one or more JPEG pages of a fixed pixel width:
- images are downscaled (never upscaled) and recompressed
- PDFs are rasterized page by page through a lazily loaded renderer
- failures are recorded per attachment so the rest of the export can continue
"""

from __future__ import annotations

import importlib
import io
import logging
import shutil
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from PIL import Image, ImageOps

from travel_expense.models import Attachment

logger = logging.getLogger(__name__)

TARGET_IMAGE_WIDTH_PX = 1360
JPEG_QUALITY = 0.72
DEFAULT_RENDERER_SOURCES = ("pymupdf", "pdf2image")


# -----------------------------
# Data contracts
# -----------------------------


@dataclass(frozen=True)
class PreparedImage:
    """A JPEG page ready to be placed on an attachment page."""

    name: str
    content: bytes = field(repr=False)
    width: int
    height: int

    @property
    def aspect(self) -> float:
        return self.height / self.width

    @property
    def is_landscape(self) -> bool:
        return self.aspect < 1


@dataclass(frozen=True)
class AttachmentFailure:
    name: str
    kind: str
    reason: str


@dataclass
class PreprocessResult:
    images: List[PreparedImage] = field(default_factory=list)
    failures: List[AttachmentFailure] = field(default_factory=list)

    @property
    def warning(self) -> Optional[str]:
        if not self.failures:
            return None
        names = ", ".join(failure.name for failure in self.failures)
        return (
            f"Hinweis: {len(self.failures)} Anhang/Anhänge konnte(n) nicht verarbeitet werden ({names}). "
            "Die übrigen Anhänge wurden dennoch exportiert."
        )


class AttachmentError(RuntimeError):
    """Raised when a single attachment cannot be turned into pages."""


class RendererUnavailableError(AttachmentError):
    """Raised when no PDF renderer source could be loaded."""

    def __init__(self, failures: Sequence[Tuple[str, str]]):
        self.failures = list(failures)
        detail = "; ".join(f"{source}: {reason}" for source, reason in self.failures)
        super().__init__(f"PDF renderer could not be loaded ({detail or 'no sources configured'})")


# -----------------------------
# Image path
# -----------------------------


def jpeg_quality_to_pil(quality: float) -> int:
    return max(1, min(95, round(quality * 100)))


def encode_jpeg(image: Image.Image, quality: float = JPEG_QUALITY) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=jpeg_quality_to_pil(quality), optimize=True)
    return buffer.getvalue()


def _flatten_to_rgb(image: Image.Image) -> Image.Image:
    image = ImageOps.exif_transpose(image)
    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    return image.convert("RGB")


def _fit_width(image: Image.Image, target_width: int) -> Image.Image:
    scale = min(1.0, target_width / image.width)
    if scale >= 1.0:
        return image
    size = (max(1, round(image.width * scale)), max(1, round(image.height * scale)))
    return image.resize(size, Image.Resampling.LANCZOS)


def downscale_image(
    content: bytes,
    name: str,
    target_width: int = TARGET_IMAGE_WIDTH_PX,
    quality: float = JPEG_QUALITY,
) -> PreparedImage:
    try:
        with Image.open(io.BytesIO(content)) as source:
            source.load()
            image = _flatten_to_rgb(source)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise AttachmentError(f"Image {name!r} could not be decoded: {exc}") from exc

    image = _fit_width(image, target_width)
    return PreparedImage(name=name, content=encode_jpeg(image, quality), width=image.width, height=image.height)


# -----------------------------
# PDF renderer sources
# -----------------------------


class PdfRenderer(Protocol):
    """Rasterizes every page of a PDF at a fixed pixel width."""

    name: str

    def render_pages(self, content: bytes, target_width: int) -> List[Image.Image]:
        ...


class PyMuPdfRenderer:
    name = "pymupdf"

    def __init__(self, fitz_module: Any):
        self._fitz = fitz_module

    def render_pages(self, content: bytes, target_width: int) -> List[Image.Image]:
        pages: List[Image.Image] = []
        with self._fitz.open(stream=content, filetype="pdf") as document:
            for page in document:
                scale = target_width / page.rect.width
                pixmap = page.get_pixmap(matrix=self._fitz.Matrix(scale, scale), alpha=False)
                image = Image.frombytes("RGB", (pixmap.width, pixmap.height), pixmap.samples)
                if image.width != target_width:
                    height = max(1, round(target_width * page.rect.height / page.rect.width))
                    image = image.resize((target_width, height), Image.Resampling.LANCZOS)
                pages.append(image)
        return pages


class Pdf2ImageRenderer:
    name = "pdf2image"

    def __init__(self, convert_from_bytes: Callable[..., List[Image.Image]]):
        self._convert = convert_from_bytes

    def render_pages(self, content: bytes, target_width: int) -> List[Image.Image]:
        return [page.convert("RGB") for page in self._convert(content, size=(target_width, None))]


def _load_pymupdf() -> PdfRenderer:
    return PyMuPdfRenderer(importlib.import_module("fitz"))


def _load_pdf2image() -> PdfRenderer:
    module = importlib.import_module("pdf2image")
    if shutil.which("pdftoppm") is None:
        raise OSError("poppler 'pdftoppm' executable not found on PATH")
    return Pdf2ImageRenderer(module.convert_from_bytes)


RENDERER_LOADERS: Dict[str, Callable[[], PdfRenderer]] = {
    "pymupdf": _load_pymupdf,
    "pdf2image": _load_pdf2image,
}

_renderer: Optional[PdfRenderer] = None
_renderer_lock = threading.Lock()


def ensure_renderer(sources: Sequence[str] = DEFAULT_RENDERER_SOURCES) -> PdfRenderer:
    """Return the shared PDF renderer, loading it on first use.

    Sources are tried in order and the first one that loads is kept for the
    rest of the process. Concurrent callers wait for the same initialization.
    If every source fails, a single RendererUnavailableError lists each failure;
    nothing is cached in that case, so the next call tries again.
    """
    global _renderer
    if _renderer is not None:
        return _renderer
    with _renderer_lock:
        if _renderer is None:
            _renderer = _load_first_renderer(sources)
        return _renderer


def reset_renderer() -> None:
    global _renderer
    with _renderer_lock:
        _renderer = None


def _load_first_renderer(sources: Sequence[str]) -> PdfRenderer:
    failures: List[Tuple[str, str]] = []
    for source in sources:
        loader = RENDERER_LOADERS.get(source)
        if loader is None:
            failures.append((source, "unknown renderer source"))
            continue
        try:
            renderer = loader()
        except Exception as exc:  # collected into RendererUnavailableError below
            logger.debug("PDF renderer source %s failed to load: %s", source, exc)
            failures.append((source, str(exc) or exc.__class__.__name__))
            continue
        logger.info("Using PDF renderer source %s", source)
        return renderer
    raise RendererUnavailableError(failures)


# -----------------------------
# Pipeline
# -----------------------------


def render_pdf_attachment(
    attachment: Attachment,
    renderer: PdfRenderer,
    target_width: int = TARGET_IMAGE_WIDTH_PX,
    quality: float = JPEG_QUALITY,
) -> List[PreparedImage]:
    try:
        pages = renderer.render_pages(attachment.content, target_width)
    except Exception as exc:  # renderer libraries raise their own error types
        raise AttachmentError(f"PDF {attachment.name!r} could not be rendered: {exc}") from exc
    if not pages:
        raise AttachmentError(f"PDF {attachment.name!r} contains no pages")

    return [
        PreparedImage(
            name=f"{attachment.name} (Seite {number})",
            content=encode_jpeg(page, quality),
            width=page.width,
            height=page.height,
        )
        for number, page in enumerate(pages, start=1)
    ]


def preprocess_attachments(
    attachments: Iterable[Attachment],
    renderer_loader: Callable[[], PdfRenderer] = ensure_renderer,
    target_width: int = TARGET_IMAGE_WIDTH_PX,
    quality: float = JPEG_QUALITY,
) -> PreprocessResult:
    """Turn attachments into pages one at a time.

    Image attachments come first, then the pages of every PDF; each group keeps
    upload order. Failures never abort the run. When the renderer cannot be
    loaded, every PDF is recorded as failed and only images produce pages.
    """
    result = PreprocessResult()
    attachments = list(attachments)

    for attachment in attachments:
        if attachment.kind != "image":
            continue
        try:
            result.images.append(downscale_image(attachment.content, attachment.name, target_width, quality))
        except AttachmentError as exc:
            logger.warning("Image attachment %s skipped: %s", attachment.name, exc)
            result.failures.append(AttachmentFailure(attachment.name, attachment.kind, str(exc)))

    renderer: Optional[PdfRenderer] = None
    renderer_error: Optional[RendererUnavailableError] = None
    for attachment in attachments:
        if attachment.kind != "pdf":
            continue
        if renderer is None and renderer_error is None:
            try:
                renderer = renderer_loader()
            except RendererUnavailableError as exc:
                logger.warning("PDF attachments will be skipped: %s", exc)
                renderer_error = exc
        if renderer_error is not None:
            result.failures.append(AttachmentFailure(attachment.name, attachment.kind, str(renderer_error)))
            continue

        try:
            result.images.extend(render_pdf_attachment(attachment, renderer, target_width, quality))
        except AttachmentError as exc:
            logger.warning("PDF attachment %s skipped: %s", attachment.name, exc)
            result.failures.append(AttachmentFailure(attachment.name, attachment.kind, str(exc)))

    return result


__all__ = [
    "AttachmentError",
    "AttachmentFailure",
    "PdfRenderer",
    "PreparedImage",
    "PreprocessResult",
    "RendererUnavailableError",
    "downscale_image",
    "ensure_renderer",
    "preprocess_attachments",
    "render_pdf_attachment",
    "reset_renderer",
]
