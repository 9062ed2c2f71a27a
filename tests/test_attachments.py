import io
import threading
import time

import pytest
from PIL import Image

from backend.services import attachments
from backend.services.attachments import (
    AttachmentError,
    PyMuPdfRenderer,
    RendererUnavailableError,
    downscale_image,
    ensure_renderer,
    preprocess_attachments,
)
from travel_expense.models import Attachment

from conftest import pdf_bytes, png_bytes


def _image(content: bytes) -> Image.Image:
    return Image.open(io.BytesIO(content))


def test_large_image_is_scaled_down_to_target_width():
    prepared = downscale_image(png_bytes((3000, 1500)), "wide.png")

    assert (prepared.width, prepared.height) == (1360, 680)
    assert prepared.content[:2] == b"\xff\xd8"
    assert _image(prepared.content).size == (1360, 680)
    assert prepared.is_landscape


def test_small_image_is_never_upscaled():
    prepared = downscale_image(png_bytes((200, 300)), "small.png")
    assert (prepared.width, prepared.height) == (200, 300)
    assert not prepared.is_landscape


def test_transparent_image_is_flattened_to_jpeg():
    prepared = downscale_image(png_bytes((50, 50), mode="RGBA"), "alpha.png")
    assert _image(prepared.content).mode == "RGB"


def test_undecodable_image_raises_attachment_error():
    with pytest.raises(AttachmentError):
        downscale_image(b"definitely not an image", "broken.jpg")


def test_pymupdf_renders_each_page_at_target_width():
    renderer = ensure_renderer(("pymupdf",))
    assert isinstance(renderer, PyMuPdfRenderer)

    pages = attachments.render_pdf_attachment(
        Attachment("pdf", "rechnung.pdf", "application/pdf", pdf_bytes(pages=2)), renderer
    )

    assert [page.name for page in pages] == ["rechnung.pdf (Seite 1)", "rechnung.pdf (Seite 2)"]
    assert all(page.width == 1360 for page in pages)
    assert all(not page.is_landscape for page in pages)


class _FakeRenderer:
    name = "fake"

    def render_pages(self, content, target_width):
        return [Image.new("RGB", (target_width, target_width * 2), "white")]


def test_ensure_renderer_falls_back_and_loads_once(monkeypatch):
    calls = []

    def broken():
        calls.append("broken")
        raise ImportError("No module named 'nothing'")

    def working():
        calls.append("working")
        return _FakeRenderer()

    monkeypatch.setattr(attachments, "RENDERER_LOADERS", {"broken": broken, "working": working})

    first = ensure_renderer(("broken", "working"))
    second = ensure_renderer(("broken", "working"))

    assert first is second
    assert isinstance(first, _FakeRenderer)
    assert calls == ["broken", "working"]


def test_ensure_renderer_aggregates_failures_and_retries_later(monkeypatch):
    calls = []

    def broken(name):
        def load():
            calls.append(name)
            raise OSError(f"{name} missing")

        return load

    monkeypatch.setattr(attachments, "RENDERER_LOADERS", {"a": broken("a"), "b": broken("b")})

    with pytest.raises(RendererUnavailableError) as excinfo:
        ensure_renderer(("a", "b", "c"))

    message = str(excinfo.value)
    assert "a: a missing" in message
    assert "b: b missing" in message
    assert "c: unknown renderer source" in message
    assert [source for source, _ in excinfo.value.failures] == ["a", "b", "c"]

    with pytest.raises(RendererUnavailableError):
        ensure_renderer(("a", "b"))
    assert calls == ["a", "b", "a", "b"]


def test_unavailable_renderer_skips_pdfs_but_keeps_images():
    def unavailable():
        raise RendererUnavailableError([("pymupdf", "not installed")])

    result = preprocess_attachments(
        [
            Attachment("pdf", "rechnung.pdf", "application/pdf", pdf_bytes()),
            Attachment("image", "taxi.png", "image/png", png_bytes()),
            Attachment("pdf", "hotel.pdf", "application/pdf", pdf_bytes()),
        ],
        renderer_loader=unavailable,
    )

    assert [image.name for image in result.images] == ["taxi.png"]
    assert [failure.name for failure in result.failures] == ["rechnung.pdf", "hotel.pdf"]
    assert "rechnung.pdf, hotel.pdf" in result.warning


def test_broken_pdf_is_recorded_and_processing_continues():
    result = preprocess_attachments(
        [
            Attachment("pdf", "kaputt.pdf", "application/pdf", b"%PDF-1.4 broken"),
            Attachment("image", "taxi.png", "image/png", png_bytes()),
            Attachment("pdf", "ok.pdf", "application/pdf", pdf_bytes()),
        ],
        renderer_loader=lambda: ensure_renderer(("pymupdf",)),
    )

    assert [image.name for image in result.images] == ["taxi.png", "ok.pdf (Seite 1)"]
    assert len(result.failures) == 1
    assert result.failures[0].kind == "pdf"
    assert result.warning.startswith("Hinweis: 1 ")


def test_renderer_is_requested_once_per_run():
    calls = []

    def loader():
        calls.append(1)
        return _FakeRenderer()

    result = preprocess_attachments(
        [Attachment("pdf", f"{n}.pdf", "application/pdf", b"%PDF") for n in range(3)],
        renderer_loader=loader,
        target_width=100,
    )

    assert len(calls) == 1
    assert [(image.width, image.height) for image in result.images] == [(100, 200)] * 3
    assert result.warning is None


def test_images_come_before_pdf_pages_in_upload_order():
    result = preprocess_attachments(
        [
            Attachment("pdf", "beleg.pdf", "application/pdf", b"%PDF"),
            Attachment("image", "taxi.png", "image/png", png_bytes()),
            Attachment("pdf", "hotel.pdf", "application/pdf", b"%PDF"),
            Attachment("image", "parken.png", "image/png", png_bytes()),
        ],
        renderer_loader=lambda: _FakeRenderer(),
        target_width=100,
    )

    assert [image.name for image in result.images] == [
        "taxi.png",
        "parken.png",
        "beleg.pdf (Seite 1)",
        "hotel.pdf (Seite 1)",
    ]


def test_concurrent_callers_share_one_renderer_load(monkeypatch):
    calls = []
    loading = threading.Event()
    release = threading.Event()

    def slow():
        calls.append("slow")
        loading.set()
        release.wait(timeout=5)
        return _FakeRenderer()

    monkeypatch.setattr(attachments, "RENDERER_LOADERS", {"slow": slow})
    results = []

    def worker():
        results.append(ensure_renderer(("slow",)))

    first = threading.Thread(target=worker)
    second = threading.Thread(target=worker)
    first.start()
    assert loading.wait(timeout=5)
    second.start()
    time.sleep(0.05)
    release.set()
    first.join(timeout=5)
    second.join(timeout=5)

    assert calls == ["slow"]
    assert len(results) == 2
    assert results[0] is results[1]
