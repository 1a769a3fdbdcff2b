"""
Tests for client-side image preparation and the local preview.
"""
import io

from PIL import Image

from conftest import make_jpeg
from exam_analyzer.client.image_prep import LocalFile, LocalPreview, downsize_image, prepare_for_upload


def test_large_photo_is_downsized():
    photo = LocalFile(name="IMG_0042.png", data=make_jpeg(size=(4000, 3000)), mime_type="image/png")

    name, data, mime_type = prepare_for_upload(photo, max_dimension=1920)

    assert name == "IMG_0042.jpg"
    assert mime_type == "image/jpeg"
    with Image.open(io.BytesIO(data)) as img:
        assert max(img.size) == 1920


def test_small_compact_image_unchanged():
    data = make_jpeg(size=(64, 64), noise=True)
    assert downsize_image(data, max_dimension=1920, quality=100) is None

    photo = LocalFile(name="tiny.jpg", data=data, mime_type="image/jpeg")
    assert prepare_for_upload(photo, quality=100) == ("tiny.jpg", data, "image/jpeg")


def test_pdf_passes_through():
    pdf = LocalFile(name="exam.pdf", data=b"%PDF-1.4 ...", mime_type="application/pdf")
    assert prepare_for_upload(pdf) == ("exam.pdf", pdf.data, "application/pdf")


def test_corrupt_image_falls_back_to_original():
    broken = LocalFile(name="broken.jpg", data=b"\xff\xd8 not really a jpeg", mime_type="image/jpeg")
    assert prepare_for_upload(broken) == ("broken.jpg", broken.data, "image/jpeg")


def test_preview_release_is_idempotent():
    preview = LocalPreview.create(LocalFile(name="exam.jpg", data=b"abc", mime_type="image/jpeg"))

    assert preview.path.read_bytes() == b"abc"
    assert preview.path.suffix == ".jpg"

    preview.release()
    preview.release()

    assert preview.released is True
    assert not preview.path.exists()
