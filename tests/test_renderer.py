"""
Tests for PyMuPDF page rendering against small generated PDFs.
"""

import fitz
import pytest

from qbank.ingest.errors import UnsupportedDocumentError
from qbank.ingest.renderer import PageRenderer

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


@pytest.fixture
def pdf_path(tmp_path):
    """Five-page PDF with the page number written on each page."""
    path = tmp_path / "exam.pdf"
    doc = fitz.open()
    for i in range(5):
        page = doc.new_page(width=200, height=100)
        page.insert_text((20, 50), f"Question page {i + 1}")
    doc.save(str(path))
    doc.close()
    return path


class TestPageRenderer:
    """Tests for PageRenderer."""

    def test_count_units(self, pdf_path):
        """Page count should match the document."""
        assert PageRenderer(dpi=72).count_units(pdf_path) == 5

    def test_render_units_png(self, pdf_path):
        """Rendered pages should be PNG images in ascending order."""
        units = PageRenderer(dpi=72).render_units(pdf_path, [2, 0])
        assert [u.unit_index for u in units] == [0, 2]
        assert all(u.data.startswith(PNG_MAGIC) for u in units)
        assert all(u.content_type == "image/png" for u in units)

    def test_dpi_scales_output(self, pdf_path):
        """Higher DPI should produce a larger image."""
        low = PageRenderer(dpi=72).render_units(pdf_path, [0])[0]
        high = PageRenderer(dpi=144).render_units(pdf_path, [0])[0]
        low_pix = fitz.Pixmap(low.data)
        high_pix = fitz.Pixmap(high.data)
        assert high_pix.width == 2 * low_pix.width

    def test_render_resume_range(self, pdf_path):
        """Rendering a later page range covers only those pages."""
        units = PageRenderer(dpi=36).render_units(pdf_path, range(3, 5))
        assert [u.unit_index for u in units] == [3, 4]

    def test_corrupt_document(self, tmp_path):
        """A file that is not a PDF should be unsupported and not retryable."""
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"this is not a pdf")
        with pytest.raises(UnsupportedDocumentError) as exc_info:
            PageRenderer().count_units(path)
        assert not exc_info.value.retryable

    def test_missing_document(self, tmp_path):
        """A missing file should be reported as unsupported."""
        with pytest.raises(UnsupportedDocumentError):
            PageRenderer().count_units(tmp_path / "missing.pdf")
