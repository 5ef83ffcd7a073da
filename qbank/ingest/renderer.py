"""
Page renderer for source documents.

Uses PyMuPDF (fitz) to rasterise each page to PNG. The document is opened
only for the duration of one chunk, so no file handle is held while the
rendered pages are being uploaded.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

import fitz  # PyMuPDF

from qbank.config import config
from qbank.ingest.errors import RenderFailedError, UnsupportedDocumentError

logger = logging.getLogger(__name__)

# PyMuPDF renders at 72 DPI for a 1.0 zoom
BASE_DPI = 72


@dataclass
class RenderedUnit:
    """One rendered page held in memory until it is uploaded."""

    unit_index: int  # 0-based
    data: bytes
    content_type: str = "image/png"


class PageRenderer:
    """
    Render document pages to PNG.

    Usage:
        renderer = PageRenderer()
        total = renderer.count_units(path)
        for unit in renderer.render_units(path, range(0, min(3, total))):
            upload(unit.unit_index, unit.data)
    """

    def __init__(self, dpi: int = None):
        self.dpi = dpi or config.RENDER_DPI

    def _open(self, path: Path):
        path = Path(path)
        try:
            doc = fitz.open(str(path))
        except (RuntimeError, ValueError, OSError) as e:
            # fitz.FileDataError derives from RuntimeError; missing files raise OSError
            raise UnsupportedDocumentError(f"Cannot open {path.name}: {e}") from e

        if doc.needs_pass:
            doc.close()
            raise UnsupportedDocumentError(f"{path.name} is password protected")
        return doc

    def count_units(self, path: Path) -> int:
        """Number of pages in the document."""
        doc = self._open(path)
        try:
            count = doc.page_count
        finally:
            doc.close()

        if count == 0:
            raise UnsupportedDocumentError(f"{Path(path).name} has no pages")
        return count

    def render_units(self, path: Path, unit_indexes: Iterable[int]) -> list[RenderedUnit]:
        """Render the given 0-based pages, in ascending order."""
        unit_indexes = sorted(unit_indexes)
        logger.debug(f"Rendering {len(unit_indexes)} pages of {Path(path).name}")
        zoom = self.dpi / BASE_DPI
        matrix = fitz.Matrix(zoom, zoom)
        doc = self._open(path)
        rendered = []
        try:
            for unit_index in unit_indexes:
                try:
                    page = doc.load_page(unit_index)
                    pixmap = page.get_pixmap(matrix=matrix)
                    rendered.append(RenderedUnit(unit_index=unit_index, data=pixmap.tobytes("png")))
                except (RuntimeError, ValueError, IndexError) as e:
                    raise RenderFailedError(
                        f"Failed to render page {unit_index + 1} of {Path(path).name}: {e}"
                    ) from e
        finally:
            doc.close()
        return rendered
