import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from PIL import Image

from mdpress import config
from mdpress.core.errors import ExportError
from mdpress.export.pagination import PageFormat, Slice, mm_to_pt

logger = logging.getLogger(__name__)


@dataclass
class Page:
    """One exported page: the content image for its usable area, top-aligned."""
    number: int
    image: Optional[Image.Image]
    slices: List[Slice] = field(default_factory=list)

    @property
    def blank(self) -> bool:
        return self.image is None or self.image.height == 0


class PdfAssembler:
    """
    Places page images on fixed-size PDF pages with PyMuPDF.

    Each image is scaled to the usable width (aspect ratio kept) and anchored
    at the top-left corner of the margin box.
    """

    def __init__(self, image_format=config.IMAGE_FORMAT, quality=config.IMAGE_QUALITY):
        self.image_format = image_format.upper()
        self.quality = int(quality)
        if self.image_format not in ('JPEG', 'PNG'):
            raise ValueError(f"Unsupported image format '{image_format}'")

    def encode(self, image: Image.Image) -> bytes:
        buffer = io.BytesIO()
        if self.image_format == 'JPEG':
            image.convert('RGB').save(buffer, format='JPEG', quality=self.quality, optimize=True)
        else:
            image.save(buffer, format='PNG', optimize=True)
        return buffer.getvalue()

    def assemble(self, pages: List[Page], page_format: PageFormat, title: Optional[str] = None) -> bytes:
        import fitz  # PyMuPDF

        if not pages:
            raise ExportError("Nothing to assemble")

        left = mm_to_pt(page_format.margin_left)
        top = mm_to_pt(page_format.margin_top)
        usable_width = page_format.content_width_pt

        doc = fitz.open()
        try:
            for page in pages:
                pdf_page = doc.new_page(width=page_format.width_pt, height=page_format.height_pt)
                if page.blank:
                    continue
                ratio = usable_width / page.image.width
                rect = fitz.Rect(left, top, left + usable_width, top + page.image.height * ratio)
                pdf_page.insert_image(rect, stream=self.encode(page.image), keep_proportion=True)
            if title:
                doc.set_metadata({'title': title, 'producer': 'mdpress'})
            data = doc.tobytes(garbage=3, deflate=True)
        finally:
            doc.close()

        logger.info(f"PDFExport: Assembled {len(pages)} page(s), {len(data)} bytes.")
        return data
