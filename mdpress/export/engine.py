import logging
import os
import re
import tempfile
import threading
import traceback
import unicodedata
from pathlib import Path
from typing import List

from PIL import Image

from mdpress import config
from mdpress.core.errors import ExportError, ExportInProgressError
from mdpress.export.assembler import Page, PdfAssembler
from mdpress.export.pagination import Box, PageFormat, get_page_format, plan_breaks, plan_slices
from mdpress.export.raster import XhtmlRasterizer, prepare_print_html

logger = logging.getLogger(__name__)

STRATEGY_CONTENT = "content"
STRATEGY_SURFACE = "surface"
STRATEGIES = (STRATEGY_CONTENT, STRATEGY_SURFACE)


def export_filename(name) -> str:
    """File name for a document's PDF, derived from its display name."""
    text = unicodedata.normalize('NFKD', name or '').encode('ascii', 'ignore').decode('ascii')
    slug = re.sub(r'[^A-Za-z0-9]+', '-', text).strip('-').lower()
    return f"{slug}.pdf" if slug else config.EXPORT_FALLBACK_NAME


class ExportEngine:
    """
    Turns a visual tree into fixed-size pages.

    "surface": rasterize everything once and cut it at page height.
    "content": rasterize unit by unit and break between units, never inside
    an atomic one unless it is taller than a page.

    Only one export runs at a time; a second request is rejected rather than
    queued. The tree is immutable, so an export always sees the snapshot it
    was started with.
    """

    def __init__(self, rasterizer=None, assembler=None, scale=config.RASTER_SCALE):
        self.rasterizer = rasterizer or XhtmlRasterizer()
        self.assembler = assembler or PdfAssembler()
        self.scale = scale
        self._busy = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._busy.locked()

    def _acquire(self):
        if not self._busy.acquire(blocking=False):
            logger.warning("PDFExport: rejected, an export is already in progress")
            raise ExportInProgressError()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def export_pages(self, tree, page_format=None, strategy=STRATEGY_CONTENT) -> List[Page]:
        self._acquire()
        try:
            return self._guarded(self._pages, tree, page_format or get_page_format(), strategy)
        finally:
            self._busy.release()

    def export_pdf(self, tree, page_format=None, strategy=STRATEGY_CONTENT, title=None) -> bytes:
        self._acquire()
        try:
            fmt = page_format or get_page_format()
            pages = self._guarded(self._pages, tree, fmt, strategy)
            return self._guarded(self.assembler.assemble, pages, fmt, title)
        finally:
            self._busy.release()

    def export_to_file(self, tree, path, page_format=None, strategy=STRATEGY_CONTENT, title=None) -> Path:
        """Write the PDF to `path`; nothing is left on disk if any step fails."""
        data = self.export_pdf(tree, page_format, strategy, title)
        path = Path(path)
        try:
            fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=".export-", suffix=".pdf")
            try:
                with os.fdopen(fd, 'wb') as f:
                    f.write(data)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise ExportError(f"Could not write {path}: {e}") from e
        return path

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _guarded(self, func, *args):
        try:
            return func(*args)
        except ExportError:
            raise
        except Exception as e:
            logger.error(f"PDFExport failed: {e}")
            logger.error(traceback.format_exc())
            raise ExportError(f"PDF Export Failed: {e}") from e

    def _pages(self, tree, fmt: PageFormat, strategy) -> List[Page]:
        if strategy not in STRATEGIES:
            raise ExportError(f"Unknown export strategy '{strategy}'")
        if strategy == STRATEGY_SURFACE:
            pages = self._surface_pages(tree, fmt)
        else:
            pages = self._content_pages(tree, fmt)
        if not pages:
            # An empty document still exports as one blank page.
            pages = [Page(number=1, image=None)]
        logger.info(f"PDFExport: {strategy} strategy produced {len(pages)} page(s) on {fmt.name}")
        return pages

    def _surface_pages(self, tree, fmt: PageFormat) -> List[Page]:
        if not tree.blocks:
            return []
        html = prepare_print_html(tree.to_html())
        surface = self.rasterizer.capture(html, fmt.content_width_pt, self.scale)
        if surface.width <= 0 or surface.height <= 0:
            return []
        page_px = fmt.content_height_px(surface.width / fmt.content_width_pt)
        pages = []
        for number, piece in enumerate(plan_slices(surface.height, page_px), start=1):
            image = surface.crop((0, piece.src_top, surface.width, piece.src_top + piece.height))
            pages.append(Page(number=number, image=image, slices=[piece]))
        return pages

    def _content_pages(self, tree, fmt: PageFormat) -> List[Page]:
        units = tree.units()
        if not units:
            return []
        width_px = max(1, int(round(fmt.content_width_pt * self.scale)))
        seen_abbrs = set()
        images = []
        for unit in units:
            image = self.rasterizer.capture(prepare_print_html(unit.html, seen_abbrs),
                                            fmt.content_width_pt, self.scale)
            images.append(_fit_width(image, width_px))

        boxes = [Box(img.height, unit.atomic, unit.keep_with_next) for img, unit in zip(images, units)]
        plans = plan_breaks(boxes, fmt.content_height_px(self.scale))

        pages = []
        for plan in plans:
            canvas = Image.new('RGB', (width_px, plan.used_height), 'white')
            for piece in plan.slices:
                source = images[piece.unit]
                canvas.paste(source.crop((0, piece.src_top, width_px, piece.src_top + piece.height)),
                             (0, piece.dest_top))
            pages.append(Page(number=plan.number, image=canvas, slices=list(plan.slices)))
        return pages


def _fit_width(image: Image.Image, width_px: int) -> Image.Image:
    if image.width == width_px or image.height == 0:
        return image.convert('RGB') if image.mode != 'RGB' else image
    height = max(1, int(round(image.height * width_px / image.width)))
    return image.convert('RGB').resize((width_px, height), Image.Resampling.LANCZOS)
