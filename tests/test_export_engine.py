import os
import tempfile
import threading
import unittest
from pathlib import Path

import fitz  # PyMuPDF

from mdpress.core.errors import ExportError, ExportInProgressError
from mdpress.core.renderer import Block, VisualTree
from mdpress.export.assembler import Page, PdfAssembler
from mdpress.export.engine import STRATEGY_CONTENT, STRATEGY_SURFACE, ExportEngine, export_filename
from mdpress.export.pagination import get_page_format
from mdpress.export.raster import prepare_print_html, trim_bottom
from tests.config import TEST_SCALE, THREAD_TIMEOUT
from tests.fakes import BlockingRasterizer, FailingRasterizer, FakeRasterizer

A4 = get_page_format('a4')
PAGE_PX = A4.content_height_px(TEST_SCALE)


def paragraph(height):
    return Block('paragraph', f'<p data-h="{height}">text</p>')


def code(height):
    return Block('code', f'<pre data-h="{height}">code</pre>', atomic=True)


def table(*row_heights):
    rows = tuple(Block('table_row', f'<table class="table-row"><tr data-h="{h}"><td>x</td></tr></table>',
                       atomic=True) for h in row_heights)
    return Block('table', '<table>rows</table>', children=rows)


def tree_of(*blocks):
    return VisualTree(blocks=tuple(blocks), pass_id="test", resolved=True)


def surface_page_px(fmt=A4):
    """Page height the surface strategy derives from the captured image width."""
    width = max(1, int(round(fmt.content_width_pt * TEST_SCALE)))
    return fmt.content_height_px(width / fmt.content_width_pt)


class TestSurfaceStrategy(unittest.TestCase):

    def test_exact_multiple_gives_n_pages(self):
        rasterizer = FakeRasterizer()
        engine = ExportEngine(rasterizer=rasterizer, scale=TEST_SCALE)
        page_px = surface_page_px()
        for n in (1, 2, 3):
            tree = tree_of(*[paragraph(page_px) for _ in range(n)])
            pages = engine.export_pages(tree, A4, STRATEGY_SURFACE)
            self.assertEqual(len(pages), n)
            self.assertEqual([p.number for p in pages], list(range(1, n + 1)))
            self.assertTrue(all(p.image.height == page_px for p in pages))

    def test_remainder_gets_its_own_page(self):
        engine = ExportEngine(rasterizer=FakeRasterizer(), scale=TEST_SCALE)
        page_px = surface_page_px()
        pages = engine.export_pages(tree_of(paragraph(page_px), paragraph(5)), A4, STRATEGY_SURFACE)
        self.assertEqual(len(pages), 2)
        self.assertEqual(pages[1].image.height, 5)

    def test_surface_is_captured_once(self):
        rasterizer = FakeRasterizer()
        engine = ExportEngine(rasterizer=rasterizer, scale=TEST_SCALE)
        engine.export_pages(tree_of(paragraph(10), code(10), paragraph(10)), A4, STRATEGY_SURFACE)
        self.assertEqual(len(rasterizer.captures), 1)


class TestContentStrategy(unittest.TestCase):

    def test_table_rows_and_code_are_never_split(self):
        rasterizer = FakeRasterizer()
        engine = ExportEngine(rasterizer=rasterizer, scale=TEST_SCALE)
        tree = tree_of(
            paragraph(PAGE_PX - 30),
            table(20, 20, 20),
            code(PAGE_PX - 50),
        )
        pages = engine.export_pages(tree, A4, STRATEGY_CONTENT)
        units = tree.units()
        self.assertEqual(len(rasterizer.captures), len(units))

        for index, unit in enumerate(units):
            if not unit.atomic:
                continue
            holding = [p.number for p in pages for s in p.slices if s.unit == index]
            self.assertEqual(len(holding), 1, f"unit {index} ({unit.kind}) was split")

        # First row fits under the paragraph, the second is pushed, the code block follows it.
        self.assertEqual(len(pages), 2)
        self.assertEqual([s.unit for s in pages[0].slices], [0, 1])
        self.assertEqual([s.unit for s in pages[1].slices], [2, 3, 4])

    def test_pages_are_content_width(self):
        engine = ExportEngine(rasterizer=FakeRasterizer(), scale=TEST_SCALE)
        pages = engine.export_pages(tree_of(paragraph(40)), A4, STRATEGY_CONTENT)
        self.assertEqual(pages[0].image.width, int(round(A4.content_width_pt * TEST_SCALE)))
        self.assertEqual(pages[0].image.height, 40)

    def test_empty_tree_exports_one_blank_page(self):
        engine = ExportEngine(rasterizer=FakeRasterizer(), scale=TEST_SCALE)
        for strategy in (STRATEGY_CONTENT, STRATEGY_SURFACE):
            pages = engine.export_pages(tree_of(), A4, strategy)
            self.assertEqual(len(pages), 1)
            self.assertTrue(pages[0].blank)


class TestExportFailures(unittest.TestCase):

    def test_rasterizer_failure_is_one_export_error(self):
        engine = ExportEngine(rasterizer=FailingRasterizer(), scale=TEST_SCALE)
        with self.assertRaises(ExportError) as ctx:
            engine.export_pdf(tree_of(paragraph(10)), A4)
        self.assertIn("canvas exploded", str(ctx.exception))
        self.assertFalse(engine.busy)

    def test_unknown_strategy(self):
        engine = ExportEngine(rasterizer=FakeRasterizer(), scale=TEST_SCALE)
        with self.assertRaises(ExportError):
            engine.export_pages(tree_of(paragraph(10)), A4, "sideways")

    def test_failed_export_writes_no_file(self):
        engine = ExportEngine(rasterizer=FailingRasterizer(), scale=TEST_SCALE)
        with tempfile.TemporaryDirectory() as tmp:
            target = Path(tmp) / "out.pdf"
            with self.assertRaises(ExportError):
                engine.export_to_file(tree_of(paragraph(10)), target, A4)
            self.assertEqual(os.listdir(tmp), [])

    def test_tree_is_not_mutated(self):
        engine = ExportEngine(rasterizer=FakeRasterizer(), scale=TEST_SCALE)
        tree = tree_of(paragraph(10), table(5, 5))
        before = repr(tree)
        engine.export_pdf(tree, A4)
        self.assertEqual(repr(tree), before)

    def test_second_export_is_rejected_while_first_runs(self):
        rasterizer = BlockingRasterizer()
        engine = ExportEngine(rasterizer=rasterizer, scale=TEST_SCALE)
        tree = tree_of(paragraph(10))
        results = []

        worker = threading.Thread(target=lambda: results.append(engine.export_pdf(tree, A4)))
        worker.start()
        try:
            self.assertTrue(rasterizer.started.wait(THREAD_TIMEOUT))
            with self.assertRaises(ExportInProgressError):
                engine.export_pdf(tree, A4)
        finally:
            rasterizer.release()
            worker.join(THREAD_TIMEOUT)

        self.assertEqual(len(results), 1)
        self.assertTrue(results[0].startswith(b'%PDF'))
        self.assertFalse(engine.busy)


class TestPdfAssembly(unittest.TestCase):

    def test_pdf_has_one_page_per_planned_page(self):
        engine = ExportEngine(rasterizer=FakeRasterizer(), scale=TEST_SCALE)
        tree = tree_of(*[code(PAGE_PX // 2 + 1) for _ in range(3)])
        with tempfile.TemporaryDirectory() as tmp:
            path = engine.export_to_file(tree, Path(tmp) / "doc.pdf", A4, title="Report")
            with fitz.open(str(path)) as pdf:
                self.assertEqual(pdf.page_count, 3)
                self.assertAlmostEqual(pdf[0].rect.width, A4.width_pt, places=1)
                self.assertAlmostEqual(pdf[0].rect.height, A4.height_pt, places=1)
                self.assertEqual(pdf.metadata.get('title'), "Report")

    def test_png_encoding(self):
        from PIL import Image

        assembler = PdfAssembler(image_format='png')
        data = assembler.assemble([Page(1, Image.new('RGB', (100, 50), 'white'))], A4)
        with fitz.open(stream=data, filetype="pdf") as pdf:
            self.assertEqual(pdf.page_count, 1)
            self.assertEqual(len(pdf[0].get_images()), 1)

    def test_unsupported_image_format(self):
        with self.assertRaises(ValueError):
            PdfAssembler(image_format='gif')


class TestPrintPreparation(unittest.TestCase):
    """Screen-only markup is adapted before layout."""

    def test_checkboxes_and_permalinks(self):
        html = ('<h2 id="x">Tasks<a class="headerlink" href="#x">¶</a></h2>'
                '<ul class="task-list"><li><input type="checkbox" disabled checked> done</li>'
                '<li><input type="checkbox" disabled> todo</li></ul><script>alert(1)</script>')
        out = prepare_print_html(html)
        self.assertNotIn('<input', out)
        self.assertNotIn('headerlink', out)
        self.assertNotIn('<script', out)
        self.assertIn('☑', out)
        self.assertIn('☐', out)

    def test_abbreviation_expanded_once_per_export(self):
        seen = set()
        first = prepare_print_html('<p><abbr title="Portable Document Format">PDF</abbr></p>', seen)
        second = prepare_print_html('<p><abbr title="Portable Document Format">PDF</abbr></p>', seen)
        self.assertIn('PDF (Portable Document Format)', first)
        self.assertNotIn('(Portable Document Format)', second)

    def test_trim_bottom(self):
        from PIL import Image, ImageDraw

        image = Image.new('RGB', (20, 100), 'white')
        ImageDraw.Draw(image).rectangle((0, 10, 19, 29), fill='black')
        self.assertEqual(trim_bottom(image).height, 30)
        self.assertEqual(trim_bottom(image, padding=5).height, 35)
        self.assertEqual(trim_bottom(Image.new('RGB', (20, 100), 'white')).height, 0)


class TestExportFilename(unittest.TestCase):

    def test_names(self):
        self.assertEqual(export_filename("Quarterly Report (copy)"), "quarterly-report-copy.pdf")
        self.assertEqual(export_filename("Café Notes"), "cafe-notes.pdf")
        self.assertEqual(export_filename("   "), "markdown-to-pdf.pdf")
        self.assertEqual(export_filename("✨"), "markdown-to-pdf.pdf")


if __name__ == '__main__':
    unittest.main()
