import io
import logging

from bs4 import BeautifulSoup, Tag
from PIL import Image, ImageChops

from mdpress.core.errors import ExportError

logger = logging.getLogger(__name__)

# PDF pages cannot be taller than 200 inches.
MAX_SURFACE_HEIGHT_PT = 14400

# -------------------------------------------------------------------------
# Print preparation
# -------------------------------------------------------------------------

CHECKED = '☑'
UNCHECKED = '☐'


def prepare_print_html(fragment: str, seen_abbrs=None) -> str:
    """
    Make rendered preview HTML safe for the print renderer.

    Screen-only elements go, task checkboxes become glyphs and abbreviations
    are expanded on first use ("HTML (Hyper Text Markup Language)"). Pass the
    same seen_abbrs set for every fragment of one export so expansion happens
    once per document.
    """
    soup = BeautifulSoup(fragment, 'html.parser')
    seen = seen_abbrs if seen_abbrs is not None else set()

    for permalink in soup.find_all('a', class_='headerlink'):
        permalink.decompose()
    for el in soup.find_all(['script', 'button', 'nav']):
        el.decompose()

    for box in soup.find_all('input', attrs={'type': 'checkbox'}):
        if not isinstance(box, Tag):
            continue
        box.replace_with(soup.new_string((CHECKED if box.has_attr('checked') else UNCHECKED) + ' '))

    for abbr in soup.find_all('abbr'):
        title = abbr.get('title')
        text = abbr.get_text()
        if title and text not in seen:
            seen.add(text)
            abbr.string = f"{text} ({title})"

    return str(soup)


PRINT_CSS = """
    body {
        font-family: Helvetica, Arial, sans-serif;
        font-size: 10pt;
        color: #000000;
        background-color: #ffffff;
    }
    p { margin-bottom: 8px; line-height: 1.5; }
    h1, h2, h3, h4, h5, h6 { color: #333333; margin: 8px 0 6px 0; }
    h1 { border-bottom: 2px solid #333333; padding-bottom: 5px; }
    img { page-break-inside: avoid; }
    .mermaid, .mermaid-source, .markdown-source {
        font-family: Courier;
        white-space: pre-wrap;
        background-color: #f8f8f8;
        border: 1px solid #e1e4e8;
        padding: 10px;
        color: #555555;
        font-size: 8pt;
    }
    code, pre { font-family: Courier; background: #f5f5f5; }
    pre { border: 1px solid #eeeeee; padding: 8px; white-space: pre-wrap; }
    table { border-collapse: collapse; width: 100%; }
    td, th { border: 1px solid #cccccc; padding: 6px; text-align: left; }
    th { background-color: #f3f4f6; font-weight: bold; }
    table.table-row { margin: 0; }
    blockquote { border-left: 4px solid #dfe2e5; color: #6a737d; padding-left: 10px; margin-left: 0; }
    abbr { text-decoration: none; }
    dt { font-weight: bold; margin-top: 10px; }
    dd { margin-left: 20px; margin-bottom: 5px; }
    ul, ol { margin-top: 0; margin-bottom: 0; }
"""


def build_print_document(fragment: str, width_pt: float, height_pt: float = MAX_SURFACE_HEIGHT_PT) -> str:
    # Plain concatenation: the CSS is full of braces.
    page_css = "@page { size: %.2fpt %.2fpt; margin: 0; }" % (width_pt, height_pt)
    return (
        '<html><head><meta charset="utf-8"><style>'
        + page_css + PRINT_CSS
        + '</style></head><body><div class="markdown-body">'
        + fragment
        + '</div></body></html>'
    )


# -------------------------------------------------------------------------
# Rasterization
# -------------------------------------------------------------------------

def trim_bottom(image: Image.Image, padding: int = 0) -> Image.Image:
    """Drop trailing white rows, keeping `padding` rows below the last ink."""
    background = Image.new(image.mode, image.size, 'white')
    bbox = ImageChops.difference(image, background).getbbox()
    if not bbox:
        return image.crop((0, 0, image.width, 0))
    bottom = min(image.height, bbox[3] + padding)
    return image.crop((0, 0, image.width, bottom))


def stack_vertically(images):
    width = max(img.width for img in images)
    height = sum(img.height for img in images)
    surface = Image.new('RGB', (width, height), 'white')
    y = 0
    for img in images:
        surface.paste(img, (0, y))
        y += img.height
    return surface


class XhtmlRasterizer:
    """
    HTML fragment -> PIL image at a fixed width.

    xhtml2pdf lays the fragment out on one very tall page of the requested
    width, PyMuPDF rasterizes it, and the unused white tail is trimmed off.
    """

    def __init__(self, padding_pt: float = 4.0, max_height_pt: float = MAX_SURFACE_HEIGHT_PT):
        self.padding_pt = padding_pt
        self.max_height_pt = max_height_pt

    def capture(self, fragment: str, width_pt: float, scale: float) -> Image.Image:
        try:
            from xhtml2pdf import pisa
            import fitz  # PyMuPDF
        except ImportError as ie:
            raise ExportError(f"Rasterizer dependencies missing: {ie}") from ie

        document = build_print_document(fragment, width_pt, self.max_height_pt)
        result = io.BytesIO()
        status = pisa.CreatePDF(document, dest=result, encoding='utf-8')
        if status.err:
            raise ExportError(f"Layout failed with {status.err} error(s)")

        images = []
        with fitz.open(stream=result.getvalue(), filetype="pdf") as pdf:
            matrix = fitz.Matrix(scale, scale)
            for page in pdf:
                pix = page.get_pixmap(matrix=matrix, alpha=False)
                images.append(Image.frombytes("RGB", (pix.width, pix.height), pix.samples))
        if not images:
            raise ExportError("Layout produced no pages")

        surface = images[0] if len(images) == 1 else stack_vertically(images)
        trimmed = trim_bottom(surface, padding=int(round(self.padding_pt * scale)))
        logger.debug(f"Rasterized {len(fragment)} chars to {trimmed.width}x{trimmed.height}px")
        return trimmed

