import base64
import copy
import html
import itertools
import logging
import threading
import traceback
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Optional, Tuple

import markdown
import requests
from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from mdpress import config
from mdpress.core.errors import RenderError

logger = logging.getLogger(__name__)

# -------------------------------------------------------------------------
# Markdown -> HTML
# -------------------------------------------------------------------------

MARKDOWN_EXTENSIONS = [
    'tables',
    'toc',
    'nl2br',
    'sane_lists',
    'def_list',
    'abbr',
    'footnotes',
    'attr_list',
    'pymdownx.superfences',
    'pymdownx.highlight',
    'pymdownx.tasklist',
    'pymdownx.tilde',
    'pymdownx.caret',
    'pymdownx.mark',
]


def _extension_configs():
    from pymdownx.superfences import fence_div_format

    return {
        'pymdownx.superfences': {
            # Mermaid fences become <div class="mermaid">source</div> placeholders.
            'custom_fences': [
                {'name': 'mermaid', 'class': 'mermaid', 'format': fence_div_format},
            ],
        },
        'pymdownx.highlight': {
            'use_pygments': True,
            # Undeclared languages are guessed, like highlightAuto.
            'guess_lang': True,
            'css_class': 'highlight',
        },
        'pymdownx.tasklist': {'custom_checkbox': False},
    }


def render_baseline(text):
    """
    Convert markdown to HTML.

    Returns (html, toc_html). A fresh Markdown instance is used per call
    because instances carry state between conversions.
    """
    md = markdown.Markdown(extensions=MARKDOWN_EXTENSIONS, extension_configs=_extension_configs())
    body = md.convert(text or "")
    return body, getattr(md, 'toc', '')


# -------------------------------------------------------------------------
# Visual tree
# -------------------------------------------------------------------------

HEADINGS = ('h1', 'h2', 'h3', 'h4', 'h5', 'h6')


@dataclass(frozen=True)
class Block:
    kind: str
    html: str
    atomic: bool = False
    children: Tuple['Block', ...] = ()
    source: Optional[str] = None
    diagram_id: Optional[str] = None
    failed: bool = False


@dataclass(frozen=True)
class Diagram:
    """A mermaid placeholder waiting to be rendered, wherever it sits in the tree."""
    diagram_id: str
    source: str


@dataclass(frozen=True)
class Unit:
    """Smallest piece the paginator places on a page."""
    kind: str
    html: str
    atomic: bool
    keep_with_next: bool = False


@dataclass(frozen=True)
class VisualTree:
    blocks: Tuple[Block, ...]
    pass_id: str
    toc: str = ""
    resolved: bool = False
    diagrams: Tuple[Diagram, ...] = ()

    def to_html(self) -> str:
        return "\n".join(block.html for block in self.blocks)

    def placeholders(self):
        return [] if self.resolved else list(self.diagrams)

    def units(self):
        units = []
        for block in self.blocks:
            if block.children:
                units.extend(Unit(child.kind, child.html, child.atomic) for child in block.children)
            else:
                units.append(Unit(block.kind, block.html, block.atomic, keep_with_next=block.kind == 'heading'))
        return units


def _classes(tag):
    return tag.get('class') or []


def _table_rows(factory, table):
    rows = table.find_all('tr')
    columns = max((len(r.find_all(['td', 'th'], recursive=False)) for r in rows), default=1) or 1
    width = f"{100.0 / columns:.2f}%"
    children = []
    for row in rows:
        row_copy = copy.copy(row)
        # Rows are rendered one by one; equal widths keep the columns aligned.
        for cell in row_copy.find_all(['td', 'th'], recursive=False):
            cell['width'] = width
        wrapper = factory.new_tag('table', attrs={'class': 'table-row'})
        wrapper.append(row_copy)
        children.append(Block('table_row', str(wrapper), atomic=True))
    return tuple(children)


def _list_items(factory, listing):
    start = 1
    if listing.name == 'ol':
        try:
            start = int(listing.get('start', 1))
        except ValueError:
            start = 1
    children = []
    for i, item in enumerate(listing.find_all('li', recursive=False)):
        wrapper = factory.new_tag(listing.name, attrs=dict(listing.attrs))
        if listing.name == 'ol':
            wrapper['start'] = str(start + i)
        wrapper.append(copy.copy(item))
        children.append(Block('list_item', str(wrapper), atomic=True))
    return tuple(children)


def _is_image_paragraph(tag):
    if tag.name != 'p':
        return False
    tags = tag.find_all(True)
    return bool(tags) and all(t.name in ('img', 'a', 'br') for t in tags) \
        and any(t.name == 'img' for t in tags) and not tag.get_text(strip=True)


def build_tree(body_html, pass_id, toc=""):
    """Split rendered HTML into top-level blocks, marking the ones that must not be split."""
    soup = BeautifulSoup(body_html, 'html.parser')
    factory = BeautifulSoup("", 'html.parser')
    blocks = []

    # Ids go on before splitting so placeholders nested in lists and quotes get one too.
    diagrams = []
    for n, div in enumerate(soup.find_all('div', class_='mermaid'), start=1):
        div['id'] = f"mermaid-{pass_id}-{n}"
        diagrams.append(Diagram(div['id'], div.get_text()))

    for node in list(soup.contents):
        if isinstance(node, Comment):
            continue
        if isinstance(node, NavigableString):
            text = str(node).strip()
            if text:
                blocks.append(Block('paragraph', f"<p>{html.escape(text)}</p>"))
            continue
        if not isinstance(node, Tag):
            continue

        name = node.name
        classes = _classes(node)
        if name in HEADINGS:
            blocks.append(Block('heading', str(node), atomic=True))
        elif name == 'div' and 'mermaid' in classes:
            blocks.append(Block('diagram', str(node), atomic=True,
                                source=node.get_text(), diagram_id=node['id']))
        elif name == 'pre' or (name == 'div' and 'highlight' in classes):
            blocks.append(Block('code', str(node), atomic=True))
        elif _is_image_paragraph(node) or name in ('img', 'figure'):
            blocks.append(Block('image', str(node), atomic=True))
        elif name == 'table':
            blocks.append(Block('table', str(node), children=_table_rows(factory, node)))
        elif name in ('ul', 'ol'):
            blocks.append(Block('list', str(node), children=_list_items(factory, node)))
        elif name == 'blockquote':
            has_diagram = node.find('div', class_='mermaid') is not None
            blocks.append(Block('blockquote', str(node), atomic=has_diagram))
        elif name == 'hr':
            blocks.append(Block('rule', str(node)))
        elif name == 'p':
            blocks.append(Block('paragraph', str(node)))
        else:
            blocks.append(Block('html', str(node)))

    return VisualTree(blocks=tuple(blocks), pass_id=pass_id, toc=toc, diagrams=tuple(diagrams))


# -------------------------------------------------------------------------
# Diagrams
# -------------------------------------------------------------------------

def image_mime(data: bytes) -> str:
    if data.startswith(b'\x89PNG'):
        return 'image/png'
    if data.lstrip().startswith(b'<svg') or data.lstrip().startswith(b'<?xml'):
        return 'image/svg+xml'
    return 'image/jpeg'


def _substitute_html(fragment, outcomes):
    ids = [diagram_id for diagram_id in outcomes if f'id="{diagram_id}"' in fragment]
    if not ids:
        return fragment
    soup = BeautifulSoup(fragment, 'html.parser')
    for diagram_id in ids:
        target = soup.find(id=diagram_id)
        if target is None:
            continue
        target.replace_with(BeautifulSoup(outcomes[diagram_id][0], 'html.parser').find(True))
    return str(soup)


def _substitute_block(block, outcomes):
    """Swap rendered diagrams into a block and its children, matched by placeholder id."""
    failed = block.failed
    if block.diagram_id in outcomes:
        failed = outcomes[block.diagram_id][1]
    return replace(
        block,
        html=_substitute_html(block.html, outcomes),
        children=tuple(_substitute_block(child, outcomes) for child in block.children),
        failed=failed,
    )


class MermaidInkRenderer:
    """Renders mermaid source to an image through the mermaid.ink service."""

    def __init__(self, base_url=config.MERMAID_URL, timeout=config.MERMAID_TIMEOUT, session=None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()

    def render(self, source: str, instance_id: str) -> bytes:
        # mermaid.ink takes the diagram as url-safe base64 in the path
        encoded = base64.urlsafe_b64encode(source.strip().encode('utf-8')).decode('ascii')
        url = f"{self.base_url}/{encoded}?type=png&bgColor=FFFFFF"
        logger.debug(f"Fetching diagram {instance_id}: {url[:60]}...")
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise RenderError(f"Diagram service unreachable: {e}") from e
        if response.status_code != 200:
            raise RenderError(f"Diagram service returned {response.status_code}")
        return response.content


class RenderPipeline:
    """
    Two-phase renderer.

    render() is synchronous and returns a tree with diagram placeholders,
    resolve() fans the placeholders out to the diagram renderer and swaps
    each result in place. A diagram that fails keeps its source on screen.
    """

    def __init__(self, diagram_renderer=None, max_workers=config.DIAGRAM_WORKERS):
        self.diagram_renderer = diagram_renderer
        self.max_workers = max_workers
        self._passes = itertools.count(1)
        self._lock = threading.Lock()
        self._diagram_pool = None
        self._coordinator = None

    def _pools(self):
        with self._lock:
            if self._diagram_pool is None:
                self._diagram_pool = ThreadPoolExecutor(max_workers=self.max_workers,
                                                        thread_name_prefix='diagram')
                self._coordinator = ThreadPoolExecutor(max_workers=1, thread_name_prefix='render')
            return self._diagram_pool, self._coordinator

    def _next_pass_id(self):
        # Counter plus random suffix: unique across passes and across pipelines.
        return f"{next(self._passes)}{uuid.uuid4().hex[:6]}"

    def render(self, text) -> VisualTree:
        pass_id = self._next_pass_id()
        try:
            body, toc = render_baseline(text)
            return build_tree(body, pass_id, toc)
        except Exception as e:
            logger.error(f"Markdown conversion failed, showing source: {e}")
            logger.debug(traceback.format_exc())
            fallback = Block('code', f'<pre class="markdown-source">{html.escape(text or "")}</pre>',
                             atomic=True, failed=True)
            return VisualTree(blocks=(fallback,), pass_id=pass_id, resolved=True)

    def _fallback(self, diagram, reason):
        logger.warning(f"Diagram {diagram.diagram_id} failed to render: {reason}")
        source = html.escape(diagram.source or "")
        return f'<pre class="mermaid-source" id="{diagram.diagram_id}">{source}</pre>', True

    def _resolve_one(self, diagram):
        """Returns (replacement html, failed) for one placeholder."""
        if self.diagram_renderer is None:
            return self._fallback(diagram, "no diagram renderer configured")
        try:
            data = self.diagram_renderer.render(diagram.source or "", diagram.diagram_id)
            if not data:
                raise RenderError("empty image")
        except Exception as e:
            return self._fallback(diagram, e)
        uri = f"data:{image_mime(data)};base64,{base64.b64encode(data).decode('ascii')}"
        img = (f'<p class="diagram" id="{diagram.diagram_id}">'
               f'<img src="{uri}" alt="diagram" style="display: block; margin: 10px auto; max-width: 100%;"/></p>')
        return img, False

    def resolve(self, tree: VisualTree) -> VisualTree:
        placeholders = tree.placeholders()
        if not placeholders:
            return replace(tree, resolved=True)

        pool, _ = self._pools()
        futures = [(d, pool.submit(self._resolve_one, d)) for d in placeholders]
        outcomes = {}
        for diagram, future in futures:
            try:
                outcomes[diagram.diagram_id] = future.result()
            except Exception as e:
                outcomes[diagram.diagram_id] = self._fallback(diagram, e)

        blocks = tuple(_substitute_block(b, outcomes) for b in tree.blocks)
        return replace(tree, blocks=blocks, resolved=True)

    def render_full(self, text) -> VisualTree:
        return self.resolve(self.render(text))

    def resolve_async(self, tree: VisualTree):
        """Resolve diagrams in the background; returns a concurrent.futures.Future."""
        _, coordinator = self._pools()
        return coordinator.submit(self.resolve, tree)

    def close(self):
        with self._lock:
            for pool in (self._diagram_pool, self._coordinator):
                if pool is not None:
                    pool.shutdown(wait=False)
            self._diagram_pool = self._coordinator = None
