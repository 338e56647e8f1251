"""
Page formats and page-break arithmetic.

All break planning works in integer pixels of the rasterized content. The
usable page height in pixels is floored, so a remainder of one pixel or more
starts another page while an exact multiple never does.
"""
import math
from dataclasses import dataclass, field, replace
from typing import List, Sequence

MM_PER_INCH = 25.4
PT_PER_INCH = 72.0


def mm_to_pt(mm: float) -> float:
    return mm / MM_PER_INCH * PT_PER_INCH


@dataclass(frozen=True)
class PageFormat:
    name: str
    width_mm: float
    height_mm: float
    margin_top: float = 10.0
    margin_right: float = 10.0
    margin_bottom: float = 10.0
    margin_left: float = 10.0

    @property
    def width_pt(self) -> float:
        return mm_to_pt(self.width_mm)

    @property
    def height_pt(self) -> float:
        return mm_to_pt(self.height_mm)

    @property
    def content_width_pt(self) -> float:
        return mm_to_pt(self.width_mm - self.margin_left - self.margin_right)

    @property
    def content_height_pt(self) -> float:
        return mm_to_pt(self.height_mm - self.margin_top - self.margin_bottom)

    def with_margins(self, mm: float) -> 'PageFormat':
        return replace(self, margin_top=mm, margin_right=mm, margin_bottom=mm, margin_left=mm)

    def content_height_px(self, px_per_pt: float) -> int:
        return int(math.floor(self.content_height_pt * px_per_pt + 1e-9))


PAGE_FORMATS = {
    'a4': PageFormat('a4', 210.0, 297.0),
    'a5': PageFormat('a5', 148.0, 210.0),
    'letter': PageFormat('letter', 215.9, 279.4),
    'legal': PageFormat('legal', 215.9, 355.6),
}


def get_page_format(name='a4', margin_mm=None) -> PageFormat:
    try:
        fmt = PAGE_FORMATS[(name or 'a4').lower()]
    except KeyError:
        raise ValueError(f"Unknown page format '{name}'. Known: {', '.join(sorted(PAGE_FORMATS))}")
    if margin_mm is not None:
        fmt = fmt.with_margins(float(margin_mm))
    if fmt.content_width_pt <= 0 or fmt.content_height_pt <= 0:
        raise ValueError(f"Margins leave no usable area on {fmt.name}")
    return fmt


@dataclass(frozen=True)
class Slice:
    """Rows [src_top, src_top + height) of unit `unit`, drawn at dest_top on the page."""
    src_top: int
    height: int
    dest_top: int = 0
    unit: int = 0


@dataclass(frozen=True)
class Box:
    height: int
    atomic: bool = False
    keep_with_next: bool = False


@dataclass
class PagePlan:
    number: int
    slices: List[Slice] = field(default_factory=list)

    @property
    def used_height(self) -> int:
        return max((s.dest_top + s.height for s in self.slices), default=0)


def plan_slices(total_height: int, page_height: int) -> List[Slice]:
    """Cut one tall surface into page-height segments."""
    if page_height <= 0:
        raise ValueError("page height must be positive")
    slices = []
    offset = 0
    remaining = int(total_height)
    # Checked before emitting, so an exact multiple ends without an empty page.
    while remaining > 0:
        take = min(page_height, remaining)
        slices.append(Slice(src_top=offset, height=take))
        offset += take
        remaining -= take
    return slices


def _needed_after_heading(boxes: Sequence[Box], index: int, page_height: int) -> int:
    if index + 1 >= len(boxes):
        return 0
    nxt = boxes[index + 1]
    if nxt.atomic and nxt.height <= page_height:
        return nxt.height
    return min(nxt.height, 1)


def plan_breaks(boxes: Sequence[Box], page_height: int) -> List[PagePlan]:
    """
    Pack measured units onto pages.

    - An atomic unit that does not fit in the room left is moved to the next page.
    - An atomic unit taller than a page starts a fresh page and is then sliced.
    - A keep_with_next unit (headings) moves along when the following unit
      could not start on the same page.
    - Non-atomic units fill the remaining room and continue on the next page.
    """
    if page_height <= 0:
        raise ValueError("page height must be positive")

    pages: List[List[Slice]] = []
    current: List[Slice] = []
    y = 0

    for index, box in enumerate(boxes):
        height = int(box.height)
        if height <= 0:
            continue

        if y > 0:
            if box.atomic and y + height > page_height:
                pages.append(current)
                current, y = [], 0
            elif box.keep_with_next:
                needed = height + _needed_after_heading(boxes, index, page_height)
                if y + needed > page_height and needed <= page_height:
                    pages.append(current)
                    current, y = [], 0

        offset = 0
        while offset < height:
            room = page_height - y
            if room <= 0:
                pages.append(current)
                current, y = [], 0
                continue
            take = min(room, height - offset)
            current.append(Slice(src_top=offset, height=take, dest_top=y, unit=index))
            y += take
            offset += take

    if current:
        pages.append(current)
    return [PagePlan(number=n, slices=s) for n, s in enumerate(pages, start=1)]
