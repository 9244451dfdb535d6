"""
Standard paper-size matching and PDF assembly for scanned page images.

Scanners report pixel dimensions and (sometimes) a density; the physical page
size derived from them is rarely exact. Each page is snapped to the closest
entry of a small catalog of conventional paper sizes so that the produced
document has regular page geometry.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from PIL import Image
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .exceptions import ValidationError

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0
DEFAULT_DPI = 200

# Declaration order is the tie-break order.
PAPER_SIZES: Tuple[Tuple[str, float, float], ...] = (
    ("A4", 595.28, 841.89),
    ("A3", 841.89, 1190.55),
    ("Letter", 612.0, 792.0),
    ("Legal", 612.0, 1008.0),
    ("A5", 419.53, 595.28),
)


@dataclass(frozen=True)
class PaperMatch:
    """The paper size chosen for one page, in points, already oriented."""
    name: str
    width: float
    height: float
    rotated: bool
    difference: float


@dataclass(frozen=True)
class ImageGeometry:
    width_px: int
    height_px: int
    dpi_x: float
    dpi_y: float

    @property
    def width_pt(self) -> float:
        return pixels_to_points(self.width_px, self.dpi_x)

    @property
    def height_pt(self) -> float:
        return pixels_to_points(self.height_px, self.dpi_y)


def pixels_to_points(pixels: float, dpi: float) -> float:
    """Convert a pixel length at ``dpi`` to PDF points."""
    return pixels / dpi * POINTS_PER_INCH


def match_paper_size(width_pt: float, height_pt: float,
                     sizes: Iterable[Tuple[str, float, float]] = PAPER_SIZES) -> PaperMatch:
    """
    Pick the standard size closest to a page of ``width_pt`` x ``height_pt``.

    Every candidate is compared in both orientations using the sum of the
    absolute width and height differences. Ties keep the earliest candidate,
    and the unrotated orientation of a candidate.
    """
    best: Optional[PaperMatch] = None
    for name, cand_w, cand_h in sizes:
        for rotated in (False, True):
            page_w, page_h = (cand_h, cand_w) if rotated else (cand_w, cand_h)
            diff = abs(width_pt - page_w) + abs(height_pt - page_h)
            if best is None or diff < best.difference:
                best = PaperMatch(name, page_w, page_h, rotated, diff)

    if best is None:
        raise ValueError("No paper sizes to match against")
    return best


def _valid_dpi(value) -> Optional[float]:
    try:
        dpi = float(value)
    except (TypeError, ValueError):
        return None
    return dpi if dpi > 0 else None


def read_image_geometry(path: Union[str, Path], default_dpi: float = DEFAULT_DPI) -> ImageGeometry:
    """
    Read pixel size and density of an image.

    Images without density metadata are assumed to be at ``default_dpi``.
    """
    with Image.open(path) as img:
        width, height = img.size
        dpi = img.info.get('dpi')

    dpi_x = dpi_y = None
    if isinstance(dpi, (tuple, list)) and len(dpi) >= 2:
        dpi_x, dpi_y = _valid_dpi(dpi[0]), _valid_dpi(dpi[1])
    elif dpi is not None:
        dpi_x = dpi_y = _valid_dpi(dpi)

    return ImageGeometry(
        width_px=width,
        height_px=height,
        dpi_x=dpi_x or default_dpi,
        dpi_y=dpi_y or dpi_x or default_dpi,
    )


def fit_image(img_w: float, img_h: float, page_w: float, page_h: float) -> Tuple[float, float, float, float]:
    """
    Scale an image into a page preserving its aspect ratio, centered.

    Returns:
        (x, y, width, height) of the drawn image in page coordinates
    """
    scale = min(page_w / img_w, page_h / img_h)
    draw_w = img_w * scale
    draw_h = img_h * scale
    return (page_w - draw_w) / 2, (page_h - draw_h) / 2, draw_w, draw_h


def plan_pages(image_paths: Iterable[Union[str, Path]],
               default_dpi: float = DEFAULT_DPI) -> List[Tuple[Path, ImageGeometry, PaperMatch]]:
    """Match every readable image to a paper size; unreadable ones are skipped."""
    pages = []
    for image_path in image_paths:
        image_path = Path(image_path)
        try:
            geometry = read_image_geometry(image_path, default_dpi)
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping unreadable image {image_path}: {e}")
            continue
        if geometry.width_px <= 0 or geometry.height_px <= 0:
            logger.warning(f"Skipping empty image {image_path}")
            continue

        match = match_paper_size(geometry.width_pt, geometry.height_pt)
        logger.info(
            f"Image {image_path.name}: {geometry.width_px}x{geometry.height_px}px @ {geometry.dpi_x:g} DPI "
            f"-> {match.name} ({match.width:.1f}x{match.height:.1f} pts)"
        )
        pages.append((image_path, geometry, match))
    return pages


def build_pdf(image_paths: Iterable[Union[str, Path]], output_path: Union[str, Path],
              default_dpi: float = DEFAULT_DPI) -> int:
    """
    Assemble a PDF with one page per image, each page sized to its matched paper size.

    Returns:
        int: Number of pages written

    Raises:
        ValidationError: If none of the images could be used
    """
    pages = plan_pages(image_paths, default_dpi)
    if not pages:
        raise ValidationError("No valid image was provided for document assembly", field="image_paths")

    first = pages[0][2]
    pdf = canvas.Canvas(str(output_path), pagesize=(first.width, first.height))
    for image_path, geometry, match in pages:
        pdf.setPageSize((match.width, match.height))
        x, y, w, h = fit_image(geometry.width_px, geometry.height_px, match.width, match.height)
        pdf.drawImage(ImageReader(str(image_path)), x, y, width=w, height=h)
        pdf.showPage()
    pdf.save()

    logger.info(f"PDF created with {len(pages)} pages at {output_path}")
    return len(pages)
