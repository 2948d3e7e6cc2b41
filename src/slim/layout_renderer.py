"""
Layout Renderer Module

Raster preview of a planar layout: every triangle is filled with a color
that encodes its distortion, optionally with edges and a scale bar.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import logging

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from .parameterizer import ParameterizationResult
from .runtime_defaults import DEFAULTS

_LOGGER = logging.getLogger(__name__)

LOW_COLOR = np.array([235, 240, 250], dtype=np.float64)
HIGH_COLOR = np.array([200, 30, 40], dtype=np.float64)
EDGE_COLOR = (60, 60, 60)
BACKGROUND = (255, 255, 255)


@dataclass
class LayoutImage:
    """
    Rendered layout.

    Attributes:
        image: (H, W, 3) uint8 RGB pixels
        width_real: image width in mesh units
        height_real: image height in mesh units
        unit: mesh unit
        dpi: resolution stored in the saved file
    """
    image: np.ndarray
    width_real: float
    height_real: float
    unit: str = 'mm'
    dpi: int = 300

    @property
    def width_pixels(self) -> int:
        return self.image.shape[1]

    @property
    def height_pixels(self) -> int:
        return self.image.shape[0]

    @property
    def pixels_per_unit(self) -> float:
        w = float(self.width_real)
        if not np.isfinite(w) or w <= 1e-12:
            return 0.0
        return float(self.width_pixels) / w

    def to_pil_image(self) -> Image.Image:
        return Image.fromarray(np.asarray(self.image, dtype=np.uint8))

    def save(self, filepath: str, include_scale_bar: bool = True) -> None:
        img = self.to_pil_image()
        if include_scale_bar:
            img = self._add_scale_bar(img)
        img.save(filepath, dpi=(self.dpi, self.dpi))
        _LOGGER.info("Saved layout preview: %s", filepath)

    def _add_scale_bar(self, img: Image.Image) -> Image.Image:
        ppu = float(self.pixels_per_unit)
        if not np.isfinite(ppu) or ppu <= 1e-12:
            return img

        img = img.convert('RGB')
        draw = ImageDraw.Draw(img)

        # Bar around 15% of the image width, rounded to 1/2/5 x 10^k units
        bar_real_size = float(int(img.width * 0.15)) / ppu
        if bar_real_size <= 0:
            return img
        magnitude = 10 ** np.floor(np.log10(bar_real_size))
        nice = min([1, 2, 5, 10], key=lambda x: abs(x - bar_real_size / magnitude))
        nice_bar_size = nice * magnitude
        bar_pixels = int(float(nice_bar_size) * ppu)

        margin = 20
        bar_height = 10
        bar_x = img.width - margin - bar_pixels
        bar_y = img.height - margin - bar_height - 20
        if bar_x < 5 or bar_y < 5:
            return img

        draw.rectangle([bar_x - 5, bar_y - 5, bar_x + bar_pixels + 5, bar_y + bar_height + 25],
                       fill='white', outline='black')
        draw.rectangle([bar_x, bar_y, bar_x + bar_pixels, bar_y + bar_height], fill='black')

        label = f"{nice_bar_size:g} {self.unit}"
        try:
            font = ImageFont.truetype("arial.ttf", 12)
        except OSError:
            font = ImageFont.load_default()

        text_bbox = draw.textbbox((0, 0), label, font=font)
        text_width = text_bbox[2] - text_bbox[0]
        text_x = bar_x + (bar_pixels - text_width) // 2
        draw.text((text_x, bar_y + bar_height + 3), label, fill='black', font=font)
        return img


def distortion_colors(
    distortion: np.ndarray,
    value_range: Optional[Tuple[float, float]] = None,
) -> np.ndarray:
    """
    Map per-face distortion to RGB.

    Without an explicit range the colors span the minimum to the 95th
    percentile, so a few extreme faces do not wash out the rest.
    Non-finite values get the high color.
    """
    d = np.asarray(distortion, dtype=np.float64)
    finite = np.isfinite(d)
    if value_range is None:
        if np.any(finite):
            lo = float(np.min(d[finite]))
            hi = float(np.percentile(d[finite], 95))
        else:
            lo, hi = 0.0, 1.0
    else:
        lo, hi = float(value_range[0]), float(value_range[1])

    span = hi - lo
    if span <= 1e-12:
        t = np.zeros_like(d)
    else:
        t = np.clip((d - lo) / span, 0.0, 1.0)
    t[~finite] = 1.0
    colors = LOW_COLOR[None, :] * (1.0 - t[:, None]) + HIGH_COLOR[None, :] * t[:, None]
    return np.rint(colors).astype(np.uint8)


class LayoutRenderer:
    """
    Draws parameterization results.

    Usage:
        renderer = LayoutRenderer()
        image = renderer.render(result, width_pixels=1024)
        image.save("layout.png")
    """

    def __init__(self, default_dpi: int = 300, margin: int = 10, draw_edges: bool = True):
        self.default_dpi = int(default_dpi)
        self.margin = int(margin)
        self.draw_edges = bool(draw_edges)

    def render(
        self,
        result: ParameterizationResult,
        width_pixels: int = DEFAULTS.render_resolution,
        value_range: Optional[Tuple[float, float]] = None,
    ) -> LayoutImage:
        width_pixels = max(16, int(width_pixels))
        ext = np.asarray(result.extents, dtype=np.float64)
        w_real = float(ext[0]) if ext[0] > 1e-12 else 1.0
        h_real = float(ext[1]) if ext[1] > 1e-12 else 1.0

        inner_w = width_pixels - 2 * self.margin
        height_pixels = max(16, int(np.ceil(inner_w * h_real / w_real)) + 2 * self.margin)

        img = Image.new('RGB', (width_pixels, height_pixels), BACKGROUND)
        draw = ImageDraw.Draw(img)

        scale = float(inner_w - 1) / w_real
        pixels = (np.asarray(result.uv, dtype=np.float64) - result.bounds[0]) * scale
        pixels[:, 0] += self.margin
        pixels[:, 1] = (height_pixels - 1 - self.margin) - pixels[:, 1]

        colors = distortion_colors(result.distortion_per_face, value_range)
        outline = EDGE_COLOR if self.draw_edges else None
        for face, color in zip(result.faces, colors):
            polygon = [(float(x), float(y)) for x, y in pixels[face]]
            draw.polygon(polygon, fill=tuple(int(c) for c in color), outline=outline)

        _LOGGER.debug("Rendered layout %dx%d (%d faces)", width_pixels, height_pixels, result.n_faces)
        return LayoutImage(
            image=np.asarray(img, dtype=np.uint8),
            width_real=width_pixels / scale,
            height_real=height_pixels / scale,
            unit=result.mesh.unit,
            dpi=self.default_dpi,
        )
