import tempfile
import unittest
from pathlib import Path

import numpy as np
from PIL import Image

from src.slim.layout_renderer import HIGH_COLOR, LOW_COLOR, LayoutRenderer, distortion_colors
from src.slim.mesh_loader import MeshData
from src.slim.parameterizer import SlimParameterizer


def _square_result():
    vertices = np.array([[0.0, 0.0, 0.0], [2.0, 0.0, 0.0], [2.0, 1.0, 0.0], [0.0, 1.0, 0.0]])
    faces = np.array([[0, 1, 2], [0, 2, 3]])
    mesh = MeshData(vertices=vertices, faces=faces, unit="cm")
    return SlimParameterizer(iterations=1).parameterize(mesh, initial_uv=vertices[:, :2])


class TestDistortionColors(unittest.TestCase):
    def test_explicit_range(self):
        colors = distortion_colors(np.array([0.0, 1.0, 5.0, np.nan]), value_range=(0.0, 1.0))
        np.testing.assert_array_equal(colors[0], LOW_COLOR.astype(np.uint8))
        np.testing.assert_array_equal(colors[1], HIGH_COLOR.astype(np.uint8))
        np.testing.assert_array_equal(colors[2], HIGH_COLOR.astype(np.uint8))
        np.testing.assert_array_equal(colors[3], HIGH_COLOR.astype(np.uint8))

    def test_constant_distortion_uses_low_color(self):
        colors = distortion_colors(np.full(3, 4.0))
        self.assertEqual(colors.shape, (3, 3))
        self.assertEqual(colors.dtype, np.uint8)
        np.testing.assert_array_equal(colors, np.tile(LOW_COLOR.astype(np.uint8), (3, 1)))


class TestLayoutRenderer(unittest.TestCase):
    def test_render_keeps_aspect_ratio(self):
        result = _square_result()
        image = LayoutRenderer(margin=10).render(result, width_pixels=256)

        self.assertEqual(image.width_pixels, 256)
        self.assertEqual(image.image.shape[2], 3)
        self.assertAlmostEqual(image.height_pixels, 10 + 118 + 10, delta=2)
        self.assertEqual(image.unit, "cm")
        self.assertGreater(image.pixels_per_unit, 0.0)
        # layout interior is painted
        center = image.image[image.height_pixels // 2, image.width_pixels // 2]
        self.assertFalse(np.array_equal(center, [255, 255, 255]))

    def test_save_png(self):
        image = LayoutRenderer().render(_square_result(), width_pixels=400)
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "layout.png"
            image.save(str(path))
            with Image.open(path) as img:
                self.assertEqual(img.size, (image.width_pixels, image.height_pixels))
