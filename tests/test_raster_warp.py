"""
Tests for raster_warp module.

Run with: pytest tests/test_raster_warp.py -v
"""

import numpy as np
import pytest
import rasterio
from PIL import Image
from rasterio.crs import CRS
from rasterio.transform import Affine

from errors import ConfigError
from map_frame import MapFrame
from raster_warp import _to_rgba, array_to_image, image_to_array, read_raster, warp_to_frame

PROJECTION = "EPSG:32756"


def identity(source_crs, target_crs, points):
    return [(float(x), float(y)) for x, y in points]


def write_geotiff(path, data, crs=PROJECTION, transform=Affine(1.0, 0, 500000.0, 0, -1.0, 6300020.0)):
    count, height, width = data.shape
    with rasterio.open(path, "w", driver="GTiff", width=width, height=height, count=count,
                       dtype=data.dtype.name, crs=crs, transform=transform) as dst:
        dst.write(data)
    return path


@pytest.fixture
def frame():
    return MapFrame("test", 1000, PROJECTION, (500020.0, 6300010.0), (40, 20), reproject=identity)


class TestArrays:
    """Tests for image and array conversion."""

    def test_image_to_array(self):
        """Test images become band-first RGBA arrays."""
        array = image_to_array(Image.new("RGB", (3, 2), (10, 20, 30)))
        assert array.shape == (4, 2, 3)
        assert array[:, 0, 0].tolist() == [10, 20, 30, 255]

    def test_array_to_image(self):
        """Test band-first arrays become RGBA images."""
        array = np.zeros((4, 2, 3), dtype=np.uint8)
        array[0] = 255
        array[3] = 128
        image = array_to_image(array)
        assert image.size == (3, 2)
        assert image.getpixel((2, 1)) == (255, 0, 0, 128)

    def test_single_band_to_rgba(self):
        """Test grey rasters are expanded and the mask becomes alpha."""
        data = np.full((1, 2, 2), 90, dtype=np.uint8)
        mask = np.array([[255, 0], [255, 255]], dtype=np.uint8)
        rgba = _to_rgba(data, mask)
        assert rgba.shape == (4, 2, 2)
        assert rgba[:, 0, 1].tolist() == [90, 90, 90, 0]

    def test_grey_alpha_to_rgba(self):
        """Test grey plus alpha keeps the alpha band."""
        data = np.stack([np.full((2, 2), 50), np.full((2, 2), 200)]).astype(np.uint8)
        rgba = _to_rgba(data, np.full((2, 2), 255, dtype=np.uint8))
        assert rgba[:, 0, 0].tolist() == [50, 50, 50, 200]


class TestReadRaster:
    """Tests for reading local rasters."""

    def test_read_geotiff(self, tmp_path):
        """Test a GeoTIFF is read with its affine and CRS."""
        path = write_geotiff(tmp_path / "image.tif", np.full((3, 20, 40), 100, dtype=np.uint8))
        image, affine, crs = read_raster(path)
        assert image.size == (40, 20)
        assert image.getpixel((0, 0)) == (100, 100, 100, 255)
        assert affine.c == 500000.0
        assert CRS.from_user_input(crs) == CRS.from_epsg(32756)

    def test_missing_crs(self, tmp_path):
        """Test a raster without a CRS needs one from the layer."""
        path = write_geotiff(tmp_path / "plain.tif", np.zeros((3, 4, 4), dtype=np.uint8), crs=None)
        with pytest.raises(ConfigError):
            read_raster(path)
        _, _, crs = read_raster(path, crs=PROJECTION)
        assert crs == PROJECTION

    def test_missing_file(self, tmp_path):
        """Test a missing file is a configuration error."""
        with pytest.raises(ConfigError):
            read_raster(tmp_path / "absent.tif")

    def test_unreadable_file(self, tmp_path):
        """Test a file that is not a raster is a configuration error."""
        path = tmp_path / "notes.tif"
        path.write_text("not a raster")
        with pytest.raises(ConfigError):
            read_raster(path)


class TestWarpToFrame:
    """Tests for resampling onto the frame grid."""

    def test_aligned_source(self, frame):
        """Test a source on the frame grid is reproduced."""
        source = Image.new("RGBA", (40, 20), (0, 128, 0, 255))
        warped = warp_to_frame(source, Affine(1.0, 0, 500000.0, 0, -1.0, 6300020.0), PROJECTION, frame, 1.0)
        assert warped.size == (40, 20)
        assert warped.getpixel((20, 10)) == (0, 128, 0, 255)

    def test_outside_source_is_transparent(self, frame):
        """Test frame pixels the source does not reach stay transparent."""
        source = Image.new("RGBA", (20, 20), (0, 128, 0, 255))
        warped = warp_to_frame(source, Affine(1.0, 0, 500000.0, 0, -1.0, 6300020.0), PROJECTION, frame, 1.0)
        assert warped.getpixel((5, 10))[3] == 255
        assert warped.getpixel((35, 10)) == (0, 0, 0, 0)

    def test_rotated_frame_size(self):
        """Test the output has the rotated frame's own pixel size."""
        frame = MapFrame("test", 1000, PROJECTION, (500020.0, 6300010.0), (40, 20), rotation=30,
                         reproject=identity)
        source = Image.new("RGBA", (80, 80), (0, 0, 255, 255))
        warped = warp_to_frame(source, Affine(1.0, 0, 499980.0, 0, -1.0, 6300050.0), PROJECTION, frame, 0.5)
        assert warped.size == (80, 40)
        assert warped.getpixel((40, 20))[2] > 200
