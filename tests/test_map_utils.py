"""
Tests for map_utils module.

Run with: pytest tests/test_map_utils.py -v
"""

import math
import pytest
from map_utils import (
    WGS84, Bounds, RotationConfig, CoordinateTransformer, LayerManager,
    get_utm_crs, utm_crs, transverse_mercator_crs, projection_parameters,
    default_projection, reproject, rotate_point,
)


class TestBounds:
    """Tests for the Bounds dataclass."""

    def test_bounds_creation(self):
        """Test basic bounds creation."""
        bounds = Bounds(min_x=0, max_x=100, min_y=0, max_y=50)
        assert bounds.min_x == 0
        assert bounds.max_x == 100
        assert bounds.min_y == 0
        assert bounds.max_y == 50

    def test_bounds_width_height(self):
        """Test width and height properties."""
        bounds = Bounds(min_x=10, max_x=110, min_y=20, max_y=70)
        assert bounds.width == 100
        assert bounds.height == 50

    def test_bounds_center(self):
        """Test center property."""
        bounds = Bounds(min_x=0, max_x=100, min_y=0, max_y=100)
        assert bounds.center == (50, 50)

    def test_bounds_from_points(self):
        """Test envelope of a point set."""
        bounds = Bounds.from_points([(3, -1), (-2, 4), (0, 0)])
        assert bounds.as_tuple() == (-2, -1, 3, 4)

    def test_bounds_corners_order(self):
        """Test corners run top-left, top-right, bottom-right, bottom-left."""
        bounds = Bounds(min_x=0, max_x=10, min_y=0, max_y=5)
        assert bounds.corners() == [(0, 5), (10, 5), (10, 0), (0, 0)]

    def test_bounds_contains(self):
        """Test point containment check."""
        bounds = Bounds(min_x=0, max_x=100, min_y=0, max_y=100)
        assert bounds.contains(50, 50) is True
        assert bounds.contains(0, 0) is True
        assert bounds.contains(100, 100) is True
        assert bounds.contains(-1, 50) is False
        assert bounds.contains(50, 101) is False

    def test_bounds_as_tuple(self):
        """Test conversion to tuple."""
        bounds = Bounds(min_x=1, max_x=2, min_y=3, max_y=4)
        assert bounds.as_tuple() == (1, 3, 2, 4)

    def test_bounds_to_polygon(self):
        """Test shapely polygon has the bounds' area."""
        polygon = Bounds(min_x=0, max_x=4, min_y=0, max_y=3).to_polygon()
        assert polygon.area == pytest.approx(12)
        assert polygon.bounds == (0, 0, 4, 3)


class TestRotationConfig:
    """Tests for the RotationConfig class."""

    def test_no_rotation(self):
        """Test with zero rotation."""
        rot = RotationConfig(angle_deg=0, center_x=100, center_y=100)
        assert rot.is_rotated is False
        assert rot.angle_rad == 0
        assert rot.cos_angle == 1.0
        assert rot.sin_angle == 0.0

    def test_rotation_properties(self):
        """Test rotation angle properties."""
        rot = RotationConfig(angle_deg=90, center_x=0, center_y=0)
        assert rot.is_rotated is True
        assert rot.angle_rad == pytest.approx(math.pi / 2)
        assert rot.cos_angle == pytest.approx(0, abs=1e-10)
        assert rot.sin_angle == pytest.approx(1)

    def test_rotate_point_no_rotation(self):
        """Test point rotation with zero angle."""
        rot = RotationConfig(angle_deg=0, center_x=50, center_y=50)
        assert rot.rotate_point(100, 100) == (100, 100)

    def test_rotate_point_90_degrees(self):
        """Test 90-degree rotation is counter-clockwise."""
        rot = RotationConfig(angle_deg=90, center_x=0, center_y=0)
        x, y = rot.rotate_point(10, 0)
        assert x == pytest.approx(0, abs=1e-10)
        assert y == pytest.approx(10)

    def test_rotate_point_180_degrees(self):
        """Test 180-degree rotation about a centre."""
        rot = RotationConfig(angle_deg=180, center_x=50, center_y=50)
        x, y = rot.rotate_point(100, 50)
        assert x == pytest.approx(0)
        assert y == pytest.approx(50)

    def test_rotated_envelope_no_rotation(self):
        """Test envelope of an unrotated rectangle is the rectangle."""
        rot = RotationConfig(angle_deg=0)
        assert rot.rotated_envelope(100, 50) == (100, 50)

    def test_rotated_envelope_45_degrees(self):
        """Test envelope of a square rotated 45 degrees."""
        rot = RotationConfig(angle_deg=45)
        width, height = rot.rotated_envelope(100, 100)
        assert width == pytest.approx(100 * math.sqrt(2))
        assert height == pytest.approx(100 * math.sqrt(2))

    def test_rotated_envelope_negative_angle(self):
        """Test the envelope is the same for opposite rotations."""
        assert RotationConfig(angle_deg=-20).rotated_envelope(300, 200) == pytest.approx(
            RotationConfig(angle_deg=20).rotated_envelope(300, 200)
        )


class TestRotatePoint:
    """Tests for rotate_point about the origin."""

    def test_quarter_turn(self):
        """Test a quarter turn maps x onto y."""
        x, y = rotate_point((1, 0), math.pi / 2)
        assert x == pytest.approx(0, abs=1e-12)
        assert y == pytest.approx(1)


class TestCrsHelpers:
    """Tests for CRS construction helpers."""

    def test_get_utm_crs_north(self):
        """Test UTM zone for a northern hemisphere point."""
        assert get_utm_crs(121.84, 20.76) == "EPSG:32651"

    def test_get_utm_crs_south(self):
        """Test UTM zone for a southern hemisphere point."""
        assert get_utm_crs(150.3, -33.7) == "EPSG:32756"

    def test_utm_crs_invalid_zone(self):
        """Test zones outside 1-60 are rejected."""
        with pytest.raises(ValueError):
            utm_crs(61)

    def test_transverse_mercator_parameters(self):
        """Test central meridian and scale factor are read back."""
        crs = transverse_mercator_crs(150.25, 0.9996)
        central_meridian, scale_factor = projection_parameters(crs)
        assert central_meridian == pytest.approx(150.25)
        assert scale_factor == pytest.approx(0.9996)

    def test_utm_parameters(self):
        """Test UTM zone 56 has central meridian 153."""
        central_meridian, scale_factor = projection_parameters("EPSG:32756")
        assert central_meridian == pytest.approx(153)
        assert scale_factor == pytest.approx(0.9996)

    def test_default_projection_centred(self):
        """Test the default projection is centred on the points' midpoint."""
        crs = default_projection([(150.0, -33.0), (151.0, -34.0)])
        assert projection_parameters(crs)[0] == pytest.approx(150.5)

    def test_default_projection_utm(self):
        """Test utm=True picks the UTM zone of the midpoint."""
        assert default_projection([(150.0, -33.0), (151.0, -34.0)], utm=True) == "EPSG:32756"


class TestCoordinateTransformer:
    """Tests for the CoordinateTransformer class."""

    @pytest.fixture
    def transformer(self):
        """Create a WGS84 to UTM 51N transformer."""
        return CoordinateTransformer(WGS84, "EPSG:32651")

    def test_wgs84_to_utm(self, transformer):
        """Test WGS84 to UTM conversion."""
        # Approximately center of Batanes
        x, y = transformer.transform(121.84, 20.76)
        assert 370000 < x < 400000
        assert 2280000 < y < 2310000

    def test_transform_points_preserves_order(self, transformer):
        """Test bulk transformation keeps order and length."""
        points = [(121.84, 20.76), (121.9, 20.8), (121.8, 20.7)]
        result = transformer.transform_points(points)
        assert len(result) == 3
        assert result[0] == pytest.approx(transformer.transform(*points[0]))
        assert result[2] == pytest.approx(transformer.transform(*points[2]))

    def test_transform_points_empty(self, transformer):
        """Test no points in, no points out."""
        assert transformer.transform_points([]) == []

    def test_reproject_roundtrip(self):
        """Test WGS84 to UTM and back."""
        points = [(121.84, 20.76), (122.0, 21.0)]
        back = reproject("EPSG:32651", WGS84, reproject(WGS84, "EPSG:32651", points))
        for original, result in zip(points, back):
            assert result == pytest.approx(original, abs=1e-9)

    def test_reproject_same_crs(self):
        """Test reprojection to the same CRS returns the points."""
        assert reproject(WGS84, WGS84, [(1, 2)]) == [(1.0, 2.0)]


class TestLayerManager:
    """Tests for the LayerManager class."""

    @pytest.fixture
    def mock_dwg(self):
        """Create a mock drawing object."""
        import svgwrite
        return svgwrite.Drawing()

    @pytest.fixture
    def manager(self, mock_dwg):
        """Create a LayerManager for testing."""
        return LayerManager(mock_dwg)

    def test_register_layer(self, manager):
        """Test layer registration."""
        layer = manager.register_layer("test_layer", z_order=100)
        assert layer is not None
        assert manager.get_layers_by_z_order() == [layer]

    def test_register_duplicate_layer(self, manager):
        """Test a layer id can only be registered once."""
        manager.register_layer("aerial", z_order=0)
        with pytest.raises(ValueError):
            manager.register_layer("aerial", z_order=1)

    def test_register_multiple_layers(self, manager):
        """Test registering multiple layers."""
        layer1 = manager.register_layer("layer1", z_order=100)
        layer2 = manager.register_layer("layer2", z_order=200)
        layer3 = manager.register_layer("layer3", z_order=50)

        layers = manager.get_layers_by_z_order()
        assert len(layers) == 3
        # Should be ordered by z_order
        assert layers[0] is layer3  # z=50
        assert layers[1] is layer1  # z=100
        assert layers[2] is layer2  # z=200

    def test_hidden_layer(self, manager):
        """Test creating a hidden layer."""
        layer = manager.register_layer("hidden", z_order=100, visible=False)
        assert layer.attribs.get('visibility') == 'hidden'

    def test_layer_opacity(self, manager):
        """Test partial opacity is set as a style, full opacity is not."""
        faded = manager.register_layer("faded", z_order=1, opacity=0.5)
        solid = manager.register_layer("solid", z_order=2, opacity=1.0)
        assert faded.attribs.get('style') == "opacity:0.5"
        assert 'style' not in solid.attribs

    def test_assemble_skips_empty(self, manager, mock_dwg):
        """Test assemble adds only non-empty groups, in z-order."""
        top = manager.register_layer("top", z_order=2)
        bottom = manager.register_layer("bottom", z_order=1)
        empty = manager.register_layer("empty", z_order=3)
        top.add(mock_dwg.rect((0, 0), (1, 1)))
        bottom.add(mock_dwg.rect((0, 0), (1, 1)))

        manager.assemble()
        assert mock_dwg.elements[-2:] == [bottom, top]
        assert empty not in mock_dwg.elements
