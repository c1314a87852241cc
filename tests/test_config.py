import dataclasses
import math

import pytest

from fdkpipe.config import Geometry, ReconstructionConfig, angular_step, load_angles
from fdkpipe.exceptions import ConfigurationError


def test_load_angles_converts_degrees(tmp_path):
    path = tmp_path / "angles.txt"
    path.write_text("# scan angles\n0.0\n\n90   # quarter turn\n180\n")
    assert load_angles(path) == pytest.approx((0.0, math.pi / 2, math.pi))


@pytest.mark.parametrize("content", ["", "# only a comment\n\n", "0\nfoo\n", "0\nnan\n"])
def test_malformed_angle_files(tmp_path, content):
    path = tmp_path / "angles.txt"
    path.write_text(content)
    with pytest.raises(ConfigurationError):
        load_angles(path)


def test_missing_angle_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_angles(tmp_path / "missing.txt")


def test_angular_step():
    assert angular_step([0.0]) == pytest.approx(2 * math.pi)
    full = [2 * math.pi * i / 360 for i in range(360)]
    assert angular_step(full) == pytest.approx(2 * math.pi / 360)
    short = [math.pi * i / 100 for i in range(101)]
    assert angular_step(short) == pytest.approx(math.pi / 100)


def test_geometry_derived_quantities(small_geometry):
    geo = small_geometry
    assert geo.d_sd == 200.0
    assert geo.projection_shape == (6, 8)
    assert geo.projection_bytes == 6 * 8 * 4
    assert geo.volume_shape == (6, 4, 4)
    assert geo.h_min == -4.0
    assert geo.v_min == -3.0


def test_detector_offset_shifts_edges(small_geometry):
    geo = dataclasses.replace(small_geometry, det_offset_u=2.0, det_offset_v=-1.0)
    assert geo.h_min == -2.0
    assert geo.v_min == -4.0


@pytest.mark.parametrize("field, value", [
    ("det_cols", 0), ("vol_z", -1), ("det_rows", 2.5),
    ("det_pitch_u", 0.0), ("voxel_z", -0.1), ("d_so", 0.0), ("d_od", -1.0),
])
def test_geometry_validation(small_geometry, field, value):
    with pytest.raises(ConfigurationError):
        dataclasses.replace(small_geometry, **{field: value})


def test_derive_volume_covers_field_of_view():
    geo = Geometry.derive_volume(det_cols=16, det_rows=16, det_pitch_u=1.0, det_pitch_v=1.0,
                                 d_so=100.0, d_od=100.0)
    assert geo.voxel_x == pytest.approx(0.5)
    assert geo.voxel_z == pytest.approx(0.5)
    assert (geo.vol_x, geo.vol_y, geo.vol_z) == (16, 16, 16)


def test_config_validation(small_geometry):
    config = ReconstructionConfig(small_geometry, [0, 1, 2], devices=["cpu"])
    assert config.angles == (0.0, 1.0, 2.0)
    assert config.devices == ("cpu",)
    assert config.num_projections == 3
    assert config.with_devices(["cpu", "cpu"]).devices == ("cpu", "cpu")

    with pytest.raises(ConfigurationError):
        ReconstructionConfig(small_geometry, [])
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(small_geometry, [0.0], pool_limit=0)
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(small_geometry, [0.0], channel_capacity=0)
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(small_geometry, [0.0], memory_fraction=1.5)
    with pytest.raises(ConfigurationError):
        ReconstructionConfig(small_geometry, [0.0], devices=[])


def test_config_from_angle_file(small_geometry, tmp_path):
    path = tmp_path / "angles.txt"
    path.write_text("0\n180\n")
    config = ReconstructionConfig.from_angle_file(small_geometry, path, pool_limit=2)
    assert config.num_projections == 2
    assert config.angular_step == pytest.approx(math.pi)
    assert config.pool_limit == 2
