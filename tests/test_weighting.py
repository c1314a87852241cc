import math

import pytest
import torch

from conftest import CountingAllocator, make_projection
from fdkpipe.exceptions import MalformedInput
from fdkpipe.memory import MemoryPool
from fdkpipe.projection import Projection
from fdkpipe.weighting import WeightingStage, weight_projection


def test_weights_match_cone_angle(small_geometry):
    geo = small_geometry
    data = torch.ones(geo.projection_shape)
    weight_projection(data, geo.h_min, geo.v_min, geo.d_sd, geo.det_pitch_u, geo.det_pitch_v)

    # Pixel (row 0, col 0) sits at (-3.5, -2.5) mm on the detector
    expected = geo.d_sd / math.sqrt(geo.d_sd ** 2 + 3.5 ** 2 + 2.5 ** 2)
    assert data[0, 0].item() == pytest.approx(expected, rel=1e-6)
    # Symmetric detector, symmetric weights
    assert torch.allclose(data, data.flip(0).flip(1))
    assert torch.all(data <= 1.0)


def test_weighting_is_deterministic(small_geometry):
    geo = small_geometry
    source = torch.rand(geo.projection_shape, generator=torch.Generator().manual_seed(0))
    results = []
    for _ in range(2):
        data = source.clone()
        weight_projection(data, geo.h_min, geo.v_min, geo.d_sd,
                          geo.det_pitch_u, geo.det_pitch_v)
        results.append(data)
    assert torch.equal(results[0], results[1])


def test_sentinel_follows_every_device(small_geometry):
    geo = small_geometry
    rows, cols = geo.projection_shape
    items = []
    for i in range(6):
        projection = make_projection(rows, cols, index=i, fill=1)
        projection.device_index = i % 2
        items.append(projection)
    items.append(Projection.sentinel())

    stage = WeightingStage(geo, num_devices=2)
    out = []
    iterator = iter(items)
    stage.set_input_function(lambda: next(iterator))
    stage.set_output_function(out.append)
    stage.run()

    assert len(out) == 7
    assert not out[-1].valid
    assert sorted(p.index for p in out[:-1]) == list(range(6))
    # FIFO within one device
    for dev in (0, 1):
        order = [p.index for p in out[:-1] if p.device_index == dev]
        assert order == sorted(order)
    assert all(torch.all(p.data < 1.0) for p in out[:-1])


def test_worker_failure_is_raised(small_geometry):
    geo = small_geometry
    broken = Projection(torch.ones(2, 2, 2), geo.det_cols, geo.det_rows, 0, 0.0)
    items = iter([broken, Projection.sentinel()])

    stage = WeightingStage(geo, num_devices=1)
    out = []
    stage.set_input_function(lambda: next(items))
    stage.set_output_function(out.append)
    with pytest.raises(ValueError):
        stage.run()
    assert out == []


def test_sentinel_first_forwards_only_the_sentinel(small_geometry):
    stage = WeightingStage(small_geometry, num_devices=2)
    items = iter([Projection.sentinel()])
    out = []
    stage.set_input_function(lambda: next(items))
    stage.set_output_function(out.append)
    stage.run()
    assert len(out) == 1
    assert not out[0].valid


def test_unknown_device_is_rejected(small_geometry):
    geo = small_geometry
    pool = MemoryPool(CountingAllocator(), geo.projection_shape, limit=1)
    stray = Projection(pool.acquire(), geo.det_cols, geo.det_rows, 0, 0.0, device_index=2)
    items = iter([stray, Projection.sentinel()])

    stage = WeightingStage(geo, num_devices=2)
    out = []
    stage.set_input_function(lambda: next(items))
    stage.set_output_function(out.append)
    with pytest.raises(MalformedInput):
        stage.run()
    assert out == []
    assert pool.outstanding == 0
