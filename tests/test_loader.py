import math

import numpy as np
import pytest
import torch

from conftest import CountingAllocator
from fdkpipe.exceptions import MalformedInput
from fdkpipe.loader import _HIS_FILE_HEADER, HisLoader, NpyLoader, load_projections


def write_his(path, frames, number_type=4, file_type=0x7000, truncate=0):
    n, rows, cols = frames.shape
    header = np.zeros(1, dtype=_HIS_FILE_HEADER)
    header["file_type"] = file_type
    header["header_size"] = 68
    header["header_version"] = 100
    header["image_header_size"] = 32
    header["ulx"], header["uly"] = 1, 1
    header["brx"], header["bry"] = cols, rows
    header["frames"] = n
    header["number_type"] = number_type
    dtype = "<u2" if number_type == 4 else "<u4"
    payload = frames.astype(dtype).tobytes()
    raw = header.tobytes() + bytes(32) + payload
    header["file_size"] = len(raw)
    raw = header.tobytes() + bytes(32) + payload
    path.write_bytes(raw[:len(raw) - truncate])
    return path


@pytest.fixture
def allocator():
    return CountingAllocator()


def test_header_layout():
    assert _HIS_FILE_HEADER.itemsize == 68


@pytest.mark.parametrize("number_type", [4, 32])
def test_his_frames(tmp_path, number_type):
    frames = np.arange(2 * 3 * 4).reshape(2, 3, 4)
    path = write_his(tmp_path / "scan.his", frames, number_type=number_type)
    data = HisLoader().read_frames(path)
    assert data.dtype == np.float32
    np.testing.assert_array_equal(data, frames)


@pytest.mark.parametrize("kwargs", [
    {"file_type": 0x1234},
    {"number_type": 8},
    {"truncate": 1},
])
def test_broken_his_files(tmp_path, kwargs):
    path = write_his(tmp_path / "scan.his", np.ones((1, 2, 2)), **kwargs)
    with pytest.raises(MalformedInput):
        HisLoader().read_frames(path)


def test_his_too_short(tmp_path):
    path = tmp_path / "short.his"
    path.write_bytes(b"\x00\x70" * 4)
    with pytest.raises(MalformedInput):
        HisLoader().read_frames(path)


def test_npy_single_image_and_stack(tmp_path):
    np.save(tmp_path / "one.npy", np.ones((3, 4)))
    np.save(tmp_path / "stack.npy", np.zeros((5, 3, 4), dtype=np.uint16))
    assert NpyLoader().read_frames(tmp_path / "one.npy").shape == (1, 3, 4)
    assert NpyLoader().read_frames(tmp_path / "stack.npy").shape == (5, 3, 4)

    np.save(tmp_path / "flat.npy", np.ones(12))
    with pytest.raises(MalformedInput):
        NpyLoader().read_frames(tmp_path / "flat.npy")


def test_load_projections_numbers_frames(tmp_path, allocator):
    write_his(tmp_path / "a.his", np.full((2, 3, 4), 7))
    np.save(tmp_path / "b.npy", np.full((3, 4), 9.0))
    angles = (0.0, math.pi / 2, math.pi)

    projections = load_projections([tmp_path / "a.his", tmp_path / "b.npy"], angles,
                                   allocator=allocator)
    assert [p.index for p in projections] == [0, 1, 2]
    assert [p.angle for p in projections] == list(angles)
    assert all((p.width, p.height) == (4, 3) for p in projections)
    assert torch.all(projections[0].data == 7.0)
    assert torch.all(projections[2].data == 9.0)
    # Frames are decoded on the host and copied into buffers from the given allocator
    assert allocator.allocations == 3


def test_load_projections_rejects_inconsistent_input(tmp_path, allocator):
    np.save(tmp_path / "a.npy", np.ones((3, 4)))
    np.save(tmp_path / "b.npy", np.ones((4, 4)))
    (tmp_path / "c.tif").write_bytes(b"")

    with pytest.raises(MalformedInput):
        load_projections([tmp_path / "a.npy", tmp_path / "b.npy"], allocator=allocator)
    with pytest.raises(MalformedInput):
        load_projections([tmp_path / "c.tif"], allocator=allocator)
    with pytest.raises(MalformedInput):
        load_projections([tmp_path / "a.npy", tmp_path / "a.npy"], angles=(0.0,),
                         allocator=allocator)
    with pytest.raises(MalformedInput):
        load_projections([tmp_path / "missing.npy"], allocator=allocator)
