import numpy as np
import pytest

from fdkpipe.__main__ import build_parser, main


def test_parser_defaults():
    args = build_parser().parse_args(
        ["a.npy", "--angles", "angles.txt", "--d-so", "100", "--d-od", "50", "--pitch", "1", "1"]
    )
    assert args.output == "volume.npy"
    assert args.devices is None
    assert args.pool_limit == 8
    assert args.volume is None


def test_reconstruct_from_files(tmp_path):
    angles = tmp_path / "angles.txt"
    angles.write_text("\n".join(str(a) for a in range(0, 360, 30)))
    np.save(tmp_path / "scan.npy", np.ones((12, 16, 16), dtype=np.float32))
    output = tmp_path / "volume.npy"

    status = main([str(tmp_path / "scan.npy"), "--angles", str(angles),
                   "--d-so", "100", "--d-od", "100", "--pitch", "1", "1",
                   "--devices", "cpu", "cpu", "--pool-limit", "2", "-o", str(output)])
    assert status == 0
    volume = np.load(output)
    assert volume.shape == (16, 16, 16)
    assert np.all(np.isfinite(volume))


def test_errors_give_nonzero_status(tmp_path):
    angles = tmp_path / "angles.txt"
    angles.write_text("not an angle\n")
    np.save(tmp_path / "scan.npy", np.ones((16, 16), dtype=np.float32))
    status = main([str(tmp_path / "scan.npy"), "--angles", str(angles),
                   "--d-so", "100", "--d-od", "100", "--pitch", "1", "1"])
    assert status == 1


def test_volume_requires_voxel(tmp_path):
    angles = tmp_path / "angles.txt"
    angles.write_text("0\n")
    np.save(tmp_path / "scan.npy", np.ones((16, 16), dtype=np.float32))
    with pytest.raises(SystemExit):
        main([str(tmp_path / "scan.npy"), "--angles", str(angles),
              "--d-so", "100", "--d-od", "100", "--pitch", "1", "1", "--volume", "8", "8", "8"])
