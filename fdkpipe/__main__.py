"""Command line entry point: ``python -m fdkpipe``.

Example
-------
    python -m fdkpipe scan/*.his --angles scan/angles.txt \\
        --d-so 500 --d-od 300 --pitch 0.2 0.2 -o volume.npy
"""

import argparse
import logging
import sys

from . import __version__
from .config import Geometry, ReconstructionConfig, load_angles
from .constants import DEFAULT_CHANNEL_CAPACITY, DEFAULT_MEMORY_FRACTION, DEFAULT_POOL_LIMIT
from .exceptions import FdkError
from .loader import load_projections
from .pipeline import reconstruct, save_volume

logger = logging.getLogger("fdkpipe")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="fdkpipe",
        description="Multi-GPU Feldkamp reconstruction of circular cone-beam scans.",
    )
    parser.add_argument("inputs", nargs="+", help="projection files (.his or .npy)")
    parser.add_argument("--angles", required=True,
                        help="angle file, one angle in degrees per line")
    parser.add_argument("-o", "--output", default="volume.npy", help="output .npy file")

    geo = parser.add_argument_group("geometry")
    geo.add_argument("--d-so", type=float, required=True, help="source-to-object distance [mm]")
    geo.add_argument("--d-od", type=float, required=True, help="object-to-detector distance [mm]")
    geo.add_argument("--pitch", type=float, nargs=2, required=True, metavar=("U", "V"),
                     help="detector pixel pitch [mm]")
    geo.add_argument("--offset", type=float, nargs=2, default=(0.0, 0.0), metavar=("U", "V"),
                     help="detector offset [pixels]")
    geo.add_argument("--volume", type=int, nargs=3, metavar=("X", "Y", "Z"),
                     help="volume size; derived from the field of view when omitted")
    geo.add_argument("--voxel", type=float, nargs=3, metavar=("X", "Y", "Z"),
                     help="voxel pitch [mm]; required together with --volume")

    run = parser.add_argument_group("pipeline")
    run.add_argument("--devices", nargs="+",
                     help="devices to use, e.g. cuda:0 cuda:1 (default: all)")
    run.add_argument("--pool-limit", type=int, default=DEFAULT_POOL_LIMIT)
    run.add_argument("--channel-capacity", type=int, default=DEFAULT_CHANNEL_CAPACITY)
    run.add_argument("--memory-fraction", type=float, default=DEFAULT_MEMORY_FRACTION)

    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="more output (-vv for debug messages)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _geometry(args, rows, cols):
    pitch_u, pitch_v = args.pitch
    offset_u, offset_v = args.offset
    if args.volume is None:
        return Geometry.derive_volume(cols, rows, pitch_u, pitch_v, args.d_so, args.d_od,
                                      offset_u, offset_v)
    if args.voxel is None:
        raise SystemExit("--voxel is required together with --volume")
    vol_x, vol_y, vol_z = args.volume
    voxel_x, voxel_y, voxel_z = args.voxel
    return Geometry(
        det_cols=cols, det_rows=rows, det_pitch_u=pitch_u, det_pitch_v=pitch_v,
        d_so=args.d_so, d_od=args.d_od,
        vol_x=vol_x, vol_y=vol_y, vol_z=vol_z,
        voxel_x=voxel_x, voxel_y=voxel_y, voxel_z=voxel_z,
        det_offset_u=offset_u, det_offset_v=offset_v,
    )


def main(argv=None):
    args = build_parser().parse_args(argv)
    level = (logging.WARNING, logging.INFO, logging.DEBUG)[min(args.verbose, 2)]
    logging.basicConfig(level=level,
                        format="%(asctime)s %(levelname)-7s %(threadName)s %(name)s: %(message)s")

    try:
        angles = load_angles(args.angles)
        projections = load_projections(args.inputs, angles)
        if not projections:
            logger.error("No projections found in %s", ", ".join(args.inputs))
            return 1
        first = projections[0]
        config = ReconstructionConfig(
            geometry=_geometry(args, first.height, first.width),
            angles=angles,
            devices=args.devices,
            pool_limit=args.pool_limit,
            channel_capacity=args.channel_capacity,
            memory_fraction=args.memory_fraction,
        )
        volume = reconstruct(config, projections)
        save_volume(args.output, volume)
    except FdkError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
