"""
Command line interface for slscan.

    slscan patterns OUT --width 1024 --height 768
    slscan decode ROOT --out decoded/
    slscan calibrate ROOT --config scan.json
    slscan reconstruct ROOT --set object --calibration ROOT/calibration.yml --out object.npz
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import cv2

from slscan import __version__
from slscan.config import ScanConfig
from slscan.core.constants import DEFAULT_PATTERN_COUNT, PROJECTOR_INFO_FILENAME
from slscan.exceptions import SlscanError
from slscan.logging_config import setup_logging, debug_mode
from slscan.patterns.gray_code import generate_pattern_sequence, effective_resolution, write_projector_info
from slscan.pipeline import ScanPipeline

logger = logging.getLogger(__name__)


def _load_config(path: Optional[str]) -> ScanConfig:
    if path is None:
        return ScanConfig()
    return ScanConfig.load(path)


def cmd_patterns(args) -> int:
    output = Path(args.output)
    output.mkdir(parents=True, exist_ok=True)
    images = generate_pattern_sequence(args.width, args.height, args.count)
    for i, image in enumerate(images):
        cv2.imwrite(str(output / f"pattern_{i:02d}.png"), image)
    width, height = effective_resolution(args.width, args.height, args.count)
    write_projector_info(output / PROJECTOR_INFO_FILENAME, width, height)
    logger.info(f"Wrote {len(images)} patterns to {output}")
    return 0


def cmd_decode(args) -> int:
    pipeline = ScanPipeline(_load_config(args.config))
    pipeline.load_root(args.root)
    names = [args.set] if args.set else [s.name for s in pipeline.enabled_sets]

    output = Path(args.out)
    output.mkdir(parents=True, exist_ok=True)
    for name in names:
        result = pipeline.decode_set(name)
        if result is None:
            return 1
        target = output / name
        target.mkdir(exist_ok=True)
        with open(target / "pattern.npz", 'wb') as f:
            np.savez_compressed(f, pattern=result.pattern, min_max=result.min_max,
                                projector_size=np.array(result.projector_size))
        images = pipeline.pattern_images(name)
        if images is None:
            return 1
        cv2.imwrite(str(target / "columns.png"), images[0])
        cv2.imwrite(str(target / "rows.png"), images[1])
        logger.info(f"Decoded '{name}' into {target}")
    return 0


def cmd_calibrate(args) -> int:
    pipeline = ScanPipeline(_load_config(args.config))
    pipeline.load_root(args.root)
    calibration = pipeline.calibrate(args.out)
    return 0 if calibration is not None else 1


def cmd_reconstruct(args) -> int:
    pipeline = ScanPipeline(_load_config(args.config))
    pipeline.load_root(args.root)
    if not pipeline.load_calibration(args.calibration):
        return 1
    cloud = pipeline.reconstruct(args.set, args.mode)
    if cloud is None:
        return 1
    cloud.save_npz(args.out)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="slscan", description="Structured light 3D scanning")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
                        help="Console log level")
    parser.add_argument("--log-file", help="Also write a detailed log to this file")
    parser.add_argument("--debug-session", metavar="NAME",
                        help="Log everything into the debug session directory NAME")
    parser.add_argument("--debug-dir", help="Directory holding debug sessions, defaults to ~/.slscan/logs")
    subparsers = parser.add_subparsers(dest="command", required=True)

    patterns = subparsers.add_parser("patterns", help="Write the projected Gray code images")
    patterns.add_argument("output", help="Output directory")
    patterns.add_argument("--width", type=int, required=True, help="Projector width")
    patterns.add_argument("--height", type=int, required=True, help="Projector height")
    patterns.add_argument("--count", type=int, default=DEFAULT_PATTERN_COUNT, help="Maximum bits per axis")
    patterns.set_defaults(func=cmd_patterns)

    decode = subparsers.add_parser("decode", help="Decode image sets into pattern maps")
    decode.add_argument("root", help="Scan root directory")
    decode.add_argument("--set", help="Decode only this set")
    decode.add_argument("--out", required=True, help="Output directory")
    decode.add_argument("--config", help="JSON configuration file")
    decode.set_defaults(func=cmd_decode)

    calibrate = subparsers.add_parser("calibrate", help="Calibrate camera and projector")
    calibrate.add_argument("root", help="Scan root with chessboard sets")
    calibrate.add_argument("--config", help="JSON configuration file")
    calibrate.add_argument("--out", help="Output directory, defaults to the scan root")
    calibrate.set_defaults(func=cmd_calibrate)

    reconstruct = subparsers.add_parser("reconstruct", help="Reconstruct a point cloud")
    reconstruct.add_argument("root", help="Scan root directory")
    reconstruct.add_argument("--set", required=True, help="Set to reconstruct")
    reconstruct.add_argument("--calibration", required=True, help="Calibration file")
    reconstruct.add_argument("--out", required=True, help="Output .npz file")
    reconstruct.add_argument("--mode", choices=["patch_center", "simple"], help="Reconstruction mode")
    reconstruct.add_argument("--config", help="JSON configuration file")
    reconstruct.set_defaults(func=cmd_reconstruct)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.debug_session is not None:
        debug_mode(args.debug_session, args.debug_dir)
    else:
        setup_logging(level=args.log_level, log_file=args.log_file)

    try:
        return args.func(args)
    except SlscanError as e:
        logger.error(e.message)
        return 1
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 1


if __name__ == "__main__":
    sys.exit(main())
