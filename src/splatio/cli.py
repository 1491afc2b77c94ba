# ABOUTME: Command-line interface for inspecting and converting splat scene files
# ABOUTME: Provides the `splatio info` and `splatio convert` subcommands

import argparse
import sys
import traceback
from pathlib import Path

from . import __version__
from .config import ReaderConfig
from .errors import SplatIOError
from .formats import FormatDetector, WRITERS, open_scene, writer_for
from .morton import compute_statistics, reorder_cloud
from .utils.logging_utils import Timer, setup_logging


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='splatio',
        description='Read, inspect and convert gaussian splat scenes',
        epilog=f"""
Examples:
  # Summarize a scene
  splatio info scene.spz

  # Convert SOGS textures to PLY, Morton ordered
  splatio convert meta.json scene.ply --reorder

Writable formats: {', '.join(sorted(WRITERS))}
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--verbose', action='store_true',
                        help='Enable verbose logging (DEBUG level)')
    parser.add_argument('--quiet', action='store_true',
                        help='Quiet mode - only show warnings and errors')
    parser.add_argument('--validation', type=str, default='lenient',
                        choices=['strict', 'lenient', 'safety'],
                        help='Point validation mode. Default: lenient')
    parser.add_argument('--workers', type=int, default=4,
                        help='Decode worker threads. Default: 4')

    subparsers = parser.add_subparsers(dest='command', required=True)

    info = subparsers.add_parser('info', help='Print a summary of a scene file')
    info.add_argument('input', type=str, help='Scene file (.ply, .splat, .spz, .spx, .gltf, .glb, .sog, .zip, meta.json, .cspl)')
    info.add_argument('--morton-stats', action='store_true',
                      help='Also report the Morton code distribution')

    convert = subparsers.add_parser('convert', help='Convert a scene to another format')
    convert.add_argument('input', type=str, help='Scene file to read')
    convert.add_argument('output', type=str, help=f"Output file ({', '.join(sorted(WRITERS))})")
    convert.add_argument('--reorder', action='store_true',
                         help='Sort splats along the Morton curve before writing')
    convert.add_argument('--recursive', action='store_true',
                         help='Refine crowded Morton buckets (with --reorder)')
    convert.add_argument('--bucket-threshold', type=int, default=256,
                         help='Bucket size that triggers refinement. Default: 256')
    return parser


def cmd_info(args, config: ReaderConfig) -> None:
    path = Path(args.input)
    reader = open_scene(path, config)
    cloud = reader.read_validated_cloud()
    lo, hi = cloud.bounds()

    print(f"File:    {path}")
    print(f"Format:  {FormatDetector.get_description(path)}")
    print(f"Points:  {cloud.count}")
    print(f"Bounds:  min {lo.tolist()} max {hi.tolist()}")
    print(f"Color:   {cloud.color_kind.value}")
    if cloud.count and cloud.sh_coefficient_count:
        print(f"SH coefficients: {cloud.sh_coefficient_count}")

    if args.morton_stats:
        stats = compute_statistics(cloud.positions)
        print(f"Morton:  {stats.unique_codes} unique codes ({stats.unique_ratio:.1%}), "
              f"largest bucket {stats.largest_bucket}")


def cmd_convert(args, config: ReaderConfig, logger) -> None:
    writer = writer_for(args.output)
    cloud = open_scene(args.input, config).read_validated_cloud()
    if args.reorder:
        with Timer("Morton reorder", logger):
            cloud = reorder_cloud(cloud, recursive=args.recursive,
                                  bucket_threshold=args.bucket_threshold)
    writer.write(cloud, args.output)
    logger.info(f"Converted {cloud.count} points: {args.input} -> {args.output}")


def _report(message: str, verbose: bool, logger) -> int:
    logger.error(message)
    if verbose:
        traceback.print_exc()
    return 1


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logger = setup_logging(verbose=args.verbose, quiet=args.quiet)

    try:
        config = ReaderConfig(validation_mode=args.validation, max_workers=args.workers)
        if args.command == 'info':
            cmd_info(args, config)
        else:
            cmd_convert(args, config, logger)
        return 0

    except SplatIOError as e:
        return _report(f"{type(e).__name__}: {e}", args.verbose, logger)
    except ValueError as e:
        return _report(f"Invalid argument: {e}", args.verbose, logger)
    except OSError as e:
        return _report(f"I/O error: {e}", args.verbose, logger)


if __name__ == '__main__':
    sys.exit(main())
