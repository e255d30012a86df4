"""
Console front-end: scan a folder and normalize every image in it to JPEG.

usage:
    msdb-convert [input_dir] [10MB] [4000px] [-o output_dir]
"""

import argparse
import logging
import math
import sys
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

from converter import (
    DEFAULT_MAX_DIMENSION,
    DEFAULT_MAX_SIZE_MB,
    ConversionResult,
    ConversionSettings,
    DiscoveryError,
    ImageTask,
    heif_support_warning,
)
from runner import ConversionRunner, RunTally, find_image_files, prepare_output_dir

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_SUBFOLDER = 'Converted'


def _size_token(value: str) -> float:
    try:
        size = float(value[:-2])
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid size '{value}'")
    if not (math.isfinite(size) and size > 0):
        raise argparse.ArgumentTypeError(f"size must be a positive number: '{value}'")
    return size


def _dimension_token(value: str) -> int:
    try:
        dimension = int(value[:-2])
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid dimension '{value}'")
    if dimension <= 0:
        raise argparse.ArgumentTypeError(f"dimension must be positive: '{value}'")
    return dimension


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='msdb-convert',
        description='Convert every image in a folder to a size- and dimension-limited JPEG.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Limits are given as plain tokens:
  NNMB   maximum output size in megabytes (default: {DEFAULT_MAX_SIZE_MB}MB)
  NNpx   maximum width/height in pixels (default: {DEFAULT_MAX_DIMENSION}px)

Examples:
  %(prog)s
  %(prog)s photos 2MB
  %(prog)s photos 1.5MB 4000px -o photos/small
        """
    )
    parser.add_argument('args', nargs='*', metavar='[input_dir | NNMB | NNpx]',
                        help='Input folder (default: current directory) and optional limits')
    parser.add_argument('-o', '--output',
                        help=f"Output folder (default: <input>/{DEFAULT_OUTPUT_SUBFOLDER})")
    parser.add_argument('-j', '--jobs', type=int,
                        help='Number of parallel workers (default: CPU count)')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log every probe and file outcome')
    return parser


def parse_arguments(argv: Optional[Sequence[str]] = None):
    """Return (input_dir, output_dir, settings, args)."""
    parser = build_parser()
    args = parser.parse_args(argv)

    max_size_mb = DEFAULT_MAX_SIZE_MB
    max_dimension = DEFAULT_MAX_DIMENSION
    input_dir = None

    for token in args.args:
        try:
            if token.lower().endswith('mb'):
                max_size_mb = _size_token(token)
            elif token.lower().endswith('px'):
                max_dimension = _dimension_token(token)
            elif input_dir is None:
                input_dir = Path(token)
            else:
                parser.error(f"unexpected argument '{token}'")
        except argparse.ArgumentTypeError as e:
            parser.error(str(e))

    if args.jobs is not None and args.jobs <= 0:
        parser.error('--jobs must be positive')

    input_dir = (input_dir or Path.cwd()).resolve()
    output_dir = Path(args.output).resolve() if args.output else input_dir / DEFAULT_OUTPUT_SUBFOLDER
    settings = ConversionSettings(max_size_mb=max_size_mb, max_dimension=max_dimension)
    return input_dir, output_dir, settings, args


def print_file_names(files: Sequence[Path]) -> None:
    if not files:
        return
    for path in files:
        print(f"- {path.name}")
    print()


def run_conversion(input_dir: Path, output_dir: Path, settings: ConversionSettings,
                   max_workers: Optional[int] = None) -> Optional[RunTally]:
    """Discover, convert and summarize. Returns None when there was nothing to do."""
    print(f"MSDBConverter :: Input: '{input_dir}'")
    print(f"Limits: {settings.max_size_mb}MB, {settings.max_dimension}px")

    image_files = find_image_files(input_dir)
    print(f"Found {len(image_files)} image files to process:")
    print_file_names(image_files)

    if not image_files:
        print(f"No image files with supported extensions found in '{input_dir}'.")
        return None

    plugin_warning = heif_support_warning(image_files)
    if plugin_warning:
        print(plugin_warning, file=sys.stderr)

    prepare_output_dir(output_dir)
    tasks = [ImageTask.from_source(path, output_dir, settings) for path in image_files]

    print("Converting...")
    runner = ConversionRunner(max_workers=max_workers)
    with tqdm(total=len(tasks), desc="Converting", unit="file", ncols=100) as pbar:

        def report(result: ConversionResult, tally: RunTally):
            # Called from the aggregating thread only, so writes never interleave
            if result.message:
                tqdm.write(result.message, file=sys.stderr)
            pbar.update(1)

        tally = runner.run(tasks, on_result=report)

    print("\n--- Conversion Summary ---")
    print(f"Successfully converted: {tally.succeeded} file(s)")
    print(f"Failed to convert:      {tally.failed} file(s)")
    print(f"Output folder:          '{output_dir}'")
    return tally


def main(argv: Optional[Sequence[str]] = None) -> int:
    input_dir, output_dir, settings, args = parse_arguments(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    try:
        run_conversion(input_dir, output_dir, settings, max_workers=args.jobs)
    except DiscoveryError as e:
        print("\n[CRITICAL ERROR] Insufficient permissions or missing folder.", file=sys.stderr)
        print(f"Could not read from '{input_dir}' or write to '{output_dir}'.", file=sys.stderr)
        print(f"Details: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.debug("Run aborted", exc_info=True)
        print("\n[CRITICAL ERROR] An unexpected error occurred:", file=sys.stderr)
        print(str(e), file=sys.stderr)
        if e.__cause__ is not None:
            print(f"Inner Exception: {e.__cause__}", file=sys.stderr)
        return 1
    return 0


def entry_point():
    sys.exit(main())


if __name__ == '__main__':
    entry_point()
