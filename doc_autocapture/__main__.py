"""Command-line runner: scan a camera or video file and log every capture."""
import argparse
import logging
import sys

from .auto_capture import AutoCaptureEngine
from .camera import CameraHandler
from .config import ScannerConfig
from .error_handlers import ScannerError, handle_error

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='doc_autocapture',
        description='Detect a document in a video stream and auto-capture it'
    )
    parser.add_argument('source', nargs='?', default=None,
                        help='Camera index or video file (default: configured camera)')
    parser.add_argument('--threshold', type=int, help='Capture threshold (0-100)')
    parser.add_argument('--delay-ms', type=float, help='Time above threshold before capture')
    parser.add_argument('--rate', type=int, help='Process every Nth frame')
    parser.add_argument('--no-auto', action='store_true', help='Disable auto capture')
    parser.add_argument('--max-frames', type=int, default=None, help='Stop after N frames')
    parser.add_argument('--max-captures', type=int, default=None, help='Stop after N captures')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def config_from_args(args: argparse.Namespace) -> ScannerConfig:
    config = ScannerConfig.from_env()
    overrides = config.to_dict()
    if args.threshold is not None:
        overrides['capture_threshold'] = args.threshold
    if args.delay_ms is not None:
        overrides['capture_delay_ms'] = args.delay_ms
    if args.rate is not None:
        overrides['frame_processing_rate'] = args.rate
    if args.no_auto:
        overrides['auto_capture_enabled'] = False
    return ScannerConfig.from_dict(overrides)


def run(args: argparse.Namespace) -> int:
    """
    Scan the source until it ends or a limit is reached.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        config = config_from_args(args)
    except ScannerError as e:
        logger.error(handle_error(e)['error'])
        return 2

    source = args.source if args.source is not None else config.camera_index
    captures = 0

    try:
        with CameraHandler(source) as camera, AutoCaptureEngine(config) as engine:
            for analysis in engine.run(camera.frames(args.max_frames)):
                if analysis.result is None:
                    continue
                captures += 1
                logger.info(f"Capture {captures}: {analysis.result.to_dict()}")
                if args.max_captures is not None and captures >= args.max_captures:
                    break
    except ScannerError as e:
        logger.error(handle_error(e)['error'])
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")

    logger.info(f"Finished with {captures} capture(s)")
    return 0


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    return run(args)


if __name__ == '__main__':
    sys.exit(main())
