"""Replay recorded detection frames through the work-study monitor."""

import argparse
import json
import logging
import sys
from pathlib import Path

import jsonlines

from workstudy.config import load_config
from workstudy.logic.model import get_template
from workstudy.pipeline import Pipeline


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Work Study Monitor - Frame replay",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "--frames",
        type=str,
        help="JSONL file with one detection frame per line"
    )

    parser.add_argument(
        "--config",
        type=str,
        default="configs/engine.yaml",
        help="Path to configuration file"
    )

    parser.add_argument(
        "--model",
        type=str,
        default="configs/models/pick_place.yaml",
        help="Path to motion model file (YAML or JSON)"
    )

    parser.add_argument(
        "--template",
        type=str,
        help="Use a bundled model template instead of --model (e.g. tpl_pick_place)"
    )

    parser.add_argument(
        "--output-dir",
        type=str,
        help="Output directory for events (overrides config)"
    )

    parser.add_argument(
        "--print-results",
        action="store_true",
        help="Print the engine result of every frame as JSON"
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level"
    )

    parser.add_argument(
        "--api",
        action="store_true",
        help="Start API server (frames are replayed first if given)"
    )

    parser.add_argument(
        "--api-port",
        type=int,
        default=8000,
        help="API server port"
    )

    return parser.parse_args()


def replay(pipeline: Pipeline, frames_path: Path, print_results: bool = False) -> int:
    """
    Feed every frame of a JSONL recording to the pipeline.

    Returns:
        Number of lines read
    """
    count = 0
    with jsonlines.open(frames_path) as reader:
        for frame in reader.iter(type=dict, skip_invalid=True):
            result = pipeline.process_frame(frame)
            count += 1
            if print_results:
                print(json.dumps(result.to_dict()))
    return count


def main() -> None:
    """Main replay function."""
    args = parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    logger.info("Starting Work Study Monitor")
    logger.info(f"Config: {args.config}")

    try:
        config_path = Path(args.config)
        if not config_path.exists():
            logger.error(f"Configuration file not found: {config_path}")
            sys.exit(1)

        config, model = load_config(config_path, None if args.template else args.model)

        if args.template:
            model = get_template(args.template)
            if model is None:
                logger.error(f"Unknown template: {args.template}")
                sys.exit(1)

        if model is None:
            logger.error(f"Model file not found: {args.model}")
            sys.exit(1)

        if args.output_dir:
            config.logging.out_dir = args.output_dir

        logger.info("Initializing pipeline...")
        pipeline = Pipeline(config, model)

        with pipeline:
            if args.frames:
                frames_path = Path(args.frames)
                if not frames_path.exists():
                    logger.error(f"Frames file not found: {frames_path}")
                    sys.exit(1)

                logger.info(f"Replaying frames from {frames_path}")
                count = replay(pipeline, frames_path, args.print_results)
                logger.info(f"Replayed {count} frames")

                stats = pipeline.engine.get_cycle_statistics()
                if stats is not None:
                    logger.info(
                        f"Cycles: {stats.total_cycles}, avg {stats.avg_cycle_time:.2f}, "
                        f"VA ratio {stats.va_ratio:.1f}%"
                    )

            if args.api:
                import uvicorn
                from workstudy.api.server import create_api_server

                api_server = create_api_server(pipeline, port=args.api_port)
                logger.info(f"API server starting on port {args.api_port}")
                uvicorn.run(api_server, host="0.0.0.0", port=args.api_port)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")

    except Exception as e:
        logger.error(f"Error during replay: {e}")
        sys.exit(1)

    finally:
        logger.info("Replay completed")


if __name__ == "__main__":
    main()
