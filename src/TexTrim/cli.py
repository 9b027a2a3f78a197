"""Command-line interface for the texture optimizer."""

import argparse
import logging
import os
import signal
import sys

from tqdm import tqdm

from .config import PipelineConfig, QUALITY_PRESETS, SUPPORTED_GAMES
from .core import default_log_path, setup_logging
from .errors import CacheError, ConfigError

logger = logging.getLogger("texture_optimizer")

EXIT_OK = 0
EXIT_FAILURES = 1
EXIT_CONFIG = 2
EXIT_CANCELLED = 130


class ProgressBar:
    """Render `ProgressEvent`s with a tqdm bar."""

    def __init__(self, disable: bool = False):
        self._bar = None
        self._disable = disable

    def __call__(self, event):
        if self._bar is None:
            self._bar = tqdm(total=event.total, desc="Optimizing", unit="tex",
                             disable=self._disable)
        self._bar.update(event.completed - self._bar.n)
        self._bar.set_postfix(errors=len(event.errors), refresh=False)

    def close(self):
        if self._bar is not None:
            self._bar.close()
            self._bar = None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="TexTrim",
        description="Resolve a mod setup into one texture set and recompress it",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  TexTrim --data-root "C:/Games/Skyrim/Data" --profile profiles/Default/modlist.txt
  TexTrim --config textrim.yaml --preset performance
  TexTrim --config textrim.yaml --dry-run
  TexTrim --generate-config
  TexTrim --config textrim.yaml --reset-cache

Exit codes: 0 complete, 1 failures, 2 configuration error, 130 cancelled.
        """
    )
    parser.add_argument("--config", "-c", help="Path to config YAML")
    parser.add_argument("--data-root", "-d", help="Game Data directory")
    parser.add_argument("--profile", "-p", help="YAML profile or MO2 modlist.txt")
    parser.add_argument("--mods-dir", help="Directory holding one folder per mod")
    parser.add_argument("--output", "-o", help="Output directory")
    parser.add_argument("--game", choices=SUPPORTED_GAMES, help="Exclusion rule set")
    parser.add_argument("--preset", choices=sorted(QUALITY_PRESETS))
    parser.add_argument("--workers", type=int, help="Max parallel converter processes")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--no-cache", action="store_true",
                        help="Neither read nor write the completion cache")
    parser.add_argument("--no-progress", action="store_true", help="Hide the progress bar")
    parser.add_argument("--generate-config", action="store_true",
                        help="Generate default config.yaml")
    parser.add_argument("--reset-cache", action="store_true",
                        help="Clear the completion cache and reprocess everything")
    parser.add_argument("--log-level",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    return parser


def _apply_overrides(config: PipelineConfig, args) -> None:
    if args.data_root:
        config.data_root = args.data_root
    if args.profile:
        config.profile_path = args.profile
    if args.mods_dir:
        config.mods_dir = args.mods_dir
    if args.output:
        config.output_dir = args.output
    if args.game:
        config.exclusions.game = args.game
    if args.preset:
        config.optimize.preset = args.preset
    if args.workers is not None:
        config.optimize.max_workers = args.workers
    if args.dry_run:
        config.dry_run = True
    if args.no_cache:
        config.cache.enabled = False
    if args.log_level:
        config.log_level = args.log_level


def main(argv=None):
    """Parse CLI arguments, run the pipeline, and exit with its status."""
    args = build_parser().parse_args(argv)

    if args.generate_config:
        config = PipelineConfig()
        dest = args.config or "config.yaml"
        if os.path.isdir(dest):
            dest = os.path.join(dest, "config.yaml")
        config.to_yaml(dest)
        print(f"Generated default {dest}")
        return EXIT_OK

    # Early warnings from from_yaml() must reach stderr before the
    # file-based logging is configured.
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s: %(message)s")

    try:
        if args.config:
            if not os.path.exists(args.config):
                raise ConfigError(f"Config file not found: {args.config}")
            config = PipelineConfig.from_yaml(args.config)
        else:
            config = PipelineConfig()
        _apply_overrides(config, args)
        config.validate()
    except ConfigError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)

    os.makedirs(config.output_dir, exist_ok=True)
    setup_logging(config.log_level, default_log_path(config.output_dir))

    from .pipeline import TexturePipeline
    progress = ProgressBar(disable=args.no_progress)
    pipeline = TexturePipeline(config, observer=progress)

    if args.reset_cache:
        pipeline.reset_cache()
        logger.info("Completion cache cleared -- all textures will be reprocessed.")

    def _sigterm_handler(signum, frame):
        logger.warning("Received SIGTERM. Finishing running conversions...")
        pipeline.request_cancel()

    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _sigterm_handler)

    try:
        summary = pipeline.run()
    except ConfigError as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(EXIT_CONFIG)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        pipeline.request_cancel()
        scheduler = pipeline.scheduler
        if scheduler is not None and scheduler.cache is not None:
            try:
                scheduler.cache.save()
                logger.info("Cache saved. Resume by re-running the same command.")
            except CacheError as exc:
                logger.error("Failed to save cache on interrupt: %s", exc)
        sys.exit(EXIT_CANCELLED)
    finally:
        progress.close()

    print(summary.describe())
    if summary.cancelled:
        sys.exit(EXIT_CANCELLED)
    if not summary.is_complete:
        sys.exit(EXIT_FAILURES)
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
