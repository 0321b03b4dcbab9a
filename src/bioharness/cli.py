import sys
import argparse
from pathlib import Path
from typing import Optional, List
import structlog

from . import config
from .actions import ACTIONS, TemplateAction
from .data_models import GalleryType
from .exceptions import HarnessError
from .harness import HarnessResult, ValidationHarness
from .plugin_contract import load_implementation
from .utils import configure_logging

# Initialize structured logger
logger = structlog.get_logger(__name__)


class HarnessCLI:
    """Command-line interface for the BIOHARNESS validation system."""

    def __init__(self) -> None:
        self.parser = self._create_argument_parser()

    def _create_argument_parser(self) -> argparse.ArgumentParser:
        """Creates the argument parser for the CLI."""
        parser = argparse.ArgumentParser(
            prog="bioharness",
            description="BIOHARNESS - Biometric Implementation Validation Harness",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )

        common = argparse.ArgumentParser(add_help=False)
        common.add_argument(
            "-c",
            "--config-dir",
            type=Path,
            default=config.CONFIG_DIR,
            help=f"Read-only implementation configuration directory. Default: {config.CONFIG_DIR}",
        )
        common.add_argument(
            "--implementation",
            default=config.IMPLEMENTATION,
            help="Implementation to load, as 'module:factory'.",
        )
        common.add_argument(
            "--gallery-type",
            choices=[t.name.lower() for t in GalleryType],
            default=config.GALLERY_TYPE,
            help="Gallery composition passed to finalize. Default: %(default)s.",
        )
        common.add_argument(
            "--log-level",
            default=config.LOG_LEVEL,
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            help="Diagnostic log level. Default: %(default)s.",
        )

        subparsers = parser.add_subparsers(dest="command", required=True)
        for name, action in ACTIONS.items():
            self._add_action_command(subparsers, name, action, common)
        self._add_finalize_command(subparsers, common)

        return parser

    def _add_action_command(self, subparsers, name: str, action, common) -> None:
        """Add one validation action and its arguments."""
        action_parser = subparsers.add_parser(
            name, parents=[common], help=f"Run the {name} validation action."
        )
        action_parser.add_argument(
            "-o",
            "--output-dir",
            type=Path,
            default=config.OUTPUT_DIR,
            help=f"Directory for shard files and logs. Default: {config.OUTPUT_DIR}",
        )
        action_parser.add_argument(
            "-i",
            "--input-file",
            type=Path,
            required=True,
            help="Consolidated input file, one work item per line. Deleted once split.",
        )
        action_parser.add_argument(
            "-t",
            "--num-workers",
            type=int,
            default=config.NUM_WORKERS,
            help="Number of worker processes. Default: %(default)s.",
        )
        action_parser.add_argument(
            "-e",
            "--enroll-dir",
            type=Path,
            default=config.ENROLL_DIR if isinstance(action, TemplateAction) else None,
            help="Enrollment directory (1:N actions only).",
        )
        action_parser.add_argument(
            "-k",
            "--top-k",
            type=int,
            default=config.TOP_K,
            help="Candidates per search (search actions only). Default: %(default)s.",
        )
        action_parser.add_argument(
            "--config-value",
            default=config.CONFIG_VALUE,
            help="Free-form value passed to initialize().",
        )

    def _add_finalize_command(self, subparsers, common) -> None:
        """Add the 'finalize' command and its arguments."""
        finalize_parser = subparsers.add_parser(
            "finalize",
            parents=[common],
            help="Finalize the enrollment gallery. Runs once per gallery.",
        )
        finalize_parser.add_argument(
            "-e",
            "--enroll-dir",
            type=Path,
            default=config.ENROLL_DIR,
            help=f"Enrollment directory. Default: {config.ENROLL_DIR}",
        )

    def _execute(self, args: argparse.Namespace) -> int:
        """Load the implementation and run the requested command."""
        configure_logging(args.log_level, config.STRUCTURED_LOGGING, config.LOG_FILE)
        logger.debug("Configuration loaded", **config.get_config_summary())

        try:
            implementation = load_implementation(args.implementation)

            if args.command == "finalize":
                harness = ValidationHarness(
                    implementation,
                    config_dir=args.config_dir,
                    output_dir=config.OUTPUT_DIR,
                    enrollment_dir=args.enroll_dir,
                )
                result = harness.finalize(GalleryType.from_name(args.gallery_type))
            else:
                harness = ValidationHarness(
                    implementation,
                    config_dir=args.config_dir,
                    output_dir=args.output_dir,
                    enrollment_dir=args.enroll_dir,
                    num_workers=args.num_workers,
                    top_k=args.top_k,
                    config_value=args.config_value,
                    crash_retries=config.CRASH_RETRIES,
                    keep_shards=config.KEEP_SHARDS,
                )
                result = harness.run(args.command, args.input_file)

            self._display_summary(result)
            return result.exit_code

        except HarnessError as e:
            logger.error("Validation aborted", **e.to_dict())
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1
        except ValueError as e:
            logger.error("Invalid arguments", error=str(e))
            print(f"\n[ERROR] {e}", file=sys.stderr)
            return 1

    def _display_summary(self, result: HarnessResult) -> None:
        """Display a summary of the run."""
        print("\n" + "=" * 80)
        print(f"BIOHARNESS - {result.action.upper()}")
        print("=" * 80)
        print(f"Run ID: {result.run_id}")
        print(f"Exit code: {result.exit_code}")
        if result.verdict is not None:
            print(f"Workers: {result.verdict.value}")
        if result.report is not None:
            report = result.report
            print(f"Items logged: {report.logged} of {report.expected}")
            if not report.passed:
                print(f"  Missing: {len(report.missing)}")
                print(f"  Duplicated: {len(report.duplicated)}")
                print(f"  Unexpected: {len(report.unexpected)}")
            for code, count in report.return_code_counts().items():
                print(f"  {code}: {count}")
        if result.log_path is not None:
            print(f"Log written to: {result.log_path}")
        if result.message:
            print(f"Note: {result.message}")
        print("=" * 80)

    def run_from_args(self, args_list: Optional[List[str]] = None) -> int:
        """Run the CLI with provided arguments."""
        try:
            args = self.parser.parse_args(args_list)
            return self._execute(args)
        except KeyboardInterrupt:
            print("\nOperation cancelled by user.", file=sys.stderr)
            return 130


def main() -> int:
    """Main entry point for the CLI."""
    cli = HarnessCLI()
    return cli.run_from_args()


if __name__ == "__main__":
    sys.exit(main())
