"""
Command line entry point.

USAGE:
    update-homebrew-tap validate-binary --archive-url URL --expected-sha256 HASH
    update-homebrew-tap update-formula --version V --binary-url URL --sha256 HASH
    update-homebrew-tap release --version V --binary-url URL --sha256 HASH

EXIT CODES:
    0 - Success
    1 - Backup, patch or unexpected failure
    2 - Invalid arguments
    3 - Download failed
    4 - Formula validation failed
    5 - Size or checksum check failed
    6 - Git commit/push failed
"""

import argparse
import logging
import os
import sys
from pathlib import Path

import requests

from update_homebrew_tap import __version__
from update_homebrew_tap.checksums import ReleaseChecksums
from update_homebrew_tap.config import Settings, run_reference
from update_homebrew_tap.download import Downloader, build_session
from update_homebrew_tap.errors import FailureReport, TapUpdateError
from update_homebrew_tap.git import GitRepository
from update_homebrew_tap.logging_config import setup_logging
from update_homebrew_tap.pipeline import run_release
from update_homebrew_tap.release import ReleaseDescriptor
from update_homebrew_tap.updater import FormulaUpdater, UpdateOptions
from update_homebrew_tap.validator import ArtifactValidator

logger = logging.getLogger(__name__)

EXAMPLES = """
EXAMPLES:
    # Validate a release archive
    update-homebrew-tap validate-binary \\
        --archive-url https://github.com/beriberikix/usbipd-mac/archive/v1.2.3.tar.gz \\
        --expected-sha256 <sha256>

    # Preview a formula update without touching files
    update-homebrew-tap update-formula --dry-run \\
        --version v1.2.3 \\
        --binary-url https://github.com/beriberikix/usbipd-mac/releases/download/v1.2.3/usbipd-v1.2.3-macos \\
        --sha256 <sha256>
"""


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug output")
    common.add_argument("-q", "--quiet", action="store_true", help="Only report warnings and errors")
    common.add_argument("--dry-run", action="store_true", help="Check inputs and preview without changes")
    common.add_argument(
        "--failure-report",
        type=Path,
        help="Write a JSON failure record (stage, version, error) here on failure",
    )

    release = argparse.ArgumentParser(add_help=False)
    release.add_argument("--version", dest="release_version", required=True,
                         help="Release version (e.g., v1.2.3)")
    release.add_argument("--binary-url", required=True, help="GitHub binary download URL")
    release.add_argument("--sha256", required=True, help="SHA256 checksum of the binary")
    release.add_argument("--system-ext-url", help="URL of the system extension bundle")
    release.add_argument("--system-ext-sha256", help="SHA256 of the system extension bundle")
    release.add_argument("--formula", type=Path, help="Path to the formula file")
    release.add_argument("--skip-commit", action="store_true", help="Skip git commit after update")
    release.add_argument("--no-rollback", action="store_true",
                         help="Keep the rejected formula if validation fails")
    release.add_argument("--no-push", action="store_true", help="Commit locally without pushing")

    parser = argparse.ArgumentParser(
        prog="update-homebrew-tap",
        description="Validate release artifacts and update the tap's Homebrew formula.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser(
        "validate-binary", parents=[common], help="Download and verify a release artifact"
    )
    validate.add_argument("--archive-url", required=True, help="Archive or release asset URL")
    validate.add_argument("--expected-sha256", required=True, help="Expected SHA256 checksum")
    validate.add_argument("--output-file", type=Path, help="Keep the validated file here")

    subparsers.add_parser(
        "update-formula", parents=[common, release], help="Patch, validate and commit the formula"
    )

    full = subparsers.add_parser(
        "release", parents=[common, release], help="validate-binary followed by update-formula"
    )
    full.add_argument("--output-file", type=Path, help="Keep the validated binary here")
    return parser


def _descriptor(args, settings) -> ReleaseDescriptor:
    return ReleaseDescriptor(
        version=args.release_version,
        binary_url=args.binary_url,
        checksum=args.sha256,
        secondary_url=args.system_ext_url,
        secondary_checksum=args.system_ext_sha256,
        host=settings.trusted_host,
    )


def _options(args) -> UpdateOptions:
    return UpdateOptions(
        dry_run=args.dry_run,
        skip_commit=args.skip_commit,
        rollback=not args.no_rollback,
        push=False if args.no_push else None,
    )


def _updater(settings, session: requests.Session) -> FormulaUpdater:
    return FormulaUpdater(
        settings,
        repository=GitRepository(Path.cwd()),
        checksums=ReleaseChecksums(settings, session),
    )


def _print_outcome(outcome) -> None:
    print(f"\n{'=' * 80}")
    if outcome.diff:
        print(outcome.diff)
    else:
        print("No formula changes.")
    if outcome.report is not None and not outcome.report.ok:
        print(outcome.report.summary())
    print(f"{'=' * 80}")
    print(f"Formula:      {outcome.path}")
    print(f"Version:      {outcome.version}")
    print(f"Result:       {outcome.state.value}")
    if outcome.secondary_checksum:
        print(f"Resource:     sha256 {outcome.secondary_checksum}")
    if outcome.backup_path:
        print(f"Backup:       {outcome.backup_path}")
    if outcome.commit:
        pushed = "pushed" if outcome.pushed else "not pushed"
        print(f"Commit:       {outcome.commit} ({pushed})")


def run(args, settings) -> int:
    session = build_session(settings)

    if args.command == "validate-binary":
        validator = ArtifactValidator(settings, Downloader(settings, session))
        artifact = validator.validate(
            args.archive_url,
            args.expected_sha256,
            dry_run=args.dry_run,
            output_file=args.output_file,
        )
        state = "format checks passed (dry run)" if artifact.dry_run else "validated"
        print(f"{artifact.url}: {state}")
        if artifact.size is not None:
            print(f"  size:   {artifact.size} bytes")
            print(f"  sha256: {artifact.sha256}")
        if artifact.path:
            print(f"  saved:  {artifact.path}")
        return 0

    descriptor = _descriptor(args, settings)
    updater = _updater(settings, session)
    formula = args.formula or settings.formula_path

    if args.command == "update-formula":
        outcome = updater.update(formula, descriptor, _options(args))
    else:
        validator = ArtifactValidator(settings, Downloader(settings, session))
        outcome = run_release(
            settings,
            descriptor,
            _options(args),
            validator=validator,
            updater=updater,
            formula_path=formula,
            output_file=args.output_file,
        ).outcome

    _print_outcome(outcome)
    return 0


def _write_failure_report(args, error: TapUpdateError) -> None:
    if not args.failure_report:
        return
    version = getattr(args, "release_version", "") or ""
    report = FailureReport.from_error(error, version, run_reference())
    try:
        args.failure_report.write_text(report.to_json() + "\n", encoding="utf-8")
    except OSError as exc:
        logger.error("Could not write failure report %s: %s", args.failure_report, exc)
        return
    logger.info("Failure report written to %s", args.failure_report)


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    level = "DEBUG" if args.verbose else "WARNING" if args.quiet else "INFO"
    setup_logging(level)

    try:
        settings = Settings.from_env(os.environ)
        return run(args, settings)
    except TapUpdateError as exc:
        logger.error("%s failed: %s", exc.stage, exc.detail)
        if exc.outcome is not None and exc.outcome.report is not None:
            print(exc.outcome.report.summary(), file=sys.stderr)
        _write_failure_report(args, exc)
        return exc.exit_code
    except Exception as exc:
        logger.error("Unexpected error: %s", exc)
        logger.debug("Traceback", exc_info=True)
        _write_failure_report(args, TapUpdateError(f"Unexpected error: {exc}"))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
