"""
CLI interface for studyarchiver.

Provides commands: run, verify, ls.
"""

import json
import sys
from dataclasses import replace
from pathlib import Path

import click
from dotenv import load_dotenv

from studyarchiver import __version__
from studyarchiver.config import ConfigError, load_config
from studyarchiver.listing import list_directory
from studyarchiver.pipeline import ArchivePipeline, PassResult
from studyarchiver.storage import GCSObjectStore, RetryingObjectStore
from studyarchiver.utils import (
    format_duration,
    print_banner,
    print_error,
    print_info,
    print_success,
    print_warning,
    setup_logging,
)


def _bucket_options(func):
    """Shared --config/--*-bucket options."""
    options = [
        click.option(
            "--config",
            "config_path",
            type=click.Path(exists=True, path_type=Path),
            help="Archiver configuration file (YAML)",
        ),
        click.option("--sim-bucket", help="Source bucket holding staged studies"),
        click.option("--study-bucket", help="Destination bucket for study archives"),
        click.option("--lock-bucket", help="Bucket holding study lock markers"),
        click.option("--progress", is_flag=True, help="Emit per-stage progress events"),
        click.option("--verbose", is_flag=True, help="Enable debug logging"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_pipeline(config_path, sim_bucket, study_bucket, lock_bucket, progress, verbose) -> ArchivePipeline:
    config = load_config(config_path, sim=sim_bucket, study=study_bucket, lock=lock_bucket)
    if progress and not config.progress:
        config = replace(config, progress=True)

    setup_logging(
        config.get_log_file_path(),
        "DEBUG" if verbose else config.get_log_level(),
        config.get_log_format(),
        config.should_log_to_console(),
    )
    return ArchivePipeline.from_config(config)


def _print_summary(result: PassResult) -> None:
    counts = result.to_dict()["counts"]
    print_info(
        f"{counts['discovered']} discovered, {counts['verified']} verified, "
        f"{counts['not_ready']} not ready, {counts['verification_failed']} failed verification"
    )
    for archive in result.archives:
        if archive.success:
            print_success(f"{archive.study} -> {archive.archive_path}")
        else:
            print_error(f"{archive.study}: {archive.error}")
    if result.error_message:
        print_error(f"Pass failed: {result.error_message}")


@click.group()
@click.version_option(version=__version__, prog_name="studyarchiver")
def main():
    """
    studyarchiver - archive verified simulation studies.

    Discovers studies in the sim bucket, verifies their md5 manifests,
    zips verified studies into the study bucket and deletes the originals.
    """
    load_dotenv()


@main.command()
@_bucket_options
def run(config_path, sim_bucket, study_bucket, lock_bucket, progress, verbose):
    """
    Run one archival pass.

    Examples:

      # Buckets from a config file
      studyarchiver run --config archiver.yaml

      # Buckets from the command line
      studyarchiver run --sim-bucket sims --study-bucket studies --lock-bucket locks
    """
    try:
        pipeline = _build_pipeline(config_path, sim_bucket, study_bucket, lock_bucket, progress, verbose)
    except ConfigError as e:
        print_error(f"Configuration invalid: {e}")
        sys.exit(2)

    print_banner(f"studyarchiver pass: gs://{pipeline.buckets.sim}")
    result = pipeline.run_pass()
    _print_summary(result)

    if result.success:
        print_success(f"Pass completed in {format_duration(result.duration_seconds)}")
        sys.exit(0)
    print_warning(f"Pass completed with {result.failures} failure(s)")
    sys.exit(1)


@main.command()
@_bucket_options
@click.option("--json", "as_json", is_flag=True, help="Print the verification results as JSON")
def verify(config_path, sim_bucket, study_bucket, lock_bucket, progress, verbose, as_json):
    """
    Verify studies without archiving anything.
    """
    try:
        pipeline = _build_pipeline(config_path, sim_bucket, study_bucket, lock_bucket, progress, verbose)
    except ConfigError as e:
        print_error(f"Configuration invalid: {e}")
        sys.exit(2)

    try:
        result = pipeline.find_verified_studies()
    except Exception as e:
        print_error(f"Verification failed: {e}")
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([v.to_dict() for v in result.verifications], indent=2))
    else:
        for v in result.verifications:
            click.echo(f"{v.status.value:<10} {v.study}")
    sys.exit(0 if result.verification_failed_count == 0 else 1)


@main.command(name="ls")
@click.argument("bucket")
@click.option("--prefix", help="Only list objects under this prefix")
def ls_command(bucket, prefix):
    """
    List objects in a bucket.
    """
    store = RetryingObjectStore(GCSObjectStore())
    try:
        listing = list_directory(store, bucket, prefix)
    except Exception as e:
        print_error(f"Could not list gs://{bucket}: {e}")
        sys.exit(1)
    for path, entry in listing.items():
        click.echo(f"{entry.metadata.get('size', '')!s:>12}  {path}")


if __name__ == "__main__":
    main()
