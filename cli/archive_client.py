"""CLI for archiving datasets and retrieving archived files."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from archiver.config import Settings, get_settings
from archiver.events import LoggingObserver
from archiver.exceptions import ArchiveError, CriticalArchiveError
from archiver.services.archive_service import ArchiveRequest, ArchiveTask
from archiver.services.download_service import ArchiveDownloader, DownloadLayout, OverwriteMode
from archiver.services.inventory_service import scan_dataset
from archiver.services.manifest_service import UploadMetadata, build_manifest
from archiver.services.remote_inventory_service import RemoteInventoryClient
from archiver.services.status_service import IngestStatusPoller
from archiver.services.upload_service import ArchiveUploader
from archiver.transport.http_client import ArchiveTransport

logger = logging.getLogger(__name__)


def _metadata_from_args(args: argparse.Namespace) -> UploadMetadata:
    return UploadMetadata(
        dataset_id=args.dataset_id or 0,
        data_package_id=args.data_package_id or 0,
        dataset_name=args.dataset_name or "",
        instrument_name=args.instrument or "",
        instrument_id=args.instrument_id or 0,
        project_id=args.project_id or "",
        operator_id=args.operator_id or 0,
        users_of_record=list(args.user_of_record or []),
    )


def _add_metadata_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--dataset-id", type=int, help="Dataset ID")
    parser.add_argument("--data-package-id", type=int, help="Data package ID")
    parser.add_argument("--dataset-name", help="Dataset name")
    parser.add_argument("--instrument", help="Instrument name")
    parser.add_argument("--instrument-id", type=int, help="Archive instrument ID")
    parser.add_argument("--project-id", help="Archive project ID")
    parser.add_argument("--operator-id", type=int, help="Submitting user ID")
    parser.add_argument(
        "--user-of-record", type=int, action="append", help="User of record (repeatable)"
    )


def cmd_upload(args: argparse.Namespace, settings: Settings, transport: ArchiveTransport) -> int:
    request = ArchiveRequest(
        source_dir=Path(args.dir).resolve(),
        metadata=_metadata_from_args(args),
        expected_remote_count=args.expected_count,
        subdir_filter=args.subdir or "",
        recurse=not args.no_recurse,
        ignore_max_file_limit=args.ignore_max_files,
        ignore_tracking_mismatch=args.ignore_tracking_mismatch,
        skip_policy_check=args.skip_policy_check,
    )
    result = ArchiveTask(transport, settings, LoggingObserver()).run(request)
    if result.job_id > 0:
        print(f"Ingest job {result.job_id}: {result.status_url}")
    print(result.message or ("Upload complete" if result.success else "Upload failed"))
    return 0 if result.success else 1


def cmd_tar(args: argparse.Namespace, settings: Settings, transport: ArchiveTransport) -> int:
    inventory = scan_dataset(
        Path(args.dir).resolve(),
        recurse=not args.no_recurse,
        max_files=settings.max_files_to_archive,
        ignore_max_file_limit=args.ignore_max_files,
        large_dataset_threshold_gb=settings.large_dataset_threshold_gb,
    )
    manifest = build_manifest(_metadata_from_args(args), inventory.files)
    written = ArchiveUploader(transport, settings).write_local_tar(manifest, Path(args.output))
    print(f"Wrote {len(inventory.files)} files ({written} bytes) to {args.output}")
    return 0


def cmd_status(args: argparse.Namespace, settings: Settings, transport: ArchiveTransport) -> int:
    poller = IngestStatusPoller(transport, settings)
    job = int(args.job) if args.job.isdigit() else args.job
    if args.wait:
        report = poller.wait(job, poll_seconds=args.interval)
    else:
        report = poller.check(job)
    status = report.status
    print(f"Job {status.job_id}: {status.state or 'unknown'}")
    print(f"  Task:     {status.task}")
    print(f"  Percent:  {status.task_percent:.1f}")
    print(f"  Steps:    {report.steps} of 7")
    print(f"  {report.message}")
    return 0 if report.succeeded else 1


def cmd_download(args: argparse.Namespace, settings: Settings, transport: ArchiveTransport) -> int:
    remote = RemoteInventoryClient(transport, settings)
    if args.dataset_id:
        versions = remote.files_for_keyvalue("omics.dms.dataset_id", args.dataset_id)
    elif args.data_package_id:
        versions = remote.files_for_keyvalue("omics.dms.datapackage_id", args.data_package_id)
    else:
        print("Error: --dataset-id or --data-package-id required")
        return 1

    grouped = remote.group_versions(versions, args.subdir or "")
    latest = [max(group, key=lambda v: v.file_id) for group in grouped.values() if group]
    result = ArchiveDownloader(transport, settings).download(
        latest,
        Path(args.dest).resolve(),
        layout=DownloadLayout(args.layout),
        overwrite=OverwriteMode(args.overwrite),
        dataset_name=args.dataset_name or "",
    )
    for path in result.downloaded:
        print(f"  Download: {path}")
    for path, error in result.failed.items():
        print(f"  FAILED: {path} ({error})")
    return 0 if result.success else 1


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="archiver",
        description="Archive instrument datasets and retrieve archived files",
    )
    parser.add_argument("--test-instance", action="store_true", help="Use the test services")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    upload = subparsers.add_parser("upload", help="Archive new and changed files")
    upload.add_argument("--dir", "-d", required=True, help="Dataset directory")
    upload.add_argument("--subdir", help="Only compare against this archived subdirectory")
    upload.add_argument(
        "--expected-count", type=int, default=0, help="Files the tracking database expects"
    )
    upload.add_argument("--no-recurse", action="store_true", help="Skip subdirectories")
    upload.add_argument("--ignore-max-files", action="store_true", help="Allow over 500 files")
    upload.add_argument(
        "--ignore-tracking-mismatch",
        action="store_true",
        help="Continue when the archive holds far fewer files than expected",
    )
    upload.add_argument("--skip-policy-check", action="store_true", help="Skip policy validation")
    _add_metadata_arguments(upload)

    tar = subparsers.add_parser("tar", help="Write the upload tar to a local file")
    tar.add_argument("--dir", "-d", required=True, help="Dataset directory")
    tar.add_argument("--output", "-o", required=True, help="Tar file to write")
    tar.add_argument("--no-recurse", action="store_true", help="Skip subdirectories")
    tar.add_argument("--ignore-max-files", action="store_true", help="Allow over 500 files")
    _add_metadata_arguments(tar)

    status = subparsers.add_parser("status", help="Show the state of an ingest job")
    status.add_argument("job", help="Job ID or status URL")
    status.add_argument("--wait", action="store_true", help="Poll until the job finishes")
    status.add_argument("--interval", type=float, default=30.0, help="Seconds between checks")

    download = subparsers.add_parser("download", help="Download archived files")
    download.add_argument("--dest", required=True, help="Destination directory")
    download.add_argument("--dataset-id", type=int, help="Dataset ID")
    download.add_argument("--data-package-id", type=int, help="Data package ID")
    download.add_argument("--dataset-name", help="Folder name for the dataset layout")
    download.add_argument("--subdir", help="Only download this subdirectory")
    download.add_argument(
        "--layout", choices=[m.value for m in DownloadLayout], default=DownloadLayout.SINGLE_DATASET
    )
    download.add_argument(
        "--overwrite", choices=[m.value for m in OverwriteMode], default=OverwriteMode.IF_CHANGED
    )

    args = parser.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "upload": cmd_upload,
        "tar": cmd_tar,
        "status": cmd_status,
        "download": cmd_download,
    }
    if args.command not in commands:
        parser.print_help()
        return

    settings = get_settings()
    if args.test_instance:
        settings = settings.model_copy(update={"use_test_instance": True})
    try:
        settings.validate_runtime()
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        with ArchiveTransport(settings) as transport:
            exit_code = commands[args.command](args, settings, transport)
    except CriticalArchiveError as exc:
        logger.error("Critical error: %s", exc)
        sys.exit(2)
    except ArchiveError as exc:
        logger.error("%s", exc)
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
