"""Command line interface for media_uploader package."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Optional, Sequence, Tuple

from rich.logging import RichHandler

from . import __version__
from .cli_progress import UploadProgressDisplay, render_configuration_summary
from .errors import UploadError
from .models import UploadConfig, UploadKind, UploadResult, UploadStatus
from .orchestrator import UploadOrchestrator
from .protocols import IRecordRepository, IUploadSessionLog
from .services.api_client import HTTPAPIClient
from .services.records import RestRecordRepository
from .services.session_log import InMemoryUploadSessionLog, RestUploadSessionLog
from .utils.events import EventEmitter


class CLIError(RuntimeError):
    """Raised when CLI validation/execution fails."""


def _setup_logging(debug: bool, silent: bool, log_level: Optional[str]) -> str:
    """
    Configure logging.

    Default behavior is silent unless --debug or --log-level is provided.
    Returns a string describing effective mode.
    """
    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    logging.disable(logging.NOTSET)

    if silent or (not debug and not log_level):
        logging.disable(logging.CRITICAL)
        root_logger.setLevel(logging.CRITICAL + 1)
        return "silent"

    if debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, log_level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=True,
        markup=False,
        show_time=False,
        show_path=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    return logging.getLevelName(level)


def _strip_optional_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]
    return value


def _load_env_file(path: Path, override: bool = False) -> None:
    if not path.exists():
        raise CLIError(f"env file not found: {path}")
    if not path.is_file():
        raise CLIError(f"env path is not a file: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise CLIError(f"could not read env file {path}: {exc}") from exc

    for raw_line in content.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        if "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue

        value = _strip_optional_quotes(value.strip())
        if override or key not in os.environ:
            os.environ[key] = value


def _resolve_default_env_file() -> Optional[Path]:
    default_env = Path(".env")
    return default_env if default_env.exists() and default_env.is_file() else None


def _resolve_mode(args: argparse.Namespace) -> str:
    if args.sector and (args.record or args.thumbnail or args.thumbnail_only):
        raise CLIError("--sector cannot be combined with --record/--thumbnail/--thumbnail-only")
    if args.thumbnail_only and not args.record:
        raise CLIError("--thumbnail-only needs --record")
    if args.thumbnail and not args.record:
        raise CLIError("--thumbnail needs --record")
    if args.thumbnail and args.thumbnail_only:
        raise CLIError("--thumbnail cannot be combined with --thumbnail-only")
    if args.retry < 0:
        raise CLIError("--retry must be >= 0")
    if args.sector:
        return "sector"
    if args.record:
        return "record"
    return "video"


async def _build_collaborators(
    config: UploadConfig,
    stack: AsyncExitStack,
) -> Tuple[IUploadSessionLog, Optional[IRecordRepository]]:
    if not config.datastore_api_url:
        return InMemoryUploadSessionLog(config.dedup_window), None
    api = await stack.enter_async_context(
        HTTPAPIClient(config.datastore_api_url, api_key=config.datastore_api_key)
    )
    return RestUploadSessionLog(api, config.dedup_window), RestRecordRepository(api)


async def _run_single(
    orchestrator: UploadOrchestrator,
    source: Path,
    kind: UploadKind,
    sector_id: Optional[str],
) -> int:
    display = UploadProgressDisplay()
    events = EventEmitter()
    events.on("progress", display.on_progress_event)
    display.add_leg(kind, source.name)
    display.start()
    try:
        if kind is UploadKind.IMAGE:
            result: UploadResult = await orchestrator.upload_sector_image(source, sector_id, events=events)
        else:
            result = await orchestrator.upload_video(source, events=events)
    finally:
        display.stop()
    display.on_result(result)
    return 0 if result.success else 1


async def _run_record(
    orchestrator: UploadOrchestrator,
    record_id: str,
    video: Optional[Path],
    thumbnail: Optional[Path],
    retries: int,
) -> int:
    display = UploadProgressDisplay()
    process = orchestrator.upload_record(record_id, video=video, thumbnail=thumbnail)
    for kind, leg in process.legs.items():
        display.add_leg(kind, leg.path.name)
    process.on_start(display.start)
    process.on_progress(display.on_progress)
    process.on_leg_complete(display.on_leg_complete)
    process.on_leg_fail(display.on_leg_fail)
    process.on_finish(display.on_finish)
    process.on_error(display.on_error)

    try:
        result = await process.wait()
        attempt = 0
        while result.status != UploadStatus.SUCCESS and attempt < retries:
            attempt += 1
            print(f"Retrying failed legs ({attempt}/{retries})...", file=sys.stderr)
            result = await process.retry()
    finally:
        display.stop()
    return 0 if result.success else 1


async def _run_upload(args: argparse.Namespace, source: Path, mode: str) -> int:
    config = UploadConfig.from_env()
    async with AsyncExitStack() as stack:
        session_log, records = await _build_collaborators(config, stack)
        try:
            orchestrator = await stack.enter_async_context(
                UploadOrchestrator(config, session_log=session_log, records=records)
            )
        except ValueError as exc:
            raise CLIError(str(exc)) from exc

        try:
            if mode == "sector":
                return await _run_single(orchestrator, source, UploadKind.IMAGE, args.sector)
            if mode == "video":
                return await _run_single(orchestrator, source, UploadKind.VIDEO, None)
            if args.thumbnail_only:
                return await _run_record(orchestrator, args.record, None, source, args.retry)
            thumbnail = Path(args.thumbnail).expanduser() if args.thumbnail else None
            return await _run_record(orchestrator, args.record, source, thumbnail, args.retry)
        except UploadError as exc:
            raise CLIError(str(exc)) from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="media-up",
        description="Compress and upload a video, thumbnail or sector image.",
    )
    parser.add_argument("source", nargs="?", type=Path, help="Video, thumbnail or sector image path")
    parser.add_argument("-t", "--thumbnail", type=Path, default=None, help="Thumbnail uploaded alongside the video")
    parser.add_argument("-r", "--record", default=None, help="Record (boulder) id the media belongs to")
    parser.add_argument("-s", "--sector", default=None, help="Upload SOURCE as the image of this sector")
    parser.add_argument(
        "--thumbnail-only",
        action="store_true",
        help="SOURCE is a thumbnail for --record (no video)",
    )
    parser.add_argument(
        "--retry",
        type=int,
        default=0,
        help="Retry failed legs of a record upload up to N times",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Load environment variables from this .env file",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logs")
    parser.add_argument("--silent", action="store_true", help="Only print errors")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Explicit log level (DEBUG/INFO/WARNING/ERROR)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"media-up {__version__}",
    )
    return parser


def run_cli(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    used_env_file = args.env_file or _resolve_default_env_file()
    if used_env_file is not None:
        try:
            _load_env_file(Path(used_env_file))
        except CLIError as exc:
            print(f"ERROR: {exc}", file=sys.stderr)
            return 1

    effective_log_mode = _setup_logging(
        debug=args.debug,
        silent=args.silent,
        log_level=args.log_level,
    )

    if args.source is None:
        parser.print_help()
        return 0

    source = Path(args.source).expanduser()
    if not source.is_file():
        print(f"ERROR: source is not a file: {source}", file=sys.stderr)
        return 1

    try:
        mode = _resolve_mode(args)
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1

    config = UploadConfig.from_env()
    backend = "direct storage" if config.use_direct_storage else "chunked API"
    render_configuration_summary(
        {
            "Source": str(source),
            "Mode": "thumbnail" if args.thumbnail_only else mode,
            "Record": args.record or "-",
            "Sector": args.sector or "-",
            "Thumbnail": str(args.thumbnail) if args.thumbnail else "-",
            "Backend": backend,
            "Upload API": config.upload_api_url or "(missing)",
            "Storage": config.storage_url or "-",
            "Datastore API": config.datastore_api_url or "(in-memory session log)",
            "Retries": args.retry,
            "Env File": str(used_env_file) if used_env_file else "-",
            "Logging": effective_log_mode,
        }
    )

    try:
        return asyncio.run(_run_upload(args, source, mode))
    except CLIError as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Cancelled.", file=sys.stderr)
        return 130


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
