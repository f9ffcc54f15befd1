#!/usr/bin/env python3
"""
CBZ Converter - Converts folders of images to CBZ comic book archives

Every immediate subfolder of an input directory becomes one CBZ (Comic Book Zip)
file in the output directory. Files are classified by their content, not their
extension, so only real images end up in the archive.

Features:
- Content-type detection from the first 512 bytes of each file
- Recursive folder scanning with deterministic (lexicographic) page order
- Deflate-compressed archives preserving the folder structure
- Bounded pool of worker threads fed from a shared job queue
- Existing CBZ files are never overwritten, so re-runs are safe
- Colored, leveled console output and a final summary
"""

import argparse
import os
import queue
import sys
import threading
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

import magic
from rich.console import Console
from rich.text import Text

__version__ = "1.0.0"

DEFAULT_THREADS = 4
SNIFF_LENGTH = 512
MAX_NAME_LENGTH = 60

console = Console(highlight=False)

LEVEL_STYLES = {
    "INFO": "blue",
    "OK": "green",
    "WARN": "yellow",
    "ERROR": "red",
}


def configure_console(no_color: bool = False) -> None:
    """Recreate the shared console, optionally without colors"""
    global console
    console = Console(highlight=False, no_color=no_color)


def _log(level: str, message: str) -> None:
    # Undecodable file names arrive as lone surrogates, which no stream can encode
    message = message.encode("utf-8", "backslashreplace").decode("utf-8")
    # Text.assemble keeps file names with brackets from being read as markup
    line = Text.assemble((f"[{level}]", LEVEL_STYLES[level]), " ", message)
    console.print(line, soft_wrap=True)


def log_info(message: str) -> None:
    _log("INFO", message)


def log_ok(message: str) -> None:
    _log("OK", message)


def log_warning(message: str) -> None:
    _log("WARN", message)


def log_error(message: str) -> None:
    _log("ERROR", message)


def truncate_string(text: str, max_len: int) -> str:
    """Shorten text to max_len characters, marking the cut with an ellipsis"""
    if len(text) <= max_len:
        return text
    if max_len <= 3:
        return text[:max_len]
    return text[:max_len - 3] + "..."


# Content type detection

def content_type_from_header(header: bytes) -> str:
    """Derive a MIME type from the leading bytes of a file using libmagic"""
    return magic.from_buffer(header, mime=True)


def detect_content_type(path) -> str:
    """
    Read up to the first 512 bytes of a file and return its MIME type.
    Raises OSError if the file can't be opened or read.
    """
    with open(path, "rb") as f:
        header = f.read(SNIFF_LENGTH)
    return content_type_from_header(header)


def is_image_mime(mime_type: str) -> bool:
    """Any image/* type counts as a page"""
    return mime_type.startswith("image/")


@dataclass(frozen=True)
class FileClassification:
    """Outcome of classifying one file

    mime_type is None when the header could not be read. Such files are
    kept in the archive rather than silently dropped.
    """
    path: Path
    mime_type: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_unknown(self) -> bool:
        return self.mime_type is None

    @property
    def is_image(self) -> bool:
        return self.mime_type is not None and is_image_mime(self.mime_type)

    @property
    def include(self) -> bool:
        return self.is_image or self.is_unknown


def classify_file(path) -> FileClassification:
    """Classify a file, turning read and libmagic errors into an unknown classification"""
    path = Path(path)
    try:
        return FileClassification(path, detect_content_type(path))
    except (OSError, magic.MagicException) as e:
        return FileClassification(path, error=str(e))


# Directory scanning

@dataclass
class DirectoryContents:
    """Files found under a folder, split by content type"""
    image_files: List[Path] = field(default_factory=list)
    non_image_files: List[str] = field(default_factory=list)
    unclassified: List[Path] = field(default_factory=list)

    @property
    def excluded_count(self) -> int:
        return len(self.non_image_files)


def _raise_walk_error(error: OSError) -> None:
    raise error


def scan_directory(root) -> DirectoryContents:
    """
    Recursively scan a folder and partition its files into images and non-images.

    Image paths are sorted by full path and non-image names by base name, so
    page order doesn't depend on filesystem enumeration order. Files whose type
    can't be determined are included as images and reported with a warning.
    Traversal errors are raised to the caller.
    """
    contents = DirectoryContents()

    for dirpath, _dirnames, filenames in os.walk(root, onerror=_raise_walk_error):
        for name in filenames:
            result = classify_file(Path(dirpath) / name)
            if result.is_unknown:
                log_warning(f"Could not determine file type for {name}, including in archive")
                contents.unclassified.append(result.path)
            if result.include:
                contents.image_files.append(result.path)
            else:
                contents.non_image_files.append(name)

    contents.image_files.sort(key=str)
    contents.non_image_files.sort()
    contents.unclassified.sort(key=str)
    return contents


# Archive creation

def archive_name(relative_path: Path) -> str:
    """Entry name for a relative path, with raw non-UTF-8 name bytes escaped"""
    return os.fsencode(relative_path.as_posix()).decode("utf-8", "backslashreplace")


def create_cbz(source_dir, image_files: List[Path], cbz_path) -> None:
    """
    Create a CBZ file containing image_files, in the order given.

    Entry names are paths relative to source_dir with forward slashes. Name
    bytes that aren't valid UTF-8 are stored as backslash escapes. The
    archive is opened in exclusive mode so an existing file is never
    overwritten; a partially written archive is removed on failure.
    """
    if not image_files:
        raise ValueError("No image files found")

    source_dir = Path(source_dir)
    cbz_path = Path(cbz_path)

    try:
        cbz = zipfile.ZipFile(cbz_path, "x", zipfile.ZIP_DEFLATED, compresslevel=6,
                              strict_timestamps=False)
    except OSError as e:
        raise RuntimeError(f"Failed to create CBZ file: {e}") from e

    try:
        with cbz:
            for img_path in image_files:
                arcname = archive_name(Path(img_path).relative_to(source_dir))
                cbz.write(img_path, arcname)
    except Exception as e:
        if cbz_path.exists():
            cbz_path.unlink()  # Clean up partial file
        raise RuntimeError(f"Failed to create CBZ file: {e}") from e


# Statistics

@dataclass
class ConversionStats:
    """Thread-safe conversion statistics"""
    total: int = 0
    success: int = 0
    errors: int = 0
    skipped: int = 0
    non_image_files: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self, excluded: int = 0):
        with self._lock:
            self.success += 1
            self.non_image_files += excluded

    def record_error(self):
        with self._lock:
            self.errors += 1

    def record_skip(self):
        with self._lock:
            self.skipped += 1

    @property
    def processed(self) -> int:
        with self._lock:
            return self.success + self.errors + self.skipped

    def get_counts(self) -> Tuple[int, int, int, int, int]:
        """Return (total, success, errors, skipped, non_image_files)"""
        with self._lock:
            return self.total, self.success, self.errors, self.skipped, self.non_image_files

    def success_rate(self) -> Optional[float]:
        """Percentage of successes among finished conversions, None if nothing was converted"""
        with self._lock:
            finished = self.success + self.errors
            if finished == 0:
                return None
            return self.success / finished * 100


def print_final_stats(stats: ConversionStats) -> None:
    """Print the summary report"""
    total, success, errors, skipped, non_image_files = stats.get_counts()

    log_info("Conversion completed")
    log_info(f"Total folders:     {total}")
    log_ok(f"Successful:        {success}")

    if skipped > 0:
        log_warning(f"Skipped:           {skipped}")

    if errors > 0:
        log_error(f"Errors:            {errors}")

    if non_image_files > 0:
        log_info(f"Non-image files:   {non_image_files} (excluded)")

    rate = stats.success_rate()
    if rate is not None:
        log_info(f"Success rate:      {rate:.1f}%")


# Job dispatch

@dataclass(frozen=True)
class ConversionJob:
    """One folder to convert into one CBZ file"""
    folder_name: str
    source_path: Path
    output_path: Path


class JobOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


def find_folders(input_dir) -> List[str]:
    """Names of the immediate subfolders of input_dir, sorted"""
    with os.scandir(input_dir) as entries:
        folders = [entry.name for entry in entries if entry.is_dir(follow_symlinks=False)]
    folders.sort()
    return folders


def build_jobs(input_dir, output_dir, folders: List[str]) -> List[ConversionJob]:
    input_dir = Path(input_dir)
    output_dir = Path(output_dir)
    return [
        ConversionJob(folder, input_dir / folder, output_dir / (folder + ".cbz"))
        for folder in folders
    ]


def clamp_workers(requested: int, cpu_count: Optional[int] = None) -> Tuple[int, bool]:
    """
    Clamp a requested thread count to [1, 2 x CPU cores].
    Returns (thread_count, capped) where capped tells whether the upper limit applied.
    """
    if cpu_count is None:
        cpu_count = os.cpu_count() or 1
    ceiling = cpu_count * 2

    if requested < 1:
        return 1, False
    if requested > ceiling:
        return ceiling, True
    return requested, False


def convert_folder(source_dir, cbz_path) -> int:
    """Convert one folder to a CBZ file, returning the number of excluded non-image files"""
    try:
        contents = scan_directory(source_dir)
    except OSError as e:
        raise RuntimeError(f"Failed to analyze directory: {e}") from e

    create_cbz(source_dir, contents.image_files, cbz_path)
    return contents.excluded_count


def _run_job(prefix: str, job: ConversionJob) -> Tuple[JobOutcome, int]:
    log_info(f"{prefix} Processing: {truncate_string(job.folder_name, MAX_NAME_LENGTH)}")

    if os.path.exists(job.output_path):
        log_warning(f"{prefix} CBZ already exists, skipping: {job.output_path.name}")
        return JobOutcome.SKIPPED, 0

    try:
        excluded = convert_folder(job.source_path, job.output_path)
    except Exception as e:
        log_error(f"{prefix} Conversion failed for {job.folder_name}: {e}")
        return JobOutcome.FAILED, 0

    log_ok(f"{prefix} Created: {job.output_path.name}")

    if excluded > 0:
        log_warning(f"{prefix} Found {excluded} non-image files (excluded from CBZ)")
    return JobOutcome.SUCCEEDED, excluded


def process_job(worker_id: int, job: ConversionJob, stats: ConversionStats) -> JobOutcome:
    """
    Run a single job to its outcome, recording it in stats exactly once.

    Anything that escapes the job counts as a failure and is re-raised after
    the failure is recorded.
    """
    outcome, excluded = JobOutcome.FAILED, 0
    try:
        outcome, excluded = _run_job(f"[WORKER {worker_id}]", job)
    finally:
        if outcome is JobOutcome.SUCCEEDED:
            stats.record_success(excluded)
        elif outcome is JobOutcome.SKIPPED:
            stats.record_skip()
        else:
            stats.record_error()
    return outcome


# Marks the end of the job queue, one per worker
_QUEUE_CLOSED = object()


class BulkConverter:
    """Converts every subfolder of an input directory using a pool of worker threads"""

    def __init__(self, input_dir: str, output_dir: str, max_workers: int = DEFAULT_THREADS):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.max_workers, self.workers_capped = clamp_workers(max_workers)

        if not self.input_dir.exists() or not self.input_dir.is_dir():
            raise ValueError(f"Input directory does not exist: {input_dir}")

        # Create output directory if it doesn't exist
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def find_jobs(self) -> List[ConversionJob]:
        return build_jobs(self.input_dir, self.output_dir, find_folders(self.input_dir))

    def _worker(self, worker_id: int, jobs: queue.Queue, stats: ConversionStats):
        while True:
            job = jobs.get()
            if job is _QUEUE_CLOSED:
                return
            # A dead worker would leave the producer blocked on the bounded queue
            try:
                process_job(worker_id, job, stats)
            except Exception as e:
                log_error(f"[WORKER {worker_id}] Unexpected error for {job.folder_name}: {e}")

    def process_all(self, jobs: List[ConversionJob], stats: ConversionStats) -> None:
        """Feed jobs through a bounded queue to the workers and wait for all of them"""
        jobs_queue: queue.Queue = queue.Queue(maxsize=self.max_workers)
        workers = [
            threading.Thread(target=self._worker, args=(i + 1, jobs_queue, stats),
                             name=f"cbz-worker-{i + 1}", daemon=True)
            for i in range(self.max_workers)
        ]
        for worker in workers:
            worker.start()

        for job in jobs:
            jobs_queue.put(job)
        for _ in workers:
            jobs_queue.put(_QUEUE_CLOSED)

        for worker in workers:
            worker.join()

    def run(self) -> ConversionStats:
        """
        Convert all subfolders and return the final statistics.
        Raises OSError if the input directory can't be listed.
        """
        jobs = self.find_jobs()
        if not jobs:
            log_warning("No folders found in input directory")
            return ConversionStats()

        log_info(f"Found {len(jobs)} folders to process")

        stats = ConversionStats(total=len(jobs))
        self.process_all(jobs, stats)
        return stats


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="CBZ Converter - Convert image folders to CBZ comic book archives",
        epilog="Examples:\n"
               "  %(prog)s --input ./manga --output ./cbz\n"
               "  %(prog)s -i /home/user/comics -o /home/user/cbz --threads 8\n\n"
               "The program will:\n"
               "  1. Scan each folder in the input directory\n"
               "  2. Detect image files using MIME type analysis\n"
               "  3. Create compressed CBZ files in the output directory\n"
               "  4. Skip existing CBZ files to avoid overwriting\n"
               "  5. Report non-image files found but not included",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument('--input', '-i',
                        help='Input directory containing folders to convert (required)')
    parser.add_argument('--output', '-o',
                        help='Output directory for CBZ files (required)')
    parser.add_argument('--threads', '-t',
                        type=int,
                        default=DEFAULT_THREADS,
                        help=f'Number of concurrent threads (default: {DEFAULT_THREADS})')
    parser.add_argument('--no-color',
                        action='store_true',
                        help='Disable colored output')
    parser.add_argument('--version',
                        action='version',
                        version=f'CBZ Converter v{__version__}\n'
                                'Converts folders containing images to CBZ comic book archives')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point, returns the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.no_color:
        configure_console(no_color=True)

    # Missing required arguments just shows the usage
    if not args.input or not args.output:
        parser.print_help()
        return 0

    try:
        try:
            converter = BulkConverter(args.input, args.output, args.threads)
        except ValueError as e:
            log_error(str(e))
            return 1
        except OSError as e:
            log_error(f"Failed to create output directory: {e}")
            return 1

        if converter.workers_capped:
            log_info(f"Thread count limited to {converter.max_workers} (2x CPU cores)")

        log_info(f"Starting CBZ conversion with {converter.max_workers} threads")
        log_info(f"Input:  {args.input}")
        log_info(f"Output: {args.output}")

        try:
            stats = converter.run()
        except OSError as e:
            log_error(f"Failed to read input directory: {e}")
            return 1

        if stats.total > 0:
            print_final_stats(stats)
        return 0

    except KeyboardInterrupt:
        log_error("Conversion cancelled by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
