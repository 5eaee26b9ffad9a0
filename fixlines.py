#!/usr/bin/env python3
"""
fixlines

Find text files by probing their encoding and rewrite their line endings
to LF, replacing each file through a temporary sibling and an atomic rename.
"""

import argparse
import concurrent.futures
import glob
import logging
import os
import stat
import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from chardet.enums import InputState
from chardet.universaldetector import UniversalDetector
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

__version__ = "1.0.0"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("fixlines")

DEFAULT_PROBE_SIZE = 1024
DEFAULT_MAX_CHUNKS = 20
DEFAULT_CONFIDENCE = 0.95

TEMP_SUFFIX = ".tmp"
WRITE_BUFFER_SIZE = 64 * 1024

# Encodings that can be split on b"\n" without breaking multi-byte sequences.
SUPPORTED_ENCODINGS = frozenset({"UTF-8", "ASCII"})

# Outcomes of handling a single file
REWRITTEN = "rewritten"
DRY_RUN = "dry-run"
BINARY = "binary"
UNSUPPORTED = "unsupported"


class FixLinesError(Exception):
    """Base exception for fixlines."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.path = path


class TraversalError(FixLinesError):
    """Raised when pattern expansion, stat or a directory walk fails."""


class ProbeError(FixLinesError):
    """Raised when reading a file for encoding detection fails."""


class UnsupportedEncodingError(FixLinesError):
    """Raised when asked to rewrite a file whose encoding is not allow-listed."""


class RewriteError(FixLinesError):
    """Raised when a rewrite fails. The original file is left untouched."""


class ProbeResult(NamedTuple):
    is_text: bool
    encoding: str


@dataclass(frozen=True)
class Options:  # pylint: disable=too-many-instance-attributes
    """Run configuration, built once from the command line."""

    dry_run: bool = False
    verbose: bool = False
    probe_size: int = DEFAULT_PROBE_SIZE
    max_chunks: int = DEFAULT_MAX_CHUNKS
    confidence_threshold: float = DEFAULT_CONFIDENCE
    workers: int = 1
    keep_going: bool = False
    ignore_dirs: Tuple[str, ...] = ()
    show_progress: bool = True
    log_file: Optional[str] = None


@dataclass
class RunSummary:
    rewritten: int = 0
    dry_run: int = 0
    binary: int = 0
    unsupported: int = 0
    failed: List[str] = field(default_factory=list)

    def record(self, outcome: str) -> None:
        if outcome == REWRITTEN:
            self.rewritten += 1
        elif outcome == DRY_RUN:
            self.dry_run += 1
        elif outcome == BINARY:
            self.binary += 1
        elif outcome == UNSUPPORTED:
            self.unsupported += 1
        else:
            raise ValueError(f"Unknown outcome: {outcome}")

    @property
    def total(self) -> int:
        return (
            self.rewritten
            + self.dry_run
            + self.binary
            + self.unsupported
            + len(self.failed)
        )


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Attach console (and optional file) handlers to the fixlines logger."""
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a"))

    formatter = logging.Formatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False


def _is_wide_encoding(encoding: str) -> bool:
    return encoding.upper().startswith(("UTF-16", "UTF-32"))


class EncodingClassifier:
    """
    Incremental encoding classifier backed by chardet's UniversalDetector.

    Bytes are accumulated with feed(); guess() reports the current best
    encoding and its confidence without finalizing the detector, so it can
    be asked again after every chunk. reset() clears all state.

    A NUL byte rules out text unless chardet has identified UTF-16/UTF-32,
    since the detector otherwise reports 7-bit binaries as ASCII.
    """

    def __init__(self) -> None:
        self._detector = UniversalDetector()
        self._got_data = False
        self._saw_nul = False

    def reset(self) -> None:
        self._detector.reset()
        self._got_data = False
        self._saw_nul = False

    def feed(self, chunk: bytes) -> None:
        if not chunk:
            return
        self._got_data = True
        if b"\x00" in chunk:
            self._saw_nul = True
        self._detector.feed(chunk)

    def guess(self) -> Tuple[str, float]:
        detector = self._detector
        if detector.done:
            encoding: str = detector.result.get("encoding") or ""
            confidence: float = detector.result.get("confidence") or 0.0
            if self._saw_nul and not _is_wide_encoding(encoding):
                return "", 0.0
            return encoding, confidence

        if not self._got_data or self._saw_nul:
            return "", 0.0

        if detector.input_state == InputState.PURE_ASCII:
            return "ascii", 1.0

        if detector.input_state == InputState.HIGH_BYTE:
            best_encoding, best_confidence = "", 0.0
            for prober in detector.charset_probers:
                confidence = prober.get_confidence()
                if confidence > best_confidence and prober.charset_name:
                    best_encoding, best_confidence = prober.charset_name, confidence
            return best_encoding, best_confidence

        # Escape sequences without a conclusive ISO-2022/HZ match
        return "", 0.0


def probe(
    reader: BinaryIO,
    chunk_size: int = DEFAULT_PROBE_SIZE,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
    confidence_threshold: float = DEFAULT_CONFIDENCE,
    classifier: Optional[EncodingClassifier] = None,
) -> ProbeResult:
    """
    Decide whether the content of reader is text.

    Reads at most max_chunks chunks of chunk_size bytes, feeding each one
    to the classifier, and stops as soon as the classifier's confidence is
    strictly above confidence_threshold. Running out of input or out of
    chunks first means the content is not text.

    Raises ProbeError if a read fails.
    """
    if classifier is None:
        classifier = EncodingClassifier()
    classifier.reset()

    name = getattr(reader, "name", "<stream>")
    for index in range(max_chunks):
        try:
            chunk: bytes = reader.read(chunk_size)
        except OSError as e:
            raise ProbeError(f"Error reading {name}: {e}", str(name)) from e

        logger.debug("Read chunk %d of %s: %d bytes", index, name, len(chunk))
        if not chunk:
            break

        classifier.feed(chunk)
        encoding, confidence = classifier.guess()
        logger.debug(
            "Chunk %d of %s: encoding=%s confidence=%.2f",
            index,
            name,
            encoding or "unknown",
            confidence,
        )
        if confidence > confidence_threshold:
            return ProbeResult(True, encoding)

    return ProbeResult(False, "")


def probe_file(
    path: str,
    chunk_size: int = DEFAULT_PROBE_SIZE,
    max_chunks: int = DEFAULT_MAX_CHUNKS,
    confidence_threshold: float = DEFAULT_CONFIDENCE,
    classifier: Optional[EncodingClassifier] = None,
) -> ProbeResult:
    """Open path in binary mode and probe it."""
    logger.debug("Checking if file is text: %s", path)
    try:
        with open(path, "rb") as f:
            return probe(f, chunk_size, max_chunks, confidence_threshold, classifier)
    except OSError as e:
        raise ProbeError(f"Cannot open {path}: {e}", path) from e


def is_supported(encoding: str) -> bool:
    """Case-insensitive check against the encodings safe to rewrite."""
    return bool(encoding) and encoding.upper() in SUPPORTED_ENCODINGS


def normalize_lines(source: BinaryIO, output: BinaryIO) -> int:
    """
    Copy source to output line by line so that every line ends in a single LF.

    A CR directly before the LF is dropped. A final line without a
    terminator gets one. Returns the number of lines written.
    """
    count = 0
    for line in source:
        if line.endswith(b"\n"):
            line = line[:-1]
        if line.endswith(b"\r"):
            line = line[:-1]
        output.write(line + b"\n")
        count += 1
    output.flush()
    return count


def _discard_temporary(tmp_path: str) -> None:
    try:
        os.remove(tmp_path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove temporary file %s: %s", tmp_path, str(e))
    else:
        logger.debug("Removed temporary file: %s", tmp_path)


def rewrite(path: str) -> None:
    """
    Rewrite path with LF line endings.

    The new content goes to path + TEMP_SUFFIX in the same directory, which
    is renamed over path only once it has been completely written and
    closed. On any failure the original is untouched, the temporary file is
    removed and RewriteError is raised.
    """
    tmp_path = path + TEMP_SUFFIX
    logger.debug("Creating temporary file: %s", tmp_path)
    try:
        output = open(  # pylint: disable=consider-using-with
            tmp_path, "xb", buffering=WRITE_BUFFER_SIZE
        )
    except FileExistsError as e:
        raise RewriteError(
            f"Temporary file {tmp_path} already exists, leaving {path} unchanged",
            path,
        ) from e
    except OSError as e:
        raise RewriteError(
            f"Cannot create temporary file {tmp_path}: {e}", path
        ) from e

    try:
        try:
            source = open(path, "rb")  # pylint: disable=consider-using-with
            try:
                count = normalize_lines(source, output)
                logger.debug(
                    "Wrote %d lines, closing temporary file: %s", count, tmp_path
                )
                output.close()
                source.close()
            finally:
                if not source.closed:
                    source.close()
        finally:
            if not output.closed:
                output.close()

        logger.debug("Renaming temporary file %s to %s", tmp_path, path)
        os.replace(tmp_path, path)
    except OSError as e:
        _discard_temporary(tmp_path)
        raise RewriteError(f"Error rewriting {path}: {e}", path) from e


def replace_lines(path: str, encoding: str, dry_run: bool = False) -> bool:
    """
    Rewrite a text file detected as encoding, unless dry_run is set.

    Returns True if the file was rewritten.
    """
    if not is_supported(encoding):
        raise UnsupportedEncodingError(
            f"Unsupported encoding {encoding!r} for {path}", path
        )

    logger.info("Replacing lines in %s (encoding: %s)", path, encoding)
    if dry_run:
        logger.debug("Dry run, leaving %s unchanged", path)
        return False

    rewrite(path)
    return True


def expand_patterns(patterns: Sequence[str]) -> List[str]:
    """Expand glob patterns into existing paths, keeping their order."""
    paths: List[str] = []
    for pattern in patterns:
        try:
            matches = sorted(glob.glob(pattern))
        except (OSError, ValueError) as e:
            raise TraversalError(f"Error expanding pattern '{pattern}': {e}") from e
        if not matches:
            logger.warning("No paths match pattern: %s", pattern)
        paths.extend(matches)
    return paths


def iter_files(root: str, ignore_dirs: Sequence[str] = ()) -> Iterator[str]:
    """
    Yield the regular files under root.

    Symbolic links are never followed nor yielded. Directories named in
    ignore_dirs are pruned.
    """
    ignore_dirs_set = set(ignore_dirs)

    def on_error(err: OSError) -> None:
        raise TraversalError(
            f"Error walking {err.filename}: {err.strerror or err}", err.filename
        ) from err

    for dirpath, dirnames, filenames in os.walk(root, onerror=on_error):
        dirnames[:] = sorted(d for d in dirnames if d not in ignore_dirs_set)

        for filename in sorted(filenames):
            file_path = os.path.join(dirpath, filename)
            try:
                mode = os.lstat(file_path).st_mode
            except OSError as e:
                raise TraversalError(f"Cannot stat {file_path}: {e}", file_path) from e

            if stat.S_ISLNK(mode):
                logger.debug("Skipping symbolic link: %s", file_path)
                continue
            if not stat.S_ISREG(mode):
                logger.debug("Skipping non-regular file: %s", file_path)
                continue
            yield file_path


class LineFixer:
    """Walks the requested paths and runs probe, policy and rewrite per file."""

    def __init__(self, options: Options) -> None:
        self.options = options
        self.summary = RunSummary()
        self._local = threading.local()

    def _classifier(self) -> EncodingClassifier:
        # One classifier per thread, reset by every probe
        classifier = getattr(self._local, "classifier", None)
        if classifier is None:
            classifier = EncodingClassifier()
            self._local.classifier = classifier
        return classifier

    def collect(self, patterns: Sequence[str]) -> List[str]:
        """Expand patterns and walk directories into a list of files to handle."""
        excluded = set()
        if self.options.log_file:
            excluded.add(os.path.realpath(self.options.log_file))

        files: List[str] = []
        for path in expand_patterns(patterns):
            try:
                mode = os.stat(path).st_mode
            except OSError as e:
                raise TraversalError(f"Cannot stat {path}: {e}", path) from e

            if stat.S_ISDIR(mode):
                candidates = list(iter_files(path, self.options.ignore_dirs))
            elif stat.S_ISREG(mode):
                # Rewrite the target so a link given by name stays a link
                candidates = [os.path.realpath(path) if os.path.islink(path) else path]
            else:
                logger.warning("Skipping non-regular file: %s", path)
                continue

            files.extend(
                candidate
                for candidate in candidates
                if os.path.realpath(candidate) not in excluded
            )

        # A file named like another entry's temporary file is never handed on
        queued = set(files)
        return [
            file_path
            for file_path in files
            if not (
                file_path.endswith(TEMP_SUFFIX)
                and file_path[: -len(TEMP_SUFFIX)] in queued
            )
        ]

    def handle_file(self, path: str) -> str:
        """Probe one file and rewrite it if it is text in a supported encoding."""
        result = probe_file(
            path,
            chunk_size=self.options.probe_size,
            max_chunks=self.options.max_chunks,
            confidence_threshold=self.options.confidence_threshold,
            classifier=self._classifier(),
        )
        if not result.is_text:
            logger.debug("Skipping binary file: %s", path)
            return BINARY

        if not is_supported(result.encoding):
            logger.info(
                "Skipping unsupported encoding %s: %s", result.encoding, path
            )
            return UNSUPPORTED

        if replace_lines(path, result.encoding, dry_run=self.options.dry_run):
            return REWRITTEN
        return DRY_RUN

    def _record_failure(self, path: str, error: FixLinesError) -> None:
        logger.error("Skipping %s after error: %s", path, str(error))
        self.summary.failed.append(path)

    def _process_one(self, path: str) -> None:
        try:
            outcome = self.handle_file(path)
        except (ProbeError, RewriteError) as e:
            if not self.options.keep_going:
                raise
            self._record_failure(path, e)
        else:
            self.summary.record(outcome)

    def _process_parallel(self, files: List[str], pbar: tqdm) -> None:
        max_workers = min(self.options.workers, len(files))
        logger.debug(
            "Using %d worker threads for processing %d files", max_workers, len(files)
        )
        executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers)
        try:
            future_to_file = {
                executor.submit(self.handle_file, file_path): file_path
                for file_path in files
            }
            for future in concurrent.futures.as_completed(future_to_file):
                file_path = future_to_file[future]
                try:
                    outcome = future.result()
                except (ProbeError, RewriteError) as e:
                    if not self.options.keep_going:
                        raise
                    self._record_failure(file_path, e)
                else:
                    self.summary.record(outcome)
                finally:
                    pbar.update(1)
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

    def process(self, files: List[str]) -> RunSummary:
        """Handle every file, sequentially or on a thread pool."""
        with logging_redirect_tqdm(loggers=[logger]):
            with tqdm(
                total=len(files),
                desc="Fixing line endings",
                unit="file",
                disable=not self.options.show_progress,
            ) as pbar:
                if self.options.workers > 1 and len(files) > 1:
                    self._process_parallel(files, pbar)
                else:
                    for file_path in files:
                        self._process_one(file_path)
                        pbar.update(1)
        return self.summary

    def run(self, patterns: Sequence[str]) -> RunSummary:
        files = self.collect(patterns)
        if not files:
            logger.warning("No files to process.")
            return self.summary
        logger.info("Found %d files to process.", len(files))
        return self.process(files)


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.2f} seconds"
    if seconds < 3600:
        minutes = int(seconds // 60)
        plural = "s" if minutes != 1 else ""
        return f"{minutes} minute{plural} {seconds % 60:.2f} seconds"
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    return (
        f"{hours} hour{'s' if hours != 1 else ''} "
        f"{minutes} minute{'s' if minutes != 1 else ''} "
        f"{seconds % 60:.2f} seconds"
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fixlines",
        description="Normalize line endings of text files to LF",
    )
    parser.add_argument(
        "patterns",
        nargs="*",
        help="Files, directories or glob patterns to process "
        "(default: current directory)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect and report, but don't actually write any files",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--probe-size",
        type=int,
        default=DEFAULT_PROBE_SIZE,
        help="Bytes read per chunk when probing a file's encoding "
        f"(default: {DEFAULT_PROBE_SIZE})",
    )
    parser.add_argument(
        "--max-chunks",
        type=int,
        default=DEFAULT_MAX_CHUNKS,
        help="Maximum number of chunks probed per file "
        f"(default: {DEFAULT_MAX_CHUNKS})",
    )
    parser.add_argument(
        "--confidence",
        type=float,
        default=DEFAULT_CONFIDENCE,
        help="Detection confidence a file must exceed to be treated as text "
        f"(default: {DEFAULT_CONFIDENCE})",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker threads for parallel processing (default: 1)",
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Skip files that fail to read or rewrite instead of stopping",
    )
    parser.add_argument(
        "--ignore-dirs",
        nargs="+",
        default=[],
        help="Directory names to skip while walking",
    )
    parser.add_argument(
        "--log-file", default=None, help="Also append log output to this file"
    )
    parser.add_argument(
        "--no-progress", action="store_true", help="Don't show a progress bar"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"fixlines v{__version__}",
        help="Show program version and exit",
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[Options, List[str]]:
    """Parse the command line into Options and the list of path patterns."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.probe_size <= 0:
        parser.error("--probe-size must be a positive number of bytes")
    if args.max_chunks <= 0:
        parser.error("--max-chunks must be positive")
    if not 0.0 <= args.confidence < 1.0:
        parser.error("--confidence must be in the range [0, 1)")

    workers: int = args.workers
    if workers <= 0:
        logger.warning("Invalid worker count (%d), using 1 instead", workers)
        workers = 1

    options = Options(
        dry_run=args.dry_run,
        verbose=args.verbose,
        probe_size=args.probe_size,
        max_chunks=args.max_chunks,
        confidence_threshold=args.confidence,
        workers=workers,
        keep_going=args.keep_going,
        ignore_dirs=tuple(args.ignore_dirs),
        show_progress=not args.no_progress,
        log_file=args.log_file,
    )
    return options, list(args.patterns)


def main(argv: Optional[Sequence[str]] = None) -> int:
    options, patterns = parse_args(argv)
    configure_logging(options.verbose, options.log_file)
    logger.info("fixlines v%s - Line Ending Fixer", __version__)

    try:
        if not patterns:
            patterns = [os.getcwd()]
        if options.dry_run:
            logger.info("Dry run: no files will be written")

        start_time: float = time.time()
        summary = LineFixer(options).run(patterns)
        execution_time: float = time.time() - start_time
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user.")
        return 130
    except FixLinesError as e:
        logger.error("%s", str(e))
        logger.debug("Traceback: %s", traceback.format_exc())
        return 1
    except Exception as e:  # pylint: disable=broad-exception-caught
        logger.error("An unexpected error occurred: %s", str(e))
        logger.debug("Traceback: %s", traceback.format_exc())
        return 1

    logger.info(
        "Rewritten: %d, Dry run: %d, Binary: %d, Unsupported: %d, Failed: %d",
        summary.rewritten,
        summary.dry_run,
        summary.binary,
        summary.unsupported,
        len(summary.failed),
    )
    logger.info(
        "Done! Handled %d files in %s.", summary.total, format_duration(execution_time)
    )

    if summary.failed:
        logger.error(
            "Failed to process %d files: %s",
            len(summary.failed),
            ", ".join(summary.failed),
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
