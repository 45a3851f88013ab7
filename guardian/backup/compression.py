"""
Streaming compression of a unit's data root into a single artifact.

Three stages connected by bounded channels:

    archiver (tar stream) -> progress meter (optional) -> compressor -> file

The archiver and meter run in worker threads, the compressor drains the last
channel in the calling thread. A slow compressor blocks the archiver once the
channel is full, so the data root is never buffered in memory and no
uncompressed copy is written to disk.

Compressors:
- pigz: parallel gzip as a subprocess (when available and enabled)
- gzip: single-threaded in-process fallback
- none: plain tar (compression disabled)
"""

import gzip
import logging
import os
import queue
import re
import shutil
import subprocess
import sys
import tarfile
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional

from tqdm import tqdm

from guardian import log_success


logger = logging.getLogger(__name__)

# Subtrees whose contents are transient
EXCLUDED_DIRECTORIES = ('logs', 'cache', 'transcodes', 'temp', 'tmp')
EXCLUDED_FILE_PATTERNS = ('*.log', '*.tmp')

CHUNK_SIZE = 1024 * 1024
CHANNEL_DEPTH = 8
TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
PARTIAL_SUFFIX = '.partial'

ARTIFACT_PATTERN = re.compile(r'^(?P<unit>.+)_(?P<timestamp>\d{8}_\d{6})\.(?P<ext>tar\.gz|tar)$')


class CompressionFailure(Exception):
    """Raised when artifact creation fails."""
    pass


class PipelineCancelled(Exception):
    """Raised inside a stage when the pipeline is being torn down."""
    pass


@dataclass(frozen=True)
class CompressionResult:
    path: Path
    original_size: Optional[int]
    compressed_size: int
    streamed_bytes: int
    compressor: str
    duration_seconds: float
    timestamp: str


def exclusion_patterns():
    """Human-readable exclusion list (for dry runs and ledgers)."""
    return [f"{d}/*" for d in EXCLUDED_DIRECTORIES] + list(EXCLUDED_FILE_PATTERNS)


def is_excluded(relative_parts, is_dir: bool) -> bool:
    """
    Decide whether a path inside the data root is left out of the archive.

    The transient directories themselves are kept (empty), their contents are not.

    Args:
        relative_parts: Path components relative to the data root
        is_dir: Whether the path is a directory
    """
    if not relative_parts:
        return False
    if any(part in EXCLUDED_DIRECTORIES for part in relative_parts[:-1]):
        return True
    if not is_dir and any(fnmatch(relative_parts[-1], p) for p in EXCLUDED_FILE_PATTERNS):
        return True
    return False


def measure_source(data_root) -> Optional[int]:
    """
    Total size in bytes of the files that will be archived, or None if unmeasurable.
    """
    root = Path(data_root)
    total = 0
    try:
        for dirpath, dirnames, filenames in os.walk(root):
            rel = Path(dirpath).relative_to(root).parts
            if any(part in EXCLUDED_DIRECTORIES for part in rel):
                dirnames[:] = []
                continue
            for filename in filenames:
                if is_excluded(rel + (filename,), False):
                    continue
                try:
                    total += os.lstat(os.path.join(dirpath, filename)).st_size
                except OSError:
                    continue
    except OSError as e:
        logger.warning("Could not determine source size of %s: %s", data_root, e)
        return None
    return total


def sanitize_unit_name(unit_name: str) -> str:
    return "".join(c if c.isalnum() or c in ('-', '_', '.') else '_' for c in unit_name)


def generate_artifact_filename(unit_name: str, compress: bool = True, timestamp: Optional[str] = None) -> str:
    """
    Generate a standardized artifact filename.

    Format: {unit}_{YYYYMMDD_HHMMSS}.tar.gz (or .tar when compression is disabled)
    """
    timestamp = timestamp or datetime.now().strftime(TIMESTAMP_FORMAT)
    extension = 'tar.gz' if compress else 'tar'
    return f"{sanitize_unit_name(unit_name)}_{timestamp}.{extension}"


def strip_archive_extension(filename: str) -> str:
    """
    Strip archive extension from filename.

    Handles the multi-part .tar.gz extension.
    """
    if filename.endswith('.tar.gz'):
        return filename[:-7]
    elif filename.endswith('.tar'):
        return filename[:-4]
    else:
        return os.path.splitext(filename)[0]


def sidecar_path(artifact_path) -> Path:
    """Path of the ledger file sharing the artifact's base name."""
    artifact_path = Path(artifact_path)
    return artifact_path.with_name(strip_archive_extension(artifact_path.name) + '.log')


def artifact_matcher(unit_name: str):
    """Compiled regex matching artifact filenames of exactly this unit."""
    return re.compile(
        rf'^{re.escape(sanitize_unit_name(unit_name))}_\d{{8}}_\d{{6}}\.(?:tar\.gz|tar)$'
    )


def ledger_matcher(unit_name: str):
    """Compiled regex matching ledger filenames of exactly this unit."""
    return re.compile(rf'^{re.escape(sanitize_unit_name(unit_name))}_\d{{8}}_\d{{6}}\.log$')


class _Channel:
    """Bounded byte channel between two pipeline stages."""

    _EOF = object()

    def __init__(self, cancelled: threading.Event, depth: int = CHANNEL_DEPTH):
        self._queue = queue.Queue(maxsize=depth)
        self._cancelled = cancelled
        self.error = None

    def send(self, chunk: bytes):
        self._put(chunk)

    def close(self, error: Optional[BaseException] = None):
        self.error = error
        try:
            self._put(self._EOF)
        except PipelineCancelled:
            pass

    def _put(self, item):
        while True:
            if self._cancelled.is_set():
                raise PipelineCancelled()
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue

    def __iter__(self):
        while True:
            if self._cancelled.is_set():
                raise PipelineCancelled()
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is self._EOF:
                if self.error is not None:
                    raise CompressionFailure(f"Upstream stage failed: {self.error}")
                return
            yield item


class _ChannelWriter:
    """Minimal file object for tarfile stream mode, re-chunked to CHUNK_SIZE."""

    def __init__(self, channel: _Channel):
        self._channel = channel
        self._buffer = bytearray()

    def write(self, data) -> int:
        self._buffer += data
        while len(self._buffer) >= CHUNK_SIZE:
            self._channel.send(bytes(self._buffer[:CHUNK_SIZE]))
            del self._buffer[:CHUNK_SIZE]
        return len(data)

    def flush(self):
        if self._buffer:
            self._channel.send(bytes(self._buffer))
            self._buffer.clear()


def _archive_stage(data_root: Path, channel: _Channel):
    root_name = data_root.name

    def exclusion_filter(tarinfo):
        parts = tarinfo.name.split('/')[1:]
        if is_excluded(parts, tarinfo.isdir()):
            return None
        return tarinfo

    writer = _ChannelWriter(channel)
    try:
        with tarfile.open(fileobj=writer, mode='w|', format=tarfile.PAX_FORMAT) as tar:
            tar.add(str(data_root), arcname=root_name, recursive=True, filter=exclusion_filter)
        writer.flush()
    except PipelineCancelled:
        return
    except Exception as e:
        logger.error("Archive stage failed: %s", e)
        channel.close(error=e)
        return
    channel.close()


def _meter_stage(source: _Channel, sink: _Channel, progress):
    try:
        for chunk in source:
            progress.update(len(chunk))
            sink.send(chunk)
    except PipelineCancelled:
        return
    except Exception as e:
        sink.close(error=e)
        return
    sink.close()


class GzipCompressor:
    """Single-threaded in-process gzip."""

    name = 'gzip'

    def __init__(self, out_file, level: int):
        self._gzip = gzip.GzipFile(fileobj=out_file, mode='wb', compresslevel=level)

    def write(self, chunk: bytes):
        self._gzip.write(chunk)

    def close(self):
        self._gzip.close()

    def abort(self):
        try:
            self._gzip.close()
        except OSError:
            pass


class PigzCompressor:
    """Parallel gzip in a subprocess writing straight to the artifact file."""

    name = 'pigz'

    def __init__(self, out_file, level: int, binary: str = 'pigz'):
        self._process = subprocess.Popen(
            [binary, f'-{level}', '-c'],
            stdin=subprocess.PIPE,
            stdout=out_file,
            stderr=subprocess.PIPE
        )

    def write(self, chunk: bytes):
        try:
            self._process.stdin.write(chunk)
        except BrokenPipeError:
            raise CompressionFailure(f"pigz exited early: {self._stderr()}")

    def close(self):
        self._process.stdin.close()
        returncode = self._process.wait()
        if returncode != 0:
            raise CompressionFailure(f"pigz failed (exit {returncode}): {self._stderr()}")

    def abort(self):
        self._process.kill()
        self._process.wait()

    def _stderr(self) -> str:
        try:
            return self._process.stderr.read().decode(errors='replace').strip()
        except (OSError, ValueError):
            return ''


class PassthroughCompressor:
    """No compression: the tar stream is written as-is."""

    name = 'none'

    def __init__(self, out_file, level: int = 0):
        self._out = out_file

    def write(self, chunk: bytes):
        self._out.write(chunk)

    def close(self):
        pass

    def abort(self):
        pass


def select_compressor(compress: bool, parallel: bool):
    """Pick the compressor class, falling back from pigz to in-process gzip."""
    if not compress:
        return PassthroughCompressor
    if parallel:
        if shutil.which('pigz'):
            logger.info("Using pigz (parallel gzip) for compression")
            return PigzCompressor
        logger.info("pigz not available, using single-threaded gzip")
    return GzipCompressor


class CompressionPipeline:
    """
    Builds one artifact from a data root.
    """

    def __init__(
        self,
        compression_level: int = 6,
        compress: bool = True,
        parallel: bool = True,
        show_progress: bool = True
    ):
        self.compression_level = compression_level
        self.compress = compress
        self.parallel = parallel
        self.show_progress = show_progress

    @classmethod
    def from_config(cls, config) -> 'CompressionPipeline':
        return cls(
            compression_level=config.compression_level,
            compress=config.compression_enabled,
            parallel=config.parallel_compression,
            show_progress=config.show_progress
        )

    def _progress_enabled(self) -> bool:
        return self.show_progress and sys.stderr.isatty()

    def plan_path(self, dest_dir, unit_name: str, timestamp: Optional[str] = None) -> Path:
        return Path(dest_dir) / generate_artifact_filename(unit_name, self.compress, timestamp)

    def run(self, data_root, dest_dir, unit_name: str, timestamp: Optional[str] = None) -> CompressionResult:
        """
        Stream data_root into <dest_dir>/<unit>_<timestamp>.tar.gz.

        Returns:
            CompressionResult

        Raises:
            CompressionFailure: If the artifact cannot be produced. No file matching the
                artifact name is left behind in that case.
        """
        data_root = Path(data_root)
        if not data_root.is_dir():
            raise CompressionFailure(f"Source directory not found: {data_root}")

        timestamp = timestamp or datetime.now().strftime(TIMESTAMP_FORMAT)
        artifact_path = self.plan_path(dest_dir, unit_name, timestamp)
        if artifact_path.exists():
            raise CompressionFailure(f"Artifact already exists: {artifact_path}")
        partial_path = artifact_path.with_name(artifact_path.name + PARTIAL_SUFFIX)

        try:
            artifact_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CompressionFailure(f"Cannot create destination directory: {e}")

        source_size = measure_source(data_root)
        if source_size:
            logger.info("Estimated source size: %.2f MB", source_size / 1024 / 1024)
        logger.info("Source: %s", data_root)
        logger.info("Target: %s", artifact_path)

        started = time.monotonic()
        try:
            compressor_name, streamed = self._stream(data_root, partial_path, source_size, unit_name)
        except BaseException:
            self._discard(partial_path)
            raise

        compressed_size = partial_path.stat().st_size if partial_path.exists() else 0
        if compressed_size == 0:
            self._discard(partial_path)
            raise CompressionFailure(f"Compression produced an empty artifact for {unit_name}")

        os.replace(partial_path, artifact_path)
        result = CompressionResult(
            path=artifact_path,
            original_size=source_size if source_size is not None else streamed,
            compressed_size=compressed_size,
            streamed_bytes=streamed,
            compressor=compressor_name,
            duration_seconds=round(time.monotonic() - started, 3),
            timestamp=timestamp
        )
        log_success(logger, "Compressed backup created: %s", artifact_path)
        logger.info(
            "Original size: %.2f MB | Compressed size: %.2f MB",
            (result.original_size or 0) / 1024 / 1024,
            compressed_size / 1024 / 1024
        )
        return result

    def _stream(self, data_root: Path, partial_path: Path, source_size: Optional[int], unit_name: str):
        cancelled = threading.Event()
        archive_channel = _Channel(cancelled)
        threads = [threading.Thread(
            target=_archive_stage, args=(data_root, archive_channel),
            name='guardian-archiver', daemon=True
        )]

        progress = None
        final_channel = archive_channel
        if self._progress_enabled():
            progress = tqdm(
                total=source_size or None,
                unit='B',
                unit_scale=True,
                unit_divisor=1024,
                desc=f"Compressing {unit_name}",
                file=sys.stderr
            )
            final_channel = _Channel(cancelled)
            threads.append(threading.Thread(
                target=_meter_stage, args=(archive_channel, final_channel, progress),
                name='guardian-meter', daemon=True
            ))
        else:
            logger.info("Compressing without progress display")

        compressor_cls = select_compressor(self.compress, self.parallel)
        streamed = 0

        try:
            with open(partial_path, 'wb') as out_file:
                try:
                    compressor = compressor_cls(out_file, self.compression_level)
                except OSError as e:
                    raise CompressionFailure(f"Cannot start {compressor_cls.name}: {e}")

                for thread in threads:
                    thread.start()
                try:
                    for chunk in final_channel:
                        compressor.write(chunk)
                        streamed += len(chunk)
                    compressor.close()
                except BaseException:
                    cancelled.set()
                    compressor.abort()
                    raise
        except OSError as e:
            cancelled.set()
            raise CompressionFailure(f"Failed to write artifact: {e}")
        finally:
            for thread in threads:
                if thread.is_alive():
                    thread.join(timeout=5)
            if progress is not None:
                progress.close()

        return compressor_cls.name, streamed

    @staticmethod
    def _discard(partial_path: Path):
        try:
            if partial_path.exists():
                partial_path.unlink()
                logger.warning("Removed incomplete artifact: %s", partial_path.name)
        except OSError as e:
            logger.error("Could not remove incomplete artifact %s: %s", partial_path, e)
