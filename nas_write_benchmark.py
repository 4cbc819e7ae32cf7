#!/usr/bin/env python3
"""
NAS Write Benchmark - Monitors write throughput of a NAS mount by repeatedly
creating fixed-size files, timing each durable write, logging one line per
attempt and deleting the file again.

Usage: python nas_write_benchmark.py -s <size> -n <files> -i <interval> -l <log> [-d <dir>] [-S <log>]
       python nas_write_benchmark.py -S <log>
"""

import os
import math
import re
import sys
import time
import shutil
import logging
import argparse
import subprocess
from enum import Enum
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional


# Constants
MIB = 1024 * 1024
WRITE_CHUNK_SIZE = 4 * MIB
TEST_FILE_PREFIX = "nas_write_test"
WRITERS = ('python', 'dd')
SIZE_UNITS = {'': 1, 'K': 1024, 'M': 1024 ** 2, 'G': 1024 ** 3}

SIZE_PATTERN = re.compile(r'^([0-9]+)([KMGkmg]?)$')
COUNT_PATTERN = re.compile(r'^[1-9][0-9]*$')
INTERVAL_PATTERN = re.compile(r'^[0-9]+$')
SIZE_FIELD_PATTERN = re.compile(r'^size=(.*) \(([0-9]+) bytes\)$')


# Errors
class BenchmarkError(Exception):
    """Base class for errors reported by the benchmark."""


class ConfigError(BenchmarkError):
    """Bad, missing or conflicting command-line flags."""

    def __init__(self, message, flag=None):
        super().__init__(message)
        self.flag = flag


class MissingDependencyError(BenchmarkError):
    """A required external command is not available."""


class TargetDirError(BenchmarkError):
    """The target directory does not exist."""


class LogNotFoundError(BenchmarkError):
    """The log file to summarize does not exist."""


class WriteError(BenchmarkError):
    """A single test file write failed."""


# Data model
class Status(str, Enum):
    OK = 'OK'
    ERROR = 'ERROR'


@dataclass
class RunConfig:
    size_spec: Optional[str] = None
    size_bytes: Optional[int] = None
    max_files: Optional[int] = None
    interval_seconds: Optional[int] = None
    log_path: Optional[Path] = None
    target_dir: Path = Path('.')
    summary_log_path: Optional[Path] = None
    writer: str = 'python'
    verbose: bool = False

    @property
    def summary_only(self):
        return self.log_path is None and self.summary_log_path is not None


@dataclass(frozen=True)
class MeasurementRecord:
    timestamp: str
    status: Status
    iteration: int
    size_spec: str
    size_bytes: int
    duration_s: float
    throughput_mbps: Optional[float]
    message: str = ''

    def __bool__(self):
        return self.status is Status.OK


@dataclass
class SummaryReport:
    log_path: str
    sample_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    total_bytes_success: int = 0
    total_duration_s: float = 0.0
    min_duration_s: Optional[float] = None
    max_duration_s: Optional[float] = None
    total_throughput_success: float = 0.0
    unparseable_lines: int = 0

    @property
    def avg_duration_s(self):
        return self.total_duration_s / self.sample_count if self.sample_count else 0.0

    @property
    def avg_throughput_mbps_success(self):
        return self.total_throughput_success / self.success_count if self.success_count else 0.0

    @property
    def total_mb_success(self):
        return self.total_bytes_success / MIB

    def add(self, record: MeasurementRecord):
        """Fold one parsed record into the running totals."""
        self.sample_count += 1
        self.total_duration_s += record.duration_s
        if self.min_duration_s is None or record.duration_s < self.min_duration_s:
            self.min_duration_s = record.duration_s
        if self.max_duration_s is None or record.duration_s > self.max_duration_s:
            self.max_duration_s = record.duration_s

        if record.status is Status.OK:
            self.success_count += 1
            self.total_bytes_success += record.size_bytes
            self.total_throughput_success += record.throughput_mbps or 0.0
        else:
            self.failure_count += 1


# Command-line argument parsing
class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises ConfigError instead of exiting with status 2."""

    def error(self, message):
        raise ConfigError(message)


def build_parser():
    """Build the command-line parser."""
    parser = _ArgumentParser(
        prog='nas-write-benchmark',
        description='Measure NAS write throughput by creating, timing and deleting test files',
        epilog='Test files are deleted immediately after each measurement so the storage '
               'under test remains clean.')
    parser.add_argument('-s', dest='size', metavar='size',
                        help='Size of each test file (raw bytes or K/M/G suffix, e.g. 128M)')
    parser.add_argument('-n', dest='files', metavar='files',
                        help='Maximum number of files to create per run (positive integer)')
    parser.add_argument('-i', dest='interval', metavar='seconds',
                        help='Interval in seconds between file creations (non-negative integer)')
    parser.add_argument('-l', dest='log', metavar='log_path',
                        help='Log file where measurements are appended')
    parser.add_argument('-d', dest='target_dir', metavar='target_dir', default='.',
                        help='Directory on the NAS where test files are created (default: .)')
    parser.add_argument('-S', dest='summary', metavar='summary_log_path',
                        help='Summarize the given log file (can be used alone)')
    parser.add_argument('-w', '--writer', choices=WRITERS, default='python',
                        help='Write backend: in-process writes or external dd (default: python)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')
    return parser


def parse_size(spec):
    """Convert a size spec such as '512', '4k' or '256M' to a byte count."""
    match = SIZE_PATTERN.fullmatch(spec or '')
    if not match:
        raise ConfigError(f"invalid size specification '{spec}'. Use <number>[K|M|G].", flag='-s')

    number, unit = match.groups()
    size_bytes = int(number) * SIZE_UNITS[unit.upper()]
    if size_bytes == 0:
        raise ConfigError(f"size must be greater than zero, got '{spec}'", flag='-s')
    return size_bytes


def parse_arguments(argv=None, parser=None):
    """Parse and validate command-line arguments into a RunConfig."""
    parser = parser or build_parser()
    args = parser.parse_args(argv)

    measurement_flags = [args.size, args.files, args.interval, args.log]
    config = RunConfig(
        target_dir=Path(args.target_dir),
        summary_log_path=Path(args.summary) if args.summary else None,
        writer=args.writer,
        verbose=args.verbose,
    )

    # -S alone selects summary-only mode
    if args.summary and not any(measurement_flags):
        return config

    for flag, value in zip(('-s', '-n', '-i', '-l'), measurement_flags):
        if not value:
            raise ConfigError("-s, -n, -i and -l are required when running measurements.", flag=flag)

    if not COUNT_PATTERN.fullmatch(args.files):
        raise ConfigError(f"-n expects a positive integer, got '{args.files}'", flag='-n')
    if not INTERVAL_PATTERN.fullmatch(args.interval):
        raise ConfigError(f"-i expects a non-negative integer number of seconds, got '{args.interval}'",
                          flag='-i')

    config.size_spec = args.size
    config.size_bytes = parse_size(args.size)
    config.max_files = int(args.files)
    config.interval_seconds = int(args.interval)
    config.log_path = Path(args.log)

    if not config.target_dir.is_dir():
        raise TargetDirError(f"target directory '{config.target_dir}' does not exist.")

    return config


# Set up logging
def configure_logging(verbose):
    """Configure console logging: progress and reports on stdout, warnings and errors on stderr."""
    log_level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter('%(message)s')

    logger = logging.getLogger()
    logger.setLevel(log_level)
    logger.handlers = []

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(formatter)
    console.addFilter(lambda record: record.levelno < logging.WARNING)
    logger.addHandler(console)

    # Error stream handler
    errors = logging.StreamHandler(sys.stderr)
    errors.setLevel(logging.WARNING)
    errors.setFormatter(formatter)
    logger.addHandler(errors)

    return logger


# Environment checks
def require_command(cmd):
    """Fail if an external command is not on PATH."""
    path = shutil.which(cmd)
    if path is None:
        raise MissingDependencyError(f"required command '{cmd}' not found in PATH")
    logging.debug(f"Using {cmd}: {path}")
    return path


def prepare_log(log_path):
    """Make sure the log file and its parent directory exist."""
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.touch(exist_ok=True)
    return log_path


# Log appender
def _clean_message(message):
    return message.replace('\t', ' ').replace('\r', ' ').replace('\n', ' ')


def format_record(record: MeasurementRecord) -> str:
    """Serialize a record as one tab-separated log line (without newline)."""
    throughput = '-' if record.throughput_mbps is None else f"{record.throughput_mbps:.2f}"
    return '\t'.join([
        record.timestamp,
        f"status={record.status.value}",
        f"iteration={record.iteration:d}",
        f"size={record.size_spec} ({record.size_bytes:d} bytes)",
        f"duration_s={record.duration_s:.6f}",
        f"throughput_MBps={throughput}",
        _clean_message(record.message),
    ])


def append_record(log_path, record: MeasurementRecord):
    """Append one record to the log with a single unbuffered write."""
    line = (format_record(record) + '\n').encode('utf-8')
    with open(log_path, 'ab', buffering=0) as f:
        f.write(line)


# Log summarizer
def parse_record(line) -> Optional[MeasurementRecord]:
    """Parse one log line; return None if it does not fit the record schema."""
    fields = line.rstrip('\r\n').split('\t', 6)
    if len(fields) != 7:
        return None

    timestamp, status, iteration, size, duration, throughput, message = fields
    values = {}
    for key, field_text in (('status', status), ('iteration', iteration),
                            ('duration_s', duration), ('throughput_MBps', throughput)):
        name, sep, value = field_text.partition('=')
        if name != key or not sep:
            return None
        values[key] = value

    size_match = SIZE_FIELD_PATTERN.fullmatch(size)
    if not size_match:
        return None

    try:
        record = MeasurementRecord(
            timestamp=timestamp,
            status=Status(values['status']),
            iteration=int(values['iteration']),
            size_spec=size_match.group(1),
            size_bytes=int(size_match.group(2)),
            duration_s=float(values['duration_s']),
            throughput_mbps=None if values['throughput_MBps'] == '-' else float(values['throughput_MBps']),
            message=message,
        )
    except ValueError:
        return None

    # durations and rates are finite and non-negative, iterations start at 1
    numbers = [record.duration_s] + ([] if record.throughput_mbps is None else [record.throughput_mbps])
    if record.iteration < 1 or not all(math.isfinite(n) and n >= 0 for n in numbers):
        return None
    return record


def summarize_lines(lines: Iterable[str], log_path='-') -> SummaryReport:
    """Aggregate statistics over an iterable of log lines."""
    report = SummaryReport(log_path=str(log_path))
    for line in lines:
        if not line.strip():
            continue
        record = parse_record(line)
        if record is None:
            report.unparseable_lines += 1
            continue
        report.add(record)
    return report


def summarize_log(log_path) -> SummaryReport:
    """Stream a log file line by line and aggregate its records."""
    log_path = Path(log_path)
    if not log_path.is_file():
        raise LogNotFoundError(f"log file '{log_path}' not found.")

    with open(log_path, encoding='utf-8', errors='replace') as f:
        report = summarize_lines(f, log_path)

    if report.unparseable_lines:
        logging.debug(f"Skipped {report.unparseable_lines} unparseable line(s) in {log_path}")
    return report


def format_summary(report: SummaryReport) -> str:
    """Format a summary report into a readable string."""
    if report.sample_count == 0:
        lines = [f"Log: {report.log_path}", "No entries found."]
    else:
        lines = [
            f"Log summary for {report.log_path}",
            f"Samples: {report.sample_count} (success={report.success_count}, fail={report.failure_count})",
            f"Total data written (success only): {report.total_mb_success:.3f} MB",
            f"Total measured time: {report.total_duration_s:.6f} s",
            f"Duration avg/min/max: {report.avg_duration_s:.6f} / {report.min_duration_s:.6f} / "
            f"{report.max_duration_s:.6f} s",
            f"Average throughput (success): {report.avg_throughput_mbps_success:.2f} MB/s",
        ]

    if report.unparseable_lines:
        lines.append(f"Unparseable lines skipped: {report.unparseable_lines}")
    return "\n".join(lines)


# Write prober
def _sync(fd):
    sync = getattr(os, 'fdatasync', os.fsync)
    sync(fd)


def write_zero_file(path, size_bytes, chunk_size=WRITE_CHUNK_SIZE):
    """Write size_bytes of zeros to path and force them to stable storage."""
    chunk = bytes(min(chunk_size, size_bytes))
    try:
        with open(path, 'wb') as f:
            remaining = size_bytes
            while remaining > 0:
                current_chunk = min(len(chunk), remaining)
                f.write(chunk if current_chunk == len(chunk) else chunk[:current_chunk])
                remaining -= current_chunk
            f.flush()
            _sync(f.fileno())
    except OSError as e:
        code = e.errno if e.errno is not None else 'unknown'
        raise WriteError(f"write_failed={code} ({e.strerror or e})") from e


def write_zero_file_dd(path, size_bytes):
    """Write size_bytes of zeros to path with dd, synced with fdatasync."""
    command = ['dd', 'if=/dev/zero', f'of={path}', f'bs={size_bytes}', 'count=1',
               'conv=fdatasync', 'status=none']
    result = subprocess.run(command, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
    if result.returncode != 0:
        detail = result.stderr.strip().splitlines()
        message = f"dd_failed={result.returncode}"
        if detail:
            message += f" ({detail[-1]})"
        raise WriteError(message)


WRITER_FUNCTIONS = {
    'python': write_zero_file,
    'dd': write_zero_file_dd,
}


def check_writer(writer):
    """Fail fast if the selected write backend cannot run."""
    if writer not in WRITER_FUNCTIONS:
        raise ConfigError(f"unknown writer '{writer}'", flag='-w')
    if writer == 'dd':
        require_command('dd')


def probe_file_path(target_dir, iteration, now=None):
    """Build a fresh test file path embedding the timestamp and iteration."""
    now = now or datetime.now()
    return Path(target_dir) / f"{TEST_FILE_PREFIX}_{now.strftime('%Y%m%d_%H%M%S')}_{iteration}"


def remove_test_file(path):
    """Delete a test file if present; failures are logged, never raised."""
    try:
        Path(path).unlink()
        logging.debug(f"Cleaned up: {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logging.warning(f"Could not remove test file {path}: {e}")


def now_iso():
    return datetime.now().astimezone().isoformat(timespec='seconds')


def compute_throughput(size_bytes, duration_ns):
    """MB/s for a write, or None when the duration is zero."""
    if duration_ns <= 0:
        return None
    return (size_bytes / MIB) / (duration_ns / 1e9)


def probe_once(config: RunConfig, iteration, write=None,
               clock: Callable[[], int] = time.perf_counter_ns) -> MeasurementRecord:
    """Run one create-write-measure-delete cycle and return its record."""
    write = write or WRITER_FUNCTIONS[config.writer]
    path = probe_file_path(config.target_dir, iteration)
    logging.debug(f"Iteration {iteration}: writing {config.size_bytes} bytes to {path}")

    error = None
    start_ns = clock()
    try:
        write(path, config.size_bytes)
    except (WriteError, OSError) as e:
        error = str(e)
    finally:
        end_ns = clock()
        remove_test_file(path)

    duration_ns = max(end_ns - start_ns, 0)
    if error is None:
        status, throughput, message = Status.OK, compute_throughput(config.size_bytes, duration_ns), f"file={path}"
    else:
        status, throughput, message = Status.ERROR, None, f"file={path} {error}"

    return MeasurementRecord(
        timestamp=now_iso(),
        status=status,
        iteration=iteration,
        size_spec=config.size_spec,
        size_bytes=config.size_bytes,
        duration_s=duration_ns / 1e9,
        throughput_mbps=throughput,
        message=message,
    )


def run_probe(config: RunConfig, sleep: Callable[[float], None] = time.sleep,
              write=None) -> List[MeasurementRecord]:
    """Run max_files sequential probe iterations, logging each one."""
    records = []
    for i in range(1, config.max_files + 1):
        record = probe_once(config, i, write=write)
        append_record(config.log_path, record)
        records.append(record)

        if record:
            throughput = '-' if record.throughput_mbps is None else f"{record.throughput_mbps:.2f} MB/s"
            logging.info(f"  Iteration {i}/{config.max_files}: {record.duration_s:.6f} s, {throughput}")
        else:
            logging.warning(f"Write failed on iteration {i}, see log for details.")

        if i < config.max_files and config.interval_seconds > 0:
            sleep(config.interval_seconds)

    return records


# Main function
def main(argv=None):
    """Parse arguments, run the measurement loop and/or the summary."""
    configure_logging(False)
    parser = build_parser()

    try:
        config = parse_arguments(argv, parser)
        configure_logging(config.verbose)

        if not config.summary_only:
            check_writer(config.writer)
            prepare_log(config.log_path)

            logging.info(f"Starting NAS write monitor: size={config.size_spec}, files={config.max_files}, "
                         f"interval={config.interval_seconds}s, target='{config.target_dir}', "
                         f"log='{config.log_path}'")
            records = run_probe(config)
            failures = sum(1 for r in records if not r)
            logging.info(f"Completed {len(records)} iteration(s), {failures} failed.")

        if config.summary_log_path is not None:
            logging.info(format_summary(summarize_log(config.summary_log_path)))

    except ConfigError as e:
        logging.error(f"Error: {e}")
        parser.print_usage(sys.stderr)
        return 1
    except BenchmarkError as e:
        logging.error(f"Error: {e}")
        return 1
    except KeyboardInterrupt:
        logging.info("\nRun interrupted by user.")
        return 130

    return 0


if __name__ == "__main__":
    sys.exit(main())
