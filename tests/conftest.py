"""
Pytest fixtures for nas_write_benchmark tests
"""

import logging

import pytest


@pytest.fixture(autouse=True)
def restore_root_logger():
    """
    main() resets the root logger handlers; put them back after each test so
    handlers bound to a captured stream do not leak into later tests.
    """
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def make_line():
    """
    Factory building a serialized log line the way the appender writes it.
    Fields can be overridden one by one.
    """
    def _make_line(status='OK', iteration=1, size_spec='1M', size_bytes=1048576,
                   duration='1.000000', throughput='1.00', message='file=/mnt/nas/test',
                   timestamp='2026-10-18T10:00:00+00:00'):
        return '\t'.join([
            timestamp,
            f"status={status}",
            f"iteration={iteration}",
            f"size={size_spec} ({size_bytes} bytes)",
            f"duration_s={duration}",
            f"throughput_MBps={throughput}",
            message,
        ]) + '\n'

    return _make_line


@pytest.fixture
def measure_argv(tmp_path):
    """
    Factory for a valid measurement-mode argv writing into tmp_path.
    Returns (argv, target_dir, log_path).
    """
    def _measure_argv(size='1K', files='2', interval='0', extra=()):
        target = tmp_path / 'nas'
        target.mkdir(exist_ok=True)
        log_path = tmp_path / 'logs' / 'bench.log'
        argv = ['-s', size, '-n', files, '-i', interval, '-l', str(log_path), '-d', str(target)]
        return argv + list(extra), target, log_path

    return _measure_argv
