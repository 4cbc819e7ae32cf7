#!/usr/bin/env python

import pytest

import nas_write_benchmark
from nas_write_benchmark import main, parse_record


def tree(path):
    return sorted(str(p.relative_to(path)) for p in path.rglob('*'))


class TestCli:
    """
    Test the command-line entry point
    """

    def test_measurement_run(self, measure_argv, capsys):
        """a run appends one line per file and leaves the target clean"""
        argv, target, log_path = measure_argv(files='3')
        assert main(argv) == 0

        lines = log_path.read_text().splitlines()
        assert [parse_record(line).iteration for line in lines] == [1, 2, 3]
        assert list(target.iterdir()) == []
        captured = capsys.readouterr()
        assert "Starting NAS write monitor: size=1K, files=3" in captured.out
        assert captured.err == ""

    def test_measurement_then_summary(self, measure_argv, capsys):
        """-S with measurement flags summarizes after the loop"""
        argv, _, log_path = measure_argv(files='2')
        assert main(argv + ['-S', str(log_path)]) == 0
        out = capsys.readouterr().out
        assert f"Log summary for {log_path}" in out
        assert "Samples: 2 (success=2, fail=0)" in out

    def test_creates_log_directory(self, measure_argv):
        argv, _, log_path = measure_argv(files='1')
        assert not log_path.parent.exists()
        assert main(argv) == 0
        assert log_path.is_file()

    def test_summary_only_touches_nothing(self, tmp_path, make_line, capsys):
        """-S alone only reads the log"""
        log_path = tmp_path / 'bench.log'
        log_path.write_text(make_line() + make_line(status='ERROR', throughput='-'))
        before = tree(tmp_path)
        content = log_path.read_bytes()

        assert main(['-S', str(log_path)]) == 0

        assert tree(tmp_path) == before
        assert log_path.read_bytes() == content
        assert "Samples: 2 (success=1, fail=1)" in capsys.readouterr().out

    def test_summary_goes_to_stdout(self, tmp_path, make_line, capsys):
        """the report is on stdout so it can be redirected, stderr stays empty"""
        log_path = tmp_path / 'bench.log'
        log_path.write_text(make_line())
        assert main(['-S', str(log_path)]) == 0
        captured = capsys.readouterr()
        assert captured.out.startswith(f"Log summary for {log_path}\n")
        assert captured.err == ""

    def test_summary_empty_log(self, tmp_path, capsys):
        log_path = tmp_path / 'empty.log'
        log_path.write_text('')
        assert main(['-S', str(log_path)]) == 0
        assert "No entries found." in capsys.readouterr().out

    def test_summary_missing_log(self, tmp_path, capsys):
        """summarizing a nonexistent log exits 1"""
        assert main(['-S', str(tmp_path / 'missing.log')]) == 1
        assert "not found" in capsys.readouterr().err
        assert list(tmp_path.iterdir()) == []

    def test_no_arguments(self, capsys):
        """no flags prints an error and usage"""
        assert main([]) == 1
        err = capsys.readouterr().err
        assert "Error: -s, -n, -i and -l are required" in err
        assert "usage:" in err

    def test_bad_count(self, measure_argv, capsys):
        argv, _, log_path = measure_argv(files='0')
        assert main(argv) == 1
        assert "-n expects a positive integer" in capsys.readouterr().err
        assert not log_path.exists()

    def test_missing_target_dir(self, measure_argv, tmp_path, capsys):
        """a missing target directory is fatal before any side effect"""
        argv, _, log_path = measure_argv(extra=['-d', str(tmp_path / 'missing')])
        assert main(argv) == 1
        assert "does not exist" in capsys.readouterr().err
        assert not log_path.exists()

    def test_missing_dd(self, measure_argv, monkeypatch, capsys):
        """the dd backend without dd fails before writing anything"""
        monkeypatch.setattr(nas_write_benchmark.shutil, 'which', lambda cmd: None)
        argv, target, log_path = measure_argv(extra=['-w', 'dd'])
        assert main(argv) == 1
        assert "required command 'dd' not found" in capsys.readouterr().err
        assert not log_path.exists()
        assert list(target.iterdir()) == []

    def test_write_failures_do_not_fail_the_run(self, measure_argv, monkeypatch, capsys):
        """per-iteration failures are logged but the exit code stays 0"""
        def _fail(path, size_bytes):
            raise nas_write_benchmark.WriteError("write_failed=5 (Input/output error)")

        monkeypatch.setitem(nas_write_benchmark.WRITER_FUNCTIONS, 'python', _fail)
        argv, _, log_path = measure_argv(files='2')
        assert main(argv) == 0

        lines = log_path.read_text().splitlines()
        assert all("\tstatus=ERROR\t" in line for line in lines)
        captured = capsys.readouterr()
        assert "Write failed on iteration 1, see log for details." in captured.err
        assert "Write failed on iteration 2, see log for details." in captured.err
        assert "Write failed" not in captured.out

    def test_newline_in_flag_values(self, measure_argv, capsys):
        """values ending in a newline are rejected before any log line is written"""
        argv, target, log_path = measure_argv(size='1K\n', files='1\n', interval='0\n')
        assert main(argv) == 1
        assert "-n expects a positive integer" in capsys.readouterr().err
        assert not log_path.exists()
        assert list(target.iterdir()) == []

    def test_interrupt(self, measure_argv, monkeypatch):
        """Ctrl-C exits 130"""
        def _interrupt(config, sleep=None, write=None):
            raise KeyboardInterrupt()

        monkeypatch.setattr(nas_write_benchmark, 'run_probe', _interrupt)
        argv, _, _ = measure_argv()
        assert main(argv) == 130

    def test_help(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(['-h'])
        assert excinfo.value.code == 0
        assert "-S summary_log_path" in capsys.readouterr().out
