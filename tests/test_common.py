#!/usr/bin/env python3
"""Tests for common.py - shared utilities.

Tests verify:
1. run_command execution and error handling
2. Environment layering and timeouts
3. safe_filename mapping of state keys
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import run_command, safe_filename


class TestRunCommand:
    """Test run_command utility."""

    def test_returns_success_tuple(self):
        """Should return (returncode, stdout, stderr) on success."""
        rc, stdout, stderr = run_command(['echo', 'hello'])
        assert rc == 0
        assert 'hello' in stdout
        assert stderr == ''

    def test_returns_failure_tuple(self):
        """Should return non-zero returncode on failure."""
        rc, stdout, stderr = run_command(['false'])
        assert rc != 0

    def test_captures_stderr(self):
        """Should capture stderr."""
        rc, stdout, stderr = run_command(['sh', '-c', 'echo error >&2'])
        assert 'error' in stderr

    def test_respects_cwd(self, tmp_path):
        """Should run command in specified directory."""
        (tmp_path / 'marker.txt').write_text('found')
        rc, stdout, stderr = run_command(['cat', 'marker.txt'], cwd=tmp_path)
        assert rc == 0
        assert 'found' in stdout

    def test_timeout_returns_error(self):
        """Should return error on timeout."""
        rc, stdout, stderr = run_command(['sleep', '10'], timeout=1)
        assert rc == -1
        assert 'timed out' in stderr.lower()

    def test_env_layered_over_process_env(self, monkeypatch):
        """Extra env entries should be added without dropping PATH."""
        monkeypatch.setenv('OUTER_VAR', 'outer')
        rc, stdout, stderr = run_command(
            ['sh', '-c', 'echo $TEST_VAR $OUTER_VAR'],
            env={'TEST_VAR': 'test_value'},
        )
        assert rc == 0
        assert 'test_value outer' in stdout

    def test_env_values_stringified(self):
        """Non-string env values should be converted."""
        rc, stdout, stderr = run_command(['sh', '-c', 'echo $PORT'], env={'PORT': 8080})
        assert '8080' in stdout

    def test_missing_executable(self):
        """A command that cannot be started should return -1."""
        rc, stdout, stderr = run_command(['/nonexistent/binary'])
        assert rc == -1
        assert stderr


class TestSafeFilename:
    """Test safe_filename mapping."""

    def test_filesystem_safe(self):
        """Path separators and URL characters should be replaced."""
        name = safe_filename('https://state.example/v1/s?x=1')
        assert '/' not in name
        assert ':' not in name
        assert '?' not in name

    def test_distinct_keys_distinct_names(self):
        """Keys that sanitize identically should still differ."""
        assert safe_filename('a/b') != safe_filename('a_b')

    def test_stable(self):
        """Same key should always map to the same name."""
        assert safe_filename('/tmp/x.tfstate') == safe_filename('/tmp/x.tfstate')

    def test_bounded_length(self):
        """Long keys should produce short names."""
        assert len(safe_filename('/very/' * 50 + 'deep.tfstate')) <= 60
