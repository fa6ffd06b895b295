"""Tests for config and common modules."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from common import OperationResult, format_duration
from config import ConfigError, get_stacks_dir, get_state_dir, parse_yaml


class TestDirectories:
    """Tests for directory discovery."""

    def test_stacks_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv('AIRSTACK_STACKS_DIR', str(tmp_path))
        assert get_stacks_dir() == tmp_path

    def test_stacks_dir_env_must_exist(self, tmp_path, monkeypatch):
        monkeypatch.setenv('AIRSTACK_STACKS_DIR', str(tmp_path / 'missing'))
        with pytest.raises(ConfigError, match='does not exist'):
            get_stacks_dir()

    def test_default_stacks_dir(self, monkeypatch):
        monkeypatch.delenv('AIRSTACK_STACKS_DIR', raising=False)
        assert get_stacks_dir().name == 'stacks'

    def test_state_dir(self, tmp_path, monkeypatch):
        monkeypatch.setenv('AIRSTACK_STATE_DIR', str(tmp_path / 'states'))
        assert get_state_dir() == tmp_path / 'states'
        monkeypatch.delenv('AIRSTACK_STATE_DIR')
        assert get_state_dir().name == '.states'


class TestParseYaml:
    """Tests for parse_yaml."""

    def test_mapping(self, tmp_path):
        path = tmp_path / 'a.yaml'
        path.write_text('name: demo\n')
        assert parse_yaml(path) == {'name': 'demo'}

    def test_empty_file(self, tmp_path):
        path = tmp_path / 'a.yaml'
        path.write_text('')
        assert parse_yaml(path) == {}

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / 'a.yaml'
        path.write_text('- one\n- two\n')
        with pytest.raises(ConfigError, match='YAML object'):
            parse_yaml(path)


class TestCommon:
    """Tests for shared result types and helpers."""

    def test_operation_result_defaults(self):
        result = OperationResult(success=True)
        assert result.outputs == {}
        assert result.not_found is False

    @pytest.mark.parametrize('seconds,expected', [
        (None, '-'),
        (1.234, '1.2s'),
        (185, '3m05s'),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected
