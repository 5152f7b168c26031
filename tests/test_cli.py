"""
Tests for the click CLI.

These tests verify command wiring, configuration error reporting and the
operator commands. The monitor and uvicorn are mocked so no network or
mailbox is touched.
"""
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from automation_hub.cli import cli
from automation_hub.monitor import TickResult


@pytest.fixture
def runner():
    return CliRunner()


def test_help_lists_commands(runner):
    result = runner.invoke(cli, ['--help'])

    assert result.exit_code == 0
    for command in ('run', 'check', 'validate-config', 'extract'):
        assert command in result.output


def test_version(runner):
    result = runner.invoke(cli, ['--version'])
    assert result.exit_code == 0
    assert 'automation-hub' in result.output


def test_validate_config(runner, config_file, tmp_path):
    result = runner.invoke(cli, ['--config', str(config_file), '--env', str(tmp_path / 'none.env'),
                                 'validate-config'])

    assert result.exit_code == 0, result.output
    assert 'Processors (3):' in result.output
    assert "cloudflare: from='notify.cloudflare.com'" in result.output
    assert 'mark_read=yes' in result.output
    assert 'github' in result.output and 'mark_read=no' in result.output
    assert 'POST /webhook/qbitorrent -> chat 444' in result.output


def test_missing_config_file(runner, tmp_path):
    result = runner.invoke(cli, ['--config', str(tmp_path / 'missing.yaml'), 'validate-config'])

    assert result.exit_code == 1
    assert 'Configuration error' in result.output


def test_extract_prints_code(runner, config_file, tmp_path):
    message = tmp_path / 'message.txt'
    message.write_text('Your Cloudflare verification code is 482913', encoding='utf-8')

    result = runner.invoke(cli, ['--config', str(config_file), 'extract', '--processor', 'cloudflare', str(message)])

    assert result.exit_code == 0, result.output
    assert result.output.strip().splitlines()[-1] == '482913'


def test_extract_marker_gated_not_found(runner, config_file, tmp_path):
    message = tmp_path / 'message.txt'
    message.write_text('Your sign-in code is 123456', encoding='utf-8')

    result = runner.invoke(cli, ['--config', str(config_file), 'extract', '-p', 'Perplexity', str(message)])

    assert result.exit_code == 0, result.output
    assert result.output.strip().splitlines()[-1] == 'Not found'


def test_extract_unknown_processor(runner, config_file, tmp_path):
    message = tmp_path / 'message.txt'
    message.write_text('123456', encoding='utf-8')

    result = runner.invoke(cli, ['--config', str(config_file), 'extract', '-p', 'nope', str(message)])

    assert result.exit_code == 1
    assert 'Unknown processor: nope' in result.output


@patch('automation_hub.cli.EmailMonitor')
def test_check_prints_summary(mock_monitor_class, runner, config_file):
    mock_monitor_class.return_value.check_emails.return_value = TickResult(found=2, processed=1, ignored=1)

    result = runner.invoke(cli, ['--config', str(config_file), 'check'])

    assert result.exit_code == 0, result.output
    assert 'Tick completed: found=2, processed=1' in result.output


@patch('automation_hub.cli.EmailMonitor')
def test_check_aborted_exits_nonzero(mock_monitor_class, runner, config_file):
    mock_monitor_class.return_value.check_emails.return_value = TickResult(aborted=True)

    result = runner.invoke(cli, ['--config', str(config_file), 'check'])

    assert result.exit_code == 1


@patch('automation_hub.cli.uvicorn.run')
@patch('automation_hub.cli.EmailMonitor')
def test_run_starts_monitor_and_server(mock_monitor_class, mock_uvicorn_run, runner, config_file):
    result = runner.invoke(cli, ['--config', str(config_file), 'run'])

    assert result.exit_code == 0, result.output
    mock_monitor_class.return_value.run.assert_called_once()
    stop_event = mock_monitor_class.return_value.run.call_args[0][0]
    assert stop_event.is_set()
    _, kwargs = mock_uvicorn_run.call_args
    assert kwargs['host'] == '127.0.0.1'
    assert kwargs['port'] == 8080
