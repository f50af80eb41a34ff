from click.testing import CliRunner

from cli import cli


def test_cli_lists_commands():
    result = CliRunner().invoke(cli, ["--help"])

    assert result.exit_code == 0
    assert "stream" in result.output
    assert "sync" in result.output


def test_stream_requires_symbols():
    result = CliRunner().invoke(cli, ["stream"])

    assert result.exit_code != 0
    assert "SYMBOLS" in result.output


def test_sync_without_account_id_exits_with_error(monkeypatch):
    monkeypatch.delenv("METAAPI__ACCOUNT_ID", raising=False)
    monkeypatch.setenv("LOGGING__CONSOLE_ENABLED", "false")

    result = CliRunner().invoke(cli, ["sync"])

    assert result.exit_code == 1
    assert "No account ID configured" in result.output
