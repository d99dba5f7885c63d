from pathlib import Path

import pytest
import structlog

from chat_scraper.cli import build_parser, main


@pytest.fixture(autouse=True)
def restore_structlog():
    yield
    structlog.reset_defaults()


def test_parser_defaults():
    args = build_parser().parse_args([])
    assert args.config == Path("config.toml")
    assert args.log_level == "INFO"
    assert args.json_logs is False


def test_invalid_config_exits_with_status_2(tmp_path, capsys):
    config_path = tmp_path / "config.toml"
    config_path.write_text("streamers = []\n", encoding="utf-8")

    assert main(["--config", str(config_path), "--json-logs"]) == 2
    assert "Streamers list cannot be empty" in capsys.readouterr().err
