"""Tests for the command line entry point."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from escrow_engine.__main__ import SWEEPS, build_parser, main


class TestParser:
    def test_sweep_names(self) -> None:
        args = build_parser().parse_args(["sweep", "expiry"])

        assert (args.command, args.name) == ("sweep", "expiry")

    def test_unknown_sweep_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["sweep", "everything"])

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestMain:
    """Tests for main()."""

    def test_show_config_is_redacted(self, env, monkeypatch: pytest.MonkeyPatch, capsys) -> None:
        monkeypatch.setenv("CHAIN_API_TOKEN", "chain-token-123")

        assert main(["show-config"]) == 0

        output = capsys.readouterr().out
        summary = json.loads(output)
        assert summary["custody"]["master_key"] == "(set)"
        assert "chain-token-123" not in output
        assert "4f3c2a1b" not in output

    def test_init_db_creates_schema(self, env, tmp_path) -> None:
        assert main(["init-db"]) == 0

        assert (tmp_path / "escrow.db").exists()

    @pytest.mark.parametrize("name", SWEEPS)
    def test_sweep_dispatch(self, env, name: str) -> None:
        with patch("escrow_engine.__main__._sweep", new=AsyncMock(return_value=0)) as sweep:
            assert main(["sweep", name]) == 0

        assert sweep.await_args.args[1] == name
