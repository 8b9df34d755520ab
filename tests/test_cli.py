"""Tests for the duel CLI — proves commands parse and dispatch."""

import pytest

from duel.cli import build_parser, main

VALID = "BTC,ETH,DOGE,TRX,SHIB,PEPE,HYPE"
OVER_BUDGET = "BTC,ETH,SOL,ADA,DOGE,TRX,PEPE"


class TestCLIParsing:
    def test_create_command(self) -> None:
        args = build_parser().parse_args([
            "create", "--assets", VALID,
            "--leader", "BTC", "--co-leader", "ETH", "--token-id", "3",
        ])
        assert args.command == "create"
        assert args.token_id == 3
        assert args.co_leader == "ETH"

    def test_join_requires_match(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args([
                "join", "--assets", VALID, "--token-id", "3",
            ])

    def test_force_expire_match(self) -> None:
        args = build_parser().parse_args(["force-expire", "--match", "7"])
        assert args.command == "force-expire"
        assert args.match == 7

    def test_reveal_defaults_to_active_match(self) -> None:
        args = build_parser().parse_args(["reveal"])
        assert args.match is None

    def test_global_options(self) -> None:
        args = build_parser().parse_args(["-v", "--address", "0xabc", "status"])
        assert args.verbose
        assert args.address == "0xabc"


class TestCLIExecution:
    def test_no_command_shows_help(self) -> None:
        assert main([]) == 0

    def test_validate_valid_portfolio(self, capsys) -> None:
        exit_code = main(["validate", "--assets", VALID, "--leader", "BTC", "--co-leader", "ETH"])
        assert exit_code == 0
        assert "Cost: 88/100" in capsys.readouterr().out

    def test_validate_over_budget(self, capsys) -> None:
        exit_code = main([
            "validate", "--assets", OVER_BUDGET, "--leader", "btc", "--co-leader", "eth",
        ])
        assert exit_code == 2
        captured = capsys.readouterr()
        assert "Cost: 105/100" in captured.out
        assert "Budget exceeded: 105/100" in captured.err

    def test_validate_missing_leader(self, capsys) -> None:
        exit_code = main(["validate", "--assets", VALID, "--co-leader", "ETH"])
        assert exit_code == 2
        assert "Choose a Leader" in capsys.readouterr().err

    def test_assets_lists_catalog(self, capsys) -> None:
        assert main(["assets"]) == 0
        out = capsys.readouterr().out
        assert "BTC" in out and "Bitcoin" in out

    def test_ledger_command_without_identity_fails_cleanly(
        self, capsys, monkeypatch, tmp_path,
    ) -> None:
        monkeypatch.delenv("DUEL_PRIVATE_KEY", raising=False)
        monkeypatch.setenv("DUEL_DATA_DIR", str(tmp_path))
        env_file = tmp_path / "empty.env"
        env_file.write_text("", encoding="utf-8")
        exit_code = main(["--env-file", str(env_file), "show", "--match", "1"])
        assert exit_code == 1
        assert "Failed:" in capsys.readouterr().err
