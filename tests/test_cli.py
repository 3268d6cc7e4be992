"""Tests for FundOps CLI — proves CLI dispatches correctly."""

import json
from pathlib import Path

import pytest

from fundops.cli import build_parser, main


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _batch() -> dict:
    return {
        "ruleset": {
            "version": "2025.1",
            "rules": [
                {
                    "rule_id": "fee",
                    "name": "Fund fee",
                    "variant": "percentage",
                    "rate": "0.01",
                    "effective_from": "2025-01-01",
                    "fund_id": "f1",
                    "combinable": True,
                },
                {
                    "rule_id": "net",
                    "variant": "credit_netting",
                    "effective_from": "2025-01-01",
                    "priority": 200,
                    "combinable": True,
                },
            ],
        },
        "contributions": [
            {
                "contribution_id": "c-1",
                "investor_id": "inv-1",
                "amount": "100000",
                "contribution_date": "2025-02-01",
                "fund_id": "f1",
            },
        ],
        "credits": [
            {
                "credit_id": "cr-1",
                "investor_id": "inv-1",
                "credit_type": "repurchase",
                "scope": "FUND",
                "fund_id": "f1",
                "original_amount": "250",
                "created_at": "2025-01-01T00:00:00+00:00",
            },
        ],
    }


@pytest.fixture
def batch_file(tmp_path: Path) -> Path:
    path = tmp_path / "batch.json"
    path.write_text(json.dumps(_batch()), encoding="utf-8")
    return path


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"

    def test_evaluate_command(self) -> None:
        args = build_parser().parse_args(["evaluate", "--input", "batch.json"])
        assert args.command == "evaluate"
        assert args.input == Path("batch.json")

    def test_vat_lookup_command(self) -> None:
        args = build_parser().parse_args(["vat-lookup", "--country", "GB", "--date", "2025-03-01"])
        assert args.country == "GB"
        assert args.date == "2025-03-01"

    def test_global_options(self) -> None:
        args = build_parser().parse_args(["--config", "cfg", "-v", "status"])
        assert args.config == Path("cfg")
        assert args.verbose


class TestCLIExecution:
    def test_status_runs(self, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "status"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["policy_version"] == "2025.1"
        assert status["persistence_degraded"] is False

    def test_status_with_data_dir(self, tmp_path: Path, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "--data", str(tmp_path / "data"), "status"]) == 0
        assert (tmp_path / "data").is_dir()

    def test_check_config_runs(self, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "check-config"]) == 0
        assert "Config check passed" in capsys.readouterr().out

    def test_check_config_flags_bad_role(self, tmp_path: Path, capsys) -> None:
        policy = json.loads((CONFIG_DIR / "engine_policy.json").read_text(encoding="utf-8"))
        policy["transitions"]["charge"]["paid"]["roles"] = ["treasurer"]
        (tmp_path / "engine_policy.json").write_text(json.dumps(policy), encoding="utf-8")
        assert main(["--config", str(tmp_path), "check-config"]) == 1
        assert "charge → paid" in capsys.readouterr().out

    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0

    def test_vat_lookup(self, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "vat-lookup", "--country", "gb", "--date", "2011-01-03"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["percentage"] == "17.5"
        assert out["effective_to"] == "2011-01-03"

    def test_vat_lookup_missing_rate(self, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "vat-lookup", "--country", "FR", "--date", "2025-01-01"]) == 1
        assert "Failed" in capsys.readouterr().err

    def test_evaluate_previews_netting(self, batch_file: Path, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "evaluate", "--input", str(batch_file)]) == 0
        out = json.loads(capsys.readouterr().out)
        assert [line["rule_id"] for line in out["lines"]] == ["fee", "net"]
        assert out["lines"][1]["fee_gross"] == "-250"
        assert out["ruleset_checksum"].startswith("sha256:")

    def test_evaluate_rejects_float_amounts(self, tmp_path: Path, capsys) -> None:
        batch = _batch()
        batch["contributions"][0]["amount"] = 100000.5
        path = tmp_path / "bad.json"
        path.write_text(json.dumps(batch), encoding="utf-8")
        assert main(["--config", str(CONFIG_DIR), "evaluate", "--input", str(path)]) == 1
        assert "floats are not accepted" in capsys.readouterr().err

    def test_run_hash_stable_under_reordering(self, tmp_path: Path, capsys) -> None:
        batch = _batch()
        batch["contributions"].append({
            "contribution_id": "c-2",
            "investor_id": "inv-0",
            "amount": "5",
            "contribution_date": "2025-02-02",
        })
        hashes = []
        for i, contributions in enumerate((batch["contributions"], batch["contributions"][::-1])):
            path = tmp_path / f"batch{i}.json"
            path.write_text(json.dumps({**batch, "contributions": contributions}), encoding="utf-8")
            assert main(["--config", str(CONFIG_DIR), "run-hash", "--input", str(path)]) == 0
            hashes.append(json.loads(capsys.readouterr().out)["run_hash"])
        assert hashes[0] == hashes[1]

    def test_missing_input_file(self, tmp_path: Path, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "run-hash", "--input", str(tmp_path / "none.json")]) == 1
