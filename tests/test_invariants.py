"""Tests for the config invariant checker — proves shipped policy passes and bad VAT tables fail."""

from check_invariants import check, check_transitions, check_vat


class TestShippedConfig:
    def test_passes(self, capsys) -> None:
        assert check() == 0
        assert "Invariant check passed." in capsys.readouterr().out


class TestVatChecks:
    def test_overlap_reported(self) -> None:
        errors: list[str] = []
        check_vat([
            {"country_code": "GB", "percentage": "17.5", "effective_from": "2010-01-01", "effective_to": "2011-01-04"},
            {"country_code": "GB", "percentage": "20", "effective_from": "2011-01-04", "effective_to": None},
        ], errors)
        assert errors == ["VAT GB periods overlap at 2011-01-04"]

    def test_two_open_periods_reported(self) -> None:
        errors: list[str] = []
        check_vat([
            {"country_code": "DE", "percentage": "16", "effective_from": "2020-07-01"},
            {"country_code": "DE", "percentage": "19", "effective_from": "2021-01-01"},
        ], errors)
        assert "VAT DE has more than one open-ended rate" in errors

    def test_bad_percentage_reported(self) -> None:
        errors: list[str] = []
        check_vat([{"country_code": "IL", "percentage": "abc", "effective_from": "2025-01-01"}], errors)
        assert errors == ["VAT rate for IL has an invalid percentage"]


class TestTransitionChecks:
    def test_missing_target_and_unknown_role(self) -> None:
        errors: list[str] = []
        check_transitions("run", {"created": {"roles": ["auditor"]}}, {"created", "failed"}, errors)
        assert "run transition policy missing target: failed" in errors
        assert any("unknown roles" in e for e in errors)
