from __future__ import annotations

from pathlib import Path

import pytest

from prwarden.config import QualityGateConfig
from prwarden.quality_gates import QualityGateRunner, _tail
from prwarden.shell import CommandError


def test_gates_run_configured_argv_in_working_dir(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    calls: list[tuple[list[str], object]] = []

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        calls.append((cmd, kwargs.get("cwd")))
        return ""

    monkeypatch.setattr("prwarden.quality_gates.run", fake_run)
    runner = QualityGateRunner(
        tmp_path,
        QualityGateConfig(
            test_command=("pytest", "-x"),
            type_check_command=("mypy", "src"),
            lint_command=("ruff", "check", "src"),
        ),
    )

    assert runner.run_tests().passed
    assert runner.run_type_check().passed
    assert runner.run_lint().passed
    assert calls == [
        (["pytest", "-x"], tmp_path),
        (["mypy", "src"], tmp_path),
        (["ruff", "check", "src"], tmp_path),
    ]


def test_gate_failure_is_returned_as_data(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        raise CommandError(
            "Command failed",
            argv=tuple(cmd),
            exit_code=1,
            stdout="FAILED tests/test_x.py::test_y\n",
            stderr="",
        )

    monkeypatch.setattr("prwarden.quality_gates.run", fake_run)

    result = QualityGateRunner(tmp_path, QualityGateConfig()).run_tests()

    assert result.passed is False
    assert len(result.errors) == 1
    assert "tests failed with exit code 1" in result.errors[0]
    assert "FAILED tests/test_x.py::test_y" in result.errors[0]


def test_missing_gate_command_is_a_failure(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path
) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr("prwarden.quality_gates.run", fake_run)

    result = QualityGateRunner(tmp_path, QualityGateConfig()).run_lint()

    assert result.passed is False
    assert result.errors == ("lint command not found: ruff",)


def test_tail_keeps_last_lines() -> None:
    assert _tail("") == "<no output>"
    assert _tail("\n".join(str(i) for i in range(100)), max_lines=2) == "98\n99"
