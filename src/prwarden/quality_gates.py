from __future__ import annotations

import logging
from pathlib import Path

from prwarden.config import QualityGateConfig
from prwarden.models import QualityResult
from prwarden.observability import log_event
from prwarden.shell import CommandError, run


LOGGER = logging.getLogger("prwarden.quality_gates")
_OUTPUT_TAIL_LINES = 40


class QualityGateRunner:
    """Runs the test, type-check and lint commands; failures come back as data."""

    def __init__(self, working_dir: Path, config: QualityGateConfig) -> None:
        self.working_dir = working_dir
        self.config = config

    def run_tests(self) -> QualityResult:
        return self._run_gate("tests", self.config.test_command)

    def run_type_check(self) -> QualityResult:
        return self._run_gate("type_check", self.config.type_check_command)

    def run_lint(self) -> QualityResult:
        return self._run_gate("lint", self.config.lint_command)

    def _run_gate(self, gate: str, argv: tuple[str, ...]) -> QualityResult:
        log_event(LOGGER, "quality_gate_started", gate=gate, command=" ".join(argv))
        try:
            run(list(argv), cwd=self.working_dir)
        except CommandError as exc:
            output = _tail(exc.stdout + exc.stderr)
            log_event(LOGGER, "quality_gate_failed", gate=gate, exit_code=exc.exit_code)
            return QualityResult(
                passed=False,
                errors=(f"{gate} failed with exit code {exc.exit_code}:\n{output}",),
            )
        except FileNotFoundError:
            log_event(LOGGER, "quality_gate_failed", gate=gate, exit_code=None)
            return QualityResult(passed=False, errors=(f"{gate} command not found: {argv[0]}",))
        log_event(LOGGER, "quality_gate_passed", gate=gate)
        return QualityResult(passed=True)


def _tail(text: str, *, max_lines: int = _OUTPUT_TAIL_LINES) -> str:
    lines = text.strip().splitlines()
    if not lines:
        return "<no output>"
    return "\n".join(lines[-max_lines:])
