"""
Smoke Tests for CLI Commands.

These tests verify that the mastery CLI commands run and report the store
state they changed. Each test works on its own JSON data directory.

Usage:
    pytest tests/smoke/test_cli_commands.py -v
    pytest tests/smoke/test_cli_commands.py -v -m smoke
"""

import json
import subprocess
import sys
from pathlib import Path

import pytest
from rich.text import Text
from typer.testing import CliRunner

from config import get_settings
from src.mastery import cli
from src.mastery.cli import app, load_lesson_file
from src.mastery.exceptions import CatalogError
from src.mastery.models import QuizModule, ReadingModule

# Mark all tests in this module as smoke tests
pytestmark = pytest.mark.smoke

# Project root
PROJECT_ROOT = Path(__file__).parent.parent.parent

runner = CliRunner()


@pytest.fixture
def data_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def lesson_file(tmp_path):
    path = tmp_path / "budgeting-101.json"
    path.write_text(
        json.dumps({
            "lessonId": "budgeting-101",
            "modules": [
                {"id": "reading-1", "type": "reading", "title": "What is a budget?"},
                {"id": "quiz-1", "type": "quiz", "masteryThreshold": 0.8},
            ],
        }),
        encoding="utf-8",
    )
    return path


def invoke(data_dir, *args, input=None):
    result = runner.invoke(
        app,
        ["--backend", "json", "--data-dir", str(data_dir), *args],
        input=input,
    )
    return result.exit_code, Text.from_ansi(result.output).plain


class TestCLIHelp:
    """Test that help commands work."""

    def test_main_help(self):
        """Main help should display without errors."""
        result = subprocess.run(
            [sys.executable, "-m", "src.mastery.cli", "--help"],
            cwd=PROJECT_ROOT,
            capture_output=True,
            text=True,
            timeout=30,
        )

        assert result.returncode == 0, f"Help failed: {result.stderr}"
        assert "progress" in result.stdout
        assert "remediation" in result.stdout

    def test_main_uses_configured_log_level(self, monkeypatch):
        levels = []
        monkeypatch.setenv("LOG_LEVEL", "DEBUG")
        monkeypatch.setattr(cli, "configure_logging", lambda level, fmt: levels.append(level))
        monkeypatch.setattr(cli, "app", lambda: None)
        get_settings.cache_clear()
        try:
            cli.main()
        finally:
            get_settings.cache_clear()

        assert levels == ["DEBUG"]


class TestProgressCommands:
    """Test module progress commands."""

    def test_progress_fresh_lesson(self, data_dir, lesson_file):
        code, output = invoke(data_dir, "progress", str(lesson_file))

        assert code == 0, output
        assert "Lesson status: not_started (0/2 modules)" in output
        assert "Can proceed: no" in output
        assert "Next module: reading-1" in output

    def test_full_lesson_flow(self, data_dir, lesson_file):
        code, output = invoke(data_dir, "complete-reading", "reading-1")
        assert code == 0
        assert "Completed reading-1 (attempt 1)" in output

        code, output = invoke(data_dir, "record-quiz", "quiz-1", "75")
        assert code == 0
        assert "Not yet mastered quiz-1 with 75%" in output

        code, output = invoke(data_dir, "record-quiz", "quiz-1", "85", "--threshold", "0.8")
        assert code == 0
        assert "Mastered quiz-1 with 85%" in output

        code, output = invoke(data_dir, "progress", str(lesson_file))
        assert code == 0
        assert "Lesson status: completed (2/2 modules)" in output
        assert "Can proceed: yes" in output
        assert "Next module" not in output

    def test_state_is_written_to_data_dir(self, data_dir):
        invoke(data_dir, "complete-reading", "reading-1")

        snapshot = json.loads((data_dir / "quantara_module_progress.json").read_text())
        assert snapshot["reading-1"]["masteryAchieved"] is True

    def test_reset_module(self, data_dir, lesson_file):
        invoke(data_dir, "complete-reading", "reading-1")
        code, output = invoke(data_dir, "reset-module", "reading-1")
        assert code == 0

        code, output = invoke(data_dir, "progress", str(lesson_file))
        assert "Lesson status: not_started" in output

    def test_bad_lesson_file(self, data_dir, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text('{"modules": [{"id": "x", "type": "video"}]}', encoding="utf-8")

        code, output = invoke(data_dir, "progress", str(bad))

        assert code == 1
        assert "Invalid lesson module list" in output


class TestRemediationCommands:
    """Test remediation commands."""

    def test_no_pending_remediation(self, data_dir):
        code, output = invoke(data_dir, "remediation")

        assert code == 0
        assert "No pending remediation" in output
        assert "Remediation gate: yes" in output

    def test_fail_then_remediate(self, data_dir):
        code, output = invoke(data_dir, "fail", "q1", "concept-budget", "mcq", "lesson-1", "--variant", "variant-9")
        assert code == 0
        assert "Remediation required for concept-budget" in output

        code, output = invoke(data_dir, "remediation", "--lesson", "lesson-1")
        assert "Pending concepts: 1" in output
        assert "Remediation gate: no" in output

        code, output = invoke(data_dir, "remediate", "concept-budget")
        assert code == 0
        assert "Remediated concept-budget" in output

        code, output = invoke(data_dir, "remediation")
        assert "Remediation gate: yes" in output

    def test_remediate_unknown_concept(self, data_dir):
        code, output = invoke(data_dir, "remediate", "never-failed")

        assert code == 0
        assert "No remediation entry for never-failed" in output

    def test_clear_requires_confirmation(self, data_dir):
        invoke(data_dir, "fail", "q1", "c1", "mcq", "lesson-1")

        code, _ = invoke(data_dir, "clear", input="n\n")
        assert code == 0
        _, output = invoke(data_dir, "remediation")
        assert "Pending concepts: 1" in output

        code, output = invoke(data_dir, "clear", "--yes")
        assert code == 0
        _, output = invoke(data_dir, "remediation")
        assert "No pending remediation" in output


class TestLoadLessonFile:
    def test_bare_list_uses_file_stem(self, tmp_path):
        path = tmp_path / "saving-201.json"
        path.write_text(json.dumps([{"id": "r1", "type": "reading"}, {"id": "q1", "type": "quiz"}]))

        lesson_id, modules = load_lesson_file(path)

        assert lesson_id == "saving-201"
        assert [type(m) for m in modules] == [ReadingModule, QuizModule]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{")

        with pytest.raises(CatalogError):
            load_lesson_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(CatalogError):
            load_lesson_file(tmp_path / "missing.json")
