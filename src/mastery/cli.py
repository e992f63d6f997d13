"""
Mastery CLI: inspect and administer a learner's progress store.

Commands:
- mastery progress LESSON_FILE   - Module table, lesson status and gates
- mastery complete-reading ID    - Mark a reading module completed
- mastery record-quiz ID SCORE   - Record a quiz score
- mastery remediation            - Pending remediation entries
- mastery fail ...               - Register a wrong answer
- mastery remediate CONCEPT      - Clear a concept's remediation
- mastery reset-module ID        - Forget one module
- mastery clear                  - Erase all progress and remediation
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config import Settings, StorageBackend, get_settings
from src.mastery.engine import MasteryEngine
from src.mastery.exceptions import CatalogError
from src.mastery.logging_setup import configure_logging
from src.mastery.models import (
    CompletionStatus,
    LessonModule,
    ScoredRecord,
    parse_lesson_modules,
)

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="mastery",
    help="Mastery progression and remediation store",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    CompletionStatus.NOT_STARTED: "dim",
    CompletionStatus.IN_PROGRESS: "yellow",
    CompletionStatus.COMPLETED: "green",
}


def load_lesson_file(path: Path) -> tuple[str, list[LessonModule]]:
    """
    Read a lesson catalog file.

    Accepts {"lessonId": ..., "modules": [...]} or a bare module list
    (lesson id taken from the file name).

    Raises:
        CatalogError: If the file is unreadable or malformed
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise CatalogError(f"Cannot read lesson file {path}: {exc}") from exc

    if isinstance(data, list):
        return Path(path).stem, parse_lesson_modules(data)
    if isinstance(data, dict) and isinstance(data.get("modules"), list):
        lesson_id = data.get("lessonId") or data.get("id") or Path(path).stem
        return str(lesson_id), parse_lesson_modules(data["modules"])
    raise CatalogError(f"Lesson file {path} must hold a module list or an object with 'modules'")


def _open_engine(ctx: typer.Context) -> MasteryEngine:
    opts = ctx.obj or {}
    overrides = {}
    if opts.get("backend") is not None:
        overrides["storage_backend"] = opts["backend"]
    if opts.get("data_dir") is not None:
        overrides["data_dir"] = opts["data_dir"]
    settings = Settings(**overrides) if overrides else get_settings()
    # Short-lived process: write inline so nothing is lost on exit
    return MasteryEngine(settings=settings, background=False)


def _yes_no(value: bool) -> str:
    return "[green]yes[/green]" if value else "[red]no[/red]"


@app.callback()
def main_options(
    ctx: typer.Context,
    backend: Optional[StorageBackend] = typer.Option(
        None,
        "--backend", "-b",
        help="Storage backend (defaults to STORAGE_BACKEND)",
    ),
    data_dir: Optional[Path] = typer.Option(
        None,
        "--data-dir", "-d",
        help="Data directory (defaults to DATA_DIR)",
    ),
) -> None:
    ctx.obj = {"backend": backend, "data_dir": data_dir}


# =============================================================================
# Progress Commands
# =============================================================================


@app.command()
def progress(
    ctx: typer.Context,
    lesson_file: Path = typer.Argument(..., help="Lesson catalog JSON file"),
) -> None:
    """Show module progress, access and gates for a lesson."""
    try:
        lesson_id, modules = load_lesson_file(lesson_file)
    except CatalogError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]")
        raise typer.Exit(1)

    with _open_engine(ctx) as engine:
        view = engine.tracker.get_lesson_progress(lesson_id, modules)

        table = Table(title=f"Lesson {lesson_id}")
        table.add_column("#", style="dim")
        table.add_column("Module")
        table.add_column("Type")
        table.add_column("Status")
        table.add_column("Score", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Mastered")
        table.add_column("Access")

        for index, module in enumerate(modules):
            record = view.module_progress[module.id]
            score = f"{record.score:g}" if isinstance(record, ScoredRecord) else "-"
            access = engine.tracker.can_access_module(module.id, index, modules)
            table.add_row(
                str(index + 1),
                module.id,
                module.type,
                f"[{STATUS_STYLES[record.status]}]{record.status.value}[/]",
                score,
                str(record.attempts),
                _yes_no(record.mastery_achieved),
                "open" if access else "locked",
            )
        console.print(table)

        console.print(
            f"Lesson status: {view.overall_status.value} "
            f"({view.completed_count}/{view.total_modules} modules)"
        )
        console.print(f"Lesson gate: {_yes_no(view.can_proceed)}")
        console.print(f"Remediation gate: {_yes_no(engine.registry.can_proceed)}")
        console.print(f"Can proceed: {_yes_no(engine.can_proceed(lesson_id, modules))}")

        upcoming = engine.next_module(modules)
        if upcoming is not None:
            console.print(f"Next module: {upcoming.id}")


@app.command("complete-reading")
def complete_reading(
    ctx: typer.Context,
    module_id: str = typer.Argument(..., help="Reading module id"),
) -> None:
    """Mark a reading module completed."""
    with _open_engine(ctx) as engine:
        record = engine.tracker.complete_reading(module_id)
    console.print(f"[green]Completed[/green] {module_id} (attempt {record.attempts})")


@app.command("record-quiz")
def record_quiz(
    ctx: typer.Context,
    module_id: str = typer.Argument(..., help="Quiz or assessment module id"),
    score: float = typer.Argument(..., help="Score as a percentage (0-100)"),
    threshold: Optional[float] = typer.Option(
        None,
        "--threshold", "-t",
        help="Mastery threshold as a fraction (defaults to DEFAULT_MASTERY_THRESHOLD)",
    ),
) -> None:
    """Record a quiz submission and report mastery."""
    with _open_engine(ctx) as engine:
        achieved = engine.tracker.record_quiz_attempt(module_id, score, threshold)
    if achieved:
        console.print(f"[green]Mastered[/green] {module_id} with {score:g}%")
    else:
        console.print(f"[yellow]Not yet mastered[/yellow] {module_id} with {score:g}%")


@app.command("reset-module")
def reset_module(
    ctx: typer.Context,
    module_id: str = typer.Argument(..., help="Module id"),
) -> None:
    """Forget all progress on one module."""
    with _open_engine(ctx) as engine:
        engine.tracker.reset_module(module_id)
    console.print(f"Reset {module_id}")


# =============================================================================
# Remediation Commands
# =============================================================================


@app.command()
def remediation(
    ctx: typer.Context,
    lesson: Optional[str] = typer.Option(None, "--lesson", "-l", help="Only this lesson"),
) -> None:
    """List concepts awaiting remediation."""
    with _open_engine(ctx) as engine:
        registry = engine.registry
        pending = registry.get_remediation_for_lesson(lesson) if lesson else registry.get_pending_remediation()

        if not pending:
            console.print("[green]No pending remediation[/green]")
        else:
            table = Table(title="Pending remediation")
            table.add_column("Concept")
            table.add_column("Failed question")
            table.add_column("Format")
            table.add_column("Lesson")
            table.add_column("Variant")
            table.add_column("Since", style="dim")
            for entry in pending:
                table.add_row(
                    entry.concept_id,
                    entry.question_id,
                    entry.question_type,
                    entry.lesson_id,
                    entry.variant_question_id or "-",
                    entry.timestamp.strftime("%Y-%m-%d %H:%M"),
                )
            console.print(table)
            console.print(f"Pending concepts: {len(pending)}")

        console.print(f"Remediation gate: {_yes_no(registry.can_proceed)}")


@app.command()
def fail(
    ctx: typer.Context,
    question_id: str = typer.Argument(..., help="Question answered incorrectly"),
    concept_id: str = typer.Argument(..., help="Concept the question tests"),
    question_type: str = typer.Argument(..., help="Question format, e.g. mcq or true_false"),
    lesson_id: str = typer.Argument(..., help="Lesson id"),
    variant: Optional[str] = typer.Option(None, "--variant", "-v", help="Remediation question id"),
) -> None:
    """Register a wrong answer on a concept."""
    with _open_engine(ctx) as engine:
        engine.registry.register_failure(question_id, concept_id, question_type, lesson_id, variant)
    console.print(f"[yellow]Remediation required[/yellow] for {concept_id}")


@app.command()
def remediate(
    ctx: typer.Context,
    concept_id: str = typer.Argument(..., help="Concept id"),
) -> None:
    """Mark a concept as remediated."""
    with _open_engine(ctx) as engine:
        known = engine.registry.get_entry(concept_id) is not None
        engine.registry.mark_remediated(concept_id)
    if known:
        console.print(f"[green]Remediated[/green] {concept_id}")
    else:
        console.print(f"[dim]No remediation entry for {concept_id}[/dim]")


@app.command()
def clear(
    ctx: typer.Context,
    confirm: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Erase all module progress and remediation state."""
    if not confirm and not typer.confirm("Clear ALL progress and remediation? This cannot be undone!", default=False):
        raise typer.Exit(0)

    with _open_engine(ctx) as engine:
        engine.reset()
    console.print("[green]Cleared all progress and remediation[/green]")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """CLI entry point."""
    configure_logging(level=get_settings().log_level, fmt="<level>{message}</level>")
    app()


if __name__ == "__main__":
    main()
