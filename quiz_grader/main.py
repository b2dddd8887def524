"""
Quiz Grader CLI Application.

Provides a command-line interface for grading quiz submissions stored in a
JSON bundle, overriding individual scores and checking quiz definitions.
"""

from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from quiz_grader.config import get_settings
from quiz_grader.grading import (
    GradingService,
    GradingServiceError,
    LLMGradingOracle,
)
from quiz_grader.log import configure_logging
from quiz_grader.models import Confidence, SubmissionResult
from quiz_grader.quiz import QuestionValidator
from quiz_grader.store import FileStatusGuard, JsonQuizStore, StoreError

# Create Typer app
app = typer.Typer(
    name="quiz-grader",
    help="Automatic grading of quiz submissions with LLM-assisted scoring",
    add_completion=False,
)

console = Console()

CONFIDENCE_STYLES = {
    Confidence.HIGH: "green",
    Confidence.MEDIUM: "yellow",
    Confidence.LOW: "red",
}


def _build_service(bundle: Path, output: Optional[Path]) -> GradingService:
    settings = get_settings()
    configure_logging(settings.log_level)
    store = JsonQuizStore(bundle, output or settings.output_directory)
    return GradingService(
        store,
        store,
        oracle=LLMGradingOracle(settings),
        settings=settings,
        guard=FileStatusGuard(store),
    )


@app.command()
def grade(
    bundle: Annotated[Path, typer.Argument(help="Path to the quiz bundle (JSON)")],
    submission_id: Annotated[str, typer.Argument(help="Submission to grade")],
    caller: Annotated[
        str,
        typer.Option("--caller", "-c", help="User requesting the grading"),
    ],
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Directory for grading records"),
    ] = None,
    regrade: Annotated[
        bool,
        typer.Option("--regrade", help="Overwrite an existing grade"),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show per-question breakdown"),
    ] = False,
) -> None:
    """
    Grade a submission and store the result.

    Multiple-choice questions are scored by exact match; open-ended answers
    are scored by the configured LLM grader.
    """
    if not bundle.exists():
        console.print(f"[red]Error:[/red] Bundle file not found: {bundle}")
        raise typer.Exit(1)

    try:
        service = _build_service(bundle, output)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task(f"Grading submission {submission_id}...", total=None)
            result = service.grade_submission(submission_id, caller, regrade=regrade)

        _display_results(result, verbose)

    except GradingServiceError as e:
        console.print(f"[red]Grading Error:[/red] {e}")
        raise typer.Exit(1)
    except StoreError as e:
        console.print(f"[red]Store Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def override(
    bundle: Annotated[Path, typer.Argument(help="Path to the quiz bundle (JSON)")],
    submission_id: Annotated[str, typer.Argument(help="Graded submission")],
    question_id: Annotated[str, typer.Argument(help="Question to re-score")],
    score: Annotated[str, typer.Argument(help="New score for the question")],
    caller: Annotated[
        str,
        typer.Option("--caller", "-c", help="Quiz author applying the override"),
    ],
    feedback: Annotated[
        Optional[str],
        typer.Option("--feedback", "-f", help="Feedback shown to the student"),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Directory for grading records"),
    ] = None,
) -> None:
    """
    Manually set the score of one question after review.
    """
    try:
        new_score = Decimal(score)
    except InvalidOperation:
        console.print(f"[red]Error:[/red] Not a number: {score}")
        raise typer.Exit(1)

    try:
        service = _build_service(bundle, output)
        result = service.override_score(
            submission_id, question_id, new_score, caller, feedback=feedback
        )
        _display_results(result, verbose=True)

    except GradingServiceError as e:
        console.print(f"[red]Override Error:[/red] {e}")
        raise typer.Exit(1)
    except StoreError as e:
        console.print(f"[red]Store Error:[/red] {e}")
        raise typer.Exit(1)


@app.command()
def validate_quiz(
    bundle: Annotated[Path, typer.Argument(help="Path to the quiz bundle (JSON)")],
    quiz_id: Annotated[str, typer.Argument(help="Quiz to check")],
) -> None:
    """
    Check that every question of a quiz can be graded.
    """
    try:
        store = JsonQuizStore(bundle, get_settings().output_directory)
        quiz = store.get_quiz(quiz_id)
    except StoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if quiz is None:
        console.print(f"[red]Error:[/red] Quiz not found: {quiz_id}")
        raise typer.Exit(1)

    is_valid, issues = QuestionValidator().validate(quiz)

    console.print(Panel(f"[bold]{quiz.title or quiz.id}[/bold]", title="Quiz"))

    table = Table(title="Questions")
    table.add_column("Id", style="cyan")
    table.add_column("Kind")
    table.add_column("Weight", justify="right")
    table.add_column("Prompt")

    for question in quiz.questions:
        table.add_row(question.id, question.kind, str(question.weight), question.prompt[:50])

    console.print(table)

    if is_valid:
        console.print("\n[green]✓ Quiz is valid[/green]")
    else:
        console.print("\n[yellow]⚠ Validation issues found:[/yellow]")
        for issue in issues:
            console.print(f"  • {issue}")
        raise typer.Exit(1)


@app.command()
def health() -> None:
    """
    Check if the grading oracle is reachable.
    """
    try:
        settings = get_settings()
        configure_logging(settings.log_level)
        console.print("[bold]Quiz Grader Health Check[/bold]\n")

        console.print("[dim]Checking configuration...[/dim]")
        console.print(f"  API Base URL: {settings.openai_base_url}")
        console.print(f"  Model: {settings.grading_model}")
        console.print(f"  Fallback Fraction: {settings.fallback_fraction}")
        console.print(f"  Max Concurrency: {settings.max_concurrency}")

        console.print("\n[dim]Checking API connectivity...[/dim]")
        if LLMGradingOracle(settings).health_check():
            console.print("[green]✓ API is reachable[/green]")
        else:
            console.print("[red]✗ API is not reachable[/red]")
            raise typer.Exit(1)

        console.print("\n[green]All systems operational[/green]")

    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def _display_results(result: SubmissionResult, verbose: bool = False) -> None:
    """Display grading results in a formatted table."""

    score_color = "green" if result.percentage >= 70 else "yellow" if result.percentage >= 50 else "red"
    console.print(
        Panel(
            f"[{score_color}][bold]{result.total_score} / {result.max_score}[/bold] "
            f"({result.percentage:.1f}%)[/{score_color}]",
            title=f"Submission {result.submission_id}",
        )
    )

    if result.needs_review:
        flagged = sum(1 for o in result.outcomes if o.needs_review)
        console.print(f"[yellow]⚠ {flagged} question(s) flagged for manual review[/yellow]")

    if verbose:
        table = Table(title="Question Breakdown")
        table.add_column("Question", style="cyan")
        table.add_column("Score", justify="right")
        table.add_column("Confidence")
        table.add_column("Review")
        table.add_column("Explanation")

        for outcome in result.outcomes:
            style = CONFIDENCE_STYLES[outcome.confidence]
            table.add_row(
                outcome.question_id,
                f"{outcome.awarded_score}/{outcome.max_score}",
                f"[{style}]{outcome.confidence.value}[/{style}]",
                "⚠️" if outcome.needs_review else "",
                outcome.explanation,
            )

        console.print(table)


if __name__ == "__main__":
    app()
