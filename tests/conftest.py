"""
Pytest configuration and fixtures.

Provides common test fixtures for all test modules.
"""

import json
import tempfile
import threading
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from quiz_grader.config import Settings
from quiz_grader.grading import AnswerGrader, SubmissionAggregator
from quiz_grader.models import (
    Answer,
    AnswerSheet,
    ChoiceOption,
    ChoiceQuestion,
    OpenEndedQuestion,
    OracleRequest,
    Quiz,
    Submission,
)


# ==============================================================================
# Fake Oracle
# ==============================================================================


class ScriptedOracle:
    """
    Deterministic stand-in for the grading oracle.

    ``replies`` maps a question id to the raw reply text, or to an exception
    instance to raise. Questions without a script get ``default``.
    """

    def __init__(self, replies: dict[str, Any] | None = None, default: Any = None):
        self.replies = replies or {}
        self.default = default
        self.requests: list[OracleRequest] = []
        self._lock = threading.Lock()

    def evaluate(self, request: OracleRequest) -> str:
        with self._lock:
            self.requests.append(request)
        reply = self.replies.get(request.question_id, self.default)
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            raise AssertionError(f"No scripted reply for question '{request.question_id}'")
        return reply


def verdict(score: Any, confidence: Any = "medium", explanation: str = "Graded.") -> str:
    """Render an oracle reply as JSON text."""
    return json.dumps({"score": score, "confidence": confidence, "explanation": explanation})


# ==============================================================================
# Directory Fixtures
# ==============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def test_settings(temp_dir: Path) -> Settings:
    """Create test settings with mocked values."""
    return Settings(
        openai_api_key="test-api-key-for-testing",
        openai_base_url="https://test.api.local/v1/",
        grading_model="test-model",
        llm_temperature=0.0,
        oracle_max_retries=2,
        fallback_fraction=Decimal("0.5"),
        max_concurrency=4,
        question_timeout_seconds=5.0,
        output_directory=temp_dir / "output",
    )


# ==============================================================================
# Sample Quiz Fixtures
# ==============================================================================


@pytest.fixture
def choice_question() -> ChoiceQuestion:
    """Multiple-choice question with options A/B/C, B correct, weight 1."""
    return ChoiceQuestion(
        id="q1",
        prompt="Which organelle carries out photosynthesis?",
        weight=Decimal("1"),
        options=(
            ChoiceOption(label="A", text="Mitochondrion"),
            ChoiceOption(label="B", text="Chloroplast", is_correct=True),
            ChoiceOption(label="C", text="Nucleus"),
        ),
    )


@pytest.fixture
def open_question() -> OpenEndedQuestion:
    """Open-ended question worth 2 points."""
    return OpenEndedQuestion(
        id="q2",
        prompt="Explain what photosynthesis does.",
        weight=Decimal("2"),
        model_answer="Photosynthesis converts light energy into chemical energy stored in glucose.",
        rubric="1 point for light energy, 1 point for chemical energy.",
    )


@pytest.fixture
def sample_quiz(choice_question: ChoiceQuestion, open_question: OpenEndedQuestion) -> Quiz:
    """Quiz with one choice and one open-ended question."""
    return Quiz(
        id="quiz-1",
        title="Photosynthesis",
        author_id="teacher-1",
        questions=(choice_question, open_question),
    )


@pytest.fixture
def sample_answers() -> AnswerSheet:
    """Answers matching the sample quiz."""
    return AnswerSheet(
        answers=(
            Answer(question_id="q1", content="B"),
            Answer(question_id="q2", content="photosynthesis converts light to chemical energy."),
        )
    )


@pytest.fixture
def sample_submission(sample_answers: AnswerSheet) -> Submission:
    """Pending submission by student-1 for the sample quiz."""
    return Submission(
        id="sub-1",
        quiz_id="quiz-1",
        student_id="student-1",
        answers=sample_answers,
    )


# ==============================================================================
# Grading Fixtures
# ==============================================================================


@pytest.fixture
def make_aggregator(test_settings: Settings) -> Callable[..., SubmissionAggregator]:
    """Build an aggregator around a scripted oracle."""

    def _make(oracle: ScriptedOracle, **kwargs: Any) -> SubmissionAggregator:
        kwargs.setdefault("max_concurrency", test_settings.max_concurrency)
        kwargs.setdefault("question_timeout", test_settings.question_timeout_seconds)
        return SubmissionAggregator(AnswerGrader(oracle, test_settings), **kwargs)

    return _make


# ==============================================================================
# File Fixtures
# ==============================================================================


@pytest.fixture
def bundle_file(temp_dir: Path) -> Path:
    """Write a bundle with the sample quiz and one submission."""
    bundle = {
        "quizzes": [
            {
                "id": "quiz-1",
                "title": "Photosynthesis",
                "author_id": "teacher-1",
                "questions": [
                    {
                        "id": "q1",
                        "kind": "choice",
                        "prompt": "Which organelle carries out photosynthesis?",
                        "weight": 1,
                        "options": [
                            {"label": "A", "text": "Mitochondrion"},
                            {"label": "B", "text": "Chloroplast", "is_correct": True},
                            {"label": "C", "text": "Nucleus"},
                        ],
                    },
                    {
                        "id": "q2",
                        "kind": "open_ended",
                        "prompt": "Explain what photosynthesis does.",
                        "weight": 2,
                        "model_answer": "Light energy becomes chemical energy.",
                    },
                ],
            }
        ],
        "submissions": [
            {
                "id": "sub-1",
                "quiz_id": "quiz-1",
                "student_id": "student-1",
                "answers": {
                    "answers": [
                        {"question_id": "q1", "content": "B"},
                        {"question_id": "q2", "content": "It turns light into chemical energy."},
                    ]
                },
            }
        ],
    }
    path = temp_dir / "bundle.json"
    path.write_text(json.dumps(bundle), encoding="utf-8")
    return path
