"""
Grading service - the top-level orchestrator.

Resolves a submission and its quiz, checks the caller may grade it, claims
the submission so it is graded at most once at a time, aggregates the
result and hands it to the result sink. Oracle failures never surface here;
only lookup, permission and status errors do.
"""

import threading
from decimal import Decimal
from typing import Protocol

from loguru import logger

from quiz_grader.config import Settings, get_settings
from quiz_grader.grading.aggregator import SubmissionAggregator
from quiz_grader.grading.grader import AnswerGrader
from quiz_grader.grading.oracle import GradingOracle, LLMGradingOracle
from quiz_grader.grading.review import ReviewPolicy
from quiz_grader.models import (
    AuditRecord,
    Confidence,
    GradingOutcome,
    GradingPath,
    GradingRecord,
    Quiz,
    Submission,
    SubmissionResult,
    SubmissionStatus,
)


class GradingServiceError(Exception):
    """Base class for errors surfaced by the grading service."""


class NotFound(GradingServiceError):
    """Raised when a submission, quiz, question or result cannot be located."""

    def __init__(self, entity: str, identifier: str):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity.capitalize()} not found: '{identifier}'")


class Unauthorized(GradingServiceError):
    """Raised when the caller may not act on a submission."""

    def __init__(self, caller_id: str, submission_id: str, action: str = "grade"):
        self.caller_id = caller_id
        self.submission_id = submission_id
        super().__init__(f"User '{caller_id}' may not {action} submission '{submission_id}'")


class GradingInProgress(GradingServiceError):
    """Raised when the submission is already being graded."""

    def __init__(self, submission_id: str):
        self.submission_id = submission_id
        super().__init__(f"Submission '{submission_id}' is already being graded")


class AlreadyGraded(GradingServiceError):
    """Raised when a graded submission is graded again without asking for a re-grade."""

    def __init__(self, submission_id: str):
        self.submission_id = submission_id
        super().__init__(
            f"Submission '{submission_id}' is already graded; request a re-grade to overwrite it"
        )


class InvalidOverride(GradingServiceError):
    """Raised when a manual score override is out of range."""


class QuizSource(Protocol):
    """Read-only access to quizzes and submissions."""

    def get_submission(self, submission_id: str) -> Submission | None: ...

    def get_quiz(self, quiz_id: str) -> Quiz | None: ...


class ResultSink(Protocol):
    """Persistence for grading records."""

    def save(self, record: GradingRecord) -> None: ...

    def load(self, submission_id: str) -> GradingRecord | None: ...


class SubmissionStatusGuard:
    """
    Tracks the scoring status of submissions and serializes grading.

    ``claim`` atomically moves a submission into ``grading``; a second
    claim for the same submission fails until the first is released.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._statuses: dict[str, SubmissionStatus] = {}

    def status(self, submission_id: str) -> SubmissionStatus | None:
        """Return the tracked status, or None if this guard never saw the submission."""
        with self._lock:
            return self._statuses.get(submission_id)

    def claim(
        self, submission_id: str, recorded: SubmissionStatus, regrade: bool = False
    ) -> SubmissionStatus:
        """
        Move a submission into ``grading``.

        Args:
            submission_id: Submission to claim.
            recorded: Status reported by the quiz source, used when this
                guard has not tracked the submission yet.
            regrade: Allow claiming a submission that is already graded.

        Returns:
            The status before the claim, to restore if grading fails.

        Raises:
            GradingInProgress: If the submission is being graded.
            AlreadyGraded: If it is graded and no re-grade was requested.
        """
        with self._lock:
            current = self._statuses.get(submission_id)
            if current is None:
                if recorded == SubmissionStatus.GRADING:
                    # Nothing in this process holds it; a previous run was interrupted.
                    logger.warning(
                        "Submission '{}' was left in grading; treating it as pending",
                        submission_id,
                    )
                    recorded = SubmissionStatus.PENDING
                current = recorded

            if current == SubmissionStatus.GRADING:
                raise GradingInProgress(submission_id)
            if current == SubmissionStatus.GRADED and not regrade:
                raise AlreadyGraded(submission_id)

            self._statuses[submission_id] = SubmissionStatus.GRADING
            return current

    def release(self, submission_id: str, status: SubmissionStatus) -> None:
        """Leave ``grading`` for the given status."""
        with self._lock:
            self._statuses[submission_id] = status


class GradingService:
    """
    Grades submissions end to end.

    Terminal failures (not found, unauthorized, already grading) are raised
    before any grading starts. Once grading starts, question-level failures
    are absorbed by the grader.
    """

    def __init__(
        self,
        source: QuizSource,
        sink: ResultSink,
        oracle: GradingOracle | None = None,
        settings: Settings | None = None,
        aggregator: SubmissionAggregator | None = None,
        guard: SubmissionStatusGuard | None = None,
    ):
        """
        Initialize the service.

        Args:
            source: Where submissions and quizzes are read from.
            sink: Where grading records are written.
            oracle: Oracle for open-ended questions. Defaults to the LLM oracle.
            settings: Configuration settings. Uses global settings if not provided.
            aggregator: Pre-built aggregator; built from settings if not provided.
            guard: Status guard, shared between services that grade the
                same submissions.
        """
        self._settings = settings or get_settings()
        self._source = source
        self._sink = sink
        self._policy = ReviewPolicy()
        if aggregator is None:
            grader = AnswerGrader(oracle or LLMGradingOracle(self._settings), self._settings)
            aggregator = SubmissionAggregator(
                grader,
                self._policy,
                max_concurrency=self._settings.max_concurrency,
                question_timeout=self._settings.question_timeout_seconds,
            )
        self._aggregator = aggregator
        self._guard = guard or SubmissionStatusGuard()

    @property
    def guard(self) -> SubmissionStatusGuard:
        return self._guard

    def grade_submission(
        self, submission_id: str, caller_id: str, regrade: bool = False
    ) -> SubmissionResult:
        """
        Grade a submission and persist the result.

        Args:
            submission_id: Submission to grade.
            caller_id: User requesting the grading (owner or quiz author).
            regrade: Explicitly overwrite an existing grade.

        Returns:
            The submission result.

        Raises:
            NotFound: If the submission or its quiz does not exist.
            Unauthorized: If the caller is neither owner nor quiz author.
            GradingInProgress: If the submission is already being graded.
            AlreadyGraded: If it is graded and ``regrade`` is False.
        """
        submission, quiz = self._resolve(submission_id)
        if caller_id not in (submission.student_id, quiz.author_id):
            raise Unauthorized(caller_id, submission_id)

        previous = self._guard.claim(submission.id, submission.status, regrade=regrade)
        try:
            result = self._aggregator.aggregate(
                quiz.questions, submission.answers, submission_id=submission.id
            )
            self._persist(quiz, submission, result, regrade=previous == SubmissionStatus.GRADED)
        except Exception:
            self._guard.release(submission.id, previous)
            raise

        self._guard.release(submission.id, SubmissionStatus.GRADED)
        return result

    def override_score(
        self,
        submission_id: str,
        question_id: str,
        score: Decimal,
        caller_id: str,
        feedback: str | None = None,
    ) -> SubmissionResult:
        """
        Replace one question's score with a manual grade from the quiz author.

        Args:
            submission_id: Graded submission.
            question_id: Question whose score is replaced.
            score: New score, within [0, weight].
            caller_id: Must be the quiz author.
            feedback: Optional explanation shown to the student.

        Returns:
            The updated submission result.

        Raises:
            NotFound: If the submission, quiz, question or result is missing.
            Unauthorized: If the caller is not the quiz author.
            InvalidOverride: If the score is out of range.
            GradingInProgress: If the submission is being graded.
        """
        submission, quiz = self._resolve(submission_id)
        if caller_id != quiz.author_id:
            raise Unauthorized(caller_id, submission_id, action="override scores on")

        score = Decimal(str(score))

        # The record is read under the claim so a concurrent re-grade cannot
        # be overwritten with stale outcomes.
        previous = self._guard.claim(submission.id, submission.status, regrade=True)
        try:
            existing = self._sink.load(submission.id)
            if existing is None:
                raise NotFound("result", submission.id)

            outcome = existing.result.outcome_for(question_id)
            if outcome is None:
                raise NotFound("question", question_id)

            if not score.is_finite() or score < 0 or score > outcome.max_score:
                raise InvalidOverride(
                    f"Score {score} is outside [0, {outcome.max_score}] "
                    f"for question '{question_id}'"
                )

            replacement = self._policy.apply(
                GradingOutcome(
                    question_id=outcome.question_id,
                    kind=outcome.kind,
                    awarded_score=score,
                    max_score=outcome.max_score,
                    confidence=Confidence.HIGH,
                    explanation=feedback or f"Score set to {score} by the quiz author.",
                    path=GradingPath.MANUAL_OVERRIDE,
                    is_correct=outcome.is_correct,
                )
            )
            result = SubmissionResult(
                submission_id=submission.id,
                outcomes=tuple(
                    replacement if o.question_id == question_id else o
                    for o in existing.result.outcomes
                ),
            )
            self._persist(quiz, submission, result, regrade=True)
        except Exception:
            self._guard.release(submission.id, previous)
            raise

        self._guard.release(submission.id, SubmissionStatus.GRADED)
        logger.info(
            "Score for question '{}' of submission '{}' overridden to {} by '{}'",
            question_id,
            submission.id,
            score,
            caller_id,
        )
        return result

    def _resolve(self, submission_id: str) -> tuple[Submission, Quiz]:
        submission = self._source.get_submission(submission_id)
        if submission is None:
            raise NotFound("submission", submission_id)

        quiz = self._source.get_quiz(submission.quiz_id)
        if quiz is None:
            raise NotFound("quiz", submission.quiz_id)

        return submission, quiz

    def _persist(
        self, quiz: Quiz, submission: Submission, result: SubmissionResult, regrade: bool
    ) -> None:
        """Write the record to the sink; exactly one write per grading run."""
        audit = AuditRecord.for_grading(
            quiz,
            submission.answers,
            result,
            model_used=self._settings.grading_model,
            temperature=self._settings.llm_temperature,
        )
        try:
            self._sink.save(GradingRecord(result=result, audit=audit, regrade=regrade))
        except Exception as e:
            logger.error("Failed to save result for submission '{}': {}", submission.id, e)
            raise
