"""
Submission aggregator.

Grades every question of a quiz against a submission's answers, applies the
review policy and assembles the submission result. Questions are graded
independently, so a failure in one never affects the others.
"""

import math
import threading
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError

from loguru import logger

from quiz_grader.grading.grader import AnswerGrader
from quiz_grader.grading.review import ReviewPolicy
from quiz_grader.models import (
    Answer,
    AnswerSheet,
    FailureKind,
    GradingOutcome,
    OpenEndedQuestion,
    Question,
    SubmissionResult,
)


class SubmissionAggregator:
    """
    Aggregates per-question outcomes into a submission result.

    Open-ended questions are graded on a bounded thread pool since each one
    waits on the oracle. Outcomes are always reassembled in quiz order, so
    the result does not depend on which oracle call finishes first.
    """

    def __init__(
        self,
        grader: AnswerGrader,
        policy: ReviewPolicy | None = None,
        max_concurrency: int = 4,
        question_timeout: float | None = None,
    ):
        """
        Initialize the aggregator.

        Args:
            grader: Grader for individual questions.
            policy: Review policy. Uses the default policy if not provided.
            max_concurrency: Maximum questions graded at once.
            question_timeout: Seconds one question may run, counted from when a
                worker starts it, before falling back. None waits indefinitely.
        """
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1 (got {max_concurrency})")
        self._grader = grader
        self._policy = policy or ReviewPolicy()
        self._max_concurrency = max_concurrency
        self._question_timeout = question_timeout

    def aggregate(
        self,
        questions: Sequence[Question],
        answers: AnswerSheet | Iterable[Answer],
        submission_id: str = "",
    ) -> SubmissionResult:
        """
        Grade a submission.

        Args:
            questions: Quiz questions in canonical order.
            answers: Submitted answers; a later answer to the same question
                replaces an earlier one.
            submission_id: Identifier recorded on the result.

        Returns:
            The submission result with one outcome per question, in quiz order.
        """
        lookup = self._build_lookup(answers)
        logger.info(
            "Grading submission '{}': {} questions, {} answers",
            submission_id,
            len(questions),
            len(lookup),
        )

        outcomes = self._grade_all(questions, lookup)
        reviewed = tuple(self._policy.apply(outcome) for outcome in outcomes)

        result = SubmissionResult(submission_id=submission_id, outcomes=reviewed)
        logger.info(
            "Graded submission '{}': {} / {} (needs review: {})",
            submission_id,
            result.total_score,
            result.max_score,
            result.needs_review,
        )
        return result

    @staticmethod
    def _build_lookup(answers: AnswerSheet | Iterable[Answer]) -> dict[str, Answer]:
        if isinstance(answers, AnswerSheet):
            return answers.as_lookup()
        lookup: dict[str, Answer] = {}
        for answer in answers:
            lookup[answer.question_id] = answer
        return lookup

    def _grade_all(
        self, questions: Sequence[Question], lookup: dict[str, Answer]
    ) -> list[GradingOutcome]:
        """Grade each question, consulting the oracle concurrently."""
        needs_oracle = [
            isinstance(q, OpenEndedQuestion) and not self._is_blank(lookup.get(q.id))
            for q in questions
        ]

        if self._max_concurrency == 1 or sum(needs_oracle) <= 1:
            return [self._grade_one(q, lookup.get(q.id)) for q in questions]

        executor = ThreadPoolExecutor(
            max_workers=self._max_concurrency, thread_name_prefix="quiz-grader"
        )
        try:
            submitted_at = time.monotonic()
            queue_limit = None
            if self._question_timeout is not None:
                waves = math.ceil(sum(needs_oracle) / self._max_concurrency)
                queue_limit = self._question_timeout * waves

            tasks: list[_QuestionTask | None] = []
            for question, remote in zip(questions, needs_oracle):
                if not remote:
                    tasks.append(None)
                    continue
                task = _QuestionTask(question, lookup.get(question.id))
                task.future = executor.submit(task.run, self._grader)
                tasks.append(task)

            outcomes: list[GradingOutcome] = []
            for question, task in zip(questions, tasks):
                if task is None:
                    outcomes.append(self._grade_one(question, lookup.get(question.id)))
                else:
                    outcomes.append(self._collect(task, submitted_at, queue_limit))
            return outcomes
        finally:
            # Oracle calls that overran are left to finish in the background.
            executor.shutdown(wait=False, cancel_futures=True)

    def _grade_one(self, question: Question, answer: Answer | None) -> GradingOutcome:
        try:
            return self._grader.grade(question, answer)
        except Exception as e:
            logger.exception("Unexpected error grading question '{}'", question.id)
            return self._grader.fallback(
                question, FailureKind.ORACLE_UNAVAILABLE, f"{type(e).__name__}: {e}"
            )

    def _collect(
        self, task: "_QuestionTask", submitted_at: float, queue_limit: float | None
    ) -> GradingOutcome:
        """
        Wait for a pooled question.

        The per-question limit runs from the moment a worker starts the
        question. A question still queued after every earlier wave could
        have used its full limit is not waited on any longer.
        """
        question = task.question
        future = task.future
        try:
            if self._question_timeout is None:
                return future.result()

            queue_left = submitted_at + queue_limit - time.monotonic()
            if not task.started.wait(timeout=max(queue_left, 0.0)):
                future.cancel()
                return self._grader.fallback(
                    question,
                    FailureKind.ORACLE_UNAVAILABLE,
                    f"not started within {queue_limit:.1f}s",
                )

            remaining = task.started_at + self._question_timeout - time.monotonic()
            return future.result(timeout=max(remaining, 0.0))
        except FutureTimeoutError:
            future.cancel()
            return self._grader.fallback(
                question,
                FailureKind.ORACLE_UNAVAILABLE,
                f"no reply within {self._question_timeout}s",
            )
        except Exception as e:
            logger.exception("Unexpected error grading question '{}'", question.id)
            return self._grader.fallback(
                question, FailureKind.ORACLE_UNAVAILABLE, f"{type(e).__name__}: {e}"
            )

    @staticmethod
    def _is_blank(answer: Answer | None) -> bool:
        return answer is None or answer.is_blank


class _QuestionTask:
    """One pooled question, recording when a worker picked it up."""

    def __init__(self, question: Question, answer: Answer | None):
        self.question = question
        self.answer = answer
        self.started = threading.Event()
        self.started_at = 0.0
        self.future: Future[GradingOutcome] | None = None

    def run(self, grader: AnswerGrader) -> GradingOutcome:
        self.started_at = time.monotonic()
        self.started.set()
        return grader.grade(self.question, self.answer)
