"""
Answer grader.

Grades one question/answer pair. Multiple-choice questions are graded by
exact label match; open-ended questions are sent to the grading oracle and
its reply is validated, clamped or replaced by the fallback score. Every
failure is folded into the returned outcome, so grading one question never
raises.
"""

from decimal import Decimal

from loguru import logger

from quiz_grader.config import Settings, get_settings
from quiz_grader.grading.oracle import GradingOracle
from quiz_grader.grading.parser import OracleResponseError, OracleResponseParser
from quiz_grader.models import (
    Answer,
    ChoiceQuestion,
    Confidence,
    FailureKind,
    GradingOutcome,
    GradingPath,
    OpenEndedQuestion,
    OracleFailure,
    OracleReply,
    OracleRequest,
    OracleVerdict,
    Question,
    QuestionKind,
)
from quiz_grader.quiz.validator import QuestionValidator


class AnswerGrader:
    """
    Grades a single answer against its question.

    The returned outcome's review flag is left unset; the review policy
    decides it.
    """

    NO_ANSWER_EXPLANATION = "No answer provided."
    FALLBACK_EXPLANATION = "Automatic grading failed, manual review required."

    def __init__(
        self,
        oracle: GradingOracle,
        settings: Settings | None = None,
        validator: QuestionValidator | None = None,
        parser: OracleResponseParser | None = None,
    ):
        """
        Initialize the grader.

        Args:
            oracle: Oracle used for open-ended questions.
            settings: Configuration settings. Uses global settings if not provided.
            validator: Question invariant checker.
            parser: Oracle reply parser.
        """
        self._settings = settings or get_settings()
        self._oracle = oracle
        self._validator = validator or QuestionValidator()
        self._parser = parser or OracleResponseParser()

    @property
    def fallback_fraction(self) -> Decimal:
        return self._settings.fallback_fraction

    def grade(self, question: Question, answer: Answer | None) -> GradingOutcome:
        """
        Grade one answer.

        Args:
            question: The question being answered.
            answer: The student's answer, or None if none was submitted.

        Returns:
            The grading outcome, never an exception.
        """
        issues = self._validator.question_issues(question)
        if issues:
            return self._malformed(question, issues)

        if isinstance(question, ChoiceQuestion):
            return self._grade_choice(question, answer)
        return self._grade_open_ended(question, answer)

    def fallback(self, question: Question, reason: FailureKind, detail: str = "") -> GradingOutcome:
        """
        Build the fallback outcome used when the oracle cannot grade.

        The score is a fixed fraction of the weight so the question is never
        left unscored.
        """
        logger.warning(
            "Falling back for question '{}' ({}): {}", question.id, reason.value, detail or "-"
        )
        return GradingOutcome(
            question_id=question.id,
            kind=QuestionKind(question.kind),
            awarded_score=question.weight * self.fallback_fraction,
            max_score=question.weight,
            confidence=Confidence.LOW,
            explanation=self.FALLBACK_EXPLANATION,
            path=GradingPath.ORACLE_FALLBACK,
            failure=reason,
        )

    def _malformed(self, question: Question, issues: list[str]) -> GradingOutcome:
        logger.warning("Question '{}' is malformed: {}", question.id, "; ".join(issues))
        weight = question.weight
        max_score = weight if weight.is_finite() and weight > 0 else Decimal(0)
        return GradingOutcome(
            question_id=question.id,
            kind=QuestionKind(question.kind),
            awarded_score=Decimal(0),
            max_score=max_score,
            confidence=Confidence.LOW,
            explanation="Question is malformed and cannot be graded: " + "; ".join(issues),
            path=GradingPath.MALFORMED_QUESTION,
            failure=FailureKind.MALFORMED_QUESTION,
        )

    def _grade_choice(self, question: ChoiceQuestion, answer: Answer | None) -> GradingOutcome:
        """Grade by byte-exact comparison with the correct option's label."""
        correct = question.correct_options[0]
        reveal = f"The correct answer was {correct.label}"
        if correct.text:
            reveal += f": {correct.text}"

        if answer is None or answer.is_blank:
            return GradingOutcome(
                question_id=question.id,
                kind=QuestionKind.CHOICE,
                awarded_score=Decimal(0),
                max_score=question.weight,
                confidence=Confidence.HIGH,
                explanation=f"{self.NO_ANSWER_EXPLANATION} {reveal}.",
                path=GradingPath.NO_ANSWER,
                is_correct=False,
            )

        is_correct = answer.content == correct.label
        return GradingOutcome(
            question_id=question.id,
            kind=QuestionKind.CHOICE,
            awarded_score=question.weight if is_correct else Decimal(0),
            max_score=question.weight,
            confidence=Confidence.HIGH,
            explanation="Correct answer!" if is_correct else f"Incorrect. {reveal}.",
            path=GradingPath.EXACT_MATCH,
            is_correct=is_correct,
        )

    def _grade_open_ended(
        self, question: OpenEndedQuestion, answer: Answer | None
    ) -> GradingOutcome:
        if answer is None or answer.is_blank:
            return GradingOutcome(
                question_id=question.id,
                kind=QuestionKind.OPEN_ENDED,
                awarded_score=Decimal(0),
                max_score=question.weight,
                confidence=Confidence.HIGH,
                explanation=self.NO_ANSWER_EXPLANATION,
                path=GradingPath.NO_ANSWER,
            )

        request = OracleRequest(
            question_id=question.id,
            question_text=question.prompt,
            model_answer=question.model_answer,
            rubric=question.rubric,
            student_answer=answer.content or "",
            max_points=question.weight,
        )

        reply = self._consult(request)
        if isinstance(reply, OracleFailure):
            return self.fallback(question, reply.reason, reply.detail)
        return self._from_verdict(question, reply)

    def _consult(self, request: OracleRequest) -> OracleReply:
        """Call the oracle and validate its reply."""
        try:
            raw = self._oracle.evaluate(request)
        except Exception as e:
            # Any failure raised by the oracle counts as unavailability.
            return OracleFailure(
                reason=FailureKind.ORACLE_UNAVAILABLE,
                detail=str(e) or type(e).__name__,
            )

        try:
            return self._parser.parse(raw)
        except OracleResponseError as e:
            return OracleFailure(reason=FailureKind.ORACLE_MALFORMED, detail=str(e))

    def _from_verdict(self, question: OpenEndedQuestion, verdict: OracleVerdict) -> GradingOutcome:
        """Turn a verdict into an outcome, clamping out-of-range scores."""
        score = min(max(verdict.score, Decimal(0)), question.weight)

        if score == verdict.score:
            return GradingOutcome(
                question_id=question.id,
                kind=QuestionKind.OPEN_ENDED,
                awarded_score=score,
                max_score=question.weight,
                confidence=verdict.confidence,
                explanation=verdict.explanation,
                path=GradingPath.ORACLE,
                raw_score=verdict.score,
            )

        logger.warning(
            "Oracle score {} for question '{}' is outside [0, {}]; clamped to {}",
            verdict.score,
            question.id,
            question.weight,
            score,
        )
        return GradingOutcome(
            question_id=question.id,
            kind=QuestionKind.OPEN_ENDED,
            awarded_score=score,
            max_score=question.weight,
            confidence=Confidence.LOW,
            explanation=f"{verdict.explanation} (Reported score {verdict.score} was clamped to {score}.)",
            path=GradingPath.ORACLE_CLAMPED,
            failure=FailureKind.SCORE_OUT_OF_RANGE,
            raw_score=verdict.score,
        )
