"""
Question validation module.

Asserts the invariants every gradable question must satisfy. Quizzes come
from an external generation pipeline, so violations are expected and are
reported rather than raised during grading.
"""

from collections import Counter

from quiz_grader.models import ChoiceQuestion, OpenEndedQuestion, Question, Quiz


class QuizValidationError(Exception):
    """Raised when quiz validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        message = "Quiz validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(message)


class QuestionValidator:
    """
    Validates quiz questions for gradability.

    Checks:
    1. Every question has a positive weight
    2. Choice questions have at least two options, unique labels and
       exactly one correct option
    3. Open-ended questions have a non-empty model answer
    4. Question identifiers are unique within a quiz
    """

    MIN_CHOICE_OPTIONS = 2

    def question_issues(self, question: Question) -> list[str]:
        """
        Validate a single question.

        Args:
            question: The question to check.

        Returns:
            List of issues; empty when the question is gradable.
        """
        issues: list[str] = []

        if not question.weight.is_finite() or question.weight <= 0:
            issues.append(f"Weight must be positive (got {question.weight})")

        if isinstance(question, ChoiceQuestion):
            issues.extend(self._validate_choice(question))
        elif isinstance(question, OpenEndedQuestion):
            if not question.model_answer.strip():
                issues.append("Open-ended question has an empty model answer")

        return issues

    def validate(self, quiz: Quiz) -> tuple[bool, list[str]]:
        """
        Validate every question of a quiz.

        Args:
            quiz: The quiz to validate.

        Returns:
            Tuple of (is_valid, list of issues).
        """
        issues: list[str] = []

        if not quiz.questions:
            issues.append("Quiz has no questions")

        for i, question in enumerate(quiz.questions, start=1):
            prefix = f"Question {i} ({question.id})"
            issues.extend(f"{prefix}: {issue}" for issue in self.question_issues(question))

        counts = Counter(q.id for q in quiz.questions)
        for question_id, count in counts.items():
            if count > 1:
                issues.append(f"Duplicate question id: '{question_id}' appears {count} times")

        return len(issues) == 0, issues

    def validate_or_raise(self, quiz: Quiz) -> None:
        """
        Validate a quiz and raise if invalid.

        Raises:
            QuizValidationError: If validation fails.
        """
        is_valid, issues = self.validate(quiz)
        if not is_valid:
            raise QuizValidationError(issues)

    def _validate_choice(self, question: ChoiceQuestion) -> list[str]:
        issues: list[str] = []

        if len(question.options) < self.MIN_CHOICE_OPTIONS:
            issues.append(
                f"Choice question needs at least {self.MIN_CHOICE_OPTIONS} options "
                f"(got {len(question.options)})"
            )

        correct = len(question.correct_options)
        if correct != 1:
            issues.append(f"Choice question must have exactly one correct option (got {correct})")

        labels = [o.label for o in question.options]
        duplicates = sorted({label for label in labels if labels.count(label) > 1})
        if duplicates:
            issues.append(f"Duplicate option labels: {duplicates}")

        return issues
