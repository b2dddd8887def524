"""
Quiz Processing Module.

Provides validation of generated quiz questions.
"""

from quiz_grader.quiz.validator import QuestionValidator, QuizValidationError

__all__ = [
    "QuestionValidator",
    "QuizValidationError",
]
