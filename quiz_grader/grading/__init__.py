"""
Grading Engine Module.

Per-question grading, review flagging, submission aggregation and the
service that orchestrates them.
"""

from quiz_grader.grading.aggregator import SubmissionAggregator
from quiz_grader.grading.grader import AnswerGrader
from quiz_grader.grading.oracle import GradingOracle, LLMGradingOracle, OracleError
from quiz_grader.grading.parser import OracleResponseError, OracleResponseParser
from quiz_grader.grading.prompt_builder import PromptBuilder
from quiz_grader.grading.review import ReviewPolicy
from quiz_grader.grading.service import (
    AlreadyGraded,
    GradingInProgress,
    GradingService,
    GradingServiceError,
    InvalidOverride,
    NotFound,
    QuizSource,
    ResultSink,
    SubmissionStatusGuard,
    Unauthorized,
)

__all__ = [
    "AlreadyGraded",
    "AnswerGrader",
    "GradingInProgress",
    "GradingOracle",
    "GradingService",
    "GradingServiceError",
    "InvalidOverride",
    "LLMGradingOracle",
    "NotFound",
    "OracleError",
    "OracleResponseError",
    "OracleResponseParser",
    "PromptBuilder",
    "QuizSource",
    "ResultSink",
    "ReviewPolicy",
    "SubmissionAggregator",
    "SubmissionStatusGuard",
    "Unauthorized",
]
