"""
Quiz Grader - automatic scoring of quiz submissions.

This package grades student submissions for generated quizzes. Multiple
choice questions are scored by exact match; open-ended answers are scored
by an LLM grader whose replies are validated, clamped or replaced by a
fallback score, and anything uncertain is flagged for human review.
"""

__version__ = "1.0.0"
__author__ = "Quiz Grader Team"
