"""
Review policy.

Decides which grading outcomes a human must look at. The flag is advisory:
applying the policy never changes a score.
"""

from quiz_grader.models import REVIEW_PATHS, Confidence, GradingOutcome, GradingPath, QuestionKind


class ReviewPolicy:
    """
    Flags outcomes for manual review.

    An outcome needs review when its score came from the fallback path,
    was clamped from the oracle's raw value, belongs to a malformed
    question, or carries low confidence. Exact-match choice outcomes and
    manual overrides never need review.
    """

    def needs_review(self, outcome: GradingOutcome) -> bool:
        """Return whether the outcome must be reviewed by a human."""
        if outcome.path == GradingPath.MANUAL_OVERRIDE:
            return False
        if outcome.path in REVIEW_PATHS:
            return True
        if outcome.kind == QuestionKind.CHOICE:
            return False
        return outcome.confidence == Confidence.LOW

    def apply(self, outcome: GradingOutcome) -> GradingOutcome:
        """Return a copy of the outcome with its review flag populated."""
        fields = outcome.model_dump(exclude={"percentage", "needs_review"})
        return GradingOutcome(**fields, needs_review=self.needs_review(outcome))
