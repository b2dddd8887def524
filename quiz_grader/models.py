"""
Pydantic models for the Quiz Grader system.

These models define the schemas for:
- Quiz questions (multiple choice and open-ended) and student answers
- Per-question grading outcomes and aggregated submission results
- Oracle requests and the tagged union of oracle replies
- Audit records for reproducibility

Input records (quizzes, submissions) come from external collaborators and are
loaded leniently; question invariants are asserted at grading time so a bad
question degrades one outcome instead of rejecting the whole quiz.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from hashlib import sha256
from typing import Annotated, Any, Literal, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    computed_field,
    field_validator,
    model_validator,
)


def _to_decimal(v: Any) -> Any:
    """Convert numeric values to Decimal for precision."""
    if isinstance(v, Decimal) or isinstance(v, bool):
        return v
    if isinstance(v, (int, float, str)):
        return Decimal(str(v))
    return v


# ==============================================================================
# Enumerations
# ==============================================================================


class QuestionKind(str, Enum):
    """Kind of quiz question."""

    CHOICE = "choice"
    OPEN_ENDED = "open_ended"


class Confidence(str, Enum):
    """How much the grade can be trusted without a human look."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class GradingPath(str, Enum):
    """How a grading outcome was reached."""

    EXACT_MATCH = "exact_match"
    NO_ANSWER = "no_answer"
    ORACLE = "oracle"
    ORACLE_CLAMPED = "oracle_clamped"
    ORACLE_FALLBACK = "oracle_fallback"
    MALFORMED_QUESTION = "malformed_question"
    MANUAL_OVERRIDE = "manual_override"


class FailureKind(str, Enum):
    """Question-level failure that was recovered locally."""

    ORACLE_UNAVAILABLE = "oracle_unavailable"
    ORACLE_MALFORMED = "oracle_malformed"
    MALFORMED_QUESTION = "malformed_question"
    SCORE_OUT_OF_RANGE = "score_out_of_range"


class SubmissionStatus(str, Enum):
    """Scoring status of a submission."""

    PENDING = "pending"
    GRADING = "grading"
    GRADED = "graded"


# Paths that always require a human look, whatever the confidence says.
REVIEW_PATHS = frozenset(
    {
        GradingPath.ORACLE_CLAMPED,
        GradingPath.ORACLE_FALLBACK,
        GradingPath.MALFORMED_QUESTION,
    }
)


# ==============================================================================
# Quiz Models
# ==============================================================================


class ChoiceOption(BaseModel):
    """One labeled option of a multiple-choice question."""

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., description="Option label the student selects (e.g. 'B')")
    text: str = Field(default="", description="Option text shown to the student")
    is_correct: bool = Field(default=False, description="Whether this is the correct option")


class _QuestionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Identifier, unique within the quiz")

    prompt: str = Field(default="", description="Question text shown to the student")

    weight: Decimal = Field(
        default=Decimal("1"),
        description="Points the question is worth; must be positive to be gradable",
    )

    @field_validator("weight", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)


class ChoiceQuestion(_QuestionBase):
    """A multiple-choice question graded by exact label match."""

    kind: Literal["choice"] = "choice"

    options: tuple[ChoiceOption, ...] = Field(
        default=(),
        description="Ordered options; exactly one must be marked correct",
    )

    @property
    def correct_options(self) -> tuple[ChoiceOption, ...]:
        """Options marked correct (exactly one for a well-formed question)."""
        return tuple(o for o in self.options if o.is_correct)


class OpenEndedQuestion(_QuestionBase):
    """A free-text question graded by the external oracle."""

    kind: Literal["open_ended"] = "open_ended"

    model_answer: str = Field(default="", description="Reference answer used for grading")

    rubric: str | None = Field(default=None, description="Optional grading criteria")


Question = Annotated[Union[ChoiceQuestion, OpenEndedQuestion], Field(discriminator="kind")]


class Quiz(BaseModel):
    """A quiz definition with its canonical question order."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)

    title: str = Field(default="")

    author_id: str = Field(..., min_length=1, description="User who created the quiz")

    questions: tuple[Question, ...] = Field(default=())


# ==============================================================================
# Answer Models
# ==============================================================================


class Answer(BaseModel):
    """A student's answer to one question."""

    model_config = ConfigDict(frozen=True)

    question_id: str = Field(..., min_length=1)

    content: str | None = Field(
        default=None,
        description="Selected option label, or free text for open-ended questions",
    )

    @property
    def is_blank(self) -> bool:
        """Check if nothing was submitted."""
        return self.content is None or len(self.content.strip()) == 0


class AnswerSheet(BaseModel):
    """
    The answers of one submission, at most one per question.

    Recording an answer for a question that already has one replaces it.
    """

    model_config = ConfigDict(frozen=True)

    answers: tuple[Answer, ...] = Field(default=())

    @model_validator(mode="after")
    def collapse_duplicates(self) -> "AnswerSheet":
        """Keep the last answer per question, in first-seen order."""
        latest: dict[str, Answer] = {}
        for answer in self.answers:
            latest[answer.question_id] = answer
        if len(latest) != len(self.answers):
            # Use object.__setattr__ because model is frozen
            object.__setattr__(self, "answers", tuple(latest.values()))
        return self

    def record(self, answer: Answer) -> "AnswerSheet":
        """Return a new sheet with the answer upserted."""
        return AnswerSheet(answers=(*self.answers, answer))

    def get(self, question_id: str) -> Answer | None:
        """Look up the answer for a question, if any."""
        for answer in self.answers:
            if answer.question_id == question_id:
                return answer
        return None

    def as_lookup(self) -> dict[str, Answer]:
        """Map question identifier to answer."""
        return {a.question_id: a for a in self.answers}


class Submission(BaseModel):
    """A student's submission for a quiz."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)

    quiz_id: str = Field(..., min_length=1)

    student_id: str = Field(..., min_length=1, description="User who owns the submission")

    answers: AnswerSheet = Field(default_factory=AnswerSheet)

    status: SubmissionStatus = Field(default=SubmissionStatus.PENDING)


# ==============================================================================
# Oracle Models
# ==============================================================================


class OracleRequest(BaseModel):
    """Everything the grading oracle needs to score one open-ended answer."""

    model_config = ConfigDict(frozen=True)

    question_id: str
    question_text: str
    model_answer: str
    rubric: str | None = None
    student_answer: str
    max_points: Decimal

    @field_validator("max_points", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Any:
        return _to_decimal(v)


class OracleVerdict(BaseModel):
    """A validated oracle reply. The score is not yet range-checked."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["verdict"] = "verdict"
    score: Decimal
    confidence: Confidence
    explanation: str


class OracleFailure(BaseModel):
    """The oracle could not be consulted or its reply was unusable."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["failure"] = "failure"
    reason: FailureKind
    detail: str = ""


OracleReply = Annotated[Union[OracleVerdict, OracleFailure], Field(discriminator="kind")]


# ==============================================================================
# Grading Result Models
# ==============================================================================


class GradingOutcome(BaseModel):
    """
    The grading result for a single question.

    ``needs_review`` is left as ``None`` by the grader and populated by the
    review policy; it cannot be cleared while the outcome demands review.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    question_id: str = Field(..., description="Identifier of the graded question")

    kind: QuestionKind = Field(..., description="Kind of the graded question")

    awarded_score: Decimal = Field(
        ...,
        ge=0,
        description="Points awarded (0 to max_score)",
    )

    max_score: Decimal = Field(
        ...,
        ge=0,
        description="Maximum possible points for this question",
    )

    confidence: Confidence = Field(...)

    explanation: str = Field(..., min_length=1, description="Human-readable explanation")

    path: GradingPath = Field(...)

    failure: FailureKind | None = Field(
        default=None,
        description="Recovered failure that shaped this outcome, if any",
    )

    raw_score: Decimal | None = Field(
        default=None,
        description="Score exactly as the oracle reported it, before clamping",
    )

    is_correct: bool | None = Field(
        default=None,
        description="Exact-match result for multiple-choice questions",
    )

    needs_review: bool | None = Field(
        default=None,
        description="Whether a human must look at this outcome (set by the review policy)",
    )

    @field_validator("awarded_score", "max_score", "raw_score", mode="before")
    @classmethod
    def convert_to_decimal(cls, v: Any) -> Any:
        """Convert numeric values to Decimal for precision."""
        return _to_decimal(v)

    @model_validator(mode="after")
    def validate_score_range(self) -> "GradingOutcome":
        """Ensure awarded score doesn't exceed max score."""
        if self.awarded_score > self.max_score:
            raise ValueError(
                f"Awarded score ({self.awarded_score}) cannot exceed "
                f"max score ({self.max_score})"
            )
        return self

    @model_validator(mode="after")
    def validate_review_flag(self) -> "GradingOutcome":
        """Refuse a cleared review flag on an outcome that demands review."""
        if self.needs_review is False and (
            self.confidence == Confidence.LOW or self.path in REVIEW_PATHS
        ):
            raise ValueError(
                f"Outcome for question '{self.question_id}' requires review "
                f"(confidence={self.confidence.value}, path={self.path.value})"
            )
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> float:
        """Calculate percentage score for this question."""
        if self.max_score == 0:
            return 0.0
        return float(self.awarded_score / self.max_score * 100)


class SubmissionResult(BaseModel):
    """
    Aggregated grading result for a submission.

    Outcomes are in the quiz's question order. Contains no timestamps, so
    grading identical inputs twice yields an equal result.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    submission_id: str = Field(...)

    outcomes: tuple[GradingOutcome, ...] = Field(default=())

    @model_validator(mode="after")
    def validate_outcomes_assessed(self) -> "SubmissionResult":
        """Every outcome must have passed through the review policy."""
        unassessed = [o.question_id for o in self.outcomes if o.needs_review is None]
        if unassessed:
            raise ValueError(f"Outcomes without a review decision: {unassessed}")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_score(self) -> Decimal:
        """Sum of awarded scores."""
        return sum((o.awarded_score for o in self.outcomes), Decimal(0))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def max_score(self) -> Decimal:
        """Sum of question weights."""
        return sum((o.max_score for o in self.outcomes), Decimal(0))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def needs_review(self) -> bool:
        """True if any outcome needs review."""
        return any(bool(o.needs_review) for o in self.outcomes)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def percentage(self) -> float:
        """Calculate overall percentage score."""
        if self.max_score == 0:
            return 0.0
        return float(self.total_score / self.max_score * 100)

    def outcome_for(self, question_id: str) -> GradingOutcome | None:
        """Look up the outcome of one question."""
        for outcome in self.outcomes:
            if outcome.question_id == question_id:
                return outcome
        return None


# ==============================================================================
# Audit Models
# ==============================================================================


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditRecord(BaseModel):
    """
    Immutable audit record for reproducibility.

    Contains hashes of inputs and outputs to enable verification
    that the same inputs produce the same outputs.
    """

    model_config = ConfigDict(frozen=True, strict=True)

    quiz_hash: str = Field(..., description="SHA-256 hash of the quiz definition")

    answers_hash: str = Field(..., description="SHA-256 hash of the submitted answers")

    result_hash: str = Field(..., description="SHA-256 hash of the submission result")

    model_used: str = Field(..., description="LLM model identifier used for grading")

    temperature: float = Field(..., description="Temperature setting used for LLM")

    @staticmethod
    def compute_hash(content: str) -> str:
        """Compute SHA-256 hash of content."""
        return sha256(content.encode("utf-8")).hexdigest()

    @classmethod
    def for_grading(
        cls,
        quiz: Quiz,
        answers: AnswerSheet,
        result: SubmissionResult,
        model_used: str,
        temperature: float,
    ) -> "AuditRecord":
        """Build the audit record of one grading run."""
        return cls(
            quiz_hash=cls.compute_hash(quiz.model_dump_json()),
            answers_hash=cls.compute_hash(answers.model_dump_json()),
            result_hash=cls.compute_hash(result.model_dump_json()),
            model_used=model_used,
            temperature=temperature,
        )


class GradingRecord(BaseModel):
    """What the result sink receives after a successful grading run."""

    model_config = ConfigDict(frozen=True)

    result: SubmissionResult

    audit: AuditRecord

    regrade: bool = Field(default=False, description="Whether this overwrote an earlier grade")

    graded_at: datetime = Field(default_factory=_utcnow)
