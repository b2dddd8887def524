"""
Unit tests for per-question grading.

Tests the prompt builder, oracle response parser, question validator,
answer grader and review policy with a scripted oracle.
"""

import json
from decimal import Decimal

import pytest
from conftest import ScriptedOracle, verdict

from quiz_grader.config import Settings
from quiz_grader.grading import AnswerGrader, OracleResponseError, PromptBuilder, ReviewPolicy
from quiz_grader.grading.parser import OracleResponseParser
from quiz_grader.models import (
    Answer,
    ChoiceOption,
    ChoiceQuestion,
    Confidence,
    FailureKind,
    GradingPath,
    OpenEndedQuestion,
    OracleRequest,
    Quiz,
)
from quiz_grader.quiz import QuestionValidator, QuizValidationError


class TestPromptBuilder:
    """Tests for PromptBuilder."""

    def test_get_system_prompt(self) -> None:
        """Test system prompt asks for JSON and bounded scores."""
        prompt = PromptBuilder.get_system_prompt()

        assert "JSON" in prompt
        assert "maximum points" in prompt

    def test_build_grading_prompt(self) -> None:
        """Test prompt includes every request field."""
        request = OracleRequest(
            question_id="q2",
            question_text="Explain photosynthesis.",
            model_answer="Light becomes chemical energy.",
            rubric="Mention both forms of energy.",
            student_answer="Plants eat light.",
            max_points=Decimal("2"),
        )
        prompt = PromptBuilder.build_grading_prompt(request)

        assert "Explain photosynthesis." in prompt
        assert "Light becomes chemical energy." in prompt
        assert "Mention both forms of energy." in prompt
        assert "Plants eat light." in prompt
        assert "MAX POINTS: 2" in prompt
        assert '"confidence"' in prompt

    def test_build_grading_prompt_without_rubric(self) -> None:
        """Test a missing rubric is stated explicitly."""
        request = OracleRequest(
            question_id="q2",
            question_text="Q",
            model_answer="M",
            student_answer="S",
            max_points=Decimal("1"),
        )

        assert PromptBuilder.NO_RUBRIC in PromptBuilder.build_grading_prompt(request)


class TestOracleResponseParser:
    """Tests for OracleResponseParser."""

    def test_parse_valid_response(self) -> None:
        """Test parsing a well-formed reply."""
        reply = OracleResponseParser().parse(verdict(1.5, "medium", "Mostly right."))

        assert reply.score == Decimal("1.5")
        assert reply.confidence == Confidence.MEDIUM
        assert reply.explanation == "Mostly right."

    def test_parse_response_in_markdown_block(self) -> None:
        """Test parsing a reply wrapped in a markdown code block."""
        reply = OracleResponseParser().parse(f"```json\n{verdict(2, 'high')}\n```")

        assert reply.score == Decimal("2")
        assert reply.confidence == Confidence.HIGH

    def test_parse_response_with_surrounding_text(self) -> None:
        """Test the first JSON object is extracted from chatty output."""
        reply = OracleResponseParser().parse(f"Here you go: {verdict(1, 'low')} Thanks!")

        assert reply.score == Decimal("1")

    @pytest.mark.parametrize("label", ["HIGH", " High "])
    def test_confidence_is_case_insensitive(self, label: str) -> None:
        """Test known labels match regardless of case."""
        assert OracleResponseParser().parse(verdict(1, label)).confidence == Confidence.HIGH

    @pytest.mark.parametrize("label", [None, "certain", 3, ["high"]])
    def test_unrecognized_confidence_defaults_to_low(self, label) -> None:
        """Test missing or unknown confidence becomes low."""
        assert OracleResponseParser().parse(verdict(1, label)).confidence == Confidence.LOW

    def test_missing_explanation_gets_default(self) -> None:
        """Test a reply without an explanation still parses."""
        reply = OracleResponseParser().parse(json.dumps({"score": 1, "confidence": "high"}))

        assert reply.explanation == OracleResponseParser.DEFAULT_EXPLANATION

    def test_parse_not_json(self) -> None:
        """Test text without JSON raises error."""
        with pytest.raises(OracleResponseError, match="No JSON object found"):
            OracleResponseParser().parse("this is not json")

    def test_parse_invalid_json(self) -> None:
        """Test broken JSON raises error."""
        with pytest.raises(OracleResponseError, match="Invalid JSON"):
            OracleResponseParser().parse("{'score': 1}")

    def test_parse_unclosed_object(self) -> None:
        """Test an unterminated object raises error."""
        with pytest.raises(OracleResponseError, match="Unclosed"):
            OracleResponseParser().parse('{"score": 1')

    @pytest.mark.parametrize(
        "payload",
        [
            {"confidence": "high", "explanation": "no score"},
            {"score": "1.5", "confidence": "high"},
            {"score": True, "confidence": "high"},
            {"score": None},
            {"score": 1, "explanation": 42},
            {"results": [{"score": 1}]},
        ],
    )
    def test_schema_violations(self, payload) -> None:
        """Test replies not matching the schema are rejected, not guessed at."""
        with pytest.raises(OracleResponseError, match="expected schema"):
            OracleResponseParser().parse(json.dumps(payload))

    @pytest.mark.parametrize("score", ["NaN", "Infinity", "-Infinity", "1e400"])
    def test_non_finite_score(self, score: str) -> None:
        """Test NaN and infinite scores are rejected."""
        with pytest.raises(OracleResponseError, match="finite"):
            OracleResponseParser().parse(f'{{"score": {score}, "confidence": "high"}}')

    def test_huge_integer_score_is_kept_exact(self) -> None:
        """Test integers too large for a float are parsed without error."""
        huge = "1" + "0" * 400

        reply = OracleResponseParser().parse(f'{{"score": {huge}, "confidence": "high"}}')

        assert reply.score == Decimal(huge)

    def test_closing_brace_inside_explanation(self) -> None:
        """Test braces inside strings do not end the object early."""
        reply = OracleResponseParser().parse(verdict(1.5, "medium", "Missing the } part"))

        assert reply.score == Decimal("1.5")
        assert reply.confidence == Confidence.MEDIUM
        assert reply.explanation == "Missing the } part"

    def test_braces_inside_explanation_with_surrounding_text(self) -> None:
        """Test string braces are handled when the object is embedded in prose."""
        reply = OracleResponseParser().parse(
            f"Grade: {verdict(1, 'high', 'Use {x} and } carefully')} Done."
        )

        assert reply.score == Decimal("1")
        assert reply.explanation == "Use {x} and } carefully"


class TestQuestionValidator:
    """Tests for QuestionValidator."""

    def test_valid_questions(self, sample_quiz: Quiz) -> None:
        """Test the sample quiz is valid."""
        is_valid, issues = QuestionValidator().validate(sample_quiz)

        assert is_valid
        assert issues == []

    @pytest.mark.parametrize("weight", ["0", "-1", "-0.5"])
    def test_non_positive_weight(self, weight: str) -> None:
        """Test weights must be positive."""
        question = OpenEndedQuestion(id="q", weight=Decimal(weight), model_answer="x")

        assert any("Weight" in issue for issue in QuestionValidator().question_issues(question))

    def test_choice_without_correct_option(self) -> None:
        """Test choice questions need exactly one correct option."""
        question = ChoiceQuestion(
            id="q",
            options=(ChoiceOption(label="A"), ChoiceOption(label="B")),
        )

        issues = QuestionValidator().question_issues(question)
        assert any("exactly one correct" in issue for issue in issues)

    def test_choice_with_two_correct_options(self) -> None:
        """Test two correct options are rejected."""
        question = ChoiceQuestion(
            id="q",
            options=(
                ChoiceOption(label="A", is_correct=True),
                ChoiceOption(label="B", is_correct=True),
            ),
        )

        assert QuestionValidator().question_issues(question)

    def test_choice_needs_two_options(self) -> None:
        """Test a single option is not a choice."""
        question = ChoiceQuestion(id="q", options=(ChoiceOption(label="A", is_correct=True),))

        assert any("at least 2" in issue for issue in QuestionValidator().question_issues(question))

    def test_duplicate_labels(self) -> None:
        """Test option labels must be unique."""
        question = ChoiceQuestion(
            id="q",
            options=(ChoiceOption(label="A", is_correct=True), ChoiceOption(label="A")),
        )

        assert any("Duplicate option labels" in i for i in QuestionValidator().question_issues(question))

    def test_empty_model_answer(self) -> None:
        """Test open-ended questions need a model answer."""
        question = OpenEndedQuestion(id="q", model_answer="  ")

        assert any("model answer" in i for i in QuestionValidator().question_issues(question))

    def test_duplicate_question_ids(self, open_question: OpenEndedQuestion) -> None:
        """Test question ids must be unique within a quiz."""
        quiz = Quiz(id="quiz", author_id="t", questions=(open_question, open_question))

        with pytest.raises(QuizValidationError, match="Duplicate question id"):
            QuestionValidator().validate_or_raise(quiz)


class TestAnswerGraderChoice:
    """Tests for multiple-choice grading."""

    @pytest.fixture
    def grader(self, test_settings: Settings) -> AnswerGrader:
        return AnswerGrader(ScriptedOracle(), test_settings)

    def test_correct_label(self, grader: AnswerGrader, choice_question: ChoiceQuestion) -> None:
        """Test the correct label earns the full weight with high confidence."""
        outcome = grader.grade(choice_question, Answer(question_id="q1", content="B"))

        assert outcome.awarded_score == Decimal("1")
        assert outcome.confidence == Confidence.HIGH
        assert outcome.path == GradingPath.EXACT_MATCH
        assert outcome.is_correct is True
        assert outcome.needs_review is None

    @pytest.mark.parametrize("label", ["A", "C", "b", " B", "B ", "Chloroplast", "D"])
    def test_any_other_label_scores_zero(
        self, grader: AnswerGrader, choice_question: ChoiceQuestion, label: str
    ) -> None:
        """Test comparison is byte-exact and case-sensitive."""
        outcome = grader.grade(choice_question, Answer(question_id="q1", content=label))

        assert outcome.awarded_score == 0
        assert outcome.confidence == Confidence.HIGH
        assert outcome.is_correct is False
        assert "The correct answer was B: Chloroplast" in outcome.explanation

    @pytest.mark.parametrize("answer", [None, Answer(question_id="q1", content=None)])
    def test_no_answer(self, grader: AnswerGrader, choice_question: ChoiceQuestion, answer) -> None:
        """Test an absent answer scores zero."""
        outcome = grader.grade(choice_question, answer)

        assert outcome.awarded_score == 0
        assert outcome.path == GradingPath.NO_ANSWER
        assert outcome.explanation.startswith(AnswerGrader.NO_ANSWER_EXPLANATION)

    def test_never_consults_oracle(self, test_settings: Settings, choice_question: ChoiceQuestion) -> None:
        """Test choice grading is purely local."""
        oracle = ScriptedOracle()
        AnswerGrader(oracle, test_settings).grade(choice_question, Answer(question_id="q1", content="A"))

        assert oracle.requests == []

    def test_malformed_choice_question(self, grader: AnswerGrader) -> None:
        """Test a choice question with no correct option becomes a flagged zero."""
        question = ChoiceQuestion(
            id="q1",
            weight=Decimal("1"),
            options=(ChoiceOption(label="A"), ChoiceOption(label="B")),
        )

        outcome = grader.grade(question, Answer(question_id="q1", content="A"))

        assert outcome.awarded_score == 0
        assert outcome.max_score == Decimal("1")
        assert outcome.confidence == Confidence.LOW
        assert outcome.path == GradingPath.MALFORMED_QUESTION
        assert outcome.failure == FailureKind.MALFORMED_QUESTION


class TestAnswerGraderOpenEnded:
    """Tests for open-ended grading through the oracle."""

    ANSWER = Answer(question_id="q2", content="photosynthesis converts light to chemical energy.")

    def test_valid_verdict(self, test_settings: Settings, open_question: OpenEndedQuestion) -> None:
        """Test a valid verdict is taken as-is."""
        oracle = ScriptedOracle({"q2": verdict(1.5, "medium", "Missing glucose.")})
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == Decimal("1.5")
        assert outcome.confidence == Confidence.MEDIUM
        assert outcome.explanation == "Missing glucose."
        assert outcome.path == GradingPath.ORACLE
        assert outcome.failure is None

    def test_request_contents(self, test_settings: Settings, open_question: OpenEndedQuestion) -> None:
        """Test the oracle receives question, model answer, rubric and student text."""
        oracle = ScriptedOracle({"q2": verdict(1, "high")})
        AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        (request,) = oracle.requests
        assert request.question_text == open_question.prompt
        assert request.model_answer == open_question.model_answer
        assert request.rubric == open_question.rubric
        assert request.student_answer == self.ANSWER.content
        assert request.max_points == Decimal("2")

    def test_score_above_weight_is_clamped(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test a score of 5 on a weight-2 question becomes 2 with low confidence."""
        oracle = ScriptedOracle({"q2": verdict(5, "high")})
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == Decimal("2")
        assert outcome.raw_score == Decimal("5")
        assert outcome.confidence == Confidence.LOW
        assert outcome.path == GradingPath.ORACLE_CLAMPED
        assert outcome.failure == FailureKind.SCORE_OUT_OF_RANGE

    def test_huge_integer_score_is_clamped(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test a 400-digit score is clamped to the weight instead of raising."""
        oracle = ScriptedOracle(
            {"q2": '{"score": 1' + "0" * 400 + ', "confidence": "high", "explanation": "x"}'}
        )
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == Decimal("2")
        assert outcome.confidence == Confidence.LOW
        assert outcome.path == GradingPath.ORACLE_CLAMPED
        assert outcome.raw_score == Decimal("1" + "0" * 400)

    def test_brace_in_explanation_keeps_verdict(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test a valid reply whose explanation contains a brace is not a fallback."""
        oracle = ScriptedOracle({"q2": verdict(1.5, "medium", "Missing the } part")})
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == Decimal("1.5")
        assert outcome.confidence == Confidence.MEDIUM
        assert outcome.path == GradingPath.ORACLE

    def test_negative_score_is_clamped(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test a negative score becomes zero with low confidence."""
        oracle = ScriptedOracle({"q2": verdict(-3, "high")})
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == 0
        assert outcome.confidence == Confidence.LOW
        assert outcome.path == GradingPath.ORACLE_CLAMPED

    def test_boundary_scores_are_not_clamped(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test scores exactly at 0 and the weight are accepted."""
        for score in (0, 2):
            oracle = ScriptedOracle({"q2": verdict(score, "high")})
            outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

            assert outcome.path == GradingPath.ORACLE
            assert outcome.confidence == Confidence.HIGH

    @pytest.mark.parametrize(
        "error", [TimeoutError("timed out"), ConnectionError("refused"), RuntimeError("HTTP 500")]
    )
    def test_oracle_failure_falls_back(
        self, test_settings: Settings, open_question: OpenEndedQuestion, error: Exception
    ) -> None:
        """Test an oracle error yields half the weight with low confidence."""
        oracle = ScriptedOracle({"q2": error})
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == Decimal("1")
        assert outcome.confidence == Confidence.LOW
        assert outcome.path == GradingPath.ORACLE_FALLBACK
        assert outcome.failure == FailureKind.ORACLE_UNAVAILABLE
        assert outcome.explanation == AnswerGrader.FALLBACK_EXPLANATION

    def test_malformed_reply_falls_back(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test an unparseable reply takes the same fallback path."""
        oracle = ScriptedOracle({"q2": "I think this deserves full marks."})
        outcome = AnswerGrader(oracle, test_settings).grade(open_question, self.ANSWER)

        assert outcome.awarded_score == Decimal("1")
        assert outcome.failure == FailureKind.ORACLE_MALFORMED
        assert outcome.path == GradingPath.ORACLE_FALLBACK

    def test_fallback_fraction_is_configurable(
        self, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test the fallback share of the weight comes from settings."""
        settings = test_settings.model_copy(update={"fallback_fraction": Decimal("0.7")})
        outcome = AnswerGrader(ScriptedOracle({"q2": TimeoutError()}), settings).grade(
            open_question, self.ANSWER
        )

        assert outcome.awarded_score == Decimal("1.4")

    @pytest.mark.parametrize("content", [None, "", "   "])
    def test_missing_answer_skips_oracle(
        self, test_settings: Settings, open_question: OpenEndedQuestion, content
    ) -> None:
        """Test a blank answer scores zero without calling the oracle."""
        oracle = ScriptedOracle()
        outcome = AnswerGrader(oracle, test_settings).grade(
            open_question, Answer(question_id="q2", content=content)
        )

        assert oracle.requests == []
        assert outcome.awarded_score == 0
        assert outcome.confidence == Confidence.HIGH
        assert outcome.explanation == AnswerGrader.NO_ANSWER_EXPLANATION

    def test_malformed_open_question(self, test_settings: Settings) -> None:
        """Test an open-ended question without a model answer is not sent to the oracle."""
        oracle = ScriptedOracle()
        question = OpenEndedQuestion(id="q2", weight=Decimal("2"), model_answer="")

        outcome = AnswerGrader(oracle, test_settings).grade(question, self.ANSWER)

        assert oracle.requests == []
        assert outcome.path == GradingPath.MALFORMED_QUESTION
        assert outcome.awarded_score == 0

    def test_non_positive_weight_has_zero_max(self, test_settings: Settings) -> None:
        """Test a question with a negative weight contributes nothing to the maximum."""
        question = OpenEndedQuestion(id="q2", weight=Decimal("-2"), model_answer="x")

        outcome = AnswerGrader(ScriptedOracle(), test_settings).grade(question, self.ANSWER)

        assert outcome.max_score == 0
        assert outcome.path == GradingPath.MALFORMED_QUESTION

    @pytest.mark.parametrize(
        "reply",
        [verdict(-1e9), verdict(1e9), verdict(0.0001), verdict(1.99), "garbage", TimeoutError()],
    )
    def test_score_always_within_bounds(
        self, test_settings: Settings, open_question: OpenEndedQuestion, reply
    ) -> None:
        """Test 0 <= score <= weight whatever the oracle does."""
        outcome = AnswerGrader(ScriptedOracle({"q2": reply}), test_settings).grade(
            open_question, self.ANSWER
        )

        assert 0 <= outcome.awarded_score <= open_question.weight


class TestReviewPolicy:
    """Tests for ReviewPolicy."""

    @pytest.fixture
    def policy(self) -> ReviewPolicy:
        return ReviewPolicy()

    def _grade(self, settings: Settings, question, reply, content="some text"):
        grader = AnswerGrader(ScriptedOracle({question.id: reply}), settings)
        return grader.grade(question, Answer(question_id=question.id, content=content))

    def test_confident_oracle_outcome_needs_no_review(
        self, policy: ReviewPolicy, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test medium confidence without clamping is not flagged."""
        outcome = self._grade(test_settings, open_question, verdict(1.5, "medium"))

        assert policy.needs_review(outcome) is False

    def test_low_confidence_needs_review(
        self, policy: ReviewPolicy, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test low oracle confidence is flagged."""
        outcome = self._grade(test_settings, open_question, verdict(1, "low"))

        assert policy.needs_review(outcome) is True

    @pytest.mark.parametrize("reply", [verdict(5, "high"), "garbage", TimeoutError()])
    def test_clamped_and_fallback_need_review(
        self, policy: ReviewPolicy, test_settings: Settings, open_question: OpenEndedQuestion, reply
    ) -> None:
        """Test clamped and fallback outcomes are flagged."""
        outcome = self._grade(test_settings, open_question, reply)

        assert policy.needs_review(outcome) is True

    @pytest.mark.parametrize("label", ["A", "B", None])
    def test_choice_never_needs_review(
        self,
        policy: ReviewPolicy,
        test_settings: Settings,
        choice_question: ChoiceQuestion,
        label,
    ) -> None:
        """Test exact-match outcomes are never flagged."""
        outcome = self._grade(test_settings, choice_question, None, content=label)

        assert policy.needs_review(outcome) is False

    def test_apply_sets_flag_without_changing_score(
        self, policy: ReviewPolicy, test_settings: Settings, open_question: OpenEndedQuestion
    ) -> None:
        """Test apply only populates the flag."""
        outcome = self._grade(test_settings, open_question, TimeoutError())

        reviewed = policy.apply(outcome)

        assert reviewed.needs_review is True
        assert reviewed.awarded_score == outcome.awarded_score
        assert reviewed.confidence == outcome.confidence
        assert reviewed.model_dump(exclude={"needs_review"}) == outcome.model_dump(
            exclude={"needs_review"}
        )
