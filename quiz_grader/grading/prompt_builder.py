"""
Prompt builder for open-ended answer grading.

Renders an oracle request into the system and user messages sent to the
grading model, including the exact JSON reply format expected back.
"""

from quiz_grader.models import OracleRequest


class PromptBuilder:
    """
    Builds grading prompts for one open-ended question at a time.

    The prompts are designed to:
    1. Compare the student's answer against the model answer and rubric
    2. Keep the score within the question's point range
    3. Produce a single JSON object with score, confidence and explanation
    """

    SYSTEM_PROMPT = """You are a careful, fair grader of short written answers in a classroom quiz.

RULES:
1. Grade the student answer against the model answer and the rubric, if one is given.
2. Award partial credit in proportion to how much of the expected content is present and correct.
3. The score MUST be a number between 0 and the maximum points for the question.
4. Spelling, grammar and style do NOT affect the score unless the rubric says so.
5. Report your confidence: "high" when the answer is clearly right or clearly wrong,
   "medium" when some judgement was needed, "low" when you are unsure.

OUTPUT RULES:
- Your output MUST be a single valid JSON object matching the exact format specified.
- Do not add any text before or after the JSON."""

    NO_RUBRIC = "(no rubric provided; grade against the model answer)"

    @staticmethod
    def build_grading_prompt(request: OracleRequest) -> str:
        """
        Build the user prompt for grading one answer.

        Args:
            request: The oracle request to render.

        Returns:
            The formatted user prompt.
        """
        rubric = request.rubric.strip() if request.rubric and request.rubric.strip() else None

        prompt = f"""GRADING TASK

QUESTION:
{request.question_text}

MODEL ANSWER:
{request.model_answer}

RUBRIC:
{rubric or PromptBuilder.NO_RUBRIC}

MAX POINTS: {request.max_points}

STUDENT ANSWER:
---BEGIN ANSWER---
{request.student_answer}
---END ANSWER---

OUTPUT FORMAT (respond with ONLY this JSON, no other text):
{{
  "score": <number between 0 and {request.max_points}>,
  "confidence": "high" | "medium" | "low",
  "explanation": "<why this score was awarded>"
}}"""

        return prompt

    @staticmethod
    def get_system_prompt() -> str:
        """Get the system prompt for answer grading."""
        return PromptBuilder.SYSTEM_PROMPT
