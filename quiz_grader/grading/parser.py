"""
Response parser for oracle grading output.

Parses the JSON reply from the grading model and validates it against a
strict schema. Replies that do not fit the schema are rejected outright;
there is no guessing at alternative field names or shapes.
"""

import json
import re
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, StrictFloat, StrictInt, StrictStr, ValidationError

from quiz_grader.models import Confidence, OracleVerdict


class OracleResponseError(Exception):
    """Raised when an oracle reply cannot be parsed into a verdict."""

    def __init__(self, message: str, raw_response: str | None = None):
        self.raw_response = raw_response
        super().__init__(message)


class _ReplySchema(BaseModel):
    """Wire shape of an oracle reply."""

    model_config = ConfigDict(extra="ignore")

    score: StrictInt | StrictFloat
    confidence: Any = None
    explanation: StrictStr | None = None


class OracleResponseParser:
    """
    Parses and validates oracle replies.

    Ensures:
    1. The reply contains exactly one JSON object
    2. ``score`` is present and is a finite JSON number
    3. ``explanation``, when present, is a string

    An unrecognized or missing ``confidence`` is not an error; it is
    reported as low confidence. The score is not range-checked here since
    clamping is a grading decision.
    """

    DEFAULT_EXPLANATION = "No explanation provided by the grader."

    def parse(self, response: str) -> OracleVerdict:
        """
        Parse an oracle reply into a verdict.

        Args:
            response: Raw reply text (expected JSON).

        Returns:
            The validated verdict.

        Raises:
            OracleResponseError: If parsing or validation fails.
        """
        if not isinstance(response, str):
            raise OracleResponseError(f"Reply must be text, got {type(response).__name__}")

        data = self._load_json(response)

        if not isinstance(data, dict):
            raise OracleResponseError("Reply must be a JSON object", raw_response=response)

        try:
            reply = _ReplySchema.model_validate(data)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise OracleResponseError(
                f"Reply does not match the expected schema ({fields})",
                raw_response=response,
            ) from e

        # Arbitrarily large integers are kept exact and clamped by the grader.
        score = Decimal(str(reply.score))
        if not score.is_finite():
            raise OracleResponseError(
                f"Score must be a finite number, got {reply.score}",
                raw_response=response,
            )

        explanation = (reply.explanation or "").strip() or self.DEFAULT_EXPLANATION

        return OracleVerdict(
            score=score,
            confidence=self._parse_confidence(reply.confidence),
            explanation=explanation,
        )

    def _parse_confidence(self, value: Any) -> Confidence:
        """Map a confidence label to the enum, defaulting to low."""
        if isinstance(value, str):
            try:
                return Confidence(value.strip().lower())
            except ValueError:
                pass
        return Confidence.LOW

    def _load_json(self, response: str) -> Any:
        """
        Decode the JSON object in a reply, handling common formats.

        The whole reply (or the body of a markdown code block) is decoded
        first. Otherwise the first object is decoded from the first ``{``
        onwards and any trailing text is ignored.

        Args:
            response: Raw response text.

        Returns:
            The decoded JSON value.
        """
        text = response.strip()

        # Unwrap markdown code block if present
        json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
        if json_match:
            text = json_match.group(1).strip()

        try:
            return json.loads(text)
        except ValueError:
            pass

        brace_start = text.find("{")
        if brace_start == -1:
            raise OracleResponseError("No JSON object found in response", raw_response=response)

        try:
            data, _ = json.JSONDecoder().raw_decode(text, brace_start)
        except json.JSONDecodeError as e:
            if e.pos >= len(text):
                raise OracleResponseError(
                    "Unclosed JSON object in response", raw_response=response
                ) from e
            raise OracleResponseError(
                f"Invalid JSON in response: {e}", raw_response=response
            ) from e
        except ValueError as e:
            # e.g. integers beyond the interpreter's digit limit
            raise OracleResponseError(
                f"Invalid JSON in response: {e}", raw_response=response
            ) from e
        return data
