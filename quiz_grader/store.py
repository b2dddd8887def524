"""
JSON file store.

Reads quizzes and submissions from a bundle file and writes one grading
record per submission into an output directory. Serves as both the quiz
source and the result sink of the grading service.
"""

import json
import os
import re
import time
from pathlib import Path

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from quiz_grader.grading.service import GradingInProgress, SubmissionStatusGuard
from quiz_grader.models import GradingRecord, Quiz, Submission, SubmissionStatus


class StoreError(Exception):
    """Raised when the bundle or a stored record cannot be read or written."""

    def __init__(self, message: str, path: Path | None = None):
        self.path = path
        super().__init__(message)


class QuizBundle(BaseModel):
    """On-disk layout of a bundle file."""

    model_config = ConfigDict(frozen=True)

    quizzes: tuple[Quiz, ...] = Field(default=())
    submissions: tuple[Submission, ...] = Field(default=())


class JsonQuizStore:
    """
    Quiz source and result sink over plain JSON files.

    The bundle is read once, on first access. A submission that already has
    a record in the output directory is reported as graded.
    """

    _SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")

    def __init__(self, bundle_path: Path, output_directory: Path):
        self._bundle_path = bundle_path
        self._output_directory = output_directory
        self._bundle: QuizBundle | None = None

    @property
    def output_directory(self) -> Path:
        return self._output_directory

    @property
    def bundle(self) -> QuizBundle:
        if self._bundle is None:
            self._bundle = self._read_bundle()
        return self._bundle

    def get_quiz(self, quiz_id: str) -> Quiz | None:
        for quiz in self.bundle.quizzes:
            if quiz.id == quiz_id:
                return quiz
        return None

    def get_submission(self, submission_id: str) -> Submission | None:
        for submission in self.bundle.submissions:
            if submission.id == submission_id:
                if self.has_record(submission.id):
                    return submission.model_copy(update={"status": SubmissionStatus.GRADED})
                return submission
        return None

    def save(self, record: GradingRecord) -> None:
        """Write the record, replacing any earlier one for the submission."""
        path = self._record_path(record.result.submission_id)
        self._output_directory.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        try:
            tmp.write_text(record.model_dump_json(indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as e:
            raise StoreError(f"Cannot write grading record: {e}", path=path) from e
        logger.debug("Saved grading record to {}", path)

    def load(self, submission_id: str) -> GradingRecord | None:
        """Read the stored record of a submission, if any."""
        path = self._record_path(submission_id)
        if not path.exists():
            return None
        try:
            return GradingRecord.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise StoreError(f"Cannot read grading record: {e}", path=path) from e

    def has_record(self, submission_id: str) -> bool:
        """Whether a grading record was written for the submission."""
        return self._record_path(submission_id).exists()

    def lock_path(self, submission_id: str) -> Path:
        """Path of the lock file held while the submission is being graded."""
        return self._record_path(submission_id).with_suffix(".lock")

    def _record_path(self, submission_id: str) -> Path:
        if not self._SAFE_ID.match(submission_id):
            raise StoreError(f"Submission id cannot be used as a file name: '{submission_id}'")
        return self._output_directory / f"{submission_id}.json"

    def _read_bundle(self) -> QuizBundle:
        try:
            text = self._bundle_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot read bundle: {e}", path=self._bundle_path) from e

        try:
            bundle = QuizBundle.model_validate(json.loads(text))
        except json.JSONDecodeError as e:
            raise StoreError(f"Bundle is not valid JSON: {e}", path=self._bundle_path) from e
        except ValidationError as e:
            raise StoreError(f"Bundle has an invalid layout: {e}", path=self._bundle_path) from e

        logger.debug(
            "Loaded bundle {}: {} quizzes, {} submissions",
            self._bundle_path,
            len(bundle.quizzes),
            len(bundle.submissions),
        )
        return bundle


class FileStatusGuard(SubmissionStatusGuard):
    """
    Status guard that also holds a lock file per submission.

    Separate processes writing to the same output directory exclude each
    other through ``<submission_id>.lock``, created with ``O_EXCL``. The
    record file is checked again once the lock is held, so a grading that
    finished in another process is not silently repeated.
    """

    def __init__(self, store: JsonQuizStore, stale_after: float = 3600.0):
        """
        Initialize the guard.

        Args:
            store: Store whose output directory holds the lock files.
            stale_after: Age in seconds after which a lock file left by an
                interrupted run is taken over.
        """
        super().__init__()
        self._store = store
        self._stale_after = stale_after

    def claim(
        self, submission_id: str, recorded: SubmissionStatus, regrade: bool = False
    ) -> SubmissionStatus:
        self._acquire(submission_id)
        try:
            if recorded != SubmissionStatus.GRADING and self._store.has_record(submission_id):
                recorded = SubmissionStatus.GRADED
            return super().claim(submission_id, recorded, regrade=regrade)
        except Exception:
            self._store.lock_path(submission_id).unlink(missing_ok=True)
            raise

    def release(self, submission_id: str, status: SubmissionStatus) -> None:
        super().release(submission_id, status)
        self._store.lock_path(submission_id).unlink(missing_ok=True)

    def _acquire(self, submission_id: str) -> None:
        path = self._store.lock_path(submission_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            if not self._is_stale(path):
                raise GradingInProgress(submission_id) from None
            logger.warning("Taking over stale lock {}", path)
            path.unlink(missing_ok=True)
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                raise GradingInProgress(submission_id) from None
            except OSError as e:
                raise StoreError(f"Cannot create lock file: {e}", path=path) from e
        except OSError as e:
            raise StoreError(f"Cannot create lock file: {e}", path=path) from e

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(str(os.getpid()))

    def _is_stale(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > self._stale_after
