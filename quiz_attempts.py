# quiz_attempts.py
# -----------------------------------------------------------------------------
# Quiz attempt lifecycle:  [none] --start--> [in-progress] --autosave--> [in-progress]
#                          [in-progress] --submit--> [submitted] (terminal)
# - PgAttemptStore: public.quiz_attempts via psycopg helpers (fetch_one/fetch_all/
#   execute_returning/execute). Autosave & submit are conditional updates on
#   submitted_at IS NULL; that WHERE clause is the real write-once guard.
# - start/autosave/submit plus read-side helpers (list, get, status, review).
# -----------------------------------------------------------------------------

import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg
from psycopg import errors as pg_errors
from psycopg_pool import PoolTimeout

from quiz_definition import (
    Answers, MultipleChoice, QuizDefinition, answers_to_json, parse_answers, validate_answers,
)
from quiz_errors import (
    AlreadySubmitted, AttemptLimitReached, DuplicateAttempt, Forbidden, InvalidAnswers,
    InvalidState, NotFound, StoreUnavailable, TimeLimitExceeded,
)
from quiz_grader import GradeResult, QuestionResult, grade

STAFF_ROLES = {"teacher", "ta"}
STUDENT_ROLE = "student"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _num(v: Any) -> Any:
    if isinstance(v, Decimal):
        return int(v) if v == v.to_integral_value() else float(v)
    return v


def _json_col(v: Any) -> Any:
    if isinstance(v, (bytes, bytearray)):
        v = v.decode("utf-8")
    if isinstance(v, str):
        return json.loads(v) if v.strip() else None
    return v


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


# =============================================================================
# Attempt record
# =============================================================================
@dataclass
class QuizAttempt:
    id: str
    user_id: int
    course_id: int
    quiz_path: str
    attempt_number: int
    started_at: datetime
    answers: Answers = field(default_factory=dict)
    submitted_at: Optional[datetime] = None
    score: Optional[int] = None
    max_score: Optional[int] = None
    question_results: Optional[List[QuestionResult]] = None

    @property
    def in_progress(self) -> bool:
        return self.submitted_at is None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QuizAttempt":
        results_raw = _json_col(row.get("question_results"))
        return cls(
            id=str(row["id"]),
            user_id=row["user_id"],
            course_id=row["course_id"],
            quiz_path=row["quiz_path"],
            attempt_number=int(row["attempt_number"]),
            started_at=row["started_at"],
            answers=parse_answers(_json_col(row.get("answers")) or {}),
            submitted_at=row.get("submitted_at"),
            score=_num(row.get("score")),
            max_score=_num(row.get("max_score")),
            question_results=(
                [QuestionResult.from_json(r) for r in results_raw] if isinstance(results_raw, list) else None
            ),
        )

    def to_json(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "courseId": self.course_id,
            "quizPath": self.quiz_path,
            "attemptNumber": self.attempt_number,
            "status": "in_progress" if self.in_progress else "submitted",
            "answers": answers_to_json(self.answers),
            "score": self.score,
            "maxScore": self.max_score,
            "startedAt": _iso(self.started_at),
            "submittedAt": _iso(self.submitted_at),
            "questionResults": (
                [r.to_json() for r in self.question_results] if self.question_results is not None else None
            ),
        }


@dataclass(frozen=True)
class SubmitResult:
    attempt: QuizAttempt
    grading: GradeResult

    @property
    def question_results(self) -> List[QuestionResult]:
        return self.grading.question_results


# =============================================================================
# psycopg-backed store
# =============================================================================
@contextmanager
def store_errors(op: str):
    try:
        yield
    except pg_errors.UniqueViolation as e:
        raise DuplicateAttempt(str(e))
    except (psycopg.OperationalError, PoolTimeout) as e:
        print(f"[quiz] store {op} failed: {e}")
        raise StoreUnavailable()


_ATTEMPT_COLUMNS = """
    id, user_id, course_id, quiz_path, attempt_number, answers, question_results,
    score, max_score, started_at, submitted_at
"""

# One in-progress row per (user, course, quiz) and unique attempt numbers.
_DDL = (
    """
    CREATE TABLE IF NOT EXISTS public.quiz_attempts (
        id               TEXT PRIMARY KEY,
        user_id          BIGINT      NOT NULL,
        course_id        BIGINT      NOT NULL,
        quiz_path        TEXT        NOT NULL,
        attempt_number   INT         NOT NULL CHECK (attempt_number >= 1),
        answers          JSONB       NOT NULL DEFAULT '{}'::jsonb,
        question_results JSONB,
        score            NUMERIC,
        max_score        NUMERIC,
        started_at       TIMESTAMPTZ NOT NULL DEFAULT now(),
        submitted_at     TIMESTAMPTZ
    );
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS quiz_attempts_one_in_progress
        ON public.quiz_attempts (user_id, course_id, quiz_path)
        WHERE submitted_at IS NULL;
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS quiz_attempts_number
        ON public.quiz_attempts (user_id, course_id, quiz_path, attempt_number);
    """,
)


class PgAttemptStore:
    """Rows in public.quiz_attempts. Each method is one statement (one round-trip)."""

    def __init__(self, deps: Dict[str, Callable]):
        self.fetch_one = deps["fetch_one"]
        self.fetch_all = deps["fetch_all"]
        self.execute_returning = deps["execute_returning"]
        self.execute = deps.get("execute")
        self._table_ready = False

    def ensure_table(self) -> None:
        if self._table_ready or self.execute is None:
            return
        try:
            for stmt in _DDL:
                self.execute(stmt)
        except Exception as e:
            print("[quiz] ensure quiz_attempts table failed (will retry):", e)
            return
        self._table_ready = True

    def get(self, attempt_id: str) -> Optional[QuizAttempt]:
        self.ensure_table()
        with store_errors("get"):
            row = self.fetch_one(f"""
                SELECT {_ATTEMPT_COLUMNS}
                  FROM public.quiz_attempts
                 WHERE id = %s;
            """, (attempt_id,))
        return QuizAttempt.from_row(row) if row else None

    def list_for_user(self, user_id: int, course_id: int, quiz_path: str) -> List[QuizAttempt]:
        self.ensure_table()
        with store_errors("list_for_user"):
            rows = self.fetch_all(f"""
                SELECT {_ATTEMPT_COLUMNS}
                  FROM public.quiz_attempts
                 WHERE user_id = %s AND course_id = %s AND quiz_path = %s
                 ORDER BY attempt_number ASC;
            """, (user_id, course_id, quiz_path))
        return [QuizAttempt.from_row(r) for r in rows or []]

    def list_for_quiz(self, course_id: int, quiz_path: str) -> List[QuizAttempt]:
        self.ensure_table()
        with store_errors("list_for_quiz"):
            rows = self.fetch_all(f"""
                SELECT {_ATTEMPT_COLUMNS}
                  FROM public.quiz_attempts
                 WHERE course_id = %s AND quiz_path = %s
                 ORDER BY submitted_at DESC NULLS LAST, attempt_number DESC;
            """, (course_id, quiz_path))
        return [QuizAttempt.from_row(r) for r in rows or []]

    def insert(self, attempt: QuizAttempt) -> QuizAttempt:
        """Raises DuplicateAttempt if an in-progress row (or the same attempt_number) exists."""
        self.ensure_table()
        with store_errors("insert"):
            rows = self.execute_returning(f"""
                INSERT INTO public.quiz_attempts
                    (id, user_id, course_id, quiz_path, attempt_number, answers, max_score, started_at)
                VALUES (%s, %s, %s, %s, %s, %s::jsonb, %s, %s)
                RETURNING {_ATTEMPT_COLUMNS};
            """, (attempt.id, attempt.user_id, attempt.course_id, attempt.quiz_path,
                  attempt.attempt_number, json.dumps(answers_to_json(attempt.answers)),
                  attempt.max_score, attempt.started_at))
        return QuizAttempt.from_row(rows[0])

    def update_answers(self, attempt_id: str, user_id: int, answers: Answers) -> Optional[QuizAttempt]:
        """Last-write-wins replace; None when the row is missing, foreign or submitted."""
        self.ensure_table()
        with store_errors("update_answers"):
            rows = self.execute_returning(f"""
                UPDATE public.quiz_attempts
                   SET answers = %s::jsonb
                 WHERE id = %s AND user_id = %s AND submitted_at IS NULL
                RETURNING {_ATTEMPT_COLUMNS};
            """, (json.dumps(answers_to_json(answers)), attempt_id, user_id))
        return QuizAttempt.from_row(rows[0]) if rows else None

    def finalize(self, attempt_id: str, user_id: int, answers: Answers,
                 question_results: List[QuestionResult], score: Optional[int],
                 max_score: int, submitted_at: datetime) -> Optional[QuizAttempt]:
        """Single terminal write. None when another writer submitted first."""
        self.ensure_table()
        with store_errors("finalize"):
            rows = self.execute_returning(f"""
                UPDATE public.quiz_attempts
                   SET answers          = %s::jsonb,
                       question_results = %s::jsonb,
                       score            = %s,
                       max_score        = %s,
                       submitted_at     = %s
                 WHERE id = %s AND user_id = %s AND submitted_at IS NULL
                RETURNING {_ATTEMPT_COLUMNS};
            """, (json.dumps(answers_to_json(answers)),
                  json.dumps([r.to_json() for r in question_results]),
                  score, max_score, submitted_at, attempt_id, user_id))
        return QuizAttempt.from_row(rows[0]) if rows else None


# =============================================================================
# Lifecycle
# =============================================================================
def _log(log_activity: Optional[Callable], attempt: QuizAttempt, event: str,
         extra: Optional[Dict[str, Any]] = None, score_points: Optional[int] = None):
    if not log_activity:
        return
    payload = {
        "kind": "quiz",
        "event": event,
        "attempt_id": attempt.id,
        "quiz_path": attempt.quiz_path,
        "attempt_number": attempt.attempt_number,
    }
    if extra:
        payload.update(extra)
    try:
        log_activity(attempt.user_id, attempt.course_id, f"QUIZ:{attempt.quiz_path}",
                     f"quiz_{event}", score_points=score_points, payload=payload)
    except Exception as e:
        print(f"[quiz] activity log failed ({event}): {e}")


def _owned_open_attempt(store, attempt_id: str, caller_user_id: int, submitted_error,
                        scope: Optional[Tuple[int, str]] = None) -> QuizAttempt:
    """scope=(course_id, quiz_path) ties the attempt to the quiz named in the request."""
    attempt = store.get(attempt_id)
    if attempt is None:
        raise NotFound("Attempt not found")
    if scope is not None and (attempt.course_id, attempt.quiz_path) != tuple(scope):
        raise NotFound("Attempt not found")
    if attempt.user_id != caller_user_id:
        raise Forbidden("Access denied")
    if not attempt.in_progress:
        raise submitted_error()
    return attempt


def start_attempt(store, user_id: int, course_id: int, quiz_path: str, quiz: QuizDefinition,
                  now: Optional[datetime] = None,
                  log_activity: Optional[Callable] = None) -> Tuple[QuizAttempt, bool]:
    """
    Returns (attempt, resumed). An existing in-progress attempt is returned as-is
    (resumed=True) so double clicks / reloads never create a second one.
    """
    existing = store.list_for_user(user_id, course_id, quiz_path)
    for a in existing:
        if a.in_progress:
            return a, True

    submitted = [a for a in existing if not a.in_progress]
    if len(submitted) >= quiz.max_attempts:
        raise AttemptLimitReached(
            f"Maximum attempts ({quiz.max_attempts}) reached",
            maxAttempts=quiz.max_attempts, completedAttempts=len(submitted),
        )

    attempt = QuizAttempt(
        id=uuid.uuid4().hex,
        user_id=user_id,
        course_id=course_id,
        quiz_path=quiz_path,
        attempt_number=len(submitted) + 1,
        started_at=now or _utcnow(),
        answers={},
        max_score=quiz.max_score,
    )
    try:
        created = store.insert(attempt)
    except DuplicateAttempt:
        # Lost a race with a concurrent start; hand back the winner.
        for a in store.list_for_user(user_id, course_id, quiz_path):
            if a.in_progress:
                return a, True
        raise StoreUnavailable("Concurrent attempt update; please retry.")

    _log(log_activity, created, "started", {"max_score": quiz.max_score})
    return created, False


def autosave_attempt(store, attempt_id: str, caller_user_id: int, answers: Any,
                     char_limit: Optional[int] = None,
                     log_activity: Optional[Callable] = None,
                     scope: Optional[Tuple[int, str]] = None) -> QuizAttempt:
    """Replaces stored answers wholesale. Never grades, never submits."""
    _owned_open_attempt(store, attempt_id, caller_user_id, InvalidState, scope)
    if answers is None:
        raise InvalidAnswers("answers is required; send {} to clear the draft")
    parsed = parse_answers(answers, char_limit)
    updated = store.update_answers(attempt_id, caller_user_id, parsed)
    if updated is None:
        raise InvalidState()
    _log(log_activity, updated, "saved", {"answered": sum(1 for a in parsed.values() if a is not None)})
    return updated


def _fit_stored_answers(quiz: QuizDefinition, stored: Answers) -> Answers:
    """Autosaved answers were only shape-checked; keep the ones valid for this quiz."""
    kept: Answers = {}
    for idx, ans in stored.items():
        try:
            validate_answers(quiz, {idx: ans})
        except InvalidAnswers as e:
            print(f"[quiz] dropping stale autosaved answer {idx}: {e.message}")
            continue
        kept[idx] = ans
    return kept


def submit_attempt(store, attempt_id: str, caller_user_id: int, quiz: QuizDefinition,
                   final_answers: Any, now: Optional[datetime] = None,
                   enforce_time_limit: bool = False, grace_seconds: int = 0,
                   char_limit: Optional[int] = None,
                   log_activity: Optional[Callable] = None,
                   scope: Optional[Tuple[int, str]] = None) -> SubmitResult:
    """
    Merge final answers over stored ones, grade, and write everything in one
    conditional UPDATE. A second submit raises AlreadySubmitted and writes nothing.
    """
    attempt = _owned_open_attempt(store, attempt_id, caller_user_id, AlreadySubmitted, scope)
    final = validate_answers(quiz, parse_answers(final_answers, char_limit))
    now = now or _utcnow()

    if enforce_time_limit and quiz.time_limit_minutes > 0:
        deadline = attempt.started_at + timedelta(minutes=quiz.time_limit_minutes, seconds=max(0, grace_seconds))
        if now > deadline:
            raise TimeLimitExceeded(deadline=_iso(deadline))

    merged = _fit_stored_answers(quiz, attempt.answers)
    merged.update(final)
    result = grade(quiz, merged)

    finalized = store.finalize(attempt_id, caller_user_id, merged, result.question_results,
                               result.score, result.max_score, now)
    if finalized is None:
        current = store.get(attempt_id)
        if current is not None and not current.in_progress:
            raise AlreadySubmitted()
        raise NotFound("Attempt not found")

    _log(log_activity, finalized, "submitted",
         {"score": result.score, "max_score": result.max_score,
          "pending_manual_grading": result.pending_manual_grading},
         score_points=result.score)
    return SubmitResult(attempt=finalized, grading=result)


# =============================================================================
# Read side
# =============================================================================
def _require_enrolled(role: Optional[str]) -> str:
    if role not in STAFF_ROLES and role != STUDENT_ROLE:
        raise Forbidden("Not enrolled in this course")
    return role


def list_attempts(store, course_id: int, quiz_path: str, caller_user_id: int,
                  role: Optional[str]) -> List[QuizAttempt]:
    if _require_enrolled(role) in STAFF_ROLES:
        return store.list_for_quiz(course_id, quiz_path)
    return store.list_for_user(caller_user_id, course_id, quiz_path)


def get_attempt(store, attempt_id: str, caller_user_id: int, role: Optional[str],
                course_id: Optional[int] = None, quiz_path: Optional[str] = None) -> QuizAttempt:
    role = _require_enrolled(role)
    attempt = store.get(attempt_id)
    if attempt is None:
        raise NotFound("Attempt not found")
    if course_id is not None and attempt.course_id != course_id:
        raise NotFound("Attempt not found")
    if quiz_path is not None and attempt.quiz_path != quiz_path:
        raise NotFound("Attempt not found")
    if role not in STAFF_ROLES and attempt.user_id != caller_user_id:
        raise Forbidden("Access denied")
    return attempt


def quiz_status(store, user_id: int, course_id: int, quiz_path: str, quiz: QuizDefinition,
                role: Optional[str] = STUDENT_ROLE) -> Dict[str, Any]:
    role = _require_enrolled(role)
    attempts = store.list_for_user(user_id, course_id, quiz_path)
    in_progress = next((a for a in attempts if a.in_progress), None)
    completed = [a for a in attempts if not a.in_progress]
    scored = [a.score for a in completed if a.score is not None]
    return {
        "title": quiz.title,
        "role": role,
        "timeLimitMinutes": quiz.time_limit_minutes,
        "questionCount": len(quiz.questions),
        "maxScore": quiz.max_score,
        "maxAttempts": quiz.max_attempts,
        "completedAttempts": len(completed),
        "inProgressAttemptId": in_progress.id if in_progress else None,
        "canStart": role == STUDENT_ROLE and in_progress is None and len(completed) < quiz.max_attempts,
        "bestScore": max(scored) if scored else None,
    }


def review_attempt(attempt: QuizAttempt, quiz: QuizDefinition, role: Optional[str]) -> Dict[str, Any]:
    """Submitted attempt joined with its questions; correct answers hidden from students when the quiz says so."""
    if attempt.in_progress or attempt.question_results is None:
        raise InvalidState("Attempt has not been submitted")
    reveal = quiz.show_answers or role in STAFF_ROLES

    items = []
    for r in attempt.question_results:
        q = quiz.questions[r.question_index] if r.question_index < len(quiz.questions) else None
        shown = r if reveal else replace(r, correct_answer=None)
        item = shown.to_json()
        if q is not None:
            item["type"] = q.kind
            item["question"] = q.prompt
            if isinstance(q, MultipleChoice):
                item["options"] = list(q.options)
        items.append(item)

    return {
        "attempt": attempt.to_json() if reveal else {**attempt.to_json(), "questionResults": None},
        "questions": items,
        "score": attempt.score,
        "maxScore": attempt.max_score,
        "pendingManualGrading": any(r.pending for r in attempt.question_results),
        "showAnswers": reveal,
    }


__all__ = [
    "STAFF_ROLES", "STUDENT_ROLE", "QuizAttempt", "SubmitResult", "PgAttemptStore", "store_errors",
    "start_attempt", "autosave_attempt", "submit_attempt",
    "list_attempts", "get_attempt", "quiz_status", "review_attempt",
]
