import sys
from dataclasses import replace
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from quiz_definition import parse_quiz  # noqa: E402
from quiz_errors import DuplicateAttempt  # noqa: E402


class MemoryAttemptStore:
    """In-memory stand-in for PgAttemptStore with the same conditional-update contract."""

    def __init__(self):
        self.rows = {}
        self.writes = []
        self.before_finalize = None

    def _copy(self, attempt):
        return replace(attempt, answers=dict(attempt.answers),
                       question_results=list(attempt.question_results)
                       if attempt.question_results is not None else None)

    def get(self, attempt_id):
        row = self.rows.get(attempt_id)
        return self._copy(row) if row else None

    def list_for_user(self, user_id, course_id, quiz_path):
        rows = [r for r in self.rows.values()
                if (r.user_id, r.course_id, r.quiz_path) == (user_id, course_id, quiz_path)]
        return [self._copy(r) for r in sorted(rows, key=lambda r: r.attempt_number)]

    def list_for_quiz(self, course_id, quiz_path):
        rows = [r for r in self.rows.values() if (r.course_id, r.quiz_path) == (course_id, quiz_path)]
        submitted = sorted((r for r in rows if r.submitted_at), key=lambda r: r.submitted_at, reverse=True)
        open_rows = [r for r in rows if not r.submitted_at]
        return [self._copy(r) for r in open_rows + submitted]

    def insert(self, attempt):
        for r in self.rows.values():
            same_quiz = (r.user_id, r.course_id, r.quiz_path) == (attempt.user_id, attempt.course_id, attempt.quiz_path)
            if same_quiz and (r.in_progress or r.attempt_number == attempt.attempt_number):
                raise DuplicateAttempt("duplicate key value violates unique constraint")
        self.rows[attempt.id] = self._copy(attempt)
        self.writes.append(("insert", attempt.id))
        return self._copy(attempt)

    def update_answers(self, attempt_id, user_id, answers):
        row = self.rows.get(attempt_id)
        if row is None or row.user_id != user_id or not row.in_progress:
            return None
        row.answers = dict(answers)
        self.writes.append(("update_answers", attempt_id))
        return self._copy(row)

    def finalize(self, attempt_id, user_id, answers, question_results, score, max_score, submitted_at):
        if self.before_finalize:
            self.before_finalize(attempt_id)
        row = self.rows.get(attempt_id)
        if row is None or row.user_id != user_id or not row.in_progress:
            return None
        row.answers = dict(answers)
        row.question_results = list(question_results)
        row.score = score
        row.max_score = max_score
        row.submitted_at = submitted_at
        self.writes.append(("finalize", attempt_id))
        return self._copy(row)


@pytest.fixture
def store():
    return MemoryAttemptStore()


@pytest.fixture
def mixed_quiz():
    return parse_quiz({
        "type": "quiz",
        "title": "Week 1 check",
        "timeLimit": 15,
        "attempts": 2,
        "questions": [
            {"type": "multiple_choice", "question": "2+2?", "options": ["3", "4"], "correctIndex": 1, "points": 10},
            {"type": "short_answer", "question": "Explain.", "points": 20},
        ],
    })


@pytest.fixture
def single_mc_quiz():
    return parse_quiz({
        "title": "One question",
        "timeLimit": 0,
        "attempts": 1,
        "questions": [
            {"type": "multiple_choice", "question": "Pick A", "options": ["A", "B"], "correctIndex": 0, "points": 5},
        ],
    })
