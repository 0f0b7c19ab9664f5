"""Quiz documents: parsing, validation and a cached loader over the blob store."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from quiz_errors import InvalidAnswers, MalformedDefinition, NotFound, QuizError, StoreUnavailable

_INDEX_KEY = re.compile(r"(0|[1-9][0-9]*)\Z")

MULTIPLE_CHOICE = "multiple_choice"
SHORT_ANSWER = "short_answer"


# ------------------------------- definition types -----------------------------
@dataclass(frozen=True)
class MultipleChoice:
    prompt: str
    options: Tuple[str, ...]
    correct_index: int
    points: int
    kind = MULTIPLE_CHOICE


@dataclass(frozen=True)
class ShortAnswer:
    prompt: str
    points: int
    kind = SHORT_ANSWER


Question = Union[MultipleChoice, ShortAnswer]


@dataclass(frozen=True)
class QuizDefinition:
    title: str
    time_limit_minutes: int
    max_attempts: int
    questions: Tuple[Question, ...]
    show_answers: bool = True

    @property
    def max_score(self) -> int:
        return sum(q.points for q in self.questions)

    def to_public_dict(self) -> Dict[str, Any]:
        """Quiz as shown to a student taking it (no correct answers)."""
        qs = []
        for q in self.questions:
            item: Dict[str, Any] = {"type": q.kind, "question": q.prompt, "points": q.points}
            if isinstance(q, MultipleChoice):
                item["options"] = list(q.options)
            qs.append(item)
        return {
            "title": self.title,
            "timeLimit": self.time_limit_minutes,
            "attempts": self.max_attempts,
            "showAnswers": self.show_answers,
            "questions": qs,
        }


# ------------------------------- answer types ---------------------------------
@dataclass(frozen=True)
class ChoiceAnswer:
    selected_index: int

    def to_json(self) -> Dict[str, Any]:
        return {"selectedIndex": self.selected_index}

    @property
    def raw(self) -> int:
        return self.selected_index


@dataclass(frozen=True)
class TextAnswer:
    text: str

    def to_json(self) -> Dict[str, Any]:
        return {"text": self.text}

    @property
    def raw(self) -> str:
        return self.text


Answer = Union[ChoiceAnswer, TextAnswer]
Answers = Dict[int, Optional[Answer]]


# ------------------------------- parsing helpers ------------------------------
def _is_int(v: Any) -> bool:
    return isinstance(v, int) and not isinstance(v, bool)


def _first(raw: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in raw:
            return raw[k]
    return None


def _parse_question(raw: Any, index: int) -> Question:
    where = f"question {index}"
    if not isinstance(raw, dict):
        raise MalformedDefinition(f"{where}: expected an object")
    q_type = raw.get("type")
    prompt = _first(raw, "question", "prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise MalformedDefinition(f"{where}: missing question text")
    points = raw.get("points")
    if not _is_int(points) or points <= 0:
        raise MalformedDefinition(f"{where}: points must be a positive integer")

    if q_type == MULTIPLE_CHOICE:
        options = raw.get("options")
        if not isinstance(options, list) or len(options) < 2 or not all(isinstance(o, str) for o in options):
            raise MalformedDefinition(f"{where}: options must be a list of at least two strings")
        correct = _first(raw, "correctIndex", "correct_index")
        if not _is_int(correct) or not (0 <= correct < len(options)):
            raise MalformedDefinition(f"{where}: correctIndex out of range")
        return MultipleChoice(prompt=prompt, options=tuple(options), correct_index=correct, points=points)
    if q_type == SHORT_ANSWER:
        return ShortAnswer(prompt=prompt, points=points)
    raise MalformedDefinition(f"{where}: unknown question type {q_type!r}")


def parse_quiz(data: Any) -> QuizDefinition:
    """Build a QuizDefinition from the authored JSON document (already decoded)."""
    if not isinstance(data, dict):
        raise MalformedDefinition("Quiz document must be a JSON object")
    if data.get("type") not in (None, "quiz"):
        raise MalformedDefinition(f"Not a quiz document (type={data.get('type')!r})")

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise MalformedDefinition("Quiz title is required")

    time_limit = _first(data, "timeLimit", "timeLimitMinutes")
    if not _is_int(time_limit) or time_limit < 0:
        raise MalformedDefinition("timeLimit must be a non-negative integer (minutes)")

    max_attempts = _first(data, "attempts", "maxAttempts")
    if not _is_int(max_attempts) or max_attempts < 1:
        raise MalformedDefinition("attempts must be a positive integer")

    show_answers = data.get("showAnswers", True)
    if not isinstance(show_answers, bool):
        raise MalformedDefinition("showAnswers must be a boolean")

    raw_questions = data.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise MalformedDefinition("Quiz must contain at least one question")

    return QuizDefinition(
        title=title.strip(),
        time_limit_minutes=time_limit,
        max_attempts=max_attempts,
        questions=tuple(_parse_question(q, i) for i, q in enumerate(raw_questions)),
        show_answers=show_answers,
    )


def parse_quiz_bytes(blob: bytes) -> QuizDefinition:
    try:
        data = json.loads(blob.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedDefinition(f"Quiz document is not valid JSON: {e}")
    return parse_quiz(data)


# ------------------------------- answers --------------------------------------
def _parse_answer_value(value: Any, key: Any) -> Optional[Answer]:
    if value is None:
        return None
    if _is_int(value):
        return ChoiceAnswer(value)
    if isinstance(value, str):
        return TextAnswer(value)
    if isinstance(value, dict):
        if "selectedIndex" in value:
            sel = value["selectedIndex"]
            if sel is None:
                return None
            if _is_int(sel):
                return ChoiceAnswer(sel)
        elif "text" in value:
            txt = value["text"]
            if txt is None:
                return None
            if isinstance(txt, str):
                return TextAnswer(txt)
    raise InvalidAnswers(f"Answer for question {key} has an unsupported shape")


def parse_answers(raw: Any, char_limit: Optional[int] = None) -> Answers:
    """Structural validation of a client answer map; keys become int indices."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise InvalidAnswers("answers must be an object keyed by question index")
    out: Answers = {}
    for k, v in raw.items():
        if _is_int(k):
            idx = k
        elif isinstance(k, str) and _INDEX_KEY.match(k):
            idx = int(k)
        else:
            raise InvalidAnswers(f"Invalid question index {k!r}")
        if idx < 0:
            raise InvalidAnswers(f"Invalid question index {k!r}")
        if idx in out:
            raise InvalidAnswers(f"Duplicate answer for question {idx}")
        ans = _parse_answer_value(v, k)
        if isinstance(ans, TextAnswer) and char_limit is not None:
            ans = TextAnswer(ans.text[:max(0, int(char_limit))])
        out[idx] = ans
    return out


def validate_answers(quiz: QuizDefinition, answers: Answers) -> Answers:
    """Check every answer against the question it targets."""
    for idx, ans in answers.items():
        if not (0 <= idx < len(quiz.questions)):
            raise InvalidAnswers(f"Question {idx} does not exist in this quiz")
        if ans is None:
            continue
        q = quiz.questions[idx]
        if isinstance(q, MultipleChoice):
            if not isinstance(ans, ChoiceAnswer):
                raise InvalidAnswers(f"Question {idx} expects a selected option")
            if not (0 <= ans.selected_index < len(q.options)):
                raise InvalidAnswers(f"Question {idx}: option {ans.selected_index} out of range")
        elif not isinstance(ans, TextAnswer):
            raise InvalidAnswers(f"Question {idx} expects a text answer")
    return answers


def answers_to_json(answers: Answers) -> Dict[str, Any]:
    return {str(i): (a.to_json() if a is not None else None) for i, a in sorted(answers.items())}


# ------------------------------- loader ---------------------------------------
def make_quiz_loader(download: Callable[[str, str], bytes],
                     cache_size: int = 128) -> Callable[[str, str], QuizDefinition]:
    """
    Returns load(bucket, path) -> QuizDefinition.
    Published quiz documents are immutable, so parsed results are cached per
    (bucket, path). Failures raise and are not cached.
    """
    @lru_cache(maxsize=max(1, int(cache_size)))
    def _load(bucket: str, path: str) -> QuizDefinition:
        try:
            blob = download(bucket, path)
        except QuizError:
            raise
        except FileNotFoundError:
            raise NotFound("Quiz not found", path=path)
        except OSError as e:
            print(f"[quiz] download failed for {bucket}/{path}: {e}")
            raise StoreUnavailable()
        if blob is None:
            raise NotFound("Quiz not found", path=path)
        return parse_quiz_bytes(blob)

    def load(bucket: str, path: str) -> QuizDefinition:
        return _load(bucket, path)

    load.cache_clear = _load.cache_clear  # type: ignore[attr-defined]
    load.cache_info = _load.cache_info    # type: ignore[attr-defined]
    return load


__all__ = [
    "MULTIPLE_CHOICE", "SHORT_ANSWER",
    "MultipleChoice", "ShortAnswer", "Question", "QuizDefinition",
    "ChoiceAnswer", "TextAnswer", "Answer", "Answers",
    "parse_quiz", "parse_quiz_bytes", "parse_answers", "validate_answers", "answers_to_json",
    "make_quiz_loader",
]
