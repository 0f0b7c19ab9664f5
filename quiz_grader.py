"""Deterministic grading of a quiz attempt. No I/O."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from quiz_definition import Answer, ChoiceAnswer, MultipleChoice, QuizDefinition


@dataclass(frozen=True)
class QuestionResult:
    question_index: int
    correct: Optional[bool]            # None -> pending manual grading
    points_earned: Optional[int]
    points_possible: int
    student_answer: Union[int, str, None]
    correct_answer: Optional[int] = None

    @property
    def pending(self) -> bool:
        return self.correct is None

    def to_json(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "questionIndex": self.question_index,
            "correct": self.correct,
            "pointsEarned": self.points_earned,
            "pointsPossible": self.points_possible,
            "studentAnswer": self.student_answer,
        }
        if self.correct_answer is not None:
            out["correctAnswer"] = self.correct_answer
        return out

    @classmethod
    def from_json(cls, raw: Mapping[str, Any]) -> "QuestionResult":
        return cls(
            question_index=int(raw["questionIndex"]),
            correct=raw.get("correct"),
            points_earned=raw.get("pointsEarned"),
            points_possible=raw.get("pointsPossible") or 0,
            student_answer=raw.get("studentAnswer"),
            correct_answer=raw.get("correctAnswer"),
        )


@dataclass(frozen=True)
class GradeResult:
    question_results: List[QuestionResult]
    score: Optional[int]
    max_score: int

    @property
    def pending_manual_grading(self) -> bool:
        return any(r.pending for r in self.question_results)


def grade(quiz: QuizDefinition, answers: Mapping[int, Optional[Answer]]) -> GradeResult:
    """
    Multiple choice: correct iff the selected index equals correct_index.
    Short answer: always pending (correct/points None) until a human grades it.
    A missing answer counts as incorrect / zero, never as an error.
    """
    results: List[QuestionResult] = []
    earned = 0
    pending = False

    for i, q in enumerate(quiz.questions):
        ans = answers.get(i)
        student_answer = ans.raw if ans is not None else None

        if isinstance(q, MultipleChoice):
            ok = isinstance(ans, ChoiceAnswer) and ans.selected_index == q.correct_index
            pts = q.points if ok else 0
            earned += pts
            results.append(QuestionResult(i, ok, pts, q.points, student_answer, q.correct_index))
        else:
            pending = True
            results.append(QuestionResult(i, None, None, q.points, student_answer))

    return GradeResult(
        question_results=results,
        score=None if pending else earned,
        max_score=quiz.max_score,
    )


__all__ = ["QuestionResult", "GradeResult", "grade"]
