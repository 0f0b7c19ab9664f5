from datetime import datetime, timedelta, timezone

import pytest

from quiz_attempts import (
    autosave_attempt, get_attempt, list_attempts, quiz_status, review_attempt, start_attempt,
    submit_attempt,
)
from quiz_definition import ChoiceAnswer, TextAnswer, parse_quiz
from quiz_errors import (
    AlreadySubmitted, AttemptLimitReached, Forbidden, InvalidAnswers, InvalidState, NotFound,
    StoreUnavailable, TimeLimitExceeded,
)

COURSE = 7
QUIZ = "module-01/quiz.json"
T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def _start(store, quiz, user_id=1, now=T0):
    attempt, _ = start_attempt(store, user_id, COURSE, QUIZ, quiz, now=now)
    return attempt


def test_start_is_idempotent_while_in_progress(store, mixed_quiz):
    first, resumed_first = start_attempt(store, 1, COURSE, QUIZ, mixed_quiz, now=T0)
    second, resumed_second = start_attempt(store, 1, COURSE, QUIZ, mixed_quiz, now=T0 + timedelta(seconds=3))

    assert second.id == first.id
    assert (resumed_first, resumed_second) == (False, True)
    assert len(store.rows) == 1
    assert first.attempt_number == 1
    assert first.answers == {}
    assert first.submitted_at is None


def test_start_enforces_attempt_cap(store, mixed_quiz):
    for n in range(mixed_quiz.max_attempts):
        attempt = _start(store, mixed_quiz)
        assert attempt.attempt_number == n + 1
        submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, now=T0)

    with pytest.raises(AttemptLimitReached) as exc:
        _start(store, mixed_quiz)

    assert exc.value.extra == {"maxAttempts": 2, "completedAttempts": 2}
    assert len(store.rows) == 2


def test_start_race_returns_the_winning_attempt(store, mixed_quiz):
    winner = _start(store, mixed_quiz)
    real_list = store.list_for_user
    calls = []

    def stale_then_real(*args):
        calls.append(args)
        return [] if len(calls) == 1 else real_list(*args)

    store.list_for_user = stale_then_real
    attempt, resumed = start_attempt(store, 1, COURSE, QUIZ, mixed_quiz, now=T0)

    assert attempt.id == winner.id
    assert resumed is True
    assert len(store.rows) == 1


def test_autosave_never_advances_state(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    for answers in ({"0": 0}, {"0": 1, "1": "draft"}, {}):
        saved = autosave_attempt(store, attempt.id, 1, answers)
        assert saved.submitted_at is None
        assert saved.score is None
        assert saved.question_results is None

    assert store.get(attempt.id).answers == {}


def test_autosave_replaces_answers_wholesale(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    autosave_attempt(store, attempt.id, 1, {"0": 0, "1": "first"})
    saved = autosave_attempt(store, attempt.id, 1, {"1": "second"})

    assert saved.answers == {1: TextAnswer("second")}


def test_autosave_without_answers_keeps_draft(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    autosave_attempt(store, attempt.id, 1, {"0": 1, "1": "draft"})

    with pytest.raises(InvalidAnswers):
        autosave_attempt(store, attempt.id, 1, None)

    assert store.get(attempt.id).answers == {0: ChoiceAnswer(1), 1: TextAnswer("draft")}

    cleared = autosave_attempt(store, attempt.id, 1, {})
    assert cleared.answers == {}


def test_autosave_rejects_submitted_attempt(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, now=T0)

    with pytest.raises(InvalidState) as exc:
        autosave_attempt(store, attempt.id, 1, {"0": 0})

    assert not isinstance(exc.value, AlreadySubmitted)
    assert store.get(attempt.id).answers == {0: ChoiceAnswer(1)}


def test_autosave_rejects_malformed_answers(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    with pytest.raises(InvalidAnswers):
        autosave_attempt(store, attempt.id, 1, {"zero": 0})
    assert ("update_answers", attempt.id) not in store.writes


def test_submit_is_write_once(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    first = submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1, 1: "some text"}, now=T0)

    with pytest.raises(AlreadySubmitted):
        submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 0}, now=T0 + timedelta(minutes=1))

    stored = store.get(attempt.id)
    assert stored.answers == first.attempt.answers
    assert stored.score == first.attempt.score
    assert stored.submitted_at == T0
    assert store.writes.count(("finalize", attempt.id)) == 1


def test_submit_grades_mixed_quiz(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    result = submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1, 1: "some text"}, now=T0)

    first, second = result.question_results
    assert (first.correct, first.points_earned) == (True, 10)
    assert (second.correct, second.points_earned) == (None, None)
    assert result.attempt.score is None
    assert result.attempt.max_score == 30
    assert result.grading.pending_manual_grading


def test_submit_merges_final_answers_over_autosave(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    autosave_attempt(store, attempt.id, 1, {"0": 0, "1": "saved text"})

    result = submit_attempt(store, attempt.id, 1, mixed_quiz, {"0": 1}, now=T0)

    assert result.attempt.answers == {0: ChoiceAnswer(1), 1: TextAnswer("saved text")}
    assert result.question_results[0].correct is True


def test_submit_drops_stale_autosaved_answers(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    autosave_attempt(store, attempt.id, 1, {"0": "not a choice", "9": 1})

    result = submit_attempt(store, attempt.id, 1, mixed_quiz, {}, now=T0)

    assert result.attempt.answers == {}
    assert result.question_results[0].points_earned == 0


def test_submit_rejects_answers_that_do_not_fit_quiz(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    with pytest.raises(InvalidAnswers):
        submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 5}, now=T0)
    assert store.get(attempt.id).in_progress


def test_concurrent_submit_loses_to_first_writer(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    def other_writer_wins(attempt_id):
        store.before_finalize = None
        submit_attempt(store, attempt_id, 1, mixed_quiz, {0: 0}, now=T0)

    store.before_finalize = other_writer_wins

    with pytest.raises(AlreadySubmitted):
        submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, now=T0)

    stored = store.get(attempt.id)
    assert stored.answers == {0: ChoiceAnswer(0)}
    assert store.writes.count(("finalize", attempt.id)) == 1


def test_other_user_cannot_mutate_attempt(store, mixed_quiz):
    attempt = _start(store, mixed_quiz, user_id=1)

    with pytest.raises(Forbidden):
        autosave_attempt(store, attempt.id, 2, {"0": 1})
    with pytest.raises(Forbidden):
        submit_attempt(store, attempt.id, 2, mixed_quiz, {0: 1}, now=T0)

    stored = store.get(attempt.id)
    assert stored.in_progress
    assert stored.answers == {}
    assert store.writes == [("insert", attempt.id)]


def test_missing_attempt_is_not_found(store, mixed_quiz):
    with pytest.raises(NotFound):
        autosave_attempt(store, "nope", 1, {})
    with pytest.raises(NotFound):
        submit_attempt(store, "nope", 1, mixed_quiz, {})


def test_attempt_scoped_to_requested_quiz(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    with pytest.raises(NotFound):
        autosave_attempt(store, attempt.id, 1, {"0": 1}, scope=(COURSE, "module-02/quiz.json"))
    with pytest.raises(NotFound):
        submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, scope=(COURSE + 1, QUIZ))

    saved = autosave_attempt(store, attempt.id, 1, {"0": 1}, scope=(COURSE, QUIZ))
    assert saved.answers == {0: ChoiceAnswer(1)}


def test_end_to_end_single_question(store, single_mc_quiz):
    attempt, resumed = start_attempt(store, 1, COURSE, QUIZ, single_mc_quiz, now=T0)
    assert (attempt.attempt_number, resumed) == (1, False)

    autosave_attempt(store, attempt.id, 1, {0: 0})
    result = submit_attempt(store, attempt.id, 1, single_mc_quiz, {0: 0}, now=T0 + timedelta(minutes=2))

    assert result.attempt.submitted_at == T0 + timedelta(minutes=2)
    assert result.attempt.score == 5
    assert result.attempt.max_score == 5
    assert [r.to_json() for r in result.attempt.question_results] == [{
        "questionIndex": 0, "correct": True, "pointsEarned": 5,
        "pointsPossible": 5, "studentAnswer": 0, "correctAnswer": 0,
    }]

    with pytest.raises(AttemptLimitReached):
        start_attempt(store, 1, COURSE, QUIZ, single_mc_quiz)


def test_time_limit_enforced_only_when_enabled(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)
    late = T0 + timedelta(minutes=16)

    with pytest.raises(TimeLimitExceeded):
        submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, now=late,
                       enforce_time_limit=True, grace_seconds=30)
    assert store.get(attempt.id).in_progress

    within_grace = T0 + timedelta(minutes=15, seconds=20)
    result = submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, now=within_grace,
                            enforce_time_limit=True, grace_seconds=30)
    assert result.attempt.submitted_at == within_grace


def test_untimed_quiz_never_expires(store, single_mc_quiz):
    attempt = _start(store, single_mc_quiz)

    result = submit_attempt(store, attempt.id, 1, single_mc_quiz, {0: 0},
                            now=T0 + timedelta(days=3), enforce_time_limit=True)

    assert result.attempt.score == 5


def test_late_submit_accepted_when_enforcement_off(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    result = submit_attempt(store, attempt.id, 1, mixed_quiz, {0: 1}, now=T0 + timedelta(hours=5))

    assert not result.attempt.in_progress


def test_store_outage_propagates_from_start(store, mixed_quiz):
    def down(*args):
        raise StoreUnavailable()

    store.list_for_user = down

    with pytest.raises(StoreUnavailable):
        _start(store, mixed_quiz)


def test_activity_log_records_lifecycle_events(store, single_mc_quiz):
    events = []

    def log_activity(user_id, course_id, lesson_uid, a_type, score_points=None, payload=None):
        events.append((a_type, lesson_uid, score_points, payload["attempt_id"]))

    attempt, _ = start_attempt(store, 1, COURSE, QUIZ, single_mc_quiz, log_activity=log_activity)
    autosave_attempt(store, attempt.id, 1, {0: 0}, log_activity=log_activity)
    submit_attempt(store, attempt.id, 1, single_mc_quiz, {0: 0}, log_activity=log_activity)

    assert [e[0] for e in events] == ["quiz_started", "quiz_saved", "quiz_submitted"]
    assert events[-1] == ("quiz_submitted", f"QUIZ:{QUIZ}", 5, attempt.id)


def test_activity_log_failure_does_not_fail_submit(store, single_mc_quiz):
    def broken_log(*args, **kwargs):
        raise RuntimeError("activity_log missing")

    attempt = _start(store, single_mc_quiz)
    result = submit_attempt(store, attempt.id, 1, single_mc_quiz, {0: 0}, log_activity=broken_log)

    assert result.attempt.score == 5


# ------------------------------- read side ------------------------------------
def test_list_attempts_by_role(store, mixed_quiz):
    a1 = _start(store, mixed_quiz, user_id=1)
    submit_attempt(store, a1.id, 1, mixed_quiz, {0: 1}, now=T0)
    a2 = _start(store, mixed_quiz, user_id=2)
    submit_attempt(store, a2.id, 2, mixed_quiz, {0: 0}, now=T0 + timedelta(minutes=5))
    a3 = _start(store, mixed_quiz, user_id=1)

    mine = list_attempts(store, COURSE, QUIZ, 1, "student")
    assert [a.id for a in mine] == [a1.id, a3.id]

    everyone = list_attempts(store, COURSE, QUIZ, 99, "teacher")
    assert {a.id for a in everyone} == {a1.id, a2.id, a3.id}
    submitted = [a.id for a in everyone if not a.in_progress]
    assert submitted == [a2.id, a1.id]

    with pytest.raises(Forbidden):
        list_attempts(store, COURSE, QUIZ, 3, None)


def test_get_attempt_access_rules(store, mixed_quiz):
    attempt = _start(store, mixed_quiz, user_id=1)

    assert get_attempt(store, attempt.id, 1, "student").id == attempt.id
    assert get_attempt(store, attempt.id, 50, "ta").id == attempt.id
    with pytest.raises(Forbidden):
        get_attempt(store, attempt.id, 2, "student")
    with pytest.raises(NotFound):
        get_attempt(store, attempt.id, 1, "student", course_id=COURSE + 1)


def test_quiz_status_summarizes_attempts(store, mixed_quiz, single_mc_quiz):
    status = quiz_status(store, 1, COURSE, QUIZ, single_mc_quiz)
    assert status["canStart"] is True
    assert status["inProgressAttemptId"] is None

    attempt = _start(store, single_mc_quiz)
    status = quiz_status(store, 1, COURSE, QUIZ, single_mc_quiz)
    assert status["inProgressAttemptId"] == attempt.id
    assert status["canStart"] is False

    submit_attempt(store, attempt.id, 1, single_mc_quiz, {0: 0}, now=T0)
    status = quiz_status(store, 1, COURSE, QUIZ, single_mc_quiz)
    assert status["completedAttempts"] == 1
    assert status["bestScore"] == 5
    assert status["canStart"] is False
    assert status["maxScore"] == 5


def test_review_hides_answers_from_students_when_configured(store):
    quiz = parse_quiz({
        "title": "Hidden",
        "timeLimit": 0,
        "attempts": 1,
        "showAnswers": False,
        "questions": [
            {"type": "multiple_choice", "question": "Pick", "options": ["A", "B"], "correctIndex": 1, "points": 2},
            {"type": "short_answer", "question": "Why", "points": 3},
        ],
    })
    attempt = _start(store, quiz)
    submitted = submit_attempt(store, attempt.id, 1, quiz, {0: 0, 1: "because"}, now=T0).attempt

    student_view = review_attempt(submitted, quiz, "student")
    assert student_view["showAnswers"] is False
    assert "correctAnswer" not in student_view["questions"][0]
    assert student_view["questions"][0]["options"] == ["A", "B"]
    assert student_view["pendingManualGrading"] is True

    teacher_view = review_attempt(submitted, quiz, "teacher")
    assert teacher_view["questions"][0]["correctAnswer"] == 1


def test_review_requires_submitted_attempt(store, mixed_quiz):
    attempt = _start(store, mixed_quiz)

    with pytest.raises(InvalidState):
        review_attempt(attempt, mixed_quiz, "student")
