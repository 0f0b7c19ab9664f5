# quiz.py
# -----------------------------------------------------------------------------
# Quiz attempt API (JSON). Mounted at {BASE_PATH}/api/quizzes.
#   GET    /<quiz_path>/status                      landing summary (continue / start / limit)
#   GET    /<quiz_path>/attempts                    staff: all attempts; student: own
#   POST   /<quiz_path>/attempts                    start (idempotent re-entry)
#   GET    /<quiz_path>/attempts/<id>               attempt detail
#   PATCH  /<quiz_path>/attempts/<id>               autosave  (alias: POST .../save)
#   POST   /<quiz_path>/attempts/<id>/submit        grade + finalize (write-once)
#   GET    /<quiz_path>/attempts/<id>/results       review of a submitted attempt
# - courseId comes from the query string (GET) or JSON body (POST/PATCH)
# - quiz definitions are always loaded server-side from course storage
# -----------------------------------------------------------------------------

import os
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Blueprint, g, jsonify, request

from quiz_attempts import (
    STAFF_ROLES, STUDENT_ROLE, PgAttemptStore, autosave_attempt, get_attempt, list_attempts,
    quiz_status, review_attempt, start_attempt, store_errors, submit_attempt,
)
from quiz_definition import QuizDefinition, make_quiz_loader
from quiz_errors import BadRequest, Forbidden, NotFound, QuizError, Unauthenticated
from quiz_storage import safe_object_path


def create_quiz_blueprint(base_path: str, deps: Dict[str, Any], name: str = "quiz") -> Blueprint:
    """
    Factory that returns the quiz API Blueprint mounted at base_path + "/api/quizzes".
    Required deps: fetch_one, get_role, and either (fetch_all, execute_returning) or store,
                   and either download or load_quiz
    Optional deps: execute, log_activity
    """
    url_prefix = (base_path or "").rstrip("/") + "/api/quizzes"
    bp = Blueprint(name, __name__, url_prefix=url_prefix)

    # ---- Required deps -------------------------------------------------------
    fetch_one: Callable = deps["fetch_one"]
    get_role:  Callable = deps["get_role"]
    log_activity: Optional[Callable] = deps.get("log_activity")

    # ---- Config --------------------------------------------------------------
    ENFORCE_TIME_LIMIT   = (os.getenv("QUIZ_ENFORCE_TIME_LIMIT", "0").lower() in ("1", "true", "yes"))
    TIME_LIMIT_GRACE_SEC = int(os.getenv("QUIZ_TIME_LIMIT_GRACE_SECONDS") or 30)
    ANSWER_CHAR_LIMIT    = int(os.getenv("QUIZ_ANSWER_CHAR_LIMIT") or 5000)
    DEFINITION_CACHE     = int(os.getenv("QUIZ_DEFINITION_CACHE_SIZE") or 128)
    BUCKET_TEMPLATE      = (os.getenv("QUIZ_BUCKET_TEMPLATE") or "inst-{institution_id}").strip()

    store = deps.get("store") or PgAttemptStore(deps)
    load_quiz: Callable[[str, str], QuizDefinition] = (
        deps.get("load_quiz") or make_quiz_loader(deps["download"], cache_size=DEFINITION_CACHE)
    )

    # ------------------------------- request helpers --------------------------
    def _caller() -> int:
        uid = getattr(g, "user_id", None)
        if not uid:
            raise Unauthenticated()
        return uid

    def _body() -> Dict[str, Any]:
        data = request.get_json(silent=True)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise BadRequest("JSON object body required")
        return data

    def _course_id(data: Optional[Dict[str, Any]] = None) -> int:
        raw = request.args.get("courseId")
        if raw is None and data:
            raw = data.get("courseId", data.get("course_id"))
        try:
            return int(raw)
        except (TypeError, ValueError):
            raise BadRequest("Course ID is required")

    def _role(user_id: int, course_id: int) -> str:
        with store_errors("get_role"):
            role = get_role(user_id, course_id)
        if role not in STAFF_ROLES and role != STUDENT_ROLE:
            raise Forbidden("Not enrolled in this course")
        return role

    def _quiz_location(course_id: int, quiz_path: str) -> Tuple[str, str]:
        with store_errors("course_lookup"):
            row = fetch_one("""
                SELECT c.id, c.institution_id, v.storage_path
                  FROM public.courses c
                  JOIN public.course_versions v ON v.id = c.published_version_id
                 WHERE c.id = %s;
            """, (course_id,))
        if not row or not row.get("storage_path"):
            raise NotFound("Course has no published version")
        bucket = BUCKET_TEMPLATE.format(institution_id=row.get("institution_id"))
        return bucket, safe_object_path(row["storage_path"], quiz_path)

    def _load(course_id: int, quiz_path: str) -> QuizDefinition:
        bucket, path = _quiz_location(course_id, quiz_path)
        return load_quiz(bucket, path)

    def _hide_answers(role: str, quiz: QuizDefinition) -> bool:
        return role not in STAFF_ROLES and not quiz.show_answers

    def _results_json(results, hide: bool):
        out = []
        for r in results or []:
            item = r.to_json()
            if hide:
                item.pop("correctAnswer", None)
            out.append(item)
        return out

    def _attempt_json(attempt, hide: bool) -> Dict[str, Any]:
        data = attempt.to_json()
        if data.get("questionResults") is not None:
            data["questionResults"] = _results_json(attempt.question_results, hide)
        return data

    # ------------------------------- errors -----------------------------------
    @bp.errorhandler(QuizError)
    def _quiz_error(e: QuizError):
        if e.status >= 500:
            print(f"[quiz] {request.method} {request.path} -> {e.code}: {e.message}")
        return jsonify(e.to_dict()), e.status

    # ------------------------------- routes -----------------------------------
    @bp.get("/<path:quiz_path>/status")
    def quiz_status_view(quiz_path: str):
        user_id = _caller()
        course_id = _course_id()
        quiz_path = safe_object_path(quiz_path)
        role = _role(user_id, course_id)
        quiz = _load(course_id, quiz_path)
        return jsonify({
            "ok": True,
            "quiz": quiz.to_public_dict(),
            "status": quiz_status(store, user_id, course_id, quiz_path, quiz, role=role),
        })

    @bp.get("/<path:quiz_path>/attempts")
    def attempts_list(quiz_path: str):
        user_id = _caller()
        course_id = _course_id()
        quiz_path = safe_object_path(quiz_path)
        role = _role(user_id, course_id)
        attempts = list_attempts(store, course_id, quiz_path, user_id, role)
        hide = False
        if role not in STAFF_ROLES and any(a.question_results for a in attempts):
            hide = _hide_answers(role, _load(course_id, quiz_path))
        return jsonify({
            "ok": True,
            "isStaff": role in STAFF_ROLES,
            "attempts": [_attempt_json(a, hide) for a in attempts],
        })

    @bp.post("/<path:quiz_path>/attempts")
    def attempts_start(quiz_path: str):
        user_id = _caller()
        data = _body()
        course_id = _course_id(data)
        quiz_path = safe_object_path(quiz_path)
        if _role(user_id, course_id) != STUDENT_ROLE:
            raise Forbidden("Only students can take quizzes")
        quiz = _load(course_id, quiz_path)
        attempt, resumed = start_attempt(store, user_id, course_id, quiz_path, quiz,
                                         log_activity=log_activity)
        body = {"ok": True, "resumed": resumed, "attempt": attempt.to_json(), "quiz": quiz.to_public_dict()}
        if resumed:
            body["message"] = "You already have an in-progress attempt"
        return jsonify(body), (200 if resumed else 201)

    @bp.get("/<path:quiz_path>/attempts/<attempt_id>")
    def attempt_detail(quiz_path: str, attempt_id: str):
        user_id = _caller()
        course_id = _course_id()
        quiz_path = safe_object_path(quiz_path)
        role = _role(user_id, course_id)
        attempt = get_attempt(store, attempt_id, user_id, role, course_id=course_id, quiz_path=quiz_path)
        hide = False
        if attempt.question_results is not None and role not in STAFF_ROLES:
            hide = _hide_answers(role, _load(course_id, quiz_path))
        return jsonify({"ok": True, "attempt": _attempt_json(attempt, hide)})

    @bp.patch("/<path:quiz_path>/attempts/<attempt_id>")
    def attempt_autosave(quiz_path: str, attempt_id: str):
        user_id = _caller()
        data = _body()
        course_id = _course_id(data)
        quiz_path = safe_object_path(quiz_path)
        attempt = autosave_attempt(store, attempt_id, user_id, data.get("answers"),
                                   char_limit=ANSWER_CHAR_LIMIT, log_activity=log_activity,
                                   scope=(course_id, quiz_path))
        return jsonify({"ok": True, "attempt": attempt.to_json()})

    @bp.post("/<path:quiz_path>/attempts/<attempt_id>/save")
    def attempt_save(quiz_path: str, attempt_id: str):
        return attempt_autosave(quiz_path, attempt_id)

    @bp.post("/<path:quiz_path>/attempts/<attempt_id>/submit")
    def attempt_submit(quiz_path: str, attempt_id: str):
        user_id = _caller()
        data = _body()
        course_id = _course_id(data)
        quiz_path = safe_object_path(quiz_path)
        role = _role(user_id, course_id)
        quiz = _load(course_id, quiz_path)
        result = submit_attempt(
            store, attempt_id, user_id, quiz, data.get("answers"),
            enforce_time_limit=ENFORCE_TIME_LIMIT, grace_seconds=TIME_LIMIT_GRACE_SEC,
            char_limit=ANSWER_CHAR_LIMIT, log_activity=log_activity,
            scope=(course_id, quiz_path),
        )
        hide = _hide_answers(role, quiz)
        return jsonify({
            "ok": True,
            "attempt": _attempt_json(result.attempt, hide),
            "questionResults": _results_json(result.question_results, hide),
            "score": result.grading.score,
            "maxScore": result.grading.max_score,
            "hasUngradedQuestions": result.grading.pending_manual_grading,
        })

    @bp.get("/<path:quiz_path>/attempts/<attempt_id>/results")
    def attempt_results(quiz_path: str, attempt_id: str):
        user_id = _caller()
        course_id = _course_id()
        quiz_path = safe_object_path(quiz_path)
        role = _role(user_id, course_id)
        attempt = get_attempt(store, attempt_id, user_id, role, course_id=course_id, quiz_path=quiz_path)
        quiz = _load(course_id, quiz_path)
        return jsonify({"ok": True, **review_attempt(attempt, quiz, role)})

    return bp
