import json
import os
import logging
import threading
import asyncio
from queue import Queue, Empty

from dotenv import load_dotenv
load_dotenv()

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.routing import Route
from starlette.responses import HTMLResponse, JSONResponse
from starlette.requests import Request
from sse_starlette.sse import EventSourceResponse

import auth
import db
import tutor_agents
from auth import AuthError
from tutor_session import TutorSession, SessionError
from tutor_agents import TutorAgentError

logger = logging.getLogger(__name__)

SESSION_MAX_AGE = 86400 * 30

# === Per-session state ===
# Maps session_id -> Queue for SSE events
sse_queues: dict[str, Queue] = {}
# Maps session_id -> the problem-solving session of that browser
tutor_sessions: dict[str, TutorSession] = {}

def get_session_id(request: Request) -> str | None:
    return request.cookies.get("session_id")

def new_session_id(user_id) -> str:
    return f"s{user_id}_{os.urandom(4).hex()}"

def _analyze(text):
    return tutor_agents.analyze_problem(text)

def get_tutor_session(request: Request, user) -> tuple[str, TutorSession]:
    """The caller's TutorSession; the session cookie must belong to the token's user."""
    session_id = get_session_id(request)
    if not session_id or not session_id.startswith(f"s{user['id']}_"):
        raise AuthError("No session for this user, please log in again")
    session = tutor_sessions.get(session_id)
    if session is None:
        session = TutorSession(_analyze)
        tutor_sessions[session_id] = session
    return session_id, session

def send_event(session_id, event_type, data):
    q = sse_queues.get(session_id)
    if q:
        q.put({"event": event_type, "data": json.dumps(data)})

def start_background(target, *args):
    threading.Thread(target=target, args=args, daemon=True).start()

def require_teacher(user):
    if user["role"] != "teacher":
        raise HTTPException(status_code=403, detail="Forbidden")

def _badge_payload(badges):
    return [{"key": b["key"], "name": b["name"], "description": b["description"], "icon": b["icon"]}
            for b in badges]

def drop_user_sessions(user_id):
    """Forget every registry entry and SSE queue of this user."""
    prefix = f"s{user_id}_"
    for session_id in [s for s in tutor_sessions if s.startswith(prefix)]:
        tutor_sessions.pop(session_id, None)
        sse_queues.pop(session_id, None)

def _login_response(user, session_id=None):
    if session_id is None:
        session_id = new_session_id(user["id"])
        drop_user_sessions(user["id"])
    tutor_sessions.setdefault(session_id, TutorSession(_analyze))
    resp = JSONResponse({"token": auth.create_token(user), "user": auth.public_user(user)})
    resp.set_cookie("session_id", session_id, max_age=SESSION_MAX_AGE)
    return resp

# === Background work: analyze problem ===
def analyze_problem_bg(session_id, user_id, session, text):
    try:
        send_event(session_id, "pipeline", {"agents": [{"key": "analyst", "status": "working"}]})
        ok = session.finish_submission(text)
        send_event(session_id, "pipeline", {"agents": [{"key": "analyst", "status": "done"}]})
        if ok:
            db.log_activity(user_id, "analyze", problem_text=text)
        send_event(session_id, "session", session.snapshot())
    except Exception as e:
        logger.exception("Background analysis failed")
        send_event(session_id, "error_msg", {"message": str(e)})

# === Routes: pages and auth ===
async def homepage(request: Request):
    with open(os.path.join(os.path.dirname(__file__), "templates", "index.html")) as f:
        html = f.read()
    return HTMLResponse(html)

async def api_signup(request: Request):
    data = await request.json()
    user_id = db.create_user(
        data.get("email"), data.get("password"), data.get("name"),
        data.get("role"), teacher_code=data.get("teacherCode"),
    )
    return _login_response(db.get_user(user_id))

async def api_login(request: Request):
    data = await request.json()
    if not data.get("email") or not data.get("password"):
        return JSONResponse({"error": "Missing required fields"}, status_code=400)
    user = db.verify_user(data["email"], data["password"])
    if not user:
        return JSONResponse({"error": "Invalid credentials"}, status_code=401)
    existing = get_session_id(request)
    keep = existing if existing and existing.startswith(f"s{user['id']}_") else None
    return _login_response(user, keep)

async def api_logout(request: Request):
    session_id = get_session_id(request)
    if session_id:
        sse_queues.pop(session_id, None)
        tutor_sessions.pop(session_id, None)
    resp = JSONResponse({"ok": True})
    resp.delete_cookie("session_id")
    return resp

async def api_me(request: Request):
    claims = auth.current_user(request)
    user = db.get_user(claims["id"])
    if not user:
        raise AuthError("User no longer exists")
    return JSONResponse(auth.public_user(user))

# === Routes: stateless tutoring ===
async def api_analyze(request: Request):
    auth.current_user(request)
    data = await request.json()
    problem = (data.get("problem") or "").strip()
    if not problem:
        return JSONResponse({"error": "Missing problem"}, status_code=400)
    try:
        result = await run_in_threadpool(tutor_agents.analyze_problem, problem)
    except Exception as e:
        logger.exception("Analyze error")
        return JSONResponse({"error": str(e) or "An error occurred during analysis."}, status_code=500)
    return JSONResponse(result)

async def api_teach(request: Request):
    auth.current_user(request)
    data = await request.json()
    concept = (data.get("concept") or "").strip()
    if not concept:
        return JSONResponse({"error": "Missing concept"}, status_code=400)
    history = data.get("history") or []
    if not isinstance(history, list):
        return JSONResponse({"error": "history must be a list"}, status_code=400)
    try:
        reply = await run_in_threadpool(tutor_agents.teach_concept, concept, history)
    except Exception as e:
        logger.exception("Teach error")
        return JSONResponse({"error": str(e) or "An error occurred during teaching session."}, status_code=500)
    return JSONResponse(reply)

async def api_quiz(request: Request):
    auth.current_user(request)
    data = await request.json()
    concept = (data.get("concept") or "").strip()
    if not concept:
        return JSONResponse({"error": "Missing concept"}, status_code=400)
    try:
        questions = await run_in_threadpool(tutor_agents.generate_quiz, concept)
    except TutorAgentError as e:
        return JSONResponse({"error": str(e)}, status_code=502)
    except Exception as e:
        logger.exception("Quiz error")
        return JSONResponse({"error": str(e) or "An error occurred while writing the quiz."}, status_code=500)
    return JSONResponse({"concept": concept, "questions": questions})

async def api_quiz_submit(request: Request):
    user = auth.current_user(request)
    data = await request.json()
    concept = (data.get("concept") or "").strip()
    questions = data.get("questions") or []
    answers = data.get("answers") or []
    if not concept or not questions:
        return JSONResponse({"error": "Missing concept or questions"}, status_code=400)
    if not isinstance(questions, list) or not all(isinstance(q, dict) for q in questions):
        return JSONResponse({"error": "questions must be a list of objects"}, status_code=400)
    if not isinstance(answers, list):
        return JSONResponse({"error": "answers must be a list"}, status_code=400)
    score = tutor_agents.grade_quiz(questions, answers)
    passed = tutor_agents.quiz_passed(score, len(questions))
    db.log_activity(
        user["id"], "quiz_pass" if passed else "quiz_fail",
        concept_label=concept, score=int(score / len(questions) * 100),
    )
    new_badges = db.check_badges(user["id"])
    return JSONResponse({
        "score": score,
        "total": len(questions),
        "passed": passed,
        "newBadges": _badge_payload(new_badges),
    })

# === Routes: problem-solving session ===
async def api_session(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    return JSONResponse(session.snapshot())

async def api_session_submit(request: Request):
    user = auth.current_user(request)
    session_id, session = get_tutor_session(request, user)
    data = await request.json()
    text = (data.get("problem") or "").strip()
    if not text:
        return JSONResponse({"error": "Missing problem"}, status_code=400)
    if not session.begin_submission():
        return JSONResponse({"ok": False, "busy": True})
    start_background(analyze_problem_bg, session_id, user["id"], session, text)
    return JSONResponse({"ok": True})

async def api_session_toggle(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    data = await request.json()
    session.toggle(str(data.get("id", "")))
    return JSONResponse(session.snapshot())

async def api_session_learn(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    data = await request.json()
    node_id = str(data.get("id") or "")
    if not node_id:
        return JSONResponse({"error": "Missing id"}, status_code=400)
    session.select_concept_to_learn(node_id)
    db.log_activity(
        user["id"], "learn",
        problem_text=session.problem["originalProblem"],
        concept_label=session.active_concept_label,
    )
    return JSONResponse(session.snapshot())

async def api_session_back(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    session.back_to_tree()
    return JSONResponse(session.snapshot())

async def api_session_complete(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    completed = session.complete_concept()
    new_badges = []
    if completed:
        db.log_activity(
            user["id"], "complete",
            problem_text=session.problem["originalProblem"] if session.problem else None,
            concept_label=completed["label"],
            duration_seconds=completed["seconds"],
        )
        new_badges = db.check_badges(user["id"])
    return JSONResponse(dict(session.snapshot(), newBadges=_badge_payload(new_badges)))

async def api_session_solution(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    session.proceed_to_solution()
    db.log_activity(user["id"], "solve", problem_text=session.problem["originalProblem"])
    new_badges = db.check_badges(user["id"])
    return JSONResponse(dict(session.snapshot(), newBadges=_badge_payload(new_badges)))

async def api_session_reset(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    session.reset()
    return JSONResponse(session.snapshot())

async def api_session_dismiss_error(request: Request):
    user = auth.current_user(request)
    _, session = get_tutor_session(request, user)
    session.dismiss_error()
    return JSONResponse(session.snapshot())

async def api_events(request: Request):
    session_id = get_session_id(request)
    if not session_id or session_id not in tutor_sessions:
        return JSONResponse({"error": "Not logged in"}, status_code=401)

    q = Queue()
    sse_queues[session_id] = q

    async def event_generator():
        try:
            while True:
                try:
                    msg = q.get(block=False)
                    yield msg
                except Empty:
                    await asyncio.sleep(0.2)
                    yield {"event": "ping", "data": "{}"}
        except asyncio.CancelledError:
            sse_queues.pop(session_id, None)
            raise

    return EventSourceResponse(event_generator())

# === Routes: progress ===
async def api_badges(request: Request):
    user = auth.current_user(request)
    return JSONResponse({"earned": db.get_user_badges(user["id"]), "all": db.get_all_badges()})

async def api_activity(request: Request):
    user = auth.current_user(request)
    return JSONResponse({
        "activities": db.get_activity(user["id"]),
        "stats": db.get_user_stats(user["id"]),
    })

# === Routes: messages ===
async def api_messages_send(request: Request):
    user = auth.current_user(request)
    data = await request.json()
    try:
        receiver_id = int(data.get("receiverId"))
    except (TypeError, ValueError):
        return JSONResponse({"error": "Missing receiverId"}, status_code=400)
    if not db.can_message(user["id"], receiver_id):
        raise HTTPException(status_code=403, detail="You can only message your teacher or your students")
    message_id = db.send_message(user["id"], receiver_id, data.get("content"))
    return JSONResponse({"success": True, "id": message_id})

async def api_messages_conversation(request: Request):
    user = auth.current_user(request)
    other_user_id = request.path_params["other_user_id"]
    if not db.can_message(user["id"], other_user_id):
        raise HTTPException(status_code=403, detail="Forbidden")
    return JSONResponse(db.get_conversation(user["id"], other_user_id))

async def api_messages_unread(request: Request):
    user = auth.current_user(request)
    return JSONResponse({"count": db.count_unread(user["id"])})

async def api_messages_contacts(request: Request):
    user = auth.current_user(request)
    return JSONResponse(db.list_contacts(user["id"]))

# === Routes: teacher dashboard ===
async def api_teacher_students(request: Request):
    user = auth.current_user(request)
    require_teacher(user)
    return JSONResponse(db.get_students(user["id"]))

async def api_teacher_student(request: Request):
    user = auth.current_user(request)
    require_teacher(user)
    detail = db.get_student_detail(user["id"], request.path_params["student_id"])
    if not detail:
        return JSONResponse({"error": "Student not found or does not belong to this teacher"}, status_code=404)
    return JSONResponse(detail)

async def api_teacher_summary(request: Request):
    user = auth.current_user(request)
    require_teacher(user)
    students = db.get_students(user["id"])
    recent = db.get_class_activity(user["id"])
    try:
        summary = await run_in_threadpool(tutor_agents.summarize_class, students, recent)
    except Exception as e:
        logger.exception("Teacher summary error")
        return JSONResponse({"error": str(e) or "An error occurred while generating summary."}, status_code=500)
    return JSONResponse({"summary": summary})

async def api_teacher_heatmap(request: Request):
    user = auth.current_user(request)
    require_teacher(user)
    return JSONResponse(db.get_concept_heatmap(user["id"]))

async def api_teacher_problem_of_the_week(request: Request):
    user = auth.current_user(request)
    require_teacher(user)
    data = await request.json()
    db.set_problem_of_the_week(user["id"], data.get("problemText"))
    return JSONResponse({"success": True})

async def api_student_problem_of_the_week(request: Request):
    user = auth.current_user(request)
    teacher_id = user["id"] if user["role"] == "teacher" else user.get("teacherId")
    return JSONResponse({"problem": db.get_problem_of_the_week(teacher_id)})

# === Error handlers ===
async def auth_error(request: Request, exc: AuthError):
    return JSONResponse({"error": str(exc)}, status_code=401)

async def session_error(request: Request, exc: SessionError):
    return JSONResponse({"error": str(exc)}, status_code=409)

async def bad_request(request: Request, exc: ValueError):
    return JSONResponse({"error": str(exc)}, status_code=400)

async def http_error(request: Request, exc: HTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

# === App ===
routes = [
    Route("/", homepage),
    Route("/api/auth/signup", api_signup, methods=["POST"]),
    Route("/api/auth/login", api_login, methods=["POST"]),
    Route("/api/auth/logout", api_logout, methods=["POST"]),
    Route("/api/auth/me", api_me),
    Route("/api/analyze", api_analyze, methods=["POST"]),
    Route("/api/teach", api_teach, methods=["POST"]),
    Route("/api/quiz", api_quiz, methods=["POST"]),
    Route("/api/quiz/submit", api_quiz_submit, methods=["POST"]),
    Route("/api/session", api_session),
    Route("/api/session/submit", api_session_submit, methods=["POST"]),
    Route("/api/session/toggle", api_session_toggle, methods=["POST"]),
    Route("/api/session/learn", api_session_learn, methods=["POST"]),
    Route("/api/session/back", api_session_back, methods=["POST"]),
    Route("/api/session/complete", api_session_complete, methods=["POST"]),
    Route("/api/session/solution", api_session_solution, methods=["POST"]),
    Route("/api/session/reset", api_session_reset, methods=["POST"]),
    Route("/api/session/dismiss-error", api_session_dismiss_error, methods=["POST"]),
    Route("/api/events", api_events),
    Route("/api/badges", api_badges),
    Route("/api/activity", api_activity),
    Route("/api/messages/send", api_messages_send, methods=["POST"]),
    Route("/api/messages/unread/count", api_messages_unread),
    Route("/api/messages/contacts", api_messages_contacts),
    Route("/api/messages/{other_user_id:int}", api_messages_conversation),
    Route("/api/teacher/students", api_teacher_students),
    Route("/api/teacher/student/{student_id:int}", api_teacher_student),
    Route("/api/teacher/summary", api_teacher_summary),
    Route("/api/teacher/heatmap", api_teacher_heatmap),
    Route("/api/teacher/problem-of-the-week", api_teacher_problem_of_the_week, methods=["POST"]),
    Route("/api/student/problem-of-the-week", api_student_problem_of_the_week),
]

app = Starlette(
    routes=routes,
    exception_handlers={
        AuthError: auth_error,
        SessionError: session_error,
        ValueError: bad_request,
        HTTPException: http_error,
    },
)

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", "3000"))
    print("\n  Octopus Tutor")
    print(f"  Open: http://localhost:{port}\n")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
