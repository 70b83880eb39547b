import sqlite3
import os
import secrets
import string
import bcrypt

DB_PATH = os.getenv(
    "OCTOPUS_DB_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "octopus.db"),
)

ROLES = ("individual", "student", "teacher")
ACTIVITY_TYPES = ("analyze", "learn", "complete", "solve", "quiz_pass", "quiz_fail")

# requirement_type -> activity types that count towards it
REQUIREMENT_ACTIVITY = {
    "problems_solved": ("solve",),
    "concepts_mastered": ("complete", "quiz_pass"),
    "quizzes_passed": ("quiz_pass",),
}

BADGES = {
    "first_solve":      {"name": "First Steps",      "icon": "Star",     "desc": "Work through your first full solution",  "type": "problems_solved",   "count": 1},
    "five_solves":      {"name": "Problem Hunter",   "icon": "Zap",      "desc": "Work through 5 full solutions",           "type": "problems_solved",   "count": 5},
    "twenty_solves":    {"name": "Deep Diver",       "icon": "Trophy",   "desc": "Work through 20 full solutions",          "type": "problems_solved",   "count": 20},
    "first_concept":    {"name": "Foundation Layer", "icon": "Triangle", "desc": "Master your first prerequisite concept",  "type": "concepts_mastered", "count": 1},
    "ten_concepts":     {"name": "Concept Collector","icon": "Shield",   "desc": "Master 10 prerequisite concepts",         "type": "concepts_mastered", "count": 10},
    "first_quiz":       {"name": "Quiz Whiz",        "icon": "Zap",      "desc": "Pass your first quiz",                    "type": "quizzes_passed",    "count": 1},
    "five_quizzes":     {"name": "Ink Master",       "icon": "Trophy",   "desc": "Pass 5 quizzes",                          "type": "quizzes_passed",    "count": 5},
}

def get_conn():
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn

def init_db():
    conn = get_conn()
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password TEXT NOT NULL,
            name TEXT NOT NULL,
            role TEXT NOT NULL CHECK(role IN ('individual', 'student', 'teacher')),
            teacher_code TEXT UNIQUE,
            teacher_id INTEGER,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (teacher_id) REFERENCES users(id)
        );
        CREATE TABLE IF NOT EXISTS activity (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            type TEXT NOT NULL,
            problem_text TEXT,
            concept_label TEXT,
            duration_seconds INTEGER NOT NULL DEFAULT 0,
            score INTEGER,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (user_id) REFERENCES users(id)
        );
        CREATE INDEX IF NOT EXISTS idx_activity_user ON activity (user_id, type);
        CREATE TABLE IF NOT EXISTS badges (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            key TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            description TEXT NOT NULL,
            icon TEXT NOT NULL,
            requirement_type TEXT NOT NULL,
            requirement_count INTEGER NOT NULL
        );
        CREATE TABLE IF NOT EXISTS user_badges (
            user_id INTEGER NOT NULL,
            badge_id INTEGER NOT NULL,
            earned_at TEXT NOT NULL DEFAULT (datetime('now')),
            PRIMARY KEY (user_id, badge_id),
            FOREIGN KEY (user_id) REFERENCES users(id),
            FOREIGN KEY (badge_id) REFERENCES badges(id)
        );
        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            sender_id INTEGER NOT NULL,
            receiver_id INTEGER NOT NULL,
            content TEXT NOT NULL,
            is_read INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (sender_id) REFERENCES users(id),
            FOREIGN KEY (receiver_id) REFERENCES users(id)
        );
        CREATE TABLE IF NOT EXISTS problem_of_the_week (
            teacher_id INTEGER PRIMARY KEY,
            problem_text TEXT NOT NULL,
            updated_at TEXT NOT NULL DEFAULT (datetime('now')),
            FOREIGN KEY (teacher_id) REFERENCES users(id)
        );
    """)
    for key, b in BADGES.items():
        conn.execute(
            """INSERT OR IGNORE INTO badges
               (key, name, description, icon, requirement_type, requirement_count)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (key, b["name"], b["desc"], b["icon"], b["type"], b["count"])
        )
    conn.commit()
    conn.close()

# --- Users ---

def _hash_password(password):
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")

def _verify_password_hash(password, hashed):
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))

def _new_teacher_code(conn):
    alphabet = string.ascii_uppercase + string.digits
    while True:
        code = "OCTO-" + "".join(secrets.choice(alphabet) for _ in range(5))
        if not conn.execute("SELECT 1 FROM users WHERE teacher_code = ?", (code,)).fetchone():
            return code

def _require_text(**fields):
    for field, value in fields.items():
        if value is not None and not isinstance(value, str):
            raise ValueError(f"{field} must be a string")

def create_user(email, password, name, role, teacher_code=None):
    """Create an account and return its id.

    Teachers get a fresh OCTO-XXXXX code. A student who gives a teacher code
    is linked to that teacher. Raises ValueError for bad input.
    """
    _require_text(email=email, password=password, name=name, teacher_code=teacher_code)
    email = (email or "").strip().lower()
    if not email or not password or not (name or "").strip():
        raise ValueError("Missing required fields")
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    conn = get_conn()
    try:
        if conn.execute("SELECT 1 FROM users WHERE email = ?", (email,)).fetchone():
            raise ValueError("An account with this email already exists")
        own_code = None
        teacher_id = None
        if role == "teacher":
            own_code = _new_teacher_code(conn)
        elif role == "student" and teacher_code:
            row = conn.execute(
                "SELECT id FROM users WHERE teacher_code = ? AND role = 'teacher'",
                (teacher_code.strip().upper(),)
            ).fetchone()
            if not row:
                raise ValueError("Invalid teacher code")
            teacher_id = row["id"]
        cur = conn.execute(
            """INSERT INTO users (email, password, name, role, teacher_code, teacher_id)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (email, _hash_password(password), name.strip(), role, own_code, teacher_id)
        )
        user_id = cur.lastrowid
        conn.commit()
    finally:
        conn.close()
    return user_id

def get_user(user_id):
    conn = get_conn()
    row = conn.execute(
        """SELECT u.id, u.email, u.name, u.role, u.teacher_code, u.teacher_id, u.created_at,
                  t.name AS teacher_name
           FROM users u LEFT JOIN users t ON t.id = u.teacher_id
           WHERE u.id = ?""",
        (user_id,)
    ).fetchone()
    conn.close()
    return dict(row) if row else None

def verify_user(email, password):
    """Return the user for a correct email/password pair, else None."""
    _require_text(email=email, password=password)
    conn = get_conn()
    row = conn.execute(
        "SELECT id, password FROM users WHERE email = ?", ((email or "").strip().lower(),)
    ).fetchone()
    conn.close()
    if not row or not password:
        return None
    if not _verify_password_hash(password, row["password"]):
        return None
    return get_user(row["id"])

# --- Activity ---

def log_activity(user_id, activity_type, problem_text=None, concept_label=None,
                 duration_seconds=0, score=None):
    if activity_type not in ACTIVITY_TYPES:
        raise ValueError(f"Unknown activity type: {activity_type}")
    conn = get_conn()
    cur = conn.execute(
        """INSERT INTO activity
           (user_id, type, problem_text, concept_label, duration_seconds, score)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (user_id, activity_type, problem_text, concept_label, int(duration_seconds or 0), score)
    )
    activity_id = cur.lastrowid
    conn.commit()
    conn.close()
    return activity_id

def get_activity(user_id, limit=50):
    conn = get_conn()
    rows = conn.execute(
        """SELECT * FROM activity
           WHERE user_id = ?
           ORDER BY id DESC LIMIT ?""",
        (user_id, limit)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

def get_user_stats(user_id):
    conn = get_conn()
    rows = conn.execute(
        "SELECT type, COUNT(*) as c, SUM(duration_seconds) as secs FROM activity WHERE user_id = ? GROUP BY type",
        (user_id,)
    ).fetchall()
    conn.close()
    counts = {t: 0 for t in ACTIVITY_TYPES}
    seconds = 0
    for r in rows:
        counts[r["type"]] = r["c"]
        seconds += r["secs"] or 0
    quizzes = counts["quiz_pass"] + counts["quiz_fail"]
    return {
        "counts": counts,
        "learning_seconds": seconds,
        "quiz_pass_pct": int(counts["quiz_pass"] / quizzes * 100) if quizzes > 0 else 0,
    }

def get_class_activity(teacher_id, limit=30):
    """Recent activity of every student linked to a teacher, newest first."""
    conn = get_conn()
    rows = conn.execute(
        """SELECT u.name, a.type, a.concept_label, a.score, a.created_at
           FROM activity a JOIN users u ON u.id = a.user_id
           WHERE u.teacher_id = ?
           ORDER BY a.id DESC LIMIT ?""",
        (teacher_id, limit)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

def get_concept_heatmap(teacher_id):
    """Per concept: how often the class worked on it and how often a quiz on it failed."""
    conn = get_conn()
    rows = conn.execute(
        """SELECT a.concept_label,
                  COUNT(*) as total_attempts,
                  SUM(CASE WHEN a.type = 'quiz_fail' THEN 1 ELSE 0 END) as failures
           FROM activity a JOIN users u ON u.id = a.user_id
           WHERE u.teacher_id = ? AND a.concept_label IS NOT NULL
                 AND a.type IN ('learn', 'complete', 'quiz_pass', 'quiz_fail')
           GROUP BY a.concept_label
           ORDER BY failures DESC, total_attempts DESC""",
        (teacher_id,)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

# --- Badges ---

def get_all_badges():
    conn = get_conn()
    rows = conn.execute("SELECT * FROM badges ORDER BY requirement_type, requirement_count").fetchall()
    conn.close()
    return [dict(r) for r in rows]

def get_user_badges(user_id):
    conn = get_conn()
    rows = conn.execute(
        """SELECT b.id, b.key, b.name, b.description, b.icon, ub.earned_at
           FROM user_badges ub JOIN badges b ON b.id = ub.badge_id
           WHERE ub.user_id = ?
           ORDER BY ub.earned_at, b.id""",
        (user_id,)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

def award_badge(user_id, badge_id):
    conn = get_conn()
    try:
        conn.execute(
            "INSERT INTO user_badges (user_id, badge_id) VALUES (?, ?)",
            (user_id, badge_id)
        )
        conn.commit()
        return True
    except sqlite3.IntegrityError:
        return False
    finally:
        conn.close()

def check_badges(user_id):
    """Award every badge whose requirement is now met. Returns the new ones."""
    counts = get_user_stats(user_id)["counts"]
    earned = {b["id"] for b in get_user_badges(user_id)}
    newly_earned = []
    for badge in get_all_badges():
        if badge["id"] in earned:
            continue
        kinds = REQUIREMENT_ACTIVITY.get(badge["requirement_type"], ())
        if sum(counts.get(k, 0) for k in kinds) >= badge["requirement_count"]:
            if award_badge(user_id, badge["id"]):
                newly_earned.append(badge)
    return newly_earned

# --- Messages ---

def send_message(sender_id, receiver_id, content):
    content = (content or "").strip()
    if not content:
        raise ValueError("Message is empty")
    if not get_user(receiver_id):
        raise ValueError("Recipient not found")
    conn = get_conn()
    cur = conn.execute(
        "INSERT INTO messages (sender_id, receiver_id, content) VALUES (?, ?, ?)",
        (sender_id, receiver_id, content)
    )
    message_id = cur.lastrowid
    conn.commit()
    conn.close()
    return message_id

def get_conversation(user_id, other_user_id):
    """Messages between two users in order; marks the ones user_id received as read."""
    conn = get_conn()
    rows = conn.execute(
        """SELECT * FROM messages
           WHERE (sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?)
           ORDER BY id""",
        (user_id, other_user_id, other_user_id, user_id)
    ).fetchall()
    conn.execute(
        "UPDATE messages SET is_read = 1 WHERE receiver_id = ? AND sender_id = ? AND is_read = 0",
        (user_id, other_user_id)
    )
    conn.commit()
    conn.close()
    return [dict(r) for r in rows]

def count_unread(user_id):
    conn = get_conn()
    count = conn.execute(
        "SELECT COUNT(*) as c FROM messages WHERE receiver_id = ? AND is_read = 0", (user_id,)
    ).fetchone()["c"]
    conn.close()
    return count

def list_contacts(user_id):
    """People this user may message: a teacher's students, or a student's teacher."""
    user = get_user(user_id)
    if not user:
        return []
    if user["role"] == "teacher":
        return get_students(user_id)
    if user["teacher_id"]:
        teacher = get_user(user["teacher_id"])
        return [{"id": teacher["id"], "name": teacher["name"], "email": teacher["email"]}]
    return []

def can_message(sender_id, receiver_id):
    return any(c["id"] == receiver_id for c in list_contacts(sender_id))

# --- Teacher views ---

def get_students(teacher_id):
    conn = get_conn()
    rows = conn.execute(
        """SELECT id, name, email, created_at FROM users
           WHERE teacher_id = ? AND role = 'student'
           ORDER BY name""",
        (teacher_id,)
    ).fetchall()
    conn.close()
    return [dict(r) for r in rows]

def get_student_detail(teacher_id, student_id):
    """Student plus activity, or None when the student isn't linked to this teacher."""
    student = get_user(student_id)
    if not student or student["teacher_id"] != teacher_id:
        return None
    return {
        "student": student,
        "activities": get_activity(student_id),
        "stats": get_user_stats(student_id),
        "badges": get_user_badges(student_id),
    }

def set_problem_of_the_week(teacher_id, problem_text):
    problem_text = (problem_text or "").strip()
    if not problem_text:
        raise ValueError("Problem text is empty")
    conn = get_conn()
    conn.execute(
        """INSERT INTO problem_of_the_week (teacher_id, problem_text) VALUES (?, ?)
           ON CONFLICT(teacher_id) DO UPDATE
           SET problem_text = excluded.problem_text, updated_at = datetime('now')""",
        (teacher_id, problem_text)
    )
    conn.commit()
    conn.close()

def get_problem_of_the_week(teacher_id):
    if not teacher_id:
        return None
    conn = get_conn()
    row = conn.execute(
        "SELECT problem_text FROM problem_of_the_week WHERE teacher_id = ?", (teacher_id,)
    ).fetchone()
    conn.close()
    return row["problem_text"] if row else None

# Initialize on import
init_db()
