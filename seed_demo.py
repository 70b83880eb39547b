"""Seed a demo teacher with two students and a week of activity so the dashboard looks interesting."""
import sys, os, random
from datetime import datetime, timedelta

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))
import db

TEACHER_EMAIL = "teacher@octopus.demo"
PASSWORD = "octopus123"

# Clear any previous demo accounts
conn = db.get_conn()
demo_ids = [r["id"] for r in conn.execute("SELECT id FROM users WHERE email LIKE '%@octopus.demo'").fetchall()]
for uid in demo_ids:
    conn.execute("DELETE FROM activity WHERE user_id = ?", (uid,))
    conn.execute("DELETE FROM user_badges WHERE user_id = ?", (uid,))
    conn.execute("DELETE FROM messages WHERE sender_id = ? OR receiver_id = ?", (uid, uid))
    conn.execute("DELETE FROM problem_of_the_week WHERE teacher_id = ?", (uid,))
# Students first, they reference the teacher
conn.execute("DELETE FROM users WHERE email LIKE '%@octopus.demo' AND role != 'teacher'")
conn.execute("DELETE FROM users WHERE email LIKE '%@octopus.demo'")
conn.commit()
conn.close()

teacher_id = db.create_user(TEACHER_EMAIL, PASSWORD, "Ms. Rivera", "teacher")
code = db.get_user(teacher_id)["teacher_code"]
alice = db.create_user("alice@octopus.demo", PASSWORD, "Alice Smith", "student", teacher_code=code)
bob = db.create_user("bob@octopus.demo", PASSWORD, "Bob Johnson", "student", teacher_code=code)

PROBLEMS = [
    ("Solve 2x + 5 = 17", ["Inverse Operations", "Linear Equations"]),
    ("Find the area of a triangle with base 8 and height 5", ["Area Formulas", "Multiplication"]),
    ("Simplify (3/4) / (1/8)", ["Fraction Division", "Reciprocals"]),
    ("Solve x^2 - 5x + 6 = 0", ["Factoring", "Quadratic Equations", "Zero Product Property"]),
]

# (student, problem index, quiz outcomes per concept)
SESSIONS = [
    (alice, 0, [True, True]),
    (alice, 1, [True, True]),
    (alice, 3, [False, True, False]),
    (bob, 0, [True, False]),
    (bob, 2, [False, False]),
    (bob, 3, [False, True, False]),
]

base_time = datetime.now() - timedelta(days=7)

def _log(user_id, activity_type, when, problem_text=None, concept_label=None, seconds=0, score=None):
    conn = db.get_conn()
    conn.execute(
        """INSERT INTO activity
           (user_id, type, problem_text, concept_label, duration_seconds, score, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (user_id, activity_type, problem_text, concept_label, seconds, score,
         when.strftime("%Y-%m-%d %H:%M:%S"))
    )
    conn.commit()
    conn.close()

for i, (student_id, problem_idx, quiz_results) in enumerate(SESSIONS):
    when = base_time + timedelta(hours=i * 20, minutes=random.randint(0, 30))
    problem, concepts = PROBLEMS[problem_idx]
    _log(student_id, "analyze", when, problem_text=problem)
    for concept, passed in zip(concepts, quiz_results):
        when += timedelta(minutes=random.randint(3, 9))
        _log(student_id, "learn", when, problem, concept)
        _log(student_id, "complete", when, problem, concept, seconds=random.randint(120, 600))
        score = random.choice([67, 100]) if passed else random.choice([0, 33])
        _log(student_id, "quiz_pass" if passed else "quiz_fail", when, None, concept, score=score)
    if all(quiz_results):
        _log(student_id, "solve", when + timedelta(minutes=5), problem_text=problem)

for student_id in (alice, bob):
    db.check_badges(student_id)

db.send_message(teacher_id, bob, "Hi Bob, want to go over factoring together on Thursday?")
db.send_message(bob, teacher_id, "Yes please! The zero product part confuses me.")
db.set_problem_of_the_week(teacher_id, "A rectangle's length is 3 more than its width and its area is 40. Find its dimensions.")

# Verify
print(f"Teacher: {TEACHER_EMAIL} / {PASSWORD} (code {code})")
for student_id in (alice, bob):
    user = db.get_user(student_id)
    stats = db.get_user_stats(student_id)
    badges = db.get_user_badges(student_id)
    print(f"{user['name']}: {stats['counts']}, {len(badges)} badges")
print(f"Heatmap: {[(h['concept_label'], h['failures'], h['total_attempts']) for h in db.get_concept_heatmap(teacher_id)]}")
