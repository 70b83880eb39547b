import json
import os
import re
import logging
import warnings

# Suppress noisy logs
logging.getLogger("LiteLLM").setLevel(logging.CRITICAL)
logging.getLogger("litellm").setLevel(logging.CRITICAL)
warnings.filterwarnings("ignore")

from dotenv import load_dotenv
load_dotenv()

from crewai import Agent, Task, Crew, LLM

import prereq_tree

logger = logging.getLogger(__name__)

QUIZ_PASS_RATIO = 0.7
TEACH_FALLBACK_TEXT = "I'm sorry, I couldn't generate an explanation. Please try again."
NO_STUDENTS_SUMMARY = "You haven't linked any students yet. Share your teacher code to get started!"


class TutorAgentError(Exception):
    """The LLM answered, but not with anything we can use."""


def _parse_json_lenient(raw):
    """Parse JSON that may contain invalid escapes like LaTeX \\frac{}{} or \\(."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass
    # Valid JSON escapes: \", \\, \/, \b, \f, \n, \r, \t, \uXXXX
    sanitized = re.sub(r'\\(?!["\\/bfnrtu])', r'\\\\', raw)
    return json.loads(sanitized)

def _extract_json(result):
    """Find the outermost {...} in an agent answer and parse it, or return None."""
    start = result.find('{')
    end = result.rfind('}')
    if start == -1 or end <= start:
        return None
    try:
        data = _parse_json_lenient(result[start:end+1])
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None

# === LLM Setup ===
PROVIDER = os.getenv("TUTOR_LLM_PROVIDER", "groq").lower()

def _check_groq_key(api_key):
    if not api_key or api_key == "MY_GROQ_API_KEY" or not api_key.strip():
        logger.warning("GROQ_API_KEY is missing; analysis requests will fail until it is set")
    elif not api_key.startswith("gsk_"):
        logger.warning("GROQ_API_KEY does not start with 'gsk_'. It might be invalid.")

if PROVIDER == "gemini":
    tutor_llm = LLM(
        model="gemini/gemini-2.5-flash",
        api_key=os.getenv("GEMINI_API_KEY"),
    )
else:
    _check_groq_key(os.getenv("GROQ_API_KEY"))
    tutor_llm = LLM(
        model="groq/llama-3.3-70b-versatile",
        api_key=os.getenv("GROQ_API_KEY"),
    )

# === Agents ===
AGENT_PROFILES = {
    "analyst": {
        "role": "Math Analyst",
        "goal": "Break a math problem into the prerequisite concepts needed to solve it, "
                "write a similar problem, and solve that similar problem step by step. "
                "You MUST output valid JSON only.",
        "backstory": "You are a math expert who has taught every level from arithmetic to calculus. "
                     "You know exactly which ideas a student must own before a problem makes sense, "
                     "and you explain worked examples one small move at a time.",
    },
    "teacher": {
        "role": "Concept Teacher",
        "goal": "Teach one math concept through a friendly back-and-forth chat. "
                "Use real-world examples and ask the student for input.",
        "backstory": "You are a patient, helpful math teacher. You never lecture for long; "
                     "you check understanding with small questions and build on the answers.",
    },
    "quizmaster": {
        "role": "Quiz Writer",
        "goal": "Write short multiple-choice quizzes that check whether a student understood a concept. "
                "You MUST output valid JSON only.",
        "backstory": "You write clear questions with exactly one correct option and plausible distractors "
                     "based on common misconceptions.",
    },
    "insight": {
        "role": "Octopus Insight",
        "goal": "Give a teacher actionable, human-sounding insight about their classroom.",
        "backstory": "You are a highly experienced and empathetic educational consultant. "
                     "You are warm, professional and specific, and you never sound like a generic AI.",
    },
}

def make_agent(key):
    profile = AGENT_PROFILES[key]
    return Agent(
        role=profile["role"],
        goal=profile["goal"],
        backstory=profile["backstory"],
        llm=tutor_llm,
        verbose=False,
    )

def run_agent_task(agent, description, expected_output):
    task = Task(description=description, expected_output=expected_output, agent=agent)
    crew = Crew(agents=[agent], tasks=[task], verbose=False)
    return str(crew.kickoff())

# === Problem analysis ===
ANALYSIS_SCHEMA = """{
  "prerequisites": [
    {
      "id": "string",
      "label": "string",
      "description": "string",
      "children": [
        { "id": "string", "label": "string", "description": "string" }
      ]
    }
  ],
  "similarProblem": "string",
  "similarSolution": [
    {
      "step": "string",
      "explanation": "string",
      "prerequisiteIds": ["string"]
    }
  ]
}"""

def analyze_problem(problem):
    """Ask the analyst for a prerequisite forest, a similar problem and its solution."""
    result = run_agent_task(
        make_agent("analyst"),
        f'Analyze this math problem: "{problem}".\n\n'
        "CRITICAL INSTRUCTIONS:\n"
        "1. Identify the core concepts (prerequisites) needed to solve it. "
        "Organize them in a logical tree structure (max depth 2).\n"
        "2. Create a similar but different math problem that uses the same core concepts.\n"
        "3. Provide a HIGHLY DETAILED, step-by-step solution for the SIMILAR problem.\n"
        "   - Each step must focus on a single logical move.\n"
        "   - The \"explanation\" for each step must be thorough, explaining the \"why\" and \"how\".\n"
        "   - Explicitly link each step to the relevant prerequisite IDs from your list.\n\n"
        "Your final answer must be ONLY valid JSON following this schema:\n"
        f"{ANALYSIS_SCHEMA}",
        ANALYSIS_SCHEMA,
    )
    data = _extract_json(result)
    if data is None:
        raise TutorAgentError("The tutor returned an answer we couldn't read. Please try again.")
    return {
        "prerequisites": prereq_tree.normalize_forest(data.get("prerequisites")),
        "similarProblem": str(data.get("similarProblem") or ""),
        "similarSolution": prereq_tree.normalize_solution(data.get("similarSolution")),
    }

# === Teaching chat ===
def _transcript(history):
    lines = []
    for h in history or []:
        who = "Teacher" if h.get("role") == "model" else "Student"
        lines.append(f"{who}: {h.get('text', '')}")
    return "\n".join(lines)

def teach_concept(concept, history):
    transcript = _transcript(history)
    result = run_agent_task(
        make_agent("teacher"),
        f'Explain the concept: "{concept}". Keep it interactive.\n\n'
        f"Conversation so far:\n{transcript or '(none yet)'}\n\n"
        "Reply to the student's latest message as the teacher. "
        "Use a real-world example and end with a question for the student.\n"
        "Your final answer must be ONLY valid JSON:\n"
        '{"text": "your reply in markdown", "illustrationPrompt": "optional description of a helpful picture"}',
        '{"text": "...", "illustrationPrompt": "..."}'
    )
    data = _extract_json(result) or {}
    reply = {"text": data.get("text") or TEACH_FALLBACK_TEXT}
    if data.get("illustrationPrompt"):
        reply["illustrationPrompt"] = str(data["illustrationPrompt"])
    return reply

# === Quizzes ===
def _normalize_question(raw):
    if not isinstance(raw, dict):
        return None
    options = raw.get("options")
    if not isinstance(options, list) or len(options) < 2:
        return None
    try:
        correct = int(raw.get("correctIndex"))
    except (TypeError, ValueError):
        return None
    if not 0 <= correct < len(options) or not raw.get("question"):
        return None
    return {
        "question": str(raw["question"]),
        "options": [str(o) for o in options],
        "correctIndex": correct,
        "explanation": str(raw.get("explanation") or ""),
    }

def generate_quiz(concept, count=3):
    result = run_agent_task(
        make_agent("quizmaster"),
        f'Write a {count}-question multiple-choice quiz on the concept: "{concept}".\n\n'
        "Your final answer must be ONLY valid JSON in this exact format:\n"
        '{"questions": [{"question": "...", "options": ["...", "...", "...", "..."], '
        '"correctIndex": 0, "explanation": "why the correct option is right"}]}\n\n'
        "Rules:\n"
        "- exactly one option is correct; correctIndex is its 0-based position\n"
        "- use four options per question\n"
        "- Output ONLY the JSON, nothing else",
        '{"questions": [...]}'
    )
    data = _extract_json(result) or {}
    raw_questions = data.get("questions")
    if not isinstance(raw_questions, list):
        raw_questions = []
    questions = [q for q in (_normalize_question(r) for r in raw_questions) if q]
    if not questions:
        raise TutorAgentError(f"Couldn't write a quiz for {concept}. Please try again.")
    return questions

def grade_quiz(questions, answers):
    """Number of answers matching each question's correctIndex."""
    score = 0
    for question, answer in zip(questions, answers or []):
        if answer is not None and answer == question.get("correctIndex"):
            score += 1
    return score

def quiz_passed(score, total):
    return total > 0 and score / total >= QUIZ_PASS_RATIO

# === Teacher insight ===
def summarize_class(students, recent_activity):
    if not students:
        return NO_STUDENTS_SUMMARY
    summary = run_agent_task(
        make_agent("insight"),
        "GUIDELINES:\n"
        "- Focus on CONCEPTS. If students are struggling with a concept, mention it by name.\n"
        "- Identify patterns. Are multiple students failing quizzes on the same topic?\n"
        "- Give specific advice, e.g. \"It might be worth doing a quick review of [Concept] in your next session.\"\n"
        "- Use the student names provided to make it feel personalized.\n"
        "- If data is sparse, encourage the teacher on how to get more (e.g. \"Encourage students to try the quizzes!\").\n"
        "- Keep it under 150 words.\n\n"
        f"Students: {json.dumps([s['name'] for s in students])}\n"
        f"Recent activity: {json.dumps(recent_activity)}",
        "A short, warm, specific summary for the teacher (under 150 words)"
    )
    return summary.strip() or "No insights available."
