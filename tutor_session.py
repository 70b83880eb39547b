"""View-state controller for one problem-solving session.

input -> tree -> learning -> tree -> solution, with reset back to input from
anywhere. The only slow step is the generation round trip; while it is
pending the session is `loading` and refuses another submission.
"""
import logging
import threading
import time

import prereq_tree

logger = logging.getLogger(__name__)

INPUT = "input"
TREE = "tree"
LEARNING = "learning"
SOLUTION = "solution"

NO_PREREQUISITES_MESSAGE = (
    "We couldn't identify prerequisites for this problem. Try rephrasing it or adding more detail."
)
NO_SOLUTION_MESSAGE = "We failed to generate a step-by-step solution for this problem. Please try again."
GENERIC_FAILURE_MESSAGE = "Failed to analyze problem. Please check your connection and try again."
EMPTY_PROBLEM_MESSAGE = "Please enter a math problem first."


class SessionError(Exception):
    """Navigation that the current session state does not allow."""


class TutorSession:
    def __init__(self, generate):
        # generate(problem_text) -> {"prerequisites", "similarProblem", "similarSolution"}
        self._generate = generate
        self.state = INPUT
        self.problem = None
        self.active_concept_id = None
        self.loading = False
        self.error = None
        # bumped by reset(); a round trip started under an older value is stale
        self._generation = 0
        self._pending_generation = 0
        self._learning_started = None
        self._lock = threading.Lock()

    # --- Read-only views ---

    @property
    def forest(self):
        return self.problem["prerequisites"] if self.problem else []

    @property
    def all_completed(self):
        return bool(self.problem) and prereq_tree.all_completed(self.forest)

    @property
    def active_concept_label(self):
        if not self.active_concept_id:
            return ""
        return prereq_tree.label_or_id(self.forest, self.active_concept_id)

    def snapshot(self):
        problem = None
        if self.problem:
            problem = dict(self.problem)
            problem["similarSolution"] = [
                dict(step, prerequisiteLabels=[
                    prereq_tree.label_or_id(self.forest, pid) for pid in step["prerequisiteIds"]
                ])
                for step in self.problem["similarSolution"]
            ]
        return {
            "state": self.state,
            "problem": problem,
            "activeConceptId": self.active_concept_id,
            "activeConceptLabel": self.active_concept_label,
            "loading": self.loading,
            "error": self.error,
            "allCompleted": self.all_completed,
            "progress": prereq_tree.progress(self.forest),
        }

    # --- Generation round trip ---

    def begin_submission(self):
        """Claim the loading flag. False when a round trip is already pending.

        Raises SessionError outside the input state; reset() first.
        """
        with self._lock:
            if self.loading:
                logger.info("Ignoring submission while a generation is pending")
                return False
            if self.state != INPUT:
                raise SessionError("Start a new problem before submitting another one")
            self.loading = True
            self.error = None
            self._pending_generation = self._generation
            return True

    def finish_submission(self, text):
        """Run the round trip claimed by begin_submission and apply its result."""
        generation = self._pending_generation
        try:
            result = self._generate(text)
        except Exception as e:
            logger.exception("Problem analysis failed")
            with self._lock:
                self.loading = False
                if generation == self._generation:
                    self.error = str(e) or GENERIC_FAILURE_MESSAGE
            return False

        result = result if isinstance(result, dict) else {}
        prerequisites = prereq_tree.normalize_forest(result.get("prerequisites"))
        solution = prereq_tree.normalize_solution(result.get("similarSolution"))
        similar = result.get("similarProblem")

        # check and apply together so a concurrent reset() can't land in between
        with self._lock:
            self.loading = False
            if generation != self._generation:
                logger.info("Discarding generation result that finished after a reset")
                return False
            if not prerequisites:
                self.error = NO_PREREQUISITES_MESSAGE
                return False
            if not solution:
                self.error = NO_SOLUTION_MESSAGE
                return False
            self.problem = {
                "originalProblem": text,
                "prerequisites": prerequisites,
                "similarProblem": str(similar) if similar else None,
                "similarSolution": solution,
            }
            self.active_concept_id = None
            self.state = TREE
            return True

    def submit_problem(self, text):
        text = (text or "").strip()
        if not text:
            if not self.loading:
                self.error = EMPTY_PROBLEM_MESSAGE
            return False
        if not self.begin_submission():
            return False
        return self.finish_submission(text)

    # --- Tree and navigation ---

    def toggle(self, node_id):
        if not self.problem:
            return
        self.problem["prerequisites"] = prereq_tree.toggle(self.problem["prerequisites"], node_id)

    def select_concept_to_learn(self, node_id):
        if not self.problem:
            raise SessionError("No problem loaded")
        self.active_concept_id = node_id
        self._learning_started = time.monotonic()
        self.state = LEARNING

    def back_to_tree(self):
        if not self.problem:
            raise SessionError("No problem loaded")
        self.state = TREE

    def complete_concept(self):
        """Mark the active concept understood and return to the tree.

        Returns {"id", "label", "seconds"} for the completed concept, or None
        when no concept was active.
        """
        completed = None
        if self.active_concept_id:
            seconds = 0
            if self._learning_started is not None:
                seconds = int(time.monotonic() - self._learning_started)
            completed = {
                "id": self.active_concept_id,
                "label": self.active_concept_label,
                "seconds": seconds,
            }
            self.toggle(self.active_concept_id)
        self.state = TREE
        self.active_concept_id = None
        self._learning_started = None
        return completed

    def proceed_to_solution(self):
        if not self.all_completed:
            raise SessionError("Complete every prerequisite before viewing the solution")
        self.state = SOLUTION

    def reset(self):
        with self._lock:
            self._generation += 1
            self.state = INPUT
            self.problem = None
            self.active_concept_id = None
            self.error = None
            self._learning_started = None

    def dismiss_error(self):
        self.error = None
