"""Unit tests for prereq_tree.py"""
import copy
import pytest
import prereq_tree


def node(node_id, completed=False, children=None, label=None):
    n = {"id": node_id, "label": label or node_id.upper(), "description": "", "completed": completed}
    if children is not None:
        n["children"] = children
    return n


@pytest.fixture
def forest():
    return [
        node("a", children=[node("a1"), node("a2")]),
        node("b"),
        node("c", children=[node("c1")]),
    ]


# --- toggle ---

class TestToggle:
    def test_toggle_root(self, forest):
        updated = prereq_tree.toggle(forest, "b")
        assert updated[1]["completed"] is True
        assert all(not n["completed"] for n in prereq_tree.iter_nodes(updated) if n["id"] != "b")

    def test_toggle_child_leaves_parent_alone(self):
        forest = [node("a", children=[node("a1")])]
        updated = prereq_tree.toggle(forest, "a1")
        assert updated[0]["children"][0]["completed"] is True
        assert updated[0]["completed"] is False
        assert prereq_tree.all_completed(updated) is False

    def test_toggle_parent_leaves_children_alone(self, forest):
        updated = prereq_tree.toggle(forest, "a")
        assert updated[0]["completed"] is True
        assert [c["completed"] for c in updated[0]["children"]] == [False, False]

    def test_unknown_id_is_a_no_op(self, forest):
        assert prereq_tree.toggle(forest, "zzz") == forest

    def test_unknown_id_on_empty_forest(self):
        assert prereq_tree.toggle([], "a") == []

    def test_double_toggle_is_identity(self, forest):
        for node_id in ["a", "a1", "a2", "b", "c", "c1"]:
            assert prereq_tree.toggle(prereq_tree.toggle(forest, node_id), node_id) == forest

    def test_input_is_not_mutated(self, forest):
        before = copy.deepcopy(forest)
        updated = prereq_tree.toggle(forest, "a1")
        assert forest == before
        assert updated[0]["children"] is not forest[0]["children"]

    def test_duplicate_ids_first_in_preorder_wins(self):
        forest = [node("a", children=[node("x")]), node("x")]
        updated = prereq_tree.toggle(forest, "x")
        assert updated[0]["children"][0]["completed"] is True
        assert updated[1]["completed"] is False

    def test_duplicate_sibling_ids_only_first_toggles(self):
        forest = [node("x"), node("x")]
        updated = prereq_tree.toggle(forest, "x")
        assert [n["completed"] for n in updated] == [True, False]

    def test_leaf_without_children_key_stays_without_it(self, forest):
        updated = prereq_tree.toggle(forest, "b")
        assert "children" not in updated[1]


# --- find_label ---

class TestFindLabel:
    def test_root_label(self, forest):
        assert prereq_tree.find_label(forest, "b") == "B"

    def test_child_label(self, forest):
        assert prereq_tree.find_label(forest, "c1") == "C1"

    def test_missing_returns_none(self, forest):
        assert prereq_tree.find_label(forest, "nope") is None

    def test_label_or_id_falls_back_to_id(self, forest):
        assert prereq_tree.label_or_id(forest, "a2") == "A2"
        assert prereq_tree.label_or_id(forest, "dangling-id") == "dangling-id"

    def test_first_match_wins(self):
        forest = [node("a", children=[node("x", label="first")]), node("x", label="second")]
        assert prereq_tree.find_label(forest, "x") == "first"


# --- all_completed ---

class TestAllCompleted:
    def test_false_when_nothing_done(self, forest):
        assert prereq_tree.all_completed(forest) is False

    def test_false_when_only_children_done(self):
        forest = [node("a", children=[node("a1", True)])]
        assert prereq_tree.all_completed(forest) is False

    def test_false_when_a_child_is_open(self):
        forest = [node("a", True, children=[node("a1", True), node("a2", False)])]
        assert prereq_tree.all_completed(forest) is False

    def test_true_when_everything_done(self):
        forest = [node("a", True, children=[node("a1", True)]), node("b", True)]
        assert prereq_tree.all_completed(forest) is True

    def test_leaf_root_needs_only_its_own_flag(self):
        assert prereq_tree.all_completed([node("b", True, children=[])]) is True

    def test_recomputed_after_each_toggle(self):
        forest = [node("a", children=[node("a1")])]
        for node_id in ["a", "a1"]:
            forest = prereq_tree.toggle(forest, node_id)
        assert prereq_tree.all_completed(forest) is True
        forest = prereq_tree.toggle(forest, "a1")
        assert prereq_tree.all_completed(forest) is False


# --- normalization ---

class TestNormalizeForest:
    def test_non_list_becomes_empty(self):
        assert prereq_tree.normalize_forest(None) == []
        assert prereq_tree.normalize_forest("oops") == []
        assert prereq_tree.normalize_forest({"id": "a"}) == []

    def test_every_node_starts_incomplete(self):
        raw = [{"id": "a", "label": "A", "description": "d", "completed": True,
                "children": [{"id": "a1", "label": "A1", "description": "d1", "completed": True}]}]
        forest = prereq_tree.normalize_forest(raw)
        assert forest[0]["completed"] is False
        assert forest[0]["children"][0]["completed"] is False

    def test_drops_grandchildren(self):
        raw = [{"id": "a", "label": "A", "children": [
            {"id": "a1", "label": "A1", "children": [{"id": "a1x", "label": "deep"}]}
        ]}]
        forest = prereq_tree.normalize_forest(raw)
        assert "children" not in forest[0]["children"][0]

    def test_missing_fields_get_defaults(self):
        forest = prereq_tree.normalize_forest([{"label": "Fractions"}, {"id": 7}, "junk"])
        assert len(forest) == 2
        assert forest[0]["id"] == "1"
        assert forest[0]["description"] == ""
        assert forest[1]["id"] == "7"
        assert forest[1]["label"] == "7"

    def test_positional_ids_for_children(self):
        forest = prereq_tree.normalize_forest([{"label": "A", "children": [{"label": "B"}]}])
        assert forest[0]["children"][0]["id"] == "1.1"

    def test_empty_children_list_is_a_leaf(self):
        forest = prereq_tree.normalize_forest([{"id": "a", "label": "A", "children": []}])
        assert "children" not in forest[0]


class TestNormalizeSolution:
    def test_non_list_becomes_empty(self):
        assert prereq_tree.normalize_solution(None) == []
        assert prereq_tree.normalize_solution({"step": "x"}) == []

    def test_step_fields(self):
        steps = prereq_tree.normalize_solution([
            {"step": "Subtract 5", "explanation": "Undo the addition", "prerequisiteIds": ["a", 2]},
            {"step": "Divide by 2", "prerequisiteIds": "a"},
            42,
        ])
        assert len(steps) == 2
        assert steps[0]["prerequisiteIds"] == ["a", "2"]
        assert steps[1]["explanation"] == ""
        assert steps[1]["prerequisiteIds"] == []


def test_progress_counts_roots_and_children(forest):
    forest = prereq_tree.toggle(forest, "a1")
    assert prereq_tree.progress(forest) == {"completed": 1, "total": 6}
