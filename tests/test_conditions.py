"""Tests for the shared condition evaluator."""
from models.schemas import RuleCondition
from utils.conditions import evaluate_condition, evaluate_conditions, get_nested_value, matches_context


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"page": "/dashboard"}, "page") == "/dashboard"

    def test_nested_key(self):
        data = {"course": {"level": "advanced", "lessons": 3}}
        assert get_nested_value(data, "course.level") == "advanced"
        assert get_nested_value(data, "course.lessons") == 3

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None

    def test_missing_nested_key(self):
        assert get_nested_value({"a": {"b": 1}}, "a.c") is None

    def test_deep_nesting(self):
        data = {"a": {"b": {"c": {"d": 42}}}}
        assert get_nested_value(data, "a.b.c.d") == 42


class TestEvaluateCondition:
    def test_eq(self):
        cond = RuleCondition(field="page", operator="eq", value="/courses")
        assert evaluate_condition(cond, {"page": "/courses"})
        assert not evaluate_condition(cond, {"page": "/dashboard"})

    def test_neq(self):
        cond = RuleCondition(field="language", operator="neq", value="en")
        assert evaluate_condition(cond, {"language": "es"})
        assert not evaluate_condition(cond, {"language": "en"})

    def test_gt(self):
        cond = RuleCondition(field="progress", operator="gt", value=50)
        assert evaluate_condition(cond, {"progress": 80})
        assert not evaluate_condition(cond, {"progress": 20})
        assert not evaluate_condition(cond, {"progress": 50})

    def test_gte(self):
        cond = RuleCondition(field="progress", operator="gte", value=100)
        assert evaluate_condition(cond, {"progress": 100})
        assert not evaluate_condition(cond, {"progress": 99})

    def test_lt(self):
        cond = RuleCondition(field="score", operator="lt", value=50)
        assert evaluate_condition(cond, {"score": 30})
        assert not evaluate_condition(cond, {"score": 60})

    def test_lte(self):
        cond = RuleCondition(field="score", operator="lte", value=50)
        assert evaluate_condition(cond, {"score": 50})
        assert not evaluate_condition(cond, {"score": 51})

    def test_in(self):
        cond = RuleCondition(field="role", operator="in", value=["student", "instructor"])
        assert evaluate_condition(cond, {"role": "student"})
        assert not evaluate_condition(cond, {"role": "admin"})

    def test_contains(self):
        cond = RuleCondition(field="page", operator="contains", value="courses")
        assert evaluate_condition(cond, {"page": "/courses/python-101"})
        assert not evaluate_condition(cond, {"page": "/profile"})

    def test_regex(self):
        cond = RuleCondition(field="page", operator="regex", value=r"^/courses/[\w-]+$")
        assert evaluate_condition(cond, {"page": "/courses/python-101"})
        assert not evaluate_condition(cond, {"page": "/courses"})

    def test_exists(self):
        cond = RuleCondition(field="course_id", operator="exists", value=True)
        assert evaluate_condition(cond, {"course_id": "c-101"})
        assert not evaluate_condition(cond, {"page": "/dashboard"})

    def test_not_exists(self):
        cond = RuleCondition(field="course_id", operator="not_exists", value=True)
        assert evaluate_condition(cond, {"page": "/dashboard"})
        assert not evaluate_condition(cond, {"course_id": "c-101"})

    def test_type_coercion_string_to_float(self):
        cond = RuleCondition(field="progress", operator="gt", value=50)
        assert evaluate_condition(cond, {"progress": "80"})

    def test_nested_field(self):
        cond = RuleCondition(field="course.progress", operator="gte", value=100)
        assert evaluate_condition(cond, {"course": {"progress": 100}})
        assert not evaluate_condition(cond, {"course": {"progress": 35}})

    def test_invalid_operator(self):
        cond = RuleCondition(field="x", operator="invalid_op", value=1)
        assert not evaluate_condition(cond, {"x": 1})

    def test_type_error_returns_false(self):
        cond = RuleCondition(field="x", operator="gt", value=10)
        assert not evaluate_condition(cond, {"x": "not_a_number"})


class TestEvaluateConditions:
    def test_empty_conditions(self):
        assert evaluate_conditions([], {"anything": True})

    def test_all_pass(self):
        conditions = [
            RuleCondition(field="progress", operator="gt", value=50),
            RuleCondition(field="role", operator="eq", value="student"),
        ]
        assert evaluate_conditions(conditions, {"progress": 80, "role": "student"})

    def test_one_fails(self):
        conditions = [
            RuleCondition(field="progress", operator="gt", value=50),
            RuleCondition(field="role", operator="eq", value="student"),
        ]
        assert not evaluate_conditions(conditions, {"progress": 80, "role": "admin"})

    def test_all_fail(self):
        conditions = [
            RuleCondition(field="progress", operator="gt", value=99),
            RuleCondition(field="role", operator="eq", value="student"),
        ]
        assert not evaluate_conditions(conditions, {"progress": 10, "role": "admin"})


class TestMatchesContext:
    def test_no_conditions_matches_everything(self):
        assert matches_context({}, {"page": "/dashboard"})
        assert matches_context(None, {})

    def test_page_list(self):
        block = {"pages": ["/courses", "/courses/detail"]}
        assert matches_context(block, {"page": "/courses"})
        assert not matches_context(block, {"page": "/dashboard"})

    def test_page_list_ignored_without_page_in_context(self):
        assert matches_context({"pages": ["/courses"]}, {"course_id": "c-1"})

    def test_field_conditions(self):
        block = {"conditions": [{"field": "course.progress", "operator": "gte", "value": 100}]}
        assert matches_context(block, {"course": {"progress": 100}})
        assert not matches_context(block, {"course": {"progress": 40}})

    def test_pages_and_conditions_combined(self):
        block = {
            "pages": ["/courses/detail"],
            "conditions": [{"field": "course_id", "operator": "exists"}],
        }
        assert matches_context(block, {"page": "/courses/detail", "course_id": "c-1"})
        assert not matches_context(block, {"page": "/courses/detail"})
