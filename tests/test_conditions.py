"""Tests for the shared condition evaluator and variable templating."""
import pytest
from models.schemas import ConditionClause
from utils.conditions import (
    evaluate_condition, evaluate_conditions, get_nested_value, has_path,
    normalize_operator, references_missing_variable,
)
from utils.templating import format_for_display, render, render_value


def clause(variable, operator="eq", value=None):
    return ConditionClause(variable=variable, operator=operator, value=value)


class TestGetNestedValue:
    def test_flat_key(self):
        assert get_nested_value({"name": "Alice"}, "name") == "Alice"

    def test_nested_key(self):
        data = {"order": {"status": "shipped", "items": 3}}
        assert get_nested_value(data, "order.status") == "shipped"
        assert get_nested_value(data, "order.items") == 3

    def test_list_index(self):
        data = {"order": {"items": [{"sku": "A1"}, {"sku": "B2"}]}}
        assert get_nested_value(data, "order.items[1].sku") == "B2"
        assert get_nested_value(data, "order.items.0.sku") == "A1"

    def test_missing_key(self):
        assert get_nested_value({"a": 1}, "b") is None

    def test_index_out_of_range(self):
        assert get_nested_value({"items": [1]}, "items[3]") is None

    def test_has_path_distinguishes_none(self):
        assert has_path({"a": None}, "a")
        assert not has_path({"a": None}, "b")
        assert not has_path({"a": 1}, "")


class TestEvaluateCondition:
    def test_eq(self):
        cond = clause("status", "eq", "active")
        assert evaluate_condition(cond, {"status": "active"})
        assert not evaluate_condition(cond, {"status": "inactive"})

    def test_eq_compares_as_text(self):
        assert evaluate_condition(clause("count", "eq", "3"), {"count": 3})
        assert evaluate_condition(clause("vip", "eq", "true"), {"vip": True})

    def test_neq(self):
        cond = clause("status", "neq", "closed")
        assert evaluate_condition(cond, {"status": "active"})
        assert not evaluate_condition(cond, {"status": "closed"})

    def test_gt_coerces_numbers(self):
        cond = clause("amount", ">", 100)
        assert evaluate_condition(cond, {"amount": "200"})
        assert not evaluate_condition(cond, {"amount": 50})
        assert not evaluate_condition(cond, {"amount": 100})

    def test_gte_lt_lte(self):
        assert evaluate_condition(clause("n", "gte", 100), {"n": 100})
        assert evaluate_condition(clause("n", "<", 50), {"n": 30})
        assert not evaluate_condition(clause("n", "lte", 50), {"n": 51})

    def test_non_numeric_comparison_is_false(self):
        assert not evaluate_condition(clause("amount", "gt", 10), {"amount": "lots"})
        assert not evaluate_condition(clause("flag", "gt", 0), {"flag": True})

    def test_in(self):
        cond = clause("region", "in", ["north", "south"])
        assert evaluate_condition(cond, {"region": "north"})
        assert not evaluate_condition(cond, {"region": "east"})

    def test_contains_is_case_insensitive(self):
        cond = clause("message", "contains", "REFUND")
        assert evaluate_condition(cond, {"message": "I want a refund"})
        assert evaluate_condition(clause("message", "not_contains", "hello"), {"message": "bye"})

    def test_regex(self):
        cond = clause("email", "regex", r"@example\.com$")
        assert evaluate_condition(cond, {"email": "ana@example.com"})
        assert not evaluate_condition(clause("x", "regex", "("), {"x": "abc"})

    def test_presence_operators_on_missing_variable(self):
        assert evaluate_condition(clause("phone", "not_exists"), {})
        assert evaluate_condition(clause("phone", "is_empty"), {})
        assert not evaluate_condition(clause("phone", "exists"), {})
        assert evaluate_condition(clause("tags", "is_not_empty"), {"tags": ["a"]})

    def test_missing_variable_fails_comparison(self):
        assert not evaluate_condition(clause("plan", "neq", "gold"), {})

    def test_unknown_operator(self):
        assert not evaluate_condition(clause("a", "between", 1), {"a": 1})

    @pytest.mark.parametrize("spelling,canonical", [
        ("==", "eq"), ("!=", "neq"), (">=", "gte"), ("LESS", "lt"), (" eq ", "eq"),
    ])
    def test_operator_aliases(self, spelling, canonical):
        assert normalize_operator(spelling) == canonical


class TestEvaluateConditions:
    def test_and_logic(self):
        conds = [clause("a", "eq", 1), clause("b", "eq", 2)]
        assert evaluate_conditions(conds, {"a": 1, "b": 2})
        assert not evaluate_conditions(conds, {"a": 1, "b": 3})

    def test_or_logic(self):
        conds = [clause("a", "eq", 1), clause("b", "eq", 2)]
        assert evaluate_conditions(conds, {"a": 1, "b": 3}, logic="or")
        assert not evaluate_conditions(conds, {"a": 0, "b": 0}, logic="or")

    def test_empty_group_is_true(self):
        assert evaluate_conditions([], {})

    def test_references_missing_variable(self):
        conds = [clause("a", "eq", 1), clause("b", "exists")]
        assert not references_missing_variable(conds, {"a": 1})
        assert references_missing_variable(conds, {})


class TestTemplating:
    def test_render_placeholders(self):
        assert render("Hello {{ name }}!", {"name": "Ana"}) == "Hello Ana!"

    def test_unknown_placeholder_left_visible(self):
        assert render("Hello {{name}}", {}) == "Hello {{name}}"

    def test_nested_placeholder(self):
        assert render("Order {{order.id}}", {"order": {"id": 7}}) == "Order 7"

    def test_list_rendered_as_numbered_lines(self):
        items = [{"name": "Tea", "price": 3}, {"name": "Coffee"}]
        assert render("{{items}}", {"items": items}) == "1. Tea - 3\n2. Coffee"

    def test_format_for_display(self):
        assert format_for_display(True) == "true"
        assert format_for_display([]) == "(empty list)"
        assert format_for_display({"a": 1}) == "a: 1"

    def test_render_value_keeps_types(self):
        variables = {"ids": [1, 2], "name": "Ana"}
        rendered = render_value({"ids": "{{ids}}", "greeting": "hi {{name}}"}, variables)
        assert rendered == {"ids": [1, 2], "greeting": "hi Ana"}

    def test_render_value_embeds_structures_as_json(self):
        assert render_value("q={{f}}", {"f": {"a": 1}}) == 'q={"a": 1}'
