import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from formhub.errors import UnsupportedFieldType, ValidationFailure
from submission_validator import (
    KIND_BOOLEAN,
    KIND_INTEGER,
    KIND_STRING,
    MSG_EMPTY,
    MSG_NOT_BOOLEAN,
    MSG_NOT_INTEGER,
    MSG_NOT_TEXT,
    MSG_REQUIRED,
    MSG_UNCHECKED,
    OPTIONAL,
    REQUIRED,
    apply_rules,
    build_rules,
    field_submission_rows,
    payload_from_field_submissions,
    unknown_field_ids,
    validate_submission,
)


def _field(field_id, field_type, required=False, order=0):
    return {"id": field_id, "type": field_type, "required": required, "order": order}


class TestBuildRules(unittest.TestCase):
    def test_rule_per_type_and_presence(self) -> None:
        rules = build_rules(
            [
                _field("a", "STRING", True, 0),
                _field("b", "TEXT", False, 1),
                _field("c", "INTEGER", True, 2),
                _field("d", "CHECKBOX", False, 3),
            ]
        )
        self.assertEqual(rules["a"].presence, REQUIRED)
        self.assertEqual(rules["a"].value_kind, KIND_STRING)
        self.assertEqual(rules["b"].presence, OPTIONAL)
        self.assertEqual(rules["b"].value_kind, KIND_STRING)
        self.assertEqual(rules["c"].value_kind, KIND_INTEGER)
        self.assertEqual(rules["d"].value_kind, KIND_BOOLEAN)

    def test_rules_follow_field_order(self) -> None:
        rules = build_rules([_field("late", "STRING", order=2), _field("early", "STRING", order=0)])
        self.assertEqual(list(rules.keys()), ["early", "late"])

    def test_lowercase_type_is_accepted(self) -> None:
        rules = build_rules([_field("a", "integer")])
        self.assertEqual(rules["a"].value_kind, KIND_INTEGER)

    def test_unknown_type_fails_fast(self) -> None:
        with self.assertRaises(UnsupportedFieldType) as ctx:
            build_rules([_field("a", "DATE")])
        self.assertEqual(ctx.exception.path, "a")
        self.assertEqual(ctx.exception.status, 500)


class TestValidateSubmission(unittest.TestCase):
    def setUp(self) -> None:
        self.fields = [_field("f1", "STRING", True, 0), _field("f2", "INTEGER", True, 1)]

    def test_valid_payload_is_normalized(self) -> None:
        values = validate_submission(self.fields, {"f1": "Alice", "f2": "30"})
        self.assertEqual(values, {"f1": "Alice", "f2": 30})

    def test_empty_required_string(self) -> None:
        with self.assertRaises(ValidationFailure) as ctx:
            validate_submission(self.fields, {"f1": "", "f2": "30"})
        self.assertEqual(ctx.exception.errors, [{"fieldId": "f1", "message": MSG_EMPTY}])

    def test_failures_keep_field_order_and_block_everything(self) -> None:
        errors, values = apply_rules(build_rules(self.fields), {"f2": "abc", "f1": 5})
        self.assertEqual(
            errors,
            [{"fieldId": "f1", "message": MSG_NOT_TEXT}, {"fieldId": "f2", "message": MSG_NOT_INTEGER}],
        )
        self.assertEqual(values, {})

    def test_missing_optional_values_are_explicit_none(self) -> None:
        fields = [_field("s", "TEXT"), _field("n", "INTEGER"), _field("c", "CHECKBOX")]
        self.assertEqual(validate_submission(fields, {}), {"s": None, "n": None, "c": None})

    def test_optional_string_may_be_empty(self) -> None:
        self.assertEqual(validate_submission([_field("s", "STRING")], {"s": ""}), {"s": ""})

    def test_issues_map_to_field_paths(self) -> None:
        with self.assertRaises(ValidationFailure) as ctx:
            validate_submission(self.fields, {})
        issues = ctx.exception.to_issues()
        self.assertEqual([i["path"] for i in issues], ["f1", "f2"])
        self.assertTrue(all(i["code"] == "FIELD_INVALID" for i in issues))


class TestIntegerRules(unittest.TestCase):
    def test_optional_empty_string_is_none(self) -> None:
        self.assertEqual(validate_submission([_field("n", "INTEGER")], {"n": ""}), {"n": None})
        self.assertEqual(validate_submission([_field("n", "INTEGER")], {"n": "   "}), {"n": None})

    def test_required_empty_or_missing(self) -> None:
        for payload in ({"n": ""}, {}, {"n": None}):
            errors, _ = apply_rules(build_rules([_field("n", "INTEGER", True)]), payload)
            self.assertEqual(errors, [{"fieldId": "n", "message": MSG_REQUIRED}])

    def test_parses_numbers(self) -> None:
        fields = [_field("n", "INTEGER", True)]
        self.assertEqual(validate_submission(fields, {"n": " -12 "}), {"n": -12})
        self.assertEqual(validate_submission(fields, {"n": 7}), {"n": 7})
        self.assertEqual(validate_submission(fields, {"n": 4.0}), {"n": 4})

    def test_rejects_non_integers(self) -> None:
        fields = [_field("n", "INTEGER")]
        for value in ("abc", "1.5", 2.5, True, [1]):
            errors, _ = apply_rules(build_rules(fields), {"n": value})
            self.assertEqual(errors, [{"fieldId": "n", "message": MSG_NOT_INTEGER}], value)

    def test_oversized_digit_strings_fail_per_field(self) -> None:
        fields = [_field("n", "INTEGER", True)]
        for value in ("9" * 5000, "-" + "9" * 12, "0" * 4000 + "1" * 11):
            errors, _ = apply_rules(build_rules(fields), {"n": value})
            self.assertEqual(errors, [{"fieldId": "n", "message": MSG_NOT_INTEGER}])
        with self.assertRaises(ValidationFailure):
            validate_submission(fields, {"n": "9" * 5000})

    def test_values_outside_storage_range(self) -> None:
        fields = [_field("n", "INTEGER")]
        for value in ("3000000000", 2**31, -(2**31) - 1, 3e9, "-2147483649"):
            errors, _ = apply_rules(build_rules(fields), {"n": value})
            self.assertEqual(errors, [{"fieldId": "n", "message": MSG_NOT_INTEGER}], value)
        self.assertEqual(validate_submission(fields, {"n": "2147483647"}), {"n": 2147483647})
        self.assertEqual(validate_submission(fields, {"n": "-2147483648"}), {"n": -2147483648})
        self.assertEqual(validate_submission(fields, {"n": "0007"}), {"n": 7})


class TestCheckboxRules(unittest.TestCase):
    def test_required_checkbox_must_be_checked(self) -> None:
        fields = [_field("c", "CHECKBOX", True)]
        self.assertEqual(validate_submission(fields, {"c": True}), {"c": True})
        errors, _ = apply_rules(build_rules(fields), {"c": False})
        self.assertEqual(errors, [{"fieldId": "c", "message": MSG_UNCHECKED}])
        errors, _ = apply_rules(build_rules(fields), {})
        self.assertEqual(errors, [{"fieldId": "c", "message": MSG_REQUIRED}])

    def test_optional_checkbox_accepts_false(self) -> None:
        self.assertEqual(validate_submission([_field("c", "CHECKBOX")], {"c": False}), {"c": False})

    def test_non_boolean_rejected(self) -> None:
        errors, _ = apply_rules(build_rules([_field("c", "CHECKBOX")]), {"c": "yes"})
        self.assertEqual(errors, [{"fieldId": "c", "message": MSG_NOT_BOOLEAN}])


class TestPayloadHelpers(unittest.TestCase):
    def setUp(self) -> None:
        self.fields = [
            _field("s", "STRING", order=0),
            _field("n", "INTEGER", order=1),
            _field("c", "CHECKBOX", order=2),
        ]

    def test_unknown_field_ids(self) -> None:
        self.assertEqual(unknown_field_ids(self.fields, {"s": "x", "zzz": 1}), ["zzz"])
        self.assertEqual(unknown_field_ids(self.fields, {}), [])

    def test_payload_from_field_submissions(self) -> None:
        payload = payload_from_field_submissions(
            [
                {"templateFieldId": "s", "valueString": "hi"},
                {"templateFieldId": "n", "valueInteger": 3},
                {"templateFieldId": "c", "valueBoolean": False},
                {"valueString": "orphan"},
            ]
        )
        self.assertEqual(payload, {"s": "hi", "n": 3, "c": False})

    def test_rows_use_the_slot_for_each_type(self) -> None:
        values = validate_submission(self.fields, {"s": "hi", "n": "3", "c": True})
        rows = field_submission_rows(self.fields, values)
        self.assertEqual(
            rows,
            [
                {"templateFieldId": "s", "valueString": "hi", "valueInteger": None, "valueBoolean": None},
                {"templateFieldId": "n", "valueString": None, "valueInteger": 3, "valueBoolean": None},
                {"templateFieldId": "c", "valueString": None, "valueInteger": None, "valueBoolean": True},
            ],
        )

    def test_rows_only_for_present_fields(self) -> None:
        values = validate_submission(self.fields, {"n": 1})
        rows = field_submission_rows(self.fields, values, present=["n"])
        self.assertEqual([r["templateFieldId"] for r in rows], ["n"])


if __name__ == "__main__":
    unittest.main()
