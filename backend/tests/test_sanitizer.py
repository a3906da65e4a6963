import pytest

from crm_admin.sanitizer import LEAD_SCHEMA, DataSanitizer, FieldType


@pytest.fixture()
def s():
    return DataSanitizer()


def test_script_tags_are_stripped_from_names(s):
    assert s.sanitize("<script>alert(1)</script>John", FieldType.NAME) == "alertJohn"


def test_sanitize_trims_and_truncates(s):
    assert s.sanitize("  hello  ", FieldType.TEXT) == "hello"
    assert len(s.sanitize("x" * 300, FieldType.TEXT)) == 255
    assert s.get_security_log()[-1]["type"] == "length_truncation"


@pytest.mark.parametrize("payload", [
    "javascript:alert(1)",
    "<img src=x onerror=alert(1)>",
    "eval(code)",
    "data:text/html;base64,xx",
])
def test_dangerous_content_is_removed(s, payload):
    assert s.contains_dangerous_content(payload)
    assert not s.contains_dangerous_content(s.sanitize(payload, FieldType.TEXT))


def test_email_is_lowercased_and_validated(s):
    assert s.sanitize(" John@Example.COM ", FieldType.EMAIL) == "john@example.com"
    assert s.validate("john@example.com", FieldType.EMAIL).valid
    result = s.validate("not-an-email", FieldType.EMAIL)
    assert not result.valid
    assert result.code == "INVALID_EMAIL_FORMAT"


def test_phone_rules(s):
    assert s.validate("+91 98765 43210", FieldType.PHONE).valid
    assert s.validate("12345", FieldType.PHONE).code == "PHONE_TOO_SHORT"
    # letters are cleaned away entirely, leaving an empty required value
    assert s.validate("abc", FieldType.PHONE, required=True).code == "REQUIRED_FIELD_EMPTY"


def test_name_rules(s):
    assert s.validate("J", FieldType.NAME).code == "NAME_TOO_SHORT"
    assert s.validate("Mary-Jane O'Neil", FieldType.NAME).valid


def test_required_empty_values(s):
    assert s.validate("", FieldType.TEXT, required=True).code == "REQUIRED_FIELD_EMPTY"
    assert s.validate(None, FieldType.TEXT).code == "VALID_EMPTY"


def test_numbers(s):
    assert s.sanitize("42", FieldType.NUMBER) == 42
    assert s.sanitize("4.5", FieldType.NUMBER) == 4.5
    assert s.sanitize("abc", FieldType.NUMBER) == 0
    assert s.validate("abc", FieldType.NUMBER).code == "INVALID_NUMBER"


def test_invalid_enum_value_is_silently_dropped(s):
    result = s.sanitize_lead_data({"name": "John Doe", "phone": "9876543210", "status": "bogus"})

    assert result.is_valid
    assert "status" not in result.sanitized_data
    assert result.warnings and result.warnings[0]["field"] == "status"


def test_valid_enum_value_is_kept(s):
    result = s.sanitize_lead_data({"name": "John Doe", "phone": "9876543210", "status": "contacted"})
    assert result.sanitized_data["status"] == "contacted"


def test_create_mode_reports_missing_required_fields(s):
    result = s.sanitize_lead_data({"email": "a@b.co"})
    assert not result.is_valid
    assert set(result.errors) == {"name", "phone"}


def test_partial_mode_checks_only_supplied_fields(s):
    result = s.sanitize_lead_data({"remarks": "call back"}, partial=True)
    assert result.is_valid
    assert result.sanitized_data == {"remarks": "call back"}


def test_unknown_fields_are_text_sanitized_or_passed_through(s):
    result = s.validate_form_data({"note": "<b>hi</b>", "score": 7}, LEAD_SCHEMA, partial=True)
    assert result.sanitized_data == {"note": "hi", "score": 7}


def test_sanitize_generic_recurses(s):
    out = s.sanitize_generic({"a": "<i>x</i>", "nested": {"b": ["<p>y</p>", 3]}})
    assert out == {"a": "x", "nested": {"b": ["y", 3]}}


def test_disposable_email(s):
    assert s.is_disposable_email("x@mailinator.com")
    assert not s.is_disposable_email("x@example.com")
