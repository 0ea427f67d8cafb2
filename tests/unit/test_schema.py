from marketflow.nodes.schema import FieldRule, apply_defaults, validate_config


def test_required_fields_are_all_reported():
    schema = {
        "provider_code": FieldRule(type="string", required=True),
        "subject": FieldRule(type="string", required=True),
        "to": FieldRule(type="email"),
    }

    errors = validate_config({"subject": ""}, schema)

    assert errors == ["Field 'provider_code' is required", "Field 'subject' is required"]


def test_type_checks():
    schema = {
        "count": FieldRule(type="int"),
        "ratio": FieldRule(type="number"),
        "flag": FieldRule(type="bool"),
        "items": FieldRule(type="array"),
        "meta": FieldRule(type="object"),
        "email": FieldRule(type="email"),
        "site": FieldRule(type="url"),
        "day": FieldRule(type="date"),
    }
    config = {
        "count": "abc",
        "ratio": "1.5x",
        "flag": "yes",
        "items": "a,b",
        "meta": [],
        "email": "not-an-email",
        "site": "example",
        "day": "yesterday",
    }

    errors = validate_config(config, schema)

    assert errors == [
        "Field 'count' must be an integer",
        "Field 'ratio' must be a number",
        "Field 'flag' must be a boolean",
        "Field 'items' must be an array",
        "Field 'meta' must be an object",
        "Field 'email' must be a valid email address",
        "Field 'site' must be a valid URL",
        "Field 'day' must be a valid date",
    ]


def test_valid_values_pass():
    schema = {
        "count": FieldRule(type="int", min=1, max=10),
        "email": FieldRule(type="email"),
        "site": FieldRule(type="url"),
        "day": FieldRule(type="date"),
        "flag": FieldRule(type="bool"),
    }
    config = {
        "count": "7",
        "email": "ann@example.com",
        "site": "https://example.com/shop",
        "day": "2024-01-03",
        "flag": False,
    }

    assert validate_config(config, schema) == []


def test_ranges_lengths_patterns_and_options():
    schema = {
        "amount": FieldRule(type="int", min=0, max=100),
        "code": FieldRule(type="string", min_length=3, max_length=5, pattern=r"^[A-Z]+$"),
        "unit": FieldRule(type="string", options=["hours", "days"]),
    }

    errors = validate_config({"amount": 150, "code": "ab", "unit": "years"}, schema)

    assert errors == [
        "Field 'amount' must be at most 100",
        "Field 'code' must be at least 3 characters",
        "Field 'code' format is invalid",
        "Field 'unit' must be one of: hours, days",
    ]


def test_booleans_are_not_integers():
    errors = validate_config({"count": True}, {"count": FieldRule(type="int")})
    assert errors == ["Field 'count' must be an integer"]


def test_unknown_type_is_reported():
    errors = validate_config({"x": 1}, {"x": FieldRule(type="decimal")})
    assert errors == ["Field 'x' has unknown type 'decimal'"]


def test_apply_defaults_fills_only_absent_fields():
    schema = {
        "unit": FieldRule(default="hours"),
        "amount": FieldRule(default=1),
        "enabled": FieldRule(default=True),
    }

    merged = apply_defaults({"amount": 0, "unit": ""}, schema)

    assert merged == {"unit": "hours", "amount": 0, "enabled": True}
