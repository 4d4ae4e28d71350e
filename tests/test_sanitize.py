from job_monitor.sanitize import clean_text, sanitize_field, truncate


def test_clean_text_strips_markup_and_invisible_characters() -> None:
    raw = "<b>Senior</b>&nbsp;Engineer\u200b\x07\nRemote\t\ufeff"
    assert clean_text(raw) == "Senior Engineer Remote"


def test_clean_text_handles_empty_values() -> None:
    assert clean_text(None) == ""
    assert clean_text("   ") == ""


def test_truncate_stays_within_limit() -> None:
    assert truncate("abcdefghij", 8) == "abcde..."
    assert truncate("short", 8) == "short"


def test_sanitize_field_truncates_cleaned_text() -> None:
    value = sanitize_field("<p>" + "x" * 600 + "</p>", 500)
    assert len(value) == 500
    assert value.endswith("...")
    assert sanitize_field(None, 10) == ""
