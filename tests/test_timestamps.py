from datetime import datetime, timedelta, timezone

from utils import html_to_text, parse_iso_timestamp, to_iso_timestamp


def test_to_iso_timestamp_is_fixed_width_utc_with_milliseconds():
    value = datetime(2025, 1, 2, 3, 4, 5, 678900, tzinfo=timezone.utc)
    assert to_iso_timestamp(value) == "2025-01-02T03:04:05.678Z"


def test_to_iso_timestamp_converts_offsets_and_assumes_utc_for_naive():
    plus_two = timezone(timedelta(hours=2))
    assert to_iso_timestamp(datetime(2025, 1, 2, 12, 0, tzinfo=plus_two)) == "2025-01-02T10:00:00.000Z"
    assert to_iso_timestamp(datetime(2025, 1, 2, 12, 0)) == "2025-01-02T12:00:00.000Z"


def test_parse_iso_timestamp_accepts_z_suffix():
    parsed = parse_iso_timestamp("2025-01-02T03:04:05.678Z")
    assert parsed == datetime(2025, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)


def test_parse_iso_timestamp_rejects_garbage():
    assert parse_iso_timestamp(None) is None
    assert parse_iso_timestamp("") is None
    assert parse_iso_timestamp("yesterday") is None


def test_string_order_matches_time_order():
    base = datetime(2025, 3, 1, tzinfo=timezone.utc)
    moments = [base + timedelta(milliseconds=ms) for ms in (5, 999, 1000, 86_400_000, 1)]
    as_strings = [to_iso_timestamp(m) for m in moments]
    assert sorted(as_strings) == [to_iso_timestamp(m) for m in sorted(moments)]


def test_html_to_text_drops_markup_and_scripts():
    html = "<p>Hello <b>world</b></p><script>alert(1)</script>\n\n<p>again</p>"
    assert html_to_text(html) == "Hello world again"
    assert html_to_text(None) == ""


def test_to_iso_timestamp_pads_early_years():
    assert to_iso_timestamp(datetime(1, 1, 1, tzinfo=timezone.utc)) == "0001-01-01T00:00:00.000Z"
    assert to_iso_timestamp(datetime(999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)) == "0999-12-31T23:59:59.000Z"
