"""Unit tests for the delay histogram reporter."""

from serverpulse.observability.delays import (
    DELAY_PERCENTILES,
    EMPTY_LOG_LINE,
    format_delay_report,
    summarize_delays,
)


def test_percentile_set_is_fixed():
    assert DELAY_PERCENTILES == (5, 25, 50, 75, 95)


def test_summary_for_five_samples():
    assert summarize_delays([10, 20, 30, 40, 50]) == (
        "Average: 30ms - Count: 5 - Percentiles (5/25/50/75/95): 10ms/20ms/30ms/40ms/50ms"
    )


def test_average_uses_integer_division():
    summary = summarize_delays([1, 2])
    assert summary.startswith("Average: 1ms - Count: 2 - ")


def test_unsorted_samples():
    assert "Percentiles (5/25/50/75/95): 1ms/2ms/3ms/4ms/4ms" in summarize_delays([4, 3, 2, 1])


def test_empty_category_reports_no_data():
    assert format_delay_report({"join": []}) == ["join: no data"]


def test_one_line_per_category_in_log_order():
    lines = format_delay_report({"start": [5], "join": [10, 20, 30, 40, 50], "chat": []})
    assert lines == [
        "start: Average: 5ms - Count: 1 - Percentiles (5/25/50/75/95): 5ms/5ms/5ms/5ms/5ms",
        "join: Average: 30ms - Count: 5 - Percentiles (5/25/50/75/95): 10ms/20ms/30ms/40ms/50ms",
        "chat: no data",
    ]


def test_empty_log_has_placeholder_line():
    assert format_delay_report({}) == [EMPTY_LOG_LINE]
