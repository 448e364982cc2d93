from context_shaper.middle_out import MIDDLE_OUT_MARKER, head_cut, middle_out


def test_short_text_is_unchanged():
    assert middle_out("Hello", 100) == "Hello"


def test_text_at_exact_budget_is_unchanged():
    text = "x" * 100
    assert middle_out(text, 100) is text


def test_none_and_empty_pass_through():
    assert middle_out(None, 100) is None
    assert middle_out("", 100) == ""


def test_long_text_gets_marker_and_stays_near_budget():
    text = "a" * 200 + "b" * 200

    result = middle_out(text, 100)

    assert "…[middle omitted]…" in result
    assert len(result) <= 120
    assert result.startswith("aaa")
    assert result.endswith("bbb")


def test_head_and_tail_split_evenly_with_head_taking_odd_character():
    text = "".join(chr(ord("a") + i % 26) for i in range(500))
    max_chars = len(MIDDLE_OUT_MARKER) + 41

    result = middle_out(text, max_chars)
    head, tail = result.split(MIDDLE_OUT_MARKER)

    assert len(head) == 21
    assert len(tail) == 20
    assert head == text[:21]
    assert tail == text[-20:]


def test_preserves_prefix_and_suffix_runs():
    result = middle_out("A" * 50 + "Z" * 50, 60)

    assert result.startswith("AAA")
    assert result.endswith("ZZZ")
    assert len(result) <= 60


def test_tiny_budget_returns_short_bounded_result():
    result = middle_out("This is a test string", 10)

    assert len(result) <= 32


def test_tiny_budget_on_long_text_stays_bounded():
    result = middle_out("x" * 10_000, 10)

    assert len(result) <= 32


def test_non_positive_budget_never_raises():
    assert len(middle_out("x" * 1000, 0)) <= 32
    assert len(middle_out("x" * 1000, -5)) <= 32
    assert middle_out("abc", -1) == ""


def test_head_cut_keeps_prefix_only():
    assert head_cut("abcdef", 3) == "abc"
    assert head_cut("abc", 10) == "abc"
    assert head_cut(None, 3) is None
