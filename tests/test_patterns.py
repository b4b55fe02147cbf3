import pytest

from suggestions import extract_pattern_key


@pytest.mark.parametrize(
    "memo,expected",
    [
        ("홍콩여행_기념품", "홍콩여행"),
        ("버거킹 회사 중식", "버거킹"),
        (None, None),
        ("", None),
        ("   ", None),
        ("  스타벅스   아메리카노 ", "스타벅스"),
        ("넷플릭스", "넷플릭스"),
        ("제주 여행_항공권", "제주 여행"),
        ("_leading underscore", "_leading"),
    ],
)
def test_extract_pattern_key(memo, expected) -> None:
    assert extract_pattern_key(memo) == expected


def test_extract_pattern_key_truncates_to_max_length() -> None:
    assert extract_pattern_key("a" * 150) == "a" * 100
    assert extract_pattern_key("b" * 150 + "_tail") == "b" * 100
    assert extract_pattern_key("abcdef ghi", max_length=3) == "abc"


def test_extract_pattern_key_collapses_tabs_and_newlines() -> None:
    assert extract_pattern_key("\t쿠팡\n생필품") == "쿠팡"
