import pytest

from radio_nocturne.config import OutroConfig
from radio_nocturne.generation.outro import (
    ExactOutroMatcher,
    FuzzyOutroMatcher,
    OutroDetector,
)

from conftest import SIG


@pytest.mark.parametrize("text", [
    SIG,
    "Hello world. " + SIG,
    SIG + " and some trailing chatter",
    "prefix\n\n" + SIG + "\n\nmore " + SIG,
])
def test_exact_signature_detected_anywhere(detector, text):
    assert detector.has_exact_signature(text)
    assert detector.has_terminal_signature(text)


def test_missing_signature(detector):
    assert not detector.has_terminal_signature("The story just stops here.")
    assert not detector.has_terminal_signature("")


def test_truncate_drops_text_after_last_signature(detector):
    text = f"Story. {SIG} extra {SIG} tail after"
    result = detector.truncate_at_signature(text)
    assert result.truncated
    assert result.text == f"Story. {SIG} extra {SIG}"


def test_truncate_is_noop_when_signature_ends_text(detector):
    text = "Story. " + SIG
    result = detector.truncate_at_signature(text)
    assert not result.truncated
    assert result.text == text


def test_truncate_is_noop_without_signature(detector):
    result = detector.truncate_at_signature("no closing here")
    assert result.text == "no closing here"
    assert not result.truncated


@pytest.mark.parametrize("text", [
    "",
    "plain",
    SIG,
    f"a {SIG} b",
    f"{SIG}{SIG}x",
    f"x {SIG} y {SIG} z",
])
def test_truncation_is_idempotent(detector, text):
    once = detector.truncate_at_signature(text).text
    assert detector.truncate_at_signature(once).text == once


def test_empty_signature_rejected():
    with pytest.raises(ValueError):
        OutroDetector("")


def test_exact_matcher():
    matcher = ExactOutroMatcher("The End.")
    assert matcher.matches("... The End.")
    assert not matcher.matches("the end")


class TestFuzzyMatcher:
    def setup_method(self):
        config = OutroConfig()
        self.detector = OutroDetector.from_config(config)

    def test_paraphrased_outro_matches(self):
        text = (
            "Tôi không bao giờ trở lại căn nhà đó nữa.\n\n"
            "Tôi là Morgan Hayes, và tôi xin phép được tạm dừng tại đây."
        )
        assert not self.detector.has_exact_signature(text)
        assert self.detector.has_terminal_signature(text)

    def test_ordinary_narrative_can_false_positive(self):
        # Mid-story mention of the host near a farewell phrase also matches.
        text = (
            "Bà tôi vẫn nghe Morgan Hayes mỗi tối. Bà nói: chúc các bạn có một đêm ngon giấc, "
            "rồi tắt đèn. Nhưng đêm đó, cánh cửa tự mở."
        )
        assert self.detector.has_terminal_signature(text)

    def test_host_name_alone_is_not_enough(self):
        text = "Morgan Hayes kể tiếp về căn phòng tầng hai."
        assert not self.detector.has_terminal_signature(text)

    def test_only_tail_window_is_checked(self):
        matcher = FuzzyOutroMatcher(("morgan hayes",), ("goodnight",), tail_chars=50)
        text = "Morgan Hayes says goodnight. " + "x" * 200
        assert not matcher.matches(text)

    def test_disabled_by_config(self):
        detector = OutroDetector.from_config(OutroConfig(fuzzy=False))
        text = "Tôi là Morgan Hayes, xin phép được tạm dừng tại đây."
        assert not detector.has_terminal_signature(text)


def test_approaching_ending():
    detector = OutroDetector.from_config(OutroConfig())
    body = "Tôi chạy mãi trong bóng tối. " * 60
    assert not detector.approaching_ending(body)
    assert detector.approaching_ending(body + "Morgan Hayes đây, câu chuyện sắp khép lại.")
    assert not detector.approaching_ending("Morgan Hayes")
