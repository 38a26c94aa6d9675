from radio_nocturne.generation.history import (
    AnchorHistory,
    extract_snippet,
    fingerprint,
    normalize_anchors,
)
from radio_nocturne.models.story import StoryRecord

from conftest import SIG


def test_snippet_skips_intro_lines():
    lines = [f"Line {i}." for i in range(20)]
    assert extract_snippet("\n".join(lines)) == "Line 12. Line 13. Line 14."


def test_snippet_of_short_story_uses_last_lines():
    text = f"First.\nSecond.\nThird.\nFourth.\n{SIG}"
    assert extract_snippet(text, SIG) == "Second. Third. Fourth."


def test_snippet_is_capped():
    snippet = extract_snippet("x" * 500)
    assert len(snippet) == 243
    assert snippet.endswith("...")


def test_fingerprint_parts():
    assert fingerprint("Only line.") == 'Snippet: "Only line."'
    assert fingerprint("", topic="  Ghost ship ") == 'Topic: "Ghost ship"'
    assert fingerprint("   ") == ""


def test_ring_buffer_evicts_oldest():
    history = AnchorHistory(capacity=3)
    for i in range(5):
        history.add(f"Story {i}.")

    assert len(history) == 3
    assert history.anchors(10) == (
        'Snippet: "Story 4."',
        'Snippet: "Story 3."',
        'Snippet: "Story 2."',
    )


def test_anchors_deduplicated_and_limited():
    history = AnchorHistory()
    history.add("Same.")
    history.add("Other.")
    history.add("Same.")
    assert history.anchors(4) == ('Snippet: "Same."', 'Snippet: "Other."')
    assert history.anchors(1) == ('Snippet: "Same."',)
    assert history.anchors(0) == ()


def test_histories_are_independent():
    first, second = AnchorHistory(), AnchorHistory()
    first.add("Only in the first.")
    assert second.anchors(4) == ()


def test_add_records_filters_language_and_orders_by_date():
    records = [
        StoryRecord(topic="new", text="Newest.", language="vi", created_at="2024-03-01T00:00:00"),
        StoryRecord(topic="old", text="Oldest.", language="vi", created_at="2024-01-01T00:00:00"),
        StoryRecord(topic="en", text="English.", language="en", created_at="2024-02-01T00:00:00"),
        StoryRecord(topic="blank", text="  ", language="vi", created_at="2024-04-01T00:00:00"),
    ]
    history = AnchorHistory()
    history.add_records(records, language="vi")

    anchors = history.anchors(4)
    assert len(anchors) == 2
    assert anchors[0].startswith('Topic: "new"')
    assert anchors[1].startswith('Topic: "old"')


def test_normalize_anchors():
    assert normalize_anchors(["  a   b ", "", "a b", "c"], 5) == ("a b", "c")
