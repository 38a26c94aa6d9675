"""Prompt strategies for each kind of pass.

The orchestrator only chooses *which* builder to call; wording lives here.
Every builder returns chat messages for the completion endpoint.
"""

from dataclasses import dataclass
from typing import Protocol

from ..config import NarrativeStyle, StoryPersonalization
from ..models.generation import GenerationRequest, LengthBudget
from ..utils.text import context_snippet, count_words
from .budget import PacingState, pacing_state, usage_ratio
from .transport import Message

HOST_NAME = "Morgan Hayes"
SHOW_NAME = "Radio Truyện Đêm Khuya"

_LANGUAGE_LINES = {
    "vi": "All generated output must be in natural, contemporary Vietnamese.",
    "en": "All generated output must be in natural, contemporary English.",
}

_NARRATIVE_LINES = {
    NarrativeStyle.CONFESSION: "Narrative style: confession/testimony, raw and self-incriminating.",
    NarrativeStyle.DOSSIER: "Narrative style: dossier/compiled evidence; still plain text (no bullet lists).",
    NarrativeStyle.DIARY: "Narrative style: diary or personal notes, intimate and fragmented.",
    NarrativeStyle.INVESTIGATION: "Narrative style: investigative field report, skeptical but first-person.",
}


@dataclass(frozen=True)
class PromptContext:
    request: GenerationRequest
    budget: LengthBudget
    signature: str
    text: str = ""
    finalize: bool = False
    context_words: int = 320


class PromptBuilder(Protocol):
    def build(self, ctx: PromptContext) -> list[Message]: ...


def horror_instruction(level: int) -> str:
    if level <= 30:
        return "Horror intensity: low. Keep the uncanny subtle and mostly psychological."
    if level <= 70:
        return "Horror intensity: balanced. Mix subtle dread with occasional supernatural intrusions."
    return "Horror intensity: high. Make the supernatural overt, oppressive, and relentless."


def personalization_block(settings: StoryPersonalization) -> str:
    lines = [horror_instruction(settings.horror_level)]
    narrative = _NARRATIVE_LINES.get(settings.narrative_style)
    if narrative:
        lines.append(narrative)
    return "PERSONALIZATION\n" + "\n".join(f"- {line}" for line in lines)


def cache_avoidance_block(anchors: tuple[str, ...]) -> str:
    if not anchors:
        return ""
    lines = "\n".join(f"({i}) {anchor}" for i, anchor in enumerate(anchors, 1))
    return (
        "CACHE ANCHORS (previous stories, DO NOT repeat their structure or elements)\n"
        f"{lines}"
    )


def pacing_instruction(words: int, budget: LengthBudget) -> str:
    percent = round(usage_ratio(words, budget) * 100)
    state = pacing_state(words, budget)
    if state is PacingState.OVERTIME:
        return (
            f"CRITICAL OVERTIME WARNING: you are {percent - 100}% over the target length. "
            "Abort all plot expansion and move to the conclusion now."
        )
    if state is PacingState.CONVERGE:
        return (
            f"PACING ALERT: you are at {percent}% of target length. "
            "Converge all mystery lines; the climax should be happening now."
        )
    if state is PacingState.ESCALATE:
        return (
            f"PACING UPDATE: you are past the halfway mark ({percent}%). "
            "Raise the stakes and connect the clues towards the climax."
        )
    return f"PACING STATUS: early/mid stage ({percent}%). Keep developing the mystery naturally."


def _sections(*parts: str) -> str:
    return "\n\n".join(part.strip() for part in parts if part and part.strip())


class FirstPassPrompt:
    def build(self, ctx: PromptContext) -> list[Message]:
        request = ctx.request
        topic = request.topic.strip()
        topic_line = (
            f'Story topic or direction from the listener: "{topic}".'
            if topic
            else "No topic was given. Invent an original premise yourself."
        )
        prompt = _sections(
            f"You are writing one complete late-night horror transmission for {SHOW_NAME}, "
            f"hosted by {HOST_NAME}.",
            "OUTPUT LANGUAGE\n- " + _LANGUAGE_LINES.get(request.language, _LANGUAGE_LINES["en"]),
            topic_line,
            (
                "STRUCTURE\n"
                f"- Open with a short intro in {HOST_NAME}'s voice.\n"
                "- The story body is first-person from the protagonist, not the host.\n"
                f"- End with a bad ending, then {HOST_NAME}'s brief outro."
            ),
            (
                "LENGTH CONTROL\n"
                f"- Aim for about {ctx.budget.target_words} words.\n"
                f"- Never go below {ctx.budget.min_words} or above {ctx.budget.hard_max_words} words."
            ),
            personalization_block(request.personalization),
            cache_avoidance_block(request.cache_anchors),
            f"VARIATION SEED: {request.seed}. Let it steer names, setting and motif." if request.seed else "",
            f"The final line of the entire output MUST be exactly: {ctx.signature}",
            "Plain text only. No Markdown. BEGIN NOW.",
        )
        return [{"role": "user", "content": prompt}]


class ContinuationPrompt:
    def build(self, ctx: PromptContext) -> list[Message]:
        request = ctx.request
        words = count_words(ctx.text)
        remaining = max(ctx.budget.hard_max_words - words, 0)
        pacing = pacing_instruction(words, ctx.budget)
        topic = request.topic.strip()
        topic_line = (
            f'Keep the same topic or direction from the listener: "{topic}".'
            if topic
            else "No topic was provided originally. Do not invent a new premise; continue the same story."
        )
        if ctx.finalize:
            mode_line = (
                "- End the story definitively: reveal the hidden force, deliver a bad ending, "
                f"then {HOST_NAME}'s outro.\n"
                f"- The final line of the entire output MUST be exactly: {ctx.signature}"
            )
        else:
            mode_line = (
                f"- Do NOT finish the story yet. Do NOT write {HOST_NAME}'s outro yet. "
                "Stop at a natural breakpoint without concluding."
            )
        excerpt = context_snippet(ctx.text, ctx.context_words)
        prompt = _sections(
            "CONTINUATION MODE\n"
            "- You are continuing an interrupted transmission. Do not restart, do not repeat existing text.\n"
            "- Continue immediately from the last sentence of the excerpt.",
            "OUTPUT LANGUAGE\n- " + _LANGUAGE_LINES.get(request.language, _LANGUAGE_LINES["en"]),
            (
                "LENGTH CONTROL\n"
                f"- Existing text length: ~{words} words.\n"
                f"- Hard limit: {ctx.budget.hard_max_words} words.\n"
                f"- Remaining budget: ~{remaining} words.\n"
                f"{pacing}"
            ),
            mode_line,
            personalization_block(request.personalization),
            cache_avoidance_block(request.cache_anchors),
            topic_line,
            f'EXCERPT (FOR CONTEXT ONLY, DO NOT REPEAT):\n"{excerpt}"',
            "CONTINUE NOW.",
        )
        return [{"role": "user", "content": prompt}]


class EmergencyFinalizePrompt:
    def build(self, ctx: PromptContext) -> list[Message]:
        excerpt = context_snippet(ctx.text, ctx.context_words)
        prompt = _sections(
            "EMERGENCY OUTRO INSTRUCTION:\n"
            "You have exceeded the target length. The transmission is cutting off. "
            "You MUST end the story NOW.\n"
            "1. Stop all plot development. Deliver a swift, brutal conclusion.\n"
            f"2. Immediately switch to {HOST_NAME}.\n"
            f'3. Deliver the final signature: "{ctx.signature}"\n'
            "END IT.",
            "OUTPUT LANGUAGE\n- " + _LANGUAGE_LINES.get(ctx.request.language, _LANGUAGE_LINES["en"]),
            f'EXCERPT (CONTINUE FROM HERE, DO NOT REPEAT):\n"{excerpt}"',
        )
        return [{"role": "user", "content": prompt}]


class EmergencyRepairPrompt:
    def build(self, ctx: PromptContext) -> list[Message]:
        excerpt = context_snippet(ctx.text, min(ctx.context_words, 120))
        prompt = _sections(
            "CONTINUE IMMEDIATELY. Finish the sentence and the signature.",
            f'The last line must be exactly: "{ctx.signature}"',
            f'TEXT SO FAR ENDS WITH:\n"{excerpt}"',
        )
        return [{"role": "user", "content": prompt}]


class OutroCompletionPrompt:
    def build(self, ctx: PromptContext) -> list[Message]:
        prompt = _sections(
            f"Complete the story below by adding {HOST_NAME}'s ending. The ending must include:",
            (
                "1. A tragic ending for the protagonist.\n"
                f"2. {HOST_NAME}'s short closing thoughts about the story.\n"
                f'3. The final line must be exactly: "{ctx.signature}"'
            ),
            "OUTPUT LANGUAGE\n- " + _LANGUAGE_LINES.get(ctx.request.language, _LANGUAGE_LINES["en"]),
            f"Story to complete:\n---\n{ctx.text}\n---",
            f"Write the ending (about 100-200 words) in {HOST_NAME}'s voice.",
        )
        return [
            {"role": "system", "content": f"You are {HOST_NAME}, host of {SHOW_NAME}."},
            {"role": "user", "content": prompt},
        ]


@dataclass
class PromptStrategy:
    """Bundle of builders, one per pass kind."""

    first: PromptBuilder
    continuation: PromptBuilder
    emergency: PromptBuilder
    repair: PromptBuilder
    outro: PromptBuilder

    @classmethod
    def default(cls) -> "PromptStrategy":
        return cls(
            first=FirstPassPrompt(),
            continuation=ContinuationPrompt(),
            emergency=EmergencyFinalizePrompt(),
            repair=EmergencyRepairPrompt(),
            outro=OutroCompletionPrompt(),
        )
