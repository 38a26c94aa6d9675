"""Short single-call helpers: outro repair, topic batches and titles."""

from loguru import logger

from ..config import ApiConfig
from ..errors import GenerationError
from ..models.generation import GenerationRequest, Language, LengthBudget
from .outro import OutroDetector
from .prompts import HOST_NAME, SHOW_NAME, OutroCompletionPrompt, PromptBuilder, PromptContext
from .transport import CompletionOptions, CompletionTransport, Message

OUTRO_MAX_TOKENS = 500
OUTRO_TEMPERATURE = 0.8
TOPIC_TEMPERATURE = 0.9
TITLE_TEMPERATURE = 0.7
TITLE_MAX_TOKENS = 50
TITLE_EXCERPT_CHARS = 500
TITLE_MAX_CHARS = 100
TOPIC_SEPARATOR = "|||"

FALLBACK_OUTRO = (
    f"{HOST_NAME}: Đây là một lời cảnh tỉnh cho những ai dám tìm kiếm sự thật trong bóng tối. "
    "Có những cửa tốt hơn nên để đóng."
)

UNTITLED = {"vi": "Truyện không tên", "en": "Untitled Story"}


async def collect_text(
    transport: CompletionTransport, messages: list[Message], options: CompletionOptions
) -> str:
    parts = []
    async for delta in transport.stream(messages, options):
        if delta.text:
            parts.append(delta.text)
    return "".join(parts)


def _utility_options(api: ApiConfig, temperature: float, max_tokens: int) -> CompletionOptions:
    return CompletionOptions(
        model=api.utility_model,
        temperature=temperature,
        top_p=api.top_p,
        max_tokens=max_tokens,
    )


async def complete_with_outro(
    text: str,
    language: Language,
    *,
    transport: CompletionTransport,
    api: ApiConfig,
    detector: OutroDetector,
    prompt: PromptBuilder | None = None,
) -> str:
    """Append the host's ending to a story that lacks the closing signature.

    Text that already carries the signature is returned unchanged. When the
    model call fails a fixed ending is appended instead, so the result always
    ends with the signature or with whatever the model produced.
    """
    if detector.has_exact_signature(text):
        return text

    prompt = prompt or OutroCompletionPrompt()
    ctx = PromptContext(
        request=GenerationRequest(language=language),
        budget=LengthBudget(target_words=0, min_words=0, hard_max_words=0),
        signature=detector.signature,
        text=text,
    )
    try:
        completion = await collect_text(
            transport,
            prompt.build(ctx),
            _utility_options(api, OUTRO_TEMPERATURE, OUTRO_MAX_TOKENS),
        )
    except GenerationError as exc:
        logger.error(f"Failed to complete story with outro: {exc}")
        return f"{text}\n\n{FALLBACK_OUTRO}\n\n{detector.signature}"

    logger.info("Outro appended by repair call")
    return f"{text}\n\n{completion.strip()}"


def _topic_prompt(language: Language) -> str:
    output = "Vietnamese" if language == "vi" else "English"
    return (
        f'Generate 15 subject lines for letters, emails, tapes, or physical evidence notes sent to the "{SHOW_NAME}" show.\n'
        f"OUTPUT LANGUAGE: {output}.\n\n"
        "REQUIREMENTS:\n"
        "- Each line should feel like a confession, plea, warning, or desperate message from a real person.\n"
        "- Setting: ordinary people in the 2020s facing 2-3 overlapping unexplained phenomena.\n"
        "- Strictly avoid: secret organization recruitment, rule-based creepypasta, SCP-style containment.\n"
        "- Prefer analog/physical evidence: train tickets, receipts, blurred photos, cassette tapes, diaries.\n"
        f'- No numbering. Separate entries with "{TOPIC_SEPARATOR}".'
    )


async def generate_topics(
    language: Language, *, transport: CompletionTransport, api: ApiConfig
) -> list[str]:
    """Ask for a batch of topic ideas. Returns an empty list on failure."""
    messages = [{"role": "user", "content": _topic_prompt(language)}]
    try:
        raw = await collect_text(
            transport, messages, _utility_options(api, TOPIC_TEMPERATURE, api.max_tokens)
        )
    except GenerationError as exc:
        logger.error(f"Topic batch generation failed: {exc}")
        return []
    return [topic.strip() for topic in raw.split(TOPIC_SEPARATOR) if topic.strip()]


async def generate_title(
    language: Language,
    topic: str,
    text: str = "",
    *,
    transport: CompletionTransport,
    api: ApiConfig,
) -> str:
    if topic and topic.strip():
        return topic.strip()
    untitled = UNTITLED.get(language, UNTITLED["en"])
    if not text.strip():
        return untitled

    messages = [{
        "role": "user",
        "content": (
            "Based on the story excerpt below, create a short title (max 10 words) that evokes "
            "mystery, supernatural, or conspiracy themes. "
            f"Write it in {'Vietnamese' if language == 'vi' else 'English'}.\n"
            "OUTPUT: Only the title, no explanation.\n\n"
            f"Story excerpt:\n{text[:TITLE_EXCERPT_CHARS]}"
        ),
    }]
    try:
        title = await collect_text(
            transport, messages, _utility_options(api, TITLE_TEMPERATURE, TITLE_MAX_TOKENS)
        )
    except GenerationError as exc:
        logger.error(f"Story title generation failed: {exc}")
        return untitled
    title = title.strip().strip('"').strip()[:TITLE_MAX_CHARS]
    return title or untitled
