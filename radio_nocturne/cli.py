import asyncio
import click
from pathlib import Path
from rich.console import Console
from rich.table import Table

from .cancel import CancellationToken
from .config import Config, NarrativeStyle
from .errors import ErrorKind, GenerationError, user_message
from .generation import (
    AnchorHistory,
    StoryGenerator,
    StopPredicate,
    build_budget,
    generate_topics,
)
from .generation.budget import CONVERGE_RATIO, ESCALATE_RATIO, OVERTIME_RATIO
from .models import GenerationRequest
from .store import JsonlStoryStore
from .utils.logger import setup_logger

PARTIAL_FILE = "story_partial.txt"


@click.group()
@click.option('--config', '-c', type=click.Path(dir_okay=False), default='config.yaml',
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx: click.Context, config: str, verbose: bool):
    """Radio Nocturne - long-form horror stories streamed from an LLM."""
    ctx.ensure_object(dict)

    config_path = Path(config)
    if config_path.exists():
        base = Config.from_yaml(config_path)
    else:
        base = Config()
    ctx.obj['config'] = Config.from_env(base)

    log_level = "DEBUG" if verbose else ctx.obj['config'].log_level
    logger = setup_logger(log_level, ctx.obj['config'].log_file)
    ctx.obj['logger'] = logger

    if config_path.exists():
        logger.info(f"Config loaded from: {config_path}")


async def _run_story(generator: StoryGenerator, request: GenerationRequest, on_chunk):
    try:
        return await generator.run(request, on_chunk=on_chunk)
    finally:
        await generator.aclose()


def _save_partial(text: str, output: str) -> Path:
    path = Path(output) if output else Path(PARTIAL_FILE)
    path.write_text(text, encoding="utf-8")
    return path


@cli.command()
@click.option('--topic', '-t', default='', help='Story topic (blank lets the model choose)')
@click.option('--language', '-l', type=click.Choice(['vi', 'en']), default='vi', help='Output language')
@click.option('--target-words', type=int, help='Target story length in words')
@click.option('--horror-level', type=click.IntRange(0, 100), help='Horror intensity 0-100')
@click.option('--style', type=click.Choice([s.value for s in NarrativeStyle]), help='Narrative style')
@click.option('--resume', type=click.Path(exists=True, dir_okay=False), help='Continue the story in this file')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the full story here')
@click.option('--background', is_flag=True, help='Run generation on a background worker')
@click.option('--store', type=click.Path(dir_okay=False), help='JSONL story library')
@click.pass_context
def generate(ctx: click.Context, topic: str, language: str, target_words: int, horror_level: int,
             style: str, resume: str, output: str, background: bool, store: str):
    """Generate (or resume) a story, streaming it to stdout."""
    config = ctx.obj['config']
    logger = ctx.obj['logger']

    settings = config.settings.snapshot()
    updates = {}
    if target_words:
        updates['target_words'] = target_words
    if horror_level is not None:
        updates['horror_level'] = horror_level
    if style:
        updates['narrative_style'] = NarrativeStyle(style)
    settings.personalization = settings.personalization.model_copy(update=updates)
    if background:
        settings.allow_background_generation = True

    existing = Path(resume).read_text(encoding="utf-8") if resume else ""
    story_store = JsonlStoryStore(Path(store)) if store else None
    history = AnchorHistory(signature=config.outro.signature)
    if story_store:
        history.add_records(story_store.load(), language)

    generator = StoryGenerator(config, settings=settings, store=story_store, history=history)
    if background:
        generator.use_local_background()

    token = CancellationToken()
    request = GenerationRequest(
        topic=topic,
        language=language,
        personalization=settings.personalization,
        existing_text=existing,
        cancel_token=token,
    )

    received = [existing]

    def on_chunk(text: str):
        received.append(text)
        click.echo(text, nl=False)

    try:
        outcome = asyncio.run(_run_story(generator, request, on_chunk))
    except KeyboardInterrupt:
        token.cancel()
        path = _save_partial("".join(received), output)
        click.echo()
        logger.warning(f"Interrupted. Partial story saved to {path}; resume with --resume {path}")
        raise click.Abort()
    except GenerationError as e:
        click.echo()
        partial = e.partial_text or "".join(received)
        if partial:
            path = _save_partial(partial, output)
            logger.info(f"Partial story saved to {path}")
        logger.error(f"Generation failed ({e.kind.value}): {e}")
        if e.kind is ErrorKind.ABORT:
            raise click.Abort()
        raise click.ClickException(user_message(e))

    click.echo()
    if output:
        Path(output).write_text(outcome.text, encoding="utf-8")
        logger.info(f"Story written to {output}")

    if outcome.complete:
        logger.success(f"Story complete: {outcome.words} words, {len(outcome.passes)} passes")
    else:
        logger.warning(f"Story incomplete at {outcome.words} words; try complete-outro")


@cli.command()
@click.option('--target-words', type=float, default=None, help='Requested target word count')
@click.pass_context
def budget(ctx: click.Context, target_words: float):
    """Show the word budget and pacing thresholds for a target."""
    config = ctx.obj['config']
    raw = target_words if target_words is not None else config.budget.target_words
    length = build_budget(raw, config.budget)
    stop = StopPredicate(length, config.generation.emergency_overage_words)

    table = Table(title=f"Word budget for target {raw:g}")
    table.add_column("Field", style="cyan")
    table.add_column("Words", justify="right", style="green")
    table.add_row("Target", str(length.target_words))
    table.add_row("Minimum", str(length.min_words))
    table.add_row("Hard max", str(length.hard_max_words))
    table.add_row("Emergency ceiling", str(stop.ceiling(emergency=True)))
    table.add_row("Escalate from", str(int(length.target_words * ESCALATE_RATIO)))
    table.add_row("Converge from", str(int(length.target_words * CONVERGE_RATIO)))
    table.add_row("Overtime above", str(int(length.target_words * OVERTIME_RATIO)))

    Console().print(table)


@cli.command('complete-outro')
@click.argument('story_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--language', '-l', type=click.Choice(['vi', 'en']), default='vi', help='Story language')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the completed story here')
@click.pass_context
def complete_outro(ctx: click.Context, story_file: str, language: str, output: str):
    """Append the host's closing to a story that lacks it."""
    config = ctx.obj['config']
    logger = ctx.obj['logger']
    text = Path(story_file).read_text(encoding="utf-8")

    generator = StoryGenerator(config)

    async def _complete():
        try:
            return await generator.complete_with_outro(text, language)
        finally:
            await generator.aclose()

    completed = asyncio.run(_complete())
    if completed == text:
        logger.info("Story already ends with the closing signature")

    if output:
        Path(output).write_text(completed, encoding="utf-8")
        logger.success(f"Completed story written to {output}")
    else:
        click.echo(completed)


@cli.command()
@click.option('--language', '-l', type=click.Choice(['vi', 'en']), default='vi', help='Topic language')
@click.pass_context
def topics(ctx: click.Context, language: str):
    """Suggest a batch of story topics."""
    config = ctx.obj['config']
    generator = StoryGenerator(config)

    async def _topics():
        try:
            return await generate_topics(language, transport=generator.transport, api=config.api)
        finally:
            await generator.aclose()

    found = asyncio.run(_topics())
    if not found:
        raise click.ClickException("No topics generated")
    for topic in found:
        click.echo(f"- {topic}")


@cli.command()
@click.argument('library', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def library(ctx: click.Context, library: str):
    """List stories saved in a JSONL library."""
    records = JsonlStoryStore(Path(library)).load()

    table = Table(title=f"{len(records)} stories")
    table.add_column("Created", style="dim")
    table.add_column("Title", style="cyan")
    table.add_column("Lang")
    table.add_column("Words", justify="right")
    table.add_column("Complete")
    for record in records:
        table.add_row(
            record.created_at[:19],
            record.title or record.topic or "-",
            record.language,
            str(len(record.text.split())),
            "yes" if record.complete else "no",
        )
    Console().print(table)


def main():
    cli()


if __name__ == '__main__':
    main()
