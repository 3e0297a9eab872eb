"""CLI interface for chatloop using Click."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click

from chatloop import __version__
from chatloop.core.config import load_settings
from chatloop.errors import RecordingError
from chatloop.stream.converters import ui_message_to_dict
from chatloop.stream.processor import StreamProcessor, create_replay_stream
from chatloop.stream.strategies import create_strategy
from chatloop.stream.types import ChunkRecording, ProcessorResult, UIMessage


@click.group()
@click.version_option(version=__version__, prog_name="chatloop")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool):
    """chatloop - streaming chat and tool-calling loop"""
    settings = load_settings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    ctx.obj = settings


@cli.command()
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--strategy", "-s", default=None, help="Chunk strategy, e.g. 'punctuation' or 'batch+word-boundary'")
@click.option("--json", "as_json", is_flag=True, help="Print the result and transcript as JSON")
@click.pass_obj
def replay(settings, file_path: Path, strategy: str | None, as_json: bool):
    """Replay a recorded chunk stream through the stream processor."""
    try:
        recording = ChunkRecording.load(file_path)
    except RecordingError as e:
        raise click.ClickException(str(e)) from e

    try:
        chunk_strategy = create_strategy(
            strategy or settings.stream.chunk_strategy, settings.stream.batch_size
        )
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--strategy") from e

    result, messages = asyncio.run(_replay(recording, chunk_strategy))

    if as_json:
        click.echo(json.dumps({
            "result": result.to_dict(),
            "messages": [ui_message_to_dict(m) for m in messages],
        }, indent=2))
        return

    click.echo(f"Chunks:        {len(recording.chunks)}")
    click.echo(f"Finish reason: {result.finish_reason or 'N/A'}")
    if result.thinking:
        click.echo(f"Thinking:      {result.thinking}")
    click.echo(f"Content:       {result.content}")
    for tc in result.tool_calls or []:
        click.echo(f"Tool call:     {tc.name}({tc.arguments}) [{tc.id}]")
    if recording.result is not None and recording.result.content != result.content:
        click.echo("Warning: replayed content differs from the recorded result", err=True)


async def _replay(recording: ChunkRecording, chunk_strategy) -> tuple[ProcessorResult, tuple[UIMessage, ...]]:
    processor = StreamProcessor(chunk_strategy=chunk_strategy)
    processor.start_assistant_message()
    result = await processor.process(create_replay_stream(recording))
    return result, processor.messages


if __name__ == "__main__":
    cli()
