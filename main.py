"""Story engine: command-line driver.

  python main.py new "The Broken Compass" --genre fantasy
  python main.py play <story_id> "I open the cellar door."

`play` runs one generation cycle, prints the narration, then runs the
chapter check and lore management. A failed or interrupted cycle removes
the user action again. Progress events go to stderr as NDJSON; proposed
lorebook changes are listed but not applied.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import uuid
from pathlib import Path

from dotenv import load_dotenv

from story_engine.approval import ReviewQueue
from story_engine.cancel import AbortSignal
from story_engine.config import AppConfig, load_config
from story_engine.coordinator import run_post_generation
from story_engine.llm import LLM
from story_engine.lore import LoreManagementService
from story_engine.memory import ChapterService, MemoryService
from story_engine.models import Story, StoryEntry
from story_engine.pipeline import (
    GenerationContext,
    GenerationError,
    GenerationPipeline,
    NdjsonSink,
    UserAction,
    restore_from_backup,
)
from story_engine.storage import Storage

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")


def cmd_new(storage: Storage, args: argparse.Namespace) -> int:
    story = storage.create_story(Story(id=str(uuid.uuid4()), title=args.title, genre=args.genre))
    print(story.id)
    return 0


async def cmd_play(storage: Storage, args: argparse.Namespace, config: AppConfig, llm: LLM | None = None) -> int:
    story = storage.get_story(args.story_id)
    if story is None:
        print(f"No story with id {args.story_id}", file=sys.stderr)
        return 1

    abort = AbortSignal()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, abort.abort, "interrupted")
    try:
        return await _play(storage, args, config, llm or config.llm.client(), story, abort)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


async def _play(
    storage: Storage, args: argparse.Namespace, config: AppConfig, llm: LLM, story: Story, abort: AbortSignal,
) -> int:
    action = storage.add_entry(StoryEntry(
        id=str(uuid.uuid4()), story_id=story.id, type="user_action",
        content=args.text, branch_id=args.branch,
    ))
    entries = storage.get_entries(story.id, args.branch)
    ctx = GenerationContext(
        story=story,
        world_state=storage.get_world_state(story.id, args.branch),
        visible_entries=entries[:-1],
        user_action=UserAction(entry_id=action.id, content=args.text, raw_input=args.text),
        signal=abort,
        branch_id=args.branch,
    )

    pipeline = GenerationPipeline.from_config(llm, config)
    try:
        result = await pipeline.run(ctx, NdjsonSink() if args.events else None)
    except GenerationError as e:
        if e.backup is not None:
            restore_from_backup(storage, e.backup)
        print(f"Generation failed: {e}", file=sys.stderr)
        return 1
    if result.aborted:
        restore_from_backup(storage, result.pre_generation.retry_backup)
        print("Aborted.", file=sys.stderr)
        return 130

    storage.add_entry(StoryEntry(
        id=result.narrative.entry_id, story_id=story.id, type="narration",
        content=result.narrative.content, branch_id=args.branch,
    ))
    print(result.narrative.content)

    memory = MemoryService(llm)
    queue = ReviewQueue(storage, story.id)
    post = await run_post_generation(
        persistence=storage,
        chapters=ChapterService(memory, storage),
        lore=LoreManagementService(llm, memory, config.lore_management),
        story_id=story.id,
        branch_id=args.branch,
        lore_settings=config.lore_management,
        on_pending_change=queue,
        signal=abort,
    )
    if post.chapter_check.created:
        print(f"\n[chapter {post.chapter_check.chapter.number}: {post.chapter_check.chapter.title}]")
    for change in queue.pending:
        print(f"[pending] {change.action} {change.entity_type} {change.entity_id}")
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Story engine")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Data storage directory (default: from config, ./data)")
    parser.add_argument("--config", type=Path, default=None, help="Config JSON path")
    sub = parser.add_subparsers(dest="command", required=True)

    new = sub.add_parser("new", help="Create a story")
    new.add_argument("title")
    new.add_argument("--genre", default=None)

    play = sub.add_parser("play", help="Run one generation cycle")
    play.add_argument("story_id")
    play.add_argument("text")
    play.add_argument("--branch", default=None)
    play.add_argument("--events", action="store_true", help="Write progress events to stderr")
    args = parser.parse_args()

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    config = load_config(args.config)
    storage = Storage(args.data_dir or config.data_dir)
    if args.command == "new":
        return cmd_new(storage, args)
    return asyncio.run(cmd_play(storage, args, config))


if __name__ == "__main__":
    sys.exit(main())
