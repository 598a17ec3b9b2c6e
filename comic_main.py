"""
One-Shot Comic — Command-line entry point.

Generates a comic from one idea, then keeps taking commands so the story
can be continued or individual panels regenerated while images are
still arriving in the background.

Usage:
    python comic_main.py "a robot learns to paint"
    python comic_main.py "a robot learns to paint" --image ref.png
    python comic_main.py "a robot learns to paint" --once --json

Commands (interactive mode):
    continue <prompt>   Extend the story
    regen <panel id>    Regenerate one panel's image
    show                Print the story
    wait                Wait for pending images
    new <idea>          Start over with a new idea
    quit

Environment:
    Requires .env file with GEMINI_API_KEY.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from dotenv import load_dotenv

# Load environment variables before anything else
load_dotenv()

from oneshot_comic import (
    ComicError,
    ComicStoryOrchestrator,
    ImageState,
    ReferenceImage,
    Story,
    load_settings,
)

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("oneshot")


class PanelStatusPrinter:
    """Store listener that prints each panel as its image settles."""

    def __init__(self):
        self._seen: dict[int, ImageState] = {}

    def __call__(self, story: Optional[Story]):
        if story is None:
            self._seen = {}
            return
        for panel in story.panels:
            previous = self._seen.get(panel.id)
            self._seen[panel.id] = panel.image_state
            if previous == panel.image_state:
                continue
            if panel.image_state == ImageState.READY:
                print(f"  Panel {panel.id}: ready ({panel.image.size:,} bytes)")
            elif panel.image_state == ImageState.FAILED:
                print(f"  Panel {panel.id}: FAILED — {panel.error}")


async def _start(orchestrator: ComicStoryOrchestrator, idea: str, image: Optional[ReferenceImage]) -> bool:
    try:
        story = await orchestrator.generate(idea, reference_image=image)
    except ComicError as e:
        print(f"Error: {e}")
        return False
    if story is None:
        print("Please describe your comic idea.")
        return False
    print(f"\n{story.title} — {story.panel_count} panels, style: {story.art_style}")
    return True


async def _handle(orchestrator: ComicStoryOrchestrator, line: str) -> bool:
    """Run one interactive command. Returns False to quit."""
    command, _, args = line.strip().partition(" ")
    command = command.lower()

    if command in ("quit", "exit", "q"):
        return False

    try:
        if command == "continue":
            story = await orchestrator.continue_story(args)
            if story is None:
                print("Usage: continue <what happens next>")
            else:
                print(f"Story now has {story.panel_count} panels")
        elif command == "regen":
            if not args.strip().isdigit():
                print("Usage: regen <panel id>")
            else:
                panel = await orchestrator.regenerate(int(args))
                if panel is None:
                    print(f"No panel {args.strip()}")
        elif command == "new":
            orchestrator.new_story()
            if args.strip():
                await _start(orchestrator, args, None)
        elif command == "wait":
            await orchestrator.wait_until_settled()
            print(orchestrator.story.format_for_review() if orchestrator.story else "(no story)")
        elif command in ("show", ""):
            print(orchestrator.story.format_for_review() if orchestrator.story else "(no story)")
        else:
            print(f"Unknown command: {command}")
    except ComicError as e:
        print(f"Error: {e}")

    return True


async def main():
    parser = argparse.ArgumentParser(description="Turn one idea into a comic.")
    parser.add_argument("idea", help="Comic idea, e.g. 'a robot learns to paint'")
    parser.add_argument("--image", help="Optional reference image (max 5 MB)")
    parser.add_argument("--config", help="Settings YAML (default config/comic_settings.yaml)")
    parser.add_argument("--once", action="store_true", help="Generate, wait for images, and exit")
    parser.add_argument("--json", action="store_true", help="Print the final story as JSON")
    args = parser.parse_args()

    settings = load_settings(args.config)

    reference = None
    if args.image:
        try:
            reference = ReferenceImage.from_path(args.image, max_bytes=settings.max_upload_bytes)
        except (ComicError, ValueError, OSError) as e:
            print(f"Error: {e}")
            sys.exit(1)

    orchestrator = ComicStoryOrchestrator(settings)
    orchestrator.store.subscribe(PanelStatusPrinter())

    try:
        if not await _start(orchestrator, args.idea, reference):
            sys.exit(1)

        if not args.once:
            while True:
                line = await asyncio.to_thread(input, "> ")
                if not await _handle(orchestrator, line):
                    break

        await orchestrator.wait_until_settled()
        story = orchestrator.story
        if story is not None:
            if args.json:
                print(json.dumps(story.to_dict(), indent=2))
            else:
                print(story.format_for_review())
    finally:
        await orchestrator.close()


def run():
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, EOFError):
        logger.info("Interrupted")


if __name__ == "__main__":
    run()
