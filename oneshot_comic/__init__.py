"""
One-Shot Comic — turn one idea into an illustrated comic, then keep going.

One idea → script (title, art style, characters, panels) → panel images
generated in parallel → any number of continuation rounds that keep the
same style and cast.

Usage:
    from oneshot_comic import ComicStoryOrchestrator

    orchestrator = ComicStoryOrchestrator()
    story = await orchestrator.generate("a robot learns to paint")
    await orchestrator.wait_until_settled()
"""

from oneshot_comic.comic_generator import ComicStoryOrchestrator, GenerationState
from oneshot_comic.config import ComicSettings, load_settings
from oneshot_comic.errors import (
    ComicError,
    FileTooLargeError,
    MalformedScriptError,
    NoImageDataError,
    UpstreamError,
)
from oneshot_comic.models import (
    ComicScript,
    ImageState,
    Panel,
    PanelImage,
    ReferenceImage,
    ScriptPanel,
    Story,
)
from oneshot_comic.story_store import StoryStore

__all__ = [
    "ComicStoryOrchestrator",
    "GenerationState",
    "ComicSettings",
    "load_settings",
    "ComicError",
    "FileTooLargeError",
    "MalformedScriptError",
    "NoImageDataError",
    "UpstreamError",
    "ComicScript",
    "ImageState",
    "Panel",
    "PanelImage",
    "ReferenceImage",
    "ScriptPanel",
    "Story",
    "StoryStore",
]
