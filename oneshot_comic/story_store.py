"""
One-Shot Comic — Story Document Store.

Owns the single in-memory Story. Every mutation builds a new frozen
snapshot and swaps it in, so readers never see a half-updated panel
list. Listeners receive each new snapshot (None after clear()).

All mutation happens on the event loop thread; no locks are needed.
Image updates are applied last-writer-wins, keyed by panel id.
"""

import logging
from dataclasses import replace
from typing import Callable, Iterable, Optional

from oneshot_comic.models import ComicScript, ImageState, Panel, PanelImage, Story

logger = logging.getLogger(__name__)

StoryListener = Callable[[Optional[Story]], None]

CHARACTER_DEFINITIONS_SEPARATOR = "\n"


class StoryStore:
    """Holds the current Story snapshot and applies atomic updates."""

    def __init__(self):
        self._story: Optional[Story] = None
        self._listeners: list[StoryListener] = []

    @property
    def story(self) -> Optional[Story]:
        """Current snapshot (read-only)."""
        return self._story

    def subscribe(self, listener: StoryListener) -> Callable[[], None]:
        """Register a snapshot listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, story: Optional[Story]):
        self._story = story
        for listener in list(self._listeners):
            try:
                listener(story)
            except Exception as e:
                logger.warning(f"Story listener failed: {e}")

    # ---- Mutations ----

    def create_story(self, script: ComicScript, panels: Optional[Iterable[Panel]] = None) -> Story:
        """
        Seed a new Story from a script, replacing any current one.

        Every panel starts LOADING with no image. `panels` overrides the
        script's panels when the caller has already assigned ids.
        """
        if panels is None:
            panels = [Panel.from_script(p) for p in script.panels]
        seeded = tuple(replace(p, image=None, image_state=ImageState.LOADING, error="") for p in panels)

        story = Story(
            title=script.title,
            art_style=script.art_style,
            character_definitions=script.character_definitions,
            base_character_definitions=script.character_definitions,
            panels=seeded,
        )
        self._publish(story)
        logger.info(f"Story created: '{story.title}' — panels {story.panel_ids}")
        return story

    def append_panels(
        self,
        new_panels: Iterable[Panel],
        character_definitions_addendum: str = "",
    ) -> Story:
        """
        Append panels (and optional character-definition text) in one snapshot.

        Ids must be unique and greater than every existing id.
        """
        story = self._require_story()
        new_panels = tuple(new_panels)

        last_id = story.last_id
        for panel in new_panels:
            if panel.id <= last_id:
                raise ValueError(
                    f"Panel id {panel.id} must be greater than {last_id} to keep ids increasing"
                )
            last_id = panel.id

        definitions = story.character_definitions
        if character_definitions_addendum.strip():
            definitions = (
                f"{definitions}{CHARACTER_DEFINITIONS_SEPARATOR}{character_definitions_addendum}"
                if definitions else character_definitions_addendum
            )

        updated = replace(
            story,
            character_definitions=definitions,
            panels=story.panels + new_panels,
        )
        self._publish(updated)
        return updated

    def update_panel_image(
        self,
        panel_id: int,
        image: Optional[PanelImage],
        succeeded: bool,
        error: str = "",
        session_id: Optional[str] = None,
    ) -> Optional[Panel]:
        """
        Settle a panel's image: READY with image, or FAILED without one.

        No-op (returns None) when there is no story, the session changed,
        or the panel id no longer exists.
        """
        story = self._story
        if story is None or (session_id is not None and session_id != story.session_id):
            logger.warning(f"Ignoring stale image result for panel {panel_id} (story was reset)")
            return None

        current = story.get_panel(panel_id)
        if current is None:
            logger.warning(f"Ignoring image result for unknown panel {panel_id}")
            return None

        if succeeded and image is not None:
            updated_panel = current.with_image(image)
        else:
            updated_panel = current.with_image(None, error=error or "Image generation failed")

        self._replace_panel(story, updated_panel)
        return updated_panel

    def mark_panel_loading(self, panel_id: int) -> Optional[Panel]:
        """Set a panel LOADING before a regeneration attempt. The old image is kept until it settles."""
        story = self._story
        if story is None:
            return None
        current = story.get_panel(panel_id)
        if current is None:
            logger.warning(f"Cannot mark unknown panel {panel_id} as loading")
            return None

        updated_panel = current.loading()
        self._replace_panel(story, updated_panel)
        return updated_panel

    def clear(self):
        """Discard the current story (new-story action)."""
        if self._story is not None:
            logger.info(f"Story cleared: '{self._story.title}'")
        self._publish(None)

    # ---- Helpers ----

    def _replace_panel(self, story: Story, panel: Panel):
        panels = tuple(panel if p.id == panel.id else p for p in story.panels)
        self._publish(replace(story, panels=panels))

    def _require_story(self) -> Story:
        if self._story is None:
            raise RuntimeError("No story loaded")
        return self._story
