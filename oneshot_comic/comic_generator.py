"""
One-Shot Comic — Main Orchestrator.

ComicStoryOrchestrator sequences a story session:
  Idea → Script → Seeded panels → Parallel panel images → Ready
  Ready → Continuation script → Appended panels → Parallel panel images → Ready

Panel images are fanned out concurrently and joined with
gather(return_exceptions=True): one failed panel never cancels or
delays its siblings. Each completion updates the store for its own
panel id only, in whatever order the completions arrive.

Usage:
    orchestrator = ComicStoryOrchestrator(settings)
    story = await orchestrator.generate("a robot learns to paint")
    await orchestrator.wait_until_settled()
    story = await orchestrator.continue_story("a villain appears")
"""

import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Callable, Optional

from oneshot_comic.config import ComicSettings, load_settings
from oneshot_comic.gemini_client import GeminiClient
from oneshot_comic.image_generator import PanelImageGenerator
from oneshot_comic.models import ComicScript, ImageState, Panel, ReferenceImage, Story
from oneshot_comic.prompts import build_narrative_context
from oneshot_comic.script_writer import ScriptWriter
from oneshot_comic.story_store import StoryStore

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, dict], None]


class GenerationState(Enum):
    IDLE = "idle"
    SCRIPT_PENDING = "script_pending"
    IMAGES_PENDING = "images_pending"
    CONTINUATION_PENDING = "continuation_pending"
    READY = "ready"


class ComicStoryOrchestrator:
    """
    Generation core for one-idea comic stories.

    The model boundary is two objects with a single coroutine each:
    `script_writer.request_script(...)` and
    `image_generator.request_panel_image(...)`. Pass fakes to test.
    """

    def __init__(
        self,
        settings: Optional[ComicSettings] = None,
        store: Optional[StoryStore] = None,
        script_writer: Optional[ScriptWriter] = None,
        image_generator: Optional[PanelImageGenerator] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.settings = settings or load_settings()
        self.store = store or StoryStore()

        gemini = None
        if script_writer is None or image_generator is None:
            gemini = GeminiClient(self.settings)
        self.script_writer = script_writer or ScriptWriter(self.settings, gemini=gemini)
        self.image_generator = image_generator or PanelImageGenerator(self.settings, gemini=gemini)

        self.on_progress = on_progress
        self.state = GenerationState.IDLE
        self._epoch = 0
        self._continuing: Counter = Counter()
        self._batches: set[asyncio.Task] = set()
        self._pending_by_session: Counter = Counter()

    @property
    def story(self) -> Optional[Story]:
        """Current read-only snapshot."""
        return self.store.story

    # ============================================================
    # Initial generation
    # ============================================================

    async def generate(
        self,
        idea: str,
        reference_image: Optional[ReferenceImage] = None,
    ) -> Optional[Story]:
        """
        Start a new story from an idea.

        Returns once the script is in and panels are seeded; panel images
        keep generating in the background (see wait_until_settled()).

        Returns:
            The seeded Story, or None if the idea was empty or the
            attempt was superseded by a newer one.

        Raises:
            FileTooLargeError: reference image over the upload limit (no request made)
            MalformedScriptError / UpstreamError: script stage failed; no story exists
        """
        if not idea or not idea.strip():
            logger.info("Ignoring empty idea")
            return None

        if reference_image is not None:
            reference_image.check_size(self.settings.max_upload_bytes)

        self._epoch += 1
        epoch = self._epoch
        self.store.clear()
        self._set_state(GenerationState.SCRIPT_PENDING, idea=idea)

        try:
            script = await self.script_writer.request_script(idea, reference_image=reference_image)
        except Exception as e:
            if epoch != self._epoch:
                logger.info(f"Discarding failed script from a superseded attempt: {e}")
                return None
            logger.error(f"Script generation failed: {e}")
            self._set_state(GenerationState.IDLE, error=str(e))
            raise

        if epoch != self._epoch:
            logger.info(f"Discarding script '{script.title}' from a superseded attempt")
            return None

        story = self.store.create_story(script, self._seed_panels(script))
        self._launch_batch(
            story.panels,
            art_style=story.art_style,
            character_definitions=story.character_definitions,
            session_id=story.session_id,
        )
        return story

    def _seed_panels(self, script: ComicScript) -> list[Panel]:
        """Keep model ids when unique and increasing from 1+, else renumber 1..N."""
        ids = [p.id for p in script.panels]
        increasing = all(b > a for a, b in zip(ids, ids[1:]))
        if ids and ids[0] >= 1 and increasing:
            return [Panel.from_script(p) for p in script.panels]

        logger.warning(f"Script panel ids {ids} are not strictly increasing; renumbering")
        return [Panel.from_script(p, index) for index, p in enumerate(script.panels, start=1)]

    # ============================================================
    # Continuation
    # ============================================================

    async def continue_story(self, prompt: str) -> Optional[Story]:
        """
        Extend the current story with a new round of panels.

        New panels get ids max(existing) + 1, + 2, ... in script order;
        ids suggested by the model are discarded. The continuation's
        character definitions are appended to the story's. Images for the
        new panels use the story's opening definitions, so every round is
        drawn against the same cast description.

        Returns:
            Story with the appended panels, or None if there is no story,
            the prompt was empty, or the story was reset or replaced meanwhile
            (a script failure for such a story is logged, not raised).

        Raises:
            MalformedScriptError / UpstreamError: script stage failed;
            the story is left exactly as it was.
        """
        story = self.store.story
        if story is None:
            logger.info("Ignoring continuation: no story")
            return None
        if not prompt or not prompt.strip():
            logger.info("Ignoring empty continuation prompt")
            return None

        epoch = self._epoch
        self._continuing[story.session_id] += 1
        self._set_state(GenerationState.CONTINUATION_PENDING, prompt=prompt)
        context = build_narrative_context(story.panels, self.settings.context_panel_count)

        try:
            script = await self.script_writer.request_script(
                prompt,
                previous_context=context,
                fixed_art_style=story.art_style,
            )
        except Exception as e:
            self._finish_continuation(story.session_id)
            if not self._is_current(story.session_id, epoch):
                logger.info(f"Discarding failed continuation for a reset story: {e}")
                return None
            logger.error(f"Continuation failed: {e}")
            self._settle_state(error=str(e))
            raise
        self._finish_continuation(story.session_id)

        if not self._is_current(story.session_id, epoch):
            logger.info("Discarding continuation: story was reset")
            return None

        current = self.store.story
        opening_definitions = current.base_character_definitions
        next_id = current.last_id + 1
        new_panels = [
            Panel.from_script(p, next_id + offset)
            for offset, p in enumerate(script.panels)
        ]

        updated = self.store.append_panels(new_panels, script.character_definitions)
        logger.info(
            f"Continuation appended panels {[p.id for p in new_panels]} "
            f"to '{updated.title}'"
        )

        self._launch_batch(
            new_panels,
            art_style=current.art_style,
            character_definitions=opening_definitions,
            session_id=current.session_id,
        )
        return updated

    # ============================================================
    # Manual regeneration
    # ============================================================

    async def regenerate(self, panel_id: int) -> Optional[Panel]:
        """
        Regenerate one panel's image with the story's current style and definitions.

        Overlapping regenerations of the same panel are allowed; the last
        response to arrive wins.

        Returns:
            The settled panel, or None if there is no such panel or the
            story was reset before the image arrived.
        """
        story = self.store.story
        if story is None:
            logger.info("Ignoring regeneration: no story")
            return None
        panel = story.get_panel(panel_id)
        if panel is None:
            logger.warning(f"Ignoring regeneration of unknown panel {panel_id}")
            return None

        self.store.mark_panel_loading(panel_id)
        logger.info(f"Regenerating panel {panel_id}")

        await self._render_panel(
            panel,
            art_style=story.art_style,
            character_definitions=story.character_definitions,
            session_id=story.session_id,
        )

        current = self.store.story
        if current is None or current.session_id != story.session_id:
            return None
        return current.get_panel(panel_id)

    # ============================================================
    # Session control
    # ============================================================

    def new_story(self):
        """Discard the current story. In-flight results for it are ignored."""
        self._epoch += 1
        self.store.clear()
        self._set_state(GenerationState.IDLE)

    async def wait_until_settled(self):
        """Wait until every launched image batch has settled."""
        while self._batches:
            await asyncio.gather(*list(self._batches), return_exceptions=True)

    async def close(self):
        """Clean up resources."""
        await self.script_writer.close()
        await self.image_generator.close()

    # ============================================================
    # Fan-out
    # ============================================================

    def _launch_batch(
        self,
        panels,
        art_style: str,
        character_definitions: str,
        session_id: str,
    ) -> asyncio.Task:
        """Start one image request per panel without waiting for them."""
        panels = list(panels)
        self._pending_by_session[session_id] += 1
        self._set_state(GenerationState.IMAGES_PENDING, panel_ids=[p.id for p in panels])
        logger.info(f"Launching image batch for panels {[p.id for p in panels]}")

        task = asyncio.create_task(
            self._run_batch(panels, art_style, character_definitions, session_id)
        )
        self._batches.add(task)
        task.add_done_callback(self._batches.discard)
        return task

    async def _run_batch(
        self,
        panels: list[Panel],
        art_style: str,
        character_definitions: str,
        session_id: str,
    ) -> list:
        try:
            results = await asyncio.gather(
                *(
                    self._render_panel(p, art_style, character_definitions, session_id)
                    for p in panels
                ),
                return_exceptions=True,
            )
        finally:
            self._pending_by_session[session_id] -= 1
            if self._pending_by_session[session_id] <= 0:
                del self._pending_by_session[session_id]

        ready = sum(1 for r in results if r is True)
        logger.info(f"Image batch settled: {ready}/{len(panels)} panels ready")

        story = self.store.story
        if story is not None and story.session_id == session_id:
            self._settle_state(
                ready=story.count_state(ImageState.READY),
                failed=story.count_state(ImageState.FAILED),
            )
        return results

    async def _render_panel(
        self,
        panel: Panel,
        art_style: str,
        character_definitions: str,
        session_id: str,
    ) -> bool:
        """Request one panel image and record the outcome. Never raises."""
        try:
            image = await self.image_generator.request_panel_image(
                panel.visual_prompt,
                art_style,
                character_definitions,
            )
        except Exception as e:
            logger.error(f"Panel {panel.id} image generation failed: {e}")
            self.store.update_panel_image(
                panel.id, None, succeeded=False, error=str(e), session_id=session_id,
            )
            return False

        self.store.update_panel_image(panel.id, image, succeeded=True, session_id=session_id)
        return True

    # ============================================================
    # State
    # ============================================================

    def _finish_continuation(self, session_id: str):
        self._continuing[session_id] -= 1
        if self._continuing[session_id] <= 0:
            del self._continuing[session_id]

    def _is_current(self, session_id: str, epoch: int) -> bool:
        """True while no new or reset story has superseded this session."""
        story = self.store.story
        return epoch == self._epoch and story is not None and story.session_id == session_id

    def _settle_state(self, **details):
        """Return to the resting state that matches the store and pending batches."""
        story = self.store.story
        if story is None:
            self._set_state(GenerationState.IDLE, **details)
        elif self._continuing[story.session_id] > 0:
            self._set_state(GenerationState.CONTINUATION_PENDING, **details)
        elif self._pending_by_session.get(story.session_id):
            self._set_state(GenerationState.IMAGES_PENDING, **details)
        else:
            self._set_state(GenerationState.READY, **details)

    def _set_state(self, state: GenerationState, **details):
        self.state = state
        if self.on_progress:
            try:
                self.on_progress(state.value, details)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")
