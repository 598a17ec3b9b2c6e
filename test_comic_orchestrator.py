"""
One-Shot Comic — Orchestrator Test Suite.

Drives ComicStoryOrchestrator against in-process fakes of the script
writer and image generator, so every scenario runs offline and
deterministically.

Usage:
    python test_comic_orchestrator.py
    python test_comic_orchestrator.py test_continuation_appends_panels
    pytest test_comic_orchestrator.py
"""

import asyncio
import itertools
import sys
from collections import Counter
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent))

from oneshot_comic import (
    ComicScript,
    ComicSettings,
    ComicStoryOrchestrator,
    FileTooLargeError,
    GenerationState,
    ImageState,
    MalformedScriptError,
    PanelImage,
    ReferenceImage,
    ScriptPanel,
    UpstreamError,
)

ORIGINAL_DEFINITIONS = "Robot: a small rusty robot with a red scarf. Setting: a seaside town."


def make_script(count=4, start_id=1, tag="a", title="The Painter Bot",
                art_style="Watercolor", definitions=ORIGINAL_DEFINITIONS, ids=None):
    ids = ids or [start_id + i for i in range(count)]
    return ComicScript(
        title=title,
        art_style=art_style,
        character_definitions=definitions,
        panels=tuple(
            ScriptPanel(
                id=panel_id,
                description=f"{tag} action {i}",
                dialogue=f"{tag} line {i}",
                character="Robot" if i % 2 == 0 else "Gull",
                visual_prompt=f"scene {tag} {i}",
            )
            for i, panel_id in enumerate(ids)
        ),
    )


class FakeScriptWriter:
    """Returns queued scripts (or raises queued exceptions) in call order.

    `delays` optionally holds one sleep per call, so overlapping calls can
    settle out of order.
    """

    def __init__(self, *results, delays=()):
        self.results = list(results)
        self.delays = list(delays)
        self.calls = []

    async def request_script(self, idea, reference_image=None,
                             previous_context=None, fixed_art_style=None):
        self.calls.append({
            "idea": idea,
            "reference_image": reference_image,
            "previous_context": previous_context,
            "fixed_art_style": fixed_art_style,
        })
        index = len(self.calls) - 1
        result = self.results.pop(0)
        await asyncio.sleep(self.delays[index] if index < len(self.delays) else 0)
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        pass


class FakeImageGenerator:
    """Returns an image per prompt; fails or delays selected prompts."""

    def __init__(self, fail=(), delays=None):
        self.fail = set(fail)
        self.delays = delays or {}
        self.calls = []
        self.per_prompt = Counter()

    async def request_panel_image(self, visual_prompt, art_style, character_definitions):
        self.calls.append((visual_prompt, art_style, character_definitions))
        self.per_prompt[visual_prompt] += 1
        attempt = self.per_prompt[visual_prompt]
        await asyncio.sleep(self.delays.get(visual_prompt, 0))
        if visual_prompt in self.fail:
            raise UpstreamError("quota exceeded", status_code=429)
        return PanelImage(data=f"{visual_prompt}#{attempt}".encode(), mime_type="image/png")

    async def close(self):
        pass


def make_orchestrator(script_writer, image_generator, progress=None):
    return ComicStoryOrchestrator(
        settings=ComicSettings(api_key="test-key"),
        script_writer=script_writer,
        image_generator=image_generator,
        on_progress=(lambda stage, details: progress.append(stage)) if progress is not None else None,
    )


def assert_ids_increasing(story):
    ids = story.panel_ids
    assert len(ids) == len(set(ids)), f"Duplicate ids: {ids}"
    assert all(b > a for a, b in zip(ids, ids[1:])), f"Ids not increasing: {ids}"


# ============================================================
# Test 1: Initial generation (Scenario A)
# ============================================================

def test_initial_generation_all_ready():
    """4-panel script → 4 LOADING panels → all READY after the batch settles."""
    async def run():
        images = FakeImageGenerator()
        progress = []
        orch = make_orchestrator(FakeScriptWriter(make_script(4)), images, progress)

        story = await orch.generate("a robot learns to paint")
        assert story.panel_ids == [1, 2, 3, 4]
        assert all(p.image_state == ImageState.LOADING for p in story.panels)
        assert orch.state == GenerationState.IMAGES_PENDING

        await orch.wait_until_settled()
        final = orch.story
        assert all(p.image_state == ImageState.READY for p in final.panels)
        assert all(p.image and p.image.data for p in final.panels)
        assert orch.state == GenerationState.READY
        assert len(images.calls) == 4
        assert progress == ["script_pending", "images_pending", "ready"]

        # Every image request carried the same style and definitions
        assert {(style, defs) for _, style, defs in images.calls} == {("Watercolor", ORIGINAL_DEFINITIONS)}

    asyncio.run(run())
    print("  PASS: Scenario A — 4 panels seeded LOADING, all READY")


def test_empty_idea_is_noop():
    async def run():
        writer = FakeScriptWriter()
        orch = make_orchestrator(writer, FakeImageGenerator())
        assert await orch.generate("   ") is None
        assert writer.calls == []
        assert orch.story is None
        assert orch.state == GenerationState.IDLE
        assert await orch.continue_story("a villain appears") is None
        assert await orch.regenerate(1) is None

    asyncio.run(run())
    print("  PASS: Empty idea and story-less operations are no-ops")


def test_script_failure_leaves_no_story():
    async def run():
        orch = make_orchestrator(
            FakeScriptWriter(MalformedScriptError("No text returned from Gemini")),
            FakeImageGenerator(),
        )
        try:
            await orch.generate("a robot learns to paint")
        except MalformedScriptError:
            pass
        else:
            raise AssertionError("Script failure should propagate")
        assert orch.story is None
        assert orch.state == GenerationState.IDLE

    asyncio.run(run())
    print("  PASS: Failed script leaves the session idle with no story")


def test_fresh_ids_renumbered_when_unusable():
    async def run():
        orch = make_orchestrator(
            FakeScriptWriter(make_script(ids=[3, 3, 1])),
            FakeImageGenerator(),
        )
        story = await orch.generate("a robot learns to paint")
        assert story.panel_ids == [1, 2, 3]
        await orch.wait_until_settled()

    asyncio.run(run())
    print("  PASS: Duplicate/out-of-order model ids renumbered 1..N")


# ============================================================
# Test 2: Partial failure isolation (Scenario B)
# ============================================================

def test_partial_failure_isolated():
    """One panel fails with UpstreamError; siblings still succeed."""
    async def run():
        images = FakeImageGenerator(fail={"scene a 2"}, delays={"scene a 0": 0.01})
        orch = make_orchestrator(FakeScriptWriter(make_script(4)), images)

        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()

        story = orch.story
        states = Counter(p.image_state for p in story.panels)
        assert states == Counter({ImageState.READY: 3, ImageState.FAILED: 1})
        failed = story.get_panel(3)
        assert failed.image is None
        assert "quota" in failed.error
        assert orch.state == GenerationState.READY

    asyncio.run(run())
    print("  PASS: Scenario B — 1 FAILED, 3 READY, no exception escapes")


def test_completion_order_does_not_matter():
    """Every permutation of arrival order gives the same final store."""
    async def run_with(order):
        delays = {f"scene a {i}": 0.001 * (rank + 1) for rank, i in enumerate(order)}
        images = FakeImageGenerator(fail={"scene a 1"}, delays=delays)
        writer = FakeScriptWriter(make_script(4))
        orch = make_orchestrator(writer, images)
        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()
        assert len(images.calls) == 4, "Exactly N settlements per batch"
        assert orch.state == GenerationState.READY
        return [(p.id, p.image_state, p.image, p.error) for p in orch.story.panels]

    async def run():
        outcomes = [await run_with(order) for order in itertools.permutations(range(4))]
        assert all(outcome == outcomes[0] for outcome in outcomes)

    asyncio.run(run())
    print("  PASS: 24 arrival orders converge on one final state")


# ============================================================
# Test 3: Continuation (Scenario C)
# ============================================================

def test_continuation_appends_panels():
    """Ids 1..4 + 3 new panels → 5, 6, 7; old panels untouched."""
    async def run():
        continuation = make_script(
            ids=[1, 2, 3], tag="b",
            art_style="Cyberpunk neon",
            definitions="Villain: a chrome raven with one red eye.",
        )
        writer = FakeScriptWriter(make_script(4), continuation)
        images = FakeImageGenerator()
        orch = make_orchestrator(writer, images)

        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()
        before = orch.story

        story = await orch.continue_story("a villain appears")
        assert story.panel_ids == [1, 2, 3, 4, 5, 6, 7]
        assert story.panels[:4] == before.panels, "Existing panels must not change"
        assert [p.visual_prompt for p in story.panels[4:]] == ["scene b 0", "scene b 1", "scene b 2"]
        assert all(p.image_state == ImageState.LOADING for p in story.panels[4:])

        assert story.art_style == before.art_style == "Watercolor"
        assert story.character_definitions.startswith(before.character_definitions)
        assert "chrome raven" in story.character_definitions
        assert len(story.character_definitions) > len(before.character_definitions)

        call = writer.calls[1]
        assert call["fixed_art_style"] == "Watercolor"
        assert call["previous_context"].splitlines() == [
            "[Gull]: a line 1 (a action 1)",
            "[Robot]: a line 2 (a action 2)",
            "[Gull]: a line 3 (a action 3)",
        ]

        await orch.wait_until_settled()
        new_calls = images.calls[4:]
        assert len(new_calls) == 3, "Only the new panels are generated"
        for _, style, defs in new_calls:
            assert style == "Watercolor"
            assert defs == ORIGINAL_DEFINITIONS, "Continuation images use pre-append definitions"

        final = orch.story
        assert all(p.image_state == ImageState.READY for p in final.panels)
        assert orch.state == GenerationState.READY
        assert_ids_increasing(final)

    asyncio.run(run())
    print("  PASS: Scenario C — appended 5, 6, 7 with style preserved")


def test_many_continuations_keep_invariants():
    async def run():
        rounds = [make_script(ids=[1, 1], tag=f"r{n}", definitions=f"Extra {n}") for n in range(4)]
        writer = FakeScriptWriter(make_script(3), *rounds)
        images = FakeImageGenerator()
        orch = make_orchestrator(writer, images)

        await orch.generate("a robot learns to paint")
        previous = orch.story
        for n in range(4):
            story = await orch.continue_story(f"round {n}")
            assert_ids_increasing(story)
            assert story.art_style == previous.art_style
            assert previous.character_definitions in story.character_definitions
            previous = story

        await orch.wait_until_settled()
        assert orch.story.panel_ids == list(range(1, 12))
        assert not orch._continuing, "Settled continuations leave no counters behind"

        # Every round, not just the first, is drawn with the opening cast
        for prompt, _, defs in images.calls:
            assert defs == ORIGINAL_DEFINITIONS, f"{prompt} drawn with amended definitions"
        assert orch.story.character_definitions.endswith("Extra 3")
        assert orch.story.base_character_definitions == ORIGINAL_DEFINITIONS

    asyncio.run(run())
    print("  PASS: Ids and style stay consistent across 4 continuation rounds")


def test_second_continuation_drawn_with_opening_definitions():
    """Round 2 images ignore definitions added in round 1; regeneration does not."""
    async def run():
        villain = make_script(count=2, tag="b", definitions="Villain: chrome raven.")
        finale = make_script(count=2, tag="c", definitions="Lighthouse keeper: old, kind.")
        images = FakeImageGenerator()
        orch = make_orchestrator(FakeScriptWriter(make_script(4), villain, finale), images)

        await orch.generate("a robot learns to paint")
        await orch.continue_story("a villain appears")
        await orch.wait_until_settled()
        await orch.continue_story("they make peace at the lighthouse")
        await orch.wait_until_settled()

        round_two = [defs for prompt, _, defs in images.calls if prompt.startswith("scene c")]
        assert round_two == [ORIGINAL_DEFINITIONS, ORIGINAL_DEFINITIONS]

        await orch.regenerate(7)
        _, _, defs = images.calls[-1]
        assert defs == orch.story.character_definitions
        assert "chrome raven" in defs and "Lighthouse keeper" in defs

    asyncio.run(run())
    print("  PASS: Later rounds stay anchored to the opening cast")


def test_continuation_failure_leaves_story_unchanged():
    async def run():
        writer = FakeScriptWriter(make_script(4), UpstreamError("service unavailable", status_code=503))
        orch = make_orchestrator(writer, FakeImageGenerator())

        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()
        before = orch.story

        try:
            await orch.continue_story("a villain appears")
        except UpstreamError:
            pass
        else:
            raise AssertionError("Continuation failure should propagate")

        assert orch.story is before, "No partial panels may be appended"
        assert not orch._continuing
        assert orch.state == GenerationState.READY

    asyncio.run(run())
    print("  PASS: Failed continuation leaves the story as it was")


# ============================================================
# Test 4: Regeneration (Scenario D)
# ============================================================

def test_regenerate_panel():
    """READY → LOADING → READY with a new image; other panels unaffected."""
    async def run():
        images = FakeImageGenerator()
        orch = make_orchestrator(FakeScriptWriter(make_script(4)), images)
        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()
        before = orch.story

        states = []
        orch.store.subscribe(lambda story: states.append(story.get_panel(2).image_state))

        panel = await orch.regenerate(2)
        assert states == [ImageState.LOADING, ImageState.READY]
        assert panel.image_state == ImageState.READY
        assert panel.image != before.get_panel(2).image
        assert panel.image.data == b"scene a 1#2"

        after = orch.story
        for panel_id in (1, 3, 4):
            assert after.get_panel(panel_id) == before.get_panel(panel_id)

    asyncio.run(run())
    print("  PASS: Scenario D — panel 2 regenerated, others unchanged")


def test_regenerate_uses_current_definitions():
    """Manual regeneration picks up definitions amended by a continuation."""
    async def run():
        continuation = make_script(count=2, tag="b", definitions="Villain: a chrome raven.")
        images = FakeImageGenerator()
        orch = make_orchestrator(FakeScriptWriter(make_script(4), continuation), images)

        await orch.generate("a robot learns to paint")
        await orch.continue_story("a villain appears")
        await orch.wait_until_settled()

        await orch.regenerate(1)
        _, style, defs = images.calls[-1]
        assert style == "Watercolor"
        assert defs == orch.story.character_definitions
        assert "chrome raven" in defs

    asyncio.run(run())
    print("  PASS: Regeneration uses the latest character definitions")


def test_regenerate_failure_marks_failed():
    async def run():
        images = FakeImageGenerator()
        orch = make_orchestrator(FakeScriptWriter(make_script(3)), images)
        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()

        images.fail.add("scene a 0")
        panel = await orch.regenerate(1)
        assert panel.image_state == ImageState.FAILED
        assert panel.image is None
        assert await orch.regenerate(42) is None

    asyncio.run(run())
    print("  PASS: Failed regeneration marks the panel FAILED")


def test_overlapping_regenerations_last_writer_wins():
    async def run():
        images = FakeImageGenerator()
        orch = make_orchestrator(FakeScriptWriter(make_script(3)), images)
        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()

        images.delays["scene a 0"] = 0.02
        slow = asyncio.create_task(orch.regenerate(1))
        await asyncio.sleep(0.005)
        images.delays["scene a 0"] = 0.0
        fast = await orch.regenerate(1)
        assert fast.image.data == b"scene a 0#3"
        await slow

        final = orch.story.get_panel(1)
        assert final.image.data == b"scene a 0#2", "The response that arrives last wins"
        assert final.image_state == ImageState.READY

    asyncio.run(run())
    print("  PASS: Overlapping regenerations resolve last-writer-wins")


# ============================================================
# Test 5: Upload limit (Scenario E)
# ============================================================

def test_oversized_reference_rejected():
    async def run():
        writer = FakeScriptWriter(make_script(4))
        orch = make_orchestrator(writer, FakeImageGenerator())
        await orch.generate("a robot learns to paint")
        await orch.wait_until_settled()
        before = orch.story

        big = ReferenceImage(data=b"\x00" * (6 * 1024 * 1024), mime_type="image/png")
        try:
            await orch.generate("another idea", reference_image=big)
        except FileTooLargeError:
            pass
        else:
            raise AssertionError("6 MB reference should be rejected")

        assert len(writer.calls) == 1, "No request may be made for an oversized file"
        assert orch.story is before, "Story must not change"

    asyncio.run(run())
    print("  PASS: Scenario E — 6 MB upload rejected before any request")


def test_reference_image_forwarded():
    async def run():
        writer = FakeScriptWriter(make_script(3))
        orch = make_orchestrator(writer, FakeImageGenerator())
        ref = ReferenceImage(data=b"jpeg", mime_type="image/jpeg")
        await orch.generate("a robot learns to paint", reference_image=ref)
        assert writer.calls[0]["reference_image"] is ref
        assert writer.calls[0]["previous_context"] is None
        await orch.wait_until_settled()

    asyncio.run(run())
    print("  PASS: Reference image reaches the script request")


# ============================================================
# Test 6: Story reset with results in flight
# ============================================================

def test_new_story_ignores_stale_results():
    async def run():
        slow = {f"scene a {i}": 0.02 for i in range(4)}
        images = FakeImageGenerator(delays=slow)
        writer = FakeScriptWriter(make_script(4), make_script(4, tag="b", title="Second"))
        orch = make_orchestrator(writer, images)

        await orch.generate("first idea")
        orch.new_story()
        assert orch.story is None
        assert orch.state == GenerationState.IDLE

        second = await orch.generate("second idea")
        assert second.panel_ids == [1, 2, 3, 4]
        await orch.wait_until_settled()

        story = orch.story
        assert story.title == "Second"
        for panel in story.panels:
            assert panel.image.data.startswith(b"scene b"), "Stale results must not land on the new story"
        assert orch.state == GenerationState.READY

    asyncio.run(run())
    print("  PASS: Results from a reset story are ignored")


def test_reset_during_continuation_discards_it():
    async def run():
        writer = FakeScriptWriter(make_script(4), make_script(2, tag="b"))
        orch = make_orchestrator(writer, FakeImageGenerator())
        await orch.generate("first idea")
        await orch.wait_until_settled()

        pending = asyncio.create_task(orch.continue_story("a villain appears"))
        await asyncio.sleep(0)
        orch.new_story()
        assert await pending is None
        assert orch.story is None

    asyncio.run(run())
    print("  PASS: Continuation for a reset story is discarded")


def test_failed_continuation_for_replaced_story_is_silent():
    """A continuation failing under a newer generate() leaves it in SCRIPT_PENDING."""
    async def run():
        writer = FakeScriptWriter(
            make_script(4),
            UpstreamError("service unavailable", status_code=503),
            make_script(3, tag="b", title="Second"),
            delays=[0, 0.01, 0.05],
        )
        progress = []
        orch = make_orchestrator(writer, FakeImageGenerator(), progress)
        await orch.generate("first idea")
        await orch.wait_until_settled()

        pending = asyncio.create_task(orch.continue_story("a villain appears"))
        await asyncio.sleep(0)
        second = asyncio.create_task(orch.generate("second idea"))
        await asyncio.sleep(0.03)

        assert pending.done()
        assert pending.result() is None, "Failure for a replaced story is not raised"
        assert orch.state == GenerationState.SCRIPT_PENDING
        assert progress[-1] == "script_pending"
        assert not orch._continuing

        story = await second
        assert story.title == "Second"
        await orch.wait_until_settled()
        assert orch.state == GenerationState.READY

    asyncio.run(run())
    print("  PASS: Stale continuation failure does not disturb the new story")


# ============================================================
# Test 7: Full stack on a mock HTTP transport
# ============================================================

def test_end_to_end_mock_transport():
    """Real gateway classes against a fake Gemini endpoint."""
    import base64
    import json

    import httpx

    from oneshot_comic.gemini_client import GeminiClient
    from oneshot_comic.image_generator import PanelImageGenerator
    from oneshot_comic.script_writer import ScriptWriter

    script = {
        "title": "Brush Strokes",
        "artStyle": "Pixel Art",
        "characterDefinitions": "Robot: boxy, teal paint.",
        "panels": [
            {"id": i, "description": f"d{i}", "dialogue": f"l{i}",
             "character": "Robot", "visualPrompt": f"v{i}"}
            for i in (1, 2, 3)
        ],
    }

    def handler(request):
        if "image" in request.url.path:
            prompt = json.loads(request.content)["contents"][0]["parts"][0]["text"]
            if "v2" in prompt:
                return httpx.Response(500, text="internal")
            data = base64.b64encode(b"PNG:" + prompt[-8:].encode()).decode()
            return httpx.Response(200, json={"candidates": [{"content": {"parts": [
                {"inlineData": {"mimeType": "image/png", "data": data}}
            ]}}]})
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [
            {"text": json.dumps(script)}
        ]}}]})

    async def run():
        settings = ComicSettings(api_key="test-key")
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        gemini = GeminiClient(settings, client=http)
        orch = ComicStoryOrchestrator(
            settings=settings,
            script_writer=ScriptWriter(settings, gemini=gemini),
            image_generator=PanelImageGenerator(settings, gemini=gemini),
        )
        try:
            await orch.generate("a robot learns to paint")
            await orch.wait_until_settled()
            story = orch.story
            assert story.title == "Brush Strokes"
            assert [p.image_state for p in story.panels] == [
                ImageState.READY, ImageState.FAILED, ImageState.READY,
            ]
            assert "500" in story.get_panel(2).error
            assert story.get_panel(1).image.data.startswith(b"PNG:")
        finally:
            await orch.close()
            await http.aclose()

    asyncio.run(run())
    print("  PASS: Full stack settles with one upstream failure")


# ============================================================
# Runner
# ============================================================

TESTS = {
    name: func for name, func in sorted(globals().items())
    if name.startswith("test_") and callable(func)
}


def main():
    """Run tests."""
    specific = sys.argv[1] if len(sys.argv) > 1 else None
    tests = TESTS

    if specific:
        if specific not in tests:
            print(f"Unknown test: {specific}")
            print(f"Available: {', '.join(tests.keys())}")
            sys.exit(1)
        tests = {specific: tests[specific]}

    passed = 0
    failed = 0

    print("\nOrchestrator Tests")
    print("=" * 50)

    for name, func in tests.items():
        print(f"\n{name}:")
        try:
            func()
            passed += 1
        except Exception as e:
            print(f"  FAIL: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print("\n" + "=" * 50)
    print(f"Results: {passed} passed, {failed} failed")

    if failed > 0:
        sys.exit(1)


if __name__ == "__main__":
    main()
