"""
One-Shot Comic — Prompt builders.

Pure functions only. Visual consistency across independently generated
panels comes from re-embedding the same art style and character
definitions in every image prompt; nothing here keeps state between calls.
"""

from typing import Iterable, Optional

SYSTEM_INSTRUCTION = (
    "You are an expert comic book writer and director. "
    "You create engaging micro-stories."
)

FRESH_STORY_INSTRUCTIONS = """Create a short, engaging comic strip script based on this idea: "{idea}".

Invent a catchy title, a distinctive visual art style (e.g. Noir, Manga, Pixel Art,
Watercolor) and a highly detailed visual description of the main character(s) and
setting in 'characterDefinitions'. Define the characters visually first — this text
is repeated in every image request to keep the panels consistent.

Write between {min_panels} and {max_panels} panels. Vary the panel count with the
story's needs. Keep dialogue short. Ensure the visual prompts are descriptive enough
for an AI image generator to create consistent scenes, but do NOT repeat character
details in a visual prompt: focus on the action, camera angle and lighting."""

CONTINUATION_INSTRUCTIONS = """Continue an existing comic strip with this next development: "{idea}".

Maintain the existing art style exactly: "{art_style}".

This is a continuation of a previous story. Here is the context of what happened so far:
{context}

Continue the story naturally from the last panel. Do not reintroduce characters
the reader already knows. Only describe NEW characters or locations in
'characterDefinitions' (leave it empty if there are none). Keep dialogue short and
focus each visual prompt on the action, camera angle and lighting."""

PANEL_IMAGE_PROMPT = """Art Style: {art_style}
Consistent Character/Setting Details: {character_definitions}
Current Scene Action: {visual_prompt}

Generate a high-quality comic book panel.
Framing: Cinematic.
Ratio: Square ({aspect_ratio})."""


def build_script_schema(min_panels: Optional[int] = None, max_panels: Optional[int] = None) -> dict:
    """
    Response schema for the script request (Gemini REST schema dialect).

    Panel bounds apply to fresh stories only; continuations pass None.
    """
    panels = {
        "type": "ARRAY",
        "description": "The panels of the comic, in reading order.",
        "items": {
            "type": "OBJECT",
            "properties": {
                "id": {"type": "INTEGER"},
                "description": {"type": "STRING", "description": "A brief description of the action."},
                "dialogue": {"type": "STRING", "description": "The dialogue bubble text. Keep it short."},
                "character": {"type": "STRING", "description": "Who is speaking."},
                "visualPrompt": {
                    "type": "STRING",
                    "description": (
                        "The specific scene action, camera angle, and lighting. "
                        "Do NOT repeat character details here."
                    ),
                },
            },
            "required": ["id", "description", "dialogue", "character", "visualPrompt"],
        },
    }
    if min_panels is not None:
        panels["minItems"] = min_panels
    if max_panels is not None:
        panels["maxItems"] = max_panels

    return {
        "type": "OBJECT",
        "properties": {
            "title": {"type": "STRING", "description": "A catchy title for the comic strip."},
            "artStyle": {"type": "STRING", "description": "The visual art style."},
            "characterDefinitions": {
                "type": "STRING",
                "description": (
                    "A highly detailed, consistent visual description of the main "
                    "character(s) and setting."
                ),
            },
            "panels": panels,
        },
        "required": ["title", "artStyle", "characterDefinitions", "panels"],
    }


def build_script_prompt(
    idea: str,
    previous_context: Optional[str] = None,
    fixed_art_style: Optional[str] = None,
    min_panels: int = 3,
    max_panels: int = 6,
) -> str:
    """User prompt for a fresh story, or a continuation when previous_context is given."""
    if previous_context is not None:
        return CONTINUATION_INSTRUCTIONS.format(
            idea=idea.strip(),
            art_style=fixed_art_style or "",
            context=previous_context,
        )

    prompt = FRESH_STORY_INSTRUCTIONS.format(
        idea=idea.strip(),
        min_panels=min_panels,
        max_panels=max_panels,
    )
    if fixed_art_style:
        prompt += f'\nUse this art style: "{fixed_art_style}".'
    return prompt


def build_narrative_context(panels: Iterable, count: int = 3) -> str:
    """Summarise the last `count` panels as '[character]: dialogue (description)' lines."""
    recent = list(panels)[-count:] if count > 0 else []
    return "\n".join(f"[{p.character}]: {p.dialogue} ({p.description})" for p in recent)


def compose_panel_prompt(
    art_style: str,
    character_definitions: str,
    visual_prompt: str,
    aspect_ratio: str = "1:1",
) -> str:
    """Single composite instruction for one panel image."""
    return PANEL_IMAGE_PROMPT.format(
        art_style=art_style,
        character_definitions=character_definitions,
        visual_prompt=visual_prompt,
        aspect_ratio=aspect_ratio,
    )
