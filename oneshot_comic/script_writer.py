"""
One-Shot Comic — Script Writer.

Turns an idea (plus optional reference image, or the context of a story
being continued) into a structured ComicScript using Gemini's JSON
response mode.

Output: ComicScript validated against the script schema. Panel ids are
whatever the model wrote; the orchestrator decides what to keep.
"""

import json
import logging
from typing import Optional

from oneshot_comic.config import ComicSettings
from oneshot_comic.errors import MalformedScriptError
from oneshot_comic.gemini_client import GeminiClient, extract_text
from oneshot_comic.models import ComicScript, ReferenceImage
from oneshot_comic.prompts import (
    SYSTEM_INSTRUCTION,
    build_script_prompt,
    build_script_schema,
)

logger = logging.getLogger(__name__)


class ScriptWriter:
    """Generates structured comic scripts from ideas."""

    def __init__(self, settings: ComicSettings, gemini: Optional[GeminiClient] = None):
        self.settings = settings
        self.gemini = gemini or GeminiClient(settings)

    async def close(self):
        await self.gemini.close()

    def build_payload(
        self,
        idea: str,
        reference_image: Optional[ReferenceImage] = None,
        previous_context: Optional[str] = None,
        fixed_art_style: Optional[str] = None,
    ) -> dict:
        """Build the generateContent request body."""
        continuation = previous_context is not None
        parts = []
        if reference_image is not None:
            parts.append({
                "inline_data": {
                    "mime_type": reference_image.mime_type,
                    "data": reference_image.to_base64(),
                }
            })
        parts.append({
            "text": build_script_prompt(
                idea,
                previous_context=previous_context,
                fixed_art_style=fixed_art_style,
                min_panels=self.settings.min_panels,
                max_panels=self.settings.max_panels,
            )
        })

        if continuation:
            schema = build_script_schema()
        else:
            schema = build_script_schema(self.settings.min_panels, self.settings.max_panels)

        return {
            "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.settings.script_temperature,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }

    async def request_script(
        self,
        idea: str,
        reference_image: Optional[ReferenceImage] = None,
        previous_context: Optional[str] = None,
        fixed_art_style: Optional[str] = None,
    ) -> ComicScript:
        """
        Request a comic script.

        Args:
            idea: The story idea, or the next development for a continuation
            reference_image: Optional image the fresh story should draw on
            previous_context: Summary of the last panels; switches to continuation mode
            fixed_art_style: Art style the continuation must keep

        Returns:
            ComicScript (fresh: min_panels..max_panels panels; continuation: 1+ panels)

        Raises:
            MalformedScriptError: empty, unparseable or schema-invalid response
            UpstreamError: transport/quota failure
        """
        continuation = previous_context is not None
        payload = self.build_payload(idea, reference_image, previous_context, fixed_art_style)

        mode = "continuation" if continuation else "fresh story"
        logger.info(f"Requesting {mode} script for: {idea[:80]}...")
        response = await self.gemini.generate_content(self.settings.script_model, payload)

        raw_text = extract_text(response)
        if not raw_text:
            raise MalformedScriptError("No text returned from Gemini")

        try:
            script_data = json.loads(self._extract_json(raw_text))
        except json.JSONDecodeError as e:
            raise MalformedScriptError(f"Script is not valid JSON: {e}") from e

        script = ComicScript.from_dict(script_data)

        if not continuation:
            count = len(script.panels)
            if not self.settings.min_panels <= count <= self.settings.max_panels:
                raise MalformedScriptError(
                    f"Fresh script has {count} panels, expected "
                    f"{self.settings.min_panels}-{self.settings.max_panels}"
                )

        logger.info(f"Comic script ready: '{script.title}' — {len(script.panels)} panels")
        return script

    def _extract_json(self, text: str) -> str:
        """Extract JSON from model response, handling markdown fences."""
        if "```json" in text:
            text = text.split("```json", 1)[1]
            text = text.rsplit("```", 1)[0]
        elif "```" in text:
            text = text.split("```", 1)[1]
            text = text.rsplit("```", 1)[0]
        return text.strip()
