"""
One-Shot Comic — Panel Image Generator.

Generates comic panel images with Gemini's image model.
Text-to-image only: every request carries the full art style and
character definitions, so panels stay consistent without any
reference chaining or conversation state.
"""

import logging
from typing import Optional

from oneshot_comic.config import ComicSettings
from oneshot_comic.errors import NoImageDataError
from oneshot_comic.gemini_client import GeminiClient, iter_parts
from oneshot_comic.models import PanelImage
from oneshot_comic.prompts import compose_panel_prompt

logger = logging.getLogger(__name__)


class PanelImageGenerator:
    """Generates single panel images via Gemini."""

    def __init__(self, settings: ComicSettings, gemini: Optional[GeminiClient] = None):
        self.settings = settings
        self.gemini = gemini or GeminiClient(settings)

    async def close(self):
        await self.gemini.close()

    def build_payload(self, prompt: str) -> dict:
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "imageConfig": {"aspectRatio": self.settings.aspect_ratio},
            },
        }

    async def request_panel_image(
        self,
        visual_prompt: str,
        art_style: str,
        character_definitions: str,
    ) -> PanelImage:
        """
        Generate one panel image. Single best-effort attempt.

        Raises:
            NoImageDataError: response had no inline image payload
            UpstreamError: transport/quota failure
        """
        prompt = compose_panel_prompt(
            art_style,
            character_definitions,
            visual_prompt,
            aspect_ratio=self.settings.aspect_ratio,
        )
        logger.info(f"Generating panel image: {visual_prompt[:60]}...")

        response = await self.gemini.generate_content(
            self.settings.image_model,
            self.build_payload(prompt),
        )

        image = self._extract_image(response)
        if image is None:
            raise NoImageDataError("No image data found in response")

        logger.info(f"Panel image received ({image.size:,} bytes, {image.mime_type})")
        return image

    def _extract_image(self, response: dict) -> Optional[PanelImage]:
        """Return the first inline image in the response, if any."""
        for part in iter_parts(response):
            inline = part.get("inlineData") or part.get("inline_data")
            if not inline or not inline.get("data"):
                continue
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            try:
                return PanelImage.from_base64(inline["data"], mime_type)
            except ValueError as e:
                raise NoImageDataError(f"Inline image data is not valid base64: {e}") from e
        return None
