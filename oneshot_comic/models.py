"""
One-Shot Comic — Data models.

Immutable dataclasses for the story document:
ScriptPanel → ComicScript (what the text model returns)
Panel → Story (what the store owns and the presentation layer renders).

Every Story value is a snapshot. Mutations go through StoryStore, which
swaps in a new Story built with dataclasses.replace().
"""

import base64
import binascii
import mimetypes
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from oneshot_comic.errors import FileTooLargeError, MalformedScriptError

# Upload limit for reference images (5 MB)
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class ImageState(Enum):
    """Lifecycle of a panel's image."""

    PENDING = "pending"    # Not assigned by the core
    LOADING = "loading"    # Request in flight
    READY = "ready"        # Image present
    FAILED = "failed"      # Request settled without an image


# ============================================================
# Images
# ============================================================

@dataclass(frozen=True)
class PanelImage:
    """Binary image handle: raw bytes plus media type."""
    data: bytes
    mime_type: str = "image/png"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def data_uri(self) -> str:
        """Render as a data: URI for direct display."""
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"

    @classmethod
    def from_base64(cls, payload: str, mime_type: str = "image/png") -> "PanelImage":
        return cls(data=base64.b64decode(payload), mime_type=mime_type or "image/png")

    @classmethod
    def from_data_uri(cls, uri: str) -> "PanelImage":
        """Parse a data:<mime>;base64,<payload> URI."""
        if not uri.startswith("data:") or ";base64," not in uri:
            raise ValueError(f"Not a base64 data URI: {uri[:40]}...")
        header, payload = uri[len("data:"):].split(";base64,", 1)
        try:
            return cls.from_base64(payload, header)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid base64 payload in data URI: {e}") from e


@dataclass(frozen=True)
class ReferenceImage:
    """User-supplied reference image attached to a fresh script request."""
    data: bytes
    mime_type: str

    @property
    def size(self) -> int:
        return len(self.data)

    def to_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def check_size(self, max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES):
        """Raise FileTooLargeError if the image exceeds max_bytes."""
        if self.size > max_bytes:
            raise FileTooLargeError(self.size, max_bytes)

    @classmethod
    def from_path(
        cls,
        path: str,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    ) -> "ReferenceImage":
        """
        Load a reference image from disk.

        The size check happens on the file's stat, before its bytes are read.

        Raises:
            FileTooLargeError: file is larger than max_bytes
            ValueError: file is not an image type
        """
        file_path = Path(path).expanduser()
        size = file_path.stat().st_size
        if size > max_bytes:
            raise FileTooLargeError(size, max_bytes)

        mime_type, _ = mimetypes.guess_type(file_path.name)
        if not mime_type or not mime_type.startswith("image/"):
            raise ValueError(f"Not an image file: {file_path.name}")

        return cls(data=file_path.read_bytes(), mime_type=mime_type)


# ============================================================
# Script (text model output)
# ============================================================

_PANEL_FIELDS = ("description", "dialogue", "character", "visualPrompt")
_SCRIPT_FIELDS = ("title", "artStyle", "characterDefinitions")


@dataclass(frozen=True)
class ScriptPanel:
    """One panel as written by the text model. Its id is only a suggestion."""
    id: int
    description: str
    dialogue: str
    character: str
    visual_prompt: str


@dataclass(frozen=True)
class ComicScript:
    """Structured narrative result from the script request."""
    title: str
    art_style: str
    character_definitions: str
    panels: tuple[ScriptPanel, ...] = ()

    @classmethod
    def from_dict(cls, data: Any) -> "ComicScript":
        """
        Validate a decoded script response against the script schema.

        Raises:
            MalformedScriptError: a required field is missing or has the wrong type
        """
        if not isinstance(data, dict):
            raise MalformedScriptError(
                f"Script must be a JSON object, got {type(data).__name__}"
            )

        for key in _SCRIPT_FIELDS:
            if not isinstance(data.get(key), str):
                raise MalformedScriptError(f"Script field '{key}' missing or not a string")

        raw_panels = data.get("panels")
        if not isinstance(raw_panels, list) or not raw_panels:
            raise MalformedScriptError("Script has no panels")

        panels = []
        for index, raw in enumerate(raw_panels):
            if not isinstance(raw, dict):
                raise MalformedScriptError(f"Panel {index} is not an object")
            panel_id = raw.get("id")
            # bool is an int subclass; reject it explicitly
            if not isinstance(panel_id, int) or isinstance(panel_id, bool):
                raise MalformedScriptError(f"Panel {index} has no integer 'id'")
            for key in _PANEL_FIELDS:
                if not isinstance(raw.get(key), str):
                    raise MalformedScriptError(
                        f"Panel {index} field '{key}' missing or not a string"
                    )
            panels.append(ScriptPanel(
                id=panel_id,
                description=raw["description"],
                dialogue=raw["dialogue"],
                character=raw["character"],
                visual_prompt=raw["visualPrompt"],
            ))

        return cls(
            title=data["title"],
            art_style=data["artStyle"],
            character_definitions=data["characterDefinitions"],
            panels=tuple(panels),
        )


# ============================================================
# Story document
# ============================================================

@dataclass(frozen=True)
class Panel:
    """A single comic panel."""
    id: int
    description: str
    dialogue: str
    character: str
    visual_prompt: str
    image: Optional[PanelImage] = None
    image_state: ImageState = ImageState.LOADING
    error: str = ""   # Short failure message, set only when FAILED

    @classmethod
    def from_script(cls, script_panel: ScriptPanel, panel_id: Optional[int] = None) -> "Panel":
        """Seed a panel from the script, image not yet generated."""
        return cls(
            id=script_panel.id if panel_id is None else panel_id,
            description=script_panel.description,
            dialogue=script_panel.dialogue,
            character=script_panel.character,
            visual_prompt=script_panel.visual_prompt,
        )

    def with_image(self, image: Optional[PanelImage], error: str = "") -> "Panel":
        if image is not None:
            return replace(self, image=image, image_state=ImageState.READY, error="")
        return replace(self, image=None, image_state=ImageState.FAILED, error=error)

    def loading(self) -> "Panel":
        return replace(self, image_state=ImageState.LOADING, error="")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "dialogue": self.dialogue,
            "character": self.character,
            "visualPrompt": self.visual_prompt,
            "image": self.image.data_uri if self.image else None,
            "imageState": self.image_state.value,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Panel":
        image = data.get("image")
        return cls(
            id=data["id"],
            description=data["description"],
            dialogue=data["dialogue"],
            character=data["character"],
            visual_prompt=data["visualPrompt"],
            image=PanelImage.from_data_uri(image) if image else None,
            image_state=ImageState(data.get("imageState", ImageState.LOADING.value)),
            error=data.get("error", ""),
        )


@dataclass(frozen=True)
class Story:
    """Full comic story — one idea submission, any number of continuations."""
    title: str
    art_style: str
    character_definitions: str
    panels: tuple[Panel, ...] = ()
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    base_character_definitions: str = ""

    def __post_init__(self):
        # Opening definitions; continuations append to character_definitions only
        if not self.base_character_definitions:
            object.__setattr__(self, "base_character_definitions", self.character_definitions)

    @property
    def panel_count(self) -> int:
        return len(self.panels)

    @property
    def panel_ids(self) -> list[int]:
        return [p.id for p in self.panels]

    @property
    def last_id(self) -> int:
        return max(self.panel_ids, default=0)

    def get_panel(self, panel_id: int) -> Optional[Panel]:
        for panel in self.panels:
            if panel.id == panel_id:
                return panel
        return None

    def count_state(self, state: ImageState) -> int:
        return sum(1 for p in self.panels if p.image_state == state)

    def format_for_review(self) -> str:
        """Format the story for display in a terminal."""
        lines = [
            f"STORY: {self.title}",
            f"{'=' * 50}",
            f"Art style: {self.art_style}",
            "",
            "CHARACTERS & SETTING:",
            self.character_definitions,
            "",
            f"PANELS ({len(self.panels)}):",
            "-" * 40,
        ]
        for p in self.panels:
            status = p.image_state.value
            if p.image:
                status += f", {p.image.size:,} bytes"
            elif p.error:
                status += f": {p.error}"
            lines.append(f"Panel {p.id} [{status}]:")
            lines.append(f"  {p.character}: \"{p.dialogue}\"")
            lines.append(f"  ({p.description})")
            lines.append("")
        return "\n".join(lines)

    def to_dict(self) -> dict:
        """Serialize a snapshot for JSON transport."""
        return {
            "sessionId": self.session_id,
            "title": self.title,
            "artStyle": self.art_style,
            "characterDefinitions": self.character_definitions,
            "baseCharacterDefinitions": self.base_character_definitions,
            "panels": [p.to_dict() for p in self.panels],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Story":
        return cls(
            title=data["title"],
            art_style=data["artStyle"],
            character_definitions=data["characterDefinitions"],
            panels=tuple(Panel.from_dict(p) for p in data.get("panels", [])),
            session_id=data.get("sessionId") or uuid.uuid4().hex,
            base_character_definitions=data.get("baseCharacterDefinitions", ""),
        )
