"""Configuration models for PageSign.

Plain pydantic models with defaults; a JSON file can override any of
them via :meth:`PageSignConfig.load`.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from .models import FieldType
from .store import DEFAULT_PAGESIGN_DIR

logger = logging.getLogger("pagesign.config")


class ViewerConfig(BaseModel):
    """Zoom settings for the page renderer.

    Attributes:
        default_scale: Scale used on open and on reset.
        min_scale: Lower clamp for any requested scale.
        max_scale: Upper clamp for any requested scale.
        scale_steps: Ladder walked by zoom in / zoom out.
    """

    default_scale: float = 1.0
    min_scale: float = 0.5
    max_scale: float = 3.0
    scale_steps: list[float] = Field(
        default_factory=lambda: [0.5, 0.75, 1.0, 1.25, 1.5, 2.0, 2.5, 3.0]
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> "ViewerConfig":
        if not 0 < self.min_scale <= self.default_scale <= self.max_scale:
            raise ValueError("expected 0 < min_scale <= default_scale <= max_scale")
        self.scale_steps = sorted(
            s for s in self.scale_steps if self.min_scale <= s <= self.max_scale
        )
        if not self.scale_steps:
            raise ValueError("scale_steps has no entry inside [min_scale, max_scale]")
        return self

    def clamp(self, scale: float) -> float:
        return max(self.min_scale, min(self.max_scale, scale))


class AssemblyConfig(BaseModel):
    """Drawing settings for the final document.

    Attributes:
        max_font_size: Upper bound for text and date values.
        min_font_size: Floor applied to very short boxes.
        font_name: Standard PDF font used for text.
        text_padding: Left inset of text inside its box, in points.
        signed_prefix: Storage namespace for final artifacts.
    """

    max_font_size: float = 12.0
    min_font_size: float = 4.0
    font_name: str = "Helvetica"
    text_padding: float = 2.0
    signed_prefix: str = "signed-documents"


class FieldSize(BaseModel):
    width: float
    height: float


class DesignerDefaults(BaseModel):
    """Footprint of freshly placed fields; signatures get a larger box."""

    sizes: dict[FieldType, FieldSize] = Field(
        default_factory=lambda: {
            FieldType.TEXT: FieldSize(width=100, height=30),
            FieldType.DATE: FieldSize(width=100, height=30),
            FieldType.CHECKBOX: FieldSize(width=100, height=30),
            FieldType.SIGNATURE: FieldSize(width=150, height=60),
        }
    )

    def size_for(self, field_type: FieldType) -> FieldSize:
        return self.sizes.get(field_type, FieldSize(width=100, height=30))


class PageSignConfig(BaseModel):
    """Top-level configuration.

    Attributes:
        data_dir: Root directory for records and stored files.
        base_url: Public URL prefix used to build signing links.
        viewer: Page renderer settings.
        assembly: Final document drawing settings.
        designer: Field designer defaults.
    """

    data_dir: Path = DEFAULT_PAGESIGN_DIR
    base_url: str = "http://127.0.0.1:8400"
    viewer: ViewerConfig = Field(default_factory=ViewerConfig)
    assembly: AssemblyConfig = Field(default_factory=AssemblyConfig)
    designer: DesignerDefaults = Field(default_factory=DesignerDefaults)

    def signing_url(self, access_token: str) -> str:
        return f"{self.base_url.rstrip('/')}/sign/{access_token}"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "PageSignConfig":
        """Load configuration from a JSON file, or defaults if none.

        Args:
            path: JSON file to read. Missing files fall back to defaults.

        Returns:
            The configuration.
        """
        if path is None or not Path(path).exists():
            return cls()
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        logger.info("Loaded configuration from %s", path)
        return cls.model_validate(data)
