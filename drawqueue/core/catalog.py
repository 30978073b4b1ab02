"""Model catalog populated from the connected server."""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .session import SessionMetadata

logger = logging.getLogger(__name__)


class ModelSource(str, Enum):
    local = "local"
    official = "official"
    community = "community"


@dataclass(frozen=True)
class ModelInfo:
    name: str
    file: str
    version: Optional[str] = None
    prefix: Optional[str] = None
    source: ModelSource = ModelSource.local

    @classmethod
    def from_dict(cls, data: dict) -> "ModelInfo":
        return cls(
            name=data["name"],
            file=data["file"],
            version=data.get("version"),
            prefix=data.get("prefix"),
            source=ModelSource(data.get("source", ModelSource.local.value)),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "file": self.file,
            "version": self.version,
            "source": self.source.value,
        }


# Server versions come camelCase; the canonical form uses underscores.
_VERSION_MAP = {
    "sdxlBase": "sdxl_base_v0.9",
    "sdxlRefiner": "sdxl_refiner_v0.9",
    "ssd1b": "ssd_1b",
    "sd3Large": "sd3_large",
    "kandinsky21": "kandinsky2.1",
    "svdI2v": "svd_i2v",
    "wurstchenStageC": "wurstchen_v3.0_stage_c",
    "wurstchenStageB": "wurstchen_v3.0_stage_b",
    "hiDreamI1": "hidream_i1",
    "qwenImage": "qwen_image",
    "zImage": "z_image",
    "hunyuanVideo": "hunyuan_video",
    "wan21_1_3b": "wan_v2.1_1.3b",
    "wan21_14b": "wan_v2.1_14b",
    "wan22_5b": "wan_v2.2_5b",
}


def normalize_version(version: str) -> str:
    return _VERSION_MAP.get(version, version)


def versions_compatible(a: Optional[str], b: Optional[str]) -> bool:
    """Unknown versions are treated as compatible with everything."""
    if a is None or b is None:
        return True
    return normalize_version(a) == normalize_version(b)


class ModelsCatalog:
    """Per-session model lists; cleared whenever the session goes away."""

    def __init__(self):
        self.checkpoints: list[ModelInfo] = []
        self.loras: list[ModelInfo] = []
        self.control_nets: list[ModelInfo] = []
        self.textual_inversions: list[ModelInfo] = []
        self.upscalers: list[ModelInfo] = []

    def update_from_metadata(self, metadata: SessionMetadata) -> None:
        """Replace each non-empty list from probe metadata; malformed entries are skipped."""
        for attr, entries in (
            ("checkpoints", metadata.models),
            ("loras", metadata.loras),
            ("control_nets", metadata.control_nets),
            ("textual_inversions", metadata.textual_inversions),
            ("upscalers", metadata.upscalers),
        ):
            if not entries:
                continue
            parsed = []
            for entry in entries:
                try:
                    parsed.append(ModelInfo.from_dict(entry))
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed {attr} entry {entry!r}: {e}")
            setattr(self, attr, parsed)
        logger.info(f"Model catalog updated: {self.summary}")

    def clear(self) -> None:
        self.checkpoints = []
        self.loras = []
        self.control_nets = []
        self.textual_inversions = []
        self.upscalers = []

    @property
    def is_empty(self) -> bool:
        return not (self.checkpoints or self.loras or self.control_nets)

    def checkpoint(self, file: str) -> Optional[ModelInfo]:
        return next((m for m in self.checkpoints if m.file == file), None)

    def compatible_loras(self, checkpoint_file: str) -> list[ModelInfo]:
        checkpoint = self.checkpoint(checkpoint_file)
        if checkpoint is None or checkpoint.version is None:
            return list(self.loras)
        return [m for m in self.loras if versions_compatible(m.version, checkpoint.version)]

    @property
    def summary(self) -> str:
        parts = []
        if self.checkpoints:
            parts.append(f"{len(self.checkpoints)} models")
        if self.loras:
            parts.append(f"{len(self.loras)} LoRAs")
        if self.control_nets:
            parts.append(f"{len(self.control_nets)} ControlNets")
        return ", ".join(parts) if parts else "No models"

    def to_dict(self) -> dict:
        return {
            "checkpoints": [m.to_dict() for m in self.checkpoints],
            "loras": [m.to_dict() for m in self.loras],
            "control_nets": [m.to_dict() for m in self.control_nets],
            "textual_inversions": [m.to_dict() for m in self.textual_inversions],
            "upscalers": [m.to_dict() for m in self.upscalers],
            "summary": self.summary,
        }
