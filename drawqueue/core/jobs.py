"""Generation job records.

A job carries everything needed to run one generation request (prompt,
serialized configuration, input images) plus its status, progress and
results. Records serialize to plain dicts for the queue store; binary
fields are base64 encoded and timestamps are ISO 8601.
"""
import base64
import json
import random
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from .errors import ValidationError

MAX_RETRIES = 3


class JobStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.completed, JobStatus.failed, JobStatus.cancelled)


class HintType(str, Enum):
    """Hint types understood by the server."""
    shuffle = "shuffle"  # moodboard / reference images
    depth = "depth"
    pose = "pose"
    canny = "canny"
    scribble = "scribble"
    color = "color"
    lineart = "lineart"
    softedge = "softedge"
    seg = "seg"
    inpaint = "inpaint"
    ip2p = "ip2p"
    mlsd = "mlsd"
    tile = "tile"
    blur = "blur"
    lowquality = "lowquality"
    gray = "gray"
    custom = "custom"


@dataclass(frozen=True)
class HintData:
    """A typed, weighted reference image."""
    type: str
    image: bytes
    weight: float = 1.0

    def to_dict(self) -> dict:
        return {"type": self.type, "image": _encode(self.image), "weight": self.weight}

    @classmethod
    def from_dict(cls, data: dict) -> "HintData":
        if not isinstance(data, dict):
            raise TypeError(f"Hint must be an object, got {type(data).__name__}")
        return cls(type=data["type"], image=_decode(data["image"]), weight=float(data.get("weight", 1.0)))


class HintBuilder:
    """Collects hints in insertion order.

    Moodboard images become "image 2", "image 3", ... in the order they are
    added (the canvas is "image 1").
    """

    def __init__(self):
        self._hints: list[HintData] = []

    def add_moodboard_image(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.shuffle, image, weight)

    def add_moodboard_images(self, images: Iterable[bytes | tuple[bytes, float]], weight: float = 1.0) -> None:
        """Add several moodboard images; items may be raw bytes or (bytes, weight) pairs."""
        for item in images:
            if isinstance(item, tuple):
                self.add_hint(HintType.shuffle, item[0], item[1])
            else:
                self.add_hint(HintType.shuffle, item, weight)

    def add_depth_map(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.depth, image, weight)

    def add_pose(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.pose, image, weight)

    def add_canny_edges(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.canny, image, weight)

    def add_scribble(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.scribble, image, weight)

    def add_color_reference(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.color, image, weight)

    def add_line_art(self, image: bytes, weight: float = 1.0) -> None:
        self.add_hint(HintType.lineart, image, weight)

    def add_hint(self, type: HintType | str, image: bytes, weight: float = 1.0) -> None:
        type_name = type.value if isinstance(type, HintType) else type
        self._hints.append(HintData(type=type_name, image=image, weight=weight))

    def clear(self) -> None:
        self._hints.clear()

    def build(self) -> tuple[HintData, ...]:
        return tuple(self._hints)

    def __len__(self):
        return len(self._hints)


@dataclass
class JobProgress:
    current_step: int = 0
    total_steps: int = 0
    stage: Optional[str] = None
    preview_image: Optional[bytes] = None

    @property
    def fraction(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return self.current_step / self.total_steps

    @property
    def percentage(self) -> int:
        return int(self.fraction * 100)

    def to_dict(self) -> dict:
        return {
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "stage": self.stage,
            "preview_image": _encode(self.preview_image) if self.preview_image else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "JobProgress":
        if not isinstance(data, dict):
            raise TypeError(f"Progress must be an object, got {type(data).__name__}")
        preview = data.get("preview_image")
        return cls(
            current_step=int(data.get("current_step", 0)),
            total_steps=int(data.get("total_steps", 0)),
            stage=_optional_str(data, "stage"),
            preview_image=_decode(preview) if preview else None,
        )


@dataclass
class JobRequest:
    """What a caller submits to the queue."""
    prompt: str
    configuration: dict | str | None
    negative_prompt: str = ""
    name: Optional[str] = None
    canvas: Optional[bytes] = None
    mask: Optional[bytes] = None
    hints: tuple[HintData, ...] = ()


@dataclass
class GenerationJob:
    """A queued image generation job."""
    prompt: str
    configuration_json: str
    name: str = ""
    negative_prompt: str = ""
    canvas: Optional[bytes] = None
    mask: Optional[bytes] = None
    hints: list[HintData] = field(default_factory=list)
    status: JobStatus = JobStatus.pending
    progress: Optional[JobProgress] = None
    error_message: Optional[str] = None
    result_images: list[bytes] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    retry_count: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self):
        if not self.name:
            self.name = generate_name(self.prompt)

    @classmethod
    def from_request(cls, request: JobRequest) -> "GenerationJob":
        """Validate a request and build a pending job from it.

        Raises:
            ValidationError: prompt is blank or configuration is missing/invalid.
        """
        if not request.prompt or not request.prompt.strip():
            raise ValidationError("Prompt is required")
        configuration = parse_configuration(request.configuration)
        return cls(
            prompt=request.prompt,
            negative_prompt=request.negative_prompt or "",
            configuration_json=json.dumps(configuration),
            name=request.name or "",
            canvas=request.canvas,
            mask=request.mask,
            hints=list(request.hints),
        )

    def configuration(self) -> dict:
        return json.loads(self.configuration_json)

    # Status helpers

    @property
    def is_pending(self) -> bool:
        return self.status is JobStatus.pending

    @property
    def is_processing(self) -> bool:
        return self.status is JobStatus.processing

    @property
    def is_finished(self) -> bool:
        return self.status.is_terminal

    @property
    def can_retry(self) -> bool:
        return self.status is JobStatus.failed and self.retry_count < MAX_RETRIES

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def duration_string(self) -> Optional[str]:
        duration = self.duration
        if duration is None:
            return None
        if duration < 60:
            return f"{duration:.1f}s"
        minutes, seconds = divmod(int(duration), 60)
        return f"{minutes}m {seconds}s"

    def snapshot(self) -> "GenerationJob":
        """Copy safe to hand to observers."""
        return replace(
            self,
            hints=list(self.hints),
            result_images=list(self.result_images),
            progress=replace(self.progress) if self.progress else None,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "configuration": self.configuration_json,
            "canvas": _encode(self.canvas) if self.canvas else None,
            "mask": _encode(self.mask) if self.mask else None,
            "hints": [hint.to_dict() for hint in self.hints],
            "status": self.status.value,
            "progress": self.progress.to_dict() if self.progress else None,
            "error_message": self.error_message,
            "result_images": [_encode(image) for image in self.result_images],
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GenerationJob":
        """Rebuild a stored job.

        Raises:
            KeyError: a required field is missing.
            TypeError: a field has the wrong type.
            ValueError: a field has an invalid value.
        """
        if not isinstance(data, dict):
            raise TypeError(f"Job record must be an object, got {type(data).__name__}")
        progress = data.get("progress")
        return cls(
            id=str(data["id"]),
            name=_optional_str(data, "name") or "",
            prompt=_required_str(data, "prompt"),
            negative_prompt=_optional_str(data, "negative_prompt") or "",
            configuration_json=_stored_configuration(data["configuration"]),
            canvas=_decode(data["canvas"]) if data.get("canvas") else None,
            mask=_decode(data["mask"]) if data.get("mask") else None,
            hints=[HintData.from_dict(hint) for hint in _optional_list(data, "hints")],
            status=JobStatus(data.get("status", JobStatus.pending.value)),
            progress=JobProgress.from_dict(progress) if progress else None,
            error_message=_optional_str(data, "error_message"),
            result_images=[_decode(image) for image in _optional_list(data, "result_images")],
            created_at=datetime.fromisoformat(data["created_at"]),
            started_at=_parse_time(data.get("started_at")),
            completed_at=_parse_time(data.get("completed_at")),
            retry_count=int(data.get("retry_count", 0)),
        )


def generate_name(prompt: str) -> str:
    """Short display name from the first four words of the prompt."""
    name = " ".join(prompt.split()[:4])
    if len(name) > 30:
        return name[:27] + "..."
    return name or "Untitled"


def parse_configuration(configuration: Any) -> dict:
    """Normalize a submitted configuration to a dict."""
    if configuration is None or configuration == "":
        raise ValidationError("Configuration is required")
    if isinstance(configuration, str):
        try:
            configuration = json.loads(configuration)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Configuration is not valid JSON: {e}")
    if not isinstance(configuration, dict):
        raise ValidationError("Configuration must be a JSON object")
    return configuration


def assign_random_seed(job: GenerationJob) -> Optional[int]:
    """Give the job a concrete seed when its configuration asks for a random one.

    The server treats a missing or negative seed as "pick one", which makes
    the result impossible to reproduce. Returns the assigned seed, if any.
    """
    try:
        configuration = job.configuration()
    except json.JSONDecodeError:
        return None
    seed = configuration.get("seed")
    if isinstance(seed, (int, float)) and seed >= 0:
        return None
    seed = random.randint(0, 2**32 - 1)
    configuration["seed"] = seed
    job.configuration_json = json.dumps(configuration)
    return seed


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _decode(data: str) -> bytes:
    return base64.b64decode(data)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _required_str(data: dict, key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_str(data: dict, key: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _optional_list(data: dict, key: str) -> list:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{key} must be a list, got {type(value).__name__}")
    return value


def _stored_configuration(value: Any) -> str:
    """Stored configurations are JSON text holding an object."""
    if not isinstance(value, str):
        raise TypeError(f"configuration must be a JSON string, got {type(value).__name__}")
    if not isinstance(json.loads(value), dict):
        raise ValueError("configuration must be a JSON object")
    return value
