"""The capability the core needs from a generation server.

A connector opens a ``Session`` for an address. The session is probed once
after connecting and then runs one ``generate`` call at a time. ``generate``
is an async iterator yielding ``ProgressUpdate`` / ``PreviewUpdate`` items
and finishing with exactly one ``GenerationResult``; failures are raised as
``GenerationError`` (server side) or ``ServerConnectionError`` (transport).
"""
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol, Union

from .jobs import GenerationJob, HintData


@dataclass(frozen=True)
class PromptRequest:
    prompt: str
    negative_prompt: str
    configuration: dict
    canvas: Optional[bytes] = None
    mask: Optional[bytes] = None
    hints: tuple[HintData, ...] = ()

    @classmethod
    def from_job(cls, job: GenerationJob) -> "PromptRequest":
        return cls(
            prompt=job.prompt,
            negative_prompt=job.negative_prompt,
            configuration=job.configuration(),
            canvas=job.canvas,
            mask=job.mask,
            hints=tuple(job.hints),
        )


@dataclass(frozen=True)
class ProgressUpdate:
    current_step: int
    total_steps: int
    stage: Optional[str] = None


@dataclass(frozen=True)
class PreviewUpdate:
    image: bytes


@dataclass(frozen=True)
class GenerationResult:
    images: tuple[bytes, ...]


GenerationUpdate = Union[ProgressUpdate, PreviewUpdate, GenerationResult]


@dataclass
class SessionMetadata:
    """Model catalogs reported by the server during the probe.

    Each entry is a list of dicts with at least ``name`` and ``file``.
    """
    models: list[dict] = field(default_factory=list)
    loras: list[dict] = field(default_factory=list)
    control_nets: list[dict] = field(default_factory=list)
    textual_inversions: list[dict] = field(default_factory=list)
    upscalers: list[dict] = field(default_factory=list)


class Session(Protocol):
    async def probe(self) -> SessionMetadata:
        ...

    def generate(self, request: PromptRequest) -> AsyncIterator[GenerationUpdate]:
        ...

    async def cancel_current(self) -> None:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[str, bool], Awaitable[Session]]
