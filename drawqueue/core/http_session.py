"""
Aiohttp session for servers speaking the AUTOMATIC1111-compatible HTTP API.

Draw Things (with its HTTP API enabled), Forge and A1111 all expose
``/sdapi/v1``. Generation is a single blocking POST, so progress is polled
from ``/sdapi/v1/progress`` while the request is in flight.
"""

import asyncio
import base64
import logging
import os
import ssl
from typing import AsyncIterator, Optional

import aiohttp
import certifi

from .errors import GenerationError, ServerConnectionError
from .session import (
    Connector,
    GenerationResult,
    GenerationUpdate,
    PreviewUpdate,
    ProgressUpdate,
    PromptRequest,
    SessionMetadata,
)

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_REQUEST_TIMEOUT = 30.0
CONNECT_TIMEOUT = 10.0
TIMEOUT_MESSAGE = "Connection timed out, the server took too long to respond"

# Configuration keys that differ from the sdapi payload names.
_CONFIG_ALIASES = {
    "guidance_scale": "cfg_scale",
    "guidanceScale": "cfg_scale",
    "sampler": "sampler_name",
    "batch_size": "batch_size",
    "batchSize": "batch_size",
    "batch_count": "n_iter",
    "batchCount": "n_iter",
    "strength": "denoising_strength",
    "clip_skip": "clip_skip",
    "clipSkip": "clip_skip",
}
# Keys that select the checkpoint rather than a payload field.
_MODEL_KEYS = ("model", "checkpoint")


def build_payload(request: PromptRequest) -> dict:
    """Translate a prompt request into a txt2img/img2img JSON body."""
    payload: dict = {"prompt": request.prompt, "negative_prompt": request.negative_prompt}
    override_settings = {}
    for key, value in request.configuration.items():
        if key in _MODEL_KEYS:
            if value:
                override_settings["sd_model_checkpoint"] = value
            continue
        payload[_CONFIG_ALIASES.get(key, key)] = value
    if override_settings:
        payload["override_settings"] = override_settings

    if request.canvas is not None:
        payload["init_images"] = [_encode(request.canvas)]
        if request.mask is not None:
            payload["mask"] = _encode(request.mask)
    if request.hints:
        payload.setdefault("alwayson_scripts", {})["controlnet"] = {
            "args": [
                {"image": _encode(hint.image), "module": hint.type, "weight": hint.weight}
                for hint in request.hints
            ]
        }
    return payload


class HttpSession:
    """One server connection; runs one generation at a time."""

    def __init__(
        self,
        base_url: str,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        http: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.poll_interval = poll_interval
        self.request_timeout = request_timeout
        self._session = http

    async def ensure_session(self):
        """Lazy session creation with proper SSL context."""
        if self._session is None or self._session.closed:
            if self.base_url.startswith("https://"):
                ssl_context = ssl.create_default_context(cafile=certifi.where())
                connector = aiohttp.TCPConnector(ssl=ssl_context)
            else:
                connector = aiohttp.TCPConnector()
            self._session = aiohttp.ClientSession(connector=connector)

    async def probe(self) -> SessionMetadata:
        """Fetch model lists. Only the checkpoint list is required."""
        models = await self._request("GET", "/sdapi/v1/sd-models")
        if not isinstance(models, list):
            raise ServerConnectionError("Unexpected response from server", url=self.base_url)

        metadata = SessionMetadata(models=[_checkpoint_entry(m) for m in models if isinstance(m, dict)])
        loras = await self._optional("/sdapi/v1/loras")
        if isinstance(loras, list):
            metadata.loras = [
                {"name": lora.get("alias") or lora["name"], "file": lora["name"]}
                for lora in loras
                if isinstance(lora, dict) and "name" in lora
            ]
        upscalers = await self._optional("/sdapi/v1/upscalers")
        if isinstance(upscalers, list):
            metadata.upscalers = [
                {"name": u["name"], "file": u.get("model_name") or u["name"]}
                for u in upscalers
                if isinstance(u, dict) and "name" in u
            ]
        control_nets = await self._optional("/controlnet/model_list")
        if isinstance(control_nets, dict):
            metadata.control_nets = [
                {"name": name, "file": name} for name in control_nets.get("model_list", [])
            ]
        embeddings = await self._optional("/sdapi/v1/embeddings")
        if isinstance(embeddings, dict):
            metadata.textual_inversions = [
                {"name": name, "file": name} for name in embeddings.get("loaded", {})
            ]
        return metadata

    async def generate(self, request: PromptRequest) -> AsyncIterator[GenerationUpdate]:
        """Run one generation, yielding progress until the images arrive.

        Raises:
            GenerationError: the server rejected or failed the request.
            ServerConnectionError: the server could not be reached.
        """
        path = "/sdapi/v1/img2img" if request.canvas is not None else "/sdapi/v1/txt2img"
        # Generations can run for a long time; only the connect step is bounded.
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=CONNECT_TIMEOUT)
        task = asyncio.create_task(
            self._request("POST", path, build_payload(request), error=GenerationError, timeout=timeout)
        )
        last_preview: Optional[str] = None
        try:
            while True:
                done, _ = await asyncio.wait({task}, timeout=self.poll_interval)
                if done:
                    break
                progress = await self._poll_progress()
                if progress is None:
                    continue
                state = progress.get("state") or {}
                total = int(state.get("sampling_steps") or 0)
                if total > 0:
                    yield ProgressUpdate(
                        current_step=int(state.get("sampling_step") or 0),
                        total_steps=total,
                        stage=state.get("job") or None,
                    )
                preview = progress.get("current_image")
                if preview and preview != last_preview:
                    last_preview = preview
                    yield PreviewUpdate(image=_decode(preview))

            response = task.result()
        finally:
            if not task.done():
                task.cancel()

        if not isinstance(response, dict):
            raise GenerationError("Unexpected response from server")
        images = tuple(_decode(image) for image in response.get("images") or [])
        yield GenerationResult(images=images)

    async def cancel_current(self) -> None:
        await self._request("POST", "/sdapi/v1/interrupt")

    async def close(self):
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _poll_progress(self) -> Optional[dict]:
        try:
            progress = await self._request("GET", "/sdapi/v1/progress?skip_current_image=false")
        except (ServerConnectionError, GenerationError) as e:
            logger.debug(f"Progress poll failed: {e}")
            return None
        return progress if isinstance(progress, dict) else None

    async def _optional(self, path: str):
        try:
            return await self._request("GET", path)
        except ServerConnectionError as e:
            logger.debug(f"Optional endpoint {path} unavailable: {e}")
            return None

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        error: type = ServerConnectionError,
        timeout: Optional[aiohttp.ClientTimeout] = None,
    ):
        await self.ensure_session()
        assert self._session is not None

        url = f"{self.base_url}{path}"
        client_timeout = timeout or aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with self._session.request(method, url, json=data, timeout=client_timeout) as response:
                if response.status >= 400:
                    text = await response.text()
                    raise error(
                        f"{_error_detail(text)} ({response.status} {response.reason})",
                        status=response.status,
                    )
                if response.content_type == "application/json":
                    return await response.json()
                return await response.read()
        except aiohttp.ClientError as e:
            raise ServerConnectionError(str(e) or type(e).__name__, url=url)
        except asyncio.TimeoutError:
            raise ServerConnectionError(TIMEOUT_MESSAGE, url=url)


def http_connector(poll_interval: float = DEFAULT_POLL_INTERVAL) -> Connector:
    """Connector opening an ``HttpSession`` for "host:port" addresses."""

    async def connect(address: str, use_tls: bool) -> HttpSession:
        scheme = "https" if use_tls else "http"
        return HttpSession(f"{scheme}://{address}", poll_interval=poll_interval)

    return connect


def _checkpoint_entry(model: dict) -> dict:
    file = model.get("title") or os.path.basename(model.get("filename", ""))
    return {"name": model.get("model_name") or file, "file": file}


def _error_detail(text: str) -> str:
    return text.strip()[:200] or "Server error"


def _encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _decode(data: str) -> bytes:
    # Some servers prefix data URLs.
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    return base64.b64decode(data)
