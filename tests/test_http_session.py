"""Tests for the HTTP session adapter."""
import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from drawqueue.core.errors import GenerationError, ServerConnectionError
from drawqueue.core.http_session import HttpSession, build_payload, http_connector
from drawqueue.core.jobs import HintData
from drawqueue.core.session import GenerationResult, PreviewUpdate, ProgressUpdate, PromptRequest

BASE_URL = "https://gpu.local:7859"


def b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def mock_response(status=200, json_data=None, reason="OK", delay=0.0):
    response = MagicMock()
    response.status = status
    response.reason = reason
    response.content_type = "application/json"
    response.json = AsyncMock(return_value=json_data)
    response.text = AsyncMock(return_value=str(json_data))
    response.read = AsyncMock(return_value=b"")

    async def enter(*args):
        if delay:
            await asyncio.sleep(delay)
        return response

    response.__aenter__ = AsyncMock(side_effect=enter)
    response.__aexit__ = AsyncMock(return_value=None)
    return response


def make_session(routes, poll_interval=0.01):
    """HttpSession whose aiohttp session answers from ``routes`` keyed by (method, path)."""
    http = MagicMock()
    http.closed = False
    http.close = AsyncMock()

    def request(method, url, json=None, timeout=None):
        path = url[len(BASE_URL):].split("?")[0]
        route = routes.get((method, path))
        if route is None:
            return mock_response(status=404, json_data={"detail": "Not Found"}, reason="Not Found")
        if isinstance(route, Exception):
            raise route
        return route

    http.request = MagicMock(side_effect=request)
    return HttpSession(BASE_URL, poll_interval=poll_interval, http=http), http


def posted_json(http, path):
    for call in http.request.call_args_list:
        if call.args[0] == "POST" and call.args[1].endswith(path):
            return call.kwargs["json"]
    raise AssertionError(f"no POST to {path}")


async def collect(session, request):
    return [update async for update in session.generate(request)]


@pytest.mark.asyncio
async def test_probe_reads_models_and_optional_lists():
    session, _ = make_session({
        ("GET", "/sdapi/v1/sd-models"): mock_response(json_data=[
            {"title": "sd_xl_base_1.0.safetensors [31e35c80fc]", "model_name": "sd_xl_base_1.0"},
        ]),
        ("GET", "/sdapi/v1/loras"): mock_response(json_data=[
            {"name": "detail_tweaker", "alias": "Detail Tweaker"},
        ]),
        ("GET", "/sdapi/v1/upscalers"): mock_response(json_data=[
            {"name": "R-ESRGAN 4x+", "model_name": "RealESRGAN_x4plus"},
        ]),
    })

    metadata = await session.probe()

    assert metadata.models == [{"name": "sd_xl_base_1.0", "file": "sd_xl_base_1.0.safetensors [31e35c80fc]"}]
    assert metadata.loras == [{"name": "Detail Tweaker", "file": "detail_tweaker"}]
    assert metadata.upscalers == [{"name": "R-ESRGAN 4x+", "file": "RealESRGAN_x4plus"}]
    assert metadata.control_nets == []
    assert metadata.textual_inversions == []


@pytest.mark.asyncio
async def test_probe_requires_model_list():
    session, _ = make_session({
        ("GET", "/sdapi/v1/sd-models"): mock_response(status=500, json_data={"error": "boom"}, reason="Server Error"),
    })

    with pytest.raises(ServerConnectionError) as exc_info:
        await session.probe()
    assert exc_info.value.status == 500


@pytest.mark.asyncio
async def test_transport_error_becomes_server_connection_error():
    session, _ = make_session({
        ("GET", "/sdapi/v1/sd-models"): aiohttp.ClientConnectionError("Connection refused"),
    })

    with pytest.raises(ServerConnectionError) as exc_info:
        await session.probe()
    assert "Connection refused" in str(exc_info.value)
    assert exc_info.value.url == f"{BASE_URL}/sdapi/v1/sd-models"


@pytest.mark.asyncio
async def test_generate_txt2img():
    session, http = make_session({
        ("POST", "/sdapi/v1/txt2img"): mock_response(json_data={"images": [b64(b"png-1"), b64(b"png-2")]}),
    })
    request = PromptRequest(
        prompt="a lighthouse",
        negative_prompt="blurry",
        configuration={"steps": 20, "guidanceScale": 6.5, "model": "sd_xl_base_1.0", "seed": 7},
    )

    updates = await collect(session, request)

    assert updates[-1] == GenerationResult(images=(b"png-1", b"png-2"))
    payload = posted_json(http, "/sdapi/v1/txt2img")
    assert payload["prompt"] == "a lighthouse"
    assert payload["negative_prompt"] == "blurry"
    assert payload["cfg_scale"] == 6.5
    assert payload["seed"] == 7
    assert payload["override_settings"] == {"sd_model_checkpoint": "sd_xl_base_1.0"}


@pytest.mark.asyncio
async def test_generation_post_has_no_total_timeout():
    session, http = make_session({
        ("GET", "/sdapi/v1/sd-models"): mock_response(json_data=[{"title": "a.ckpt"}]),
        ("POST", "/sdapi/v1/txt2img"): mock_response(json_data={"images": [b64(b"png")]}),
    })

    await session.probe()
    await collect(session, PromptRequest(prompt="a lighthouse", configuration={}))

    timeouts = {call.args[1][len(BASE_URL):]: call.kwargs["timeout"] for call in http.request.call_args_list}
    assert timeouts["/sdapi/v1/txt2img"].total is None
    assert timeouts["/sdapi/v1/txt2img"].sock_connect == 10.0
    assert timeouts["/sdapi/v1/sd-models"].total == 30.0


@pytest.mark.asyncio
async def test_generate_with_canvas_uses_img2img():
    session, http = make_session({
        ("POST", "/sdapi/v1/img2img"): mock_response(json_data={"images": [b64(b"out")]}),
    })
    request = PromptRequest(
        prompt="a lighthouse",
        negative_prompt="",
        configuration={"strength": 0.6},
        canvas=b"canvas",
        mask=b"mask",
    )

    updates = await collect(session, request)

    assert updates == [GenerationResult(images=(b"out",))]
    payload = posted_json(http, "/sdapi/v1/img2img")
    assert payload["init_images"] == [b64(b"canvas")]
    assert payload["mask"] == b64(b"mask")
    assert payload["denoising_strength"] == 0.6


@pytest.mark.asyncio
async def test_generate_reports_progress_and_previews():
    session, _ = make_session({
        ("POST", "/sdapi/v1/txt2img"): mock_response(json_data={"images": [b64(b"final")]}, delay=0.1),
        ("GET", "/sdapi/v1/progress"): mock_response(json_data={
            "progress": 0.3,
            "state": {"sampling_step": 3, "sampling_steps": 10, "job": ""},
            "current_image": b64(b"preview"),
        }),
    })
    request = PromptRequest(prompt="a lighthouse", negative_prompt="", configuration={})

    updates = await collect(session, request)

    assert ProgressUpdate(current_step=3, total_steps=10, stage=None) in updates
    previews = [u for u in updates if isinstance(u, PreviewUpdate)]
    assert previews == [PreviewUpdate(image=b"preview")]
    assert updates[-1] == GenerationResult(images=(b"final",))


@pytest.mark.asyncio
async def test_generate_http_error_becomes_generation_error():
    session, _ = make_session({
        ("POST", "/sdapi/v1/txt2img"): mock_response(
            status=500, json_data={"error": "CUDA out of memory"}, reason="Internal Server Error"
        ),
    })
    request = PromptRequest(prompt="a lighthouse", negative_prompt="", configuration={})

    with pytest.raises(GenerationError) as exc_info:
        await collect(session, request)
    assert exc_info.value.status == 500
    assert "CUDA out of memory" in str(exc_info.value)


@pytest.mark.asyncio
async def test_generate_transport_error_becomes_server_connection_error():
    session, _ = make_session({
        ("POST", "/sdapi/v1/txt2img"): aiohttp.ServerDisconnectedError(),
    })
    request = PromptRequest(prompt="a lighthouse", negative_prompt="", configuration={})

    with pytest.raises(ServerConnectionError):
        await collect(session, request)


@pytest.mark.asyncio
async def test_cancel_current_posts_interrupt():
    session, http = make_session({
        ("POST", "/sdapi/v1/interrupt"): mock_response(json_data={}),
    })

    await session.cancel_current()

    assert http.request.call_args.args == ("POST", f"{BASE_URL}/sdapi/v1/interrupt")


@pytest.mark.asyncio
async def test_close_closes_http_session():
    session, http = make_session({})
    await session.close()
    http.close.assert_awaited_once()


def test_build_payload_maps_hints_to_controlnet_units():
    request = PromptRequest(
        prompt="a cat",
        negative_prompt="",
        configuration={"batchCount": 2, "sampler": "DPM++ 2M Karras"},
        hints=(HintData(type="depth", image=b"depth", weight=0.8), HintData(type="shuffle", image=b"mood")),
    )

    payload = build_payload(request)

    assert payload["n_iter"] == 2
    assert payload["sampler_name"] == "DPM++ 2M Karras"
    assert "init_images" not in payload
    assert payload["alwayson_scripts"]["controlnet"]["args"] == [
        {"image": b64(b"depth"), "module": "depth", "weight": 0.8},
        {"image": b64(b"mood"), "module": "shuffle", "weight": 1.0},
    ]


@pytest.mark.asyncio
async def test_http_connector_picks_scheme():
    connect = http_connector(poll_interval=0.2)

    secure = await connect("gpu.local:7859", True)
    plain = await connect("localhost:7860", False)

    assert secure.base_url == "https://gpu.local:7859"
    assert secure.poll_interval == 0.2
    assert plain.base_url == "http://localhost:7860"
