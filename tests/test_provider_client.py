"""Tests for the generation provider client."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from meshgen_runner.config import ProviderConfig
from meshgen_runner.models import (
    GenerationOptions,
    ImageFile,
    InputKind,
    TaskBanned,
    TaskFailed,
    TaskRunning,
    TaskSucceeded,
    TaskUnknown,
)
from meshgen_runner.provider_client import (
    GenerationProviderClient,
    ProviderNotConfiguredError,
    ProviderPermanentError,
    ProviderTransientError,
    ProviderUploadError,
    parse_task_status,
)


@pytest.fixture
def provider_client():
    """Create a provider client with fast retries."""
    return GenerationProviderClient(
        ProviderConfig(api_url="https://api.provider.test/v2/openapi/", api_key="secret", retry_delay=0)
    )


def _response(status_code, body):
    if isinstance(body, (dict, list)):
        return httpx.Response(status_code, json=body)
    return httpx.Response(status_code, text=body)


def _mock_async_client(mock_client_class):
    mock_client = AsyncMock()
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


@pytest.mark.asyncio
async def test_create_task_success(provider_client):
    """Test successful text task creation."""
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.return_value = _response(200, {"code": 0, "data": {"task_id": "t-123"}})

        task_id = await provider_client.create_task(InputKind.TEXT, "a blue car")

        assert task_id == "t-123"
        call_args = mock_client.post.call_args
        assert call_args.args[0] == "https://api.provider.test/v2/openapi/task"
        assert call_args.kwargs["json"] == {"type": "text_to_model", "prompt": "a blue car"}
        assert call_args.kwargs["headers"]["Authorization"] == "Bearer secret"


@pytest.mark.asyncio
async def test_create_task_retries_transient_errors_three_times(provider_client):
    """Always-transient failures give exactly three attempts, then a permanent error."""
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.side_effect = httpx.ConnectError("Connection reset")

        with pytest.raises(ProviderPermanentError):
            await provider_client.create_task(InputKind.TEXT, "a blue car")

        assert mock_client.post.call_count == 3


@pytest.mark.asyncio
async def test_create_task_does_not_retry_non_transient_errors(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.side_effect = httpx.ReadTimeout("too slow")

        with pytest.raises(ProviderPermanentError):
            await provider_client.create_task(InputKind.TEXT, "a blue car")

        assert mock_client.post.call_count == 1


@pytest.mark.asyncio
async def test_create_task_rejection_is_not_retried(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.return_value = _response(400, {"code": 2003, "message": "invalid prompt"})

        with pytest.raises(ProviderPermanentError):
            await provider_client.create_task(InputKind.TEXT, "a blue car")

        assert mock_client.post.call_count == 1


@pytest.mark.asyncio
async def test_create_task_uses_linear_backoff():
    client = GenerationProviderClient(ProviderConfig(api_url="https://api.test", api_key="k", retry_delay=1.0))
    with patch("httpx.AsyncClient") as mock_client_class, \
            patch("meshgen_runner.provider_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.side_effect = [
            httpx.ConnectError("refused"),
            httpx.RemoteProtocolError("socket closed"),
            _response(200, {"code": 0, "data": {"task_id": "t-9"}}),
        ]

        assert await client.create_task(InputKind.TEXT, "a cat") == "t-9"

        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        _response(200, "<html>oops</html>"),
        _response(200, {"code": 0, "data": {}}),
        _response(200, {"code": 1001, "data": {"task_id": "t-1"}}),
    ],
)
async def test_create_task_unusable_response(provider_client, response):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.return_value = response

        with pytest.raises(ProviderPermanentError):
            await provider_client.create_task(InputKind.TEXT, "a blue car")


@pytest.mark.asyncio
async def test_create_task_requires_configuration():
    client = GenerationProviderClient(ProviderConfig())

    with pytest.raises(ProviderNotConfiguredError):
        await client.create_task(InputKind.TEXT, "a blue car")


def test_build_image_payload_from_token(provider_client):
    body = provider_client.build_task_payload(
        InputKind.IMAGE,
        "token:abc",
        GenerationOptions(texture=False),
        ImageFile(type="png"),
    )

    assert body == {
        "type": "image_to_model",
        "file": {"file_token": "abc", "type": "png"},
        "texture": False,
    }


def test_build_image_payload_rejects_untrusted_url(provider_client):
    with pytest.raises(ProviderPermanentError):
        provider_client.build_task_payload(
            InputKind.IMAGE,
            "https://attacker.test/x.png",
            image_file=ImageFile(url="https://attacker.test/x.png"),
        )


def test_build_image_payload_allows_trusted_origin():
    client = GenerationProviderClient(
        ProviderConfig(api_url="https://api.test", api_key="k", trusted_image_origin="https://cdn.example.com/")
    )

    body = client.build_task_payload(
        InputKind.IMAGE,
        "https://cdn.example.com/a.png",
        image_file=ImageFile(url="https://cdn.example.com/a.png"),
    )

    assert body["file"] == {"url": "https://cdn.example.com/a.png"}


@pytest.mark.asyncio
async def test_upload_image_returns_token(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.return_value = _response(200, {"code": 0, "data": {"image_token": "img-1"}})

        token = await provider_client.upload_image(b"bytes", "image/jpeg", "my photo")

        assert token == "img-1"
        call_args = mock_client.post.call_args
        assert call_args.args[0].endswith("/upload/sts")
        assert call_args.kwargs["files"] == {"file": ("my_photo.jpg", b"bytes", "image/jpeg")}
        mock_client_class.assert_called_once_with(timeout=15.0)


@pytest.mark.asyncio
async def test_upload_image_is_not_retried(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.side_effect = httpx.ConnectError("reset")

        with pytest.raises(ProviderTransientError):
            await provider_client.upload_image(b"bytes", "image/png", "a.png")

        assert mock_client.post.call_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        _response(200, "not json"),
        _response(500, {"code": 5000, "message": "error"}),
        _response(200, {"code": 0, "data": {}}),
    ],
)
async def test_upload_image_failures(provider_client, response):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.post.return_value = response

        with pytest.raises(ProviderUploadError):
            await provider_client.upload_image(b"bytes", "image/png", "a.png")


@pytest.mark.asyncio
async def test_fetch_status_success(provider_client):
    body = {
        "code": 0,
        "data": {
            "task_id": "t-1",
            "status": "success",
            "result": {
                "pbr_model": {"url": "https://provider/x.glb"},
                "rendered_image": {"url": "https://provider/x.webp"},
            },
        },
    }
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.get.return_value = _response(200, body)

        status = await provider_client.fetch_status("t-1")

        assert status == TaskSucceeded(model_url="https://provider/x.glb", preview_url="https://provider/x.webp")
        assert mock_client.get.call_args.args[0].endswith("/task/t-1")
        assert mock_client.get.call_count == 1


@pytest.mark.asyncio
async def test_fetch_status_transport_error_is_transient(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.get.side_effect = httpx.ConnectError("Connection reset")

        with pytest.raises(ProviderTransientError):
            await provider_client.fetch_status("t-1")

        assert mock_client.get.call_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response,error",
    [
        (_response(503, "Service Unavailable"), ProviderTransientError),
        (_response(429, ""), ProviderTransientError),
        (_response(404, "<html>Not Found</html>"), ProviderTransientError),
        (_response(403, "<html>Forbidden</html>"), ProviderTransientError),
        (_response(200, "<html></html>"), ProviderTransientError),
        (_response(200, {"code": 2001, "message": "task not found"}), ProviderPermanentError),
        (_response(404, {"code": 2001, "message": "task not found"}), ProviderPermanentError),
    ],
)
async def test_fetch_status_error_classes(provider_client, response, error):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.get.return_value = response

        with pytest.raises(error):
            await provider_client.fetch_status("t-1")


@pytest.mark.parametrize(
    "data,expected",
    [
        ({"status": "failed"}, TaskFailed(status="failed")),
        ({"status": "failure"}, TaskFailed(status="failure")),
        ({"status": "banned"}, TaskBanned(status="banned")),
        ({"status": "ban"}, TaskBanned(status="ban")),
        ({"status": "queued"}, TaskRunning(status="queued")),
        ({"status": "RUNNING"}, TaskRunning(status="running")),
        ({"status": "success", "result": {"model": "https://p/m.glb"}}, TaskSucceeded(model_url="https://p/m.glb")),
        ({"status": "success"}, TaskSucceeded(model_url=None)),
    ],
)
def test_parse_task_status(data, expected):
    assert parse_task_status(data) == expected


def test_parse_task_status_unknown_keeps_raw():
    status = parse_task_status({"status": "cancelled"})

    assert isinstance(status, TaskUnknown)
    assert status.raw == {"status": "cancelled"}
    assert isinstance(parse_task_status({}), TaskUnknown)


@pytest.mark.asyncio
async def test_get_balance(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.get.return_value = _response(200, {"code": 0, "data": {"balance": 120.5, "frozen": 3}})

        balance = await provider_client.get_balance()

        assert balance.balance == 120.5
        assert balance.frozen == 3.0
        assert mock_client.get.call_args.args[0].endswith("/user/balance")


@pytest.mark.asyncio
async def test_get_balance_rejected(provider_client):
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _mock_async_client(mock_client_class)
        mock_client.get.return_value = _response(401, json.dumps({"code": 1002, "message": "auth"}))

        with pytest.raises(ProviderPermanentError):
            await provider_client.get_balance()
