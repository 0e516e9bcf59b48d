import asyncio
import base64
import json

import httpx

from racephotos.mailer import (
    Attachment, EmailMessage, ResendMailer, send_with_retry,
)


def _mailer(handler, api_key="re_test"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ResendMailer(http, api_key=api_key, from_email="from@test",
                        reply_to="help@test", api_url="https://mail.test")


def _message():
    return EmailMessage(
        to="runner@example.com", subject="Photos", html="<p>hi</p>",
        attachments=[Attachment("a.zip", b"zipbytes", "application/zip")],
    )


def test_send_posts_resend_payload():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "msg_1"})

    result = asyncio.run(_mailer(handler).send(_message()))
    assert result == {"success": True, "message_id": "msg_1", "error": None,
                      "attempts": 1}
    req = seen[0]
    assert str(req.url) == "https://mail.test/emails"
    assert req.headers["authorization"] == "Bearer re_test"
    body = json.loads(req.content)
    assert body["from"] == "from@test"
    assert body["reply_to"] == "help@test"
    assert base64.b64decode(body["attachments"][0]["content"]) == b"zipbytes"


def test_retry_until_success():
    statuses = iter([500, 502, 200])

    def handler(request):
        status = next(statuses)
        return httpx.Response(status, json={"id": "msg_3"})

    result = asyncio.run(send_with_retry(
        _mailer(handler), _message(), max_attempts=3, delay_seconds=0,
    ))
    assert result["success"] is True
    assert result["attempts"] == 3


def test_retry_gives_up():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    result = asyncio.run(send_with_retry(
        _mailer(handler), _message(), max_attempts=2, delay_seconds=0,
    ))
    assert result["success"] is False
    assert result["attempts"] == 2
    assert "down" in result["error"]


def test_missing_key_never_raises():
    result = asyncio.run(_mailer(lambda r: httpx.Response(200),
                                 api_key="").send(_message()))
    assert result["success"] is False
