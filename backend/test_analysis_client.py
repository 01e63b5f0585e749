import asyncio

import httpx
import jwt
import pytest

from analysis_client import AnalysisClient
from errors import AnalysisError

SECRET = "test-private-key"


def make_client(handler):
    return AnalysisClient(
        private_key=SECRET,
        org_id="org-123",
        api_url="https://analysis.example",
        transport=httpx.MockTransport(handler)
    )


def test_fetch_analysis_returns_structured_report():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["token"] = request.headers["Authorization"].removeprefix("Bearer ")
        return httpx.Response(200, json={
            "id": "call-1",
            "transcript": "AI: Hello\nUser: Hi",
            "analysis": {"structuredData": {"overallScore": 7}, "summary": "Solid opening."},
        })

    report = asyncio.run(make_client(handler).fetch_analysis("call-1"))

    assert seen["path"] == "/call/call-1"
    claims = jwt.decode(seen["token"], SECRET, algorithms=["HS256"])
    assert claims["orgId"] == "org-123"
    assert claims["token"] == {"tag": "private"}
    assert report.structured_report == {"overallScore": 7}
    assert report.transcript_text.startswith("AI: Hello")
    assert report.summary == "Solid opening."


def test_missing_analysis_is_not_an_error():
    client = make_client(lambda request: httpx.Response(200, json={"id": "call-2"}))
    report = asyncio.run(client.fetch_analysis("call-2"))

    assert report.structured_report is None
    assert report.transcript_text == ""


def test_http_error_raises_analysis_error():
    client = make_client(lambda request: httpx.Response(404, json={"message": "Not Found"}))

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(client.fetch_analysis("missing"))
    assert exc_info.value.status_code == 502
    assert "404" in str(exc_info.value)


def test_network_error_raises_analysis_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(AnalysisError):
        asyncio.run(make_client(handler).fetch_analysis("call-3"))


def test_missing_key_is_reported():
    client = AnalysisClient(private_key="")

    assert not client.enabled
    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(client.fetch_analysis("call-4"))
    assert exc_info.value.status_code == 503
