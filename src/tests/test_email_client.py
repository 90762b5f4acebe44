import json
import pytest
import httpx
from bookhive.config import settings
from bookhive.email.client import EmailDeliveryError, GraphClient, LogMailer, build_mailer

pytestmark = pytest.mark.asyncio

class FakeGraph:
    """Answers the token endpoint and sendMail the way Microsoft Graph does."""

    def __init__(self, send_status: int = 202, expires_in: int = 3600):
        self.send_status = send_status
        self.expires_in = expires_in
        self.token_calls = 0
        self.mails = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if "/oauth2/" in request.url.path:
            self.token_calls += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_calls}", "expires_in": self.expires_in})
        self.mails.append({
            "path": request.url.path,
            "auth": request.headers.get("authorization"),
            "body": json.loads(request.content),
        })
        return httpx.Response(self.send_status)

def _client(graph: FakeGraph) -> GraphClient:
    return GraphClient(
        tenant_id="tenant-1", client_id="client-1", client_secret="shh", user_upn="library@example.com",
        http=httpx.AsyncClient(transport=httpx.MockTransport(graph)),
    )

async def test_graph_send_builds_sendmail_payload():
    graph = FakeGraph()
    client = _client(graph)
    email_id = await client.send(to="reader@example.com", subject="Due soon", html="<p>Hi</p>")
    await client.aclose()

    assert email_id.startswith("graph_")
    assert len(graph.mails) == 1
    mail = graph.mails[0]
    assert mail["path"] == "/v1.0/users/library@example.com/sendMail"
    assert mail["auth"] == "Bearer tok-1"
    message = mail["body"]["message"]
    assert message["subject"] == "Due soon"
    assert message["body"] == {"contentType": "HTML", "content": "<p>Hi</p>"}
    assert message["toRecipients"] == [{"emailAddress": {"address": "reader@example.com"}}]
    assert mail["body"]["saveToSentItems"] is True

async def test_graph_plain_text_body():
    graph = FakeGraph()
    client = _client(graph)
    await client.send(to="reader@example.com", subject="Note", text="plain words")
    await client.aclose()
    assert graph.mails[0]["body"]["message"]["body"] == {"contentType": "Text", "content": "plain words"}

async def test_graph_token_is_cached_until_near_expiry():
    graph = FakeGraph()
    client = _client(graph)
    await client.send(to="a@example.com", subject="1", text="x")
    await client.send(to="b@example.com", subject="2", text="y")
    assert graph.token_calls == 1
    assert [m["auth"] for m in graph.mails] == ["Bearer tok-1", "Bearer tok-1"]
    await client.aclose()

    # a token inside the one-minute safety margin is fetched again
    short = FakeGraph(expires_in=30)
    client = _client(short)
    await client.send(to="a@example.com", subject="1", text="x")
    await client.send(to="b@example.com", subject="2", text="y")
    await client.aclose()
    assert short.token_calls == 2

async def test_graph_server_error_raises_delivery_error():
    graph = FakeGraph(send_status=500)
    client = _client(graph)
    with pytest.raises(EmailDeliveryError):
        await client.send(to="reader@example.com", subject="Due soon", text="x")
    await client.aclose()

async def test_graph_token_failure_raises_delivery_error():
    def deny(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    client = GraphClient(
        tenant_id="t", client_id="c", client_secret="s", user_upn="u@example.com",
        http=httpx.AsyncClient(transport=httpx.MockTransport(deny)),
    )
    with pytest.raises(EmailDeliveryError):
        await client.send(to="reader@example.com", subject="x", text="x")
    await client.aclose()

async def test_log_mailer_returns_an_id():
    email_id = await LogMailer().send(to="reader@example.com", subject="Hi", text="Hello")
    assert email_id.startswith("email_")

async def test_build_mailer_falls_back_without_graph_credentials(monkeypatch):
    monkeypatch.setattr(settings, "EMAIL_BACKEND", "graph")
    monkeypatch.setattr(settings, "GRAPH_TENANT_ID", "tenant-1")
    monkeypatch.setattr(settings, "GRAPH_CLIENT_ID", "client-1")
    monkeypatch.setattr(settings, "GRAPH_CLIENT_SECRET", None)
    monkeypatch.setattr(settings, "GRAPH_USER_UPN", "library@example.com")
    assert isinstance(build_mailer(settings), LogMailer)

    monkeypatch.setattr(settings, "GRAPH_CLIENT_SECRET", "shh")
    mailer = build_mailer(settings)
    assert isinstance(mailer, GraphClient)
    assert mailer.token_url == "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
    await mailer.aclose()

    monkeypatch.setattr(settings, "EMAIL_BACKEND", "log")
    assert isinstance(build_mailer(settings), LogMailer)
