"""
Unit tests for the HTTP environment client
"""

import pytest
import httpx
from core.exceptions import (
    AuthenticationError,
    MissingCredentialsError,
    PermanentClientError,
    TransientClientError,
)
from engine.client import KeyFilter
from engine.credentials import InMemoryCredentials
from engine.http_client import HTTPEnvironmentClient, http_client_factory
from models.environment import Environment


def make_environment():
    return Environment(
        id="prod", name="Production", base_url="https://crm.example.com/", username="admin"
    )


class FakeServer:
    """Routes requests to canned responses and records what it saw"""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.requests = []
        self.token_requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"token-{self.token_requests}"})

        self.requests.append(request)
        return self.responses.pop(0)


def make_client(server):
    return HTTPEnvironmentClient(make_environment(), "secret", transport=httpx.MockTransport(server))


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_token_sent_as_bearer(self):
        server = FakeServer([httpx.Response(200, json=[])])
        client = make_client(server)

        await client.page_entity_rows("Contact", None)

        assert server.token_requests == 1
        assert server.requests[0].headers["Authorization"] == "Bearer token-1"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_reauthenticates_once_on_401(self):
        server = FakeServer([httpx.Response(401), httpx.Response(200, json=[])])
        client = make_client(server)

        await client.page_entity_rows("Contact", None)

        assert server.token_requests == 2
        assert server.requests[1].headers["Authorization"] == "Bearer token-2"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_second_401_raises_authentication_error(self):
        server = FakeServer([httpx.Response(401), httpx.Response(401)])
        client = make_client(server)

        with pytest.raises(AuthenticationError):
            await client.page_entity_rows("Contact", None)
        await client.aclose()

    @pytest.mark.asyncio
    async def test_rejected_credentials(self):
        def handler(request):
            return httpx.Response(400, json={"error": "invalid_grant"})

        client = HTTPEnvironmentClient(make_environment(), "wrong", transport=httpx.MockTransport(handler))

        with pytest.raises(AuthenticationError) as exc_info:
            await client.list_entity_fields("Contact")

        assert exc_info.value.status_code == 400
        await client.aclose()


class TestErrorClassification:

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient_with_retry_after(self):
        server = FakeServer([httpx.Response(429, headers={"Retry-After": "3"})])
        client = make_client(server)

        with pytest.raises(TransientClientError) as exc_info:
            await client.write_entity_row("Contact", {"Name": "Ada"})

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after == 3.0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self):
        client = make_client(FakeServer([httpx.Response(503)]))

        with pytest.raises(TransientClientError):
            await client.write_entity_row("Contact", {"Name": "Ada"})
        await client.aclose()

    @pytest.mark.asyncio
    async def test_validation_rejection_is_permanent(self):
        client = make_client(FakeServer([httpx.Response(400, json={"Message": "Name is required"})]))

        with pytest.raises(PermanentClientError) as exc_info:
            await client.write_entity_row("Contact", {})

        assert not isinstance(exc_info.value, TransientClientError)
        assert "Name is required" in exc_info.value.context["response_body"]
        await client.aclose()

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        def handler(request):
            if request.url.path == "/token":
                return httpx.Response(200, json={"access_token": "t"})
            raise httpx.ConnectError("connection refused", request=request)

        client = HTTPEnvironmentClient(make_environment(), "secret", transport=httpx.MockTransport(handler))

        with pytest.raises(TransientClientError):
            await client.page_entity_rows("Contact", None)
        await client.aclose()


class TestEntityApi:

    @pytest.mark.asyncio
    async def test_paged_envelope(self):
        envelope = {
            "Items": {"$values": [{"Id": 1}, {"Id": 2}]},
            "HasNext": True,
            "NextOffset": 2,
            "TotalCount": 5,
        }
        server = FakeServer([httpx.Response(200, json=envelope)])
        client = make_client(server)

        page = await client.page_entity_rows("Contact", None, page_size=2)

        assert page.rows == [{"Id": 1}, {"Id": 2}]
        assert page.next_page_token == "2"
        assert page.total_count == 5
        assert server.requests[0].url.params["limit"] == "2"
        assert server.requests[0].url.params["offset"] == "0"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_last_page_has_no_token(self):
        envelope = {"Items": {"$values": [{"Id": 5}]}, "HasNext": False, "TotalCount": 5}
        client = make_client(FakeServer([httpx.Response(200, json=envelope)]))

        page = await client.page_entity_rows("Contact", "4", page_size=2)

        assert page.next_page_token is None
        await client.aclose()

    @pytest.mark.asyncio
    async def test_key_filter_parameter(self):
        server = FakeServer([httpx.Response(200, json=[])])
        client = make_client(server)

        await client.page_entity_rows("Contact", None, key_filter=KeyFilter("ContactId", {"7", "3"}))

        assert server.requests[0].url.params["ContactId"] == "in:3|7"
        await client.aclose()

    @pytest.mark.asyncio
    async def test_write_returns_identity(self):
        body = {"Identity": {"IdentityElements": {"$values": ["1001"]}}}
        server = FakeServer([httpx.Response(201, json=body)])
        client = make_client(server)

        receipt = await client.write_entity_row("Contact", {"Name": "Ada"})

        assert receipt.identity == ["1001"]
        sent = server.requests[0]
        assert sent.method == "POST"
        assert sent.url.path == "/api/Contact"
        assert b'"$type": "ContactData"' in sent.content or b'"$type":"ContactData"' in sent.content
        await client.aclose()

    @pytest.mark.asyncio
    async def test_list_entity_fields(self):
        definition = {"Properties": {"$values": [{"Name": "Id"}, {"Name": "Email"}]}}
        client = make_client(FakeServer([httpx.Response(200, json=definition)]))

        assert await client.list_entity_fields("Contact") == ["Id", "Email"]
        await client.aclose()


class TestClientFactory:

    @pytest.mark.asyncio
    async def test_missing_password_raises(self):
        factory = http_client_factory(InMemoryCredentials())

        with pytest.raises(MissingCredentialsError):
            await factory(make_environment())

    @pytest.mark.asyncio
    async def test_builds_client_with_password(self):
        factory = http_client_factory(InMemoryCredentials({"prod": "secret"}))

        client = await factory(make_environment())

        assert isinstance(client, HTTPEnvironmentClient)
        assert client.base_url == "https://crm.example.com"
        await client.aclose()
