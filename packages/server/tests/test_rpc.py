"""
RPC layer tests: command catalogue, dispatcher error mapping and the Redis
request/reply transport with a mocked client.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from app.core.errors import NotFoundError, ServiceUnavailableError
from app.rpc.dispatcher import HANDLERS, Dispatcher, check_exhaustive
from app.rpc.transport import (
    REPLY_TTL_SECONDS,
    LocalRpcClient,
    RedisRpcClient,
    RedisRpcServer,
    build_rpc_client,
)
from credhub_shared.schemas import commands as c
from credhub_shared.schemas.commands import COMMAND_TYPES, RpcReply, RpcRequest, command_adapter


@pytest.fixture
async def dispatcher(services, session_factory, session):
    # session seeds the role catalog and commits before any command runs
    return Dispatcher(services, session_factory)


class TestCommandCatalogue:
    def test_every_command_has_a_handler(self):
        assert set(HANDLERS) == set(COMMAND_TYPES)

    def test_missing_handler_is_detected(self):
        partial = {k: v for k, v in HANDLERS.items() if k is not c.GetOrganization}
        with pytest.raises(RuntimeError, match="GetOrganization"):
            check_exhaustive(partial)

    def test_cmd_discriminator(self):
        command = command_adapter.validate_python({"cmd": "check-user-exist", "email": "a@example.com"})
        assert isinstance(command, c.CheckUserExists)
        assert command.service == "user"

    def test_unknown_cmd_is_rejected(self):
        with pytest.raises(PydanticValidationError):
            command_adapter.validate_python({"cmd": "drop-everything"})

    def test_commands_are_unique_on_the_wire(self):
        names = [t.model_fields["cmd"].default for t in COMMAND_TYPES]
        assert len(names) == len(set(names))


class TestDispatcher:
    async def test_success_reply_is_json_ready(self, dispatcher):
        reply = await dispatcher.reply("req-1", c.CheckUserExists(email="nobody@example.com"))

        assert reply.error is None
        assert reply.data == {"exists": False, "is_email_verified": False, "is_registered": False}

    async def test_platform_error_keeps_status(self, dispatcher):
        reply = await dispatcher.reply("req-1", c.GetOrganization(org_id=uuid.uuid4()))

        assert reply.data is None
        assert (reply.error.status_code, reply.error.message) == (404, "Organization not found")

    async def test_unexpected_error_is_generic(self, dispatcher, services, monkeypatch):
        monkeypatch.setattr(
            services.users, "check_user_exists", AsyncMock(side_effect=RuntimeError("db password in here"))
        )

        reply = await dispatcher.reply("req-1", c.CheckUserExists(email="a@example.com"))

        assert (reply.error.status_code, reply.error.message) == (500, "Internal server error")


class TestLocalRpcClient:
    async def test_returns_data(self, dispatcher):
        client = LocalRpcClient(dispatcher)

        assert (await client.send(c.CheckUserExists(email="a@example.com")))["exists"] is False

    async def test_reraises_errors(self, dispatcher):
        client = LocalRpcClient(dispatcher)

        with pytest.raises(NotFoundError, match="Organization not found"):
            await client.send(c.GetOrganization(org_id=uuid.uuid4()))

    async def test_close_releases_clients(self, dispatcher, keycloak, mailer):
        await LocalRpcClient(dispatcher).close()

        keycloak.close.assert_awaited_once()
        mailer.close.assert_awaited_once()


def _redis_with_pipeline():
    pipe = MagicMock()
    pipe.execute = AsyncMock()
    client = MagicMock()
    client.pipeline.return_value.__aenter__.return_value = pipe
    client.rpush = AsyncMock()
    client.blpop = AsyncMock()
    return client, pipe


class TestRedisTransport:
    async def test_client_enqueues_on_service_queue(self):
        client, _ = _redis_with_pipeline()
        client.blpop.return_value = ("key", RpcReply(request_id="x", data={"exists": True}).model_dump_json())

        result = await RedisRpcClient(client, reply_timeout_seconds=5).send(c.CheckUserExists(email="a@example.com"))

        assert result == {"exists": True}
        queue, payload = client.rpush.await_args.args
        assert queue == "ch:rpc:requests:user"
        request = RpcRequest.model_validate_json(payload)
        assert request.reply_to == f"ch:rpc:reply:{request.request_id}"
        assert client.blpop.await_args.kwargs["timeout"] == 5

    async def test_client_raises_forwarded_error(self):
        client, _ = _redis_with_pipeline()
        client.blpop.return_value = (
            "key",
            RpcReply(request_id="x", error={"status_code": 404, "message": "Organization not found"}).model_dump_json(),
        )

        with pytest.raises(NotFoundError):
            await RedisRpcClient(client, 5).send(c.GetOrganization(org_id=uuid.uuid4()))

    async def test_client_timeout(self):
        client, _ = _redis_with_pipeline()
        client.blpop.return_value = None

        with pytest.raises(ServiceUnavailableError, match="did not respond"):
            await RedisRpcClient(client, 1).send(c.GetPlatformSettings())

    async def test_server_replies_with_ttl(self, dispatcher):
        client, pipe = _redis_with_pipeline()
        server = RedisRpcServer(client, dispatcher, ["user"])
        raw = RpcRequest(
            request_id="req-7", reply_to="ch:rpc:reply:req-7", command=c.CheckUserExists(email="a@example.com")
        ).model_dump_json()

        reply = await server.handle_raw(raw)

        assert reply.request_id == "req-7"
        key, body = pipe.rpush.call_args.args
        assert key == "ch:rpc:reply:req-7"
        assert RpcReply.model_validate_json(body).data["exists"] is False
        pipe.expire.assert_called_once_with("ch:rpc:reply:req-7", REPLY_TTL_SECONDS)
        pipe.execute.assert_awaited_once()

    async def test_server_drops_malformed_requests(self, dispatcher):
        client, pipe = _redis_with_pipeline()
        server = RedisRpcServer(client, dispatcher, ["user"])

        assert await server.handle_raw('{"request_id": "x"}') is None
        client.pipeline.assert_not_called()


class TestBuildRpcClient:
    def test_local_by_default(self, settings, session_factory):
        assert isinstance(build_rpc_client(settings, session_factory), LocalRpcClient)

    def test_redis_needs_a_client(self, settings, session_factory):
        settings.rpc_transport = "redis"

        with pytest.raises(ValueError):
            build_rpc_client(settings, session_factory)
        assert isinstance(build_rpc_client(settings, session_factory, MagicMock()), RedisRpcClient)
