"""
tests.test_chat_replicator
~~~~~~~~~~~~~~~~~~~~~~~~~~

ChatReplicator 单元测试。
"""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from peerwatch.core.errors import NotConnectedError, TransportError
from peerwatch.schemas.messages import ChatHistoryMessage, ChatMessage, ChatPostMessage, PeerUser
from peerwatch.services.chat_replicator import ChatReplicator


def make_endpoint(ready: bool = True, peers: int = 1) -> MagicMock:
    endpoint = MagicMock()
    endpoint.is_ready = ready
    endpoint.peer_count = peers
    endpoint.user = PeerUser(name="Alice")
    endpoint.send = AsyncMock()
    return endpoint


def history(*contents: str) -> ChatHistoryMessage:
    ts = datetime(2026, 1, 1, tzinfo=timezone.utc)
    return ChatHistoryMessage(
        messages=[ChatMessage(sender="Bob", content=c, timestamp=ts) for c in contents],
    )


class TestPost:
    @pytest.mark.asyncio
    async def test_post_requires_open_endpoint(self) -> None:
        chat = ChatReplicator(make_endpoint(ready=False))
        with pytest.raises(NotConnectedError):
            await chat.post("hello")
        assert chat.messages == []

    @pytest.mark.asyncio
    async def test_post_appends_and_broadcasts(self) -> None:
        endpoint = make_endpoint()
        chat = ChatReplicator(endpoint)

        message = await chat.post("hello")

        assert chat.messages == [message]
        assert message.sender == "Alice"
        wire = endpoint.send.await_args.args[0]
        assert isinstance(wire, ChatPostMessage)
        assert wire.content == "hello"
        assert wire.timestamp == message.timestamp

    @pytest.mark.asyncio
    async def test_post_alone_is_local_only(self) -> None:
        endpoint = make_endpoint(peers=0)
        chat = ChatReplicator(endpoint)

        await chat.post("anyone?")

        endpoint.send.assert_not_awaited()
        assert len(chat.messages) == 1

    @pytest.mark.asyncio
    async def test_send_failure_keeps_local_copy(self) -> None:
        endpoint = make_endpoint()
        endpoint.send.side_effect = TransportError("link down")
        chat = ChatReplicator(endpoint)

        await chat.post("still here")

        assert [m.content for m in chat.messages] == ["still here"]

    @pytest.mark.asyncio
    async def test_set_sender_applies_to_new_messages(self) -> None:
        chat = ChatReplicator(make_endpoint(peers=0))
        await chat.post("one")
        chat.set_sender("Carol")
        await chat.post("two")

        assert [m.sender for m in chat.messages] == ["Alice", "Carol"]


class TestReplication:
    @pytest.mark.asyncio
    async def test_remote_chat_is_appended_in_arrival_order(self) -> None:
        chat = ChatReplicator(make_endpoint())
        await chat.handle_message(ChatPostMessage(sender="Bob", content="first"), "peer-b")
        await chat.handle_message(ChatPostMessage(sender="Bob", content="first"), "peer-b")
        await chat.handle_message(ChatPostMessage(sender="Bob", content="second"), "peer-b")

        assert [m.content for m in chat.messages] == ["first", "first", "second"]
        assert all(m.timestamp is not None for m in chat.messages)

    @pytest.mark.asyncio
    async def test_first_history_snapshot_wins(self) -> None:
        chat = ChatReplicator(make_endpoint())

        await chat.handle_message(history("a", "b"), "peer-b")
        await chat.handle_message(history("x"), "peer-c")

        assert [m.content for m in chat.messages] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_history_ignored_when_log_not_empty(self) -> None:
        chat = ChatReplicator(make_endpoint(peers=0))
        await chat.post("mine")

        await chat.handle_message(history("theirs"), "peer-b")

        assert [m.content for m in chat.messages] == ["mine"]

    @pytest.mark.asyncio
    async def test_history_sent_to_new_peer_only_when_non_empty(self) -> None:
        endpoint = make_endpoint()
        chat = ChatReplicator(endpoint)

        await chat.on_peer_connected("peer-b")
        endpoint.send.assert_not_awaited()

        await chat.post("hello")
        endpoint.send.reset_mock()
        await chat.on_peer_connected("peer-c")

        snapshot = endpoint.send.await_args.args[0]
        assert isinstance(snapshot, ChatHistoryMessage)
        assert [m.content for m in snapshot.messages] == ["hello"]
        assert endpoint.send.await_args.kwargs["to"] == "peer-c"
