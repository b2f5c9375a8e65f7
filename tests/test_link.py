"""
Tests for the link engine.

Tests cover:
- Handshake between two links over an in-process pipe
- Round trips in all call styles
- Error propagation and unknown capabilities
- listen/ignore bookkeeping
- destroy(), on_destroy(), on_ready()
- Logger and promise-library replacement
- Error reports between peers
- Ack timeouts and handshake failure
"""

import asyncio
import json
import sys
import os
from unittest.mock import Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import pytest

from duplexrpc import (
    AckTimeoutError,
    HandshakeError,
    LinkDestroyedError,
    LinkState,
    LogEvent,
    RemoteCallError,
    create,
    create_pipe,
)
from duplexrpc.core.logging import LOGGER_METHODS
from duplexrpc.core.promise import AsyncioPromiseLib


def mock_logger():
    """Logger double with the link contract methods; unsafe allows assert_."""
    return Mock(spec=list(LOGGER_METHODS), unsafe=True)


class RecordingTransport:
    """Transport that records what the link emits; the test plays the peer."""

    def __init__(self):
        self.handler = None
        self.sent = []
        self.off_calls = 0

    def as_config(self):
        return {"on": self.on, "emit": self.emit, "off": self.off}

    def on(self, handler):
        self.handler = handler

    def emit(self, raw):
        self.sent.append(raw)

    def off(self):
        self.off_calls += 1

    def deliver(self, message):
        self.handler(message if isinstance(message, str) else json.dumps(message))

    def messages(self, type=None):
        decoded = [json.loads(raw) for raw in self.sent]
        if type is None:
            return decoded
        return [message for message in decoded if message["type"] == type]


async def settle(turns=20):
    """Let queued loopback deliveries run."""
    for _ in range(turns):
        await asyncio.sleep(0)


async def make_pair(server_local=None, descriptor=None, server_options=None, client_options=None):
    left, right = create_pipe()
    server = create(
        {**left.as_config(), **(server_options or {})},
        local=server_local,
        descriptor=descriptor,
    )
    client = create({**right.as_config(), **(client_options or {})})
    await asyncio.wait_for(asyncio.gather(server.ready, client.ready), 1.0)
    return server, client


async def close(*links):
    for link in links:
        await link.destroy("test over")


class TestHandshake:
    """Test capability exchange."""

    @pytest.mark.asyncio
    async def test_both_sides_become_ready(self):
        server, client = await make_pair({"math": {"add": lambda a, b: a + b}})

        assert server.state is LinkState.READY
        assert client.state is LinkState.READY
        assert client.ready.result() is client.remote
        assert sorted(client.remote.paths()) == ["math.add"]
        assert list(server.remote.paths()) == []

        await close(server, client)

    @pytest.mark.asyncio
    async def test_both_sides_expose(self):
        left, right = create_pipe()
        a = create(left.as_config(), local={"ping": lambda: "from a"})
        b = create(right.as_config(), local={"ping": lambda: "from b"})
        await asyncio.wait_for(asyncio.gather(a.ready, b.ready), 1.0)

        assert await a.remote.ping() == "from b"
        assert await b.remote.ping() == "from a"

        await close(a, b)

    @pytest.mark.asyncio
    async def test_expose_message_shape(self):
        transport = RecordingTransport()
        link = create(transport.as_config(), local={"a": {"b": len}})
        await settle()

        expose = transport.messages("expose")[0]
        assert expose["payload"] == {"a": {"b": "promise"}}
        assert isinstance(expose["uid"], str)

        await link.destroy()

    @pytest.mark.asyncio
    async def test_peer_expose_is_echoed_under_its_uid(self):
        transport = RecordingTransport()
        link = create(transport.as_config(), local={"f": len})

        transport.deliver({"type": "expose", "uid": "peer-1", "payload": {"g": "invoke"}})

        echoes = [m for m in transport.messages("expose") if m["uid"] == "peer-1"]
        assert len(echoes) == 1
        assert echoes[0]["payload"] == {"f": "promise"}
        assert link.state is LinkState.READY
        assert link.remote.g.style == "invoke"

        await link.destroy()

    @pytest.mark.asyncio
    async def test_own_uid_is_an_ack(self):
        transport = RecordingTransport()
        link = create(transport.as_config())
        await settle()
        own_uid = transport.messages("expose")[0]["uid"]
        sent_before = len(transport.sent)

        transport.deliver({"type": "expose", "uid": own_uid, "payload": {}})

        assert len(transport.sent) == sent_before
        assert link.state is LinkState.READY
        assert own_uid not in link._expose_uids

        await link.destroy()

    @pytest.mark.asyncio
    async def test_handshake_failure(self):
        transport = RecordingTransport()
        logger = mock_logger()
        link = create(
            {
                **transport.as_config(),
                "create_retry": 2,
                "create_wait": 0.001,
                "create_retry_curve": "flat",
                "logger": logger,
            }
        )

        with pytest.raises(HandshakeError):
            await asyncio.wait_for(link.ready, 1.0)

        assert len(transport.messages("expose")) == 3
        events = [c[0][0] for c in logger.error.call_args_list]
        assert LogEvent.HANDSHAKE_FAILED in events
        assert link.metrics.snapshot().handshake_attempts == 3

        await link.destroy()

    @pytest.mark.asyncio
    async def test_retry_recovers_lost_handshake(self):
        left, right = create_pipe()
        loop = asyncio.get_running_loop()

        def late_on(handler):
            loop.call_later(0.03, right.on, handler)

        server = create(left.as_config(), local={"f": lambda: "ok"})
        client = create(
            {
                **right.as_config(),
                "on": late_on,
                "create_wait": 0.01,
                "create_retry_curve": "flat",
            }
        )

        await asyncio.wait_for(asyncio.gather(server.ready, client.ready), 1.0)

        assert client.metrics.snapshot().handshake_attempts > 1
        assert await client.remote.f() == "ok"

        await close(server, client)

    @pytest.mark.asyncio
    async def test_late_expose_extends_tree(self):
        server, client = await make_pair({"a": lambda: 1})

        server.expose({"b": lambda: 2})
        await settle()

        assert await client.remote.b() == 2
        assert sorted(client.remote.paths()) == ["a", "b"]

        await close(server, client)

    def test_requires_running_loop(self):
        transport = RecordingTransport()

        with pytest.raises(RuntimeError):
            create(transport.as_config())


class TestCallStyles:
    """Test round trips in every call style."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [0, -7, 3.5, "text", "", True, False, None, [1, "a", [True]]])
    async def test_invoke_round_trip(self, value):
        server, client = await make_pair({"echo": lambda x: x})

        assert await client.remote.echo.invoke(value) == value

        await close(server, client)

    @pytest.mark.asyncio
    async def test_invoke_with_several_args(self):
        server, client = await make_pair({"math": {"add": lambda a, b: a + b}})

        results = await asyncio.gather(
            *(client.remote.math.add.invoke(i, i) for i in range(10))
        )

        assert results == [i * 2 for i in range(10)]

        await close(server, client)

    @pytest.mark.asyncio
    async def test_invoke_error(self):
        def explode():
            raise ValueError("boom")

        server, client = await make_pair({"explode": explode})

        with pytest.raises(RemoteCallError) as exc_info:
            await client.remote.explode.invoke()

        assert str(exc_info.value) == "boom"
        assert exc_info.value.name == "ValueError"
        assert exc_info.value.remote_stack is None

        await close(server, client)

    @pytest.mark.asyncio
    async def test_stack_trace_when_enabled(self):
        def explode():
            raise ValueError("boom")

        server, client = await make_pair(
            {"explode": explode}, server_options={"enable_stack_trace": True}
        )

        with pytest.raises(RemoteCallError) as exc_info:
            await client.remote.explode()

        assert "Traceback" in exc_info.value.remote_stack

        await close(server, client)

    @pytest.mark.asyncio
    async def test_promise_coroutine(self):
        async def fetch(key):
            await asyncio.sleep(0)
            return {"key": key}

        async def broken():
            await asyncio.sleep(0)
            raise KeyError("missing")

        server, client = await make_pair({"fetch": fetch, "broken": broken})

        assert await client.remote.fetch.promise("k") == {"key": "k"}
        with pytest.raises(RemoteCallError) as exc_info:
            await client.remote.broken.promise()
        assert "missing" in str(exc_info.value)
        assert exc_info.value.name == "KeyError"

        await close(server, client)

    @pytest.mark.asyncio
    async def test_callback(self):
        def echo(p1, next):
            next(None, p1)

        def fail(next):
            next(Exception("x"))

        server, client = await make_pair({"echo": echo, "fail": fail})

        assert await client.remote.echo.callback("hi") == ["hi"]
        with pytest.raises(RemoteCallError) as exc_info:
            await client.remote.fail.callback()
        assert str(exc_info.value) == "x"

        await close(server, client)

    @pytest.mark.asyncio
    async def test_callback_coroutine(self):
        async def read(name, done):
            await asyncio.sleep(0)
            done(None, name.upper())

        async def broken(done):
            await asyncio.sleep(0)
            raise OSError("disk gone")

        server, client = await make_pair({"read": read, "broken": broken})

        assert await asyncio.wait_for(client.remote.read.callback("hi"), 1.0) == ["HI"]
        with pytest.raises(RemoteCallError) as exc_info:
            await asyncio.wait_for(client.remote.broken.callback(), 1.0)
        assert exc_info.value.name == "OSError"
        assert str(exc_info.value) == "disk gone"

        await close(server, client)

    @pytest.mark.asyncio
    async def test_callback_multiple_values(self):
        server, client = await make_pair({"pair": lambda next: next(None, 1, 2)})

        assert await client.remote.pair.callback() == [1, 2]

        await close(server, client)

    @pytest.mark.asyncio
    async def test_callback_called_twice_warns(self):
        logger = mock_logger()

        def twice(next):
            next(None, 1)
            next(None, 2)

        server, client = await make_pair(
            {"twice": twice}, server_options={"logger": logger}
        )

        assert await client.remote.twice.callback() == [1]
        assert logger.warn.call_args[0][0] is LogEvent.CALLBACK_REPEATED

        await close(server, client)

    @pytest.mark.asyncio
    async def test_default_style_from_descriptor(self):
        def read(name, done):
            done(None, name.upper())

        server, client = await make_pair({"read": read}, descriptor={"read": "callback"})

        assert client.remote.read.style == "callback"
        assert await client.remote.read("a") == ["A"]

        await close(server, client)

    @pytest.mark.asyncio
    async def test_unknown_capability(self):
        logger = mock_logger()
        server, client = await make_pair(
            {}, descriptor={"later": "promise"}, server_options={"logger": logger}
        )

        with pytest.raises(RemoteCallError, match="no such capability"):
            await client.remote.later()

        assert logger.error.call_args[0][0] is LogEvent.CAPABILITY_MISSING

        await close(server, client)

    @pytest.mark.asyncio
    async def test_unserializable_result(self):
        logger = mock_logger()
        server, client = await make_pair(
            {"weird": lambda: object()}, server_options={"logger": logger}
        )

        with pytest.raises(RemoteCallError):
            await client.remote.weird()

        assert logger.error.call_args_list[0][0][0] is LogEvent.SERIALIZATION_FAILED

        await close(server, client)


class TestListen:
    """Test listen/ignore."""

    async def make_events(self):
        subscribers = {}
        subscribed = asyncio.Event()

        def subscribe(name, notify):
            subscribers[name] = notify
            subscribed.set()

        server, client = await make_pair(
            {"events": {"subscribe": subscribe}},
            descriptor={"events": {"subscribe": "listen"}},
        )
        return server, client, subscribers, subscribed

    @pytest.mark.asyncio
    async def test_listen_and_ignore(self):
        server, client, subscribers, subscribed = await self.make_events()
        received = asyncio.Queue()
        before = (client.status().result_callbacks, server.status().listener_ids)

        listener_id = client.remote.events.subscribe.listen(
            "tick", lambda *data: received.put_nowait(data)
        )
        assert listener_id
        await asyncio.wait_for(subscribed.wait(), 1.0)

        assert client.status().result_callbacks == before[0] + 1
        assert server.status().listener_ids == before[1] + 1

        notify = subscribers["tick"]
        assert notify("a", 1) is True
        assert notify("b", 2) is True
        assert await asyncio.wait_for(received.get(), 1.0) == ("a", 1)
        assert await asyncio.wait_for(received.get(), 1.0) == ("b", 2)

        assert await client.remote.events.subscribe.ignore(listener_id) is True

        assert notify("late") is False
        await settle()
        assert received.empty()
        assert client.status().result_callbacks == before[0]
        assert server.status().listener_ids == before[1]

        await close(server, client)

    @pytest.mark.asyncio
    async def test_ignore_unknown_listener(self):
        server, client, _, _ = await self.make_events()

        assert await client.remote.events.subscribe.ignore("nobody") is False

        await close(server, client)

    @pytest.mark.asyncio
    async def test_listen_via_default_style(self):
        server, client, subscribers, subscribed = await self.make_events()
        received = []

        listener_id = client.remote.events.subscribe("tick", received.append)
        await asyncio.wait_for(subscribed.wait(), 1.0)
        subscribers["tick"]("x")
        await settle()

        assert received == ["x"]
        assert listener_id in client._registry

        await close(server, client)

    @pytest.mark.asyncio
    async def test_listen_function_raises(self):
        def broken(notify):
            raise RuntimeError("cannot subscribe")

        server, client = await make_pair({"broken": broken})
        failures = asyncio.Queue()

        client.remote.broken.listen(Mock(), on_error=failures.put_nowait)
        error = await asyncio.wait_for(failures.get(), 1.0)

        assert isinstance(error, RemoteCallError)
        assert "cannot subscribe" in str(error)
        assert server.status().listener_ids == 0
        assert client.status().result_callbacks == 0

        await close(server, client)

    @pytest.mark.asyncio
    async def test_raising_event_handler_is_logged(self):
        logger = mock_logger()
        server, client, subscribers, subscribed = await self.make_events()
        client.set_logger(logger)

        def handler(*data):
            raise ValueError("bad handler")

        client.remote.events.subscribe.listen("tick", handler)
        await asyncio.wait_for(subscribed.wait(), 1.0)
        subscribers["tick"](1)
        await settle()

        logger.error.assert_called_once()
        assert logger.error.call_args[0][0] is LogEvent.LISTENER_ERROR

        await close(server, client)


class TestDestroy:
    """Test destroy() and on_destroy()."""

    @pytest.mark.asyncio
    async def test_destroy_rejects_pending_and_clears(self):
        async def hang():
            await asyncio.Event().wait()

        left, right = create_pipe()
        server = create(left.as_config(), local={"hang": hang})
        client = create(right.as_config(), local={"mine": len})
        await asyncio.wait_for(asyncio.gather(server.ready, client.ready), 1.0)

        on_destroy = Mock()
        client.on_destroy(on_destroy)
        pending = client.remote.hang()
        await settle()

        await client.destroy("bye")

        with pytest.raises(LinkDestroyedError, match="bye"):
            await pending
        assert client.state is LinkState.DESTROYED
        assert len(client.remote) == 0
        assert client.expose() == {}
        assert client.status().result_callbacks == 0
        assert right.closed
        on_destroy.assert_called_once_with("bye")

        await client.destroy("again")
        on_destroy.assert_called_once_with("bye")

        await server.destroy()

    @pytest.mark.asyncio
    async def test_calls_after_destroy_reject(self):
        server, client = await make_pair({"f": lambda: 1})
        proxy = client.remote.f

        await client.destroy("gone")

        with pytest.raises(LinkDestroyedError):
            await proxy()

        await server.destroy()

    @pytest.mark.asyncio
    async def test_messages_after_destroy_are_ignored(self):
        transport = RecordingTransport()
        logger = mock_logger()
        link = create({**transport.as_config(), "logger": logger})
        await link.destroy()
        logger.reset_mock()

        transport.deliver("someData")
        transport.deliver({"type": "expose", "uid": "x", "payload": {"f": "promise"}})

        logger.error.assert_not_called()
        assert len(link.remote) == 0
        assert transport.off_calls == 1

    @pytest.mark.asyncio
    async def test_on_destroy_unregister_and_errors(self):
        transport = RecordingTransport()
        logger = mock_logger()
        link = create({**transport.as_config(), "logger": logger})
        kept, dropped = Mock(), Mock()

        link.on_destroy(Mock(side_effect=RuntimeError("cb failed")))
        link.on_destroy(kept)
        unregister = link.on_destroy(dropped)
        unregister()

        await link.destroy("why")

        kept.assert_called_once_with("why")
        dropped.assert_not_called()
        events = [c[0][0] for c in logger.error.call_args_list]
        assert LogEvent.DESTROY_CALLBACK_ERROR in events

    @pytest.mark.asyncio
    async def test_on_destroy_after_destroy_runs_immediately(self):
        transport = RecordingTransport()
        link = create(transport.as_config())
        await link.destroy("done")
        callback = Mock()

        link.on_destroy(callback)

        callback.assert_called_once_with("done")

    @pytest.mark.asyncio
    async def test_async_off_is_awaited(self):
        transport = RecordingTransport()
        detached = []

        async def off():
            await asyncio.sleep(0)
            detached.append(True)

        link = create({"on": transport.on, "emit": transport.emit, "off": off})
        await link.destroy()

        assert detached == [True]

    @pytest.mark.asyncio
    async def test_ready_fails_on_destroy(self):
        transport = RecordingTransport()
        link = create(transport.as_config())

        async def wait_ready():
            return await link.ready

        waiter = asyncio.ensure_future(wait_ready())
        await asyncio.sleep(0)
        await link.destroy("gone")

        with pytest.raises(LinkDestroyedError, match="gone"):
            await waiter
        assert not waiter.cancelled()
        assert not link.ready.cancelled()

    @pytest.mark.asyncio
    async def test_context_manager(self):
        transport = RecordingTransport()

        async with create(transport.as_config()) as link:
            assert link.state is LinkState.HANDSHAKING

        assert link.state is LinkState.DESTROYED


class TestReadiness:
    """Test on_ready() and status().ready_queue."""

    @pytest.mark.asyncio
    async def test_on_ready_queue(self):
        transport = RecordingTransport()
        link = create(transport.as_config())
        callback = Mock()

        link.on_ready(callback)
        unregister = link.on_ready(Mock())
        unregister()

        assert link.status().ready_queue == 1

        transport.deliver({"type": "expose", "uid": "peer-1", "payload": {}})

        callback.assert_called_once_with(link.remote)
        assert link.status().ready_queue == 0

        await link.destroy()

    @pytest.mark.asyncio
    async def test_on_ready_when_already_ready(self):
        server, client = await make_pair()
        callback = Mock()

        client.on_ready(callback)

        callback.assert_called_once_with(client.remote)

        await close(server, client)


class TestLoggerAndPromiseLib:
    """Test set_logger() and set_promise_lib()."""

    @pytest.mark.asyncio
    async def test_set_logger(self):
        transport = RecordingTransport()
        first = mock_logger()
        link = create({**transport.as_config(), "logger": first})
        incomplete = Mock(spec=["log", "info", "warn", "error"])

        assert link.set_logger(incomplete) is False
        assert link.logger is first

        second = mock_logger()
        assert link.set_logger(second) is True
        assert link.logger is second

        transport.deliver("someData")
        second.error.assert_called_once()
        first.error.assert_not_called()

        await link.destroy()

    @pytest.mark.asyncio
    async def test_set_promise_lib(self):
        class CountingPromiseLib(AsyncioPromiseLib):
            def __init__(self):
                self.deferred = 0

            def defer(self):
                self.deferred += 1
                return super().defer()

        server, client = await make_pair({"f": lambda: 1})
        lib = CountingPromiseLib()

        client.set_promise_lib(lib)
        assert await client.remote.f() == 1
        assert lib.deferred == 1

        with pytest.raises(TypeError):
            client.set_promise_lib(object())

        await close(server, client)


class TestErrorReports:
    """Test link.error() between peers."""

    @pytest.mark.asyncio
    async def test_report_reaches_peer_logger(self):
        peer_logger = mock_logger()
        server, client = await make_pair(server_options={"logger": peer_logger})

        client.error("aaa", "bbb")
        await settle()

        peer_logger.error.assert_called_once_with("aaa", "bbb")

        await close(server, client)

    @pytest.mark.asyncio
    async def test_report_with_exception(self):
        peer_logger = mock_logger()
        server, client = await make_pair(server_options={"logger": peer_logger})

        client.error("failed:", ValueError("boom"))
        await settle()

        args = peer_logger.error.call_args[0]
        assert args[0] == "failed:"
        assert isinstance(args[1], RemoteCallError)
        assert args[1].message == "boom"

        await close(server, client)

    @pytest.mark.asyncio
    async def test_report_uses_message_key(self):
        transport = RecordingTransport()
        link = create({**transport.as_config(), "message": "log"})

        link.error("x")

        report = transport.messages("error")[0]
        assert report["payload"] == {"log": ["x"]}

        await link.destroy()

    @pytest.mark.asyncio
    async def test_junk_never_raises(self):
        transport = RecordingTransport()
        logger = mock_logger()
        link = create({**transport.as_config(), "logger": logger})
        cyclic = {}
        cyclic["me"] = cyclic

        link.error(lambda: None, float("nan"), cyclic, object())

        logger.error.assert_called_once()
        assert len(transport.messages("error")) == 1

        await link.destroy()


class TestAcks:
    """Test the acknowledgement timeout policy."""

    @pytest.mark.asyncio
    async def test_silent_peer_times_out(self):
        transport = RecordingTransport()
        link = create(
            {**transport.as_config(), "use_acks": True, "max_ack_delay": 0.02}
        )
        transport.deliver({"type": "expose", "uid": "peer-1", "payload": {"f": "promise"}})

        with pytest.raises(AckTimeoutError):
            await asyncio.wait_for(link.remote.f(), 1.0)
        assert link.status().result_callbacks == 0

        await link.destroy()

    @pytest.mark.asyncio
    async def test_answered_calls_do_not_time_out(self):
        server, client = await make_pair(
            {"f": lambda: "ok"}, client_options={"use_acks": True, "max_ack_delay": 0.05}
        )

        assert await client.remote.f() == "ok"
        await asyncio.sleep(0.1)

        await close(server, client)


class TestCodecsAndMetrics:
    """Test msgpack links and call metrics."""

    @pytest.mark.asyncio
    async def test_msgpack_link(self):
        options = {"codec": "msgpack"}
        server, client = await make_pair(
            {"echo": lambda x: x}, server_options=options, client_options=options
        )

        assert await client.remote.echo({"bytes": b"\x00\x01", "n": 5}) == {
            "bytes": b"\x00\x01",
            "n": 5,
        }

        await close(server, client)

    @pytest.mark.asyncio
    async def test_metrics(self):
        def explode():
            raise ValueError("x")

        server, client = await make_pair({"ok": lambda: 1, "explode": explode})

        await client.remote.ok()
        with pytest.raises(RemoteCallError):
            await client.remote.explode.invoke()

        snapshot = client.metrics.snapshot()
        assert snapshot.requests_total == 2
        assert snapshot.requests_success == 1
        assert snapshot.requests_failed == 1
        assert snapshot.calls_by_style == {"promise": 1, "invoke": 1}
        assert snapshot.handshake_attempts >= 1

        await close(server, client)

    @pytest.mark.asyncio
    async def test_metrics_disabled(self):
        server, client = await make_pair(client_options={"enable_metrics": False})

        assert client.metrics is None

        await close(server, client)
