"""
Example: Two links talking over an in-process pipe.

Both sides expose functions and call each other, using every call style.

Usage:
python loopback_pair.py
"""

import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from duplexrpc import RemoteCallError, create, create_pipe, default_pretty_handler


def add(a, b):
    return a + b


async def slow_square(x):
    await asyncio.sleep(0.1)
    return x * x


def read_config(name, done):
    """Callback style: done(err, *values)."""
    if name != "app":
        done(KeyError(name))
        return
    done(None, {"debug": True}, "v1")


def ticks(interval, notify):
    """Listen style: push values until the peer ignores us."""

    async def run():
        n = 0
        while notify(n):
            n += 1
            await asyncio.sleep(interval)

    return run()


def divide(a, b):
    return a / b


async def main():
    left, right = create_pipe()

    server = create(
        {**left.as_config(), "log_handler": default_pretty_handler},
        local={
            "math": {"add": add, "square": slow_square, "divide": divide},
            "config": {"read": read_config},
            "ticks": ticks,
        },
        descriptor={"config": {"read": "callback"}, "ticks": "listen"},
    )
    client = create(right.as_config(), local={"hello": lambda name: f"hello {name}"})

    remote = await client.ready
    print("Client connected!")

    print(f"invoke: 1 + 2 = {await remote.math.add.invoke(1, 2)}")
    print(f"promise: 7^2 = {await remote.math.square.promise(7)}")
    print(f"callback: {await remote.config.read.callback('app')}")

    try:
        await remote.math.divide(1, 0)
    except RemoteCallError as e:
        print(f"Remote error: {e.name}: {e.message}")

    # The server calls back into the client over the same link
    server_remote = await server.ready
    print(f"server -> client: {await server_remote.hello('server')}")

    seen = []
    listener_id = remote.ticks.listen(0.05, seen.append)
    await asyncio.sleep(0.3)
    await remote.ticks.ignore(listener_id)
    print(f"listen: received {seen}")

    client.error("client says:", "something odd happened")
    await asyncio.sleep(0.01)

    print(f"Metrics: {client.metrics.to_dict()['requests']}")

    await client.destroy("done")
    await server.destroy("done")


if __name__ == "__main__":
    asyncio.run(main())
