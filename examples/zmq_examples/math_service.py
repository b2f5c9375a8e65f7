"""
Example: A math service reachable over a ZeroMQ PAIR socket.

Usage:
1. Run this script in a separate terminal
2. Then run math_client.py

python math_service.py  # Terminal 1
python math_client.py   # Terminal 2
"""

import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "src"))

from duplexrpc import ZmqTransport, create, default_pretty_handler

ENDPOINT = "tcp://127.0.0.1:5555"


def add(a, b):
    return a + b


def multiply(a, b):
    return a * b


async def factorial(n):
    result = 1
    for i in range(2, n + 1):
        result *= i
        await asyncio.sleep(0)
    return result


async def main():
    transport = ZmqTransport.bind(ENDPOINT)
    stopped = asyncio.Event()

    link = create(
        {
            **transport.as_config(),
            "codec": "msgpack",
            # Wait up to a few minutes for a client to show up
            "create_retry": 60,
            "create_retry_curve": "flat",
            "create_wait": 2.0,
            "log_handler": default_pretty_handler,
        },
        local={
            "math": {"add": add, "multiply": multiply, "factorial": factorial},
            "stop": stopped.set,
        },
    )
    link.on_destroy(lambda reason: stopped.set())
    print(f"Math service listening on {ENDPOINT}")

    await stopped.wait()
    await link.destroy("stopped")
    print("Math service stopped")


if __name__ == "__main__":
    asyncio.run(main())
