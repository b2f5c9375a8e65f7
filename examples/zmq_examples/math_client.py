"""
Example: Calling the math service over ZeroMQ.

Run math_service.py first, then this script.
"""

import asyncio
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "..", "src"))

from duplexrpc import HandshakeError, ZmqTransport, create

ENDPOINT = "tcp://127.0.0.1:5555"


async def main():
    transport = ZmqTransport.connect(ENDPOINT)

    async with create({**transport.as_config(), "codec": "msgpack"}) as link:
        try:
            remote = await link.ready
        except HandshakeError as e:
            print(f"Could not reach the math service: {e}")
            return

        print(f"10 + 20 = {await remote.math.add(10, 20)}")
        print(f"6 * 7 = {await remote.math.multiply.invoke(6, 7)}")
        print(f"20! = {await remote.math.factorial(20)}")

        await remote.stop.invoke()


if __name__ == "__main__":
    asyncio.run(main())
