"""
Correlation id generation.
"""

import itertools
import uuid
from typing import Callable, Optional


UidGenerator = Callable[[], str]


def create_uid_generator(prefix: Optional[str] = None) -> UidGenerator:
    """
    Create a generator of ids that never repeat for the generator's lifetime.

    Ids are a random per-generator prefix followed by a hex counter, so two
    generators in one process are also very unlikely to collide.

    Args:
        prefix: Optional fixed prefix (default: 8 random hex chars)

    Returns:
        A zero-argument callable returning a fresh string id on every call
    """
    prefix = prefix or uuid.uuid4().hex[:8]
    counter = itertools.count(1)

    def uid() -> str:
        return f"{prefix}-{next(counter):x}"

    return uid
