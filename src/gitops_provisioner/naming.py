"""
gitops_provisioner.naming — Globally unique name negotiation.

Bucket names live in a namespace shared with every other Spaces customer, so
the name is <base>-<6 hex chars> and is re-rolled until the provider reports
it unused. Only the random component ever changes.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable

from gitops_provisioner.exceptions import UniquenessExhausted
from gitops_provisioner.models import NameCandidate

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
SUFFIX_BYTES = 3  # 24 bits -> 6 hex chars


def random_suffix() -> str:
    return secrets.token_hex(SUFFIX_BYTES)


def reserve(
    base: str,
    exists_check: Callable[[str], bool],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    *,
    suffix_factory: Callable[[], str] = random_suffix,
) -> str:
    """Return the first ``base-suffix`` name for which ``exists_check`` is False.

    ``exists_check`` is called at most ``max_attempts`` times and never twice
    with the same name. Raises UniquenessExhausted when every attempt was taken.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    tried: set[str] = set()
    attempts = 0
    draws = 0
    # Caps draws for a suffix_factory that keeps repeating itself.
    while attempts < max_attempts and draws < max_attempts * 4:
        draws += 1
        candidate = NameCandidate(base=base, suffix=suffix_factory())
        if candidate.name in tried:
            continue
        tried.add(candidate.name)
        attempts += 1
        if not exists_check(candidate.name):
            return candidate.name
        logger.info("Name %s already taken (attempt %d), regenerating", candidate.name, attempts)

    raise UniquenessExhausted(base=base, attempts=attempts)
