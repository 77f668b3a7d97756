"""
Lookup-or-create helper shared by the setup steps.
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from .exceptions import is_not_found

T = TypeVar("T")


@dataclass(frozen=True)
class EnsureOutcome(Generic[T]):
    """Result of an ensure call: the resource and whether this run created it."""

    resource: T
    created: bool


def ensure(
    lookup: Callable[[], Any],
    create: Callable[[], T],
    matcher: Optional[Callable[[Any], Optional[T]]] = None,
    *,
    missing_ok: bool = True,
) -> EnsureOutcome[T]:
    """Return an existing resource, creating it only when none matches.

    ``lookup`` either returns something (a single resource or a list) or
    raises. When ``missing_ok`` is set, a not-found error from ``lookup``
    counts as "nothing exists"; every other error propagates unchanged.
    ``matcher`` reduces the lookup result to the resource to reuse, or None
    when nothing suitable exists. Without a matcher, any non-None lookup
    result is reused as is.

    Args:
        lookup: Look up the existing resource
        create: Called when nothing suitable exists; its result is returned
        matcher: Picks the resource to reuse from the lookup result
        missing_ok: Treat not-found lookup errors as absence

    Returns:
        EnsureOutcome with ``created`` True only if ``create`` ran
    """
    try:
        found = lookup()
    except Exception as e:
        if not (missing_ok and is_not_found(e)):
            raise
        found = None

    if matcher is not None and found is not None:
        found = matcher(found)

    if found is not None:
        return EnsureOutcome(resource=found, created=False)

    return EnsureOutcome(resource=create(), created=True)
