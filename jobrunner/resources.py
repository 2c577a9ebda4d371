"""Ordered registry of release actions for resources acquired during setup.

Usage:
    registry = ResourceRegistry()
    async with registry.rollback_on_error():
        engine = await acquire_pool(source, registry, settings)
        await ensure_schema(engine, settings)
    ...
    errors = await registry.release_all()

Releases run in reverse acquisition order.  The registry is drained exactly
once: a second ``release_all()`` is a no-op, so a release action never runs
twice for the same acquisition.
"""

from __future__ import annotations

import inspect
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable

logger = logging.getLogger("jobrunner.resources")

ReleaseAction = Callable[[], "Awaitable[None] | None"]


@dataclass(frozen=True)
class Disposable:
    """A resource acquired during setup, with its single release operation."""

    name: str
    release: ReleaseAction

    async def dispose(self) -> None:
        result = self.release()
        if inspect.isawaitable(result):
            await result


class ResourceRegistry:
    def __init__(self) -> None:
        self._resources: list[Disposable] = []
        self._released = False

    def __len__(self) -> int:
        return len(self._resources)

    @property
    def released(self) -> bool:
        return self._released

    def add(self, name: str, release: ReleaseAction) -> Disposable:
        if self._released:
            raise RuntimeError(f"Cannot register {name!r}: registry already released")
        resource = Disposable(name, release)
        self._resources.append(resource)
        logger.debug("Registered release action for %s", name)
        return resource

    async def release_all(self) -> list[Exception]:
        """Run every release action once; return the failures, never raise them."""
        if self._released:
            return []
        self._released = True

        errors: list[Exception] = []
        for resource in reversed(self._resources):
            try:
                await resource.dispose()
                logger.debug("Released %s", resource.name)
            except Exception as exc:
                logger.error("Failed to release %s: %s", resource.name, exc, exc_info=True)
                errors.append(exc)
        return errors

    @asynccontextmanager
    async def rollback_on_error(self) -> AsyncIterator["ResourceRegistry"]:
        """Release everything registered so far if the block raises."""
        try:
            yield self
        except BaseException:
            await self.release_all()
            raise

    @asynccontextmanager
    async def closing(self) -> AsyncIterator["ResourceRegistry"]:
        """Release everything registered when the block exits, however it exits."""
        try:
            yield self
        finally:
            await self.release_all()
