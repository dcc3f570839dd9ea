"""
Index lifecycle
===============

Makes sure the named Milvus collection exists with the right dimension and is
loaded before any memory operation touches it::

    UNKNOWN -> CHECKING -> EXISTING -> (READY | POLLING)
                        -> CREATING -> POLLING -> READY

Any state may end in FAILED. Concurrent callers for the same collection share
one in-flight provisioning task, so a missing collection is created exactly
once per process. Failures are sticky: a collection that never became ready
points at a misconfiguration, so later calls re-raise the recorded error until
an operator calls :meth:`IndexLifecycleManager.reset`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Mapping

from ..errors import IndexNotReady, IndexProvisionError, IndexProvisionTimeout
from ..models import CollectionInfo, ProvisionState
from .gateway import MilvusGateway

logger = logging.getLogger(__name__)


class IndexLifecycleManager:
    """Single-flight provisioning of remote collections."""

    def __init__(
        self,
        gateway: MilvusGateway,
        *,
        poll_interval: float = 2.0,
        max_attempts: int = 30,
        timeout: float = 90.0,
        hints: Mapping[str, str] | None = None,
    ) -> None:
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.max_attempts = max(1, max_attempts)
        self.timeout = timeout
        self.hints = dict(hints or {})
        self._infos: Dict[str, CollectionInfo] = {}
        self._inflight: Dict[str, asyncio.Task] = {}
        self._failures: Dict[str, IndexProvisionError] = {}

    # --- public API ---------------------------------------------------------

    async def ensure_ready(self, name: str, dimension: int, metric: str) -> CollectionInfo:
        """
        Return the READY collection, provisioning it first when needed.

        :raises IndexProvisionTimeout: readiness polling ran out of budget.
        :raises IndexProvisionError: the collection cannot be used as configured.
        """
        info = self._infos.get(name)
        if info is not None and info.state is ProvisionState.READY:
            if info.dimension != dimension:
                raise IndexProvisionError(
                    f"Collection {name!r} is ready with dim {info.dimension}, caller expects {dimension}"
                )
            return info

        failure = self._failures.get(name)
        if failure is not None:
            raise failure

        # No await between the lookup and the insert, so concurrent callers
        # on this loop always find the same task.
        task = self._inflight.get(name)
        if task is None:
            info = CollectionInfo(name=name, dimension=dimension, metric=metric)
            self._infos[name] = info
            task = asyncio.get_running_loop().create_task(self._provision(info))
            self._inflight[name] = task
        return await asyncio.shield(task)

    def get(self, name: str) -> CollectionInfo:
        """Return the READY collection info without provisioning."""
        info = self._infos.get(name)
        if info is None or info.state is not ProvisionState.READY:
            raise IndexNotReady(f"Collection {name!r} is not provisioned")
        return info

    def state(self, name: str) -> ProvisionState:
        info = self._infos.get(name)
        return info.state if info is not None else ProvisionState.UNKNOWN

    def reset(self, name: str) -> None:
        """Forget a recorded failure so the next call provisions again."""
        self._failures.pop(name, None)
        info = self._infos.get(name)
        if info is not None and info.state is ProvisionState.FAILED:
            del self._infos[name]
        logger.info("Provisioning state for %s reset", name)

    # --- state machine ------------------------------------------------------

    async def _provision(self, info: CollectionInfo) -> CollectionInfo:
        try:
            await asyncio.wait_for(self._advance(info), timeout=self.timeout)
            return info
        except asyncio.TimeoutError as e:
            err = IndexProvisionTimeout(
                f"Collection {info.name!r} not ready within {self.timeout:.0f}s overall budget"
            )
            err.__cause__ = e
            raise self._fail(info, err)
        except IndexProvisionError as e:
            raise self._fail(info, e)
        except Exception as e:
            err = IndexProvisionError(f"Provisioning {info.name!r} failed: {e}")
            err.__cause__ = e
            raise self._fail(info, err)
        finally:
            self._inflight.pop(info.name, None)

    def _fail(self, info: CollectionInfo, err: IndexProvisionError) -> IndexProvisionError:
        self._transition(info, ProvisionState.FAILED)
        self._failures[info.name] = err
        logger.critical("Vector memory unavailable: %s", err)
        return err

    def _transition(self, info: CollectionInfo, state: ProvisionState) -> None:
        logger.debug("Collection %s: %s -> %s", info.name, info.state.value, state.value)
        info.state = state

    async def _advance(self, info: CollectionInfo) -> None:
        gw = self.gateway
        self._transition(info, ProvisionState.CHECKING)

        while info.state is not ProvisionState.READY:
            state = info.state

            if state is ProvisionState.CHECKING:
                names = await asyncio.to_thread(gw.list_collections)
                nxt = ProvisionState.EXISTING if info.name in names else ProvisionState.CREATING
                self._transition(info, nxt)

            elif state is ProvisionState.EXISTING:
                desc = await asyncio.to_thread(gw.describe, info.name)
                if desc.get("dimension") != info.dimension:
                    raise IndexProvisionError(
                        f"Collection {info.name!r} has dim {desc.get('dimension')}, expected {info.dimension}"
                    )
                if desc.get("metric") and desc["metric"] != info.metric:
                    logger.warning(
                        "Collection %s uses metric %s (configured %s); keeping the remote metric",
                        info.name, desc["metric"], info.metric,
                    )
                    info.metric = desc["metric"]
                if await asyncio.to_thread(gw.is_ready, info.name):
                    self._transition(info, ProvisionState.READY)
                else:
                    await asyncio.to_thread(gw.load, info.name)
                    self._transition(info, ProvisionState.POLLING)

            elif state is ProvisionState.CREATING:
                logger.info(
                    "Creating collection %s (dim=%d metric=%s %s)",
                    info.name, info.dimension, info.metric, self.hints,
                )
                try:
                    await asyncio.to_thread(gw.create, info.name, info.dimension, info.metric, self.hints)
                except Exception:
                    # Another process may have won the race to create it.
                    names = await asyncio.to_thread(gw.list_collections)
                    if info.name not in names:
                        raise
                    self._transition(info, ProvisionState.EXISTING)
                    continue
                await asyncio.to_thread(gw.load, info.name)
                self._transition(info, ProvisionState.POLLING)

            elif state is ProvisionState.POLLING:
                await self._poll(info)
                self._transition(info, ProvisionState.READY)

            else:  # pragma: no cover - unreachable
                raise IndexProvisionError(f"Unexpected provisioning state {state}")

        logger.info("Collection %s is ready", info.name)

    async def _poll(self, info: CollectionInfo) -> None:
        for attempt in range(1, self.max_attempts + 1):
            try:
                if await asyncio.to_thread(self.gateway.is_ready, info.name):
                    return
                logger.info(
                    "Waiting for collection %s to be ready... (%d/%d)",
                    info.name, attempt, self.max_attempts,
                )
            except Exception as e:
                logger.warning("Readiness check for %s failed (%d/%d): %s", info.name, attempt, self.max_attempts, e)
            await asyncio.sleep(self.poll_interval)

        raise IndexProvisionTimeout(
            f"Collection {info.name!r} failed to become ready after {self.max_attempts} checks"
        )


__all__ = ["IndexLifecycleManager"]
