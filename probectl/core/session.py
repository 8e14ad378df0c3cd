"""Link session: connection lifecycle, reconnect policy, and frame dispatch.

One asyncio task runs `LinkSession.run()`. That task alone mutates the link
state and talks to the transport; consumers only see the event stream.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from datetime import datetime, timezone
from typing import Any, TypeVar

from probectl.core.decoder import decode, decode_battery
from probectl.core.device_match import validate_identity
from probectl.core.errors import (
    InvalidConfiguration,
    MalformedFrame,
    TransportConnectError,
    TransportDisconnectedError,
    TransportError,
    TransportTimeoutError,
)
from probectl.core.events import EventStream
from probectl.core.model import (
    BATTERY_CHAR_UUID,
    TEMPERATURE_CHAR_UUID,
    DecodeFailed,
    DetectedDevice,
    DeviceIdentity,
    Event,
    LinkState,
    LinkStateChanged,
    SessionConfig,
)
from probectl.transports.base import ProbeTransport

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Slack on top of the transport's own scan window before discovery counts as hung.
_DISCOVERY_GRACE_S = 2.0


class _Stopped(Exception):
    pass


class Backoff:
    """Capped exponential delay between reconnect attempts. Never gives up."""

    def __init__(self, base_s: float, cap_s: float, factor: float = 2.0) -> None:
        if base_s <= 0:
            raise ValueError("Backoff base must be positive")
        if cap_s < base_s:
            raise ValueError("Backoff cap must not be below the base delay")
        if factor < 1.0:
            raise ValueError("Backoff factor must be at least 1.0")
        self.base_s = base_s
        self.cap_s = cap_s
        self.factor = factor
        self.failures = 0
        self._step = 0

    def next_delay(self) -> float:
        self.failures += 1
        delay = min(self.cap_s, self.base_s * self.factor**self._step)
        # stop growing the exponent once capped so it cannot overflow
        if delay < self.cap_s:
            self._step += 1
        return delay

    def reset(self) -> None:
        self.failures = 0
        self._step = 0


class LinkSession:
    def __init__(
        self,
        identity: DeviceIdentity,
        transport: ProbeTransport,
        *,
        config: SessionConfig | None = None,
        events: EventStream | None = None,
    ) -> None:
        self.identity = identity
        self.config = config or SessionConfig()
        self.events = events or EventStream(self.config.queue_size, self.config.overflow_policy)
        self._transport = transport
        self._backoff = Backoff(
            self.config.backoff_base_s,
            self.config.backoff_cap_s,
            self.config.backoff_factor,
        )
        self._state = LinkState.DISCONNECTED
        self._stop = asyncio.Event()
        self._link_lost = asyncio.Event()
        self._frames: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue(maxsize=self.config.queue_size)
        self.dropped_frames = 0
        self._generation = 0
        self._target: DeviceIdentity = identity
        self._device: DetectedDevice | None = None
        self._battery: float | None = None
        self._running = False
        self._task: asyncio.Task[None] | None = None

    @property
    def state(self) -> LinkState:
        """Current state, for diagnostics. Consumers should follow the event stream."""
        return self._state

    @property
    def device(self) -> DetectedDevice | None:
        return self._device

    def start(self) -> asyncio.Task[None]:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    def stop(self) -> None:
        self._stop.set()

    async def close(self) -> None:
        self.stop()
        if self._task is not None:
            await self._task

    async def run(self) -> None:
        if self._running:
            raise RuntimeError("LinkSession is already running")
        self._running = True
        reason = "stopped"
        try:
            await self._set_state(LinkState.DISCONNECTED)
            validate_identity(self.identity)
            await self._set_state(LinkState.CONNECTING)
            await self._drive()
        except InvalidConfiguration as exc:
            LOGGER.error("Unusable device identity %s: %s", self.identity.describe(), exc)
            reason = str(exc)
        except Exception as exc:
            reason = f"internal error: {exc}"
            raise
        finally:
            await self._release()
            await self._finish(reason)

    async def _drive(self) -> None:
        while not self._stop.is_set():
            try:
                await self._establish()
            except _Stopped:
                return
            except TransportError as exc:
                LOGGER.warning("Connect attempt to %s failed: %s", self._target.describe(), exc)
                await self._release()
                if not await self._wait_backoff(str(exc)):
                    return
                continue

            self._backoff.reset()
            await self._set_state(LinkState.CONNECTED)
            lost = await self._pump()
            await self._release()
            if lost is None or not await self._wait_backoff(lost):
                return

    async def _establish(self) -> None:
        device = await self._discover()
        self._device = device
        self._target = DeviceIdentity(
            address=device.address,
            name=self.identity.name,
            service_uuid=self.identity.service_uuid,
        )

        self._generation += 1
        self._link_lost.clear()
        while not self._frames.empty():
            self._frames.get_nowait()

        timeout_s = self.config.connect_timeout_s
        try:
            await self._race(self._connect_and_subscribe(device, self._generation), timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                f"Connecting to {device.address} did not complete within {timeout_s:.1f}s"
            ) from exc

    async def _discover(self) -> DetectedDevice:
        scan_timeout_s = self.config.scan_timeout_s
        try:
            device = await self._race(
                self._transport.discover(self._target, timeout_s=scan_timeout_s),
                timeout=scan_timeout_s + _DISCOVERY_GRACE_S,
            )
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(
                f"Discovery of {self._target.describe()} hung past {scan_timeout_s:.1f}s"
            ) from exc
        if device is None:
            raise TransportConnectError(f"Probe {self._target.describe()} not found")
        LOGGER.info("Probe discovered: %s (%s)", device.address, device.name)
        return device

    async def _connect_and_subscribe(self, device: DetectedDevice, generation: int) -> None:
        def _on_disconnect() -> None:
            if generation == self._generation:
                self._link_lost.set()

        await self._transport.connect(
            device,
            timeout_s=self.config.connect_timeout_s,
            on_disconnect=_on_disconnect,
        )
        for characteristic in (TEMPERATURE_CHAR_UUID, BATTERY_CHAR_UUID):
            await self._transport.subscribe(characteristic, self._on_notification)

    def _on_notification(self, characteristic: str, data: bytes) -> None:
        # called from the transport; the oldest frame is dropped when dispatch falls behind
        if self._frames.full():
            self._frames.get_nowait()
            self.dropped_frames += 1
            LOGGER.warning("Frame backlog full (%d), dropped oldest notification", self._frames.maxsize)
        self._frames.put_nowait((characteristic.lower(), bytes(data)))

    async def _pump(self) -> str | None:
        """Dispatch frames until the link drops (returns the reason) or stop (returns None)."""
        LOGGER.info("Listening for probe notifications")
        while True:
            try:
                characteristic, data = await self._race(self._frames.get(), watch_link=True)
            except _Stopped:
                return None
            except TransportDisconnectedError as exc:
                return str(exc)
            await self._dispatch(characteristic, data)

    async def _dispatch(self, characteristic: str, data: bytes) -> None:
        LOGGER.debug("Notification %s: %s", characteristic, data.hex())
        now = datetime.now(timezone.utc)
        event: Event
        try:
            if characteristic == TEMPERATURE_CHAR_UUID:
                event = decode(data, battery=self._battery, now=now)
            elif characteristic == BATTERY_CHAR_UUID:
                event = decode_battery(data, now=now)
                self._battery = event.fraction
            else:
                LOGGER.debug("Ignoring notification on unknown characteristic %s", characteristic)
                return
        except MalformedFrame as exc:
            LOGGER.warning("Dropping malformed frame on %s: %s", characteristic, exc)
            event = DecodeFailed(reason=str(exc), characteristic=characteristic)
        await self._publish(event)

    async def _wait_backoff(self, reason: str) -> bool:
        """Sleep out the next backoff delay. Returns False if stop was requested."""
        delay = self._backoff.next_delay()
        await self._set_state(LinkState.RECONNECTING, reason=reason, retry_in_s=delay)
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            await self._set_state(LinkState.CONNECTING)
            return True
        return False

    async def _race(
        self,
        awaitable: Awaitable[T],
        *,
        timeout: float | None = None,
        watch_link: bool = False,
    ) -> T:
        """Await `awaitable` unless stop (or, with watch_link, a link drop) happens first.

        Raises _Stopped, TransportDisconnectedError or asyncio.TimeoutError.
        """
        task: asyncio.Future[Any] = asyncio.ensure_future(awaitable)
        watchers = {asyncio.ensure_future(self._stop.wait()): "stop"}
        if watch_link:
            watchers[asyncio.ensure_future(self._link_lost.wait())] = "link"
        try:
            done, _ = await asyncio.wait(
                {task, *watchers},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if task in done:
                return task.result()
            for watcher, kind in watchers.items():
                if watcher in done and kind == "stop":
                    raise _Stopped()
            if done:
                raise TransportDisconnectedError(
                    f"Link to {self._target.describe()} dropped"
                )
            raise asyncio.TimeoutError()
        finally:
            pending = [f for f in (task, *watchers) if not f.done()]
            for future in pending:
                future.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _release(self) -> None:
        self._generation += 1
        try:
            await asyncio.wait_for(self._transport.disconnect(), timeout=self.config.connect_timeout_s)
        except (TransportError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Releasing transport failed: %s", exc)

    async def _set_state(
        self,
        state: LinkState,
        *,
        reason: str | None = None,
        retry_in_s: float | None = None,
    ) -> None:
        self._state = state
        if retry_in_s is not None:
            LOGGER.info("Link %s (%s), retrying in %.1fs", state.value, reason, retry_in_s)
        else:
            LOGGER.info("Link %s", state.value)
        await self._publish(LinkStateChanged(state=state, reason=reason, retry_in_s=retry_in_s))

    async def _publish(self, event: Event) -> None:
        if not self.events.closed:
            await self.events.publish(event)

    async def _finish(self, reason: str) -> None:
        await self._set_state(LinkState.FAILED, reason=reason)
        self.events.close()
