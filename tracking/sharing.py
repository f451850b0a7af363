"""
Driver-side location sharing loop.

A sampling task reads the device position on a timer and hands the newest
sample to the push task through a one-slot channel, so a slow push never
builds a backlog. Pushes are throttled: a sample that arrives less than
``min_interval`` seconds after the last push attempt is dropped.

Runs outside Django; the only server contact is ``HttpLocationSender``.
"""
import asyncio
import logging
import time
from typing import Callable, Optional

import requests

from .geo import Position

logger = logging.getLogger(__name__)


class PushThrottle:
    """Allows one push per ``min_interval`` seconds of ``clock``."""

    def __init__(self, min_interval: float, clock: Callable[[], float] = time.monotonic):
        self.min_interval = min_interval
        self.clock = clock
        self._last_push = None

    def try_acquire(self) -> bool:
        now = self.clock()
        if self._last_push is not None and now - self._last_push < self.min_interval:
            return False
        self._last_push = now
        return True

    def reset(self):
        self._last_push = None


class LatestSampleChannel:
    """One-slot channel: a new sample replaces one not yet consumed."""

    def __init__(self):
        self._queue = asyncio.Queue(maxsize=1)

    def put(self, sample: Position):
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(sample)

    async def get(self) -> Position:
        return await self._queue.get()


class HttpLocationSender:
    """Pushes samples to ``PUT /api/location/`` with token authentication."""

    def __init__(self, base_url: str, token: str, order_id: Optional[int] = None,
                 session: Optional[requests.Session] = None, timeout: float = 10):
        self.url = f"{base_url.rstrip('/')}/api/location/"
        self.order_id = order_id
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f'Token {token}'

    def __call__(self, sample: Position) -> dict:
        payload = {'lat': sample.lat, 'lng': sample.lng}
        if self.order_id is not None:
            payload['order_id'] = self.order_id
        response = self.session.put(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def close(self):
        self.session.close()


class LocationSharer:
    """
    Background sharing of one driver's position.

    Args:
        source: Returns the current position, or None when there is no fix
        sender: Blocking callable that delivers one sample; run in a thread
        min_interval: Minimum seconds between push attempts
        sample_interval: Seconds between position reads
        clock: Monotonic clock used by the throttle
    """

    def __init__(self, source: Callable[[], Optional[Position]], sender: Callable[[Position], dict],
                 min_interval: float = 5.0, sample_interval: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.source = source
        self.sender = sender
        self.sample_interval = sample_interval
        self.throttle = PushThrottle(min_interval, clock)
        self.channel = LatestSampleChannel()

        self.last_sample = None
        self.last_error = None
        self.sent_count = 0
        self.dropped_count = 0
        self._tasks = []
        self._stopped = asyncio.Event()

    @property
    def is_sharing(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def push(self, sample: Position) -> bool:
        """Push one sample unless the throttle window is still open."""
        if not self.throttle.try_acquire():
            self.dropped_count += 1
            return False
        try:
            await asyncio.to_thread(self.sender, sample)
        except requests.RequestException as e:
            # Keep sharing; the next sample outside the window retries.
            self.last_error = str(e)
            logger.warning(f"Location push failed: {e}")
            return False
        except Exception as e:
            # A broken sender must not end the push loop while sampling goes on.
            self.last_error = str(e)
            logger.exception(f"Location sender raised {type(e).__name__}")
            return False
        self.last_error = None
        self.sent_count += 1
        return True

    async def _sample_loop(self):
        while not self._stopped.is_set():
            sample = self.source()
            if sample is not None:
                self.last_sample = sample
                self.channel.put(sample)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.sample_interval)
            except asyncio.TimeoutError:
                pass

    async def _push_loop(self):
        while True:
            sample = await self.channel.get()
            await self.push(sample)

    def start(self):
        if self.is_sharing:
            return
        self._stopped.clear()
        self.throttle.reset()
        self._tasks = [
            asyncio.create_task(self._sample_loop()),
            asyncio.create_task(self._push_loop()),
        ]
        logger.info("Location sharing started")

    async def stop(self):
        self._stopped.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"Location sharing stopped: sent={self.sent_count} dropped={self.dropped_count}")

    async def run_for(self, seconds: float):
        self.start()
        try:
            await asyncio.sleep(seconds)
        finally:
            await self.stop()
