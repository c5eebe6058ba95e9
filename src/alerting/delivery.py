"""
Delivery dispatcher: fans an alert out to its channels.

Each channel is attempted independently and concurrently, bounded by a
shared semaphore and a per-attempt timeout. Failures are recorded on the
alert as data; nothing here raises into the matching path and nothing is
retried automatically.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .alerts import Alert, DeliveryAttempt
from .channels import ChannelConfig
from .errors import DeliveryFailure, ValidationError
from .notifiers import BaseNotifier
from .types import DeliveryChannel, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_CONCURRENT = 16


class DeliveryDispatcher:
    """
    Best-effort, per-channel delivery of alerts.

    One dispatcher is shared by all tenants so that the semaphore bounds the
    total number of in-flight delivery attempts.
    """

    def __init__(
        self,
        notifiers: Optional[Iterable[BaseNotifier]] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the dispatcher.

        Args:
            notifiers: One notifier per channel
            max_concurrent: Maximum concurrent delivery attempts
            timeout: Seconds before an attempt is treated as failed
            clock: Time source
        """
        self.notifiers: Dict[DeliveryChannel, BaseNotifier] = {}
        for notifier in notifiers or []:
            self.add_notifier(notifier)
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()
        self._in_flight: Dict[Tuple[Optional[str], DeliveryChannel], asyncio.Task] = {}
        self._stats = {
            "attempts": 0,
            "notifications_sent": 0,
            "notification_failures": 0,
        }

    def add_notifier(self, notifier: BaseNotifier) -> None:
        self.notifiers[notifier.channel] = notifier
        logger.debug(f"Added notifier: {notifier.__class__.__name__}")

    def schedule(self, alert: Alert, channels: Optional[List[DeliveryChannel]] = None) -> asyncio.Task:
        """
        Start delivering an alert in the background.

        Returns:
            The background task (already tracked; awaiting it is optional)
        """
        task = asyncio.create_task(self.deliver(alert, channels))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for all background deliveries started by :meth:`schedule`."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def deliver(
        self,
        alert: Alert,
        channels: Optional[List[DeliveryChannel]] = None,
    ) -> List[DeliveryAttempt]:
        """
        Attempt every channel of an alert once, concurrently.

        Successful channels get ``delivered_at[channel]`` set; every attempt
        is appended to ``alert.delivery_attempts``.

        Args:
            alert: Alert to deliver
            channels: Subset of the alert's channels (all of them if None)

        Returns:
            The attempts made, in channel order
        """
        targets = list(channels) if channels else list(alert.delivery_channels)
        tasks = []
        for channel in targets:
            task = asyncio.create_task(
                self._attempt(alert.id, channel, self._sender(alert, channel))
            )
            self._in_flight[(alert.id, channel)] = task
            tasks.append(task)

        results = await asyncio.gather(*tasks, return_exceptions=True)

        attempts: List[DeliveryAttempt] = []
        for channel, task, result in zip(targets, tasks, results):
            if self._in_flight.get((alert.id, channel)) is task:
                del self._in_flight[(alert.id, channel)]
            if isinstance(result, asyncio.CancelledError):
                result = self._failed(alert.id, channel, "delivery cancelled")
            elif isinstance(result, BaseException):
                result = self._failed(alert.id, channel, f"unexpected error: {result}")
            attempts.append(result)
            alert.delivery_attempts.append(result)
            if result.success:
                alert.delivered_at[channel] = result.attempted_at

        delivered = [a.channel.value for a in attempts if a.success]
        failed = [f"{a.channel.value} ({a.error})" for a in attempts if not a.success]
        if failed:
            logger.warning(
                f"Alert #{alert.alert_number} delivered to {delivered or 'no channels'}; "
                f"failed: {', '.join(failed)}"
            )
        else:
            logger.info(f"Alert #{alert.alert_number} delivered to {delivered}")
        return attempts

    async def test_delivery(self, channel: DeliveryChannel, config: ChannelConfig) -> DeliveryAttempt:
        """
        Perform one test delivery with ad hoc configuration.

        Creates and touches no alert.

        Raises:
            ValidationError: If the config does not belong to ``channel``
        """
        channel = DeliveryChannel(channel)
        if config.channel != channel:
            raise ValidationError(f"Configuration is not valid for channel '{channel.value}'")
        notifier = self.notifiers.get(channel)
        if notifier is None:
            return self._failed(None, channel, "no notifier registered for channel")
        return await self._attempt(None, channel, lambda: notifier.send_test(config))

    def cancel(self, alert_id: str, channel: Optional[DeliveryChannel] = None) -> int:
        """
        Cancel in-flight attempts for an alert (one channel, or all).

        Returns:
            Number of attempts cancelled
        """
        cancelled = 0
        for (attempt_alert, attempt_channel), task in list(self._in_flight.items()):
            if attempt_alert != alert_id:
                continue
            if channel is not None and attempt_channel != channel:
                continue
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    def get_stats(self) -> Dict[str, int]:
        return {**self._stats, "in_flight": len(self._in_flight), "pending": len(self._pending)}

    def _sender(self, alert: Alert, channel: DeliveryChannel):
        notifier = self.notifiers.get(channel)
        if notifier is None:
            def _missing():
                raise DeliveryFailure(channel.value, "no notifier registered for channel")
            return _missing
        config = alert.channel_configs.get(channel)
        return lambda: notifier.send(alert, config)

    async def _attempt(self, alert_id: Optional[str], channel: DeliveryChannel, send) -> DeliveryAttempt:
        async with self._semaphore:
            self._stats["attempts"] += 1
            try:
                await asyncio.wait_for(send(), timeout=self.timeout)
            except DeliveryFailure as e:
                return self._failed(alert_id, channel, e.reason)
            except asyncio.TimeoutError:
                return self._failed(alert_id, channel, f"timed out after {self.timeout:g}s")
            except Exception as e:
                logger.exception(f"Unexpected error delivering to {channel.value}")
                return self._failed(alert_id, channel, f"unexpected error: {e}")

        self._stats["notifications_sent"] += 1
        return DeliveryAttempt(
            alert_id=alert_id,
            channel=channel,
            attempted_at=self._clock(),
            success=True,
        )

    def _failed(self, alert_id: Optional[str], channel: DeliveryChannel, reason: str) -> DeliveryAttempt:
        self._stats["notification_failures"] += 1
        return DeliveryAttempt(
            alert_id=alert_id,
            channel=channel,
            attempted_at=self._clock(),
            success=False,
            error=reason,
        )


__all__ = ["DeliveryDispatcher", "DEFAULT_TIMEOUT_SECONDS", "DEFAULT_MAX_CONCURRENT"]
