"""User-scoped publish/subscribe for credit balance changes."""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Optional, Union


class BalanceChanged:
    """Published after a committed ledger mutation."""

    def __init__(
        self,
        user_id: str,
        subscription_credits: int,
        purchased_credits: int,
        reason: str,
        job_id=None,
    ):
        self.user_id = user_id
        self.subscription_credits = subscription_credits
        self.purchased_credits = purchased_credits
        self.reason = reason
        self.job_id = job_id

    @property
    def available_credits(self) -> int:
        return self.subscription_credits + self.purchased_credits


Observer = Callable[[BalanceChanged], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by `CreditEventBus.subscribe`."""

    def __init__(self, bus: "CreditEventBus", user_id: str, observer: Observer):
        self._bus = bus
        self.user_id = user_id
        self.observer = observer
        self.closed = False

    def close(self) -> None:
        if not self.closed:
            self._bus._unsubscribe(self)
            self.closed = True

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class CreditEventBus:
    """Delivers balance changes only to observers registered for that user."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._observers: Dict[str, List[Subscription]] = defaultdict(list)
        self.logger = logger or logging.getLogger(__name__)

    def subscribe(self, user_id: str, observer: Observer) -> Subscription:
        subscription = Subscription(self, user_id, observer)
        self._observers[user_id].append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        observers = self._observers.get(subscription.user_id)
        if not observers:
            return
        if subscription in observers:
            observers.remove(subscription)
        if not observers:
            del self._observers[subscription.user_id]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._observers.get(user_id, ()))

    async def publish(self, event: BalanceChanged) -> None:
        """Notify every observer of ``event.user_id``.

        Observer errors are logged; they never reach the publisher, which has
        already committed the ledger change.
        """
        for subscription in list(self._observers.get(event.user_id, ())):
            try:
                result = subscription.observer(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error(
                    f"Balance observer for user {event.user_id} failed: {e}",
                    exc_info=True,
                )
