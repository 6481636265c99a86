"""
Subscription hub.

Maps subscribers (a port plus the envelope id of its subscribe call) to the
topics they observe. Snapshot topics push the full current state of a
collection on every mutation; event topics push each published value.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional, Set, Tuple

from .transport import Port

logger = logging.getLogger(__name__)

SubscriptionKey = Tuple[str, str]


@dataclass
class Subscription:
    """
    One live stream from the broker to a caller.

    Attributes:
        id: Envelope id of the subscribe call; pushes are tagged with it
        topic: What is being observed (a ``RequestKind`` or another topic)
        port: Where pushes go
        render: Builds the value to push for a snapshot topic
    """
    id: str
    topic: Hashable
    port: Port
    render: Optional[Callable[[], Any]] = None

    @property
    def key(self) -> SubscriptionKey:
        return (self.port.id, self.id)

    def push(self, value: Any) -> bool:
        return self.port.post({"id": self.id, "subscription": value}, coalesce=self.render is not None)


class SubscriptionHub:
    """Fan-out registry of live subscriptions."""

    def __init__(self):
        self._topics: Dict[Hashable, Dict[SubscriptionKey, Subscription]] = {}
        self._by_port: Dict[str, Set[SubscriptionKey]] = {}
        self._subscriptions: Dict[SubscriptionKey, Subscription] = {}

    def subscribe(
        self,
        topic: Hashable,
        port: Port,
        subscription_id: str,
        render: Optional[Callable[[], Any]] = None,
    ) -> Subscription:
        """
        Register a subscription and deliver its first push immediately.

        For snapshot topics (``render`` given) the first push is the current
        snapshot. It is posted before this method returns, so it always
        precedes the subscribe acknowledgment on the port.
        """
        subscription = Subscription(id=subscription_id, topic=topic, port=port, render=render)
        key = subscription.key
        if key in self._subscriptions:
            self._remove(key)

        self._subscriptions[key] = subscription
        self._topics.setdefault(topic, {})[key] = subscription
        self._by_port.setdefault(port.id, set()).add(key)
        logger.debug(f"{port!r} subscribed to {topic} as {subscription_id}")

        if render is not None:
            self._deliver(subscription, render())
        return subscription

    def notify(self, topic: Hashable) -> int:
        """
        Push the current snapshot to every subscriber of a topic.

        Returns:
            Number of subscribers pushed to
        """
        delivered = 0
        for subscription in list(self._topics.get(topic, {}).values()):
            if subscription.render is None:
                continue
            if self._deliver(subscription, subscription.render()):
                delivered += 1
        return delivered

    def publish(self, topic: Hashable, value: Any) -> int:
        """Push a value to every subscriber of an event topic."""
        delivered = 0
        for subscription in list(self._topics.get(topic, {}).values()):
            if self._deliver(subscription, value):
                delivered += 1
        return delivered

    def _deliver(self, subscription: Subscription, value: Any) -> bool:
        if subscription.push(value):
            return True
        # port closed
        self._remove(subscription.key)
        return False

    def unsubscribe(self, port: Port, subscription_id: str) -> bool:
        return self._remove((port.id, subscription_id))

    def drop_port(self, port: Port) -> int:
        """
        Remove every subscription held by a port.

        Returns:
            Number of subscriptions removed
        """
        keys = list(self._by_port.get(port.id, ()))
        for key in keys:
            self._remove(key)
        return len(keys)

    def _remove(self, key: SubscriptionKey) -> bool:
        subscription = self._subscriptions.pop(key, None)
        if subscription is None:
            return False
        topic_subs = self._topics.get(subscription.topic)
        if topic_subs is not None:
            topic_subs.pop(key, None)
            if not topic_subs:
                del self._topics[subscription.topic]
        port_keys = self._by_port.get(key[0])
        if port_keys is not None:
            port_keys.discard(key)
            if not port_keys:
                del self._by_port[key[0]]
        return True

    def subscriptions(self, topic: Optional[Hashable] = None) -> List[Subscription]:
        if topic is None:
            return list(self._subscriptions.values())
        return list(self._topics.get(topic, {}).values())

    def __len__(self) -> int:
        return len(self._subscriptions)
