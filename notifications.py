"""
Notification events

The core only builds event payloads. Delivery (SMS, email, retries) belongs
to whatever sink is installed with ``set_sink``; the default sink logs.
"""
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

ACCOUNT_CREATED = "account_created"
PAYMENT_REMINDER = "payment_reminder"


@dataclass
class Notification:
    event: str
    recipient: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LogSink:
    def send(self, notification: Notification) -> None:
        logger.info("Notification %s for %s", notification.event, notification.recipient)


class MemorySink:
    """Keeps notifications in a list; handy for tests and dry runs."""

    def __init__(self):
        self.sent: List[Notification] = []

    def send(self, notification: Notification) -> None:
        self.sent.append(notification)


_sink = LogSink()


def set_sink(sink) -> None:
    global _sink
    _sink = sink


def emit(event: str, recipient: str, **data) -> Notification:
    notification = Notification(event=event, recipient=recipient, data=data)
    try:
        _sink.send(notification)
    except Exception:
        # delivery is the sink's job; a broken sink must not undo committed work
        logger.exception("Notification sink failed for %s", event)
    return notification
