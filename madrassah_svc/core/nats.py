from __future__ import annotations
import json
import logging
from typing import Any, Sequence
from nats.aio.client import Client as NATS

from .config import get_settings
from ..services.bridge import ChangeEvent, ChangeHandler

_settings = get_settings()
_nats = NATS()
logger = logging.getLogger(__name__)


async def nats_connect():
    if not _nats.is_connected:
        servers: Sequence[str] = [u.strip() for u in _settings.nats_urls.split(",") if u.strip()]
        await _nats.connect(servers=servers)


async def nats_close():
    try:
        if _nats.is_connected:
            await _nats.drain()
    except Exception:
        logger.warning("NATS drain failed", exc_info=True)


def subject_for(table: str) -> str:
    return f"{_settings.nats_subject_prefix}.{table}"


class NatsChangeFeed:
    """
    Change feed over NATS subjects ``<prefix>.<table>``.
    payload = {"table": str, "event_type": "insert|update|delete", "record": {...}}
    """

    @property
    def is_connected(self) -> bool:
        return _nats.is_connected

    async def subscribe(self, table: str, handler: ChangeHandler) -> Any:
        await nats_connect()

        async def _handler(msg):
            try:
                evt = ChangeEvent.from_dict(json.loads(msg.data))
            except Exception:
                logger.warning("dropping malformed change event on %s", msg.subject)
                return
            try:
                await handler(evt)
            except Exception:
                logger.exception("change handler for %s failed", msg.subject)

        return await _nats.subscribe(subject_for(table), cb=_handler)

    async def unsubscribe(self, handle: Any) -> None:
        await handle.unsubscribe()

    async def publish(self, event: ChangeEvent) -> None:
        await nats_connect()
        await _nats.publish(subject_for(event.table), json.dumps(event.to_dict(), default=str).encode("utf-8"))
