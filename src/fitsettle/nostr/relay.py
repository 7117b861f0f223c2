"""
fitsettle/nostr/relay.py

Minimal NIP-01 relay client over trio-websocket.

Only what a one-shot historical query needs:
    -> ["REQ", <sub_id>, <filter>...]
    <- ["EVENT", <sub_id>, <event>]   (zero or more)
    <- ["EOSE", <sub_id>]             (stored events exhausted)
    <- ["CLOSED", <sub_id>, <reason>] (relay refused the subscription)
    -> ["CLOSE", <sub_id>]

Usage:
    client = RelayClient("wss://relay.damus.io")
    await client.query([{"kinds": [1301], "authors": [...]}], on_event=events.append)
"""

import json
import logging
import secrets
from typing import Any, Callable, Dict, List, Optional

from trio_websocket import open_websocket_url

logger = logging.getLogger("fitsettle.nostr.relay")


class RelayError(Exception):
    """Relay refused or broke a subscription."""
    pass


class RelayClient:
    """
    One relay connection per query.

    Connection and protocol errors propagate to the caller; the event source
    absorbs them per relay.
    """

    def __init__(self, url: str, connect: Callable = open_websocket_url):
        """
        Initialize RelayClient.

        Args:
            url: Relay websocket url (wss://...)
            connect: Async context manager factory yielding a websocket
                     with send_message/get_message (trio-websocket API)
        """
        self.url = url
        self._connect = connect

        self.events_received = 0
        self.notices: List[str] = []

    @staticmethod
    def new_subscription_id() -> str:
        return "fitsettle-" + secrets.token_hex(6)

    async def query(
        self,
        filters: List[Dict[str, Any]],
        on_event: Callable[[Dict[str, Any]], None],
        subscription_id: Optional[str] = None,
    ) -> int:
        """
        Run one subscription until the relay signals end of stored events.

        Events are handed to on_event as they arrive, so a caller that
        cancels the query (e.g. on timeout) keeps everything received so far.

        Args:
            filters: NIP-01 filters
            on_event: Called with each event dict
            subscription_id: Optional subscription id

        Returns:
            Number of events received

        Raises:
            RelayError: the relay closed the subscription
        """
        sub_id = subscription_id or self.new_subscription_id()
        received = 0

        async with self._connect(self.url) as ws:
            await ws.send_message(json.dumps(["REQ", sub_id, *filters]))

            while True:
                message = await ws.get_message()
                try:
                    frame = json.loads(message)
                except ValueError:
                    logger.debug(f"{self.url}: ignoring non-JSON frame")
                    continue
                if not isinstance(frame, list) or not frame:
                    continue

                frame_type = frame[0]
                if frame_type == "EVENT":
                    if len(frame) >= 3 and frame[1] == sub_id and isinstance(frame[2], dict):
                        received += 1
                        self.events_received += 1
                        on_event(frame[2])
                elif frame_type == "EOSE":
                    if len(frame) >= 2 and frame[1] == sub_id:
                        break
                elif frame_type == "CLOSED":
                    if len(frame) >= 2 and frame[1] == sub_id:
                        reason = frame[2] if len(frame) >= 3 else ""
                        raise RelayError(f"{self.url} closed subscription: {reason}")
                elif frame_type == "NOTICE":
                    notice = str(frame[1]) if len(frame) >= 2 else ""
                    self.notices.append(notice)
                    logger.debug(f"{self.url} notice: {notice}")

            await ws.send_message(json.dumps(["CLOSE", sub_id]))

        logger.debug(f"{self.url}: {received} events for {sub_id}")
        return received
