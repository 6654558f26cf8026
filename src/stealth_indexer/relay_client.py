"""
Hyperbridge relay subscription.

Packets (requests) and receipts (responses) travelling between the configured
source and destination state machines are read from the Hyperbridge GraphQL
query endpoint and handed to subscribers as plain dicts. Subscribers consume
`subscribe(kind)` async iterators; each gets its own bounded queue.
"""

import asyncio
import inspect
import logging
from collections import OrderedDict
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol

import httpx

from .config import RelayConfig
from .errors import DecodeError, RequestTimeoutError, TransportError
from .models import PacketRecord

logger = logging.getLogger(__name__)

RELAY_EVENT_KINDS = ("packet", "receipt", "error")

PACKETS_QUERY = """
query RelayPackets($source: String!, $dest: String!, $height: BigFloat!, $first: Int!, $offset: Int!) {
  requests(
    first: $first
    offset: $offset
    orderBy: BLOCK_NUMBER_ASC
    filter: {
      source: { equalTo: $source }
      dest: { equalTo: $dest }
      blockNumber: { greaterThan: $height }
    }
  ) {
    nodes { id commitment source dest blockNumber blockTimestamp status }
  }
}
"""

RECEIPTS_QUERY = """
query RelayReceipts($source: String!, $dest: String!, $height: BigFloat!, $first: Int!, $offset: Int!) {
  responses(
    first: $first
    offset: $offset
    orderBy: BLOCK_NUMBER_ASC
    filter: {
      source: { equalTo: $source }
      dest: { equalTo: $dest }
      blockNumber: { greaterThan: $height }
    }
  ) {
    nodes { id commitment source dest blockNumber blockTimestamp status }
  }
}
"""


class RelayEventSource(Protocol):
    """Anything that can feed relay packets, receipts and errors to the indexer."""

    def subscribe(self, kind: str) -> AsyncIterator[Any]: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


_CLOSED = object()


class _Fanout:
    """Per-subscriber bounded queues; a full queue drops its oldest item."""

    def __init__(self, queue_size: int = 1024):
        self.queue_size = queue_size
        self._subscribers: Dict[str, List[asyncio.Queue]] = {kind: [] for kind in RELAY_EVENT_KINDS}
        self.dropped = 0

    @staticmethod
    def _put_dropping_oldest(queue: asyncio.Queue, item: Any) -> bool:
        dropped = False
        if queue.full():
            queue.get_nowait()
            dropped = True
        queue.put_nowait(item)
        return dropped

    def publish(self, kind: str, item: Any) -> None:
        if kind not in self._subscribers:
            raise ValueError(f"Unknown relay event kind: {kind}")
        for queue in self._subscribers[kind]:
            if self._put_dropping_oldest(queue, item):
                self.dropped += 1

    def close(self) -> None:
        for queues in self._subscribers.values():
            for queue in queues:
                self._put_dropping_oldest(queue, _CLOSED)

    def subscribe(self, kind: str) -> "_Subscription":
        """Register a queue now, so nothing published after this call is missed."""
        if kind not in self._subscribers:
            raise ValueError(f"Unknown relay event kind: {kind}")
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers[kind].append(queue)
        return _Subscription(self, kind, queue)

    def unsubscribe(self, kind: str, queue: asyncio.Queue) -> None:
        if queue in self._subscribers[kind]:
            self._subscribers[kind].remove(queue)

    def subscriber_count(self) -> int:
        return sum(len(queues) for queues in self._subscribers.values())


class _Subscription:
    """Async iterator over one subscriber queue, ending at close."""

    def __init__(self, fanout: _Fanout, kind: str, queue: asyncio.Queue):
        self._fanout = fanout
        self.kind = kind
        self._queue = queue

    def __aiter__(self) -> "_Subscription":
        return self

    async def __anext__(self) -> Any:
        item = await self._queue.get()
        if item is _CLOSED:
            self._fanout.unsubscribe(self.kind, self._queue)
            raise StopAsyncIteration
        return item


class HyperbridgeRelayClient:
    """
    Polls the Hyperbridge query endpoint for new packets and receipts.

    Each kind keeps its own height cursor, so a restart resumes from the
    heights recorded in the packet cache instead of replaying history.
    """

    MAX_SEEN_IDS = 4096

    def __init__(
        self,
        config: RelayConfig,
        timeout: float = 10.0,
        start_heights: Optional[Mapping[str, int]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        page_size: int = 100,
        queue_size: int = 1024,
    ):
        """
        Initialize the relay client.

        Args:
            config: Relay route and polling settings
            timeout: Per-request timeout in seconds
            start_heights: Last seen height per kind ("packet", "receipt")
            transport: Optional httpx transport (tests)
            page_size: Maximum nodes fetched per kind per poll
            queue_size: Bound of each subscriber queue
        """
        self.config = config
        self.timeout = timeout
        self.transport = transport
        self.page_size = page_size

        start_heights = start_heights or {}
        self._cursors: Dict[str, int] = {
            "packet": int(start_heights.get("packet", 0) or 0),
            "receipt": int(start_heights.get("receipt", 0) or 0),
        }
        self._queries = {"packet": PACKETS_QUERY, "receipt": RECEIPTS_QUERY}

        self.seen_ids: OrderedDict[str, None] = OrderedDict()
        self._fanout = _Fanout(queue_size)
        self._poll_task: Optional[asyncio.Task] = None
        self.is_running = False
        self.polls_completed = 0

    def subscribe(self, kind: str) -> AsyncIterator[Any]:
        return self._fanout.subscribe(kind)

    def _track_seen_id(self, packet_id: str) -> bool:
        """
        Remember `packet_id` with LRU eviction.

        Returns:
            True if the id was not seen before
        """
        if packet_id in self.seen_ids:
            self.seen_ids.move_to_end(packet_id)
            return False
        if len(self.seen_ids) >= self.MAX_SEEN_IDS:
            self.seen_ids.popitem(last=False)
        self.seen_ids[packet_id] = None
        return True

    async def _fetch_page(self, client: httpx.AsyncClient, kind: str, offset: int) -> List[Dict[str, Any]]:
        variables = {
            "source": self.config.source.state_machine_id,
            "dest": self.config.dest.state_machine_id,
            "height": str(self._cursors[kind]),
            "first": self.page_size,
            "offset": offset,
        }
        try:
            response = await client.post(
                self.config.query_url,
                json={"query": self._queries[kind], "variables": variables},
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise RequestTimeoutError(f"Hyperbridge {kind} query timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise TransportError(f"Hyperbridge {kind} query failed: {e}") from e

        try:
            body = response.json()
        except ValueError as e:
            raise DecodeError(f"Hyperbridge {kind} query returned invalid JSON") from e

        if not isinstance(body, dict):
            raise DecodeError(f"Hyperbridge {kind} query returned {type(body).__name__}, expected an object")
        if body.get("errors"):
            raise DecodeError(f"Hyperbridge {kind} query errors: {body['errors']}")

        root = "requests" if kind == "packet" else "responses"
        try:
            nodes = body["data"][root]["nodes"]
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Hyperbridge {kind} query response has no {root}.nodes") from e
        if not isinstance(nodes, list):
            raise DecodeError(f"Hyperbridge {kind} query returned {type(nodes).__name__} nodes, expected a list")
        return nodes

    async def _fetch(self, client: httpx.AsyncClient, kind: str) -> List[Dict[str, Any]]:
        """Fetch every node above the cursor, one page at a time until a short page."""
        nodes: List[Dict[str, Any]] = []
        while True:
            page = await self._fetch_page(client, kind, offset=len(nodes))
            nodes.extend(page)
            if len(page) < self.page_size:
                return [node for node in nodes if isinstance(node, dict)]

    async def poll_once(self, client: httpx.AsyncClient) -> int:
        """
        Fetch and publish new packets and receipts once.

        Returns:
            Number of payloads published
        """
        published = 0
        for kind in ("packet", "receipt"):
            for node in await self._fetch(client, kind):
                record = PacketRecord.from_relay(node)
                if record.height:
                    self._cursors[kind] = max(self._cursors[kind], record.height)
                if not self._track_seen_id(f"{kind}:{record.id}"):
                    continue
                self._fanout.publish(kind, node)
                published += 1

        self.polls_completed += 1
        if published:
            logger.info(
                f"Relayed {published} new payloads "
                f"(packet height {self._cursors['packet']}, receipt height {self._cursors['receipt']})"
            )
        return published

    async def _poll_loop(self) -> None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while self.is_running:
                try:
                    await self.poll_once(client)
                except asyncio.CancelledError:
                    logger.info("Relay polling cancelled")
                    raise
                except Exception as e:
                    logger.error(f"Error polling Hyperbridge relay: {e}")
                    self._fanout.publish("error", e)
                await asyncio.sleep(self.config.poll_interval)

    async def start(self) -> None:
        """Start polling in the background."""
        if self.is_running:
            logger.warning("Relay polling already running")
            return

        self.is_running = True
        logger.info(
            f"Polling {self.config.query_url} for "
            f"{self.config.source.state_machine_id} -> {self.config.dest.state_machine_id} "
            f"every {self.config.poll_interval}s"
        )
        self._poll_task = asyncio.create_task(self._poll_loop(), name="hyperbridge-relay-poll")

    async def stop(self) -> None:
        """Stop polling and end every subscription."""
        self.is_running = False
        if self._poll_task and not self._poll_task.done():
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass  # Expected when cancelling
        self._poll_task = None
        self._fanout.close()

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "packet_height": self._cursors["packet"],
            "receipt_height": self._cursors["receipt"],
            "seen_ids": len(self.seen_ids),
            "subscribers": self._fanout.subscriber_count(),
            "dropped": self._fanout.dropped,
            "polls_completed": self.polls_completed,
        }


class CallbackRelayAdapter:
    """
    Wraps a callback-style emitter (`on(event, callback)`) as a RelayEventSource.

    The emitter's `on`, `start` and `stop` are looked up once here; the rest
    of the indexer only sees the RelayEventSource methods.
    """

    def __init__(self, emitter: Any, queue_size: int = 1024):
        self.emitter = emitter
        self._fanout = _Fanout(queue_size)

        on = getattr(emitter, "on", None)
        self.supports_events = callable(on)
        self._start = getattr(emitter, "start", None) if callable(getattr(emitter, "start", None)) else None
        self._stop = getattr(emitter, "stop", None) if callable(getattr(emitter, "stop", None)) else None

        if self.supports_events:
            for kind in RELAY_EVENT_KINDS:
                on(kind, partial(self._fanout.publish, kind))
        else:
            logger.warning("Relay emitter does not expose event hooks, packets will not be cached")

        self.started = False

    def subscribe(self, kind: str) -> AsyncIterator[Any]:
        return self._fanout.subscribe(kind)

    async def start(self) -> None:
        if self.started:
            return
        if self._start is not None:
            result = self._start()
            if inspect.isawaitable(result):
                await result
        else:
            logger.info("Relay emitter started implicitly")
        self.started = True

    async def stop(self) -> None:
        if self.started and self._stop is not None:
            result = self._stop()
            if inspect.isawaitable(result):
                await result
        self.started = False
        self._fanout.close()
